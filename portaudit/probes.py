from __future__ import annotations

import errno
import importlib.util
import logging
import os
import random
import socket
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Event
from typing import Dict, List, Optional, Sequence, Type

from .config import ScannerConfig
from .errors import PrivilegeError, ProbeCancelled, ProbeError, ProbeTimeout
from .models import AddressFamily, PortState, PortStatus, ScanTechnique, WorkItem

logger = logging.getLogger(__name__)

BACKOFF_BASE = 0.05

_UNREACHABLE_ERRNOS = {errno.EHOSTUNREACH, errno.ENETUNREACH}
_ICMP_FILTER_CODES = {1, 2, 3, 9, 10, 13}

# Cargas UDP minimas por puerto
UDP_PAYLOADS: Dict[int, bytes] = {
    # DNS: consulta estandar de version.bind TXT/CH
    53: bytes.fromhex("000001000001000000000000") + b"\x07version\x04bind\x00\x00\x10\x00\x03",
    # NTP: peticion de cliente v3
    123: b"\x1b" + b"\x00" * 47,
    # NetBIOS: consulta NBSTAT
    137: bytes.fromhex("80f00010000100000000000020") + b"CK" + b"A" * 30 + bytes.fromhex("0000210001"),
    # SNMP v1 get-request comunidad public
    161: bytes.fromhex("302602010004067075626c6963a019020100020100020100300e300c06082b060102010101000500"),
    # SSDP M-SEARCH
    1900: b"M-SEARCH * HTTP/1.1\r\nHOST: 239.255.255.250:1900\r\nMAN: \"ssdp:discover\"\r\nMX: 1\r\nST: ssdp:all\r\n\r\n",
}
GENERIC_UDP_PAYLOAD = b"\x00"


def udp_payload_for(port: int) -> bytes:
    return UDP_PAYLOADS.get(port, GENERIC_UDP_PAYLOAD)


@dataclass(slots=True)
class AttemptResult:
    status: PortStatus
    reason: str
    final: bool
    rtt: Optional[float] = None
    ttl: Optional[int] = None
    window: Optional[int] = None


def _socket_family(item: WorkItem) -> int:
    return socket.AF_INET6 if item.target.family is AddressFamily.IPV6 else socket.AF_INET


class Probe(ABC):
    """Common probe capability: ``execute(item, timeout, cancel_event)``.

    Subclasses implement a single attempt; this class adds the bounded
    exponential backoff retry for inconclusive outcomes.
    """

    technique: ScanTechnique
    silence_status: PortStatus = PortStatus.FILTERED

    def __init__(self, retries: int = 1, backoff_base: float = BACKOFF_BASE) -> None:
        self.retries = retries
        self.backoff_base = backoff_base

    def execute(self, item: WorkItem, timeout: float, cancel_event: Optional[Event] = None) -> PortState:
        cancel_event = cancel_event or Event()
        result: Optional[AttemptResult] = None
        attempts = 0

        for attempt in range(self.retries + 1):
            if cancel_event.is_set():
                raise ProbeCancelled(f"{item.target.address}:{item.port} cancelado")
            attempts += 1
            try:
                result = self.attempt(item, timeout)
            except ProbeTimeout as exc:
                result = AttemptResult(self.silence_status, str(exc) or "timeout", final=False)
            except ProbeError as exc:
                result = AttemptResult(PortStatus.UNKNOWN, f"error: {exc}", final=False)

            if result.final:
                break
            if attempt < self.retries:
                delay = min(self.backoff_base * (2 ** attempt), timeout)
                if cancel_event.wait(delay):
                    raise ProbeCancelled(f"{item.target.address}:{item.port} cancelado")

        assert result is not None
        return PortState(
            item=item,
            status=result.status,
            rtt=result.rtt,
            reason=result.reason,
            attempts=attempts,
            ttl=result.ttl,
            window=result.window,
        )

    @abstractmethod
    def attempt(self, item: WorkItem, timeout: float) -> AttemptResult:
        ...


class ConnectProbe(Probe):
    technique = ScanTechnique.CONNECT

    def attempt(self, item: WorkItem, timeout: float) -> AttemptResult:
        sock = socket.socket(_socket_family(item), socket.SOCK_STREAM)
        sock.settimeout(timeout)
        start = time.monotonic()
        try:
            sock.connect((item.target.address, item.port))
        except socket.timeout:
            return AttemptResult(PortStatus.FILTERED, "no-response", final=False)
        except (ConnectionRefusedError, ConnectionResetError):
            return AttemptResult(
                PortStatus.CLOSED, "conn-refused", final=True, rtt=time.monotonic() - start
            )
        except OSError as exc:
            if exc.errno in _UNREACHABLE_ERRNOS:
                return AttemptResult(
                    PortStatus.FILTERED, "host-unreachable", final=True, rtt=time.monotonic() - start
                )
            raise ProbeError(str(exc)) from exc
        finally:
            sock.close()
        return AttemptResult(PortStatus.OPEN, "syn-ack", final=True, rtt=time.monotonic() - start)


class SynProbe(Probe):
    """Half-open scan: one SYN, answered by RST on SYN/ACK. Needs root and scapy."""

    technique = ScanTechnique.SYN

    def attempt(self, item: WorkItem, timeout: float) -> AttemptResult:
        from scapy.layers.inet import ICMP, IP, TCP
        from scapy.layers.inet6 import IPv6
        from scapy.sendrecv import send, sr1

        address = item.target.address
        sport = random.randint(1024, 65535)
        network = IPv6(dst=address) if item.target.family is AddressFamily.IPV6 else IP(dst=address)
        packet = network / TCP(sport=sport, dport=item.port, flags="S", seq=random.getrandbits(32))

        start = time.monotonic()
        try:
            reply = sr1(packet, timeout=timeout, verbose=0)
        except PermissionError as exc:
            raise PrivilegeError("syn", str(exc)) from exc
        except OSError as exc:
            raise ProbeError(str(exc)) from exc
        rtt = time.monotonic() - start

        if reply is None:
            return AttemptResult(PortStatus.FILTERED, "no-response", final=False)

        ttl = None
        if reply.haslayer(IP):
            ttl = int(reply[IP].ttl)
        elif reply.haslayer(IPv6):
            ttl = int(reply[IPv6].hlim)

        if reply.haslayer(TCP):
            tcp = reply[TCP]
            flags = int(tcp.flags)
            window = int(tcp.window)
            if flags & 0x12 == 0x12:
                # Cortar el handshake: nunca se envia el ACK final
                send(network / TCP(sport=sport, dport=item.port, flags="R", seq=tcp.ack), verbose=0)
                return AttemptResult(PortStatus.OPEN, "syn-ack", final=True, rtt=rtt, ttl=ttl, window=window)
            if flags & 0x04:
                return AttemptResult(PortStatus.CLOSED, "reset", final=True, rtt=rtt, ttl=ttl, window=window)

        if reply.haslayer(ICMP):
            icmp = reply[ICMP]
            if int(icmp.type) == 3 and int(icmp.code) in _ICMP_FILTER_CODES:
                return AttemptResult(
                    PortStatus.FILTERED, f"icmp-unreachable-{int(icmp.code)}", final=True, rtt=rtt, ttl=ttl
                )

        return AttemptResult(PortStatus.UNKNOWN, "unexpected-reply", final=False, rtt=rtt, ttl=ttl)


class UdpProbe(Probe):
    technique = ScanTechnique.UDP
    silence_status = PortStatus.OPEN_FILTERED

    def attempt(self, item: WorkItem, timeout: float) -> AttemptResult:
        sock = socket.socket(_socket_family(item), socket.SOCK_DGRAM)
        sock.settimeout(timeout)
        start = time.monotonic()
        try:
            # Un socket conectado recibe el ICMP port-unreachable como ECONNREFUSED
            sock.connect((item.target.address, item.port))
            sock.send(udp_payload_for(item.port))
            sock.recv(4096)
        except socket.timeout:
            return AttemptResult(PortStatus.OPEN_FILTERED, "no-response", final=False)
        except ConnectionRefusedError:
            return AttemptResult(
                PortStatus.CLOSED, "port-unreachable", final=True, rtt=time.monotonic() - start
            )
        except OSError as exc:
            if exc.errno in _UNREACHABLE_ERRNOS:
                return AttemptResult(
                    PortStatus.FILTERED, "host-unreachable", final=True, rtt=time.monotonic() - start
                )
            raise ProbeError(str(exc)) from exc
        finally:
            sock.close()
        return AttemptResult(PortStatus.OPEN, "udp-response", final=True, rtt=time.monotonic() - start)


_PROBE_TYPES: Dict[ScanTechnique, Type[Probe]] = {
    ScanTechnique.CONNECT: ConnectProbe,
    ScanTechnique.SYN: SynProbe,
    ScanTechnique.UDP: UdpProbe,
}


def build_probe(technique: ScanTechnique, retries: int = 1) -> Probe:
    try:
        probe_type = _PROBE_TYPES[technique]
    except KeyError:
        raise ValueError(f"Tecnica de escaneo no soportada: {technique!r}") from None
    return probe_type(retries=retries)


def has_raw_socket_privilege() -> bool:
    if os.name == "nt":
        return False
    geteuid = getattr(os, "geteuid", None)
    if geteuid is None:
        return False
    return geteuid() == 0


def scapy_available() -> bool:
    return importlib.util.find_spec("scapy") is not None


def check_privileges(techniques: Sequence[ScanTechnique]) -> None:
    """Fail fast, before any dispatch, when a technique cannot run here."""
    for technique in techniques:
        if technique is not ScanTechnique.SYN:
            continue
        if not has_raw_socket_privilege():
            raise PrivilegeError(technique.value, "requiere privilegios de root (raw sockets)")
        if not scapy_available():
            raise PrivilegeError(technique.value, "scapy no esta instalado")


def resolve_techniques(config: ScannerConfig) -> List[ScanTechnique]:
    techniques: List[ScanTechnique] = []
    if config.tcp_enabled:
        techniques.append(ScanTechnique.SYN if config.syn_enabled else ScanTechnique.CONNECT)
    if config.udp_enabled:
        techniques.append(ScanTechnique.UDP)

    try:
        check_privileges(techniques)
    except PrivilegeError as exc:
        if not config.allow_downgrade:
            raise
        logger.warning("%s. Se usara connect scan en su lugar.", exc)
        techniques = [
            ScanTechnique.CONNECT if technique is ScanTechnique.SYN else technique
            for technique in techniques
        ]
    return techniques
