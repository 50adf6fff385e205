"""
Tests for the probe engine against loopback sockets.
"""
import socket
import threading

import pytest

from portaudit import probes
from portaudit.config import ScannerConfig
from portaudit.errors import PrivilegeError, ProbeCancelled, ProbeTimeout
from portaudit.models import PortStatus, ScanTechnique
from portaudit.probes import (
    AttemptResult,
    ConnectProbe,
    Probe,
    SynProbe,
    UdpProbe,
    build_probe,
    check_privileges,
    resolve_techniques,
    udp_payload_for,
)


class SilentProbe(Probe):
    technique = ScanTechnique.CONNECT

    def __init__(self, retries):
        super().__init__(retries=retries, backoff_base=0.001)
        self.attempts = 0

    def attempt(self, item, timeout):
        self.attempts += 1
        raise ProbeTimeout("sin respuesta")


class FlakyProbe(Probe):
    technique = ScanTechnique.CONNECT

    def __init__(self):
        super().__init__(retries=2, backoff_base=0.001)
        self.attempts = 0

    def attempt(self, item, timeout):
        self.attempts += 1
        if self.attempts == 1:
            return AttemptResult(PortStatus.FILTERED, "no-response", final=False)
        return AttemptResult(PortStatus.OPEN, "syn-ack", final=True, rtt=0.01)


class TestConnectProbe:
    def test_open_port(self, tcp_server, make_item):
        port = tcp_server(None)
        state = ConnectProbe().execute(make_item(port), timeout=1.0)
        assert state.status is PortStatus.OPEN
        assert state.rtt is not None and state.rtt >= 0
        assert state.attempts == 1

    def test_closed_port(self, closed_port, make_item):
        state = ConnectProbe().execute(make_item(closed_port), timeout=1.0)
        assert state.status is PortStatus.CLOSED
        assert state.reason == "conn-refused"

    def test_cancelled_before_attempt(self, closed_port, make_item):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ProbeCancelled):
            ConnectProbe().execute(make_item(closed_port), timeout=1.0, cancel_event=cancel)


class TestUdpProbe:
    def test_reply_means_open(self, make_item):
        server = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        server.bind(("127.0.0.1", 0))
        server.settimeout(2.0)
        port = server.getsockname()[1]

        def echo():
            try:
                data, peer = server.recvfrom(1024)
                server.sendto(data or b"x", peer)
            except OSError:
                pass

        thread = threading.Thread(target=echo, daemon=True)
        thread.start()
        try:
            state = UdpProbe(retries=0).execute(make_item(port, ScanTechnique.UDP), timeout=1.0)
        finally:
            thread.join(2.0)
            server.close()
        assert state.status is PortStatus.OPEN
        assert state.protocol == "udp"

    def test_port_unreachable_means_closed(self, make_item):
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        state = UdpProbe(retries=0).execute(make_item(port, ScanTechnique.UDP), timeout=1.0)
        assert state.status is PortStatus.CLOSED

    def test_payloads(self):
        assert b"version" in udp_payload_for(53)
        assert udp_payload_for(123)[0] == 0x1B
        assert udp_payload_for(40000) == b"\x00"


class TestRetries:
    def test_silence_is_retried_then_filtered(self, make_item):
        probe = SilentProbe(retries=2)
        state = probe.execute(make_item(80), timeout=0.5)
        assert state.status is PortStatus.FILTERED
        assert probe.attempts == 3
        assert state.attempts == 3

    def test_conclusive_answer_stops_retries(self, make_item):
        probe = FlakyProbe()
        state = probe.execute(make_item(80), timeout=0.5)
        assert state.status is PortStatus.OPEN
        assert probe.attempts == 2

    def test_udp_silence_is_open_filtered(self, make_item):
        class SilentUdp(UdpProbe):
            def attempt(self, item, timeout):
                raise ProbeTimeout()

        state = SilentUdp(retries=0).execute(make_item(161, ScanTechnique.UDP), timeout=0.1)
        assert state.status is PortStatus.OPEN_FILTERED


class TestPrivileges:
    def test_build_probe(self):
        assert isinstance(build_probe(ScanTechnique.CONNECT), ConnectProbe)
        assert isinstance(build_probe(ScanTechnique.SYN), SynProbe)
        assert isinstance(build_probe(ScanTechnique.UDP, retries=2), UdpProbe)

    def test_syn_without_root(self, monkeypatch):
        monkeypatch.setattr(probes, "has_raw_socket_privilege", lambda: False)
        with pytest.raises(PrivilegeError):
            check_privileges([ScanTechnique.SYN])

    def test_syn_without_scapy(self, monkeypatch):
        monkeypatch.setattr(probes, "has_raw_socket_privilege", lambda: True)
        monkeypatch.setattr(probes, "scapy_available", lambda: False)
        with pytest.raises(PrivilegeError):
            check_privileges([ScanTechnique.SYN])

    def test_connect_needs_nothing(self, monkeypatch):
        monkeypatch.setattr(probes, "has_raw_socket_privilege", lambda: False)
        check_privileges([ScanTechnique.CONNECT, ScanTechnique.UDP])

    def test_downgrade_is_opt_in(self, monkeypatch):
        monkeypatch.setattr(probes, "has_raw_socket_privilege", lambda: False)
        with pytest.raises(PrivilegeError):
            resolve_techniques(ScannerConfig(syn_enabled=True))
        techniques = resolve_techniques(ScannerConfig(syn_enabled=True, udp_enabled=True, allow_downgrade=True))
        assert techniques == [ScanTechnique.CONNECT, ScanTechnique.UDP]
