from __future__ import annotations

import logging
import re
import socket
import time
from dataclasses import dataclass
from typing import List, Optional, Pattern

from .models import AddressFamily, PortState, PortStatus, ServiceGuess
from .portlists import service_for_port

logger = logging.getLogger(__name__)

MAX_BANNER_LENGTH = 500

BANNER_CONFIDENCE = 0.9
BANNER_VERSION_CONFIDENCE = 0.95
UNMATCHED_BANNER_CONFIDENCE = 0.6
PORT_ONLY_CONFIDENCE = 0.5

HTTP_PORTS = {80, 81, 443, 591, 3000, 5000, 8000, 8008, 8080, 8081, 8443, 8888, 9000}


@dataclass(frozen=True, slots=True)
class ServiceSignature:
    name: str
    pattern: Pattern[str]
    product: Optional[str] = None


def _sig(name: str, pattern: str, product: Optional[str] = None, flags: int = 0) -> ServiceSignature:
    return ServiceSignature(name, re.compile(pattern, flags | re.IGNORECASE | re.MULTILINE), product)


# Orden: firmas especificas antes que las genericas del mismo protocolo
SIGNATURES: List[ServiceSignature] = [
    _sig("ssh", r"^SSH-[\d.]+-OpenSSH[_-](?P<version>\d+(?:\.\d+)*(?:p\d+)?)", "openssh"),
    _sig("ssh", r"^SSH-[\d.]+-dropbear[_-](?P<version>[\d.]+)", "dropbear"),
    _sig("ssh", r"^SSH-[\d.]+-"),
    _sig("http", r"^Server:\s*Apache(?:/(?P<version>\d+(?:\.\d+)*))?", "apache"),
    _sig("http", r"^Server:\s*nginx(?:/(?P<version>\d+(?:\.\d+)*))?", "nginx"),
    _sig("http", r"^Server:\s*Microsoft-IIS(?:/(?P<version>\d+(?:\.\d+)*))?", "iis"),
    _sig("http", r"^Server:\s*lighttpd(?:/(?P<version>\d+(?:\.\d+)*))?", "lighttpd"),
    _sig("http", r"^HTTP/\d(?:\.\d)?\s+\d{3}"),
    _sig("ftp", r"vsFTPd\s+(?P<version>\d+(?:\.\d+)*)", "vsftpd"),
    _sig("ftp", r"ProFTPD(?:\s+(?P<version>\d+(?:\.\d+)*))?", "proftpd"),
    _sig("ftp", r"^220[ -].*\bFTP\b"),
    _sig("smtp", r"^220[ -].*ESMTP\s+Postfix", "postfix"),
    _sig("smtp", r"^220[ -].*Exim\s+(?P<version>\d+(?:\.\d+)*)", "exim"),
    _sig("smtp", r"^220[ -].*\bE?SMTP\b"),
    _sig("mysql", r"^.{4}\n(?P<version>\d+\.\d+\.\d+)-MariaDB", "mariadb", re.DOTALL),
    _sig("mysql", r"^.{4}\n(?P<version>\d+\.\d+\.\d+)", "mysql", re.DOTALL),
    _sig("redis", r"redis_version:(?P<version>\d+(?:\.\d+)*)", "redis"),
    _sig("redis", r"^(?:\+PONG|-NOAUTH|-DENIED)", "redis"),
    _sig("pop3", r"^\+OK"),
    _sig("imap", r"^\* OK.*IMAP"),
    _sig("vnc", r"^RFB (?P<version>\d{3}\.\d{3})"),
    _sig("telnet", r"^\xff[\xfb-\xfe]"),
]


def clean_banner(raw: str) -> str:
    text = raw.strip().replace("\r\n", " | ").replace("\n", " | ").replace("\r", " | ")
    printable = "".join(ch if ch.isprintable() else "." for ch in text)
    return printable[:MAX_BANNER_LENGTH]


def probe_payload_for(port: int) -> bytes:
    if port in HTTP_PORTS:
        return b"GET / HTTP/1.0\r\n\r\n"
    if port in (25, 587):
        return b"EHLO portaudit.local\r\n"
    if port == 6379:
        return b"PING\r\n"
    return b"\r\n\r\n"


class BannerGrabber:
    def __init__(self, timeout: float = 2.0, read_size: int = 1024) -> None:
        self.timeout = timeout
        self.read_size = read_size

    def grab(self, address: str, port: int, family: AddressFamily = AddressFamily.IPV4) -> Optional[str]:
        """Read what the service announces, or its reply to a port-specific probe.

        Returns the raw text (latin-1 decoded) or None when the service stays
        silent or the connection fails. Never waits longer than ``timeout``.
        """
        sock_family = socket.AF_INET6 if family is AddressFamily.IPV6 else socket.AF_INET
        deadline = time.monotonic() + self.timeout
        try:
            with socket.socket(sock_family, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                sock.connect((address, port))
                data = self._read(sock, deadline, share=0.5)
                if not data:
                    sock.sendall(probe_payload_for(port))
                    data = self._read(sock, deadline, share=1.0)
        except OSError as exc:
            logger.debug("Sin banner en %s:%d (%s)", address, port, exc)
            return None
        if not data:
            return None
        return data.decode("latin-1")

    def _read(self, sock: socket.socket, deadline: float, share: float) -> bytes:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return b""
        sock.settimeout(max(remaining * share, 0.01))
        try:
            return sock.recv(self.read_size)
        except socket.timeout:
            return b""


def match_banner(raw: str, port: int, protocol: str = "tcp") -> Optional[ServiceGuess]:
    banner = clean_banner(raw)
    for signature in SIGNATURES:
        match = signature.pattern.search(raw)
        if match is None:
            continue
        version = match.groupdict().get("version")
        return ServiceGuess(
            port=port,
            protocol=protocol,
            name=signature.name,
            product=signature.product,
            version=version,
            confidence=BANNER_VERSION_CONFIDENCE if version else BANNER_CONFIDENCE,
            method="banner",
            banner=banner,
        )
    return None


def guess_from_port(port: int, protocol: str = "tcp", banner: Optional[str] = None) -> Optional[ServiceGuess]:
    known = service_for_port(port)
    if known is None:
        return None
    name, product = known
    return ServiceGuess(
        port=port,
        protocol=protocol,
        name=name,
        product=product,
        confidence=UNMATCHED_BANNER_CONFIDENCE if banner else PORT_ONLY_CONFIDENCE,
        method="port",
        banner=clean_banner(banner) if banner else None,
    )


class ServiceIdentifier:
    def __init__(self, use_banners: bool = True, timeout: float = 2.0, grabber: Optional[BannerGrabber] = None) -> None:
        self.use_banners = use_banners
        self.grabber = grabber or BannerGrabber(timeout=timeout)

    def identify(self, state: PortState) -> Optional[ServiceGuess]:
        if state.status is not PortStatus.OPEN:
            return None

        banner = None
        if self.use_banners and state.protocol == "tcp":
            target = state.item.target
            banner = self.grabber.grab(target.address, state.port, target.family)

        if banner:
            guess = match_banner(banner, state.port, state.protocol)
            if guess is not None:
                logger.debug(
                    "[%s] %d/%s identificado por banner: %s %s",
                    state.item.target,
                    state.port,
                    state.protocol,
                    guess.product or guess.name,
                    guess.version or "",
                )
                return guess
        return guess_from_port(state.port, state.protocol, banner)
