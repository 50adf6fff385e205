"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import socket
import threading
from typing import Callable, Dict, Iterator, List, Optional

import pytest

from portaudit.errors import ProbeCancelled
from portaudit.models import AddressFamily, PortState, PortStatus, ScanTarget, ScanTechnique, WorkItem
from portaudit.probes import AttemptResult, Probe


class ScriptedProbe(Probe):
    """Probe that answers from a port -> status table without touching the network."""

    technique = ScanTechnique.CONNECT

    def __init__(self, statuses: Optional[Dict[int, PortStatus]] = None, default: PortStatus = PortStatus.CLOSED, ttl: Optional[int] = None) -> None:
        super().__init__(retries=0)
        self.statuses = statuses or {}
        self.default = default
        self.ttl = ttl
        self.calls: List[WorkItem] = []
        self._lock = threading.Lock()

    def attempt(self, item: WorkItem, timeout: float) -> AttemptResult:
        with self._lock:
            self.calls.append(item)
        status = self.statuses.get(item.port, self.default)
        return AttemptResult(status, "scripted", final=True, rtt=0.001, ttl=self.ttl)


class GatedProbe(Probe):
    """Answers ports up to ``release`` at once; the rest wait for cancellation."""

    technique = ScanTechnique.CONNECT

    def __init__(self, release: int, max_wait: float = 5.0) -> None:
        super().__init__(retries=0)
        self.release = release
        self.max_wait = max_wait

    def execute(self, item: WorkItem, timeout: float, cancel_event: Optional[threading.Event] = None) -> PortState:
        if item.port <= self.release:
            return PortState(item=item, status=PortStatus.CLOSED, reason="scripted")
        assert cancel_event is not None
        cancel_event.wait(self.max_wait)
        raise ProbeCancelled(f"{item.port} cancelado")

    def attempt(self, item: WorkItem, timeout: float) -> AttemptResult:  # pragma: no cover
        raise AssertionError("no se usa")


class ExplodingProbe(Probe):
    technique = ScanTechnique.CONNECT

    def attempt(self, item: WorkItem, timeout: float) -> AttemptResult:
        raise RuntimeError("fallo inesperado")


@pytest.fixture
def target() -> ScanTarget:
    return ScanTarget(host="127.0.0.1", address="127.0.0.1", family=AddressFamily.IPV4)


@pytest.fixture
def make_item(target: ScanTarget) -> Callable[..., WorkItem]:
    def factory(port: int, technique: ScanTechnique = ScanTechnique.CONNECT) -> WorkItem:
        return WorkItem(target=target, port=port, technique=technique)

    return factory


@pytest.fixture
def tcp_server() -> Iterator[Callable[[Optional[bytes]], int]]:
    """Start loopback TCP listeners; each sends ``greeting`` to every client."""
    sockets: List[socket.socket] = []
    stop = threading.Event()

    def start(greeting: Optional[bytes] = None) -> int:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server.bind(("127.0.0.1", 0))
        server.listen(16)
        server.settimeout(0.2)
        sockets.append(server)

        def serve() -> None:
            while not stop.is_set():
                try:
                    conn, _ = server.accept()
                except socket.timeout:
                    continue
                except OSError:
                    return
                with conn:
                    if greeting:
                        try:
                            conn.sendall(greeting)
                        except OSError:
                            pass

        threading.Thread(target=serve, daemon=True).start()
        return server.getsockname()[1]

    yield start
    stop.set()
    for server in sockets:
        server.close()


@pytest.fixture
def closed_port() -> int:
    """A loopback TCP port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
