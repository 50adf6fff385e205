from __future__ import annotations

import logging
import time
from threading import Event
from typing import List, Optional

from . import probes
from .errors import PrivilegeError
from .models import AddressFamily, Hop, ScanTarget

logger = logging.getLogger(__name__)

MAX_HOPS = 30
TRACE_PORT = 33434


def trace_route(
    target: ScanTarget,
    max_hops: int = MAX_HOPS,
    timeout: float = 1.0,
    cancel_event: Optional[Event] = None,
) -> List[Hop]:
    """TTL-limited UDP probes towards ``target``.

    One probe per TTL; a hop that stays silent is recorded with no address.
    Stops when the target itself answers or after ``max_hops``.
    """
    if not probes.has_raw_socket_privilege():
        raise PrivilegeError("traceroute", "requiere privilegios de root (raw sockets)")
    if not probes.scapy_available():
        raise PrivilegeError("traceroute", "scapy no esta instalado")

    from scapy.layers.inet import IP, UDP
    from scapy.layers.inet6 import IPv6
    from scapy.sendrecv import sr1

    hops: List[Hop] = []
    for ttl in range(1, max_hops + 1):
        if cancel_event is not None and cancel_event.is_set():
            logger.debug("[%s] Traceroute cancelado en el salto %d", target, ttl)
            break

        if target.family is AddressFamily.IPV6:
            packet = IPv6(dst=target.address, hlim=ttl) / UDP(dport=TRACE_PORT + ttl)
        else:
            packet = IP(dst=target.address, ttl=ttl) / UDP(dport=TRACE_PORT + ttl)

        started = time.monotonic()
        reply = sr1(packet, timeout=timeout, verbose=0)
        if reply is None:
            hops.append(Hop(ttl=ttl, address=None, rtt=None))
            continue

        hops.append(Hop(ttl=ttl, address=reply.src, rtt=time.monotonic() - started))
        if reply.src == target.address:
            break

    logger.debug("[%s] Traceroute: %d saltos", target, len(hops))
    return hops
