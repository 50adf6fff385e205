from __future__ import annotations

import ipaddress
import logging
import re
import socket
from typing import Callable, Iterable, List, Sequence, Tuple, Union

from .errors import InvalidPortRangeError, InvalidTargetError
from .models import AddressFamily, ScanTarget, ScanTechnique, WorkItem
from .portlists import MAX_PORT, MIN_PORT, STANDARD, TOP_100

logger = logging.getLogger(__name__)

MAX_BLOCK_SIZE = 65536

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")

PortSpecInput = Union[int, str, Iterable[int]]
Resolver = Callable[[str], Tuple[str, AddressFamily]]


def resolve_host(hostname: str) -> Tuple[str, AddressFamily]:
    try:
        infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    except socket.gaierror as exc:
        raise InvalidTargetError(hostname, f"no se pudo resolver ({exc})") from exc
    # Preferir IPv4 cuando existan ambas familias
    infos.sort(key=lambda info: 0 if info[0] == socket.AF_INET else 1)
    for family, _, _, _, sockaddr in infos:
        if family == socket.AF_INET:
            return sockaddr[0], AddressFamily.IPV4
        if family == socket.AF_INET6:
            return sockaddr[0], AddressFamily.IPV6
    raise InvalidTargetError(hostname, "sin direcciones IP")


def is_valid_hostname(hostname: str) -> bool:
    if not hostname or len(hostname) > 253:
        return False
    labels = hostname.rstrip(".").split(".")
    return all(_HOSTNAME_LABEL.match(label) for label in labels)


def _family_of(address: Union[ipaddress.IPv4Address, ipaddress.IPv6Address]) -> AddressFamily:
    return AddressFamily.IPV4 if address.version == 4 else AddressFamily.IPV6


def _split_targets(spec: Union[str, Iterable[str]]) -> List[str]:
    if isinstance(spec, str):
        raw = re.split(r"[,\s]+", spec)
    else:
        raw = []
        for entry in spec:
            raw.extend(re.split(r"[,\s]+", str(entry)))
    return [entry for entry in (part.strip() for part in raw) if entry]


def _expand_entry(entry: str, resolver: Resolver) -> List[ScanTarget]:
    try:
        address = ipaddress.ip_address(entry)
    except ValueError:
        pass
    else:
        return [ScanTarget(host=entry, address=str(address), family=_family_of(address))]

    if "/" in entry:
        try:
            network = ipaddress.ip_network(entry, strict=False)
        except ValueError as exc:
            raise InvalidTargetError(entry, str(exc)) from exc
        if network.num_addresses > MAX_BLOCK_SIZE:
            raise InvalidTargetError(
                entry, f"bloque demasiado grande ({network.num_addresses} direcciones, max {MAX_BLOCK_SIZE})"
            )
        hosts = list(network.hosts()) or [network.network_address]
        return [ScanTarget(host=str(host), address=str(host), family=_family_of(host)) for host in hosts]

    if not is_valid_hostname(entry):
        raise InvalidTargetError(entry, "no es una IP, bloque CIDR ni hostname valido")
    address, family = resolver(entry)
    return [ScanTarget(host=entry, address=address, family=family)]


def parse_targets(spec: Union[str, Iterable[str]], resolver: Resolver = resolve_host) -> List[ScanTarget]:
    """Expand a host, CIDR block or host list into unique scan targets.

    Order of first appearance is preserved; duplicates are detected by
    resolved address.
    """
    entries = _split_targets(spec)
    if not entries:
        raise InvalidTargetError(str(spec), "especificacion vacia")

    targets: List[ScanTarget] = []
    seen = set()
    for entry in entries:
        for target in _expand_entry(entry, resolver):
            if target.address in seen:
                continue
            seen.add(target.address)
            targets.append(target)
    return targets


def _check_port(value: int, spec: str) -> int:
    if not MIN_PORT <= value <= MAX_PORT:
        raise InvalidPortRangeError(spec, f"{value} fuera de {MIN_PORT}-{MAX_PORT}")
    return value


def _parse_port_token(token: str, spec: str) -> Iterable[int]:
    if "-" in token:
        start_text, _, end_text = token.partition("-")
        try:
            start, end = int(start_text), int(end_text)
        except ValueError as exc:
            raise InvalidPortRangeError(spec, f"rango no numerico '{token}'") from exc
        _check_port(start, spec)
        _check_port(end, spec)
        if start > end:
            raise InvalidPortRangeError(spec, f"rango invertido '{token}'")
        return range(start, end + 1)
    try:
        return (_check_port(int(token), spec),)
    except ValueError as exc:
        raise InvalidPortRangeError(spec, f"puerto no numerico '{token}'") from exc


def parse_port_spec(spec: PortSpecInput) -> Tuple[int, ...]:
    """Return the ascending, deduplicated ports described by ``spec``.

    Accepts a single port, ``"a-b"`` ranges, comma lists mixing both, the
    presets ``quick``/``standard``/``full`` or an iterable of ports
    (the ``custom`` preset).
    """
    if isinstance(spec, bool):
        raise InvalidPortRangeError(str(spec), "tipo no soportado")
    if isinstance(spec, int):
        return (_check_port(spec, str(spec)),)

    if isinstance(spec, str):
        text = spec.strip().lower()
        if text == "quick":
            return tuple(sorted(TOP_100))
        if text == "standard":
            return STANDARD
        if text == "full":
            return tuple(range(MIN_PORT, MAX_PORT + 1))
        tokens = [token.strip() for token in text.split(",") if token.strip()]
        if not tokens:
            raise InvalidPortRangeError(spec, "especificacion vacia")
        ports = set()
        for token in tokens:
            ports.update(_parse_port_token(token, spec))
        return tuple(sorted(ports))

    ports = set()
    for value in spec:
        try:
            port = int(value)
        except (TypeError, ValueError) as exc:
            raise InvalidPortRangeError(str(value), "puerto no numerico") from exc
        ports.add(_check_port(port, str(value)))
    if not ports:
        raise InvalidPortRangeError("custom", "lista de puertos vacia")
    return tuple(sorted(ports))


def expand(
    targets: Sequence[ScanTarget],
    ports: Sequence[int],
    techniques: Sequence[ScanTechnique],
) -> List[WorkItem]:
    """Build the work items for every target/port/technique combination."""
    ordered_techniques = list(dict.fromkeys(techniques))
    ordered_ports = sorted(set(ports))
    items: List[WorkItem] = []
    seen = set()
    for target in targets:
        if target.address in seen:
            continue
        seen.add(target.address)
        for port in ordered_ports:
            for technique in ordered_techniques:
                items.append(WorkItem(target=target, port=port, technique=technique))
    logger.debug(
        "Generados %d work items (%d objetivos x %d puertos x %d tecnicas)",
        len(items),
        len(seen),
        len(ordered_ports),
        len(ordered_techniques),
    )
    return items
