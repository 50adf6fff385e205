from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import PartialScanError


class AddressFamily(str, Enum):
    IPV4 = "ipv4"
    IPV6 = "ipv6"


class ScanTechnique(str, Enum):
    CONNECT = "connect"
    SYN = "syn"
    UDP = "udp"

    @property
    def protocol(self) -> str:
        return "udp" if self is ScanTechnique.UDP else "tcp"


class PortStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    FILTERED = "filtered"
    OPEN_FILTERED = "open|filtered"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    INFORMATIONAL = "informational"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [
    Severity.INFORMATIONAL,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


class OSFamily(str, Enum):
    UNKNOWN = "unknown"
    LINUX = "linux"
    BSD = "bsd"
    WINDOWS = "windows"
    NETWORK_DEVICE = "network-device"


class ScanStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"


class LookupStatus(str, Enum):
    COMPLETE = "complete"
    UNAVAILABLE = "unavailable"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class ScanTarget:
    host: str
    address: str
    family: AddressFamily

    def __str__(self) -> str:
        if self.host != self.address:
            return f"{self.host} ({self.address})"
        return self.address


@dataclass(frozen=True, slots=True)
class WorkItem:
    target: ScanTarget
    port: int
    technique: ScanTechnique

    @property
    def protocol(self) -> str:
        return self.technique.protocol

    @property
    def key(self) -> Tuple[int, str]:
        return (self.port, self.protocol)


@dataclass(frozen=True, slots=True)
class PortState:
    item: WorkItem
    status: PortStatus
    rtt: Optional[float] = None
    reason: Optional[str] = None
    attempts: int = 1
    # Telemetria pasiva (solo SYN)
    ttl: Optional[int] = None
    window: Optional[int] = None

    @property
    def port(self) -> int:
        return self.item.port

    @property
    def protocol(self) -> str:
        return self.item.protocol

    @property
    def technique(self) -> ScanTechnique:
        return self.item.technique


@dataclass(frozen=True, slots=True)
class ServiceGuess:
    port: int
    protocol: str
    name: str
    confidence: float
    product: Optional[str] = None
    version: Optional[str] = None
    method: str = "port"
    banner: Optional[str] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence fuera de rango: {self.confidence}")


@dataclass(frozen=True, slots=True)
class OSFingerprint:
    family: OSFamily = OSFamily.UNKNOWN
    confidence: float = 0.0
    samples: int = 0
    initial_ttl: Optional[int] = None
    details: Optional[str] = None


@dataclass(frozen=True, slots=True)
class VulnerabilityRecord:
    cve_id: str
    service: str
    version_predicate: str
    cvss: float
    description: str = ""


@dataclass(frozen=True, slots=True)
class Finding:
    host: str
    port: int
    protocol: str
    record: VulnerabilityRecord
    confidence: float
    severity: Severity


@dataclass(frozen=True, slots=True)
class RiskScore:
    score: float
    band: Severity
    finding_count: int = 0
    elevated_count: int = 0


@dataclass(frozen=True, slots=True)
class Hop:
    ttl: int
    address: Optional[str]
    rtt: Optional[float]


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    target: ScanTarget
    ports_completed: int
    ports_total: int


@dataclass(frozen=True, slots=True)
class ScanMetadata:
    started_at: datetime
    finished_at: datetime
    duration: float
    total: int
    attempted: int
    open: int
    closed: int
    filtered: int
    errored: int
    cancelled: int
    status: ScanStatus
    partial_reason: Optional[str] = None
    techniques: Tuple[ScanTechnique, ...] = ()


@dataclass(frozen=True, slots=True)
class ScanReport:
    target: ScanTarget
    port_states: Tuple[PortState, ...]
    services: Mapping[Tuple[int, str], Optional[ServiceGuess]]
    os: OSFingerprint
    findings: Tuple[Finding, ...]
    vulnerability_status: LookupStatus
    risk: RiskScore
    metadata: ScanMetadata
    hops: Tuple[Hop, ...] = ()
    cancelled: Tuple[WorkItem, ...] = ()
    error: Optional[PartialScanError] = None

    @property
    def partial(self) -> bool:
        return self.metadata.status is ScanStatus.PARTIAL

    def open_ports(self) -> List[PortState]:
        return [state for state in self.port_states if state.status is PortStatus.OPEN]

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data view of the report for exporters and storage layers."""
        services = []
        for (port, protocol), guess in sorted(self.services.items()):
            entry: Dict[str, Any] = {"port": port, "protocol": protocol, "service": None}
            if guess is not None:
                entry["service"] = {
                    "name": guess.name,
                    "product": guess.product,
                    "version": guess.version,
                    "confidence": guess.confidence,
                    "method": guess.method,
                    "banner": guess.banner,
                }
            services.append(entry)

        return {
            "target": {
                "host": self.target.host,
                "address": self.target.address,
                "family": self.target.family.value,
            },
            "ports": [
                {
                    "port": state.port,
                    "protocol": state.protocol,
                    "status": state.status.value,
                    "technique": state.technique.value,
                    "rtt": state.rtt,
                    "reason": state.reason,
                    "attempts": state.attempts,
                }
                for state in self.port_states
            ],
            "services": services,
            "os": {
                "family": self.os.family.value,
                "confidence": self.os.confidence,
                "samples": self.os.samples,
                "initial_ttl": self.os.initial_ttl,
            },
            "findings": [
                {
                    "host": finding.host,
                    "port": finding.port,
                    "protocol": finding.protocol,
                    "cve": finding.record.cve_id,
                    "cvss": finding.record.cvss,
                    "severity": finding.severity.value,
                    "confidence": finding.confidence,
                    "summary": finding.record.description,
                }
                for finding in self.findings
            ],
            "vulnerability_status": self.vulnerability_status.value,
            "risk": {
                "score": self.risk.score,
                "band": self.risk.band.value,
                "findings": self.risk.finding_count,
            },
            "hops": [{"ttl": hop.ttl, "address": hop.address, "rtt": hop.rtt} for hop in self.hops],
            "cancelled": [
                {"port": item.port, "protocol": item.protocol} for item in self.cancelled
            ],
            "metadata": {
                "started_at": self.metadata.started_at.isoformat(),
                "finished_at": self.metadata.finished_at.isoformat(),
                "duration": self.metadata.duration,
                "total": self.metadata.total,
                "attempted": self.metadata.attempted,
                "open": self.metadata.open,
                "closed": self.metadata.closed,
                "filtered": self.metadata.filtered,
                "errored": self.metadata.errored,
                "cancelled": self.metadata.cancelled,
                "status": self.metadata.status.value,
                "partial_reason": self.metadata.partial_reason,
                "techniques": [technique.value for technique in self.metadata.techniques],
            },
        }
