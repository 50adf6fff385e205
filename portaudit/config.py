from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .errors import ConfigurationError

MAX_RETRIES = 2


@dataclass(frozen=True, slots=True)
class DetectionOptions:
    service: bool = True
    banner: bool = True
    os: bool = False
    traceroute: bool = False


@dataclass(frozen=True, slots=True)
class ScannerConfig:
    timeout_ms: int = 1000
    max_threads: int = 200
    chunk_size: int = 100
    syn_enabled: bool = False
    udp_enabled: bool = False
    tcp_enabled: bool = True
    rate_limit: Optional[float] = None  # sondas por segundo
    enabled_detections: DetectionOptions = field(default_factory=DetectionOptions)
    retries: int = 1
    deadline_s: Optional[float] = None
    allow_downgrade: bool = False
    os_min_samples: int = 3
    banner_timeout_ms: int = 2000

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def banner_timeout(self) -> float:
        return self.banner_timeout_ms / 1000.0

    def validate(self) -> "ScannerConfig":
        if self.timeout_ms <= 0:
            raise ConfigurationError("El timeout debe ser mayor que 0")
        if self.banner_timeout_ms <= 0:
            raise ConfigurationError("El timeout de banner debe ser mayor que 0")
        if self.max_threads <= 0:
            raise ConfigurationError("max_threads debe ser mayor que 0")
        if self.chunk_size <= 0:
            raise ConfigurationError("chunk_size debe ser mayor que 0")
        if self.rate_limit is not None and self.rate_limit <= 0:
            raise ConfigurationError("rate_limit debe ser mayor que 0")
        if not 0 <= self.retries <= MAX_RETRIES:
            raise ConfigurationError(f"retries debe estar entre 0 y {MAX_RETRIES}")
        if self.deadline_s is not None and self.deadline_s <= 0:
            raise ConfigurationError("deadline_s debe ser mayor que 0")
        if self.os_min_samples <= 0:
            raise ConfigurationError("os_min_samples debe ser mayor que 0")
        if not (self.tcp_enabled or self.udp_enabled):
            raise ConfigurationError("Debe habilitarse al menos un escaneo TCP o UDP")
        if self.syn_enabled and not self.tcp_enabled:
            raise ConfigurationError("syn_enabled requiere tcp_enabled")
        return self
