from __future__ import annotations

from typing import Optional


class ScannerError(Exception):
    """Base class for every error raised by portaudit."""


class ConfigurationError(ScannerError):
    pass


class InvalidTargetError(ConfigurationError):
    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"Objetivo invalido '{target}': {reason}")
        self.target = target
        self.reason = reason


class InvalidPortRangeError(ConfigurationError):
    def __init__(self, spec: str, reason: str) -> None:
        super().__init__(f"Rango de puertos invalido '{spec}': {reason}")
        self.spec = spec
        self.reason = reason


class PrivilegeError(ScannerError):
    def __init__(self, technique: str, reason: str) -> None:
        super().__init__(f"La tecnica {technique} no esta disponible: {reason}")
        self.technique = technique
        self.reason = reason


class ProbeError(ScannerError):
    pass


class ProbeTimeout(ProbeError):
    pass


class ProbeCancelled(ProbeError):
    pass


class PartialScanError(ScannerError):
    """Describes why a report was finalized before every work item resolved.

    Never raised by the engine: it is attached to the report instead.
    """

    def __init__(self, reason: str, completed: int, total: int) -> None:
        super().__init__(f"Escaneo parcial ({reason}): {completed}/{total} puertos resueltos")
        self.reason = reason
        self.completed = completed
        self.total = total


class VulnerabilityLookupError(ScannerError):
    def __init__(self, service: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Base de vulnerabilidades no disponible para '{service}'{detail}")
        self.service = service
        self.cause = cause


class AggregationError(ScannerError):
    """A result reached an aggregator twice, for the wrong target or too late."""
