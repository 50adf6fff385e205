from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import AggregationError, PartialScanError
from .models import (
    Finding,
    Hop,
    LookupStatus,
    OSFingerprint,
    PortState,
    PortStatus,
    ScanMetadata,
    ScanReport,
    ScanStatus,
    ScanTarget,
    ScanTechnique,
    ServiceGuess,
    WorkItem,
)
from .scoring import score_findings

logger = logging.getLogger(__name__)

PortKey = Tuple[int, str]


class ResultAggregator:
    """Collects everything known about one target and builds its report.

    Only the scan loop writes to an aggregator. Each work item contributes
    at most one PortState and nothing is accepted once the report exists.
    """

    def __init__(self, target: ScanTarget, total: int) -> None:
        self.target = target
        self.total = total
        self._states: Dict[PortKey, PortState] = {}
        self._cancelled: Dict[PortKey, WorkItem] = {}
        self._services: Dict[PortKey, Optional[ServiceGuess]] = {}
        self._findings: List[Finding] = []
        self._os = OSFingerprint()
        self._vulnerability_status = LookupStatus.SKIPPED
        self._hops: Tuple[Hop, ...] = ()
        self._techniques: List[ScanTechnique] = []
        self._started_at = datetime.now(timezone.utc)
        self._started = time.monotonic()
        self._report: Optional[ScanReport] = None

    @property
    def finalized(self) -> bool:
        return self._report is not None

    @property
    def completed(self) -> int:
        return len(self._states)

    def states(self) -> List[PortState]:
        return [self._states[key] for key in sorted(self._states)]

    def _ensure_open(self) -> None:
        if self._report is not None:
            raise AggregationError(f"[{self.target}] El reporte ya fue finalizado")

    def record_state(self, state: PortState) -> None:
        self._ensure_open()
        if state.item.target != self.target:
            raise AggregationError(f"[{self.target}] Estado de otro objetivo: {state.item.target}")
        key = state.item.key
        if key in self._states or key in self._cancelled:
            raise AggregationError(f"[{self.target}] Estado duplicado para {key[0]}/{key[1]}")
        self._states[key] = state
        if state.technique not in self._techniques:
            self._techniques.append(state.technique)

    def record_cancelled(self, item: WorkItem) -> None:
        self._ensure_open()
        key = item.key
        if key in self._states or key in self._cancelled:
            raise AggregationError(f"[{self.target}] Elemento ya resuelto: {key[0]}/{key[1]}")
        self._cancelled[key] = item

    def record_service(self, key: PortKey, guess: Optional[ServiceGuess]) -> None:
        self._ensure_open()
        state = self._states.get(key)
        if state is None or state.status is not PortStatus.OPEN:
            raise AggregationError(f"[{self.target}] {key[0]}/{key[1]} no esta abierto")
        self._services[key] = guess

    def set_os(self, fingerprint: OSFingerprint) -> None:
        self._ensure_open()
        self._os = fingerprint

    def add_findings(self, findings: Iterable[Finding]) -> None:
        self._ensure_open()
        findings = list(findings)
        for finding in findings:
            state = self._states.get((finding.port, finding.protocol))
            if state is None or state.status is not PortStatus.OPEN:
                raise AggregationError(
                    f"[{self.target}] Hallazgo {finding.record.cve_id} en puerto no abierto {finding.port}/{finding.protocol}"
                )
        self._findings.extend(findings)

    def set_vulnerability_status(self, status: LookupStatus) -> None:
        self._ensure_open()
        self._vulnerability_status = status

    def set_hops(self, hops: Iterable[Hop]) -> None:
        self._ensure_open()
        self._hops = tuple(hops)

    def finalize(self, partial_reason: Optional[str] = None) -> ScanReport:
        self._ensure_open()
        states = tuple(self.states())
        cancelled = tuple(self._cancelled[key] for key in sorted(self._cancelled))
        unresolved = self.total - len(states)

        if partial_reason is None and unresolved > 0:
            partial_reason = "incomplete"
        status = ScanStatus.PARTIAL if partial_reason is not None else ScanStatus.COMPLETE
        error = PartialScanError(partial_reason, len(states), self.total) if partial_reason is not None else None

        counts = {kind: 0 for kind in PortStatus}
        for state in states:
            counts[state.status] += 1

        duration = time.monotonic() - self._started
        metadata = ScanMetadata(
            started_at=self._started_at,
            finished_at=datetime.now(timezone.utc),
            duration=duration,
            total=self.total,
            attempted=len(states) + len(cancelled),
            open=counts[PortStatus.OPEN],
            closed=counts[PortStatus.CLOSED],
            filtered=counts[PortStatus.FILTERED] + counts[PortStatus.OPEN_FILTERED],
            errored=counts[PortStatus.UNKNOWN],
            cancelled=len(cancelled),
            status=status,
            partial_reason=partial_reason,
            techniques=tuple(self._techniques),
        )

        findings = tuple(sorted(self._findings, key=lambda finding: (finding.port, finding.protocol, finding.record.cve_id)))
        risk = score_findings(findings)

        self._report = ScanReport(
            target=self.target,
            port_states=states,
            services=MappingProxyType(dict(sorted(self._services.items()))),
            os=self._os,
            findings=findings,
            vulnerability_status=self._vulnerability_status,
            risk=risk,
            metadata=metadata,
            hops=self._hops,
            cancelled=cancelled,
            error=error,
        )
        if error is not None:
            logger.warning("[%s] %s", self.target, error)
        return self._report
