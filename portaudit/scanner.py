from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from threading import Event
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .aggregator import ResultAggregator
from .config import ScannerConfig
from .errors import PrivilegeError, VulnerabilityLookupError
from .fingerprint import fingerprint_host
from .matcher import VulnerabilityKnowledgeBase, VulnerabilityMatcher
from .models import (
    LookupStatus,
    PortState,
    PortStatus,
    ProgressEvent,
    ScanReport,
    ScanTarget,
    ScanTechnique,
    ServiceGuess,
    WorkItem,
)
from .probes import Probe, build_probe, resolve_techniques
from .ratelimit import TokenBucket
from .scheduler import ScheduleOutcome, Scheduler
from .services import ServiceIdentifier
from .targets import PortSpecInput, expand, parse_port_spec, parse_targets
from .traceroute import trace_route
from .utils import format_exception

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
TargetsInput = Union[str, Iterable[str], Iterable[ScanTarget]]


class ScanSession:
    """Runs one scan: expansion, probing, detection, matching and scoring.

    Configuration problems and missing privileges are raised before the
    first probe leaves. Everything after that degrades instead of failing:
    per-port errors become Unknown states and a cancelled or expired scan
    still returns one (partial) report per target.

    A session may be run more than once. ``cancel()`` stops the current run,
    or the first one if called before it starts; later runs start with the
    cancel event cleared.
    """

    def __init__(
        self,
        config: ScannerConfig,
        knowledge_base: Optional[VulnerabilityKnowledgeBase] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[Event] = None,
        probes: Optional[Mapping[ScanTechnique, Probe]] = None,
        identifier: Optional[ServiceIdentifier] = None,
    ) -> None:
        self.config = config
        self.knowledge_base = knowledge_base
        self.progress = progress
        self.cancel_event = cancel_event or Event()
        self._probes = probes
        self._runs = 0
        self.identifier = identifier or ServiceIdentifier(
            use_banners=config.enabled_detections.banner,
            timeout=config.banner_timeout,
        )

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self, targets: TargetsInput, ports: PortSpecInput) -> List[ScanReport]:
        config = self.config.validate()
        if self._runs:
            # Cada ejecucion arranca con su propia senal de cancelacion
            self.cancel_event.clear()
        self._runs += 1
        techniques = resolve_techniques(config)
        scan_targets = _coerce_targets(targets)
        port_list = parse_port_spec(ports)
        items = expand(scan_targets, port_list, techniques)
        probes = self._build_probes(techniques)

        aggregators: Dict[str, ResultAggregator] = {}
        for target in scan_targets:
            if target.address not in aggregators:
                aggregators[target.address] = ResultAggregator(target, len(port_list) * len(techniques))
        completed: Counter = Counter()

        logger.info(
            "Escaneando %d objetivos x %d puertos (%s).",
            len(aggregators),
            len(port_list),
            ", ".join(technique.value for technique in techniques),
        )

        def on_result(state: PortState) -> None:
            target = state.item.target
            aggregators[target.address].record_state(state)
            completed[target.address] += 1
            self._notify(ProgressEvent(target, completed[target.address], aggregators[target.address].total))

        def on_cancelled(item: WorkItem) -> None:
            aggregators[item.target.address].record_cancelled(item)

        rate_limiter = TokenBucket(config.rate_limit) if config.rate_limit is not None else None
        scheduler = Scheduler(
            probes,
            max_workers=config.max_threads,
            chunk_size=config.chunk_size,
            timeout=config.timeout,
            rate_limiter=rate_limiter,
            cancel_event=self.cancel_event,
            deadline=config.deadline_s,
        )
        outcome = scheduler.run(items, on_result, on_cancelled)
        partial_reason = _partial_reason(outcome)

        reports: List[ScanReport] = []
        for aggregator in aggregators.values():
            if partial_reason is None:
                self._post_process(aggregator)
            elif config.enabled_detections.os:
                self._detect_os(aggregator)
            report = aggregator.finalize(partial_reason)
            self._log_host_summary(report)
            reports.append(report)
        return reports

    def _build_probes(self, techniques: Sequence[ScanTechnique]) -> Mapping[ScanTechnique, Probe]:
        if self._probes is not None:
            missing = [technique.value for technique in techniques if technique not in self._probes]
            if missing:
                raise ValueError(f"Faltan sondas para: {', '.join(missing)}")
            return self._probes
        return {technique: build_probe(technique, self.config.retries) for technique in techniques}

    def _notify(self, event: ProgressEvent) -> None:
        if self.progress is None:
            return
        try:
            self.progress(event)
        except Exception as exc:
            logger.warning("[%s] Fallo el callback de progreso: %s", event.target, format_exception(exc))

    def _post_process(self, aggregator: ResultAggregator) -> None:
        detections = self.config.enabled_detections
        services: Dict[Tuple[int, str], Optional[ServiceGuess]] = {}

        if detections.service:
            services = self._identify_services(aggregator)
            for key, guess in services.items():
                aggregator.record_service(key, guess)

        if detections.os:
            self._detect_os(aggregator)

        if detections.traceroute:
            self._trace(aggregator)

        if self.knowledge_base is None or not detections.service:
            aggregator.set_vulnerability_status(LookupStatus.SKIPPED)
            return

        matcher = VulnerabilityMatcher(self.knowledge_base)
        try:
            findings = matcher.match(aggregator.target, services)
        except VulnerabilityLookupError as exc:
            logger.warning("[%s] %s. Se omite la correlacion de vulnerabilidades.", aggregator.target, exc)
            aggregator.set_vulnerability_status(LookupStatus.UNAVAILABLE)
            return
        aggregator.add_findings(findings)
        aggregator.set_vulnerability_status(LookupStatus.COMPLETE)

    def _identify_services(self, aggregator: ResultAggregator) -> Dict[Tuple[int, str], Optional[ServiceGuess]]:
        open_states = [state for state in aggregator.states() if state.status is PortStatus.OPEN]
        if not open_states:
            return {}

        services: Dict[Tuple[int, str], Optional[ServiceGuess]] = {}
        workers = max(min(self.config.max_threads, len(open_states)), 1)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="portaudit-service") as pool:
            futures = {pool.submit(self.identifier.identify, state): state for state in open_states}
            for future in as_completed(futures):
                state = futures[future]
                try:
                    services[state.item.key] = future.result()
                except Exception as exc:
                    logger.warning(
                        "[%s] Fallo la identificacion de %d/%s: %s",
                        aggregator.target,
                        state.port,
                        state.protocol,
                        format_exception(exc),
                    )
                    services[state.item.key] = None
        return dict(sorted(services.items()))

    def _detect_os(self, aggregator: ResultAggregator) -> None:
        try:
            aggregator.set_os(fingerprint_host(aggregator.states(), self.config.os_min_samples))
        except Exception:
            logger.exception("[%s] Fallo la deteccion de sistema operativo", aggregator.target)

    def _trace(self, aggregator: ResultAggregator) -> None:
        try:
            aggregator.set_hops(trace_route(aggregator.target, timeout=self.config.timeout, cancel_event=self.cancel_event))
        except PrivilegeError as exc:
            logger.warning("[%s] Traceroute omitido: %s", aggregator.target, exc)
        except Exception:
            logger.exception("[%s] Fallo el traceroute", aggregator.target)

    def _log_host_summary(self, report: ScanReport) -> None:
        target = report.target
        meta = report.metadata
        logger.info("[%s] ===== Resumen =====", target)
        logger.info(
            "[%s] Puertos: %d abiertos, %d cerrados, %d filtrados, %d con error, %d cancelados (%.2fs)",
            target,
            meta.open,
            meta.closed,
            meta.filtered,
            meta.errored,
            meta.cancelled,
            meta.duration,
        )

        if report.os.confidence > 0:
            logger.info("[%s] Sistema operativo: %s (%d%% confianza)", target, report.os.family.value, round(report.os.confidence * 100))
        else:
            logger.info("[%s] Sistema operativo: Desconocido", target)

        open_ports = report.open_ports()
        if open_ports:
            logger.info("[%s] Servicios detectados:", target)
            for state in open_ports:
                guess = report.services.get(state.item.key)
                label = (guess.name if guess else None) or "desconocido"
                version_parts = [part for part in ((guess.product, guess.version) if guess else ()) if part]
                if not version_parts and guess and guess.banner:
                    version_parts.append(guess.banner)
                version_label = " ".join(version_parts) if version_parts else "sin version"
                logger.info("[%s]   - %d/%s %s (%s)", target, state.port, state.protocol, label, version_label)
        else:
            logger.info("[%s] Servicios detectados: ninguno", target)

        for finding in report.findings:
            logger.info(
                "[%s]   ! %s %d/%s CVSS %.1f (%s)",
                target,
                finding.record.cve_id,
                finding.port,
                finding.protocol,
                finding.record.cvss,
                finding.severity.value,
            )
        logger.info("[%s] Riesgo: %.1f (%s)", target, report.risk.score, report.risk.band.value)


def _coerce_targets(targets: TargetsInput) -> List[ScanTarget]:
    if isinstance(targets, ScanTarget):
        return [targets]
    if isinstance(targets, str):
        return parse_targets(targets)
    entries = list(targets)
    if entries and all(isinstance(entry, ScanTarget) for entry in entries):
        return entries
    return parse_targets([str(entry) for entry in entries])


def _partial_reason(outcome: ScheduleOutcome) -> Optional[str]:
    if outcome.deadline_expired:
        return "deadline"
    if outcome.interrupted:
        return "cancelled"
    return None
