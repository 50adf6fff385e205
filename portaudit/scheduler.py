from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from itertools import islice
from threading import Event
from typing import Callable, Dict, Iterable, Mapping, Optional

from .errors import ProbeCancelled
from .models import PortState, PortStatus, ScanTechnique, WorkItem
from .probes import Probe
from .ratelimit import TokenBucket
from .utils import format_exception

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1

ResultCallback = Callable[[PortState], None]
CancelCallback = Callable[[WorkItem], None]


@dataclass(slots=True)
class ScheduleOutcome:
    dispatched: int = 0
    completed: int = 0
    cancelled: int = 0
    deadline_expired: bool = False
    interrupted: bool = False

    @property
    def stopped_early(self) -> bool:
        return self.deadline_expired or self.interrupted


class Scheduler:
    """Dispatch work items to a bounded probe pool.

    At most ``max_workers`` probes are in flight; dispatch blocks while the
    pool is saturated. Items are admitted in rounds of ``chunk_size`` from a
    lazy iterator and every dispatch takes a token from ``rate_limiter``.
    Results are delivered from the calling thread only, so callbacks never
    race with each other.
    """

    def __init__(
        self,
        probes: Mapping[ScanTechnique, Probe],
        max_workers: int,
        chunk_size: int,
        timeout: float,
        rate_limiter: Optional[TokenBucket] = None,
        cancel_event: Optional[Event] = None,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.probes = probes
        self.max_workers = max(max_workers, 1)
        self.chunk_size = max(chunk_size, 1)
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self.cancel_event = cancel_event or Event()
        self.deadline = deadline
        self._clock = clock
        self._started: Optional[float] = None

    def run(
        self,
        items: Iterable[WorkItem],
        on_result: ResultCallback,
        on_cancelled: CancelCallback,
    ) -> ScheduleOutcome:
        outcome = ScheduleOutcome()
        pending: Dict[Future, WorkItem] = {}
        iterator = iter(items)
        self._started = self._clock()

        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="portaudit-probe")
        try:
            while not self._should_stop(outcome):
                chunk = list(islice(iterator, self.chunk_size))
                if not chunk:
                    break
                # La ronda entra solo cuando hay hueco para todo el chunk
                room = max(self.max_workers - len(chunk), 0)
                while len(pending) > room and not self._should_stop(outcome):
                    self._collect(pending, outcome, on_result, on_cancelled, block=True)

                for item in chunk:
                    if not self._wait_for_slot(pending, outcome, on_result, on_cancelled):
                        break
                    if self.rate_limiter is not None and not self._acquire_token(outcome):
                        break
                    if self._should_stop(outcome):
                        break
                    future = pool.submit(self._execute, item)
                    pending[future] = item
                    outcome.dispatched += 1
                    self._collect(pending, outcome, on_result, on_cancelled, block=False)

            while pending:
                self._should_stop(outcome)
                self._collect(pending, outcome, on_result, on_cancelled, block=True)
        finally:
            if pending:
                # Salida anomala (p.ej. KeyboardInterrupt): liberar a los workers
                self.cancel_event.set()
            pool.shutdown(wait=True, cancel_futures=True)

        if outcome.stopped_early:
            logger.info(
                "Despacho detenido: %d despachados, %d completados, %d cancelados.",
                outcome.dispatched,
                outcome.completed,
                outcome.cancelled,
            )
        return outcome

    def _execute(self, item: WorkItem) -> PortState:
        probe = self.probes[item.technique]
        return probe.execute(item, self.timeout, self.cancel_event)

    def _wait_for_slot(
        self,
        pending: Dict[Future, WorkItem],
        outcome: ScheduleOutcome,
        on_result: ResultCallback,
        on_cancelled: CancelCallback,
    ) -> bool:
        while len(pending) >= self.max_workers:
            if self._should_stop(outcome):
                return False
            self._collect(pending, outcome, on_result, on_cancelled, block=True)
        return not self._should_stop(outcome)

    def _acquire_token(self, outcome: ScheduleOutcome) -> bool:
        assert self.rate_limiter is not None
        while not self._should_stop(outcome):
            # La espera del token nunca supera el tiempo limite restante
            if self.rate_limiter.acquire(self.cancel_event, timeout=self._remaining()):
                return True
        return False

    def _remaining(self) -> Optional[float]:
        if self.deadline is None or self._started is None:
            return None
        return max(self.deadline - (self._clock() - self._started), 0.0)

    def _should_stop(self, outcome: ScheduleOutcome) -> bool:
        if self.deadline is not None and self._started is not None and not outcome.deadline_expired:
            if self._clock() - self._started >= self.deadline:
                logger.warning("Tiempo limite de escaneo (%.1fs) alcanzado. Cancelando.", self.deadline)
                outcome.deadline_expired = True
                self.cancel_event.set()
        if self.cancel_event.is_set():
            if not outcome.deadline_expired:
                outcome.interrupted = True
            return True
        return False

    def _collect(
        self,
        pending: Dict[Future, WorkItem],
        outcome: ScheduleOutcome,
        on_result: ResultCallback,
        on_cancelled: CancelCallback,
        block: bool,
    ) -> None:
        if not pending:
            return
        done, _ = wait(
            list(pending),
            timeout=POLL_INTERVAL if block else 0,
            return_when=FIRST_COMPLETED,
        )
        for future in done:
            item = pending.pop(future)
            try:
                state = future.result()
            except ProbeCancelled:
                outcome.cancelled += 1
                on_cancelled(item)
                continue
            except Exception as exc:
                logger.warning(
                    "[%s] Fallo la sonda %s en %d/%s: %s",
                    item.target,
                    item.technique.value,
                    item.port,
                    item.protocol,
                    format_exception(exc),
                )
                state = PortState(item=item, status=PortStatus.UNKNOWN, reason=f"error: {format_exception(exc)}")
            outcome.completed += 1
            on_result(state)
