from __future__ import annotations

import time
from threading import Event, Lock
from typing import Callable, Optional


class TokenBucket:
    """Thread-safe token bucket bounding probe issuance.

    ``rate`` tokens are added per second up to ``burst``. The bucket starts
    full, so the first ``burst`` acquisitions do not wait.
    """

    def __init__(
        self,
        rate: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        try:
            rate = float(rate)
        except (TypeError, ValueError):
            raise ValueError(f"rate debe ser un numero positivo, recibido {rate!r}")
        if rate <= 0:
            raise ValueError(f"rate debe ser mayor que 0, recibido {rate}")
        if int(burst) <= 0:
            raise ValueError(f"burst debe ser mayor que 0, recibido {burst}")

        self.rate = rate
        self.burst = int(burst)
        self._clock = clock
        self._tokens = float(self.burst)
        self._last_update = clock()
        self._lock = Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_update
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_update = now

    def try_acquire(self) -> float:
        """Take a token if one is available.

        Returns 0.0 on success, otherwise the seconds to wait before retrying.
        """
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return 0.0
            return (1 - self._tokens) / self.rate

    def acquire(self, cancel_event: Optional[Event] = None, timeout: Optional[float] = None) -> bool:
        """Block until a token is taken.

        Returns False if ``cancel_event`` fires or ``timeout`` seconds pass
        before a token becomes available.
        """
        expires = None if timeout is None else time.monotonic() + timeout
        while True:
            wait_time = self.try_acquire()
            if wait_time == 0.0:
                return True
            if expires is not None:
                remaining = expires - time.monotonic()
                if remaining <= 0:
                    return False
                wait_time = min(wait_time, remaining)
            # Dormir fuera del lock para no bloquear a otros hilos
            if cancel_event is not None:
                if cancel_event.wait(wait_time):
                    return False
            else:
                time.sleep(wait_time)
