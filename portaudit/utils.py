from __future__ import annotations

import logging
import signal
import sys
from pathlib import Path
from threading import Event, Lock
from types import FrameType
from typing import Any, List, Optional

_INTERRUPT_LOCK = Lock()
_INTERRUPT_EVENT: Optional[Event] = None
_PREVIOUS_HANDLER: Any = None


class _ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str, datefmt: Optional[str], use_color: bool) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        if self.use_color and record.levelno in self.COLORS:
            color = self.COLORS[record.levelno]
            original_levelname = record.levelname
            record.levelname = f"{color}{original_levelname}{self.RESET}"
            try:
                return super().format(record)
            finally:
                record.levelname = original_levelname
        return super().format(record)


def configure_logging(level: str = "info") -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger()
    logger.setLevel(numeric_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    formatter = _ColorFormatter(
        fmt="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        use_color=handler.stream.isatty(),
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # scapy es muy verboso en su logger de runtime
    logging.getLogger("scapy.runtime").setLevel(logging.ERROR)


def load_targets_from_file(path: Path) -> List[str]:
    """Read scan targets from a host list.

    Entries may be separated by newlines, spaces or commas. Everything after
    ``#`` on a line is ignored.
    """
    if not path.exists():
        raise FileNotFoundError(f"No existe el archivo de hosts: {path}")

    targets: List[str] = []
    with path.open("r", encoding="utf-8", errors="ignore") as handler:
        for raw in handler:
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            targets.extend(line.replace(",", " ").split())
    return targets


def _handle_sigint(signum: int, frame: Optional[FrameType]) -> None:
    event = _INTERRUPT_EVENT
    if event is None:
        raise KeyboardInterrupt
    with _INTERRUPT_LOCK:
        if event.is_set():
            print("\n[!] Interrupcion repetida. Finalizando inmediatamente.", file=sys.stderr)
            raise KeyboardInterrupt

        event.set()
        print(
            "\n[!] Interrupcion solicitada. Cerrando sondas en curso y generando reporte parcial...",
            file=sys.stderr,
        )


def setup_interrupt_handling() -> Event:
    """Route SIGINT into a cancellation event.

    The first Ctrl+C sets the returned event so the scan stops dispatching and
    reports what it has; a second one raises ``KeyboardInterrupt``.
    """
    global _INTERRUPT_EVENT, _PREVIOUS_HANDLER
    if _INTERRUPT_EVENT is None:
        _INTERRUPT_EVENT = Event()
        _PREVIOUS_HANDLER = signal.signal(signal.SIGINT, _handle_sigint)
        siginterrupt = getattr(signal, "siginterrupt", None)
        if siginterrupt:
            siginterrupt(signal.SIGINT, False)
    return _INTERRUPT_EVENT


def restore_interrupt_handling() -> None:
    global _INTERRUPT_EVENT, _PREVIOUS_HANDLER
    if _INTERRUPT_EVENT is None:
        return
    previous = signal.default_int_handler if _PREVIOUS_HANDLER is None else _PREVIOUS_HANDLER
    signal.signal(signal.SIGINT, previous)
    _INTERRUPT_EVENT = None
    _PREVIOUS_HANDLER = None


def format_exception(exc: BaseException) -> str:
    return f"{exc.__class__.__name__}: {exc}"
