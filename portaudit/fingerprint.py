from __future__ import annotations

import statistics
from collections import Counter
from typing import Iterable, List, Optional

from .models import OSFamily, OSFingerprint, PortState, PortStatus

DEFAULT_MIN_SAMPLES = 3
INITIAL_TTLS = (32, 64, 128, 255)

LINUX_WINDOWS = {5720, 5792, 5840, 14600, 26883, 28960, 29200, 64240, 65160}
BSD_WINDOWS = {65535, 65228}

_TTL_FAMILIES = {
    32: OSFamily.WINDOWS,
    64: OSFamily.LINUX,
    128: OSFamily.WINDOWS,
    255: OSFamily.NETWORK_DEVICE,
}

JITTER_THRESHOLD = 0.5
JITTER_PENALTY = 0.1


def initial_ttl(observed: int) -> Optional[int]:
    for candidate in INITIAL_TTLS:
        if observed <= candidate:
            return candidate
    return None


def _usable(states: Iterable[PortState]) -> List[PortState]:
    return [
        state
        for state in states
        if state.ttl is not None and state.status in (PortStatus.OPEN, PortStatus.CLOSED)
    ]


def fingerprint_host(states: Iterable[PortState], min_samples: int = DEFAULT_MIN_SAMPLES) -> OSFingerprint:
    """Best-effort OS family from telemetry already collected by the probes.

    Votes on the initial TTL (observed TTL rounded up to 32/64/128/255),
    uses SYN/ACK window sizes to split Linux from BSD/macOS and lowers the
    confidence when response times are erratic. Returns an Unknown
    fingerprint when fewer than ``min_samples`` responses carried a TTL.
    """
    samples = _usable(states)
    if len(samples) < min_samples:
        return OSFingerprint(samples=len(samples), details="muestras insuficientes")

    votes = Counter(initial_ttl(state.ttl) for state in samples if state.ttl is not None)
    votes.pop(None, None)
    if not votes:
        return OSFingerprint(samples=len(samples), details="TTL fuera de rango")

    # Desempate determinista por TTL inicial menor
    ttl, count = min(votes.items(), key=lambda entry: (-entry[1], entry[0]))
    agreement = count / len(samples)
    if agreement <= 0.5:
        return OSFingerprint(samples=len(samples), initial_ttl=ttl, details="TTL inconsistentes")

    family = _TTL_FAMILIES[ttl]
    confidence = 0.5 + 0.4 * agreement
    details = [f"ttl inicial {ttl} ({count}/{len(samples)})"]

    windows = [state.window for state in samples if state.status is PortStatus.OPEN and state.window]
    if family is OSFamily.LINUX and windows:
        linux_hits = sum(1 for window in windows if window in LINUX_WINDOWS)
        bsd_hits = sum(1 for window in windows if window in BSD_WINDOWS)
        if bsd_hits > linux_hits:
            family = OSFamily.BSD
        if linux_hits != bsd_hits:
            confidence += 0.05
            details.append(f"ventanas {sorted(set(windows))}")

    rtts = [state.rtt for state in samples if state.rtt]
    if len(rtts) >= 2:
        mean = statistics.fmean(rtts)
        jitter = statistics.pstdev(rtts) / mean if mean > 0 else 0.0
        if jitter > JITTER_THRESHOLD:
            confidence -= JITTER_PENALTY
            details.append(f"jitter {jitter:.2f}")

    return OSFingerprint(
        family=family,
        confidence=round(min(max(confidence, 0.0), 1.0), 3),
        samples=len(samples),
        initial_ttl=ttl,
        details="; ".join(details),
    )
