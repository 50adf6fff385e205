from __future__ import annotations

import operator
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

Version = Tuple[int, ...]

_CLAUSE = re.compile(r"^(?P<op><=|>=|==|!=|<|>|=)?\s*(?P<version>[0-9][\w.\-+~]*)$")

_OPERATORS: Dict[str, Callable[[Version, Version], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "=": operator.eq,
    "!=": operator.ne,
}


class PredicateKind(str, Enum):
    EXACT = "exact"
    RANGE = "range"
    ANY = "any"


def parse_version(text: str) -> Version:
    """Numeric components of a version string: ``"7.2p2"`` -> ``(7, 2, 2)``.

    Trailing zeros are dropped so ``7.4`` and ``7.4.0`` compare equal.
    """
    parts = [int(part) for part in re.findall(r"\d+", text)]
    if not parts:
        raise ValueError(f"Version sin componentes numericos: {text!r}")
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


@dataclass(frozen=True, slots=True)
class VersionPredicate:
    text: str
    kind: PredicateKind
    clauses: Tuple[Tuple[str, Version], ...] = ()

    @classmethod
    def parse(cls, text: Optional[str]) -> "VersionPredicate":
        raw = (text or "").strip()
        if raw in ("", "*"):
            return cls(text=raw, kind=PredicateKind.ANY)

        clauses = []
        for token in raw.split(","):
            token = token.strip()
            match = _CLAUSE.match(token)
            if match is None:
                raise ValueError(f"Predicado de version invalido: {text!r}")
            op = match.group("op") or "=="
            clauses.append((op, parse_version(match.group("version"))))

        exact = len(clauses) == 1 and clauses[0][0] in ("==", "=")
        return cls(text=raw, kind=PredicateKind.EXACT if exact else PredicateKind.RANGE, clauses=tuple(clauses))

    def admits(self, version: Optional[str]) -> bool:
        if self.kind is PredicateKind.ANY:
            return True
        if not version:
            return False
        try:
            current = parse_version(version)
        except ValueError:
            return False
        return all(_OPERATORS[op](current, bound) for op, bound in self.clauses)
