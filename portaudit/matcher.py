from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

from .errors import VulnerabilityLookupError
from .models import Finding, ScanTarget, ServiceGuess, VulnerabilityRecord
from .scoring import severity_for_cvss
from .versions import PredicateKind, VersionPredicate

logger = logging.getLogger(__name__)

SPECIFICITY = {
    PredicateKind.EXACT: 1.0,
    PredicateKind.RANGE: 0.8,
    PredicateKind.ANY: 0.5,
}


class VulnerabilityKnowledgeBase(Protocol):
    def lookup(self, service_name: str, version: Optional[str] = None) -> List[VulnerabilityRecord]:
        ...


class InMemoryKnowledgeBase:
    def __init__(self, records: Iterable[VulnerabilityRecord]) -> None:
        self._index: Dict[str, List[VulnerabilityRecord]] = defaultdict(list)
        for record in records:
            VersionPredicate.parse(record.version_predicate)
            self._index[record.service.lower()].append(record)

    def lookup(self, service_name: str, version: Optional[str] = None) -> List[VulnerabilityRecord]:
        records = list(self._index.get(service_name.lower(), ()))
        if version is None:
            return records
        return [record for record in records if VersionPredicate.parse(record.version_predicate).admits(version)]


class VulnerabilityMatcher:
    """Cross-reference service guesses with a vulnerability knowledge base.

    Each guess is looked up by product and by protocol label. Every
    applicable record becomes its own Finding (one per CVE and port).
    Predicates that need a version are skipped when the guess has none.
    Knowledge base failures surface as VulnerabilityLookupError.
    """

    def __init__(self, knowledge_base: VulnerabilityKnowledgeBase) -> None:
        self.knowledge_base = knowledge_base

    def match(
        self,
        target: ScanTarget,
        services: Mapping[Tuple[int, str], Optional[ServiceGuess]],
    ) -> List[Finding]:
        findings: List[Finding] = []
        for (port, protocol), guess in sorted(services.items()):
            if guess is None:
                continue
            findings.extend(self._match_guess(target, port, protocol, guess))
        return findings

    def _match_guess(self, target: ScanTarget, port: int, protocol: str, guess: ServiceGuess) -> List[Finding]:
        names: List[str] = []
        for name in (guess.product, guess.name):
            if name and name.lower() not in names:
                names.append(name.lower())

        seen: Set[str] = set()
        findings: List[Finding] = []
        for name in names:
            for record in self._lookup(name, guess.version):
                if record.cve_id in seen:
                    continue
                try:
                    predicate = VersionPredicate.parse(record.version_predicate)
                except ValueError:
                    logger.warning("Predicado invalido en %s: %r", record.cve_id, record.version_predicate)
                    continue
                if predicate.kind is not PredicateKind.ANY and not predicate.admits(guess.version):
                    continue
                seen.add(record.cve_id)
                findings.append(
                    Finding(
                        host=target.address,
                        port=port,
                        protocol=protocol,
                        record=record,
                        confidence=round(guess.confidence * SPECIFICITY[predicate.kind], 3),
                        severity=severity_for_cvss(record.cvss),
                    )
                )
        if findings:
            logger.debug(
                "[%s] %d/%s: %d vulnerabilidades (%s)",
                target,
                port,
                protocol,
                len(findings),
                ", ".join(finding.record.cve_id for finding in findings),
            )
        return findings

    def _lookup(self, name: str, version: Optional[str]) -> List[VulnerabilityRecord]:
        try:
            return list(self.knowledge_base.lookup(name, version))
        except VulnerabilityLookupError:
            raise
        except Exception as exc:
            raise VulnerabilityLookupError(name, exc) from exc
