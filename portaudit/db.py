from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Iterable, List, Optional

from .errors import VulnerabilityLookupError
from .models import VulnerabilityRecord
from .versions import VersionPredicate

logger = logging.getLogger(__name__)


class SqliteKnowledgeBase:
    """Vulnerability records stored in a local SQLite file.

    Lookups are keyed by lower-cased service/product name. A single
    connection is shared between threads behind a lock, so concurrent
    readers need no extra coordination.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = Lock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise VulnerabilityLookupError(str(path), exc) from exc
        self._conn.row_factory = sqlite3.Row
        try:
            self._initialize_schema()
        except sqlite3.Error as exc:
            self._conn.close()
            raise VulnerabilityLookupError(str(path), exc) from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self):
        with self._lock:
            cursor = self._conn.cursor()
            try:
                yield cursor
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            finally:
                cursor.close()

    def _initialize_schema(self) -> None:
        with self._transaction() as cur:
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS vulnerabilities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    cve_id TEXT NOT NULL,
                    service TEXT NOT NULL,
                    version_predicate TEXT NOT NULL DEFAULT '',
                    cvss REAL NOT NULL,
                    description TEXT,
                    UNIQUE(cve_id, service, version_predicate)
                );

                CREATE INDEX IF NOT EXISTS idx_vulnerabilities_service
                    ON vulnerabilities(service);
                """
            )

    def import_records(self, records: Iterable[VulnerabilityRecord]) -> int:
        """Insert or replace records; returns how many rows were written."""
        rows = []
        for record in records:
            # Valida el predicado antes de persistirlo
            VersionPredicate.parse(record.version_predicate)
            rows.append(
                (
                    record.cve_id,
                    record.service.lower(),
                    record.version_predicate,
                    float(record.cvss),
                    record.description,
                )
            )
        with self._transaction() as cur:
            cur.executemany(
                """
                INSERT OR REPLACE INTO vulnerabilities (
                    cve_id, service, version_predicate, cvss, description
                ) VALUES (?, ?, ?, ?, ?)
                """,
                rows,
            )
        logger.debug("Importados %d registros en %s", len(rows), self.path)
        return len(rows)

    def count(self) -> int:
        with self._transaction() as cur:
            cur.execute("SELECT COUNT(*) AS total FROM vulnerabilities")
            return cur.fetchone()["total"]

    def lookup(self, service_name: str, version: Optional[str] = None) -> List[VulnerabilityRecord]:
        try:
            with self._transaction() as cur:
                cur.execute(
                    """
                    SELECT cve_id, service, version_predicate, cvss, description
                    FROM vulnerabilities
                    WHERE service = ?
                    ORDER BY cve_id
                    """,
                    (service_name.lower(),),
                )
                rows = cur.fetchall()
        except sqlite3.Error as exc:
            raise VulnerabilityLookupError(service_name, exc) from exc

        records = [
            VulnerabilityRecord(
                cve_id=row["cve_id"],
                service=row["service"],
                version_predicate=row["version_predicate"],
                cvss=row["cvss"],
                description=row["description"] or "",
            )
            for row in rows
        ]
        if version is None:
            return records
        return [record for record in records if VersionPredicate.parse(record.version_predicate).admits(version)]


def load_records(path: Path) -> List[VulnerabilityRecord]:
    """Read vulnerability records from a JSON array of objects.

    Each object needs ``cve_id``, ``service`` and ``cvss``; ``version``
    (a predicate such as ``"<7.4"``) and ``description`` are optional.
    """
    if not path.exists():
        raise FileNotFoundError(f"No existe el archivo de vulnerabilidades: {path}")

    with path.open("r", encoding="utf-8") as handler:
        payload = json.load(handler)
    if not isinstance(payload, list):
        raise ValueError(f"Se esperaba una lista JSON en {path}")

    records: List[VulnerabilityRecord] = []
    for index, entry in enumerate(payload):
        try:
            records.append(
                VulnerabilityRecord(
                    cve_id=str(entry["cve_id"]),
                    service=str(entry["service"]).lower(),
                    version_predicate=str(entry.get("version") or ""),
                    cvss=float(entry["cvss"]),
                    description=str(entry.get("description") or ""),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Registro {index} invalido en {path}: {exc}") from exc
    return records
