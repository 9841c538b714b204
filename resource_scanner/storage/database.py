"""
SQLite store for scan results.

One row per domain in ``scans`` and the resources of its latest
successful scan in ``resources``.  Every result is written in a single
``BEGIN IMMEDIATE`` transaction (upsert scan, replace resources), so a
re-scan overwrites the previous record and a failed write leaves the
previous one untouched.
"""

from __future__ import annotations

import os
import pathlib
import sqlite3
import threading
from typing import Any

from resource_scanner.models import scan
from resource_scanner.utils import errors, logger

log = logger.create_logger("Database")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scans (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    domain TEXT NOT NULL UNIQUE,
    finalUrl TEXT,
    success INTEGER NOT NULL,
    error TEXT,
    screenshotPath TEXT,
    scannedAt DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS resources (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scanId INTEGER NOT NULL,
    url TEXT NOT NULL,
    resourceType TEXT NOT NULL,
    isExternal INTEGER NOT NULL DEFAULT 1,
    hasSri INTEGER,
    FOREIGN KEY(scanId) REFERENCES scans(id)
);

CREATE INDEX IF NOT EXISTS idx_resources_scanId ON resources(scanId);
"""

# Columns added after the first schema version: (table, column, DDL type).
_ADDED_COLUMNS = (
    ("scans", "screenshotPath", "TEXT"),
    ("resources", "hasSri", "INTEGER"),
)

_UPSERT_SCAN = """
INSERT INTO scans (domain, finalUrl, success, error, screenshotPath, scannedAt)
VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
ON CONFLICT(domain) DO UPDATE
   SET finalUrl = excluded.finalUrl,
       success = excluded.success,
       error = excluded.error,
       screenshotPath = excluded.screenshotPath,
       scannedAt = CURRENT_TIMESTAMP
"""

_INSERT_RESOURCE = """
INSERT INTO resources (scanId, url, resourceType, isExternal, hasSri)
VALUES (?, ?, ?, ?, ?)
"""

# Rows from the pre-"resources" layout that only tracked external scripts.
_MIGRATE_LEGACY = """
INSERT INTO resources (scanId, url, resourceType, isExternal)
SELECT e.scanId, e.scriptUrl, 'script', 1
  FROM externalScripts AS e
 WHERE NOT EXISTS (
       SELECT 1 FROM resources AS r
        WHERE r.scanId = e.scanId AND r.url = e.scriptUrl
 )
"""


def _sri_value(has_sri: bool | None) -> int | None:
    if has_sri is None:
        return None
    return 1 if has_sri else 0


class ScanStore:
    """Transactional writer (and small query surface) over the results DB."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = str(path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    def open(self) -> None:
        """Open (creating if needed) the database and bring the schema up to date.

        Raises:
            StoreUnavailableError: The file cannot be opened or migrated.
        """
        if self.path != ":memory:":
            pathlib.Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            # Autocommit mode: transactions are issued explicitly.
            conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(_SCHEMA)
            self._migrate(conn)
        except sqlite3.Error as exc:
            raise errors.StoreUnavailableError(f"Cannot open database {self.path}: {exc}") from exc
        self._conn = conn
        log.info("SQLite database ready", {"path": self.path})

    def close(self) -> None:
        """Close the connection.  Safe to call twice."""
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
        log.debug("SQLite database closed", {"path": self.path})

    def _migrate(self, conn: sqlite3.Connection) -> None:
        for table, column, ddl_type in _ADDED_COLUMNS:
            existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
            if column not in existing:
                log.info("Adding missing column", {"table": table, "column": column})
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}")

        legacy = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'externalScripts'"
        ).fetchone()
        if legacy is not None:
            copied = conn.execute(_MIGRATE_LEGACY).rowcount
            if copied:
                log.info("Migrated legacy externalScripts rows", {"rows": copied})

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise errors.StoreUnavailableError("Database is not open")
        return self._conn

    # ==========================================================================
    # Writes
    # ==========================================================================

    def write_result(self, result: scan.ScanResult) -> int:
        """Persist *result* atomically, replacing any earlier record for the domain.

        Failed scans keep their scan row but have no resources.

        Returns:
            The scan row id.

        Raises:
            PersistenceError: The write was rejected and rolled back.
            StoreUnavailableError: The database itself failed (locked, I/O).
        """
        with self._lock:
            conn = self._connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise errors.StoreUnavailableError(
                    f"Cannot start transaction: {exc}", domain=result.domain
                ) from exc

            try:
                conn.execute(
                    _UPSERT_SCAN,
                    (
                        result.domain,
                        result.final_url,
                        1 if result.success else 0,
                        result.error,
                        result.screenshot_path,
                    ),
                )
                scan_id = conn.execute("SELECT id FROM scans WHERE domain = ?", (result.domain,)).fetchone()["id"]
                conn.execute("DELETE FROM resources WHERE scanId = ?", (scan_id,))
                if result.success and result.resources:
                    conn.executemany(
                        _INSERT_RESOURCE,
                        [
                            (scan_id, r.url, r.resource_type, 1 if r.is_external else 0, _sri_value(r.has_sri))
                            for r in result.resources
                        ],
                    )
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback(conn, result.domain)
                if isinstance(exc, (sqlite3.IntegrityError, sqlite3.ProgrammingError, sqlite3.InterfaceError)):
                    raise errors.PersistenceError(
                        f"Write rejected for {result.domain}: {exc}", domain=result.domain
                    ) from exc
                raise errors.StoreUnavailableError(
                    f"Database failure writing {result.domain}: {exc}", domain=result.domain
                ) from exc
            except BaseException:
                self._rollback(conn, result.domain)
                raise

        log.debug(
            "Result committed",
            {"domain": result.domain, "scanId": scan_id, "success": result.success, "resources": len(result.resources)},
        )
        return scan_id

    @staticmethod
    def _rollback(conn: sqlite3.Connection, domain: str) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            log.warn("Rollback failed", {"domain": domain, "error": str(exc)})

    # ==========================================================================
    # Queries
    # ==========================================================================

    def get_scan(self, domain: str) -> dict[str, Any] | None:
        """Return the scan row for *domain*, or ``None``."""
        with self._lock:
            row = self._connection().execute("SELECT * FROM scans WHERE domain = ?", (domain,)).fetchone()
        return dict(row) if row is not None else None

    def get_resources(self, domain: str) -> list[dict[str, Any]]:
        """Return the resource rows of *domain*'s scan, in insertion order."""
        with self._lock:
            rows = self._connection().execute(
                """
                SELECT r.url, r.resourceType, r.isExternal, r.hasSri
                  FROM resources AS r JOIN scans AS s ON s.id = r.scanId
                 WHERE s.domain = ?
                 ORDER BY r.id
                """,
                (domain,),
            ).fetchall()
        return [dict(row) for row in rows]

    def count_scans(self) -> int:
        with self._lock:
            return self._connection().execute("SELECT COUNT(*) FROM scans").fetchone()[0]
