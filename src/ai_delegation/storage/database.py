"""SQLite record store with WAL mode."""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from ai_delegation.exceptions import CollaboratorError, NotFoundError


class SQLiteRecordStore:
    """Record store backed by a single append-only SQLite table.

    Every put inserts a row, so append-only domains keep their full history
    and mutable aspects resolve to the newest row (latest write wins). Only
    ``delete`` removes rows.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)

    def _ensure_dirs(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with WAL mode."""
        self._ensure_dirs()
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as exc:
            raise CollaboratorError(f"cannot open {self.db_path}: {exc}") from exc
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise CollaboratorError(f"sqlite error on {self.db_path}: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_tables(self) -> None:
        """Create all tables if they don't exist."""
        with self.connect() as conn:
            conn.executescript(_SCHEMA)

    def put(self, domain: str, entity: str, aspect: str, data: bytes) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO records (domain, entity, aspect, data) VALUES (?, ?, ?, ?)",
                (domain, entity, aspect, sqlite3.Binary(data)),
            )

    def get(self, domain: str, entity: str, aspect: str) -> bytes:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT data FROM records WHERE domain = ? AND entity = ? AND aspect = ? "
                "ORDER BY id DESC LIMIT 1",
                (domain, entity, aspect),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"{domain}/{entity}/{aspect} not found")
        return bytes(row["data"])

    def scan(self, domain: str, entity: str) -> list[tuple[str, bytes]]:
        with self.connect() as conn:
            rows = conn.execute(
                """SELECT r.aspect, r.data FROM records r
                   JOIN (
                       SELECT aspect, MAX(id) AS last_id FROM records
                       WHERE domain = ? AND entity = ?
                       GROUP BY aspect
                   ) latest ON r.id = latest.last_id
                   ORDER BY r.id""",
                (domain, entity),
            ).fetchall()
        return [(row["aspect"], bytes(row["data"])) for row in rows]

    def delete(self, domain: str, entity: str, aspect: str) -> None:
        """Remove every row of an aspect, history included."""
        with self.connect() as conn:
            conn.execute(
                "DELETE FROM records WHERE domain = ? AND entity = ? AND aspect = ?",
                (domain, entity, aspect),
            )


_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    domain TEXT NOT NULL,
    entity TEXT NOT NULL,
    aspect TEXT NOT NULL,
    data BLOB NOT NULL,
    written_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_records_key ON records(domain, entity, aspect, id);

INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""
