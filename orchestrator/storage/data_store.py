"""Unified data storage layer using SQLite and file-based storage."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional

import aiosqlite

from common.models.session import TestSession
from common.models.use_case import UseCase
from common.utils import ensure_dir, generate_use_case_id, load_yaml, utcnow

logger = logging.getLogger(__name__)

# SQLite schema
SCHEMA_SQL = """
-- Use cases: the full model is kept as JSON, hot fields are columns
CREATE TABLE IF NOT EXISTS use_cases (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT DEFAULT 'IDLE',
    priority INTEGER,
    test_session_id TEXT,
    user_id TEXT,
    payload JSON NOT NULL,
    created_at TIMESTAMP,
    updated_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_use_cases_status ON use_cases(status);
CREATE INDEX IF NOT EXISTS idx_use_cases_user ON use_cases(user_id);

-- Test sessions
CREATE TABLE IF NOT EXISTS test_sessions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT DEFAULT 'IDLE',
    user_id TEXT,
    payload JSON NOT NULL,
    created_at TIMESTAMP,
    updated_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_test_sessions_status ON test_sessions(status);
"""


class DataStore:
    """Unified data access layer using files + SQLite."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.db_path = self.base_path / "stress.db"
        self._init_directories()
        self._init_database_sync()

    def _init_directories(self) -> None:
        """Create required directories."""
        for d in ["jmx", "csv", "results", "reports", "logs"]:
            ensure_dir(self.base_path / d)
        logger.info(f"Initialized data directories at {self.base_path}")

    def _init_database_sync(self) -> None:
        """Initialize SQLite database synchronously."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.executescript(SCHEMA_SQL)
            conn.commit()
            logger.info(f"Initialized SQLite database at {self.db_path}")
        finally:
            conn.close()

    @property
    def jmx_path(self) -> Path:
        return self.base_path / "jmx"

    @property
    def csv_path(self) -> Path:
        return self.base_path / "csv"

    @property
    def results_path(self) -> Path:
        return self.base_path / "results"

    @property
    def reports_path(self) -> Path:
        return self.base_path / "reports"

    @property
    def logs_path(self) -> Path:
        return self.base_path / "logs"

    # ==================== Use cases ====================

    async def save_use_case(self, use_case: UseCase) -> UseCase:
        """Insert or update a use case."""
        now = utcnow()
        if use_case.created_at is None:
            use_case.created_at = now

        async with aiosqlite.connect(self.db_path) as conn:
            await conn.execute("""
                INSERT INTO use_cases (
                    id, name, status, priority, test_session_id, user_id,
                    payload, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    status = excluded.status,
                    priority = excluded.priority,
                    test_session_id = excluded.test_session_id,
                    user_id = excluded.user_id,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
            """, (
                use_case.id,
                use_case.name,
                use_case.status.value,
                use_case.priority,
                use_case.test_session_id,
                use_case.user_id,
                use_case.model_dump_json(),
                use_case.created_at.isoformat(),
                now.isoformat(),
            ))
            await conn.commit()
        return use_case

    async def get_use_case(self, use_case_id: str) -> Optional[UseCase]:
        """Get a use case by ID."""
        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute(
                "SELECT payload FROM use_cases WHERE id = ?", (use_case_id,)
            )
            row = await cursor.fetchone()
        return UseCase.model_validate_json(row[0]) if row else None

    async def get_use_cases(self, use_case_ids: list[str]) -> dict[str, UseCase]:
        """Get several use cases at once, keyed by ID. Unknown IDs are absent."""
        if not use_case_ids:
            return {}
        placeholders = ", ".join("?" for _ in use_case_ids)
        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute(
                f"SELECT payload FROM use_cases WHERE id IN ({placeholders})",
                list(use_case_ids),
            )
            rows = await cursor.fetchall()
        use_cases = [UseCase.model_validate_json(row[0]) for row in rows]
        return {uc.id: uc for uc in use_cases}

    async def list_use_cases(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[UseCase]:
        """List use cases, optionally filtered by owner and status."""
        query = "SELECT payload FROM use_cases"
        clauses, values = [], []
        if user_id is not None:
            clauses.append("user_id = ?")
            values.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            values.append(status)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"

        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute(query, values)
            rows = await cursor.fetchall()
        return [UseCase.model_validate_json(row[0]) for row in rows]

    async def delete_use_case(self, use_case_id: str) -> bool:
        """Delete a use case."""
        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute("DELETE FROM use_cases WHERE id = ?", (use_case_id,))
            await conn.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted use case: {use_case_id}")
        return deleted

    async def import_use_cases(self, path: str | Path) -> list[UseCase]:
        """Load use case definitions from a YAML file.

        The file holds a ``use_cases`` list. Relative test plan and data file
        paths are resolved against the file's directory.
        """
        path = Path(path)
        data = load_yaml(path)

        imported = []
        for entry in data.get("use_cases", []):
            entry = dict(entry)
            entry.setdefault("id", generate_use_case_id())
            for key in ("jmx_path", "csv_path"):
                value = entry.get(key)
                if value and not Path(value).is_absolute():
                    entry[key] = str((path.parent / value).resolve())
            imported.append(await self.save_use_case(UseCase(**entry)))

        logger.info(f"Imported {len(imported)} use cases from {path}")
        return imported

    # ==================== Test sessions ====================

    async def save_session(self, session: TestSession) -> TestSession:
        """Insert or update a test session."""
        now = utcnow()
        if session.created_at is None:
            session.created_at = now
        session.updated_at = now

        async with aiosqlite.connect(self.db_path) as conn:
            await conn.execute("""
                INSERT INTO test_sessions (id, name, status, user_id, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    status = excluded.status,
                    user_id = excluded.user_id,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
            """, (
                session.id,
                session.name,
                session.status.value,
                session.user_id,
                session.model_dump_json(),
                session.created_at.isoformat(),
                now.isoformat(),
            ))
            await conn.commit()
        return session

    async def get_session(self, session_id: str) -> Optional[TestSession]:
        """Get a test session by ID."""
        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute(
                "SELECT payload FROM test_sessions WHERE id = ?", (session_id,)
            )
            row = await cursor.fetchone()
        return TestSession.model_validate_json(row[0]) if row else None

    async def list_sessions(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[TestSession]:
        """List test sessions, newest first."""
        query = "SELECT payload FROM test_sessions"
        clauses, values = [], []
        if user_id is not None:
            clauses.append("user_id = ?")
            values.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            values.append(status)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"

        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute(query, values)
            rows = await cursor.fetchall()
        return [TestSession.model_validate_json(row[0]) for row in rows]

    # ==================== Run artifacts ====================

    def write_error_artifact(self, use_case_id: str, stamp: str, content: str) -> Path:
        """Write the error report of a failed run next to its results."""
        error_file = self.results_path / f"error_{use_case_id}_{stamp}.log"
        with open(error_file, 'w', encoding="utf-8") as f:
            f.write(content)
        logger.info(f"Error details written to: {error_file}")
        return error_file

    # ==================== Logs ====================

    def get_log_path(self, use_case_id: str = None) -> Path:
        """Get log file path."""
        if use_case_id:
            return self.logs_path / f"use_cases/{use_case_id}.log"
        return self.logs_path / "orchestrator.log"

    def write_log(self, use_case_id: str, message: str) -> None:
        """Append a line to the use case's run history log."""
        log_file = self.get_log_path(use_case_id)
        ensure_dir(log_file.parent)

        timestamp = utcnow().isoformat()
        with open(log_file, 'a') as f:
            f.write(f"[{timestamp}] {message}\n")

    def read_log(self, use_case_id: str) -> list[str]:
        """Read the run history log of a use case."""
        log_file = self.get_log_path(use_case_id)
        if not log_file.exists():
            return []
        with open(log_file) as f:
            return [line.rstrip("\n") for line in f]
