"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import WorkflowRun, utcnow
from .models import SignalRecord, StepRecord
from .repository import WorkflowRepository


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                run_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                idempotency_key TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                status TEXT,
                output TEXT,
                UNIQUE (idempotency_key, attempt)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS signal_inbox (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                signal_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                received_at TEXT NOT NULL,
                acknowledged INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.lastrowid

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    @staticmethod
    def _step_from_row(r: sqlite3.Row) -> StepRecord:
        return StepRecord(
            id=r["id"],
            run_id=r["run_id"],
            step_name=r["step_name"],
            idempotency_key=r["idempotency_key"],
            attempt=r["attempt"],
            started_at=datetime.fromisoformat(r["started_at"]) if r["started_at"] else None,
            completed_at=datetime.fromisoformat(r["completed_at"]) if r["completed_at"] else None,
            status=r["status"],
            output=json.loads(r["output"]) if r["output"] else None,
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(self, run: WorkflowRun) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO workflow_runs (run_id, kind, status, data) VALUES (?, ?, ?, ?)",
                run.run_id,
                run.kind,
                run.status,
                run.model_dump_json(),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Run {run.run_id} already exists") from exc

    async def save_run(self, run: WorkflowRun) -> None:
        run.updated_at = utcnow()
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_runs SET status = ?, data = ? WHERE run_id = ?",
            run.status,
            run.model_dump_json(),
            run.run_id,
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM workflow_runs WHERE run_id = ?",
            run_id,
        )
        if not row:
            return None
        return WorkflowRun.model_validate_json(row["data"])

    async def list_runs(self, statuses: Optional[Iterable[str]] = None) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data, status FROM workflow_runs ORDER BY rowid",
        )
        wanted = set(statuses) if statuses is not None else None
        return [
            WorkflowRun.model_validate_json(row["data"])
            for row in rows
            if wanted is None or row["status"] in wanted
        ]

    async def mark_step_started(
        self, run_id: str, step_name: str, idempotency_key: str, attempt: int = 1
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO step_history
                (run_id, step_name, idempotency_key, attempt, started_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            run_id,
            step_name,
            idempotency_key,
            attempt,
            utcnow().isoformat(),
        )

    async def mark_step_completed(
        self,
        idempotency_key: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_history
            SET completed_at = ?, status = ?, output = ?
            WHERE idempotency_key = ? AND attempt = ? AND completed_at IS NULL
            """,
            utcnow().isoformat(),
            status,
            json.dumps(output or {}),
            idempotency_key,
            attempt,
        )

    async def get_step_result(self, idempotency_key: str) -> StepRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM step_history WHERE idempotency_key = ? AND status = 'completed' ORDER BY id LIMIT 1",
            idempotency_key,
        )
        return self._step_from_row(row) if row else None

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_history WHERE run_id = ? ORDER BY id",
            run_id,
        )
        return [self._step_from_row(r) for r in rows]

    async def truncate_history(self, run_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM step_history WHERE run_id = ?", run_id
        )

    async def append_signal(self, run_id: str, signal_type: str, payload: dict) -> int:
        return await asyncio.to_thread(
            self._execute,
            "INSERT INTO signal_inbox (run_id, signal_type, payload, received_at) VALUES (?, ?, ?, ?)",
            run_id,
            signal_type,
            json.dumps(payload),
            utcnow().isoformat(),
        )

    async def ack_signal(self, signal_id: int) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE signal_inbox SET acknowledged = 1 WHERE id = ?",
            signal_id,
        )

    async def pending_signals(self, run_id: str) -> list[SignalRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM signal_inbox WHERE run_id = ? AND acknowledged = 0 ORDER BY id",
            run_id,
        )
        return [
            SignalRecord(
                id=r["id"],
                run_id=r["run_id"],
                signal_type=r["signal_type"],
                payload=json.loads(r["payload"]),
                received_at=datetime.fromisoformat(r["received_at"]),
                acknowledged=bool(r["acknowledged"]),
            )
            for r in rows
        ]

    def close(self) -> None:
        self._conn.close()
