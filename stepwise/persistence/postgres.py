"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from typing import Iterable, Optional

import asyncpg

from ..contracts import WorkflowRun, utcnow
from .models import SignalRecord, StepRecord
from .repository import WorkflowRepository


def _load_json(value):
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                run_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                data JSONB NOT NULL,
                seq SERIAL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                idempotency_key TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                status TEXT,
                output JSONB,
                UNIQUE (idempotency_key, attempt)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS signal_inbox (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                signal_type TEXT NOT NULL,
                payload JSONB NOT NULL,
                received_at TIMESTAMPTZ NOT NULL,
                acknowledged BOOLEAN NOT NULL DEFAULT FALSE
            )
            """
        )

    @staticmethod
    def _step_from_row(r: asyncpg.Record) -> StepRecord:
        return StepRecord(
            id=r["id"],
            run_id=r["run_id"],
            step_name=r["step_name"],
            idempotency_key=r["idempotency_key"],
            attempt=r["attempt"],
            started_at=r["started_at"],
            completed_at=r["completed_at"],
            status=r["status"],
            output=_load_json(r["output"]),
        )

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO workflow_runs (run_id, kind, status, data) VALUES ($1, $2, $3, $4)",
                run.run_id,
                run.kind,
                run.status,
                run.model_dump_json(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise ValueError(f"Run {run.run_id} already exists") from exc
        finally:
            await conn.close()

    async def save_run(self, run: WorkflowRun) -> None:
        run.updated_at = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflow_runs SET status = $1, data = $2 WHERE run_id = $3",
                run.status,
                run.model_dump_json(),
                run.run_id,
            )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM workflow_runs WHERE run_id = $1", run_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return WorkflowRun.model_validate(_load_json(row["data"]))

    async def list_runs(self, statuses: Optional[Iterable[str]] = None) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            if statuses is None:
                rows = await conn.fetch("SELECT data FROM workflow_runs ORDER BY seq")
            else:
                rows = await conn.fetch(
                    "SELECT data FROM workflow_runs WHERE status = ANY($1::text[]) ORDER BY seq",
                    list(statuses),
                )
        finally:
            await conn.close()
        return [WorkflowRun.model_validate(_load_json(r["data"])) for r in rows]

    async def mark_step_started(
        self, run_id: str, step_name: str, idempotency_key: str, attempt: int = 1
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO step_history (run_id, step_name, idempotency_key, attempt, started_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (idempotency_key, attempt) DO NOTHING
                """,
                run_id,
                step_name,
                idempotency_key,
                attempt,
                utcnow(),
            )
        finally:
            await conn.close()

    async def mark_step_completed(
        self,
        idempotency_key: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE step_history
                SET completed_at = $1, status = $2, output = $3
                WHERE idempotency_key = $4 AND attempt = $5 AND completed_at IS NULL
                """,
                utcnow(),
                status,
                json.dumps(output or {}),
                idempotency_key,
                attempt,
            )
        finally:
            await conn.close()

    async def get_step_result(self, idempotency_key: str) -> StepRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                SELECT * FROM step_history
                WHERE idempotency_key = $1 AND status = 'completed'
                ORDER BY id LIMIT 1
                """,
                idempotency_key,
            )
        finally:
            await conn.close()
        return self._step_from_row(row) if row else None

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM step_history WHERE run_id = $1 ORDER BY id", run_id
            )
        finally:
            await conn.close()
        return [self._step_from_row(r) for r in rows]

    async def truncate_history(self, run_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute("DELETE FROM step_history WHERE run_id = $1", run_id)
        finally:
            await conn.close()

    async def append_signal(self, run_id: str, signal_type: str, payload: dict) -> int:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                """
                INSERT INTO signal_inbox (run_id, signal_type, payload, received_at)
                VALUES ($1, $2, $3, $4) RETURNING id
                """,
                run_id,
                signal_type,
                json.dumps(payload),
                utcnow(),
            )
        finally:
            await conn.close()

    async def ack_signal(self, signal_id: int) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE signal_inbox SET acknowledged = TRUE WHERE id = $1", signal_id
            )
        finally:
            await conn.close()

    async def pending_signals(self, run_id: str) -> list[SignalRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM signal_inbox
                WHERE run_id = $1 AND NOT acknowledged ORDER BY id
                """,
                run_id,
            )
        finally:
            await conn.close()
        return [
            SignalRecord(
                id=r["id"],
                run_id=r["run_id"],
                signal_type=r["signal_type"],
                payload=_load_json(r["payload"]),
                received_at=r["received_at"],
                acknowledged=r["acknowledged"],
            )
            for r in rows
        ]
