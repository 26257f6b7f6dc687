"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

from ..errors import NotFoundError
from ..models import Run, Workflow, WorkflowStatus
from .repository import WorkflowRepository, check_run_owner


def _decode(value: Any) -> dict:
    # asyncpg returns JSONB columns as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow documents and run records using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            try:
                await self._ensure_schema(conn)
            except Exception:
                await conn.close()
                raise
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS bizflow_workflows (
                id TEXT PRIMARY KEY,
                owner_id TEXT,
                status TEXT NOT NULL,
                document JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS bizflow_runs (
                seq SERIAL PRIMARY KEY,
                id TEXT UNIQUE NOT NULL,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                record JSONB NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def load(self, workflow_id: str) -> Workflow:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM bizflow_workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        if not row:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return Workflow.from_document(_decode(row["document"]))

    async def save(self, workflow: Workflow) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO bizflow_workflows (id, owner_id, status, document, created_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE SET
                    owner_id = EXCLUDED.owner_id,
                    status = EXCLUDED.status,
                    document = EXCLUDED.document
                """,
                workflow.id,
                workflow.owner_id,
                workflow.status.value,
                json.dumps(workflow.to_document()),
                workflow.created_at,
            )
        finally:
            await conn.close()

    async def delete(self, workflow_id: str) -> bool:
        conn = await self._connect()
        try:
            await conn.execute("DELETE FROM bizflow_runs WHERE workflow_id = $1", workflow_id)
            result = await conn.execute(
                "DELETE FROM bizflow_workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        return result.split()[-1] != "0"

    async def list_workflows(
        self, owner_id: str | None = None, status: WorkflowStatus | None = None
    ) -> list[Workflow]:
        query = "SELECT document FROM bizflow_workflows WHERE TRUE"
        params: list[Any] = []
        if owner_id is not None:
            params.append(owner_id)
            query += f" AND owner_id = ${len(params)}"
        if status is not None:
            params.append(WorkflowStatus(status).value)
            query += f" AND status = ${len(params)}"
        query += " ORDER BY created_at DESC"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [Workflow.from_document(_decode(r["document"])) for r in rows]

    async def append_run(self, workflow_id: str, run: Run) -> None:
        check_run_owner(workflow_id, run)
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO bizflow_runs (id, workflow_id, status, record) VALUES ($1, $2, $3, $4)",
                run.id,
                workflow_id,
                run.status.value,
                json.dumps(run.to_record()),
            )
        finally:
            await conn.close()

    async def list_runs(self, workflow_id: str) -> list[Run]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT record FROM bizflow_runs WHERE workflow_id = $1 ORDER BY seq DESC",
                workflow_id,
            )
        finally:
            await conn.close()
        return [Run.from_record(_decode(r["record"])) for r in rows]

    async def get_run(self, run_id: str) -> Run | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT record FROM bizflow_runs WHERE id = $1", run_id)
        finally:
            await conn.close()
        if not row:
            return None
        return Run.from_record(_decode(row["record"]))
