"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any

from ..errors import NotFoundError
from ..models import Run, Workflow, WorkflowStatus
from .repository import WorkflowRepository, check_run_owner


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow documents and run records using SQLite."""

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
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                owner_id TEXT,
                status TEXT NOT NULL,
                document TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                record TEXT NOT NULL
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
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Repository API
    async def load(self, workflow_id: str) -> Workflow:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM workflows WHERE id = ?", workflow_id
        )
        if not row:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return Workflow.from_document(json.loads(row["document"]))

    async def save(self, workflow: Workflow) -> None:
        document = workflow.to_document()
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, owner_id, status, document, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner_id = excluded.owner_id,
                status = excluded.status,
                document = excluded.document
            """,
            workflow.id,
            workflow.owner_id,
            workflow.status.value,
            json.dumps(document),
            document["created_at"],
        )

    async def delete(self, workflow_id: str) -> bool:
        await asyncio.to_thread(
            self._execute, "DELETE FROM runs WHERE workflow_id = ?", workflow_id
        )
        deleted = await asyncio.to_thread(
            self._execute, "DELETE FROM workflows WHERE id = ?", workflow_id
        )
        return deleted > 0

    async def list_workflows(
        self, owner_id: str | None = None, status: WorkflowStatus | None = None
    ) -> list[Workflow]:
        query = "SELECT document FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        if status is not None:
            query += " AND status = ?"
            params.append(WorkflowStatus(status).value)
        query += " ORDER BY created_at DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Workflow.from_document(json.loads(r["document"])) for r in rows]

    async def append_run(self, workflow_id: str, run: Run) -> None:
        check_run_owner(workflow_id, run)
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO runs (id, workflow_id, status, record) VALUES (?, ?, ?, ?)",
            run.id,
            workflow_id,
            run.status.value,
            json.dumps(run.to_record()),
        )

    async def list_runs(self, workflow_id: str) -> list[Run]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT record FROM runs WHERE workflow_id = ? ORDER BY seq DESC",
            workflow_id,
        )
        return [Run.from_record(json.loads(r["record"])) for r in rows]

    async def get_run(self, run_id: str) -> Run | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT record FROM runs WHERE id = ?", run_id
        )
        if not row:
            return None
        return Run.from_record(json.loads(row["record"]))
