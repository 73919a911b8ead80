"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..contracts import QuestionState, RunState, SignalPayload, StepStatus, utcnow
from .models import PendingQuestion, RunRecord, StepRecord, WorkItem
from .repository import WorkflowRepository

_ACTIVE_STATES = (RunState.RUNNING.value, RunState.BLOCKED.value)


def _affected(status: str) -> int:
    """Return the row count from an asyncpg command tag like ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist pipeline state using PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS work_items (
                id TEXT PRIMARY KEY,
                external_id TEXT NOT NULL,
                identifier TEXT,
                status TEXT NOT NULL,
                parent_id TEXT,
                team_id TEXT,
                title TEXT,
                description TEXT,
                version INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                dedupe_key TEXT NOT NULL,
                item_id TEXT NOT NULL,
                phase TEXT NOT NULL,
                state TEXT NOT NULL,
                current_step TEXT,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        # at most one running or blocked run per dedupe key
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_active_dedupe
            ON runs (dedupe_key) WHERE state IN ('running', 'blocked')
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                error TEXT,
                output JSONB
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS questions (
                id TEXT PRIMARY KEY,
                item_id TEXT NOT NULL,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                key TEXT NOT NULL,
                question_type TEXT NOT NULL,
                comment_id TEXT NOT NULL UNIQUE,
                state TEXT NOT NULL,
                response_type TEXT,
                selected_option TEXT,
                custom_text TEXT,
                responded_by TEXT,
                responded_at TIMESTAMPTZ,
                source_comment_id TEXT,
                timeout_at TIMESTAMPTZ NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS deliveries (
                delivery_id TEXT PRIMARY KEY,
                received_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    @staticmethod
    def _row_to_item(row: asyncpg.Record) -> WorkItem:
        return WorkItem(
            id=row["id"],
            external_id=row["external_id"],
            identifier=row["identifier"] or "",
            status=row["status"],
            parent_id=row["parent_id"],
            team_id=row["team_id"],
            title=row["title"] or "",
            description=row["description"] or "",
            version=row["version"],
        )

    @staticmethod
    def _row_to_question(row: asyncpg.Record) -> PendingQuestion:
        return PendingQuestion(**dict(row))

    @staticmethod
    def _row_to_step(row: asyncpg.Record) -> StepRecord:
        data = dict(row)
        if data["output"] is not None:
            data["output"] = json.loads(data["output"])
        return StepRecord(**data)

    # ------------------------------------------------------------------
    async def save_item(self, item: WorkItem) -> WorkItem:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO work_items (id, external_id, identifier, status, parent_id, team_id, title, description, version)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (id) DO UPDATE SET
                    external_id = EXCLUDED.external_id,
                    identifier = COALESCE(NULLIF(EXCLUDED.identifier, ''), work_items.identifier),
                    parent_id = COALESCE(EXCLUDED.parent_id, work_items.parent_id),
                    team_id = COALESCE(EXCLUDED.team_id, work_items.team_id),
                    title = COALESCE(NULLIF(EXCLUDED.title, ''), work_items.title),
                    description = COALESCE(NULLIF(EXCLUDED.description, ''), work_items.description),
                    version = CASE WHEN work_items.status <> EXCLUDED.status
                                   THEN work_items.version + 1 ELSE work_items.version END,
                    status = EXCLUDED.status
                RETURNING *
                """,
                item.id,
                item.external_id,
                item.identifier,
                item.status,
                item.parent_id,
                item.team_id,
                item.title,
                item.description,
                item.version,
            )
        finally:
            await conn.close()
        return self._row_to_item(row)

    async def get_item(self, item_id: str) -> WorkItem | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM work_items WHERE id = $1", item_id)
        finally:
            await conn.close()
        return self._row_to_item(row) if row else None

    async def list_children(self, parent_id: str) -> list[WorkItem]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM work_items WHERE parent_id = $1 ORDER BY id", parent_id
            )
        finally:
            await conn.close()
        return [self._row_to_item(r) for r in rows]

    async def compare_and_set_status(
        self, item_id: str, expected_version: int, status: str
    ) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE work_items SET status = $1, version = version + 1 WHERE id = $2 AND version = $3",
                status,
                item_id,
                expected_version,
            )
        finally:
            await conn.close()
        return _affected(result) == 1

    # ------------------------------------------------------------------
    async def create_run(self, run: RunRecord) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                INSERT INTO runs (run_id, dedupe_key, item_id, phase, state, current_step, error, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT DO NOTHING
                """,
                run.run_id,
                run.dedupe_key,
                run.item_id,
                run.phase.value,
                run.state.value,
                run.current_step,
                run.error,
                run.created_at,
                run.updated_at,
            )
        finally:
            await conn.close()
        return _affected(result) == 1

    async def get_run(self, run_id: str) -> RunRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM runs WHERE run_id = $1", run_id)
            if not row:
                return None
            steps_rows = await conn.fetch(
                "SELECT * FROM step_history WHERE run_id = $1 ORDER BY id", run_id
            )
        finally:
            await conn.close()
        return RunRecord(**dict(row), steps=[self._row_to_step(r) for r in steps_rows])

    async def list_runs(self, item_id: Optional[str] = None) -> list[RunRecord]:
        conn = await self._connect()
        try:
            if item_id is None:
                rows = await conn.fetch("SELECT * FROM runs ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM runs WHERE item_id = $1 ORDER BY created_at", item_id
                )
        finally:
            await conn.close()
        return [RunRecord(**dict(r)) for r in rows]

    async def find_active_run(self, dedupe_key: str) -> RunRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT run_id FROM runs WHERE dedupe_key = $1 AND state = ANY($2::text[])",
                dedupe_key,
                list(_ACTIVE_STATES),
            )
        finally:
            await conn.close()
        return await self.get_run(row["run_id"]) if row else None

    async def mark_step_started(self, run_id: str, step_name: str) -> None:
        now = utcnow()
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "UPDATE runs SET current_step = $1, updated_at = $2 WHERE run_id = $3",
                    step_name,
                    now,
                    run_id,
                )
                reopened = await conn.execute(
                    """
                    UPDATE step_history SET attempts = attempts + 1, status = NULL, completed_at = NULL
                    WHERE run_id = $1 AND step_name = $2 AND (completed_at IS NULL OR status = $3)
                    """,
                    run_id,
                    step_name,
                    StepStatus.BLOCKED.value,
                )
                if not _affected(reopened):
                    await conn.execute(
                        "INSERT INTO step_history (run_id, step_name, attempts, started_at) VALUES ($1, $2, 1, $3)",
                        run_id,
                        step_name,
                        now,
                    )
        finally:
            await conn.close()

    async def mark_step_completed(
        self,
        run_id: str,
        step_name: str,
        status: StepStatus,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        now = utcnow()
        encoded = json.dumps(output, default=str) if output is not None else None
        conn = await self._connect()
        try:
            updated = await conn.execute(
                """
                UPDATE step_history
                SET completed_at = $1, status = $2, output = $3, error = $4
                WHERE run_id = $5 AND step_name = $6 AND completed_at IS NULL
                """,
                now,
                status.value,
                encoded,
                error,
                run_id,
                step_name,
            )
            if not _affected(updated):
                await conn.execute(
                    """
                    INSERT INTO step_history (run_id, step_name, status, attempts, started_at, completed_at, output, error)
                    VALUES ($1, $2, $3, 0, $4, $4, $5, $6)
                    """,
                    run_id,
                    step_name,
                    status.value,
                    now,
                    encoded,
                    error,
                )
        finally:
            await conn.close()

    async def set_run_state(
        self,
        run_id: str,
        state: RunState,
        error: Optional[str] = None,
        current_step: Optional[str] = None,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE runs SET state = $1, error = $2,
                    current_step = COALESCE($3, current_step), updated_at = $4
                WHERE run_id = $5 AND state <> $6
                """,
                state.value,
                error,
                current_step,
                utcnow(),
                run_id,
                RunState.CANCELLED.value,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_question(self, question: PendingQuestion) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO questions (id, item_id, run_id, step_name, key, question_type, comment_id, state, timeout_at, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                question.id,
                question.item_id,
                question.run_id,
                question.step_name,
                question.key,
                question.question_type.value,
                question.comment_id,
                question.state.value,
                question.timeout_at,
                question.created_at,
            )
        finally:
            await conn.close()

    async def _fetch_question(self, query: str, *params: Any) -> PendingQuestion | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(query, *params)
        finally:
            await conn.close()
        return self._row_to_question(row) if row else None

    async def get_question(self, question_id: str) -> PendingQuestion | None:
        return await self._fetch_question(
            "SELECT * FROM questions WHERE id = $1", question_id
        )

    async def find_question_by_comment(self, comment_id: str) -> PendingQuestion | None:
        return await self._fetch_question(
            "SELECT * FROM questions WHERE comment_id = $1", comment_id
        )

    async def find_question(
        self, run_id: str, step_name: str, key: str
    ) -> PendingQuestion | None:
        return await self._fetch_question(
            "SELECT * FROM questions WHERE run_id = $1 AND step_name = $2 AND key = $3",
            run_id,
            step_name,
            key,
        )

    async def list_questions(
        self, run_id: Optional[str] = None, state: Optional[QuestionState] = None
    ) -> list[PendingQuestion]:
        clauses, params = [], []
        if run_id is not None:
            params.append(run_id)
            clauses.append(f"run_id = ${len(params)}")
        if state is not None:
            params.append(state.value)
            clauses.append(f"state = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT * FROM questions{where} ORDER BY created_at", *params
            )
        finally:
            await conn.close()
        return [self._row_to_question(r) for r in rows]

    async def resolve_question(
        self,
        question_id: str,
        state: QuestionState,
        answer: Optional[SignalPayload] = None,
    ) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE questions
                SET state = $1, response_type = $2, selected_option = $3, custom_text = $4,
                    responded_by = $5, responded_at = $6, source_comment_id = $7
                WHERE id = $8 AND state = $9
                """,
                state.value,
                answer.response_type.value if answer else None,
                answer.selected_option if answer else None,
                answer.custom_text if answer else None,
                answer.responded_by if answer else None,
                answer.responded_at if answer else utcnow(),
                answer.source_comment_id if answer else None,
                question_id,
                QuestionState.PENDING.value,
            )
        finally:
            await conn.close()
        return _affected(result) == 1

    # ------------------------------------------------------------------
    async def record_delivery(self, delivery_id: str) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "INSERT INTO deliveries (delivery_id, received_at) VALUES ($1, $2) ON CONFLICT DO NOTHING",
                delivery_id,
                utcnow(),
            )
        finally:
            await conn.close()
        return _affected(result) == 1
