"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import QuestionState, RunState, SignalPayload, StepStatus, utcnow
from .models import PendingQuestion, RunRecord, StepRecord, WorkItem
from .repository import WorkflowRepository


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist pipeline state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._write_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(
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
            );
            CREATE INDEX IF NOT EXISTS idx_work_items_parent ON work_items (parent_id);
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                dedupe_key TEXT NOT NULL,
                item_id TEXT NOT NULL,
                phase TEXT NOT NULL,
                state TEXT NOT NULL,
                current_step TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_runs_dedupe ON runs (dedupe_key, state);
            CREATE TABLE IF NOT EXISTS step_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                completed_at TEXT,
                error TEXT,
                output TEXT
            );
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
                responded_at TEXT,
                source_comment_id TEXT,
                timeout_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS deliveries (
                delivery_id TEXT PRIMARY KEY,
                received_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._write_lock:
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

    def _insert_run_if_free(self, run: RunRecord) -> bool:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT 1 FROM runs WHERE dedupe_key = ? AND state IN (?, ?)",
                (run.dedupe_key, RunState.RUNNING.value, RunState.BLOCKED.value),
            )
            if cur.fetchone():
                return False
            cur.execute(
                "INSERT INTO runs (run_id, dedupe_key, item_id, phase, state, current_step, error, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    run.run_id,
                    run.dedupe_key,
                    run.item_id,
                    run.phase.value,
                    run.state.value,
                    run.current_step,
                    run.error,
                    _ts(run.created_at),
                    _ts(run.updated_at),
                ),
            )
            self._conn.commit()
            return True

    def _upsert_item(self, item: WorkItem) -> None:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                INSERT INTO work_items (id, external_id, identifier, status, parent_id, team_id, title, description, version)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    external_id = excluded.external_id,
                    identifier = COALESCE(NULLIF(excluded.identifier, ''), work_items.identifier),
                    parent_id = COALESCE(excluded.parent_id, work_items.parent_id),
                    team_id = COALESCE(excluded.team_id, work_items.team_id),
                    title = COALESCE(NULLIF(excluded.title, ''), work_items.title),
                    description = COALESCE(NULLIF(excluded.description, ''), work_items.description),
                    version = CASE WHEN work_items.status != excluded.status
                                   THEN work_items.version + 1 ELSE work_items.version END,
                    status = excluded.status
                """,
                (
                    item.id,
                    item.external_id,
                    item.identifier,
                    item.status,
                    item.parent_id,
                    item.team_id,
                    item.title,
                    item.description,
                    item.version,
                ),
            )
            self._conn.commit()

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> WorkItem:
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
    def _row_to_run(row: sqlite3.Row, steps: list[StepRecord]) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            dedupe_key=row["dedupe_key"],
            item_id=row["item_id"],
            phase=row["phase"],
            state=row["state"],
            current_step=row["current_step"],
            error=row["error"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            steps=steps,
        )

    @staticmethod
    def _row_to_question(row: sqlite3.Row) -> PendingQuestion:
        return PendingQuestion(
            id=row["id"],
            item_id=row["item_id"],
            run_id=row["run_id"],
            step_name=row["step_name"],
            key=row["key"],
            question_type=row["question_type"],
            comment_id=row["comment_id"],
            state=row["state"],
            response_type=row["response_type"],
            selected_option=row["selected_option"],
            custom_text=row["custom_text"],
            responded_by=row["responded_by"],
            responded_at=_parse_ts(row["responded_at"]),
            source_comment_id=row["source_comment_id"],
            timeout_at=_parse_ts(row["timeout_at"]),
            created_at=_parse_ts(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Repository API: work items
    async def save_item(self, item: WorkItem) -> WorkItem:
        await asyncio.to_thread(self._upsert_item, item)
        stored = await self.get_item(item.id)
        assert stored is not None
        return stored

    async def get_item(self, item_id: str) -> WorkItem | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM work_items WHERE id = ?", item_id
        )
        return self._row_to_item(row) if row else None

    async def list_children(self, parent_id: str) -> list[WorkItem]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM work_items WHERE parent_id = ? ORDER BY id",
            parent_id,
        )
        return [self._row_to_item(r) for r in rows]

    async def compare_and_set_status(
        self, item_id: str, expected_version: int, status: str
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE work_items SET status = ?, version = version + 1 WHERE id = ? AND version = ?",
            status,
            item_id,
            expected_version,
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Repository API: runs
    async def create_run(self, run: RunRecord) -> bool:
        return await asyncio.to_thread(self._insert_run_if_free, run)

    async def _load_steps(self, run_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_history WHERE run_id = ? ORDER BY id",
            run_id,
        )
        return [
            StepRecord(
                id=r["id"],
                run_id=r["run_id"],
                step_name=r["step_name"],
                status=r["status"],
                attempts=r["attempts"],
                started_at=_parse_ts(r["started_at"]),
                completed_at=_parse_ts(r["completed_at"]),
                error=r["error"],
                output=json.loads(r["output"]) if r["output"] else None,
            )
            for r in rows
        ]

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM runs WHERE run_id = ?", run_id
        )
        if not row:
            return None
        return self._row_to_run(row, await self._load_steps(run_id))

    async def list_runs(self, item_id: Optional[str] = None) -> list[RunRecord]:
        if item_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM runs ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM runs WHERE item_id = ? ORDER BY created_at",
                item_id,
            )
        return [self._row_to_run(r, []) for r in rows]

    async def find_active_run(self, dedupe_key: str) -> RunRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM runs WHERE dedupe_key = ? AND state IN (?, ?)",
            dedupe_key,
            RunState.RUNNING.value,
            RunState.BLOCKED.value,
        )
        if not row:
            return None
        return self._row_to_run(row, await self._load_steps(row["run_id"]))

    async def mark_step_started(self, run_id: str, step_name: str) -> None:
        now = utcnow().isoformat()
        await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET current_step = ?, updated_at = ? WHERE run_id = ?",
            step_name,
            now,
            run_id,
        )
        reopened = await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_history SET attempts = attempts + 1, status = NULL, completed_at = NULL
            WHERE run_id = ? AND step_name = ? AND (completed_at IS NULL OR status = ?)
            """,
            run_id,
            step_name,
            StepStatus.BLOCKED.value,
        )
        if reopened:
            return
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO step_history (run_id, step_name, attempts, started_at) VALUES (?, ?, 1, ?)",
            run_id,
            step_name,
            now,
        )

    async def mark_step_completed(
        self,
        run_id: str,
        step_name: str,
        status: StepStatus,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        now = utcnow().isoformat()
        encoded = json.dumps(output, default=str) if output is not None else None
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_history
            SET completed_at = ?, status = ?, output = ?, error = ?
            WHERE run_id = ? AND step_name = ? AND completed_at IS NULL
            """,
            now,
            status.value,
            encoded,
            error,
            run_id,
            step_name,
        )
        if updated:
            return
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO step_history (run_id, step_name, status, attempts, started_at, completed_at, output, error) VALUES (?, ?, ?, 0, ?, ?, ?, ?)",
            run_id,
            step_name,
            status.value,
            now,
            now,
            encoded,
            error,
        )

    async def set_run_state(
        self,
        run_id: str,
        state: RunState,
        error: Optional[str] = None,
        current_step: Optional[str] = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET state = ?, error = ?, current_step = COALESCE(?, current_step), updated_at = ? WHERE run_id = ? AND state != ?",
            state.value,
            error,
            current_step,
            utcnow().isoformat(),
            run_id,
            RunState.CANCELLED.value,
        )

    # ------------------------------------------------------------------
    # Repository API: questions
    async def create_question(self, question: PendingQuestion) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO questions (id, item_id, run_id, step_name, key, question_type, comment_id, state, timeout_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            question.id,
            question.item_id,
            question.run_id,
            question.step_name,
            question.key,
            question.question_type.value,
            question.comment_id,
            question.state.value,
            _ts(question.timeout_at),
            _ts(question.created_at),
        )

    async def get_question(self, question_id: str) -> PendingQuestion | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM questions WHERE id = ?", question_id
        )
        return self._row_to_question(row) if row else None

    async def find_question_by_comment(self, comment_id: str) -> PendingQuestion | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM questions WHERE comment_id = ?", comment_id
        )
        return self._row_to_question(row) if row else None

    async def find_question(
        self, run_id: str, step_name: str, key: str
    ) -> PendingQuestion | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM questions WHERE run_id = ? AND step_name = ? AND key = ?",
            run_id,
            step_name,
            key,
        )
        return self._row_to_question(row) if row else None

    async def list_questions(
        self, run_id: Optional[str] = None, state: Optional[QuestionState] = None
    ) -> list[PendingQuestion]:
        clauses, params = [], []
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(run_id)
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT * FROM questions{where} ORDER BY created_at",
            *params,
        )
        return [self._row_to_question(r) for r in rows]

    async def resolve_question(
        self,
        question_id: str,
        state: QuestionState,
        answer: Optional[SignalPayload] = None,
    ) -> bool:
        responded_at = answer.responded_at if answer else utcnow()
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE questions
            SET state = ?, response_type = ?, selected_option = ?, custom_text = ?,
                responded_by = ?, responded_at = ?, source_comment_id = ?
            WHERE id = ? AND state = ?
            """,
            state.value,
            answer.response_type.value if answer else None,
            answer.selected_option if answer else None,
            answer.custom_text if answer else None,
            answer.responded_by if answer else None,
            responded_at.isoformat(),
            answer.source_comment_id if answer else None,
            question_id,
            QuestionState.PENDING.value,
        )
        return updated == 1

    # ------------------------------------------------------------------
    async def record_delivery(self, delivery_id: str) -> bool:
        inserted = await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO deliveries (delivery_id, received_at) VALUES (?, ?)",
            delivery_id,
            utcnow().isoformat(),
        )
        return inserted == 1
