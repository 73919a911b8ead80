"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Set

from ..contracts import QuestionState, RunState, SignalPayload, StepStatus, utcnow
from .models import MERGED_ITEM_FIELDS, PendingQuestion, RunRecord, StepRecord, WorkItem
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store pipeline state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._items: Dict[str, WorkItem] = {}
        self._runs: Dict[str, RunRecord] = {}
        self._questions: Dict[str, PendingQuestion] = {}
        self._deliveries: Set[str] = set()
        self._step_id = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_item(self, item: WorkItem) -> WorkItem:
        async with self._lock:
            existing = self._items.get(item.id)
            if existing is None:
                stored = item.model_copy(deep=True)
            else:
                kept = {
                    field: getattr(existing, field)
                    for field in MERGED_ITEM_FIELDS
                    if not getattr(item, field)
                }
                stored = item.model_copy(update={**kept, "version": existing.version})
                if existing.status != item.status:
                    stored.version += 1
            self._items[item.id] = stored
            return stored.model_copy()

    async def get_item(self, item_id: str) -> WorkItem | None:
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    async def list_children(self, parent_id: str) -> list[WorkItem]:
        return [i.model_copy() for i in self._items.values() if i.parent_id == parent_id]

    async def compare_and_set_status(
        self, item_id: str, expected_version: int, status: str
    ) -> bool:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.version != expected_version:
                return False
            item.status = status
            item.version += 1
            return True

    # ------------------------------------------------------------------
    async def create_run(self, run: RunRecord) -> bool:
        async with self._lock:
            for existing in self._runs.values():
                if existing.dedupe_key == run.dedupe_key and existing.state.is_active:
                    return False
            self._runs[run.run_id] = run.model_copy(deep=True)
            return True

    async def get_run(self, run_id: str) -> RunRecord | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, item_id: Optional[str] = None) -> list[RunRecord]:
        return [
            r.model_copy(deep=True)
            for r in self._runs.values()
            if item_id is None or r.item_id == item_id
        ]

    async def find_active_run(self, dedupe_key: str) -> RunRecord | None:
        for run in self._runs.values():
            if run.dedupe_key == dedupe_key and run.state.is_active:
                return run.model_copy(deep=True)
        return None

    async def mark_step_started(self, run_id: str, step_name: str) -> None:
        run = self._runs.get(run_id)
        if not run:
            return
        run.current_step = step_name
        run.updated_at = utcnow()
        for step in run.steps:
            if step.step_name == step_name and step.completed_at is None:
                step.attempts += 1
                return
        # a blocked step is reopened on resume rather than duplicated
        for step in run.steps:
            if step.step_name == step_name and step.status == StepStatus.BLOCKED:
                step.status = None
                step.completed_at = None
                step.attempts += 1
                return
        self._step_id += 1
        run.steps.append(
            StepRecord(
                id=self._step_id,
                run_id=run_id,
                step_name=step_name,
                attempts=1,
                started_at=utcnow(),
            )
        )

    async def mark_step_completed(
        self,
        run_id: str,
        step_name: str,
        status: StepStatus,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        run = self._runs.get(run_id)
        if not run:
            return
        for step in run.steps:
            if step.step_name == step_name and step.completed_at is None:
                step.completed_at = utcnow()
                step.status = status
                step.output = output
                step.error = error
                return
        # skipped steps are recorded without a start
        self._step_id += 1
        now = utcnow()
        run.steps.append(
            StepRecord(
                id=self._step_id,
                run_id=run_id,
                step_name=step_name,
                status=status,
                started_at=now,
                completed_at=now,
                output=output,
                error=error,
            )
        )

    async def set_run_state(
        self,
        run_id: str,
        state: RunState,
        error: Optional[str] = None,
        current_step: Optional[str] = None,
    ) -> None:
        run = self._runs.get(run_id)
        if run and run.state != RunState.CANCELLED:
            run.state = state
            run.error = error
            if current_step is not None:
                run.current_step = current_step
            run.updated_at = utcnow()

    # ------------------------------------------------------------------
    async def create_question(self, question: PendingQuestion) -> None:
        self._questions[question.id] = question.model_copy()

    async def get_question(self, question_id: str) -> PendingQuestion | None:
        q = self._questions.get(question_id)
        return q.model_copy() if q else None

    async def find_question_by_comment(self, comment_id: str) -> PendingQuestion | None:
        for q in self._questions.values():
            if q.comment_id == comment_id:
                return q.model_copy()
        return None

    async def find_question(
        self, run_id: str, step_name: str, key: str
    ) -> PendingQuestion | None:
        for q in self._questions.values():
            if q.run_id == run_id and q.step_name == step_name and q.key == key:
                return q.model_copy()
        return None

    async def list_questions(
        self, run_id: Optional[str] = None, state: Optional[QuestionState] = None
    ) -> list[PendingQuestion]:
        return [
            q.model_copy()
            for q in sorted(self._questions.values(), key=lambda q: q.created_at)
            if (run_id is None or q.run_id == run_id)
            and (state is None or q.state == state)
        ]

    async def resolve_question(
        self,
        question_id: str,
        state: QuestionState,
        answer: Optional[SignalPayload] = None,
    ) -> bool:
        async with self._lock:
            q = self._questions.get(question_id)
            if q is None or q.state != QuestionState.PENDING:
                return False
            q.state = state
            q.responded_at = answer.responded_at if answer else utcnow()
            if answer is not None:
                q.response_type = answer.response_type
                q.selected_option = answer.selected_option
                q.custom_text = answer.custom_text
                q.responded_by = answer.responded_by
                q.source_comment_id = answer.source_comment_id
            return True

    # ------------------------------------------------------------------
    async def record_delivery(self, delivery_id: str) -> bool:
        async with self._lock:
            if delivery_id in self._deliveries:
                return False
            self._deliveries.add(delivery_id)
            return True
