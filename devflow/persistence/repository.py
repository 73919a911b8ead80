"""Repository abstraction for pipeline state persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from ..contracts import QuestionState, RunState, SignalPayload, StepStatus
from .models import PendingQuestion, RunRecord, WorkItem


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Status and question writes are compare-and-set: they only apply when the
    stored value still matches the expected one and report whether they did.
    """

    # Work items -------------------------------------------------------
    async def save_item(self, item: WorkItem) -> WorkItem:
        """Insert or refresh an item's descriptive fields.

        An existing item keeps its ``version``; its status is overwritten
        only when ``item.status`` differs.
        """

    async def get_item(self, item_id: str) -> WorkItem | None:
        """Retrieve a work item by internal id."""

    async def list_children(self, parent_id: str) -> list[WorkItem]:
        """Return direct children of ``parent_id``."""

    async def compare_and_set_status(
        self, item_id: str, expected_version: int, status: str
    ) -> bool:
        """Set the status if the item is still at ``expected_version``."""

    # Runs -------------------------------------------------------------
    async def create_run(self, run: RunRecord) -> bool:
        """Persist a new run unless an active one shares its dedupe key."""

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Retrieve a run with its step history."""

    async def list_runs(self, item_id: Optional[str] = None) -> list[RunRecord]:
        """Return persisted runs, optionally for one item."""

    async def find_active_run(self, dedupe_key: str) -> RunRecord | None:
        """Return the running or blocked run for ``dedupe_key``."""

    async def mark_step_started(self, run_id: str, step_name: str) -> None:
        """Record start of a step; repeated calls bump the attempt count."""

    async def mark_step_completed(
        self,
        run_id: str,
        step_name: str,
        status: StepStatus,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        """Record the outcome of a step."""

    async def set_run_state(
        self,
        run_id: str,
        state: RunState,
        error: Optional[str] = None,
        current_step: Optional[str] = None,
    ) -> None:
        """Update the run's lifecycle state. A cancelled run keeps its state."""

    # Questions --------------------------------------------------------
    async def create_question(self, question: PendingQuestion) -> None:
        """Persist a newly posted question."""

    async def get_question(self, question_id: str) -> PendingQuestion | None:
        """Retrieve a question by id."""

    async def find_question_by_comment(self, comment_id: str) -> PendingQuestion | None:
        """Return the question posted as ``comment_id``."""

    async def find_question(
        self, run_id: str, step_name: str, key: str
    ) -> PendingQuestion | None:
        """Return the question a step posted under ``key``."""

    async def list_questions(
        self, run_id: Optional[str] = None, state: Optional[QuestionState] = None
    ) -> list[PendingQuestion]:
        """Return questions filtered by run and state."""

    async def resolve_question(
        self,
        question_id: str,
        state: QuestionState,
        answer: Optional[SignalPayload] = None,
    ) -> bool:
        """Move a pending question to ``state``; ``False`` if it already left pending."""

    # Deliveries -------------------------------------------------------
    async def record_delivery(self, delivery_id: str) -> bool:
        """Remember an inbound webhook delivery; ``False`` if already seen."""
