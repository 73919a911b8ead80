"""Data models for persisted pipeline state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from ..contracts import (
    Phase,
    QuestionState,
    QuestionType,
    ResponseType,
    RunState,
    SignalPayload,
    StepStatus,
    utcnow,
)


class WorkItem(BaseModel):
    """Local mirror of a tracked issue.

    Events often carry only the status. On save, the fields in
    ``MERGED_ITEM_FIELDS`` keep their stored value when the incoming one is
    empty.
    """

    id: str
    external_id: str
    identifier: str = ""
    status: str
    parent_id: Optional[str] = None
    team_id: Optional[str] = None
    title: str = ""
    description: str = ""
    version: int = 0


MERGED_ITEM_FIELDS = ("identifier", "parent_id", "team_id", "title", "description")


class StepRecord(BaseModel):
    """Record of an individual step execution."""

    id: Optional[int] = None
    run_id: str
    step_name: str
    status: Optional[StepStatus] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    output: Optional[Any] = None


class RunRecord(BaseModel):
    """Persisted pipeline run."""

    run_id: str
    dedupe_key: str
    item_id: str
    phase: Phase
    state: RunState = RunState.RUNNING
    current_step: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    steps: List[StepRecord] = Field(default_factory=list)

    def finished_step(self, step_name: str) -> Optional[StepRecord]:
        """Return the step's record if it already ran to an outcome.

        Blocked steps are not finished; they run again on resume.
        """
        for step in self.steps:
            if step.step_name == step_name and step.status in (
                StepStatus.COMPLETED,
                StepStatus.SKIPPED,
                StepStatus.FAILED,
            ):
                return step
        return None


class PendingQuestion(BaseModel):
    """A question posted by a step and awaiting a human reply."""

    id: str
    item_id: str
    run_id: str
    step_name: str
    key: str = "0"
    question_type: QuestionType
    comment_id: str
    state: QuestionState = QuestionState.PENDING
    response_type: Optional[ResponseType] = None
    selected_option: Optional[str] = None
    custom_text: Optional[str] = None
    responded_by: Optional[str] = None
    responded_at: Optional[datetime] = None
    source_comment_id: Optional[str] = None
    timeout_at: datetime
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.state == QuestionState.PENDING

    def as_signal(self) -> SignalPayload:
        """Return the recorded answer as a signal payload."""
        if self.state == QuestionState.ANSWERED:
            response_type = self.response_type
        else:
            response_type = ResponseType.TIMEOUT
        return SignalPayload(
            question_id=self.id,
            response_type=response_type,
            selected_option=self.selected_option,
            custom_text=self.custom_text,
            responded_by=self.responded_by or "system",
            responded_at=self.responded_at or utcnow(),
            source_comment_id=self.source_comment_id,
        )
