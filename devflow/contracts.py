"""Core message contracts for the devflow pipeline."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import EventValidationError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    REFINEMENT = "refinement"
    USER_STORY = "user_story"
    TECHNICAL_PLAN = "technical_plan"
    CODE_GENERATION = "code_generation"


class RunState(str, Enum):
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (RunState.RUNNING, RunState.BLOCKED)


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class QuestionType(str, Enum):
    CLARIFICATION = "clarification"
    SOLUTION_CHOICE = "solution_choice"
    APPROVAL = "approval"


class QuestionState(str, Enum):
    PENDING = "pending"
    ANSWERED = "answered"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class ResponseType(str, Enum):
    OPTION_SELECTED = "option_selected"
    CUSTOM_TEXT = "custom_text"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


# ----------------------------------------------------------------------
# Inbound tracker events


class _InboundEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    delivery_id: Optional[str] = Field(default=None, alias="deliveryId")


class IssueEvent(_InboundEvent):
    """Issue created or updated in the tracker."""

    event_type: Literal["issue"] = Field(alias="eventType")
    action: Literal["create", "update"]
    item_id: str = Field(alias="itemId", min_length=1)
    identifier: str = ""
    status: str
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    team_id: Optional[str] = Field(default=None, alias="teamId")
    actor_id: Optional[str] = Field(default=None, alias="actorId")
    title: str = ""
    description: str = ""

    @property
    def kind(self) -> str:
        return "issue-created" if self.action == "create" else "issue-updated"


class CommentEvent(_InboundEvent):
    """Comment created or updated on a tracked issue."""

    event_type: Literal["comment"] = Field(alias="eventType")
    action: Literal["create", "update"]
    comment_id: str = Field(alias="commentId", min_length=1)
    item_id: str = Field(alias="itemId", min_length=1)
    parent_comment_id: Optional[str] = Field(default=None, alias="parentCommentId")
    body: str
    author_id: str = Field(alias="authorId")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")

    @property
    def kind(self) -> str:
        return "comment-created" if self.action == "create" else "comment-updated"


InboundEvent = Annotated[Union[IssueEvent, CommentEvent], Field(discriminator="event_type")]

_EVENT_ADAPTER: TypeAdapter[Union[IssueEvent, CommentEvent]] = TypeAdapter(InboundEvent)


def parse_event(raw: Any) -> Union[IssueEvent, CommentEvent]:
    """Validate a raw webhook body into a tagged event.

    Raises:
        EventValidationError: If the payload matches no known event shape.
    """
    if isinstance(raw, (IssueEvent, CommentEvent)):
        return raw
    try:
        if isinstance(raw, (str, bytes)):
            return _EVENT_ADAPTER.validate_json(raw)
        return _EVENT_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise EventValidationError(str(e)) from e


# ----------------------------------------------------------------------
# Human answers and signals


class QuestionOption(BaseModel):
    """A lettered choice offered with a question."""

    id: str
    label: str
    description: str = ""
    pros: List[str] = Field(default_factory=list)
    cons: List[str] = Field(default_factory=list)
    recommended: bool = False


class ParsedAnswer(BaseModel):
    """Structured answer recognised in reply text."""

    response_type: ResponseType
    selected_option: Optional[str] = None
    custom_text: Optional[str] = None


class SignalPayload(BaseModel):
    """Answer delivered to a suspended run."""

    model_config = ConfigDict(populate_by_name=True)

    question_id: str = Field(alias="questionId")
    response_type: ResponseType = Field(alias="responseType")
    selected_option: Optional[str] = Field(default=None, alias="selectedOption")
    custom_text: Optional[str] = Field(default=None, alias="customText")
    responded_by: str = Field(alias="respondedBy")
    responded_at: datetime = Field(default_factory=utcnow, alias="respondedAt")
    source_comment_id: Optional[str] = Field(default=None, alias="sourceCommentId")


class SignalMessage(BaseModel):
    """Envelope published on a run's signal topic.

    Carries either an answer or timeout ``signal``, or ``cancelled`` when an
    operator cancelled the run from any process.
    """

    run_id: str
    signal: Optional[SignalPayload] = None
    cancelled: bool = False
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "SignalMessage":
        return cls.model_validate_json(data)


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    ALREADY_ANSWERED = "already_answered"
    NOT_A_QUESTION_REPLY = "not_a_question_reply"


class DeliveryOutcome(BaseModel):
    status: DeliveryStatus
    question_id: Optional[str] = None
    run_id: Optional[str] = None
    signal: Optional[SignalPayload] = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


# ----------------------------------------------------------------------
# Propagation and routing results


class CascadeResult(BaseModel):
    parent_id: str
    target_status: str
    cascaded_ids: List[str] = Field(default_factory=list)
    skipped_ids: List[str] = Field(default_factory=list)
    failed_ids: List[str] = Field(default_factory=list)

    @property
    def children_count(self) -> int:
        return len(self.cascaded_ids) + len(self.skipped_ids) + len(self.failed_ids)


class RollupResult(BaseModel):
    parent_id: Optional[str] = None
    changed: bool = False
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    incomplete_ids: List[str] = Field(default_factory=list)


class CascadeSummary(BaseModel):
    children_count: int
    cascaded_ids: List[str] = Field(default_factory=list)
    skipped_ids: List[str] = Field(default_factory=list)


class RouteOutcome(BaseModel):
    """Result returned to the webhook caller."""

    accepted: bool
    reason: Optional[str] = None
    run_id: Optional[str] = None
    phase: Optional[Phase] = None
    cascaded: Optional[CascadeSummary] = None
    delivery: Optional[DeliveryOutcome] = None
    command: Optional[str] = None

    @classmethod
    def no_trigger(cls, reason: str = "not a trigger") -> "RouteOutcome":
        return cls(accepted=False, reason=reason)


# ----------------------------------------------------------------------
# Pipeline outcomes


class PipelineOutcome(BaseModel):
    """Terminal or suspended result of one executor pass."""

    run_id: str
    state: RunState
    outputs: Dict[str, Any] = Field(default_factory=dict)
    failed_step: Optional[str] = None
    error: Optional[str] = None
    pending_question_ids: List[str] = Field(default_factory=list)
    non_blocking_failures: List[str] = Field(default_factory=list)
