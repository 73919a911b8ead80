"""Human-in-the-loop questions and answer delivery.

A step asks a question by posting a comment on the work item. The broker
persists the question as pending, and a reply to that comment written in
one of the accepted grammars resolves it exactly once and wakes the waiting
run through its signal topic.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import timedelta
from typing import List, Optional, Sequence

from .collaborators import TrackerClient
from .constants import DEFAULT_QUESTION_TIMEOUT_HOURS, DEFAULT_REJECT_REASON
from .contracts import (
    DeliveryOutcome,
    DeliveryStatus,
    ParsedAnswer,
    QuestionOption,
    QuestionState,
    QuestionType,
    ResponseType,
    RunState,
    SignalMessage,
    SignalPayload,
    utcnow,
)
from .persistence import WorkflowRepository
from .persistence.models import PendingQuestion, RunRecord
from .transports import BaseTransport, signal_topic

logger = logging.getLogger(__name__)

_OPTION_RE = re.compile(r"^OPTION\s*:\s*([A-Za-z0-9_-]+)", re.IGNORECASE)
_REJECT_REASON_RE = re.compile(r"^REJECT\s*:(.*)$", re.IGNORECASE | re.DOTALL)

TYPE_LABELS = {
    QuestionType.CLARIFICATION: "Design Clarification",
    QuestionType.SOLUTION_CHOICE: "Solution Choice",
    QuestionType.APPROVAL: "Approval Request",
}


def parse_reply(body: str) -> Optional[ParsedAnswer]:
    """Recognise an answer in reply text.

    Accepted forms, in order: ``OPTION:<id>``, ``APPROVE``,
    ``REJECT:<reason>`` and a bare ``REJECT``. Matching is case-insensitive
    and anchored at the start of the reply. Anything else is not an answer.
    """
    text = (body or "").strip()
    if not text:
        return None
    first_line = text.splitlines()[0].strip()

    match = _OPTION_RE.match(text)
    if match:
        return ParsedAnswer(
            response_type=ResponseType.OPTION_SELECTED,
            selected_option=match.group(1).upper(),
        )
    if first_line.upper() == "APPROVE":
        return ParsedAnswer(response_type=ResponseType.APPROVED)
    match = _REJECT_REASON_RE.match(text)
    if match:
        reason = match.group(1).strip() or DEFAULT_REJECT_REASON
        return ParsedAnswer(response_type=ResponseType.REJECTED, custom_text=reason)
    if first_line.upper() == "REJECT":
        return ParsedAnswer(
            response_type=ResponseType.REJECTED, custom_text=DEFAULT_REJECT_REASON
        )
    return None


def format_question_comment(
    question_id: str,
    question_type: QuestionType,
    prompt: str,
    run_id: str,
    step_name: str,
    timeout_hours: float,
    options: Optional[Sequence[QuestionOption]] = None,
    preview: Optional[str] = None,
) -> str:
    """Render a question as a Markdown tracker comment."""
    lines = [
        "## DevFlow Question",
        "",
        f"**Type:** {TYPE_LABELS[question_type]}",
        "",
        "### Question",
        prompt,
        "",
    ]
    if options:
        lines += ["### Options", "Reply with `OPTION:X` where X is the option letter:", ""]
        for option in options:
            marker = " (Recommended)" if option.recommended else ""
            lines.append(f"**{option.id}) {option.label}**{marker}")
            if option.description:
                lines.append(option.description)
            lines += [f"- {p}" for p in option.pros]
            lines += [f"- {c}" for c in option.cons]
            lines.append("")
    if question_type == QuestionType.APPROVAL:
        if preview:
            lines += ["### Preview", preview, ""]
        lines += [
            "---",
            "**Reply with:**",
            "- `APPROVE` to continue",
            "- `REJECT:reason` to request changes",
            "",
        ]
    elif not options:
        lines += [
            "**Reply with:**",
            "- `APPROVE` to accept the current assumption",
            "- `REJECT:answer` to correct it",
            "",
        ]
    lines += [
        "---",
        f"_Run: {run_id} | Step: {step_name} | Timeout: {timeout_hours:g}h | ID: {question_id[:8]}_",
    ]
    return "\n".join(lines) + "\n"


class HumanSignalBroker:
    """Post questions, correlate replies and signal waiting runs."""

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: BaseTransport,
        tracker: Optional[TrackerClient] = None,
        timeout_hours: float = DEFAULT_QUESTION_TIMEOUT_HOURS,
    ) -> None:
        self.repository = repository
        self.transport = transport
        self.tracker = tracker
        self.timeout_hours = timeout_hours

    parse_reply = staticmethod(parse_reply)

    async def post_question(
        self,
        run: RunRecord,
        question_type: QuestionType,
        prompt: str,
        options: Optional[Sequence[QuestionOption]] = None,
        *,
        step_name: Optional[str] = None,
        key: str = "0",
        timeout_hours: Optional[float] = None,
        preview: Optional[str] = None,
    ) -> PendingQuestion:
        """Publish a question on the item and persist it as pending.

        The owning run moves to ``blocked``; it is resumed by
        :meth:`deliver_answer` or by :meth:`expire` once the deadline passes.
        """
        if self.tracker is None:
            raise RuntimeError("A tracker client is required to post questions")
        step = step_name or run.current_step or "unknown"
        hours = self.timeout_hours if timeout_hours is None else timeout_hours
        question_id = uuid.uuid4().hex
        body = format_question_comment(
            question_id,
            question_type,
            prompt,
            run.run_id,
            step,
            hours,
            options=options,
            preview=preview,
        )
        comment_id = await self.tracker.add_comment(run.item_id, body)
        now = utcnow()
        question = PendingQuestion(
            id=question_id,
            item_id=run.item_id,
            run_id=run.run_id,
            step_name=step,
            key=key,
            question_type=question_type,
            comment_id=comment_id,
            timeout_at=now + timedelta(hours=hours),
            created_at=now,
        )
        await self.repository.create_question(question)
        await self.repository.set_run_state(
            run.run_id, RunState.BLOCKED, current_step=step
        )
        logger.info(
            f"Posted {question_type.value} question_id={question_id} for run_id={run.run_id} step={step}"
        )
        return question

    async def _signal(self, run_id: str, payload: SignalPayload) -> None:
        await self.transport.publish(
            signal_topic(run_id), SignalMessage(run_id=run_id, signal=payload)
        )

    async def deliver_answer(
        self,
        parent_comment_id: Optional[str],
        answer: ParsedAnswer,
        responder: str,
        source_comment_id: Optional[str] = None,
    ) -> DeliveryOutcome:
        """Resolve the pending question posted as ``parent_comment_id``.

        Only the first delivery for a question signals the run; later ones
        report ``already_answered``.
        """
        if not parent_comment_id:
            return DeliveryOutcome(status=DeliveryStatus.NOT_A_QUESTION_REPLY)
        question = await self.repository.find_question_by_comment(parent_comment_id)
        if question is None:
            return DeliveryOutcome(status=DeliveryStatus.NOT_A_QUESTION_REPLY)

        payload = SignalPayload(
            question_id=question.id,
            response_type=answer.response_type,
            selected_option=answer.selected_option,
            custom_text=answer.custom_text,
            responded_by=responder,
            source_comment_id=source_comment_id,
        )
        if not question.is_pending or not await self.repository.resolve_question(
            question.id, QuestionState.ANSWERED, payload
        ):
            logger.info(f"Ignoring repeated answer for question_id={question.id}")
            return DeliveryOutcome(
                status=DeliveryStatus.ALREADY_ANSWERED,
                question_id=question.id,
                run_id=question.run_id,
            )

        await self._signal(question.run_id, payload)
        logger.info(
            f"Delivered {answer.response_type.value} for question_id={question.id} to run_id={question.run_id}"
        )
        return DeliveryOutcome(
            status=DeliveryStatus.DELIVERED,
            question_id=question.id,
            run_id=question.run_id,
            signal=payload,
        )

    async def expire(self, question: PendingQuestion) -> bool:
        """Time out a pending question and wake its run."""
        if not await self.repository.resolve_question(
            question.id, QuestionState.TIMED_OUT
        ):
            return False
        expired = await self.repository.get_question(question.id)
        await self._signal(question.run_id, expired.as_signal())
        logger.warning(
            f"Question question_id={question.id} of run_id={question.run_id} timed out"
        )
        return True

    async def expire_due(self, run_id: Optional[str] = None) -> List[str]:
        """Expire every pending question whose deadline has passed."""
        now = utcnow()
        expired = []
        for question in await self.repository.list_questions(
            run_id=run_id, state=QuestionState.PENDING
        ):
            if question.timeout_at <= now and await self.expire(question):
                expired.append(question.id)
        return expired

    async def release(self, run_id: str) -> List[str]:
        """Cancel the pending questions of a run that is being cancelled."""
        released = []
        for question in await self.repository.list_questions(
            run_id=run_id, state=QuestionState.PENDING
        ):
            if await self.repository.resolve_question(
                question.id, QuestionState.CANCELLED
            ):
                released.append(question.id)
        if released:
            await self.transport.publish(
                signal_topic(run_id), SignalMessage(run_id=run_id, cancelled=True)
            )
            logger.info(f"Released {len(released)} question(s) of run_id={run_id}")
        return released
