"""Turn tracker webhooks into pipeline actions."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Optional

from .config import DevflowConfig
from .contracts import (
    CascadeSummary,
    CommentEvent,
    DeliveryStatus,
    IssueEvent,
    Phase,
    RouteOutcome,
    parse_event,
)
from .errors import DuplicateRunError, EventValidationError
from .items import StatusUpdater, item_from_event
from .persistence import WorkflowRepository
from .persistence.models import WorkItem
from .propagation import CascadeRollupPropagator
from .runtime import PipelineRuntime
from .signals import HumanSignalBroker, parse_reply
from .status_table import StatusTable

logger = logging.getLogger(__name__)

COMMANDS = ("/retry", "/cancel")


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check a hex HMAC-SHA256 signature of a raw webhook body."""
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def parse_command(body: str) -> Optional[str]:
    """Return the slash command on the first line of a comment, if any."""
    lines = (body or "").strip().splitlines()
    if not lines:
        return None
    word = lines[0].strip().split(" ", 1)[0].lower()
    return word if word in COMMANDS else None


class TriggerRouter:
    """Route normalized tracker events to runs, cascades and answers."""

    def __init__(
        self,
        repository: WorkflowRepository,
        table: StatusTable,
        runtime: PipelineRuntime,
        propagator: CascadeRollupPropagator,
        broker: HumanSignalBroker,
        status_updater: StatusUpdater,
        config: Optional[DevflowConfig] = None,
    ) -> None:
        self.repository = repository
        self.table = table
        self.runtime = runtime
        self.propagator = propagator
        self.broker = broker
        self.status_updater = status_updater
        self.config = config or DevflowConfig()

    async def route_webhook(
        self, body: bytes, signature: Optional[str] = None
    ) -> RouteOutcome:
        """Route a raw webhook body, checking its signature when a secret is set."""
        secret = self.config.webhook_secret
        if secret and not verify_signature(body, signature, secret):
            logger.warning("Rejected webhook with invalid signature")
            return RouteOutcome.no_trigger("invalid signature")
        return await self.route(body)

    async def route(self, raw: Any) -> RouteOutcome:
        """Route one inbound event.

        Malformed payloads and unknown statuses give a "no trigger" outcome
        rather than an exception.
        """
        try:
            event = parse_event(raw)
        except EventValidationError as e:
            logger.warning(f"Ignoring malformed event: {e}")
            return RouteOutcome.no_trigger()

        if event.delivery_id and not await self.repository.record_delivery(
            event.delivery_id
        ):
            logger.info(f"Ignoring redelivered event {event.delivery_id}")
            return RouteOutcome.no_trigger("duplicate delivery")

        if isinstance(event, IssueEvent):
            return await self._route_issue(event)
        return await self._route_comment(event)

    # ------------------------------------------------------------------
    async def _route_issue(self, event: IssueEvent) -> RouteOutcome:
        if event.status not in self.table:
            logger.debug(f"Unknown status {event.status!r} on item_id={event.item_id}")
            return RouteOutcome.no_trigger("unknown status")
        item = await self.status_updater.sync(item_from_event(event))
        logger.info(
            f"Item item_id={item.id} reported at {item.status} by actor_id={event.actor_id or 'unknown'}"
        )
        if event.kind == "issue-created":
            return RouteOutcome.no_trigger("item recorded")
        return await self.evaluate(item)

    async def evaluate(self, item: WorkItem) -> RouteOutcome:
        """Act on the status ``item`` currently holds."""
        entry = self.table.get(item.status)
        if entry is None:
            return RouteOutcome.no_trigger("unknown status")

        if entry.cascade:
            children = await self.repository.list_children(item.id)
            if children:
                result = await self.propagator.cascade(
                    item.id, item.status, reevaluate=self.evaluate
                )
                return RouteOutcome(
                    accepted=True,
                    reason="cascaded",
                    phase=entry.phase,
                    cascaded=CascadeSummary(
                        children_count=result.children_count,
                        cascaded_ids=result.cascaded_ids,
                        skipped_ids=result.skipped_ids,
                    ),
                )

        if entry.rollup and item.parent_id:
            try:
                await self.propagator.rollup(item.id)
            except Exception as e:
                logger.warning(f"Rollup from item_id={item.id} failed: {e}")

        phase = self.table.trigger_phase(item.status)
        if phase is None:
            return RouteOutcome.no_trigger()
        return await self._start(item.id, phase)

    async def _start(self, item_id: str, phase: Phase) -> RouteOutcome:
        if not self.config.phase(phase).enabled:
            return RouteOutcome.no_trigger("phase disabled")
        try:
            run = await self.runtime.start(item_id, phase)
        except DuplicateRunError as e:
            logger.info(f"Not starting {phase.value} for item_id={item_id}: {e}")
            return RouteOutcome(
                accepted=False,
                reason="run already active",
                run_id=e.active_run_id,
                phase=phase,
            )
        return RouteOutcome(accepted=True, run_id=run.run_id, phase=phase)

    # ------------------------------------------------------------------
    async def _route_comment(self, event: CommentEvent) -> RouteOutcome:
        answer = parse_reply(event.body)
        if answer is not None and event.parent_comment_id:
            delivery = await self.broker.deliver_answer(
                event.parent_comment_id,
                answer,
                event.author_id,
                source_comment_id=event.comment_id,
            )
            if delivery.status != DeliveryStatus.NOT_A_QUESTION_REPLY:
                return RouteOutcome(
                    accepted=delivery.delivered,
                    reason=delivery.status.value,
                    run_id=delivery.run_id,
                    delivery=delivery,
                )

        command = parse_command(event.body)
        if command is None:
            return RouteOutcome.no_trigger("not a command")
        if command == "/cancel":
            cancelled = await self.runtime.cancel_item(event.item_id)
            return RouteOutcome(
                accepted=bool(cancelled),
                reason=f"cancelled {len(cancelled)} run(s)",
                command=command,
            )
        return await self._retry(event.item_id, command)

    async def _retry(self, item_id: str, command: str) -> RouteOutcome:
        item = await self.repository.get_item(item_id)
        entry = self.table.get(item.status) if item else None
        if entry is None or entry.phase is None or entry.role == "ready":
            return RouteOutcome(accepted=False, reason="nothing to retry", command=command)
        outcome = await self._start(item_id, entry.phase)
        return outcome.model_copy(update={"command": command})

