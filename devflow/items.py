"""Work item mirror and status writes."""

from __future__ import annotations

import logging
from typing import Optional

from .collaborators import TrackerClient, TrackerIssue
from .contracts import IssueEvent
from .errors import ConcurrentUpdateError, UnknownStatusError
from .persistence import WorkflowRepository
from .persistence.models import WorkItem
from .status_table import StatusTable

logger = logging.getLogger(__name__)


def item_from_event(event: IssueEvent) -> WorkItem:
    return WorkItem(
        id=event.item_id,
        external_id=event.item_id,
        identifier=event.identifier,
        status=event.status,
        parent_id=event.parent_id,
        team_id=event.team_id,
        title=event.title,
        description=event.description,
    )


def item_from_issue(issue: TrackerIssue) -> WorkItem:
    return WorkItem(
        id=issue.id,
        external_id=issue.id,
        identifier=issue.identifier,
        status=issue.status,
        parent_id=issue.parent_id,
        team_id=issue.team_id,
        title=issue.title,
        description=issue.description,
    )


class StatusUpdater:
    """Apply status changes to the local mirror and push them to the tracker.

    Every write is a compare-and-set against the item's ``version``. A lost
    race is retried against the fresh value a few times before giving up with
    :class:`ConcurrentUpdateError`.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        tracker: TrackerClient,
        table: StatusTable,
        max_attempts: int = 5,
    ) -> None:
        self.repository = repository
        self.tracker = tracker
        self.table = table
        self.max_attempts = max_attempts

    async def sync(self, item: WorkItem) -> WorkItem:
        """Record the tracker's view of an item."""
        if item.status not in self.table:
            raise UnknownStatusError(item.status)
        return await self.repository.save_item(item)

    def _allows(self, current: str, target: str, forward_only: bool) -> bool:
        if current == target:
            return False
        if not forward_only or current not in self.table:
            return True
        return self.table.precedes(current, target)

    async def set_status(
        self, item_id: str, status: str, forward_only: bool = False
    ) -> bool:
        """Move ``item_id`` to ``status``.

        Returns ``False`` when the item already holds the status, or, with
        ``forward_only``, when it is already at or past it.
        """
        if status not in self.table:
            raise UnknownStatusError(status)

        for _ in range(self.max_attempts):
            item: Optional[WorkItem] = await self.repository.get_item(item_id)
            if item is None:
                raise KeyError(f"Unknown work item {item_id}")
            if not self._allows(item.status, status, forward_only):
                return False
            if await self.repository.compare_and_set_status(
                item_id, item.version, status
            ):
                await self.tracker.update_status(item.external_id, status)
                logger.info(f"Status of item_id={item_id}: {item.status} -> {status}")
                return True
            logger.debug(f"Lost status race on item_id={item_id}, retrying")
        raise ConcurrentUpdateError(
            f"Could not set status {status} on {item_id} after {self.max_attempts} attempts"
        )
