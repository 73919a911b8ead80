"""Parent/child status propagation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .contracts import CascadeResult, RollupResult
from .items import StatusUpdater
from .persistence import WorkflowRepository
from .persistence.models import WorkItem
from .status_table import StatusTable

logger = logging.getLogger(__name__)

Reevaluate = Callable[[WorkItem], Awaitable[Any]]


class CascadeRollupPropagator:
    """Move children along with their parent, and parents after their children.

    Cascade pushes a parent's new status down to every child that has not
    reached it yet. Rollup is the reverse AND-join: once every child of a
    parent has reached a rollup status, the parent is moved to that status's
    rollup target. Both only ever move items forward in the status table.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        status_updater: StatusUpdater,
        table: StatusTable,
    ) -> None:
        self.repository = repository
        self.status_updater = status_updater
        self.table = table

    async def _cascade_child(
        self, child: WorkItem, target: str, reevaluate: Optional[Reevaluate]
    ) -> bool:
        if child.status in self.table and not self.table.precedes(child.status, target):
            return False
        if not await self.status_updater.set_status(child.id, target, forward_only=True):
            return False
        if reevaluate is not None:
            updated = await self.repository.get_item(child.id)
            await reevaluate(updated)
        return True

    async def cascade(
        self,
        parent_id: str,
        target_status: str,
        reevaluate: Optional[Reevaluate] = None,
    ) -> CascadeResult:
        """Move the children of ``parent_id`` that precede ``target_status``.

        ``reevaluate`` is awaited for each moved child so it can start the
        child's own pipeline. Children are processed concurrently and a
        failing child does not stop the others.
        """
        children = await self.repository.list_children(parent_id)
        result = CascadeResult(parent_id=parent_id, target_status=target_status)
        outcomes = await asyncio.gather(
            *(self._cascade_child(c, target_status, reevaluate) for c in children),
            return_exceptions=True,
        )
        for child, outcome in zip(children, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    f"Cascade of {target_status} to item_id={child.id} failed: {outcome}"
                )
                result.failed_ids.append(child.id)
            elif outcome:
                result.cascaded_ids.append(child.id)
            else:
                result.skipped_ids.append(child.id)
        logger.info(
            f"Cascaded {target_status} from item_id={parent_id}: "
            f"{len(result.cascaded_ids)} moved, {len(result.skipped_ids)} skipped, "
            f"{len(result.failed_ids)} failed"
        )
        return result

    async def rollup(self, child_id: str) -> RollupResult:
        """Advance the parent of ``child_id`` if all its children are done."""
        child = await self.repository.get_item(child_id)
        if child is None or not child.parent_id:
            return RollupResult()
        result = RollupResult(parent_id=child.parent_id)
        target = self.table.rollup_target(child.status)
        if target is None:
            return result

        siblings = await self.repository.list_children(child.parent_id)
        result.incomplete_ids = [
            s.id for s in siblings if not self.table.reached(s.status, child.status)
        ]
        if result.incomplete_ids:
            logger.debug(
                f"Rollup of item_id={child.parent_id} waits on {len(result.incomplete_ids)} child(ren)"
            )
            return result

        parent = await self.repository.get_item(child.parent_id)
        if parent is None:
            return result
        result.from_status = parent.status
        result.changed = await self.status_updater.set_status(
            parent.id, target, forward_only=True
        )
        if result.changed:
            result.to_status = target
            logger.info(f"Rolled item_id={parent.id} up to {target}")
        return result
