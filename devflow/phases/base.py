"""Shared machinery for the phase orchestrators."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..collaborators import (
    ContextStore,
    Generator,
    SourceControl,
    TrackerClient,
    TrackerIssue,
)
from ..config import DevflowConfig
from ..contracts import Phase, PipelineOutcome, RunState
from ..errors import NonRetryableStepError, PhaseFailedError, StepError
from ..executor import Step, StepContext, StepPipelineExecutor
from ..items import StatusUpdater, item_from_issue
from ..persistence import WorkflowRepository
from ..persistence.models import RunRecord
from ..signals import HumanSignalBroker
from ..status_table import StatusRole, StatusTable

logger = logging.getLogger(__name__)


@dataclass
class PhaseServices:
    """Collaborators handed to every orchestrator at construction."""

    repository: WorkflowRepository
    tracker: TrackerClient
    generator: Generator
    context_store: ContextStore
    source_control: SourceControl
    broker: HumanSignalBroker
    status_updater: StatusUpdater
    table: StatusTable
    config: DevflowConfig


def issue_of(ctx: StepContext) -> TrackerIssue:
    return ctx.output("sync_item", TrackerIssue)


def chunks_markdown(chunks: List[Dict[str, Any]]) -> str:
    sections = [
        f"### {c['path']}\n```\n{c['content']}\n```" for c in chunks
    ]
    return "\n\n".join(sections)


class PhaseOrchestrator(abc.ABC):
    """Run one phase of the pipeline for a work item.

    Subclasses declare their steps. Fatal failures are caught here, move the
    item to the phase failure status and are re-raised as
    :class:`PhaseFailedError`.
    """

    phase: Phase

    def __init__(self, services: PhaseServices) -> None:
        self.services = services
        steps_conf = services.config.steps
        self.executor = StepPipelineExecutor(
            services.repository,
            default_timeout=steps_conf.timeout_seconds,
            default_retries=steps_conf.retries,
            backoff_base=steps_conf.backoff_base,
        )

    @abc.abstractmethod
    def steps(self) -> List[Step]:
        """Return the ordered steps of this phase."""

    # ------------------------------------------------------------------
    # Common steps
    def status(self, role: StatusRole) -> str:
        return self.services.table.status_for(self.phase, role)

    async def _sync_item(self, ctx: StepContext, _: Any) -> TrackerIssue:
        issue = await self.services.tracker.get_issue(ctx.item_id)
        await self.services.status_updater.sync(item_from_issue(issue))
        return issue

    def sync_step(self) -> Step:
        return Step("sync_item", self._sync_item)

    def status_step(self, name: str, role: StatusRole) -> Step:
        async def _set_status(ctx: StepContext, _: Any) -> Dict[str, Any]:
            target = self.status(role)
            changed = await self.services.status_updater.set_status(ctx.item_id, target)
            return {"status": target, "changed": changed}

        return Step(name, _set_status, feature="auto_status_update")

    def document_step(
        self, name: str, kind: str, failure: str = "non_blocking", **kwargs: Any
    ) -> Step:
        """Step that loads a phase document attached to the item."""

        async def _load(ctx: StepContext, _: Any) -> Optional[str]:
            content = await self.services.tracker.get_document(ctx.item_id, kind)
            if content is None and failure == "blocking":
                raise NonRetryableStepError(f"No {kind} document on {ctx.item_id}")
            return content

        return Step(name, _load, failure=failure, **kwargs)

    # ------------------------------------------------------------------
    def context(self, run: RunRecord) -> StepContext:
        config = self.services.config
        return StepContext(
            run,
            self.services.repository,
            self.services.broker,
            features=config.features(self.phase),
            question_timeout_hours=config.questions.timeout_hours,
        )

    async def _mark_failed(self, run_id: str, item_id: str) -> None:
        if not self.services.config.feature_enabled(self.phase, "auto_status_update"):
            return
        try:
            await self.services.status_updater.set_status(
                item_id, self.status("failed")
            )
        except Exception as e:
            logger.error(f"Could not set failure status for run_id={run_id}: {e}")

    async def run(self, run_id: str) -> PipelineOutcome:
        """Execute or resume the phase for ``run_id``."""
        run = await self.services.repository.get_run(run_id)
        if run is None:
            raise KeyError(f"Unknown run {run_id}")
        item_id = run.item_id
        ctx = self.context(run)
        try:
            outcome = await self.executor.run(self.steps(), ctx)
        except Exception as e:
            logger.error(f"{self.phase.value} run_id={run_id} aborted: {e}")
            await self.services.repository.set_run_state(
                run_id, RunState.FAILED, error=str(e)
            )
            await self._mark_failed(run_id, item_id)
            raise PhaseFailedError(self.phase.value, run_id, cause=e) from e

        if outcome.state == RunState.FAILED:
            await self._mark_failed(run_id, item_id)
            raise PhaseFailedError(
                self.phase.value,
                run_id,
                step_name=outcome.failed_step,
                cause=StepError(outcome.error),
            )
        return outcome

