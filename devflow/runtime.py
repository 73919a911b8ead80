"""Durable execution of phase runs.

Each run is driven by an asyncio task. When the executor reports the run as
blocked, the task waits on the run's signal topic until every pending
question is resolved or has passed its deadline, then drives the phase
again; the executor skips the steps recorded as finished. Because all state
lives in the repository, :meth:`PipelineRuntime.recover` can pick up running
and blocked runs after a process restart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from typing import Dict, List, Optional

from .contracts import Phase, PipelineOutcome, QuestionState, RunState, utcnow
from .errors import DuplicateRunError, PhaseFailedError
from .persistence import WorkflowRepository
from .persistence.models import RunRecord
from .phases import PhaseOrchestrator
from .signals import HumanSignalBroker
from .transports import BaseTransport, signal_topic

logger = logging.getLogger(__name__)


def dedupe_key(phase: Phase, item_id: str) -> str:
    return f"{phase.value}:{item_id}"


def make_run_id(phase: Phase, item_id: str, epoch_ms: Optional[int] = None) -> str:
    stamp = epoch_ms if epoch_ms is not None else int(time.time() * 1000)
    return f"{phase.value}-{item_id}-{stamp}"


class PipelineRuntime:
    """Start, suspend, resume and cancel phase runs."""

    def __init__(
        self,
        orchestrators: Dict[Phase, PhaseOrchestrator],
        repository: WorkflowRepository,
        transport: BaseTransport,
        broker: HumanSignalBroker,
    ) -> None:
        self.orchestrators = orchestrators
        self.repository = repository
        self.transport = transport
        self.broker = broker
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    async def _new_run_id(self, phase: Phase, item_id: str) -> str:
        stamp = int(time.time() * 1000)
        while await self.repository.get_run(make_run_id(phase, item_id, stamp)):
            stamp += 1
        return make_run_id(phase, item_id, stamp)

    async def start(self, item_id: str, phase: Phase) -> RunRecord:
        """Create a run for ``item_id`` in ``phase`` and drive it in the background.

        Raises:
            DuplicateRunError: If a run for the same item and phase is still
                running or blocked.
        """
        if phase not in self.orchestrators:
            raise ValueError(f"No orchestrator for phase {phase.value}")
        key = dedupe_key(phase, item_id)
        run = RunRecord(
            run_id=await self._new_run_id(phase, item_id),
            dedupe_key=key,
            item_id=item_id,
            phase=phase,
        )
        if not await self.repository.create_run(run):
            active = await self.repository.find_active_run(key)
            raise DuplicateRunError(key, active.run_id if active else "unknown")
        logger.info(f"Started {phase.value} run_id={run.run_id} for item_id={item_id}")
        self._spawn(run.run_id, phase)
        return run

    def _spawn(self, run_id: str, phase: Phase) -> asyncio.Task:
        task = asyncio.create_task(self._drive(run_id, phase), name=run_id)
        self._tasks[run_id] = task
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, PhaseFailedError):
            logger.error(f"Run run_id={error.run_id} failed: {error}")
        elif error is not None:
            logger.error(f"Run task {task.get_name()} crashed: {error!r}")

    async def _drive(self, run_id: str, phase: Phase) -> PipelineOutcome:
        orchestrator = self.orchestrators[phase]
        while True:
            outcome = await orchestrator.run(run_id)
            if outcome.state != RunState.BLOCKED:
                return outcome
            await self.wait_for_answers(run_id, outcome.pending_question_ids)

    async def wait_for_answers(self, run_id: str, question_ids: List[str]) -> None:
        """Suspend until none of ``question_ids`` is pending.

        Questions whose deadline passes while waiting are expired, which
        resolves them with a ``timeout`` answer.
        """
        topic = signal_topic(run_id)
        while True:
            pending = []
            for question_id in question_ids:
                question = await self.repository.get_question(question_id)
                if question is not None and question.state == QuestionState.PENDING:
                    pending.append(question)
            if not pending:
                return

            run = await self.repository.get_run(run_id)
            if run is None or run.state == RunState.CANCELLED:
                return

            deadline = min(q.timeout_at for q in pending)
            remaining = (deadline - utcnow()).total_seconds()
            if remaining <= 0:
                for question in pending:
                    if question.timeout_at <= utcnow():
                        await self.broker.expire(question)
                continue

            logger.debug(
                f"Run run_id={run_id} waiting up to {remaining:.0f}s on {len(pending)} question(s)"
            )
            async with aclosing(self.transport.subscribe(topic, lifespan=remaining)) as stream:
                async for raw_message, message in stream:
                    await self.transport.ack(raw_message)
                    if message.cancelled:
                        logger.debug(f"Cancellation reached run_id={run_id}")
                    else:
                        logger.debug(
                            f"Signal for question_id={message.signal.question_id} reached run_id={run_id}"
                        )
                    break

    async def wait(self, run_id: str) -> PipelineOutcome:
        """Wait for the background task of ``run_id`` to finish."""
        return await self._tasks[run_id]

    async def cancel(self, run_id: str) -> bool:
        """Cancel a running or blocked run and release its questions."""
        run = await self.repository.get_run(run_id)
        if run is None or not run.state.is_active:
            return False
        await self.repository.set_run_state(run_id, RunState.CANCELLED, error="cancelled")
        await self.broker.release(run_id)
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            task.cancel()
        logger.info(f"Cancelled run_id={run_id}")
        return True

    async def cancel_item(self, item_id: str) -> List[str]:
        cancelled = []
        for run in await self.repository.list_runs(item_id=item_id):
            if run.state.is_active and await self.cancel(run.run_id):
                cancelled.append(run.run_id)
        return cancelled

    async def recover(self) -> List[str]:
        """Resume runs left running or blocked by a previous process."""
        resumed = []
        for run in await self.repository.list_runs():
            if not run.state.is_active or run.run_id in self._tasks:
                continue
            if run.phase not in self.orchestrators:
                continue
            self._spawn(run.run_id, run.phase)
            resumed.append(run.run_id)
        if resumed:
            logger.info(f"Recovered {len(resumed)} run(s)")
        return resumed

    async def shutdown(self) -> None:
        """Cancel every background task; run state stays in the repository."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
