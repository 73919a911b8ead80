"""Step pipeline execution for one phase run."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Sequence,
    Type,
    TypeVar,
)

from pydantic import BaseModel

from .constants import DEFAULT_STEP_RETRIES, DEFAULT_STEP_TIMEOUT_SECONDS
from .contracts import (
    Phase,
    PipelineOutcome,
    QuestionOption,
    QuestionType,
    RunState,
    SignalPayload,
    StepStatus,
    utcnow,
)
from .errors import NonRetryableStepError, RunCancelledError, StepTimeoutError
from .persistence import WorkflowRepository
from .persistence.models import RunRecord
from .signals import HumanSignalBroker
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

FailureClass = Literal["blocking", "non_blocking"]
ModelT = TypeVar("ModelT", bound=BaseModel)


class AwaitingAnswers(Exception):
    """Raised inside a step when it must wait for human answers."""

    def __init__(self, question_ids: Sequence[str]) -> None:
        self.question_ids = list(question_ids)
        super().__init__(f"Waiting on {len(self.question_ids)} question(s)")


@dataclass
class Question:
    """A question a step wants answered."""

    question_type: QuestionType
    prompt: str
    options: List[QuestionOption] = field(default_factory=list)
    preview: Optional[str] = None
    key: Optional[str] = None


StepHandler = Callable[["StepContext", Any], Awaitable[Any]]


@dataclass
class Step:
    """One named unit of a phase.

    ``feature`` names a phase flag that must be on for the step to run and
    ``when`` is an extra predicate over the context. ``inputs`` selects the
    handler's argument from earlier outputs. ``None`` timeouts and retries
    fall back to the executor defaults.
    """

    name: str
    handler: StepHandler
    inputs: Optional[Callable[[Dict[str, Any]], Any]] = None
    timeout: Optional[float] = None
    retries: Optional[int] = None
    failure: FailureClass = "blocking"
    feature: Optional[str] = None
    when: Optional[Callable[["StepContext"], bool]] = None


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    return value


class StepContext:
    """State shared by the steps of a run."""

    def __init__(
        self,
        run: RunRecord,
        repository: WorkflowRepository,
        broker: HumanSignalBroker,
        features: Optional[Dict[str, bool]] = None,
        question_timeout_hours: Optional[float] = None,
    ) -> None:
        self.run = run
        self.repository = repository
        self.broker = broker
        self.features = features or {}
        self.question_timeout_hours = question_timeout_hours
        self.outputs: Dict[str, Any] = {}
        self.step_name: Optional[str] = None
        self._ask_counter = 0

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def item_id(self) -> str:
        return self.run.item_id

    @property
    def phase(self) -> Phase:
        return self.run.phase

    def enabled(self, feature: str) -> bool:
        return self.features.get(feature, False)

    def output(self, step_name: str, model: Optional[Type[ModelT]] = None) -> Any:
        """Return an earlier step's output, validated into ``model`` if given."""
        value = self.outputs.get(step_name)
        if value is None or model is None:
            return value
        return model.model_validate(value)

    def begin_step(self, step_name: str) -> None:
        self.step_name = step_name
        self._ask_counter = 0

    async def ask(
        self,
        question_type: QuestionType,
        prompt: str,
        options: Optional[Sequence[QuestionOption]] = None,
        preview: Optional[str] = None,
        key: Optional[str] = None,
    ) -> SignalPayload:
        """Ask one question and return its answer, suspending the run if needed."""
        answers = await self.ask_all(
            [Question(question_type, prompt, list(options or []), preview, key)]
        )
        return answers[0]

    async def ask_all(self, questions: Sequence[Question]) -> List[SignalPayload]:
        """Ask several questions at once.

        Questions are identified by the step name and their position, so a
        step that is re-run after a resume finds the questions it already
        posted instead of posting them again. If any question is still
        pending, every missing one is posted first and then the step
        suspends with :class:`AwaitingAnswers`. Questions past their deadline
        resolve to a ``timeout`` answer.
        """
        step_name = self.step_name or "unknown"
        resolved = []
        pending_ids = []
        for question in questions:
            key = question.key or str(self._ask_counter)
            self._ask_counter += 1
            existing = await self.repository.find_question(self.run_id, step_name, key)
            if existing is None:
                existing = await self.broker.post_question(
                    self.run,
                    question.question_type,
                    question.prompt,
                    question.options,
                    step_name=step_name,
                    key=key,
                    timeout_hours=self.question_timeout_hours,
                    preview=question.preview,
                )
            elif existing.is_pending and existing.timeout_at <= utcnow():
                await self.broker.expire(existing)
                existing = await self.repository.get_question(existing.id)
            if existing.is_pending:
                pending_ids.append(existing.id)
            else:
                resolved.append(existing.as_signal())
        if pending_ids:
            raise AwaitingAnswers(pending_ids)
        return resolved


class StepPipelineExecutor:
    """Run an ordered list of steps with retry, timeout and resume."""

    def __init__(
        self,
        repository: WorkflowRepository,
        default_timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS,
        default_retries: int = DEFAULT_STEP_RETRIES,
        backoff_base: float = 1.5,
    ) -> None:
        self.repository = repository
        self.default_timeout = default_timeout
        self.default_retries = default_retries
        self.backoff_base = backoff_base

    def _should_run(self, step: Step, ctx: StepContext) -> bool:
        if step.feature and not ctx.enabled(step.feature):
            return False
        if step.when is not None and not step.when(ctx):
            return False
        return True

    async def _check_cancelled(self, run_id: str) -> None:
        current = await self.repository.get_run(run_id)
        if current is not None and current.state == RunState.CANCELLED:
            raise RunCancelledError(run_id)

    async def _run_step(self, step: Step, ctx: StepContext) -> Any:
        retries = self.default_retries if step.retries is None else step.retries
        timeout = self.default_timeout if step.timeout is None else step.timeout
        data = step.inputs(ctx.outputs) if step.inputs else None

        attempt = 0
        while True:
            attempt += 1
            await self.repository.mark_step_started(ctx.run_id, step.name)
            ctx.begin_step(step.name)
            try:
                return await asyncio.wait_for(step.handler(ctx, data), timeout)
            except (AwaitingAnswers, NonRetryableStepError, RunCancelledError):
                raise
            except asyncio.TimeoutError:
                error: Exception = StepTimeoutError(
                    f"Step {step.name} timed out after {timeout}s"
                )
            except Exception as e:
                error = e
            if attempt > retries:
                raise error
            logger.warning(
                f"Step {step.name} attempt {attempt} failed for run_id={ctx.run_id}: {error}"
            )
            await schedule_retry(attempt, base=self.backoff_base)

    async def run(self, steps: Sequence[Step], ctx: StepContext) -> PipelineOutcome:
        """Execute ``steps`` in order for the run held by ``ctx``.

        Steps already finished in an earlier pass are not executed again;
        their recorded outputs are reused.
        """
        run_id = ctx.run_id
        stored = await self.repository.get_run(run_id)
        if stored is None:
            raise KeyError(f"Unknown run {run_id}")
        ctx.run = stored
        if stored.state == RunState.CANCELLED:
            return PipelineOutcome(run_id=run_id, state=RunState.CANCELLED)
        await self.repository.set_run_state(run_id, RunState.RUNNING)

        non_blocking_failures: List[str] = []
        for step in steps:
            finished = stored.finished_step(step.name)
            if finished is not None:
                if finished.status == StepStatus.COMPLETED:
                    ctx.outputs[step.name] = finished.output
                elif finished.status == StepStatus.FAILED:
                    non_blocking_failures.append(step.name)
                continue

            try:
                await self._check_cancelled(run_id)
            except RunCancelledError:
                logger.info(f"Run run_id={run_id} cancelled before step {step.name}")
                return PipelineOutcome(
                    run_id=run_id,
                    state=RunState.CANCELLED,
                    outputs=ctx.outputs,
                    non_blocking_failures=non_blocking_failures,
                )

            if not self._should_run(step, ctx):
                await self.repository.mark_step_completed(
                    run_id, step.name, StepStatus.SKIPPED
                )
                logger.debug(f"Skipped step {step.name} for run_id={run_id}")
                continue

            try:
                output = await self._run_step(step, ctx)
            except AwaitingAnswers as waiting:
                await self.repository.mark_step_completed(
                    run_id, step.name, StepStatus.BLOCKED
                )
                await self.repository.set_run_state(
                    run_id, RunState.BLOCKED, current_step=step.name
                )
                logger.info(
                    f"Run run_id={run_id} blocked at {step.name} on {len(waiting.question_ids)} question(s)"
                )
                return PipelineOutcome(
                    run_id=run_id,
                    state=RunState.BLOCKED,
                    outputs=ctx.outputs,
                    pending_question_ids=waiting.question_ids,
                    non_blocking_failures=non_blocking_failures,
                )
            except RunCancelledError:
                await self.repository.mark_step_completed(
                    run_id, step.name, StepStatus.FAILED, error="cancelled"
                )
                return PipelineOutcome(
                    run_id=run_id,
                    state=RunState.CANCELLED,
                    outputs=ctx.outputs,
                    non_blocking_failures=non_blocking_failures,
                )
            except Exception as e:
                await self.repository.mark_step_completed(
                    run_id, step.name, StepStatus.FAILED, error=str(e)
                )
                if step.failure == "non_blocking":
                    logger.warning(
                        f"Non-blocking step {step.name} failed for run_id={run_id}: {e}"
                    )
                    non_blocking_failures.append(step.name)
                    continue
                logger.error(f"Step {step.name} failed for run_id={run_id}: {e}")
                await self.repository.set_run_state(
                    run_id, RunState.FAILED, error=str(e), current_step=step.name
                )
                return PipelineOutcome(
                    run_id=run_id,
                    state=RunState.FAILED,
                    outputs=ctx.outputs,
                    failed_step=step.name,
                    error=str(e),
                    non_blocking_failures=non_blocking_failures,
                )

            output = to_jsonable(output)
            ctx.outputs[step.name] = output
            await self.repository.mark_step_completed(
                run_id, step.name, StepStatus.COMPLETED, output=output
            )

        await self.repository.set_run_state(run_id, RunState.COMPLETED)
        logger.info(f"Run run_id={run_id} completed")
        return PipelineOutcome(
            run_id=run_id,
            state=RunState.COMPLETED,
            outputs=ctx.outputs,
            non_blocking_failures=non_blocking_failures,
        )
