"""Exception hierarchy for devflow."""

from __future__ import annotations

from typing import Optional


class DevflowError(Exception):
    """Base class for all devflow errors."""


class EventValidationError(DevflowError):
    """Inbound webhook payload does not match any known event shape."""


class StepError(DevflowError):
    """Transient step failure; the executor retries it."""


class NonRetryableStepError(StepError):
    """Step failure that must not be retried."""


class StepTimeoutError(StepError):
    """A step attempt exceeded its timeout."""


class PhaseFailedError(DevflowError):
    """A phase run hit a blocking failure.

    Raised at the orchestrator boundary after the work item has been moved
    to the phase failure status.
    """

    def __init__(
        self,
        phase: str,
        run_id: str,
        step_name: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.phase = phase
        self.run_id = run_id
        self.step_name = step_name
        self.cause = cause
        detail = f": {cause}" if cause else ""
        where = f" at step {step_name}" if step_name else ""
        super().__init__(f"{phase} run {run_id} failed{where}{detail}")


class ConcurrentUpdateError(DevflowError):
    """A compare-and-set write lost against a concurrent writer."""


class DuplicateRunError(DevflowError):
    """A run for the same item and phase is already in flight."""

    def __init__(self, dedupe_key: str, active_run_id: str) -> None:
        self.dedupe_key = dedupe_key
        self.active_run_id = active_run_id
        super().__init__(f"Run {active_run_id} already active for {dedupe_key}")


class RunCancelledError(DevflowError):
    """The run was cancelled by an operator."""


class UnknownStatusError(DevflowError):
    """A status name is not part of the configured status table."""
