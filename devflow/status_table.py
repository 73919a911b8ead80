"""Ordered table of tracker statuses and their pipeline meaning."""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Literal, Optional

from pydantic import BaseModel, Field

from .contracts import Phase
from .errors import UnknownStatusError

StatusRole = Literal["trigger", "in_progress", "ready", "failed"]


class StatusEntry(BaseModel):
    """One tracker status.

    ``rollup_to`` names the status a parent moves to once all of its
    children reached this one. It defaults to the next non-failure status in
    the table, or to this status when none follows.
    """

    name: str
    phase: Optional[Phase] = None
    role: Optional[StatusRole] = None
    cascade: bool = False
    rollup: bool = False
    rollup_to: Optional[str] = None

    @property
    def is_trigger(self) -> bool:
        return self.phase is not None and self.role == "trigger"

    @property
    def is_failure(self) -> bool:
        return self.role == "failed"


def _phase_entries(
    phase: Phase, label: str, ready: str, trigger: Optional[str] = None
) -> List[StatusEntry]:
    return [
        StatusEntry(
            name=trigger or f"To {label}", phase=phase, role="trigger", cascade=True
        ),
        StatusEntry(name=f"{label} In Progress", phase=phase, role="in_progress"),
        StatusEntry(name=ready, phase=phase, role="ready", rollup=True),
        StatusEntry(name=f"{label} Failed", phase=phase, role="failed"),
    ]


DEFAULT_STATUS_ENTRIES: List[StatusEntry] = [
    StatusEntry(name="Backlog"),
    *_phase_entries(Phase.REFINEMENT, "Refinement", "Refinement Ready"),
    *_phase_entries(
        Phase.USER_STORY, "UserStory", "UserStory Ready", trigger="To User Story"
    ),
    *_phase_entries(Phase.TECHNICAL_PLAN, "Plan", "Plan Ready"),
    *_phase_entries(Phase.CODE_GENERATION, "Code", "Code Review"),
    StatusEntry(name="Done", rollup=True),
]


class StatusTable:
    """Read-only ordered mapping of status names to entries."""

    def __init__(self, entries: Iterable[StatusEntry]) -> None:
        self._entries: List[StatusEntry] = list(entries)
        self._index: Dict[str, int] = {}
        for position, entry in enumerate(self._entries):
            if entry.name in self._index:
                raise ValueError(f"Duplicate status in table: {entry.name}")
            self._index[entry.name] = position
        for entry in self._entries:
            if entry.rollup_to and entry.rollup_to not in self._index:
                raise ValueError(
                    f"Status {entry.name} rolls up to unknown status {entry.rollup_to}"
                )

    @classmethod
    def default(cls) -> "StatusTable":
        return cls(DEFAULT_STATUS_ENTRIES)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __iter__(self) -> Iterator[StatusEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, name: Optional[str]) -> Optional[StatusEntry]:
        if name is None or name not in self._index:
            return None
        return self._entries[self._index[name]]

    def index(self, name: str) -> int:
        try:
            return self._index[name]
        except KeyError:
            raise UnknownStatusError(name) from None

    def precedes(self, status: str, target: str) -> bool:
        """Return ``True`` when ``status`` comes strictly before ``target``."""
        return self.index(status) < self.index(target)

    def next_status(self, name: str, skip_failures: bool = False) -> Optional[str]:
        for entry in self._entries[self.index(name) + 1 :]:
            if not (skip_failures and entry.is_failure):
                return entry.name
        return None

    def trigger_phase(self, name: str) -> Optional[Phase]:
        entry = self.get(name)
        return entry.phase if entry and entry.is_trigger else None

    def status_for(self, phase: Phase, role: StatusRole) -> str:
        for entry in self._entries:
            if entry.phase == phase and entry.role == role:
                return entry.name
        raise UnknownStatusError(f"No {role} status configured for {phase.value}")

    def rollup_target(self, name: str) -> Optional[str]:
        entry = self.get(name)
        if entry is None or not entry.rollup:
            return None
        return entry.rollup_to or self.next_status(name, skip_failures=True) or entry.name

    def reached(self, status: str, terminal: str) -> bool:
        """Return ``True`` when ``status`` is ``terminal`` or a later non-failure status."""
        entry = self.get(status)
        if entry is None or entry.is_failure:
            return False
        return self.index(status) >= self.index(terminal)
