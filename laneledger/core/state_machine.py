"""Work unit status transitions.

Every mutating event is checked against this table before it is constructed.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Literal, Mapping, cast

WorkUnitStatus = Literal["ready", "in_progress", "blocked", "waiting", "done"]

ALL_STATUSES: tuple[WorkUnitStatus, ...] = ("ready", "in_progress", "blocked", "waiting", "done")
TERMINAL_STATUSES: frozenset[WorkUnitStatus] = frozenset({"done"})
ACTIVE_STATUSES: frozenset[WorkUnitStatus] = frozenset({"in_progress", "blocked", "waiting"})

_LEGAL_TRANSITIONS: Mapping[WorkUnitStatus, frozenset[WorkUnitStatus]] = MappingProxyType(
    {
        "ready": frozenset({"in_progress"}),
        "in_progress": frozenset({"blocked", "waiting", "done", "ready"}),
        "blocked": frozenset({"in_progress", "done"}),
        "waiting": frozenset({"in_progress", "done"}),
        "done": frozenset(),
    }
)


class TransitionError(ValueError):
    """Raised when a work unit status change is not in the legal-transition table."""

    def __init__(self, wu_id: str, current: str | None, target: str, detail: str | None = None) -> None:
        allowed = sorted(_LEGAL_TRANSITIONS.get(cast(WorkUnitStatus, current), frozenset()))
        message = f"Illegal transition for {wu_id}: {current} -> {target}"
        if detail:
            message += f" ({detail})"
        elif allowed:
            message += f"; allowed from {current}: {allowed}"
        elif current in TERMINAL_STATUSES:
            message += f"; {current} is terminal"
        super().__init__(message)
        self.wu_id = wu_id
        self.current = current
        self.target = target


def is_status(value: object) -> bool:
    return isinstance(value, str) and value in _LEGAL_TRANSITIONS


def legal_targets(current: str) -> frozenset[WorkUnitStatus]:
    return _LEGAL_TRANSITIONS.get(cast(WorkUnitStatus, current), frozenset())


def is_legal_transition(current: str, target: str) -> bool:
    return target in legal_targets(current)


def assert_transition(current: str | None, target: str, wu_id: str) -> None:
    """Fail with TransitionError unless current -> target is in the table."""
    if current is None or not is_status(current):
        raise TransitionError(wu_id, current, target, detail=f"unknown current status {current!r}")
    if not is_status(target):
        raise TransitionError(wu_id, current, target, detail=f"unknown target status {target!r}")
    if not is_legal_transition(current, target):
        raise TransitionError(wu_id, current, target)
