"""Current-state projection derived from work unit events."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable, assert_never

from laneledger.core.state.events import (
    BlockEvent,
    CheckpointEvent,
    ClaimEvent,
    CompleteEvent,
    CreateEvent,
    DelegationEvent,
    ReleaseEvent,
    UnblockEvent,
    WorkUnitEvent,
)
from laneledger.core.state_machine import WorkUnitStatus


@dataclass(frozen=True)
class WorkUnitState:
    """Projected state for one work unit."""

    wu_id: str
    status: WorkUnitStatus
    lane: str
    title: str
    updated_at: str
    claimed_at: str | None = None
    completed_at: str | None = None
    blocked_reason: str | None = None
    last_checkpoint: str | None = None
    last_checkpoint_note: str | None = None


class StateIndexer:
    """Replay events into per-unit state plus status, lane and parent indexes.

    The projection only ever changes through ``apply``, so replaying the same
    ordered events always yields the same result.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Clear all derived state."""
        self._states: dict[str, WorkUnitState] = {}
        self._by_status: dict[str, set[str]] = {}
        self._by_lane: dict[str, set[str]] = {}
        self._by_parent: dict[str, set[str]] = {}

    def replay(self, events: Iterable[WorkUnitEvent]) -> None:
        self.reset()
        for event in events:
            self.apply(event)

    def apply(self, event: WorkUnitEvent) -> None:
        current = self._states.get(event.wu_id)
        match event:
            case CreateEvent() | ClaimEvent():
                base = current or WorkUnitState(
                    wu_id=event.wu_id,
                    status="in_progress",
                    lane=event.lane,
                    title=event.title,
                    updated_at=event.timestamp,
                )
                claimed_at = event.timestamp if isinstance(event, ClaimEvent) else base.claimed_at
                self._store(
                    replace(
                        base,
                        status="in_progress",
                        lane=event.lane,
                        title=event.title,
                        updated_at=event.timestamp,
                        claimed_at=claimed_at,
                        blocked_reason=None,
                    )
                )
            case BlockEvent():
                if current is not None:
                    self._store(
                        replace(current, status="blocked", blocked_reason=event.reason, updated_at=event.timestamp)
                    )
            case UnblockEvent():
                if current is not None:
                    self._store(replace(current, status="in_progress", blocked_reason=None, updated_at=event.timestamp))
            case ReleaseEvent():
                if current is not None:
                    self._store(replace(current, status="ready", blocked_reason=None, updated_at=event.timestamp))
            case CompleteEvent():
                if current is not None:
                    self._store(
                        replace(
                            current,
                            status="done",
                            completed_at=event.timestamp,
                            blocked_reason=None,
                            updated_at=event.timestamp,
                        )
                    )
            case CheckpointEvent():
                if current is not None:
                    self._store(
                        replace(
                            current,
                            last_checkpoint=event.timestamp,
                            last_checkpoint_note=event.note,
                            updated_at=event.timestamp,
                        )
                    )
            case DelegationEvent():
                self._by_parent.setdefault(event.parent_wu_id, set()).add(event.wu_id)
            case _:
                assert_never(event)

    def get_state(self, wu_id: str) -> WorkUnitState | None:
        return self._states.get(wu_id)

    def get_by_status(self, status: str) -> frozenset[str]:
        return frozenset(self._by_status.get(status, ()))

    def get_by_lane(self, lane: str) -> frozenset[str]:
        return frozenset(self._by_lane.get(lane, ()))

    def get_children(self, parent_wu_id: str) -> frozenset[str]:
        return frozenset(self._by_parent.get(parent_wu_id, ()))

    def all_states(self) -> tuple[WorkUnitState, ...]:
        return tuple(self._states[wu_id] for wu_id in sorted(self._states))

    def snapshot(self) -> dict[str, WorkUnitState]:
        """Copy of the per-unit map; two replays of one log compare equal."""
        return dict(self._states)

    def _store(self, state: WorkUnitState) -> None:
        previous = self._states.get(state.wu_id)
        if previous is not None:
            self._by_status.get(previous.status, set()).discard(state.wu_id)
            self._by_lane.get(previous.lane, set()).discard(state.wu_id)
        self._states[state.wu_id] = state
        self._by_status.setdefault(state.status, set()).add(state.wu_id)
        self._by_lane.setdefault(state.lane, set()).add(state.wu_id)


def replay_events(events: Iterable[WorkUnitEvent]) -> StateIndexer:
    """Build a fresh projection from an ordered event sequence."""
    indexer = StateIndexer()
    indexer.replay(events)
    return indexer
