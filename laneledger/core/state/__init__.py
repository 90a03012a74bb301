"""Event-sourced work unit state."""

from laneledger.core.state.archive import ArchiveResult, archive_events
from laneledger.core.state.events import (
    BlockEvent,
    CheckpointEvent,
    ClaimEvent,
    CompleteEvent,
    CreateEvent,
    DelegationEvent,
    EventValidationError,
    ReleaseEvent,
    UnblockEvent,
    WorkUnitEvent,
    WorkUnitEventType,
    build_event,
    event_from_record,
    event_to_record,
)
from laneledger.core.state.indexer import StateIndexer, WorkUnitState, replay_events
from laneledger.core.state.store import (
    EventParseError,
    StateRepairResult,
    StateStoreError,
    WorkUnitStateStore,
    atomic_write_text,
    repair_state_file,
)

__all__ = [
    "ArchiveResult",
    "BlockEvent",
    "CheckpointEvent",
    "ClaimEvent",
    "CompleteEvent",
    "CreateEvent",
    "DelegationEvent",
    "EventParseError",
    "EventValidationError",
    "ReleaseEvent",
    "StateIndexer",
    "StateRepairResult",
    "StateStoreError",
    "UnblockEvent",
    "WorkUnitEvent",
    "WorkUnitEventType",
    "WorkUnitState",
    "WorkUnitStateStore",
    "archive_events",
    "atomic_write_text",
    "build_event",
    "event_from_record",
    "event_to_record",
    "replay_events",
    "repair_state_file",
]
