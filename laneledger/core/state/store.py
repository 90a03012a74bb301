"""Event-sourced work unit state store.

The JSONL event log is the single source of truth. ``load()`` rebuilds the
projection from the first line every time; there are no snapshots.
"""

from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Sequence

import structlog

from laneledger.constants import WU_EVENTS_FILE_NAME
from laneledger.core.state.events import (
    EventValidationError,
    WorkUnitEvent,
    WorkUnitEventType,
    build_event,
    event_from_record,
    event_to_record,
    validate_event,
)
from laneledger.core.state.indexer import StateIndexer, WorkUnitState
from laneledger.core.state_machine import TransitionError, assert_transition

logger = structlog.get_logger(__name__)

ClockFn = Callable[[], datetime]

# Status each mutating event moves a work unit to.
_TARGET_STATUS: Mapping[WorkUnitEventType, str] = MappingProxyType(
    {
        "create": "in_progress",
        "claim": "in_progress",
        "block": "blocked",
        "unblock": "in_progress",
        "release": "ready",
        "complete": "done",
    }
)


class StateStoreError(RuntimeError):
    """Raised when the event log cannot be read or written safely."""


class EventParseError(StateStoreError):
    """Raised when a log line is not a JSON object."""

    def __init__(self, path: Path, line_number: int, detail: str) -> None:
        super().__init__(
            f"Malformed JSON on line {line_number} of {path}: {detail}. "
            "Run repair_state_file on the log to drop invalid lines (a backup is kept)."
        )
        self.path = path
        self.line_number = line_number


@dataclass(frozen=True)
class StateRepairResult:
    """Outcome of an explicit ``repair_state_file`` run."""

    success: bool
    lines_kept: int
    lines_removed: int
    backup_path: Path | None
    warnings: tuple[str, ...]


def serialize_event(event: WorkUnitEvent) -> str:
    return json.dumps(event_to_record(event), ensure_ascii=True, separators=(",", ":"), sort_keys=True)


def decode_event_line(path: Path, line_number: int, raw_line: bytes | str) -> WorkUnitEvent:
    """Parse and validate one non-blank log line."""
    if isinstance(raw_line, bytes):
        try:
            raw_line = raw_line.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EventParseError(path, line_number, "invalid UTF-8") from exc
    try:
        record = json.loads(raw_line)
    except json.JSONDecodeError as exc:
        raise EventParseError(path, line_number, exc.msg) from exc
    if not isinstance(record, dict):
        raise EventParseError(path, line_number, "expected a JSON object")
    try:
        return event_from_record(record)
    except EventValidationError as exc:
        raise exc.at_line(line_number) from exc


def read_events(path: Path) -> tuple[WorkUnitEvent, ...]:
    """Read every event in file order; a missing file is an empty log."""
    if not path.exists():
        return ()
    events: list[WorkUnitEvent] = []
    with path.open("rb") as file_handle:
        for line_number, raw_line in enumerate(file_handle, start=1):
            stripped = raw_line.strip()
            if not stripped:
                continue
            events.append(decode_event_line(path, line_number, stripped))
    return tuple(events)


def atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` so readers only ever see the old or the new content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.tmp.{os.getpid()}")
    try:
        with temp_path.open("w", encoding="utf-8") as file_handle:
            file_handle.write(content)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(path.parent)


def _fsync_directory(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class WorkUnitStateStore:
    """File-backed event log plus its in-memory projection."""

    def __init__(self, state_dir: Path) -> None:
        self._events_path = state_dir / WU_EVENTS_FILE_NAME
        self._indexer = StateIndexer()
        self._events: list[WorkUnitEvent] = []
        self._loaded = False

    @property
    def events_path(self) -> Path:
        return self._events_path

    @property
    def indexer(self) -> StateIndexer:
        self._ensure_loaded()
        return self._indexer

    def load(self) -> None:
        """Clear the projection and replay the whole log.

        Raises EventParseError or EventValidationError (with the line number) and
        leaves the store unloaded; nothing partial is kept.
        """
        self._loaded = False
        self._indexer.reset()
        self._events.clear()
        events = read_events(self._events_path)
        self._indexer.replay(events)
        self._events.extend(events)
        self._loaded = True
        logger.debug("Loaded %d events from %s", len(events), self._events_path)

    def events(self) -> tuple[WorkUnitEvent, ...]:
        """All events in log order."""
        self._ensure_loaded()
        return tuple(self._events)

    def append_event(self, event: WorkUnitEvent) -> WorkUnitEvent:
        """Validate, persist one line, then apply to the projection."""
        return self.append_events([event])[0]

    def append_events(self, events: Sequence[WorkUnitEvent]) -> tuple[WorkUnitEvent, ...]:
        """Validate every event, then persist them in a single write; none are written if any is invalid."""
        validated = tuple(validate_event(event) for event in events)
        self._ensure_loaded()

        self._events_path.parent.mkdir(parents=True, exist_ok=True)
        with self._events_path.open("a", encoding="utf-8") as file_handle:
            file_handle.write(serialize_events(validated))
            file_handle.flush()
            os.fsync(file_handle.fileno())

        for event in validated:
            self._events.append(event)
            self._indexer.apply(event)
        return validated

    def get_state(self, wu_id: str) -> WorkUnitState | None:
        return self.indexer.get_state(wu_id)

    def get_by_status(self, status: str) -> frozenset[str]:
        return self.indexer.get_by_status(status)

    def get_by_lane(self, lane: str) -> frozenset[str]:
        return self.indexer.get_by_lane(lane)

    def get_children(self, parent_wu_id: str) -> frozenset[str]:
        return self.indexer.get_children(parent_wu_id)

    def prepare_event(
        self, event_type: WorkUnitEventType, wu_id: str, *, timestamp: str | None = None, **fields: str | None
    ) -> WorkUnitEvent:
        """Check the transition against the current projection and build the event without writing it."""
        state = self.get_state(wu_id)
        target = _TARGET_STATUS.get(event_type)

        if event_type == "create":
            if state is not None:
                raise TransitionError(wu_id, state.status, "in_progress", detail="work unit already exists")
        elif event_type == "claim":
            assert_transition(state.status if state is not None else "ready", "in_progress", wu_id)
        elif target is not None:
            if state is None:
                raise TransitionError(wu_id, None, target, detail="work unit has no events; claim it first")
            assert_transition(state.status, target, wu_id)
        elif event_type == "checkpoint" and state is None:
            raise TransitionError(wu_id, None, "checkpoint", detail="work unit has no events; claim it first")

        return build_event(event_type, wu_id, timestamp=timestamp, **fields)

    def create(self, wu_id: str, lane: str, title: str, *, timestamp: str | None = None) -> WorkUnitEvent:
        return self.append_event(self.prepare_event("create", wu_id, lane=lane, title=title, timestamp=timestamp))

    def claim(self, wu_id: str, lane: str, title: str, *, timestamp: str | None = None) -> WorkUnitEvent:
        return self.append_event(self.prepare_event("claim", wu_id, lane=lane, title=title, timestamp=timestamp))

    def block(self, wu_id: str, reason: str, *, timestamp: str | None = None) -> WorkUnitEvent:
        return self.append_event(self.prepare_event("block", wu_id, reason=reason, timestamp=timestamp))

    def unblock(self, wu_id: str, reason: str | None = None, *, timestamp: str | None = None) -> WorkUnitEvent:
        return self.append_event(self.prepare_event("unblock", wu_id, reason=reason, timestamp=timestamp))

    def release(self, wu_id: str, reason: str, *, timestamp: str | None = None) -> WorkUnitEvent:
        return self.append_event(self.prepare_event("release", wu_id, reason=reason, timestamp=timestamp))

    def complete(self, wu_id: str, reason: str | None = None, *, timestamp: str | None = None) -> WorkUnitEvent:
        return self.append_event(self.prepare_event("complete", wu_id, reason=reason, timestamp=timestamp))

    def checkpoint(
        self,
        wu_id: str,
        note: str,
        *,
        session_id: str | None = None,
        progress: str | None = None,
        next_steps: str | None = None,
        timestamp: str | None = None,
    ) -> WorkUnitEvent:
        event = self.prepare_event(
            "checkpoint",
            wu_id,
            note=note,
            session_id=session_id,
            progress=progress,
            next_steps=next_steps,
            timestamp=timestamp,
        )
        return self.append_event(event)

    def delegate(
        self, wu_id: str, parent_wu_id: str, delegation_id: str, *, timestamp: str | None = None
    ) -> WorkUnitEvent:
        event = self.prepare_event(
            "delegation", wu_id, parent_wu_id=parent_wu_id, delegation_id=delegation_id, timestamp=timestamp
        )
        return self.append_event(event)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()


def repair_state_file(path: Path, *, clock: ClockFn | None = None) -> StateRepairResult:
    """Drop malformed or schema-invalid lines from an event log.

    The original file is always copied to ``<path>.backup.<timestamp>`` first and
    the surviving lines are written back atomically.
    """
    if not path.exists():
        return StateRepairResult(
            success=True,
            lines_kept=0,
            lines_removed=0,
            backup_path=None,
            warnings=("File does not exist, nothing to repair",),
        )

    now = clock() if clock is not None else datetime.now(tz=UTC)
    stamp = now.astimezone(UTC).isoformat(timespec="milliseconds").replace(":", "-").replace(".", "-")
    backup_path = path.with_name(f"{path.name}.backup.{stamp}")
    shutil.copy2(path, backup_path)
    logger.info("Backed up %s to %s before repair", path, backup_path)

    kept: list[str] = []
    warnings: list[str] = []
    removed = 0
    for line_number, raw_line in enumerate(path.read_bytes().split(b"\n"), start=1):
        stripped = raw_line.strip()
        if not stripped:
            continue
        try:
            decode_event_line(path, line_number, stripped)
        except EventParseError:
            warnings.append(f"Line {line_number}: Malformed JSON removed")
            removed += 1
            continue
        except EventValidationError as exc:
            warnings.append(f"Line {line_number}: Invalid event removed ({'; '.join(exc.diagnostics)})")
            removed += 1
            continue
        kept.append(stripped.decode("utf-8"))

    if removed and not kept:
        warnings.append("All lines were invalid - file is now empty")

    atomic_write_text(path, "".join(f"{line}\n" for line in kept))
    if removed:
        logger.warning("Removed %d invalid line(s) from %s; backup at %s", removed, path, backup_path)

    return StateRepairResult(
        success=True,
        lines_kept=len(kept),
        lines_removed=removed,
        backup_path=backup_path,
        warnings=tuple(warnings),
    )


def serialize_events(events: Iterable[WorkUnitEvent]) -> str:
    """Serialize events back to log form."""
    return "".join(f"{serialize_event(event)}\n" for event in events)
