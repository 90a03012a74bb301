"""Work unit event contracts and validation.

Events are an immutable tagged union. The wire form is one flat JSON object
per line: ``{"type", "wuId", "timestamp", ...type-specific fields}``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from types import MappingProxyType
from typing import ClassVar, Literal, Mapping, cast

from laneledger.constants import WU_ID_PATTERN

WorkUnitEventType = Literal[
    "create", "claim", "block", "unblock", "release", "complete", "checkpoint", "delegation"
]

_BASE_FIELDS: tuple[str, ...] = ("type", "wuId", "timestamp")

_REQUIRED_FIELDS: Mapping[WorkUnitEventType, tuple[str, ...]] = MappingProxyType(
    {
        "create": ("lane", "title"),
        "claim": ("lane", "title"),
        "block": ("reason",),
        "unblock": (),
        "release": ("reason",),
        "complete": (),
        "checkpoint": ("note",),
        "delegation": ("parentWuId", "delegationId"),
    }
)

_OPTIONAL_FIELDS: Mapping[WorkUnitEventType, tuple[str, ...]] = MappingProxyType(
    {
        "create": (),
        "claim": (),
        "block": (),
        "unblock": ("reason",),
        "release": (),
        "complete": ("reason",),
        "checkpoint": ("sessionId", "progress", "nextSteps"),
        "delegation": (),
    }
)


class EventValidationError(ValueError):
    """Raised when a candidate event is well-formed JSON but violates the event schema."""

    def __init__(self, event_type: str, diagnostics: list[str], *, line_number: int | None = None) -> None:
        prefix = f"Validation error on line {line_number}" if line_number is not None else "Invalid event"
        message = f"{prefix} ({event_type}): " + "; ".join(diagnostics)
        super().__init__(message)
        self.event_type = event_type
        self.diagnostics = tuple(diagnostics)
        self.line_number = line_number

    def at_line(self, line_number: int) -> EventValidationError:
        return EventValidationError(self.event_type, list(self.diagnostics), line_number=line_number)


@dataclass(frozen=True)
class CreateEvent:
    event_type: ClassVar[Literal["create"]] = "create"

    wu_id: str
    timestamp: str
    lane: str
    title: str


@dataclass(frozen=True)
class ClaimEvent:
    event_type: ClassVar[Literal["claim"]] = "claim"

    wu_id: str
    timestamp: str
    lane: str
    title: str


@dataclass(frozen=True)
class BlockEvent:
    event_type: ClassVar[Literal["block"]] = "block"

    wu_id: str
    timestamp: str
    reason: str


@dataclass(frozen=True)
class UnblockEvent:
    event_type: ClassVar[Literal["unblock"]] = "unblock"

    wu_id: str
    timestamp: str
    reason: str | None = None


@dataclass(frozen=True)
class ReleaseEvent:
    event_type: ClassVar[Literal["release"]] = "release"

    wu_id: str
    timestamp: str
    reason: str


@dataclass(frozen=True)
class CompleteEvent:
    event_type: ClassVar[Literal["complete"]] = "complete"

    wu_id: str
    timestamp: str
    reason: str | None = None


@dataclass(frozen=True)
class CheckpointEvent:
    """Progress note for resuming work; does not change status."""

    event_type: ClassVar[Literal["checkpoint"]] = "checkpoint"

    wu_id: str
    timestamp: str
    note: str
    session_id: str | None = None
    progress: str | None = None
    next_steps: str | None = None


@dataclass(frozen=True)
class DelegationEvent:
    """Links a child work unit to the parent that spawned it."""

    event_type: ClassVar[Literal["delegation"]] = "delegation"

    wu_id: str
    timestamp: str
    parent_wu_id: str
    delegation_id: str


WorkUnitEvent = (
    CreateEvent
    | ClaimEvent
    | BlockEvent
    | UnblockEvent
    | ReleaseEvent
    | CompleteEvent
    | CheckpointEvent
    | DelegationEvent
)

# Wire key -> dataclass attribute, for keys whose names differ.
_ATTRIBUTE_NAMES: Mapping[str, str] = MappingProxyType(
    {
        "wuId": "wu_id",
        "sessionId": "session_id",
        "nextSteps": "next_steps",
        "parentWuId": "parent_wu_id",
        "delegationId": "delegation_id",
    }
)

_EVENT_CLASSES: Mapping[WorkUnitEventType, type[WorkUnitEvent]] = MappingProxyType(
    {
        "create": CreateEvent,
        "claim": ClaimEvent,
        "block": BlockEvent,
        "unblock": UnblockEvent,
        "release": ReleaseEvent,
        "complete": CompleteEvent,
        "checkpoint": CheckpointEvent,
        "delegation": DelegationEvent,
    }
)


def utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_event_type(raw_event_type: object) -> WorkUnitEventType:
    """Validate and narrow a raw event type to the canonical set."""
    if not isinstance(raw_event_type, str) or raw_event_type not in _REQUIRED_FIELDS:
        raise EventValidationError(
            str(raw_event_type),
            [f"type: unsupported event type {raw_event_type!r} (allowed: {sorted(_REQUIRED_FIELDS)})"],
        )
    return cast(WorkUnitEventType, raw_event_type)


def event_from_record(record: Mapping[str, object]) -> WorkUnitEvent:
    """Validate a decoded log record and build the matching event."""
    event_type = parse_event_type(record.get("type"))
    diagnostics = _validate_field_set(event_type, record)

    wu_id = _as_wu_id(record, "wuId", diagnostics)
    timestamp = _as_iso8601(record, "timestamp", diagnostics)
    values: dict[str, object] = {"wu_id": wu_id, "timestamp": timestamp}
    for field_name in _REQUIRED_FIELDS[event_type]:
        if field_name == "parentWuId":
            values[_ATTRIBUTE_NAMES[field_name]] = _as_wu_id(record, field_name, diagnostics)
        else:
            values[_ATTRIBUTE_NAMES.get(field_name, field_name)] = _as_non_empty_str(record, field_name, diagnostics)
    for field_name in _OPTIONAL_FIELDS[event_type]:
        if field_name in record and record[field_name] is not None:
            values[_ATTRIBUTE_NAMES.get(field_name, field_name)] = _as_non_empty_str(
                record, field_name, diagnostics
            )

    if diagnostics:
        raise EventValidationError(event_type, diagnostics)
    return _EVENT_CLASSES[event_type](**values)  # type: ignore[arg-type]


def event_to_record(event: WorkUnitEvent) -> dict[str, object]:
    """Convert an event to its JSON-serializable wire form, omitting unset optionals."""
    record: dict[str, object] = {"type": event.event_type, "wuId": event.wu_id, "timestamp": event.timestamp}
    for field_name in (*_REQUIRED_FIELDS[event.event_type], *_OPTIONAL_FIELDS[event.event_type]):
        value = getattr(event, _ATTRIBUTE_NAMES.get(field_name, field_name))
        if value is not None:
            record[field_name] = value
    return record


def validate_event(event: WorkUnitEvent) -> WorkUnitEvent:
    """Re-check an in-memory event against the wire schema."""
    return event_from_record(event_to_record(event))


def build_event(
    event_type: WorkUnitEventType,
    wu_id: str,
    *,
    timestamp: str | None = None,
    **fields: str | None,
) -> WorkUnitEvent:
    """Validate keyword input and produce a canonical event.

    Field names use the attribute spelling (``parent_wu_id``), not the wire spelling.
    """
    wire_names = {attribute: wire for wire, attribute in _ATTRIBUTE_NAMES.items()}
    record: dict[str, object] = {
        "type": event_type,
        "wuId": wu_id,
        "timestamp": timestamp if timestamp is not None else utc_now_iso(),
    }
    for name, value in fields.items():
        if value is not None:
            record[wire_names.get(name, name)] = value
    return event_from_record(record)


def _validate_field_set(event_type: WorkUnitEventType, record: Mapping[str, object]) -> list[str]:
    required = set(_BASE_FIELDS) | set(_REQUIRED_FIELDS[event_type])
    allowed = required | set(_OPTIONAL_FIELDS[event_type])
    present = set(record.keys())

    missing = sorted(required - present)
    unexpected = sorted(present - allowed)

    diagnostics: list[str] = []
    if missing:
        diagnostics.append(f"missing required fields: {missing}")
    if unexpected:
        diagnostics.append(f"unexpected fields: {unexpected}")
    return diagnostics


def _as_non_empty_str(record: Mapping[str, object], field_name: str, diagnostics: list[str]) -> str:
    raw = record.get(field_name)
    if field_name not in record:
        return ""
    if not isinstance(raw, str) or not raw.strip():
        diagnostics.append(f"{field_name}: must be a non-empty string")
        return ""
    return raw


def _as_wu_id(record: Mapping[str, object], field_name: str, diagnostics: list[str]) -> str:
    raw = record.get(field_name)
    if field_name not in record:
        return ""
    if not isinstance(raw, str) or not WU_ID_PATTERN.match(raw):
        diagnostics.append(f"{field_name}: must match WU-<digits> (value={raw!r})")
        return ""
    return raw


def _as_iso8601(record: Mapping[str, object], field_name: str, diagnostics: list[str]) -> str:
    raw = record.get(field_name)
    if field_name not in record:
        return ""
    if not isinstance(raw, str) or not raw.strip():
        diagnostics.append(f"{field_name}: must be a non-empty ISO8601 string")
        return ""
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        diagnostics.append(f"{field_name}: must be valid ISO8601 (value={raw!r})")
        return ""
    if parsed.tzinfo is None:
        diagnostics.append(f"{field_name}: must include timezone offset")
        return ""
    return raw


def parse_timestamp(value: str) -> datetime:
    """Parse a validated event timestamp into an aware UTC datetime."""
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(UTC)
