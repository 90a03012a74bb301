"""Move cold, completed work unit history out of the live event log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import structlog

from laneledger.constants import ARCHIVE_FILE_TEMPLATE, WU_EVENTS_FILE_NAME
from laneledger.core.state.events import WorkUnitEvent, parse_timestamp
from laneledger.core.state.indexer import replay_events
from laneledger.core.state.store import atomic_write_text, read_events, serialize_event, serialize_events
from laneledger.core.state_machine import TERMINAL_STATUSES

logger = structlog.get_logger(__name__)

DEFAULT_ARCHIVE_AFTER_MS = 90 * 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class ArchiveResult:
    archived_wu_ids: tuple[str, ...]
    retained_wu_ids: tuple[str, ...]
    archived_event_count: int
    retained_event_count: int
    events_path: Path
    archive_files: tuple[Path, ...]
    dry_run: bool

    @property
    def touched_files(self) -> tuple[Path, ...]:
        """Files to stage when archival runs inside a micro-worktree."""
        if self.dry_run or not self.archived_event_count:
            return ()
        return (self.events_path, *self.archive_files)


def archive_events(
    state_dir: Path,
    archive_dir: Path,
    *,
    archive_after_ms: int = DEFAULT_ARCHIVE_AFTER_MS,
    now: datetime | None = None,
    dry_run: bool = False,
) -> ArchiveResult:
    """Archive every terminal work unit whose latest event is older than the threshold.

    Archived lines are appended to monthly files keyed by each event's own
    timestamp; the live log is rewritten atomically with what remains.
    Units in a non-terminal status are always retained.
    """
    events_path = state_dir / WU_EVENTS_FILE_NAME
    events = read_events(events_path)
    resolved_now = now if now is not None else datetime.now(tz=UTC)
    cutoff = resolved_now - timedelta(milliseconds=archive_after_ms)

    projection = replay_events(events)
    latest: dict[str, datetime] = {}
    for event in events:
        stamp = parse_timestamp(event.timestamp)
        if event.wu_id not in latest or stamp > latest[event.wu_id]:
            latest[event.wu_id] = stamp

    archived_ids: set[str] = set()
    for wu_id, last_seen in latest.items():
        state = projection.get_state(wu_id)
        if state is None or state.status not in TERMINAL_STATUSES:
            continue
        if last_seen < cutoff:
            archived_ids.add(wu_id)

    to_archive: list[WorkUnitEvent] = [event for event in events if event.wu_id in archived_ids]
    to_retain: list[WorkUnitEvent] = [event for event in events if event.wu_id not in archived_ids]

    by_month: dict[str, list[WorkUnitEvent]] = {}
    for event in to_archive:
        month = parse_timestamp(event.timestamp).strftime("%Y-%m")
        by_month.setdefault(month, []).append(event)
    archive_files = tuple(archive_dir / ARCHIVE_FILE_TEMPLATE.format(month=month) for month in sorted(by_month))

    result = ArchiveResult(
        archived_wu_ids=tuple(sorted(archived_ids)),
        retained_wu_ids=tuple(sorted(set(latest) - archived_ids)),
        archived_event_count=len(to_archive),
        retained_event_count=len(to_retain),
        events_path=events_path,
        archive_files=archive_files,
        dry_run=dry_run,
    )
    if dry_run or not to_archive:
        return result

    for month in sorted(by_month):
        _merge_into_archive(archive_dir / ARCHIVE_FILE_TEMPLATE.format(month=month), by_month[month])

    atomic_write_text(events_path, serialize_events(to_retain))
    logger.info(
        "Archived %d events for %d work units into %d file(s)",
        len(to_archive),
        len(archived_ids),
        len(archive_files),
    )
    return result


def _merge_into_archive(archive_path: Path, events: list[WorkUnitEvent]) -> None:
    """Rewrite ``archive_path`` with any of ``events`` it does not already hold.

    Lines left behind by an interrupted earlier run are not written twice.
    """
    existing = archive_path.read_text(encoding="utf-8") if archive_path.exists() else ""
    present = set(existing.splitlines())
    missing = [line for line in (serialize_event(event) for event in events) if line not in present]
    if not missing:
        return
    if existing and not existing.endswith("\n"):
        existing += "\n"
    atomic_write_text(archive_path, existing + "".join(f"{line}\n" for line in missing))
