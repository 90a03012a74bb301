"""Repair handlers, one per consistency error type.

File repairs edit files under ``RepairContext.paths.root`` (a micro-worktree
when run standalone) and report which paths to stage. Git-only repairs remove
worktrees and branches and touch no shared text file.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Literal

import structlog
from git import Repo
from git.exc import GitCommandError

from laneledger.config.schema import GitConfig
from laneledger.core.consistency.detector import ConsistencyError
from laneledger.core.consistency.sections import IN_PROGRESS_SECTION, remove_from_section
from laneledger.core.descriptors import mark_descriptor_done, read_descriptor, write_stamp
from laneledger.core.state.events import build_event
from laneledger.core.state.store import WorkUnitStateStore, atomic_write_text
from laneledger.paths import ProjectPaths

logger = structlog.get_logger(__name__)

_RECONCILE_REASON = "reconciled from completion stamp"


@dataclass(frozen=True)
class RepairContext:
    paths: ProjectPaths
    now: datetime
    git: GitConfig

    @property
    def today(self) -> date:
        return self.now.astimezone(UTC).date()

    @property
    def now_iso(self) -> str:
        return self.now.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class RepairOutcome:
    status: Literal["repaired", "skipped"]
    files: tuple[str, ...] = ()
    detail: str = ""


def _skipped(detail: str) -> RepairOutcome:
    return RepairOutcome(status="skipped", detail=detail)


def create_missing_stamp(error: ConsistencyError, ctx: RepairContext) -> RepairOutcome:
    """DONE_NO_STAMP: write the completion stamp."""
    title = error.title or _descriptor_field(ctx.paths, error.wu_id, "title") or error.wu_id
    written = write_stamp(ctx.paths, error.wu_id, title, ctx.today)
    if written is None:
        return _skipped("stamp already exists")
    return RepairOutcome(status="repaired", files=(ctx.paths.relative(written),))


def remove_from_status_in_progress(error: ConsistencyError, ctx: RepairContext) -> RepairOutcome:
    """DONE_STILL_IN_PROGRESS: drop the unit from the status document's In Progress section."""
    return _remove_from_in_progress(ctx.paths.status_file, error.wu_id, ctx)


def remove_from_backlog_in_progress(error: ConsistencyError, ctx: RepairContext) -> RepairOutcome:
    """BACKLOG_DUAL_SECTION: keep Done, drop the In Progress entry."""
    return _remove_from_in_progress(ctx.paths.backlog_file, error.wu_id, ctx)


def reconcile_stamped_unit(error: ConsistencyError, ctx: RepairContext) -> RepairOutcome:
    """STAMP_EXISTS_NOT_DONE: append the missing claim/complete events and mark the descriptor done."""
    store = WorkUnitStateStore(ctx.paths.state_path)
    store.load()
    state = store.get_state(error.wu_id)
    if state is not None and state.status == "done":
        return _skipped("already done in the event log")

    if state is None or state.status == "ready":
        lane = error.lane or _descriptor_field(ctx.paths, error.wu_id, "lane")
        if lane is None:
            return _skipped("no lane recorded for the reconciliation claim")
        title = error.title or _descriptor_field(ctx.paths, error.wu_id, "title") or error.wu_id
        claim = store.prepare_event("claim", error.wu_id, lane=lane, title=title, timestamp=ctx.now_iso)
        complete = build_event("complete", error.wu_id, reason=_RECONCILE_REASON, timestamp=ctx.now_iso)
        store.append_events([claim, complete])
    else:
        store.append_event(
            store.prepare_event("complete", error.wu_id, reason=_RECONCILE_REASON, timestamp=ctx.now_iso)
        )

    files = [ctx.paths.relative(store.events_path)]
    descriptor = mark_descriptor_done(ctx.paths, error.wu_id, ctx.now_iso)
    if descriptor is not None:
        files.append(ctx.paths.relative(descriptor))
    return RepairOutcome(status="repaired", files=tuple(files))


def remove_orphan_worktree(error: ConsistencyError, ctx: RepairContext) -> RepairOutcome:
    """ORPHAN_WORKTREE_DONE: remove the finished unit's worktree and lane branch.

    Refuses when the current directory is inside the worktree, when it has
    uncommitted changes, or when the completion stamp is missing.
    """
    worktree_path = error.worktree_path
    if worktree_path is None or not worktree_path.exists():
        return _skipped("worktree already gone")
    if _is_within(Path.cwd(), worktree_path):
        return _skipped(f"current directory is inside {worktree_path}")
    if not ctx.paths.stamp_file(error.wu_id).exists():
        return _skipped("completion stamp missing; repair DONE_NO_STAMP first")

    worktree = Repo(worktree_path)
    if worktree.is_dirty(untracked_files=True):
        return _skipped(f"{worktree_path} has uncommitted changes")
    branch = None if worktree.head.is_detached else worktree.active_branch.name

    repo = Repo(ctx.paths.root)
    repo.git.worktree("remove", str(worktree_path))
    logger.info("Removed orphaned worktree %s for %s", worktree_path, error.wu_id)

    if branch is not None and branch != ctx.git.main_branch:
        repo.git.branch("-D", branch)
        if ctx.git.require_remote and ctx.git.remote in [remote.name for remote in repo.remotes]:
            try:
                repo.git.push(ctx.git.remote, "--delete", branch)
            except GitCommandError as exc:
                logger.warning("Could not delete remote branch %s/%s: %s", ctx.git.remote, branch, exc)
    return RepairOutcome(status="repaired")


def _remove_from_in_progress(path: Path, wu_id: str, ctx: RepairContext) -> RepairOutcome:
    if not path.exists():
        return _skipped(f"{path.name} does not exist")
    text, changed = remove_from_section(path.read_text(encoding="utf-8"), wu_id, IN_PROGRESS_SECTION)
    if not changed:
        return _skipped(f"{wu_id} not listed under In Progress")
    atomic_write_text(path, text)
    return RepairOutcome(status="repaired", files=(ctx.paths.relative(path),))


def _descriptor_field(paths: ProjectPaths, wu_id: str, field_name: str) -> str | None:
    descriptor = read_descriptor(paths, wu_id)
    if descriptor is None:
        return None
    value = descriptor.get(field_name)
    return value if isinstance(value, str) and value.strip() else None


def _is_within(path: Path, parent: Path) -> bool:
    return path.resolve().is_relative_to(parent.resolve())

