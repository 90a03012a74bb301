"""Compare the event-log projection with the documents derived from it."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal, Mapping

import structlog

from laneledger.core.consistency.sections import DONE_SECTION, IN_PROGRESS_SECTION, section_ids
from laneledger.core.descriptors import read_descriptor, stamped_ids
from laneledger.core.state.indexer import StateIndexer
from laneledger.paths import ProjectPaths

logger = structlog.get_logger(__name__)

ConsistencyErrorType = Literal[
    "DONE_NO_STAMP",
    "DONE_STILL_IN_PROGRESS",
    "BACKLOG_DUAL_SECTION",
    "STAMP_EXISTS_NOT_DONE",
    "ORPHAN_WORKTREE_DONE",
    "MISSING_WORKTREE_CLAIMED",
]

WorktreeLister = Callable[[], Mapping[str, Path]]

_WORKTREE_DIR_SUFFIX = re.compile(r"-(wu-\d+)$")


@dataclass(frozen=True)
class ConsistencyError:
    """One detected mismatch. Recomputed on every scan, never persisted."""

    type: ConsistencyErrorType
    wu_id: str
    can_auto_repair: bool
    description: str
    lane: str | None = None
    title: str | None = None
    worktree_path: Path | None = None


@dataclass(frozen=True)
class ConsistencyReport:
    errors: tuple[ConsistencyError, ...]
    checked: int

    @property
    def valid(self) -> bool:
        return not self.errors


def lane_worktrees(paths: ProjectPaths) -> dict[str, Path]:
    """Lane worktrees on disk, keyed by work unit id (``<lane>-wu-<n>`` directories)."""
    if not paths.worktrees_path.is_dir():
        return {}
    found: dict[str, Path] = {}
    for entry in sorted(paths.worktrees_path.iterdir()):
        match = _WORKTREE_DIR_SUFFIX.search(entry.name)
        if entry.is_dir() and match:
            found[match.group(1).upper()] = entry
    return found


class ConsistencyDetector:
    """Scan one project root for drift against a projection."""

    def __init__(self, paths: ProjectPaths, *, worktree_lister: WorktreeLister | None = None) -> None:
        self._paths = paths
        self._worktree_lister = worktree_lister or (lambda: lane_worktrees(paths))

    def scan(self, indexer: StateIndexer) -> ConsistencyReport:
        done = indexer.get_by_status("done")
        stamps = stamped_ids(self._paths)
        status_in_progress = self._section(self._paths.status_file, IN_PROGRESS_SECTION)
        backlog_in_progress = self._section(self._paths.backlog_file, IN_PROGRESS_SECTION)
        backlog_done = self._section(self._paths.backlog_file, DONE_SECTION)
        worktrees = self._worktree_lister()

        errors: list[ConsistencyError] = []
        for wu_id in sorted(done):
            state = indexer.get_state(wu_id)
            lane = state.lane if state is not None else None
            title = state.title if state is not None else None
            if wu_id not in stamps:
                errors.append(
                    ConsistencyError(
                        "DONE_NO_STAMP", wu_id, True, f"{wu_id} is done but has no completion stamp", lane, title
                    )
                )
            if wu_id in status_in_progress:
                errors.append(
                    ConsistencyError(
                        "DONE_STILL_IN_PROGRESS",
                        wu_id,
                        True,
                        f"{wu_id} is done but still listed under In Progress in {self._paths.status_path}",
                        lane,
                        title,
                    )
                )
            if wu_id in worktrees:
                errors.append(
                    ConsistencyError(
                        "ORPHAN_WORKTREE_DONE",
                        wu_id,
                        True,
                        f"{wu_id} is done but its worktree {worktrees[wu_id]} still exists",
                        lane,
                        title,
                        worktrees[wu_id],
                    )
                )

        for wu_id in sorted(backlog_in_progress & backlog_done):
            errors.append(
                ConsistencyError(
                    "BACKLOG_DUAL_SECTION",
                    wu_id,
                    True,
                    f"{wu_id} is listed under both Done and In Progress in {self._paths.backlog_path}",
                )
            )

        for wu_id in sorted(stamps - done):
            state = indexer.get_state(wu_id)
            errors.append(
                ConsistencyError(
                    "STAMP_EXISTS_NOT_DONE",
                    wu_id,
                    True,
                    f"{wu_id} has a completion stamp but the event log shows "
                    f"{state.status if state is not None else 'no events'}",
                    state.lane if state is not None else None,
                    state.title if state is not None else None,
                )
            )

        for wu_id in sorted(indexer.get_by_status("in_progress")):
            missing = self._missing_worktree(wu_id)
            if missing is not None:
                state = indexer.get_state(wu_id)
                errors.append(
                    ConsistencyError(
                        "MISSING_WORKTREE_CLAIMED",
                        wu_id,
                        False,
                        f"{wu_id} is in progress but its worktree {missing} is missing; "
                        "recreate it or release the work unit",
                        state.lane if state is not None else None,
                        state.title if state is not None else None,
                        missing,
                    )
                )

        checked = {state.wu_id for state in indexer.all_states()} | stamps | backlog_in_progress | backlog_done
        if errors:
            logger.info("Consistency scan found %d issue(s) across %d work units", len(errors), len(checked))
        return ConsistencyReport(errors=tuple(errors), checked=len(checked))

    def _section(self, path: Path, section: str) -> frozenset[str]:
        if not path.exists():
            return frozenset()
        return section_ids(path.read_text(encoding="utf-8"), section)

    def _missing_worktree(self, wu_id: str) -> Path | None:
        descriptor = read_descriptor(self._paths, wu_id)
        if descriptor is None:
            return None
        raw = descriptor.get("worktree_path")
        if not isinstance(raw, str) or not raw.strip():
            return None
        worktree = Path(raw)
        if not worktree.is_absolute():
            worktree = self._paths.root / worktree
        return None if worktree.exists() else worktree
