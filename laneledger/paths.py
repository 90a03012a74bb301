"""Resolve the configured on-disk layout against a project or worktree root."""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from pathlib import Path

from laneledger.constants import (
    DEFAULT_ARCHIVE_DIR,
    DEFAULT_BACKLOG_PATH,
    DEFAULT_LOCKS_DIR,
    DEFAULT_STAMPS_DIR,
    DEFAULT_STATE_DIR,
    DEFAULT_STATUS_PATH,
    DEFAULT_WORKTREES_DIR,
    DEFAULT_WU_DIR,
    LANE_BRANCH_PREFIX,
    STAMP_SUFFIX,
    WU_EVENTS_FILE_NAME,
)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def to_kebab(value: str) -> str:
    """Normalize a lane name into a filesystem and branch safe slug.

    "Team: X" becomes "team-x".
    """
    slug = _NON_ALNUM.sub("-", value.strip().lower()).strip("-")
    return slug or "lane"


def lane_branch_name(lane: str, wu_id: str) -> str:
    return f"{LANE_BRANCH_PREFIX}/{to_kebab(lane)}/{wu_id.lower()}"


def lane_worktree_name(lane: str, wu_id: str) -> str:
    return f"{to_kebab(lane)}-{wu_id.lower()}"


@dataclass(frozen=True)
class ProjectPaths:
    """Absolute locations of every file laneledger reads or writes under one root."""

    root: Path
    state_dir: str = DEFAULT_STATE_DIR
    locks_dir: str = DEFAULT_LOCKS_DIR
    stamps_dir: str = DEFAULT_STAMPS_DIR
    archive_dir: str = DEFAULT_ARCHIVE_DIR
    wu_dir: str = DEFAULT_WU_DIR
    backlog_path: str = DEFAULT_BACKLOG_PATH
    status_path: str = DEFAULT_STATUS_PATH
    worktrees_dir: str = DEFAULT_WORKTREES_DIR

    def rebased(self, root: Path) -> ProjectPaths:
        """Same layout under a different root (e.g. a micro-worktree)."""
        return replace(self, root=root)

    @property
    def state_path(self) -> Path:
        return self.root / self.state_dir

    @property
    def events_file(self) -> Path:
        return self.state_path / WU_EVENTS_FILE_NAME

    @property
    def locks_path(self) -> Path:
        return self.root / self.locks_dir

    @property
    def stamps_path(self) -> Path:
        return self.root / self.stamps_dir

    @property
    def archive_path(self) -> Path:
        return self.root / self.archive_dir

    @property
    def wu_path(self) -> Path:
        return self.root / self.wu_dir

    @property
    def backlog_file(self) -> Path:
        return self.root / self.backlog_path

    @property
    def status_file(self) -> Path:
        return self.root / self.status_path

    @property
    def worktrees_path(self) -> Path:
        return self.root / self.worktrees_dir

    def stamp_file(self, wu_id: str) -> Path:
        return self.stamps_path / f"{wu_id}{STAMP_SUFFIX}"

    def descriptor_file(self, wu_id: str) -> Path:
        return self.wu_path / f"{wu_id}.yaml"

    def worktree_dir(self, lane: str, wu_id: str) -> Path:
        return self.worktrees_path / lane_worktree_name(lane, wu_id)

    def relative(self, path: Path) -> str:
        """Path relative to root, in git's forward-slash form."""
        return path.relative_to(self.root).as_posix()
