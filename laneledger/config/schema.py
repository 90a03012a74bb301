import re
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from laneledger.constants import (
    DEFAULT_ARCHIVE_AFTER,
    DEFAULT_ARCHIVE_DIR,
    DEFAULT_BACKLOG_PATH,
    DEFAULT_LOCKS_DIR,
    DEFAULT_MAIN_BRANCH,
    DEFAULT_REMOTE,
    DEFAULT_STALE_LOCK_THRESHOLD_HOURS,
    DEFAULT_STAMPS_DIR,
    DEFAULT_STATE_DIR,
    DEFAULT_STATUS_PATH,
    DEFAULT_WORKTREES_DIR,
    DEFAULT_WU_DIR,
)
from laneledger.paths import ProjectPaths

LockPolicy = Literal["active", "all", "none"]

_DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")
_UNIT_MS = {"s": 1000, "m": 60 * 1000, "h": 60 * 60 * 1000, "d": 24 * 60 * 60 * 1000}


def duration_to_ms(value: str) -> int:
    """Convert "<number><s|m|h|d>" to milliseconds."""
    match = _DURATION_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid duration format: {value}. Expected format: <number><s|m|h|d> (e.g., '90d', '12h')")
    return int(match.group(1)) * _UNIT_MS[match.group(2)]


class LaneConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    name: str
    lock_policy: Optional[LockPolicy] = None  # falls back to ProjectConfig.default_lock_policy
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Lane name must not be empty")
        return v


class LocksConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    stale_threshold_hours: float = DEFAULT_STALE_LOCK_THRESHOLD_HOURS

    @field_validator("stale_threshold_hours")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"stale_threshold_hours must be positive, got: {v}")
        return v

    @property
    def stale_threshold_seconds(self) -> float:
        return self.stale_threshold_hours * 3600


class PushRetryConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = True
    retries: int = 3
    min_delay_ms: int = 100
    max_delay_ms: int = 1000
    jitter: bool = True

    @model_validator(mode="after")
    def validate_bounds(self) -> "PushRetryConfig":
        if self.retries < 1:
            raise ValueError("push_retry.retries must be >= 1")
        if self.min_delay_ms < 0 or self.max_delay_ms < self.min_delay_ms:
            raise ValueError("push_retry delays must satisfy 0 <= min_delay_ms <= max_delay_ms")
        return self


class GitConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    remote: str = DEFAULT_REMOTE
    main_branch: str = DEFAULT_MAIN_BRANCH
    require_remote: bool = True  # False: commit to local main only, never push
    push_retry: PushRetryConfig = Field(default_factory=PushRetryConfig)


class ArchivalConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    archive_after: str = DEFAULT_ARCHIVE_AFTER

    @field_validator("archive_after")
    @classmethod
    def validate_archive_after(cls, v: str) -> str:
        duration_to_ms(v)
        return v

    @property
    def archive_after_ms(self) -> int:
        return duration_to_ms(self.archive_after)


class DirectoriesConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    state_dir: str = DEFAULT_STATE_DIR
    locks_dir: str = DEFAULT_LOCKS_DIR
    stamps_dir: str = DEFAULT_STAMPS_DIR
    archive_dir: str = DEFAULT_ARCHIVE_DIR
    wu_dir: str = DEFAULT_WU_DIR
    backlog_path: str = DEFAULT_BACKLOG_PATH
    status_path: str = DEFAULT_STATUS_PATH
    worktrees_dir: str = DEFAULT_WORKTREES_DIR


class ProjectConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    lanes: List[LaneConfig] = []
    default_lock_policy: LockPolicy = "active"
    locks: LocksConfig = Field(default_factory=LocksConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    archival: ArchivalConfig = Field(default_factory=ArchivalConfig)
    directories: DirectoriesConfig = Field(default_factory=DirectoriesConfig)

    @model_validator(mode="after")
    def validate_unique_lanes(self) -> "ProjectConfig":
        seen: set[str] = set()
        for lane in self.lanes:
            if lane.name in seen:
                raise ValueError(f"Duplicate lane: {lane.name}")
            seen.add(lane.name)
        return self

    def lock_policy_for(self, lane: str) -> LockPolicy:
        for lane_config in self.lanes:
            if lane_config.name == lane and lane_config.lock_policy is not None:
                return lane_config.lock_policy
        return self.default_lock_policy

    def paths(self, root: Path) -> ProjectPaths:
        return ProjectPaths(root=root, **self.directories.model_dump(include=set(DirectoriesConfig.model_fields)))
