from laneledger.config.loader import ConfigCache, load_config, load_project_config
from laneledger.config.schema import (
    ArchivalConfig,
    DirectoriesConfig,
    GitConfig,
    LaneConfig,
    LockPolicy,
    LocksConfig,
    ProjectConfig,
    PushRetryConfig,
    duration_to_ms,
)

__all__ = [
    "ArchivalConfig",
    "ConfigCache",
    "DirectoriesConfig",
    "GitConfig",
    "LaneConfig",
    "LockPolicy",
    "LocksConfig",
    "ProjectConfig",
    "PushRetryConfig",
    "duration_to_ms",
    "load_config",
    "load_project_config",
]
