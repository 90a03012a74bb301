"""Constants used across laneledger.

On-disk layout defaults live here so the config schema and the tests agree on them.
"""

import re

# Work unit identifiers
WU_ID_PATTERN = re.compile(r"^WU-\d+$")

# Default on-disk layout (relative to a project or worktree root)
DEFAULT_STATE_DIR = ".laneledger/state"
DEFAULT_LOCKS_DIR = ".laneledger/locks"
DEFAULT_STAMPS_DIR = ".laneledger/stamps"
DEFAULT_ARCHIVE_DIR = ".laneledger/archive"
DEFAULT_WU_DIR = "docs/tasks/wu"
DEFAULT_BACKLOG_PATH = "docs/tasks/backlog.md"
DEFAULT_STATUS_PATH = "docs/tasks/status.md"
DEFAULT_WORKTREES_DIR = "worktrees"

CONFIG_FILE_NAME = ".laneledger.yaml"
WU_EVENTS_FILE_NAME = "wu-events.jsonl"
ARCHIVE_FILE_TEMPLATE = "wu-events-{month}.jsonl"  # month = YYYY-MM
STAMP_SUFFIX = ".done"
LOCK_SUFFIX = ".lock"

# Lane locks
DEFAULT_STALE_LOCK_THRESHOLD_HOURS = 2.0
STALE_LOCK_THRESHOLD_ENV = "LANELEDGER_STALE_LOCK_THRESHOLD_HOURS"

# Archival
DEFAULT_ARCHIVE_AFTER = "90d"

# Git
DEFAULT_REMOTE = "origin"
DEFAULT_MAIN_BRANCH = "main"
TEMP_BRANCH_PREFIX = "tmp"
LANE_BRANCH_PREFIX = "lane"

# Logging
LOG_LEVEL_ENV = "LANELEDGER_LOG_LEVEL"
