"""Detect and repair drift between the event log and derived documents."""

from laneledger.core.consistency.detector import (
    ConsistencyDetector,
    ConsistencyError,
    ConsistencyErrorType,
    ConsistencyReport,
)
from laneledger.core.consistency.file_repairs import RepairContext, RepairOutcome
from laneledger.core.consistency.repairer import (
    FILE_REPAIRS,
    GIT_ONLY_REPAIRS,
    ConsistencyRepairer,
    RepairHandler,
    RepairSummary,
)

__all__ = [
    "FILE_REPAIRS",
    "GIT_ONLY_REPAIRS",
    "ConsistencyDetector",
    "ConsistencyError",
    "ConsistencyErrorType",
    "ConsistencyRepairer",
    "ConsistencyReport",
    "RepairContext",
    "RepairHandler",
    "RepairOutcome",
    "RepairSummary",
]
