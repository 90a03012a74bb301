"""Dispatch consistency repairs through per-type handler tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Mapping, Sequence

import structlog
import yaml
from git.exc import GitCommandError, InvalidGitRepositoryError

from laneledger.config.schema import GitConfig
from laneledger.core.consistency.detector import ConsistencyError, ConsistencyErrorType
from laneledger.core.consistency.file_repairs import (
    RepairContext,
    RepairOutcome,
    create_missing_stamp,
    reconcile_stamped_unit,
    remove_from_backlog_in_progress,
    remove_from_status_in_progress,
    remove_orphan_worktree,
)
from laneledger.core.micro_worktree import (
    FatalTransactionError,
    MicroWorktreeTransactor,
    StagedChanges,
    current_micro_worktree,
)
from laneledger.core.state.store import StateStoreError
from laneledger.paths import ProjectPaths

logger = structlog.get_logger(__name__)

RepairHandler = Callable[[ConsistencyError, RepairContext], RepairOutcome]
ClockFn = Callable[[], datetime]

REPAIR_OPERATION = "wu-repair"

FILE_REPAIRS: Mapping[ConsistencyErrorType, RepairHandler] = MappingProxyType(
    {
        "DONE_NO_STAMP": create_missing_stamp,
        "DONE_STILL_IN_PROGRESS": remove_from_status_in_progress,
        "BACKLOG_DUAL_SECTION": remove_from_backlog_in_progress,
        "STAMP_EXISTS_NOT_DONE": reconcile_stamped_unit,
    }
)

GIT_ONLY_REPAIRS: Mapping[ConsistencyErrorType, RepairHandler] = MappingProxyType(
    {
        "ORPHAN_WORKTREE_DONE": remove_orphan_worktree,
    }
)

# Failures a single repair may raise; anything else is a programming error and propagates.
_REPAIR_FAILURES = (OSError, ValueError, yaml.YAMLError, StateStoreError, GitCommandError, InvalidGitRepositoryError)


@dataclass(frozen=True)
class RepairSummary:
    repaired: int
    skipped: int
    failed: int
    dry_run: bool = False
    failures: tuple[str, ...] = ()


@dataclass
class _Tally:
    repaired: int = 0
    skipped: int = 0
    failed: int = 0
    files: set[str] = field(default_factory=set)
    failures: list[str] = field(default_factory=list)

    def record(self, error: ConsistencyError, handler: RepairHandler, ctx: RepairContext) -> None:
        try:
            outcome = handler(error, ctx)
        except _REPAIR_FAILURES as exc:
            self.failed += 1
            self.failures.append(f"{error.type} {error.wu_id}: {exc}")
            logger.warning("Repair of %s for %s failed: %s", error.type, error.wu_id, exc)
            return
        if outcome.status == "repaired":
            self.repaired += 1
            self.files.update(outcome.files)
            logger.info("Repaired %s for %s", error.type, error.wu_id)
        else:
            self.skipped += 1
            logger.info("Skipped %s for %s: %s", error.type, error.wu_id, outcome.detail)


class ConsistencyRepairer:
    """Apply repairs for detected errors.

    File repairs for one call are batched into a single micro-worktree
    transaction, or edit ``target_root`` / the active micro-worktree directly
    when one is given. Without a transactor they edit the project root in place.
    """

    def __init__(
        self,
        paths: ProjectPaths,
        *,
        transactor: MicroWorktreeTransactor | None = None,
        git_config: GitConfig | None = None,
        file_repairs: Mapping[ConsistencyErrorType, RepairHandler] = FILE_REPAIRS,
        git_repairs: Mapping[ConsistencyErrorType, RepairHandler] = GIT_ONLY_REPAIRS,
        clock: ClockFn | None = None,
    ) -> None:
        self._paths = paths
        self._transactor = transactor
        self._git = git_config or GitConfig()
        self._file_repairs = file_repairs
        self._git_repairs = git_repairs
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def repair(
        self, errors: Sequence[ConsistencyError], *, dry_run: bool = False, target_root: Path | None = None
    ) -> RepairSummary:
        file_errors = [e for e in errors if e.can_auto_repair and e.type in self._file_repairs]
        git_errors = [e for e in errors if e.can_auto_repair and e.type in self._git_repairs]
        skipped = len(errors) - len(file_errors) - len(git_errors)

        if dry_run:
            return RepairSummary(
                repaired=len(file_errors) + len(git_errors), skipped=skipped, failed=0, dry_run=True
            )

        totals = _Tally(skipped=skipped)
        if file_errors:
            self._merge(totals, self._run_file_repairs(file_errors, target_root))

        git_tally = _Tally()
        ctx = self._context(self._paths)
        for error in git_errors:
            git_tally.record(error, self._git_repairs[error.type], ctx)
        self._merge(totals, git_tally)

        summary = RepairSummary(
            repaired=totals.repaired, skipped=totals.skipped, failed=totals.failed, failures=tuple(totals.failures)
        )
        logger.info(
            "Consistency repair: %d repaired, %d skipped, %d failed", summary.repaired, summary.skipped, summary.failed
        )
        return summary

    def _run_file_repairs(self, errors: list[ConsistencyError], target_root: Path | None) -> _Tally:
        root = target_root or current_micro_worktree()
        if root is not None or self._transactor is None:
            return self._apply_file_repairs(root or self._paths.root, errors)

        ids = "-".join(sorted({e.wu_id for e in errors}))
        txn_id = f"batch-{ids}"[:50]
        last: list[_Tally] = []

        def execute(worktree_path: Path) -> StagedChanges:
            tally = self._apply_file_repairs(worktree_path, errors)
            last[:] = [tally]
            return StagedChanges(
                commit_message=f"fix: repair {tally.repaired} WU inconsistencies", files=sorted(tally.files)
            )

        try:
            self._transactor.run(REPAIR_OPERATION, txn_id, execute)
        except (FatalTransactionError, GitCommandError, OSError) as exc:
            logger.warning("Repair transaction %s failed; nothing was published: %s", txn_id, exc)
            attempted = last[0] if last else _Tally()
            return _Tally(
                skipped=attempted.skipped,
                failed=len(errors) - attempted.skipped,
                failures=[f"{REPAIR_OPERATION} {txn_id}: {exc}"],
            )
        return last[0] if last else _Tally()

    def _apply_file_repairs(self, root: Path, errors: list[ConsistencyError]) -> _Tally:
        ctx = self._context(self._paths.rebased(root))
        tally = _Tally()
        for error in errors:
            tally.record(error, self._file_repairs[error.type], ctx)
        return tally

    def _context(self, paths: ProjectPaths) -> RepairContext:
        return RepairContext(paths=paths, now=self._clock(), git=self._git)

    @staticmethod
    def _merge(into: _Tally, other: _Tally) -> None:
        into.repaired += other.repaired
        into.skipped += other.skipped
        into.failed += other.failed
        into.files.update(other.files)
        into.failures.extend(other.failures)
