"""Atomic multi-file commits through short-lived git worktrees.

Every change to shared files goes through ``with_micro_worktree``. A fresh
worktree is checked out from the shared branch tip, ``execute`` writes into it
and names the files to stage, and the commit is pushed straight to the shared
branch. Other readers only ever see the pushed result.
"""

from __future__ import annotations

import random
import shutil
import tempfile
import time
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

import structlog
from git import Repo
from git.exc import GitCommandError

from laneledger.config.schema import GitConfig
from laneledger.constants import TEMP_BRANCH_PREFIX

logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], None]

_ACTIVE_WORKTREE: ContextVar[Path | None] = ContextVar("laneledger_active_micro_worktree", default=None)

_REJECTION_MARKERS = (
    "[rejected]",
    "non-fast-forward",
    "fetch first",
    "failed to push some refs",
    "stale info",
    "cannot lock ref",
)


class PushConflictError(RuntimeError):
    """A push was rejected because the shared branch moved; retryable."""

    def __init__(self, branch: str, attempt: int, detail: str) -> None:
        super().__init__(f"Push of {branch} rejected on attempt {attempt}: {detail}")
        self.branch = branch
        self.attempt = attempt


class FatalTransactionError(RuntimeError):
    """A micro-worktree commit or push failed for good; nothing was published."""

    def __init__(self, operation: str, txn_id: str, detail: str, *, attempts: int = 0) -> None:
        message = f"{operation} for {txn_id} failed: {detail}"
        if attempts:
            message = f"{operation} for {txn_id}: push failed after {attempts} attempts: {detail}"
        super().__init__(message + ". Re-run the command once the shared branch is reachable and quiet.")
        self.operation = operation
        self.txn_id = txn_id
        self.attempts = attempts


@dataclass(frozen=True)
class StagedChanges:
    """What ``execute`` hands back: the commit message and exact paths to stage."""

    commit_message: str
    files: Sequence[str]


@dataclass(frozen=True)
class MicroWorktreeResult:
    operation: str
    txn_id: str
    committed: bool
    pushed: bool
    commit_sha: str | None
    commit_message: str | None
    attempts: int


ExecuteFn = Callable[[Path], StagedChanges]


def current_micro_worktree() -> Path | None:
    """Path of the micro-worktree whose ``execute`` is running, if any."""
    return _ACTIVE_WORKTREE.get()


def temp_branch_name(operation: str, txn_id: str) -> str:
    return f"{TEMP_BRANCH_PREFIX}/{operation}/{txn_id.lower()}"


def parse_worktree_list(porcelain: str) -> list[tuple[Path, str | None]]:
    """Parse ``git worktree list --porcelain`` into (path, branch) pairs.

    Branch is the short name, or None for detached or bare entries.
    """
    entries: list[tuple[Path, str | None]] = []
    path: Path | None = None
    branch: str | None = None
    for line in [*porcelain.splitlines(), ""]:
        if not line.strip():
            if path is not None:
                entries.append((path, branch))
            path, branch = None, None
        elif line.startswith("worktree "):
            path = Path(line[len("worktree ") :])
        elif line.startswith("branch "):
            branch = line[len("branch ") :].removeprefix("refs/heads/")
    return entries


def find_worktree_by_branch(porcelain: str, branch: str) -> Path | None:
    for path, entry_branch in parse_worktree_list(porcelain):
        if entry_branch == branch:
            return path
    return None


def _is_push_rejection(exc: GitCommandError) -> bool:
    text = f"{exc.stderr or ''} {exc.stdout or ''}".lower()
    return any(marker in text for marker in _REJECTION_MARKERS)


class MicroWorktreeTransactor:
    """Runs ``execute`` callbacks in isolated worktrees and publishes their commits."""

    def __init__(
        self,
        repo_root: Path,
        *,
        git_config: GitConfig | None = None,
        sleep_fn: SleepFn | None = None,
        rng: random.Random | None = None,
        temp_root: Path | None = None,
    ) -> None:
        self._repo_root = repo_root
        self._git = git_config or GitConfig()
        self._sleep = sleep_fn or time.sleep
        self._rng = rng or random.Random()
        self._temp_root = temp_root

    @property
    def repo_root(self) -> Path:
        return self._repo_root

    def run(self, operation: str, txn_id: str, execute: ExecuteFn, *, push_only: bool = False) -> MicroWorktreeResult:
        """Execute, commit and publish one atomic change.

        If ``execute`` raises, nothing is committed or pushed and the exception
        propagates. With ``push_only`` the caller's checkout is never touched.
        The worktree and temp branch are removed in every case.
        """
        repo = Repo(self._repo_root)
        branch = temp_branch_name(operation, txn_id)
        self._cleanup_orphans(repo, branch)
        base_ref = self._resolve_base(repo, operation, txn_id)

        worktree_path = Path(tempfile.mkdtemp(prefix=f"{operation}-{txn_id.lower()}-", dir=self._temp_root))
        try:
            repo.git.branch(branch, base_ref)
            repo.git.worktree("add", str(worktree_path), branch)
            logger.debug("Created micro-worktree %s on %s from %s", worktree_path, branch, base_ref)
            worktree = Repo(worktree_path)

            staged = self._execute(worktree_path, execute)
            commit_sha = self._commit(worktree, staged, operation, txn_id)
            if commit_sha is None:
                return MicroWorktreeResult(operation, txn_id, False, False, None, staged.commit_message, 0)

            if not self._git.require_remote:
                return self._publish_local(repo, worktree, worktree_path, branch, operation, txn_id, execute, staged)

            result = self._publish_remote(worktree, worktree_path, operation, txn_id, execute, staged)
            if not push_only and result.pushed:
                self._sync_local_main(repo)
            return result
        finally:
            self._cleanup(repo, worktree_path, branch)

    def _resolve_base(self, repo: Repo, operation: str, txn_id: str) -> str:
        if not self._git.require_remote:
            return self._git.main_branch
        if self._git.remote not in [remote.name for remote in repo.remotes]:
            raise FatalTransactionError(
                operation,
                txn_id,
                f"remote '{self._git.remote}' is not configured (set git.require_remote: false for local-only use)",
            )
        try:
            repo.git.fetch(self._git.remote, self._git.main_branch)
        except GitCommandError as exc:
            raise FatalTransactionError(operation, txn_id, f"fetch of {self._git.remote} failed: {exc}") from exc
        return f"{self._git.remote}/{self._git.main_branch}"

    def _execute(self, worktree_path: Path, execute: ExecuteFn) -> StagedChanges:
        token = _ACTIVE_WORKTREE.set(worktree_path)
        try:
            staged = execute(worktree_path)
        finally:
            _ACTIVE_WORKTREE.reset(token)
        if not staged.commit_message.strip():
            raise ValueError("execute must return a non-empty commit message")
        return staged

    def _commit(self, worktree: Repo, staged: StagedChanges, operation: str, txn_id: str) -> str | None:
        if not staged.files:
            logger.info("%s for %s staged no files; nothing to commit", operation, txn_id)
            return None
        try:
            worktree.git.add("-A", "--", *staged.files)
            if not worktree.is_dirty(index=True, working_tree=False, untracked_files=False):
                logger.info("%s for %s produced no changes; nothing to commit", operation, txn_id)
                return None
            worktree.git.commit("-m", staged.commit_message)
        except GitCommandError as exc:
            raise FatalTransactionError(operation, txn_id, f"commit failed: {exc}") from exc
        return worktree.head.commit.hexsha

    def _publish_remote(
        self,
        worktree: Repo,
        worktree_path: Path,
        operation: str,
        txn_id: str,
        execute: ExecuteFn,
        staged: StagedChanges,
    ) -> MicroWorktreeResult:
        remote, main = self._git.remote, self._git.main_branch
        upstream = f"{remote}/{main}"
        max_attempts = self._git.push_retry.retries if self._git.push_retry.enabled else 1

        for attempt in range(1, max_attempts + 1):
            try:
                worktree.git.push(remote, f"HEAD:refs/heads/{main}")
            except GitCommandError as exc:
                if not _is_push_rejection(exc):
                    raise FatalTransactionError(operation, txn_id, f"push failed: {exc}") from exc
                conflict = PushConflictError(main, attempt, (exc.stderr or "").strip())
                logger.warning("%s (%s %s, attempt %d/%d)", conflict, operation, txn_id, attempt, max_attempts)
                if attempt == max_attempts:
                    raise FatalTransactionError(
                        operation, txn_id, f"{upstream} kept moving", attempts=attempt
                    ) from conflict
                self._sleep(self._backoff_seconds(attempt))
                try:
                    worktree.git.fetch(remote, main)
                except GitCommandError as fetch_exc:
                    raise FatalTransactionError(operation, txn_id, f"fetch failed: {fetch_exc}") from fetch_exc
                staged, changed = self._rebase_onto(worktree, worktree_path, upstream, operation, txn_id, execute, staged)
                if not changed:
                    return MicroWorktreeResult(operation, txn_id, False, False, None, staged.commit_message, attempt)
                continue

            sha = worktree.head.commit.hexsha
            logger.info("Pushed %s for %s to %s (%s)", operation, txn_id, upstream, sha[:12])
            return MicroWorktreeResult(operation, txn_id, True, True, sha, staged.commit_message, attempt)

        raise FatalTransactionError(operation, txn_id, "no push attempts were made", attempts=0)

    def _publish_local(
        self,
        repo: Repo,
        worktree: Repo,
        worktree_path: Path,
        branch: str,
        operation: str,
        txn_id: str,
        execute: ExecuteFn,
        staged: StagedChanges,
    ) -> MicroWorktreeResult:
        main = self._git.main_branch
        max_attempts = self._git.push_retry.retries if self._git.push_retry.enabled else 1

        for attempt in range(1, max_attempts + 1):
            try:
                self._fast_forward_branch(repo, main, branch)
            except GitCommandError as exc:
                logger.warning(
                    "Local %s moved during %s for %s (attempt %d/%d)", main, operation, txn_id, attempt, max_attempts
                )
                if attempt == max_attempts:
                    raise FatalTransactionError(
                        operation, txn_id, f"could not fast-forward {main}", attempts=attempt
                    ) from exc
                staged, changed = self._rebase_onto(worktree, worktree_path, main, operation, txn_id, execute, staged)
                if not changed:
                    return MicroWorktreeResult(operation, txn_id, False, False, None, staged.commit_message, attempt)
                continue

            sha = worktree.head.commit.hexsha
            logger.info("Committed %s for %s to local %s (%s)", operation, txn_id, main, sha[:12])
            return MicroWorktreeResult(operation, txn_id, True, False, sha, staged.commit_message, attempt)

        raise FatalTransactionError(operation, txn_id, "no merge attempts were made", attempts=0)

    def _fast_forward_branch(self, repo: Repo, target: str, source: str) -> None:
        if not repo.head.is_detached and repo.active_branch.name == target:
            repo.git.merge("--ff-only", source)
            return
        if not repo.is_ancestor(target, source):
            raise GitCommandError(["merge", "--ff-only", source], 1, f"{target} is not an ancestor of {source}")
        repo.git.branch("-f", target, source)

    def _rebase_onto(
        self,
        worktree: Repo,
        worktree_path: Path,
        upstream: str,
        operation: str,
        txn_id: str,
        execute: ExecuteFn,
        staged: StagedChanges,
    ) -> tuple[StagedChanges, bool]:
        """Move the pending commit onto ``upstream``.

        A conflicting rebase is abandoned and ``execute`` runs again on the new
        tip, so its preconditions are checked against what is actually there.
        Returns the staged changes in effect and whether a commit remains.
        """
        try:
            worktree.git.rebase(upstream)
            return staged, True
        except GitCommandError:
            logger.warning("Rebase of %s for %s conflicted; re-running on %s", operation, txn_id, upstream)
        try:
            worktree.git.rebase("--abort")
        except GitCommandError as exc:
            logger.warning("git rebase --abort failed in %s: %s", worktree_path, exc)
        worktree.git.reset("--hard", upstream)
        worktree.git.clean("-fd")

        staged = self._execute(worktree_path, execute)
        return staged, self._commit(worktree, staged, operation, txn_id) is not None

    def _sync_local_main(self, repo: Repo) -> None:
        remote, main = self._git.remote, self._git.main_branch
        try:
            self._fast_forward_branch(repo, main, f"{remote}/{main}")
        except GitCommandError as exc:
            logger.warning("Pushed, but could not fast-forward local %s to %s/%s: %s", main, remote, main, exc)

    def _backoff_seconds(self, attempt: int) -> float:
        retry = self._git.push_retry
        delay_ms = min(retry.max_delay_ms, retry.min_delay_ms * (2 ** (attempt - 1)))
        if retry.jitter:
            delay_ms = self._rng.uniform(delay_ms / 2, delay_ms)
        return delay_ms / 1000

    def _cleanup_orphans(self, repo: Repo, branch: str) -> None:
        """Remove a worktree or temp branch left behind by a crashed run of the same operation."""
        self._prune(repo)
        orphan = find_worktree_by_branch(repo.git.worktree("list", "--porcelain"), branch)
        if orphan is not None:
            logger.warning("Removing orphaned micro-worktree %s for %s", orphan, branch)
            self._remove_worktree(repo, orphan)
        if self._branch_exists(repo, branch):
            logger.warning("Deleting orphaned temp branch %s", branch)
            repo.git.branch("-D", branch)

    def _cleanup(self, repo: Repo, worktree_path: Path, branch: str) -> None:
        self._remove_worktree(repo, worktree_path)
        try:
            other = find_worktree_by_branch(repo.git.worktree("list", "--porcelain"), branch)
            if other is not None:
                self._remove_worktree(repo, other)
            if self._branch_exists(repo, branch):
                repo.git.branch("-D", branch)
        except GitCommandError as exc:
            logger.warning("Failed to delete temp branch %s: %s", branch, exc)

    def _remove_worktree(self, repo: Repo, worktree_path: Path) -> None:
        try:
            repo.git.worktree("remove", "--force", str(worktree_path))
        except GitCommandError as exc:
            logger.debug("git worktree remove %s failed (%s); removing from disk", worktree_path, exc)
            shutil.rmtree(worktree_path, ignore_errors=True)
            self._prune(repo)

    def _prune(self, repo: Repo) -> None:
        try:
            repo.git.worktree("prune")
        except GitCommandError as exc:
            logger.warning("git worktree prune failed in %s: %s", self._repo_root, exc)

    @staticmethod
    def _branch_exists(repo: Repo, branch: str) -> bool:
        try:
            repo.git.rev_parse("--verify", "--quiet", f"refs/heads/{branch}")
        except GitCommandError:
            return False
        return True


def with_micro_worktree(
    repo_root: Path,
    operation: str,
    txn_id: str,
    execute: ExecuteFn,
    *,
    push_only: bool = False,
    git_config: GitConfig | None = None,
    sleep_fn: SleepFn | None = None,
) -> MicroWorktreeResult:
    """One-shot form of ``MicroWorktreeTransactor.run``."""
    transactor = MicroWorktreeTransactor(repo_root, git_config=git_config, sleep_fn=sleep_fn)
    return transactor.run(operation, txn_id, execute, push_only=push_only)
