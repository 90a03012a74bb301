"""Integration tests for micro-worktree transactions against real git repositories."""

import os
from pathlib import Path

import pytest
from git import Repo

from laneledger.config.schema import GitConfig, PushRetryConfig
from laneledger.core.micro_worktree import (
    FatalTransactionError,
    MicroWorktreeTransactor,
    StagedChanges,
    current_micro_worktree,
    parse_worktree_list,
    temp_branch_name,
)


def _no_sleep(_seconds: float) -> None:
    return None


def _transactor(root: Path, **git_overrides) -> MicroWorktreeTransactor:
    return MicroWorktreeTransactor(root, git_config=GitConfig(**git_overrides), sleep_fn=_no_sleep)


def _writer(relative_path: str, content: str, seen: list[Path] | None = None):
    def execute(worktree_path: Path) -> StagedChanges:
        if seen is not None:
            seen.append(worktree_path)
        target = worktree_path / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        return StagedChanges(commit_message=f"write {relative_path}", files=[relative_path])

    return execute


def _assert_cleaned_up(repo: Repo, operation: str, txn_id: str) -> None:
    branch = temp_branch_name(operation, txn_id)
    assert branch not in [head.name for head in repo.heads]
    assert len(parse_worktree_list(repo.git.worktree("list", "--porcelain"))) == 1


def test_commit_is_pushed_and_worktree_removed(git_project) -> None:
    seen: list[Path] = []

    result = _transactor(git_project.clone).run("wu-claim", "WU-1", _writer("docs/a.txt", "alpha\n", seen))

    assert result.committed and result.pushed
    assert result.commit_sha == git_project.origin_head()
    assert git_project.origin_file("docs/a.txt") == "alpha\n"
    assert not seen[0].exists()
    assert seen[0].name.startswith("wu-claim-wu-1-")
    _assert_cleaned_up(git_project.repo, "wu-claim", "WU-1")


def test_push_only_leaves_primary_checkout_untouched(git_project) -> None:
    repo = git_project.repo
    local_before = repo.head.commit.hexsha

    _transactor(git_project.clone).run("wu-claim", "WU-1", _writer("a.txt", "a\n"), push_only=True)

    assert repo.head.commit.hexsha == local_before
    assert not (git_project.clone / "a.txt").exists()
    assert git_project.origin_head() != local_before


def test_default_mode_fast_forwards_local_main(git_project) -> None:
    _transactor(git_project.clone).run("wu-claim", "WU-1", _writer("a.txt", "a\n"))

    assert git_project.repo.head.commit.hexsha == git_project.origin_head()
    assert (git_project.clone / "a.txt").read_text() == "a\n"


def test_execute_failure_publishes_nothing(git_project) -> None:
    before = git_project.origin_head()

    def explode(worktree_path: Path) -> StagedChanges:
        assert current_micro_worktree() == worktree_path
        (worktree_path / "half.txt").write_text("partial")
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        _transactor(git_project.clone).run("wu-block", "WU-2", explode)

    assert git_project.origin_head() == before
    assert current_micro_worktree() is None
    _assert_cleaned_up(git_project.repo, "wu-block", "WU-2")


def test_no_changes_means_no_commit(git_project) -> None:
    before = git_project.origin_head()

    result = _transactor(git_project.clone).run("wu-noop", "WU-3", _writer("README.md", "# project\n"))

    assert not result.committed
    assert git_project.origin_head() == before


def test_deletions_are_staged(git_project) -> None:
    def delete_readme(worktree_path: Path) -> StagedChanges:
        (worktree_path / "README.md").unlink()
        return StagedChanges(commit_message="drop readme", files=["README.md"])

    _transactor(git_project.clone).run("cleanup", "WU-4", delete_readme)

    assert git_project.origin_file("README.md") == ""


def test_orphaned_temp_branch_is_cleaned_before_start(git_project) -> None:
    repo = git_project.repo
    repo.git.branch(temp_branch_name("wu-claim", "WU-5"), "main")

    result = _transactor(git_project.clone).run("wu-claim", "WU-5", _writer("b.txt", "b\n"))

    assert result.pushed
    _assert_cleaned_up(repo, "wu-claim", "WU-5")


def test_concurrent_push_to_other_file_is_rebased(git_project, tmp_path: Path) -> None:
    other = git_project.second_clone(tmp_path / "other")
    calls: list[int] = []

    def execute(worktree_path: Path) -> StagedChanges:
        calls.append(1)
        if len(calls) == 1:
            (Path(other.working_dir) / "theirs.txt").write_text("theirs\n")
            other.git.add("theirs.txt")
            other.git.commit("-m", "concurrent change")
            other.git.push("origin", "main")
        (worktree_path / "ours.txt").write_text("ours\n")
        return StagedChanges(commit_message="ours", files=["ours.txt"])

    result = _transactor(git_project.clone).run("wu-claim", "WU-6", execute)

    assert result.pushed
    assert result.attempts == 2
    assert len(calls) == 1
    assert git_project.origin_file("theirs.txt") == "theirs\n"
    assert git_project.origin_file("ours.txt") == "ours\n"


def test_conflicting_rebase_reruns_execute_on_new_tip(git_project, tmp_path: Path) -> None:
    other = git_project.second_clone(tmp_path / "other")
    calls: list[str] = []

    def append_line(worktree_path: Path) -> StagedChanges:
        log = worktree_path / "log.txt"
        existing = log.read_text() if log.exists() else ""
        calls.append(existing)
        if len(calls) == 1:
            (Path(other.working_dir) / "log.txt").write_text("theirs\n")
            other.git.add("log.txt")
            other.git.commit("-m", "their line")
            other.git.push("origin", "main")
        log.write_text(existing + "ours\n")
        return StagedChanges(commit_message="our line", files=["log.txt"])

    result = _transactor(git_project.clone).run("wu-log", "WU-7", append_line)

    assert result.pushed
    assert calls == ["", "theirs\n"]
    assert git_project.origin_file("log.txt") == "theirs\nours\n"


def test_exhausted_retries_raise_fatal_error(git_project) -> None:
    hook = git_project.origin / "hooks" / "pre-receive"
    hook.parent.mkdir(exist_ok=True)
    hook.write_text("#!/bin/sh\necho 'updates frozen' >&2\nexit 1\n")
    os.chmod(hook, 0o755)
    before = git_project.origin_head()

    transactor = MicroWorktreeTransactor(
        git_project.clone,
        git_config=GitConfig(push_retry=PushRetryConfig(retries=2, min_delay_ms=0, max_delay_ms=0)),
        sleep_fn=_no_sleep,
    )
    with pytest.raises(FatalTransactionError) as exc:
        transactor.run("wu-claim", "WU-8", _writer("c.txt", "c\n"))

    assert exc.value.attempts == 2
    assert "WU-8" in str(exc.value)
    assert git_project.origin_head() == before
    _assert_cleaned_up(git_project.repo, "wu-claim", "WU-8")


def test_missing_remote_is_fatal_with_hint(local_repo: Path) -> None:
    with pytest.raises(FatalTransactionError, match="require_remote"):
        _transactor(local_repo).run("wu-claim", "WU-9", _writer("a.txt", "a\n"))


def test_local_only_mode_commits_to_local_main(local_repo: Path) -> None:
    root = local_repo
    repo = Repo(root)

    result = _transactor(root, require_remote=False).run("wu-claim", "WU-10", _writer("a.txt", "a\n"))

    assert result.committed and not result.pushed
    assert repo.head.commit.hexsha == result.commit_sha
    assert (root / "a.txt").read_text() == "a\n"
    _assert_cleaned_up(repo, "wu-claim", "WU-10")
