"""Integration tests for detecting and repairing drift in a real project checkout."""

from datetime import UTC, datetime
from pathlib import Path

from git import Repo

from laneledger.config.schema import GitConfig, ProjectConfig
from laneledger.core.consistency import ConsistencyDetector, ConsistencyRepairer
from laneledger.core.micro_worktree import MicroWorktreeTransactor, StagedChanges
from laneledger.core.state.store import WorkUnitStateStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _seed_drift(root: Path) -> None:
    """Commit a project whose derived documents disagree with its event log."""
    paths = ProjectConfig().paths(root)
    store = WorkUnitStateStore(paths.state_path)
    store.load()
    store.claim("WU-1", "Core", "Event log", timestamp="2026-02-01T09:00:00Z")
    store.complete("WU-1", timestamp="2026-02-02T09:00:00Z")

    paths.status_file.parent.mkdir(parents=True, exist_ok=True)
    paths.status_file.write_text("# Status\n\n## In Progress\n\n- WU-1 Event log\n\n## Done\n")
    paths.backlog_file.write_text("# Backlog\n\n## In Progress\n\n- WU-2 Locks\n\n## Done\n\n- WU-2 Locks\n")
    paths.stamps_path.mkdir(parents=True)
    paths.stamp_file("WU-3").write_text("WU WU-3 - Archive\nCompleted: 2026-02-10\n")
    paths.wu_path.mkdir(parents=True)
    paths.descriptor_file("WU-3").write_text("id: WU-3\ntitle: Archive\nlane: Core\nstatus: in_progress\n")

    repo = Repo(root)
    repo.git.add("-A")
    repo.git.commit("-m", "seed drifted project")
    repo.git.push("origin", "main")


def _scan(root: Path):
    paths = ProjectConfig().paths(root)
    store = WorkUnitStateStore(paths.state_path)
    store.load()
    return ConsistencyDetector(paths).scan(store.indexer), paths


def test_batch_repair_publishes_one_commit_and_clears_report(git_project) -> None:
    _seed_drift(git_project.clone)
    report, paths = _scan(git_project.clone)
    assert sorted((error.type, error.wu_id) for error in report.errors) == [
        ("BACKLOG_DUAL_SECTION", "WU-2"),
        ("DONE_NO_STAMP", "WU-1"),
        ("DONE_STILL_IN_PROGRESS", "WU-1"),
        ("STAMP_EXISTS_NOT_DONE", "WU-3"),
    ]
    before = git_project.origin_head()
    transactor = MicroWorktreeTransactor(git_project.clone, git_config=GitConfig(), sleep_fn=lambda _s: None)

    summary = ConsistencyRepairer(paths, transactor=transactor, clock=lambda: NOW).repair(report.errors)

    assert (summary.repaired, summary.skipped, summary.failed) == (4, 0, 0)
    origin = Repo(git_project.origin)
    assert origin.commit("main").parents[0].hexsha == before
    assert origin.commit("main").message.strip() == "fix: repair 4 WU inconsistencies"
    assert git_project.origin_file(".laneledger/stamps/WU-1.done") == "WU WU-1 - Event log\nCompleted: 2026-03-01\n"
    assert "WU-1" not in git_project.origin_file("docs/tasks/status.md")
    assert git_project.origin_file("docs/tasks/backlog.md").count("WU-2") == 1
    assert "status: done" in git_project.origin_file("docs/tasks/wu/WU-3.yaml")

    rescan, _paths = _scan(git_project.clone)
    assert rescan.valid
    assert rescan.errors == ()


def test_dry_run_changes_nothing(git_project) -> None:
    _seed_drift(git_project.clone)
    report, paths = _scan(git_project.clone)
    before = git_project.origin_head()
    transactor = MicroWorktreeTransactor(git_project.clone, git_config=GitConfig(), sleep_fn=lambda _s: None)

    summary = ConsistencyRepairer(paths, transactor=transactor).repair(report.errors, dry_run=True)

    assert summary.dry_run
    assert summary.repaired == 4
    assert git_project.origin_head() == before


def test_orphan_lane_worktree_is_removed(git_project) -> None:
    _seed_drift(git_project.clone)
    repo = git_project.repo
    worktree = git_project.clone / "worktrees" / "core-wu-1"
    repo.git.worktree("add", "-b", "lane/core/wu-1", str(worktree), "main")
    transactor = MicroWorktreeTransactor(git_project.clone, git_config=GitConfig(), sleep_fn=lambda _s: None)

    first_report, paths = _scan(git_project.clone)
    orphan = [error for error in first_report.errors if error.type == "ORPHAN_WORKTREE_DONE"]
    assert [error.worktree_path for error in orphan] == [worktree]

    summary = ConsistencyRepairer(paths, transactor=transactor, clock=lambda: NOW).repair(first_report.errors)

    assert summary.failed == 0
    assert summary.repaired == 5
    assert not worktree.exists()
    assert "lane/core/wu-1" not in [head.name for head in repo.heads]


class _RecordingTransactor(MicroWorktreeTransactor):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.operations: list[str] = []

    def run(self, operation, txn_id, execute, *, push_only=False):
        self.operations.append(operation)
        return super().run(operation, txn_id, execute, push_only=push_only)


def test_repair_inside_running_transaction_edits_that_worktree(git_project) -> None:
    root = git_project.clone
    paths = ProjectConfig().paths(root)
    store = WorkUnitStateStore(paths.state_path)
    store.claim("WU-1", "Core", "Event log", timestamp="2026-02-01T09:00:00Z")
    store.complete("WU-1", timestamp="2026-02-02T09:00:00Z")
    repo = git_project.repo
    repo.git.add("-A")
    repo.git.commit("-m", "seed done unit without stamp")
    repo.git.push("origin", "main")
    before = git_project.origin_head()

    transactor = _RecordingTransactor(root, git_config=GitConfig(), sleep_fn=lambda _s: None)
    repairer = ConsistencyRepairer(paths, transactor=transactor, clock=lambda: NOW)
    seen: dict[str, object] = {}

    def execute(worktree_path: Path) -> StagedChanges:
        report, _paths = _scan(worktree_path)
        seen["summary"] = repairer.repair(report.errors)
        seen["worktree_has_stamp"] = (worktree_path / ".laneledger" / "stamps" / "WU-1.done").exists()
        seen["branches"] = [head.name for head in Repo(root).heads]
        return StagedChanges(commit_message="chore: maintenance", files=[".laneledger/stamps"])

    result = transactor.run("wu-maintenance", "WU-1", execute)

    assert transactor.operations == ["wu-maintenance"]
    assert seen["summary"].repaired == 1
    assert seen["worktree_has_stamp"] is True
    assert not any(name.startswith("tmp/wu-repair") for name in seen["branches"])
    assert result.pushed
    origin = Repo(git_project.origin)
    assert origin.commit("main").parents[0].hexsha == before
    assert origin.commit("main").message.strip() == "chore: maintenance"
    assert git_project.origin_file(".laneledger/stamps/WU-1.done") == "WU WU-1 - Event log\nCompleted: 2026-03-01\n"
