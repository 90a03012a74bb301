"""Shared fixtures for integration tests: a bare origin plus working clones."""

from dataclasses import dataclass
from pathlib import Path

import pytest
from git import Repo


@dataclass
class GitProject:
    origin: Path
    clone: Path

    @property
    def repo(self) -> Repo:
        return Repo(self.clone)

    def origin_head(self) -> str:
        return Repo(self.origin).commit("main").hexsha

    def origin_file(self, relative_path: str) -> str:
        """Contents of a file at origin/main, or "" when absent."""
        tree = Repo(self.origin).commit("main").tree
        try:
            blob = tree / relative_path
        except KeyError:
            return ""
        return blob.data_stream.read().decode("utf-8")

    def second_clone(self, destination: Path) -> Repo:
        return clone_project(self.origin, destination)


def configure_identity(repo: Repo) -> None:
    with repo.config_writer() as writer:
        writer.set_value("user", "name", "Lane Tester")
        writer.set_value("user", "email", "lanes@example.com")
        writer.set_value("commit", "gpgsign", "false")


def clone_project(origin: Path, destination: Path) -> Repo:
    repo = Repo.clone_from(str(origin), str(destination), branch="main")
    configure_identity(repo)
    return repo


@pytest.fixture
def git_project(tmp_path: Path) -> GitProject:
    origin = tmp_path / "origin.git"
    bare = Repo.init(origin, bare=True)
    bare.git.symbolic_ref("HEAD", "refs/heads/main")

    seed_path = tmp_path / "seed"
    seed = Repo.init(seed_path)
    configure_identity(seed)
    seed.git.checkout("-b", "main")
    (seed_path / "README.md").write_text("# project\n")
    (seed_path / ".gitignore").write_text(".laneledger/locks/\nworktrees/\n")
    seed.git.add("README.md", ".gitignore")
    seed.git.commit("-m", "initial commit")
    seed.create_remote("origin", str(origin))
    seed.git.push("origin", "main")

    clone = tmp_path / "clone"
    clone_project(origin, clone)
    return GitProject(origin=origin, clone=clone)


@pytest.fixture
def local_repo(tmp_path: Path) -> Path:
    """A repository with a committed main branch and no remote."""
    root = tmp_path / "solo"
    repo = Repo.init(root)
    configure_identity(repo)
    repo.git.checkout("-b", "main")
    (root / "README.md").write_text("solo\n")
    repo.git.add("README.md")
    repo.git.commit("-m", "initial commit")
    return root
