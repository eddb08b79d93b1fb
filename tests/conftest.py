from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path

import pytest


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    os.environ.setdefault("PYTHONPATH", str(src))
    # Keep test runs out of ~/.branchkeeper/logs
    os.environ["BRANCHKEEPER_LOG_DISABLE_FILE"] = "1"


@pytest.fixture
def fast_retry():
    from branchkeeper.config_schema import RetrySettings

    return RetrySettings(retry_count=2, delay_seconds=0.0, max_delay_seconds=0.0)


def init_remote_repo(remote_path: Path):
    from git import Repo

    remote_path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(remote_path, bare=True)
    repo.git.symbolic_ref("HEAD", "refs/heads/main")
    return repo


def seed_remote(remote_path: Path, files: dict | None = None) -> None:
    """Create a bare remote with a seeded main branch."""
    from git import Actor, Repo

    init_remote_repo(remote_path)
    workdir = remote_path.parent / f"{remote_path.name}.seed"
    repo = Repo.init(workdir)
    for name, content in (files or {"README.md": "seed\n"}).items():
        target = workdir / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        repo.index.add([name])
    seeder = Actor("Seeder", "seeder@example.com")
    repo.index.commit("seed", author=seeder, committer=seeder)
    repo.git.branch("-M", "main")
    repo.create_remote("origin", remote_path.as_posix())
    repo.remotes.origin.push("main:main")
    shutil.rmtree(workdir)


def push_branch(
    remote_path: Path,
    branch: str,
    files: dict,
    *,
    start: str = "main",
    message: str = "change",
    author_email: str = "someone@example.com",
) -> str:
    """Commit files on top of ``start`` and push them to ``branch``; returns the sha."""
    from git import Actor, Repo

    workdir = remote_path.parent / f"{remote_path.name}.{branch.replace('/', '_')}.work"
    if workdir.exists():
        shutil.rmtree(workdir)
    repo = Repo.clone_from(remote_path.as_posix(), workdir)
    repo.git.checkout("-B", branch, f"origin/{start}")
    for name, content in files.items():
        target = workdir / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        repo.index.add([name])
    actor = Actor("Someone", author_email)
    commit = repo.index.commit(message, author=actor, committer=actor)
    repo.remotes.origin.push(f"{branch}:{branch}", force=True)
    sha = commit.hexsha
    shutil.rmtree(workdir)
    return sha
