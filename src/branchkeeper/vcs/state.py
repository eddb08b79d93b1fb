from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

FORK_UPSTREAM_REMOTE = "branchkeeper-fork-upstream"

DEFAULT_AUTHOR_NAME = "Branchkeeper Bot"
DEFAULT_AUTHOR_EMAIL = "bot@branchkeeper.dev"


@dataclass
class RepositoryState:
    """In-memory view of one working copy for the current run.

    Owned by a single VersionControlManager. ``current_branch_sha`` always
    reflects the last checkout or commit on ``current_branch``.
    """

    local_dir: Path
    url: str = ""
    upstream_url: Optional[str] = None
    default_branch: Optional[str] = None
    current_branch: Optional[str] = None
    current_branch_sha: Optional[str] = None
    branch_commits: Dict[str, str] = field(default_factory=dict)
    branch_is_modified: Dict[str, bool] = field(default_factory=dict)
    ignored_authors: Set[str] = field(default_factory=set)
    git_author_name: Optional[str] = DEFAULT_AUTHOR_NAME
    git_author_email: str = DEFAULT_AUTHOR_EMAIL
    full_clone: bool = False
    extra_clone_opts: Dict[str, Optional[str]] = field(default_factory=dict)
    clone_submodules: bool = False
    clone_submodules_filter: List[str] = field(default_factory=lambda: ["*"])
    repo_synced: bool = False
    submodules_cloned: bool = False
    git_author_written: bool = False

    @property
    def fork_mode(self) -> bool:
        return bool(self.upstream_url)

    @property
    def fork_remote(self) -> Optional[str]:
        return FORK_UPSTREAM_REMOTE if self.fork_mode else None

    def reset(self) -> None:
        """Forget everything learned during the previous run."""
        self.current_branch = None
        self.current_branch_sha = None
        self.default_branch = None
        self.branch_commits = {}
        self.branch_is_modified = {}
        self.ignored_authors = set()
        self.repo_synced = False
        self.submodules_cloned = False
        self.git_author_written = False
