"""GitPython-backed manager for the single working copy of a repository run.

VersionControlManager owns the clone on disk and the RepositoryState that
describes it. Branch questions (behind base, modified, conflicted) are
answered through the fingerprint caches before any git work happens.

Architecture:
- ``init_repo`` binds the manager to a remote and lists remote heads
- ``sync`` fetches (or clones) exactly once per run
- Branch mutation always starts from a hard reset of the working tree
- Remote calls run through ``git_retry``; output is classified in
  ``branchkeeper.errors``

Thread Safety:
    Mutating methods take a non-blocking single-writer guard. A second
    thread calling in while another holds the working copy gets
    ConcurrentAccessError instead of corrupting the checkout.
"""

from __future__ import annotations

import functools
import os
import re
import shutil
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar
from urllib.parse import quote

import git
from git import GitCommandError

from ..config_schema import BranchkeeperConfig
from ..errors import (
    ConcurrentAccessError,
    ConfigValidationError,
    ErrorKind,
    ExternalHostError,
    RepositoryError,
    check_for_platform_failure,
    handle_commit_error,
    is_bulk_changes_disallowed,
    raise_for_kind,
)
from ..limits import Limit, LimitTracker
from ..match import match_regex_or_glob_list
from ..observability import log_debug, log_info, log_warning, log_error, timeit
from ..sanitize import sanitize
from .author import parse_git_author
from .fingerprint_cache import CacheStore, FingerprintCaches, FingerprintKey, MemoryCacheStore
from .retry import git_retry
from .state import (
    DEFAULT_AUTHOR_EMAIL,
    DEFAULT_AUTHOR_NAME,
    FORK_UPSTREAM_REMOTE,
    RepositoryState,
)
from .types import (
    CommitFilesConfig,
    CommitResult,
    FileChange,
    PushFilesConfig,
    StatusResult,
    StorageConfig,
    TreeItem,
)

T = TypeVar("T")

MIN_GIT_VERSION = (2, 33, 0)

# Files that must be committed even when a .gitignore matches them
CONFIG_FILE_NAMES = ("branchkeeper.json",)

_TREE_SHA_RE = re.compile(r"^tree\s+([0-9a-f]{40})\s*$", re.MULTILINE)
_TREE_ITEM_RE = re.compile(r"^(\d{6})\s+(blob|tree|commit)\s+([0-9a-f]{40})\s+(.*)$")
_IGNORED_PATH_MESSAGE = "the following paths are ignored by one of your .gitignore files"


def _single_writer(method: Callable[..., T]) -> Callable[..., T]:
    @functools.wraps(method)
    def wrapper(self: "VersionControlManager", *args, **kwargs):
        with self._exclusive():
            return method(self, *args, **kwargs)

    return wrapper


def _empty_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def _describe(args: tuple[str, ...]) -> str:
    return sanitize(" ".join(args[:4])) or ""


def _first_line(err: BaseException) -> str:
    text = str(err).strip()
    return text.splitlines()[0] if text else type(err).__name__


def _parse_status(output: str) -> StatusResult:
    """Parse ``git status --porcelain -z`` output.

    Renames are reported both in ``renamed`` (old -> new) and as the new path
    modified plus the old path deleted.
    """
    result = StatusResult()
    entries = output.split("\0")
    index = 0
    while index < len(entries):
        entry = entries[index]
        index += 1
        if len(entry) < 4:
            continue
        code, path = entry[:2], entry[3:]
        if code == "??":
            result.not_added.append(path)
        elif "R" in code or "C" in code:
            original = entries[index] if index < len(entries) else ""
            index += 1
            result.renamed[original] = path
            result.modified.append(path)
            if "R" in code and original:
                result.deleted.append(original)
        elif "D" in code:
            result.deleted.append(path)
        else:
            result.modified.append(path)
    return result


def get_url(
    *,
    protocol: Optional[str] = None,
    auth: Optional[str] = None,
    hostname: Optional[str] = None,
    host: Optional[str] = None,
    repository: str,
) -> str:
    """Build a clone URL for ``repository`` (``owner/name``)."""
    if protocol == "ssh":
        return f"git@{hostname}:{repository}.git"
    netloc = host or hostname or ""
    if auth:
        netloc = f"{quote(auth, safe=':')}@{netloc}"
    return f"{protocol or 'https'}://{netloc}/{repository}.git"


def validate_git_version() -> bool:
    """True if the installed git is at least MIN_GIT_VERSION."""
    try:
        version = git.Git().version_info
    except (GitCommandError, OSError) as err:
        log_error("Error fetching git version", error=str(err))
        return False
    if tuple(version[:3]) < MIN_GIT_VERSION:
        log_error(
            "git version is too old",
            detected=".".join(str(v) for v in version),
            minimum=".".join(str(v) for v in MIN_GIT_VERSION),
        )
        return False
    log_debug("Found valid git version", version=".".join(str(v) for v in version))
    return True


class VersionControlManager:
    """Owns one repository clone and its RepositoryState.

    Attributes:
        config: Global settings (git options, retry policy, directories)
        local_dir: Working directory holding the clone
        state: Run state; reset by ``init_repo``
        caches: Fingerprint caches for behind-base/modified/conflicted answers
        limits: Run counters; commits pushed here increment ``Commits``
    """

    def __init__(
        self,
        config: BranchkeeperConfig,
        *,
        cache_store: CacheStore | None = None,
        limits: LimitTracker | None = None,
        local_dir: Path | None = None,
    ):
        self.config = config
        self.local_dir = Path(local_dir) if local_dir is not None else config.local_path
        self.state = RepositoryState(local_dir=self.local_dir)
        self.caches = FingerprintCaches(cache_store if cache_store is not None else MemoryCacheStore())
        self.limits = limits or LimitTracker()
        self._guard = threading.RLock()
        self._cmd = git.Git(str(self.local_dir))

        # Prepare git environment once (propagated to all git operations)
        self._env = os.environ.copy()
        # Fail fast instead of prompting for credentials
        self._env.setdefault("GIT_TERMINAL_PROMPT", "0")
        self._env.setdefault("GCM_INTERACTIVE", "never")
        self._env.setdefault("GIT_HTTP_LOW_SPEED_LIMIT", "1")
        self._env.setdefault("GIT_HTTP_LOW_SPEED_TIME", "30")
        self._env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        # Error classification matches English git output
        self._env["LC_ALL"] = "C"
        self._env["LANGUAGE"] = "C"

        self.set_git_author(config.git.author or None)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self):
        if not self._guard.acquire(blocking=False):
            raise ConcurrentAccessError(f"Working copy {self.local_dir} is in use by another thread")
        try:
            yield
        finally:
            self._guard.release()

    def _git(self, *args: str, strip: bool = True) -> str:
        description = _describe(args)
        log_debug(f"GIT_OP_START: {description}")
        output = self._cmd.execute(
            ["git", *args],
            env=self._env,
            kill_after_timeout=self.config.git.timeout,
            strip_newline_in_stdout=strip,
        )
        log_debug(f"GIT_OP_END: {description}")
        return output

    def _retry(self, operation: Callable[[], T]) -> T:
        return git_retry(operation, self.config.retry)

    def _no_verify(self, step: str) -> List[str]:
        return ["--no-verify"] if step in self.config.git.no_verify else []

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    @_single_writer
    def init_repo(self, storage: StorageConfig) -> None:
        """Bind to a remote and reset all run state.

        Populates ``branch_commits`` from a remote head listing without
        touching the working tree.
        """
        self.state.reset()
        self.state.url = storage.url
        self.state.upstream_url = storage.upstream_url
        self.state.default_branch = storage.default_branch
        self.state.full_clone = storage.full_clone or self.config.git.full_clone
        self.state.extra_clone_opts = {**self.config.git.extra_clone_opts, **storage.extra_clone_opts}
        self.state.clone_submodules = storage.clone_submodules or self.config.git.clone_submodules
        self.state.clone_submodules_filter = list(
            storage.clone_submodules_filter or self.config.git.clone_submodules_filter
        )
        self.state.ignored_authors = set(self.config.git.ignored_authors)
        self.local_dir.mkdir(parents=True, exist_ok=True)
        self._fetch_branch_commits(prefer_upstream=True)

    def _fetch_branch_commits(self, prefer_upstream: bool = True) -> None:
        url = self.state.url
        if prefer_upstream and self.state.upstream_url:
            url = self.state.upstream_url
        log_debug("Fetching branch commits", url=sanitize(url))
        try:
            output = self._retry(lambda: self._git("ls-remote", "--heads", url))
        except GitCommandError as err:
            raise_for_kind(err, ErrorKind.REPOSITORY_DISABLED)
            raise
        commits: Dict[str, str] = {}
        for line in output.splitlines():
            parts = line.split()
            if len(parts) != 2:
                continue
            sha, ref = parts
            if ref.startswith("refs/heads/"):
                commits[ref[len("refs/heads/"):]] = sha
        self.state.branch_commits = commits

    def set_git_author(self, git_author: Optional[str]) -> None:
        value = git_author or f"{DEFAULT_AUTHOR_NAME} <{DEFAULT_AUTHOR_EMAIL}>"
        parsed = parse_git_author(value)
        if parsed is None:
            raise ConfigValidationError(
                validation_error="Invalid git author",
                validation_message=f"git author is not a valid RFC5322 address: {value}",
                validation_source="config",
            )
        self.state.git_author_name = parsed.name
        self.state.git_author_email = parsed.address
        self.state.git_author_written = False

    def set_user_repo_config(
        self,
        *,
        git_ignored_authors: Optional[List[str]] = None,
        git_author: Optional[str] = None,
    ) -> None:
        """Apply repository-level overrides for ignored authors and author."""
        self.state.ignored_authors = set(git_ignored_authors or [])
        self.set_git_author(git_author or self.config.git.author or None)

    def _write_git_author(self) -> None:
        if self.state.git_author_written:
            return
        try:
            if self.state.git_author_name:
                self._git("config", "user.name", self.state.git_author_name)
            self._git("config", "user.email", self.state.git_author_email)
        except GitCommandError as err:
            failure = check_for_platform_failure(err)
            if failure is not None:
                raise failure from err
            log_debug("Error setting git author config", error=_first_line(err))
            raise RepositoryError(ErrorKind.TEMPORARY, "could not write git author") from err
        self.state.git_author_written = True

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def is_cloned(self) -> bool:
        return (self.local_dir / ".git" / "HEAD").exists()

    @_single_writer
    def sync(self) -> Optional[str]:
        """Bring the working copy up to date with the remote.

        Only the first call per run does any work; later calls return the
        recorded ``current_branch_sha``.

        Raises:
            RepositoryError: REPOSITORY_EMPTY when the remote has no commits,
                INSUFFICIENT_DISK_SPACE or REPOSITORY_CHANGED from the clone
            ExternalHostError: Clone failed for any other reason
        """
        if self.state.repo_synced:
            return self.state.current_branch_sha
        self.state.repo_synced = True

        log_debug(f"Initializing git repository into {self.local_dir}")
        clone = True
        if self.is_cloned():
            log_debug("sync(): found existing git repository, attempting git fetch")
            try:
                with timeit("git.fetch", local_dir=str(self.local_dir)):
                    self._git("remote", "set-url", "origin", self.state.url)
                    self._retry(lambda: self._git("fetch", "--prune", "origin"))
                    self.state.current_branch = self.state.current_branch or self._current_base_branch()
                    self._reset_to_branch(self.state.current_branch)
                    self._clean_local_branches()
                clone = False
            except RepositoryError as err:
                if err.kind == ErrorKind.REPOSITORY_EMPTY:
                    raise
                log_info("git fetch error, falling back to git clone", error=_first_line(err))
            except Exception as err:
                log_info("git fetch error, falling back to git clone", error=_first_line(err))

        if clone:
            self._clone()

        self._check_latest_commit()
        try:
            self.state.current_branch_sha = self._git("rev-parse", "HEAD").strip()
        except GitCommandError as err:
            raise_for_kind(err, ErrorKind.REPOSITORY_CHANGED)
            raise

        self.clone_submodules(self.state.clone_submodules, self.state.clone_submodules_filter)

        self.state.current_branch = self.state.current_branch or self._current_base_branch()
        if self.state.fork_mode:
            if FORK_UPSTREAM_REMOTE not in self.get_remotes():
                self._git("remote", "add", FORK_UPSTREAM_REMOTE, self.state.upstream_url or "")
            self.sync_fork_with_upstream(self.state.current_branch)
            self._fetch_branch_commits(prefer_upstream=False)
        return self.state.current_branch_sha

    def _clone(self) -> None:
        opts: List[str] = []
        for key, value in self.state.extra_clone_opts.items():
            opts.extend([key] if value is None else [key, str(value)])
        if self.state.default_branch:
            opts.extend(["-b", self.state.default_branch])
        if not self.state.full_clone:
            opts.append("--filter=blob:none")

        def empty_dir_and_clone() -> None:
            _empty_dir(self.local_dir)
            self._git("clone", *opts, self.state.url, ".")

        try:
            with timeit("git.clone", local_dir=str(self.local_dir), full_clone=self.state.full_clone):
                self._retry(empty_dir_and_clone)
        except ExternalHostError:
            raise
        except Exception as err:
            log_debug("git clone error", error=_first_line(err))
            raise_for_kind(err, ErrorKind.INSUFFICIENT_DISK_SPACE, ErrorKind.REPOSITORY_EMPTY)
            raise ExternalHostError(err, "git") from err

    def _check_latest_commit(self) -> None:
        try:
            latest = self._git("log", "-n", "1", "--format=%H %cI")
            log_debug("latest repository commit", commit=latest)
        except GitCommandError as err:
            failure = check_for_platform_failure(err)
            if failure is not None:
                raise failure from err
            raise_for_kind(err, ErrorKind.REPOSITORY_EMPTY)
            log_warning("Cannot retrieve latest commit", error=_first_line(err))

    def _current_base_branch(self) -> str:
        return self.state.default_branch or self._resolve_default_branch()

    def _resolve_default_branch(self) -> str:
        try:
            ref = self._git("rev-parse", "--abbrev-ref", "origin/HEAD").strip()
        except GitCommandError as err:
            failure = check_for_platform_failure(err)
            if failure is not None:
                raise failure from err
            raise_for_kind(err, ErrorKind.REPOSITORY_EMPTY, ErrorKind.TEMPORARY)
            raise
        if not ref or ref == "origin/HEAD":
            raise RepositoryError(ErrorKind.REPOSITORY_EMPTY, "remote has no default branch")
        return ref[len("origin/"):] if ref.startswith("origin/") else ref

    def _reset_to_branch(self, branch_name: str) -> None:
        log_debug(f"reset_to_branch({branch_name})")
        self._git("reset", "--hard")
        self._git("checkout", branch_name)
        self._git("reset", "--hard", f"origin/{branch_name}")
        self._git("clean", "-fd")

    def _clean_local_branches(self) -> None:
        existing = self._git("branch", "--format=%(refname:short)").splitlines()
        for branch_name in existing:
            branch_name = branch_name.strip()
            if branch_name and branch_name != self.state.current_branch:
                self._delete_local_branch(branch_name)

    def _delete_local_branch(self, branch_name: str) -> None:
        self._git("branch", "-D", branch_name)

    def get_remotes(self) -> List[str]:
        return [line.strip() for line in self._git("remote").splitlines() if line.strip()]

    @_single_writer
    def sync_fork_with_upstream(self, branch_name: str) -> None:
        """Fast-forward ``branch_name`` on origin to the upstream remote's tip."""
        if not self.state.upstream_url:
            return
        log_debug(f"Synchronizing fork with {FORK_UPSTREAM_REMOTE} for branch {branch_name}")
        if FORK_UPSTREAM_REMOTE not in self.get_remotes():
            raise RepositoryError(ErrorKind.TEMPORARY, f"remote {FORK_UPSTREAM_REMOTE} does not exist")
        try:
            self._retry(lambda: self._git("fetch", FORK_UPSTREAM_REMOTE))
            local_branches = self._git("branch", "--format=%(refname:short)").splitlines()
            if branch_name in local_branches:
                self.checkout_branch(branch_name)
            else:
                self.checkout_branch_from_remote(branch_name, FORK_UPSTREAM_REMOTE)
            self.reset_hard_from_remote(f"{FORK_UPSTREAM_REMOTE}/{branch_name}")
            self.force_push_to_remote(branch_name, "origin")
        except (ExternalHostError, RepositoryError):
            raise
        except GitCommandError as err:
            log_error("Error synchronizing fork", error=_first_line(err))
            raise

    # ------------------------------------------------------------------
    # Submodules
    # ------------------------------------------------------------------

    def get_submodules(self) -> List[str]:
        if not (self.local_dir / ".gitmodules").exists():
            return []
        try:
            output = self._git("config", "--file", ".gitmodules", "--get-regexp", r"\.path")
        except GitCommandError as err:
            log_debug("No submodule paths found", error=_first_line(err))
            return []
        paths = []
        for line in output.splitlines():
            _, _, path = line.partition(" ")
            if path.strip():
                paths.append(path.strip())
        return paths

    @_single_writer
    def clone_submodules(self, should_clone: bool, clone_filter: Optional[List[str]] = None) -> None:
        if not should_clone or self.state.submodules_cloned:
            return
        self.state.submodules_cloned = True
        patterns = clone_filter or ["*"]
        for path in self.get_submodules():
            if not match_regex_or_glob_list(path, patterns):
                log_debug(f"Skipping submodule {path} (not matched by filter)")
                continue
            try:
                self._retry(lambda: self._git("submodule", "update", "--init", "--recursive", "--", path))
                log_debug(f"Cloned submodule {path}")
            except (ExternalHostError, GitCommandError) as err:
                log_warning("Unable to initialise git submodule", path=path, error=_first_line(err))

    # ------------------------------------------------------------------
    # Branch reads
    # ------------------------------------------------------------------

    def branch_exists(self, branch_name: str) -> bool:
        return branch_name in self.state.branch_commits

    def get_branch_commit(self, branch_name: str) -> Optional[str]:
        return self.state.branch_commits.get(branch_name)

    def get_branch_list(self) -> List[str]:
        return list(self.state.branch_commits)

    def get_repo_status(self, path: Optional[str] = None) -> StatusResult:
        if path is not None:
            root = self.local_dir.resolve()
            local_path = (root / path).resolve()
            if local_path != root and root not in local_path.parents:
                log_warning(
                    "Preventing access to file outside the local directory",
                    local_path=str(local_path),
                    local_dir=str(root),
                )
                raise RepositoryError(ErrorKind.INVALID_PATH, path)
        self.sync()
        args = ["status", "--porcelain", "-z", "--untracked-files=all"]
        if path is not None:
            args.extend(["--", path])
        return _parse_status(self._git(*args, strip=False))

    def get_commit_messages(self) -> List[str]:
        self.sync()
        output = self._git("log", "-n", "20", "--format=%s")
        return [line for line in output.splitlines() if line]

    def get_branch_last_commit_time(self, branch_name: str) -> datetime:
        self.sync()
        try:
            raw = self._git("show", "-s", "--format=%cI", f"origin/{branch_name}").strip()
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except (GitCommandError, ValueError) as err:
            failure = check_for_platform_failure(err)
            if failure is not None:
                raise failure from err
            return datetime.now(timezone.utc)

    def get_file_list(self) -> List[str]:
        """Blob paths at the tip of the current branch, excluding submodules."""
        self.sync()
        branch = self.state.current_branch
        try:
            output = self._git("ls-tree", "-r", f"refs/heads/{branch}")
        except GitCommandError as err:
            raise_for_kind(err, ErrorKind.REPOSITORY_CHANGED)
            raise
        if not output:
            return []
        submodules = self.get_submodules()
        files = []
        for line in output.splitlines():
            if not line.startswith("100"):
                continue
            file_path = line.split("\t")[-1]
            if any(file_path.startswith(sub) for sub in submodules):
                continue
            files.append(file_path)
        return files

    def _diff_files(self, ref: str) -> Optional[List[str]]:
        self.sync()
        try:
            output = self._retry(lambda: self._git("diff", "--name-only", ref, f"{ref}^"))
        except GitCommandError as err:
            log_warning("get_branch_files error", ref=ref, error=_first_line(err))
            return None
        return [line for line in output.splitlines() if line]

    def get_branch_files(self, branch_name: str) -> Optional[List[str]]:
        return self._diff_files(f"origin/{branch_name}")

    def get_branch_files_from_commit(self, commit_sha: str) -> Optional[List[str]]:
        return self._diff_files(commit_sha)

    def get_file(self, file_path: str, branch_name: Optional[str] = None) -> Optional[str]:
        self.sync()
        branch = branch_name or self.state.current_branch
        try:
            return self._git("show", f"origin/{branch}:{file_path}", strip=False)
        except GitCommandError as err:
            failure = check_for_platform_failure(err)
            if failure is not None:
                raise failure from err
            return None

    def get_files(self, file_paths: List[str]) -> Dict[str, Optional[str]]:
        return {path: self.get_file(path) for path in file_paths}

    def has_diff(self, source_ref: str, target_ref: str) -> bool:
        self.sync()
        try:
            return self._retry(lambda: self._git("diff", source_ref, target_ref, "--")) != ""
        except (GitCommandError, ExternalHostError):
            return True

    def list_commit_tree(self, commit_sha: str) -> List[TreeItem]:
        """Top-level tree entries of a commit."""
        commit_output = self._git("cat-file", "-p", commit_sha)
        match = _TREE_SHA_RE.search(commit_output)
        if match is None:
            return []
        contents = self._git("cat-file", "-p", match.group(1))
        result = []
        for line in contents.splitlines():
            item = _TREE_ITEM_RE.match(line)
            if item:
                mode, type_, sha, path = item.groups()
                result.append(TreeItem(path=path, mode=mode, type=type_, sha=sha))  # type: ignore[arg-type]
        return result

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    @_single_writer
    def checkout_branch(self, branch_name: str) -> str:
        log_debug(f"Setting current branch to {branch_name}")
        self.sync()
        try:
            args = ["checkout", "-f"]
            if self.state.submodules_cloned:
                args.append("--recurse-submodules")
            self._retry(lambda: self._git(*args, branch_name, "--"))
            self.state.current_branch = branch_name
            self.state.current_branch_sha = self._git("rev-parse", "HEAD").strip()
            self._git("reset", "--hard")
            log_debug("latest commit", branch=branch_name, sha=self.state.current_branch_sha)
            return self.state.current_branch_sha
        except GitCommandError as err:
            failure = check_for_platform_failure(err)
            if failure is not None:
                raise failure from err
            if "fatal: ambiguous argument" in str(err):
                log_warning("Failed to checkout branch", branch=branch_name)
            raise_for_kind(err, ErrorKind.TEMPORARY)
            raise

    @_single_writer
    def checkout_branch_from_remote(self, branch_name: str, remote_name: str) -> str:
        log_debug(f"Checking out branch {branch_name} from remote {remote_name}")
        self.sync()
        try:
            self._retry(lambda: self._git("checkout", "-b", branch_name, f"{remote_name}/{branch_name}"))
            self.state.current_branch = branch_name
            self.state.current_branch_sha = self._git("rev-parse", "HEAD").strip()
            self.state.branch_commits[branch_name] = self.state.current_branch_sha
            return self.state.current_branch_sha
        except GitCommandError as err:
            failure = check_for_platform_failure(err)
            if failure is not None:
                raise failure from err
            raise_for_kind(err, ErrorKind.TEMPORARY)
            raise

    @_single_writer
    def reset_to_commit(self, commit: str) -> None:
        self._git("reset", "--hard", commit)

    @_single_writer
    def reset_hard_from_remote(self, remote_and_branch: str) -> None:
        self._git("reset", "--hard", remote_and_branch)
        self.state.current_branch_sha = self._git("rev-parse", "HEAD").strip()

    @_single_writer
    def force_push_to_remote(self, branch_name: str, remote: str = "origin") -> None:
        self._retry(lambda: self._git("push", remote, branch_name, "--force"))

    # ------------------------------------------------------------------
    # Branch questions (cached)
    # ------------------------------------------------------------------

    def is_branch_behind_base(self, branch_name: str, base_branch: str) -> bool:
        key = FingerprintKey(
            branch=branch_name,
            branch_sha=self.get_branch_commit(branch_name),
            base=base_branch,
            base_sha=self.get_branch_commit(base_branch),
        )
        cached = self.caches.behind_base.get(key)
        if cached is not None:
            log_debug(f'is_branch_behind_base(): using cached result "{cached}"')
            return cached

        log_debug("is_branch_behind_base(): using git to calculate")
        self.sync()
        try:
            count = self._git("rev-list", "--count", f"{key.branch_sha}..{key.base_sha}").strip()
        except GitCommandError as err:
            failure = check_for_platform_failure(err)
            if failure is not None:
                raise failure from err
            raise_for_kind(err, ErrorKind.REPOSITORY_CHANGED)
            raise
        is_behind = count != "0"
        log_debug(f"is_branch_behind_base(): {is_behind}", branch=branch_name, base=base_branch)
        self.caches.behind_base.set(key, is_behind)
        return is_behind

    def is_branch_modified(self, branch_name: str, base_branch: str) -> bool:
        """True if a commit on the branch was authored by someone other than the bot.

        Commits by the bot email and by ignored authors do not count. A branch
        that does not exist is not modified.
        """
        if not self.branch_exists(branch_name):
            log_debug("is_branch_modified(): branch does not exist")
            return False
        if branch_name in self.state.branch_is_modified:
            return self.state.branch_is_modified[branch_name]

        key = FingerprintKey(branch=branch_name, branch_sha=self.get_branch_commit(branch_name))
        cached = self.caches.modified.get(key)
        if cached is not None:
            log_debug("is_branch_modified(): using cached result")
            self.state.branch_is_modified[branch_name] = cached
            return cached

        log_debug("is_branch_modified(): using git to calculate")
        self.sync()
        committed_authors = set()
        try:
            output = self._git("log", "--format=%ae", f"origin/{base_branch}..origin/{branch_name}")
            committed_authors.update(line.strip() for line in output.splitlines() if line.strip())
        except GitCommandError as err:
            raise_for_kind(err, ErrorKind.REPOSITORY_CHANGED)
            log_warning("Error checking last author for is_branch_modified", error=_first_line(err))

        included = committed_authors - {self.state.git_author_email} - self.state.ignored_authors
        is_modified = bool(included)
        log_debug(f"is_branch_modified() = {is_modified}", branch=branch_name)
        self.state.branch_is_modified[branch_name] = is_modified
        self.caches.modified.set(key, is_modified)
        return is_modified

    @_single_writer
    def is_branch_conflicted(self, base_branch: str, branch_name: str) -> bool:
        """Trial-merge the branch into base; any failure means conflicted.

        The trial merge is always aborted and the previously checked-out
        branch restored. Missing refs count as conflicted.
        """
        log_debug(f"is_branch_conflicted({base_branch}, {branch_name})")
        base_sha = self.get_branch_commit(base_branch)
        branch_sha = self.get_branch_commit(branch_name)
        if not base_sha or not branch_sha:
            log_warning("is_branch_conflicted: branch does not exist", base=base_branch, branch=branch_name)
            return True

        key = FingerprintKey(branch=branch_name, branch_sha=branch_sha, base=base_branch, base_sha=base_sha)
        cached = self.caches.conflicted.get(key)
        if cached is not None:
            log_debug(f'is_branch_conflicted(): using cached result "{cached}"')
            return cached

        log_debug("is_branch_conflicted(): using git to calculate")
        self.sync()
        self._write_git_author()
        original_branch = self.state.current_branch
        result = False
        try:
            # Untracked leftovers would make an otherwise clean merge fail
            self._git("reset", "--hard")
            self._git("clean", "-fd")
            if original_branch != base_branch:
                self._git("checkout", base_branch)
            self._git("merge", "--no-commit", "--no-ff", f"origin/{branch_name}")
        except GitCommandError as err:
            result = True
            log_debug("is_branch_conflicted: merge failed", base=base_branch, branch=branch_name, error=_first_line(err))
        finally:
            try:
                self._git("merge", "--abort")
            except GitCommandError as err:
                log_debug("is_branch_conflicted: nothing to abort", error=_first_line(err))
            try:
                if original_branch and original_branch != base_branch:
                    self._git("checkout", original_branch)
            except GitCommandError as err:
                log_debug("is_branch_conflicted: cleanup error", error=_first_line(err))

        self.caches.conflicted.set(key, result)
        return result

    # ------------------------------------------------------------------
    # Branch mutation
    # ------------------------------------------------------------------

    @_single_writer
    def delete_branch(self, branch_name: str) -> None:
        self.sync()
        try:
            self._retry(lambda: self._git("push", "--delete", "origin", branch_name, *self._no_verify("push")))
            log_debug(f"Deleted remote branch: {branch_name}")
        except ExternalHostError:
            raise
        except GitCommandError as err:
            failure = check_for_platform_failure(err)
            if failure is not None:
                raise failure from err
            log_debug(f"No remote branch to delete with name: {branch_name}")
        try:
            self._delete_local_branch(branch_name)
            log_debug(f"Deleted local branch: {branch_name}")
        except GitCommandError as err:
            failure = check_for_platform_failure(err)
            if failure is not None:
                raise failure from err
            log_debug(f"No local branch to delete with name: {branch_name}")
        self.state.branch_commits.pop(branch_name, None)

    @_single_writer
    def merge_branch(self, branch_name: str) -> None:
        """Fast-forward the current branch to ``branch_name`` and push it."""
        self.sync()
        self._write_git_author()
        current = self.state.current_branch
        try:
            self._git("reset", "--hard")
            self._retry(lambda: self._git("checkout", "-B", branch_name, f"origin/{branch_name}"))
            self._retry(lambda: self._git("checkout", "-B", current, f"origin/{current}"))
            self._retry(lambda: self._git("merge", "--ff-only", branch_name))
            self._retry(lambda: self._git("push", "origin", current))
            self.limits.inc_limited_value(Limit.COMMITS)
        except Exception as err:
            log_debug(
                "merge_branch error",
                base=current,
                base_sha=self.state.current_branch_sha,
                branch=branch_name,
                error=_first_line(err),
            )
            raise
        self.state.current_branch_sha = self._git("rev-parse", "HEAD").strip()
        self.state.branch_commits[current] = self.state.current_branch_sha

    @_single_writer
    def merge_to_local(self, ref_spec: str) -> None:
        """Merge ``ref_spec`` from origin into the local current branch."""
        self.sync()
        self._write_git_author()
        current = self.state.current_branch
        try:
            self._git("reset", "--hard")
            self._retry(lambda: self._git("checkout", "-B", current, f"origin/{current}"))
            self.fetch_rev_spec(ref_spec)
            self._retry(lambda: self._git("merge", "FETCH_HEAD"))
        except Exception as err:
            log_debug("merge_to_local error", base=current, ref_spec=ref_spec, error=_first_line(err))
            raise

    def fetch_rev_spec(self, rev_spec: str) -> None:
        self._retry(lambda: self._git("fetch", "origin", rev_spec))

    @_single_writer
    def fetch_branch(self, branch_name: str) -> Optional[str]:
        self.sync()
        log_debug(f"Fetching branch {branch_name}")
        try:
            ref = f"refs/heads/{branch_name}:refs/remotes/origin/{branch_name}"
            self._retry(lambda: self._git("fetch", "origin", ref, "--force"))
            commit = self._git("rev-parse", f"origin/{branch_name}").strip()
        except Exception as err:
            handle_commit_error(err, branch_name)
            raise
        self.state.branch_commits[branch_name] = commit
        self.state.branch_is_modified[branch_name] = False
        return commit

    # ------------------------------------------------------------------
    # Commit and push
    # ------------------------------------------------------------------

    def _write_file(self, file: FileChange) -> None:
        target = self.local_dir / file.path
        target.parent.mkdir(parents=True, exist_ok=True)
        if file.is_symlink:
            if target.is_symlink() or target.exists():
                target.unlink()
            link_to = file.contents.decode("utf-8") if isinstance(file.contents, bytes) else str(file.contents)
            os.symlink(link_to, target)
            return
        target.write_bytes(file.contents_bytes())
        os.chmod(target, 0o755 if file.is_executable else 0o644)

    def _restore_checkout(self, branch_name: Optional[str]) -> None:
        """Put the working copy back on ``branch_name`` after a failed commit."""
        if not branch_name:
            return
        try:
            self._git("reset", "--hard")
            self._git("checkout", "-f", branch_name, "--")
        except GitCommandError as err:
            log_warning("Failed to restore branch after commit error", branch=branch_name, error=_first_line(err))

    @_single_writer
    def prepare_commit(self, commit_config: CommitFilesConfig) -> Optional[CommitResult]:
        """Create a local commit of ``files`` on a fresh copy of the branch.

        Returns None when there is nothing to commit, or when (unless forced)
        the new tree matches the existing remote branch tip.
        """
        branch_name = commit_config.branch_name
        self.sync()
        log_debug(f"Preparing files for committing to branch {branch_name}")
        self._write_git_author()
        parent_sha = self.state.current_branch_sha
        current = self.state.current_branch
        try:
            self._git("reset", "--hard")
            self._git("clean", "-fd")
            self._retry(lambda: self._git("checkout", "-B", branch_name, f"origin/{current}"))

            deleted_files: List[str] = []
            added_modified_files: List[str] = []
            ignored_files: List[str] = []
            for file in commit_config.files:
                if file.type == "deletion":
                    try:
                        self._git("rm", "-r", "--", file.path)
                        deleted_files.append(file.path)
                    except GitCommandError as err:
                        failure = check_for_platform_failure(err)
                        if failure is not None:
                            raise failure from err
                        log_debug("Cannot delete file", file=file.path)
                        ignored_files.append(file.path)
                    continue

                if (self.local_dir / file.path).is_dir() and not file.is_symlink:
                    # Usually a submodule pointer update
                    log_debug("Adding directory commit", file=file.path)
                elif file.contents is None:
                    continue
                else:
                    self._write_file(file)
                try:
                    add_args = ["add", "-f", "--", file.path] if file.path in CONFIG_FILE_NAMES else ["add", "--", file.path]
                    self._git(*add_args)
                    if file.is_executable:
                        self._git("update-index", "--chmod=+x", file.path)
                    added_modified_files.append(file.path)
                except GitCommandError as err:
                    if _IGNORED_PATH_MESSAGE not in str(err).lower():
                        raise
                    log_debug(f"Cannot commit ignored file: {file.path}")
                    ignored_files.append(file.path)

            staged = self._git("diff", "--cached", "--name-only")
            if not staged.strip():
                log_warning("Detected empty commit - aborting git push", branch=branch_name)
                return None

            self._git("commit", "-m", commit_config.message, *self._no_verify("commit"))
            log_debug(
                "git commit",
                branch=branch_name,
                deleted_files=deleted_files,
                ignored_files=ignored_files,
            )
            if not commit_config.force and not self.has_diff("HEAD", f"origin/{branch_name}"):
                log_debug(
                    "No file changes detected. Skipping commit",
                    branch=branch_name,
                    added_modified_files=added_modified_files,
                )
                return None

            commit_sha = self._git("rev-parse", branch_name).strip()
            applied = [
                f
                for f in commit_config.files
                if (f.path in deleted_files if f.type == "deletion" else f.path in added_modified_files)
            ]
            return CommitResult(parent_sha=parent_sha, sha=commit_sha, files=applied)
        except (ExternalHostError, RepositoryError, ConfigValidationError):
            self._restore_checkout(current)
            raise
        except Exception as err:
            self._restore_checkout(current)
            handle_commit_error(err, branch_name)
            raise

    @_single_writer
    def push_commit(self, push_config: PushFilesConfig) -> bool:
        self.sync()
        target = push_config.target_ref or push_config.source_ref
        log_debug(f"Pushing refspec {push_config.source_ref}:{target}")
        args = ["push", "origin", f"{push_config.source_ref}:{target}", "--force-with-lease", "-u"]
        args.extend(self._no_verify("push"))
        for option in self.config.git.push_options:
            args.extend(["--push-option", option])
        try:
            output = self._retry(lambda: self._git(*args))
        except (ExternalHostError, RepositoryError, ConfigValidationError):
            raise
        except Exception as err:
            handle_commit_error(err, push_config.source_ref)
            raise
        log_debug("git push", result=output)
        self.limits.inc_limited_value(Limit.COMMITS)
        return True

    @_single_writer
    def commit_files(self, commit_config: CommitFilesConfig) -> Optional[str]:
        """Prepare and push a commit; returns the new sha only if both succeed.

        Raises:
            RepositoryError: REPOSITORY_CHANGED when the remote moved under us
        """
        try:
            with timeit("git.commit_files", branch=commit_config.branch_name):
                result = self.prepare_commit(commit_config)
                if result is None:
                    return None
                pushed = self.push_commit(
                    PushFilesConfig(source_ref=commit_config.branch_name, files=commit_config.files)
                )
        except GitCommandError as err:
            if "(stale info)" in str(err):
                raise RepositoryError(ErrorKind.REPOSITORY_CHANGED, "stale info") from err
            raise
        if not pushed:
            return None
        self.state.branch_commits[commit_config.branch_name] = result.sha
        self.state.branch_is_modified[commit_config.branch_name] = False
        return result.sha

    # ------------------------------------------------------------------
    # Bot refs
    # ------------------------------------------------------------------

    @property
    def bot_ref_prefix(self) -> str:
        return f"refs/{self.config.git.bot_ref_namespace}/branches/"

    @_single_writer
    def push_commit_to_bot_ref(self, commit_sha: str, ref_name: str) -> None:
        """Store a commit under a non-branch ref so forge automation ignores it."""
        full_ref = f"{self.bot_ref_prefix}{ref_name}"
        self._git("update-ref", full_ref, commit_sha)
        self._retry(lambda: self._git("push", "--force", "origin", full_ref))

    @_single_writer
    def clear_bot_refs(self) -> None:
        if not self.state.repo_synced:
            return
        log_debug(f"Cleaning up refs: {self.bot_ref_prefix}*")
        refs: List[str] = []
        try:
            output = self._retry(lambda: self._git("ls-remote", self.state.url, f"{self.bot_ref_prefix}*"))
            for line in output.splitlines():
                ref = re.sub(r"^[0-9a-f]+\s+", "", line.strip(), flags=re.IGNORECASE)
                if ref.startswith(self.bot_ref_prefix):
                    refs.append(ref)
        except (GitCommandError, ExternalHostError) as err:
            log_warning("Bot refs cleanup error", error=_first_line(err))
        if not refs:
            return
        try:
            self._git("push", "--delete", "origin", *refs)
        except GitCommandError as err:
            if not is_bulk_changes_disallowed(err):
                log_warning("Error deleting bot refs", error=_first_line(err))
                return
            for ref in refs:
                try:
                    self._git("push", "--delete", "origin", ref)
                except GitCommandError as single_err:
                    log_debug("Error deleting bot ref", ref=ref, error=_first_line(single_err))
                    break
