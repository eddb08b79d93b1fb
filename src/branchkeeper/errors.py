"""Error taxonomy for branchkeeper.

Raw git output is matched against substring tables in exactly one place,
:func:`classify_git_error`. Everything else works with :class:`ErrorKind`
and the exception classes below.

Repository-level sentinels (:class:`RepositoryError`,
:class:`ConfigValidationError`) abort the whole repository run.
:class:`ExternalHostError` marks transient host trouble that callers may
reschedule. Anything else is a per-branch failure.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of a failure raised by git or a collaborator."""

    EXTERNAL_HOST = "external-host-error"
    REPOSITORY_EMPTY = "empty"
    REPOSITORY_CHANGED = "repository-changed"
    REPOSITORY_DISABLED = "disabled"
    INSUFFICIENT_DISK_SPACE = "disk-space"
    INVALID_PATH = "invalid-path"
    TEMPORARY = "temporary-error"
    CONFIG_VALIDATION = "config-validation"
    LOCKFILE_ERROR = "lockfile-error"
    UNCLASSIFIED = "unclassified"


class BranchkeeperError(Exception):
    """Base exception for branchkeeper operations."""

    kind: ErrorKind = ErrorKind.UNCLASSIFIED


class ExternalHostError(BranchkeeperError):
    """A remote host (git transport or forge) failed in a way worth retrying."""

    kind = ErrorKind.EXTERNAL_HOST

    def __init__(self, err: BaseException, host_type: str = "git"):
        super().__init__(f"External host error ({host_type}): {err}")
        self.err = err
        self.host_type = host_type


class RepositoryError(BranchkeeperError):
    """Fatal condition of the repository being processed.

    Raised for ``REPOSITORY_EMPTY``, ``REPOSITORY_CHANGED``,
    ``REPOSITORY_DISABLED``, ``INSUFFICIENT_DISK_SPACE``, ``INVALID_PATH``
    and ``TEMPORARY``. Propagates unchanged to the repository-run boundary.
    """

    def __init__(self, kind: ErrorKind, detail: str = ""):
        super().__init__(kind.value if not detail else f"{kind.value}: {detail}")
        self.kind = kind
        self.detail = detail


class ConfigValidationError(BranchkeeperError):
    """Repository configuration prevents the run from continuing."""

    kind = ErrorKind.CONFIG_VALIDATION

    def __init__(
        self,
        validation_error: str,
        validation_message: str = "",
        validation_source: Optional[str] = None,
    ):
        super().__init__(f"{ErrorKind.CONFIG_VALIDATION.value}: {validation_error}")
        self.validation_error = validation_error
        self.validation_message = validation_message
        self.validation_source = validation_source


class LockfileError(BranchkeeperError):
    """Artifacts failed to update for a release that is still too fresh."""

    kind = ErrorKind.LOCKFILE_ERROR


class ExecError(BranchkeeperError):
    """A post-update command exited non-zero or could not be spawned."""

    def __init__(
        self,
        cmd: str,
        *,
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        reason: str = "",
    ):
        message = reason or f"Command failed: {cmd}"
        if stderr:
            message = f"{message}\n{stderr}"
        super().__init__(message)
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class ConcurrentAccessError(BranchkeeperError):
    """A second thread tried to mutate a working copy that is in use."""


SENTINEL_KINDS = frozenset(
    {
        ErrorKind.REPOSITORY_EMPTY,
        ErrorKind.REPOSITORY_CHANGED,
        ErrorKind.REPOSITORY_DISABLED,
        ErrorKind.INSUFFICIENT_DISK_SPACE,
        ErrorKind.INVALID_PATH,
        ErrorKind.TEMPORARY,
        ErrorKind.CONFIG_VALIDATION,
    }
)


# Substrings in git output that indicate trouble on the remote side.
_EXTERNAL_HOST_TOKENS = (
    "remote: invalid username or password",
    "gnutls_handshake() failed",
    "the requested url returned error: 5",
    "the remote end hung up unexpectedly",
    "access denied or repository not exported",
    "could not write new index file",
    "failed to connect to",
    "connection timed out",
    "malformed object name",
    "could not resolve host",
    "early eof",
    "fatal: bad config",
    "incorrect old value provided",
    "failed to authenticate ssh session",
    "could not read from remote repository",
    "network is unreachable",
    "connection reset by peer",
    "rpc failed",
    "tls connection was non-properly terminated",
    "error: 429",
)

# (substring, message shown to the repository owner)
_CONFIG_TOKENS = (
    (
        "gitlab: branch name does not follow the pattern",
        "Cannot push because branch name does not follow project's push rules",
    ),
    (
        "gitlab: commit message does not follow the pattern",
        "Cannot push because commit message does not follow project's push rules",
    ),
    (
        "gitlab: author",
        "Cannot push because the commit author does not match the project's push rules",
    ),
    (
        "gitlab: committer",
        "Cannot push because the committer does not match the project's push rules",
    ),
    (
        "gitlab: commit must be signed",
        "Cannot push because the project requires signed commits",
    ),
    (
        "refusing to allow a github app to create or update workflow",
        "Cannot update workflow files without the workflows permission",
    ),
    (
        "push declined due to email privacy restrictions",
        "Cannot push because the commit email is private on the forge",
    ),
)

# Ordered: the first matching substring decides the kind.
_REPOSITORY_TOKENS = (
    ("no space left on device", ErrorKind.INSUFFICIENT_DISK_SPACE),
    ("please ask the owner to check their account", ErrorKind.REPOSITORY_DISABLED),
    ("is not a symbolic ref", ErrorKind.REPOSITORY_EMPTY),
    ("does not have any commits yet", ErrorKind.REPOSITORY_EMPTY),
    ("not a git repository", ErrorKind.REPOSITORY_CHANGED),
    ("not a valid object name", ErrorKind.REPOSITORY_CHANGED),
    ("fatal: bad revision", ErrorKind.REPOSITORY_CHANGED),
    ("(stale info)", ErrorKind.REPOSITORY_CHANGED),
    ("protected branch hook declined", ErrorKind.REPOSITORY_CHANGED),
    ("gh006", ErrorKind.REPOSITORY_CHANGED),
    ("fatal: ambiguous argument", ErrorKind.TEMPORARY),
)

_BULK_CHANGES_DISALLOWED_TOKENS = (
    "update more than",
    "more than 100 branches",
    "pushes that update more than",
)


def _error_text(err: BaseException) -> str:
    parts = [str(err)]
    # GitCommandError keeps stderr separately; include it in case str() truncates
    stderr = getattr(err, "stderr", None)
    if isinstance(stderr, str) and stderr not in parts[0]:
        parts.append(stderr)
    return "\n".join(parts).lower()


def classify_git_error(err: BaseException) -> ErrorKind:
    """Map an exception raised by git (or wrapping git output) to an ErrorKind."""
    if isinstance(err, BranchkeeperError):
        return err.kind

    text = _error_text(err)
    for token, kind in _REPOSITORY_TOKENS:
        if token in text:
            return kind
    for token, _message in _CONFIG_TOKENS:
        if token in text:
            return ErrorKind.CONFIG_VALIDATION
    if any(token in text for token in _EXTERNAL_HOST_TOKENS):
        return ErrorKind.EXTERNAL_HOST
    return ErrorKind.UNCLASSIFIED


def check_for_platform_failure(err: BaseException) -> Optional[BranchkeeperError]:
    """Return an ExternalHostError or ConfigValidationError for err, if it is one.

    Only host-side and push-rule failures are converted; repository sentinels
    are left to the call site, since their meaning depends on the operation.
    """
    if isinstance(err, (ExternalHostError, ConfigValidationError)):
        return err

    text = _error_text(err)
    if any(token in text for token in _EXTERNAL_HOST_TOKENS):
        return ExternalHostError(err, "git")
    for token, message in _CONFIG_TOKENS:
        if token in text:
            return ConfigValidationError(
                validation_error=message,
                validation_message=str(err),
                validation_source="git",
            )
    return None


def raise_for_kind(err: BaseException, *kinds: ErrorKind) -> None:
    """Raise the sentinel for err when its classification is one of kinds."""
    kind = classify_git_error(err)
    if kind in kinds:
        if isinstance(err, RepositoryError):
            raise err
        raise RepositoryError(kind, str(err).strip().splitlines()[0] if str(err).strip() else "") from err


def is_bulk_changes_disallowed(err: BaseException) -> bool:
    text = _error_text(err)
    return any(token in text for token in _BULK_CHANGES_DISALLOWED_TOKENS)


def is_sentinel(err: BaseException) -> bool:
    return isinstance(err, (RepositoryError, ConfigValidationError)) and err.kind in SENTINEL_KINDS


def handle_commit_error(err: BaseException, branch_name: str) -> None:
    """Translate a commit or push failure and raise it.

    Never returns: the original error is re-raised when no translation applies.
    """
    platform_failure = check_for_platform_failure(err)
    if platform_failure is not None:
        raise platform_failure from err

    kind = classify_git_error(err)
    if kind == ErrorKind.REPOSITORY_CHANGED:
        raise RepositoryError(ErrorKind.REPOSITORY_CHANGED, f"push to {branch_name} rejected") from err
    if kind == ErrorKind.INSUFFICIENT_DISK_SPACE:
        raise RepositoryError(ErrorKind.INSUFFICIENT_DISK_SPACE) from err
    raise err
