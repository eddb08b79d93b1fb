"""Git working-copy management: retry, fingerprint caches, repository state."""

from .fingerprint_cache import (  # noqa: F401
    FingerprintCache,
    FingerprintCaches,
    FingerprintKey,
    MemoryCacheStore,
    RepositoryCacheStore,
)
from .manager import VersionControlManager, get_url, validate_git_version  # noqa: F401
from .retry import git_retry  # noqa: F401
from .state import RepositoryState  # noqa: F401
from .types import (  # noqa: F401
    CommitFilesConfig,
    CommitResult,
    FileChange,
    PushFilesConfig,
    StatusResult,
    StorageConfig,
    TreeItem,
)

__all__ = [
    "FingerprintCache",
    "FingerprintCaches",
    "FingerprintKey",
    "MemoryCacheStore",
    "RepositoryCacheStore",
    "VersionControlManager",
    "get_url",
    "validate_git_version",
    "git_retry",
    "RepositoryState",
    "CommitFilesConfig",
    "CommitResult",
    "FileChange",
    "PushFilesConfig",
    "StatusResult",
    "StorageConfig",
    "TreeItem",
]
