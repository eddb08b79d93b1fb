"""Post-update command execution."""

from .executor import CommandExecutor, ExecResult, SubprocessExecutor  # noqa: F401
from .post_update import (  # noqa: F401
    DATA_FILE_ENV,
    ArtifactError,
    ArtifactNotice,
    PostUpdateTaskRunner,
    PostUpgradeResult,
)

__all__ = [
    "CommandExecutor",
    "ExecResult",
    "SubprocessExecutor",
    "DATA_FILE_ENV",
    "ArtifactError",
    "ArtifactNotice",
    "PostUpdateTaskRunner",
    "PostUpgradeResult",
]
