"""Branchkeeper: branch lifecycle engine for a dependency-update bot."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("branchkeeper")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .errors import (  # noqa: F401
    BranchkeeperError,
    ConfigValidationError,
    ErrorKind,
    ExternalHostError,
    RepositoryError,
)
from .config_schema import BranchConfig, BranchkeeperConfig  # noqa: F401
from .vcs.manager import VersionControlManager  # noqa: F401
from .branch.processor import BranchProcessor  # noqa: F401
from .branch.types import BranchResult, ProcessBranchResult  # noqa: F401

__all__ = [
    "BranchkeeperError",
    "ConfigValidationError",
    "ErrorKind",
    "ExternalHostError",
    "RepositoryError",
    "BranchConfig",
    "BranchkeeperConfig",
    "VersionControlManager",
    "BranchProcessor",
    "BranchResult",
    "ProcessBranchResult",
    "__version__",
]
