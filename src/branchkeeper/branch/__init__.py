"""Branch state machine and its collaborator interfaces."""

from .automerge import AutomergeOutcome, try_branch_automerge  # noqa: F401
from .commit import commit_files_to_branch  # noqa: F401
from .fingerprint import files_fingerprint  # noqa: F401
from .ports import (  # noqa: F401
    AnyTimeScheduler,
    MergeConfidence,
    NoMergeConfidence,
    PackageFilesUpdater,
    Platform,
    PrWorker,
    Scheduler,
    Scm,
)
from .processor import BranchProcessor  # noqa: F401
from .reuse import ReuseDecision, should_reuse_existing_branch  # noqa: F401
from .types import (  # noqa: F401
    AdditionalFilesResult,
    AutomergeCheck,
    BranchResult,
    EnsurePrResult,
    PackageFilesResult,
    Pr,
    PrBodyStruct,
    ProcessBranchResult,
)

__all__ = [
    "AutomergeOutcome",
    "try_branch_automerge",
    "commit_files_to_branch",
    "files_fingerprint",
    "AnyTimeScheduler",
    "MergeConfidence",
    "NoMergeConfidence",
    "PackageFilesUpdater",
    "Platform",
    "PrWorker",
    "Scheduler",
    "Scm",
    "BranchProcessor",
    "ReuseDecision",
    "should_reuse_existing_branch",
    "AdditionalFilesResult",
    "AutomergeCheck",
    "BranchResult",
    "EnsurePrResult",
    "PackageFilesResult",
    "Pr",
    "PrBodyStruct",
    "ProcessBranchResult",
]
