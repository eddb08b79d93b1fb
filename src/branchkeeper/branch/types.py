from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from ..vcs.types import FileChange


class BranchResult(str, Enum):
    """Terminal outcome of one branch pass."""

    NOT_SCHEDULED = "not-scheduled"
    UPDATE_NOT_SCHEDULED = "update-not-scheduled"
    PENDING = "pending"
    NEEDS_APPROVAL = "needs-approval"
    BRANCH_LIMIT_REACHED = "branch-limit-reached"
    COMMIT_LIMIT_REACHED = "commit-limit-reached"
    PR_LIMIT_REACHED = "pr-limit-reached"
    NEEDS_PR_APPROVAL = "needs-pr-approval"
    NO_WORK = "no-work"
    PR_EDITED = "pr-edited"
    ALREADY_EXISTED = "already-existed"
    PR_CREATED = "pr-created"
    DONE = "done"
    ERROR = "error"
    AUTOMERGED = "automerged"


@dataclass
class ProcessBranchResult:
    branch_exists: bool
    result: BranchResult
    pr_no: Optional[int] = None
    commit_sha: Optional[str] = None
    pr_blocked_by: Optional[str] = None
    updates_verified: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        """Outcome record for the repository loop (camelCase keys).

        Optional keys are omitted when unset.
        """
        data: Dict[str, Any] = {
            "branchExists": self.branch_exists,
            "result": self.result.value,
        }
        if self.pr_no is not None:
            data["prNo"] = self.pr_no
        if self.commit_sha is not None:
            data["commitSha"] = self.commit_sha
        if self.pr_blocked_by is not None:
            data["prBlockedBy"] = self.pr_blocked_by
        if self.updates_verified is not None:
            data["updatesVerified"] = self.updates_verified
        return data


@dataclass
class PrBodyStruct:
    rebase_requested: bool = False
    debug_target_branch: Optional[str] = None


@dataclass
class Pr:
    """Pull request as reported by the platform adapter."""

    number: Optional[int] = None
    state: Literal["open", "closed", "merged"] = "open"
    title: str = ""
    labels: List[str] = field(default_factory=list)
    source_branch: Optional[str] = None
    target_branch: Optional[str] = None
    sha: Optional[str] = None
    body_struct: Optional[PrBodyStruct] = None

    @property
    def rebase_checked(self) -> bool:
        return bool(self.body_struct and self.body_struct.rebase_requested)

    def has_label(self, label: Optional[str]) -> bool:
        return bool(label) and label in self.labels


@dataclass
class EnsurePrResult:
    type: Literal["with-pr", "without-pr"]
    pr: Optional[Pr] = None
    pr_blocked_by: Optional[str] = None


@dataclass
class AutomergeCheck:
    automerged: bool = False
    pr_automerge_blocked_reason: Optional[str] = None


@dataclass
class PackageFilesResult:
    updated_package_files: List[FileChange] = field(default_factory=list)
    updated_artifacts: List[FileChange] = field(default_factory=list)
    artifact_errors: List[Any] = field(default_factory=list)
    artifact_notices: List[Any] = field(default_factory=list)


@dataclass
class AdditionalFilesResult:
    updated_artifacts: List[FileChange] = field(default_factory=list)
    artifact_errors: List[Any] = field(default_factory=list)
