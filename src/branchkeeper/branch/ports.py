"""Collaborator interfaces used by the branch processor.

Forge adapters, PR management, scheduling and package-file updates live
outside this package; the processor only sees these Protocols. The two
defaults here cover deployments without schedules or merge confidence.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from ..config_schema import BranchConfig, BranchUpgradeConfig
from ..vcs.types import CommitFilesConfig
from .types import AdditionalFilesResult, AutomergeCheck, EnsurePrResult, PackageFilesResult, Pr


class Platform(Protocol):
    def get_branch_pr(self, branch_name: str, base_branch: str) -> Optional[Pr]: ...

    def find_pr(
        self,
        branch_name: str,
        pr_title: Optional[str] = None,
        state: str = "all",
        target_branch: Optional[str] = None,
    ) -> Optional[Pr]: ...

    def ensure_comment(self, number: Optional[int], topic: str, content: str) -> bool: ...

    def ensure_comment_removal(self, number: Optional[int], topic: str) -> None: ...

    def delete_label(self, number: Optional[int], label: str) -> None: ...

    def get_branch_status(self, branch_name: str, internal_checks_as_success: bool) -> str: ...

    def massage_markdown(self, text: str) -> str: ...

    def get_branch_force_rebase(self, base_branch: str) -> bool: ...


class PrWorker(Protocol):
    def ensure_pr(self, config: BranchConfig) -> EnsurePrResult: ...

    def check_auto_merge(self, pr: Pr, config: BranchConfig) -> AutomergeCheck: ...


class Scheduler(Protocol):
    def is_scheduled_now(self, config: BranchConfig, schedule_key: str = "schedule") -> bool: ...


class PackageFilesUpdater(Protocol):
    def get_updated_package_files(self, config: BranchConfig) -> PackageFilesResult: ...

    def get_additional_files(self, config: BranchConfig) -> AdditionalFilesResult: ...


class MergeConfidence(Protocol):
    def is_active_confidence_level(self, level: Optional[str]) -> bool: ...

    def satisfies_confidence_level(self, confidence: str, minimum: str) -> bool: ...

    def get_merge_confidence_level(self, upgrade: BranchUpgradeConfig) -> Optional[str]: ...


class Scm(Protocol):
    """The slice of VersionControlManager the processor drives."""

    def branch_exists(self, branch_name: str) -> bool: ...

    def get_branch_commit(self, branch_name: str) -> Optional[str]: ...

    def is_branch_behind_base(self, branch_name: str, base_branch: str) -> bool: ...

    def is_branch_modified(self, branch_name: str, base_branch: str) -> bool: ...

    def is_branch_conflicted(self, base_branch: str, branch_name: str) -> bool: ...

    def checkout_branch(self, branch_name: str) -> str: ...

    def delete_branch(self, branch_name: str) -> None: ...

    def merge_branch(self, branch_name: str) -> None: ...

    def commit_files(self, commit_config: CommitFilesConfig) -> Optional[str]: ...


class AnyTimeScheduler:
    """Scheduled when the schedule is empty or only says "at any time".

    Real cron/later-style schedules need a dedicated scheduler.
    """

    def is_scheduled_now(self, config: BranchConfig, schedule_key: str = "schedule") -> bool:
        schedule: List[str] = getattr(config, schedule_key, None) or []
        return all(entry.strip().lower() == "at any time" for entry in schedule)


class NoMergeConfidence:
    def is_active_confidence_level(self, level: Optional[str]) -> bool:
        return False

    def satisfies_confidence_level(self, confidence: str, minimum: str) -> bool:
        return True

    def get_merge_confidence_level(self, upgrade: BranchUpgradeConfig) -> Optional[str]:
        return None
