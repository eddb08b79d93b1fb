"""Configuration schema for branchkeeper.

Defines the global (per-process) settings and the per-branch inputs that the
branch processor consumes. Uses Pydantic for schema enforcement and clear
error messages. The branch models assume the option values were already
validated by the configuration engine; they only coerce types.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GitSettings(BaseModel):
    """Git working-copy settings."""

    author: str = Field(
        default="",
        description='Commit author as "Name <email>" (empty = built-in bot identity)',
    )
    ignored_authors: List[str] = Field(
        default_factory=list,
        description="Emails whose commits do not mark a branch as modified",
    )
    no_verify: List[Literal["commit", "push"]] = Field(
        default_factory=list,
        description="Git steps for which hooks are skipped with --no-verify",
    )
    full_clone: bool = Field(
        default=False,
        description="Clone full history instead of a blobless partial clone",
    )
    extra_clone_opts: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Additional clone options, e.g. {'--depth': '10'}",
    )
    clone_submodules: bool = Field(default=False)
    clone_submodules_filter: List[str] = Field(
        default_factory=lambda: ["*"],
        description="Glob or /regex/ patterns of submodule paths to clone; prefix ! to exclude",
    )
    push_options: List[str] = Field(
        default_factory=list,
        description="Values passed to git push --push-option",
    )
    bot_ref_namespace: str = Field(
        default="branchkeeper",
        description="Namespace for internal refs: refs/<namespace>/branches/*",
    )
    timeout: float = Field(
        default=600.0,
        ge=1.0,
        description="Seconds before a single git command is killed",
    )


class RetrySettings(BaseModel):
    """Retry behaviour for remote git operations."""

    retry_count: int = Field(default=5, ge=0, le=20)
    delay_seconds: float = Field(default=3.0, ge=0.0)
    max_delay_seconds: float = Field(default=15.0, ge=0.0)


class PostUpgradeSettings(BaseModel):
    """Post-update command policy."""

    allowed_commands: List[str] = Field(
        default_factory=list,
        description="Regex patterns; a command must match one of them to run",
    )
    allow_command_templating: bool = Field(
        default=True,
        description="Expand {{{name}}} placeholders in commands before matching",
    )
    timeout: float = Field(default=900.0, ge=1.0)

    @field_validator("allowed_commands")
    @classmethod
    def validate_patterns(cls, v: List[str]) -> List[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid allowed_commands pattern {pattern!r}: {exc}")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    dir: str = Field(default="", description="Log directory (empty = ~/.branchkeeper/logs)")
    max_bytes: int = Field(default=10485760, ge=1024)
    backup_count: int = Field(default=5, ge=0)
    disable_file: bool = Field(default=False)

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class LimitSettings(BaseModel):
    """Per-run caps; 0 means unlimited."""

    branch_concurrent_limit: int = Field(default=0, ge=0)
    commit_limit: int = Field(default=0, ge=0)
    pr_concurrent_limit: int = Field(default=0, ge=0)


class BranchkeeperConfig(BaseModel):
    """Root configuration object."""

    local_dir: str = Field(
        default="",
        description="Working directory holding the repository clone",
    )
    cache_dir: str = Field(
        default="",
        description="Directory for the persistent repository cache and private files",
    )
    dry_run: bool = Field(default=False)
    git: GitSettings = Field(default_factory=GitSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    post_upgrade: PostUpgradeSettings = Field(default_factory=PostUpgradeSettings)
    limits: LimitSettings = Field(default_factory=LimitSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "BranchkeeperConfig":
        return cls()

    @property
    def local_path(self) -> Path:
        if self.local_dir:
            return Path(self.local_dir).expanduser()
        return Path.home() / ".branchkeeper" / "repos" / "default"

    @property
    def cache_path(self) -> Path:
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        return Path.home() / ".branchkeeper" / "cache"

    @property
    def private_cache_path(self) -> Path:
        return self.cache_path / "__branchkeeper-private"


# ---------------------------------------------------------------------------
# Branch inputs
# ---------------------------------------------------------------------------


class PostUpgradeTasks(BaseModel):
    commands: List[str] = Field(default_factory=list)
    file_filters: Optional[List[str]] = None
    execution_mode: Optional[Literal["branch", "update"]] = None
    data_file_template: Optional[str] = None


class UserStrings(BaseModel):
    artifact_error_warning: Optional[str] = None


class BranchUpgradeConfig(BaseModel):
    """A single dependency change inside a branch."""

    model_config = ConfigDict(extra="allow")

    dep_name: str = ""
    package_name: Optional[str] = None
    manager: str = ""
    datasource: Optional[str] = None
    versioning: Optional[str] = None
    package_file: Optional[str] = None
    branch_name: Optional[str] = None
    current_value: Optional[str] = None
    new_value: Optional[str] = None
    current_version: Optional[str] = None
    new_version: Optional[str] = None
    new_major: Optional[int] = None
    update_type: Optional[str] = None
    release_timestamp: Optional[datetime] = None
    minimum_release_age: Optional[str] = None
    minimum_confidence: Optional[str] = None
    post_upgrade_tasks: Optional[PostUpgradeTasks] = None

    def template_values(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"post_upgrade_tasks"})


class BranchConfig(BaseModel):
    """Everything the branch processor needs to evaluate one branch.

    Fields below ``# run state`` are filled in while the branch is processed.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="allow")

    branch_name: str
    base_branch: str
    branch_prefix: str = "branchkeeper/"
    branch_prefix_old: str = "branchkeeper/"
    manager: str = ""
    upgrades: List[BranchUpgradeConfig] = Field(default_factory=list)
    update_type: Optional[str] = None
    new_value: Optional[str] = None
    new_major: Optional[int] = None
    pr_title: Optional[str] = None
    commit_message: str = ""

    automerge: bool = False
    automerge_type: Literal["branch", "pr", "pr-comment"] = "pr"
    automerge_schedule: List[str] = Field(default_factory=lambda: ["at any time"])
    schedule: List[str] = Field(default_factory=list)
    update_not_scheduled: Optional[bool] = None
    rebase_when: Literal["auto", "never", "conflicted", "behind-base-branch", "automerging"] = "auto"
    rebase_label: Optional[str] = "rebase"
    stop_updating_label: Optional[str] = "stop-updating"
    keep_updated_label: Optional[str] = None
    pr_creation: Literal["immediate", "not-pending", "status-success", "approval"] = "immediate"
    ignore_tests: bool = False
    internal_checks_as_success: bool = False
    pending_checks: bool = False
    mode: Literal["full", "silent"] = "full"
    is_vulnerability_alert: bool = False
    suppress_notifications: List[str] = Field(default_factory=list)
    exclude_commit_paths: List[str] = Field(default_factory=list)
    release_timestamp: Optional[datetime] = None
    post_upgrade_tasks: Optional[PostUpgradeTasks] = None
    file_filters: Optional[List[str]] = None
    user_strings: UserStrings = Field(default_factory=UserStrings)

    dependency_dashboard_approval: bool = False
    dependency_dashboard_checks: Dict[str, str] = Field(default_factory=dict)
    dependency_dashboard_rebase_all_open: bool = False
    dependency_dashboard_all_pending: bool = False
    dependency_dashboard_all_rate_limited: bool = False

    reuse_existing_branch: Optional[bool] = None
    cache_fingerprint_match: Optional[Literal["matched", "no-match", "no-fingerprint"]] = None

    # run state
    rebase_requested: bool = False
    stop_updating: bool = False
    automerged_previously: bool = False
    is_conflicted: Optional[bool] = None
    force_commit: bool = False
    force_pr: bool = False
    branch_automerge_failure_message: Optional[str] = None
    stability_status: Optional[str] = None
    confidence_status: Optional[str] = None
    is_scheduled_now: Optional[bool] = None
    updated_package_files: List[Any] = Field(default_factory=list)
    updated_artifacts: List[Any] = Field(default_factory=list)
    artifact_errors: List[Any] = Field(default_factory=list)
    artifact_notices: List[Any] = Field(default_factory=list)

    def dashboard_check(self) -> Optional[str]:
        return self.dependency_dashboard_checks.get(self.branch_name)

    def template_values(self) -> Dict[str, Any]:
        return self.model_dump(
            mode="json",
            exclude={
                "updated_package_files",
                "updated_artifacts",
                "artifact_errors",
                "artifact_notices",
                "post_upgrade_tasks",
                "upgrades",
            },
        )
