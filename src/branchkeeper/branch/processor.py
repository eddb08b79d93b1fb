"""Per-branch state machine.

``BranchProcessor.process_branch`` walks one branch from lookup through
regeneration, commit, branch automerge and PR maintenance, and returns a
:class:`ProcessBranchResult`. Repository-level sentinels and external host
errors propagate to the caller; anything else that goes wrong inside a branch
becomes an ``error`` outcome so sibling branches keep going.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from ..config_schema import BranchConfig, BranchkeeperConfig
from ..errors import (
    ErrorKind,
    ExternalHostError,
    LockfileError,
    RepositoryError,
    check_for_platform_failure,
    is_sentinel,
)
from ..limits import Limit, LimitTracker
from ..observability import log_action, log_debug, log_error, log_info, log_warning
from ..tasks.post_update import PostUpdateTaskRunner
from ..templates import fill_template
from ..vcs.fingerprint_cache import FingerprintCaches, MemoryCacheStore
from . import automerge, commit, reuse
from .automerge import AutomergeOutcome
from .fingerprint import files_fingerprint
from .ports import (
    AnyTimeScheduler,
    MergeConfidence,
    NoMergeConfidence,
    PackageFilesUpdater,
    Platform,
    PrWorker,
    Scheduler,
    Scm,
)
from .release_age import is_release_age_satisfied
from .types import BranchResult, EnsurePrResult, Pr, ProcessBranchResult

IGNORE_TOPIC = "Branchkeeper Ignore Notification"
EDITED_TOPIC = "Edited/Blocked Notification"
ARTIFACT_ERROR_TOPIC = "Artifact update problem"
ARTIFACT_NOTICE_TOPIC = "ℹ Artifact update notice"

# Fresh releases often have lock file trouble until registries catch up
FRESH_RELEASE_WINDOW = timedelta(hours=2)

DEFAULT_ARTIFACT_ERROR_WARNING = (
    "Branchkeeper failed to update an artifact related to this branch. "
    "You probably do not want to merge this PR as-is."
)

EDITED_COMMENT = (
    "### Edited/Blocked Notification\n\n"
    "Branchkeeper will not automatically rebase this PR, because it does not "
    "recognize the last commit author and assumes somebody else may have "
    "edited the PR.\n\n"
    "You can manually request a rebase by checking the rebase/retry box above"
    "{label_hint}.\n\n"
    "⚠️ **Warning**: custom changes will be lost."
)


def _ignore_notification(config: BranchConfig) -> str:
    if config.update_type == "major":
        return (
            f"As this PR has been closed unmerged, Branchkeeper will ignore this "
            f"upgrade and you will not get PRs for *any* future "
            f"`{config.new_major}.x` releases. If you change your mind, rename "
            f"this PR to get a fresh replacement PR."
        )
    if config.update_type == "digest":
        dep_name = config.upgrades[0].dep_name if config.upgrades else config.branch_name
        return (
            f"As this PR has been closed unmerged, Branchkeeper will ignore this "
            f"upgrade type and you will not get PRs for *any* future "
            f"`{dep_name}:{config.new_value}` "
            f"digest updates. Digest updates will resume if you update the "
            f"specified tag at any time."
        )
    return (
        f"As this PR has been closed unmerged, Branchkeeper will now ignore this "
        f"update ({config.new_value}). You will still receive a PR once a newer "
        f"version is released, so if you wish to permanently ignore this "
        f"dependency, add it to your ignore list instead."
    )


class BranchProcessor:
    """Drive branches of one repository through their update cycle."""

    def __init__(
        self,
        scm: Scm,
        platform: Platform,
        pr_worker: PrWorker,
        package_files: PackageFilesUpdater,
        *,
        config: BranchkeeperConfig,
        task_runner: Optional[PostUpdateTaskRunner] = None,
        scheduler: Optional[Scheduler] = None,
        merge_confidence: Optional[MergeConfidence] = None,
        limits: Optional[LimitTracker] = None,
        caches: Optional[FingerprintCaches] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.scm = scm
        self.platform = platform
        self.pr_worker = pr_worker
        self.package_files = package_files
        self.config = config
        self.task_runner = task_runner if task_runner is not None else PostUpdateTaskRunner(scm, config)
        self.scheduler = scheduler or AnyTimeScheduler()
        self.merge_confidence = merge_confidence or NoMergeConfidence()
        self.limits = limits or getattr(scm, "limits", None) or LimitTracker()
        self.caches = caches or getattr(scm, "caches", None) or FingerprintCaches(MemoryCacheStore())
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._seed_limits()

    def _seed_limits(self) -> None:
        # Caps already set on a shared tracker win over the config
        settings = self.config.limits
        for key, value in (
            (Limit.BRANCHES, settings.branch_concurrent_limit),
            (Limit.COMMITS, settings.commit_limit),
            (Limit.PULL_REQUESTS, settings.pr_concurrent_limit),
        ):
            if value and not self.limits.has_max_limit(key):
                self.limits.set_max_limit(key, value)

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def process_branches(self, configs: Sequence[BranchConfig]) -> List[ProcessBranchResult]:
        """Process branches one after another, in the order given."""
        return [self.process_branch(config) for config in configs]

    def process_branch(self, config: BranchConfig) -> ProcessBranchResult:
        try:
            result = self._process_branch(config)
        except Exception as err:
            log_action(
                "branch.processed",
                outcome="aborted",
                branch=config.branch_name,
                error=type(err).__name__,
            )
            raise
        log_action(
            "branch.processed",
            outcome=result.result.value,
            branch=config.branch_name,
            pr_no=result.pr_no,
            commit_sha=result.commit_sha,
        )
        return result

    # ------------------------------------------------------------------

    def _process_branch(self, branch_config: BranchConfig) -> ProcessBranchResult:
        config = branch_config.model_copy(deep=True)
        dashboard_check = config.dashboard_check()
        scm = self.scm
        platform = self.platform

        log_debug("process_branch", branch=config.branch_name, dashboard_check=dashboard_check)

        branch_exists = False
        pr_no: Optional[int] = None
        commit_sha: Optional[str] = None
        artifact_errors_present = False
        user_rebase = False
        updates_verified = False

        try:
            branch_exists = scm.branch_exists(config.branch_name)
            if not branch_exists and config.branch_prefix != config.branch_prefix_old:
                old_name = config.branch_name.replace(config.branch_prefix, config.branch_prefix_old, 1)
                if old_name != config.branch_name and scm.branch_exists(old_name):
                    log_debug("Found existing branch with old prefix", branch=old_name)
                    config.branch_name = old_name
                    branch_exists = True

            branch_pr = platform.get_branch_pr(config.branch_name, config.base_branch)
            if branch_pr is not None:
                log_debug("Found existing branch PR", pr_no=branch_pr.number, branch=config.branch_name)
                pr_no = branch_pr.number
                config.rebase_requested = self._rebase_requested(config, branch_pr)

            early = self._check_existing_prs(config, branch_pr, branch_exists, dashboard_check)
            if early is not None:
                return early

            if not branch_exists and not dashboard_check:
                if config.dependency_dashboard_approval:
                    log_debug("Branch needs approval", branch=config.branch_name)
                    return ProcessBranchResult(branch_exists=False, result=BranchResult.NEEDS_APPROVAL)
                if config.mode == "silent":
                    log_debug("Branch needs approval because repository is in silent mode", branch=config.branch_name)
                    return ProcessBranchResult(branch_exists=False, result=BranchResult.NEEDS_APPROVAL)

            limited = self._check_limits(config, branch_exists, dashboard_check)
            if limited is not None:
                return limited

            if branch_exists:
                early = self._check_existing_branch(config, branch_pr, dashboard_check)
                if early is not None:
                    return early

            config.is_scheduled_now = self.scheduler.is_scheduled_now(config, "schedule")
            if not config.is_scheduled_now and not dashboard_check:
                if not branch_exists:
                    log_debug("Skipping branch creation as not within schedule", branch=config.branch_name)
                    return ProcessBranchResult(branch_exists=False, result=BranchResult.NOT_SCHEDULED, pr_no=pr_no)
                if config.update_not_scheduled is False and not config.rebase_requested:
                    log_debug("Skipping branch update as not within schedule", branch=config.branch_name)
                    return ProcessBranchResult(
                        branch_exists=True, result=BranchResult.UPDATE_NOT_SCHEDULED, pr_no=pr_no
                    )
                if branch_pr is None and not (config.automerge and config.automerge_type == "branch"):
                    log_debug("Skipping PR creation out of schedule", branch=config.branch_name)
                    return ProcessBranchResult(branch_exists=True, result=BranchResult.NOT_SCHEDULED, pr_no=pr_no)
                log_debug("Branch + PR exists but is not scheduled -- will update if necessary")

            if self._release_gate_applies(config):
                self._evaluate_stability(config)
                if (
                    not dashboard_check
                    and not branch_exists
                    and config.stability_status == "yellow"
                    and config.pr_creation in ("not-pending", "status-success")
                ):
                    log_debug(
                        "Skipping branch creation due to internal status checks not met",
                        branch=config.branch_name,
                    )
                    return ProcessBranchResult(branch_exists=False, result=BranchResult.PENDING, pr_no=pr_no)

            user_rebase = (
                dashboard_check == "rebase"
                or config.dependency_dashboard_rebase_all_open
                or config.rebase_requested
            )
            if user_rebase:
                log_debug("Manual rebase requested via Dependency Dashboard or PR", branch=config.branch_name)
                config.reuse_existing_branch = False
            elif dashboard_check == "global-config":
                log_debug("Manual create/rebase requested via checkbox", branch=config.branch_name)
                config.reuse_existing_branch = False
            elif config.dependency_dashboard_all_pending:
                log_debug("Dependency Dashboard All Pending approval requested")
            elif config.dependency_dashboard_all_rate_limited:
                log_debug("Dependency Dashboard All rate-limited PR creations requested")
            elif (
                branch_exists
                and config.rebase_when == "never"
                and not (branch_pr is not None and branch_pr.has_label(config.keep_updated_label))
                and not dashboard_check
            ):
                log_debug("rebaseWhen=never so skipping branch update check", branch=config.branch_name)
                return ProcessBranchResult(branch_exists=branch_exists, result=BranchResult.NO_WORK, pr_no=pr_no)
            elif (
                branch_pr is not None
                and branch_pr.target_branch
                and branch_pr.target_branch != config.base_branch
            ):
                log_debug("Base branch changed by user, rebasing the branch onto new base")
                config.reuse_existing_branch = False
            else:
                decision = reuse.should_reuse_existing_branch(config, scm, platform, branch_pr)
                config.reuse_existing_branch = decision.reuse_existing_branch
                if decision.is_conflicted is not None:
                    config.is_conflicted = decision.is_conflicted

            if not (config.reuse_existing_branch and config.cache_fingerprint_match == "matched"):
                commit_sha = self._regenerate_and_commit(config, branch_exists, branch_pr, user_rebase)
                updates_verified = True
                if commit_sha is not None and not branch_exists:
                    self.limits.inc_limited_value(Limit.BRANCHES)
            else:
                log_debug("Branch fingerprint matches the cached content, skipping regeneration")

            artifact_errors_present = bool(config.artifact_errors)

            if commit_sha is None and not branch_exists:
                return ProcessBranchResult(branch_exists=False, result=BranchResult.NO_WORK, pr_no=pr_no)

            if (
                commit_sha is not None
                and not artifact_errors_present
                and not user_rebase
                and not dashboard_check
                and branch_pr is None
                and config.pr_creation != "immediate"
            ):
                log_debug(
                    f"Branch has been created, waiting for pr_creation={config.pr_creation}",
                    branch=config.branch_name,
                )
                return ProcessBranchResult(
                    branch_exists=True,
                    result=BranchResult.PENDING,
                    commit_sha=commit_sha,
                    updates_verified=updates_verified,
                )

            if not artifact_errors_present and (commit_sha is None or config.ignore_tests):
                merge_status = automerge.try_branch_automerge(
                    config,
                    scm=scm,
                    platform=platform,
                    scheduler=self.scheduler,
                    dry_run=self.dry_run,
                )
                log_debug("Branch automerge result", branch=config.branch_name, status=merge_status.value)
                if merge_status == AutomergeOutcome.AUTOMERGED:
                    if self.dry_run:
                        log_info(f"DRY-RUN: Would delete branch {config.branch_name}")
                    else:
                        scm.delete_branch(config.branch_name)
                    return ProcessBranchResult(
                        branch_exists=False,
                        result=BranchResult.AUTOMERGED,
                        commit_sha=commit_sha,
                        updates_verified=updates_verified,
                    )
                if merge_status == AutomergeOutcome.OFF_SCHEDULE:
                    log_info(
                        "Branch cannot automerge now because automergeSchedule is off schedule - skipping",
                        branch=config.branch_name,
                    )
                    return ProcessBranchResult(
                        branch_exists=branch_exists,
                        result=BranchResult.NOT_SCHEDULED,
                        commit_sha=commit_sha,
                    )
                keep_updated = branch_pr is not None and branch_pr.has_label(config.keep_updated_label)
                if (
                    merge_status == AutomergeOutcome.STALE
                    and config.rebase_when in ("conflicted", "never")
                    and not keep_updated
                ) or merge_status in (
                    AutomergeOutcome.PR_EXISTS,
                    AutomergeOutcome.BRANCH_STATUS_ERROR,
                    AutomergeOutcome.FAILED,
                ):
                    log_debug("Forcing PR because branch automerge failed", status=merge_status.value)
                    config.force_pr = True
                    config.branch_automerge_failure_message = merge_status.value
        except Exception as err:
            if is_sentinel(err) or isinstance(err, ExternalHostError):
                raise
            platform_failure = check_for_platform_failure(err)
            if platform_failure is not None:
                raise platform_failure from err
            message = str(err).lower()
            if "space left on device" in message:
                raise RepositoryError(ErrorKind.INSUFFICIENT_DISK_SPACE) from err
            if "fatal: bad revision" in message:
                log_debug("Found fatal: bad revision error", branch=config.branch_name)
                raise RepositoryError(ErrorKind.REPOSITORY_CHANGED, "fatal: bad revision") from err
            if isinstance(err, LockfileError):
                log_warning("Deferring branch with fresh-release artifact errors", branch=config.branch_name)
            else:
                log_error(
                    "Error updating branch",
                    branch=config.branch_name,
                    error=str(err),
                    error_type=type(err).__name__,
                )
            return ProcessBranchResult(
                branch_exists=branch_exists,
                result=BranchResult.ERROR,
                pr_no=pr_no,
                commit_sha=commit_sha,
            )

        return self._ensure_pr(
            config,
            branch_exists=branch_exists,
            pr_no=pr_no,
            commit_sha=commit_sha,
            updates_verified=updates_verified,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _rebase_requested(self, config: BranchConfig, branch_pr: Pr) -> bool:
        if branch_pr.title.startswith("rebase!"):
            log_debug("Manual rebase requested via PR title", pr_no=branch_pr.number)
            return True
        if branch_pr.has_label(config.rebase_label):
            log_debug("Manual rebase requested via PR labels", pr_no=branch_pr.number)
            if self.dry_run:
                log_info(f"DRY-RUN: Would delete label {config.rebase_label} from #{branch_pr.number}")
            else:
                self.platform.delete_label(branch_pr.number, config.rebase_label)
            return True
        if branch_pr.rebase_checked:
            log_debug("Manual rebase requested via PR checkbox", pr_no=branch_pr.number)
            return True
        return False

    def _check_existing_prs(
        self,
        config: BranchConfig,
        branch_pr: Optional[Pr],
        branch_exists: bool,
        dashboard_check: Optional[str],
    ) -> Optional[ProcessBranchResult]:
        if branch_pr is not None:
            return None
        existing = self.platform.find_pr(
            config.branch_name,
            config.pr_title,
            state="!open",
            target_branch=config.base_branch,
        )
        if existing is None:
            return None

        if existing.state == "merged":
            log_debug(f"Matching PR #{existing.number} was merged previously")
            if config.automerge:
                log_debug("Disabling automerge because PR was merged previously")
                config.automerge = False
                config.automerged_previously = True
            return None

        if existing.state != "closed" or dashboard_check:
            return None

        log_debug(f"Found closed PR #{existing.number} for branch", branch=config.branch_name)
        if "prIgnoreNotification" not in config.suppress_notifications:
            content = _ignore_notification(config)
            if self.dry_run:
                log_info(f"DRY-RUN: Would ensure closed PR comment in PR #{existing.number}")
            else:
                self.platform.ensure_comment(existing.number, IGNORE_TOPIC, content)
        if branch_exists:
            if self.dry_run:
                log_info(f"DRY-RUN: Would delete branch {config.branch_name}")
            else:
                self.scm.delete_branch(config.branch_name)
        return ProcessBranchResult(
            branch_exists=False,
            result=BranchResult.ALREADY_EXISTED,
            pr_no=existing.number,
        )

    def _check_limits(
        self,
        config: BranchConfig,
        branch_exists: bool,
        dashboard_check: Optional[str],
    ) -> Optional[ProcessBranchResult]:
        vulnerability = config.is_vulnerability_alert
        if (
            not branch_exists
            and self.limits.is_limit_reached(Limit.BRANCHES)
            and not dashboard_check
            and not vulnerability
        ):
            log_debug("Reached branch limit - skipping branch creation", branch=config.branch_name)
            return ProcessBranchResult(branch_exists=False, result=BranchResult.BRANCH_LIMIT_REACHED)
        if self.limits.is_limit_reached(Limit.COMMITS) and not dashboard_check and not vulnerability:
            log_debug("Reached commits limit - skipping branch", branch=config.branch_name)
            return ProcessBranchResult(branch_exists=branch_exists, result=BranchResult.COMMIT_LIMIT_REACHED)
        if not branch_exists and config.pending_checks and not dashboard_check:
            log_debug("Branch has pending status checks", branch=config.branch_name)
            return ProcessBranchResult(branch_exists=False, result=BranchResult.PENDING)
        return None

    def _check_existing_branch(
        self,
        config: BranchConfig,
        branch_pr: Optional[Pr],
        dashboard_check: Optional[str],
    ) -> Optional[ProcessBranchResult]:
        scm = self.scm
        platform = self.platform
        pr_no = branch_pr.number if branch_pr is not None else None

        if (
            branch_pr is not None
            and branch_pr.has_label(config.stop_updating_label)
            and not branch_pr.rebase_checked
            and not dashboard_check
        ):
            log_debug("Branch updating is skipped because stopUpdatingLabel is present in config")
            config.stop_updating = True
            return ProcessBranchResult(branch_exists=True, result=BranchResult.NO_WORK, pr_no=pr_no)

        branch_is_modified = scm.is_branch_modified(config.branch_name, config.base_branch)
        if branch_pr is not None:
            target_changed = bool(
                branch_pr.body_struct
                and branch_pr.body_struct.debug_target_branch
                and branch_pr.target_branch
                and branch_pr.body_struct.debug_target_branch != branch_pr.target_branch
            )
            if branch_is_modified or target_changed:
                log_debug(f"PR has been edited, PrNo:{branch_pr.number}")
                if branch_pr.state != "open":
                    raise RepositoryError(
                        ErrorKind.REPOSITORY_CHANGED,
                        f"branch {config.branch_name} was edited but its PR is {branch_pr.state}",
                    )
                if not dashboard_check and not config.rebase_requested:
                    if "prEditedNotification" not in config.suppress_notifications:
                        label_hint = (
                            f", or adding the `{config.rebase_label}` label to this PR"
                            if config.rebase_label
                            else ""
                        )
                        content = platform.massage_markdown(EDITED_COMMENT.format(label_hint=label_hint))
                        if self.dry_run:
                            log_info(f"DRY-RUN: Would ensure edited/blocked PR comment in PR #{branch_pr.number}")
                        else:
                            platform.ensure_comment(branch_pr.number, EDITED_TOPIC, content)
                    return ProcessBranchResult(branch_exists=True, result=BranchResult.PR_EDITED, pr_no=pr_no)
                if self.dry_run:
                    log_info(f"DRY-RUN: Would remove edited/blocked PR comment in PR #{branch_pr.number}")
                else:
                    platform.ensure_comment_removal(branch_pr.number, EDITED_TOPIC)
        elif branch_is_modified:
            old_pr = platform.find_pr(config.branch_name, state="!open", target_branch=config.base_branch)
            if old_pr is None:
                log_debug("Branch has been edited but found no PR - skipping", branch=config.branch_name)
                return ProcessBranchResult(branch_exists=True, result=BranchResult.PR_EDITED)
            branch_sha = scm.get_branch_commit(config.branch_name)
            if old_pr.sha and old_pr.sha != branch_sha:
                log_debug(
                    "Found existing PR but the SHA is different",
                    pr_no=old_pr.number,
                    pr_sha=old_pr.sha,
                    branch_sha=branch_sha,
                )
                return ProcessBranchResult(branch_exists=True, result=BranchResult.PR_EDITED, pr_no=old_pr.number)
        return None

    def _release_gate_applies(self, config: BranchConfig) -> bool:
        for upgrade in config.upgrades:
            if upgrade.minimum_release_age and upgrade.release_timestamp is not None:
                return True
            if self.merge_confidence.is_active_confidence_level(upgrade.minimum_confidence):
                return True
        return False

    def _evaluate_stability(self, config: BranchConfig) -> None:
        config.stability_status = "green"
        config.confidence_status = "green"
        now = self._now()
        for upgrade in config.upgrades:
            if not is_release_age_satisfied(upgrade, now):
                config.stability_status = "yellow"
                continue
            minimum = upgrade.minimum_confidence
            if self.merge_confidence.is_active_confidence_level(minimum):
                confidence = self.merge_confidence.get_merge_confidence_level(upgrade) or "neutral"
                if not self.merge_confidence.satisfies_confidence_level(confidence, minimum):
                    config.confidence_status = "yellow"
        log_debug(
            "Release gate evaluated",
            branch=config.branch_name,
            stability=config.stability_status,
            confidence=config.confidence_status,
        )

    def _regenerate_and_commit(
        self,
        config: BranchConfig,
        branch_exists: bool,
        branch_pr: Optional[Pr],
        user_rebase: bool,
    ) -> Optional[str]:
        scm = self.scm
        scm.checkout_branch(config.base_branch)

        try:
            res = self.package_files.get_updated_package_files(config)
            config.updated_package_files = list(res.updated_package_files)
            config.updated_artifacts = list(res.updated_artifacts)
            config.artifact_errors = list(res.artifact_errors)
            config.artifact_notices = list(res.artifact_notices)
            if not config.updated_package_files:
                log_debug("No package files need updating", branch=config.branch_name)

            additional = self.package_files.get_additional_files(config)
            config.updated_artifacts = [*config.updated_artifacts, *additional.updated_artifacts]
            config.artifact_errors = [*config.artifact_errors, *additional.artifact_errors]

            post_upgrade = self.task_runner.execute(config)
            if post_upgrade is not None:
                config.updated_artifacts = list(post_upgrade.updated_artifacts)
                config.artifact_errors = list(post_upgrade.artifact_errors)

            if config.artifact_errors:
                fresh = self._is_fresh_release(config)
                if fresh and not branch_exists:
                    log_debug("Found artifact errors for a fresh release, deferring branch", branch=config.branch_name)
                    raise LockfileError(f"Artifact errors on fresh release for {config.branch_name}")
            elif config.updated_artifacts and branch_pr is not None:
                if self.dry_run:
                    log_info(f"DRY-RUN: Would ensure comment removal in PR #{branch_pr.number}")
                else:
                    self.platform.ensure_comment_removal(branch_pr.number, ARTIFACT_ERROR_TOPIC)

            forced_commit = user_rebase or not branch_exists
            if config.is_conflicted is None:
                config.is_conflicted = (not branch_exists) or scm.is_branch_conflicted(
                    config.base_branch, config.branch_name
                )
            config.force_commit = forced_commit or bool(config.is_conflicted)

            fingerprint = files_fingerprint(commit.files_to_commit(config))
            branch_sha = scm.get_branch_commit(config.branch_name) if branch_exists else None
            cached = self.caches.get_branch_fingerprint(config.branch_name, branch_sha)
            if cached == fingerprint and not config.force_commit:
                log_debug("Branch content fingerprint unchanged, skipping commit", branch=config.branch_name)
                commit_sha = None
            else:
                commit_sha = commit.commit_files_to_branch(scm, config, self.dry_run)
                if commit_sha is not None:
                    self.caches.set_branch_fingerprint(config.branch_name, commit_sha, fingerprint)
        finally:
            scm.checkout_branch(config.base_branch)
        return commit_sha

    def _is_fresh_release(self, config: BranchConfig) -> bool:
        if config.release_timestamp is None:
            return False
        released = config.release_timestamp
        if released.tzinfo is None:
            released = released.replace(tzinfo=timezone.utc)
        return self._now() - released < FRESH_RELEASE_WINDOW

    def _ensure_pr(
        self,
        config: BranchConfig,
        *,
        branch_exists: bool,
        pr_no: Optional[int],
        commit_sha: Optional[str],
        updates_verified: bool,
    ) -> ProcessBranchResult:
        platform = self.platform
        if (
            pr_no is None
            and self.limits.is_limit_reached(Limit.PULL_REQUESTS)
            and not config.is_vulnerability_alert
        ):
            log_debug("Reached PR limit - skipping PR creation", branch=config.branch_name)
            return ProcessBranchResult(
                branch_exists=True,
                result=BranchResult.PR_LIMIT_REACHED,
                pr_blocked_by="RateLimited",
                commit_sha=commit_sha,
            )
        try:
            log_debug("Ensuring PR", branch=config.branch_name)
            ensured: EnsurePrResult = self.pr_worker.ensure_pr(config)

            if ensured.type == "without-pr":
                blocked_by = ensured.pr_blocked_by
                if blocked_by == "RateLimited" and not config.is_vulnerability_alert:
                    log_debug("Reached PR limit - skipping PR creation", branch=config.branch_name)
                    result = BranchResult.PR_LIMIT_REACHED
                elif blocked_by == "NeedsApproval":
                    result = BranchResult.NEEDS_PR_APPROVAL
                elif blocked_by == "AwaitingTests":
                    result = BranchResult.PENDING
                elif blocked_by == "BranchAutomerge":
                    result = BranchResult.DONE
                else:
                    if blocked_by != "Error":
                        log_warning("Unknown PrBlockedBy result", pr_blocked_by=blocked_by)
                    result = BranchResult.ERROR
                return ProcessBranchResult(
                    branch_exists=True,
                    result=result,
                    pr_blocked_by=blocked_by,
                    commit_sha=commit_sha,
                )

            pr = ensured.pr
            if pr is not None:
                if pr_no is None:
                    self.limits.inc_limited_value(Limit.PULL_REQUESTS)
                pr_no = pr.number
                if config.artifact_errors:
                    self._post_artifact_errors(config, pr)
                elif config.automerge and (config.ignore_tests or commit_sha is None):
                    log_debug("Checking whether PR can be automerged", pr_no=pr.number)
                    merge = self.pr_worker.check_auto_merge(pr, config)
                    if merge.automerged:
                        return ProcessBranchResult(
                            branch_exists=True,
                            result=BranchResult.AUTOMERGED,
                            pr_no=pr.number,
                            commit_sha=commit_sha,
                            updates_verified=updates_verified,
                        )
                    if merge.pr_automerge_blocked_reason:
                        log_debug(
                            "PR automerge blocked",
                            pr_no=pr.number,
                            reason=merge.pr_automerge_blocked_reason,
                        )
                if config.artifact_notices:
                    self._post_artifact_notices(config, pr)
        except Exception as err:
            if is_sentinel(err) or isinstance(err, ExternalHostError):
                raise
            log_error(
                "Error ensuring PR",
                branch=config.branch_name,
                error=str(err),
                error_type=type(err).__name__,
            )

        result = BranchResult.DONE if branch_exists else BranchResult.PR_CREATED
        return ProcessBranchResult(
            branch_exists=True,
            result=result,
            pr_no=pr_no,
            commit_sha=commit_sha,
            updates_verified=updates_verified,
        )

    def _post_artifact_errors(self, config: BranchConfig, pr: Pr) -> None:
        if any(key in config.suppress_notifications for key in ("artifactErrors", "lockFileErrors")):
            log_debug("Suppressing artifact errors comment", pr_no=pr.number)
            return
        if config.user_strings.artifact_error_warning:
            header = fill_template(config.user_strings.artifact_error_warning, config.template_values())
        else:
            header = DEFAULT_ARTIFACT_ERROR_WARNING
        content = f"### ⚠️ Artifact update problem\n\n{header}\n\n"
        content += (
            "♻ Branchkeeper will retry this branch, including artifacts, only when "
            "one of the following happens:\n\n"
            " - any of the package files in this branch needs updating, or \n"
            " - the branch becomes conflicted, or\n"
            " - you click the rebase/retry checkbox if found above, or\n"
            " - you rename this PR's title to start with \"rebase!\" to trigger it manually\n\n"
            "The artifact failure details are included below:\n\n"
        )
        for error in config.artifact_errors:
            content += f"##### File name: {error.lock_file}\n\n```\n{error.stderr}\n```\n\n"
        content = self.platform.massage_markdown(content)
        if self.dry_run:
            log_info(f"DRY-RUN: Would ensure lock file error comment in PR #{pr.number}")
        else:
            self.platform.ensure_comment(pr.number, ARTIFACT_ERROR_TOPIC, content)

    def _post_artifact_notices(self, config: BranchConfig, pr: Pr) -> None:
        content = ""
        for notice in config.artifact_notices:
            content += f"##### File name: {notice.file}\n\n{notice.message}\n"
        if self.dry_run:
            log_info(f"DRY-RUN: Would ensure artifact notice comment in PR #{pr.number}")
        else:
            self.platform.ensure_comment(pr.number, ARTIFACT_NOTICE_TOPIC, content)
