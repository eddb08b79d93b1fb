"""Branch automerge: fast-forward the base branch onto a green update branch."""

from __future__ import annotations

from enum import Enum

from ..config_schema import BranchConfig
from ..errors import ExternalHostError, is_sentinel
from ..observability import log_debug, log_info, log_warning
from .ports import Platform, Scheduler, Scm


class AutomergeOutcome(str, Enum):
    AUTOMERGED = "automerged"
    NO_AUTOMERGE = "no automerge"
    OFF_SCHEDULE = "off schedule"
    PR_EXISTS = "automerge aborted - PR exists"
    BRANCH_STATUS_ERROR = "branch status error"
    NOT_READY = "not ready"
    STALE = "stale"
    FAILED = "failed"


_STALE_TOKENS = (
    "refusing to merge unrelated histories",
    "not possible to fast-forward",
    "cannot fast-forward",
    "not a fast-forward",
    "is behind",
)


def _classify_merge_failure(message: str) -> AutomergeOutcome:
    lowered = message.lower()
    if "not ready" in lowered:
        return AutomergeOutcome.NOT_READY
    if any(token in lowered for token in _STALE_TOKENS):
        return AutomergeOutcome.STALE
    if "protected branch" in lowered and "status check" in lowered:
        return AutomergeOutcome.NOT_READY
    return AutomergeOutcome.FAILED


def try_branch_automerge(
    config: BranchConfig,
    *,
    scm: Scm,
    platform: Platform,
    scheduler: Scheduler,
    dry_run: bool = False,
) -> AutomergeOutcome:
    if not config.automerge or config.automerge_type != "branch":
        return AutomergeOutcome.NO_AUTOMERGE
    if not scheduler.is_scheduled_now(config, "automerge_schedule"):
        return AutomergeOutcome.OFF_SCHEDULE

    existing_pr = platform.get_branch_pr(config.branch_name, config.base_branch)
    if existing_pr is not None:
        return AutomergeOutcome.PR_EXISTS

    if config.ignore_tests:
        branch_status = "green"
    else:
        branch_status = platform.get_branch_status(config.branch_name, config.internal_checks_as_success)

    if branch_status == "green":
        log_debug("Automerging branch", branch=config.branch_name)
        if dry_run:
            log_info(f"DRY-RUN: Would automerge branch {config.branch_name}")
            return AutomergeOutcome.AUTOMERGED
        try:
            scm.checkout_branch(config.base_branch)
            scm.merge_branch(config.branch_name)
        except Exception as err:
            if is_sentinel(err) or isinstance(err, ExternalHostError):
                raise
            outcome = _classify_merge_failure(str(err))
            if outcome == AutomergeOutcome.FAILED:
                log_warning("Unknown error when attempting branch automerge", branch=config.branch_name, error=str(err))
            else:
                log_debug("Branch automerge not possible", branch=config.branch_name, reason=outcome.value)
            return outcome
        log_info("Branch automerged", branch=config.branch_name)
        return AutomergeOutcome.AUTOMERGED

    if branch_status in ("red", "failed"):
        return AutomergeOutcome.BRANCH_STATUS_ERROR

    log_debug("Branch status not ready for automerge", branch=config.branch_name, status=branch_status)
    return AutomergeOutcome.NO_AUTOMERGE
