from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..config_schema import BranchConfig
from ..observability import log_debug
from .ports import Platform, Scm
from .types import Pr


@dataclass
class ReuseDecision:
    reuse_existing_branch: bool = False
    is_conflicted: Optional[bool] = None


def _checks_behind_base(config: BranchConfig, platform: Platform) -> bool:
    if config.rebase_when == "behind-base-branch":
        return True
    if config.rebase_when == "automerging":
        return config.automerge
    if config.rebase_when == "auto":
        return config.automerge or bool(platform.get_branch_force_rebase(config.base_branch))
    return False


def should_reuse_existing_branch(
    config: BranchConfig, scm: Scm, platform: Platform, branch_pr: Optional[Pr] = None
) -> ReuseDecision:
    """Decide whether the existing branch can be kept instead of rebuilt from base.

    A branch that is behind (when the rebase policy cares) or conflicted is
    rebuilt, unless somebody else modified it.
    """
    branch_name = config.branch_name
    base_branch = config.base_branch
    decision = ReuseDecision()

    if not scm.branch_exists(branch_name):
        log_debug("Branch needs creating", branch=branch_name)
        return decision
    log_debug("Branch already exists", branch=branch_name)

    if _checks_behind_base(config, platform):
        if scm.is_branch_behind_base(branch_name, base_branch):
            log_debug("Branch is behind base branch and needs rebasing", branch=branch_name)
            if scm.is_branch_modified(branch_name, base_branch):
                log_debug("Cannot rebase branch as it has been modified", branch=branch_name)
                decision.reuse_existing_branch = True
                return decision
            log_debug("Branch is unmodified, so can be rebased", branch=branch_name)
            return decision
        log_debug("Branch is up-to-date", branch=branch_name)
    else:
        log_debug(f"Skipping behind base branch check due to rebase_when={config.rebase_when}")

    decision.is_conflicted = scm.is_branch_conflicted(base_branch, branch_name)
    if decision.is_conflicted:
        log_debug("Branch is conflicted", branch=branch_name)
        if not scm.is_branch_modified(branch_name, base_branch):
            keep_updated = branch_pr is not None and branch_pr.has_label(config.keep_updated_label)
            if config.rebase_when == "never" and not keep_updated:
                log_debug("Rebasing disabled by config", branch=branch_name)
                decision.reuse_existing_branch = True
                return decision
            log_debug("Branch is not mergeable and needs rebasing", branch=branch_name)
            return decision
        log_debug("Branch is conflicted, but cannot be rebased as it has been modified", branch=branch_name)

    decision.reuse_existing_branch = True
    return decision
