from __future__ import annotations

from typing import List, Optional

from ..config_schema import BranchConfig
from ..errors import ConfigValidationError
from ..match import match_glob
from ..observability import log_debug, log_info
from ..sanitize import sanitize
from ..vcs.types import CommitFilesConfig, FileChange
from .ports import Scm


def files_to_commit(config: BranchConfig) -> List[FileChange]:
    files: List[FileChange] = [*config.updated_package_files, *config.updated_artifacts]
    if not config.exclude_commit_paths:
        return files
    kept = []
    for file in files:
        if any(match_glob(file.path, pattern) for pattern in config.exclude_commit_paths):
            log_debug("Excluding file from commit", path=file.path)
            continue
        kept.append(file)
    return kept


def commit_files_to_branch(scm: Scm, config: BranchConfig, dry_run: bool = False) -> Optional[str]:
    """Commit the branch's updated files; returns the new sha, or None for no commit."""
    files = files_to_commit(config)
    if not files:
        log_debug("No files to commit", branch=config.branch_name)
        return None

    if dry_run:
        log_info(f"DRY-RUN: Would commit files to branch {config.branch_name}")
        return None

    # Both values end up on the forge; a secret in either is a config problem
    if sanitize(config.branch_name) != config.branch_name:
        raise ConfigValidationError(
            validation_error="Branch name contains a secret",
            validation_message="The branch name template resolved to a value that includes a secret.",
            validation_source="branchName",
        )
    if sanitize(config.commit_message) != config.commit_message:
        raise ConfigValidationError(
            validation_error="Commit message contains a secret",
            validation_message="The commit message template resolved to a value that includes a secret.",
            validation_source="commitMessage",
        )

    return scm.commit_files(
        CommitFilesConfig(
            base_branch=config.base_branch,
            branch_name=config.branch_name,
            files=files,
            message=config.commit_message,
            force=config.force_commit,
        )
    )
