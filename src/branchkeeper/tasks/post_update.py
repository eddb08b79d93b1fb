"""Allow-listed post-update commands and the artifacts they produce.

Commands run inside the working copy after package files were updated. Any
file they touch (within the configured file filters) is turned into a
FileChange and merged into the branch's artifact list, last state winning
per path. Failures never abort the branch; they are recorded as sanitized
artifact errors that end up in a PR comment.
"""

from __future__ import annotations

import os
import re
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..config_schema import BranchConfig, BranchkeeperConfig, BranchUpgradeConfig, PostUpgradeTasks
from ..errors import ErrorKind, ExecError, RepositoryError
from ..match import match_regex_or_glob_list
from ..observability import log_debug, log_warning, timeit
from ..sanitize import sanitize
from ..templates import fill_template
from ..vcs.manager import VersionControlManager
from ..vcs.types import FileChange
from .executor import CommandExecutor, SubprocessExecutor

DATA_FILE_ENV = "BRANCHKEEPER_POST_UPGRADE_COMMAND_DATA_FILE"
DEFAULT_FILE_FILTERS = ["**/*"]


@dataclass
class ArtifactError:
    lock_file: Optional[str]
    stderr: str


@dataclass
class ArtifactNotice:
    file: str
    message: str


@dataclass
class PostUpgradeResult:
    updated_package_files: List[FileChange] = field(default_factory=list)
    updated_artifacts: List[FileChange] = field(default_factory=list)
    artifact_errors: List[ArtifactError] = field(default_factory=list)


def _not_allowed_message(cmd: str) -> str:
    return f"Post-upgrade command '{cmd}' has not been added to the allowed list in allowedCommands"


class PostUpdateTaskRunner:
    def __init__(
        self,
        manager: VersionControlManager,
        config: BranchkeeperConfig,
        executor: CommandExecutor | None = None,
    ):
        self.manager = manager
        self.config = config
        self.executor = executor or SubprocessExecutor(timeout=config.post_upgrade.timeout)

    # ------------------------------------------------------------------

    def execute(self, branch_config: BranchConfig) -> Optional[PostUpgradeResult]:
        """Run update-scoped tasks (once per upgrade), then branch-scoped tasks once.

        Returns None when nothing changed on the branch yet, since there is
        nothing for the commands to post-process.
        """
        if not branch_config.updated_package_files and not branch_config.updated_artifacts:
            return None

        updated_artifacts = list(branch_config.updated_artifacts)
        artifact_errors = list(branch_config.artifact_errors)

        update_upgrades = [
            upgrade
            for upgrade in branch_config.upgrades
            if upgrade.post_upgrade_tasks is not None
            and upgrade.post_upgrade_tasks.execution_mode in (None, "update")
        ]
        updated_artifacts, artifact_errors = self.run_upgrade_tasks(
            update_upgrades, branch_config, updated_artifacts, artifact_errors
        )

        branch_tasks = branch_config.post_upgrade_tasks
        if branch_tasks is not None and branch_tasks.execution_mode == "branch":
            branch_upgrade = BranchUpgradeConfig(
                manager=branch_config.manager,
                dep_name=" ".join(u.dep_name for u in branch_config.upgrades if u.dep_name),
                branch_name=branch_config.branch_name,
                post_upgrade_tasks=PostUpgradeTasks(
                    commands=branch_tasks.commands,
                    file_filters=branch_tasks.file_filters or branch_config.file_filters,
                    execution_mode="branch",
                    data_file_template=branch_tasks.data_file_template,
                ),
            )
            updated_artifacts, artifact_errors = self.run_upgrade_tasks(
                [branch_upgrade], branch_config, updated_artifacts, artifact_errors
            )

        return PostUpgradeResult(
            updated_package_files=list(branch_config.updated_package_files),
            updated_artifacts=updated_artifacts,
            artifact_errors=artifact_errors,
        )

    def run_upgrade_tasks(
        self,
        upgrades: Sequence[BranchUpgradeConfig],
        branch_config: BranchConfig,
        updated_artifacts: List[FileChange],
        artifact_errors: List[ArtifactError],
    ) -> tuple[List[FileChange], List[ArtifactError]]:
        artifacts: Dict[str, FileChange] = {f.path: f for f in updated_artifacts}
        errors = list(artifact_errors)

        for upgrade in upgrades:
            tasks = upgrade.post_upgrade_tasks
            if tasks is None or not tasks.commands:
                continue
            log_debug(f"Checking for post-upgrade tasks for {upgrade.dep_name}")
            self._write_prior_files(branch_config.updated_package_files, list(artifacts.values()))

            env: Dict[str, str] = {}
            data_file = self._write_data_file(tasks, upgrade, branch_config, errors)
            if data_file is not None:
                env[DATA_FILE_ENV] = str(data_file)
            try:
                with timeit("tasks.post_upgrade", dep_name=upgrade.dep_name, commands=len(tasks.commands)):
                    for cmd in tasks.commands:
                        self._run_command(cmd, upgrade, env, errors)
            finally:
                if data_file is not None:
                    data_file.unlink(missing_ok=True)

            file_filters = tasks.file_filters or DEFAULT_FILE_FILTERS
            self._collect_artifacts(file_filters, artifacts)

        return list(artifacts.values()), errors

    # ------------------------------------------------------------------

    def _command_allowed(self, cmd: str) -> bool:
        return any(re.search(pattern, cmd) for pattern in self.config.post_upgrade.allowed_commands)

    def _run_command(
        self,
        cmd: str,
        upgrade: BranchUpgradeConfig,
        env: Dict[str, str],
        errors: List[ArtifactError],
    ) -> None:
        if self.config.post_upgrade.allow_command_templating:
            compiled = fill_template(cmd, upgrade.template_values())
        else:
            compiled = cmd

        if not self._command_allowed(compiled):
            log_warning(
                "Post-upgrade task did not match any on allowedCommands list",
                cmd=sanitize(compiled),
                allowed_commands=self.config.post_upgrade.allowed_commands,
            )
            errors.append(
                ArtifactError(lock_file=upgrade.package_file, stderr=sanitize(_not_allowed_message(compiled)) or "")
            )
            return

        log_debug(f"Executing post-upgrade task: {sanitize(compiled)}")
        try:
            result = self.executor.run(compiled, self.manager.local_dir, env)
            log_debug("Executed post-upgrade task", cmd=sanitize(compiled), stdout=sanitize(result.stdout))
        except ExecError as err:
            log_warning("Post-upgrade task failed", cmd=sanitize(compiled), error=sanitize(str(err)))
            errors.append(ArtifactError(lock_file=upgrade.package_file, stderr=sanitize(str(err)) or ""))

    def _write_data_file(
        self,
        tasks: PostUpgradeTasks,
        upgrade: BranchUpgradeConfig,
        branch_config: BranchConfig,
        errors: List[ArtifactError],
    ) -> Optional[Path]:
        if not tasks.data_file_template:
            return None
        values = {
            **upgrade.template_values(),
            "upgrades": [u.template_values() for u in branch_config.upgrades],
        }
        path = self.config.private_cache_path / f"post-upgrade-data-file-{secrets.token_hex(8)}.tmp"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(fill_template(tasks.data_file_template, values), encoding="utf-8")
        except OSError as err:
            log_debug("Error writing post-upgrade command data file", error=str(err))
            errors.append(ArtifactError(lock_file=upgrade.package_file, stderr=sanitize(str(err)) or ""))
            return None
        log_debug(f"Created post-upgrade commands data file at {path}")
        return path

    def _local_path(self, relative: str) -> Path:
        root = self.manager.local_dir.resolve()
        target = (root / relative).resolve()
        if target != root and root not in target.parents:
            raise RepositoryError(ErrorKind.INVALID_PATH, relative)
        return target

    def _write_prior_files(self, package_files: Sequence[FileChange], artifacts: Sequence[FileChange]) -> None:
        for file in [*package_files, *artifacts]:
            if file.type == "deletion":
                target = self._local_path(file.path)
                if target.is_file() or target.is_symlink():
                    target.unlink()
                continue
            if file.is_symlink or file.contents is None:
                continue
            target = self._local_path(file.path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(file.contents_bytes())

    def _collect_artifacts(self, file_filters: List[str], artifacts: Dict[str, FileChange]) -> None:
        status = self.manager.get_repo_status()

        # Earlier artifacts the commands recreated or removed without git noticing
        for relative, change in list(artifacts.items()):
            if change.is_symlink or not match_regex_or_glob_list(relative, file_filters):
                continue
            target = self._local_path(relative)
            if change.type == "deletion" and target.is_file():
                artifacts.pop(relative)
                artifacts[relative] = FileChange.addition(
                    relative, target.read_bytes(), is_executable=os.access(target, os.X_OK)
                )
            elif change.type == "addition" and not target.exists():
                artifacts.pop(relative)
                artifacts[relative] = FileChange.deletion(relative)

        for relative in [*status.modified, *status.not_added]:
            if not match_regex_or_glob_list(relative, file_filters):
                continue
            target = self._local_path(relative)
            # Popping first moves the path to the end, keeping the last change last
            artifacts.pop(relative, None)
            if target.is_file() and not target.is_symlink():
                log_debug(f"Post-upgrade file saved: {relative}")
                artifacts[relative] = FileChange.addition(
                    relative,
                    target.read_bytes(),
                    is_executable=os.access(target, os.X_OK),
                )
            else:
                artifacts[relative] = FileChange.deletion(relative)

        for relative in status.deleted:
            if not match_regex_or_glob_list(relative, file_filters):
                continue
            log_debug(f"Post-upgrade file removed: {relative}")
            artifacts.pop(relative, None)
            artifacts[relative] = FileChange.deletion(relative)
