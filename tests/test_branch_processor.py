from datetime import datetime, timedelta, timezone

import pytest

from branchkeeper.branch import BranchProcessor, BranchResult
from branchkeeper.branch.types import (
    AdditionalFilesResult,
    AutomergeCheck,
    EnsurePrResult,
    PackageFilesResult,
    Pr,
    PrBodyStruct,
)
from branchkeeper.config_schema import (
    BranchConfig,
    BranchkeeperConfig,
    BranchUpgradeConfig,
    LimitSettings,
    UserStrings,
)
from branchkeeper.errors import ErrorKind, ExternalHostError, RepositoryError
from branchkeeper.limits import Limit, LimitTracker
from branchkeeper.tasks.post_update import ArtifactError, ArtifactNotice, PostUpgradeResult
from branchkeeper.vcs.fingerprint_cache import FingerprintCaches, MemoryCacheStore
from branchkeeper.vcs.types import FileChange

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
BRANCH = "branchkeeper/foo-1.x"


class FakeScm:
    def __init__(self, branches=None):
        self.branches = dict(branches or {"main": "m1"})
        self.modified = set()
        self.conflicted = set()
        self.behind = set()
        self.calls = []
        self.commit_result = "c1"
        self.commits = []
        self.merge_error = None

    def branch_exists(self, branch_name):
        return branch_name in self.branches

    def get_branch_commit(self, branch_name):
        return self.branches.get(branch_name)

    def is_branch_behind_base(self, branch_name, base_branch):
        return branch_name in self.behind

    def is_branch_modified(self, branch_name, base_branch):
        return branch_name in self.modified

    def is_branch_conflicted(self, base_branch, branch_name):
        return branch_name in self.conflicted

    def checkout_branch(self, branch_name):
        self.calls.append(("checkout", branch_name))
        return self.branches.get(branch_name, "")

    def delete_branch(self, branch_name):
        self.calls.append(("delete", branch_name))
        self.branches.pop(branch_name, None)

    def merge_branch(self, branch_name):
        self.calls.append(("merge", branch_name))
        if self.merge_error is not None:
            raise self.merge_error

    def commit_files(self, commit_config):
        self.commits.append(commit_config)
        if self.commit_result is not None:
            self.branches[commit_config.branch_name] = self.commit_result
        return self.commit_result


class FakePlatform:
    def __init__(self, branch_pr=None, old_pr=None, status="green", force_rebase=False):
        self.branch_pr = branch_pr
        self.old_pr = old_pr
        self.status = status
        self.force_rebase = force_rebase
        self.comments = []
        self.removed_comments = []
        self.deleted_labels = []
        self.find_calls = []

    def get_branch_pr(self, branch_name, base_branch):
        return self.branch_pr

    def find_pr(self, branch_name, pr_title=None, state="all", target_branch=None):
        self.find_calls.append((branch_name, pr_title, state))
        return self.old_pr

    def ensure_comment(self, number, topic, content):
        self.comments.append((number, topic, content))
        return True

    def ensure_comment_removal(self, number, topic):
        self.removed_comments.append((number, topic))

    def delete_label(self, number, label):
        self.deleted_labels.append((number, label))

    def get_branch_status(self, branch_name, internal_checks_as_success):
        return self.status

    def massage_markdown(self, text):
        return text

    def get_branch_force_rebase(self, base_branch):
        return self.force_rebase


class FakePrWorker:
    def __init__(self, result=None, automerged=False):
        self.result = result or EnsurePrResult(type="with-pr", pr=Pr(number=42, source_branch=BRANCH))
        self.automerged = automerged
        self.ensured = []
        self.automerge_checks = []

    def ensure_pr(self, config):
        self.ensured.append(config)
        return self.result

    def check_auto_merge(self, pr, config):
        self.automerge_checks.append(pr.number)
        return AutomergeCheck(automerged=self.automerged)


class FakePackageFiles:
    def __init__(self, files=None, artifacts=None, errors=None, notices=None, raise_for=None):
        self.files = files if files is not None else [FileChange.addition("package.json", "{}\n")]
        self.artifacts = artifacts or []
        self.errors = errors or []
        self.notices = notices or []
        self.raise_for = raise_for or set()

    def get_updated_package_files(self, config):
        if config.branch_name in self.raise_for:
            raise RuntimeError(f"extraction failed for {config.branch_name}")
        return PackageFilesResult(
            updated_package_files=list(self.files),
            updated_artifacts=list(self.artifacts),
            artifact_errors=list(self.errors),
            artifact_notices=list(self.notices),
        )

    def get_additional_files(self, config):
        return AdditionalFilesResult()


class FakeTaskRunner:
    def __init__(self, result=None):
        self.result = result
        self.calls = 0

    def execute(self, config):
        self.calls += 1
        return self.result


class FakeScheduler:
    def __init__(self, schedule=True, automerge_schedule=True):
        self.answers = {"schedule": schedule, "automerge_schedule": automerge_schedule}

    def is_scheduled_now(self, config, schedule_key="schedule"):
        return self.answers[schedule_key]


class FakeMergeConfidence:
    def __init__(self, level):
        self.level = level

    def is_active_confidence_level(self, level):
        return level in ("low", "neutral", "high")

    def satisfies_confidence_level(self, confidence, minimum):
        order = ["low", "neutral", "high"]
        return order.index(confidence) >= order.index(minimum)

    def get_merge_confidence_level(self, upgrade):
        return self.level


def raising(err):
    def fail(*args, **kwargs):
        raise err

    return fail


def make_config(**kwargs):
    values = {
        "branch_name": BRANCH,
        "base_branch": "main",
        "manager": "npm",
        "pr_title": "Update foo to v1.1.0",
        "commit_message": "Update foo to v1.1.0",
        "upgrades": [BranchUpgradeConfig(dep_name="foo", manager="npm", new_version="1.1.0")],
    }
    values.update(kwargs)
    return BranchConfig(**values)


def make_processor(
    scm=None,
    platform=None,
    pr_worker=None,
    package_files=None,
    *,
    dry_run=False,
    task_runner=None,
    scheduler=None,
    config=None,
    **kwargs,
):
    return BranchProcessor(
        scm or FakeScm(),
        platform or FakePlatform(),
        pr_worker or FakePrWorker(),
        package_files or FakePackageFiles(),
        config=config or BranchkeeperConfig(dry_run=dry_run),
        task_runner=task_runner or FakeTaskRunner(),
        scheduler=scheduler or FakeScheduler(),
        limits=kwargs.pop("limits", LimitTracker()),
        caches=kwargs.pop("caches", FingerprintCaches(MemoryCacheStore())),
        now=lambda: NOW,
        **kwargs,
    )


def existing_branch_scm(**kwargs):
    scm = FakeScm({"main": "m1", BRANCH: "b1"})
    for name, value in kwargs.items():
        setattr(scm, name, value)
    return scm


# ---------------------------------------------------------------------------
# Schedule and approval gates
# ---------------------------------------------------------------------------


def test_new_branch_not_scheduled():
    processor = make_processor(scheduler=FakeScheduler(schedule=False))
    result = processor.process_branch(make_config())
    assert result.to_dict() == {"branchExists": False, "result": "not-scheduled"}


def test_existing_branch_update_not_scheduled():
    processor = make_processor(existing_branch_scm(), scheduler=FakeScheduler(schedule=False))
    result = processor.process_branch(make_config(update_not_scheduled=False))
    assert result.result == BranchResult.UPDATE_NOT_SCHEDULED
    assert result.branch_exists is True


def test_existing_branch_without_pr_not_scheduled():
    processor = make_processor(existing_branch_scm(), scheduler=FakeScheduler(schedule=False))
    result = processor.process_branch(make_config())
    assert result.result == BranchResult.NOT_SCHEDULED
    assert result.branch_exists is True


def test_existing_branch_with_pr_updates_out_of_schedule():
    platform = FakePlatform(branch_pr=Pr(number=7, target_branch="main"))
    processor = make_processor(existing_branch_scm(), platform, scheduler=FakeScheduler(schedule=False))
    result = processor.process_branch(make_config())
    assert result.result == BranchResult.DONE


def test_dashboard_check_overrides_schedule():
    processor = make_processor(scheduler=FakeScheduler(schedule=False))
    result = processor.process_branch(make_config(dependency_dashboard_checks={BRANCH: "approve"}))
    assert result.result == BranchResult.PR_CREATED


def test_needs_approval_for_dashboard_approval():
    processor = make_processor()
    result = processor.process_branch(make_config(dependency_dashboard_approval=True))
    assert result.result == BranchResult.NEEDS_APPROVAL
    assert result.branch_exists is False


def test_needs_approval_in_silent_mode():
    scm = FakeScm()
    processor = make_processor(scm)
    result = processor.process_branch(make_config(mode="silent"))
    assert result.result == BranchResult.NEEDS_APPROVAL
    assert scm.commits == []


def test_silent_mode_keeps_updating_existing_branch():
    processor = make_processor(existing_branch_scm())
    result = processor.process_branch(make_config(mode="silent"))
    assert result.result == BranchResult.DONE


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


def test_branch_limit_reached_for_new_branch():
    limits = LimitTracker()
    limits.set_max_limit(Limit.BRANCHES, 1)
    limits.inc_limited_value(Limit.BRANCHES)
    scm = FakeScm()
    processor = make_processor(scm, limits=limits)

    result = processor.process_branch(make_config())

    assert result.result == BranchResult.BRANCH_LIMIT_REACHED
    assert scm.commits == []


def test_branch_limit_ignored_for_vulnerability_alert():
    limits = LimitTracker()
    limits.set_max_limit(Limit.BRANCHES, 1)
    limits.inc_limited_value(Limit.BRANCHES)
    processor = make_processor(limits=limits)
    result = processor.process_branch(make_config(is_vulnerability_alert=True))
    assert result.result == BranchResult.PR_CREATED


def test_commit_limit_reached():
    limits = LimitTracker()
    limits.set_max_limit(Limit.COMMITS, 1)
    limits.inc_limited_value(Limit.COMMITS)
    processor = make_processor(existing_branch_scm(), limits=limits)
    result = processor.process_branch(make_config())
    assert result.result == BranchResult.COMMIT_LIMIT_REACHED
    assert result.branch_exists is True


def limited_config(**limits):
    return BranchkeeperConfig(limits=LimitSettings(**limits))


def test_commit_limit_from_config():
    processor = make_processor(existing_branch_scm(), config=limited_config(commit_limit=1))
    processor.limits.inc_limited_value(Limit.COMMITS)

    result = processor.process_branch(make_config())

    assert result.result == BranchResult.COMMIT_LIMIT_REACHED


def test_new_branches_count_toward_branch_limit():
    processor = make_processor(config=limited_config(branch_concurrent_limit=1))

    results = processor.process_branches(
        [make_config(branch_name="branchkeeper/a-1.x"), make_config(branch_name="branchkeeper/b-1.x")]
    )

    assert [r.result for r in results] == [BranchResult.PR_CREATED, BranchResult.BRANCH_LIMIT_REACHED]
    assert processor.limits.current(Limit.BRANCHES) == 1


def test_new_prs_count_toward_pr_limit():
    worker = FakePrWorker()
    processor = make_processor(pr_worker=worker, config=limited_config(pr_concurrent_limit=1))

    results = processor.process_branches(
        [make_config(branch_name="branchkeeper/a-1.x"), make_config(branch_name="branchkeeper/b-1.x")]
    )

    assert [r.result for r in results] == [BranchResult.PR_CREATED, BranchResult.PR_LIMIT_REACHED]
    assert results[1].to_dict() == {
        "branchExists": True,
        "result": "pr-limit-reached",
        "prBlockedBy": "RateLimited",
        "commitSha": "c1",
    }
    assert len(worker.ensured) == 1


def test_existing_pr_is_not_held_by_pr_limit():
    pr = Pr(number=42, source_branch=BRANCH)
    processor = make_processor(
        existing_branch_scm(), FakePlatform(branch_pr=pr), config=limited_config(pr_concurrent_limit=1)
    )
    processor.limits.inc_limited_value(Limit.PULL_REQUESTS)

    result = processor.process_branch(make_config())

    assert result.result == BranchResult.DONE


def test_limits_already_set_on_tracker_win_over_config():
    limits = LimitTracker()
    limits.set_max_limit(Limit.COMMITS, 5)
    limits.inc_limited_value(Limit.COMMITS)
    processor = make_processor(existing_branch_scm(), limits=limits, config=limited_config(commit_limit=1))

    result = processor.process_branch(make_config())

    assert result.result != BranchResult.COMMIT_LIMIT_REACHED


def test_pending_checks_on_new_branch():
    processor = make_processor()
    result = processor.process_branch(make_config(pending_checks=True))
    assert result.result == BranchResult.PENDING


# ---------------------------------------------------------------------------
# Existing PR reconciliation
# ---------------------------------------------------------------------------


def test_closed_pr_deletes_branch_and_reports_already_existed():
    scm = existing_branch_scm()
    platform = FakePlatform(old_pr=Pr(number=9, state="closed"))
    processor = make_processor(scm, platform)

    result = processor.process_branch(make_config(update_type="major", new_major=2))

    assert result.to_dict() == {"branchExists": False, "result": "already-existed", "prNo": 9}
    assert ("delete", BRANCH) in scm.calls
    assert platform.comments[0][:2] == (9, "Branchkeeper Ignore Notification")
    assert "`2.x`" in platform.comments[0][2]
    assert platform.find_calls[0] == (BRANCH, "Update foo to v1.1.0", "!open")


def test_closed_pr_notification_can_be_suppressed():
    platform = FakePlatform(old_pr=Pr(number=9, state="closed"))
    processor = make_processor(FakeScm(), platform)
    result = processor.process_branch(make_config(suppress_notifications=["prIgnoreNotification"]))
    assert result.result == BranchResult.ALREADY_EXISTED
    assert platform.comments == []


def test_closed_pr_dry_run_touches_nothing():
    scm = existing_branch_scm()
    platform = FakePlatform(old_pr=Pr(number=9, state="closed"))
    processor = make_processor(scm, platform, dry_run=True)
    result = processor.process_branch(make_config())
    assert result.result == BranchResult.ALREADY_EXISTED
    assert platform.comments == []
    assert scm.calls == []


def test_closed_pr_with_dashboard_check_is_recreated():
    platform = FakePlatform(old_pr=Pr(number=9, state="closed"))
    processor = make_processor(FakeScm(), platform)
    result = processor.process_branch(make_config(dependency_dashboard_checks={BRANCH: "approve"}))
    assert result.result == BranchResult.PR_CREATED


def test_merged_pr_disables_automerge():
    worker = FakePrWorker()
    platform = FakePlatform(old_pr=Pr(number=9, state="merged"))
    processor = make_processor(FakeScm(), platform, worker)

    result = processor.process_branch(make_config(automerge=True))

    assert result.result == BranchResult.PR_CREATED
    ensured = worker.ensured[0]
    assert ensured.automerge is False
    assert ensured.automerged_previously is True
    assert worker.automerge_checks == []


def test_branch_found_under_old_prefix():
    scm = FakeScm({"main": "m1", "renovate/foo-1.x": "b1"})
    processor = make_processor(scm)
    config = make_config(branch_prefix="branchkeeper/", branch_prefix_old="renovate/")

    result = processor.process_branch(config)

    assert result.result == BranchResult.DONE
    assert scm.commits[0].branch_name == "renovate/foo-1.x"


# ---------------------------------------------------------------------------
# Existing branch policies
# ---------------------------------------------------------------------------


def test_stop_updating_label_means_no_work():
    platform = FakePlatform(branch_pr=Pr(number=7, labels=["stop-updating"]))
    scm = existing_branch_scm()
    processor = make_processor(scm, platform)
    result = processor.process_branch(make_config())
    assert result.result == BranchResult.NO_WORK
    assert scm.commits == []


def test_stop_updating_label_overridden_by_rebase_checkbox():
    pr = Pr(number=7, labels=["stop-updating"], body_struct=PrBodyStruct(rebase_requested=True))
    processor = make_processor(existing_branch_scm(), FakePlatform(branch_pr=pr))
    result = processor.process_branch(make_config())
    assert result.result == BranchResult.DONE


def test_edited_pr_posts_notification():
    scm = existing_branch_scm(modified={BRANCH})
    platform = FakePlatform(branch_pr=Pr(number=7))
    processor = make_processor(scm, platform)

    result = processor.process_branch(make_config())

    assert result.to_dict() == {"branchExists": True, "result": "pr-edited", "prNo": 7}
    number, topic, content = platform.comments[0]
    assert (number, topic) == (7, "Edited/Blocked Notification")
    assert "custom changes will be lost" in content
    assert scm.commits == []


def test_edited_pr_notification_suppressed():
    platform = FakePlatform(branch_pr=Pr(number=7))
    processor = make_processor(existing_branch_scm(modified={BRANCH}), platform)
    result = processor.process_branch(make_config(suppress_notifications=["prEditedNotification"]))
    assert result.result == BranchResult.PR_EDITED
    assert platform.comments == []


def test_edited_pr_with_rebase_request_continues():
    pr = Pr(number=7, title="rebase!Update foo")
    platform = FakePlatform(branch_pr=pr)
    scm = existing_branch_scm(modified={BRANCH})
    processor = make_processor(scm, platform)

    result = processor.process_branch(make_config())

    assert result.result == BranchResult.DONE
    assert platform.removed_comments == [(7, "Edited/Blocked Notification")]
    assert scm.commits[0].force is True


def test_rebase_label_is_removed():
    pr = Pr(number=7, labels=["rebase"])
    platform = FakePlatform(branch_pr=pr)
    processor = make_processor(existing_branch_scm(), platform)
    processor.process_branch(make_config())
    assert platform.deleted_labels == [(7, "rebase")]


def test_user_changed_target_branch_counts_as_edited():
    pr = Pr(number=7, target_branch="develop", body_struct=PrBodyStruct(debug_target_branch="main"))
    platform = FakePlatform(branch_pr=pr)
    processor = make_processor(existing_branch_scm(), platform)
    result = processor.process_branch(make_config())
    assert result.result == BranchResult.PR_EDITED


def test_edited_branch_with_closed_pr_raises_repository_changed():
    platform = FakePlatform(branch_pr=Pr(number=7, state="closed"))
    processor = make_processor(existing_branch_scm(modified={BRANCH}), platform)
    with pytest.raises(RepositoryError) as excinfo:
        processor.process_branch(make_config())
    assert excinfo.value.kind == ErrorKind.REPOSITORY_CHANGED


def test_modified_branch_without_any_pr_is_edited():
    processor = make_processor(existing_branch_scm(modified={BRANCH}))
    result = processor.process_branch(make_config())
    assert result.result == BranchResult.PR_EDITED


def test_modified_branch_with_old_pr_sha_mismatch_is_edited():
    platform = FakePlatform()
    scm = existing_branch_scm(modified={BRANCH})
    processor = make_processor(scm, platform)

    def find_pr(branch_name, pr_title=None, state="all", target_branch=None):
        # The reconciliation lookup uses the title, the edit check does not
        return None if pr_title else Pr(number=3, state="closed", sha="other")

    platform.find_pr = find_pr
    result = processor.process_branch(make_config())
    assert result.to_dict() == {"branchExists": True, "result": "pr-edited", "prNo": 3}


def test_modified_branch_with_matching_old_pr_sha_continues():
    platform = FakePlatform()
    processor = make_processor(existing_branch_scm(modified={BRANCH}), platform)
    platform.find_pr = lambda branch_name, pr_title=None, state="all", target_branch=None: (
        None if pr_title else Pr(number=3, state="closed", sha="b1")
    )
    result = processor.process_branch(make_config())
    assert result.result == BranchResult.DONE


# ---------------------------------------------------------------------------
# Release age and confidence
# ---------------------------------------------------------------------------


def young_upgrade(**kwargs):
    return BranchUpgradeConfig(
        dep_name="foo",
        manager="npm",
        release_timestamp=NOW - timedelta(days=1),
        minimum_release_age="3 days",
        **kwargs,
    )


def test_young_release_is_pending_for_not_pending_creation():
    scm = FakeScm()
    processor = make_processor(scm)
    result = processor.process_branch(make_config(upgrades=[young_upgrade()], pr_creation="not-pending"))
    assert result.result == BranchResult.PENDING
    assert scm.commits == []


def test_young_release_with_immediate_creation_proceeds():
    worker = FakePrWorker()
    processor = make_processor(pr_worker=worker)
    result = processor.process_branch(make_config(upgrades=[young_upgrade()]))
    assert result.result == BranchResult.PR_CREATED
    assert worker.ensured[0].stability_status == "yellow"


def test_old_release_is_green():
    worker = FakePrWorker()
    processor = make_processor(pr_worker=worker)
    upgrade = BranchUpgradeConfig(
        dep_name="foo",
        manager="npm",
        release_timestamp=NOW - timedelta(days=10),
        minimum_release_age="3 days",
    )
    result = processor.process_branch(make_config(upgrades=[upgrade], pr_creation="not-pending"))
    # The branch is created, the PR waits for pr_creation
    assert result.result == BranchResult.PENDING
    assert result.commit_sha == "c1"
    assert worker.ensured == []


def test_low_confidence_is_recorded():
    worker = FakePrWorker()
    processor = make_processor(pr_worker=worker, merge_confidence=FakeMergeConfidence("low"))
    upgrade = BranchUpgradeConfig(dep_name="foo", manager="npm", minimum_confidence="high")
    result = processor.process_branch(make_config(upgrades=[upgrade]))
    assert result.result == BranchResult.PR_CREATED
    assert worker.ensured[0].confidence_status == "yellow"
    assert worker.ensured[0].stability_status == "green"


# ---------------------------------------------------------------------------
# Rebase decision and regeneration
# ---------------------------------------------------------------------------


def test_rebase_never_means_no_work():
    scm = existing_branch_scm()
    processor = make_processor(scm, FakePlatform(branch_pr=Pr(number=7)))
    result = processor.process_branch(make_config(rebase_when="never"))
    assert result.result == BranchResult.NO_WORK
    assert scm.commits == []


def test_rebase_never_with_keep_updated_label_updates():
    pr = Pr(number=7, labels=["keep-updated"])
    processor = make_processor(existing_branch_scm(), FakePlatform(branch_pr=pr))
    result = processor.process_branch(make_config(rebase_when="never", keep_updated_label="keep-updated"))
    assert result.result == BranchResult.DONE


def test_reused_branch_with_matching_fingerprint_skips_regeneration():
    package_files = FakePackageFiles()
    scm = existing_branch_scm()
    processor = make_processor(scm, FakePlatform(branch_pr=Pr(number=7)), package_files=package_files)
    calls = []
    package_files.get_updated_package_files = lambda config: calls.append(config) or PackageFilesResult()

    result = processor.process_branch(make_config(cache_fingerprint_match="matched"))

    assert calls == []
    assert result.result == BranchResult.DONE
    assert result.updates_verified is False


def test_identical_content_fingerprint_skips_commit():
    caches = FingerprintCaches(MemoryCacheStore())
    scm = existing_branch_scm()
    platform = FakePlatform(branch_pr=Pr(number=7))

    first = make_processor(scm, platform, caches=caches).process_branch(make_config())
    assert first.commit_sha == "c1"
    assert len(scm.commits) == 1

    second = make_processor(scm, platform, caches=caches).process_branch(make_config())
    assert second.result == BranchResult.DONE
    assert second.commit_sha is None
    assert len(scm.commits) == 1


def test_conflicted_branch_forces_commit():
    caches = FingerprintCaches(MemoryCacheStore())
    scm = existing_branch_scm()
    platform = FakePlatform(branch_pr=Pr(number=7))
    make_processor(scm, platform, caches=caches).process_branch(make_config())

    scm.conflicted.add(BRANCH)
    make_processor(scm, platform, caches=caches).process_branch(make_config())

    assert len(scm.commits) == 2
    assert scm.commits[1].force is True


def test_no_changes_on_new_branch_is_no_work():
    scm = FakeScm()
    scm.commit_result = None
    processor = make_processor(scm)
    result = processor.process_branch(make_config())
    assert result.to_dict() == {"branchExists": False, "result": "no-work"}


def test_excluded_paths_are_not_committed():
    scm = FakeScm()
    package_files = FakePackageFiles(
        files=[FileChange.addition("package.json", "{}\n")],
        artifacts=[FileChange.addition("docs/generated.md", "x\n")],
    )
    processor = make_processor(scm, package_files=package_files)
    processor.process_branch(make_config(exclude_commit_paths=["docs/**"]))
    assert [f.path for f in scm.commits[0].files] == ["package.json"]


def test_dry_run_does_not_commit():
    scm = FakeScm()
    processor = make_processor(scm, dry_run=True)
    result = processor.process_branch(make_config())
    assert scm.commits == []
    assert result.result == BranchResult.NO_WORK


def test_secret_in_commit_message_is_config_error():
    from branchkeeper.errors import ConfigValidationError

    processor = make_processor()
    with pytest.raises(ConfigValidationError):
        processor.process_branch(make_config(commit_message="Update with TOKEN=abc123"))


def test_post_upgrade_result_replaces_artifacts():
    scm = FakeScm()
    runner = FakeTaskRunner(
        PostUpgradeResult(updated_artifacts=[FileChange.addition("yarn.lock", "lock\n")], artifact_errors=[])
    )
    processor = make_processor(scm, task_runner=runner)
    processor.process_branch(make_config())
    assert [f.path for f in scm.commits[0].files] == ["package.json", "yarn.lock"]
    assert runner.calls == 1


def test_pr_creation_not_immediate_is_pending_after_commit():
    processor = make_processor()
    result = processor.process_branch(make_config(pr_creation="status-success"))
    assert result.to_dict() == {
        "branchExists": True,
        "result": "pending",
        "commitSha": "c1",
        "updatesVerified": True,
    }


def test_branch_returns_to_base_after_commit():
    scm = FakeScm()
    make_processor(scm).process_branch(make_config())
    assert scm.calls[-1] == ("checkout", "main")


# ---------------------------------------------------------------------------
# Artifact errors
# ---------------------------------------------------------------------------


def test_fresh_release_artifact_errors_give_error():
    scm = FakeScm()
    package_files = FakePackageFiles(errors=[ArtifactError(lock_file="yarn.lock", stderr="boom")])
    processor = make_processor(scm, package_files=package_files)
    result = processor.process_branch(make_config(release_timestamp=NOW - timedelta(minutes=30)))
    assert result.result == BranchResult.ERROR
    assert scm.commits == []


def test_artifact_errors_comment_on_pr():
    platform = FakePlatform()
    package_files = FakePackageFiles(errors=[ArtifactError(lock_file="yarn.lock", stderr="resolution failed")])
    processor = make_processor(platform=platform, package_files=package_files)

    result = processor.process_branch(make_config(automerge=True))

    assert result.result == BranchResult.PR_CREATED
    number, topic, content = platform.comments[0]
    assert (number, topic) == (42, "Artifact update problem")
    assert "##### File name: yarn.lock" in content
    assert "resolution failed" in content
    assert "You probably do not want to merge this PR as-is." in content


def test_artifact_error_header_from_user_strings():
    platform = FakePlatform()
    package_files = FakePackageFiles(errors=[ArtifactError(lock_file="yarn.lock", stderr="x")])
    processor = make_processor(platform=platform, package_files=package_files)
    config = make_config(user_strings=UserStrings(artifact_error_warning="Custom {{manager}} warning"))
    processor.process_branch(config)
    assert "Custom npm warning" in platform.comments[0][2]


def test_artifact_errors_comment_suppressed():
    platform = FakePlatform()
    package_files = FakePackageFiles(errors=[ArtifactError(lock_file="yarn.lock", stderr="x")])
    processor = make_processor(platform=platform, package_files=package_files)
    processor.process_branch(make_config(suppress_notifications=["artifactErrors"]))
    assert platform.comments == []


def test_successful_artifacts_remove_old_error_comment():
    platform = FakePlatform(branch_pr=Pr(number=7))
    package_files = FakePackageFiles(artifacts=[FileChange.addition("yarn.lock", "ok\n")])
    processor = make_processor(existing_branch_scm(), platform, package_files=package_files)
    processor.process_branch(make_config())
    assert (7, "Artifact update problem") in platform.removed_comments


def test_artifact_notices_comment():
    platform = FakePlatform()
    package_files = FakePackageFiles(notices=[ArtifactNotice(file="go.mod", message="some notice")])
    processor = make_processor(platform=platform, package_files=package_files)
    processor.process_branch(make_config())
    assert platform.comments == [(42, "ℹ Artifact update notice", "##### File name: go.mod\n\nsome notice\n")]


# ---------------------------------------------------------------------------
# Automerge
# ---------------------------------------------------------------------------


def test_branch_automerge_merges_and_deletes():
    scm = existing_branch_scm()
    processor = make_processor(scm)
    config = make_config(automerge=True, automerge_type="branch", cache_fingerprint_match="matched")

    result = processor.process_branch(config)

    assert result.to_dict() == {"branchExists": False, "result": "automerged", "updatesVerified": False}
    assert ("merge", BRANCH) in scm.calls
    assert ("delete", BRANCH) in scm.calls


def test_branch_automerge_waits_for_tests_after_new_commit():
    scm = FakeScm()
    processor = make_processor(scm)
    result = processor.process_branch(make_config(automerge=True, automerge_type="branch"))
    assert result.result == BranchResult.PR_CREATED
    assert ("merge", BRANCH) not in scm.calls


def test_branch_automerge_off_schedule():
    scm = existing_branch_scm()
    processor = make_processor(scm, scheduler=FakeScheduler(automerge_schedule=False))
    config = make_config(automerge=True, automerge_type="branch", cache_fingerprint_match="matched")
    result = processor.process_branch(config)
    assert result.result == BranchResult.NOT_SCHEDULED
    assert ("merge", BRANCH) not in scm.calls


def test_branch_automerge_red_status_forces_pr():
    worker = FakePrWorker()
    processor = make_processor(existing_branch_scm(), FakePlatform(status="red"), worker)
    config = make_config(automerge=True, automerge_type="branch", cache_fingerprint_match="matched")
    result = processor.process_branch(config)
    assert result.result == BranchResult.DONE
    assert worker.ensured[0].force_pr is True
    assert worker.ensured[0].branch_automerge_failure_message == "branch status error"


def test_branch_automerge_stale_with_rebase_never_forces_pr():
    scm = existing_branch_scm()
    scm.merge_error = RuntimeError("fatal: Not possible to fast-forward, aborting.")
    worker = FakePrWorker()
    config = make_config(
        automerge=True,
        automerge_type="branch",
        rebase_when="conflicted",
        cache_fingerprint_match="matched",
    )
    processor = make_processor(scm, FakePlatform(), worker)
    processor.process_branch(config)
    assert worker.ensured[0].force_pr is True
    assert worker.ensured[0].branch_automerge_failure_message == "stale"


def test_pr_automerge():
    worker = FakePrWorker(automerged=True)
    processor = make_processor(existing_branch_scm(), FakePlatform(branch_pr=Pr(number=7)), worker)
    config = make_config(automerge=True, cache_fingerprint_match="matched")
    result = processor.process_branch(config)
    assert result.result == BranchResult.AUTOMERGED
    assert worker.automerge_checks == [42]


# ---------------------------------------------------------------------------
# PR ensure
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "blocked_by, expected",
    [
        ("RateLimited", BranchResult.PR_LIMIT_REACHED),
        ("NeedsApproval", BranchResult.NEEDS_PR_APPROVAL),
        ("AwaitingTests", BranchResult.PENDING),
        ("BranchAutomerge", BranchResult.DONE),
        ("Error", BranchResult.ERROR),
        ("SomethingNew", BranchResult.ERROR),
    ],
)
def test_pr_blocked_by_mapping(blocked_by, expected):
    worker = FakePrWorker(EnsurePrResult(type="without-pr", pr_blocked_by=blocked_by))
    processor = make_processor(pr_worker=worker)
    result = processor.process_branch(make_config())
    assert result.result == expected
    assert result.pr_blocked_by == blocked_by
    assert result.commit_sha == "c1"
    assert result.branch_exists is True


def test_rate_limited_vulnerability_alert_is_not_limited():
    worker = FakePrWorker(EnsurePrResult(type="without-pr", pr_blocked_by="RateLimited"))
    processor = make_processor(pr_worker=worker)
    result = processor.process_branch(make_config(is_vulnerability_alert=True))
    assert result.result == BranchResult.ERROR


def test_pr_worker_failure_is_logged_not_raised():
    worker = FakePrWorker()

    def boom(config):
        raise ValueError("forge returned nonsense")

    worker.ensure_pr = boom
    processor = make_processor(pr_worker=worker)
    result = processor.process_branch(make_config())
    assert result.result == BranchResult.PR_CREATED
    assert result.commit_sha == "c1"


def test_pr_worker_external_host_error_propagates():
    worker = FakePrWorker()

    def boom(config):
        raise ExternalHostError(RuntimeError("502"), "github")

    worker.ensure_pr = boom
    processor = make_processor(pr_worker=worker)
    with pytest.raises(ExternalHostError):
        processor.process_branch(make_config())


# ---------------------------------------------------------------------------
# Error handling and isolation
# ---------------------------------------------------------------------------


def test_unexpected_error_becomes_error_outcome():
    package_files = FakePackageFiles(raise_for={BRANCH})
    processor = make_processor(package_files=package_files)
    result = processor.process_branch(make_config())
    assert result.to_dict() == {"branchExists": False, "result": "error"}


def test_disk_full_becomes_sentinel():
    package_files = FakePackageFiles()
    package_files.get_updated_package_files = raising(OSError("[Errno 28] No space left on device"))
    processor = make_processor(package_files=package_files)
    with pytest.raises(RepositoryError) as excinfo:
        processor.process_branch(make_config())
    assert excinfo.value.kind == ErrorKind.INSUFFICIENT_DISK_SPACE


def test_bad_revision_becomes_repository_changed():
    package_files = FakePackageFiles()
    package_files.get_updated_package_files = raising(RuntimeError("fatal: bad revision 'abc'"))
    processor = make_processor(package_files=package_files)
    with pytest.raises(RepositoryError) as excinfo:
        processor.process_branch(make_config())
    assert excinfo.value.kind == ErrorKind.REPOSITORY_CHANGED


def test_repository_sentinel_propagates():
    scm = FakeScm()

    def changed(commit_config):
        raise RepositoryError(ErrorKind.REPOSITORY_CHANGED, "stale info")

    scm.commit_files = changed
    processor = make_processor(scm)
    with pytest.raises(RepositoryError):
        processor.process_branch(make_config())


def test_sequential_branch_isolation():
    package_files = FakePackageFiles(raise_for={"branchkeeper/a-1.x"})
    processor = make_processor(package_files=package_files)

    results = processor.process_branches(
        [make_config(branch_name="branchkeeper/a-1.x"), make_config(branch_name="branchkeeper/b-1.x")]
    )

    assert [r.result for r in results] == [BranchResult.ERROR, BranchResult.PR_CREATED]


def platform_failing_lookup_for(branch_name, err):
    platform = FakePlatform()
    lookup = platform.get_branch_pr

    def get_branch_pr(name, base_branch):
        if name == branch_name:
            raise err
        return lookup(name, base_branch)

    platform.get_branch_pr = get_branch_pr
    return platform


def test_forge_error_during_lookup_is_isolated():
    platform = platform_failing_lookup_for("branchkeeper/a-1.x", RuntimeError("forge returned garbage"))
    processor = make_processor(platform=platform)

    results = processor.process_branches(
        [make_config(branch_name="branchkeeper/a-1.x"), make_config(branch_name="branchkeeper/b-1.x")]
    )

    assert [r.to_dict() for r in results] == [
        {"branchExists": False, "result": "error"},
        {"branchExists": True, "result": "pr-created", "prNo": 42, "commitSha": "c1", "updatesVerified": True},
    ]


def test_external_host_error_during_lookup_propagates():
    err = ExternalHostError(RuntimeError("502 Bad Gateway"), "github")
    processor = make_processor(platform=platform_failing_lookup_for(BRANCH, err))
    with pytest.raises(ExternalHostError):
        processor.process_branch(make_config())


def test_rebase_label_removal_failure_is_branch_error():
    platform = FakePlatform(branch_pr=Pr(number=7, labels=["rebase"]))
    platform.delete_label = raising(RuntimeError("label API down"))
    processor = make_processor(existing_branch_scm(), platform)

    result = processor.process_branch(make_config(rebase_label="rebase"))

    assert result.to_dict() == {"branchExists": True, "result": "error", "prNo": 7}


def test_branch_returns_to_base_when_commit_fails():
    scm = FakeScm()
    scm.commit_files = raising(RuntimeError("push exploded"))

    result = make_processor(scm).process_branch(make_config())

    assert result.result == BranchResult.ERROR
    assert scm.calls[-1] == ("checkout", "main")


def test_failed_push_leaves_working_copy_on_base(tmp_path, fast_retry):
    from git import Repo

    from branchkeeper.vcs.manager import VersionControlManager
    from branchkeeper.vcs.types import StorageConfig

    from conftest import seed_remote

    remote = tmp_path / "remote.git"
    seed_remote(remote, {"package.json": '{"version": "1.0.0"}\n'})
    config = BranchkeeperConfig(local_dir=str(tmp_path / "work"), cache_dir=str(tmp_path / "cache"), retry=fast_retry)
    scm = VersionControlManager(config)
    scm.init_repo(StorageConfig(url=remote.as_posix(), default_branch="main"))
    scm.push_commit = raising(RuntimeError("push exploded"))
    package_files = FakePackageFiles(files=[FileChange.addition("package.json", '{"version": "1.1.0"}\n')])

    result = make_processor(scm, package_files=package_files).process_branch(make_config())

    assert result.result == BranchResult.ERROR
    assert Repo(tmp_path / "work").active_branch.name == "main"
    assert scm.state.current_branch == "main"
    assert (tmp_path / "work" / "package.json").read_text() == '{"version": "1.0.0"}\n'


def test_input_config_is_not_mutated():
    config = make_config(automerge=True)
    platform = FakePlatform(old_pr=Pr(number=9, state="merged"))
    make_processor(FakeScm(), platform).process_branch(config)
    assert config.automerge is True
    assert config.updated_package_files == []
