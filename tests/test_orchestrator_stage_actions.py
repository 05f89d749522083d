"""Tests for issueflow/orchestrator/stage_actions.py: commits, PRs, deploys, wiki."""

import pytest

from issueflow.core.exceptions import DeploymentError, IssueTrackerError, VersionControlError
from issueflow.core.models import DeploymentState
from issueflow.integrations.memory import (
    InMemoryDeploymentPlatform,
    InMemoryKnowledgeBase,
    InMemoryVersionControl,
)
from issueflow.orchestrator.pipeline import StageAction, StageDefinition
from issueflow.orchestrator.stage_actions import StageActionRunner, best_effort
from tests.conftest import make_task

ARCHIVIST_OUTPUT = """## Knowledge Base Updates

### Known-Issues.md
**Action:** APPEND
**Content:**
```markdown
- #42 Login button did nothing; fixed in the click handler.
```

### Architecture.md
**Action:** UPDATE
**Section:** Authentication
**Content:**
```markdown
Login now posts to /api/session.
```

## Commit Message
docs: record fix for #42
"""


def _stage(action, name="Stage 3: Implementation", artifact="implementation-plan.md"):
    return StageDefinition(name=name, agent_name="surgeon", artifact_name=artifact, action=action)


@pytest.fixture
def task(store):
    return store.create(make_task())


@pytest.fixture
def runner(store, tracker, vcs, platform, wiki):
    return StageActionRunner(
        store=store, issue_tracker=tracker, version_control=vcs,
        deployment_platform=platform, knowledge_base=wiki,
    )


class TestDispatch:
    def test_no_action_is_noop(self, runner, task, tracker):
        runner.run(task, _stage(None), "output")
        assert tracker.comments == {}

    def test_action_named_on_stage_runs(self, runner, task, vcs, tracker):
        vcs.dirty = True
        runner.run(task, _stage(StageAction.COMMIT_AND_OPEN_PR), "## Summary\nDone.")
        assert len(vcs.commits) == 1
        assert task.pr_number is not None


class TestCommitAndOpenPr:
    def test_commits_pushes_and_links_pr(self, runner, task, vcs, tracker, store):
        vcs.dirty = True
        runner.commit_and_open_pr(task, "## Summary\nFixed the handler.")

        assert vcs.commits == [
            "fix: Login button does nothing\n\nImplemented fix for issue #42"
        ]
        assert vcs.pushed == [task.branch_name]
        assert tracker.linked[42] == [task.pr_number]
        assert store.load("ISSUE-42").pr_url == task.pr_url
        bodies = tracker.comment_bodies(42)
        assert any("Changes Committed" in b for b in bodies)
        assert any("Pull Request Created" in b for b in bodies)

    def test_clean_tree_still_opens_pr(self, runner, task, vcs, tracker):
        runner.commit_and_open_pr(task, "## Summary\nNothing to change.")
        assert vcs.commits == []
        assert vcs.pushed == []
        assert task.pr_number == 1000

    def test_halt_marker_skips_everything(self, runner, task, vcs, tracker):
        vcs.dirty = True
        runner.commit_and_open_pr(task, "## Status\nImplementation halted: spec unclear.")
        assert vcs.commits == []
        assert tracker.pull_requests == {}

    def test_existing_pr_on_task_not_reopened(self, runner, task, tracker):
        task.pr_number = 7
        runner.commit_and_open_pr(task, "ok")
        assert tracker.pull_requests == {}

    def test_existing_pr_on_tracker_tolerated(self, runner, task, tracker):
        tracker.pr_heads[task.branch_name] = 999
        runner.commit_and_open_pr(task, "ok")
        assert task.pr_number is None

    def test_push_failure_propagates(self, store, tracker, task):
        vcs = InMemoryVersionControl(dirty=True, fail_on=["push"])
        runner = StageActionRunner(store=store, issue_tracker=tracker, version_control=vcs)
        with pytest.raises(VersionControlError):
            runner.commit_and_open_pr(task, "ok")

    def test_pr_failure_propagates(self, store, tracker, vcs, task):
        tracker.fail_on.add("create_pull_request")
        runner = StageActionRunner(store=store, issue_tracker=tracker, version_control=vcs)
        with pytest.raises(IssueTrackerError):
            runner.commit_and_open_pr(task, "ok")


class TestStagingDeployment:
    STAGE = StageDefinition(
        name="Stage 7: Staging Deployment", agent_name="gatekeeper",
        artifact_name="staging-deployment.md", action=StageAction.DEPLOY_STAGING,
    )

    def test_records_deployment_and_report(self, runner, task, store, tracker):
        runner.deploy_staging(task, self.STAGE)

        record = store.load("ISSUE-42").staging_deployment
        assert record.state == DeploymentState.READY
        assert record.healthy
        report = store.load_artifact("ISSUE-42", "staging-deployment.md")
        assert "## Staging Deployment" in report
        assert "Build completed" in report
        assert any("Staging Deployment Complete" in b for b in tracker.comment_bodies(42))

    def test_failure_is_swallowed(self, store, tracker, vcs, task):
        platform = InMemoryDeploymentPlatform(fail_on=["create_deployment"])
        runner = StageActionRunner(
            store=store, issue_tracker=tracker, version_control=vcs, deployment_platform=platform,
        )
        runner.deploy_staging(task, self.STAGE)
        assert task.staging_deployment is None
        assert any("Staging Deployment Failed" in b for b in tracker.comment_bodies(42))

    def test_build_error_is_swallowed(self, store, tracker, vcs, task):
        platform = InMemoryDeploymentPlatform(final_state=DeploymentState.ERROR)
        runner = StageActionRunner(
            store=store, issue_tracker=tracker, version_control=vcs, deployment_platform=platform,
        )
        runner.deploy_staging(task, self.STAGE)
        assert task.staging_deployment is None

    def test_skipped_without_platform(self, store, tracker, vcs, task):
        runner = StageActionRunner(store=store, issue_tracker=tracker, version_control=vcs)
        runner.deploy_staging(task, self.STAGE)
        assert tracker.comments == {}


class TestProductionDeployment:
    STAGE = StageDefinition(
        name="Stage 10: Production Deployment", agent_name="commander",
        artifact_name="deployment-log.md", action=StageAction.DEPLOY_PRODUCTION,
    )

    def _runner(self, store, tracker, vcs, platform):
        return StageActionRunner(
            store=store, issue_tracker=tracker, version_control=vcs, deployment_platform=platform,
        )

    def test_healthy_deploy_marks_verified(self, store, tracker, vcs, task):
        tracker.add_label(42, "deployment-failed")
        self._runner(store, tracker, vcs, InMemoryDeploymentPlatform()).deploy_production(task, self.STAGE)

        assert store.load("ISSUE-42").production_deployment.healthy
        labels = tracker.issues[42].labels
        assert "verified-in-production" in labels
        assert "deployment-failed" not in labels

    def test_unhealthy_deploy_reopens_and_raises(self, store, tracker, vcs, task):
        tracker.issues[42].state = "closed"
        platform = InMemoryDeploymentPlatform(healthy=False)

        with pytest.raises(DeploymentError, match="HTTP 500"):
            self._runner(store, tracker, vcs, platform).deploy_production(task, self.STAGE)

        assert tracker.issues[42].state == "open"
        assert "deployment-failed" in tracker.issues[42].labels
        assert store.load("ISSUE-42").production_deployment.healthy is False
        assert any("Issue has been reopened" in b for b in tracker.comment_bodies(42))

    def test_platform_error_reopens_and_raises(self, store, tracker, vcs, task):
        platform = InMemoryDeploymentPlatform(fail_on=["wait_for_deployment"])
        with pytest.raises(DeploymentError, match="Production deployment failed"):
            self._runner(store, tracker, vcs, platform).deploy_production(task, self.STAGE)
        assert "deployment-failed" in tracker.issues[42].labels
        assert task.production_deployment is None

    def test_missing_logs_tolerated(self, store, tracker, vcs, task):
        platform = InMemoryDeploymentPlatform(fail_on=["get_deployment_logs"])
        self._runner(store, tracker, vcs, platform).deploy_production(task, self.STAGE)
        assert task.production_deployment.healthy


class TestKnowledgeBase:
    def test_applies_updates_and_publishes(self, store, tracker, vcs, task):
        wiki = InMemoryKnowledgeBase(pages={
            "Known-Issues.md": "# Known Issues",
            "Architecture.md": "# Architecture\n\n## Authentication\nSessions use cookies.\n\n## Storage\nPostgres.",
        })
        runner = StageActionRunner(store=store, issue_tracker=tracker, version_control=vcs, knowledge_base=wiki)

        runner.update_knowledge_base(task, ARCHIVIST_OUTPUT)

        assert wiki.pages["Known-Issues.md"].endswith("fixed in the click handler.")
        architecture = wiki.pages["Architecture.md"]
        assert architecture.index("Login now posts") < architecture.index("## Storage")
        assert wiki.commits == ["docs: record fix for #42"]
        assert wiki.pushes == 1
        assert "Known-Issues, Architecture" in tracker.comment_bodies(42)[-1]

    def test_no_updates_no_commit(self, runner, task, wiki):
        runner.update_knowledge_base(task, "## Summary\nNothing to record.")
        assert wiki.commits == []

    def test_publish_failure_swallowed(self, store, tracker, vcs, task):
        wiki = InMemoryKnowledgeBase(fail_on=["push"])
        runner = StageActionRunner(store=store, issue_tracker=tracker, version_control=vcs, knowledge_base=wiki)
        runner.update_knowledge_base(task, ARCHIVIST_OUTPUT)
        assert wiki.commits == ["docs: record fix for #42"]
        assert tracker.comments == {}

    def test_page_failure_skips_that_page(self, store, tracker, vcs, task):
        wiki = InMemoryKnowledgeBase(fail_on=["append_to_page"])
        runner = StageActionRunner(store=store, issue_tracker=tracker, version_control=vcs, knowledge_base=wiki)
        runner.update_knowledge_base(task, ARCHIVIST_OUTPUT)
        assert "Known-Issues.md" not in wiki.pages
        assert "Login now posts" in wiki.pages["Architecture.md"]


class TestBestEffort:
    def test_integration_error_is_logged(self, caplog):
        def call():
            raise IssueTrackerError("rate limited")

        best_effort("label", call)
        assert "Issue tracker label failed: rate limited" in caplog.text

    def test_other_errors_propagate(self):
        def call():
            raise ValueError("bug")

        with pytest.raises(ValueError):
            best_effort("label", call)
