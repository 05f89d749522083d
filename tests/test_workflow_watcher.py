"""Tests for issueflow/workflow/watcher.py: polling labeled issues."""

import json

import pytest

from issueflow.core.models import TaskStatus
from issueflow.workflow.watcher import IssueWatcher


@pytest.fixture
def watcher_factory(build_orchestrator, tracker, tmp_path):
    def _build(**kwargs):
        params = {
            "orchestrator": build_orchestrator(),
            "issue_tracker": tracker,
            "state_file": tmp_path / "watcher-state.json",
        }
        params.update(kwargs)
        return IssueWatcher(**params)

    return _build


class TestCheckOnce:
    def test_runs_labeled_issues(self, watcher_factory, tracker, tmp_path):
        tracker.add_label(42, "ai-pipeline")
        tracker.add_issue(43, "Unlabeled")

        tasks = watcher_factory().check_once()

        assert [t.task_id for t in tasks] == ["ISSUE-42"]
        assert tasks[0].status == TaskStatus.COMPLETED
        state = json.loads((tmp_path / "watcher-state.json").read_text())
        assert state["processed_issues"] == [42]

    def test_processed_issues_not_repeated(self, watcher_factory, tracker, invoker):
        tracker.add_label(42, "ai-pipeline")
        watcher_factory().check_once()
        calls = len(invoker.calls)

        assert watcher_factory().check_once() == []
        assert len(invoker.calls) == calls

    def test_skip_labels(self, watcher_factory, tracker):
        tracker.add_issue(50, "Busy", labels=["ai-pipeline", "in-progress"])
        tracker.add_issue(51, "Waiting", labels=["ai-pipeline", "awaiting-human-review"])
        tracker.add_issue(52, "Done", labels=["ai-pipeline", "completed"])
        assert watcher_factory().pending_issues() == []

    def test_closed_issues_ignored(self, watcher_factory, tracker):
        tracker.add_label(42, "ai-pipeline")
        tracker.issues[42].state = "closed"
        assert watcher_factory().check_once() == []

    def test_start_failure_is_retried_later(self, watcher_factory, tracker, vcs):
        tracker.add_label(42, "ai-pipeline")
        vcs.fail_on.add("create_branch")
        watcher = watcher_factory()

        assert watcher.check_once() == []
        assert watcher.state.processed_issues == []

        vcs.fail_on.clear()
        assert [t.task_id for t in watcher.check_once()] == ["ISSUE-42"]

    def test_list_failure_returns_nothing(self, watcher_factory, tracker):
        tracker.fail_on.add("list_issues")
        assert watcher_factory().check_once() == []

    def test_custom_label(self, watcher_factory, tracker):
        tracker.add_label(42, "autofix")
        assert [t.task_id for t in watcher_factory(label="autofix").check_once()] == ["ISSUE-42"]


class TestState:
    def test_corrupt_state_starts_fresh(self, watcher_factory, tmp_path):
        state_file = tmp_path / "watcher-state.json"
        state_file.write_text("{not json")
        assert watcher_factory().state.processed_issues == []

    def test_existing_state_loaded(self, watcher_factory, tmp_path, tracker):
        state_file = tmp_path / "watcher-state.json"
        state_file.write_text(json.dumps({"processed_issues": [42], "last_check_time": "2024-05-01T10:00:00Z"}))
        tracker.add_label(42, "ai-pipeline")
        assert watcher_factory().pending_issues() == []


class TestRun:
    def test_sleeps_between_cycles(self, watcher_factory):
        sleeps = []
        watcher = watcher_factory(interval_seconds=7, sleep=sleeps.append)
        watcher.run(max_cycles=3)
        assert sleeps == [7, 7]
