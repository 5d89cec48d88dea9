"""Tests for autoheal.reporter."""

from unittest.mock import AsyncMock, patch

import pytest

from autoheal.dispatcher import DispatchOutcome
from autoheal.models import (
    ActionLogEntry,
    ActionLogStatus,
    ActionType,
    Command,
    CommandStatus,
    RemediationAction,
)
from autoheal.reporter import EXHAUSTED_TITLE, TITLE, RunReporter, build_notification

RESTART = RemediationAction(ActionType.RESTART_POD, {"pod_name": "p", "namespace": "prod"})


def _outcome(record, status):
    entry = ActionLogEntry("c1", "restart_pod", record.summary(), "anomaly", record.id, status=status)
    return DispatchOutcome(record=record, action=RESTART, entry=entry)


def _exhausted_command():
    return Command(
        "c1",
        ActionType.SCALE_DEPLOYMENT,
        {"deployment_name": "api", "namespace": "prod", "replicas": "4"},
        status=CommandStatus.FAILED,
        retry_count=3,
        max_retries=3,
        error_message="quota exceeded",
    )


class TestBuildNotification:
    def test_nothing_to_report(self, make_anomaly):
        skipped = _outcome(make_anomaly(), ActionLogStatus.SKIPPED)
        assert build_notification("c1", []) is None
        assert build_notification("c1", [skipped]) is None

    def test_successes(self, make_anomaly):
        outcomes = [
            _outcome(make_anomaly(record_id="a1"), ActionLogStatus.COMPLETED),
            _outcome(make_anomaly(record_id="a2"), ActionLogStatus.COMPLETED),
        ]
        note = build_notification("c1", outcomes)
        assert note.title == TITLE
        assert note.severity == "success"
        assert note.message == "2 fix(es) applied automatically"
        assert note.details["succeeded"] == 2
        assert [a["record_id"] for a in note.details["actions"]] == ["a1", "a2"]

    def test_failures_raise_severity(self, make_anomaly):
        outcomes = [
            _outcome(make_anomaly(record_id="a1"), ActionLogStatus.COMPLETED),
            _outcome(make_anomaly(record_id="a2"), ActionLogStatus.FAILED),
        ]
        note = build_notification("c1", outcomes)
        assert note.severity == "warning"
        assert note.message == "1 fix(es) applied automatically, 1 failure(s)"

    def test_exhausted_only(self):
        note = build_notification("c1", [], [_exhausted_command()])
        assert note.title == EXHAUSTED_TITLE
        assert note.severity == "critical"
        assert "scale_deployment prod/api" in note.message
        (detail,) = note.details["exhausted_commands"]
        assert detail["retry_count"] == 3
        assert detail["error"] == "quota exceeded"


class TestRunReporter:
    @pytest.mark.asyncio
    async def test_report_stores_and_fans_out(self, store, make_anomaly):
        reporter = RunReporter(store)
        outcomes = [_outcome(make_anomaly(), ActionLogStatus.COMPLETED)]
        with patch("autoheal.reporter.notifier.notify_all", new=AsyncMock(return_value={})) as fan_out:
            note = await reporter.report("c1", outcomes)

        assert note.severity == "success"
        stored = await store.list_notifications("c1")
        assert stored[0]["title"] == TITLE
        fan_out.assert_awaited_once_with(
            "[c1] 1 fix(es) applied automatically", "success", TITLE
        )

    @pytest.mark.asyncio
    async def test_silent_when_nothing_happened(self, store):
        reporter = RunReporter(store)
        with patch("autoheal.reporter.notifier.notify_all", new=AsyncMock()) as fan_out:
            assert await reporter.report("c1", []) is None
        fan_out.assert_not_awaited()
        assert await store.list_notifications("c1") == []
