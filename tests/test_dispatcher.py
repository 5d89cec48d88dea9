"""Tests for autoheal.dispatcher.CommandDispatcher."""

import pytest

from autoheal.deduplicator import PlannedRemediation
from autoheal.dispatcher import CommandDispatcher
from autoheal.errors import DispatchWriteFailure, StoreError, StoreTimeout
from autoheal.models import (
    ActionLogStatus,
    ActionType,
    CommandStatus,
    ProblemSource,
    RemediationAction,
    ResolvedTarget,
)

TARGET = ResolvedTarget(
    namespace="prod", pod_name="api-7d8f-abc", deployment_name="api", deployment_derived=True
)
RESTART = RemediationAction(
    ActionType.RESTART_POD,
    {"pod_name": "api-7d8f-abc", "namespace": "prod", "reason": "auto_heal_crash_loop_backoff"},
)


@pytest.fixture
def dispatcher(store, queue):
    return CommandDispatcher(store, queue)


async def _stored_planned(store, record, merged=()):
    """``merged`` holds ``(record, action)`` pairs folded into the winner."""
    await store.put_problem(record)
    losers = []
    for extra, action in merged:
        await store.put_problem(extra)
        losers.append(PlannedRemediation(record=extra, target=TARGET, action=action))
    return PlannedRemediation(record=record, target=TARGET, action=RESTART, merged=losers)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_success_writes_command_entry_and_resolves(
        self, dispatcher, store, make_anomaly
    ):
        planned = await _stored_planned(store, make_anomaly(record_id="a1"))
        outcome = await dispatcher.dispatch("c1", planned)

        assert outcome.succeeded
        assert outcome.command.status == CommandStatus.PENDING

        (entry,) = await store.list_action_log("c1")
        assert entry.status == ActionLogStatus.COMPLETED
        assert entry.trigger_entity_id == "a1"
        assert entry.trigger_entity_type == "anomaly"
        assert entry.action_type == "restart_pod"
        assert entry.action_details["deployment_derived"] is True
        assert entry.result["command_id"] == outcome.command.id
        assert entry.completed_at is not None

        stored = await store.get_problem("c1", "a1")
        assert stored.resolved is True

    @pytest.mark.asyncio
    async def test_merged_records_with_same_command_resolved_with_winner(
        self, dispatcher, store, make_anomaly
    ):
        planned = await _stored_planned(
            store,
            make_anomaly(record_id="a1"),
            merged=[(make_anomaly(kind="pod_not_ready", record_id="a2"), RESTART)],
        )
        outcome = await dispatcher.dispatch("c1", planned)

        assert outcome.merged_record_ids == ["a2"]
        assert outcome.deferred_record_ids == []
        assert (await store.get_problem("c1", "a2")).is_open is False
        (entry,) = await store.list_action_log("c1")
        assert entry.action_details["merged_record_ids"] == ["a2"]

    @pytest.mark.asyncio
    async def test_merged_record_needing_other_action_stays_open(
        self, dispatcher, store, make_anomaly
    ):
        resources = RemediationAction(
            ActionType.UPDATE_DEPLOYMENT_RESOURCES,
            {"deployment_name": "api", "namespace": "prod", "memory_limit": "1Gi"},
        )
        planned = await _stored_planned(
            store,
            make_anomaly(record_id="a1"),
            merged=[(make_anomaly(kind="oom_killed", record_id="a2"), resources)],
        )
        outcome = await dispatcher.dispatch("c1", planned)

        assert outcome.succeeded
        assert outcome.deferred_record_ids == ["a2"]
        assert (await store.get_problem("c1", "a1")).is_open is False
        open_records = await store.fetch_unresolved("c1", ProblemSource.ANOMALY, 10)
        assert [r.id for r in open_records] == ["a2"]
        (entry,) = await store.list_action_log("c1")
        assert entry.result["deferred_record_ids"] == ["a2"]

    @pytest.mark.asyncio
    async def test_enqueue_failure_leaves_record_open(
        self, dispatcher, store, queue, make_anomaly, monkeypatch
    ):
        async def failing_enqueue(cluster_id, action):
            raise StoreError("write refused")

        monkeypatch.setattr(queue, "enqueue", failing_enqueue)
        planned = await _stored_planned(store, make_anomaly(record_id="a1"))
        outcome = await dispatcher.dispatch("c1", planned)

        assert outcome.failed
        assert outcome.command is None
        assert "write refused" in outcome.error
        (entry,) = await store.list_action_log("c1")
        assert entry.status == ActionLogStatus.FAILED
        assert "write refused" in entry.error_message
        open_records = await store.fetch_unresolved("c1", ProblemSource.ANOMALY, 10)
        assert [r.id for r in open_records] == ["a1"]

    @pytest.mark.asyncio
    async def test_enqueue_timeout_propagates(
        self, dispatcher, store, queue, make_anomaly, monkeypatch
    ):
        async def slow_enqueue(cluster_id, action):
            raise StoreTimeout("save_command timed out")

        monkeypatch.setattr(queue, "enqueue", slow_enqueue)
        planned = await _stored_planned(store, make_anomaly())
        with pytest.raises(StoreTimeout):
            await dispatcher.dispatch("c1", planned)

    @pytest.mark.asyncio
    async def test_audit_write_failure(self, dispatcher, store, make_anomaly, monkeypatch):
        async def broken_append(entry):
            raise StoreError("disk full")

        monkeypatch.setattr(store, "append_action_log", broken_append)
        planned = await _stored_planned(store, make_anomaly())
        with pytest.raises(DispatchWriteFailure):
            await dispatcher.dispatch("c1", planned)
        assert await store.list_commands("c1") == []

    @pytest.mark.asyncio
    async def test_resolve_failure_keeps_command(
        self, dispatcher, store, make_anomaly, monkeypatch
    ):
        async def broken_resolve(record):
            raise StoreError("conflict")

        monkeypatch.setattr(store, "mark_resolved", broken_resolve)
        planned = await _stored_planned(store, make_anomaly())
        outcome = await dispatcher.dispatch("c1", planned)
        assert outcome.succeeded
        assert len(await store.list_commands("c1")) == 1


class TestRecordSkip:
    @pytest.mark.asyncio
    async def test_skip_entry(self, dispatcher, store, make_anomaly):
        record = make_anomaly(record_id="a1", description="cluster feels slow")
        outcome = await dispatcher.record_skip("c1", record, "no pod or deployment identified")

        assert outcome.status == ActionLogStatus.SKIPPED
        assert outcome.action is None
        (entry,) = await store.list_action_log("c1")
        assert entry.status == ActionLogStatus.SKIPPED
        assert entry.action_type == "crash_loop_backoff"
        assert entry.result == {"reason": "no pod or deployment identified"}
        assert await store.list_commands("c1") == []

    @pytest.mark.asyncio
    async def test_skip_with_action(self, dispatcher, store, make_threat):
        action = RemediationAction(ActionType.APPLY_POD_SECURITY, {"namespace": "prod"})
        outcome = await dispatcher.record_skip("c1", make_threat(), "requires manual review", action)
        assert outcome.entry.action_type == "apply_pod_security"
        assert outcome.entry.action_details == {"params": {"namespace": "prod"}}
