"""Tests for autoheal.deduplicator."""

from autoheal.deduplicator import PlannedRemediation, dedupe
from autoheal.models import ActionType, RemediationAction, ResolvedTarget


def _planned(
    record, namespace="prod", pod="api-7d8f-abc", deployment="api", action=None, params=None
):
    target = ResolvedTarget(namespace=namespace, pod_name=pod, deployment_name=deployment)
    return PlannedRemediation(
        record=record,
        target=target,
        action=RemediationAction(
            action or ActionType.RESTART_POD,
            params if params is not None else {"namespace": namespace, "pod_name": pod or ""},
        ),
    )


def test_distinct_targets_kept_in_order(make_anomaly):
    a = _planned(make_anomaly(record_id="a1"), pod="api-1-a")
    b = _planned(make_anomaly(record_id="a2"), pod="web-1-a")
    result = dedupe([a, b])
    assert [p.record.id for p in result] == ["a1", "a2"]


def test_first_occurrence_wins(make_anomaly, make_threat):
    anomaly = _planned(make_anomaly(record_id="a1"))
    threat = _planned(
        make_threat(record_id="t1"), action=ActionType.UPDATE_DEPLOYMENT_RESOURCES
    )
    result = dedupe([anomaly, threat])

    assert len(result) == 1
    winner = result[0]
    assert winner.record.id == "a1"
    assert winner.action.action_type == ActionType.RESTART_POD
    assert [m.record.id for m in winner.merged] == ["t1"]


def test_merged_record_with_other_action_is_deferred(make_anomaly):
    crash = _planned(make_anomaly(kind="crash_loop_backoff", record_id="a1"))
    oom = _planned(
        make_anomaly(kind="oom_killed", record_id="a2"),
        action=ActionType.UPDATE_DEPLOYMENT_RESOURCES,
        params={"namespace": "prod", "deployment_name": "api", "memory_limit": "1Gi"},
    )
    (winner,) = dedupe([crash, oom])

    assert [r.id for r in winner.closing_records] == ["a1"]
    assert [r.id for r in winner.deferred_records] == ["a2"]


def test_merged_record_with_same_command_closes_with_winner(make_anomaly):
    a = _planned(make_anomaly(record_id="a1"))
    b = _planned(make_anomaly(kind="pod_not_ready", record_id="a2"))
    (winner,) = dedupe([a, b])

    assert [r.id for r in winner.closing_records] == ["a1", "a2"]
    assert winner.deferred_records == []


def test_identical_namespace_hardening_collapses(make_threat):
    policy = {
        "namespace": "prod",
        "policy_name": "autoheal-deny-all-ingress",
        "policy_type": "deny-all-ingress",
    }
    api = _planned(
        make_threat(kind="no_network_policy", record_id="t1"),
        pod="api-7d8f-abc",
        deployment="api",
        action=ActionType.CREATE_NETWORK_POLICY,
        params=policy,
    )
    web = _planned(
        make_threat(kind="no_network_policy", record_id="t2"),
        pod="web-1a2b-xyz",
        deployment="web",
        action=ActionType.CREATE_NETWORK_POLICY,
        params=dict(policy),
    )
    result = dedupe([api, web])

    assert len(result) == 1
    assert [r.id for r in result[0].closing_records] == ["t1", "t2"]


def test_same_name_different_namespace_not_merged(make_anomaly):
    a = _planned(make_anomaly(record_id="a1"), namespace="prod")
    b = _planned(make_anomaly(record_id="a2"), namespace="staging")
    assert len(dedupe([a, b])) == 2


def test_deployment_only_targets_share_key(make_threat):
    a = _planned(make_threat(record_id="t1"), pod=None)
    b = _planned(make_threat(record_id="t2"), pod=None)
    result = dedupe([a, b])
    assert len(result) == 1
    assert result[0].key == ("prod", "api")


def test_merged_chain_carries_previous_merges(make_anomaly):
    a = _planned(make_anomaly(record_id="a1"))
    b = _planned(make_anomaly(record_id="a2"))
    b.merged.append(_planned(make_anomaly(record_id="a3")))
    result = dedupe([a, b])
    assert [m.record.id for m in result[0].merged] == ["a2", "a3"]


def test_empty_input():
    assert dedupe([]) == []
