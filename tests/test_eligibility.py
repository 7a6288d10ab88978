import pytest

from node_healer.core.exceptions import InvalidThreshold
from node_healer.models.fleet import (
    REASON_AWAITING_REPLACEMENT,
    REASON_BELOW_RESTART_THRESHOLD,
    REASON_GATE_CLOSED,
    DecisionKind,
    FleetConfig,
    FleetSnapshot,
    RecoveryLedger,
    RecoveryRecord,
    ReplicaObservation,
    parse_healthy_threshold,
)
from node_healer.services.eligibility import evaluate


def healthy(i):
    return ReplicaObservation(identity=f"hub-{i}", restart_count=0, is_healthy=True, fingerprint=f"uid-{i}")

def crashing(i, restarts=8):
    return ReplicaObservation(identity=f"hub-{i}", restart_count=restarts, is_crash_looping=True, fingerprint=f"uid-{i}")

def snapshot(*replicas, desired=None):
    return FleetSnapshot.build("hub", desired if desired is not None else len(replicas), replicas)

def config(threshold="50%", restarts=5):
    return FleetConfig(healthy_threshold=parse_healthy_threshold(threshold), restart_threshold=restarts)

def kinds(decisions):
    return {identity: d.kind for identity, d in decisions.items()}


def test_two_of_five_unhealthy_both_eligible():
    snap = snapshot(healthy(0), healthy(1), healthy(2), crashing(3), crashing(4))
    decisions = evaluate(snap, config("50%"))
    assert kinds(decisions) == {
        "hub-0": DecisionKind.NO_ACTION,
        "hub-1": DecisionKind.NO_ACTION,
        "hub-2": DecisionKind.NO_ACTION,
        "hub-3": DecisionKind.ELIGIBLE,
        "hub-4": DecisionKind.ELIGIBLE,
    }

def test_three_of_five_unhealthy_closes_the_gate():
    snap = snapshot(healthy(0), healthy(1), crashing(2, 50), crashing(3, 50), crashing(4, 50))
    decisions = evaluate(snap, config("50%"))
    assert all(d.kind == DecisionKind.SKIPPED for d in decisions.values())
    assert all(d.reason == REASON_GATE_CLOSED for d in decisions.values())

def test_below_restart_threshold_is_never_eligible():
    # Whatever the fleet health, 4 restarts with a threshold of 5 must not qualify
    for unhealthy in range(1, 6):
        replicas = [healthy(i) for i in range(5 - unhealthy)] + [crashing(i, 4) for i in range(5 - unhealthy, 5)]
        for threshold in ("1%", "50%", 1, 10):
            decisions = evaluate(snapshot(*replicas), config(threshold, restarts=5))
            assert DecisionKind.ELIGIBLE not in kinds(decisions).values()

def test_below_restart_threshold_reason():
    snap = snapshot(healthy(0), healthy(1), crashing(2, 4))
    decisions = evaluate(snap, config("50%"))
    assert decisions["hub-2"].kind == DecisionKind.NO_ACTION
    assert decisions["hub-2"].reason == REASON_BELOW_RESTART_THRESHOLD

def test_exactly_at_restart_threshold_is_eligible():
    snap = snapshot(healthy(0), healthy(1), crashing(2, 5))
    assert evaluate(snap, config("50%"))["hub-2"].kind == DecisionKind.ELIGIBLE

def test_unready_but_not_crash_looping_is_left_alone():
    not_ready = ReplicaObservation(identity="hub-2", restart_count=30, fingerprint="uid-2")
    decisions = evaluate(snapshot(healthy(0), healthy(1), not_ready), config("50%"))
    assert decisions["hub-2"].kind == DecisionKind.NO_ACTION

def test_terminating_replica_is_left_alone():
    terminating = ReplicaObservation(identity="hub-2", restart_count=30, is_crash_looping=True,
                                     is_terminating=True, fingerprint="uid-2")
    decisions = evaluate(snapshot(healthy(0), healthy(1), terminating), config("50%"))
    assert decisions["hub-2"].kind == DecisionKind.NO_ACTION

def test_incomplete_snapshot_means_no_action():
    snap = snapshot(healthy(0), crashing(1, 40), desired=3)
    decisions = evaluate(snap, config("50%"))
    assert set(kinds(decisions).values()) == {DecisionKind.NO_ACTION}

def test_active_record_covers_the_replica():
    snap = snapshot(healthy(0), healthy(1), crashing(2, 9))
    ledger = RecoveryLedger([RecoveryRecord(identity="hub-2", fingerprint="uid-old")])
    decision = evaluate(snap, config("50%"), ledger)["hub-2"]
    assert decision.kind == DecisionKind.NO_ACTION
    assert decision.reason == REASON_AWAITING_REPLACEMENT

def test_record_for_another_replica_does_not_block():
    snap = snapshot(healthy(0), healthy(1), healthy(2), crashing(3, 9))
    ledger = RecoveryLedger([RecoveryRecord(identity="hub-1", fingerprint="uid-old")])
    assert evaluate(snap, config("50%"), ledger)["hub-3"].kind == DecisionKind.ELIGIBLE

def test_too_high_threshold_still_allows_one_recovery():
    snap = snapshot(healthy(0), healthy(1), healthy(2), healthy(3), crashing(4))
    assert evaluate(snap, config(100))["hub-4"].kind == DecisionKind.ELIGIBLE

def test_too_high_threshold_blocks_two_recoveries():
    snap = snapshot(healthy(0), healthy(1), healthy(2), crashing(3), crashing(4))
    decisions = evaluate(snap, config("100%"))
    assert decisions["hub-3"].reason == REASON_GATE_CLOSED

def test_invalid_threshold_propagates():
    with pytest.raises(InvalidThreshold):
        evaluate(snapshot(healthy(0), crashing(1)), config("150%"))
