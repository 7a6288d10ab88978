from datetime import datetime, timezone

import pytest

from node_healer.core.exceptions import InvalidThreshold
from node_healer.models.fleet import (
    AbsoluteThreshold,
    FleetConfig,
    FleetSnapshot,
    PercentageThreshold,
    RecoveryLedger,
    RecoveryRecord,
    ReplicaObservation,
    identity_sort_key,
)


def test_config_from_spec_percentage():
    config = FleetConfig.from_spec({"healthyThreshold": "75%", "restartThreshold": 3})
    assert config.healthy_threshold == PercentageThreshold(percent=75)
    assert config.restart_threshold == 3

def test_config_from_spec_absolute_with_default_restarts():
    config = FleetConfig.from_spec({"healthyThreshold": 2})
    assert config.healthy_threshold == AbsoluteThreshold(count=2)
    assert config.restart_threshold == 5

def test_config_requires_healthy_threshold():
    with pytest.raises(InvalidThreshold):
        FleetConfig.from_spec({"restartThreshold": 3})

def test_config_is_immutable():
    config = FleetConfig.from_spec({"healthyThreshold": 2})
    with pytest.raises(Exception):
        config.restart_threshold = 9

def test_natural_identity_order():
    names = ["hub-10", "hub-2", "hub-0", "hub-1"]
    assert sorted(names, key=identity_sort_key) == ["hub-0", "hub-1", "hub-2", "hub-10"]

def test_snapshot_counts():
    snap = FleetSnapshot.build("hub", 3, [
        ReplicaObservation(identity="hub-1", is_healthy=True),
        ReplicaObservation(identity="hub-0", is_healthy=True),
    ])
    assert not snap.is_complete
    assert snap.healthy_count == 2
    assert snap.replicas[0].identity == "hub-0"
    assert snap.get("hub-2") is None

def test_ledger_clears_only_healthy_replacements():
    ledger = RecoveryLedger([
        RecoveryRecord(identity="hub-0", fingerprint="old-0"),
        RecoveryRecord(identity="hub-1", fingerprint="old-1"),
        RecoveryRecord(identity="hub-2", fingerprint="old-2"),
        RecoveryRecord(identity="hub-7", fingerprint="old-7"),
    ])
    snap = FleetSnapshot.build("hub", 3, [
        ReplicaObservation(identity="hub-0", is_healthy=True, fingerprint="new-0"),
        ReplicaObservation(identity="hub-1", is_healthy=False, fingerprint="new-1"),
        ReplicaObservation(identity="hub-2", is_healthy=True, fingerprint="old-2"),
    ])

    cleared = ledger.clear_recovered(snap)

    # hub-7 no longer exists after a scale-down
    assert sorted(cleared) == ["hub-0", "hub-7"]
    assert [r.identity for r in ledger.records()] == ["hub-1", "hub-2"]

def test_ledger_is_recorded_matches_fingerprint():
    ledger = RecoveryLedger([RecoveryRecord(identity="hub-0", fingerprint="a")])
    assert ledger.is_recorded("hub-0", "a")
    assert not ledger.is_recorded("hub-0", "b")
    assert not ledger.is_recorded("hub-1", "a")

def test_negative_restart_threshold_falls_back_to_default():
    config = FleetConfig.from_spec({"healthyThreshold": 2, "restartThreshold": -1})
    assert config.restart_threshold == 5

def test_ledger_merge_keeps_the_newer_record():
    older = RecoveryRecord(identity="hub-0", fingerprint="a", recovered_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    newer = RecoveryRecord(identity="hub-0", fingerprint="b", recovered_at=datetime(2024, 1, 2, tzinfo=timezone.utc))
    ledger = RecoveryLedger([older])

    assert ledger.merge(RecoveryLedger([newer, RecoveryRecord(identity="hub-1", fingerprint="c")])) == ["hub-0", "hub-1"]
    assert ledger.is_recorded("hub-0", "b")
    assert ledger.merge(RecoveryLedger([older])) == []
