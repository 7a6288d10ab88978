# node_healer/models/fleet.py
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from node_healer.core.exceptions import InvalidThreshold


class AbsoluteThreshold(BaseModel):
    kind: Literal["absolute"] = "absolute"
    count: int

    class Config:
        frozen = True

    def __str__(self):
        return str(self.count)


class PercentageThreshold(BaseModel):
    kind: Literal["percentage"] = "percentage"
    percent: float

    class Config:
        frozen = True

    def __str__(self):
        return f"{self.percent:g}%"


HealthyThreshold = Union[AbsoluteThreshold, PercentageThreshold]


def parse_healthy_threshold(value: Any) -> HealthyThreshold:
    """
    Parses an int-or-string threshold the way the fleet resource carries it:
    an integer (``3``) or a percentage string (``"50%"``).

    Range checks happen in ``required_healthy``; this only rejects values that
    are neither form.
    """
    if isinstance(value, bool):
        raise InvalidThreshold(value, "expected an integer or a percentage string")
    if isinstance(value, int):
        return AbsoluteThreshold(count=value)
    if isinstance(value, str):
        text = value.strip()
        if not text.endswith("%"):
            raise InvalidThreshold(value, "string thresholds must be percentages such as '50%'")
        try:
            return PercentageThreshold(percent=float(text[:-1]))
        except ValueError:
            raise InvalidThreshold(value, "percentage is not a number")
    raise InvalidThreshold(value, "expected an integer or a percentage string")


class FleetConfig(BaseModel):
    """Per-pass snapshot of a fleet's podFaultRecovery settings."""
    healthy_threshold: HealthyThreshold = Field(..., discriminator="kind")
    restart_threshold: int = 5

    class Config:
        frozen = True

    @classmethod
    def from_spec(cls, recovery_spec: Dict[str, Any], default_restart_threshold: int = 5) -> "FleetConfig":
        """Builds the config from ``spec.selfHealing.podFaultRecovery``. An unset, zero or negative restartThreshold means the default."""
        if "healthyThreshold" not in recovery_spec:
            raise InvalidThreshold(None, "healthyThreshold is required")
        threshold = parse_healthy_threshold(recovery_spec["healthyThreshold"])
        restarts = int(recovery_spec.get("restartThreshold") or 0)
        if restarts <= 0:
            restarts = default_restart_threshold
        return cls(healthy_threshold=threshold, restart_threshold=restarts)


class ReplicaObservation(BaseModel):
    identity: str
    restart_count: int = 0
    is_crash_looping: bool = False
    is_healthy: bool = False
    # Supplementary facts used by the executor
    fingerprint: Optional[str] = None # pod UID at observation time
    pvc_name: Optional[str] = None
    is_terminating: bool = False

    class Config:
        frozen = True


def identity_sort_key(identity: str) -> Tuple[str, int, str]:
    """Orders ``fleet-2`` before ``fleet-10``."""
    prefix, _, ordinal = identity.rpartition("-")
    if prefix and ordinal.isdigit():
        return (prefix, int(ordinal), "")
    return (identity, -1, identity)


class FleetSnapshot(BaseModel):
    fleet_name: str
    desired_replicas: int
    replicas: Tuple[ReplicaObservation, ...] = ()
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        frozen = True

    @classmethod
    def build(cls, fleet_name: str, desired_replicas: int, observations: Iterable[ReplicaObservation]) -> "FleetSnapshot":
        ordered = tuple(sorted(observations, key=lambda o: identity_sort_key(o.identity)))
        return cls(fleet_name=fleet_name, desired_replicas=desired_replicas, replicas=ordered)

    @property
    def is_complete(self) -> bool:
        return len(self.replicas) == self.desired_replicas

    @property
    def healthy_count(self) -> int:
        return sum(1 for r in self.replicas if r.is_healthy)

    def __len__(self):
        return len(self.replicas)

    def get(self, identity: str) -> Optional[ReplicaObservation]:
        for replica in self.replicas:
            if replica.identity == identity:
                return replica
        return None


class DecisionKind(str, Enum):
    NO_ACTION = "NoAction"
    ELIGIBLE = "Eligible"
    EXECUTED = "Executed"
    SKIPPED = "Skipped"


# Reasons surfaced in events, logs and the API
REASON_GATE_CLOSED = "fleet gate closed"
REASON_GATE_CLOSED_BY_PRIOR_ACTION = "gate closed by prior action this pass"
REASON_BELOW_RESTART_THRESHOLD = "recovery skipped: below restart threshold"
REASON_HEALTHY = "healthy"
REASON_NOT_CRASH_LOOPING = "not crash-looping"
REASON_TERMINATING = "replica is terminating"
REASON_AWAITING_REPLACEMENT = "already recovered; awaiting healthy replacement"
REASON_INCOMPLETE = "observation incomplete"
REASON_RECOVERED = "replica recovered"
REASON_DRY_RUN = "dry run: would delete pod and PVC"


class RecoveryDecision(BaseModel):
    identity: str
    kind: DecisionKind
    reason: Optional[str] = None
    restart_count: int = 0

    class Config:
        frozen = True

    @classmethod
    def no_action(cls, replica: ReplicaObservation, reason: Optional[str] = None) -> "RecoveryDecision":
        return cls(identity=replica.identity, kind=DecisionKind.NO_ACTION, reason=reason, restart_count=replica.restart_count)

    @classmethod
    def eligible(cls, replica: ReplicaObservation) -> "RecoveryDecision":
        return cls(identity=replica.identity, kind=DecisionKind.ELIGIBLE, restart_count=replica.restart_count)

    @classmethod
    def skipped(cls, replica: ReplicaObservation, reason: str) -> "RecoveryDecision":
        return cls(identity=replica.identity, kind=DecisionKind.SKIPPED, reason=reason, restart_count=replica.restart_count)

    def executed(self, reason: str = REASON_RECOVERED) -> "RecoveryDecision":
        return self.model_copy(update={"kind": DecisionKind.EXECUTED, "reason": reason})

    def downgraded(self, reason: str) -> "RecoveryDecision":
        return self.model_copy(update={"kind": DecisionKind.SKIPPED, "reason": reason})


class RecoveryRecord(BaseModel):
    """Marks an incident already acted upon. Cleared once the identity reports healthy again."""
    identity: str
    fingerprint: str
    pvc_name: Optional[str] = None
    restart_count: int = 0
    recovered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        frozen = True


class RecoveryLedger:
    """
    The set of active recovery records for one fleet, keyed by identity.

    Loaded from and saved to durable storage by a record store; mutated only
    by the executor (record) and the driver (clear on recovery).
    """

    def __init__(self, records: Optional[Iterable[RecoveryRecord]] = None):
        self._records: Dict[str, RecoveryRecord] = {}
        for record in records or ():
            self._records[record.identity] = record

    def __contains__(self, identity: str) -> bool:
        return identity in self._records

    def __len__(self):
        return len(self._records)

    def get(self, identity: str) -> Optional[RecoveryRecord]:
        return self._records.get(identity)

    def records(self) -> List[RecoveryRecord]:
        return [self._records[k] for k in sorted(self._records, key=identity_sort_key)]

    def covers(self, replica: ReplicaObservation) -> bool:
        """
        True while a recovery for this identity is outstanding: either the
        destroyed pod is still visible, or its replacement has not yet been
        healthy.
        """
        return replica.identity in self._records

    def is_recorded(self, identity: str, fingerprint: Optional[str]) -> bool:
        record = self._records.get(identity)
        return record is not None and record.fingerprint == fingerprint

    def record(self, record: RecoveryRecord) -> None:
        self._records[record.identity] = record

    def merge(self, other: "RecoveryLedger") -> List[str]:
        """Adds records from ``other`` that this ledger lacks or holds for an older pod. Returns the identities added."""
        added = []
        for record in other.records():
            current = self._records.get(record.identity)
            if current is None or current.recovered_at < record.recovered_at:
                self._records[record.identity] = record
                added.append(record.identity)
        return added

    def clear_recovered(self, snapshot: FleetSnapshot) -> List[str]:
        """Drops records whose identity now reports healthy on a pod other than the destroyed one."""
        cleared = []
        for identity, record in list(self._records.items()):
            replica = snapshot.get(identity)
            if replica is None:
                # Scaled away
                if identity_sort_key(identity)[1] >= snapshot.desired_replicas:
                    cleared.append(identity)
                continue
            if replica.is_healthy and replica.fingerprint != record.fingerprint:
                cleared.append(identity)
        for identity in cleared:
            del self._records[identity]
        return cleared
