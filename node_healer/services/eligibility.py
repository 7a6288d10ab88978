# node_healer/services/eligibility.py
import logging
from typing import Dict, Optional

from node_healer.models.fleet import (
    REASON_AWAITING_REPLACEMENT,
    REASON_BELOW_RESTART_THRESHOLD,
    REASON_GATE_CLOSED,
    REASON_HEALTHY,
    REASON_INCOMPLETE,
    REASON_NOT_CRASH_LOOPING,
    REASON_TERMINATING,
    DecisionKind,
    FleetConfig,
    FleetSnapshot,
    RecoveryDecision,
    RecoveryLedger,
    ReplicaObservation,
)
from node_healer.services.threshold import gate_open, required_healthy

logger = logging.getLogger(__name__)


def _replica_decision(replica: ReplicaObservation, config: FleetConfig, ledger: RecoveryLedger) -> RecoveryDecision:
    if replica.is_healthy:
        return RecoveryDecision.no_action(replica, REASON_HEALTHY)
    if replica.is_terminating:
        return RecoveryDecision.no_action(replica, REASON_TERMINATING)
    if not replica.is_crash_looping:
        return RecoveryDecision.no_action(replica, REASON_NOT_CRASH_LOOPING)
    if replica.restart_count < config.restart_threshold:
        # Still accruing restarts; a single bad retry must not destroy data
        return RecoveryDecision.no_action(replica, REASON_BELOW_RESTART_THRESHOLD)
    if ledger.covers(replica):
        return RecoveryDecision.no_action(replica, REASON_AWAITING_REPLACEMENT)
    return RecoveryDecision.eligible(replica)


def evaluate(snapshot: FleetSnapshot, config: FleetConfig,
             ledger: Optional[RecoveryLedger] = None) -> Dict[str, RecoveryDecision]:
    """
    Decides, per replica, whether it may be destroyed and recreated this pass.

    The fleet gate (healthy >= required) guards everything: when it is closed
    too many replicas are down at once, which points at a systemic cause
    rather than per-replica data corruption, so every replica is skipped.
    Raises InvalidThreshold if the configured threshold is out of range.
    """
    ledger = ledger if ledger is not None else RecoveryLedger()

    if not snapshot.is_complete:
        logger.info(f"Fleet '{snapshot.fleet_name}' snapshot incomplete ({len(snapshot)}/{snapshot.desired_replicas}); deferring.")
        return {r.identity: RecoveryDecision.no_action(r, REASON_INCOMPLETE) for r in snapshot.replicas}

    healthy_count = snapshot.healthy_count
    required = required_healthy(config, len(snapshot))

    if not gate_open(healthy_count, required):
        logger.warning(
            f"Fleet '{snapshot.fleet_name}' gate closed: {healthy_count} healthy < {required} required. "
            f"Leaving all replicas alone."
        )
        return {r.identity: RecoveryDecision.skipped(r, REASON_GATE_CLOSED) for r in snapshot.replicas}

    decisions = {r.identity: _replica_decision(r, config, ledger) for r in snapshot.replicas}
    eligible = [d.identity for d in decisions.values() if d.kind == DecisionKind.ELIGIBLE]
    if eligible:
        logger.info(
            f"Fleet '{snapshot.fleet_name}': {len(eligible)} replica(s) eligible for recovery {eligible} "
            f"(healthy={healthy_count}, required={required}, restartThreshold={config.restart_threshold})"
        )
    return decisions
