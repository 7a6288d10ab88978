# node_healer/services/executor.py
import logging
from typing import Dict

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from node_healer.core.exceptions import DeleteConflict, DeleteNotFound, RecordSaveError
from node_healer.models.fleet import (
    REASON_DRY_RUN,
    REASON_GATE_CLOSED,
    REASON_GATE_CLOSED_BY_PRIOR_ACTION,
    REASON_INCOMPLETE,
    DecisionKind,
    FleetConfig,
    FleetSnapshot,
    RecoveryDecision,
    RecoveryLedger,
    RecoveryRecord,
    ReplicaObservation,
    identity_sort_key,
)
from node_healer.services.threshold import gate_open, required_healthy

logger = logging.getLogger(__name__)

REASON_ALREADY_RECOVERED = "already recovered this incident"
REASON_NO_LONGER_CRASH_LOOPING = "no longer crash-looping"


class RecoveryExecutor:
    """
    Applies Eligible decisions one replica at a time.

    Before each destroy the fleet gate is checked again against the healthy
    count minus the replicas already destroyed this pass, so a batch of
    simultaneously eligible replicas can never take down more than the gate
    allows.
    """

    def __init__(self, kube, namespace: str, record_store, dry_run: bool = False):
        self.kube = kube
        self.namespace = namespace
        self.record_store = record_store
        self.dry_run = dry_run

    def execute(self, fleet_name: str, decisions: Dict[str, RecoveryDecision], snapshot: FleetSnapshot,
                config: FleetConfig, ledger: RecoveryLedger) -> Dict[str, RecoveryDecision]:
        outcomes = dict(decisions)
        eligible = sorted(
            (identity for identity, d in decisions.items() if d.kind == DecisionKind.ELIGIBLE),
            key=identity_sort_key,
        )
        if not eligible:
            return outcomes

        healthy_count = snapshot.healthy_count
        required = required_healthy(config, len(snapshot))
        destroyed = 0

        for identity in eligible:
            decision = decisions[identity]
            replica = snapshot.get(identity)
            if replica is None:
                outcomes[identity] = decision.downgraded(REASON_INCOMPLETE)
                continue

            if ledger.is_recorded(identity, replica.fingerprint):
                # Retry of an incident already handled: success, and does not count as a destroy
                logger.info(f"Replica '{identity}' already recovered (pod uid {replica.fingerprint}); nothing to do.")
                outcomes[identity] = decision.executed(REASON_ALREADY_RECOVERED)
                continue

            if replica.is_healthy or not replica.is_crash_looping:
                # Decision predates the snapshot; never destroy a replica that came back
                outcomes[identity] = decision.downgraded(REASON_NO_LONGER_CRASH_LOOPING)
                continue

            if not gate_open(healthy_count - destroyed, required):
                if destroyed == 0:
                    outcomes[identity] = decision.downgraded(REASON_GATE_CLOSED)
                    continue
                logger.warning(
                    f"Fleet '{fleet_name}': not recovering '{identity}', {destroyed} replica(s) already destroyed "
                    f"this pass leave {healthy_count - destroyed} healthy < {required} required."
                )
                outcomes[identity] = decision.downgraded(REASON_GATE_CLOSED_BY_PRIOR_ACTION)
                continue

            if self.dry_run:
                logger.warning(
                    f"DRY RUN: would delete pod '{identity}' and PVC '{replica.pvc_name}' "
                    f"(restarts={replica.restart_count})."
                )
                outcomes[identity] = decision.downgraded(REASON_DRY_RUN)
                destroyed += 1
                continue

            self._destroy(replica)
            ledger.record(RecoveryRecord(
                identity=identity,
                fingerprint=replica.fingerprint or "",
                pvc_name=replica.pvc_name,
                restart_count=replica.restart_count,
            ))
            destroyed += 1
            # Persist immediately so an interrupted pass does not repeat this delete
            try:
                self.record_store.save(fleet_name, ledger)
            except (ApiException, HTTPError) as e:
                logger.error(f"Fleet '{fleet_name}': '{identity}' destroyed but its recovery record was not saved: {e}")
                raise RecordSaveError(fleet_name, ledger, str(e))
            outcomes[identity] = decision.executed()
            logger.warning(
                f"Recovered replica '{identity}' of fleet '{fleet_name}': deleted PVC '{replica.pvc_name}' and pod "
                f"(restarts={replica.restart_count}). The owning controller will recreate both."
            )

        return outcomes

    def _destroy(self, replica: ReplicaObservation) -> None:
        """
        Deletes the PVC, then the pod. The PVC stays protected until the pod
        is gone, so the replacement pod always gets a fresh volume.
        Not-found and UID-conflict responses mean the work is already done.
        """
        if replica.pvc_name:
            pvc_uid = self.kube.get_pvc_uid(replica.pvc_name, self.namespace)
            if pvc_uid is None:
                logger.info(f"PVC '{replica.pvc_name}' already gone.")
            else:
                try:
                    self.kube.delete_pvc(replica.pvc_name, self.namespace, uid=pvc_uid)
                except (DeleteNotFound, DeleteConflict) as e:
                    logger.info(f"{e}; treating as already deleted.")
        else:
            logger.warning(f"Replica '{replica.identity}' has no PVC volume; deleting pod only.")

        try:
            self.kube.delete_pod(replica.identity, self.namespace, uid=replica.fingerprint)
        except (DeleteNotFound, DeleteConflict) as e:
            logger.info(f"{e}; treating as already deleted.")
