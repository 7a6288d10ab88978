# node_healer/services/records.py
import logging
from typing import Any, Dict, List

from pydantic import ValidationError

from node_healer.models.fleet import RecoveryLedger, RecoveryRecord

logger = logging.getLogger(__name__)

STATUS_KEY = "selfHealing"
RECOVERY_KEY = "podFaultRecovery"


def recovery_status(fleet: Dict[str, Any]) -> Dict[str, Any]:
    """Returns ``status.selfHealing.podFaultRecovery`` of a fleet object, or {}."""
    return ((fleet.get("status") or {}).get(STATUS_KEY) or {}).get(RECOVERY_KEY) or {}


class InMemoryRecordStore:
    """Keeps ledgers in process memory. Records are lost on restart."""

    def __init__(self):
        self._ledgers: Dict[str, List[RecoveryRecord]] = {}

    def load(self, fleet: Dict[str, Any]) -> RecoveryLedger:
        return RecoveryLedger(self._ledgers.get(fleet["metadata"]["name"], []))

    def save(self, fleet_name: str, ledger: RecoveryLedger) -> None:
        self._ledgers[fleet_name] = ledger.records()


class FleetStatusRecordStore:
    """
    Persists recovery records in the fleet object's status subresource so a
    restarted controller still recognises incidents it already acted on.
    """

    def __init__(self, kube, namespace: str):
        self.kube = kube
        self.namespace = namespace

    def load(self, fleet: Dict[str, Any]) -> RecoveryLedger:
        records = []
        for raw in recovery_status(fleet).get("records") or []:
            try:
                records.append(RecoveryRecord.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Dropping malformed recovery record on fleet '{fleet['metadata']['name']}': {e}")
        return RecoveryLedger(records)

    def save(self, fleet_name: str, ledger: RecoveryLedger) -> None:
        body = {
            STATUS_KEY: {
                RECOVERY_KEY: {
                    "records": [r.model_dump(mode="json") for r in ledger.records()],
                }
            }
        }
        self.kube.patch_fleet_status(fleet_name, self.namespace, body)
        logger.debug(f"Persisted {len(ledger)} recovery record(s) for fleet '{fleet_name}'.")
