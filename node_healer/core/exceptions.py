# node_healer/core/exceptions.py
from typing import Iterable, Optional


class HealerError(Exception):
    """Base class for errors raised while reconciling a fleet."""


class ObservationIncomplete(HealerError):
    """Fewer replicas are visible than the fleet expects; skip this pass."""

    def __init__(self, fleet_name: str, missing: Iterable[str]):
        self.fleet_name = fleet_name
        self.missing = sorted(missing)
        super().__init__(
            f"Fleet '{fleet_name}' observation incomplete: missing {len(self.missing)} replica(s) {self.missing}"
        )


class InvalidThreshold(HealerError):
    """The configured healthy threshold cannot be resolved."""

    def __init__(self, value, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid healthyThreshold {value!r}: {reason}")


class FleetNotFound(HealerError):
    def __init__(self, fleet_name: str, namespace: str):
        self.fleet_name = fleet_name
        self.namespace = namespace
        super().__init__(f"Fleet '{fleet_name}' not found in namespace '{namespace}'")


class DeleteError(HealerError):
    """A delete call against the cluster did not complete normally."""

    def __init__(self, kind: str, name: str, namespace: str, status: Optional[int] = None, reason: str = ""):
        self.kind = kind
        self.name = name
        self.namespace = namespace
        self.status = status
        self.reason = reason
        detail = f" ({status} {reason})" if status else (f" ({reason})" if reason else "")
        super().__init__(f"Deleting {kind} '{name}' in '{namespace}' failed{detail}")


class DeleteNotFound(DeleteError):
    """The object is already gone."""


class DeleteConflict(DeleteError):
    """The UID precondition no longer matches: the object was already replaced."""


class DeleteTransientError(DeleteError):
    """Network error, throttling or a server-side failure; retry with backoff."""


class RecordSaveError(HealerError):
    """Recovery records could not be persisted after a destroy; the unsaved ledger is carried along."""

    def __init__(self, fleet_name: str, ledger, reason: str = ""):
        self.fleet_name = fleet_name
        self.ledger = ledger
        self.reason = reason
        super().__init__(f"Saving recovery records of fleet '{fleet_name}' failed: {reason}")
