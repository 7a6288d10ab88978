# node_healer/services/driver.py
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from kubernetes.client.exceptions import ApiException
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)
from urllib3.exceptions import HTTPError

from node_healer.core.config import settings
from node_healer.core.exceptions import (
    DeleteTransientError,
    FleetNotFound,
    HealerError,
    InvalidThreshold,
    ObservationIncomplete,
    RecordSaveError,
)
from node_healer.models.fleet import (
    REASON_BELOW_RESTART_THRESHOLD,
    REASON_DRY_RUN,
    REASON_GATE_CLOSED,
    REASON_GATE_CLOSED_BY_PRIOR_ACTION,
    REASON_RECOVERED,
    DecisionKind,
    FleetConfig,
    FleetSnapshot,
    RecoveryDecision,
    RecoveryLedger,
)
from node_healer.models.recovery import DecisionOut, ReconcilePhase, ReconcileResult
from node_healer.services.eligibility import evaluate
from node_healer.services.executor import RecoveryExecutor
from node_healer.services.observer import FleetObserver, observe_pod
from node_healer.services.kubernetes_service import k8s_service
from node_healer.services.records import FleetStatusRecordStore, recovery_status
from node_healer.services.threshold import gate_open, required_healthy

logger = logging.getLogger(__name__)

CONDITION_DEGRADED = "PodFaultRecoveryDegraded"

# Failures a fresh pass can resolve
TRANSIENT_ERRORS = (DeleteTransientError, RecordSaveError)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def set_condition(conditions: list, ctype: str, status: str, reason: str, message: str) -> list:
    """Upsert a condition; lastTransitionTime only moves when the status flips."""
    for c in conditions:
        if c.get("type") == ctype:
            if c.get("status") != status:
                c["lastTransitionTime"] = _now()
            c["status"] = status
            c["reason"] = reason
            c["message"] = message
            return conditions
    conditions.append({
        "type": ctype,
        "status": status,
        "reason": reason,
        "message": message,
        "lastTransitionTime": _now(),
    })
    return conditions


def expected_identities(fleet_name: str, replicas: int) -> List[str]:
    return [f"{fleet_name}-{i}" for i in range(replicas)]


class ReconcileDriver:
    """
    Runs Observe -> Evaluate -> Execute for each fleet.

    One pass per fleet at a time (per-fleet lock); fleets run concurrently on
    a worker pool. Passes are re-entered on a fixed interval and whenever the
    pod watch reports a restart, readiness or crash-loop change. The only state
    carried between passes is the recovery ledger, which lives on the fleet
    object itself.
    """

    def __init__(self, kube, record_store, namespace: Optional[str] = None,
                 dry_run: Optional[bool] = None, sleep: Callable[[float], None] = time.sleep):
        self.kube = kube
        self.namespace = namespace or settings.TARGET_NAMESPACE
        self.dry_run = (settings.ACTION_MODE != "automate") if dry_run is None else dry_run
        self.record_store = record_store
        self.observer = FleetObserver(kube, self.namespace)
        self.executor = RecoveryExecutor(kube, self.namespace, record_store, dry_run=self.dry_run)
        self._sleep = sleep

        self._phases: Dict[str, ReconcilePhase] = {}
        self._results: Dict[str, ReconcileResult] = {}
        self._fleet_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._last_run: Dict[str, float] = {}
        self._pending: set = set()
        self._pending_guard = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._pool: Optional[ThreadPoolExecutor] = None
        self._watch_signatures: Dict[str, tuple] = {}
        self._known_fleets: set = set()
        self._unsaved: Dict[str, RecoveryLedger] = {}

    # --- Introspection ---

    def phase(self, fleet_name: str) -> ReconcilePhase:
        return self._phases.get(fleet_name, ReconcilePhase.IDLE)

    def last_result(self, fleet_name: str) -> Optional[ReconcileResult]:
        return self._results.get(fleet_name)

    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    # --- A single pass ---

    def reconcile(self, fleet_name: str) -> ReconcileResult:
        """
        One pass over one fleet. Raises FleetNotFound, InvalidThreshold,
        DeleteTransientError and RecordSaveError; an incomplete observation
        just ends the pass.
        """
        result = ReconcileResult(fleet_name=fleet_name, namespace=self.namespace,
                                 action_mode="recommend" if self.dry_run else "automate")
        try:
            self._reconcile(fleet_name, result)
        except RecordSaveError as e:
            # Kept until a later pass manages to write it
            self._unsaved[fleet_name] = e.ledger
            result.error = str(e)
            raise
        finally:
            self._phases[fleet_name] = ReconcilePhase.IDLE
            result.phase = ReconcilePhase.IDLE
            result.finished_at = datetime.now(timezone.utc)
            self._results[fleet_name] = result
        return result

    def _reconcile(self, fleet_name: str, result: ReconcileResult) -> None:
        fleet = self.kube.get_fleet(fleet_name, self.namespace)
        spec = fleet.get("spec") or {}
        recovery_spec = (spec.get("selfHealing") or {}).get("podFaultRecovery")
        if not recovery_spec:
            logger.debug(f"Fleet '{fleet_name}' has no podFaultRecovery settings; skipping.")
            result.enabled = False
            result.skipped_reason = "podFaultRecovery not configured"
            return

        try:
            config = FleetConfig.from_spec(recovery_spec, settings.DEFAULT_RESTART_THRESHOLD)
            required_healthy(config, 1)
        except InvalidThreshold as e:
            logger.error(f"Fleet '{fleet_name}': {e}. No recovery action taken.")
            result.error = str(e)
            self._surface_degraded(fleet, "InvalidThreshold", str(e))
            raise
        self._clear_degraded(fleet, "InvalidThreshold")

        replicas = int(spec.get("replicas") or 0)
        result.fleet_size = replicas
        if replicas == 1:
            logger.warning(f"Fleet '{fleet_name}' has a single replica; pod fault recovery is not recommended.")

        self._phases[fleet_name] = ReconcilePhase.OBSERVING
        try:
            snapshot = self.observer.observe(fleet_name, expected_identities(fleet_name, replicas))
        except ObservationIncomplete as e:
            logger.info(f"{e}. Deferring to the next pass.")
            result.skipped_reason = str(e)
            return

        ledger = self.record_store.load(fleet)
        dirty = False
        unsaved = self._unsaved.pop(fleet_name, None)
        if unsaved is not None:
            restored = ledger.merge(unsaved)
            if restored:
                logger.info(f"Fleet '{fleet_name}': restoring unsaved recovery records {restored}.")
                dirty = True
        cleared = ledger.clear_recovered(snapshot)
        if cleared:
            logger.info(f"Fleet '{fleet_name}': replicas {cleared} healthy again; clearing recovery records.")
            result.cleared_records = cleared
            dirty = True
        if dirty:
            self._save_ledger(fleet_name, ledger)

        self._phases[fleet_name] = ReconcilePhase.EVALUATING
        required = required_healthy(config, len(snapshot))
        result.healthy_count = snapshot.healthy_count
        result.required_healthy = required
        result.gate_open = gate_open(snapshot.healthy_count, required)
        decisions = evaluate(snapshot, config, ledger)

        self._phases[fleet_name] = ReconcilePhase.EXECUTING
        outcomes = self.executor.execute(fleet_name, decisions, snapshot, config, ledger)
        result.decisions = [
            DecisionOut(identity=d.identity, decision=d.kind, reason=d.reason, restart_count=d.restart_count)
            for d in outcomes.values()
        ]
        self._publish(fleet, snapshot, config, outcomes, result)
        self._clear_degraded(fleet, "RecoveryRetriesExhausted")

    def _save_ledger(self, fleet_name: str, ledger) -> None:
        try:
            self.record_store.save(fleet_name, ledger)
        except (ApiException, HTTPError) as e:
            raise RecordSaveError(fleet_name, ledger, str(e))

    # --- Retry / backoff ---

    def reconcile_with_retry(self, fleet_name: str) -> ReconcileResult:
        """
        Runs passes until one completes without a transient failure.
        Each retry recomputes from live state; already-destroyed replicas are
        recognised through their recovery records.
        """
        retrying = Retrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            wait=wait_exponential(multiplier=settings.RETRY_BASE_DELAY_SECONDS, max=settings.RETRY_MAX_DELAY_SECONDS),
            stop=stop_after_attempt(settings.RETRY_MAX_ATTEMPTS) | stop_when_event_set(self._stop),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = self.reconcile(fleet_name)
        except TRANSIENT_ERRORS as e:
            logger.error(f"Fleet '{fleet_name}': giving up after {attempts} attempt(s): {e}")
            result = self._results[fleet_name]
            result.error = str(e)
            result.attempts = attempts
            self._surface_retries_exhausted(fleet_name, e)
            return result
        result.attempts = attempts
        return result

    # --- Status and events (advisory) ---

    def _publish(self, fleet: Dict[str, Any], snapshot: FleetSnapshot, config: FleetConfig,
                 outcomes: Dict[str, RecoveryDecision], result: ReconcileResult) -> None:
        fleet_name = snapshot.fleet_name
        gate_closed = any(d.reason == REASON_GATE_CLOSED for d in outcomes.values())
        if gate_closed:
            withheld = [r.identity for r in snapshot.replicas
                        if r.is_crash_looping and r.restart_count >= config.restart_threshold]
            if withheld:
                self._event(fleet, "Warning", "GateClosed",
                            f"{result.healthy_count} healthy < {result.required_healthy} required; "
                            f"not recovering crash-looping replicas {withheld}")

        for decision in outcomes.values():
            if decision.kind == DecisionKind.EXECUTED and decision.reason == REASON_RECOVERED:
                self._event(fleet, "Normal", "ReplicaRecovered",
                            f"Deleted pod and PVC of {decision.identity} after {decision.restart_count} restarts")
            elif decision.reason == REASON_GATE_CLOSED_BY_PRIOR_ACTION:
                self._event(fleet, "Warning", "RecoverySkipped",
                            f"{decision.identity}: {decision.reason}")
            elif decision.reason == REASON_DRY_RUN:
                self._event(fleet, "Normal", "RecoveryDryRun",
                            f"{decision.identity}: {decision.reason} (restarts={decision.restart_count})")
            elif decision.reason == REASON_BELOW_RESTART_THRESHOLD:
                self._event(fleet, "Normal", "RecoverySkipped",
                            f"{decision.identity}: {decision.reason} "
                            f"({decision.restart_count} < {config.restart_threshold})")

        self._patch_status(fleet_name, {
            "lastPass": {
                "time": _now(),
                "healthy": result.healthy_count,
                "required": result.required_healthy,
                "gateOpen": result.gate_open,
                "recovered": result.recovered,
            }
        })

    def _event(self, fleet: Dict[str, Any], event_type: str, reason: str, message: str) -> None:
        logger.info(f"Event {reason} on fleet '{fleet['metadata']['name']}': {message}")
        self.kube.create_fleet_event(fleet, event_type, reason, message)

    def _surface_degraded(self, fleet: Dict[str, Any], reason: str, message: str) -> None:
        conditions = list(recovery_status(fleet).get("conditions") or [])
        current = next((c for c in conditions if c.get("type") == CONDITION_DEGRADED), None)
        already = current is not None and current.get("status") == "True" and current.get("reason") == reason
        set_condition(conditions, CONDITION_DEGRADED, "True", reason, message)
        self._patch_status(fleet["metadata"]["name"], {"conditions": conditions})
        # One event per transition, not one per pass
        if not already:
            self._event(fleet, "Warning", reason, message)

    def _clear_degraded(self, fleet: Dict[str, Any], reason: str) -> None:
        conditions = list(recovery_status(fleet).get("conditions") or [])
        current = next((c for c in conditions if c.get("type") == CONDITION_DEGRADED), None)
        if current and current.get("status") == "True" and current.get("reason") == reason:
            logger.info(f"Fleet '{fleet['metadata']['name']}' no longer degraded ({reason}).")
            set_condition(conditions, CONDITION_DEGRADED, "False", "Resolved", "")
            self._patch_status(fleet["metadata"]["name"], {"conditions": conditions})

    def _surface_retries_exhausted(self, fleet_name: str, error: Exception) -> None:
        try:
            fleet = self.kube.get_fleet(fleet_name, self.namespace)
        except (HealerError, ApiException) as e:
            logger.warning(f"Could not surface retry exhaustion on fleet '{fleet_name}': {e}")
            return
        self._surface_degraded(fleet, "RecoveryRetriesExhausted", str(error))

    def _patch_status(self, fleet_name: str, recovery: Dict[str, Any]) -> None:
        try:
            self.kube.patch_fleet_status(fleet_name, self.namespace, {"selfHealing": {"podFaultRecovery": recovery}})
        except ApiException as e:
            logger.warning(f"Failed to update status of fleet '{fleet_name}': {e.status} - {e.reason}")

    # --- Scheduling ---

    def _fleet_lock(self, fleet_name: str) -> threading.Lock:
        with self._locks_guard:
            return self._fleet_locks.setdefault(fleet_name, threading.Lock())

    def _run_fleet(self, fleet_name: str) -> Optional[ReconcileResult]:
        lock = self._fleet_lock(fleet_name)
        if not lock.acquire(blocking=False):
            logger.debug(f"Fleet '{fleet_name}' already being reconciled; requeueing.")
            self.enqueue(fleet_name)
            return None
        try:
            self._last_run[fleet_name] = time.monotonic()
            return self.reconcile_with_retry(fleet_name)
        except FleetNotFound as e:
            logger.info(f"{e}; forgetting it.")
            self._known_fleets.discard(fleet_name)
        except HealerError as e:
            # Local to this fleet; other fleets carry on
            logger.error(f"Reconcile of fleet '{fleet_name}' failed: {e}")
        except ApiException as e:
            logger.error(f"Kubernetes API error reconciling fleet '{fleet_name}': {e.status} - {e.reason}")
        except Exception as e:
            logger.error(f"Unexpected error reconciling fleet '{fleet_name}': {e}", exc_info=True)
        finally:
            lock.release()
        return self._results.get(fleet_name)

    def run_once(self, fleet_names: Optional[Iterable[str]] = None) -> Dict[str, Optional[ReconcileResult]]:
        """Reconciles the given fleets (all fleets if None) concurrently and waits for them."""
        if fleet_names is None:
            fleet_names = self.refresh_fleets()
        names = sorted(set(fleet_names))
        if not names:
            return {}
        pool = self._pool or ThreadPoolExecutor(max_workers=settings.RECONCILER_WORKERS)
        try:
            futures = {name: pool.submit(self._run_fleet, name) for name in names}
            return {name: future.result() for name, future in futures.items()}
        finally:
            if pool is not self._pool:
                pool.shutdown(wait=True)

    def refresh_fleets(self) -> List[str]:
        """Lists the fleets in the namespace and remembers their names for the pod watch."""
        names = sorted(f["metadata"]["name"] for f in self.kube.list_fleets(self.namespace))
        self._known_fleets = set(names)
        return names

    def enqueue(self, fleet_name: str) -> None:
        with self._pending_guard:
            self._pending.add(fleet_name)
        self._wake.set()

    def _take_due(self) -> List[str]:
        """Pops pending fleets that are past their minimum interval."""
        now = time.monotonic()
        due = []
        with self._pending_guard:
            for name in list(self._pending):
                last = self._last_run.get(name)
                if last is None or now - last >= settings.RECONCILE_MIN_INTERVAL_SECONDS:
                    due.append(name)
                    self._pending.discard(name)
        return due

    def _loop(self) -> None:
        logger.info(f"Reconcile loop started (interval={settings.RECONCILE_INTERVAL_SECONDS}s, namespace={self.namespace}).")
        next_sweep = 0.0
        while not self._stop.is_set():
            try:
                if time.monotonic() >= next_sweep:
                    next_sweep = time.monotonic() + settings.RECONCILE_INTERVAL_SECONDS
                    self.run_once()
                else:
                    due = self._take_due()
                    if due:
                        self.run_once(due)
            except ApiException as e:
                logger.error(f"Failed to list fleets: {e.status} - {e.reason}")
            except Exception as e:
                logger.error(f"Reconcile loop error: {e}", exc_info=True)

            with self._pending_guard:
                has_pending = bool(self._pending)
            timeout = settings.RECONCILE_MIN_INTERVAL_SECONDS if has_pending else max(0.0, next_sweep - time.monotonic())
            self._wake.wait(timeout)
            self._wake.clear()
        logger.info("Reconcile loop stopped.")

    def _watch(self) -> None:
        logger.info("Pod watch started.")
        while not self._stop.is_set():
            try:
                for event_type, pod in self.kube.watch_fleet_pods(self.namespace):
                    if self._stop.is_set():
                        break
                    self.handle_pod_event(event_type, pod)
            except (ApiException, HTTPError) as e:
                logger.warning(f"Pod watch interrupted: {e}; re-establishing.")
                self._stop.wait(5)
        logger.info("Pod watch stopped.")

    def handle_pod_event(self, event_type: str, pod) -> bool:
        """
        Queues the pod's fleet when its restart count, readiness or crash-loop
        state changed. Other workloads share the label key, so only names seen
        in the last fleet listing count.
        """
        labels = pod.metadata.labels or {}
        fleet_name = labels.get(settings.FLEET_LABEL_KEY)
        if not fleet_name or fleet_name not in self._known_fleets:
            return False
        key = f"{fleet_name}/{pod.metadata.name}"
        if event_type == "DELETED":
            self._watch_signatures.pop(key, None)
            self.enqueue(fleet_name)
            return True
        obs = observe_pod(pod, settings.NODE_CONTAINER_NAME, settings.DATA_VOLUME_NAME)
        signature = (obs.fingerprint, obs.restart_count, obs.is_crash_looping, obs.is_healthy)
        if self._watch_signatures.get(key) == signature:
            return False
        self._watch_signatures[key] = signature
        self.enqueue(fleet_name)
        return True

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._pool = ThreadPoolExecutor(max_workers=settings.RECONCILER_WORKERS, thread_name_prefix="reconcile")
        targets = [self._loop]
        if settings.WATCH_ENABLED:
            targets.append(self._watch)
        self._threads = [threading.Thread(target=t, name=t.__name__.strip("_"), daemon=True) for t in targets]
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        self._wake.set()
        for thread in self._threads:
            # The watch thread may sit in a long poll; it is a daemon and exits with the process
            thread.join(timeout if thread.name == "loop" else 0.1)
        if self._pool is not None:
            self._pool.shutdown(wait=False)
            self._pool = None
        self._threads = []


# Instantiate the driver (singleton pattern)
reconcile_driver = ReconcileDriver(k8s_service, FleetStatusRecordStore(k8s_service, settings.TARGET_NAMESPACE))
