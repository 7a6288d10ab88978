# node_healer/services/observer.py
import logging
from typing import Iterable, List, Optional

from kubernetes import client

from node_healer.core.config import settings
from node_healer.core.exceptions import ObservationIncomplete
from node_healer.models.fleet import FleetSnapshot, ReplicaObservation

logger = logging.getLogger(__name__)

# Waiting reasons that mean the kubelet keeps failing to (re)start the container.
# Normal rollout terminations and ContainerCreating are deliberately absent.
CRASH_LOOP_REASONS = frozenset({"CrashLoopBackOff"})


def _node_container_status(pod: client.V1Pod, container_name: str) -> Optional[client.V1ContainerStatus]:
    for status in (pod.status and pod.status.container_statuses) or []:
        if status.name == container_name:
            return status
    return None


def _is_pod_ready(pod: client.V1Pod) -> bool:
    for condition in (pod.status and pod.status.conditions) or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def _pvc_name(pod: client.V1Pod, volume_name: Optional[str]) -> Optional[str]:
    claims = [
        (v.name, v.persistent_volume_claim.claim_name)
        for v in (pod.spec and pod.spec.volumes) or []
        if v.persistent_volume_claim is not None
    ]
    if volume_name:
        for name, claim in claims:
            if name == volume_name:
                return claim
        return None
    return claims[0][1] if claims else None


def observe_pod(pod: client.V1Pod, container_name: str, volume_name: Optional[str] = None) -> ReplicaObservation:
    """Extracts one replica's observation from a pod. Only the node container counts."""
    status = _node_container_status(pod, container_name)
    restart_count = 0
    crash_looping = False
    if status is not None:
        restart_count = status.restart_count or 0
        waiting = status.state.waiting if status.state else None
        crash_looping = bool(waiting and waiting.reason in CRASH_LOOP_REASONS)

    terminating = pod.metadata.deletion_timestamp is not None
    healthy = _is_pod_ready(pod) and not crash_looping and not terminating

    return ReplicaObservation(
        identity=pod.metadata.name,
        restart_count=restart_count,
        is_crash_looping=crash_looping,
        is_healthy=healthy,
        fingerprint=pod.metadata.uid,
        pvc_name=_pvc_name(pod, volume_name),
        is_terminating=terminating,
    )


class FleetObserver:
    """Reads the fleet's pods and turns them into a FleetSnapshot. Read-only."""

    def __init__(self, kube, namespace: Optional[str] = None,
                 container_name: Optional[str] = None, volume_name: Optional[str] = None):
        self.kube = kube
        self.namespace = namespace or settings.TARGET_NAMESPACE
        self.container_name = container_name or settings.NODE_CONTAINER_NAME
        self.volume_name = volume_name if volume_name is not None else settings.DATA_VOLUME_NAME

    def observe(self, fleet_name: str, expected_identities: Iterable[str]) -> FleetSnapshot:
        """
        Returns a snapshot covering exactly the expected identities.

        Raises ObservationIncomplete when any expected replica has no visible
        pod, e.g. mid-rollout or while a replacement is being scheduled.
        Pods outside the expected set (scale-down in progress) are ignored.
        """
        expected: List[str] = list(expected_identities)
        pods = {pod.metadata.name: pod for pod in self.kube.list_fleet_pods(fleet_name, self.namespace)}

        missing = [name for name in expected if name not in pods]
        if missing:
            raise ObservationIncomplete(fleet_name, missing)

        observations = [observe_pod(pods[name], self.container_name, self.volume_name) for name in expected]
        snapshot = FleetSnapshot.build(fleet_name, len(expected), observations)
        logger.debug(
            f"Observed fleet '{fleet_name}': {snapshot.healthy_count}/{len(snapshot)} healthy, "
            f"crash-looping={[r.identity for r in snapshot.replicas if r.is_crash_looping]}"
        )
        return snapshot
