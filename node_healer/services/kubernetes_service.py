# node_healer/services/kubernetes_service.py
import logging
from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError
from node_healer.core.config import settings
from node_healer.core.exceptions import (
    DeleteConflict,
    DeleteNotFound,
    DeleteTransientError,
    FleetNotFound,
)
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

class KubernetesService:
    def __init__(self):
        self.core_api: Optional[client.CoreV1Api] = None
        self.custom_api: Optional[client.CustomObjectsApi] = None
        self._load_config()

    def _load_config(self):
        """Loads Kubernetes configuration."""
        try:
            # Prioritize in-cluster config
            if os.getenv("KUBERNETES_SERVICE_HOST"):
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes config.")
            # Then check explicit path from settings
            elif settings.KUBE_CONFIG_PATH and os.path.exists(settings.KUBE_CONFIG_PATH):
                config.load_kube_config(config_file=settings.KUBE_CONFIG_PATH)
                logger.info(f"Loaded Kubernetes config from: {settings.KUBE_CONFIG_PATH}")
            # Fallback to default kubeconfig location
            else:
                config.load_kube_config()
                logger.info("Loaded default Kubernetes config (kubeconfig).")

            self.core_api = client.CoreV1Api()
            self.custom_api = client.CustomObjectsApi()
            logger.info("Kubernetes API clients initialized.")

        except config.ConfigException as e:
             logger.warning(f"Could not load Kubernetes config (normal if not in-cluster or no kubeconfig): {e}")
             self.core_api = None
             self.custom_api = None
        except Exception as e:
            logger.error(f"Unexpected error configuring Kubernetes client: {e}", exc_info=True)
            self.core_api = None
            self.custom_api = None

    def is_available(self) -> bool:
        """Check if K8s clients are initialized."""
        return self.core_api is not None and self.custom_api is not None

    # --- Fleet custom resources ---

    def list_fleets(self, namespace: str) -> List[Dict[str, Any]]:
        """Returns every fleet custom object in the namespace."""
        result = self.custom_api.list_namespaced_custom_object(
            group=settings.FLEET_GROUP,
            version=settings.FLEET_VERSION,
            namespace=namespace,
            plural=settings.FLEET_PLURAL,
        )
        return result.get("items", [])

    def get_fleet(self, name: str, namespace: str) -> Dict[str, Any]:
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=settings.FLEET_GROUP,
                version=settings.FLEET_VERSION,
                namespace=namespace,
                plural=settings.FLEET_PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                raise FleetNotFound(name, namespace)
            raise

    def patch_fleet_status(self, name: str, namespace: str, status: Dict[str, Any]) -> None:
        """Merges ``status`` into the fleet's status subresource."""
        self.custom_api.patch_namespaced_custom_object_status(
            group=settings.FLEET_GROUP,
            version=settings.FLEET_VERSION,
            namespace=namespace,
            plural=settings.FLEET_PLURAL,
            name=name,
            body={"status": status},
        )

    # --- Pods ---

    def list_fleet_pods(self, fleet_name: str, namespace: str) -> List[client.V1Pod]:
        """Lists the pods labelled as belonging to the fleet."""
        label_selector = f"{settings.FLEET_LABEL_KEY}={fleet_name}"
        logger.debug(f"Listing pods with selector '{label_selector}' in namespace '{namespace}'...")
        pod_list = self.core_api.list_namespaced_pod(namespace, label_selector=label_selector, timeout_seconds=10)
        return list(pod_list.items)

    def watch_fleet_pods(self, namespace: str, timeout_seconds: int = 300):
        """Yields (event_type, pod) for every pod carrying the fleet label, until the server closes the stream."""
        w = watch.Watch()
        for event in w.stream(
            self.core_api.list_namespaced_pod,
            namespace,
            label_selector=settings.FLEET_LABEL_KEY,
            timeout_seconds=timeout_seconds,
        ):
            yield event["type"], event["object"]

    # --- Deletion ---

    def delete_pod(self, pod_name: str, namespace: str, uid: Optional[str] = None) -> None:
        """Deletes a pod, optionally only if it still has the given UID."""
        self._delete("Pod", pod_name, namespace, uid, self.core_api.delete_namespaced_pod)

    def delete_pvc(self, pvc_name: str, namespace: str, uid: Optional[str] = None) -> None:
        """Deletes a PersistentVolumeClaim, optionally only if it still has the given UID."""
        self._delete("PersistentVolumeClaim", pvc_name, namespace, uid,
                     self.core_api.delete_namespaced_persistent_volume_claim)

    def get_pvc_uid(self, pvc_name: str, namespace: str) -> Optional[str]:
        try:
            pvc = self.core_api.read_namespaced_persistent_volume_claim(pvc_name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return pvc.metadata.uid

    def _delete(self, kind: str, name: str, namespace: str, uid: Optional[str], delete_fn) -> None:
        body = client.V1DeleteOptions(
            preconditions=client.V1Preconditions(uid=uid) if uid else None,
            propagation_policy="Background",
        )
        try:
            logger.info(f"Attempting to delete {kind} '{name}' in namespace '{namespace}'...")
            delete_fn(name=name, namespace=namespace, body=body, _request_timeout=settings.DELETE_TIMEOUT_SECONDS)
            logger.info(f"{kind} '{name}' deletion initiated successfully.")
        except ApiException as e:
            if e.status == 404:
                raise DeleteNotFound(kind, name, namespace, e.status, e.reason or "")
            if e.status == 409:
                raise DeleteConflict(kind, name, namespace, e.status, e.reason or "")
            if e.status == 429 or (e.status and e.status >= 500):
                raise DeleteTransientError(kind, name, namespace, e.status, e.reason or "")
            logger.error(f"Kubernetes API error deleting {kind} '{name}': {e.status} - {e.reason}")
            raise
        except HTTPError as e:
            raise DeleteTransientError(kind, name, namespace, reason=str(e))

    # --- Events ---

    def create_fleet_event(self, fleet: Dict[str, Any], event_type: str, reason: str, message: str) -> None:
        """Records a Kubernetes Event against the fleet object. Events are advisory; failures are logged only."""
        metadata = fleet.get("metadata", {})
        namespace = metadata.get("namespace") or settings.TARGET_NAMESPACE
        now = datetime.now(timezone.utc)
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{metadata.get('name', 'fleet')}.", namespace=namespace),
            involved_object=client.V1ObjectReference(
                api_version=f"{settings.FLEET_GROUP}/{settings.FLEET_VERSION}",
                kind=settings.FLEET_KIND,
                name=metadata.get("name"),
                namespace=namespace,
                uid=metadata.get("uid"),
            ),
            reason=reason,
            message=message,
            type=event_type,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
            source=client.V1EventSource(component="node-healer"),
        )
        try:
            self.core_api.create_namespaced_event(namespace, body)
        except ApiException as e:
            logger.warning(f"Failed to record event {reason} for fleet '{metadata.get('name')}': {e.status} - {e.reason}")


# Instantiate the service (singleton pattern)
k8s_service = KubernetesService()
