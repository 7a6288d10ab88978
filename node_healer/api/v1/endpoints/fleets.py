# node_healer/api/v1/endpoints/fleets.py
import logging
import time
from fastapi import APIRouter, HTTPException, status, Depends
from kubernetes.client.exceptions import ApiException
from node_healer.core.exceptions import FleetNotFound, InvalidThreshold
from node_healer.models.fleet import FleetConfig, parse_healthy_threshold
from node_healer.models.recovery import ReconcileResult, ThresholdRequest, ThresholdResponse
from node_healer.services.driver import reconcile_driver
from node_healer.services.kubernetes_service import k8s_service
from node_healer.services.threshold import required_healthy

logger = logging.getLogger(__name__)
router = APIRouter()

async def check_kubernetes_ready():
    """Dependency to check the Kubernetes client is usable."""
    if not k8s_service.is_available():
        logger.critical("Kubernetes service check failed: client not available.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Kubernetes client is not available."
        )

@router.get(
    "/fleets/{name}",
    response_model=ReconcileResult,
    summary="Last reconcile result for a fleet",
)
async def get_fleet_result(name: str) -> ReconcileResult:
    result = reconcile_driver.last_result(name)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Fleet '{name}' has not been reconciled yet.")
    return result

@router.post(
    "/fleets/{name}/reconcile",
    response_model=ReconcileResult,
    summary="Run one recovery pass for a fleet now",
    description="""
Observes the fleet's pods, computes the fleet gate from the configured healthyThreshold,
and destroys (pod + PVC) crash-looping replicas past their restartThreshold when the gate is open.
In `recommend` mode nothing is deleted.
    """,
    dependencies=[Depends(check_kubernetes_ready)]
)
def reconcile_fleet(name: str) -> ReconcileResult:
    start_time_ns = time.perf_counter_ns()
    logger.info(f"Received reconcile request for fleet: {name}")
    try:
        result = reconcile_driver.reconcile_with_retry(name)
    except FleetNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidThreshold as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except ApiException as e:
        logger.error(f"Kubernetes API error reconciling fleet {name}: {e.status} - {e.reason}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Kubernetes API error: {e.reason}")

    duration_ms = (time.perf_counter_ns() - start_time_ns) / 1_000_000
    logger.info(
        f"Reconciled fleet {name} in {duration_ms:.2f} ms. "
        f"Healthy={result.healthy_count} Required={result.required_healthy} Recovered={result.recovered}"
    )
    return result

@router.post(
    "/threshold/evaluate",
    response_model=ThresholdResponse,
    summary="Resolve a healthyThreshold against a fleet size",
)
async def evaluate_threshold(body: ThresholdRequest) -> ThresholdResponse:
    try:
        config = FleetConfig(healthy_threshold=parse_healthy_threshold(body.healthy_threshold))
        required = required_healthy(config, body.fleet_size)
    except InvalidThreshold as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return ThresholdResponse(
        healthy_threshold=str(config.healthy_threshold),
        fleet_size=body.fleet_size,
        required_healthy=required,
        tolerated_unhealthy=body.fleet_size - required,
    )
