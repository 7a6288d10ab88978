# node_healer/models/recovery.py
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List, Union

from node_healer.models.fleet import DecisionKind


class ReconcilePhase(str, Enum):
    IDLE = "Idle"
    OBSERVING = "Observing"
    EVALUATING = "Evaluating"
    EXECUTING = "Executing"


class DecisionOut(BaseModel):
    identity: str
    decision: DecisionKind
    reason: Optional[str] = None
    restart_count: int = 0


class ReconcileResult(BaseModel):
    fleet_name: str
    namespace: str
    phase: ReconcilePhase = ReconcilePhase.IDLE
    enabled: bool = True # False when the fleet has no podFaultRecovery config
    action_mode: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    fleet_size: int = 0
    healthy_count: Optional[int] = None
    required_healthy: Optional[int] = None
    gate_open: Optional[bool] = None
    decisions: List[DecisionOut] = []
    cleared_records: List[str] = []
    attempts: int = 1
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def recovered(self) -> List[str]:
        return [d.identity for d in self.decisions if d.decision == DecisionKind.EXECUTED]


class ThresholdRequest(BaseModel):
    healthy_threshold: Union[int, str] = Field(..., description="Absolute count such as 3, or a percentage such as '50%'")
    fleet_size: int = Field(..., ge=0, description="Number of replicas in the fleet")


class ThresholdResponse(BaseModel):
    healthy_threshold: str
    fleet_size: int
    required_healthy: int
    tolerated_unhealthy: int


class HealthResponse(BaseModel):
    status: str
    kubernetes_available: bool
    reconciler_running: bool
    action_mode: str
