# node_healer/core/config.py
from pydantic_settings import BaseSettings
from pydantic import Field, validator
from typing import Optional
import logging

logger = logging.getLogger(__name__)

class Settings(BaseSettings):
    APP_NAME: str = "Chain Node Healer"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Recovery Settings
    ACTION_MODE: str = Field("recommend", description="'recommend' (dry run, log only) or 'automate' (delete pod + PVC)")
    TARGET_NAMESPACE: str = Field("default", description="Kubernetes namespace holding the managed fleets")
    DEFAULT_RESTART_THRESHOLD: int = Field(5, description="Restart threshold used when a fleet does not set one")

    # Fleet custom resource (the object that carries podFaultRecovery config)
    FLEET_GROUP: str = "cosmos.strange.love"
    FLEET_VERSION: str = "v1"
    FLEET_PLURAL: str = "cosmosfullnodes"
    FLEET_KIND: str = "CosmosFullNode"
    FLEET_LABEL_KEY: str = Field("app.kubernetes.io/name", description="Pod label whose value is the fleet name")

    # Which container and volume make up a replica's chain state
    NODE_CONTAINER_NAME: str = Field("node", description="Only this container's restarts count towards recovery")
    DATA_VOLUME_NAME: Optional[str] = Field(None, description="Pod volume backed by the chain-data PVC; first PVC volume if unset")

    # Reconcile loop
    RECONCILER_ENABLED: bool = True
    WATCH_ENABLED: bool = True
    RECONCILE_INTERVAL_SECONDS: float = Field(60.0, description="Seconds between full sweeps of all fleets")
    RECONCILE_MIN_INTERVAL_SECONDS: float = Field(5.0, description="Minimum seconds between two passes of the same fleet")
    RECONCILER_WORKERS: int = Field(4, description="Fleets reconciled concurrently")

    # Retry / backoff for transient delete failures
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 60.0
    RETRY_MAX_ATTEMPTS: int = 5
    DELETE_TIMEOUT_SECONDS: int = 30

    # Kubernetes Config - leave blank to use in-cluster or default kubeconfig
    KUBE_CONFIG_PATH: Optional[str] = None

    @validator('ACTION_MODE')
    def validate_action_mode(cls, v):
        if v not in ['recommend', 'automate']:
            raise ValueError("ACTION_MODE must be either 'recommend' or 'automate'")
        return v

    @validator('DEFAULT_RESTART_THRESHOLD', 'RECONCILER_WORKERS', 'RETRY_MAX_ATTEMPTS')
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    class Config:
        env_file = '.env' # Load environment variables from .env file
        env_file_encoding = 'utf-8'
        extra = 'ignore' # Ignore extra fields from environment

settings = Settings()

if settings.ACTION_MODE == "recommend":
    logger.warning("ACTION_MODE is 'recommend'. Crash-looping replicas will be reported but never destroyed.")
