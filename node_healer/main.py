import logging
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from node_healer.core.config import settings
from node_healer.core.logging_config import setup_logging
from node_healer.api.v1.api import api_router as api_v1_router
from node_healer.models.recovery import HealthResponse
from node_healer.services.driver import reconcile_driver
from node_healer.services.kubernetes_service import k8s_service

# Setup logging FIRST
setup_logging()
logger = logging.getLogger(__name__)

# Create FastAPI app instance
app = FastAPI(
    title=settings.APP_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    version="0.1.0"
)
# Include API router
app.include_router(api_v1_router, prefix=settings.API_V1_STR)

# Root endpoint
@app.get("/", tags=["Root"], summary="Root endpoint for service status")
async def read_root():
    """Returns a welcome message indicating the service is running."""
    return {"message": f"Welcome to the {settings.APP_NAME}"}

@app.get("/healthz", tags=["Root"], response_model=HealthResponse, summary="Liveness and reconciler state")
async def healthz():
    return HealthResponse(
        status="ok",
        kubernetes_available=k8s_service.is_available(),
        reconciler_running=reconcile_driver.is_running(),
        action_mode=settings.ACTION_MODE,
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Request validation error: {exc.errors()}", exc_info=False) # Don't need full stack trace usually
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": exc.errors()},
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception during request to {request.url}: {exc}", exc_info=True) # Log full trace for unexpected errors
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred."},
    )

# --- Startup/Shutdown Events ---
@app.on_event("startup")
async def startup_event():
    logger.info("Application startup...")
    if not settings.RECONCILER_ENABLED:
        logger.info("Reconcile loop disabled (RECONCILER_ENABLED=false).")
    elif not k8s_service.is_available():
        logger.warning("KUBERNETES CLIENT NOT AVAILABLE ON STARTUP - reconcile loop not started")
    else:
        reconcile_driver.start()
    logger.info(f"Application '{settings.APP_NAME}' started successfully.")
    logger.info(f"Action Mode: {settings.ACTION_MODE}")
    logger.info(f"Target Namespace: {settings.TARGET_NAMESPACE}")
    logger.info(f"Reconcile Interval: {settings.RECONCILE_INTERVAL_SECONDS}s")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutdown...")
    reconcile_driver.stop()
    logger.info("Application shutdown complete.")

# --- Run with Uvicorn (for local development) ---
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "node_healer.main:app",
        host="0.0.0.0",
        port=8000,
        log_level=settings.LOG_LEVEL.lower()
    )
