"""
Main FastAPI application for marketsync.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from ..bootstrap import Runtime
from ..connectors import CONNECTOR_REGISTRY
from ..core.config import AppSettings
from ..engine.delivery import WebhookDeliveryProcessor
from ..engine.sync import SyncService
from ..engine.worker import SyncWorker
from ..exceptions import (
    ConfigurationError, JobStateError, MarketplaceAPIError, MarketSyncException,
    NotFoundError, WebhookSignatureError
)
from ..models.sync import SyncCadence, SyncJob, SyncJobPayload, SyncStatistics
from ..models.webhook import WebhookDeliveryJob
from ..services.webhooks import WebhookService
from ..version import __version__

logger = logging.getLogger(__name__)

settings = AppSettings.from_env()

# Global runtime (initialized in lifespan)
runtime: Optional[Runtime] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global runtime

    try:
        runtime = Runtime(settings)
        logger.info("Application startup complete")
    except Exception as e:
        logger.error(f"Failed to initialize application services: {e}")
        # Let the app start; endpoints needing services answer 500
        runtime = None

    yield

    logger.info("Application shutdown")


app = FastAPI(
    title="marketsync API",
    description="Incremental synchronization of marketplace seller data",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    # Default to allowing all for local dev if not set
    allow_origins=settings.allowed_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS = [
    (NotFoundError, 404),
    (JobStateError, 409),
    (WebhookSignatureError, 401),
    (ConfigurationError, 400),
    (MarketplaceAPIError, 502),
]


@app.exception_handler(MarketSyncException)
async def marketsync_exception_handler(request: Request, exc: MarketSyncException):
    status_code = 500
    for exc_type, code in ERROR_STATUS:
        if isinstance(exc, exc_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# Dependency injection
def _require_runtime() -> Runtime:
    if runtime is None:
        raise HTTPException(status_code=500, detail="Services not initialized")
    return runtime


def get_sync_service() -> SyncService:
    return _require_runtime().sync_service


def get_sync_worker() -> SyncWorker:
    return _require_runtime().worker


def get_webhook_service() -> WebhookService:
    return _require_runtime().webhooks


def get_delivery_processor() -> WebhookDeliveryProcessor:
    return _require_runtime().delivery


def get_runtime() -> Runtime:
    return _require_runtime()


# Request models

class SyncJobRequest(BaseModel):
    type: Optional[str] = Field(None, description="sales, products, stock, orders, regional or full")
    params: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = "api"


class DeliveryRequest(BaseModel):
    url: str
    payload: Any = None
    headers: Dict[str, str] = Field(default_factory=dict)
    account_id: Optional[str] = None
    max_attempts: Optional[int] = Field(None, ge=1)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Check the health of the application and its services."""
    return {
        "status": "healthy",
        "version": __version__,
        "services": {"runtime": runtime is not None},
    }


@app.get("/api/v1/connectors")
async def list_connectors():
    """List available marketplace connectors and their capabilities."""
    return {
        "connectors": [marketplace.value for marketplace in CONNECTOR_REGISTRY],
        "details": {
            marketplace.value: {
                "class": connector_class.__name__,
                "required_credentials": list(connector_class.required_credentials),
                "capabilities": connector_class().get_capabilities().model_dump(),
            }
            for marketplace, connector_class in CONNECTOR_REGISTRY.items()
        },
    }


# Webhooks

@app.post("/webhooks/{marketplace_type}")
async def receive_webhook(
    marketplace_type: str,
    request: Request,
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """Receive a signed marketplace notification."""
    body = await request.body()
    return await run_in_threadpool(webhooks.receive, marketplace_type, body, dict(request.headers))


@app.post("/api/v1/webhook-deliveries", status_code=202)
def schedule_webhook_delivery(
    request: DeliveryRequest,
    delivery: WebhookDeliveryProcessor = Depends(get_delivery_processor),
):
    """Schedule an outbound webhook delivery with retries."""
    event = delivery.schedule_delivery(
        request.url, request.payload, request.headers, request.account_id, request.max_attempts
    )
    return {"event_id": event.id, "status": event.status.value}


# Sync jobs

@app.post("/api/v1/sync/accounts/{account_id}", response_model=SyncJob, status_code=202)
def create_sync_job(
    account_id: str,
    request: Optional[SyncJobRequest] = None,
    sync: SyncService = Depends(get_sync_service),
):
    """Enqueue a sync job; returns the already active job if there is one."""
    request = request or SyncJobRequest()
    return sync.create_sync_job(account_id, request.type, request.params, triggered_by=request.triggered_by)


@app.get("/api/v1/sync/accounts/{account_id}/jobs", response_model=List[SyncJob])
def list_sync_jobs(account_id: str, limit: int = 50, sync: SyncService = Depends(get_sync_service)):
    return sync.get_sync_jobs(account_id, limit=limit)


@app.get("/api/v1/sync/accounts/{account_id}/statistics", response_model=SyncStatistics)
def get_sync_statistics(account_id: str, sync: SyncService = Depends(get_sync_service)):
    return sync.get_sync_statistics(account_id)


@app.get("/api/v1/sync/accounts/{account_id}/plan")
def preview_sync_plan(account_id: str, sync: SyncService = Depends(get_sync_service)):
    """Show which window the next scheduled sync would fetch."""
    return sync.preview_plan(account_id)


@app.get("/api/v1/sync/jobs/{job_id}", response_model=SyncJob)
def get_sync_job(job_id: str, sync: SyncService = Depends(get_sync_service)):
    return sync.get_sync_job(job_id)


@app.post("/api/v1/sync/jobs/{job_id}/retry", response_model=SyncJob)
def retry_sync_job(job_id: str, sync: SyncService = Depends(get_sync_service)):
    return sync.retry_failed_job(job_id)


@app.delete("/api/v1/sync/jobs/{job_id}", response_model=SyncJob)
def cancel_sync_job(job_id: str, sync: SyncService = Depends(get_sync_service)):
    return sync.cancel_sync_job(job_id)


@app.post("/api/v1/accounts/{account_id}/test-connection")
def test_account_connection(account_id: str, sync: SyncService = Depends(get_sync_service)):
    return sync.check_account_connection(account_id)


# Scheduler

@app.post("/api/v1/scheduler/ticks/{cadence}")
def run_scheduler_tick(cadence: str, sync: SyncService = Depends(get_sync_service)):
    """Entry point of the Cloud Scheduler cadence jobs."""
    try:
        cadence = SyncCadence(cadence)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown cadence: {cadence}")
    return sync.tick(cadence)


@app.post("/api/v1/scheduler/setup")
def setup_scheduler(rt: Runtime = Depends(get_runtime)):
    """Create or update the task queues and the cadence scheduler jobs."""
    try:
        return {"jobs": rt.setup_infrastructure()}
    except MarketSyncException:
        raise
    except Exception as e:
        logger.error(f"Failed to set up scheduler: {e}")
        raise HTTPException(status_code=500, detail=str(e))


# Queue task handlers. A non-2xx answer makes Cloud Tasks retry the task.

@app.post("/internal/tasks/sync-data")
def run_sync_task(
    payload: SyncJobPayload,
    worker: SyncWorker = Depends(get_sync_worker),
    retry_count: Optional[int] = Header(None, alias="X-CloudTasks-TaskRetryCount"),
):
    try:
        return worker.handle(payload, queue_attempt=retry_count)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Sync job {payload.job_id} failed: {e}")


@app.post("/internal/tasks/retry-webhook")
def run_webhook_delivery_task(
    job: WebhookDeliveryJob,
    delivery: WebhookDeliveryProcessor = Depends(get_delivery_processor),
):
    return delivery.handle(job)
