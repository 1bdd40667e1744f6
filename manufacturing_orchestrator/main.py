"""
Manufacturing Orchestrator API

FastAPI application for queue intake, job control and Fishbowl sessions.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.asyncio import Redis

from .config import OrchestratorSettings
from .database import Database
from .control_plane import intake
from .control_plane.drain_controller import DrainController
from .control_plane.exceptions import (
    AuthenticationError,
    ConfigurationError,
    InvalidTransitionError,
    JobAlreadyRunningError,
    NoJobRunningError,
    OrchestratorError,
    RemoteCallError,
    WorkOrderDataError,
)
from .control_plane.job_orchestrator import BatchOrchestrator, JobSelection
from .control_plane.models import OperationType, QueueItem
from .control_plane.queue_manager import QueueManager
from .control_plane.scheduler import JobScheduler
from .control_plane.session_store import SessionStore
from .control_plane.state_manager import TriggeredBy
from .fishbowl.auth import AuthService
from .fishbowl.client import FishbowlClient


def setup_logging() -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ]
    )
    logging.basicConfig(level=logging.INFO)


# Initialize settings and logging
settings = OrchestratorSettings()
setup_logging()
logger = structlog.get_logger(__name__)

# Initialize connections
redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
db = Database(settings)

# Collaborators (created in lifespan)
fishbowl_client: FishbowlClient | None = None
sessions: SessionStore | None = None
auth_service: AuthService | None = None
orchestrator: BatchOrchestrator | None = None
scheduler: JobScheduler | None = None
drain_controller: DrainController | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan: startup and shutdown.

    - Initialize database tables
    - Create the Fishbowl client, auth service and orchestrator
    - Start the scheduler when unattended login is configured
    - Drain the running job and release connections on shutdown
    """
    global fishbowl_client, sessions, auth_service, orchestrator, scheduler, drain_controller

    # Startup
    logger.info("orchestrator_starting")
    await db.init_models()

    fishbowl_client = FishbowlClient(
        settings.normalized_server_url,
        timeout_seconds=settings.api_request_timeout_seconds,
        verify=settings.ssl_verify,
    )
    sessions = SessionStore(
        redis_client,
        interactive_timeout_seconds=settings.interactive_session_timeout_seconds,
    )
    # An interactive session does not outlive the process that served it
    await sessions.end_interactive()
    auth_service = AuthService(fishbowl_client, sessions, settings)

    orchestrator = BatchOrchestrator(
        db=db,
        client=fishbowl_client,
        batch_size=settings.batch_size,
        max_retries=settings.max_retries,
        concurrent_wo_limit=settings.concurrent_wo_limit,
    )
    scheduler = JobScheduler(
        orchestrator,
        orchestrator.queue_manager,
        auth_service,
        sessions,
        interval_seconds=settings.scheduler_check_interval_seconds,
    )

    if settings.scheduler_enabled and settings.has_service_credentials:
        scheduler.start()
    elif settings.scheduler_enabled:
        logger.warning("scheduler_not_started", reason="service credentials not configured")

    drain_controller = DrainController(
        orchestrator,
        scheduler,
        timeout_seconds=settings.drain_timeout_seconds,
        poll_interval_seconds=settings.drain_poll_interval_seconds,
    )
    drain_controller.add_closer(fishbowl_client.aclose)
    drain_controller.add_closer(db.dispose)
    drain_controller.add_closer(redis_client.aclose)

    logger.info(
        "orchestrator_ready",
        fishbowl_server=settings.normalized_server_url,
        batch_size=settings.batch_size,
        scheduler_running=scheduler.is_running,
    )

    yield

    # Shutdown
    logger.info("orchestrator_shutting_down")
    await drain_controller.drain()
    logger.info("orchestrator_stopped")


# Create FastAPI app
app = FastAPI(
    title="Manufacturing Orchestrator API",
    description="""
    Queue-based work order processing against Fishbowl.

    ## Features

    * **Queue Intake**: Validated build uploads and finished-goods disassembly selections
    * **Job Control**: Start, stop, resume, clear and close short
    * **Idempotent Resume**: Interrupted work orders continue where Fishbowl left them
    * **Scheduling**: Deferred work starts unattended when due
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


_ERROR_STATUS = (
    (JobAlreadyRunningError, status.HTTP_409_CONFLICT),
    (NoJobRunningError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (WorkOrderDataError, status.HTTP_400_BAD_REQUEST),
    (RemoteCallError, status.HTTP_502_BAD_GATEWAY),
)


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    logger.warning("request_failed", path=request.url.path, error=str(exc), status=status_code)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------

def get_orchestrator() -> BatchOrchestrator:
    """Dependency to get orchestrator instance."""
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not initialized"
        )
    return orchestrator


def get_queue_manager(orch: BatchOrchestrator = Depends(get_orchestrator)) -> QueueManager:
    return orch.queue_manager


def get_idle_queue_manager(
    orch: BatchOrchestrator = Depends(get_orchestrator),
    queue: QueueManager = Depends(get_queue_manager),
) -> QueueManager:
    """Queue manager for edits that replace or delete pending rows; refused while a job runs."""
    if orch.is_running:
        raise JobAlreadyRunningError("Pending items cannot be replaced or deleted while a job is running")
    return queue


def get_fishbowl_client() -> FishbowlClient:
    if fishbowl_client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Fishbowl client not initialized"
        )
    return fishbowl_client


def get_auth_service() -> AuthService:
    if auth_service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Auth service not initialized"
        )
    return auth_service


def get_scheduler() -> JobScheduler:
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler not initialized"
        )
    return scheduler


async def get_token(authorization: Optional[str] = Header(default=None)) -> str:
    """Fishbowl token from the Authorization header; also refreshes the interactive session."""
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Fishbowl token required"
        )
    token = authorization[len("Bearer "):] if authorization.startswith("Bearer ") else authorization
    if sessions is not None:
        await sessions.touch_interactive()
    return token.strip()


# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------

class BuildTarget(BaseModel):
    bom_num: str
    bom_id: int
    location_group_id: int
    location: str = Field(description="Finished good destination: 'Group-Location' or a location id")
    raw_goods_part_id: int
    fg_part_id: Optional[int] = None
    scheduled_for: Optional[datetime] = None


class EnqueueItemRequest(BuildTarget):
    barcode: str
    serial_numbers: List[str]


class SerialRow(BaseModel):
    barcode: str
    serial: str


class EnqueueBatchRequest(BuildTarget):
    rows: List[SerialRow]
    validate_remote: bool = True


class DisassemblyRequest(BaseModel):
    barcodes: List[str]
    bom_num: str
    bom_id: int
    location_group_id: int
    return_location: Optional[str] = None
    scheduled_for: Optional[datetime] = None


class BarcodesRequest(BaseModel):
    barcodes: List[str]


class JobStartRequest(BaseModel):
    bom_num: Optional[str] = None
    bom_id: Optional[int] = None
    location_group_id: Optional[int] = None


class LoginRequest(BaseModel):
    username: str
    password: str
    mfa_code: Optional[str] = None


def _item_view(item: QueueItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "operation_type": item.operation_type.value,
        "barcode": item.barcode,
        "serial_numbers": item.serials,
        "bom_num": item.bom_num,
        "status": item.status.value,
        "parent_order_number": item.parent_order_number,
        "sub_order_number": item.sub_order_number,
        "error_message": item.error_message,
        "retry_count": item.retry_count,
        "scheduled_for": item.scheduled_for,
        "created_at": item.created_at,
        "completed_at": item.completed_at,
    }


# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "manufacturing-orchestrator",
        "job_state": orchestrator.status().state.value if orchestrator else None,
        "scheduler_running": scheduler.is_running if scheduler else False,
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "manufacturing-orchestrator",
        "version": "1.0.0",
        "status": "operational",
    }


# ----------------------------------------------------------------------
# Queue intake
# ----------------------------------------------------------------------

@app.post("/api/v1/queue/items", status_code=status.HTTP_201_CREATED)
async def enqueue_item(
    request: EnqueueItemRequest,
    queue: QueueManager = Depends(get_queue_manager),
):
    """Queue a single build without remote validation."""
    serials = [s.strip() for s in request.serial_numbers if s.strip()]
    if not request.barcode.strip() or not serials:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A barcode and at least one serial number are required"
        )
    item = await queue.enqueue(
        QueueItem(
            operation_type=OperationType.BUILD,
            barcode=request.barcode.strip(),
            serial_numbers=QueueItem.encode_serials(serials),
            location=request.location,
            raw_goods_part_id=request.raw_goods_part_id,
            fg_part_id=request.fg_part_id,
            bom_num=request.bom_num,
            bom_id=request.bom_id,
            location_group_id=request.location_group_id,
            scheduled_for=request.scheduled_for,
        )
    )
    return {"id": item.id, "barcode": item.barcode, "status": item.status.value}


@app.post("/api/v1/queue/batch", status_code=status.HTTP_201_CREATED)
async def enqueue_batch(
    request: EnqueueBatchRequest,
    queue: QueueManager = Depends(get_idle_queue_manager),
    client: FishbowlClient = Depends(get_fishbowl_client),
    token: str = Depends(get_token),
):
    """
    Queue builds from (barcode, serial) rows.

    Rows are grouped per barcode; chunks whose barcode already exists in
    Fishbowl, or that reference unknown serials, are excluded.
    """
    chunks = intake.group_serial_rows([(row.barcode, row.serial) for row in request.rows])
    if not chunks:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No valid barcode/serial rows submitted"
        )

    if request.validate_remote:
        validation = await intake.validate_build_chunks(client, token, chunks)
    else:
        validation = intake.ValidationResult(valid=chunks)

    items = intake.build_queue_items(
        validation.valid,
        bom_num=request.bom_num,
        bom_id=request.bom_id,
        location_group_id=request.location_group_id,
        location=request.location,
        raw_goods_part_id=request.raw_goods_part_id,
        fg_part_id=request.fg_part_id,
    )
    queued = await queue.enqueue_many(items, scheduled_for=request.scheduled_for)
    logger.info("batch_enqueued", queued=queued, excluded=len(validation.excluded), bom_num=request.bom_num)

    return {
        "queued": queued,
        "excluded_barcode_exists": [
            {"barcode": chunk.barcode, "reason": chunk.reason} for chunk in validation.excluded_barcode_exists
        ],
        "excluded_missing_serials": [
            {"barcode": chunk.barcode, "reason": chunk.reason, "missing_serials": chunk.missing_serials}
            for chunk in validation.excluded_missing_serials
        ],
        "scheduled_for": request.scheduled_for,
    }


@app.get("/api/v1/finished-goods")
async def list_finished_goods(
    bom_num: str,
    bom_id: int,
    queue: QueueManager = Depends(get_queue_manager),
    client: FishbowlClient = Depends(get_fishbowl_client),
    token: str = Depends(get_token),
):
    """On-hand finished goods of a BOM that this service built."""
    try:
        goods = await intake.finished_goods_on_hand(client, token, queue, bom_num, bom_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {"finished_goods": goods, "count": len(goods)}


@app.post("/api/v1/queue/disassembly", status_code=status.HTTP_201_CREATED)
async def enqueue_disassembly(
    request: DisassemblyRequest,
    queue: QueueManager = Depends(get_idle_queue_manager),
    client: FishbowlClient = Depends(get_fishbowl_client),
    token: str = Depends(get_token),
):
    """Queue disassemblies of selected finished goods."""
    if not request.barcodes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No finished goods selected"
        )
    return await intake.queue_finished_goods_for_disassembly(
        client,
        token,
        queue,
        request.barcodes,
        bom_num=request.bom_num,
        bom_id=request.bom_id,
        location_group_id=request.location_group_id,
        return_location=request.return_location,
        scheduled_for=request.scheduled_for,
    )


# ----------------------------------------------------------------------
# Queue inspection
# ----------------------------------------------------------------------

@app.get("/api/v1/queue/pending")
async def get_pending(queue: QueueManager = Depends(get_queue_manager)):
    """Pending count and the selection a resumed job would use."""
    return {
        "count": await queue.pending_count(),
        "job_info": await queue.pending_job_info(),
    }


@app.post("/api/v1/queue/pending/check")
async def check_pending_barcodes(
    request: BarcodesRequest,
    queue: QueueManager = Depends(get_queue_manager),
):
    pending = await queue.find_pending_barcodes(request.barcodes)
    return {"pending": pending, "count": len(pending)}


@app.post("/api/v1/queue/pending/delete")
async def delete_pending_barcodes(
    request: BarcodesRequest,
    queue: QueueManager = Depends(get_idle_queue_manager),
):
    deleted = await queue.delete_pending_barcodes(request.barcodes)
    return {"deleted": deleted, "count": len(deleted)}


@app.get("/api/v1/queue/failed")
async def get_failed_items(
    limit: int = 500,
    queue: QueueManager = Depends(get_queue_manager),
):
    items = await queue.failed_items(limit=limit)
    return {"items": [_item_view(item) for item in items], "count": len(items)}


@app.get("/api/v1/queue/scheduled")
async def get_scheduled(queue: QueueManager = Depends(get_queue_manager)):
    return {"groups": await queue.scheduled_groups()}


@app.delete("/api/v1/queue/scheduled")
async def delete_scheduled(
    scheduled_for: datetime,
    queue: QueueManager = Depends(get_idle_queue_manager),
):
    deleted = await queue.delete_scheduled(scheduled_for)
    if deleted == 0:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No pending items scheduled for {scheduled_for.isoformat()}"
        )
    return {"deleted": deleted}


# ----------------------------------------------------------------------
# Job control
# ----------------------------------------------------------------------

@app.post("/api/v1/job/start", status_code=status.HTTP_202_ACCEPTED)
async def start_job(
    request: JobStartRequest,
    orch: BatchOrchestrator = Depends(get_orchestrator),
    token: str = Depends(get_token),
):
    """Start (or resume) processing of ready items in the background."""
    selection = JobSelection(
        bom_num=request.bom_num,
        bom_id=request.bom_id,
        location_group_id=request.location_group_id,
    )
    snapshot = orch.start(selection, token, TriggeredBy.INTERACTIVE)
    return snapshot.to_dict()


@app.post("/api/v1/job/stop")
async def stop_job(orch: BatchOrchestrator = Depends(get_orchestrator)):
    """Request a stop; the job pauses after the current item."""
    snapshot = orch.stop()
    return {"message": "Stop requested - job will pause after the current item", "job": snapshot.to_dict()}


@app.get("/api/v1/job/status")
async def get_job_status(orch: BatchOrchestrator = Depends(get_orchestrator)):
    return orch.status().to_dict()


@app.post("/api/v1/job/reset")
async def reset_job(orch: BatchOrchestrator = Depends(get_orchestrator)):
    return orch.reset().to_dict()


@app.post("/api/v1/job/close-short")
async def close_short(
    orch: BatchOrchestrator = Depends(get_orchestrator),
    token: str = Depends(get_token),
):
    """Close short every parent order with pending items and mark those items closed_short."""
    result = await orch.close_short(token)
    return {
        "closed_short_count": result.closed_short_count,
        "marked_count": result.marked_count,
        "failed_parent_orders": result.failed_parent_orders,
    }


@app.post("/api/v1/job/clear")
async def clear_queue(
    orch: BatchOrchestrator = Depends(get_orchestrator),
    token: str = Depends(get_token),
):
    """Close short open work, delete pending/closed_short rows and reset the job."""
    return await orch.clear(token)


@app.get("/api/v1/parent-orders/next")
async def preview_parent_order(
    bom_num: str,
    orch: BatchOrchestrator = Depends(get_orchestrator),
    token: str = Depends(get_token),
):
    number = await orch.preview_next_parent_order(token, bom_num)
    return {"bom_num": bom_num, "next_parent_order": number}


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------

@app.post("/api/v1/auth/login")
async def login(
    request: LoginRequest,
    auth: AuthService = Depends(get_auth_service),
):
    """Interactive login; while the session is active the scheduler stays idle."""
    token = await auth.login(request.username, request.password, request.mfa_code, interactive=True)
    return {"token": token}


@app.post("/api/v1/auth/logout")
async def logout(
    auth: AuthService = Depends(get_auth_service),
    token: str = Depends(get_token),
):
    logged_out = await auth.logout(token, interactive=True)
    return {"logged_out": logged_out}


@app.get("/api/v1/auth/session")
async def get_session(auth: AuthService = Depends(get_auth_service)):
    return await auth.sessions.interactive_session()


@app.post("/api/v1/auth/tokens/cleanup")
async def cleanup_tokens(auth: AuthService = Depends(get_auth_service)):
    """Log out every tracked token (orphaned sessions from earlier runs)."""
    return await auth.logout_all_tokens()


@app.get("/api/v1/scheduler/status")
async def get_scheduler_status(sched: JobScheduler = Depends(get_scheduler)):
    return sched.status()


# For running directly with python -m
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "manufacturing_orchestrator.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )
