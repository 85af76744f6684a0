"""FastAPI server for Post Orchestrator."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ..content.generator import TemplateContentGenerator
from ..content.publisher import HttpPublisher
from ..core.config import settings
from ..core.errors import OrchestratorError
from ..mobile.devices import DeviceRegistry
from ..mobile.notifier import HttpPushNotifier, InboxNotifier, Notifier
from ..mobile.relay import Command, CommandRelay
from ..tasks.engine import TaskEngine
from ..tasks.models import (
    Account,
    AccountStatus,
    ContentStyle,
    GenerationConfig,
    PublishConfig,
    Task,
    TaskSpec,
    TaskStatus,
    TaskType,
)
from ..tasks.storage import InMemoryStore, SQLiteStore, Store

logger = logging.getLogger(__name__)

# Global service instances, wired in lifespan
store: Optional[Store] = None
engine: Optional[TaskEngine] = None
registry: Optional[DeviceRegistry] = None
relay: Optional[CommandRelay] = None

# Rate limiter configuration
limiter = Limiter(key_func=get_remote_address)


def build_services() -> tuple[Store, TaskEngine, DeviceRegistry, CommandRelay]:
    """Wire storage, capabilities, engine, registry and relay from settings."""
    service_store: Store = SQLiteStore(settings.db_path) if settings.db_path else InMemoryStore()

    notifier: Notifier
    if settings.push_gateway_url:
        notifier = HttpPushNotifier(settings.push_gateway_url)
    else:
        notifier = InboxNotifier()

    service_engine = TaskEngine(
        service_store,
        TemplateContentGenerator(),
        HttpPublisher(settings.publisher_base_url),
    )
    service_registry = DeviceRegistry(service_store)
    service_relay = CommandRelay(service_engine, service_registry, notifier)
    return service_store, service_engine, service_registry, service_relay


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup."""
    global store, engine, registry, relay

    owned = engine is None
    if owned:
        store, engine, registry, relay = build_services()

    await engine.start()
    logger.info("Post Orchestrator started")
    try:
        yield
    finally:
        await engine.stop()
        if owned:
            store = engine = registry = relay = None
        logger.info("Post Orchestrator shutting down")


app = FastAPI(
    title="Post Orchestrator API",
    description="Content generation and publishing tasks with a mobile command relay",
    version="1.0.0",
    lifespan=lifespan,
)

# Add rate limiter to app state and exception handler
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


# --- Request/Response Models ---

class GenerationConfigModel(BaseModel):
    """Generation part of a task request."""
    theme: str = Field(default="", max_length=200)
    keywords: list[str] = Field(default_factory=list)
    target_audience: str = ""
    style: ContentStyle = ContentStyle.CASUAL
    word_count: int = Field(default=500, ge=1, le=5000)
    platform: str = "xiaohongshu"


class PublishConfigModel(BaseModel):
    """Publishing part of a task request."""
    schedule_time: Optional[datetime] = None
    auto_retry: bool = True
    max_retries: int = Field(default=3, ge=0, le=10)
    notify_on_complete: bool = False


class TaskCreate(BaseModel):
    """Request model for creating a task."""
    type: TaskType
    title: str = Field(default="", max_length=200)
    account_id: Optional[str] = None
    content_id: Optional[str] = None
    generation_config: GenerationConfigModel = Field(default_factory=GenerationConfigModel)
    publish_config: PublishConfigModel = Field(default_factory=PublishConfigModel)


class TaskResponse(BaseModel):
    """Response model for a task."""
    id: str
    type: str
    status: str
    title: str
    progress: int
    attempt: int
    account_id: Optional[str]
    content_id: Optional[str]
    error_message: Optional[str]
    publish_url: Optional[str]
    schedule_time: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime]


class AccountCreate(BaseModel):
    """Request model for registering a publishing account."""
    platform: str = Field(..., min_length=1, max_length=50)
    nickname: str = ""
    status: AccountStatus = AccountStatus.ACTIVE


class CommandRequest(BaseModel):
    """Request model for a mobile command."""
    deviceId: str = Field(..., min_length=1, max_length=128)
    commandType: str
    params: dict = Field(default_factory=dict)
    platform: Optional[str] = None


# --- Endpoints ---

@app.get("/")
@app.get("/health")
@limiter.limit("300/minute")
async def health_check(request: Request):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "post-orchestrator",
        "version": "1.0.0",
        "engine_running": bool(engine and engine.is_running),
    }


@app.post("/accounts", status_code=201)
@limiter.limit("30/minute")
async def create_account(request: Request, account: AccountCreate):
    """Register a publishing account."""
    _require_services()
    created = await store.create_account(
        Account(platform=account.platform, nickname=account.nickname, status=account.status)
    )
    return created.to_dict()


@app.get("/accounts/{account_id}")
@limiter.limit("100/minute")
async def get_account(request: Request, account_id: str):
    """Get a publishing account."""
    _require_services()
    return (await store.get_account(account_id)).to_dict()


@app.post("/tasks", response_model=TaskResponse, status_code=201)
@limiter.limit("30/minute")
async def create_task(request: Request, task: TaskCreate):
    """Create a task. Returns immediately; poll GET /tasks/{id} for progress."""
    _require_services()

    schedule_time = task.publish_config.schedule_time
    if schedule_time is not None and schedule_time.tzinfo is None:
        schedule_time = schedule_time.replace(tzinfo=timezone.utc)

    spec = TaskSpec(
        type=task.type,
        title=task.title,
        account_id=task.account_id,
        content_id=task.content_id,
        generation_config=GenerationConfig(**task.generation_config.model_dump()),
        publish_config=PublishConfig(
            schedule_time=schedule_time,
            auto_retry=task.publish_config.auto_retry,
            max_retries=task.publish_config.max_retries,
            notify_on_complete=task.publish_config.notify_on_complete,
        ),
    )
    task_id = await engine.submit(spec)
    return _task_to_response(await engine.get_status(task_id))


@app.get("/tasks", response_model=list[TaskResponse])
@limiter.limit("100/minute")
async def list_tasks(
    request: Request,
    status: Optional[str] = Query(None, description="Filter by status"),
    task_type: Optional[str] = Query(None, alias="type", description="Filter by task type"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """List tasks, newest first, with optional filters."""
    _require_services()

    try:
        status_enum = TaskStatus(status) if status else None
    except ValueError:
        raise HTTPException(400, f"Invalid status: {status}")

    try:
        type_enum = TaskType(task_type) if task_type else None
    except ValueError:
        raise HTTPException(400, f"Invalid type: {task_type}")

    tasks = await engine.list_tasks(
        status=status_enum, task_type=type_enum, limit=limit, offset=offset
    )
    return [_task_to_response(t) for t in tasks]


@app.get("/tasks/stats")
@limiter.limit("60/minute")
async def get_task_stats(request: Request):
    """Task counts per status, success rate and worker pool usage."""
    _require_services()
    return await engine.get_statistics()


@app.get("/tasks/{task_id}", response_model=TaskResponse)
@limiter.limit("100/minute")
async def get_task(request: Request, task_id: str):
    """Get a specific task."""
    _require_services()
    return _task_to_response(await engine.get_status(task_id))


@app.post("/tasks/{task_id}/cancel", response_model=TaskResponse)
@limiter.limit("30/minute")
async def cancel_task(request: Request, task_id: str):
    """Cancel a task at its next step boundary."""
    _require_services()
    return _task_to_response(await engine.cancel_task(task_id))


@app.post("/mobile/command")
@limiter.limit("60/minute")
async def mobile_command(request: Request, body: CommandRequest):
    """Entry point for mobile devices. Always answers with a command ack."""
    _require_services()
    command = Command.from_dict(body.model_dump())
    ack = await relay.handle(command)
    return ack.to_dict()


@app.get("/mobile/devices")
@limiter.limit("60/minute")
async def list_devices(request: Request):
    """List registered devices with their online flag."""
    _require_services()
    devices = await registry.list_devices()
    return [
        {**device.to_dict(), "is_online": registry.is_online(device)}
        for device in devices
    ]


@app.get("/mobile/devices/{device_id}")
@limiter.limit("60/minute")
async def get_device_status(request: Request, device_id: str):
    """Device snapshot with online flag and task counts."""
    _require_services()
    return await relay.device_status(device_id)


@app.get("/mobile/devices/{device_id}/contents")
@limiter.limit("60/minute")
async def get_device_contents(
    request: Request,
    device_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    """Content generated by a device's tasks, newest first."""
    _require_services()
    return await relay.device_contents(device_id, page=page, page_size=page_size)


# --- Helper Functions ---

def _require_services() -> None:
    if engine is None or relay is None:
        raise HTTPException(status_code=503, detail="Service not initialized")


def _task_to_response(task: Task) -> TaskResponse:
    """Convert Task to TaskResponse."""
    return TaskResponse(
        id=task.id,
        type=task.type.value,
        status=task.status.value,
        title=task.title,
        progress=task.progress,
        attempt=task.attempt,
        account_id=task.account_id,
        content_id=task.content_id,
        error_message=task.error_message,
        publish_url=task.publish_url,
        schedule_time=task.publish_config.schedule_time,
        created_at=task.created_at,
        updated_at=task.updated_at,
        completed_at=task.completed_at,
    )


# Run with: uvicorn src.api.server:app --reload
if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=settings.log_level)
    uvicorn.run(
        "src.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
    )
