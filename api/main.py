"""
BrowserPilot API - FastAPI Backend
Administrative surface over the task orchestrator: tasks, chained tasks,
task types, screenshots, the browser pool and the selective proxy.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from api.config import config
from api.database import Database
from api.logging_config import logger, log_request, log_task_event
from automations import default_registry
from core.browser import ChromiumLauncher
from core.credentials import CookieFileCredentials
from core.errors import (
    MissingParameterError,
    TaskConflictError,
    TaskNotFoundError,
    TaskStateError,
    UnknownTaskTypeError,
)
from core.orchestrator import TaskOrchestrator
from core.proxy import RouteTable
from core.task_types import seed_task_types

VERSION = "1.0.0"


def build_orchestrator(database: Database) -> TaskOrchestrator:
    """Wire the orchestrator from the application config."""
    route_table = RouteTable(
        tunnel_domains=list(config.TUNNEL_DOMAINS),
        tunnel_host=config.TUNNEL_PROXY_HOST,
        tunnel_port=config.TUNNEL_PROXY_PORT,
        enabled=config.PROXY_ENABLED,
    )
    launcher = ChromiumLauncher(
        executable_path=config.BROWSER_EXECUTABLE,
        headless=config.BROWSER_HEADLESS,
        launch_timeout=config.BROWSER_LAUNCH_TIMEOUT_SECONDS,
    )
    return TaskOrchestrator.build(
        database,
        launcher,
        registry=default_registry(),
        credentials=CookieFileCredentials(config.COOKIE_FILE),
        route_table=route_table,
        proxy_host=config.LOCAL_PROXY_HOST,
        proxy_port=config.LOCAL_PROXY_PORT,
        idle_timeout=config.POOL_IDLE_TIMEOUT_SECONDS,
        max_age=config.POOL_MAX_AGE_SECONDS,
        acquire_timeout=config.POOL_ACQUIRE_TIMEOUT_SECONDS,
        max_retries=config.TASK_MAX_RETRIES,
        retry_delay=config.TASK_RETRY_DELAY_SECONDS,
        subtask_delay=config.CHAIN_SUBTASK_DELAY_SECONDS,
        cleanup_interval=config.CLEANUP_INTERVAL_SECONDS if config.CLEANUP_ENABLED else None,
    )


# === Lifespan Management ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting BrowserPilot API...")
    for problem in config.validate():
        logger.warning(f"Config: {problem}")

    database = Database(config.DATABASE_PATH)
    await database.init()
    logger.info(f"Database initialized at {config.DATABASE_PATH}")

    orchestrator = build_orchestrator(database)
    await seed_task_types(database, config.TASK_TYPES_FILE, orchestrator.registry)
    await orchestrator.start()
    app.state.orchestrator = orchestrator

    yield
    # Shutdown
    logger.info("Shutting down BrowserPilot API...")
    await orchestrator.shutdown()


# Initialize FastAPI app
app = FastAPI(
    title="BrowserPilot API",
    description="Headless browser task execution with pooling, retries and chained tasks",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if config.DEBUG else None,
    redoc_url="/redoc" if config.DEBUG else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type"],
)


# === Request Logging Middleware ===

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    start_time = datetime.now()
    response = await call_next(request)
    duration = (datetime.now() - start_time).total_seconds() * 1000
    log_request(request.method, request.url.path, response.status_code, duration)
    return response


# === Error Mapping ===

def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": str(exc)})


@app.exception_handler(TaskNotFoundError)
@app.exception_handler(UnknownTaskTypeError)
async def not_found_handler(request: Request, exc: Exception):
    return _error(404, exc)


@app.exception_handler(TaskConflictError)
@app.exception_handler(MissingParameterError)
@app.exception_handler(TaskStateError)
@app.exception_handler(ValueError)
async def bad_request_handler(request: Request, exc: Exception):
    logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return _error(400, exc)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} failed: {exc}")
    return _error(500, exc)


def get_orchestrator(request: Request) -> TaskOrchestrator:
    return request.app.state.orchestrator


# === Pydantic Models ===

class CreateTaskRequest(BaseModel):
    type: str = Field(..., min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)
    name: Optional[str] = None


class ChainedTaskRequest(BaseModel):
    name: str = "Chained Task"
    subtasks: List[Dict[str, Any]]


class UpdateTaskRequest(BaseModel):
    name: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    subtasks: Optional[List[Dict[str, Any]]] = None


class BatchDeleteRequest(BaseModel):
    ids: List[str]


class ProxyConfigRequest(BaseModel):
    tunnel_domains: Optional[List[str]] = None
    tunnel_host: Optional[str] = None
    tunnel_port: Optional[int] = None
    enabled: Optional[bool] = None


class TaskTypeParameter(BaseModel):
    name: str
    required: bool = True


class TaskTypeRequest(BaseModel):
    id: Optional[str] = None
    name: str
    description: str = ""
    parameters: List[TaskTypeParameter] = Field(default_factory=list)
    subtasks: List[Dict[str, Any]]


class UpdateTaskTypeRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    parameters: Optional[List[TaskTypeParameter]] = None
    subtasks: Optional[List[Dict[str, Any]]] = None


class CreateFromTypeRequest(BaseModel):
    params: Dict[str, Any] = Field(default_factory=dict)


# === API Endpoints ===

@app.get("/health")
async def health():
    """Health check."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": VERSION,
    }


@app.get("/api/builtin-types")
async def builtin_types(orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return {"types": orchestrator.catalog.builtin_types()}


# === Tasks ===

@app.get("/api/tasks")
async def list_tasks(
    status: Optional[str] = None,
    name: Optional[str] = None,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
):
    """List tasks, newest first, without their logs."""
    return {"tasks": await orchestrator.list_tasks(status=status, name=name)}


@app.post("/api/tasks")
async def create_task(request: CreateTaskRequest, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    task = await orchestrator.create_task(request.type, request.params, name=request.name)
    log_task_event(task.id, "created", task.type)
    return task.to_dict()


@app.post("/api/tasks/chained")
async def create_chained_task(request: ChainedTaskRequest, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    task = await orchestrator.create_chained_task(request.name, request.subtasks)
    log_task_event(task.id, "created", f"chained, {len(task.subtasks)} subtasks")
    return task.to_dict()


@app.post("/api/tasks/batch-delete")
async def batch_delete_tasks(request: BatchDeleteRequest, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.delete_tasks(request.ids)


@app.get("/api/tasks/{task_id}")
async def get_task(task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_task(task_id)


@app.patch("/api/tasks/{task_id}")
async def update_task(task_id: str, request: UpdateTaskRequest,
                      orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    task = await orchestrator.update_task(task_id, request.model_dump(exclude_none=True))
    return task.to_dict()


@app.delete("/api/tasks/{task_id}")
async def delete_task(task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    await orchestrator.delete_task(task_id)
    log_task_event(task_id, "deleted")
    return {"success": True}


@app.post("/api/tasks/{task_id}/stop")
async def stop_task(task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    task = await orchestrator.stop_task(task_id)
    log_task_event(task_id, "stopped")
    return task.to_dict()


@app.post("/api/tasks/{task_id}/restart")
async def restart_task(task_id: str, request: Optional[UpdateTaskRequest] = None,
                       orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    updates = request.model_dump(exclude_none=True) if request else {}
    task = await orchestrator.restart_task(task_id, updates)
    log_task_event(task_id, "restarted", ", ".join(sorted(updates)) or None)
    return task.to_dict()


@app.get("/api/tasks/{task_id}/screenshots")
async def list_screenshots(task_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return {"screenshots": await orchestrator.screenshots(task_id)}


@app.get("/api/tasks/{task_id}/screenshots/{index}")
async def get_screenshot(task_id: str, index: int, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    shot = await orchestrator.screenshot(task_id, index)
    return Response(content=shot.data, media_type="image/png")


# === Browser ===

@app.post("/api/browsers/kill-all")
async def kill_all_browsers(orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.kill_all_browsers()


@app.get("/api/browser/status")
async def browser_status(orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return orchestrator.pool_status()


@app.post("/api/browser/close")
async def close_browser(orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    await orchestrator.close_pool()
    return {"success": True}


# === Proxy ===

@app.get("/api/proxy/config")
async def get_proxy_config(orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return orchestrator.proxy_config()


@app.post("/api/proxy/config")
async def update_proxy_config(request: ProxyConfigRequest, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.update_proxy_config(**request.model_dump(exclude_none=True))


@app.get("/api/proxy/test")
async def test_proxy(port: Optional[int] = None, url: Optional[str] = None,
                     orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.test_proxy(port=port, url=url)


# === Task Types ===

@app.get("/api/task-types")
async def list_task_types(orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return {
        "builtin": orchestrator.catalog.builtin_types(),
        "custom": await orchestrator.catalog.list_custom(),
    }


@app.post("/api/task-types")
async def create_task_type(request: TaskTypeRequest, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.catalog.create(request.model_dump(exclude_none=True))


@app.get("/api/task-types/{type_id}")
async def get_task_type(type_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.catalog.get(type_id)


@app.patch("/api/task-types/{type_id}")
async def update_task_type(type_id: str, request: UpdateTaskTypeRequest,
                           orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.catalog.update(type_id, request.model_dump(exclude_none=True))


@app.delete("/api/task-types/{type_id}")
async def delete_task_type(type_id: str, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    await orchestrator.catalog.delete(type_id)
    return {"success": True}


@app.post("/api/task-types/{type_id}/create-task")
async def create_task_from_type(type_id: str, request: Optional[CreateFromTypeRequest] = None,
                                orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    params = request.params if request else {}
    task = await orchestrator.create_from_task_type(type_id, params)
    log_task_event(task.id, "created", f"from type {type_id}")
    return task.to_dict()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
