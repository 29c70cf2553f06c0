import secrets
import time
import uuid
from contextlib import asynccontextmanager
from typing import Dict, List, NoReturn, Optional

import structlog
from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Header,
    Query,
    Request,
    Response,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import ValidationError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from config import Settings
from engine_client import EngineClient, engine_from_settings
from errors import (
    ApiError,
    AuthenticationError,
    AuthorizationError,
    ClientError,
    NotFoundError,
)
from models import ContainerInfo, CreateContainerRequest, ProjectContainerRequest
from project_scaffold import ProjectError, ProjectScaffold, container_config_for
from utils import Metrics, health_check, log_container_operation, log_request, logger

API_PREFIX = "/api/v1"
REQUEST_ID_HEADER = "X-Request-ID"


# Authentication dependency
def verify_api_token(request: Request, authorization: Optional[str] = Header(None)):
    """Require ``Bearer <token>`` when an API token is configured"""
    expected = request.app.state.settings.server.api_token
    if not expected:
        return True
    if not authorization:
        raise AuthenticationError("Authorization header required")
    token = authorization[7:] if authorization.startswith("Bearer ") else authorization
    if not secrets.compare_digest(token, expected):
        raise AuthorizationError("Invalid API token")
    return True


def get_engine(request: Request) -> EngineClient:
    return request.app.state.engine


def get_metrics(request: Request) -> Metrics:
    return request.app.state.metrics


def _fail(
    request: Request,
    operation: str,
    container_id: str,
    err: ClientError,
    message: str,
    details: Optional[Dict] = None,
) -> NoReturn:
    log_container_operation(
        operation,
        container_id,
        "failed",
        {"error": str(err), "kind": err.kind.value, **(details or {})},
        metrics=get_metrics(request),
    )
    api_error = ApiError.from_client_error(err, message)
    if details:
        api_error.details = {"error": str(err), **details}
    raise api_error


def parse_label_filter(labels: List[str]) -> Dict[str, str]:
    """``["env=prod", "team=web"]`` -> ``{"env": "prod", "team": "web"}``"""
    label_filter = {}
    for item in labels:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ApiError(
                f"Invalid label filter {item!r}, expected key=value",
                "VALIDATION_ERROR",
                400,
            )
        label_filter[key] = value
    return label_filter


def resolve_container_id(engine: EngineClient, reference: str) -> str:
    """Full container ID for an ID, unique ID prefix or name"""
    containers = engine.list_containers(all=True)
    for container in containers:
        if reference in (container.id, container.name):
            return container.id
    matches = [c.id for c in containers if c.id.startswith(reference)]
    if not matches:
        raise NotFoundError(f"Container {reference} not found")
    if len(matches) > 1:
        raise ApiError(
            f"Container ID prefix {reference} is ambiguous",
            "AMBIGUOUS_ID",
            409,
            {"matches": matches},
        )
    return matches[0]


router = APIRouter(dependencies=[Depends(verify_api_token)])


@router.get("/containers", response_model=List[ContainerInfo])
def list_all_containers(
    request: Request, all: bool = True, label: List[str] = Query(default=[])
):
    """List containers, optionally narrowed by ``label=key=value`` filters"""
    label_filter = parse_label_filter(label)
    logger.info("Listing containers", all_containers=all, labels=label_filter)
    try:
        containers = get_engine(request).list_containers(
            all=all, label_filter=label_filter
        )
    except ClientError as e:
        _fail(request, "list_containers", "all", e, "Failed to list containers")
    log_container_operation(
        "list_containers",
        "all",
        "success",
        {"count": len(containers)},
        metrics=get_metrics(request),
    )
    return containers


def _create_and_maybe_start(request, name, config, start, archive=None):
    engine = get_engine(request)
    try:
        result = engine.create_container(name, config)
    except ClientError as e:
        _fail(request, "create", name, e, "Failed to create container")
    get_metrics(request).containers_created.inc()

    # A failure past this point leaves the created container in place
    if archive is not None:
        try:
            engine.copy_to_container(result.id, config.working_dir or "/", archive)
        except ClientError as e:
            _fail(
                request,
                "copy_project",
                result.id,
                e,
                "Failed to copy project into container",
                {"containerId": result.id},
            )
    if start:
        try:
            engine.start_container(result.id)
        except ClientError as e:
            _fail(
                request,
                "start",
                result.id,
                e,
                "Container created but failed to start",
                {"containerId": result.id},
            )

    log_container_operation(
        "create",
        result.id,
        "success",
        {"name": name, "warnings": result.warnings, "started": start},
        metrics=get_metrics(request),
    )
    return {"containerId": result.id, "warnings": result.warnings}


@router.post("/containers", status_code=201)
def create_container(body: CreateContainerRequest, request: Request):
    """Create a container from an explicit configuration"""
    logger.info("Creating container", name=body.name, image=body.config.image)
    return _create_and_maybe_start(request, body.name, body.config, body.start)


@router.post("/containers/create", status_code=201)
def create_project_container(body: ProjectContainerRequest, request: Request):
    """Create a container running a Node.js project directory"""
    logger.info("Creating project container", name=body.name, path=body.project_path)
    settings: Settings = request.app.state.settings
    scaffold = ProjectScaffold.from_defaults(body.project_path, settings.container)
    try:
        package = scaffold.prepare_build_context()
        archive = scaffold.archive()
    except ProjectError as e:
        raise ApiError("Invalid Node.js project", "INVALID_PROJECT", 400, str(e))
    config = container_config_for(package, body, settings.container)
    return _create_and_maybe_start(request, body.name, config, body.start, archive)


@router.get("/containers/{container_id}", response_model=ContainerInfo)
def get_container(container_id: str, request: Request):
    """Detailed container information; accepts an ID prefix or name"""
    logger.info("Getting container", container_id=container_id)
    engine = get_engine(request)
    try:
        full_id = resolve_container_id(engine, container_id)
        info = engine.get_container(full_id)
    except ClientError as e:
        _fail(request, "inspect", container_id, e, "Failed to get container details")
    log_container_operation(
        "inspect", info.id, "success", metrics=get_metrics(request)
    )
    return info


@router.get("/containers/{container_id}/logs")
def get_container_logs(container_id: str, request: Request, tail: str = "all"):
    """Container stdout and stderr, in labelled sections"""
    logger.info("Getting container logs", container_id=container_id, tail=tail)
    try:
        logs = get_engine(request).get_container_logs(container_id, tail)
    except ClientError as e:
        _fail(request, "get_logs", container_id, e, "Failed to get container logs")
    log_container_operation("get_logs", container_id, "success", metrics=get_metrics(request))
    return {"logs": logs}


@router.post("/containers/{container_id}/start")
def start_existing_container(container_id: str, request: Request):
    logger.info("Starting container", container_id=container_id)
    try:
        get_engine(request).start_container(container_id)
    except ClientError as e:
        _fail(request, "start", container_id, e, "Failed to start container")
    log_container_operation("start", container_id, "success", metrics=get_metrics(request))
    return {"message": f"Container {container_id} started", "containerId": container_id}


@router.post("/containers/{container_id}/stop")
def stop_existing_container(container_id: str, request: Request, timeout: int = 10):
    logger.info("Stopping container", container_id=container_id)
    try:
        get_engine(request).stop_container(container_id, timeout=timeout)
    except ClientError as e:
        _fail(request, "stop", container_id, e, "Failed to stop container")
    log_container_operation("stop", container_id, "success", metrics=get_metrics(request))
    return {"message": f"Container {container_id} stopped", "containerId": container_id}


@router.delete("/containers/{container_id}", status_code=204)
def delete_container(container_id: str, request: Request, force: bool = False):
    """Remove a container; running containers need ``force=true``"""
    logger.info("Removing container", container_id=container_id, force=force)
    try:
        get_engine(request).remove_container(container_id, force=force)
    except ClientError as e:
        _fail(request, "remove", container_id, e, "Failed to remove container")
    log_container_operation(
        "remove", container_id, "success", {"force": force}, metrics=get_metrics(request)
    )
    return Response(status_code=204)


def _error_body(request: Request, detail, error_code: str, extra=None):
    body = {
        "detail": detail,
        "error_code": error_code,
        "request_id": getattr(request.state, "request_id", None),
    }
    if extra is not None:
        body["details"] = extra
    return body


def create_app(
    settings: Optional[Settings] = None, engine: Optional[EngineClient] = None
) -> FastAPI:
    """Build the API around one shared engine client.

    Without ``engine`` a client is connected from ``settings`` at start-up
    and closed on shutdown.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.engine is None
        if owned:
            app.state.engine = engine_from_settings(settings)
        logger.info("Dock Steward started", docker_host=settings.docker.host)
        try:
            yield
        finally:
            if owned:
                app.state.engine.close()
            logger.info("Dock Steward shutdown complete")

    app = FastAPI(
        title="Dock Steward",
        description="Container lifecycle API over a Docker engine",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.metrics = Metrics()

    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[settings.server.rate_limit],
        enabled=settings.server.rate_limit_enabled,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )

    # Request/Response middleware for request IDs, logging and metrics
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start_time = time.time()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response_time = time.time() - start_time
        response.headers[REQUEST_ID_HEADER] = request_id
        log_request(request, response_time, response.status_code, request_id)

        metrics = request.app.state.metrics
        metrics.request_count.labels(
            method=request.method,
            endpoint=request.url.path,
            status=response.status_code,
        ).inc()
        metrics.request_latency.observe(response_time)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        logger.error("Validation error", errors=exc.errors())
        return JSONResponse(
            status_code=422,
            content=_error_body(
                request, "Validation error", "VALIDATION_ERROR", jsonable_errors(exc)
            ),
        )

    @app.exception_handler(ValidationError)
    async def config_validation_handler(request: Request, exc: ValidationError):
        logger.error("Invalid container configuration", errors=exc.errors())
        return JSONResponse(
            status_code=400,
            content=_error_body(
                request,
                "Invalid container configuration",
                "VALIDATION_ERROR",
                jsonable_errors(exc),
            ),
        )

    @app.exception_handler(ApiError)
    async def api_exception_handler(request: Request, exc: ApiError):
        logger.error(
            "API error",
            error_code=exc.error_code,
            message=exc.message,
            status_code=exc.status_code,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.message, exc.error_code, exc.details),
        )

    @app.exception_handler(ClientError)
    async def client_exception_handler(request: Request, exc: ClientError):
        return await api_exception_handler(
            request, ApiError.from_client_error(exc, "Container engine operation failed")
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error("Unexpected error", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=_error_body(request, "Internal server error", "INTERNAL_ERROR"),
        )

    app.include_router(router, prefix=API_PREFIX)
    # Unprefixed routes kept for older clients
    app.include_router(router, include_in_schema=False)

    @app.get("/health")
    def health_endpoint(request: Request):
        result = health_check(get_engine(request))
        status_code = 200 if result["status"] == "healthy" else 503
        return JSONResponse(status_code=status_code, content=result)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        """Prometheus metrics endpoint"""
        return Response(
            content=get_metrics(request).render(), media_type=CONTENT_TYPE_LATEST
        )

    @app.get("/")
    async def root():
        """Root endpoint with API information"""
        return {
            "name": "Dock Steward",
            "version": "1.0.0",
            "status": "running",
            "api": API_PREFIX,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def jsonable_errors(exc) -> list:
    """Validation errors without the non-serializable ``ctx``/``url`` parts"""
    return [
        {key: value for key, value in error.items() if key in ("loc", "msg", "type")}
        for error in exc.errors()
    ]
