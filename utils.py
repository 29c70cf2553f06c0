import logging
import os
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import Request
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from errors import ClientError

logger = structlog.get_logger()

_STARTED_AT = time.time()


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging; called once by the entry point"""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
        force=True,
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class Metrics:
    """Prometheus metrics, kept in their own registry per application"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.request_count = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status"],
            registry=self.registry,
        )
        self.request_latency = Histogram(
            "http_request_duration_seconds",
            "HTTP request latency",
            registry=self.registry,
        )
        self.container_operations = Counter(
            "container_operations_total",
            "Container operations",
            ["operation", "status"],
            registry=self.registry,
        )
        self.containers_created = Gauge(
            "containers_created", "Containers created by this process",
            registry=self.registry,
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)


def log_request(
    request: Request,
    response_time: float,
    status_code: int,
    request_id: Optional[str] = None,
):
    """Log request details with structured logging"""
    logger.info(
        "HTTP request",
        method=request.method,
        path=request.url.path,
        status_code=status_code,
        response_time=response_time,
        request_id=request_id,
        user_agent=request.headers.get("user-agent"),
        client_ip=request.client.host if request.client else None,
    )


def log_container_operation(
    operation: str,
    container_id: str,
    status: str,
    details: Dict[str, Any] = None,
    metrics: Optional[Metrics] = None,
):
    """Log container operations with structured logging"""
    log = logger.info if status == "success" else logger.warning
    log(
        "Container operation",
        operation=operation,
        container_id=container_id,
        status=status,
        details=details or {},
    )
    if metrics is not None:
        metrics.container_operations.labels(operation=operation, status=status).inc()


def health_check(engine) -> Dict[str, Any]:
    """Engine reachability plus a few host figures"""
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        engine.ping()
        engine_status = "healthy"
        error = None
    except ClientError as e:
        engine_status = "unhealthy"
        error = str(e)

    result: Dict[str, Any] = {
        "status": "healthy" if engine_status == "healthy" else "unhealthy",
        "timestamp": timestamp,
        "services": {"docker": engine_status},
        "system": {"uptime_seconds": round(time.time() - _STARTED_AT, 2)},
    }
    if error:
        result["error"] = error

    try:
        disk_usage = os.statvfs("/")
        free_space_gb = (disk_usage.f_frsize * disk_usage.f_bavail) / (1024**3)
        result["system"]["free_disk_gb"] = round(free_space_gb, 2)
    except (AttributeError, OSError):
        # statvfs is POSIX only
        pass
    return result
