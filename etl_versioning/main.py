"""
FastAPI Main Application for the ETL Versioning Service.

Exposes snapshot versioning, snapshot comparison, rollback point
management and restore operations over REST.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from etl_versioning import __version__
from etl_versioning.core import configure_logging, get_logger, CorrelationIdMiddleware
from etl_versioning.core.context import CORRELATION_HEADER
from etl_versioning.exceptions import VersioningSystemException, get_http_status
from etl_versioning.routers import rollback, snapshots
from etl_versioning.services.container import build_services

# structlog 설정 (JSON or console, LOG_FORMAT)
configure_logging()
logger = get_logger(__name__)


# ============================================================
# OpenAPI Configuration
# ============================================================

API_TITLE = "ETL Versioning API"
API_VERSION = __version__
API_DESCRIPTION = """
## Snapshot versioning, diff and rollback for ETL data sources

- **Snapshots**: every pipeline run stores an immutable, numbered version per data source
- **Compare**: record- and field-level diff between any two versions (json, csv, text)
- **Rollback points**: capture the current versions of many data sources at once
- **Restore**: move data sources back to a rollback point, with dry-run preview

### Error Codes

| Code | HTTP | Description |
|------|------|-------------|
| V001 | 400 | Request validation failed |
| N001 | 404 | Rollback point, operation or snapshot not found |
| N002 | 410 | Rollback point expired |
| C001 | 409 | Concurrent write on a data source, or rollback point already used |
| M001 | 422 | Snapshot has duplicate or missing keys |
| P001 | 424 | Capture of a data source failed |
"""

TAGS_METADATA = [
    {
        "name": "Snapshots",
        "description": "Snapshot version creation, listing and comparison.",
    },
    {
        "name": "Rollback",
        "description": "Rollback points, restore operations, history and retention.",
    },
    {
        "name": "Health",
        "description": "Service health check for load balancers and monitoring.",
    },
    {
        "name": "Root",
        "description": "API information and discovery.",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Builds the service container and runs the expiry sweeper."""
    # Startup
    logger.info("Starting ETL Versioning API...")

    services = build_services()
    app.state.services = services

    stop_event = asyncio.Event()
    sweeper = None
    if services.config.sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(
            services.retention_manager.run_periodically(
                services.config.sweep_interval_seconds, stop_event
            )
        )

    yield

    # Shutdown
    logger.info("Shutting down ETL Versioning API...")
    stop_event.set()
    if sweeper is not None:
        await sweeper
    services.close()


# Create FastAPI application
app = FastAPI(
    title=API_TITLE,
    description=API_DESCRIPTION,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=TAGS_METADATA,
    lifespan=lifespan
)


def _cors_origins() -> list:
    """CORS_ORIGINS (쉼표 구분), 운영이 아니면 전체 허용"""
    if os.getenv("ENV") != "production":
        return ["*"]
    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    # 운영인데 미설정이면 대시보드 기본 주소만
    return origins or ["http://localhost:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", CORRELATION_HEADER],
    expose_headers=[CORRELATION_HEADER],
    max_age=86400,
)

# X-Correlation-ID 를 로그 컨텍스트에 바인딩
app.add_middleware(CorrelationIdMiddleware)


# Exception handlers
@app.exception_handler(VersioningSystemException)
async def versioning_exception_handler(request: Request, exc: VersioningSystemException):
    """Domain errors map to their HTTP status with the error body."""
    status_code = get_http_status(exc)
    if status_code >= 500:
        logger.error("request_failed", error_code=exc.error_code, error=exc.message)
    else:
        logger.info("request_rejected", error_code=exc.error_code, error=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Anything that escaped the domain exceptions becomes a 500."""
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=True)

    body = {
        "error_code": "INTERNAL",
        "timestamp": datetime.utcnow().isoformat(),
    }
    # 운영 환경에서는 내부 메시지 노출 안 함
    if os.getenv("ENV") == "production":
        body["message"] = "버전 관리 서비스 내부 오류입니다."
    else:
        body["message"] = str(exc)
        body["exception"] = type(exc).__name__
    return JSONResponse(status_code=500, content=body)


@app.get(
    "/health",
    tags=["Health"],
    summary="Service Health",
    description="200 when the metadata store answers a ping, 503 otherwise.",
)
async def health_check(request: Request):
    services = request.app.state.services
    if services.mongo_service is not None:
        storage = await asyncio.to_thread(services.mongo_service.health_check)
    else:
        storage = {"status": "healthy", "backend": "memory"}

    status = storage["status"]
    return JSONResponse(
        status_code=503 if status == "unhealthy" else 200,
        content={
            "status": status,
            "timestamp": datetime.utcnow().isoformat(),
            "service": "etl-versioning-api",
            "version": API_VERSION,
            "storage": storage,
        }
    )


@app.get(
    "/",
    tags=["Root"],
    summary="Service Index",
    description="Service name, version and where the snapshot and rollback APIs live.",
)
async def root():
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "docs": "/docs",
        "health": "/health",
        "apis": {
            "snapshots": "/api/snapshots",
            "rollback": "/api/rollback",
        },
    }


app.include_router(snapshots.router, prefix="/api/snapshots", tags=["Snapshots"])
app.include_router(rollback.router, prefix="/api/rollback", tags=["Rollback"])
