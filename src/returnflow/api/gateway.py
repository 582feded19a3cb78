"""API Gateway - FastAPI application in front of the control plane."""

import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from returnflow import __version__
from returnflow.api.schemas import (
    ErrorResponse,
    HealthResponse,
    PolicyInvalidationResponse,
    ReadinessResponse,
)
from returnflow.api.service import ControlPlaneService
from returnflow.common.exceptions import ConfigurationError
from returnflow.common.logging import configure_logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger("returnflow_api")

SERVICE_NAME = "returnflow-gateway"


class ServiceManager:
    """Thread-safe service singleton manager."""

    _instance: Optional[ControlPlaneService] = None
    _lock = threading.Lock()
    _initialized = False

    @classmethod
    def get_service(cls) -> ControlPlaneService:
        """Get or create the control plane instance (thread-safe)."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = ControlPlaneService()
                    logger.info("ControlPlaneService initialized")
        return cls._instance

    @classmethod
    def set_service(cls, service: ControlPlaneService) -> None:
        """Install a pre-built service (tests, embedding)."""
        with cls._lock:
            cls._instance = service
            cls._initialized = False

    @classmethod
    def mark_ready(cls) -> None:
        cls._initialized = True

    @classmethod
    def shutdown(cls) -> None:
        """Drop the service; live sessions are lost with it."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance = None
                cls._initialized = False
                logger.info("ControlPlaneService shutdown complete")


def get_service() -> ControlPlaneService:
    """Get the control plane instance."""
    return ServiceManager.get_service()


# =============================================================================
# CORS CONFIGURATION
# =============================================================================

def get_cors_origins() -> List[str]:
    """Get allowed CORS origins from environment.

    In production, set RETURNFLOW_CORS_ORIGINS to a comma-separated list of
    allowed origins.
    """
    origins_env = os.environ.get("RETURNFLOW_CORS_ORIGINS", "")

    if origins_env:
        return [origin.strip() for origin in origins_env.split(",") if origin.strip()]

    if os.environ.get("RETURNFLOW_ENVIRONMENT", "development") == "production":
        logger.warning(
            "RETURNFLOW_CORS_ORIGINS not set in production. "
            "CORS will be disabled. Set RETURNFLOW_CORS_ORIGINS for cross-origin access."
        )
        return []

    logger.warning("Running in development mode with permissive CORS (allow_origins=['*'])")
    return ["*"]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("ReturnFlow API Gateway starting up...")
    service = get_service()
    configure_logging(service.config)
    await service.startup()
    ServiceManager.mark_ready()
    logger.info("ReturnFlow API Gateway ready")

    yield

    logger.info("ReturnFlow API Gateway shutting down...")
    ServiceManager.shutdown()
    logger.info("ReturnFlow API Gateway shutdown complete")


environment = os.environ.get("RETURNFLOW_ENVIRONMENT", "development")
enable_docs_default = "false" if environment == "production" else "true"
enable_docs = os.environ.get("RETURNFLOW_ENABLE_DOCS", enable_docs_default).lower() == "true"

app = FastAPI(
    title="ReturnFlow API Gateway",
    description="Return-management control plane and layered decision engine.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if enable_docs else None,
    redoc_url="/redoc" if enable_docs else None,
)


cors_origins = get_cors_origins()
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["POST", "GET"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    """Misconfiguration found while serving, e.g. a broken seed file."""
    request_id = getattr(request.state, "request_id", None)
    logger.error(
        "Configuration error",
        extra={"request_id": request_id, "error": exc.message},
    )
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="configuration_error",
            message=exc.message,
            request_id=request_id,
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected errors.

    Logs full exception for debugging but returns sanitized message to client.
    """
    request_id = getattr(request.state, "request_id", None)
    logger.exception(
        "Unexpected error",
        extra={"request_id": request_id, "error_type": type(exc).__name__}
    )
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="internal_error",
            message="An unexpected error occurred",
            request_id=request_id,
        ).model_dump(),
    )


# =============================================================================
# MIDDLEWARE
# =============================================================================

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Add request ID to each request for tracing."""
    request_id = request.headers.get("X-Request-ID") or f"req_{uuid4().hex[:12]}"
    request.state.request_id = request_id

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.post(
    "/decisions",
    summary="Run the layered decision engine",
    description=(
        "Body is a request envelope whose data describes a return request or "
        "an in-call utterance. Returns a response envelope; on failure the "
        "data carries the partial audit trail."
    ),
)
async def process_decision(request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    service = get_service()
    logger.info(
        "Processing decision request",
        extra={"request_id": request.state.request_id, "business_id": body.get("businessId")},
    )
    body.setdefault("action", "process_decision")
    response = await service.decide(body)
    return response.to_wire()


@app.post(
    "/servers/{server}/requests",
    summary="Dispatch a request envelope to a domain control server",
    responses={404: {"description": "Unknown server", "model": ErrorResponse}},
)
async def dispatch(server: str, body: Dict[str, Any]) -> Dict[str, Any]:
    service = get_service()
    if server not in service.servers:
        raise HTTPException(status_code=404, detail=f"Unknown server '{server}'")
    response = await service.dispatch(server, body)
    return response.to_wire()


@app.post(
    "/policies/{business_id}/invalidate",
    response_model=PolicyInvalidationResponse,
    summary="Reload a business policy on its next use",
)
async def invalidate_policy(business_id: str) -> PolicyInvalidationResponse:
    """Call after changing a stored policy; subscribed sessions are notified."""
    service = get_service()
    sessions = service.invalidate_policy(business_id)
    return PolicyInvalidationResponse(business_id=business_id, notified_sessions=sessions)


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="healthy", service=SERVICE_NAME)


@app.get("/ready", response_model=ReadinessResponse)
async def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint.

    Returns 503 until the control plane has started.
    """
    if not ServiceManager._initialized:
        raise HTTPException(status_code=503, detail="not_ready")
    service = get_service()
    return ReadinessResponse(
        status="ready",
        service=SERVICE_NAME,
        servers=sorted(service.servers),
        policies_loaded=service.policies_loaded,
    )
