"""Gateway FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan     — @asynccontextmanager startup/shutdown sequence
  - /health      — delegated to gateway/health.py
  - /            — service discovery root
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. create_http_client()        → app.state.http_client
  2. create_identity_provider()  → app.state.identity_provider
  3. Forwarder(...)              → app.state.forwarder
  4. app.state.ready = True

Shutdown (reverse):
  app.state.ready = False → close identity provider → close http client

Middleware (outermost first):
  RequestContextMiddleware → CorsHeaderMiddleware → RouteGuardMiddleware → routes
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from starlette.exceptions import HTTPException as StarletteHTTPException

from gateway.auth.guard import RouteGuardMiddleware
from gateway.auth.identity import IdentityProvider, create_identity_provider
from gateway.config import Config, load_config
from gateway.health import router as health_router
from gateway.models.errors import error_envelope
from gateway.proxy.cors import CorsHeaderMiddleware, apply_cors_headers
from gateway.proxy.engine import build_proxy_router, create_http_client
from gateway.proxy.forwarder import Forwarder
from gateway.utils.context import RequestContextMiddleware
from gateway.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Routers ──────────────────────────────────────────────────────────────────

root_router = APIRouter(tags=["root"])


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: raises HTTP 503 if app.state.ready is not True."""
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(status_code=503, detail="Gateway is starting up")


# ─── Root Endpoint ────────────────────────────────────────────────────────────


@root_router.get("/")
async def root(request: Request) -> dict[str, str]:
    """Service discovery: where the backend mount and health check live."""
    config: Config = request.app.state.config
    return {
        "service": "gateway",
        "backend_mount": config.proxy.mount_path,
        "health": "/health",
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence.

    The Config itself is loaded by create_app() (routes depend on it), so the
    lifespan only builds the shared runtime objects from app.state.config.
    """
    config: Config = app.state.config
    logger.info("Gateway starting up...", backend=config.backend.base_url)

    # ── Step 1: Shared HTTP client ────────────────────────────────────────────
    http_client: httpx.AsyncClient = create_http_client(config.backend)
    app.state.http_client = http_client

    # ── Step 2: Identity provider (reuses the shared client) ─────────────────
    identity_provider: IdentityProvider = create_identity_provider(
        config.auth, http_client
    )
    app.state.identity_provider = identity_provider

    # ── Step 3: Forwarder bound to the configured backend ────────────────────
    app.state.forwarder = Forwarder(
        http_client,
        config.backend.base_url,
        timeout_s=config.backend.timeout_s,
    )

    # ── Step 4: Mark as ready ─────────────────────────────────────────────────
    app.state.ready = True
    logger.info(
        "Gateway ready",
        mount_path=config.proxy.mount_path,
        fixed_routes=[route.path for route in config.routes],
        credential_policy=config.auth.credential_policy,
    )

    yield

    # ── Shutdown (reverse order) ──────────────────────────────────────────────
    logger.info("Gateway shutting down...")
    app.state.ready = False

    try:
        await identity_provider.close()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Identity provider close error (non-fatal)", error=str(exc))

    try:
        await http_client.aclose()
        logger.info("Backend client closed")
    except Exception as exc:  # noqa: BLE001
        logger.warning("Backend client close error (non-fatal)", error=str(exc))

    logger.info("Gateway shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Create and configure the gateway FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app(Config.defaults())

    Args:
        config: Configuration to serve. Loaded with load_config() when omitted.

    Returns:
        Configured FastAPI application with lifespan, routers, and middleware.
    """
    if config is None:
        config = load_config()

    application = FastAPI(
        title="Backend Gateway",
        description="Authenticated gateway between the dashboard and its backend API",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
        openapi_url="/openapi.json" if DEBUG else None,
    )

    application.state.config = config
    # Set before the lifespan so /health answers 503 until startup completes.
    application.state.ready = False

    # NOTE: In Starlette, the LAST-added middleware is OUTERMOST (runs first).
    application.add_middleware(
        RouteGuardMiddleware,
        guard=config.guard,
        mount_path=config.proxy.mount_path,
        public_routes=[route.path for route in config.routes if route.public],
    )
    application.add_middleware(CorsHeaderMiddleware)
    application.add_middleware(RequestContextMiddleware)

    # Register routers
    application.include_router(root_router)
    application.include_router(health_router)
    application.include_router(
        build_proxy_router(config), dependencies=[Depends(require_ready)]
    )

    # Global exception handlers
    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_envelope(exc.detail),
            headers=getattr(exc, "headers", None),
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        # Served by ServerErrorMiddleware, outside CorsHeaderMiddleware.
        return apply_cors_headers(
            JSONResponse(status_code=500, content=error_envelope("Internal server error"))
        )

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
