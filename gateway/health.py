"""Health endpoint for the gateway.

  GET /health — 503 before ``app.state.ready`` is set, 200 afterwards

Polled by container health checks and the dashboard deployment. Readiness only
reflects the gateway's own lifecycle; the backend is not contacted.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from gateway.config import Config
from gateway.constants import POOL_MAX_CONNECTIONS

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Readiness check.

    Response body (200):
        {
          "status": "ok",
          "proxy": "running",
          "backend": "http://localhost:3001",
          "identity_provider": "none" | "http",
          "credential_policy": "fail-open" | "fail-closed",
          "connection_pool_size": 100
        }

    Response body (503):
        {"error": "Gateway is starting up"}
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(status_code=503, detail="Gateway is starting up")

    config: Config = request.app.state.config
    return {
        "status": "ok",
        "proxy": "running",
        "backend": config.backend.base_url,
        "identity_provider": config.auth.provider,
        "credential_policy": config.auth.credential_policy,
        # Configured httpx Limits.max_connections; the live pool is not introspected.
        "connection_pool_size": POOL_MAX_CONNECTIONS,
    }
