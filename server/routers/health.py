"""
Health check endpoints for production deployment.

Provides:
- /health - Basic liveness check (is the app running?)
- /ready - Readiness check (can the app reach the room store?)
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Response

from stores.sync import SyncStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

# Service references (set during app initialization)
_store: Optional[SyncStore] = None
_backend: str = "memory"


def set_health_dependencies(store: Optional[SyncStore] = None, backend: str = "memory"):
    """Set dependencies for health checks."""
    global _store, _backend
    _store = store
    _backend = backend


@router.get("/health")
async def health_check():
    """
    Basic liveness check - is the app running?

    This endpoint should always return 200 if the process is alive.
    """
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ready")
async def readiness_check():
    """
    Readiness check - can the app handle requests?

    Returns 503 if the room store is missing or unreachable.
    """
    checks = {}
    overall_healthy = True

    if _store is not None:
        if await _store.ping():
            checks["store"] = {"status": "ok", "backend": _backend}
        else:
            checks["store"] = {"status": "error", "backend": _backend}
            overall_healthy = False
    else:
        checks["store"] = {"status": "not_configured"}
        overall_healthy = False

    status_code = 200 if overall_healthy else 503
    return Response(
        content=json.dumps({
            "status": "ok" if overall_healthy else "degraded",
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }),
        status_code=status_code,
        media_type="application/json",
    )
