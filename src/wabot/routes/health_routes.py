"""
Health check and monitoring endpoints.
"""

import asyncio
import sys
import time
from datetime import datetime

from starlette.requests import Request
from starlette.responses import JSONResponse

from wabot import __version__
from wabot.logger import get_logger

logger = get_logger(__name__)
start_time = time.time()


async def health_check(request: Request) -> JSONResponse:
    """
    Basic health check endpoint.

    Returns 200 if service is running. Used by the keep-alive pinger.
    """
    return JSONResponse(
        {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "uptime_seconds": int(time.time() - start_time),
        }
    )


async def readiness_check(request: Request) -> JSONResponse:
    """
    Readiness check - verifies the session store is reachable.

    Returns 503 when the store can not be queried.
    """
    checks = {}
    manager = request.app.state.session_manager

    try:
        await asyncio.to_thread(
            manager.synchronizer.store.load, manager.session_id
        )
        checks["session_store"] = "ok"
    except Exception as e:
        checks["session_store"] = f"error: {str(e)}"

    checks["whatsapp"] = manager.state

    all_ok = checks["session_store"] == "ok"
    status_code = 200 if all_ok else 503

    return JSONResponse(
        {
            "status": "ready" if all_ok else "not ready",
            "checks": checks,
            "timestamp": datetime.now().isoformat(),
        },
        status_code=status_code,
    )


async def get_system_info(request: Request) -> JSONResponse:
    """Version and runtime information."""
    return JSONResponse(
        {
            "version": __version__,
            "python_version": sys.version,
            "platform": sys.platform,
            "uptime_seconds": int(time.time() - start_time),
        }
    )
