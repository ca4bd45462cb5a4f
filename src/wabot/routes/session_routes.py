"""
Session administration API routes.
"""

from starlette.requests import Request
from starlette.responses import JSONResponse

from wabot.logger import get_logger

logger = get_logger(__name__)


async def reset_session(request: Request) -> JSONResponse:
    """
    Log out, wipe the auth directory and the stored snapshot, then start a
    fresh client. A new QR becomes available at /qr.
    """
    manager = request.app.state.session_manager
    try:
        result = await manager.reset()
    except Exception as e:
        logger.error(f"Session reset failed: {e}")
        return JSONResponse({"success": False, "error": str(e)}, status_code=500)

    status_code = 200 if result.get("success") else 500
    return JSONResponse(result, status_code=status_code)


async def get_session(request: Request) -> JSONResponse:
    """Describe the persisted session: id, restore outcome, live state."""
    manager = request.app.state.session_manager
    return JSONResponse(manager.get_status())
