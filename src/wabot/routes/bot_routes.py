"""
Bot status and messaging API routes.

Every handler reaches the live session through request.app.state.session_manager.
"""

import time
from datetime import datetime, timezone

from starlette.requests import Request
from starlette.responses import JSONResponse

from wabot.channels.whatsapp import to_jid
from wabot.core.session_manager import NotConnectedError, SessionManager
from wabot.logger import get_logger

logger = get_logger(__name__)
start_time = time.time()


def _manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


async def index(request: Request) -> JSONResponse:
    """Landing summary: running, connected, and whether a QR is waiting."""
    manager = _manager(request)
    return JSONResponse(
        {
            "status": "WhatsApp Bot is running",
            "connected": manager.is_connected,
            "state": manager.state,
            "qrCode": "QR Code available at /qr"
            if manager.pending_qr
            else "Connected or no QR code needed",
        }
    )


async def get_qr(request: Request) -> JSONResponse:
    """Return the pending pairing QR payload, if any."""
    manager = _manager(request)
    if manager.pending_qr:
        return JSONResponse({"qrCode": manager.pending_qr})
    return JSONResponse({"message": "No QR code available or already connected"})


async def get_status(request: Request) -> JSONResponse:
    manager = _manager(request)
    status = manager.get_status()
    status.update(
        {
            "uptime": int(time.time() - start_time),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
    return JSONResponse(status)


async def send_message(request: Request) -> JSONResponse:
    """
    Send a text message through the live session.

    Body:
        - number: phone number or full JID
        - message: text to send
    """
    try:
        data = await request.json()
    except Exception:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    number = str(data.get("number") or "").strip()
    message = data.get("message")
    if not number or not message:
        return JSONResponse(
            {"error": "Number and message are required"}, status_code=400
        )

    manager = _manager(request)
    try:
        sent = await manager.send_text(to_jid(number), message)
    except NotConnectedError:
        return JSONResponse({"error": "WhatsApp not connected"}, status_code=503)
    except Exception as e:
        logger.error(f"Error sending message: {e}")
        return JSONResponse({"error": "Failed to send message"}, status_code=500)

    if not sent:
        return JSONResponse({"error": "Failed to send message"}, status_code=500)
    return JSONResponse({"success": True, "message": "Message sent successfully"})
