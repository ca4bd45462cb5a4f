"""
Response table API routes.

Keywords are matched case-insensitively against plain messages and against
prefixed commands the bot does not implement itself.
"""

import asyncio

from starlette.requests import Request
from starlette.responses import JSONResponse

from wabot.logger import get_logger

logger = get_logger(__name__)


async def list_responses(request: Request) -> JSONResponse:
    store = request.app.state.response_store
    try:
        responses = await asyncio.to_thread(store.list_responses)
    except Exception as e:
        logger.error(f"Error listing responses: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)
    return JSONResponse({"responses": responses, "count": len(responses)})


async def set_response(request: Request) -> JSONResponse:
    """
    Create or replace the reply for a keyword.

    Path params:
        - keyword: trigger word

    Body:
        - reply: text to send back
    """
    keyword = request.path_params.get("keyword", "")
    try:
        data = await request.json()
    except Exception:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    reply = data.get("reply")
    if not isinstance(reply, str):
        return JSONResponse({"error": "reply is required"}, status_code=400)

    store = request.app.state.response_store
    try:
        keyword = await asyncio.to_thread(store.set_response, keyword, reply)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except Exception as e:
        logger.error(f"Error saving response {keyword!r}: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)

    return JSONResponse({"success": True, "keyword": keyword, "reply": reply})


async def delete_response(request: Request) -> JSONResponse:
    keyword = request.path_params.get("keyword", "")
    store = request.app.state.response_store
    try:
        deleted = await asyncio.to_thread(store.delete_response, keyword)
    except Exception as e:
        logger.error(f"Error deleting response {keyword!r}: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)

    if not deleted:
        return JSONResponse(
            {"error": f"No response found for keyword {keyword}"}, status_code=404
        )
    return JSONResponse({"success": True})
