"""
HTTP middleware for wabot: admin authentication and request logging.
"""

import hashlib
import secrets
import time
from typing import Callable, Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from wabot.logger import get_logger

logger = get_logger(__name__)

# The pairing QR links whoever scans it to the bot, so /qr is never public
DEFAULT_PUBLIC_PATHS = ("/", "/health", "/ready")


def hash_api_key(api_key: str) -> str:
    """Hash an API key for comparison."""
    return hashlib.sha256(api_key.encode()).hexdigest()


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """
    API key authentication for the operator surface.

    Checks for API key in:
    1. Authorization header: "Bearer <key>"
    2. X-API-Key header: "<key>"
    3. Query parameter: "api_key=<key>"

    Configuration via environment:
        ADMIN_API_KEYS=key1,key2
    With no keys configured only the public paths are served; every operator
    route answers 403 until a key is set.
    """

    def __init__(
        self,
        app,
        api_keys: Optional[Iterable[str]] = None,
        public_paths: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.api_key_hashes = [hash_api_key(key) for key in (api_keys or [])]
        self.public_paths = set(public_paths or DEFAULT_PUBLIC_PATHS)

    def _extract_api_key(self, request: Request) -> Optional[str]:
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            return auth[7:]

        api_key = request.headers.get("X-API-Key")
        if api_key:
            return api_key

        return request.query_params.get("api_key")

    def _verify_api_key(self, api_key: str) -> bool:
        """Constant-time comparison against every configured key."""
        key_hash = hash_api_key(api_key)
        matched = False
        for known in self.api_key_hashes:
            matched |= secrets.compare_digest(key_hash, known)
        return matched

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.public_paths or request.method == "OPTIONS":
            return await call_next(request)

        if not self.api_key_hashes:
            logger.warning(
                f"Rejected {request.method} {request.url.path}: ADMIN_API_KEYS is not configured"
            )
            return JSONResponse(
                {
                    "error": "Admin API disabled",
                    "message": "Set ADMIN_API_KEYS to enable operator routes",
                },
                status_code=403,
            )

        api_key = self._extract_api_key(request)
        if not api_key:
            logger.warning(f"Missing API key for {request.url.path}")
            return JSONResponse(
                {
                    "error": "Authentication required",
                    "message": "API key required in Authorization header or X-API-Key header",
                },
                status_code=401,
            )

        if not self._verify_api_key(api_key):
            logger.warning(f"Invalid API key for {request.url.path}")
            return JSONResponse({"error": "Invalid API key"}, status_code=403)

        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log all requests with timing information.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Request {request.method} {request.url.path} failed: {e}")
            raise

        duration = time.time() - start_time
        logger.debug(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"in {duration * 1000:.2f}ms"
        )
        response.headers["X-Response-Time"] = f"{duration * 1000:.2f}ms"
        return response
