"""
Keep-alive pinger: periodically GETs a public health URL so hosting
platforms that idle inactive services keep the bot process running.
"""

import asyncio
from datetime import datetime
from typing import Optional

import httpx

from wabot.logger import get_logger

logger = get_logger(__name__)


class KeepAlivePinger:
    """Pings url once immediately, then every interval_seconds."""

    def __init__(self, url: str, interval_seconds: float = 60.0, timeout: float = 20.0):
        self.url = url
        self.interval_seconds = interval_seconds
        self.timeout = timeout
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_status: Optional[int] = None
        self.last_error: Optional[str] = None
        self.last_run_at: Optional[datetime] = None

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"KeepAlivePinger started ({self.url} every {self.interval_seconds:g}s)")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("KeepAlivePinger stopped.")

    async def _run_loop(self):
        while self._running:
            await self.ping()
            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break

    async def ping(self) -> bool:
        """Single health check. Never raises."""
        self.last_run_at = datetime.now()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, verify=False) as client:
                response = await client.get(self.url)
            self.last_status = response.status_code
            self.last_error = None
            logger.info(f"Health check successful. Status: {response.status_code}")
            return True
        except httpx.TimeoutException:
            self.last_error = "timeout"
            logger.error("Health check timed out")
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Health check failed: {e}")
        return False
