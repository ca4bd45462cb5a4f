"""
Chat client driver interface and the events drivers emit.

A driver owns the protocol session and its auth directory. It never calls
into the bot directly: every callback from the underlying library is turned
into a ChatEvent and pushed through the callback installed by the session
manager.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from wabot.logger import get_logger

logger = get_logger(__name__)

CONNECTING = "connecting"
OPEN = "open"
CLOSE = "close"


@dataclass
class IncomingMessage:
    """Text message normalized from the driver's native payload."""

    id: str
    chat_id: str
    sender_id: str
    text: str
    is_group: bool = False
    from_me: bool = False
    timestamp: float = 0.0
    push_name: str = ""


@dataclass
class CredsUpdated:
    """The driver rotated key material in its auth directory."""


@dataclass
class ConnectionStateChanged:
    """Connection update; qr carries a pairing code while unauthenticated."""

    state: str
    qr: Optional[str] = None
    logged_out: bool = False
    error: Optional[str] = None


@dataclass
class MessageReceived:
    message: IncomingMessage


ChatEvent = Union[CredsUpdated, ConnectionStateChanged, MessageReceived]
EventCallback = Callable[[ChatEvent], Awaitable[None]]


class ChatClient(ABC):
    """
    Abstract WhatsApp client.

    Construction must not block on the network; the driver reads its auth
    directory at construction time, so the directory has to be restored
    before the client is built.
    """

    # Quiet period before a burst of key changes is reported as one rotation
    CREDS_DEBOUNCE_SECONDS = 2.0

    def __init__(self, name: str, auth_dir):
        self.name = name
        self.auth_dir = Path(auth_dir)
        self._callback: Optional[EventCallback] = None
        self._creds_task: Optional[asyncio.Task] = None

    def set_callback(self, callback: EventCallback):
        """Install the coroutine receiving every emitted event."""
        self._callback = callback

    async def _emit(self, event: ChatEvent):
        if not self._callback:
            logger.warning(f"{self.name}: dropping {type(event).__name__}, no callback set")
            return
        await self._callback(event)

    def request_creds_update(self, delay: Optional[float] = None):
        """
        Report a key change once the driver has been quiet for a moment.

        Repeated requests inside the window collapse into one CredsUpdated.
        """
        if self._creds_task and not self._creds_task.done():
            return
        wait = self.CREDS_DEBOUNCE_SECONDS if delay is None else delay
        self._creds_task = asyncio.create_task(self._emit_creds_after(wait))

    async def _emit_creds_after(self, delay: float):
        await asyncio.sleep(delay)
        self._creds_task = None
        await self._emit(CredsUpdated())

    def cancel_creds_update(self):
        if self._creds_task and not self._creds_task.done():
            self._creds_task.cancel()
        self._creds_task = None

    async def checkpoint(self):
        """Flush on-disk session state before the auth directory is read."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the protocol session is open."""

    @abstractmethod
    async def connect(self):
        """Start connecting. Progress is reported through ConnectionStateChanged."""

    @abstractmethod
    async def disconnect(self):
        """Close the connection, keeping credentials valid."""

    @abstractmethod
    async def logout(self):
        """Unlink this device from the account, invalidating credentials."""

    @abstractmethod
    async def send_text(self, chat_id: str, text: str) -> bool:
        """Send a plain text message to a JID."""
