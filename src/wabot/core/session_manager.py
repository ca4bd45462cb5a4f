"""
Session Manager: owns the live WhatsApp client and its connection state.

Driver callbacks only enqueue events; a single dispatch loop consumes them,
persists credential rotations through the synchronizer, applies the
reconnection policy and hands text messages to the command dispatcher.
"""

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, Tuple

from wabot.channels.base import (
    CLOSE,
    CONNECTING,
    OPEN,
    ChatClient,
    ChatEvent,
    ConnectionStateChanged,
    CredsUpdated,
    IncomingMessage,
    MessageReceived,
)
from wabot.config import Config
from wabot.core.commands import CommandDispatcher
from wabot.logger import get_logger
from wabot.session.synchronizer import SessionSynchronizer

logger = get_logger(__name__)

STATE_CONNECTING = "connecting"
STATE_OPEN = "open"
STATE_CLOSED = "closed"

ClientFactory = Callable[[Path], ChatClient]


class NotConnectedError(RuntimeError):
    """Raised when sending while the WhatsApp session is not open."""


class SessionManager:
    """
    Explicit owner of {connection state, pending QR, client}.

    Lifecycle: start() restores the stored session once, then connects.
    Reconnects reuse the local auth directory and never restore again.
    """

    def __init__(
        self,
        synchronizer: SessionSynchronizer,
        client_factory: ClientFactory,
        dispatcher: Optional[CommandDispatcher] = None,
        auth_dir=None,
        reconnect_delay: Optional[float] = None,
        reconnect_error_delay: Optional[float] = None,
    ):
        self.synchronizer = synchronizer
        self.client_factory = client_factory
        self.dispatcher = dispatcher
        self.auth_dir = Path(auth_dir or Config.AUTH_DIR)
        self.reconnect_delay = (
            Config.RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        )
        self.reconnect_error_delay = (
            Config.RECONNECT_ERROR_DELAY
            if reconnect_error_delay is None
            else reconnect_error_delay
        )

        self.state = STATE_CLOSED
        self.pending_qr: Optional[str] = None
        self.client: Optional[ChatClient] = None
        self.logged_out = False
        self.restored: Optional[bool] = None

        self.events: asyncio.Queue = asyncio.Queue()
        self._generation = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reset_lock = asyncio.Lock()
        self._message_tasks: Set[asyncio.Task] = set()

    @property
    def session_id(self) -> str:
        return self.synchronizer.session_id

    @property
    def is_connected(self) -> bool:
        return self.state == STATE_OPEN and self.client is not None

    async def start(self):
        """Restore the stored session, start the dispatch loop and connect."""
        if self._running:
            return
        self._running = True

        # The loop must exist before anything below can fail
        self._task = asyncio.create_task(self._process_events())
        self.restored = await self.synchronizer.restore(self.auth_dir)
        logger.info(
            f"SessionManager started (session restored: {self.restored}, auth dir: {self.auth_dir})"
        )
        await self._connect()

    async def stop(self):
        """Stop reconnecting and disconnect, keeping the session valid."""
        self._running = False
        self._cancel_reconnect()

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        client, self.client = self.client, None
        if client:
            try:
                await client.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting client: {e}")

        await self.synchronizer.flush()
        self.state = STATE_CLOSED
        logger.info("SessionManager stopped.")

    async def reset(self) -> Dict[str, Any]:
        """
        Discard all session state and start a fresh, unauthenticated client.

        Logout is best-effort; a failure there never blocks the clearing.
        """
        async with self._reset_lock:
            logger.info(f"Resetting session {self.session_id}")

            # Events from the old client are ignored from here on
            self._generation += 1
            self._cancel_reconnect()

            client, self.client = self.client, None
            if client:
                try:
                    await client.logout()
                except Exception as e:
                    logger.warning(f"Logout during reset failed (ignored): {e}")
                try:
                    await client.disconnect()
                except Exception as e:
                    logger.warning(f"Disconnect during reset failed (ignored): {e}")

            self.state = STATE_CLOSED
            self.pending_qr = None
            self.logged_out = False

            try:
                store_cleared = await self.synchronizer.reset(self.auth_dir)
            except OSError as e:
                logger.error(f"Failed to clear auth directory {self.auth_dir}: {e}")
                return {
                    "success": False,
                    "store_cleared": False,
                    "error": f"Failed to clear auth directory: {e}",
                }

            if self._running:
                await self._connect()

            result: Dict[str, Any] = {"success": store_cleared, "store_cleared": store_cleared}
            if not store_cleared:
                result["error"] = "Session store could not be cleared"
            return result

    async def send_text(self, chat_id: str, text: str) -> bool:
        if not self.is_connected:
            raise NotConnectedError("WhatsApp not connected")
        return await self.client.send_text(chat_id, text)

    def get_status(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state,
            "connected": self.is_connected,
            "qr_available": self.pending_qr is not None,
            "logged_out": self.logged_out,
            "restored": self.restored,
        }

    # -- Connection ----------------------------------------------------------

    async def _connect(self):
        self._generation += 1
        generation = self._generation
        self.state = STATE_CONNECTING

        try:
            client = self.client_factory(self.auth_dir)
            client.set_callback(self._make_callback(generation))
            self.client = client
            await client.connect()
        except Exception as e:
            if generation != self._generation:
                logger.info(f"Superseded connection attempt failed (ignored): {e}")
                return
            logger.error(f"Error connecting to WhatsApp: {e}")
            self.state = STATE_CLOSED
            self._schedule_reconnect(self.reconnect_error_delay)
            return

        if generation != self._generation:
            # A reset or a newer attempt took over while this client was connecting
            logger.info("Discarding client superseded during connect")
            try:
                await client.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting superseded client: {e}")

    def _make_callback(self, generation: int):
        async def enqueue(event: ChatEvent):
            await self.events.put((generation, event))

        return enqueue

    def _schedule_reconnect(self, delay: float):
        if not self._running:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        logger.info(f"Reconnecting in {delay:g}s")
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay, self._generation)
        )

    async def _reconnect_after(self, delay: float, generation: int):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        self._reconnect_task = None
        if self._running and generation == self._generation:
            await self._connect()

    def _cancel_reconnect(self):
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

    # -- Event dispatch -----------------------------------------------------

    async def _process_events(self):
        """Main loop consuming driver events."""
        while self._running:
            try:
                item: Tuple[int, ChatEvent] = await self.events.get()
            except asyncio.CancelledError:
                break

            generation, event = item
            try:
                await self.handle_event(event, generation)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in SessionManager loop: {e}")
            finally:
                self.events.task_done()

    async def handle_event(self, event: ChatEvent, generation: Optional[int] = None):
        """Apply one event. generation=None means the current client."""
        stale = generation is not None and generation != self._generation

        if isinstance(event, MessageReceived):
            task = asyncio.create_task(self._handle_message(event.message))
            self._message_tasks.add(task)
            task.add_done_callback(self._message_tasks.discard)
            return

        if stale:
            logger.debug(f"Ignoring {type(event).__name__} from superseded client")
            return

        if isinstance(event, CredsUpdated):
            prepare = self.client.checkpoint if self.client else None
            self.synchronizer.schedule_snapshot(self.auth_dir, prepare=prepare)
        elif isinstance(event, ConnectionStateChanged):
            self._on_connection_update(event)
        else:
            logger.warning(f"Unknown event type: {type(event).__name__}")

    def _on_connection_update(self, update: ConnectionStateChanged):
        if update.qr:
            self.pending_qr = update.qr
            logger.info("Pairing QR code available at /qr")

        if update.state == OPEN:
            self.state = STATE_OPEN
            self.pending_qr = None
            self.logged_out = False
            logger.info("WhatsApp connection open")
        elif update.state == CONNECTING:
            self.state = STATE_CONNECTING
        elif update.state == CLOSE:
            self.state = STATE_CLOSED
            if update.logged_out:
                self.logged_out = True
                logger.warning(
                    "WhatsApp session logged out; reset the session to pair again"
                )
                return
            logger.info(f"Connection closed ({update.error or 'no reason'}), reconnecting")
            self._schedule_reconnect(self.reconnect_delay)
        else:
            logger.warning(f"Unknown connection state: {update.state}")

    async def _handle_message(self, message: IncomingMessage):
        if message.from_me or not self.dispatcher:
            return

        logger.info(f"Message from {message.chat_id}: {message.text}")
        try:
            reply = await self.dispatcher.dispatch(message)
            if reply:
                await self.send_text(message.chat_id, reply)
        except Exception as e:
            logger.error(f"Error handling message from {message.chat_id}: {e}")
