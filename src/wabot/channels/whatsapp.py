"""
WhatsApp driver for wabot using neonize (whatsmeow bindings).

neonize keeps its device store in a SQLite file; the driver places that file
inside the auth directory so the directory alone describes the session.
"""

import asyncio
import sqlite3
from typing import Any, Optional

from wabot.channels.base import (
    CLOSE,
    CONNECTING,
    OPEN,
    ChatClient,
    ConnectionStateChanged,
    CredsUpdated,
    IncomingMessage,
    MessageReceived,
)
from wabot.logger import get_logger

try:
    from neonize.aioze.client import NewAClient
    from neonize.aioze.events import (
        ConnectedEv,
        DisconnectedEv,
        LoggedOutEv,
        MessageEv,
        PairStatusEv,
    )
    from neonize.utils import build_jid
except ImportError:
    NewAClient = None

logger = get_logger(__name__)

DEVICE_STORE = "device.sqlite3"
USER_SERVER = "s.whatsapp.net"


def to_jid(target: str) -> str:
    """Turn a bare phone number into a user JID."""
    target = target.strip()
    if "@" in target:
        return target
    return f"{target.lstrip('+')}@{USER_SERVER}"


class WhatsAppClient(ChatClient):
    """
    WhatsApp multi-device client.
    """

    def __init__(self, auth_dir):
        super().__init__("whatsapp", auth_dir)

        if not NewAClient:
            raise ImportError(
                "neonize not installed. Install with `pip install wabot[whatsapp]`."
            )

        self.auth_dir.mkdir(parents=True, exist_ok=True)
        self.client = NewAClient(str(self.auth_dir / DEVICE_STORE))
        self._connected = False
        self._task: Optional[asyncio.Task] = None
        self._register_handlers()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _register_handlers(self):
        client = self.client

        @client.qr
        async def on_qr(_: Any, data_qr: bytes):
            qr = data_qr.decode() if isinstance(data_qr, bytes) else str(data_qr)
            logger.info("QR code generated, scan it with your phone")
            await self._emit(ConnectionStateChanged(state=CONNECTING, qr=qr))

        @client.event(PairStatusEv)
        async def on_pair_status(_: Any, event: Any):
            logger.info(f"Paired as {event.ID.User}")
            await self._emit(CredsUpdated())

        @client.event(ConnectedEv)
        async def on_connected(_: Any, __: Any):
            self._connected = True
            logger.info("WhatsApp connection opened successfully")
            await self._emit(ConnectionStateChanged(state=OPEN))
            # whatsmeow persists identity and prekeys on connect
            await self._emit(CredsUpdated())

        @client.event(DisconnectedEv)
        async def on_disconnected(_: Any, __: Any):
            self._connected = False
            await self._emit(ConnectionStateChanged(state=CLOSE, error="disconnected"))

        @client.event(LoggedOutEv)
        async def on_logged_out(_: Any, event: Any):
            self._connected = False
            reason = str(getattr(event, "Reason", "logged out"))
            await self._emit(
                ConnectionStateChanged(state=CLOSE, logged_out=True, error=reason)
            )

        @client.event(MessageEv)
        async def on_message(_: Any, event: Any):
            try:
                message = self._normalize(event)
            except Exception as e:
                logger.error(f"Error normalizing WhatsApp message: {e}")
                return
            if message:
                await self._emit(MessageReceived(message))
            # Each decrypted message advances the Signal ratchet in the device store
            self.request_creds_update()

    def _normalize(self, event: Any) -> Optional[IncomingMessage]:
        payload = event.Message
        text = payload.conversation or payload.extendedTextMessage.text
        source = event.Info.MessageSource

        chat = source.Chat
        sender = source.Sender
        return IncomingMessage(
            id=event.Info.ID,
            chat_id=f"{chat.User}@{chat.Server}",
            sender_id=f"{sender.User}@{sender.Server}",
            text=text or "",
            is_group=bool(source.IsGroup),
            from_me=bool(source.IsFromMe),
            timestamp=float(event.Info.Timestamp or 0),
            push_name=event.Info.Pushname or "",
        )

    async def connect(self):
        """Start the neonize client in a background task."""
        logger.info("Connecting to WhatsApp...")
        await self._emit(ConnectionStateChanged(state=CONNECTING))
        self._task = asyncio.create_task(self._run_client())

    async def _run_client(self):
        try:
            await self.client.connect()
            await self.client.idle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._connected = False
            logger.error(f"WhatsApp connection failed: {e}")
            await self._emit(ConnectionStateChanged(state=CLOSE, error=str(e)))

    async def checkpoint(self):
        """Fold the device store's WAL into the main file before it is copied."""
        await asyncio.to_thread(self._checkpoint_device_store)

    def _checkpoint_device_store(self):
        path = self.auth_dir / DEVICE_STORE
        if not path.exists():
            return
        conn = sqlite3.connect(str(path), timeout=5)
        try:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        finally:
            conn.close()

    async def disconnect(self):
        self._connected = False
        self.cancel_creds_update()
        try:
            await self.client.disconnect()
        finally:
            if self._task and not self._task.done():
                self._task.cancel()
        logger.info("WhatsApp disconnected.")

    async def logout(self):
        self.cancel_creds_update()
        await self.client.logout()
        self._connected = False

    async def send_text(self, chat_id: str, text: str) -> bool:
        if not self._connected:
            logger.warning("WhatsApp client not connected.")
            return False

        user, _, server = to_jid(chat_id).partition("@")
        await self.client.send_message(build_jid(user, server), text)
        return True
