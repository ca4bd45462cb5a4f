"""
Keyword and prefix command routing for incoming chat messages.
"""

import asyncio
import time
from datetime import datetime
from typing import Callable, Dict, Optional

from wabot.channels.base import IncomingMessage
from wabot.config import Config
from wabot.database import ResponseStore
from wabot.logger import get_logger

logger = get_logger(__name__)

DEFAULT_RESPONSES: Dict[str, str] = {
    "welcome": "Hello! I am a WhatsApp bot. Type {prefix}help for commands.",
    "help": (
        "Available commands:\n"
        "{prefix}help - Show this help message\n"
        "{prefix}ping - Check if bot is online\n"
        "{prefix}echo <message> - Echo your message\n"
        "{prefix}time - Get current time\n"
        "{prefix}info - Get bot information"
    ),
    "ping": "Pong! Bot is online 🤖",
    "info": "I am {bot_name}, a WhatsApp bot running on wabot.",
    "unknown": "Unknown command. Type {prefix}help for available commands.",
    "echo_empty": "Please provide a message to echo.",
    "unauthorized": "You are not authorized to use this command.",
}


class CommandDispatcher:
    """
    Maps message text to a reply.

    Prefixed text is a command; plain text is matched against the response
    table and the greeting rule.
    """

    def __init__(
        self,
        response_store: Optional[ResponseStore] = None,
        prefix: Optional[str] = None,
        owner_number: Optional[str] = None,
        bot_name: Optional[str] = None,
        state_provider: Optional[Callable[[], str]] = None,
    ):
        self.response_store = response_store
        self.prefix = prefix or Config.PREFIX
        self.owner_number = owner_number or Config.OWNER_NUMBER
        self.bot_name = bot_name or Config.BOT_NAME
        self.state_provider = state_provider
        self.started_at = time.monotonic()

    def text(self, key: str) -> str:
        return DEFAULT_RESPONSES[key].format(prefix=self.prefix, bot_name=self.bot_name)

    async def dispatch(self, message: IncomingMessage) -> Optional[str]:
        """Return the reply for a message, or None when the bot stays silent."""
        if message.from_me:
            return None

        text = (message.text or "").strip()
        if not text:
            return None

        if not text.startswith(self.prefix):
            if reply := await self._lookup(text):
                return reply
            if not message.is_group and "hello" in text.lower():
                return self.text("welcome")
            return None

        args = text[len(self.prefix) :].split()
        if not args:
            return self.text("unknown")
        command = args.pop(0).lower()

        if command == "help":
            return self.text("help")
        if command == "ping":
            return self.text("ping")
        if command == "echo":
            return " ".join(args) if args else self.text("echo_empty")
        if command == "time":
            return f"Current time: {datetime.now().strftime('%m/%d/%Y, %I:%M:%S %p')}"
        if command == "info":
            return self.text("info")
        if command == "status":
            return self._status(message)

        return await self._lookup(command) or self.text("unknown")

    def _status(self, message: IncomingMessage) -> str:
        if self.owner_number not in message.sender_id:
            return self.text("unauthorized")

        state = self.state_provider() if self.state_provider else "unknown"
        uptime = int(time.monotonic() - self.started_at)
        return f"Bot Status: Online\nConnection: {state}\nUptime: {uptime} seconds"

    async def _lookup(self, keyword: str) -> Optional[str]:
        if not self.response_store:
            return None
        try:
            return await asyncio.to_thread(self.response_store.get_reply, keyword)
        except Exception as e:
            logger.error(f"Response table lookup failed for {keyword!r}: {e}")
            return None
