"""Thin wrapper over python-telegram-bot's Bot.

Inbound calls (poll, fetch_file) raise TransportError so the poller can back
off. Outbound calls (send_text, send_document) never raise: failures are
logged and reported as False.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from telegram import Bot, Update
from telegram.error import TelegramError

from checkbot.core.errors import TransportError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    update_id: int
    user_id: Optional[int] = None
    chat_id: Optional[int] = None
    text: Optional[str] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None


def event_from_update(update: Update) -> Event:
    message = update.message
    if message is None:
        return Event(update_id=update.update_id)
    document = message.document
    return Event(
        update_id=update.update_id,
        user_id=message.from_user.id if message.from_user else None,
        chat_id=message.chat.id,
        text=message.text,
        file_id=document.file_id if document else None,
        file_name=document.file_name if document else None,
        file_size=document.file_size if document else None,
    )


class TelegramTransport:
    def __init__(self, bot: Bot):
        self.bot = bot

    async def poll(self, offset: Optional[int], timeout: int) -> List[Event]:
        try:
            updates = await self.bot.get_updates(offset=offset, timeout=timeout, allowed_updates=["message"])
        except TelegramError as e:
            raise TransportError(f"getUpdates failed: {e}") from e
        return [event_from_update(u) for u in updates]

    async def fetch_file(self, file_id: str) -> bytes:
        try:
            tg_file = await self.bot.get_file(file_id)
            return bytes(await tg_file.download_as_bytearray())
        except TelegramError as e:
            raise TransportError(f"File download failed: {e}") from e

    async def send_text(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> bool:
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, parse_mode=parse_mode)
            return True
        except TelegramError as e:
            log.error(f"Failed to send message to {chat_id}: {e}")
            return False

    async def send_document(self, chat_id: int, path: str, filename: str, caption: Optional[str] = None) -> bool:
        try:
            with open(path, "rb") as f:
                await self.bot.send_document(chat_id=chat_id, document=f, filename=filename, caption=caption)
            return True
        except (TelegramError, OSError) as e:
            log.error(f"Failed to send {filename} to {chat_id}: {e}")
            return False
