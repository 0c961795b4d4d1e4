from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from telegram import Bot, LinkPreviewOptions, Message
from telegram.constants import ParseMode
from telegram.error import RetryAfter, TelegramError

from reelwatch.logging_utils import structured_log
from reelwatch.services.transport.base import SendResult

logger = logging.getLogger(__name__)


class TelegramTransport:
    """Bot API sender. API failures come back as ``SendResult(ok=False)``."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    @property
    def bot(self) -> Bot:
        return self._bot

    async def send_text(self, chat_id: int, text: str) -> SendResult:
        return await self._send(
            "send_text",
            chat_id,
            lambda: self._bot.send_message(
                chat_id=chat_id,
                text=text,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            ),
        )

    async def send_markdown(self, chat_id: int, text: str) -> SendResult:
        return await self._send(
            "send_markdown",
            chat_id,
            lambda: self._bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=ParseMode.MARKDOWN_V2,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            ),
        )

    async def send_photo(self, chat_id: int, photo_url: str, caption: str) -> SendResult:
        return await self._send(
            "send_photo",
            chat_id,
            lambda: self._bot.send_photo(
                chat_id=chat_id,
                photo=photo_url,
                caption=caption,
                parse_mode=ParseMode.MARKDOWN_V2,
            ),
        )

    async def send_video(
        self,
        chat_id: int,
        video_url: str,
        thumb_url: str,
        caption: str,
    ) -> SendResult:
        return await self._send(
            "send_video",
            chat_id,
            lambda: self._bot.send_video(
                chat_id=chat_id,
                video=video_url,
                thumbnail=thumb_url or None,
                caption=caption,
                parse_mode=ParseMode.MARKDOWN_V2,
                supports_streaming=True,
            ),
        )

    @staticmethod
    async def _send(
        operation: str,
        chat_id: int,
        call: Callable[[], Awaitable[Message]],
    ) -> SendResult:
        try:
            message = await call()
        except RetryAfter as exc:
            structured_log(
                logger,
                "warning",
                "telegram.rate_limited",
                operation=operation,
                chat_id=chat_id,
                retry_after=str(exc.retry_after),
            )
            return SendResult(ok=False, error=f"retry_after: {exc.retry_after}")
        except TelegramError as exc:
            structured_log(
                logger,
                "warning",
                "telegram.send_failed",
                operation=operation,
                chat_id=chat_id,
                error=exc.message,
            )
            return SendResult(ok=False, error=exc.message)
        return SendResult(ok=True, message_id=message.message_id)
