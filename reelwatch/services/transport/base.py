from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class SendResult:
    ok: bool
    message_id: int | None = None
    error: str | None = None


class Transport(Protocol):
    async def send_text(self, chat_id: int, text: str) -> SendResult: ...

    async def send_markdown(self, chat_id: int, text: str) -> SendResult: ...

    async def send_photo(self, chat_id: int, photo_url: str, caption: str) -> SendResult: ...

    async def send_video(
        self,
        chat_id: int,
        video_url: str,
        thumb_url: str,
        caption: str,
    ) -> SendResult: ...
