from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Protocol

from reelwatch.db.models import DeliveryOutcome, SubscriptionRule
from reelwatch.services.harvest.types import VideoRecord


class StoreError(Exception):
    pass


@dataclass(frozen=True)
class SaveResult:
    saved: int
    duplicates: int


@dataclass(frozen=True)
class StoredVideo:
    id: int
    code: str
    title: str
    actresses: str
    tags: str
    duration: int
    cover_url: str
    preview_url: str
    detail_url: str
    delivered: bool
    release_date: date | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class StoredSubscription:
    id: int
    chat_id: int
    chat_type: str
    rule: SubscriptionRule
    keyword: str
    enabled: bool
    created_at: datetime | None = None


@dataclass(frozen=True)
class StoredDeliveryAttempt:
    id: int
    video_id: int
    chat_id: int
    outcome: DeliveryOutcome
    failure_reason: str | None
    message_id: int | None
    delivered_at: datetime | None = None


class VideoStore(Protocol):
    async def save_video(self, video: VideoRecord) -> bool: ...

    async def save_videos(self, videos: list[VideoRecord]) -> SaveResult: ...

    async def get_video_by_code(self, code: str) -> StoredVideo | None: ...

    async def exists_by_code(self, code: str) -> bool: ...

    async def list_undelivered(self) -> list[StoredVideo]: ...

    async def mark_delivered(self, video_id: int) -> None: ...

    async def search_videos(self, keyword: str, limit: int) -> list[StoredVideo]: ...

    async def latest_videos(self, limit: int, offset: int = 0) -> list[StoredVideo]: ...

    async def count_videos(self) -> int: ...

    async def upsert_subscription(
        self,
        *,
        chat_id: int,
        chat_type: str,
        rule: SubscriptionRule,
        keyword: str,
    ) -> StoredSubscription: ...

    async def delete_subscription(self, *, chat_id: int, rule: SubscriptionRule, keyword: str) -> bool: ...

    async def delete_all_subscriptions(self, chat_id: int) -> int: ...

    async def list_subscriptions(self, chat_id: int) -> list[StoredSubscription]: ...

    async def list_enabled_subscriptions(self) -> list[StoredSubscription]: ...

    async def record_attempt(
        self,
        *,
        video_id: int,
        chat_id: int,
        outcome: DeliveryOutcome,
        failure_reason: str | None = None,
        message_id: int | None = None,
    ) -> StoredDeliveryAttempt: ...

    async def has_succeeded(self, *, video_id: int, chat_id: int) -> bool: ...

    async def ping(self) -> bool: ...
