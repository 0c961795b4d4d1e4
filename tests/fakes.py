from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone

from reelwatch.db.models import DeliveryOutcome, SubscriptionRule
from reelwatch.services.cancellation import CancelScope
from reelwatch.services.harvest.rendering import RenderingError
from reelwatch.services.harvest.source import FetchResult
from reelwatch.services.harvest.types import VideoRecord
from reelwatch.services.store.base import (
    SaveResult,
    StoredDeliveryAttempt,
    StoredSubscription,
    StoredVideo,
    StoreError,
)
from reelwatch.services.transport.base import SendResult

BASE_URL = "https://videos.example.test"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ok_result(url: str, body: str) -> FetchResult:
    return FetchResult(requested_url=url, status_code=200, final_url=url, body=body, error=None)


def error_result(url: str, status_code: int | None = 503, kind: str = "http_status") -> FetchResult:
    return FetchResult(
        requested_url=url,
        status_code=status_code,
        final_url=url if status_code else None,
        body="",
        error=f"http_error_status_{status_code}" if status_code else "connect failed",
        error_kind=kind,
    )


def card_html(code: str, *, title: str | None = None, minutes: int = 120) -> str:
    return (
        '<div class="group">'
        f'<a href="{BASE_URL}/{code.lower()}"><img data-src="https://cdn.example.test/{code.lower()}/cover.jpg"></a>'
        f'<h4>{title or code + " sample title"}</h4>'
        f'<span class="duration">{minutes}分</span>'
        "</div>"
    )


def listing_html(codes: list[str]) -> str:
    return "<html><body>" + "".join(card_html(code) for code in codes) + "</body></html>"


def codes_for_page(prefix: str, page: int, count: int = 12) -> list[str]:
    return [f"{prefix}-{page * 100 + index:03d}" for index in range(count)]


class ScriptedSource:
    """Returns queued results per URL, falling back to ``default`` once a queue is empty."""

    def __init__(
        self,
        responses: dict[str, list[FetchResult | Exception]] | None = None,
        *,
        default: Callable[[str], FetchResult] | None = None,
    ) -> None:
        self._responses = {url: list(items) for url, items in (responses or {}).items()}
        self._default = default or (lambda url: error_result(url, 404))
        self.calls: list[str] = []
        self.on_fetch: Callable[[str], None] | None = None
        self.closed = False

    async def fetch_page(self, url: str, cancel: CancelScope | None = None) -> FetchResult:
        self.calls.append(url)
        if self.on_fetch is not None:
            self.on_fetch(url)
        queue = self._responses.get(url)
        if queue:
            item = queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return self._default(url)

    async def close(self) -> None:
        self.closed = True


class FakeRenderer:
    def __init__(self, pages: dict[str, str] | None = None, *, fail: bool = False) -> None:
        self._pages = dict(pages or {})
        self._fail = fail
        self.calls: list[tuple[str, str | None]] = []
        self.closed = False

    async def render_url(
        self,
        url: str,
        *,
        wait_selector: str | None = None,
        timeout_seconds: float | None = None,
        cancel: CancelScope | None = None,
    ) -> str:
        self.calls.append((url, wait_selector))
        if self._fail or url not in self._pages:
            raise RenderingError(f"no rendering for {url}")
        return self._pages[url]

    async def reconnect(self) -> None:
        return None

    async def close(self) -> None:
        self.closed = True


@dataclass
class SentMessage:
    channel: str
    chat_id: int
    text: str
    media_url: str | None = None


@dataclass
class RecordingTransport:
    failing_channels: set[str] = field(default_factory=set)
    failing_chats: set[int] = field(default_factory=set)
    sent: list[SentMessage] = field(default_factory=list)
    attempts: list[tuple[str, int]] = field(default_factory=list)
    _next_message_id: int = 100

    def _result(self, channel: str, chat_id: int, text: str, media_url: str | None = None) -> SendResult:
        self.attempts.append((channel, chat_id))
        if channel in self.failing_channels or chat_id in self.failing_chats:
            return SendResult(ok=False, error=f"{channel} rejected")
        self._next_message_id += 1
        self.sent.append(SentMessage(channel=channel, chat_id=chat_id, text=text, media_url=media_url))
        return SendResult(ok=True, message_id=self._next_message_id)

    async def send_text(self, chat_id: int, text: str) -> SendResult:
        return self._result("text", chat_id, text)

    async def send_markdown(self, chat_id: int, text: str) -> SendResult:
        return self._result("text", chat_id, text)

    async def send_photo(self, chat_id: int, photo_url: str, caption: str) -> SendResult:
        return self._result("photo", chat_id, caption, photo_url)

    async def send_video(self, chat_id: int, video_url: str, thumb_url: str, caption: str) -> SendResult:
        return self._result("video", chat_id, caption, video_url)


class InMemoryVideoStore:
    """Dictionary-backed store with the same duplicate and uniqueness rules as the SQL store."""

    def __init__(self) -> None:
        self.videos: dict[int, StoredVideo] = {}
        self.subscriptions: dict[int, StoredSubscription] = {}
        self.attempts: list[StoredDeliveryAttempt] = []
        self.fail_saves = False
        self._ids = 0
        self._created = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _next_id(self) -> int:
        self._ids += 1
        return self._ids

    async def save_video(self, video: VideoRecord) -> bool:
        if self.fail_saves:
            raise StoreError("save_video failed: database unavailable")
        code = video.code.strip().upper()
        if not code or any(stored.code == code for stored in self.videos.values()):
            return False
        video_id = self._next_id()
        self.videos[video_id] = StoredVideo(
            id=video_id,
            code=code,
            title=video.title,
            actresses=video.actresses,
            tags=video.tags,
            duration=video.duration,
            cover_url=video.cover_url,
            preview_url=video.preview_url,
            detail_url=video.detail_url,
            delivered=False,
            release_date=video.release_date,
            created_at=self._created + timedelta(seconds=video_id),
        )
        return True

    async def save_videos(self, videos: list[VideoRecord]) -> SaveResult:
        saved = 0
        for video in videos:
            if await self.save_video(video):
                saved += 1
        return SaveResult(saved=saved, duplicates=len(videos) - saved)

    async def get_video_by_code(self, code: str) -> StoredVideo | None:
        normalized = code.strip().upper()
        return next((video for video in self.videos.values() if video.code == normalized), None)

    async def exists_by_code(self, code: str) -> bool:
        return await self.get_video_by_code(code) is not None

    def _newest_first(self) -> list[StoredVideo]:
        return sorted(self.videos.values(), key=lambda video: video.id, reverse=True)

    async def list_undelivered(self) -> list[StoredVideo]:
        return [video for video in self._newest_first() if not video.delivered]

    async def mark_delivered(self, video_id: int) -> None:
        self.videos[video_id] = replace(self.videos[video_id], delivered=True)

    async def search_videos(self, keyword: str, limit: int) -> list[StoredVideo]:
        needle = keyword.strip().lower()
        matches = [
            video
            for video in self._newest_first()
            if any(needle in value.lower() for value in (video.code, video.title, video.actresses, video.tags))
        ]
        return matches[: max(1, limit)]

    async def latest_videos(self, limit: int, offset: int = 0) -> list[StoredVideo]:
        return self._newest_first()[offset : offset + limit]

    async def count_videos(self) -> int:
        return len(self.videos)

    async def upsert_subscription(
        self,
        *,
        chat_id: int,
        chat_type: str,
        rule: SubscriptionRule,
        keyword: str,
    ) -> StoredSubscription:
        keyword = "" if rule == SubscriptionRule.ALL else keyword.strip()
        for subscription_id, subscription in self.subscriptions.items():
            if (subscription.chat_id, subscription.rule, subscription.keyword) == (chat_id, rule, keyword):
                updated = replace(subscription, enabled=True, chat_type=chat_type)
                self.subscriptions[subscription_id] = updated
                return updated
        subscription_id = self._next_id()
        created = StoredSubscription(
            id=subscription_id,
            chat_id=chat_id,
            chat_type=chat_type,
            rule=rule,
            keyword=keyword,
            enabled=True,
        )
        self.subscriptions[subscription_id] = created
        return created

    async def delete_subscription(self, *, chat_id: int, rule: SubscriptionRule, keyword: str) -> bool:
        keyword = "" if rule == SubscriptionRule.ALL else keyword.strip()
        for subscription_id, subscription in list(self.subscriptions.items()):
            if (subscription.chat_id, subscription.rule, subscription.keyword) == (chat_id, rule, keyword):
                del self.subscriptions[subscription_id]
                return True
        return False

    async def delete_all_subscriptions(self, chat_id: int) -> int:
        doomed = [key for key, value in self.subscriptions.items() if value.chat_id == chat_id]
        for key in doomed:
            del self.subscriptions[key]
        return len(doomed)

    async def list_subscriptions(self, chat_id: int) -> list[StoredSubscription]:
        return [value for _, value in sorted(self.subscriptions.items()) if value.chat_id == chat_id]

    async def list_enabled_subscriptions(self) -> list[StoredSubscription]:
        return [value for _, value in sorted(self.subscriptions.items()) if value.enabled]

    async def record_attempt(
        self,
        *,
        video_id: int,
        chat_id: int,
        outcome: DeliveryOutcome,
        failure_reason: str | None = None,
        message_id: int | None = None,
    ) -> StoredDeliveryAttempt:
        if outcome == DeliveryOutcome.SUCCESS:
            for attempt in self.attempts:
                if (attempt.video_id, attempt.chat_id, attempt.outcome) == (video_id, chat_id, outcome):
                    return attempt
        attempt = StoredDeliveryAttempt(
            id=self._next_id(),
            video_id=video_id,
            chat_id=chat_id,
            outcome=outcome,
            failure_reason=failure_reason,
            message_id=message_id,
        )
        self.attempts.append(attempt)
        return attempt

    async def has_succeeded(self, *, video_id: int, chat_id: int) -> bool:
        return any(
            attempt.video_id == video_id
            and attempt.chat_id == chat_id
            and attempt.outcome == DeliveryOutcome.SUCCESS
            for attempt in self.attempts
        )

    async def ping(self) -> bool:
        return True


class GatedHarvester:
    """Harvester double whose calls block until ``release`` is set."""

    def __init__(self, records: list[VideoRecord] | None = None) -> None:
        self.records = list(records or [])
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.active = 0
        self.max_active = 0
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None

    async def _run(self, label: str, keyword: str) -> list[VideoRecord]:
        self.calls.append((label, keyword))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            await self.release.wait()
            if self.error is not None:
                raise self.error
            return list(self.records)
        finally:
            self.active -= 1

    async def harvest_new_listing(self, page_count: int, *, cancel: CancelScope | None = None) -> list[VideoRecord]:
        return await self._run("new", "")

    async def harvest(
        self,
        kind,
        keyword: str = "",
        *,
        limit: int = 20,
        pages: int = 2,
        cancel: CancelScope | None = None,
    ) -> list[VideoRecord]:
        return await self._run(kind.value, keyword)
