from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from reelwatch.db.models import DeliveryOutcome
from reelwatch.logging_utils import structured_log
from reelwatch.services import cancellation
from reelwatch.services.cancellation import CancelScope, OperationCancelledError
from reelwatch.services.delivery.formatter import format_video_message
from reelwatch.services.delivery.matching import matching_destinations
from reelwatch.services.harvest.rate_limit import TokenBucketRateLimiter
from reelwatch.services.store.base import StoredVideo, StoreError, VideoStore
from reelwatch.services.transport.base import SendResult, Transport

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    videos_considered: int = 0
    videos_marked_delivered: int = 0
    videos_pending: int = 0
    sends_succeeded: int = 0
    sends_failed: int = 0
    sends_skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PushOutcome:
    ok: bool
    skipped: bool = False
    channel: str | None = None
    error: str | None = None


class DeliveryService:
    """Pushes undelivered videos to every matching chat, at most once per (video, chat)."""

    def __init__(
        self,
        *,
        store: VideoStore,
        transport: Transport,
        send_limiter: TokenBucketRateLimiter,
        same_chat_delay_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._transport = transport
        self._send_limiter = send_limiter
        self._same_chat_delay_seconds = max(0.0, float(same_chat_delay_seconds))
        self._clock = clock
        self._last_send_at: dict[int, float] = {}

    async def sweep_unsent(self, *, cancel: CancelScope | None = None) -> SweepSummary:
        summary = SweepSummary()
        videos = await self._store.list_undelivered()
        summary.videos_considered = len(videos)
        if not videos:
            structured_log(logger, "debug", "delivery.sweep_empty")
            return summary
        subscriptions = await self._store.list_enabled_subscriptions()
        structured_log(
            logger,
            "info",
            "delivery.sweep_started",
            video_count=len(videos),
            subscription_count=len(subscriptions),
        )
        self._last_send_at.clear()
        for video in videos:
            cancellation.raise_if_cancelled(cancel)
            destinations = matching_destinations(video, subscriptions)
            try:
                all_succeeded = await self._deliver_video(video, destinations, summary=summary, cancel=cancel)
                if all_succeeded:
                    await self._store.mark_delivered(video.id)
                    summary.videos_marked_delivered += 1
                else:
                    summary.videos_pending += 1
            except OperationCancelledError:
                raise
            except StoreError as exc:
                summary.videos_pending += 1
                summary.errors.append(f"{video.code}: {exc}")
                structured_log(
                    logger,
                    "error",
                    "delivery.video_failed",
                    video_id=video.id,
                    video_code=video.code,
                    error=str(exc),
                )
            except Exception as exc:
                summary.videos_pending += 1
                summary.errors.append(f"{video.code}: {exc}")
                logger.exception(
                    "delivery.video_unexpected_error",
                    extra={"video_id": video.id, "video_code": video.code},
                )
        structured_log(
            logger,
            "info",
            "delivery.sweep_completed",
            videos_considered=summary.videos_considered,
            videos_marked_delivered=summary.videos_marked_delivered,
            videos_pending=summary.videos_pending,
            sends_succeeded=summary.sends_succeeded,
            sends_failed=summary.sends_failed,
            sends_skipped=summary.sends_skipped,
        )
        return summary

    async def _deliver_video(
        self,
        video: StoredVideo,
        destinations: list[int],
        *,
        summary: SweepSummary,
        cancel: CancelScope | None,
    ) -> bool:
        if not destinations:
            structured_log(logger, "debug", "delivery.no_subscribers", video_code=video.code)
            return True
        all_succeeded = True
        for chat_id in destinations:
            outcome = await self.push_to_destination(video, chat_id, cancel=cancel)
            if outcome.skipped:
                summary.sends_skipped += 1
            elif outcome.ok:
                summary.sends_succeeded += 1
            else:
                summary.sends_failed += 1
                all_succeeded = False
        return all_succeeded

    async def push_to_destination(
        self,
        video: StoredVideo,
        chat_id: int,
        *,
        cancel: CancelScope | None = None,
    ) -> PushOutcome:
        if await self._store.has_succeeded(video_id=video.id, chat_id=chat_id):
            structured_log(
                logger,
                "debug",
                "delivery.already_delivered",
                video_code=video.code,
                chat_id=chat_id,
            )
            return PushOutcome(ok=True, skipped=True)

        await self._pace_same_chat(chat_id, cancel=cancel)
        await self._send_limiter.acquire(cancel)
        channel, result = await self._send_with_fallback(video, chat_id)
        self._last_send_at[chat_id] = self._clock()

        await self._store.record_attempt(
            video_id=video.id,
            chat_id=chat_id,
            outcome=DeliveryOutcome.SUCCESS if result.ok else DeliveryOutcome.FAILED,
            failure_reason=None if result.ok else result.error,
            message_id=result.message_id,
        )
        structured_log(
            logger,
            "info" if result.ok else "warning",
            "delivery.pushed" if result.ok else "delivery.push_failed",
            video_code=video.code,
            chat_id=chat_id,
            channel=channel,
            error=result.error,
        )
        return PushOutcome(ok=result.ok, channel=channel, error=result.error)

    async def _pace_same_chat(self, chat_id: int, *, cancel: CancelScope | None) -> None:
        last_sent = self._last_send_at.get(chat_id)
        if last_sent is None:
            return
        remaining = self._same_chat_delay_seconds - (self._clock() - last_sent)
        if remaining > 0:
            await cancellation.sleep(remaining, cancel)

    async def _send_with_fallback(self, video: StoredVideo, chat_id: int) -> tuple[str, SendResult]:
        message = format_video_message(video)
        errors: list[str] = []
        if video.preview_url:
            result = await self._transport.send_video(chat_id, video.preview_url, video.cover_url, message)
            if result.ok:
                return "video", result
            errors.append(f"video: {result.error}")
        if video.cover_url:
            result = await self._transport.send_photo(chat_id, video.cover_url, message)
            if result.ok:
                return "photo", result
            errors.append(f"photo: {result.error}")
        result = await self._transport.send_markdown(chat_id, message)
        if result.ok:
            return "text", result
        errors.append(f"text: {result.error}")
        return "text", SendResult(ok=False, error="; ".join(errors))
