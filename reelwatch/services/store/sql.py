from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelwatch.db.models import (
    DeliveryAttempt,
    DeliveryOutcome,
    Subscription,
    SubscriptionRule,
    Video,
)
from reelwatch.logging_utils import structured_log
from reelwatch.services.harvest.codes import normalize_code
from reelwatch.services.harvest.types import VideoRecord
from reelwatch.services.store.base import (
    SaveResult,
    StoredDeliveryAttempt,
    StoredSubscription,
    StoredVideo,
    StoreError,
)

logger = logging.getLogger(__name__)

FAILURE_REASON_MAX_LENGTH = 500


def _stored_video(row: Video) -> StoredVideo:
    return StoredVideo(
        id=int(row.id),
        code=row.code,
        title=row.title or "",
        actresses=row.actresses or "",
        tags=row.tags or "",
        duration=int(row.duration or 0),
        cover_url=row.cover_url or "",
        preview_url=row.preview_url or "",
        detail_url=row.detail_url or "",
        delivered=bool(row.delivered),
        release_date=row.release_date,
        created_at=row.created_at,
    )


def _stored_subscription(row: Subscription) -> StoredSubscription:
    return StoredSubscription(
        id=int(row.id),
        chat_id=int(row.chat_id),
        chat_type=row.chat_type,
        rule=SubscriptionRule(row.rule),
        keyword=row.keyword or "",
        enabled=bool(row.enabled),
        created_at=row.created_at,
    )


def _stored_attempt(row: DeliveryAttempt) -> StoredDeliveryAttempt:
    return StoredDeliveryAttempt(
        id=int(row.id),
        video_id=int(row.video_id),
        chat_id=int(row.chat_id),
        outcome=DeliveryOutcome(row.outcome),
        failure_reason=row.failure_reason,
        message_id=row.message_id,
        delivered_at=row.delivered_at,
    )


def _video_values(video: VideoRecord) -> dict[str, object]:
    return {
        "code": normalize_code(video.code),
        "title": video.title,
        "actresses": video.actresses,
        "tags": video.tags,
        "duration": int(video.duration),
        "release_date": video.release_date,
        "cover_url": video.cover_url,
        "preview_url": video.preview_url,
        "detail_url": video.detail_url,
        "delivered": False,
    }


def _subscription_keyword(rule: SubscriptionRule, keyword: str) -> str:
    if rule == SubscriptionRule.ALL:
        return ""
    return keyword.strip()


class SqlVideoStore:
    """SQLAlchemy-backed store; the unique index on ``videos.code`` arbitrates duplicate inserts."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.exception("store.operation_failed", extra={"operation": operation})
                raise StoreError(f"{operation} failed: {exc}") from exc

    # ── Videos ────────────────────────────────────────────────────────

    async def _insert_ignore(self, session: AsyncSession, video: VideoRecord) -> bool:
        values = _video_values(video)
        if not values["code"]:
            return False
        dialect = session.bind.dialect.name if session.bind is not None else ""
        if dialect == "postgresql":
            statement = postgresql_insert(Video).values(**values).on_conflict_do_nothing(index_elements=["code"])
        elif dialect == "sqlite":
            statement = sqlite_insert(Video).values(**values).on_conflict_do_nothing(index_elements=["code"])
        else:
            return await self._insert_checked(session, values)
        result = await session.execute(statement.returning(Video.id))
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def _insert_checked(session: AsyncSession, values: dict[str, object]) -> bool:
        existing = await session.execute(select(Video.id).where(Video.code == values["code"]))
        if existing.scalar_one_or_none() is not None:
            return False
        try:
            async with session.begin_nested():
                session.add(Video(**values))
        except IntegrityError:
            return False
        return True

    async def save_video(self, video: VideoRecord) -> bool:
        async with self._session("save_video") as session:
            inserted = await self._insert_ignore(session, video)
            await session.commit()
            return inserted

    async def save_videos(self, videos: list[VideoRecord]) -> SaveResult:
        saved = 0
        duplicates = 0
        async with self._session("save_videos") as session:
            for video in videos:
                if await self._insert_ignore(session, video):
                    saved += 1
                else:
                    duplicates += 1
            await session.commit()
        structured_log(
            logger,
            "info",
            "store.videos_saved",
            saved=saved,
            duplicates=duplicates,
        )
        return SaveResult(saved=saved, duplicates=duplicates)

    async def get_video_by_code(self, code: str) -> StoredVideo | None:
        async with self._session("get_video_by_code") as session:
            result = await session.execute(select(Video).where(Video.code == normalize_code(code)))
            row = result.scalar_one_or_none()
            return _stored_video(row) if row is not None else None

    async def exists_by_code(self, code: str) -> bool:
        async with self._session("exists_by_code") as session:
            result = await session.execute(select(Video.id).where(Video.code == normalize_code(code)))
            return result.scalar_one_or_none() is not None

    async def list_undelivered(self) -> list[StoredVideo]:
        async with self._session("list_undelivered") as session:
            result = await session.execute(
                select(Video)
                .where(Video.delivered.is_(False))
                .order_by(Video.created_at.desc(), Video.id.desc())
            )
            return [_stored_video(row) for row in result.scalars().all()]

    async def mark_delivered(self, video_id: int) -> None:
        async with self._session("mark_delivered") as session:
            await session.execute(
                update(Video)
                .where(Video.id == video_id, Video.delivered.is_(False))
                .values(delivered=True, updated_at=func.now())
            )
            await session.commit()

    async def search_videos(self, keyword: str, limit: int) -> list[StoredVideo]:
        pattern = f"%{keyword.strip()}%"
        async with self._session("search_videos") as session:
            result = await session.execute(
                select(Video)
                .where(
                    or_(
                        Video.code.ilike(pattern),
                        Video.title.ilike(pattern),
                        Video.actresses.ilike(pattern),
                        Video.tags.ilike(pattern),
                    )
                )
                .order_by(Video.created_at.desc(), Video.id.desc())
                .limit(max(1, int(limit)))
            )
            return [_stored_video(row) for row in result.scalars().all()]

    async def latest_videos(self, limit: int, offset: int = 0) -> list[StoredVideo]:
        async with self._session("latest_videos") as session:
            result = await session.execute(
                select(Video)
                .order_by(Video.created_at.desc(), Video.id.desc())
                .limit(max(1, int(limit)))
                .offset(max(0, int(offset)))
            )
            return [_stored_video(row) for row in result.scalars().all()]

    async def count_videos(self) -> int:
        async with self._session("count_videos") as session:
            result = await session.execute(select(func.count(Video.id)))
            return int(result.scalar_one())

    # ── Subscriptions ─────────────────────────────────────────────────

    async def upsert_subscription(
        self,
        *,
        chat_id: int,
        chat_type: str,
        rule: SubscriptionRule,
        keyword: str,
    ) -> StoredSubscription:
        normalized_keyword = _subscription_keyword(rule, keyword)
        async with self._session("upsert_subscription") as session:
            row = await self._find_subscription(session, chat_id=chat_id, rule=rule, keyword=normalized_keyword)
            if row is None:
                row = Subscription(
                    chat_id=chat_id,
                    chat_type=chat_type,
                    rule=rule,
                    keyword=normalized_keyword,
                    enabled=True,
                )
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    row = await self._find_subscription(
                        session, chat_id=chat_id, rule=rule, keyword=normalized_keyword
                    )
                    if row is None:
                        raise
            if not row.enabled or row.chat_type != chat_type:
                row.enabled = True
                row.chat_type = chat_type
                await session.commit()
            await session.refresh(row)
            return _stored_subscription(row)

    @staticmethod
    async def _find_subscription(
        session: AsyncSession,
        *,
        chat_id: int,
        rule: SubscriptionRule,
        keyword: str,
    ) -> Subscription | None:
        result = await session.execute(
            select(Subscription).where(
                Subscription.chat_id == chat_id,
                Subscription.rule == rule,
                Subscription.keyword == keyword,
            )
        )
        return result.scalar_one_or_none()

    async def delete_subscription(self, *, chat_id: int, rule: SubscriptionRule, keyword: str) -> bool:
        async with self._session("delete_subscription") as session:
            result = await session.execute(
                delete(Subscription).where(
                    Subscription.chat_id == chat_id,
                    Subscription.rule == rule,
                    Subscription.keyword == _subscription_keyword(rule, keyword),
                )
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    async def delete_all_subscriptions(self, chat_id: int) -> int:
        async with self._session("delete_all_subscriptions") as session:
            result = await session.execute(delete(Subscription).where(Subscription.chat_id == chat_id))
            await session.commit()
            return int(result.rowcount or 0)

    async def list_subscriptions(self, chat_id: int) -> list[StoredSubscription]:
        async with self._session("list_subscriptions") as session:
            result = await session.execute(
                select(Subscription)
                .where(Subscription.chat_id == chat_id)
                .order_by(Subscription.id.asc())
            )
            return [_stored_subscription(row) for row in result.scalars().all()]

    async def list_enabled_subscriptions(self) -> list[StoredSubscription]:
        async with self._session("list_enabled_subscriptions") as session:
            result = await session.execute(
                select(Subscription)
                .where(Subscription.enabled.is_(True))
                .order_by(Subscription.id.asc())
            )
            return [_stored_subscription(row) for row in result.scalars().all()]

    # ── Delivery attempts ─────────────────────────────────────────────

    async def record_attempt(
        self,
        *,
        video_id: int,
        chat_id: int,
        outcome: DeliveryOutcome,
        failure_reason: str | None = None,
        message_id: int | None = None,
    ) -> StoredDeliveryAttempt:
        reason = failure_reason[:FAILURE_REASON_MAX_LENGTH] if failure_reason else None
        async with self._session("record_attempt") as session:
            row = DeliveryAttempt(
                video_id=video_id,
                chat_id=chat_id,
                outcome=outcome,
                failure_reason=reason,
                message_id=message_id,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent sweep already recorded the success for this pair.
                await session.rollback()
                existing = await session.execute(
                    select(DeliveryAttempt).where(
                        DeliveryAttempt.video_id == video_id,
                        DeliveryAttempt.chat_id == chat_id,
                        DeliveryAttempt.outcome == DeliveryOutcome.SUCCESS,
                    )
                )
                existing_row = existing.scalar_one_or_none()
                if existing_row is None:
                    raise
                structured_log(
                    logger,
                    "warning",
                    "store.duplicate_success_ignored",
                    video_id=video_id,
                    chat_id=chat_id,
                )
                return _stored_attempt(existing_row)
            await session.refresh(row)
            return _stored_attempt(row)

    async def has_succeeded(self, *, video_id: int, chat_id: int) -> bool:
        async with self._session("has_succeeded") as session:
            result = await session.execute(
                select(DeliveryAttempt.id)
                .where(
                    DeliveryAttempt.video_id == video_id,
                    DeliveryAttempt.chat_id == chat_id,
                    DeliveryAttempt.outcome == DeliveryOutcome.SUCCESS,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def list_attempts(self, *, video_id: int, chat_id: int | None = None) -> list[StoredDeliveryAttempt]:
        async with self._session("list_attempts") as session:
            statement = select(DeliveryAttempt).where(DeliveryAttempt.video_id == video_id)
            if chat_id is not None:
                statement = statement.where(DeliveryAttempt.chat_id == chat_id)
            result = await session.execute(statement.order_by(DeliveryAttempt.id.asc()))
            return [_stored_attempt(row) for row in result.scalars().all()]

    async def ping(self) -> bool:
        try:
            async with self._session("ping") as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar_one() == 1
        except StoreError:
            return False
