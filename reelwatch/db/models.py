from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from reelwatch.db.base import Base


class SubscriptionRule(StrEnum):
    ALL = "all"
    ACTOR = "actor"
    TAG = "tag"


class DeliveryOutcome(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


SUBSCRIPTION_RULE_DB_ENUM = Enum(
    SubscriptionRule,
    name="subscription_rule",
    values_callable=lambda members: [member.value for member in members],
)
DELIVERY_OUTCOME_DB_ENUM = Enum(
    DeliveryOutcome,
    name="delivery_outcome",
    values_callable=lambda members: [member.value for member in members],
)


class Video(Base):
    __tablename__ = "videos"
    __table_args__ = (
        UniqueConstraint("code", name="uq_videos_code"),
        Index("ix_videos_delivered_created", "delivered", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    actresses: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    tags: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    duration: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    release_date: Mapped[date | None] = mapped_column(Date)
    cover_url: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    preview_url: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    detail_url: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    delivered: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "chat_id",
            "rule",
            "keyword",
            name="uq_subscriptions_chat_rule_keyword",
        ),
        Index("ix_subscriptions_enabled", "enabled"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    chat_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chat_type: Mapped[str] = mapped_column(String(32), nullable=False, server_default=text("'private'"))
    rule: Mapped[SubscriptionRule] = mapped_column(SUBSCRIPTION_RULE_DB_ENUM, nullable=False)
    keyword: Mapped[str] = mapped_column(String(255), nullable=False, server_default=text("''"))
    enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("true")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class DeliveryAttempt(Base):
    __tablename__ = "delivery_attempts"
    __table_args__ = (
        Index("ix_delivery_attempts_video_chat", "video_id", "chat_id"),
        Index(
            "uq_delivery_attempts_video_chat_success",
            "video_id",
            "chat_id",
            unique=True,
            postgresql_where=text("outcome = 'success'"),
            sqlite_where=text("outcome = 'success'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    video_id: Mapped[int] = mapped_column(
        ForeignKey("videos.id", ondelete="CASCADE"), nullable=False
    )
    chat_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    outcome: Mapped[DeliveryOutcome] = mapped_column(DELIVERY_OUTCOME_DB_ENUM, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(String(500))
    message_id: Mapped[int | None] = mapped_column(BigInteger)
    delivered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
