"""Create video, subscription and delivery schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


subscription_rule_enum = sa.Enum(
    "all",
    "actor",
    "tag",
    name="subscription_rule",
)
delivery_outcome_enum = sa.Enum(
    "success",
    "failed",
    name="delivery_outcome",
)
subscription_rule_ref = postgresql.ENUM(
    "all",
    "actor",
    "tag",
    name="subscription_rule",
    create_type=False,
)
delivery_outcome_ref = postgresql.ENUM(
    "success",
    "failed",
    name="delivery_outcome",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    subscription_rule_enum.create(bind, checkfirst=True)
    delivery_outcome_enum.create(bind, checkfirst=True)

    op.create_table(
        "videos",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("actresses", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("tags", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("duration", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("release_date", sa.Date(), nullable=True),
        sa.Column("cover_url", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("preview_url", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("detail_url", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "delivered",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_videos"),
        sa.UniqueConstraint("code", name="uq_videos_code"),
    )
    op.create_index(
        "ix_videos_delivered_created",
        "videos",
        ["delivered", "created_at"],
        unique=False,
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("chat_id", sa.BigInteger(), nullable=False),
        sa.Column(
            "chat_type",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'private'"),
        ),
        sa.Column("rule", subscription_rule_ref, nullable=False),
        sa.Column("keyword", sa.String(length=255), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("true"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_subscriptions"),
        sa.UniqueConstraint(
            "chat_id",
            "rule",
            "keyword",
            name="uq_subscriptions_chat_rule_keyword",
        ),
    )
    op.create_index("ix_subscriptions_enabled", "subscriptions", ["enabled"], unique=False)

    op.create_table(
        "delivery_attempts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("video_id", sa.Integer(), nullable=False),
        sa.Column("chat_id", sa.BigInteger(), nullable=False),
        sa.Column("outcome", delivery_outcome_ref, nullable=False),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("message_id", sa.BigInteger(), nullable=True),
        sa.Column(
            "delivered_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.ForeignKeyConstraint(
            ["video_id"],
            ["videos.id"],
            name="fk_delivery_attempts_video_id_videos",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_delivery_attempts"),
    )
    op.create_index(
        "ix_delivery_attempts_video_chat",
        "delivery_attempts",
        ["video_id", "chat_id"],
        unique=False,
    )
    op.create_index(
        "uq_delivery_attempts_video_chat_success",
        "delivery_attempts",
        ["video_id", "chat_id"],
        unique=True,
        postgresql_where=sa.text("outcome = 'success'"),
    )


def downgrade() -> None:
    op.drop_index("uq_delivery_attempts_video_chat_success", table_name="delivery_attempts")
    op.drop_index("ix_delivery_attempts_video_chat", table_name="delivery_attempts")
    op.drop_table("delivery_attempts")
    op.drop_index("ix_subscriptions_enabled", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_videos_delivered_created", table_name="videos")
    op.drop_table("videos")

    bind = op.get_bind()
    delivery_outcome_enum.drop(bind, checkfirst=True)
    subscription_rule_enum.drop(bind, checkfirst=True)
