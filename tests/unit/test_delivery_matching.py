from __future__ import annotations

import pytest

from reelwatch.db.models import SubscriptionRule
from reelwatch.services.delivery.formatter import escape_markdown, format_duration, format_video_message
from reelwatch.services.delivery.matching import (
    matches_subscription,
    matching_destinations,
    parse_subscription_argument,
)
from reelwatch.services.store.base import StoredSubscription, StoredVideo


def _video(**overrides) -> StoredVideo:
    values = {
        "id": 1,
        "code": "ABC-123",
        "title": "Rainy day",
        "actresses": "Yua Mikami,Rin Asuka",
        "tags": "Drama,Romance",
        "duration": 5700,
        "cover_url": "https://cdn.example.test/abc-123.jpg",
        "preview_url": "",
        "detail_url": "https://videos.example.test/abc-123",
        "delivered": False,
    }
    values.update(overrides)
    return StoredVideo(**values)


def _subscription(
    chat_id: int,
    rule: SubscriptionRule,
    keyword: str = "",
    *,
    enabled: bool = True,
    subscription_id: int = 1,
) -> StoredSubscription:
    return StoredSubscription(
        id=subscription_id,
        chat_id=chat_id,
        chat_type="private",
        rule=rule,
        keyword=keyword,
        enabled=enabled,
    )


@pytest.mark.parametrize(
    ("argument", "expected"),
    [
        (None, (SubscriptionRule.ALL, "")),
        ("   ", (SubscriptionRule.ALL, "")),
        ("#drama", (SubscriptionRule.TAG, "drama")),
        ("#", (SubscriptionRule.ALL, "")),
        ("  Yua Mikami ", (SubscriptionRule.ACTOR, "Yua Mikami")),
    ],
)
def test_parse_subscription_argument(argument, expected) -> None:
    assert parse_subscription_argument(argument) == expected


def test_all_rule_matches_any_video() -> None:
    assert matches_subscription(_video(actresses="", tags=""), _subscription(1, SubscriptionRule.ALL))


def test_actor_and_tag_rules_match_case_insensitive_substrings() -> None:
    video = _video()

    assert matches_subscription(video, _subscription(1, SubscriptionRule.ACTOR, "yua mikami"))
    assert matches_subscription(video, _subscription(1, SubscriptionRule.TAG, "ROMAN"))
    assert not matches_subscription(video, _subscription(1, SubscriptionRule.ACTOR, "drama"))
    assert not matches_subscription(video, _subscription(1, SubscriptionRule.TAG, "comedy"))


def test_missing_video_or_subscription_never_matches() -> None:
    assert not matches_subscription(None, _subscription(1, SubscriptionRule.ALL))
    assert not matches_subscription(_video(), None)


def test_matching_destinations_deduplicates_chats_and_skips_disabled() -> None:
    subscriptions = [
        _subscription(10, SubscriptionRule.ACTOR, "Yua", subscription_id=1),
        _subscription(10, SubscriptionRule.ALL, subscription_id=2),
        _subscription(20, SubscriptionRule.TAG, "comedy", subscription_id=3),
        _subscription(30, SubscriptionRule.ALL, enabled=False, subscription_id=4),
        _subscription(40, SubscriptionRule.TAG, "drama", subscription_id=5),
    ]

    assert matching_destinations(_video(), subscriptions) == [10, 40]


def test_escape_markdown_escapes_reserved_characters() -> None:
    assert escape_markdown("ABC-123 (uncut).") == "ABC\\-123 \\(uncut\\)\\."
    assert escape_markdown("plain") == "plain"


def test_format_duration_minutes_and_seconds() -> None:
    assert format_duration(5700) == "95:00"
    assert format_duration(61) == "1:01"
    assert format_duration(-5) == "0:00"


def test_format_video_message_includes_present_fields() -> None:
    message = format_video_message(_video())

    assert message.splitlines() == [
        "🎬 *ABC\\-123*",
        "📝 Rainy day",
        "👩 Yua Mikami,Rin Asuka",
        "🏷 Drama,Romance",
        "⏱ 95:00",
        "🔗 https://videos\\.example\\.test/abc\\-123",
    ]


def test_format_video_message_omits_empty_fields() -> None:
    message = format_video_message(_video(title="", actresses="", tags="", duration=0, detail_url=""))

    assert message == "🎬 *ABC\\-123*"
    assert format_video_message(None) == ""
