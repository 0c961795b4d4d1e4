from __future__ import annotations

from reelwatch.db.models import SubscriptionRule
from reelwatch.services.store.base import StoredSubscription, StoredVideo


def matches_subscription(
    video: StoredVideo | None,
    subscription: StoredSubscription | None,
) -> bool:
    if video is None or subscription is None:
        return False
    if subscription.rule == SubscriptionRule.ALL:
        return True
    keyword = subscription.keyword.lower()
    if subscription.rule == SubscriptionRule.ACTOR:
        return keyword in video.actresses.lower()
    if subscription.rule == SubscriptionRule.TAG:
        return keyword in video.tags.lower()
    return False


def matching_destinations(
    video: StoredVideo,
    subscriptions: list[StoredSubscription],
) -> list[int]:
    """Chat ids with at least one matching enabled subscription, in subscription order."""
    destinations: list[int] = []
    seen: set[int] = set()
    for subscription in subscriptions:
        if not subscription.enabled or subscription.chat_id in seen:
            continue
        if matches_subscription(video, subscription):
            seen.add(subscription.chat_id)
            destinations.append(subscription.chat_id)
    return destinations


def parse_subscription_argument(argument: str | None) -> tuple[SubscriptionRule, str]:
    value = (argument or "").strip()
    if not value:
        return SubscriptionRule.ALL, ""
    if value.startswith("#"):
        tag = value[1:].strip()
        if not tag:
            return SubscriptionRule.ALL, ""
        return SubscriptionRule.TAG, tag
    return SubscriptionRule.ACTOR, value
