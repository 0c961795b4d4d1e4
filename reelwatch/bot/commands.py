from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from reelwatch.db.models import SubscriptionRule
from reelwatch.logging_utils import structured_log
from reelwatch.services.delivery.formatter import escape_markdown
from reelwatch.services.delivery.matching import parse_subscription_argument
from reelwatch.services.harvest.types import HarvestKind
from reelwatch.services.scheduler import HarvestScheduler
from reelwatch.services.store.base import StoreError, VideoStore

logger = logging.getLogger(__name__)

GROUP_CHAT_TYPES = frozenset({"group", "supergroup"})
SEARCH_TITLE_MAX_CHARS = 50
CRAWL_KIND_ALIASES = {
    "new": HarvestKind.NEW,
    "actor": HarvestKind.ACTOR,
    "actress": HarvestKind.ACTOR,
    "code": HarvestKind.CODE,
    "search": HarvestKind.SEARCH,
    "keyword": HarvestKind.SEARCH,
}

HELP_TEXT = "\n".join(
    [
        "🤖 *ReelWatch Bot Help*",
        "",
        "*Subscription Commands:*",
        "/subscribe \\- Subscribe to all new videos",
        "/subscribe actress\\_name \\- Subscribe to a specific actress",
        "/subscribe \\#tag \\- Subscribe to a specific tag",
        "/unsubscribe \\- Unsubscribe from all",
        "/unsubscribe keyword \\- Unsubscribe from specific keyword",
        "/list \\- List your subscriptions",
        "",
        "*Search Commands:*",
        "/search keyword \\- Search videos \\(max 10 results\\)",
        "/latest \\[page\\] \\- Show latest videos",
        "",
        "*Admin Commands:*",
        "/crawl new\\|actor\\|code\\|search keyword \\- Manual crawl",
        "/status \\- Show bot statistics",
        "",
        "_Tip: In groups, the bot auto\\-subscribes to all videos\\._",
    ]
)
CRAWL_USAGE = (
    "Please specify crawl type. Examples:\n"
    "/crawl new\n"
    "/crawl actor 三上悠亜\n"
    "/crawl code ABC-123\n"
    "/crawl search keyword"
)


@dataclass(frozen=True)
class BotReply:
    text: str
    markdown: bool = False


def error_reply(message: str) -> BotReply:
    return BotReply(text=f"❌ {message}")


def parse_crawl_arguments(argument: str | None) -> tuple[HarvestKind | None, str]:
    """Split ``"<kind> [keyword]"``; an unknown kind comes back as ``None``."""
    parts = (argument or "").strip().split(maxsplit=1)
    if not parts:
        return None, ""
    keyword = parts[1].strip() if len(parts) > 1 else ""
    return CRAWL_KIND_ALIASES.get(parts[0].lower()), keyword


def parse_page_argument(argument: str | None) -> int:
    try:
        page = int((argument or "").strip())
    except ValueError:
        return 1
    return page if page >= 1 else 1


def format_uptime(seconds: float) -> str:
    total_minutes = int(max(seconds, 0.0) // 60)
    days, remainder = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(remainder, 60)
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def _truncate(value: str, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    return value[: max_chars - 3] + "..."


class ChatCommandService:
    """Chat command behavior, independent of the Bot API plumbing."""

    def __init__(
        self,
        *,
        store: VideoStore,
        scheduler: HarvestScheduler,
        search_limit: int = 10,
        latest_page_size: int = 5,
        manual_limit: int = 20,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._search_limit = max(1, int(search_limit))
        self._latest_page_size = max(1, int(latest_page_size))
        self._manual_limit = max(1, int(manual_limit))
        self._clock = clock
        self._started_at = clock()

    def help(self) -> BotReply:
        return BotReply(text=HELP_TEXT, markdown=True)

    async def subscribe(self, chat_id: int, chat_type: str, argument: str | None) -> BotReply:
        rule, keyword = parse_subscription_argument(argument)
        try:
            await self._store.upsert_subscription(
                chat_id=chat_id,
                chat_type=chat_type,
                rule=rule,
                keyword=keyword,
            )
        except StoreError:
            logger.exception("bot.subscribe_failed", extra={"chat_id": chat_id})
            return error_reply("Failed to create subscription. Please try again.")
        structured_log(
            logger,
            "info",
            "bot.subscribed",
            chat_id=chat_id,
            rule=rule.value,
            keyword=keyword,
        )
        if rule == SubscriptionRule.ACTOR:
            return BotReply(text=f"✅ Subscribed to actress: {keyword}")
        if rule == SubscriptionRule.TAG:
            return BotReply(text=f"✅ Subscribed to tag: #{keyword}")
        return BotReply(text="✅ Subscribed to all new videos!")

    async def unsubscribe(self, chat_id: int, argument: str | None) -> BotReply:
        value = (argument or "").strip()
        try:
            if not value:
                removed = await self._store.delete_all_subscriptions(chat_id)
                structured_log(logger, "info", "bot.unsubscribed_all", chat_id=chat_id, removed=removed)
                return BotReply(text="✅ Unsubscribed from all notifications.")
            rule, keyword = parse_subscription_argument(value)
            await self._store.delete_subscription(chat_id=chat_id, rule=rule, keyword=keyword)
        except StoreError:
            logger.exception("bot.unsubscribe_failed", extra={"chat_id": chat_id})
            return error_reply("Failed to unsubscribe. Please try again.")
        structured_log(logger, "info", "bot.unsubscribed", chat_id=chat_id, rule=rule.value, keyword=keyword)
        return BotReply(text=f"✅ Unsubscribed from: {value}")

    async def list_subscriptions(self, chat_id: int) -> BotReply:
        try:
            subscriptions = await self._store.list_subscriptions(chat_id)
        except StoreError:
            logger.exception("bot.list_failed", extra={"chat_id": chat_id})
            return error_reply("Failed to get subscriptions. Please try again.")
        if not subscriptions:
            return BotReply(
                text="📭 You have no active subscriptions.\nUse /subscribe to start receiving notifications."
            )
        lines = ["📋 *Your Subscriptions:*", ""]
        for index, subscription in enumerate(subscriptions, start=1):
            if subscription.rule == SubscriptionRule.ACTOR:
                label = f"👩 Actress: {escape_markdown(subscription.keyword)}"
            elif subscription.rule == SubscriptionRule.TAG:
                label = f"🏷 Tag: \\#{escape_markdown(subscription.keyword)}"
            else:
                label = "🌐 All videos"
            lines.append(f"{index}\\. {label}")
        return BotReply(text="\n".join(lines), markdown=True)

    async def search(self, keyword: str | None) -> BotReply:
        value = (keyword or "").strip()
        if not value:
            return error_reply("Please provide a search keyword. Example: /search ABC-123")
        try:
            videos = await self._store.search_videos(value, self._search_limit)
        except StoreError:
            logger.exception("bot.search_failed", extra={"keyword": value})
            return error_reply("Failed to search videos. Please try again.")
        if not videos:
            return BotReply(text=f"🔍 No videos found for: {value}")
        lines = [f"🔍 *Search Results for: {escape_markdown(value)}*", ""]
        for index, video in enumerate(videos[: self._search_limit], start=1):
            line = f"{index}\\. *{escape_markdown(video.code)}*"
            if video.title:
                line += f"\n   {escape_markdown(_truncate(video.title, SEARCH_TITLE_MAX_CHARS))}"
            lines.append(line)
        return BotReply(text="\n".join(lines), markdown=True)

    async def latest(self, argument: str | None) -> BotReply:
        page = parse_page_argument(argument)
        offset = (page - 1) * self._latest_page_size
        try:
            videos = await self._store.latest_videos(self._latest_page_size, offset)
        except StoreError:
            logger.exception("bot.latest_failed", extra={"page": page})
            return error_reply("Failed to get latest videos. Please try again.")
        if not videos:
            return BotReply(text="📭 No videos found.")
        lines = [f"📺 *Latest Videos \\(Page {page}\\)*", ""]
        for index, video in enumerate(videos, start=1):
            line = f"{index}\\. *{escape_markdown(video.code)}*"
            if video.actresses:
                line += f" \\- {escape_markdown(video.actresses)}"
            if video.detail_url:
                line += f"\n   🔗 {escape_markdown(video.detail_url)}"
            lines.append(line)
        if len(videos) == self._latest_page_size:
            lines.append("")
            lines.append(f"_Use /latest {page + 1} for next page_")
        return BotReply(text="\n".join(lines), markdown=True)

    async def status(self) -> BotReply:
        try:
            video_count = await self._store.count_videos()
        except StoreError:
            logger.exception("bot.status_count_failed")
            video_count = -1
        started = datetime.fromtimestamp(self._started_at, tz=timezone.utc)
        lines = [
            "📊 *Bot Status*",
            "",
            f"🎬 Videos in database: {video_count}",
            f"⏱ Uptime: {escape_markdown(format_uptime(self._clock() - self._started_at))}",
            f"🕐 Started: {escape_markdown(started.strftime('%Y-%m-%d %H:%M:%S'))} UTC",
            f"🔄 Harvester: {self._scheduler.state.value}",
        ]
        return BotReply(text="\n".join(lines), markdown=True)

    async def crawl(
        self,
        argument: str | None,
        reply: Callable[[BotReply], Awaitable[None]],
    ) -> None:
        if not (argument or "").strip():
            await reply(error_reply(CRAWL_USAGE))
            return
        kind, keyword = parse_crawl_arguments(argument)
        if kind is None:
            await reply(error_reply("Unknown crawl type. Use: actor, code, search, or new"))
            return
        if not keyword and kind != HarvestKind.NEW:
            await reply(error_reply("Please provide a keyword for crawling."))
            return

        ticket = self._scheduler.submit_manual_harvest(kind, keyword, limit=self._manual_limit)
        if not ticket.accepted:
            await reply(error_reply("A harvest is already running. Please try again later."))
            return
        await reply(BotReply(text="🔄 Starting crawl... This may take a moment."))

        result = await ticket.result()
        if result is None or not result.ok:
            reason = result.error if result is not None else "unknown error"
            await reply(error_reply(f"Crawl failed: {reason}"))
            return
        if result.found == 0:
            await reply(BotReply(text="📭 No videos found."))
            return
        await reply(
            BotReply(
                text=(
                    "✅ Crawl complete!\n"
                    f"📊 Found: {result.found} videos\n"
                    f"💾 Saved: {result.saved} new\n"
                    f"🔄 Duplicates: {result.duplicates}"
                )
            )
        )

    async def auto_subscribe_group(self, chat_id: int, chat_type: str) -> bool:
        """Subscribe a group to everything the first time it talks, unless it already has rules."""
        if chat_type not in GROUP_CHAT_TYPES:
            return False
        try:
            if await self._store.list_subscriptions(chat_id):
                return False
            await self._store.upsert_subscription(
                chat_id=chat_id,
                chat_type=chat_type,
                rule=SubscriptionRule.ALL,
                keyword="",
            )
        except StoreError:
            logger.exception("bot.auto_subscribe_failed", extra={"chat_id": chat_id})
            return False
        structured_log(logger, "info", "bot.group_auto_subscribed", chat_id=chat_id, chat_type=chat_type)
        return True
