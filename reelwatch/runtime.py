from __future__ import annotations

import logging
from dataclasses import dataclass

from telegram import Bot

from reelwatch.bot.application import BotRunner, build_bot_application
from reelwatch.bot.commands import ChatCommandService
from reelwatch.db.session import close_engine, get_session_factory
from reelwatch.logging_utils import structured_log
from reelwatch.services.delivery.application import DeliveryService
from reelwatch.services.harvest.application import RetryingHarvester
from reelwatch.services.harvest.rate_limit import TokenBucketRateLimiter
from reelwatch.services.harvest.rendering import PlaywrightRenderingFallback
from reelwatch.services.harvest.source import LiveVideoSource
from reelwatch.services.scheduler import HarvestScheduler
from reelwatch.services.store.sql import SqlVideoStore
from reelwatch.services.transport.telegram import TelegramTransport
from reelwatch.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything the process runs, wired once at startup."""

    settings: Settings
    store: SqlVideoStore
    source: LiveVideoSource
    rendering: PlaywrightRenderingFallback | None
    harvester: RetryingHarvester
    delivery: DeliveryService | None
    scheduler: HarvestScheduler
    commands: ChatCommandService
    bot_runner: BotRunner | None = None
    standalone_bot: Bot | None = None

    async def start(self) -> None:
        if self.standalone_bot is not None:
            await self.standalone_bot.initialize()
        if self.bot_runner is not None:
            await self.bot_runner.start()
        await self.scheduler.start()
        structured_log(
            logger,
            "info",
            "runtime.started",
            bot_enabled=self.bot_runner is not None,
            delivery_enabled=self.delivery is not None,
            rendering_enabled=self.rendering is not None,
        )

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self.bot_runner is not None:
            await self.bot_runner.stop()
        if self.standalone_bot is not None:
            await self.standalone_bot.shutdown()
        await self.source.close()
        if self.rendering is not None:
            await self.rendering.close()
        await close_engine()
        structured_log(logger, "info", "runtime.stopped")


def build_runtime(config: Settings) -> Runtime:
    store = SqlVideoStore(get_session_factory())
    source = LiveVideoSource(
        base_url=config.crawler_base_url,
        timeout_seconds=config.crawler_timeout_seconds,
        proxy_url=config.crawler_proxy_url,
        rotate_user_agents=config.crawler_rotate_user_agent,
        jitter_min_seconds=config.crawler_jitter_min_seconds,
        jitter_max_seconds=config.crawler_jitter_max_seconds,
    )
    rendering = None
    if config.rendering_enabled:
        rendering = PlaywrightRenderingFallback(
            user_agent=source.user_agent,
            headless=config.rendering_headless,
            timeout_seconds=config.rendering_timeout_seconds,
            challenge_settle_seconds=config.rendering_challenge_settle_seconds,
            selector_timeout_seconds=config.rendering_selector_timeout_seconds,
            content_settle_seconds=config.rendering_content_settle_seconds,
            proxy_url=config.crawler_proxy_url,
        )
    harvester = RetryingHarvester(
        source=source,
        rate_limiter=TokenBucketRateLimiter(config.crawler_rate_limit),
        base_url=config.crawler_base_url,
        rendering=rendering,
        max_retries=config.crawler_max_retries,
        retry_backoff_seconds=config.crawler_retry_backoff_seconds,
        page_pacing_seconds=config.crawler_page_pacing_seconds,
        warmup_requests=config.crawler_warmup_requests,
        warmup_interval_seconds=config.crawler_warmup_interval_seconds,
        warmup_ttl_seconds=config.crawler_warmup_ttl_seconds,
    )

    bot = Bot(config.bot_token) if config.bot_token else None
    delivery = None
    if bot is not None:
        delivery = DeliveryService(
            store=store,
            transport=TelegramTransport(bot),
            send_limiter=TokenBucketRateLimiter(
                config.delivery_rate_limit,
                burst=max(1, int(config.delivery_rate_limit)),
            ),
            same_chat_delay_seconds=config.delivery_same_chat_delay_seconds,
        )
    scheduler = HarvestScheduler(
        harvester=harvester,
        store=store,
        delivery=delivery,
        enabled=config.crawler_enabled,
        interval_seconds=config.crawler_interval_seconds,
        initial_delay_seconds=config.crawler_initial_delay_seconds,
        initial_pages=config.crawler_initial_pages,
        manual_limit=config.manual_harvest_limit,
    )
    commands = ChatCommandService(
        store=store,
        scheduler=scheduler,
        search_limit=config.search_result_limit,
        latest_page_size=config.latest_page_size,
        manual_limit=config.manual_harvest_limit,
    )
    bot_runner = None
    standalone_bot = None
    if bot is not None and config.bot_enabled:
        bot_runner = BotRunner(build_bot_application(bot, commands))
    elif bot is not None:
        # Delivery still sends through the Bot API when polling is off.
        standalone_bot = bot
    return Runtime(
        settings=config,
        store=store,
        source=source,
        rendering=rendering,
        harvester=harvester,
        delivery=delivery,
        scheduler=scheduler,
        commands=commands,
        bot_runner=bot_runner,
        standalone_bot=standalone_bot,
    )
