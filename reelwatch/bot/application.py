from __future__ import annotations

import logging

from telegram import Bot, LinkPreviewOptions, Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from reelwatch.bot.commands import BotReply, ChatCommandService
from reelwatch.logging_utils import structured_log

logger = logging.getLogger(__name__)


async def _reply(update: Update, reply: BotReply) -> None:
    message = update.effective_message
    if message is None:
        return
    try:
        await message.reply_text(
            reply.text,
            parse_mode=ParseMode.MARKDOWN_V2 if reply.markdown else None,
            link_preview_options=LinkPreviewOptions(is_disabled=True),
        )
    except TelegramError as exc:
        structured_log(
            logger,
            "warning",
            "bot.reply_failed",
            chat_id=update.effective_chat.id if update.effective_chat else None,
            error=exc.message,
        )


def _arguments(context: ContextTypes.DEFAULT_TYPE) -> str:
    return " ".join(context.args or []).strip()


class BotHandlers:
    """Adapts Bot API updates to ``ChatCommandService`` calls."""

    def __init__(self, service: ChatCommandService) -> None:
        self._service = service

    async def help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await _reply(update, self._service.help())

    async def subscribe(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if chat is None:
            return
        await _reply(update, await self._service.subscribe(chat.id, chat.type, _arguments(context)))

    async def unsubscribe(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if chat is None:
            return
        await _reply(update, await self._service.unsubscribe(chat.id, _arguments(context)))

    async def list_subscriptions(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if chat is None:
            return
        await _reply(update, await self._service.list_subscriptions(chat.id))

    async def search(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await _reply(update, await self._service.search(_arguments(context)))

    async def latest(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await _reply(update, await self._service.latest(_arguments(context)))

    async def status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await _reply(update, await self._service.status())

    async def crawl(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        async def send(reply: BotReply) -> None:
            await _reply(update, reply)

        await self._service.crawl(_arguments(context), send)

    async def group_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if chat is None:
            return
        await self._service.auto_subscribe_group(chat.id, chat.type)

    async def unknown(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await _reply(update, BotReply(text="❌ Unknown command. Use /help to see available commands."))

    async def error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error(
            "bot.handler_failed",
            exc_info=context.error,
            extra={"error": str(context.error)},
        )


def build_bot_application(bot: Bot, service: ChatCommandService) -> Application:
    handlers = BotHandlers(service)
    application = Application.builder().bot(bot).build()
    application.add_handler(CommandHandler(["start", "help"], handlers.help))
    application.add_handler(CommandHandler("subscribe", handlers.subscribe))
    application.add_handler(CommandHandler("unsubscribe", handlers.unsubscribe))
    application.add_handler(CommandHandler("list", handlers.list_subscriptions))
    application.add_handler(CommandHandler("search", handlers.search))
    application.add_handler(CommandHandler("latest", handlers.latest))
    application.add_handler(CommandHandler("status", handlers.status))
    # The crawl handler awaits the whole harvest; it must not hold up other updates.
    application.add_handler(CommandHandler("crawl", handlers.crawl, block=False))
    application.add_handler(MessageHandler(filters.COMMAND, handlers.unknown))
    application.add_handler(
        MessageHandler(filters.ChatType.GROUPS & ~filters.COMMAND, handlers.group_message)
    )
    application.add_error_handler(handlers.error)
    return application


class BotRunner:
    """Polling lifecycle for an ``Application`` that lives inside another event loop."""

    def __init__(self, application: Application) -> None:
        self._application = application
        self._running = False

    @property
    def application(self) -> Application:
        return self._application

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        await self._application.initialize()
        await self._application.start()
        if self._application.updater is not None:
            await self._application.updater.start_polling(drop_pending_updates=False)
        self._running = True
        structured_log(logger, "info", "bot.polling_started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._application.updater is not None and self._application.updater.running:
            await self._application.updater.stop()
        await self._application.stop()
        await self._application.shutdown()
        structured_log(logger, "info", "bot.polling_stopped")
