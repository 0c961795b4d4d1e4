from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

from playwright.async_api import Browser, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from reelwatch.logging_utils import structured_log
from reelwatch.services import cancellation
from reelwatch.services.cancellation import CancelScope, OperationCancelledError
from reelwatch.settings import settings

logger = logging.getLogger(__name__)


class RenderingError(Exception):
    pass


class RenderingClosedError(RenderingError):
    pass


class RenderingFallback(Protocol):
    async def render_url(
        self,
        url: str,
        *,
        wait_selector: str | None = None,
        timeout_seconds: float | None = None,
        cancel: CancelScope | None = None,
    ) -> str: ...

    async def reconnect(self) -> None: ...

    async def close(self) -> None: ...


class PlaywrightRenderingFallback:
    """One lazily launched Chromium session, rendering a single page at a time."""

    def __init__(
        self,
        *,
        user_agent: str,
        headless: bool | None = None,
        timeout_seconds: float | None = None,
        challenge_settle_seconds: float | None = None,
        selector_timeout_seconds: float | None = None,
        content_settle_seconds: float | None = None,
        proxy_url: str | None = None,
    ) -> None:
        self._user_agent = user_agent
        self._headless = settings.rendering_headless if headless is None else bool(headless)
        self._timeout_seconds = float(
            settings.rendering_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        self._challenge_settle_seconds = float(
            settings.rendering_challenge_settle_seconds
            if challenge_settle_seconds is None
            else challenge_settle_seconds
        )
        self._selector_timeout_seconds = float(
            settings.rendering_selector_timeout_seconds
            if selector_timeout_seconds is None
            else selector_timeout_seconds
        )
        self._content_settle_seconds = float(
            settings.rendering_content_settle_seconds
            if content_settle_seconds is None
            else content_settle_seconds
        )
        configured_proxy = settings.crawler_proxy_url if proxy_url is None else proxy_url
        self._proxy_url = configured_proxy.strip() or None
        self._lock = asyncio.Lock()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def render_url(
        self,
        url: str,
        *,
        wait_selector: str | None = None,
        timeout_seconds: float | None = None,
        cancel: CancelScope | None = None,
    ) -> str:
        if self._closed:
            raise RenderingClosedError("rendering session is closed")
        async with self._lock:
            if self._closed:
                raise RenderingClosedError("rendering session is closed")
            started = time.perf_counter()
            scope = (cancel or CancelScope()).child(
                timeout_seconds=timeout_seconds or self._timeout_seconds
            )
            try:
                browser = await self._ensure_browser()
                html = await self._render_page(browser, url, wait_selector=wait_selector, cancel=scope)
            except PlaywrightError as exc:
                structured_log(
                    logger,
                    "warning",
                    "rendering.page_failed",
                    url=url,
                    error=str(exc),
                )
                raise RenderingError(str(exc)) from exc
            except OperationCancelledError as exc:
                if cancel is not None and cancel.cancelled:
                    raise
                # Only the per-render deadline fired; the caller's scope is still live.
                structured_log(logger, "warning", "rendering.page_timed_out", url=url)
                raise RenderingError(f"render timed out: {exc.reason}") from exc
            structured_log(
                logger,
                "info",
                "rendering.page_rendered",
                url=url,
                body_length=len(html),
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            return html

    async def _render_page(
        self,
        browser: Browser,
        url: str,
        *,
        wait_selector: str | None,
        cancel: CancelScope,
    ) -> str:
        page = await browser.new_page(user_agent=self._user_agent)
        try:
            await page.set_extra_http_headers({"Accept-Language": settings.crawler_accept_language})
            timeout_ms = int(self._timeout_seconds * 1000)
            await cancellation.run(page.goto(url, timeout=timeout_ms, wait_until="load"), cancel)
            await cancellation.run(page.wait_for_load_state("load", timeout=timeout_ms), cancel)
            await cancellation.sleep(self._challenge_settle_seconds, cancel)
            if wait_selector:
                try:
                    await cancellation.run(
                        page.wait_for_selector(
                            wait_selector,
                            timeout=int(self._selector_timeout_seconds * 1000),
                        ),
                        cancel,
                    )
                except PlaywrightTimeoutError:
                    structured_log(
                        logger,
                        "warning",
                        "rendering.selector_timeout",
                        url=url,
                        wait_selector=wait_selector,
                    )
            await cancellation.sleep(self._content_settle_seconds, cancel)
            return await cancellation.run(page.content(), cancel)
        finally:
            try:
                await page.close()
            except PlaywrightError:
                structured_log(logger, "debug", "rendering.page_close_failed", url=url)

    async def _ensure_browser(self) -> Browser:
        if self._browser is not None and self._browser.is_connected():
            return self._browser
        if self._browser is not None:
            structured_log(logger, "warning", "rendering.session_dropped")
        await self._launch()
        assert self._browser is not None
        return self._browser

    async def _launch(self) -> None:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(PlaywrightError),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=1, min=1, max=8),
            reraise=True,
        ):
            with attempt:
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                launch_kwargs: dict[str, object] = {
                    "headless": self._headless,
                    "args": ["--disable-blink-features=AutomationControlled", "--no-sandbox"],
                }
                if self._proxy_url is not None:
                    launch_kwargs["proxy"] = {"server": self._proxy_url}
                self._browser = await self._playwright.chromium.launch(**launch_kwargs)
        structured_log(logger, "info", "rendering.session_launched", headless=self._headless)

    async def reconnect(self) -> None:
        if self._closed:
            raise RenderingClosedError("rendering session is closed")
        async with self._lock:
            await self._close_browser()
            await self._launch()
        structured_log(logger, "info", "rendering.session_reconnected")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        async with self._lock:
            await self._close_browser()
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
        structured_log(logger, "info", "rendering.session_closed")

    async def _close_browser(self) -> None:
        if self._browser is None:
            return
        try:
            await self._browser.close()
        except PlaywrightError:
            structured_log(logger, "debug", "rendering.browser_close_failed")
        self._browser = None
