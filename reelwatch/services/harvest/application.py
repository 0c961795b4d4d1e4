from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from reelwatch.logging_utils import structured_log
from reelwatch.services import cancellation
from reelwatch.services.cancellation import CancelScope, OperationCancelledError
from reelwatch.services.harvest.codes import normalize_code
from reelwatch.services.harvest.parser import extract_detail, extract_listing
from reelwatch.services.harvest.rate_limit import TokenBucketRateLimiter
from reelwatch.services.harvest.rendering import RenderingError, RenderingFallback
from reelwatch.services.harvest.source import (
    FetchResult,
    VideoSource,
    build_actor_url,
    build_detail_url,
    build_listing_url,
    build_search_url,
)
from reelwatch.services.harvest.types import (
    LISTING_PAGE_SIZE,
    HarvestCancelledError,
    HarvestKind,
    VideoDraft,
    VideoRecord,
    records_from_drafts,
)

logger = logging.getLogger(__name__)

LISTING_WAIT_SELECTOR = "div.group"
DETAIL_WAIT_SELECTOR = "body"
WARMUP_PAGE = 2


@dataclass(frozen=True)
class PageOutcome:
    url: str
    drafts: list[VideoDraft]
    fetched: bool
    rendered: bool
    attempt_log: list[dict[str, Any]]


class RetryingHarvester:
    """Rate-limited, retrying harvest operations with a rendering fallback."""

    def __init__(
        self,
        *,
        source: VideoSource,
        rate_limiter: TokenBucketRateLimiter,
        base_url: str,
        rendering: RenderingFallback | None = None,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        page_pacing_seconds: float = 2.0,
        warmup_requests: int = 3,
        warmup_interval_seconds: float = 1.0,
        warmup_ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._rate_limiter = rate_limiter
        self._base_url = base_url.rstrip("/")
        self._rendering = rendering
        self._max_retries = max(0, int(max_retries))
        self._retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self._page_pacing_seconds = max(0.0, float(page_pacing_seconds))
        self._warmup_requests = max(0, int(warmup_requests))
        self._warmup_interval_seconds = max(0.0, float(warmup_interval_seconds))
        self._warmup_ttl_seconds = max(0.0, float(warmup_ttl_seconds))
        self._clock = clock
        self._warmup_lock = asyncio.Lock()
        self._last_warmup_at: float | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    # ── Public operations ─────────────────────────────────────────────

    async def harvest_new_listing(
        self,
        page_count: int,
        *,
        cancel: CancelScope | None = None,
    ) -> list[VideoRecord]:
        pages = max(1, int(page_count))
        return await self._harvest_listing(
            operation="new_listing",
            url_for_page=lambda page: build_listing_url(self._base_url, page),
            max_pages=pages,
            limit=None,
            stop_on_page_failure=False,
            cancel=cancel,
        )

    async def harvest_by_actor(
        self,
        name: str,
        limit: int,
        *,
        cancel: CancelScope | None = None,
    ) -> list[VideoRecord]:
        bounded_limit = max(1, int(limit))
        return await self._harvest_listing(
            operation="by_actor",
            url_for_page=lambda page: build_actor_url(self._base_url, name, page),
            max_pages=self._pages_for_limit(bounded_limit),
            limit=bounded_limit,
            stop_on_page_failure=True,
            cancel=cancel,
        )

    async def harvest_by_keyword(
        self,
        keyword: str,
        limit: int,
        *,
        cancel: CancelScope | None = None,
    ) -> list[VideoRecord]:
        bounded_limit = max(1, int(limit))
        return await self._harvest_listing(
            operation="by_keyword",
            url_for_page=lambda page: build_search_url(self._base_url, keyword, page),
            max_pages=self._pages_for_limit(bounded_limit),
            limit=bounded_limit,
            stop_on_page_failure=True,
            cancel=cancel,
        )

    async def harvest_detail(
        self,
        url: str,
        *,
        cancel: CancelScope | None = None,
    ) -> VideoRecord | None:
        try:
            outcome = await self._fetch_page(
                url,
                extract=lambda body: [extract_detail(body, url, base_url=self._base_url)],
                escalate_on_empty=False,
                wait_selector=DETAIL_WAIT_SELECTOR,
                cancel=cancel,
            )
        except OperationCancelledError as exc:
            raise HarvestCancelledError([], exc.reason) from exc
        records = records_from_drafts(outcome.drafts)
        if not records:
            structured_log(
                logger,
                "info",
                "harvest.detail_empty",
                url=url,
                fetched=outcome.fetched,
                rendered=outcome.rendered,
            )
            return None
        return records[0]

    async def harvest_by_code(
        self,
        code: str,
        *,
        cancel: CancelScope | None = None,
    ) -> VideoRecord | None:
        normalized = normalize_code(code)
        if not normalized:
            return None
        return await self.harvest_detail(build_detail_url(self._base_url, normalized), cancel=cancel)

    async def harvest(
        self,
        kind: HarvestKind,
        keyword: str = "",
        *,
        limit: int = 20,
        pages: int = 2,
        cancel: CancelScope | None = None,
    ) -> list[VideoRecord]:
        if kind == HarvestKind.NEW:
            return await self.harvest_new_listing(pages, cancel=cancel)
        if kind == HarvestKind.ACTOR:
            return await self.harvest_by_actor(keyword, limit, cancel=cancel)
        if kind == HarvestKind.SEARCH:
            return await self.harvest_by_keyword(keyword, limit, cancel=cancel)
        record = await self.harvest_by_code(keyword, cancel=cancel)
        return [record] if record is not None else []

    # ── Pagination ────────────────────────────────────────────────────

    @staticmethod
    def _pages_for_limit(limit: int) -> int:
        return max(1, math.ceil(limit / LISTING_PAGE_SIZE))

    async def _harvest_listing(
        self,
        *,
        operation: str,
        url_for_page: Callable[[int], str],
        max_pages: int,
        limit: int | None,
        stop_on_page_failure: bool,
        cancel: CancelScope | None,
    ) -> list[VideoRecord]:
        collected: list[VideoDraft] = []
        started = time.perf_counter()
        structured_log(
            logger,
            "info",
            "harvest.started",
            operation=operation,
            max_pages=max_pages,
            limit=limit,
        )
        try:
            await self.ensure_warm(cancel=cancel)
            for page in range(1, max_pages + 1):
                if page > 1:
                    await cancellation.sleep(self._page_pacing_seconds, cancel)
                url = url_for_page(page)
                outcome = await self._fetch_page(
                    url,
                    extract=lambda body: extract_listing(body, base_url=self._base_url),
                    escalate_on_empty=page == 1,
                    wait_selector=LISTING_WAIT_SELECTOR,
                    cancel=cancel,
                )
                if not outcome.fetched and not outcome.drafts:
                    structured_log(
                        logger,
                        "warning",
                        "harvest.page_failed",
                        operation=operation,
                        page=page,
                        url=url,
                        attempt_log=outcome.attempt_log,
                    )
                    if stop_on_page_failure:
                        break
                    continue
                if not outcome.drafts:
                    structured_log(
                        logger,
                        "info",
                        "harvest.pagination_exhausted",
                        operation=operation,
                        page=page,
                    )
                    break
                collected.extend(outcome.drafts)
                structured_log(
                    logger,
                    "info",
                    "harvest.page_completed",
                    operation=operation,
                    page=page,
                    draft_count=len(outcome.drafts),
                    rendered=outcome.rendered,
                )
                if limit is not None and len(records_from_drafts(collected)) >= limit:
                    break
        except OperationCancelledError as exc:
            partial = self._bounded(records_from_drafts(collected), limit)
            structured_log(
                logger,
                "warning",
                "harvest.cancelled",
                operation=operation,
                partial_count=len(partial),
                reason=exc.reason,
            )
            raise HarvestCancelledError(partial, exc.reason) from exc

        records = self._bounded(records_from_drafts(collected), limit)
        structured_log(
            logger,
            "info",
            "harvest.completed",
            operation=operation,
            record_count=len(records),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return records

    @staticmethod
    def _bounded(records: list[VideoRecord], limit: int | None) -> list[VideoRecord]:
        if limit is None:
            return records
        return records[:limit]

    # ── Per-page fetch, retry and escalation ──────────────────────────

    async def _fetch_page(
        self,
        url: str,
        *,
        extract: Callable[[str], list[VideoDraft]],
        escalate_on_empty: bool,
        wait_selector: str,
        cancel: CancelScope | None,
    ) -> PageOutcome:
        fetch_result, attempt_log = await self.fetch_with_retry(url, cancel=cancel)
        if fetch_result.ok:
            drafts = [draft for draft in extract(fetch_result.body) if draft.code]
            if drafts or not escalate_on_empty:
                return PageOutcome(
                    url=url,
                    drafts=drafts,
                    fetched=True,
                    rendered=False,
                    attempt_log=attempt_log,
                )
            escalation_reason = "empty_extraction"
        else:
            escalation_reason = "fetch_failed"

        rendered_body = await self._render(url, wait_selector=wait_selector, reason=escalation_reason, cancel=cancel)
        if rendered_body is None:
            return PageOutcome(
                url=url,
                drafts=[],
                fetched=fetch_result.ok,
                rendered=False,
                attempt_log=attempt_log,
            )
        drafts = [draft for draft in extract(rendered_body) if draft.code]
        return PageOutcome(
            url=url,
            drafts=drafts,
            fetched=True,
            rendered=True,
            attempt_log=attempt_log,
        )

    async def fetch_with_retry(
        self,
        url: str,
        *,
        cancel: CancelScope | None = None,
    ) -> tuple[FetchResult, list[dict[str, Any]]]:
        attempt_log: list[dict[str, Any]] = []
        attempt = 0
        while True:
            attempt += 1
            await self._rate_limiter.acquire(cancel)
            fetch_result = await self._fetch_once(url, cancel=cancel)
            attempt_log.append(
                {
                    "attempt": attempt,
                    "status_code": fetch_result.status_code,
                    "error": fetch_result.error,
                    "error_kind": fetch_result.error_kind,
                }
            )
            if fetch_result.ok or attempt > self._max_retries:
                return fetch_result, attempt_log
            sleep_seconds = self._retry_backoff_seconds * (2 ** (attempt - 1))
            structured_log(
                logger,
                "warning",
                "harvest.fetch_retry_scheduled",
                url=url,
                attempt_count=attempt,
                sleep_seconds=sleep_seconds,
                error_kind=fetch_result.error_kind,
            )
            await cancellation.sleep(sleep_seconds, cancel)

    async def _fetch_once(self, url: str, *, cancel: CancelScope | None) -> FetchResult:
        try:
            return await self._source.fetch_page(url, cancel)
        except OperationCancelledError:
            raise
        except Exception as exc:
            logger.exception("harvest.fetch_unexpected_error", extra={"url": url})
            return FetchResult(
                requested_url=url,
                status_code=None,
                final_url=None,
                body="",
                error=str(exc) or type(exc).__name__,
                error_kind="unexpected",
            )

    async def _render(
        self,
        url: str,
        *,
        wait_selector: str,
        reason: str,
        cancel: CancelScope | None,
    ) -> str | None:
        if self._rendering is None:
            structured_log(logger, "info", "harvest.rendering_unavailable", url=url, reason=reason)
            return None
        structured_log(logger, "info", "harvest.rendering_escalated", url=url, reason=reason)
        try:
            return await self._rendering.render_url(url, wait_selector=wait_selector, cancel=cancel)
        except RenderingError as exc:
            structured_log(
                logger,
                "warning",
                "harvest.rendering_failed",
                url=url,
                error=str(exc),
            )
            return None

    # ── Session warm-up ───────────────────────────────────────────────

    def _warmup_is_fresh(self) -> bool:
        if self._last_warmup_at is None:
            return False
        return self._clock() - self._last_warmup_at < self._warmup_ttl_seconds

    async def ensure_warm(self, *, cancel: CancelScope | None = None) -> None:
        if self._warmup_requests <= 0 or self._warmup_is_fresh():
            return
        async with self._warmup_lock:
            if self._warmup_is_fresh():
                return
            url = build_listing_url(self._base_url, WARMUP_PAGE)
            succeeded = 0
            for index in range(self._warmup_requests):
                if index > 0:
                    await cancellation.sleep(self._warmup_interval_seconds, cancel)
                await self._rate_limiter.acquire(cancel)
                result = await self._fetch_once(url, cancel=cancel)
                if result.ok:
                    succeeded += 1
            self._last_warmup_at = self._clock()
            structured_log(
                logger,
                "info" if succeeded else "warning",
                "harvest.session_warmed" if succeeded else "harvest.session_warmup_failed",
                requests=self._warmup_requests,
                succeeded=succeeded,
            )
