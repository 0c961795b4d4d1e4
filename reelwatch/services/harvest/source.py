from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote

import httpx

from reelwatch.logging_utils import structured_log
from reelwatch.services import cancellation
from reelwatch.services.cancellation import CancelScope
from reelwatch.settings import settings

DEFAULT_USER_AGENTS = [
    ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"),
    (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_7) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/18.1 Safari/605.1.15"
    ),
    ("Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"),
]

CHALLENGE_MARKERS = (
    "cf-challenge",
    "challenge-platform",
    "just a moment...",
    "checking your browser",
)

logger = logging.getLogger(__name__)


class FetchErrorKind:
    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP_STATUS = "http_status"
    CHALLENGE = "challenge"


@dataclass(frozen=True)
class FetchResult:
    requested_url: str
    status_code: int | None
    final_url: str | None
    body: str
    error: str | None
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class VideoSource(Protocol):
    async def fetch_page(self, url: str, cancel: CancelScope | None = None) -> FetchResult: ...

    async def close(self) -> None: ...


def build_listing_url(base_url: str, page: int = 1) -> str:
    url = f"{base_url.rstrip('/')}/new"
    if page > 1:
        url = f"{url}?page={int(page)}"
    return url


def build_actor_url(base_url: str, name: str, page: int = 1) -> str:
    url = f"{base_url.rstrip('/')}/actresses/{quote(name.strip(), safe='')}"
    if page > 1:
        url = f"{url}?page={int(page)}"
    return url


def build_search_url(base_url: str, keyword: str, page: int = 1) -> str:
    url = f"{base_url.rstrip('/')}/search/{quote(keyword.strip(), safe='')}"
    if page > 1:
        url = f"{url}?page={int(page)}"
    return url


def build_detail_url(base_url: str, code: str) -> str:
    return f"{base_url.rstrip('/')}/{quote(code.strip().lower(), safe='-')}"


class LiveVideoSource:
    """Plain HTTP fetcher. One attempt per call; retries belong to the harvester."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        proxy_url: str | None = None,
        user_agents: list[str] | None = None,
        rotate_user_agents: bool | None = None,
        jitter_min_seconds: float | None = None,
        jitter_max_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.crawler_base_url).rstrip("/")
        self._timeout_seconds = float(
            settings.crawler_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        configured_proxy = settings.crawler_proxy_url if proxy_url is None else proxy_url
        self._proxy_url = configured_proxy.strip() or None
        self._user_agents = user_agents or DEFAULT_USER_AGENTS
        self._rotate_user_agents = (
            bool(settings.crawler_rotate_user_agent) if rotate_user_agents is None else bool(rotate_user_agents)
        )
        self._configured_user_agent = settings.crawler_user_agent.strip() or None
        self._stable_user_agent = self._configured_user_agent or random.choice(self._user_agents)
        self._jitter_min_seconds = max(
            float(settings.crawler_jitter_min_seconds if jitter_min_seconds is None else jitter_min_seconds),
            0.0,
        )
        self._jitter_max_seconds = max(
            float(settings.crawler_jitter_max_seconds if jitter_max_seconds is None else jitter_max_seconds),
            self._jitter_min_seconds,
        )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def user_agent(self) -> str:
        return self._stable_user_agent

    def _resolve_user_agent_for_request(self) -> str:
        if self._configured_user_agent is not None:
            return self._configured_user_agent
        if self._rotate_user_agents:
            return random.choice(self._user_agents)
        return self._stable_user_agent

    def _request_headers(self) -> dict[str, str]:
        return {
            "User-Agent": self._resolve_user_agent_for_request(),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
            "Accept-Language": settings.crawler_accept_language,
            "Referer": f"{self._base_url}/",
            "Cache-Control": "no-cache",
            "Upgrade-Insecure-Requests": "1",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            client_kwargs: dict[str, object] = {
                "timeout": self._timeout_seconds,
                "follow_redirects": True,
                "cookies": httpx.Cookies(),
            }
            if self._transport is not None:
                client_kwargs["transport"] = self._transport
            elif self._proxy_url is not None:
                client_kwargs["proxy"] = self._proxy_url
            self._client = httpx.AsyncClient(**client_kwargs)
        return self._client

    def _jitter_seconds(self) -> float:
        if self._jitter_max_seconds <= 0:
            return 0.0
        return random.uniform(self._jitter_min_seconds, self._jitter_max_seconds)

    async def fetch_page(self, url: str, cancel: CancelScope | None = None) -> FetchResult:
        await cancellation.sleep(self._jitter_seconds(), cancel)
        client = self._get_client()
        try:
            response = await cancellation.run(
                client.get(url, headers=self._request_headers()),
                cancel,
            )
        except httpx.TimeoutException as exc:
            return self._network_error_result(url, exc, kind=FetchErrorKind.TIMEOUT)
        except httpx.HTTPError as exc:
            return self._network_error_result(url, exc, kind=FetchErrorKind.NETWORK)
        return self._response_result(url, response)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _is_challenge(status_code: int, body: str) -> bool:
        if status_code not in {403, 503}:
            return False
        lowered = body[:4096].lower()
        return any(marker in lowered for marker in CHALLENGE_MARKERS)

    @staticmethod
    def _network_error_result(url: str, exc: httpx.HTTPError, *, kind: str) -> FetchResult:
        structured_log(
            logger,
            "warning",
            "video_source.fetch_network_error",
            requested_url=url,
            error_kind=kind,
            error=str(exc) or type(exc).__name__,
        )
        return FetchResult(
            requested_url=url,
            status_code=None,
            final_url=None,
            body="",
            error=str(exc) or type(exc).__name__,
            error_kind=kind,
        )

    def _response_result(self, url: str, response: httpx.Response) -> FetchResult:
        body = response.text
        final_url = str(response.url)
        if response.status_code != 200:
            kind = (
                FetchErrorKind.CHALLENGE
                if self._is_challenge(response.status_code, body)
                else FetchErrorKind.HTTP_STATUS
            )
            structured_log(
                logger,
                "warning",
                "video_source.fetch_http_error",
                requested_url=url,
                status_code=response.status_code,
                final_url=final_url,
                error_kind=kind,
            )
            return FetchResult(
                requested_url=url,
                status_code=response.status_code,
                final_url=final_url,
                body=body,
                error=f"http_error_status_{response.status_code}",
                error_kind=kind,
            )
        structured_log(
            logger,
            "debug",
            "video_source.fetch_succeeded",
            requested_url=url,
            status_code=response.status_code,
            body_length=len(body),
        )
        return FetchResult(
            requested_url=url,
            status_code=response.status_code,
            final_url=final_url,
            body=body,
            error=None,
        )
