"""Page-to-draft extraction for listing and detail pages.

Listing extraction is an ordered cascade of independent strategies; the first
one that yields at least one draft wins.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from urllib.parse import urlparse

from reelwatch.logging_utils import structured_log
from reelwatch.services.harvest.codes import (
    derive_code,
    extract_code,
    normalize_code,
)
from reelwatch.services.harvest.parser_utils import (
    HtmlNode,
    absolute_url,
    normalize_space,
    parse_html,
    script_texts,
)
from reelwatch.services.harvest.types import VideoDraft
from reelwatch.settings import settings

logger = logging.getLogger(__name__)

CARD_SELECTORS = (
    "div.video-card",
    "article.video",
    "div[class*=thumbnail]",
    "div.group",
)
CARD_TITLE_SELECTOR = "h3, h4, .title, [class*=title]"
DURATION_SELECTOR = ".duration, [class*=duration]"
DETAIL_TITLE_SELECTOR = "h1, .video-title, [class*=title]"
DETAIL_ACTOR_SELECTOR = "a[href*=actress], a[href*=actor], .actress"
DETAIL_TAG_SELECTOR = "a[href*=tag], a[href*=genre], .tag"
DETAIL_COVER_SELECTOR = "meta[property=og:image], img.cover, .video-cover img"
IMAGE_ATTRIBUTES = ("data-original", "data-lazy-src", "data-src", "srcset", "src")

DVD_ID_RE = re.compile(r'"dvd_id"\s*:\s*"([^"]+)"')
UUID_RE = re.compile(r'"uuid"\s*:\s*"([^"]+)"')
DURATION_MINUTES_RE = re.compile(r"(\d+)\s*分")
NUMBER_RE = re.compile(r"\d+")
MP4_URL_RE = re.compile(r"(https?://[^\s\"']+\.mp4)")

ListingStrategy = Callable[[HtmlNode, str], list[VideoDraft]]


def extract_duration_minutes(text: str | None) -> int:
    if not text:
        return 0
    match = DURATION_MINUTES_RE.search(text)
    if match is not None:
        return int(match.group(1))
    match = NUMBER_RE.search(text)
    if match is not None:
        return int(match.group(0))
    return 0


def extract_image_url(img: HtmlNode, base_url: str) -> str:
    for name in IMAGE_ATTRIBUTES:
        value = img.get(name).strip()
        if not value or value.startswith("data:"):
            continue
        if name == "srcset":
            value = value.split()[0]
        if value.startswith(("http://", "https://", "/")):
            return absolute_url(base_url, value)
    return ""


def _duration_node(container: HtmlNode) -> HtmlNode | None:
    node = container.select_one(DURATION_SELECTOR)
    if node is not None:
        return node
    for candidate in container.select("span"):
        if "分" in candidate.text():
            return candidate
    return None


def _site_host(base_url: str) -> str:
    host = urlparse(base_url).hostname or ""
    return host.removeprefix("www.").split(".")[0]


def scripts_strategy(root: HtmlNode, base_url: str) -> list[VideoDraft]:
    drafts: list[VideoDraft] = []
    for script in script_texts(root):
        if "dvd_id" not in script and "uuid" not in script:
            continue
        identifiers = DVD_ID_RE.findall(script)
        lowercase_path = True
        if not identifiers and not drafts:
            identifiers = UUID_RE.findall(script)
            lowercase_path = False
        for identifier in identifiers:
            path = identifier.lower() if lowercase_path else identifier
            drafts.append(
                VideoDraft(
                    code=normalize_code(identifier),
                    detail_url=absolute_url(base_url, f"/{path}"),
                )
            )
    return drafts


def _draft_from_card(card: HtmlNode, base_url: str) -> VideoDraft:
    draft = VideoDraft()
    host = _site_host(base_url)
    link = card.select_one(f"a[href*={host}]") if host else None
    if link is None:
        link = card.select_one("a")
    if link is not None and link.get("href"):
        draft.detail_url = absolute_url(base_url, link.get("href"))

    title_node = card.select_one(CARD_TITLE_SELECTOR)
    if title_node is not None:
        draft.title = title_node.text()
    draft.code = derive_code(title=draft.title, url=draft.detail_url)

    img = card.select_one("img")
    if img is not None:
        draft.cover_url = extract_image_url(img, base_url)

    duration_node = _duration_node(card)
    if duration_node is not None:
        draft.duration_seconds = extract_duration_minutes(duration_node.text()) * 60
    return draft


def cards_strategy(root: HtmlNode, base_url: str) -> list[VideoDraft]:
    for selector in CARD_SELECTORS:
        cards = root.select(selector)
        if not cards:
            continue
        structured_log(
            logger,
            "debug",
            "parser.cards_found",
            selector=selector,
            card_count=len(cards),
        )
        return [_draft_from_card(card, base_url) for card in cards]
    return []


def links_strategy(root: HtmlNode, base_url: str) -> list[VideoDraft]:
    drafts: list[VideoDraft] = []
    for link in root.select("a[href]"):
        href = link.get("href")
        code = extract_code(href)
        if not code:
            continue
        draft = VideoDraft(code=code, detail_url=absolute_url(base_url, href))
        img = link.select_one("img")
        if img is not None:
            draft.cover_url = extract_image_url(img, base_url)
        drafts.append(draft)
    return drafts


LISTING_STRATEGIES: tuple[tuple[str, ListingStrategy], ...] = (
    ("scripts", scripts_strategy),
    ("cards", cards_strategy),
    ("links", links_strategy),
)


def extract_listing(html: str, *, base_url: str | None = None) -> list[VideoDraft]:
    resolved_base = base_url or settings.crawler_base_url
    root = parse_html(html)
    for name, strategy in LISTING_STRATEGIES:
        drafts = [draft for draft in strategy(root, resolved_base) if draft.code]
        if drafts:
            structured_log(
                logger,
                "debug",
                "parser.listing_extracted",
                strategy=name,
                draft_count=len(drafts),
            )
            return drafts
    structured_log(logger, "debug", "parser.listing_empty", body_length=len(html or ""))
    return []


def _preview_from_video_element(root: HtmlNode) -> str:
    video = root.select_one("video")
    if video is None:
        return ""
    for name in ("data-src", "src"):
        if video.get(name):
            return video.get(name)
    source = video.select_one("source")
    if source is not None:
        for name in ("src", "data-src"):
            if source.get(name):
                return source.get(name)
    return ""


def _preview_from_scripts(root: HtmlNode) -> str:
    for script in script_texts(root):
        if ".mp4" not in script and "preview" not in script:
            continue
        match = MP4_URL_RE.search(script)
        if match is not None:
            return match.group(1)
    return ""


def _texts(root: HtmlNode, selector: str) -> list[str]:
    return [text for text in (node.text() for node in root.select(selector)) if text]


def extract_detail(html: str, source_url: str, *, base_url: str | None = None) -> VideoDraft:
    resolved_base = base_url or settings.crawler_base_url
    root = parse_html(html)
    draft = VideoDraft(detail_url=source_url)

    title_node = root.select_one(DETAIL_TITLE_SELECTOR)
    if title_node is not None:
        draft.title = normalize_space(title_node.text())
    draft.code = derive_code(title=draft.title, url=source_url)

    draft.actresses = _texts(root, DETAIL_ACTOR_SELECTOR)
    draft.tags = _texts(root, DETAIL_TAG_SELECTOR)

    cover_node = root.select_one(DETAIL_COVER_SELECTOR)
    if cover_node is not None:
        cover = cover_node.get("content") or cover_node.get("src")
        draft.cover_url = absolute_url(resolved_base, cover) if cover else ""

    draft.preview_url = _preview_from_video_element(root) or _preview_from_scripts(root)

    duration_node = _duration_node(root)
    if duration_node is not None:
        draft.duration_seconds = extract_duration_minutes(duration_node.text()) * 60
    return draft
