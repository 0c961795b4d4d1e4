from __future__ import annotations

import re
from urllib.parse import unquote, urlparse

CODE_PATTERN = re.compile(r"[A-Za-z]+-[0-9]+")
VALID_CODE_PATTERN = re.compile(r"^[A-Z]+-[0-9]+$")


def normalize_code(value: str | None) -> str:
    return (value or "").strip().upper()


def extract_code(text: str | None) -> str:
    if not text:
        return ""
    match = CODE_PATTERN.search(text)
    if match is None:
        return ""
    return normalize_code(match.group(0))


def is_valid_code(value: str | None) -> bool:
    return bool(VALID_CODE_PATTERN.fullmatch(normalize_code(value)))


def code_from_url(url: str | None) -> str:
    if not url:
        return ""
    path = unquote(urlparse(url).path).rstrip("/")
    if not path:
        return ""
    return normalize_code(path.rsplit("/", 1)[-1])


def derive_code(*, title: str = "", url: str = "") -> str:
    """Title pattern first, then URL pattern, then the raw last path segment."""
    code = extract_code(title)
    if code:
        return code
    code = extract_code(url)
    if code:
        return code
    return code_from_url(url)
