from __future__ import annotations

from reelwatch.services.store.base import StoredVideo

MARKDOWN_V2_SPECIAL_CHARS = "\\_*[]()~`>#+-=|{}.!"


def escape_markdown(text: str) -> str:
    return "".join(f"\\{char}" if char in MARKDOWN_V2_SPECIAL_CHARS else char for char in text)


def format_duration(seconds: int) -> str:
    minutes, remainder = divmod(max(int(seconds), 0), 60)
    return f"{minutes}:{remainder:02d}"


def format_video_message(video: StoredVideo | None) -> str:
    if video is None:
        return ""
    lines = [f"🎬 *{escape_markdown(video.code)}*"]
    if video.title:
        lines.append(f"📝 {escape_markdown(video.title)}")
    if video.actresses:
        lines.append(f"👩 {escape_markdown(video.actresses)}")
    if video.tags:
        lines.append(f"🏷 {escape_markdown(video.tags)}")
    if video.duration > 0:
        lines.append(f"⏱ {format_duration(video.duration)}")
    if video.detail_url:
        lines.append(f"🔗 {escape_markdown(video.detail_url)}")
    return "\n".join(lines)

