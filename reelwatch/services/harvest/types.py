from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import StrEnum

from reelwatch.services.cancellation import OperationCancelledError
from reelwatch.services.harvest.codes import normalize_code

LISTING_PAGE_SIZE = 12


class HarvestKind(StrEnum):
    NEW = "new"
    ACTOR = "actor"
    CODE = "code"
    SEARCH = "search"


class HarvestCancelledError(OperationCancelledError):
    """Raised when a harvest is cancelled; carries whatever was collected so far."""

    def __init__(self, records: list[VideoRecord], reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.records = records


@dataclass(frozen=True)
class VideoRecord:
    code: str
    title: str = ""
    actresses: str = ""
    tags: str = ""
    duration: int = 0
    cover_url: str = ""
    preview_url: str = ""
    detail_url: str = ""
    release_date: date | None = None


@dataclass
class VideoDraft:
    code: str = ""
    title: str = ""
    actresses: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    duration_seconds: int = 0
    cover_url: str = ""
    preview_url: str = ""
    detail_url: str = ""
    release_date: date | None = None

    def to_record(self) -> VideoRecord | None:
        code = normalize_code(self.code)
        if not code:
            return None
        return VideoRecord(
            code=code,
            title=self.title.strip(),
            actresses=",".join(_unique(self.actresses)),
            tags=",".join(_unique(self.tags)),
            duration=max(int(self.duration_seconds), 0),
            cover_url=self.cover_url,
            preview_url=self.preview_url,
            detail_url=self.detail_url,
            release_date=self.release_date,
        )


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        cleaned = value.strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        ordered.append(cleaned)
    return ordered


def records_from_drafts(drafts: list[VideoDraft]) -> list[VideoRecord]:
    records: list[VideoRecord] = []
    seen_codes: set[str] = set()
    for draft in drafts:
        record = draft.to_record()
        if record is None or record.code in seen_codes:
            continue
        seen_codes.add(record.code)
        records.append(record)
    return records
