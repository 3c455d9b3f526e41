"""Data model for tracked books, summaries and the history log.

Records are plain dataclasses. They are persisted as JSON objects with
camelCase keys (``lastChapter``, ``bookId`` ...) so the files and the
HTTP payloads share one shape; ``to_dict``/``from_dict`` convert
between the two spellings.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> str:
    """Current time as an ISO 8601 string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp written by :func:`utc_now`.

    Naive values (written by hand or by older files) are assumed to be
    UTC so that comparisons against aware cutoffs never raise.
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class HistoryAction(str, Enum):
    DETECTED = "detected"
    PROCESSED = "processed"
    SUMMARIZED = "summarized"


class JsonRecord:
    """Mixin providing camelCase dict conversion for flat dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, list):
                value = [v.to_dict() if isinstance(v, JsonRecord) else v for v in value]
            elif isinstance(value, JsonRecord):
                value = value.to_dict()
            data[_camel(f.name)] = value
        return data

    @classmethod
    def _kwargs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key in data:
                kwargs[f.name] = data[key]
        return kwargs


@dataclass(frozen=True)
class ChapterRef(JsonRecord):
    """A chapter discovered on a table-of-contents page."""

    number: int
    title: str
    url: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChapterRef":
        return cls(number=int(data["number"]), title=data.get("title", ""), url=data.get("url", ""))


@dataclass
class Book(JsonRecord):
    id: str
    url: str
    title: str
    last_chapter: int = 0
    total_chapters: int = 0
    date_added: str = field(default_factory=utc_now)
    last_updated: str = field(default_factory=utc_now)
    last_checked: str = field(default_factory=utc_now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Book":
        return cls(**cls._kwargs(data))


@dataclass
class HistoryEntry(JsonRecord):
    id: str
    book_id: str
    chapter_number: int
    chapter_title: str
    chapter_url: str
    action: HistoryAction
    date: str = field(default_factory=utc_now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        kwargs = cls._kwargs(data)
        kwargs["action"] = HistoryAction(kwargs["action"])
        return cls(**kwargs)


@dataclass
class Summary(JsonRecord):
    id: str
    book_id: str
    book_title: str
    chapters: List[ChapterRef]
    summary: str
    date: str = field(default_factory=utc_now)
    image_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Summary":
        kwargs = cls._kwargs(data)
        kwargs["chapters"] = [ChapterRef.from_dict(c) for c in kwargs.get("chapters") or []]
        return cls(**kwargs)


@dataclass
class BookInfo(JsonRecord):
    """Result of scraping a book's table-of-contents page."""

    title: str
    url: str
    chapters: List[ChapterRef]
    last_chapter: int
    total_chapters: int


@dataclass
class ChapterCheckResult(JsonRecord):
    has_new_chapters: bool
    new_chapters: List[ChapterRef]
    total_chapters: int
    last_chapter: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.error is None:
            data.pop("error")
        return data


@dataclass
class ChapterSummary(JsonRecord):
    chapter_number: int
    chapter_title: str
    summary: str
    image_url: Optional[str] = None


@dataclass
class BookUpdateResult(JsonRecord):
    """Outcome of reconciling one book during a run."""

    book_id: str
    book_title: str
    has_new_chapters: bool = False
    new_chapters_count: int = 0
    new_chapters: List[ChapterRef] = field(default_factory=list)
    summarized_count: int = 0
    error: Optional[str] = None


@dataclass
class BookSummaryResult(JsonRecord):
    """Outcome of the daily summary pass for one book."""

    book_id: str
    book_title: str
    new_chapters_count: int
    summary: str


@dataclass
class CleanupResult(JsonRecord):
    summaries_removed: int = 0
    history_removed: int = 0
    images_removed: int = 0
