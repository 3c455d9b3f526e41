"""JSON-backed persistence for books, summaries and history.

Each collection lives in its own file under the data directory as a JSON
array of camelCase objects. Every mutation reads the whole collection,
modifies it and writes the whole collection back. The write goes to a
temporary file that then replaces the original, so a crash never leaves
a half-written file behind.

Each collection has its own lock held across the read-modify-write
cycle. Within one event loop the coroutines never overlap inside a
cycle because the cycle contains no ``await``, but the store is also
reached from other threads (the ``TestClient`` portal, scripts sharing a
data directory with a running server), and the locks keep those from
losing updates.

Book removal and per-book summary writes both take the books lock
first, so a summary can never be written for a book that has just been
removed.

Reads always return freshly built records; callers never get a
reference into the store's state.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import DuplicateBook, NotFound
from .models import (
    Book,
    ChapterRef,
    CleanupResult,
    HistoryAction,
    HistoryEntry,
    Summary,
    new_id,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


class JsonCollection:
    """A JSON array on disk guarded by a lock."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock = threading.RLock()

    def ensure(self) -> None:
        with self.lock:
            if not self.path.exists():
                self.write([])

    def read(self) -> List[Dict[str, Any]]:
        with self.lock:
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except FileNotFoundError:
                return []
            if not isinstance(data, list):
                raise ValueError(f"{self.path} does not contain a JSON array")
            return data

    def write(self, items: List[Dict[str, Any]]) -> None:
        with self.lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=self.path.name, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(items, f, ensure_ascii=False, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise


class JSONStore:
    """The three persisted collections behind one handle.

    Create one per process, call :meth:`open` at startup, and pass it to
    the registry, the reconciler and the HTTP app.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.books = JsonCollection(self.data_dir / "books.json")
        self.summaries = JsonCollection(self.data_dir / "summaries.json")
        self.history = JsonCollection(self.data_dir / "history.json")

    def open(self) -> "JSONStore":
        self.data_dir.mkdir(parents=True, exist_ok=True)
        for collection in (self.books, self.summaries, self.history):
            collection.ensure()
        logger.info("Storage opened at %s", self.data_dir)
        return self

    # Books

    def list_books(self) -> List[Book]:
        return [Book.from_dict(item) for item in self.books.read()]

    def get_book(self, book_id: str) -> Optional[Book]:
        for item in self.books.read():
            if item.get("id") == book_id:
                return Book.from_dict(item)
        return None

    def find_book_by_url(self, url: str) -> Optional[Book]:
        for item in self.books.read():
            if item.get("url") == url:
                return Book.from_dict(item)
        return None

    def add_book(self, url: str, title: str, last_chapter: int, total_chapters: int) -> Book:
        """Insert a new book; raises ``DuplicateBook`` if ``url`` is tracked."""
        with self.books.lock:
            items = self.books.read()
            if any(item.get("url") == url for item in items):
                raise DuplicateBook(url)
            now = utc_now()
            book = Book(
                id=new_id(),
                url=url,
                title=title,
                last_chapter=last_chapter,
                total_chapters=total_chapters,
                date_added=now,
                last_updated=now,
                last_checked=now,
            )
            items.append(book.to_dict())
            self.books.write(items)
        return book

    def update_book(self, book_id: str, mutate: Callable[[Book], None]) -> Book:
        """Apply ``mutate`` to a copy of the stored book and write it back.

        The whole update happens under the collection lock and is written
        in one go, so readers see either the old or the new record.
        """
        with self.books.lock:
            items = self.books.read()
            for index, item in enumerate(items):
                if item.get("id") == book_id:
                    book = Book.from_dict(item)
                    mutate(book)
                    book.last_updated = utc_now()
                    items[index] = book.to_dict()
                    self.books.write(items)
                    return book
        raise NotFound(book_id)

    def remove_book(self, book_id: str) -> Book:
        with self.books.lock:
            items = self.books.read()
            remaining = [item for item in items if item.get("id") != book_id]
            if len(remaining) == len(items):
                raise NotFound(book_id)
            removed = next(item for item in items if item.get("id") == book_id)
            self.books.write(remaining)
        return Book.from_dict(removed)

    def remove_book_and_summaries(self, book_id: str) -> Book:
        """Remove a book and its summaries in one critical section."""
        with self.books.lock:
            book = self.remove_book(book_id)
            self.remove_summaries_for_book(book_id)
        return book

    # Summaries

    def list_summaries(self, date: Optional[str] = None) -> List[Summary]:
        """All summaries, optionally only those written on ``date`` (YYYY-MM-DD, UTC)."""
        summaries = [Summary.from_dict(item) for item in self.summaries.read()]
        if date:
            summaries = [s for s in summaries if parse_timestamp(s.date).date().isoformat() == date]
        return summaries

    def add_summary(self, book_id: str, book_title: str, chapters: Iterable[ChapterRef],
                    summary: str, image_url: Optional[str] = None) -> Summary:
        record = Summary(
            id=new_id(),
            book_id=book_id,
            book_title=book_title,
            chapters=list(chapters),
            summary=summary,
            image_url=image_url,
        )
        with self.summaries.lock:
            items = self.summaries.read()
            items.append(record.to_dict())
            self.summaries.write(items)
        logger.debug("Stored summary %s for %r (%d chapters)", record.id, book_title, len(record.chapters))
        return record

    def add_book_summary(self, book_id: str, book_title: str, chapters: Iterable[ChapterRef],
                         summary: str, image_url: Optional[str] = None) -> Optional[Summary]:
        """Store a summary for a tracked book.

        Returns ``None`` without writing if the book is no longer tracked.
        """
        with self.books.lock:
            if not any(item.get("id") == book_id for item in self.books.read()):
                return None
            return self.add_summary(book_id, book_title, chapters, summary, image_url)

    def remove_summaries_for_book(self, book_id: str) -> int:
        with self.summaries.lock:
            items = self.summaries.read()
            remaining = [item for item in items if item.get("bookId") != book_id]
            self.summaries.write(remaining)
        removed = len(items) - len(remaining)
        logger.info("Removed %d summaries for book %s", removed, book_id)
        return removed

    # History

    def list_history(self, book_id: Optional[str] = None) -> List[HistoryEntry]:
        entries = [HistoryEntry.from_dict(item) for item in self.history.read()]
        if book_id:
            entries = [e for e in entries if e.book_id == book_id]
        return entries

    def add_history(self, book_id: str, chapter: ChapterRef, action: HistoryAction) -> HistoryEntry:
        entry = HistoryEntry(
            id=new_id(),
            book_id=book_id,
            chapter_number=chapter.number,
            chapter_title=chapter.title,
            chapter_url=chapter.url,
            action=action,
        )
        with self.history.lock:
            items = self.history.read()
            items.append(entry.to_dict())
            self.history.write(items)
        return entry

    # Retention

    def cleanup(self, max_age_days: int, now: Optional[datetime] = None) -> CleanupResult:
        """Delete summaries and history entries older than ``max_age_days``."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max_age_days)

        def fresh(item: Dict[str, Any]) -> bool:
            try:
                return parse_timestamp(item["date"]) > cutoff
            except (KeyError, ValueError):
                # Undated records cannot age out.
                return True

        with self.summaries.lock:
            summaries = self.summaries.read()
            kept_summaries = [item for item in summaries if fresh(item)]
            self.summaries.write(kept_summaries)
        with self.history.lock:
            history = self.history.read()
            kept_history = [item for item in history if fresh(item)]
            self.history.write(kept_history)

        return CleanupResult(
            summaries_removed=len(summaries) - len(kept_summaries),
            history_removed=len(history) - len(kept_history),
        )
