"""Book registry: the authoritative set of tracked books.

The registry owns each book's chapter watermark. It is the only code
that creates, removes or advances books; everything it hands out is a
snapshot read from the store.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .differ import diff
from .errors import DuplicateBook, NotFound
from .models import Book, BookInfo, utc_now
from .storage import JSONStore

logger = logging.getLogger(__name__)


class BookRegistry:
    def __init__(self, store: JSONStore, scraper) -> None:
        self.store = store
        self.scraper = scraper

    def list(self) -> List[Book]:
        return self.store.list_books()

    def get(self, book_id: str) -> Book:
        book = self.store.get_book(book_id)
        if book is None:
            raise NotFound(book_id)
        return book

    def find(self, book_id: str) -> Optional[Book]:
        return self.store.get_book(book_id)

    async def register(self, url: str) -> Tuple[Book, BookInfo]:
        """Scrape ``url`` and start tracking it.

        Raises ``DuplicateBook`` before any network access if the URL is
        already tracked; the store checks again at insert time in case a
        concurrent registration got there first. Returns the new book
        together with the scrape so the caller can summarize the latest
        chapters without fetching the page twice.
        """
        if self.store.find_book_by_url(url) is not None:
            raise DuplicateBook(url)
        info = await self.scraper.scrape_book_info(url)
        result = diff(0, info.chapters)
        book = self.store.add_book(
            url=url,
            title=info.title,
            last_chapter=result.max_chapter,
            total_chapters=info.total_chapters,
        )
        logger.info("Registered %r (%s) at chapter %d", book.title, book.id, book.last_chapter)
        return book, info

    def remove(self, book_id: str) -> Book:
        """Stop tracking a book and delete its summaries.

        History entries are kept for auditing.
        """
        book = self.store.remove_book_and_summaries(book_id)
        logger.info("Removed book %r (%s)", book.title, book_id)
        return book

    def update_watermark(self, book_id: str, last_chapter: int, total_chapters: int) -> Book:
        """Advance a book's watermark and stamp it as checked.

        The watermark never moves backwards: a lower ``last_chapter`` is
        ignored. Raises ``NotFound`` if the book was removed meanwhile.
        """

        def apply(book: Book) -> None:
            if last_chapter < book.last_chapter:
                logger.warning("Refusing to lower watermark of %r from %d to %d",
                               book.title, book.last_chapter, last_chapter)
            book.last_chapter = max(book.last_chapter, last_chapter)
            book.total_chapters = total_chapters
            book.last_checked = utc_now()

        return self.store.update_book(book_id, apply)

    def touch(self, book_id: str) -> Book:
        """Record that a book was checked without changing its chapters."""

        def apply(book: Book) -> None:
            book.last_checked = utc_now()

        return self.store.update_book(book_id, apply)
