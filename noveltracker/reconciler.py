"""Reconciliation of tracked books against their sites.

A reconciliation run walks every tracked book in turn:

1. fetch and parse the book's table of contents;
2. diff the discovered chapters against the book's watermark;
3. for each new chapter, oldest first: record it as ``detected``, fetch
   its text, summarize it and optionally illustrate the summary, then
   record it as ``summarized`` if that worked;
4. advance the watermark once, after all of the book's chapters;
5. wait for the inter-book gate before the next book.

Failures are contained where they happen. A book that cannot be
fetched is reported and skipped; a chapter whose text, summary or image
fails is still counted as detected. Nothing raised by a collaborator
escapes a run.

Only one run (regular or daily) may be active at a time. A second
invocation while a run is active is dropped: scheduled callers get
``None`` back, HTTP callers get :class:`~noveltracker.errors.RunInProgress`.

Crash behaviour: the watermark is written once per book, so a crash in
the middle of a book leaves the old watermark and the next run diffs the
same chapters again. Chapters that already have a ``summarized`` entry
are skipped and chapters that only have a ``detected`` entry are not
recorded twice, so at most the chapter that was in flight is redone.

Chapters that were detected but never summarized (summarizer outage,
empty page ...) are retried on later runs until they are summarized or
``max_summary_retries`` attempts have been made. Attempt counts live in
memory and start over when the process restarts.

The watermark and ``totalChapters`` only move when a scrape finds new
chapters. A scrape without any (including a page whose chapter links
could not be extracted and that came back as a single synthetic chapter)
only stamps ``lastChecked``.

The daily pass recaps every chapter detected since the previous daily
digest, whether the regular runs already summarized it or not, so the
digest covers the whole day rather than the gap since the last check.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .differ import DiffResult, diff
from .errors import ConfigurationMissing, NotFound, RunInProgress
from .models import (
    Book,
    BookSummaryResult,
    BookUpdateResult,
    ChapterCheckResult,
    ChapterRef,
    ChapterSummary,
    CleanupResult,
    HistoryAction,
    parse_timestamp,
)
from .pacing import RateGate, site_key
from .registry import BookRegistry
from .storage import JSONStore
from .summarizer import detect_language

logger = logging.getLogger(__name__)

DIGEST_BOOK_ID = "daily-digest"
DIGEST_TITLE = "Daily digest"

# Pages with less text than this are navigation or paywall stubs.
MIN_CONTENT_LENGTH = 100


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


def _combine(heading: str, summaries: Sequence[ChapterSummary]) -> str:
    sections = [f"Chapter {s.chapter_number}: {s.chapter_title}\n\n{s.summary}" for s in summaries]
    return heading + "\n\n" + "\n\n".join(sections)


class ReconciliationLoop:
    def __init__(self, store: JSONStore, registry: BookRegistry, scraper, summarizer, illustrator,
                 book_gate: Optional[RateGate] = None, chapter_gate: Optional[RateGate] = None,
                 initial_chapters: int = 3, max_summary_retries: int = 3,
                 retention_days: int = 30) -> None:
        self.store = store
        self.registry = registry
        self.scraper = scraper
        self.summarizer = summarizer
        self.illustrator = illustrator
        self.book_gate = book_gate or RateGate(2.0)
        self.chapter_gate = chapter_gate or RateGate(1.0)
        self.initial_chapters = initial_chapters
        self.max_summary_retries = max_summary_retries
        self.retention_days = retention_days
        self._state = RunState.IDLE
        self._state_lock = threading.Lock()
        self._retry_attempts: Dict[Tuple[str, int], int] = {}

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is RunState.RUNNING

    @contextmanager
    def exclusive_run(self) -> Iterator[None]:
        """Hold the run guard for the duration of the block.

        Raises ``RunInProgress`` if another run holds it. The guard is
        released even if the block raises.
        """
        with self._state_lock:
            if self._state is RunState.RUNNING:
                raise RunInProgress()
            self._state = RunState.RUNNING
        try:
            yield
        finally:
            with self._state_lock:
                self._state = RunState.IDLE

    # History helpers

    def _recorded(self, book_id: str) -> Tuple[Set[int], Set[int], Dict[int, ChapterRef]]:
        """Chapter numbers with ``detected`` and ``summarized`` entries for a book."""
        detected: Set[int] = set()
        summarized: Set[int] = set()
        refs: Dict[int, ChapterRef] = {}
        for entry in self.store.list_history(book_id):
            if entry.action is HistoryAction.DETECTED:
                detected.add(entry.chapter_number)
                refs[entry.chapter_number] = ChapterRef(entry.chapter_number, entry.chapter_title, entry.chapter_url)
            elif entry.action is HistoryAction.SUMMARIZED:
                summarized.add(entry.chapter_number)
        return detected, summarized, refs

    def _pending_retries(self, book: Book) -> List[ChapterRef]:
        detected, summarized, refs = self._recorded(book.id)
        pending = []
        for number in sorted(detected - summarized):
            if number > book.last_chapter:
                # Not yet accounted for; the diff will pick it up as new.
                continue
            if self._retry_attempts.get((book.id, number), 0) >= self.max_summary_retries:
                continue
            pending.append(refs[number])
        return pending

    # Per-chapter pipeline

    async def _summarize_chapter(self, book: Book, chapter: ChapterRef) -> Optional[ChapterSummary]:
        """Fetch, summarize and illustrate one chapter.

        Returns ``None`` if any required step failed; the failure is logged
        with the book and chapter.
        """
        await self.chapter_gate.wait(site_key(chapter.url))
        try:
            content = await self.scraper.scrape_chapter_content(chapter.url)
        except Exception as exc:
            logger.error("Error fetching chapter %d of %r: %s", chapter.number, book.title, exc)
            return None
        if not content or len(content) <= MIN_CONTENT_LENGTH:
            logger.info("Chapter %d of %r too short to summarize", chapter.number, book.title)
            return None
        try:
            summary = await self.summarizer.summarize_chapter(content, chapter.title, book.title)
        except Exception as exc:
            logger.error("Error summarizing chapter %d of %r: %s", chapter.number, book.title, exc)
            return None

        image_url = None
        try:
            image_url = await self.illustrator.illustrate(
                summary, chapter.title, book.title, detect_language(content), chapter.number
            )
        except Exception as exc:
            logger.warning("Error illustrating chapter %d of %r: %s", chapter.number, book.title, exc)

        self.store.add_history(book.id, chapter, HistoryAction.SUMMARIZED)
        return ChapterSummary(
            chapter_number=chapter.number,
            chapter_title=chapter.title,
            summary=summary,
            image_url=image_url,
        )

    def _store_batch(self, book: Book, heading: str, summaries: Sequence[ChapterSummary],
                     chapters: Sequence[ChapterRef]) -> None:
        if not summaries:
            return
        by_number = {c.number: c for c in chapters}
        refs = [by_number.get(s.chapter_number, ChapterRef(s.chapter_number, s.chapter_title, ""))
                for s in summaries]
        image_url = next((s.image_url for s in summaries if s.image_url), None)
        stored = self.store.add_book_summary(book.id, book.title, refs, _combine(heading, summaries), image_url)
        if stored is None:
            logger.warning("Book %r (%s) was removed, dropping %d chapter summaries",
                           book.title, book.id, len(summaries))

    def _record_check(self, book: Book, changes: DiffResult, total_chapters: int) -> Book:
        """Write the outcome of a scrape to the registry.

        Raises ``NotFound`` if the book was removed meanwhile.
        """
        if changes.has_new_chapters:
            return self.registry.update_watermark(book.id, changes.max_chapter, total_chapters)
        return self.registry.touch(book.id)

    # Reconciliation

    async def reconcile_book(self, book: Book) -> BookUpdateResult:
        """Run steps 1-4 for one book.

        Fetch, summary and image failures are reported in the result.
        Storage errors propagate; :meth:`check_all` turns them into the
        book's error.
        """
        result = BookUpdateResult(book_id=book.id, book_title=book.title)
        try:
            info = await self.scraper.scrape_book_info(book.url)
        except Exception as exc:
            logger.error("Error checking book %r (%s): %s", book.title, book.id, exc)
            result.error = str(exc)
            return result

        pending = self._pending_retries(book) if self.summarizer.enabled else []
        changes = diff(book.last_chapter, info.chapters)
        detected, summarized, _ = self._recorded(book.id)
        result.new_chapters = list(changes.new_chapters)
        result.new_chapters_count = len(changes.new_chapters)
        result.has_new_chapters = changes.has_new_chapters
        if changes.has_new_chapters:
            logger.info("Found %d new chapters for %r", len(changes.new_chapters), book.title)

        summaries: List[ChapterSummary] = []
        processed: List[ChapterRef] = []
        for chapter in changes.new_chapters:
            if chapter.number in summarized:
                continue
            if chapter.number not in detected:
                self.store.add_history(book.id, chapter, HistoryAction.DETECTED)
                detected.add(chapter.number)
            if not self.summarizer.enabled:
                continue
            processed.append(chapter)
            chapter_summary = await self._summarize_chapter(book, chapter)
            if chapter_summary is not None:
                summaries.append(chapter_summary)
                summarized.add(chapter.number)

        for chapter in pending:
            key = (book.id, chapter.number)
            self._retry_attempts[key] = self._retry_attempts.get(key, 0) + 1
            logger.info("Retrying summary of chapter %d of %r (attempt %d)",
                        chapter.number, book.title, self._retry_attempts[key])
            processed.append(chapter)
            chapter_summary = await self._summarize_chapter(book, chapter)
            if chapter_summary is not None:
                summaries.append(chapter_summary)
                self._retry_attempts.pop(key, None)

        self._store_batch(book, f'New chapters for "{book.title}":', summaries, processed)
        result.summarized_count = len(summaries)

        try:
            self._record_check(book, changes, info.total_chapters)
        except NotFound:
            logger.warning("Book %r (%s) was removed during the run", book.title, book.id)
            result.error = "Book was removed during the run"
        return result

    async def check_all(self) -> List[BookUpdateResult]:
        """One full reconciliation pass. Raises ``RunInProgress`` if one is active."""
        with self.exclusive_run():
            books = self.registry.list()
            logger.info("Checking %d books for new chapters...", len(books))
            results: List[BookUpdateResult] = []
            for book in books:
                await self.book_gate.wait()
                try:
                    result = await self.reconcile_book(book)
                except Exception as exc:
                    logger.error("Error processing book %r (%s): %s", book.title, book.id, exc)
                    result = BookUpdateResult(book_id=book.id, book_title=book.title, error=str(exc))
                results.append(result)
            total = sum(r.new_chapters_count for r in results)
            updated = sum(1 for r in results if r.has_new_chapters)
            logger.info("Chapter check completed. Found %d new chapters across %d books.", total, updated)
            return results

    async def run(self) -> Optional[List[BookUpdateResult]]:
        """Scheduled entry point: like :meth:`check_all` but a no-op if busy."""
        try:
            return await self.check_all()
        except RunInProgress:
            logger.info("Check already in progress, skipping")
            return None

    async def check_book(self, book_id: str) -> ChapterCheckResult:
        """Explicitly check one book and advance its watermark.

        New chapters are recorded as ``detected``; their summaries are
        picked up by the retry pass of the next run. Raises ``NotFound``
        for unknown ids; fetch failures are reported in ``error``.
        """
        book = self.registry.get(book_id)
        try:
            info = await self.scraper.scrape_book_info(book.url)
        except Exception as exc:
            logger.error("Error checking book %r (%s): %s", book.title, book.id, exc)
            return ChapterCheckResult(
                has_new_chapters=False,
                new_chapters=[],
                total_chapters=book.total_chapters,
                last_chapter=book.last_chapter,
                error=str(exc),
            )
        changes = diff(book.last_chapter, info.chapters)
        detected, _, _ = self._recorded(book.id)
        for chapter in changes.new_chapters:
            if chapter.number not in detected:
                self.store.add_history(book.id, chapter, HistoryAction.DETECTED)
        book = self._record_check(book, changes, info.total_chapters)
        return ChapterCheckResult(
            has_new_chapters=changes.has_new_chapters,
            new_chapters=list(changes.new_chapters),
            total_chapters=book.total_chapters,
            last_chapter=book.last_chapter,
        )

    # Registration

    async def summarize_initial(self, book: Book, chapters: Sequence[ChapterRef]) -> List[ChapterSummary]:
        """Summarize the latest chapters of a newly registered book.

        Raises ``ConfigurationMissing`` when no summarizer is configured.
        Per-chapter failures are logged and skipped.
        """
        if not self.summarizer.enabled:
            raise ConfigurationMissing("Summarizer not configured")
        recent = list(chapters) if len(chapters) == 1 else list(chapters)[-self.initial_chapters:]
        logger.info("Summarizing %d initial chapters of %r", len(recent), book.title)
        summaries: List[ChapterSummary] = []
        for chapter in recent:
            chapter_summary = await self._summarize_chapter(book, chapter)
            if chapter_summary is not None:
                summaries.append(chapter_summary)
        self._store_batch(book, f'Initial summaries for "{book.title}":', summaries, recent)
        return summaries

    # Daily pass

    async def daily_summary(self) -> List[BookSummaryResult]:
        """Summarize each book's chapters of the day together, then write a digest.

        "Of the day" means detected after the previous digest, or within
        the last 24 hours if there is none. Raises ``RunInProgress`` if a
        run is active.
        """
        with self.exclusive_run():
            books = self.registry.list()
            since = self._previous_digest_time()
            logger.info("Generating daily summaries for %d books (chapters since %s)...",
                        len(books), since.isoformat(timespec="minutes"))
            results: List[BookSummaryResult] = []
            digest_chapters: List[ChapterRef] = []
            for book in books:
                await self.book_gate.wait()
                try:
                    update = await self._daily_book(book, since)
                except Exception as exc:
                    logger.error("Error processing book %r (%s): %s", book.title, book.id, exc)
                    continue
                if update is not None:
                    results.append(update[0])
                    digest_chapters.extend(update[1])

            if results and self.summarizer.enabled:
                try:
                    digest = await self.summarizer.daily_digest(results)
                    self.store.add_summary(DIGEST_BOOK_ID, DIGEST_TITLE, digest_chapters, digest)
                except Exception as exc:
                    logger.error("Error generating daily digest: %s", exc)
            logger.info("Daily summary generation completed. Generated %d summaries.", len(results))
            return results

    def _previous_digest_time(self) -> datetime:
        digests = [parse_timestamp(s.date) for s in self.store.list_summaries() if s.book_id == DIGEST_BOOK_ID]
        if digests:
            return max(digests)
        return datetime.now(timezone.utc) - timedelta(days=1)

    def _detected_since(self, book_id: str, since: datetime) -> List[ChapterRef]:
        chapters: Dict[int, ChapterRef] = {}
        for entry in self.store.list_history(book_id):
            if entry.action is HistoryAction.DETECTED and parse_timestamp(entry.date) > since:
                chapters.setdefault(entry.chapter_number,
                                    ChapterRef(entry.chapter_number, entry.chapter_title, entry.chapter_url))
        return [chapters[number] for number in sorted(chapters)]

    async def _daily_book(self, book: Book,
                          since: datetime) -> Optional[Tuple[BookSummaryResult, List[ChapterRef]]]:
        # Pick up anything published since the last regular run first.
        info = await self.scraper.scrape_book_info(book.url)
        changes = diff(book.last_chapter, info.chapters)
        detected, summarized, _ = self._recorded(book.id)
        for chapter in changes.new_chapters:
            if chapter.number not in detected:
                self.store.add_history(book.id, chapter, HistoryAction.DETECTED)

        with_content: List[Tuple[ChapterRef, str]] = []
        for chapter in self._detected_since(book.id, since) if self.summarizer.enabled else []:
            await self.chapter_gate.wait(site_key(chapter.url))
            try:
                content = await self.scraper.scrape_chapter_content(chapter.url)
            except Exception as exc:
                logger.error("Error fetching chapter %d of %r: %s", chapter.number, book.title, exc)
                continue
            with_content.append((chapter, content))

        update = None
        if with_content:
            try:
                text = await self.summarizer.summarize_chapters(with_content, book.title)
            except Exception as exc:
                logger.error("Error summarizing new chapters of %r: %s", book.title, exc)
            else:
                chapters = [chapter for chapter, _ in with_content]
                if self.store.add_book_summary(book.id, book.title, chapters, text) is None:
                    logger.warning("Book %r (%s) was removed, dropping its daily summary", book.title, book.id)
                    return None
                for chapter in chapters:
                    if chapter.number not in summarized:
                        self.store.add_history(book.id, chapter, HistoryAction.SUMMARIZED)
                update = (
                    BookSummaryResult(book_id=book.id, book_title=book.title,
                                      new_chapters_count=len(chapters), summary=text),
                    chapters,
                )
                logger.info("Generated summary for %r (%d chapters)", book.title, len(chapters))

        try:
            self._record_check(book, changes, info.total_chapters)
        except NotFound:
            logger.warning("Book %r (%s) was removed during the daily pass", book.title, book.id)
        return update

    async def run_daily(self) -> Optional[List[BookSummaryResult]]:
        try:
            return await self.daily_summary()
        except RunInProgress:
            logger.info("Daily summary skipped, a run is in progress")
            return None

    # Retention

    def cleanup(self, max_age_days: Optional[int] = None) -> CleanupResult:
        days = self.retention_days if max_age_days is None else max_age_days
        result = self.store.cleanup(days)
        try:
            result.images_removed = self.illustrator.cleanup_old_images(days)
        except OSError as exc:
            logger.error("Error cleaning up old images: %s", exc)
        logger.info(
            "Cleanup completed. Removed %d old summaries, %d old history entries and %d old images.",
            result.summaries_removed, result.history_removed, result.images_removed,
        )
        return result
