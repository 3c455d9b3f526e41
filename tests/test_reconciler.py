"""Tests for the reconciliation loop, including the end-to-end scenarios."""

import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fakes import FakeIllustrator, FakeScraper, FakeSummarizer, book_info
from noveltracker.errors import ConfigurationMissing, NotFound, RunInProgress, UpstreamFetchError
from noveltracker.extractor import parse_book_page
from noveltracker.models import ChapterRef, HistoryAction
from noveltracker.pacing import RateGate
from noveltracker.reconciler import DIGEST_BOOK_ID, ReconciliationLoop, RunState
from noveltracker.registry import BookRegistry
from noveltracker.storage import JSONStore

URL = "https://example.com/novel"
OTHER_URL = "https://other.example.org/story"


class LoopTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = JSONStore(Path(self._tmp.name)).open()
        self.scraper = FakeScraper()
        self.summarizer = FakeSummarizer()
        self.illustrator = FakeIllustrator()
        self.registry = BookRegistry(self.store, self.scraper)
        self.loop = ReconciliationLoop(
            self.store, self.registry, self.scraper, self.summarizer, self.illustrator,
            book_gate=RateGate(0), chapter_gate=RateGate(0),
            initial_chapters=3, max_summary_retries=3, retention_days=30,
        )

    def tearDown(self):
        self._tmp.cleanup()

    def add_book(self, url=URL, last_chapter=5, title="Test Novel"):
        return self.store.add_book(url, title, last_chapter, last_chapter)

    def actions(self, book_id):
        return [(e.chapter_number, e.action) for e in self.store.list_history(book_id)]


class TestReconcileBook(LoopTestCase):

    async def test_new_chapters_detected_summarized_and_watermark_advanced(self):
        book = self.add_book(last_chapter=5)
        self.scraper.set_book(URL, [3, 4, 5, 6, 7])

        [result] = await self.loop.check_all()

        self.assertTrue(result.has_new_chapters)
        self.assertEqual([c.number for c in result.new_chapters], [6, 7])
        self.assertEqual(result.summarized_count, 2)
        self.assertEqual(self.registry.get(book.id).last_chapter, 7)
        self.assertEqual(self.actions(book.id), [
            (6, HistoryAction.DETECTED),
            (6, HistoryAction.SUMMARIZED),
            (7, HistoryAction.DETECTED),
            (7, HistoryAction.SUMMARIZED),
        ])
        [summary] = self.store.list_summaries()
        self.assertEqual(summary.book_id, book.id)
        self.assertEqual([c.number for c in summary.chapters], [6, 7])
        self.assertTrue(summary.summary.startswith('New chapters for "Test Novel":'))
        self.assertIn("Summary of Chapter 7", summary.summary)

    async def test_empty_scrape_keeps_watermark_and_continues(self):
        first = self.add_book(URL, last_chapter=5)
        second = self.add_book(OTHER_URL, last_chapter=1, title="Other")
        self.store.update_book(first.id, lambda b: setattr(b, "last_checked", "2000-01-01T00:00:00+00:00"))
        self.scraper.pages[URL] = book_info(URL, [])
        self.scraper.set_book(OTHER_URL, [1, 2], title="Other")

        results = await self.loop.check_all()

        self.assertEqual(len(results), 2)
        after = self.registry.get(first.id)
        self.assertEqual(after.last_chapter, 5)
        self.assertNotEqual(after.last_checked, "2000-01-01T00:00:00+00:00")
        self.assertEqual(self.store.list_history(first.id), [])
        self.assertEqual(self.registry.get(second.id).last_chapter, 2)

    async def test_failed_summary_still_advances_watermark(self):
        book = self.add_book(last_chapter=5)
        self.scraper.set_book(URL, [3, 4, 5, 6, 7])
        self.summarizer.failing_titles.add("Chapter 6")

        [result] = await self.loop.check_all()

        self.assertEqual(result.summarized_count, 1)
        self.assertEqual(self.registry.get(book.id).last_chapter, 7)
        self.assertEqual(self.actions(book.id), [
            (6, HistoryAction.DETECTED),
            (7, HistoryAction.DETECTED),
            (7, HistoryAction.SUMMARIZED),
        ])

    async def test_fetch_error_reported_and_book_untouched(self):
        book = self.add_book(last_chapter=5)
        self.scraper.pages[URL] = UpstreamFetchError("Failed to fetch: HTTP 503", url=URL, status_code=503)
        self.add_book(OTHER_URL, last_chapter=1, title="Other")
        self.scraper.set_book(OTHER_URL, [1, 2], title="Other")

        results = await self.loop.check_all()

        self.assertIn("503", results[0].error)
        self.assertFalse(results[0].has_new_chapters)
        self.assertEqual(self.registry.get(book.id).last_checked, book.last_checked)
        self.assertTrue(results[1].has_new_chapters)

    async def test_page_without_chapter_links_keeps_totals(self):
        book = self.add_book(last_chapter=120)
        self.store.update_book(book.id, lambda b: setattr(b, "last_checked", "2000-01-01T00:00:00+00:00"))
        self.scraper.pages[URL] = parse_book_page(
            "<html><body><h1>Test Novel</h1><p>Down for maintenance.</p></body></html>", URL
        )

        [result] = await self.loop.check_all()
        checked = await self.loop.check_book(book.id)

        self.assertFalse(result.has_new_chapters)
        after = self.registry.get(book.id)
        self.assertEqual((after.last_chapter, after.total_chapters), (120, 120))
        self.assertNotEqual(after.last_checked, "2000-01-01T00:00:00+00:00")
        self.assertEqual((checked.last_chapter, checked.total_chapters), (120, 120))

    async def test_storage_error_is_reported_and_run_continues(self):
        first = self.add_book(URL, last_chapter=5)
        second = self.add_book(OTHER_URL, last_chapter=1, title="Other")
        self.scraper.set_book(URL, [5, 6])
        self.scraper.set_book(OTHER_URL, [1, 2], title="Other")
        add_history = self.store.add_history

        def fail_first_write(*args):
            if fail_first_write.failed:
                return add_history(*args)
            fail_first_write.failed = True
            raise OSError("disk full")

        fail_first_write.failed = False
        with mock.patch.object(self.store, "add_history", side_effect=fail_first_write):
            results = await self.loop.check_all()

        self.assertIn("disk full", results[0].error)
        self.assertEqual(self.registry.get(first.id).last_chapter, 5)
        self.assertIsNone(results[1].error)
        self.assertEqual(self.registry.get(second.id).last_chapter, 2)
        self.assertIs(self.loop.state, RunState.IDLE)

    async def test_book_removed_mid_run_leaves_no_summary(self):
        book = self.add_book(last_chapter=5)
        self.scraper.set_book(URL, [5, 6])
        self.summarizer.before_summary = lambda title: self.registry.remove(book.id)

        [result] = await self.loop.check_all()

        self.assertEqual(self.summarizer.calls, ["Chapter 6"])
        self.assertEqual(self.store.list_summaries(), [])
        self.assertIn("removed", result.error)
        self.assertIsNone(self.registry.find(book.id))

    async def test_disabled_summarizer_only_detects(self):
        self.summarizer.enabled = False
        book = self.add_book(last_chapter=1)
        self.scraper.set_book(URL, [1, 2, 3])

        [result] = await self.loop.check_all()

        self.assertEqual(result.summarized_count, 0)
        self.assertEqual(self.scraper.chapter_calls, [])
        self.assertEqual(self.actions(book.id), [(2, HistoryAction.DETECTED), (3, HistoryAction.DETECTED)])
        self.assertEqual(self.registry.get(book.id).last_chapter, 3)
        self.assertEqual(self.store.list_summaries(), [])

    async def test_short_chapter_not_summarized(self):
        book = self.add_book(last_chapter=1)
        self.scraper.set_book(URL, [1, 2])
        self.scraper.contents[URL + "/2.html"] = "Coming soon."

        [result] = await self.loop.check_all()

        self.assertEqual(result.summarized_count, 0)
        self.assertEqual(self.summarizer.calls, [])
        self.assertEqual(self.actions(book.id), [(2, HistoryAction.DETECTED)])

    async def test_illustration_failure_is_not_fatal(self):
        self.illustrator.url = UpstreamFetchError("Image generation failed")
        book = self.add_book(last_chapter=1)
        self.scraper.set_book(URL, [1, 2])

        [result] = await self.loop.check_all()

        self.assertEqual(result.summarized_count, 1)
        [summary] = self.store.list_summaries(None)
        self.assertIsNone(summary.image_url)
        self.assertIn((2, HistoryAction.SUMMARIZED), self.actions(book.id))

    async def test_summary_carries_first_image(self):
        self.illustrator.url = "/images/test_2_1.png"
        self.add_book(last_chapter=1)
        self.scraper.set_book(URL, [1, 2])

        await self.loop.check_all()

        [summary] = self.store.list_summaries()
        self.assertEqual(summary.image_url, "/images/test_2_1.png")

    async def test_already_summarized_chapter_is_skipped(self):
        # A run that crashed after chapter 6 was summarized but before
        # the watermark was written.
        book = self.add_book(last_chapter=5)
        chapter = ChapterRef(6, "Chapter 6", URL + "/6.html")
        self.store.add_history(book.id, chapter, HistoryAction.DETECTED)
        self.store.add_history(book.id, chapter, HistoryAction.SUMMARIZED)
        self.scraper.set_book(URL, [5, 6, 7])

        await self.loop.check_all()

        self.assertEqual(self.summarizer.calls, ["Chapter 7"])
        detected = [n for n, action in self.actions(book.id) if action is HistoryAction.DETECTED]
        self.assertEqual(detected, [6, 7])
        self.assertEqual(self.registry.get(book.id).last_chapter, 7)


class TestSummaryRetries(LoopTestCase):

    async def test_failed_chapter_retried_on_next_run(self):
        book = self.add_book(last_chapter=5)
        self.scraper.set_book(URL, [5, 6, 7])
        self.summarizer.failing_titles.add("Chapter 6")
        await self.loop.check_all()

        self.summarizer.failing_titles.clear()
        [result] = await self.loop.check_all()

        self.assertFalse(result.has_new_chapters)
        self.assertEqual(result.summarized_count, 1)
        summarized = [n for n, action in self.actions(book.id) if action is HistoryAction.SUMMARIZED]
        self.assertEqual(sorted(summarized), [6, 7])
        self.assertEqual(len(self.store.list_summaries()), 2)

    async def test_retries_stop_at_cap(self):
        self.add_book(last_chapter=5)
        self.scraper.set_book(URL, [5, 6])
        self.summarizer.failing_titles.add("Chapter 6")

        for _ in range(6):
            await self.loop.check_all()

        # One attempt when first detected plus three retries.
        self.assertEqual(self.summarizer.calls.count("Chapter 6"), 4)

    async def test_check_book_detections_summarized_by_next_run(self):
        book = self.add_book(last_chapter=1)
        self.scraper.set_book(URL, [1, 2])
        await self.loop.check_book(book.id)
        self.assertEqual(self.summarizer.calls, [])

        [result] = await self.loop.check_all()

        self.assertEqual(result.summarized_count, 1)
        self.assertEqual(self.summarizer.calls, ["Chapter 2"])


class TestRunGuard(LoopTestCase):

    async def test_second_run_is_dropped_while_one_is_active(self):
        book = self.add_book(last_chapter=1)
        self.scraper.set_book(URL, [1, 2])
        started = asyncio.Event()
        release = asyncio.Event()
        original = self.scraper.scrape_book_info

        async def slow_scrape(url):
            started.set()
            await release.wait()
            return await original(url)

        self.scraper.scrape_book_info = slow_scrape
        first = asyncio.create_task(self.loop.check_all())
        await started.wait()

        self.assertIs(self.loop.state, RunState.RUNNING)
        self.assertIsNone(await self.loop.run())
        self.assertIsNone(await self.loop.run_daily())
        with self.assertRaises(RunInProgress):
            await self.loop.check_all()

        release.set()
        results = await first
        self.assertEqual(len(results), 1)
        self.assertFalse(self.loop.running)
        self.assertEqual(self.summarizer.calls, ["Chapter 2"])
        self.assertEqual(self.registry.get(book.id).last_chapter, 2)

    def test_guard_released_after_failure(self):
        with self.assertRaises(RuntimeError):
            with self.loop.exclusive_run():
                raise RuntimeError("boom")
        self.assertIs(self.loop.state, RunState.IDLE)


class TestCheckBook(LoopTestCase):

    async def test_check_book_reports_and_records_new_chapters(self):
        book = self.add_book(last_chapter=2)
        self.scraper.set_book(URL, [1, 2, 3, 4])

        result = await self.loop.check_book(book.id)

        self.assertTrue(result.has_new_chapters)
        self.assertEqual([c.number for c in result.new_chapters], [3, 4])
        self.assertEqual(result.last_chapter, 4)
        self.assertEqual(result.total_chapters, 4)
        self.assertEqual(self.actions(book.id), [(3, HistoryAction.DETECTED), (4, HistoryAction.DETECTED)])
        self.assertNotIn("error", result.to_dict())

    async def test_check_book_fetch_error(self):
        book = self.add_book(last_chapter=2)

        result = await self.loop.check_book(book.id)

        self.assertFalse(result.has_new_chapters)
        self.assertEqual(result.last_chapter, 2)
        self.assertIn("404", result.error)

    async def test_check_unknown_book(self):
        with self.assertRaises(NotFound):
            await self.loop.check_book("missing")


class TestInitialSummaries(LoopTestCase):

    async def test_latest_chapters_summarized_on_registration(self):
        self.scraper.set_book(URL, [1, 2, 3, 4, 5])
        book, info = await self.registry.register(URL)

        summaries = await self.loop.summarize_initial(book, info.chapters)

        self.assertEqual([s.chapter_number for s in summaries], [3, 4, 5])
        [stored] = self.store.list_summaries()
        self.assertTrue(stored.summary.startswith('Initial summaries for "Test Novel":'))
        self.assertEqual(self.registry.get(book.id).last_chapter, 5)

    async def test_single_page_story(self):
        self.scraper.set_book(URL, [1])
        book, info = await self.registry.register(URL)
        summaries = await self.loop.summarize_initial(book, info.chapters)
        self.assertEqual(len(summaries), 1)

    async def test_without_summarizer(self):
        self.summarizer.enabled = False
        self.scraper.set_book(URL, [1, 2])
        book, info = await self.registry.register(URL)
        with self.assertRaises(ConfigurationMissing):
            await self.loop.summarize_initial(book, info.chapters)


class TestDailySummary(LoopTestCase):

    async def test_daily_pass_writes_book_summary_and_digest(self):
        book = self.add_book(last_chapter=5)
        quiet = self.add_book(OTHER_URL, last_chapter=2, title="Quiet")
        self.scraper.set_book(URL, [5, 6, 7])
        self.scraper.set_book(OTHER_URL, [1, 2], title="Quiet")

        results = await self.loop.daily_summary()

        self.assertEqual([r.book_id for r in results], [book.id])
        self.assertEqual(results[0].new_chapters_count, 2)
        self.assertEqual(self.summarizer.batch_calls, [[6, 7]])
        summaries = self.store.list_summaries()
        self.assertEqual([s.book_id for s in summaries], [book.id, DIGEST_BOOK_ID])
        self.assertEqual(summaries[1].summary, "Today: Test Novel")
        self.assertEqual(self.registry.get(book.id).last_chapter, 7)
        self.assertEqual(self.registry.get(quiet.id).last_chapter, 2)
        summarized = [n for n, action in self.actions(book.id) if action is HistoryAction.SUMMARIZED]
        self.assertEqual(summarized, [6, 7])

    async def test_no_digest_without_updates(self):
        self.add_book(last_chapter=2)
        self.scraper.set_book(URL, [1, 2])

        results = await self.loop.daily_summary()

        self.assertEqual(results, [])
        self.assertEqual(self.summarizer.digest_calls, 0)
        self.assertEqual(self.store.list_summaries(), [])

    async def test_failing_book_does_not_stop_the_pass(self):
        self.add_book(URL, last_chapter=1)
        other = self.add_book(OTHER_URL, last_chapter=1, title="Other")
        self.scraper.set_book(OTHER_URL, [1, 2], title="Other")

        results = await self.loop.daily_summary()

        self.assertEqual([r.book_id for r in results], [other.id])


    async def test_daily_pass_recaps_chapters_found_by_regular_runs(self):
        book = self.add_book(last_chapter=5)
        self.scraper.set_book(URL, [5, 6, 7])
        await self.loop.check_all()

        results = await self.loop.daily_summary()

        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].new_chapters_count, 2)
        self.assertEqual(self.summarizer.batch_calls, [[6, 7]])
        self.assertEqual(self.summarizer.digest_calls, 1)
        self.assertEqual([s.book_id for s in self.store.list_summaries()], [book.id, book.id, DIGEST_BOOK_ID])
        summarized = [n for n, action in self.actions(book.id) if action is HistoryAction.SUMMARIZED]
        self.assertEqual(summarized, [6, 7])

        # Everything so far predates the digest that was just written.
        self.assertEqual(await self.loop.daily_summary(), [])
        self.assertEqual(self.summarizer.digest_calls, 1)

    async def test_daily_pass_skips_removed_book(self):
        book = self.add_book(last_chapter=5)
        self.scraper.set_book(URL, [5, 6])
        original = self.summarizer.summarize_chapters

        async def remove_then_summarize(chapters, book_title):
            self.registry.remove(book.id)
            return await original(chapters, book_title)

        self.summarizer.summarize_chapters = remove_then_summarize
        results = await self.loop.daily_summary()

        self.assertEqual(results, [])
        self.assertEqual(self.store.list_summaries(), [])


class TestCleanup(LoopTestCase):

    def test_cleanup_uses_retention_and_cleans_images(self):
        result = self.loop.cleanup()
        self.assertEqual(self.illustrator.cleanups, [30])
        self.assertEqual(result.summaries_removed, 0)

    def test_cleanup_with_explicit_age(self):
        self.loop.cleanup(7)
        self.assertEqual(self.illustrator.cleanups, [7])


if __name__ == "__main__":
    unittest.main()
