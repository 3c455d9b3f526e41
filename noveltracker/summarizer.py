"""Chapter summarization with Anthropic's Claude models.

The summarizer answers in the language of the chapter: text that is
mostly CJK ideographs gets a Chinese summary, everything else English.
Without an ``ANTHROPIC_API_KEY`` the summarizer is disabled; calling it
raises :class:`~noveltracker.errors.ConfigurationMissing` and the
reconciler skips the summarization step instead.

Usage::

    summarizer = Summarizer(api_key=settings.anthropic_api_key)
    text = await summarizer.summarize_chapter(content, "Chapter 6", "Some Novel")
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import anthropic

from .encoding import CJK_RE
from .errors import ConfigurationMissing, UpstreamFetchError
from .models import BookSummaryResult, ChapterRef

logger = logging.getLogger(__name__)

# Chapters beyond this many characters are cut before being sent.
MAX_CHAPTER_CHARS = 30_000


def detect_language(text: str) -> str:
    """Return ``"chinese"`` if more than 30% of ``text`` is CJK, else ``"english"``."""
    if not text:
        return "english"
    ratio = len(CJK_RE.findall(text)) / len(text)
    return "chinese" if ratio > 0.3 else "english"


def _language_instruction(language: str) -> str:
    if language == "chinese":
        return "Please respond in Chinese (中文)"
    return "Please respond in English"


class Summarizer:
    name = "anthropic"

    def __init__(self, api_key: Optional[str], model: str = "claude-3-haiku-20240307",
                 timeout: float = 60.0) -> None:
        self.model = model
        self._client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout) if api_key else None

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def _complete(self, prompt: str, max_tokens: int) -> str:
        if self._client is None:
            raise ConfigurationMissing("Anthropic API key not configured")
        logger.debug("Requesting summary from %s (%d prompt chars)", self.model, len(prompt))
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=0.7,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as exc:
            raise UpstreamFetchError(f"Summarization failed: {exc}") from exc
        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        if not text.strip():
            raise UpstreamFetchError("Summarization returned no text")
        return text.strip()

    async def summarize_chapter(self, content: str, chapter_title: str, book_title: str) -> str:
        instruction = _language_instruction(detect_language(content))
        prompt = (
            f"{instruction}. Provide a concise summary of this story/chapter:\n\n"
            f"Book: {book_title}\n"
            f"Chapter: {chapter_title}\n\n"
            f"Content:\n{content[:MAX_CHAPTER_CHARS]}\n\n"
            "Please provide:\n"
            "1. A brief summary (2-3 sentences) of the main events\n"
            "2. Key character developments or interactions\n"
            "3. Important plot points or revelations\n\n"
            f"Keep the summary clear and engaging for readers. {instruction}."
        )
        return await self._complete(prompt, max_tokens=500)

    async def summarize_chapters(self, chapters: Sequence[Tuple[ChapterRef, str]], book_title: str) -> str:
        """Summarize several chapters of one book as a single update."""
        chapters_text = "\n\n---\n\n".join(
            f"Chapter {chapter.number}: {chapter.title}\n{content[:MAX_CHAPTER_CHARS]}"
            for chapter, content in chapters
        )
        instruction = _language_instruction(detect_language(chapters_text))
        prompt = (
            f'{instruction}. Provide a daily summary of these new chapters from "{book_title}":\n\n'
            f"{chapters_text}\n\n"
            "Please provide:\n"
            "1. Overall story progression across all chapters\n"
            "2. Major character developments\n"
            "3. Key plot points and revelations\n"
            "4. Cliffhangers or important developments to look forward to\n\n"
            f"Keep the summary engaging and informative for daily reading updates. {instruction}."
        )
        return await self._complete(prompt, max_tokens=800)

    async def daily_digest(self, updates: List[BookSummaryResult]) -> str:
        """Combine per-book updates into one cross-book reading digest."""
        updates_text = "\n\n---\n\n".join(
            f"{u.book_title} ({u.new_chapters_count} new chapters):\n{u.summary}" for u in updates
        )
        prompt = (
            "Create a daily reading summary for these web novel updates in the same "
            "language as the original content:\n\n"
            f"{updates_text}\n\n"
            "Please provide (in the same language as the content):\n"
            "1. A brief overview of today's updates\n"
            "2. Highlight the most interesting developments\n"
            "3. Any recommendations for priority reading\n\n"
            "Keep it concise and engaging for a daily reading digest. "
            "Use the same language as the original text."
        )
        return await self._complete(prompt, max_tokens=600)
