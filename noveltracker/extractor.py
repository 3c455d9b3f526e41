"""Page fetching and best-effort extraction for web novel sites.

This module fetches table-of-contents and chapter pages with ``httpx``
and picks them apart with ``BeautifulSoup``. Sites are heterogeneous
and not under our control, so every extraction step is an ordered list
of candidate strategies: selectors or text heuristics are tried in turn
and the first plausible result wins. Nothing here is clever; the
heuristics are meant to be good enough for common layouts, including
plain-text Chinese sites where the chapter body has no wrapper element.

Fetching retries with exponential backoff and raises
:class:`~noveltracker.errors.UpstreamFetchError` once all attempts are
used up. Parsing never raises for missing content: an empty chapter
list is resolved by the caller through the synthetic-chapter fallback,
and empty chapter content is reported as
:class:`~noveltracker.errors.ExtractionEmpty`.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable, List, Optional, Sequence

import httpx
from bs4 import BeautifulSoup

from .differ import sort_chapters, with_synthetic_chapter
from .encoding import CJK_RE, decode_bytes, normalize_text
from .errors import ExtractionEmpty, UpstreamFetchError
from .models import BookInfo, ChapterRef

logger = logging.getLogger(__name__)

# Browser-like headers. Several sites return a 403 or a stripped page to
# clients without them.
DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8,ja;q=0.7,ko;q=0.6,*;q=0.5",
}

TITLE_SELECTORS = ["h1", ".book-title", ".title", "title", ".novel-title", "#title"]

CHAPTER_LINK_SELECTORS = [
    'a[href*=".html"]',
    ".chapter-link",
    ".chapter a",
    "ul li a",
    "div a[href]",
]

CONTENT_SELECTORS = [
    ".content",
    ".chapter-content",
    ".novel-content",
    "#content",
    ".text",
    "main",
    ".post-content",
    ".entry-content",
    "article",
    ".story-content",
    ".story-text",
    ".article-content",
    ".post-body",
]

NOISE_SELECTORS = "script, style, nav, header, footer, .ad, .advertisement"

# Navigation lines on plain-text Chinese chapter pages.
NAVIGATION_MARKERS = ("上一章", "下一章", "目录", "书签", "推荐", "收藏", "首页")

NUMBER_RE = re.compile(r"(\d+)")

MIN_SELECTOR_CONTENT = 100
MIN_PARAGRAPH = 30

# Upper bound on chapter text handed to later stages.
MAX_CHAPTER_SIZE = 1_500_000


async def fetch_page(url: str, max_retries: int = 3, backoff: float = 1.0,
                     timeout: float = 30.0) -> bytes:
    """Fetch ``url`` and return the raw body.

    Transport errors and non-200 responses are retried ``max_retries``
    times, sleeping ``backoff * 2**attempt`` seconds between attempts.
    The final failure is raised as ``UpstreamFetchError``.
    """
    last_error = ""
    status_code: Optional[int] = None
    for attempt in range(max_retries):
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                response = await client.get(url, headers=DEFAULT_HEADERS)
            if response.status_code == 200:
                return response.content
            status_code = response.status_code
            last_error = f"HTTP {response.status_code}"
        except httpx.HTTPError as exc:
            last_error = f"{type(exc).__name__}: {exc}"
        logger.debug("Fetch attempt %d/%d for %s failed: %s", attempt + 1, max_retries, url, last_error)
        if attempt < max_retries - 1:
            await asyncio.sleep(backoff * (2 ** attempt))
    raise UpstreamFetchError(f"Failed to fetch {url}: {last_error}", url=url, status_code=status_code)


def _title_from_url(url: str) -> str:
    parts = url.rstrip("/").split("/")
    # The last segment is usually an index page; the one before names the book.
    if len(parts) >= 2 and parts[-2] and not parts[-2].endswith(":"):
        return parts[-2]
    return "Unknown Book"


def extract_title(soup: BeautifulSoup, url: str) -> str:
    for selector in TITLE_SELECTORS:
        element = soup.select_one(selector)
        if element is not None:
            text = element.get_text(strip=True)
            if text:
                return normalize_text(text)
    return normalize_text(_title_from_url(url))


def extract_chapter_links(soup: BeautifulSoup, base_url: str) -> List[ChapterRef]:
    """Return the chapter links of a table-of-contents page, sorted by number.

    The first selector that matches any link decides the candidate set.
    The chapter number is the first integer in the link text, falling
    back to the link's position on the page.
    """
    chapters: List[ChapterRef] = []
    for selector in CHAPTER_LINK_SELECTORS:
        links = soup.select(selector)
        if not links:
            continue
        for position, link in enumerate(links, start=1):
            href = link.get("href")
            text = link.get_text(strip=True)
            if not href or not text:
                continue
            match = NUMBER_RE.search(text)
            number = int(match.group(1)) if match else position
            full_url = str(httpx.URL(base_url).join(href))
            chapters.append(ChapterRef(number=number, title=normalize_text(text), url=full_url))
        break
    return sort_chapters(chapters)


def parse_book_page(html_doc: str, url: str) -> BookInfo:
    """Parse a table-of-contents page into a :class:`BookInfo`."""
    soup = BeautifulSoup(html_doc, "lxml")
    title = extract_title(soup, url)
    chapters = extract_chapter_links(soup, url)
    if not chapters:
        logger.info("No chapter links on %s, treating it as a single-page story", url)
    chapters = with_synthetic_chapter(chapters, title, url)
    return BookInfo(
        title=title,
        url=url,
        chapters=chapters,
        last_chapter=chapters[-1].number,
        total_chapters=len(chapters),
    )


def _content_by_selectors(soup: BeautifulSoup) -> str:
    for selector in CONTENT_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        text = element.get_text(separator="\n", strip=True)
        if len(text) > MIN_SELECTOR_CONTENT:
            return text
    return ""


def _content_by_cjk_lines(soup: BeautifulSoup) -> str:
    """Collect substantial CJK lines from pages that dump text into <body>."""
    body = soup.body or soup
    lines = [line.strip() for line in body.get_text(separator="\n").split("\n")]
    collected: List[str] = []
    started = False
    for line in lines:
        if not line:
            continue
        if any(marker in line for marker in NAVIGATION_MARKERS):
            continue
        if len(line) > 10 and CJK_RE.search(line):
            started = True
            collected.append(line)
        elif started and len(line) < 5:
            break
    return "\n\n".join(collected)


def _content_by_paragraphs(soup: BeautifulSoup) -> str:
    texts = [p.get_text(strip=True) for p in soup.find_all("p")]
    return "\n\n".join(text for text in texts if len(text) > MIN_PARAGRAPH)


def _content_by_blocks(soup: BeautifulSoup) -> str:
    blocks = []
    for element in soup.find_all(["div", "section", "article"]):
        text = element.get_text(strip=True)
        if len(text) > MIN_SELECTOR_CONTENT and "navigation" not in text and "menu" not in text:
            blocks.append(text)
    return "\n\n".join(blocks)


CONTENT_STRATEGIES: Sequence[Callable[[BeautifulSoup], str]] = (
    _content_by_selectors,
    _content_by_cjk_lines,
    _content_by_paragraphs,
    _content_by_blocks,
)


def extract_chapter_text(html_doc: str) -> str:
    """Extract the body text of a chapter page.

    Returns an empty string when no strategy finds anything.
    """
    soup = BeautifulSoup(html_doc, "lxml")
    for element in soup.select(NOISE_SELECTORS):
        element.decompose()
    for strategy in CONTENT_STRATEGIES:
        content = strategy(soup).strip()
        if content:
            logger.debug("Chapter content found by %s (%d chars)", strategy.__name__, len(content))
            return content[:MAX_CHAPTER_SIZE]
    return ""


class Scraper:
    """Fetcher plus extractor, as used by the registry and the reconciler."""

    def __init__(self, timeout: float = 30.0, max_retries: int = 3, backoff: float = 1.0) -> None:
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff

    async def _fetch_text(self, url: str) -> str:
        raw = await fetch_page(url, max_retries=self.max_retries, backoff=self.backoff,
                               timeout=self.timeout)
        return decode_bytes(raw)

    async def scrape_book_info(self, url: str) -> BookInfo:
        """Fetch and parse a book's table-of-contents page."""
        html_doc = await self._fetch_text(url)
        info = parse_book_page(html_doc, url)
        logger.info("Scraped %r: %d chapters, last %d", info.title, info.total_chapters, info.last_chapter)
        return info

    async def scrape_chapter_content(self, url: str) -> str:
        """Fetch a chapter page and return its text.

        Raises ``ExtractionEmpty`` if the page has no recognisable content.
        """
        html_doc = await self._fetch_text(url)
        content = extract_chapter_text(html_doc)
        if not content:
            raise ExtractionEmpty(f"No chapter content found at {url}")
        return content
