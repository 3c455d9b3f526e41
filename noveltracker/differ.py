"""Chapter differ.

Given the watermark of a tracked book (the highest chapter number
already accounted for) and the chapters discovered by a fresh scrape,
work out which chapters are new and what the watermark should become.
Everything here is pure: no I/O and no mutation of the inputs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .models import ChapterRef


@dataclass(frozen=True)
class DiffResult:
    new_chapters: Tuple[ChapterRef, ...]
    max_chapter: int

    @property
    def has_new_chapters(self) -> bool:
        return bool(self.new_chapters)


def sort_chapters(chapters: Sequence[ChapterRef]) -> List[ChapterRef]:
    """Sort by chapter number; equal numbers keep their discovery order."""
    # sorted() is stable, so duplicates across different URLs stay in
    # the order the extractor found them.
    return sorted(chapters, key=lambda chapter: chapter.number)


def with_synthetic_chapter(chapters: Sequence[ChapterRef], title: str, url: str) -> List[ChapterRef]:
    """Return ``chapters`` or, if empty, a single chapter 1 for the page itself.

    Pages without discoverable chapter links are single-page stories;
    treating the page as chapter 1 gives every book one addressable unit.
    """
    if chapters:
        return list(chapters)
    return [ChapterRef(number=1, title=title, url=url)]


def diff(watermark: int, chapters: Sequence[ChapterRef]) -> DiffResult:
    """Compute the new chapters of a scrape relative to ``watermark``.

    A chapter is new iff its number is strictly greater than the
    watermark. ``max_chapter`` never goes below the watermark, so a
    scrape that yields nothing (or only old chapters) leaves it as is.
    """
    ordered = sort_chapters(chapters)
    new_chapters = tuple(chapter for chapter in ordered if chapter.number > watermark)
    max_chapter = watermark
    if ordered:
        max_chapter = max(watermark, ordered[-1].number)
    return DiffResult(new_chapters=new_chapters, max_chapter=max_chapter)
