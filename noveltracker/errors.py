"""Exception types shared by the tracker.

The HTTP layer maps these onto status codes (see ``main.py``); the
reconciliation loop catches them per book and per chapter so that a
single failure never aborts a batch.
"""

from __future__ import annotations

from typing import Optional


class TrackerError(Exception):
    """Base class for all tracker errors."""


class NotFound(TrackerError):
    """Raised when a book id is not present in the registry."""

    def __init__(self, book_id: str) -> None:
        super().__init__(f"Book not found: {book_id}")
        self.book_id = book_id


class DuplicateBook(TrackerError):
    """Raised when a URL is already tracked."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Book already exists: {url}")
        self.url = url


class UpstreamFetchError(TrackerError):
    """A target site or AI provider could not be reached or answered badly."""

    def __init__(self, message: str, url: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ExtractionEmpty(TrackerError):
    """No usable content could be extracted from a page."""


class ConfigurationMissing(TrackerError):
    """A credential needed by an optional pipeline stage is absent."""


class RunInProgress(TrackerError):
    """A reconciliation run is already active; the new request was dropped."""

    def __init__(self) -> None:
        super().__init__("A reconciliation run is already in progress")
