"""Chapter illustrations generated with Together's image API.

The illustrator turns a chapter summary into a PNG saved under the
images directory and returns the public URL it is served from
(``/images/<file>``). Files are named
``{book}_{chapter}_{timestamp}.png``.

It requires ``TOGETHER_API_KEY``. Without it ``illustrate`` returns
``None`` and the pipeline carries on without images. A failed request
is retried once with a plain fallback prompt before giving up with
:class:`~noveltracker.errors.UpstreamFetchError`.
"""

from __future__ import annotations

import base64
import logging
import re
import time
from pathlib import Path
from typing import Optional

import httpx

from .errors import UpstreamFetchError

logger = logging.getLogger(__name__)

TOGETHER_IMAGES_URL = "https://api.together.xyz/v1/images/generations"
IMAGE_URL_PREFIX = "/images"
FALLBACK_PROMPT = "fantasy landscape, digital art, vibrant colors"

# Summaries shorter than this do not carry enough to draw.
MIN_SUMMARY_LENGTH = 50


def image_filename(book_title: str, chapter_number: int, timestamp_ms: Optional[int] = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    book = re.sub(r"[^a-zA-Z0-9]", "_", book_title) or "book"
    return f"{book}_{chapter_number}_{timestamp_ms}.png"


def visual_prompt(chapter_title: str, language: str) -> str:
    # Summaries are not passed through verbatim; plot details tend to
    # trip the provider's content filter.
    if language == "chinese":
        style = "traditional Chinese watercolor painting style"
    else:
        style = "fantasy digital art style"
    return f"A magical fantasy landscape with mystical characters, {style}, digital art, vibrant colors, no text"


class Illustrator:
    name = "together"

    def __init__(self, api_key: Optional[str], images_dir: Path,
                 model: str = "black-forest-labs/FLUX.1-schnell-Free", timeout: float = 60.0) -> None:
        self.api_key = api_key
        self.images_dir = Path(images_dir)
        self.model = model
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _generate(self, prompt: str) -> bytes:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "width": 1024,
            "height": 1024,
            "steps": 4,
            "n": 1,
            "response_format": "b64_json",
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(TOGETHER_IMAGES_URL, headers=headers, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise UpstreamFetchError(f"Image generation failed: {exc}", url=TOGETHER_IMAGES_URL) from exc
        images = data.get("data") or []
        if not images or not images[0].get("b64_json"):
            raise UpstreamFetchError("Image generation returned no image data", url=TOGETHER_IMAGES_URL)
        return base64.b64decode(images[0]["b64_json"])

    async def illustrate(self, summary: str, chapter_title: str, book_title: str,
                         language: str = "english", chapter_number: int = 0) -> Optional[str]:
        """Generate and save an image for a chapter summary.

        Returns the public URL of the saved image, or ``None`` when the
        illustrator is disabled or the summary is too short.
        """
        if not self.enabled:
            logger.debug("Together API key not configured, skipping image for %r", chapter_title)
            return None
        if len(summary) < MIN_SUMMARY_LENGTH:
            logger.info("Skipping image for %r: summary too short (%d chars)", chapter_title, len(summary))
            return None

        try:
            image = await self._generate(visual_prompt(chapter_title, language))
        except UpstreamFetchError as exc:
            logger.warning("Image generation for %r failed (%s), trying fallback prompt", chapter_title, exc)
            image = await self._generate(FALLBACK_PROMPT)

        self.images_dir.mkdir(parents=True, exist_ok=True)
        filename = image_filename(book_title, chapter_number)
        (self.images_dir / filename).write_bytes(image)
        url = f"{IMAGE_URL_PREFIX}/{filename}"
        logger.info("Saved illustration for %r chapter %d: %s", book_title, chapter_number, url)
        return url

    def cleanup_old_images(self, max_age_days: int, now: Optional[float] = None) -> int:
        """Delete images whose modification time is older than ``max_age_days``."""
        if not self.images_dir.is_dir():
            return 0
        cutoff = (now if now is not None else time.time()) - max_age_days * 86400
        removed = 0
        for path in self.images_dir.iterdir():
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
                logger.debug("Deleted old image %s", path.name)
        return removed
