"""Byte-to-text decoding for scraped pages.

Many novel sites (notably Chinese and Japanese ones) do not serve UTF-8.
The decoder tries a short chain of codecs and accepts the first that
decodes cleanly; latin-1 accepts any byte sequence and ends the chain.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Sequence

FALLBACK_ENCODINGS = ("utf-8", "gbk", "shift_jis", "latin-1")

CJK_RE = re.compile(r"[\u4e00-\u9fff]")


def decode_bytes(data: bytes, encodings: Sequence[str] = FALLBACK_ENCODINGS) -> str:
    for encoding in encodings:
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("utf-8", errors="replace")


def normalize_text(text: str) -> str:
    """NFC-normalise and strip ``text`` for consistent display."""
    return unicodedata.normalize("NFC", text).strip()
