# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# builder_ai_app/utils/text.py
from __future__ import annotations

import re
from typing import List

_CHUNK_TAG_RE = re.compile(r"^\[CHUNK (\d+)/(\d+)\] ")


def split_preserve_words(text: str, size: int) -> List[str]:
    """
    Split text into pieces of at most `size` characters.

    A cut is placed at the last word/whitespace transition inside the window, so a
    run of whitespace is never broken apart. Nothing is dropped: "".join(result) == text.
    Falls back to a hard cut when the window holds no transition (one long token).
    """
    if size <= 0:
        raise ValueError("size must be positive")
    if not text or len(text) <= size:
        return [text]

    pieces: List[str] = []
    start, n = 0, len(text)
    while start < n:
        end = min(start + size, n)
        if end < n:
            cut = end
            while cut > start + 1 and text[cut - 1].isspace() == text[cut].isspace():
                cut -= 1
            if cut > start + 1 or text[start].isspace() != text[start + 1].isspace():
                end = cut
        pieces.append(text[start:end])
        start = end
    return pieces


def chunk_tag(index: int, total: int) -> str:
    """Human-readable marker merged into chunk content; 1-based."""
    return f"[CHUNK {index}/{total}] "


def strip_chunk_tag(content: str) -> str:
    return _CHUNK_TAG_RE.sub("", content, count=1)
