from __future__ import annotations

from typing import Any, List


CHUNK_TEXT_KEYS = ("text", "content", "value")


def _chunk_text(chunk: Any) -> str:
    if not chunk:
        return ""
    if isinstance(chunk, str):
        return chunk
    if isinstance(chunk, dict):
        # First string field wins; order matters for chunks carrying several.
        for key in CHUNK_TEXT_KEYS:
            value = chunk.get(key)
            if isinstance(value, str):
                return value
    return ""


def _join_chunks(chunks: List[Any]) -> str:
    return "\n".join(text for text in map(_chunk_text, chunks) if text)


def normalize_content(raw: Any) -> str:
    """Flatten upstream message content into a single string.

    Accepts a plain string, a list of chunks (strings or dicts exposing
    ``text``, ``content`` or ``value``), or a dict whose ``text`` is a string
    or a list. Any other shape yields ``""``.
    """
    if isinstance(raw, str):
        return raw
    if not raw:
        return ""
    if isinstance(raw, list):
        return _join_chunks(raw)
    if isinstance(raw, dict):
        text = raw.get("text")
        if isinstance(text, str):
            return text
        if isinstance(text, list):
            return "\n".join(normalize_content(item) for item in text)
    return ""
