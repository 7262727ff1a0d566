"""
Shared utilities for cleaning LLM text output.

Local models often emit their chain of thought inline, wrapped in
``<think>`` style tags, before the visible answer.  The helpers here
centralise the clean-up so the runner and the history reader agree on what
counts as visible text.
"""

import re

_REASONING_TAGS = ("think", "thinking", "thought", "reasoning", "antthinking")
_TAG_ALT = "|".join(_REASONING_TAGS)

_CLOSED_BLOCK = re.compile(rf"<\s*({_TAG_ALT})\b[^>]*>.*?<\s*/\s*\1\s*>",
                           re.IGNORECASE | re.DOTALL)
_STRAY_CLOSE = re.compile(rf"<\s*/\s*(?:{_TAG_ALT})\s*>", re.IGNORECASE)
_UNCLOSED_OPEN = re.compile(rf"<\s*(?:{_TAG_ALT})\b[^>]*>", re.IGNORECASE)


def strip_reasoning_tags(text: str) -> str:
    """Remove reasoning blocks and return the visible remainder, trimmed.

    Handles three shapes:
    1. Balanced ``<think>…</think>`` blocks anywhere in the text.
    2. A stray closing tag (the opening one was eaten by the chat template):
       everything before it is reasoning.
    3. An opening tag that is never closed (generation cut off mid-thought):
       everything after it is reasoning.
    """
    if not text:
        return ""
    cleaned = _CLOSED_BLOCK.sub("", text)

    stray = None
    for stray in _STRAY_CLOSE.finditer(cleaned):
        pass
    if stray is not None:
        cleaned = cleaned[stray.end():]

    opened = _UNCLOSED_OPEN.search(cleaned)
    if opened is not None:
        cleaned = cleaned[:opened.start()]
    return cleaned.strip()


def is_silent_reply_text(text: str, token: str) -> bool:
    """True when *text* is just the silent-reply sentinel, give or take punctuation."""
    if not text or not token:
        return False
    pattern = rf"\W*{re.escape(token)}\W*"
    return re.fullmatch(pattern, text.strip()) is not None
