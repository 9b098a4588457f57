"""Text helpers shared by the answer client and the turn controller."""
from __future__ import annotations

import re

# ```lang\n ... ``` or ```...```; the language tag only counts when a newline follows it
_FENCE_RE = re.compile(r"^```(?:[\w+-]*\n)?(.*?)```$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove one pair of surrounding markdown code fences, if present."""
    cleaned = (text or "").strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def normalize_utterance(text: str) -> str:
    return (text or "").strip()
