"""
Silence Detector — end-of-utterance detection on a live transcript.

Every time the transcript changes, a quiet-period deadline is pushed out.
When a poll finds the deadline has passed with no further change, the
detector hands back the trimmed transcript once and then stays quiet until
it is reset.

There is no timer handle to leak: the state is just `last_text` and
`armed_deadline`, checked by whoever polls. `reset()` clears both together,
so a deadline armed during one turn can never fire into the next.
"""
from __future__ import annotations

import time
import structlog
from typing import Callable, Optional

from models.schemas import ConversationSession

logger = structlog.get_logger()

DEFAULT_QUIET_MS = 2000


class SilenceDetector:

    def __init__(
        self,
        session: ConversationSession,
        quiet_ms: int = DEFAULT_QUIET_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.quiet_ms = quiet_ms
        self._clock = clock

        self._last_text: str = ""
        self._last_transcript_length: int = 0
        self._armed_deadline: Optional[float] = None
        self._fired: bool = False
        self._consumed: str = ""

    # ── State access ──────────────────────────────────────────

    @property
    def last_text(self) -> str:
        return self._last_text

    @property
    def last_transcript_length(self) -> int:
        return self._last_transcript_length

    @property
    def armed(self) -> bool:
        return self._armed_deadline is not None

    # ── Events ────────────────────────────────────────────────

    def observe(self, text: str) -> bool:
        """
        Feed the current transcript. Returns True if the quiet period was
        restarted.
        """
        if not self.session.active or self.session.busy:
            return False
        if self._fired:
            return False
        text = text or ""
        if text == self._last_text:
            return False
        if self._consumed and text.strip() == self._consumed:
            # recognizer still reporting the utterance we already sent
            return False

        self._last_text = text
        self._last_transcript_length = len(text)
        self._armed_deadline = self._clock() + self.quiet_ms / 1000
        return True

    def poll(self) -> Optional[str]:
        """Return the finished utterance if the quiet period has elapsed."""
        if self._armed_deadline is None or self._fired:
            return None
        if not self.session.active or self.session.busy:
            return None
        if self._clock() < self._armed_deadline:
            return None

        self._armed_deadline = None
        text = self._last_text.strip()
        if not text:
            return None

        self._fired = True
        logger.debug("silence_detected", chars=len(text), quiet_ms=self.quiet_ms)
        return text

    def mark_consumed(self, text: str) -> None:
        """Reset tracking and remember `text` as already sent."""
        self.reset()
        self._consumed = (text or "").strip()

    def reset(self) -> None:
        self._last_text = ""
        self._last_transcript_length = 0
        self._armed_deadline = None
        self._fired = False
        self._consumed = ""

    def to_dict(self) -> dict:
        remaining = None
        if self._armed_deadline is not None:
            remaining = max(0, round((self._armed_deadline - self._clock()) * 1000))
        return {
            "last_transcript_length": self._last_transcript_length,
            "armed": self.armed,
            "remaining_ms": remaining,
            "fired": self._fired,
        }
