"""
Error taxonomy for answer fetching and speech output.

Off-topic input is not an error: the topic gate answers it with a
deflection instead.
"""
from __future__ import annotations

from typing import Optional

GENERIC_SERVICE_ERROR = "Unexpected API error."


class AnswerError(Exception):
    """Base for anything that prevents an utterance from getting an answer."""

    def __init__(self, message: str = GENERIC_SERVICE_ERROR):
        super().__init__(message)
        self.message = message


class RemoteServiceError(AnswerError):
    """Non-retryable failure reported by (or on the way to) the answer service."""

    def __init__(self, message: str = GENERIC_SERVICE_ERROR, status: Optional[int] = None):
        super().__init__(message or GENERIC_SERVICE_ERROR)
        self.status = status


class RateLimited(AnswerError):
    """429 from the answer service. Retried; surfaced only once retries run out."""

    def __init__(self, attempts: int = 1, message: str = "Too many requests."):
        super().__init__(message)
        self.attempts = attempts


class SpeechPlaybackError(Exception):
    """Playback device failed mid-utterance. Logged, never fatal."""
