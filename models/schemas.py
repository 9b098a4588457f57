"""
Core data models for the FestVoice assistant.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class TurnState(str, Enum):
    IDLE = "idle"                 # conversation not started
    LISTENING = "listening"       # capture active, waiting for silence
    FINALIZING = "finalizing"     # utterance closed, answer in flight
    SPEAKING = "speaking"         # answer audible
    STOPPED = "stopped"           # explicit stop or teardown


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class UtteranceSource(str, Enum):
    VOICE = "voice"
    TYPED = "typed"


class TopicVerdict(str, Enum):
    IN_DOMAIN = "in_domain"
    OUT_OF_DOMAIN = "out_of_domain"


class AnswerSource(str, Enum):
    REMOTE = "remote"             # generated by the answer service
    CANNED = "canned"             # static program listing
    DEFLECTION = "deflection"     # off-topic reply, no network


# ──────────────────────────────────────────────────────────────
#  Conversation content
# ──────────────────────────────────────────────────────────────

class Utterance(BaseModel):
    """One finalized chunk of user speech or typed text."""
    model_config = ConfigDict(frozen=True)

    text: str
    source: UtteranceSource = UtteranceSource.VOICE
    captured_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("text")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class Message(BaseModel):
    """A single entry in the visible conversation."""
    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str
    is_error: bool = False
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class AnswerRequest(BaseModel):
    """Lives for one fetch-with-retry cycle."""
    utterance_text: str
    attempt: int = 0


class SpeechJob(BaseModel):
    """Wraps one playback on the audio channel."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    text: str


# ──────────────────────────────────────────────────────────────
#  Session — owned by the TurnController
# ──────────────────────────────────────────────────────────────

class ConversationSession(BaseModel):
    """
    Mutable per-conversation state shared by reference with the silence
    detector and the speech coordinator.

    The listening/thinking/speaking flags are derived from ``current_state``,
    so at most one of them can be true.
    """
    active: bool = False
    current_state: TurnState = TurnState.IDLE
    pending_utterance_text: str = ""
    generation: int = 0           # bumped on start/stop; stale results compare against it

    @property
    def listening(self) -> bool:
        return self.current_state == TurnState.LISTENING

    @property
    def thinking(self) -> bool:
        return self.current_state == TurnState.FINALIZING

    @property
    def speaking(self) -> bool:
        return self.current_state == TurnState.SPEAKING

    @property
    def busy(self) -> bool:
        return self.current_state in (TurnState.FINALIZING, TurnState.SPEAKING)
