"""
Topic Gate — decides whether an utterance is about the event.

An utterance is rejected only when it hits the off-topic lexicon and
nothing in the event vocabulary.

It can also answer a couple of things on its own (the "what's happening"
listing and the off-topic deflection) so those never touch the network.
"""
from __future__ import annotations

import re
import structlog
from typing import Optional

from config.settings import EventConfig, get_settings
from models.schemas import TopicVerdict

logger = structlog.get_logger()


# Substring matches against the lowercased utterance
EVENT_KEYWORDS = (
    "tech fest", "techfest", "event", "gaming", "competition", "food",
    "treasure hunt", "cinema", "show", "ai room", "gaming room", "jarvis",
    "jathu", "created", "who", "when", "what", "which", "how", "where",
    "schedule", "date", "january", "programs", "activities", "happen",
    "will happen", "going to happen", "taking place", "happening",
    "vr", "virtual reality", "ai", "artificial intelligence", "movie",
    "stall", "hunt", "room", "gamer",
)

EVENT_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"what.*happening",
    r"what.*going.*happen",
    r"what.*event",
    r"when.*happening",
    r"when.*event",
    r"is.*happening",
    r"tell.*about",
    r"describe.*event",
    r"activities",
    r"programs",
    r"something.*do",
    r"anything.*do",
))

OFF_TOPIC_KEYWORDS = (
    "recipe", "cook", "weather", "news", "sports score", "movie review",
    "song", "lyrics", "homework", "math problem", "assignment",
    "general knowledge", "history", "politics", "covid", "vaccine",
)


class TopicGate:
    """Classifies utterances and short-circuits the ones that need no model call."""

    def __init__(self, event: EventConfig = None):
        self.event = event or get_settings().event

    # ── Classification ────────────────────────────────────────

    @staticmethod
    def mentions_event(text: str) -> bool:
        lower = text.lower()
        if any(k in lower for k in EVENT_KEYWORDS):
            return True
        return any(p.search(lower) for p in EVENT_PATTERNS)

    @staticmethod
    def is_off_topic(text: str) -> bool:
        lower = text.lower()
        return any(k in lower for k in OFF_TOPIC_KEYWORDS)

    def classify(self, text: str) -> TopicVerdict:
        if self.is_off_topic(text) and not self.mentions_event(text):
            logger.debug("topic_out_of_domain", text=text)
            return TopicVerdict.OUT_OF_DOMAIN
        return TopicVerdict.IN_DOMAIN

    # ── Answers that bypass the network ───────────────────────

    def canned_answer(self, text: str) -> Optional[str]:
        """Return the program listing for "what is happening" style questions."""
        lower = text.lower()
        if "what" in lower and "happen" in lower:
            return self.program_listing()
        return None

    def deflection(self) -> str:
        return (
            f"I'm {self.event.assistant_name}, your {self._short_name} assistant! 🤖 "
            f"I'm specifically here to help with questions about our {self._short_name} "
            f"happening in the {self.event.date}. What would you like to know about "
            "the event, the programs, or any activities?"
        )

    def program_listing(self) -> str:
        programs = "\n\n".join(f"• {p.name}: {p.description}" for p in self.event.programs)
        return (
            f"🎉 **{self.event.name}** 🎉\n"
            f"📅 When: {self.event.date} (approx. {self.event.date_range})\n"
            f"📍 What's Happening:\n\n"
            f"{programs}\n\n"
            "Looking forward to seeing you there! What would you like to know more about?"
        )

    @property
    def _short_name(self) -> str:
        # "Tech Fest 2026" -> "Tech Fest"
        return re.sub(r"\s*\d{4}$", "", self.event.name)
