"""
Answer Client — turns an utterance into answer text.

Order of operations for every utterance:
1. Topic gate: off-topic input gets the deflection, no network
2. Canned answers: "what is happening" gets the program listing, no network
3. Remote call with retry: 429 responses are retried after a fixed backoff,
   every other failure is surfaced immediately as RemoteServiceError

Running out of retries is reported as a failed AnswerResult carrying a
RateLimited error, not raised.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from backend.answer_service import AnswerService, AnswerServiceRequest, create_answer_service
from config.settings import EventConfig, LLMConfig, RetryConfig, get_settings
from core.errors import AnswerError, RateLimited, RemoteServiceError
from core.topic_gate import TopicGate
from models.schemas import AnswerRequest, AnswerSource, TopicVerdict
from utils.text import normalize_utterance, strip_code_fences

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Result
# ──────────────────────────────────────────────────────────────

@dataclass
class AnswerResult:
    """Outcome of one fetch: answer text, or the error that prevented it."""
    text: Optional[str] = None
    error: Optional[AnswerError] = None
    attempts: int = 0
    source: AnswerSource = AnswerSource.REMOTE

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.text)

    def __bool__(self):
        return self.ok


# ──────────────────────────────────────────────────────────────
#  System prompt
# ──────────────────────────────────────────────────────────────

def build_system_prompt(event: EventConfig, template: str = "") -> str:
    """Assistant instructions for the event; `template` may use {name}, {date}, {programs} …"""
    programs = "\n".join(
        f"{i}. {p.name} - {p.description}" for i, p in enumerate(event.programs, start=1)
    )
    values: dict[str, Any] = {
        "assistant_name": event.assistant_name,
        "creator": event.creator,
        "name": event.name,
        "date": event.date,
        "date_range": event.date_range,
        "programs": programs,
    }
    if template:
        return template.format(**values)

    return f"""
You are {event.assistant_name}, an AI assistant created by {event.creator} for {event.name}, scheduled in the {event.date}.

**YOUR CORE PURPOSE:**
- Answer ONLY questions related to {event.name}
- Provide detailed information about event programs and activities
- Help attendees with event-related queries
- Be enthusiastic and welcoming about the event

**EVENT DETAILS:**
{event.name} - {event.date} ({event.date_range})

The event features these programs:
{programs}

**STRICT RULES:**
- ALWAYS answer event-related questions directly and informatively
- If asked "Who created you?" or similar: Respond with "I was created by {event.creator}"
- For any out-of-topic questions, politely steer the attendee back to the event
- Keep responses concise but informative, they will be read aloud
- Maintain focus on the event context only
- NEVER refuse to answer event-related questions
""".strip()


# ──────────────────────────────────────────────────────────────
#  Retrying client
# ──────────────────────────────────────────────────────────────

class RetryingAnswerClient:
    """
    Fetches answers for in-domain utterances, retrying on rate limiting.

    `sleep` is the coroutine used for backoff waits (seconds); tests pass a
    recorder instead of asyncio.sleep.
    """

    def __init__(
        self,
        service: AnswerService = None,
        gate: TopicGate = None,
        llm: LLMConfig = None,
        retry: RetryConfig = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.service = service or create_answer_service()
        self.gate = gate or TopicGate()
        self.llm = llm or settings.llm
        self.retry = retry or settings.retry
        self._sleep = sleep
        self._system_prompt = build_system_prompt(self.gate.event, self.llm.system_prompt_template)

    async def fetch_answer(
        self,
        utterance_text: str,
        max_retries: Optional[int] = None,
        backoff_ms: Optional[int] = None,
    ) -> AnswerResult:
        """
        Produce an answer for one utterance.

        Raises:
            RemoteServiceError: the service failed with anything other than 429
        """
        text = normalize_utterance(utterance_text)

        if self.gate.classify(text) == TopicVerdict.OUT_OF_DOMAIN:
            return AnswerResult(text=self.gate.deflection(), source=AnswerSource.DEFLECTION)

        canned = self.gate.canned_answer(text)
        if canned is not None:
            logger.info("answer_canned", text=text)
            return AnswerResult(text=canned, source=AnswerSource.CANNED)

        return await self._fetch_remote(
            text,
            self.retry.max_retries if max_retries is None else max_retries,
            self.retry.backoff_ms if backoff_ms is None else backoff_ms,
        )

    async def _fetch_remote(self, text: str, max_retries: int, backoff_ms: int) -> AnswerResult:
        request = AnswerRequest(utterance_text=text)
        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(max(1, max_retries)),
            wait=wait_fixed(backoff_ms / 1000),
            retry=retry_if_exception_type(RateLimited),
            before_sleep=self._log_backoff,
            reraise=True,
        )

        answer = ""
        try:
            async for attempt in retrying:
                with attempt:
                    request.attempt = attempt.retry_state.attempt_number - 1
                    answer = await self._attempt(request)
        except RateLimited:
            attempts = request.attempt + 1
            logger.warning("answer_rate_limit_exhausted", attempts=attempts)
            return AnswerResult(error=RateLimited(attempts=attempts), attempts=attempts)

        return AnswerResult(text=answer, attempts=request.attempt + 1)

    async def _attempt(self, request: AnswerRequest) -> str:
        response = await self.service.complete(AnswerServiceRequest(
            system_prompt=self._system_prompt,
            user_message=request.utterance_text,
            temperature=self.llm.temperature,
            top_p=self.llm.top_p,
            max_tokens=self.llm.max_tokens,
            model_id=self.llm.model,
        ))

        if response.ok:
            return strip_code_fences(response.text)
        if response.rate_limited:
            raise RateLimited(attempts=request.attempt + 1)

        logger.error(
            "answer_service_failed",
            status=response.status,
            error=response.error_message,
            attempt=request.attempt,
        )
        raise RemoteServiceError(response.error_message, status=response.status)

    @staticmethod
    def _log_backoff(retry_state: RetryCallState) -> None:
        logger.info(
            "answer_rate_limited",
            attempt=retry_state.attempt_number,
            backoff_s=retry_state.next_action.sleep if retry_state.next_action else None,
        )
