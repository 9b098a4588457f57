"""
Turn Controller — the conversation's state machine.

One turn is: listen until the user goes quiet, send the utterance for an
answer, speak the answer, listen again. The controller owns the session
and is the only thing allowed to start or stop the microphone and the
speaker, which keeps the assistant from transcribing its own voice.

States:
    idle ──start──▶ listening ──silence / typed──▶ finalizing ──answer──▶ speaking
      ▲                 ▲                              │                      │
      │                 └──────────── playback done ───┼──────────────────────┘
      └──────── typed answer without voice ────────────┘
    any ──stop──▶ stopped

Key behaviors:
- Only one turn in flight: finalize requests while finalizing or speaking
  are rejected
- Capture is suspended the moment an utterance is closed
- stop() at any point clears the silence deadline, cancels speech and
  bumps the session generation so a fetch still in flight is discarded
- Failures never strand the machine in finalizing or speaking: the user
  sees the error and, in voice mode, hears an apology before listening
  resumes
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Any, Awaitable, Callable, Optional

from config.settings import VoiceConfig, get_settings
from context.history import MessageLog
from core.answer_client import AnswerResult, RetryingAnswerClient
from core.errors import GENERIC_SERVICE_ERROR, RateLimited, RemoteServiceError
from models.schemas import ConversationSession, TurnState, Utterance, UtteranceSource
from voice.devices import CaptureDevice, PlaybackDevice, VoiceParams
from voice.silence import SilenceDetector
from voice.speech import SpeechOutputCoordinator

logger = structlog.get_logger()

SPOKEN_APOLOGY = "Sorry, I encountered an error. Please try again."
ERROR_PREFIX = "⚠️ Error: "
BUSY_MESSAGE = "The assistant is receiving too many requests right now. Please try again in a moment."
EMPTY_ANSWER_MESSAGE = "The assistant returned an empty answer."


ALLOWED_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.LISTENING, TurnState.FINALIZING, TurnState.STOPPED}),
    TurnState.LISTENING: frozenset({TurnState.FINALIZING, TurnState.STOPPED}),
    TurnState.FINALIZING: frozenset({
        TurnState.SPEAKING, TurnState.LISTENING, TurnState.IDLE, TurnState.STOPPED,
    }),
    TurnState.SPEAKING: frozenset({TurnState.LISTENING, TurnState.IDLE, TurnState.STOPPED}),
    TurnState.STOPPED: frozenset({TurnState.LISTENING, TurnState.FINALIZING, TurnState.STOPPED}),
}


class TurnController:
    """
    Arbitrates between the user speaking, the assistant thinking and the
    assistant speaking.

    Timing is driven by `tick()`: either call it yourself (tests, custom
    loops) or let `start_ticker()` call it every `tick_interval_ms`.
    """

    def __init__(
        self,
        capture: CaptureDevice,
        playback: PlaybackDevice,
        client: RetryingAnswerClient = None,
        messages: MessageLog = None,
        voice: VoiceConfig = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.voice = voice or get_settings().voice
        self.capture = capture
        self.client = client or RetryingAnswerClient()
        self.messages = messages if messages is not None else MessageLog()

        self.session = ConversationSession()
        self.detector = SilenceDetector(self.session, quiet_ms=self.voice.silence_ms, clock=clock)
        self.speech = SpeechOutputCoordinator(
            self.session,
            playback,
            capture,
            self.detector,
            params=VoiceParams(
                rate=self.voice.rate,
                pitch=self.voice.pitch,
                volume=self.voice.volume,
                language=self.voice.language,
            ),
            pre_speak_ms=self.voice.pre_speak_ms,
            settle_ms=self.voice.settle_ms,
            sleep=sleep,
        )

        self._sampled_transcript: str = ""
        self._turn_task: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None
        self._turns_completed: int = 0
        self._turns_discarded: int = 0

    # ── State access ──────────────────────────────────────────

    @property
    def state(self) -> TurnState:
        return self.session.current_state

    def _transition(self, to: TurnState, reason: str = "") -> bool:
        current = self.session.current_state
        if to not in ALLOWED_TRANSITIONS[current]:
            logger.warning("turn_transition_rejected", from_state=current.value,
                           to_state=to.value, reason=reason)
            return False
        self.session.current_state = to
        logger.info("turn_state_changed", from_state=current.value,
                    to_state=to.value, reason=reason)
        return True

    def _is_current(self, generation: int) -> bool:
        return self.session.generation == generation

    # ── Session lifecycle ─────────────────────────────────────

    def start(self) -> bool:
        """Begin a voice conversation. Returns False if one can't start now."""
        if self.session.active:
            logger.info("conversation_already_active")
            return False
        if self.session.busy:
            logger.info("conversation_start_rejected_busy", state=self.state.value)
            return False

        self.session.active = True
        self.session.generation += 1
        self.session.pending_utterance_text = ""
        self.capture.reset()
        self._sampled_transcript = ""
        self.detector.reset()
        self._transition(TurnState.LISTENING, reason="start")
        self.capture.start_listening(continuous=True, language=self.voice.language)
        logger.info("conversation_started", generation=self.session.generation)
        return True

    def stop(self) -> None:
        """End the conversation from any state."""
        self.session.active = False
        self.session.generation += 1
        self.session.pending_utterance_text = ""
        self.detector.reset()
        self.capture.stop_listening()
        self.capture.reset()
        self._sampled_transcript = ""
        self.speech.cancel()
        if self.state != TurnState.STOPPED:
            self._transition(TurnState.STOPPED, reason="stop")
        logger.info("conversation_stopped", generation=self.session.generation)

    # ── Input ─────────────────────────────────────────────────

    def on_transcript(self, text: str) -> None:
        """Push a transcript update from the capture device."""
        self.detector.observe(text)

    def tick(self) -> Optional[asyncio.Task]:
        """
        Sample the capture transcript and check the quiet period. Returns the
        turn task if an utterance was finalized.
        """
        if self.session.active and self.state == TurnState.LISTENING:
            sampled = self.capture.transcript
            # feed the detector only when the capture transcript itself changed
            if sampled != self._sampled_transcript:
                self._sampled_transcript = sampled
                self.detector.observe(sampled)
        text = self.detector.poll()
        if text is None:
            return None
        return self._begin_turn(Utterance(text=text, source=UtteranceSource.VOICE))

    def submit_text(self, text: str) -> Optional[asyncio.Task]:
        """Typed entry. Answers are spoken back only during a voice conversation."""
        return self._begin_turn(Utterance(text=text or "", source=UtteranceSource.TYPED))

    # ── Turn pipeline ─────────────────────────────────────────

    def _begin_turn(self, utterance: Utterance) -> Optional[asyncio.Task]:
        if not utterance.text:
            return None
        if self.session.busy:
            logger.info("turn_rejected_busy", state=self.state.value, source=utterance.source.value)
            return None
        if utterance.source == UtteranceSource.VOICE and self.state != TurnState.LISTENING:
            return None

        self.capture.stop_listening()
        self.detector.mark_consumed(utterance.text)
        self.capture.reset()
        self._sampled_transcript = ""

        if not self._transition(TurnState.FINALIZING, reason=utterance.source.value):
            return None
        self.session.pending_utterance_text = utterance.text
        self.messages.add_user(utterance.text)

        self._turn_task = asyncio.create_task(
            self._run_turn(utterance, self.session.generation, speak_back=self.session.active),
            name="turn",
        )
        return self._turn_task

    async def _run_turn(self, utterance: Utterance, generation: int, speak_back: bool) -> None:
        logger.info("turn_started", source=utterance.source.value, chars=len(utterance.text))
        try:
            reply, failure = await self._fetch(utterance)

            if not self._is_current(generation):
                self._turns_discarded += 1
                logger.info("turn_result_discarded", generation=generation)
                return

            self.session.pending_utterance_text = ""
            if failure is None:
                self.messages.add_assistant(reply)
                spoken = reply
            else:
                self.messages.add_assistant(ERROR_PREFIX + failure, is_error=True)
                spoken = SPOKEN_APOLOGY

            if speak_back and self.session.active:
                self._transition(TurnState.SPEAKING, reason="answer_ready")
                outcome = await self.speech.speak(spoken)
                if not self._is_current(generation):
                    return
                logger.debug("turn_playback_done", outcome=outcome.value)
                self._transition(
                    TurnState.LISTENING if self.session.active else TurnState.IDLE,
                    reason="playback_done",
                )
            else:
                self._transition(TurnState.IDLE, reason="typed_answer")
            self._turns_completed += 1
        except Exception as e:
            logger.error("turn_failed", error=str(e))
        finally:
            self._recover(generation)

    async def _fetch(self, utterance: Utterance) -> tuple[str, Optional[str]]:
        """Returns (answer, None) or ("", user-facing failure message)."""
        try:
            result: AnswerResult = await self.client.fetch_answer(utterance.text)
        except RemoteServiceError as e:
            return "", e.message or GENERIC_SERVICE_ERROR
        except Exception as e:
            logger.error("answer_fetch_crashed", error=str(e))
            return "", str(e) or GENERIC_SERVICE_ERROR

        if result.ok:
            return result.text, None
        if isinstance(result.error, RateLimited):
            return "", BUSY_MESSAGE
        if result.error is not None:
            return "", result.error.message
        return "", EMPTY_ANSWER_MESSAGE

    def _recover(self, generation: int) -> None:
        """Leave finalizing/speaking if the pipeline ended without doing so."""
        if not self._is_current(generation) or not self.session.busy:
            return
        self.speech.cancel()
        self.session.pending_utterance_text = ""
        if self.session.active:
            self._transition(TurnState.LISTENING, reason="recovered")
            self.capture.reset()
            self._sampled_transcript = ""
            self.detector.reset()
            self.capture.start_listening(continuous=True, language=self.voice.language)
        else:
            self._transition(TurnState.IDLE, reason="recovered")

    async def wait_idle(self) -> None:
        """Wait for the in-flight turn, if any, to finish."""
        task = self._turn_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    # ── Ticker ────────────────────────────────────────────────

    def start_ticker(self) -> None:
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.create_task(self._tick_loop(), name="turn_ticker")
            logger.info("turn_ticker_started", interval_ms=self.voice.tick_interval_ms)

    async def _tick_loop(self) -> None:
        interval = self.voice.tick_interval_ms / 1000
        while True:
            try:
                self.tick()
            except Exception as e:
                logger.error("turn_tick_failed", error=str(e))
            await asyncio.sleep(interval)

    async def close(self) -> None:
        """Tear down: stop the conversation, cancel any in-flight turn, stop the ticker, close the service."""
        self.stop()
        turn = self._turn_task
        if turn is not None and not turn.done():
            turn.cancel()
            try:
                await turn
            except asyncio.CancelledError:
                pass
        if self._ticker and not self._ticker.done():
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
        await self.client.service.close()

    # ── State snapshot ────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        """Flags for the display layer."""
        return {
            "state": self.state.value,
            "active": self.session.active,
            "listening": self.session.listening,
            "thinking": self.session.thinking,
            "speaking": self.session.speaking,
            "pending_utterance_text": self.session.pending_utterance_text,
            "messages": len(self.messages),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.status(),
            "generation": self.session.generation,
            "silence": self.detector.to_dict(),
            "turns_completed": self._turns_completed,
            "turns_discarded": self._turns_discarded,
        }
