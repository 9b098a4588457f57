"""
Tests for TurnController — the conversation state machine.

Coverage:
- Start / stop lifecycle and capture ownership
- Voice turns: silence → fetch → speak → listen again
- Typed turns with and without an active voice session
- Busy guard: one pipeline in flight at a time
- Stale results discarded after stop / restart
- Error paths never strand the machine in finalizing or speaking
- Flag invariant: at most one of listening / thinking / speaking
"""
import asyncio
import pytest

from backend.answer_service import MockAnswerService, ServiceResponse
from models.schemas import MessageRole, TurnState
from voice.turn_taking import (
    ALLOWED_TRANSITIONS, BUSY_MESSAGE, ERROR_PREFIX, SPOKEN_APOLOGY,
)

from fakes import FakePlayback, GatedAnswerService, drain


def _assert_flags_exclusive(controller):
    status = controller.status()
    assert sum([status["listening"], status["thinking"], status["speaking"]]) <= 1


def _utter(controller, capture, clock, text, quiet_ms=2000):
    """Say `text`, let the quiet period pass, return the finalized turn task."""
    capture.say(text)
    assert controller.tick() is None
    clock.advance(quiet_ms)
    return controller.tick()


# ══════════════════════════════════════════════════════════════
#  LIFECYCLE
# ══════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_initial_state(self, make_controller):
        controller = make_controller()
        assert controller.state == TurnState.IDLE
        assert controller.status() == {
            "state": "idle",
            "active": False,
            "listening": False,
            "thinking": False,
            "speaking": False,
            "pending_utterance_text": "",
            "messages": 0,
        }

    def test_start_begins_capture(self, make_controller, capture):
        controller = make_controller()
        capture.say("old transcript")

        assert controller.start() is True
        assert controller.state == TurnState.LISTENING
        assert controller.session.active
        assert capture.listening
        assert capture.transcript == ""
        assert capture.start_calls == [{"continuous": True, "language": "en-IN"}]

    def test_start_twice_is_rejected(self, make_controller, capture):
        controller = make_controller()
        controller.start()
        assert controller.start() is False
        assert len(capture.start_calls) == 1

    def test_stop_from_listening(self, make_controller, capture):
        controller = make_controller()
        controller.start()
        capture.say("half a sentence")
        controller.tick()

        controller.stop()
        assert controller.state == TurnState.STOPPED
        assert not controller.session.active
        assert not capture.listening
        assert capture.transcript == ""
        assert not controller.detector.armed

    def test_restart_after_stop(self, make_controller):
        controller = make_controller()
        controller.start()
        controller.stop()
        assert controller.start() is True
        assert controller.state == TurnState.LISTENING

    def test_stop_is_idempotent(self, make_controller):
        controller = make_controller()
        controller.stop()
        controller.stop()
        assert controller.state == TurnState.STOPPED

    def test_transition_table_rejects_illegal_moves(self, make_controller):
        controller = make_controller()
        assert TurnState.SPEAKING not in ALLOWED_TRANSITIONS[TurnState.IDLE]
        assert controller._transition(TurnState.SPEAKING) is False
        assert controller.state == TurnState.IDLE


# ══════════════════════════════════════════════════════════════
#  VOICE TURNS
# ══════════════════════════════════════════════════════════════

class TestVoiceTurn:
    @pytest.mark.asyncio
    async def test_full_turn(self, make_controller, capture, playback, clock, mock_service):
        controller = make_controller()
        controller.start()

        task = _utter(controller, capture, clock, "When is Tech Fest?")
        assert task is not None
        assert controller.state == TurnState.FINALIZING
        assert not capture.listening
        _assert_flags_exclusive(controller)

        await task

        assert [m.role for m in controller.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert controller.messages[0].content == "When is Tech Fest?"
        assert controller.messages[1].content == "The fest runs January 9-15."
        assert playback.spoken == ["The fest runs January 9-15."]
        assert playback.listening_while_speaking is False
        assert controller.state == TurnState.LISTENING
        assert capture.listening
        assert controller.session.pending_utterance_text == ""
        _assert_flags_exclusive(controller)

    @pytest.mark.asyncio
    async def test_utterance_is_trimmed(self, make_controller, capture, clock, mock_service):
        controller = make_controller()
        controller.start()

        await _utter(controller, capture, clock, "  hello  ")

        assert mock_service.requests[0].user_message == "hello"
        assert controller.messages[0].content == "hello"

    @pytest.mark.asyncio
    async def test_continuous_speech_does_not_finalize(self, make_controller, capture, clock):
        controller = make_controller()
        controller.start()

        words = "what time does the gaming competition start".split()
        for i in range(1, len(words) + 1):
            capture.say(" ".join(words[:i]))
            assert controller.tick() is None
            clock.advance(1500)
        assert controller.state == TurnState.LISTENING

        clock.advance(500)
        task = controller.tick()
        assert task is not None
        await task
        assert controller.messages[0].content == " ".join(words)

    @pytest.mark.asyncio
    async def test_pushed_and_sampled_transcript_agree(self, make_controller, capture, clock):
        controller = make_controller()
        controller.start()

        capture.say("tell me about the ai room")
        controller.on_transcript("tell me about the ai room")
        clock.advance(1000)
        assert controller.tick() is None
        clock.advance(1000)
        task = controller.tick()
        assert task is not None
        await task
        assert controller.messages[0].content == "tell me about the ai room"

    @pytest.mark.asyncio
    async def test_pushed_transcript_survives_ticks(self, make_controller, capture, clock):
        controller = make_controller()
        controller.start()

        controller.on_transcript("when is tech fest")
        assert controller.tick() is None
        assert controller.detector.last_text == "when is tech fest"
        assert controller.detector.armed

        clock.advance(2000)
        task = controller.tick()
        assert task is not None
        await task
        assert controller.messages[0].content == "when is tech fest"

    @pytest.mark.asyncio
    async def test_capture_change_after_push_is_sampled(self, make_controller, capture, clock):
        controller = make_controller()
        controller.start()

        controller.on_transcript("when is")
        clock.advance(1500)
        capture.say("when is tech fest")
        assert controller.tick() is None
        clock.advance(1500)
        assert controller.tick() is None
        clock.advance(500)
        task = controller.tick()
        assert task is not None
        await task
        assert controller.messages[0].content == "when is tech fest"

    def test_whitespace_transcript_never_finalizes(self, make_controller, capture, clock):
        controller = make_controller()
        controller.start()
        assert _utter(controller, capture, clock, "    ") is None
        assert controller.state == TurnState.LISTENING

    def test_no_finalize_when_not_started(self, make_controller, capture, clock):
        controller = make_controller()
        assert _utter(controller, capture, clock, "hello there") is None
        assert controller.state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_two_turns_in_a_row(self, make_controller, capture, playback, clock):
        controller = make_controller()
        controller.start()

        await _utter(controller, capture, clock, "When is Tech Fest?")
        await _utter(controller, capture, clock, "Where is the AI room?")

        assert len(controller.messages) == 4
        assert controller.messages[2].content == "Where is the AI room?"
        assert len(playback.spoken) == 2
        assert controller.state == TurnState.LISTENING

    @pytest.mark.asyncio
    async def test_canned_answer_spoken(self, make_controller, capture, playback, clock, mock_service):
        controller = make_controller()
        controller.start()

        await _utter(controller, capture, clock, "what is happening at the fest")

        assert mock_service.call_count == 0
        assert "Treasure Hunt" in playback.spoken[0]


# ══════════════════════════════════════════════════════════════
#  BUSY GUARD
# ══════════════════════════════════════════════════════════════

class TestBusyGuard:
    @pytest.mark.asyncio
    async def test_no_second_finalize_while_thinking(self, make_controller, capture, clock):
        service = GatedAnswerService(ServiceResponse.success("answer"))
        controller = make_controller(service=service)
        controller.start()

        task = _utter(controller, capture, clock, "When is Tech Fest?")
        await drain()
        assert controller.state == TurnState.FINALIZING

        assert controller.submit_text("Another question") is None
        capture.say("more speech while thinking")
        controller.tick()
        clock.advance(5000)
        assert controller.tick() is None
        assert len(service.requests) == 1

        service.gate.set()
        await task
        assert controller.state == TurnState.LISTENING
        assert len(controller.messages) == 2

    @pytest.mark.asyncio
    async def test_no_finalize_while_speaking(self, make_controller, capture, clock):
        playback = FakePlayback(hold=True, capture=capture)
        controller = make_controller(playback_device=playback)
        controller.start()

        task = _utter(controller, capture, clock, "When is Tech Fest?")
        await drain()
        assert controller.state == TurnState.SPEAKING
        _assert_flags_exclusive(controller)

        assert controller.submit_text("interrupting") is None
        controller.on_transcript("my own voice echoing")
        clock.advance(5000)
        assert controller.tick() is None

        playback.release()
        await task
        assert controller.state == TurnState.LISTENING


# ══════════════════════════════════════════════════════════════
#  STOP / RESTART
# ══════════════════════════════════════════════════════════════

class TestStopDuringTurn:
    @pytest.mark.asyncio
    async def test_stale_fetch_discarded_after_restart(self, make_controller, capture, playback, clock):
        service = GatedAnswerService(ServiceResponse.success("stale answer"))
        controller = make_controller(service=service)
        controller.start()

        task = _utter(controller, capture, clock, "When is Tech Fest?")
        await drain()
        assert controller.state == TurnState.FINALIZING

        controller.stop()
        assert controller.state == TurnState.STOPPED
        assert controller.session.pending_utterance_text == ""
        controller.start()

        service.gate.set()
        await task

        assert [m.content for m in controller.messages] == ["When is Tech Fest?"]
        assert playback.spoken == []
        assert controller.state == TurnState.LISTENING
        assert controller.to_dict()["turns_discarded"] == 1

    @pytest.mark.asyncio
    async def test_stop_while_speaking_cancels_speech(self, make_controller, capture, clock):
        playback = FakePlayback(hold=True, capture=capture)
        controller = make_controller(playback_device=playback)
        controller.start()

        task = _utter(controller, capture, clock, "When is Tech Fest?")
        await drain()
        assert controller.state == TurnState.SPEAKING

        controller.stop()
        await task

        assert playback.cancel_calls == 1
        assert controller.state == TurnState.STOPPED
        assert not controller.speech.speaking
        assert not capture.listening

    @pytest.mark.asyncio
    async def test_start_rejected_while_typed_turn_in_flight(self, make_controller):
        service = GatedAnswerService(ServiceResponse.success("answer"))
        controller = make_controller(service=service)

        task = controller.submit_text("When is Tech Fest?")
        await drain()
        assert controller.start() is False

        service.gate.set()
        await task
        assert controller.state == TurnState.IDLE


# ══════════════════════════════════════════════════════════════
#  TYPED TURNS
# ══════════════════════════════════════════════════════════════

class TestTypedTurn:
    @pytest.mark.asyncio
    async def test_typed_without_voice_is_not_spoken(self, make_controller, playback):
        controller = make_controller()

        task = controller.submit_text("  When is Tech Fest?  ")
        assert controller.state == TurnState.FINALIZING
        assert controller.status()["thinking"] is True
        await task

        assert [m.content for m in controller.messages] == [
            "When is Tech Fest?", "The fest runs January 9-15.",
        ]
        assert playback.spoken == []
        assert controller.state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_typed_during_voice_session_is_spoken(self, make_controller, capture, playback):
        controller = make_controller()
        controller.start()
        capture.say("partial speech")

        task = controller.submit_text("Tell me about AI Room")
        assert not capture.listening
        await task

        assert playback.spoken == ["The fest runs January 9-15."]
        assert controller.state == TurnState.LISTENING
        assert capture.listening

    def test_empty_typed_input_ignored(self, make_controller):
        controller = make_controller()
        assert controller.submit_text("   ") is None
        assert controller.submit_text("") is None
        assert len(controller.messages) == 0

    @pytest.mark.asyncio
    async def test_typed_error_without_voice(self, make_controller, playback):
        service = MockAnswerService([ServiceResponse.failure(500, "backend down")])
        controller = make_controller(service=service)

        await controller.submit_text("When is Tech Fest?")

        assert controller.messages.last.content == ERROR_PREFIX + "backend down"
        assert controller.messages.last.is_error
        assert playback.spoken == []
        assert controller.state == TurnState.IDLE


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class TestErrors:
    @pytest.mark.asyncio
    async def test_service_error_shown_and_apology_spoken(self, make_controller, capture, playback, clock):
        service = MockAnswerService([ServiceResponse.failure(500, "model overloaded")])
        controller = make_controller(service=service)
        controller.start()

        await _utter(controller, capture, clock, "When is Tech Fest?")

        assert controller.messages.last.content == ERROR_PREFIX + "model overloaded"
        assert playback.spoken == [SPOKEN_APOLOGY]
        assert controller.state == TurnState.LISTENING
        assert capture.listening

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion_is_a_visible_failure(self, make_controller, capture, playback, clock):
        limited = ServiceResponse.failure(429)
        service = MockAnswerService([limited, limited, limited])
        controller = make_controller(service=service)
        controller.start()

        await _utter(controller, capture, clock, "When is Tech Fest?")

        assert controller.messages.last.content == ERROR_PREFIX + BUSY_MESSAGE
        assert playback.spoken == [SPOKEN_APOLOGY]
        assert controller.state == TurnState.LISTENING

    @pytest.mark.asyncio
    async def test_empty_answer_is_a_failure(self, make_controller, capture, clock):
        service = MockAnswerService([ServiceResponse.success("")])
        controller = make_controller(service=service)
        controller.start()

        await _utter(controller, capture, clock, "When is Tech Fest?")
        assert controller.messages.last.is_error

    @pytest.mark.asyncio
    async def test_playback_error_returns_to_listening(self, make_controller, capture, clock):
        playback = FakePlayback(fail=True, capture=capture)
        controller = make_controller(playback_device=playback)
        controller.start()

        await _utter(controller, capture, clock, "When is Tech Fest?")

        assert controller.state == TurnState.LISTENING
        assert not controller.speech.speaking
        assert capture.listening

    @pytest.mark.asyncio
    async def test_unexpected_service_exception(self, make_controller, capture, playback, clock):
        class ExplodingService(MockAnswerService):
            async def complete(self, request):
                raise RuntimeError("socket exploded")

        controller = make_controller(service=ExplodingService())
        controller.start()

        await _utter(controller, capture, clock, "When is Tech Fest?")

        assert controller.messages.last.content == ERROR_PREFIX + "socket exploded"
        assert playback.spoken == [SPOKEN_APOLOGY]
        assert controller.state == TurnState.LISTENING


# ══════════════════════════════════════════════════════════════
#  TICKER
# ══════════════════════════════════════════════════════════════

class TestTicker:
    @pytest.mark.asyncio
    async def test_ticker_runs_and_close_stops_it(self, make_controller):
        controller = make_controller()
        controller.start()
        controller.start_ticker()
        await asyncio.sleep(0)
        assert controller._ticker is not None and not controller._ticker.done()

        await controller.close()
        assert controller._ticker.done()
        assert controller.state == TurnState.STOPPED

    @pytest.mark.asyncio
    async def test_close_mid_fetch_cancels_turn(self, make_controller, capture, playback, clock):
        service = GatedAnswerService(ServiceResponse.success("too late"))
        controller = make_controller(service=service)
        controller.start()

        task = _utter(controller, capture, clock, "When is Tech Fest?")
        await drain()
        assert len(service.requests) == 1

        await controller.close()

        assert task.done()
        assert task.cancelled()
        assert controller.state == TurnState.STOPPED
        assert [m.content for m in controller.messages] == ["When is Tech Fest?"]
        assert playback.spoken == []

    @pytest.mark.asyncio
    async def test_close_after_finished_turn(self, make_controller, capture, clock):
        controller = make_controller()
        controller.start()
        await _utter(controller, capture, clock, "When is Tech Fest?")

        await controller.close()
        assert controller.state == TurnState.STOPPED
        assert len(controller.messages) == 2
