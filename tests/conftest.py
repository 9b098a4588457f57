"""Shared test fixtures for FestVoice."""
import pytest

from backend.answer_service import AnswerService, MockAnswerService
from config.settings import EventConfig, LLMConfig, ProgramInfo, RetryConfig, VoiceConfig
from context.history import MessageLog
from core.answer_client import RetryingAnswerClient
from core.topic_gate import TopicGate
from voice.devices import PlaybackDevice
from voice.turn_taking import TurnController

from fakes import FakeCapture, FakeClock, FakePlayback, SleepRecorder


# ══════════════════════════════════════════════════════════════
#  FIXTURES
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def event_config() -> EventConfig:
    return EventConfig(
        name="Tech Fest 2026",
        date="2nd week of January 2026",
        date_range="January 9-15, 2026 (approximately)",
        assistant_name="JARVIS",
        creator="MSC CS 1ST YEAR STUDENT JATHU",
        programs=[
            ProgramInfo(name="Gaming Competition", description="Tournaments with prizes."),
            ProgramInfo(name="Treasure Hunt", description="Puzzles around campus."),
            ProgramInfo(name="AI Room", description="Interactive AI demos."),
        ],
    )


@pytest.fixture
def gate(event_config) -> TopicGate:
    return TopicGate(event_config)


@pytest.fixture
def llm_config() -> LLMConfig:
    return LLMConfig(endpoint="https://example.invalid", api_key="k", model="fest-deploy")


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_retries=3, backoff_ms=2000)


@pytest.fixture
def voice_config() -> VoiceConfig:
    return VoiceConfig()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_service() -> MockAnswerService:
    return MockAnswerService(default_text="The fest runs January 9-15.")


@pytest.fixture
def make_client(gate, llm_config, retry_config, sleeper):
    def _make(service: AnswerService) -> RetryingAnswerClient:
        return RetryingAnswerClient(
            service=service, gate=gate, llm=llm_config, retry=retry_config, sleep=sleeper,
        )
    return _make


@pytest.fixture
def capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture
def playback(capture) -> FakePlayback:
    return FakePlayback(capture=capture)


@pytest.fixture
def make_controller(capture, playback, make_client, mock_service, voice_config, clock, sleeper):
    def _make(service: AnswerService = None, playback_device: PlaybackDevice = None) -> TurnController:
        return TurnController(
            capture,
            playback_device or playback,
            client=make_client(service or mock_service),
            messages=MessageLog(),
            voice=voice_config,
            clock=clock,
            sleep=sleeper,
        )
    return _make
