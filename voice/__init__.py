"""
Voice Subsystem — spoken turn-taking around the answer client.

Modules:
- devices: capture / playback interfaces the loop drives
- silence: end-of-utterance detection on a live transcript
- speech: single-channel playback coordination
- turn_taking: the conversation state machine
"""
from voice.devices import CaptureDevice, PlaybackDevice, VoiceParams
from voice.silence import SilenceDetector, DEFAULT_QUIET_MS
from voice.speech import SpeechOutputCoordinator, PlaybackOutcome
from voice.turn_taking import (
    TurnController, ALLOWED_TRANSITIONS,
    SPOKEN_APOLOGY, ERROR_PREFIX, BUSY_MESSAGE,
)

__all__ = [
    "CaptureDevice", "PlaybackDevice", "VoiceParams",
    "SilenceDetector", "DEFAULT_QUIET_MS",
    "SpeechOutputCoordinator", "PlaybackOutcome",
    "TurnController", "ALLOWED_TRANSITIONS",
    "SPOKEN_APOLOGY", "ERROR_PREFIX", "BUSY_MESSAGE",
]
