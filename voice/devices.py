"""
Device interfaces for the voice loop.

The turn controller never touches audio directly. It drives a capture
device (speech recognition producing a growing transcript) and a playback
device (speech synthesis), both of which are exclusive, single-owner
resources. Concrete implementations live with whatever hosts the loop.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass


@dataclass
class VoiceParams:
    """Synthesis parameters handed to the playback device with every utterance."""
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0
    language: str = "en-IN"


class CaptureDevice(abc.ABC):
    """Continuous speech recognizer exposing a live transcript."""

    @abc.abstractmethod
    def start_listening(self, continuous: bool = True, language: str = "en-IN") -> None:
        ...

    @abc.abstractmethod
    def stop_listening(self) -> None:
        ...

    @abc.abstractmethod
    def reset(self) -> None:
        """Clear the accumulated transcript."""
        ...

    @property
    @abc.abstractmethod
    def transcript(self) -> str:
        ...

    @property
    @abc.abstractmethod
    def listening(self) -> bool:
        ...


class PlaybackDevice(abc.ABC):
    """Speech synthesizer with a single output channel."""

    @abc.abstractmethod
    async def play(self, text: str, params: VoiceParams) -> None:
        """
        Speak `text`. Returns when playback ends naturally.

        Raises:
            SpeechPlaybackError: the synthesizer failed
            asyncio.CancelledError: playback was cancelled
        """
        ...

    @abc.abstractmethod
    def cancel(self) -> None:
        """Stop whatever is being spoken right now."""
        ...
