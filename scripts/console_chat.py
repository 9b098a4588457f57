#!/usr/bin/env python3
"""
Console Chat — talk to the assistant from a terminal.

Typed mode sends each line straight to the answer client. Voice mode runs
the full turn loop: lines are fed to a simulated recognizer as a growing
transcript, the silence detector closes the utterance, and answers are
"spoken" to stdout.

Usage:
    python scripts/console_chat.py                  # typed questions
    python scripts/console_chat.py --voice          # simulated voice loop
    python scripts/console_chat.py --mock           # no network, canned mock answers

Commands: /1 /2 /3 ask a quick question, /quit exits.
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

from backend.answer_service import MockAnswerService, create_answer_service
from config.logging import setup_logging
from config.settings import load_settings
from core.answer_client import RetryingAnswerClient
from models.schemas import MessageRole, TurnState
from voice.devices import CaptureDevice, PlaybackDevice, VoiceParams
from voice.turn_taking import TurnController

QUICK_QUESTIONS = (
    "What programs are available?",
    "When is Tech Fest?",
    "Tell me about AI Room",
)


class TextCapture(CaptureDevice):
    """Recognizer stand-in: typed lines extend the transcript while listening."""

    def __init__(self):
        self._transcript = ""
        self._listening = False

    def start_listening(self, continuous: bool = True, language: str = "en-IN") -> None:
        self._listening = True

    def stop_listening(self) -> None:
        self._listening = False

    def reset(self) -> None:
        self._transcript = ""

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def listening(self) -> bool:
        return self._listening

    def feed(self, words: str) -> bool:
        if not self._listening:
            return False
        self._transcript = f"{self._transcript} {words}".strip()
        return True


class ConsolePlayback(PlaybackDevice):
    """Prints instead of speaking; takes roughly as long as reading it aloud."""

    WORDS_PER_SECOND = 3.0

    async def play(self, text: str, params: VoiceParams) -> None:
        print(f"🔊 ({params.language}) {text}")
        await asyncio.sleep(min(len(text.split()) / self.WORDS_PER_SECOND, 5.0) / params.rate)

    def cancel(self) -> None:
        print("🔇")


def _print_new(controller: TurnController, printed: int) -> int:
    for message in controller.messages.snapshot()[printed:]:
        icon = "👤" if message.role == MessageRole.USER else "🤖"
        print(f"{icon} {message.content}")
    return len(controller.messages)


async def _wait_for_turn(controller: TurnController, timeout_s: float) -> None:
    """Voice mode: wait for the silence detector to close the utterance and the turn to end."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while controller.state == TurnState.LISTENING and loop.time() < deadline:
        await asyncio.sleep(0.1)
    await controller.wait_idle()


async def run(args: argparse.Namespace) -> None:
    load_dotenv()
    settings = load_settings(args.config)
    setup_logging("DEBUG" if settings.debug else "WARNING", settings.log_format)

    service = MockAnswerService() if args.mock else create_answer_service(settings.llm)
    capture = TextCapture()
    controller = TurnController(
        capture,
        ConsolePlayback(),
        client=RetryingAnswerClient(service=service),
        voice=settings.voice,
    )

    printed = 0
    if args.voice:
        controller.start()
        controller.start_ticker()
    print(f"{settings.event.assistant_name} ready. Ask about {settings.event.name}. /quit to exit.")

    try:
        while True:
            line = await asyncio.to_thread(input, "> ")
            command = line.strip()
            if command in ("/quit", "/exit"):
                break
            if command[1:].isdigit() and command.startswith("/"):
                index = int(command[1:]) - 1
                if 0 <= index < len(QUICK_QUESTIONS):
                    line = QUICK_QUESTIONS[index]

            if args.voice:
                if not capture.feed(line):
                    print("(not listening right now)")
                    continue
                await _wait_for_turn(controller, timeout_s=settings.voice.silence_ms / 1000 + 5)
            else:
                task = controller.submit_text(line)
                if task is not None:
                    await task
            printed = _print_new(controller, printed)
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        await controller.close()


def main():
    parser = argparse.ArgumentParser(description="Chat with the event assistant from a terminal")
    parser.add_argument("--voice", action="store_true", help="Run the simulated voice loop")
    parser.add_argument("--mock", action="store_true", help="Use the mock answer service")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    asyncio.run(run(parser.parse_args()))


if __name__ == "__main__":
    main()
