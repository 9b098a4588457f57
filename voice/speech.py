"""
Speech Output Coordinator — one voice on the speaker at a time.

Each `speak()` supersedes whatever came before it: the previous job is
cancelled, never queued. While a job plays, capture is suspended so the
recognizer cannot transcribe the assistant's own voice. When playback ends
(or fails) and the conversation is still running, capture resumes after a
short settle delay with fresh transcript state.

The returned future is the completion signal. It always resolves, with a
PlaybackOutcome, whether the job completed, failed or was cancelled.
"""
from __future__ import annotations

import asyncio
import structlog
from enum import Enum
from typing import Awaitable, Callable, Optional

from models.schemas import ConversationSession, SpeechJob
from voice.devices import CaptureDevice, PlaybackDevice, VoiceParams
from voice.silence import SilenceDetector

logger = structlog.get_logger()


class PlaybackOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SpeechOutputCoordinator:

    def __init__(
        self,
        session: ConversationSession,
        playback: PlaybackDevice,
        capture: CaptureDevice,
        detector: SilenceDetector,
        params: VoiceParams = None,
        pre_speak_ms: int = 300,
        settle_ms: int = 500,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.playback = playback
        self.capture = capture
        self.detector = detector
        self.params = params or VoiceParams()
        self.pre_speak_ms = pre_speak_ms
        self.settle_ms = settle_ms
        self._sleep = sleep

        self._job: Optional[SpeechJob] = None
        self._task: Optional[asyncio.Task] = None
        self._done: Optional[asyncio.Future] = None
        self._speaking: bool = False

    @property
    def speaking(self) -> bool:
        return self._speaking

    @property
    def active_job(self) -> Optional[SpeechJob]:
        return self._job

    def speak(self, text: str) -> asyncio.Future:
        """Start speaking `text`, superseding any current job."""
        self.cancel()

        job = SpeechJob(text=text)
        done = asyncio.get_running_loop().create_future()
        self._job = job
        self._done = done
        self._task = asyncio.create_task(
            self._run(job, done, self.session.generation),
            name=f"speech_{job.id[:8]}",
        )
        return done

    def cancel(self) -> None:
        """Silence the speaker and resolve the current job as cancelled."""
        task, done, job = self._task, self._done, self._job
        self._task = self._done = self._job = None
        self._speaking = False

        if task is not None and not task.done():
            task.cancel()
            self.playback.cancel()
            logger.info("speech_cancelled", job_id=job.id if job else None)
        if done is not None and not done.done():
            done.set_result(PlaybackOutcome.CANCELLED)

    async def _run(self, job: SpeechJob, done: asyncio.Future, generation: int) -> None:
        outcome = PlaybackOutcome.CANCELLED
        try:
            self.capture.stop_listening()
            await self._sleep(self.pre_speak_ms / 1000)

            self._speaking = True
            # anything recognized before the voice started is stale
            self.capture.reset()
            self.detector.reset()
            logger.info("speech_started", job_id=job.id, chars=len(job.text))
            try:
                await self.playback.play(job.text, self.params)
                outcome = PlaybackOutcome.COMPLETED
                logger.info("speech_finished", job_id=job.id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                outcome = PlaybackOutcome.FAILED
                logger.error("speech_playback_error", job_id=job.id, error=str(e))
            finally:
                self._speaking = False

            if self._still_running(generation):
                await self._sleep(self.settle_ms / 1000)
                if self._still_running(generation):
                    self._resume_capture()
        except asyncio.CancelledError:
            outcome = PlaybackOutcome.CANCELLED
        finally:
            if self._job is job:
                self._job = None
                self._task = None
                self._done = None
            if not done.done():
                done.set_result(outcome)

    def _still_running(self, generation: int) -> bool:
        return self.session.active and self.session.generation == generation

    def _resume_capture(self) -> None:
        self.capture.reset()
        self.detector.reset()
        self.capture.start_listening(continuous=True, language=self.params.language)
        logger.debug("capture_resumed")
