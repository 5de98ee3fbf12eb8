"""
Half-duplex conversation loop.

The loop mutes the assistant, waits until it is really silent, listens for the
user, records until they stop talking, transcribes, strips self-echo, asks the
AI for a reply, and only then unmutes and lets the assistant speak. It repeats
until conversational mode is switched off.

All effectful transitions (mute, unmute, stop, device open/close) are issued
from the loop thread. Every wait is sliced into `poll_interval` pieces and
checks the shutdown event between slices, so `stop()` is honoured within one
polling interval wherever the loop happens to be.
"""

from collections import Counter
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import StrEnum
import queue
import threading
import time
from typing import Any, TypeVar

from loguru import logger
from pydantic import BaseModel, Field, model_validator

from ..ASR import SpeechToTextProtocol
from ..audio_io import AudioProtocol, CaptureStream, VadEvent, VoiceActivityDetector, verify_microphone
from ..TTS import PlaybackCoordinator
from .audio_data import AudioEnergySample, RecordingSession, RejectionReason, TerminationReason, Transcript
from .echo_filter import EchoFilter
from .errors import (
    DeviceError,
    ParleyError,
    PlaybackSyncTimeout,
    SessionBusyError,
    TranscriptionError,
    TranscriptionFailure,
)
from .events import ErrorReported, EventBus, LoopState, Notice, StateChanged, TranscriptReady
from .llm_processor import AIResponseGenerator

T = TypeVar("T")

ECHO_ONLY_MESSAGE = "Only heard the AI's voice. Please wait for the AI to finish speaking, then try again!"
TOO_SHORT_MESSAGE = "Audio too short - please speak longer."
NO_SPEECH_MESSAGE = "No speech was recognised. Please speak clearly and try again."


class VoiceLoopSettings(BaseModel):
    """Tunable thresholds and timings of the voice loop. Durations are in seconds."""

    voice_threshold: float = Field(default=50.0, ge=0, le=255)
    silence_threshold: float = Field(default=30.0, ge=0, le=255)
    silence_duration: float = Field(default=1.5, gt=0)
    poll_interval: float = Field(default=0.1, gt=0, le=0.1)
    playback_stop_timeout: float = Field(default=5.0, ge=0)
    settle_delay: float = Field(default=1.0, ge=0)
    error_backoff: float = Field(default=1.0, ge=0)
    voice_onset_timeout: float | None = Field(default=None, gt=0)
    max_recording_seconds: float | None = Field(default=None, gt=0)
    min_audio_bytes: int = Field(default=100, ge=0)
    max_audio_bytes: int = Field(default=20 * 1024 * 1024, gt=0)
    min_transcript_chars: int = Field(default=3, ge=0)

    @model_validator(mode="after")
    def _check_hysteresis(self) -> "VoiceLoopSettings":
        if self.silence_threshold >= self.voice_threshold:
            raise ValueError("silence_threshold must be lower than voice_threshold")
        return self


class TurnOutcome(StrEnum):
    DISPATCHED = "dispatched"
    ECHO_ONLY = "echo-only"
    TOO_SHORT = "too-short"
    NO_SPEECH = "no-speech"
    VOICE_TIMEOUT = "voice-timeout"


@dataclass
class LoopMetrics:
    outcomes: Counter[TurnOutcome] = field(default_factory=Counter)
    errors: int = 0
    playback_sync_timeouts: int = 0
    stale_mute_fallbacks: int = 0


class LoopCancelled(Exception):
    """Raised inside the loop thread when conversational mode is switched off."""


class ConversationLoop:
    """
    Conversation loop controller.

    Owns the loop state, the conversational-mode flag, and the baseline the
    echo filter compares against. Collaborators are injected at construction
    and only ever driven from the loop thread.
    """

    def __init__(
        self,
        audio_io: AudioProtocol,
        transcriber: SpeechToTextProtocol,
        responder: AIResponseGenerator,
        playback: PlaybackCoordinator,
        events: EventBus | None = None,
        settings: VoiceLoopSettings | None = None,
        echo_filter: EchoFilter | None = None,
    ) -> None:
        self.audio_io = audio_io
        self.transcriber = transcriber
        self.responder = responder
        self.playback = playback
        self.events = events or EventBus()
        self.settings = settings or VoiceLoopSettings()
        self.echo_filter = echo_filter or EchoFilter()
        self.metrics = LoopMetrics()

        self._state = LoopState.IDLE
        self._state_lock = threading.Lock()
        self._last_assistant_utterance = ""
        self._shutdown_event = threading.Event()
        self._lifecycle_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

        self._capture: CaptureStream | None = None
        self._session: RecordingSession | None = None

    # -- state -----------------------------------------------------------------

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def is_active(self) -> bool:
        """The conversational-mode flag; the only kill switch for the loop."""
        return self.is_running and not self._shutdown_event.is_set()

    @property
    def is_running(self) -> bool:
        """True while a loop thread exists, including one still winding down after `stop()`."""
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def last_assistant_utterance(self) -> str:
        return self._last_assistant_utterance

    def set_last_assistant_utterance(self, text: str) -> None:
        """Replace the echo filter's baseline, e.g. after a reply produced outside the loop."""
        self._last_assistant_utterance = text
        logger.debug(f"Stored AI response for filtering: '{text[:50]}'")

    def _set_state(self, state: LoopState) -> None:
        with self._state_lock:
            previous, self._state = self._state, state
        if previous != state:
            logger.debug(f"ConversationLoop: {previous} -> {state}")
            self.events.publish(StateChanged(state=state, previous=previous))

    # -- lifecycle -------------------------------------------------------------

    def start(self, timeout: float | None = 2.0) -> None:
        """
        Switch conversational mode on and run the loop on a background thread.

        A previous loop that is still releasing the microphone is joined first.

        Raises:
            SessionBusyError: If the previous loop did not finish within `timeout`
        """
        with self._lifecycle_lock:
            thread = self._thread
            if thread is not None and thread.is_alive():
                if not self._shutdown_event.is_set():
                    logger.info("Conversational mode already running.")
                    return
                thread.join(timeout)
                if thread.is_alive():
                    raise SessionBusyError(
                        "Previous conversation loop still holds the microphone",
                        "Conversational mode is still shutting down. Please try again.",
                    )
            # Each run watches its own flag, so a restart never revives a stopped loop
            self._shutdown_event = threading.Event()
            self._thread = threading.Thread(target=self.run, name="ConversationLoop", daemon=True)
            self._thread.start()

    def stop(self, timeout: float | None = 2.0) -> None:
        """Switch conversational mode off and wait for the loop to release the microphone."""
        self._shutdown_event.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("ConversationLoop: thread did not finish in time; it will exit at its next poll.")
        elif self._thread is thread:
            self._thread = None

    def run(self) -> None:
        """
        Run turns until conversational mode is switched off.

        Transcription, response, and capture failures are reported and the loop
        backs off before trying again. A `DeviceError` ends the session.
        """
        logger.success("Conversational mode started")
        try:
            while not self._shutdown_event.is_set():
                try:
                    self.run_turn()
                except LoopCancelled:
                    break
                except DeviceError as e:
                    self._report_error(e)
                    break
                except ParleyError as e:
                    self._report_error(e)
                    if not self._backoff():
                        break
                except Exception as e:
                    logger.exception(f"ConversationLoop: Unexpected error in turn: {e}")
                    self._report_error(e)
                    if not self._backoff():
                        break
        finally:
            self._release_capture(TerminationReason.USER_CANCELLED)
            self.playback.unmute()
            if self._executor is not None:
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = None
            self._set_state(LoopState.IDLE)
            logger.success("Conversational mode stopped")

    # -- one turn --------------------------------------------------------------

    def run_turn(self) -> TurnOutcome:
        """
        Perform a single listen-transcribe-respond-speak cycle.

        Returns:
            TurnOutcome: How the turn ended.

        Raises:
            LoopCancelled: If conversational mode was switched off mid-turn
            DeviceError: If no acceptable microphone could be opened
            TranscriptionError: If the speech-to-text call failed
            ResponseError: If the AI response call failed
        """
        self._prepare_turn()

        session = self._capture_utterance()
        if session is None:
            return self._abandon(TurnOutcome.VOICE_TIMEOUT)

        self._set_state(LoopState.TRANSCRIBING)
        clip = session.clip
        if clip is None or clip.size < self.settings.min_audio_bytes:
            logger.warning(f"Audio too short ({clip.size if clip else 0} bytes), skipping transcription")
            rejected = Transcript(raw="", rejection=RejectionReason.TOO_SHORT)
            return self._reject(rejected, TOO_SHORT_MESSAGE, TurnOutcome.TOO_SHORT)
        if clip.size > self.settings.max_audio_bytes:
            raise TranscriptionError(TranscriptionFailure.TOO_LARGE, f"Audio too large: {clip.size} bytes")

        raw = self._await_call(self.transcriber.transcribe, clip.data, clip.mime_type)
        if not raw.strip():
            rejected = Transcript(raw=raw, rejection=RejectionReason.NO_SPEECH)
            return self._reject(rejected, NO_SPEECH_MESSAGE, TurnOutcome.NO_SPEECH)

        self._set_state(LoopState.FILTERING)
        filtered = self.echo_filter.filter(raw, self._last_assistant_utterance)
        if filtered.echo_only or len(filtered.text.strip()) < self.settings.min_transcript_chars:
            logger.warning("Filtered transcript is empty or too short - user might not have spoken")
            rejected = Transcript(raw=raw, filtered=filtered, rejection=RejectionReason.ECHO_ONLY)
            return self._reject(rejected, ECHO_ONLY_MESSAGE, TurnOutcome.ECHO_ONLY)

        transcript = Transcript(raw=raw, filtered=filtered)
        logger.success(f"Final transcript: '{transcript.text}'")
        self.events.publish(TranscriptReady(transcript=transcript))

        self._set_state(LoopState.DISPATCHING)
        reply = self._await_call(self.responder.respond, transcript.text)
        self._last_assistant_utterance = reply

        self._speak(reply)
        self.metrics.outcomes[TurnOutcome.DISPATCHED] += 1
        return TurnOutcome.DISPATCHED

    def _prepare_turn(self) -> None:
        """Silence the assistant and wait until it confirms it is not speaking."""
        self._set_state(LoopState.PREPARING_TURN)
        self.playback.mute()
        self.playback.stop()

        deadline = time.monotonic() + self.settings.playback_stop_timeout
        while self.playback.is_speaking():
            if time.monotonic() >= deadline:
                self._playback_sync_timeout()
                break
            self._wait(self.settings.poll_interval)

        # Hardware buffers may still be draining after playback reports silence
        self._wait(self.settings.settle_delay)

    def _playback_sync_timeout(self) -> None:
        self.metrics.playback_sync_timeouts += 1
        error = PlaybackSyncTimeout(
            f"Playback still reports speaking after {self.settings.playback_stop_timeout}s; proceeding anyway"
        )
        logger.warning(f"ConversationLoop: {error}")
        self.events.publish(Notice(kind=error.kind, message=error.user_message))

    def _capture_utterance(self) -> RecordingSession | None:
        """
        Open the microphone, wait for voice onset, and record until voice offset.

        Returns:
            RecordingSession | None: The finished session, or None if no voice
            started before `voice_onset_timeout`.
        """
        self._set_state(LoopState.AWAITING_VOICE)
        capture = self.audio_io.open_microphone(monitor=True)
        self._capture = capture
        try:
            verify_microphone(capture.label)
            samples = capture.get_sample_queue()
            vad = VoiceActivityDetector(
                voice_threshold=self.settings.voice_threshold,
                silence_threshold=self.settings.silence_threshold,
                silence_duration=self.settings.silence_duration,
            )

            onset = self._await_onset(vad, samples)
            if onset is None:
                logger.info(f"No voice within {self.settings.voice_onset_timeout}s ({TerminationReason.VOICE_TIMEOUT})")
                self._release_capture(TerminationReason.VOICE_TIMEOUT)
                return None

            session = RecordingSession.begin(capture)
            self._session = session
            vad.begin_recording(onset.timestamp)
            self._set_state(LoopState.RECORDING)

            reason = self._await_offset(vad, samples, session)
            session.finish(reason)
            return session
        except LoopCancelled:
            self._release_capture(TerminationReason.USER_CANCELLED)
            raise
        finally:
            self._release_capture(TerminationReason.ERROR)

    def _await_onset(
        self, vad: VoiceActivityDetector, samples: queue.Queue[AudioEnergySample]
    ) -> AudioEnergySample | None:
        timeout = self.settings.voice_onset_timeout
        deadline = time.monotonic() + timeout if timeout else None
        while True:
            self._check_cancelled()
            if deadline is not None and time.monotonic() >= deadline:
                return None
            try:
                sample = samples.get(timeout=self.settings.poll_interval)
            except queue.Empty:
                continue
            if vad.update(sample) is VadEvent.VOICE_ONSET:
                logger.debug(f"Voice onset at energy {sample.energy:.1f}")
                return sample

    def _await_offset(
        self,
        vad: VoiceActivityDetector,
        samples: queue.Queue[AudioEnergySample],
        session: RecordingSession,
    ) -> TerminationReason:
        limit = self.settings.max_recording_seconds
        while True:
            self._check_cancelled()
            if limit is not None and session.duration >= limit:
                logger.info(f"Recording reached the {limit}s limit")
                return TerminationReason.SILENCE_DETECTED
            try:
                sample = samples.get(timeout=self.settings.poll_interval)
            except queue.Empty:
                continue
            if vad.update(sample) is VadEvent.VOICE_OFFSET:
                logger.debug("Detected pause after speech. Processing...")
                return TerminationReason.SILENCE_DETECTED

    def _speak(self, reply: str) -> None:
        """Unmute only now that the reply exists, then play it and wait for it to finish."""
        self._set_state(LoopState.SPEAKING)
        self.playback.unmute()
        if self.playback.is_muted:
            # Stale mute flag with the microphone already released: speak anyway, but count it
            self.metrics.stale_mute_fallbacks += 1
            logger.warning("ConversationLoop: playback still muted after unmute; re-unmuting and speaking anyway")
            self.playback.unmute()

        completion = self.playback.play(reply)
        try:
            self._await_future(completion)
        except LoopCancelled:
            raise
        except Exception as e:
            logger.error(f"ConversationLoop: playback failed: {e}")
            self.events.publish(ErrorReported(kind="playback", message=str(e), user_message="Could not play the reply."))

    def _reject(self, transcript: Transcript, message: str, outcome: TurnOutcome) -> TurnOutcome:
        """Publish a transcript that will not be dispatched, with the reason it was turned down."""
        self.events.publish(TranscriptReady(transcript=transcript))
        self.events.publish(Notice(kind=str(transcript.rejection), message=message))
        return self._abandon(outcome)

    def _abandon(self, outcome: TurnOutcome) -> TurnOutcome:
        self.playback.unmute()
        self.metrics.outcomes[outcome] += 1
        logger.info(f"Turn abandoned: {outcome}")
        return outcome

    # -- waiting ---------------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self._shutdown_event.is_set():
            raise LoopCancelled()

    def _wait(self, seconds: float) -> None:
        """Sleep for `seconds`, waking immediately if conversational mode is switched off."""
        if seconds > 0 and self._shutdown_event.wait(seconds):
            raise LoopCancelled()
        self._check_cancelled()

    def _await_future(self, future: Future[T]) -> T:
        while not future.done():
            self._check_cancelled()
            wait([future], timeout=self.settings.poll_interval)
        self._check_cancelled()
        return future.result()

    def _await_call(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking collaborator call on the worker thread, abandoning it on cancellation."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ConversationWorker")
        return self._await_future(self._executor.submit(func, *args))

    def _backoff(self) -> bool:
        """Wait out the error backoff. Returns False if the loop was switched off meanwhile."""
        self.playback.unmute()
        try:
            self._wait(self.settings.error_backoff)
        except LoopCancelled:
            return False
        return True

    # -- resources and reporting -----------------------------------------------

    def _release_capture(self, reason: TerminationReason) -> None:
        session, self._session = self._session, None
        capture, self._capture = self._capture, None
        if session is not None and session.is_open:
            session.finish(reason)
        if capture is not None:
            capture.close()

    def _report_error(self, error: Exception) -> None:
        self.metrics.errors += 1
        if isinstance(error, ParleyError):
            kind, user_message = error.kind, error.user_message
            logger.error(f"ConversationLoop: {kind}: {error}")
        else:
            kind, user_message = type(error).__name__, "Something went wrong while listening."
        self.playback.unmute()
        self.events.publish(ErrorReported(kind=kind, message=str(error), user_message=user_message))
