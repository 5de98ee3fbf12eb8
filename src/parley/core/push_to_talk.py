"""Push-to-talk: record between two explicit user actions and return the raw transcript."""

import threading

from loguru import logger

from ..ASR import SpeechToTextProtocol
from ..audio_io import AudioProtocol, verify_microphone
from ..TTS import PlaybackCoordinator
from .audio_data import RecordingSession, RejectionReason, TerminationReason, Transcript
from .conversation import NO_SPEECH_MESSAGE, TOO_SHORT_MESSAGE, VoiceLoopSettings
from .errors import ParleyError, SessionBusyError, TranscriptionError, TranscriptionFailure
from .events import ErrorReported, EventBus, Notice, TranscriptReady


class PushToTalkRecorder:
    """
    Single-shot recorder sharing device selection and transcription with the loop.

    No echo filtering is applied: the assistant was not necessarily just
    speaking. Playback is muted while the microphone is open and unmuted again
    on every exit path.
    """

    def __init__(
        self,
        audio_io: AudioProtocol,
        transcriber: SpeechToTextProtocol,
        playback: PlaybackCoordinator,
        events: EventBus | None = None,
        settings: VoiceLoopSettings | None = None,
    ) -> None:
        self.audio_io = audio_io
        self.transcriber = transcriber
        self.playback = playback
        self.events = events or EventBus()
        self.settings = settings or VoiceLoopSettings()

        self._lock = threading.Lock()
        self._session: RecordingSession | None = None

    @property
    def is_recording(self) -> bool:
        return self._session is not None

    def start(self) -> None:
        """
        Mute the assistant and start recording.

        Raises:
            SessionBusyError: If a push-to-talk recording is already open
            DeviceError: If no acceptable microphone could be opened
        """
        with self._lock:
            if self._session is not None:
                raise SessionBusyError("Push-to-talk recording already in progress")

            logger.info("Muting TTS during voice input...")
            self.playback.mute()
            self.playback.stop()

            capture = None
            try:
                capture = self.audio_io.open_microphone(monitor=False)
                verify_microphone(capture.label)
                self._session = RecordingSession.begin(capture)
            except Exception as e:
                if capture is not None:
                    capture.close()
                self.playback.unmute()
                logger.error(f"Push-to-talk: could not start recording: {e}")
                if isinstance(e, ParleyError):
                    self.events.publish(ErrorReported(kind=e.kind, message=str(e), user_message=e.user_message))
                raise

    def cancel(self) -> None:
        """Discard the open recording without transcribing it."""
        with self._lock:
            session, self._session = self._session, None
        if session is not None:
            session.finish(TerminationReason.USER_CANCELLED)
        self.playback.unmute()

    def stop(self) -> Transcript:
        """
        Stop recording, release the microphone, and transcribe.

        Returns:
            Transcript: The raw transcript, or a rejected one if the audio was too short or held no speech.

        Raises:
            SessionBusyError: If no recording is open
            TranscriptionError: If the speech-to-text call failed
        """
        with self._lock:
            session, self._session = self._session, None
        if session is None:
            raise SessionBusyError("No push-to-talk recording in progress", "Not recording.")

        try:
            clip = session.finish(TerminationReason.USER_STOPPED)
            if clip is None or clip.size < self.settings.min_audio_bytes:
                logger.warning("Audio too short, skipping transcription")
                return self._reject(Transcript(raw="", rejection=RejectionReason.TOO_SHORT), TOO_SHORT_MESSAGE)
            if clip.size > self.settings.max_audio_bytes:
                raise TranscriptionError(TranscriptionFailure.TOO_LARGE, f"Audio too large: {clip.size} bytes")

            raw = self.transcriber.transcribe(clip.data, clip.mime_type).strip()
            if not raw:
                return self._reject(Transcript(raw="", rejection=RejectionReason.NO_SPEECH), NO_SPEECH_MESSAGE)

            transcript = Transcript(raw=raw)
            self.events.publish(TranscriptReady(transcript=transcript))
            return transcript
        except ParleyError as e:
            logger.error(f"Push-to-talk: {e}")
            self.events.publish(ErrorReported(kind=e.kind, message=str(e), user_message=e.user_message))
            raise
        finally:
            logger.info("Unmuting TTS after voice input...")
            self.playback.unmute()

    def _reject(self, transcript: Transcript, message: str) -> Transcript:
        self.events.publish(TranscriptReady(transcript=transcript))
        self.events.publish(Notice(kind=str(transcript.rejection), message=message))
        return transcript
