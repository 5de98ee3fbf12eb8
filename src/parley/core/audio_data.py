"""Core audio data structures for the parley voice loop.

This module defines the value objects passed between the capture layer, the
voice activity detector, the recording session, and the transcript filter.
"""

from dataclasses import dataclass, field
from enum import StrEnum
import time
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from ..audio_io import CaptureStream
    from .echo_filter import FilteredTranscript


@dataclass(frozen=True)
class AudioEnergySample:
    """Loudness of one analysis window.

    Args:
        energy: Mean frequency-bin magnitude on the 0-255 scale
        timestamp: Stream time in seconds of the end of the window
    """

    energy: float
    timestamp: float


@dataclass(frozen=True)
class AudioClip:
    """Encoded audio as produced natively by the capture device.

    Args:
        data: Encoded audio bytes, passed to transcription opaquely
        mime_type: MIME type of `data`
    """

    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


class TerminationReason(StrEnum):
    VOICE_TIMEOUT = "voice-timeout"
    SILENCE_DETECTED = "silence-detected"
    USER_STOPPED = "user-stopped"
    USER_CANCELLED = "user-cancelled"
    ERROR = "error"


@dataclass
class RecordingSession:
    """One open microphone capture, from start of recording until the device is released."""

    capture: "CaptureStream"
    started_at: float = field(default_factory=time.monotonic)
    reason: TerminationReason | None = None
    clip: AudioClip | None = None

    @classmethod
    def begin(cls, capture: "CaptureStream") -> "RecordingSession":
        capture.start_recording()
        logger.info(f"Recording started on '{capture.label}'")
        return cls(capture=capture)

    @property
    def is_open(self) -> bool:
        return self.reason is None

    @property
    def duration(self) -> float:
        return time.monotonic() - self.started_at

    def finish(self, reason: TerminationReason) -> AudioClip | None:
        """Stop recording, release the device, and keep the encoded audio.

        Safe to call more than once; only the first reason is recorded.
        """
        if not self.is_open:
            return self.clip
        self.reason = reason
        try:
            self.clip = self.capture.stop_recording()
        finally:
            self.capture.close()
        size = self.clip.size if self.clip else 0
        logger.info(f"Recording finished ({reason}) after {self.duration:.2f}s, {size} bytes")
        return self.clip


class RejectionReason(StrEnum):
    TOO_SHORT = "too-short"
    NO_SPEECH = "no-speech"
    ECHO_ONLY = "echo-only"


@dataclass(frozen=True)
class Transcript:
    """Raw transcription of one recording session, plus its filtered form when the loop produced one."""

    raw: str
    filtered: "FilteredTranscript | None" = None
    rejection: RejectionReason | None = None

    @property
    def text(self) -> str:
        if self.filtered is not None:
            return self.filtered.text
        return self.raw

    @property
    def rejected(self) -> bool:
        return self.rejection is not None
