"""Energy-based voice activity detection.

Energy is read the way a browser `AnalyserNode` reports byte frequency data:
a Blackman-windowed FFT over 512 samples, magnitudes in dB mapped onto 0-255,
averaged over the 256 frequency bins. The detector then applies a hysteresis
pair of thresholds with a silence timer to produce edge-triggered onset and
offset events.
"""

from enum import StrEnum

import numpy as np
from numpy.typing import NDArray

from ..core.audio_data import AudioEnergySample

FFT_SIZE: int = 512
MIN_DECIBELS: float = -100.0
MAX_DECIBELS: float = -30.0

_WINDOW = np.blackman(FFT_SIZE).astype(np.float32)


def frame_energy(samples: NDArray[np.float32]) -> float:
    """
    Compute the loudness of one analysis window on the 0-255 scale.

    Args:
        samples: Mono float32 audio in [-1.0, 1.0]. Only the last `FFT_SIZE`
            samples are used; shorter input is zero padded.

    Returns:
        float: Mean byte-scaled magnitude across the `FFT_SIZE // 2` frequency bins.
    """
    frame = np.asarray(samples, dtype=np.float32).reshape(-1)[-FFT_SIZE:]
    if frame.size < FFT_SIZE:
        frame = np.pad(frame, (0, FFT_SIZE - frame.size))

    spectrum = np.fft.rfft(frame * _WINDOW)[: FFT_SIZE // 2]
    magnitude = np.abs(spectrum) / FFT_SIZE
    decibels = 20 * np.log10(np.maximum(magnitude, 1e-12))
    scaled = 255 * (decibels - MIN_DECIBELS) / (MAX_DECIBELS - MIN_DECIBELS)
    return float(np.mean(np.clip(scaled, 0, 255)))


class VadEvent(StrEnum):
    VOICE_ONSET = "voice-onset"
    VOICE_OFFSET = "voice-offset"


class VoiceActivityDetector:
    """
    Turns a stream of energy samples into one onset and one offset event.

    The detector reads time only from the samples it is given, so it behaves
    identically on live audio and on synthetic sequences.
    """

    VOICE_THRESHOLD: float = 50.0
    SILENCE_THRESHOLD: float = 30.0
    SILENCE_DURATION: float = 1.5  # Seconds below the silence threshold before offset

    def __init__(
        self,
        voice_threshold: float | None = None,
        silence_threshold: float | None = None,
        silence_duration: float | None = None,
    ) -> None:
        self.voice_threshold = self.VOICE_THRESHOLD if voice_threshold is None else voice_threshold
        self.silence_threshold = self.SILENCE_THRESHOLD if silence_threshold is None else silence_threshold
        self.silence_duration = self.SILENCE_DURATION if silence_duration is None else silence_duration

        if self.silence_threshold >= self.voice_threshold:
            raise ValueError("Silence threshold must be lower than the voice threshold")
        if self.silence_duration <= 0:
            raise ValueError("Silence duration must be positive")

        self._voice_started = False
        self._finished = False
        self._silence_start = 0.0

    @property
    def voice_started(self) -> bool:
        return self._voice_started

    @property
    def finished(self) -> bool:
        return self._finished

    def reset(self) -> None:
        """Forget all state so the detector can serve a new recording session."""
        self._voice_started = False
        self._finished = False
        self._silence_start = 0.0

    def begin_recording(self, timestamp: float) -> None:
        """Seed the silence timer at the moment recording begins."""
        self._silence_start = timestamp

    def update(self, sample: AudioEnergySample) -> VadEvent | None:
        """Feed one sample; return an event on the onset or offset edge, else None."""
        if self._finished:
            return None

        if not self._voice_started:
            if sample.energy > self.voice_threshold:
                self._voice_started = True
                self._silence_start = sample.timestamp
                return VadEvent.VOICE_ONSET
            return None

        if sample.energy > self.voice_threshold:
            self._silence_start = sample.timestamp
        elif sample.energy < self.silence_threshold:
            if sample.timestamp - self._silence_start > self.silence_duration:
                self._finished = True
                return VadEvent.VOICE_OFFSET
        return None
