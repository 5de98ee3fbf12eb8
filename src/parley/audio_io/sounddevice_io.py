import io
import queue
import threading

from loguru import logger
import numpy as np
from numpy.typing import NDArray
import sounddevice as sd  # type: ignore
import soundfile as sf

from ..core.audio_data import AudioClip, AudioEnergySample
from ..core.errors import DeviceError, DeviceFailure
from .devices import InputDevice, select_input_device, verify_microphone
from .vad import FFT_SIZE, frame_energy


class SoundDeviceCapture:
    """One open microphone stream.

    The PortAudio callback runs on its own thread: it computes the energy of
    every block for the voice activity detector and, while recording, keeps a
    copy of the raw samples. Everything else is called from the controller.
    """

    def __init__(self, device: InputDevice, sample_rate: int, monitor: bool = True) -> None:
        self.device = device
        self.label = device.label
        self.sample_rate = sample_rate
        self.monitor = monitor

        self._sample_queue: queue.Queue[AudioEnergySample] = queue.Queue()
        self._chunks: list[NDArray[np.float32]] = []
        self._chunks_lock = threading.Lock()
        self._recording = False
        self._frames_seen = 0
        self._stream: sd.InputStream | None = None

    def open(self) -> "SoundDeviceCapture":
        """Start the input stream.

        Raises:
            DeviceError: If PortAudio refuses to open the device
        """

        def audio_callback(
            indata: NDArray[np.float32],
            frames: int,
            time: sd.CallbackStop,
            status: sd.CallbackFlags,
        ) -> None:
            if status:
                logger.debug(f"Audio callback status: {status}")

            data = np.array(indata).copy().squeeze()  # Reduce to single channel if necessary
            self._frames_seen += frames
            if self._recording:
                with self._chunks_lock:
                    self._chunks.append(data)
            if self.monitor:
                timestamp = self._frames_seen / self.sample_rate
                self._sample_queue.put(AudioEnergySample(energy=frame_energy(data), timestamp=timestamp))

        try:
            self._stream = sd.InputStream(
                device=self.device.index,
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                callback=audio_callback,
                blocksize=FFT_SIZE,
            )
            self._stream.start()
        except sd.PortAudioError as e:
            self._stream = None
            raise DeviceError(DeviceFailure.UNAVAILABLE, f"Failed to open '{self.label}': {e}") from e

        logger.info(f"Microphone '{self.label}' opened at {self.sample_rate} Hz")
        return self

    def get_sample_queue(self) -> queue.Queue[AudioEnergySample]:
        """Get the queue of per-block energy readings."""
        return self._sample_queue

    def start_recording(self) -> None:
        with self._chunks_lock:
            self._chunks = []
        self._recording = True

    def stop_recording(self) -> AudioClip:
        """Stop keeping samples and encode what was recorded as 16-bit WAV."""
        self._recording = False
        with self._chunks_lock:
            chunks, self._chunks = self._chunks, []

        if not chunks:
            return AudioClip(data=b"", mime_type="audio/wav")

        buffer = io.BytesIO()
        sf.write(buffer, np.concatenate(chunks), self.sample_rate, format="WAV", subtype="PCM_16")
        return AudioClip(data=buffer.getvalue(), mime_type="audio/wav")

    def close(self) -> None:
        """Stop the input stream and release the device. Safe to call repeatedly."""
        self._recording = False
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.error(f"Error stopping input stream: {e}")
            finally:
                self._stream = None
                logger.debug(f"Microphone '{self.label}' released")


class SoundDeviceAudioIO:
    """Audio input implementation using sounddevice.

    Enumerates host input devices, applies the system-audio denylist, and opens
    `SoundDeviceCapture` streams on the selected microphone.
    """

    SAMPLE_RATE: int = 16000  # Sample rate for input stream

    def __init__(self, preferred_device: str | None = None, sample_rate: int | None = None) -> None:
        self.preferred_device = preferred_device
        self.sample_rate = sample_rate or self.SAMPLE_RATE

    def list_input_devices(self) -> list[InputDevice]:
        """List every host device that has at least one input channel."""
        try:
            devices = sd.query_devices()
        except sd.PortAudioError as e:
            raise DeviceError(DeviceFailure.UNAVAILABLE, f"Failed to query audio devices: {e}") from e

        return [
            InputDevice(
                index=index,
                label=str(info["name"]),
                max_input_channels=int(info["max_input_channels"]),
                default_samplerate=float(info["default_samplerate"]),
            )
            for index, info in enumerate(devices)
            if info["max_input_channels"] > 0
        ]

    def open_microphone(self, monitor: bool = True) -> SoundDeviceCapture:
        """
        Open the selected microphone.

        Args:
            monitor: Whether to publish per-block energy samples for voice activity detection

        Raises:
            DeviceError: If no acceptable microphone exists or it cannot be opened
        """
        device = select_input_device(self.list_input_devices(), preferred=self.preferred_device)
        capture = SoundDeviceCapture(device, sample_rate=self.sample_rate, monitor=monitor).open()
        try:
            verify_microphone(capture.label)
        except DeviceError:
            capture.close()
            raise
        return capture
