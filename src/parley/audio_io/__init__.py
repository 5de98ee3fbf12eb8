"""Audio input components.

This package provides an abstraction layer for microphone capture, allowing the
voice loop to work with different audio backends interchangeably.

Classes:
    AudioProtocol: Interface for enumerating and opening microphones
    CaptureStream: Interface of one open microphone
    VoiceActivityDetector: Hysteresis voice activity detector
    SoundDeviceAudioIO: Implementation using the sounddevice library

Functions:
    get_audio_system: Factory function to create AudioProtocol instances
"""

import queue
from typing import Protocol

from ..core.audio_data import AudioClip, AudioEnergySample
from .devices import InputDevice, is_system_audio_device, select_input_device, verify_microphone
from .vad import VadEvent, VoiceActivityDetector, frame_energy


class CaptureStream(Protocol):
    label: str

    def get_sample_queue(self) -> queue.Queue[AudioEnergySample]: ...
    def start_recording(self) -> None: ...
    def stop_recording(self) -> AudioClip: ...
    def close(self) -> None: ...


class AudioProtocol(Protocol):
    def list_input_devices(self) -> list[InputDevice]: ...
    def open_microphone(self, monitor: bool = True) -> CaptureStream: ...


# Factory function
def get_audio_system(backend_type: str = "sounddevice", preferred_device: str | None = None) -> AudioProtocol:
    """
    Factory function to get an instance of an audio input system based on the specified backend type.

    Parameters:
        backend_type (str): The type of audio backend to use:
            - "sounddevice": Uses the sounddevice library for local audio capture
        preferred_device (str | None): Optional substring of the microphone label to prefer

    Returns:
        AudioProtocol: An instance of the requested audio system

    Raises:
        ValueError: If the specified backend type is not supported
    """
    if backend_type == "sounddevice":
        from .sounddevice_io import SoundDeviceAudioIO

        return SoundDeviceAudioIO(preferred_device=preferred_device)
    else:
        raise ValueError(f"Unsupported audio backend type: {backend_type}")


__all__ = [
    "AudioProtocol",
    "CaptureStream",
    "InputDevice",
    "VadEvent",
    "VoiceActivityDetector",
    "frame_energy",
    "get_audio_system",
    "is_system_audio_device",
    "select_input_device",
    "verify_microphone",
]
