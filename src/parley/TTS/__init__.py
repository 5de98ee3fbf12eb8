"""Text-to-Speech (TTS) playback components.

This module provides the protocol-based interface the voice loop uses to
coordinate with the assistant's voice, and a factory for the bundled player.

Classes:
    SpeechSynthesizerProtocol: Protocol for turning text into audio
    PlaybackCoordinator: Protocol for muting, stopping and playing the assistant's voice

Functions:
    get_playback_coordinator: Factory function to create playback instances
"""

from concurrent.futures import Future
from typing import Any, Protocol

import numpy as np
from numpy.typing import NDArray


class SpeechSynthesizerProtocol(Protocol):
    def generate_speech_audio(self, text: str) -> tuple[NDArray[np.float32], int]: ...


class PlaybackCoordinator(Protocol):
    """Everything the voice loop may ask of the assistant's voice. Every method is idempotent."""

    @property
    def is_muted(self) -> bool: ...

    def mute(self) -> None: ...
    def unmute(self) -> None: ...
    def stop(self) -> None: ...
    def is_speaking(self) -> bool: ...
    def play(self, text: str) -> Future[None]: ...


# Factory function
def get_playback_coordinator(backend_type: str = "sounddevice", **kwargs: Any) -> PlaybackCoordinator:
    """
    Factory function to get an instance of a playback coordinator.

    Parameters:
        backend_type (str): The playback backend to use:
            - "sounddevice": HTTP speech synthesis played through the default output device
        **kwargs: Passed to the synthesizer constructor (url, voice, model, api_key)

    Returns:
        PlaybackCoordinator: An instance of the requested player

    Raises:
        ValueError: If the specified backend type is not supported
    """
    if backend_type == "sounddevice":
        from ..core.speech_player import SpeechPlayer
        from .http_tts import HttpSpeechSynthesizer

        return SpeechPlayer(synthesizer=HttpSpeechSynthesizer(**kwargs))
    raise ValueError(f"Unsupported playback backend type: {backend_type}")


__all__ = ["PlaybackCoordinator", "SpeechSynthesizerProtocol", "get_playback_coordinator"]
