"""Error taxonomy for the parley voice loop.

Only `DeviceError` and explicit user cancellation are allowed to end a
conversational session. Everything else is reported and the loop carries on.
"""

from enum import StrEnum


class DeviceFailure(StrEnum):
    NO_DEVICE = "no_device"
    PERMISSION_DENIED = "permission_denied"
    SYSTEM_AUDIO_ONLY = "system_audio_only"
    UNAVAILABLE = "unavailable"


class TranscriptionFailure(StrEnum):
    FORMAT_UNSUPPORTED = "format_unsupported"
    RATE_LIMITED = "rate_limited"
    AUTH_INVALID = "auth_invalid"
    TIMEOUT = "timeout"
    NETWORK = "network"
    TOO_LARGE = "too_large"
    BLOCKED = "blocked"
    NO_TEXT = "no_text"
    UNKNOWN = "unknown"


DEVICE_MESSAGES: dict[DeviceFailure, str] = {
    DeviceFailure.NO_DEVICE: "No microphone found. Please connect a microphone and try again.",
    DeviceFailure.PERMISSION_DENIED: "Microphone permission denied.",
    DeviceFailure.SYSTEM_AUDIO_ONLY: (
        "System audio detected! Please select a physical microphone, not a system audio or loopback device."
    ),
    DeviceFailure.UNAVAILABLE: "Failed to access microphone.",
}

TRANSCRIPTION_MESSAGES: dict[TranscriptionFailure, str] = {
    TranscriptionFailure.FORMAT_UNSUPPORTED: "The recorded audio format isn't supported by the transcription service.",
    TranscriptionFailure.RATE_LIMITED: "Too many requests. Please wait a moment and try again.",
    TranscriptionFailure.AUTH_INVALID: "There's an issue with the API key. Please check the configuration.",
    TranscriptionFailure.TIMEOUT: "The transcription is taking too long. Please try with shorter audio.",
    TranscriptionFailure.NETWORK: "Network connection issue. Please check your internet.",
    TranscriptionFailure.TOO_LARGE: "The audio recording is too large. Please speak more concisely.",
    TranscriptionFailure.BLOCKED: "The content was blocked by safety filters. Please try again.",
    TranscriptionFailure.NO_TEXT: "We're having trouble understanding the audio. Please speak clearly and try again.",
    TranscriptionFailure.UNKNOWN: "We're having trouble with transcription.",
}


class ParleyError(Exception):
    """Base class for all parley errors."""

    user_message: str = "Something went wrong."

    def __init__(self, message: str, user_message: str | None = None) -> None:
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message

    @property
    def kind(self) -> str:
        return type(self).__name__


class DeviceError(ParleyError):
    """The microphone could not be acquired; aborts the current session."""

    def __init__(self, kind: DeviceFailure, message: str | None = None) -> None:
        self.failure = kind
        super().__init__(message or DEVICE_MESSAGES[kind], DEVICE_MESSAGES[kind])

    @property
    def kind(self) -> str:
        return f"device.{self.failure}"


class TranscriptionError(ParleyError):
    """The speech-to-text collaborator failed. Never fatal to the loop."""

    def __init__(self, kind: TranscriptionFailure, message: str | None = None) -> None:
        self.failure = kind
        super().__init__(message or TRANSCRIPTION_MESSAGES[kind], TRANSCRIPTION_MESSAGES[kind])

    @property
    def kind(self) -> str:
        return f"transcription.{self.failure}"


class ResponseError(ParleyError):
    """The AI response generator failed."""

    user_message = "I'm having a little trouble thinking right now."


class SessionBusyError(ParleyError):
    """A recording session is already open, or none is open when one is required."""

    user_message = "A recording is already in progress."


class PlaybackSyncTimeout(ParleyError):
    """Playback did not confirm silence in time. Logged, never raised out of the loop."""

    user_message = "The assistant's voice did not stop in time; listening anyway."
