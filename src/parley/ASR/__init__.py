"""Speech-to-text collaborators.

The voice loop hands an encoded recording to a transcriber and gets text back.
Failures are raised as `TranscriptionError` with a classified cause.
"""

from typing import Any, Protocol

from .http_errors import classify_request_error, classify_status


class SpeechToTextProtocol(Protocol):
    def transcribe(self, audio: bytes, mime_type: str) -> str: ...


# Factory function
def get_speech_to_text(engine_type: str = "gemini", **kwargs: Any) -> SpeechToTextProtocol:
    """
    Factory function to get an instance of a speech-to-text service based on the specified engine type.

    Parameters:
        engine_type (str): The type of transcription service to use:
            - "gemini": Google Gemini generateContent with inline audio
            - "whisper": OpenAI-compatible audio/transcriptions endpoint
        **kwargs: Additional keyword arguments to pass to the transcriber constructor

    Returns:
        SpeechToTextProtocol: An instance of the requested transcriber

    Raises:
        ValueError: If the specified engine type is not supported
    """
    if engine_type.lower() == "gemini":
        from .gemini_stt import GeminiTranscriber

        return GeminiTranscriber(**kwargs)
    elif engine_type.lower() == "whisper":
        from .whisper_stt import WhisperTranscriber

        return WhisperTranscriber(**kwargs)
    else:
        raise ValueError(f"Unsupported speech-to-text engine type: {engine_type}")


__all__ = ["SpeechToTextProtocol", "classify_request_error", "classify_status", "get_speech_to_text"]
