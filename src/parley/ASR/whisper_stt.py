import os

from loguru import logger
import requests

from ..core.errors import TranscriptionError, TranscriptionFailure
from .http_errors import check_audio_size, classify_request_error

WHISPER_URL = "https://api.openai.com/v1/audio/transcriptions"

_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/mp4": "mp4",
    "audio/mpeg": "mp3",
}


class WhisperTranscriber:
    """Transcribes recordings with an OpenAI-compatible `audio/transcriptions` endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "whisper-1",
        timeout: float = 30.0,
        url: str = WHISPER_URL,
        language: str | None = None,
    ) -> None:
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        self.model = model
        self.timeout = timeout
        self.url = url
        self.language = language

    def transcribe(self, audio: bytes, mime_type: str) -> str:
        check_audio_size(audio)
        extension = _EXTENSIONS.get(mime_type.split(";")[0], "bin")
        data = {"model": self.model}
        if self.language:
            data["language"] = self.language
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        logger.debug(f"Whisper transcribing {len(audio)} bytes of {mime_type}...")
        try:
            response = requests.post(
                self.url,
                headers=headers,
                data=data,
                files={"file": (f"recording.{extension}", audio, mime_type)},
                timeout=self.timeout,
            )
            response.raise_for_status()
            text = response.json().get("text")
        except requests.exceptions.RequestException as e:
            raise classify_request_error(e) from e
        except ValueError as e:
            raise TranscriptionError(TranscriptionFailure.UNKNOWN, f"Invalid JSON from transcription service: {e}") from e

        if text is None:
            raise TranscriptionError(TranscriptionFailure.NO_TEXT, "No text in transcription response")
        text = str(text).strip()
        logger.success(f"ASR text: '{text}'")
        return text
