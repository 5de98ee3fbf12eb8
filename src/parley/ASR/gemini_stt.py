import base64
import os
from typing import Any

from loguru import logger
import requests

from ..core.errors import TranscriptionError, TranscriptionFailure
from .http_errors import check_audio_size, classify_request_error

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

TRANSCRIBE_PROMPT = (
    "Listen to this audio carefully. This recording may contain TWO voices: (1) An AI assistant speaking, "
    "and (2) A human user speaking. Your task is to transcribe ONLY what the HUMAN USER said. IGNORE and DO NOT "
    "transcribe the AI assistant's voice. If you only hear the AI assistant and no human speech, return an empty "
    "response. Return ONLY the human user's spoken words, nothing else."
)


class GeminiTranscriber:
    """
    Transcribes recordings with Gemini `generateContent`, sending the audio inline as base64.

    The prompt already asks the model to ignore the assistant's voice; the
    self-echo filter still runs afterwards because the model does not always
    manage to.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gemini-1.5-flash",
        timeout: float = 30.0,
        url: str | None = None,
    ) -> None:
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY", "")
        self.model = model
        self.timeout = timeout
        self.url = url or GEMINI_URL.format(model=model)

        if not self.api_key:
            raise TranscriptionError(TranscriptionFailure.AUTH_INVALID, "Gemini API key not configured")

    def _build_request(self, audio: bytes, mime_type: str) -> dict[str, Any]:
        return {
            "contents": [
                {
                    "parts": [
                        {"text": TRANSCRIBE_PROMPT},
                        {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(audio).decode("ascii")}},
                    ]
                }
            ],
            "generationConfig": {"temperature": 0.1, "maxOutputTokens": 1000, "topP": 0.95},
        }

    def _extract_text(self, payload: dict[str, Any]) -> str:
        candidates = payload.get("candidates") or [{}]
        candidate = candidates[0]
        parts = candidate.get("content", {}).get("parts") or [{}]
        text = parts[0].get("text")
        if text:
            return str(text).strip()
        if candidate.get("finishReason") == "SAFETY":
            raise TranscriptionError(TranscriptionFailure.BLOCKED, "Blocked by safety filters")
        raise TranscriptionError(TranscriptionFailure.NO_TEXT, f"No text in Gemini response: {payload}")

    def transcribe(self, audio: bytes, mime_type: str) -> str:
        """
        Transcribe one encoded recording.

        Raises:
            TranscriptionError: With the classified cause on any failure
        """
        check_audio_size(audio)
        logger.debug(f"Gemini transcribing {len(audio)} bytes of {mime_type}...")
        try:
            response = requests.post(
                self.url,
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
                json=self._build_request(audio, mime_type),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise classify_request_error(e) from e

        try:
            payload = response.json()
        except ValueError as e:
            raise TranscriptionError(TranscriptionFailure.UNKNOWN, f"Invalid JSON from Gemini: {e}") from e

        text = self._extract_text(payload)
        logger.success(f"ASR text: '{text}'")
        return text
