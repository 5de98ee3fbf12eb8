import io
import os

from loguru import logger
import numpy as np
from numpy.typing import NDArray
import requests
import soundfile as sf

SPEECH_URL = "https://api.openai.com/v1/audio/speech"


class HttpSpeechSynthesizer:
    """Synthesizes speech with an OpenAI-compatible `POST /v1/audio/speech` endpoint.

    The response is requested as WAV and decoded with soundfile.
    """

    def __init__(
        self,
        url: str = SPEECH_URL,
        voice: str = "alloy",
        model: str = "tts-1",
        api_key: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.url = url
        self.voice = voice
        self.model = model
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self.timeout = timeout

    def generate_speech_audio(self, text: str) -> tuple[NDArray[np.float32], int]:
        """
        Generate speech audio for `text`.

        Returns:
            tuple[NDArray[np.float32], int]: Mono float32 samples and their sample rate

        Raises:
            requests.exceptions.RequestException: If the synthesis request fails
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = requests.post(
            self.url,
            headers=headers,
            json={"input": text, "model": self.model, "voice": self.voice, "response_format": "wav"},
            timeout=self.timeout,
        )
        response.raise_for_status()

        audio, sample_rate = sf.read(io.BytesIO(response.content), dtype="float32")
        if audio.ndim > 1:
            audio = audio.mean(axis=1)
        logger.debug(f"TTS: {len(audio) / sample_rate:.2f}s of audio for '{text[:50]}'")
        return audio, int(sample_rate)
