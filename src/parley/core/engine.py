"""
Core engine module for the parley voice companion.

This module provides the configuration models and the `Parley` facade, which
wires the audio, transcription, response, and playback collaborators together
and exposes the caller contract used by the CLI and the HTTP surface.
"""

from collections.abc import Callable
from pathlib import Path
import sys
import threading
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, HttpUrl
import yaml

from ..ASR import SpeechToTextProtocol, get_speech_to_text
from ..audio_io import AudioProtocol, get_audio_system
from ..TTS import PlaybackCoordinator, get_playback_coordinator
from .audio_data import Transcript
from .conversation import ConversationLoop, LoopMetrics, VoiceLoopSettings
from .errors import SessionBusyError
from .events import EventBus, LoopState, Subscriber
from .llm_processor import AIResponseGenerator, LanguageModelResponder
from .push_to_talk import PushToTalkRecorder

logger.remove(0)
logger.add(sys.stderr, level="SUCCESS")


class TranscriberConfig(BaseModel):
    engine: str = "gemini"
    api_key: str | None = None
    model: str | None = None
    timeout: float = 30.0

    def to_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"api_key": self.api_key, "timeout": self.timeout}
        if self.model:
            kwargs["model"] = self.model
        return kwargs


class ResponderConfig(BaseModel):
    completion_url: HttpUrl
    model: str
    api_key: str | None = None
    system_prompt: str | None = None
    timeout: float = 30.0


class PlaybackConfig(BaseModel):
    backend: str = "sounddevice"
    url: str = "https://api.openai.com/v1/audio/speech"
    voice: str = "alloy"
    model: str = "tts-1"
    api_key: str | None = None


class ParleyConfig(BaseModel):
    """
    Configuration model for the parley voice companion.

    Defines the audio backend, the speech-to-text, AI response and playback
    collaborators, and the voice loop thresholds and timings. Supports loading
    from YAML files with nested key navigation.
    """

    audio_io: str = "sounddevice"
    input_device: str | None = None
    transcriber: TranscriberConfig = Field(default_factory=TranscriberConfig)
    responder: ResponderConfig
    playback: PlaybackConfig = Field(default_factory=PlaybackConfig)
    voice_loop: VoiceLoopSettings = Field(default_factory=VoiceLoopSettings)

    @classmethod
    def from_yaml(cls, path: str | Path, key_to_config: tuple[str, ...] = ("Parley",)) -> "ParleyConfig":
        """
        Load a ParleyConfig instance from a YAML configuration file.

        Parameters:
            path: Path to the YAML configuration file
            key_to_config: Tuple of keys to navigate nested configuration

        Returns:
            ParleyConfig: Configuration object with validated settings

        Raises:
            ValueError: If the YAML content is invalid
            OSError: If the file cannot be read
            pydantic.ValidationError: If the configuration is invalid
        """
        path = Path(path)

        # Try different encodings
        data = None
        for encoding in ["utf-8", "utf-8-sig"]:
            try:
                data = yaml.safe_load(path.read_text(encoding=encoding))
                break
            except UnicodeDecodeError:
                if encoding == "utf-8-sig":
                    raise ValueError(f"Could not decode YAML file {path} with any supported encoding")

        # Navigate through nested keys
        config = data
        for key in key_to_config:
            config = config[key]

        return cls.model_validate(config)


class Parley:
    """
    Parley voice companion.

    Owns one conversation loop and one push-to-talk recorder that share the
    same microphone, transcriber, and playback coordinator. At most one of them
    may hold the microphone at a time.
    """

    def __init__(
        self,
        audio_io: AudioProtocol,
        transcriber: SpeechToTextProtocol,
        responder: AIResponseGenerator,
        playback: PlaybackCoordinator,
        settings: VoiceLoopSettings | None = None,
        events: EventBus | None = None,
    ) -> None:
        """
        Args:
            audio_io (AudioProtocol): Microphone enumeration and capture.
            transcriber (SpeechToTextProtocol): Speech-to-text service.
            responder (AIResponseGenerator): Produces the assistant's replies.
            playback (PlaybackCoordinator): The assistant's voice.
            settings (VoiceLoopSettings | None): Voice loop thresholds and timings.
            events (EventBus | None): Notification channel; a new one is created if omitted.
        """
        self.events = events or EventBus()
        self.settings = settings or VoiceLoopSettings()
        self.playback = playback

        self.conversation = ConversationLoop(
            audio_io=audio_io,
            transcriber=transcriber,
            responder=responder,
            playback=playback,
            events=self.events,
            settings=self.settings,
        )
        self.push_to_talk = PushToTalkRecorder(
            audio_io=audio_io,
            transcriber=transcriber,
            playback=playback,
            events=self.events,
            settings=self.settings,
        )
        self._mode_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: ParleyConfig) -> "Parley":
        """
        Create a Parley instance from a ParleyConfig configuration object.

        Parameters:
            config (ParleyConfig): Configuration object containing Parley initialization parameters

        Returns:
            Parley: A new Parley instance configured with the provided settings
        """
        audio_io = get_audio_system(backend_type=config.audio_io, preferred_device=config.input_device)
        transcriber = get_speech_to_text(config.transcriber.engine, **config.transcriber.to_kwargs())
        responder = LanguageModelResponder(
            completion_url=config.responder.completion_url,
            model_name=config.responder.model,
            api_key=config.responder.api_key,
            system_prompt=config.responder.system_prompt,
            timeout=config.responder.timeout,
        )
        playback = get_playback_coordinator(
            config.playback.backend,
            url=config.playback.url,
            voice=config.playback.voice,
            model=config.playback.model,
            api_key=config.playback.api_key,
        )
        return cls(
            audio_io=audio_io,
            transcriber=transcriber,
            responder=responder,
            playback=playback,
            settings=config.voice_loop,
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Parley":
        """
        Create a Parley instance from a configuration file.

        Example:
            parley = Parley.from_yaml('configs/parley_config.yaml')
        """
        return cls.from_config(ParleyConfig.from_yaml(path))

    @property
    def state(self) -> LoopState:
        return self.conversation.state

    @property
    def is_conversational(self) -> bool:
        return self.conversation.is_active

    @property
    def is_recording(self) -> bool:
        return self.push_to_talk.is_recording

    @property
    def metrics(self) -> LoopMetrics:
        return self.conversation.metrics

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Subscribe to transcript, error, notice, and state-change events."""
        return self.events.subscribe(callback)

    def set_last_assistant_utterance(self, text: str) -> None:
        self.conversation.set_last_assistant_utterance(text)

    def start_push_to_talk(self) -> None:
        with self._mode_lock:
            if self.conversation.is_running:
                raise SessionBusyError(
                    "Conversational mode is active", "Stop conversational mode before using push-to-talk."
                )
            self.push_to_talk.start()

    def stop_push_to_talk(self) -> Transcript:
        return self.push_to_talk.stop()

    def cancel_push_to_talk(self) -> None:
        self.push_to_talk.cancel()

    def start_conversational_mode(self) -> None:
        with self._mode_lock:
            if self.push_to_talk.is_recording:
                raise SessionBusyError("Push-to-talk recording in progress")
            logger.success("Listening...")
            self.conversation.start()

    def stop_conversational_mode(self) -> None:
        self.conversation.stop()

    def shutdown(self) -> None:
        """Release every resource: stop the loop, discard any recording, silence playback."""
        self.conversation.stop()
        self.push_to_talk.cancel()
        self.playback.stop()
        close = getattr(self.playback, "shutdown", None)
        if callable(close):
            close()
