"""Loop state and the notification channel the surrounding UI subscribes to."""

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
import threading

from loguru import logger

from .audio_data import Transcript


class LoopState(StrEnum):
    IDLE = "idle"
    PREPARING_TURN = "preparing_turn"
    AWAITING_VOICE = "awaiting_voice"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    FILTERING = "filtering"
    DISPATCHING = "dispatching"
    SPEAKING = "speaking"


@dataclass(frozen=True)
class StateChanged:
    state: LoopState
    previous: LoopState


@dataclass(frozen=True)
class TranscriptReady:
    transcript: Transcript


@dataclass(frozen=True)
class ErrorReported:
    kind: str
    message: str
    user_message: str


@dataclass(frozen=True)
class Notice:
    kind: str
    message: str


Event = StateChanged | TranscriptReady | ErrorReported | Notice
Subscriber = Callable[[Event], None]


class EventBus:
    """
    Fan-out of loop events to subscribers.

    Subscribers are called synchronously on the publishing thread, in
    subscription order. A subscriber that raises is logged and skipped, so a
    broken UI callback can never stall the voice loop.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register `callback` and return a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.exception(f"EventBus: subscriber {callback!r} failed on {type(event).__name__}: {e}")
