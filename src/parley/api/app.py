from dataclasses import dataclass

from litestar import Litestar, Request, Response, get, post, put
from litestar.datastructures import State
from litestar.di import Provide
from litestar.status_codes import (
    HTTP_200_OK,
    HTTP_409_CONFLICT,
    HTTP_502_BAD_GATEWAY,
    HTTP_503_SERVICE_UNAVAILABLE,
)
from loguru import logger

from ..core.audio_data import Transcript
from ..core.engine import Parley
from ..core.errors import DeviceError, ParleyError, SessionBusyError
from ..utils.resources import resource_path
from .log import structlog_plugin

DEFAULT_CONFIG = resource_path("configs/parley_config.yaml")


@dataclass
class TranscriptResponse:
    raw: str
    text: str
    rejected: bool
    rejection: str | None = None

    @classmethod
    def from_transcript(cls, transcript: Transcript) -> "TranscriptResponse":
        return cls(
            raw=transcript.raw,
            text=transcript.text,
            rejected=transcript.rejected,
            rejection=str(transcript.rejection) if transcript.rejection else None,
        )


@dataclass
class StateResponse:
    state: str
    conversational: bool
    recording: bool
    errors: int
    playback_sync_timeouts: int

    @classmethod
    def from_parley(cls, parley: Parley) -> "StateResponse":
        return cls(
            state=str(parley.state),
            conversational=parley.is_conversational,
            recording=parley.is_recording,
            errors=parley.metrics.errors,
            playback_sync_timeouts=parley.metrics.playback_sync_timeouts,
        )


@dataclass
class UtteranceRequest:
    text: str


def provide_parley(state: State) -> Parley:
    return state.parley


@post("/v1/push-to-talk/start", status_code=HTTP_200_OK, sync_to_thread=True)
def start_push_to_talk(parley: Parley) -> StateResponse:
    """Open the microphone and start a push-to-talk recording."""
    parley.start_push_to_talk()
    return StateResponse.from_parley(parley)


@post("/v1/push-to-talk/stop", status_code=HTTP_200_OK, sync_to_thread=True)
def stop_push_to_talk(parley: Parley) -> TranscriptResponse:
    """Stop the push-to-talk recording and return its raw transcript."""
    return TranscriptResponse.from_transcript(parley.stop_push_to_talk())


@post("/v1/push-to-talk/cancel", status_code=HTTP_200_OK, sync_to_thread=True)
def cancel_push_to_talk(parley: Parley) -> StateResponse:
    parley.cancel_push_to_talk()
    return StateResponse.from_parley(parley)


@post("/v1/conversation/start", status_code=HTTP_200_OK, sync_to_thread=False)
def start_conversation(parley: Parley) -> StateResponse:
    parley.start_conversational_mode()
    return StateResponse.from_parley(parley)


@post("/v1/conversation/stop", status_code=HTTP_200_OK, sync_to_thread=True)
def stop_conversation(parley: Parley) -> StateResponse:
    parley.stop_conversational_mode()
    return StateResponse.from_parley(parley)


@put("/v1/assistant-utterance", status_code=HTTP_200_OK, sync_to_thread=False)
def set_assistant_utterance(data: UtteranceRequest, parley: Parley) -> StateResponse:
    """Tell the echo filter what the assistant last said, for replies produced outside the loop."""
    parley.set_last_assistant_utterance(data.text)
    return StateResponse.from_parley(parley)


@get("/v1/state", sync_to_thread=False)
def get_state(parley: Parley) -> StateResponse:
    return StateResponse.from_parley(parley)


def _error_status(error: ParleyError) -> int:
    if isinstance(error, SessionBusyError):
        return HTTP_409_CONFLICT
    if isinstance(error, DeviceError):
        return HTTP_503_SERVICE_UNAVAILABLE
    return HTTP_502_BAD_GATEWAY


def parley_error_handler(request: Request, exc: ParleyError) -> Response[dict[str, str]]:
    logger.warning(f"{request.method} {request.url.path}: {exc.kind}: {exc}")
    return Response(
        content={"error": exc.kind, "detail": exc.user_message},
        status_code=_error_status(exc),
    )


def create_app(parley: Parley | None = None) -> Litestar:
    """
    Build the HTTP surface of the caller contract.

    Parameters:
        parley: The companion to expose. If omitted, one is built from the
            bundled configuration when the application starts.
    """

    def load_default(app: Litestar) -> None:
        if getattr(app.state, "parley", None) is None:
            app.state.parley = Parley.from_yaml(DEFAULT_CONFIG)

    def shutdown(app: Litestar) -> None:
        if getattr(app.state, "parley", None) is not None:
            app.state.parley.shutdown()

    return Litestar(
        [
            start_push_to_talk,
            stop_push_to_talk,
            cancel_push_to_talk,
            start_conversation,
            stop_conversation,
            set_assistant_utterance,
            get_state,
        ],
        dependencies={"parley": Provide(provide_parley, sync_to_thread=False)},
        exception_handlers={ParleyError: parley_error_handler},
        state=State({"parley": parley}),
        on_startup=[load_default],
        on_shutdown=[shutdown],
        plugins=[structlog_plugin],
    )


app = create_app()
