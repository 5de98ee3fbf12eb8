import time

from fakes import (
    BlockingResponder,
    BlockingTranscriber,
    FakeAudioIO,
    FakeCapture,
    FakePlayback,
    FakeResponder,
    FakeTranscriber,
    StickyMutePlayback,
    fast_settings,
    quiet,
    utterance,
)
from pydantic import ValidationError
import pytest

from parley.core.audio_data import AudioEnergySample, RejectionReason
from parley.core.conversation import ConversationLoop, TurnOutcome, VoiceLoopSettings
from parley.core.errors import (
    DeviceError,
    DeviceFailure,
    ResponseError,
    SessionBusyError,
    TranscriptionError,
    TranscriptionFailure,
)
from parley.core.events import ErrorReported, EventBus, LoopState, Notice, StateChanged, TranscriptReady

RAYLEIGH = "I think the sky is blue because of Rayleigh scattering."


def make_loop(
    log: list[str],
    transcriber: FakeTranscriber,
    responder: FakeResponder | None = None,
    captures: list[FakeCapture | Exception] | None = None,
    playback: FakePlayback | None = None,
    open_delay: float = 0.0,
    **settings: object,
) -> tuple[ConversationLoop, FakeAudioIO, FakePlayback, list[object]]:
    playback = playback or FakePlayback(log=log)
    playback.log = log
    transcriber.log = log
    responder = responder or FakeResponder("Okay.", log=log)
    responder.log = log
    audio = FakeAudioIO(
        captures if captures is not None else [FakeCapture(utterance())],
        playback=playback,
        log=log,
        open_delay=open_delay,
    )
    events: list[object] = []
    bus = EventBus()
    bus.subscribe(events.append)
    loop = ConversationLoop(
        audio_io=audio,
        transcriber=transcriber,
        responder=responder,
        playback=playback,
        events=bus,
        settings=fast_settings(**settings),
    )
    return loop, audio, playback, events


def test_dispatched_turn_keeps_playback_muted_until_reply_exists(log: list[str]) -> None:
    responder = FakeResponder("It is blue.")
    loop, audio, playback, events = make_loop(log, FakeTranscriber("What colour is the sky?"), responder)

    assert loop.run_turn() is TurnOutcome.DISPATCHED

    assert log == ["mute", "stop", "open", "close", "transcribe", "respond", "unmute", "play"]
    assert responder.prompts == ["What colour is the sky?"]
    assert playback.played == ["It is blue."]
    assert loop.last_assistant_utterance == "It is blue."
    assert audio.monitor_flags == [True]
    assert audio.opened[0].closed
    assert [e.transcript.text for e in events if isinstance(e, TranscriptReady)] == ["What colour is the sky?"]
    assert loop.metrics.outcomes[TurnOutcome.DISPATCHED] == 1


def test_turn_walks_through_loop_states(log: list[str]) -> None:
    loop, _, _, events = make_loop(log, FakeTranscriber("Tell me a joke."))

    loop.run_turn()

    assert [e.state for e in events if isinstance(e, StateChanged)] == [
        LoopState.PREPARING_TURN,
        LoopState.AWAITING_VOICE,
        LoopState.RECORDING,
        LoopState.TRANSCRIBING,
        LoopState.FILTERING,
        LoopState.DISPATCHING,
        LoopState.SPEAKING,
    ]


def test_echo_only_turn_is_not_dispatched(log: list[str]) -> None:
    responder = FakeResponder()
    loop, _, playback, events = make_loop(log, FakeTranscriber(RAYLEIGH), responder)
    loop.set_last_assistant_utterance(RAYLEIGH)

    assert loop.run_turn() is TurnOutcome.ECHO_ONLY

    assert responder.prompts == []
    assert playback.played == []
    assert not playback.muted
    assert [e.kind for e in events if isinstance(e, Notice)] == ["echo-only"]
    (ready,) = [e for e in events if isinstance(e, TranscriptReady)]
    assert ready.transcript.rejection is RejectionReason.ECHO_ONLY
    assert ready.transcript.raw == RAYLEIGH
    assert not ready.transcript.text.strip()
    assert not any(isinstance(e, ErrorReported) for e in events)
    assert loop.last_assistant_utterance == RAYLEIGH


def test_echo_is_stripped_before_dispatch(log: list[str]) -> None:
    responder = FakeResponder("Good question indeed.")
    transcriber = FakeTranscriber("That's a great question. I think the sky is blue.")
    loop, _, _, events = make_loop(log, transcriber, responder)
    loop.set_last_assistant_utterance(RAYLEIGH)

    assert loop.run_turn() is TurnOutcome.DISPATCHED

    assert responder.prompts == ["That's a great question."]
    (ready,) = [e for e in events if isinstance(e, TranscriptReady)]
    assert ready.transcript.raw == "That's a great question. I think the sky is blue."
    assert ready.transcript.text == "That's a great question."


def test_short_audio_is_not_transcribed(log: list[str]) -> None:
    transcriber = FakeTranscriber("never")
    captures = [FakeCapture(utterance(), clip_data=b"\x00" * 5)]
    loop, _, playback, events = make_loop(log, transcriber, captures=captures)

    assert loop.run_turn() is TurnOutcome.TOO_SHORT

    assert transcriber.calls == []
    assert not playback.muted
    assert [e.kind for e in events if isinstance(e, Notice)] == ["too-short"]
    assert [e.transcript.rejection for e in events if isinstance(e, TranscriptReady)] == [RejectionReason.TOO_SHORT]


def test_oversized_audio_raises_too_large(log: list[str]) -> None:
    transcriber = FakeTranscriber("never")
    loop, _, _, _ = make_loop(log, transcriber, max_audio_bytes=100)

    with pytest.raises(TranscriptionError) as excinfo:
        loop.run_turn()

    assert excinfo.value.failure is TranscriptionFailure.TOO_LARGE
    assert transcriber.calls == []


def test_empty_transcript_is_no_speech(log: list[str]) -> None:
    responder = FakeResponder()
    loop, _, playback, events = make_loop(log, FakeTranscriber("   "), responder)

    assert loop.run_turn() is TurnOutcome.NO_SPEECH
    assert responder.prompts == []
    assert not playback.muted
    (ready,) = [e for e in events if isinstance(e, TranscriptReady)]
    assert ready.transcript.rejection is RejectionReason.NO_SPEECH
    assert [e.kind for e in events if isinstance(e, Notice)] == ["no-speech"]


def test_voice_timeout_releases_microphone(log: list[str]) -> None:
    loop, audio, playback, _ = make_loop(
        log, FakeTranscriber("never"), captures=[FakeCapture(quiet())], voice_onset_timeout=0.05
    )

    assert loop.run_turn() is TurnOutcome.VOICE_TIMEOUT

    capture = audio.opened[0]
    assert capture.closed
    assert not capture.started
    assert log == ["mute", "stop", "open", "close", "unmute"]
    assert not playback.muted


def test_microphone_opens_only_after_playback_is_silent(log: list[str]) -> None:
    playback = FakePlayback(speaking_polls=3)
    loop, audio, _, _ = make_loop(log, FakeTranscriber("Hello there."), playback=playback, playback_stop_timeout=2.0)

    loop.run_turn()

    assert not audio.opened_while_speaking
    assert playback.speaking_polls == 0
    assert loop.metrics.playback_sync_timeouts == 0


def test_playback_sync_timeout_proceeds_and_is_counted(log: list[str]) -> None:
    playback = FakePlayback(speaking_polls=10**6)
    loop, _, _, events = make_loop(log, FakeTranscriber("Hello there."), playback=playback)

    assert loop.run_turn() is TurnOutcome.DISPATCHED

    assert loop.metrics.playback_sync_timeouts == 1
    assert [e.kind for e in events if isinstance(e, Notice)] == ["PlaybackSyncTimeout"]


def test_stale_mute_is_cleared_before_speaking(log: list[str]) -> None:
    playback = StickyMutePlayback()
    loop, _, _, _ = make_loop(log, FakeTranscriber("Hello there."), FakeResponder("Hi!"), playback=playback)

    loop.run_turn()

    assert loop.metrics.stale_mute_fallbacks == 1
    assert playback.played == ["Hi!"]
    assert not playback.muted


def test_response_error_keeps_previous_baseline(log: list[str]) -> None:
    responder = FakeResponder(ResponseError("LLM down"))
    loop, _, _, _ = make_loop(log, FakeTranscriber("Hello there."), responder)
    loop.set_last_assistant_utterance("Earlier reply.")

    with pytest.raises(ResponseError):
        loop.run_turn()

    assert loop.last_assistant_utterance == "Earlier reply."


def test_transcription_error_is_reported_and_loop_continues(log: list[str], wait_for) -> None:
    transcriber = FakeTranscriber(TranscriptionError(TranscriptionFailure.NETWORK), "Are you there?")
    responder = FakeResponder("Yes.")
    captures = [FakeCapture(utterance()), FakeCapture(utterance())]
    loop, audio, playback, events = make_loop(log, transcriber, responder, captures=captures)

    loop.start()
    try:
        assert wait_for(responder.called.is_set)
        assert wait_for(lambda: len(audio.opened) == 3 and loop.state is LoopState.AWAITING_VOICE)
        assert loop.is_active
    finally:
        loop.stop()

    errors = [e for e in events if isinstance(e, ErrorReported)]
    assert [e.kind for e in errors] == ["transcription.network"]
    assert errors[0].user_message == "Network connection issue. Please check your internet."
    assert loop.metrics.errors == 1
    assert loop.metrics.outcomes[TurnOutcome.DISPATCHED] == 1
    assert playback.played == ["Yes."]
    assert all(capture.closed for capture in audio.opened)
    assert not playback.muted
    assert loop.state is LoopState.IDLE
    assert not loop.is_active


def test_device_error_ends_the_session(log: list[str], wait_for) -> None:
    captures: list[FakeCapture | Exception] = [DeviceError(DeviceFailure.NO_DEVICE)]
    loop, _, playback, events = make_loop(log, FakeTranscriber("never"), captures=captures)

    loop.start()
    assert wait_for(lambda: not loop.is_active)
    assert wait_for(lambda: loop.state is LoopState.IDLE)

    (error,) = [e for e in events if isinstance(e, ErrorReported)]
    assert error.kind == "device.no_device"
    assert not playback.muted
    loop.stop()


def test_system_audio_capture_is_refused(log: list[str]) -> None:
    captures: list[FakeCapture | Exception] = [FakeCapture(utterance(), label="Stereo Mix (Realtek Audio)")]
    loop, audio, _, _ = make_loop(log, FakeTranscriber("never"), captures=captures)

    with pytest.raises(DeviceError) as excinfo:
        loop.run_turn()

    assert excinfo.value.failure is DeviceFailure.SYSTEM_AUDIO_ONLY
    assert audio.opened[0].closed


def test_stop_while_recording_releases_device_promptly(log: list[str], wait_for) -> None:
    capture = FakeCapture([AudioEnergySample(energy=90.0, timestamp=0.0)])
    loop, _, playback, _ = make_loop(log, FakeTranscriber("never"), captures=[capture])

    loop.start()
    assert wait_for(lambda: loop.state is LoopState.RECORDING)

    started = time.monotonic()
    loop.stop()
    elapsed = time.monotonic() - started

    assert elapsed < 0.5
    assert capture.stopped
    assert capture.closed
    assert not playback.muted
    assert loop.state is LoopState.IDLE
    assert not loop.is_active


def test_start_twice_runs_one_loop(log: list[str], wait_for) -> None:
    loop, audio, _, _ = make_loop(log, FakeTranscriber("never"), captures=[])

    loop.start()
    try:
        assert wait_for(lambda: loop.state is LoopState.AWAITING_VOICE)
        loop.start()
        time.sleep(0.05)
        assert len(audio.opened) == 1
    finally:
        loop.stop()


def test_restart_after_slow_stop_runs_one_loop(log: list[str], wait_for) -> None:
    loop, audio, _, _ = make_loop(log, FakeTranscriber("never"), captures=[], open_delay=0.3)

    loop.start()
    time.sleep(0.05)
    loop.stop(timeout=0.01)
    assert loop.is_running
    assert not loop.is_active

    loop.start()
    try:
        assert wait_for(lambda: len(audio.opened) == 2 and loop.state is LoopState.AWAITING_VOICE)
        time.sleep(0.1)
        assert [capture.closed for capture in audio.opened] == [True, False]
        assert loop.is_active
    finally:
        loop.stop()

    assert not loop.is_running
    assert all(capture.closed for capture in audio.opened)


def test_restart_refused_while_previous_loop_holds_microphone(log: list[str], wait_for) -> None:
    loop, _, playback, _ = make_loop(log, FakeTranscriber("never"), captures=[], open_delay=0.3)

    loop.start()
    time.sleep(0.05)
    loop.stop(timeout=0.01)

    with pytest.raises(SessionBusyError):
        loop.start(timeout=0.01)

    assert wait_for(lambda: not loop.is_running)
    assert loop.state is LoopState.IDLE
    assert not playback.muted


def test_stop_while_waiting_for_playback_to_end(log: list[str], wait_for) -> None:
    playback = FakePlayback(speaking_polls=10**6)
    loop, audio, _, _ = make_loop(log, FakeTranscriber("never"), playback=playback, playback_stop_timeout=5.0)

    loop.start()
    assert wait_for(lambda: loop.state is LoopState.PREPARING_TURN)

    started = time.monotonic()
    loop.stop()

    assert time.monotonic() - started < 0.5
    assert audio.opened == []
    assert not playback.muted
    assert loop.state is LoopState.IDLE


def test_stop_while_transcribing(log: list[str], wait_for) -> None:
    transcriber = BlockingTranscriber("Hello there.")
    responder = FakeResponder()
    loop, audio, playback, _ = make_loop(log, transcriber, responder)

    loop.start()
    try:
        assert wait_for(transcriber.entered.is_set)
        started = time.monotonic()
        loop.stop()
        elapsed = time.monotonic() - started
    finally:
        transcriber.release.set()

    assert elapsed < 0.5
    assert audio.opened[0].closed
    assert not playback.muted
    assert loop.state is LoopState.IDLE
    assert responder.prompts == []


def test_stop_while_dispatching(log: list[str], wait_for) -> None:
    responder = BlockingResponder("Too late.")
    loop, audio, playback, _ = make_loop(log, FakeTranscriber("Hello there."), responder)

    loop.start()
    try:
        assert wait_for(responder.called.is_set)
        started = time.monotonic()
        loop.stop()
        elapsed = time.monotonic() - started
    finally:
        responder.release.set()

    assert elapsed < 0.5
    assert audio.opened[0].closed
    assert not playback.muted
    assert playback.played == []
    assert loop.state is LoopState.IDLE
    assert loop.last_assistant_utterance == ""


def test_settings_enforce_hysteresis() -> None:
    with pytest.raises(ValidationError):
        VoiceLoopSettings(voice_threshold=30, silence_threshold=30)


def test_settings_cap_poll_interval() -> None:
    with pytest.raises(ValidationError):
        VoiceLoopSettings(poll_interval=0.5)
