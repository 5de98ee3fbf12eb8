from parley.core.audio_data import Transcript
from parley.core.events import EventBus, LoopState, Notice, StateChanged, TranscriptReady


def test_subscribers_called_in_order() -> None:
    bus = EventBus()
    calls: list[str] = []
    bus.subscribe(lambda event: calls.append("first"))
    bus.subscribe(lambda event: calls.append("second"))

    bus.publish(Notice(kind="too-short", message="Audio too short"))

    assert calls == ["first", "second"]


def test_failing_subscriber_does_not_block_others() -> None:
    bus = EventBus()
    received: list[object] = []

    def broken(event: object) -> None:
        raise RuntimeError("UI went away")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    event = StateChanged(state=LoopState.RECORDING, previous=LoopState.AWAITING_VOICE)

    bus.publish(event)

    assert received == [event]


def test_unsubscribe_twice_is_harmless() -> None:
    bus = EventBus()
    received: list[object] = []
    unsubscribe = bus.subscribe(received.append)

    unsubscribe()
    unsubscribe()
    bus.publish(TranscriptReady(transcript=Transcript(raw="hi")))

    assert received == []
