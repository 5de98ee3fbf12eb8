import pytest

from parley.core.echo_filter import EchoFilter, filter_self_echo, normalize, similarity, split_fragments

RAYLEIGH = "I think the sky is blue because of Rayleigh scattering."


@pytest.fixture
def echo_filter() -> EchoFilter:
    return EchoFilter()


def test_drops_sentence_contained_in_assistant_reply(echo_filter: EchoFilter) -> None:
    result = echo_filter.filter("That's a great question. I think the sky is blue.", RAYLEIGH)

    assert result.text == "That's a great question."
    assert result.removed == ("I think the sky is blue",)
    assert not result.echo_only


def test_exact_echo_leaves_nothing(echo_filter: EchoFilter) -> None:
    result = echo_filter.filter(RAYLEIGH, RAYLEIGH)

    assert result.text == ""
    assert result.echo_only


def test_near_duplicate_is_dropped(echo_filter: EchoFilter) -> None:
    result = echo_filter.filter("The weather is lovely today! Can you play some music?", "The weather is lovely to day.")

    assert result.text == "Can you play some music?"


def test_short_user_phrase_inside_reply_survives(echo_filter: EchoFilter) -> None:
    # "yes please" is contained in the reply but too short to count as leakage
    result = echo_filter.filter("Yes please.", "Would you like me to say yes please to the invitation?")

    assert result.text == "Yes please."
    assert not result.removed


def test_filtering_is_idempotent(echo_filter: EchoFilter) -> None:
    raw = "That's a great question. I think the sky is blue. Why is that?"
    once = echo_filter.filter(raw, RAYLEIGH).text
    twice = echo_filter.filter(once, RAYLEIGH).text

    assert once == "That's a great question. Why is that?"
    assert twice == once


@pytest.mark.parametrize("assistant", [None, "", "   "])
def test_no_baseline_returns_raw(echo_filter: EchoFilter, assistant: str | None) -> None:
    result = echo_filter.filter("  Hello there.  ", assistant)

    assert result.text == "Hello there."
    assert not result.removed


def test_punctuation_only_transcript_is_returned_unfiltered(echo_filter: EchoFilter) -> None:
    result = echo_filter.filter("...", RAYLEIGH)

    assert result.text == "..."
    assert not result.echo_only


def test_unterminated_survivor_keeps_no_terminator() -> None:
    assert filter_self_echo("I think the sky is blue. tell me more", RAYLEIGH) == "tell me more"


def test_normalize() -> None:
    assert normalize("  That's   a GREAT question!! ") == "thats a great question"


def test_split_fragments_keeps_terminators() -> None:
    fragments = split_fragments("Really? Yes! Fine.  ok")

    assert [(f.body, f.terminator) for f in fragments] == [
        ("Really", "?"),
        ("Yes", "!"),
        ("Fine", "."),
        ("ok", ""),
    ]


def test_similarity_bounds() -> None:
    assert similarity("", "") == 1.0
    assert similarity("abc", "abc") == 1.0
    assert similarity("abc", "xyz") == 0.0
    assert similarity("kitten", "sitting") == pytest.approx(4 / 7)
