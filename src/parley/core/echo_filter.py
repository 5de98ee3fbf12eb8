"""
Self-echo removal for transcripts recorded over open speakers.

Without a headset the microphone can pick up the assistant's own synthesized
speech. This module drops sentence fragments of a raw transcript that are
near-duplicates of the assistant's last utterance. It is a heuristic: a short
user phrase that happens to resemble the assistant's wording may be dropped.
"""

from dataclasses import dataclass, field
import re

from Levenshtein import distance
from loguru import logger

MIN_CONTAINED_LENGTH: int = 10  # Contained fragment must be longer than this to count as echo
SIMILARITY_THRESHOLD: float = 0.8

_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")
_TERMINATOR = re.compile(r"[.!?]+$")
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class Fragment:
    body: str
    terminator: str = ""

    @property
    def normalized(self) -> str:
        return normalize(self.body)


def normalize(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    text = _PUNCTUATION.sub("", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def split_fragments(text: str) -> list[Fragment]:
    """Split `text` into sentence-like fragments on `.`, `!` and `?` followed by whitespace."""
    fragments = []
    for part in _SENTENCE_BREAK.split(text.strip()):
        if not part:
            continue
        match = _TERMINATOR.search(part)
        if match:
            fragments.append(Fragment(part[: match.start()].strip(), match.group()))
        else:
            fragments.append(Fragment(part.strip()))
    return fragments


def similarity(first: str, second: str) -> float:
    """Edit-distance similarity in [0, 1]: `(max_len - levenshtein) / max_len`."""
    longest = max(len(first), len(second))
    if longest == 0:
        return 1.0
    return (longest - distance(first, second)) / longest


@dataclass(frozen=True)
class FilteredTranscript:
    """Result of filtering one raw transcript.

    Args:
        raw: The transcript as returned by speech-to-text
        text: What remains after self-echo removal
        removed: Fragments that were dropped as echoes
    """

    raw: str
    text: str
    removed: tuple[str, ...] = field(default_factory=tuple)

    @property
    def echo_only(self) -> bool:
        """True when every fragment of a non-empty transcript was an echo."""
        return bool(self.removed) and not self.text


class EchoFilter:
    """
    Removes fragments of a transcript that repeat the assistant's last utterance.

    A fragment is dropped if any assistant fragment is an exact normalized match,
    contains it (or is contained by it) with more than `MIN_CONTAINED_LENGTH`
    characters, or has edit-distance similarity of at least `SIMILARITY_THRESHOLD`.
    """

    def __init__(
        self,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        min_contained_length: int = MIN_CONTAINED_LENGTH,
    ) -> None:
        self.similarity_threshold = similarity_threshold
        self.min_contained_length = min_contained_length

    def _is_echo(self, candidate: str, references: list[str]) -> str | None:
        for reference in references:
            if candidate == reference:
                return reference
            if candidate in reference and len(candidate) > self.min_contained_length:
                return reference
            if reference in candidate and len(reference) > self.min_contained_length:
                return reference
            if similarity(candidate, reference) >= self.similarity_threshold:
                return reference
        return None

    def filter(self, raw: str, assistant_utterance: str | None) -> FilteredTranscript:
        """
        Strip assistant-voice leakage out of `raw`.

        Args:
            raw: Transcript returned by the speech-to-text collaborator.
            assistant_utterance: The assistant's most recent response, or None.

        Returns:
            FilteredTranscript: The surviving text. Text is empty only when every
            fragment was an echo; if nothing survives for any other reason the raw
            transcript is returned un-filtered.
        """
        raw = raw.strip()
        if not raw or not assistant_utterance or not assistant_utterance.strip():
            return FilteredTranscript(raw=raw, text=raw)

        references = [f.normalized for f in split_fragments(assistant_utterance)]
        references = [r for r in references if r]

        survivors: list[Fragment] = []
        removed: list[str] = []
        for fragment in split_fragments(raw):
            candidate = fragment.normalized
            if not candidate:
                continue
            match = self._is_echo(candidate, references)
            if match is not None:
                logger.debug(f"Echo filter: dropped '{fragment.body}' (matches assistant '{match}')")
                removed.append(fragment.body)
            else:
                survivors.append(fragment)

        if not removed:
            return FilteredTranscript(raw=raw, text=raw)

        if not survivors:
            logger.info(f"Echo filter: transcript was only the assistant's voice: '{raw}'")
            return FilteredTranscript(raw=raw, text="", removed=tuple(removed))

        text = ". ".join(fragment.body for fragment in survivors) + survivors[-1].terminator
        logger.info(f"Echo filter: '{raw}' -> '{text}'")
        return FilteredTranscript(raw=raw, text=text, removed=tuple(removed))


def filter_self_echo(raw: str, assistant_utterance: str | None) -> str:
    """Convenience wrapper returning only the filtered text."""
    return EchoFilter().filter(raw, assistant_utterance).text
