from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from voice_search_server.domain.events import TranscriptUpdate, TranscriptUpdateKind
from voice_search_server.domain.models import InferenceResult, TranscriptState

logger = logging.getLogger(__name__)


class AssemblerPhase(str, Enum):
    COLLECTING = "collecting"
    EMITTING = "emitting"
    FINALIZED = "finalized"


def normalize_text(text: str) -> str:
    return " ".join(text.split())


def _common_prefix_words(left: list[str], right: list[str]) -> int:
    n = 0
    for a, b in zip(left, right):
        if a != b:
            break
        n += 1
    return n


@dataclass(slots=True)
class TranscriptAssembler:
    """Merges successive partial hypotheses into a stable transcript.

    Words that two consecutive hypotheses agree on become committed and are
    never retracted. The rest of the latest hypothesis is the pending tail,
    which later hypotheses may extend (APPEND) or rewrite (REPLACE).
    """

    state: TranscriptState = field(default_factory=TranscriptState)
    phase: AssemblerPhase = AssemblerPhase.COLLECTING

    @property
    def finalized(self) -> bool:
        return self.phase is AssemblerPhase.FINALIZED

    def apply(self, result: InferenceResult) -> list[TranscriptUpdate]:
        if self.phase is AssemblerPhase.FINALIZED:
            logger.debug("[ASR] Ignoring result after final")
            return []
        if result.is_final:
            return [self._finalize(result.text)]
        return self._merge_partial(result.text)

    def _finalize(self, text: str) -> TranscriptUpdate:
        text = normalize_text(text)
        self.state.committed = text
        self.state.pending = ""
        self.phase = AssemblerPhase.FINALIZED
        logger.info(f"[ASR] Final: {text!r}")
        return TranscriptUpdate(
            kind=TranscriptUpdateKind.FINAL,
            text=text,
            display_text=text,
            committed_length=len(text),
        )

    def _merge_partial(self, text: str) -> list[TranscriptUpdate]:
        state = self.state
        committed_words = state.committed.split()
        tail_words = _tail_after_committed(committed_words, normalize_text(text).split())
        pending_words = state.pending.split()

        previous_display = state.display_text

        # prefix two consecutive hypotheses agree on beyond the committed text
        confirmed = _common_prefix_words(pending_words, tail_words)
        if confirmed:
            state.committed = " ".join(committed_words + tail_words[:confirmed])
        state.pending = " ".join(tail_words[confirmed:])

        display = state.display_text
        if display == previous_display:
            return []

        extends = len(tail_words) >= len(pending_words) and tail_words[: len(pending_words)] == pending_words
        if extends:
            kind = TranscriptUpdateKind.APPEND
            update_text = " ".join(tail_words[len(pending_words) :])
        else:
            kind = TranscriptUpdateKind.REPLACE
            update_text = " ".join(tail_words)

        self.phase = AssemblerPhase.EMITTING
        return [
            TranscriptUpdate(
                kind=kind,
                text=update_text,
                display_text=display,
                committed_length=len(state.committed),
            )
        ]


def _compact(word: str) -> str:
    return "".join(ch for ch in word.casefold() if ch.isalnum())


def _tail_after_committed(committed: list[str], hypothesis: list[str]) -> list[str]:
    """Words of `hypothesis` that follow the already committed text.

    Each pass re-transcribes the whole window, so a hypothesis may re-split
    committed words, change their case or punctuation, prepend a filler, or no
    longer cover the oldest of them. The hypothesis is aligned against the
    committed text first so committed words never come back as new text.
    """
    if not committed:
        return hypothesis
    if hypothesis[: len(committed)] == committed:
        return hypothesis[len(committed) :]

    # same characters, different word boundaries ("coffeeshop" / "coffee shop")
    target = "".join(_compact(w) for w in committed)
    if target:
        for start in range(len(hypothesis)):
            joined = ""
            end = start
            while end < len(hypothesis) and len(joined) < len(target):
                joined += _compact(hypothesis[end])
                end += 1
            if joined == target:
                return hypothesis[end:]

    # newest committed words reappear after the window moved past older ones
    committed_keys = [_compact(w) for w in committed]
    hypothesis_keys = [_compact(w) for w in hypothesis]
    for size in range(len(committed_keys), 0, -1):
        suffix = committed_keys[-size:]
        for start in range(len(hypothesis_keys) - size + 1):
            if hypothesis_keys[start : start + size] == suffix:
                return hypothesis[start + size :]

    # no anchor: the committed words were rewritten in place
    agreed = _common_prefix_words(committed, hypothesis)
    return hypothesis[max(agreed, len(committed)) :]
