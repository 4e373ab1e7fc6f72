from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from voice_search_server.domain.models import InferenceResult, MelFeatureWindow


class InferenceEngine(Protocol):
    """Blocking speech model boundary. Not safe to call concurrently."""

    def infer(self, window: MelFeatureWindow, *, is_final: bool) -> InferenceResult: ...
    def close(self) -> None: ...


@dataclass(slots=True)
class ScriptedInferenceEngine:
    """Deterministic engine that replays scripted texts.

    Partial passes return `partials` in order (the last one repeats once the
    script runs out); the final pass returns `final`. An optional gate blocks
    every call until it is set, which lets tests hold the worker busy.
    """

    partials: Sequence[str] = ()
    final: str = ""
    gate: threading.Event | None = None
    fail_with: Exception | None = None
    calls: list[tuple[int, bool]] = field(default_factory=list)
    closed: bool = False
    _partial_index: int = 0

    def infer(self, window: MelFeatureWindow, *, is_final: bool) -> InferenceResult:
        self.calls.append((window.sequence, is_final))
        if self.gate is not None:
            self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

        if is_final:
            text = self.final
        elif self.partials:
            text = self.partials[min(self._partial_index, len(self.partials) - 1)]
            self._partial_index += 1
        else:
            text = ""
        return InferenceResult(
            tokens=tuple(ord(ch) for ch in text),
            text=text,
            is_final=is_final,
            window_sequence=window.sequence,
        )

    def close(self) -> None:
        self.closed = True
