from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from voice_search_server.core.inference.decoding import (
    DEFAULT_SEED,
    DecodeOptions,
    final_options,
    partial_options,
    transcribe_window,
)
from voice_search_server.domain.models import InferenceResult, MelFeatureWindow

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "openai/whisper-large-v3-turbo"


@dataclass(slots=True)
class TransformersSegmentGenerator:
    """Runs `generate` on a loaded Whisper model for one segment at a time."""

    model: Any
    tokenizer: Any
    torch: Any
    device: str = "cpu"
    seed: int = DEFAULT_SEED

    _special_ids: frozenset[int] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._special_ids = frozenset(int(t) for t in self.tokenizer.all_special_ids)

    def generate(self, segment: np.ndarray, options: DecodeOptions) -> tuple[tuple[int, ...], str]:
        dtype = next(self.model.parameters()).dtype
        input_features = self.torch.from_numpy(np.ascontiguousarray(segment.T)[None]).to(self.device, dtype=dtype)
        if options.uses_fallback:
            # sampled fallback passes are reproducible per segment
            self.torch.manual_seed(self.seed)
        with self.torch.inference_mode():
            out = self.model.generate(input_features=input_features, **options.generate_kwargs())

        sequence = _sequences(out)[0]
        ids = [int(t) for t in sequence.tolist() if int(t) not in self._special_ids]
        text = self.tokenizer.decode(ids, skip_special_tokens=True).strip()
        return tuple(ids), text


def _sequences(out: Any) -> Any:
    sequences = getattr(out, "sequences", None)
    if sequences is not None:
        return sequences
    if isinstance(out, dict):
        return out["sequences"]
    return out


@dataclass(slots=True)
class WhisperInferenceEngine:
    """Whisper encoder-decoder run through Hugging Face transformers.

    Weights are loaded once at construction; one instance serves every session
    through the inference worker.
    """

    model_id: str = DEFAULT_MODEL_ID
    device: str = "cpu"
    language: str | None = None
    partial_max_tokens: int = 64
    seed: int = DEFAULT_SEED

    _generator: TransformersSegmentGenerator | None = field(init=False, default=None, repr=False)
    _partial: DecodeOptions = field(init=False, repr=False)
    _final: DecodeOptions = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.partial_max_tokens <= 0:
            raise ValueError("partial_max_tokens must be > 0")
        try:
            import torch  # type: ignore
            from transformers import WhisperForConditionalGeneration, WhisperTokenizer  # type: ignore
        except ModuleNotFoundError as exc:
            raise ModuleNotFoundError(
                "Whisper inference requires torch and transformers; "
                "install with `pip install voice-search-server[whisper]`"
            ) from exc

        logger.info(f"[INFER] Loading {self.model_id} on {self.device}")
        model = WhisperForConditionalGeneration.from_pretrained(self.model_id)
        model.to(self.device)
        model.eval()
        tokenizer = WhisperTokenizer.from_pretrained(self.model_id)

        self._generator = TransformersSegmentGenerator(
            model=model, tokenizer=tokenizer, torch=torch, device=self.device, seed=self.seed
        )
        max_target = int(model.config.max_target_positions)
        self._partial = partial_options(
            max_new_tokens=min(self.partial_max_tokens, max_target // 2), language=self.language
        )
        self._final = final_options(max_new_tokens=max_target // 2, language=self.language)

    def infer(self, window: MelFeatureWindow, *, is_final: bool) -> InferenceResult:
        if self._generator is None:
            raise RuntimeError("engine is closed")
        tokens, text = transcribe_window(
            self._generator,
            window.features,
            content_frames=window.content_frames,
            options=self._final if is_final else self._partial,
        )
        logger.debug(f"[INFER] Window #{window.sequence} final={is_final}: {text!r}")
        return InferenceResult(tokens=tokens, text=text, is_final=is_final, window_sequence=window.sequence)

    def close(self) -> None:
        self._generator = None
