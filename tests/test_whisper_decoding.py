from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import pytest

from voice_search_server.core.inference.decoding import (
    SEGMENT_FRAMES,
    TEMPERATURES,
    DecodeOptions,
    final_options,
    iter_segments,
    partial_options,
    transcribe_window,
)


@dataclass(slots=True)
class ScriptedGenerator:
    """Returns one scripted text per segment and records what it was given."""

    texts: list[str]
    segments: list[np.ndarray] = field(default_factory=list)
    options: list[DecodeOptions] = field(default_factory=list)

    def generate(self, segment: np.ndarray, options: DecodeOptions) -> tuple[tuple[int, ...], str]:
        self.segments.append(segment)
        self.options.append(options)
        text = self.texts[len(self.segments) - 1]
        return tuple(ord(ch) for ch in text.strip()), text


def test_partial_options_are_greedy_and_bounded():
    kwargs = partial_options(max_new_tokens=64, language="en").generate_kwargs()

    assert kwargs["max_new_tokens"] == 64
    assert kwargs["do_sample"] is False
    assert kwargs["num_beams"] == 1
    assert kwargs["language"] == "en"
    assert kwargs["task"] == "transcribe"
    assert "temperature" not in kwargs


def test_final_options_enable_temperature_fallback():
    options = final_options(max_new_tokens=224)
    kwargs = options.generate_kwargs()

    assert options.uses_fallback
    assert kwargs["temperature"] == TEMPERATURES
    assert kwargs["compression_ratio_threshold"] == 2.4
    assert kwargs["logprob_threshold"] == -1.0
    assert kwargs["no_speech_threshold"] == 0.6
    assert kwargs["max_new_tokens"] == 224
    assert kwargs["return_dict_in_generate"] is True
    assert "language" not in kwargs


def test_options_reject_empty_budget():
    with pytest.raises(ValueError):
        DecodeOptions(max_new_tokens=0)


def test_segments_are_padded_to_model_size():
    features = np.ones((SEGMENT_FRAMES + 500, 8), dtype=np.float32)
    segments = list(iter_segments(features, content_frames=SEGMENT_FRAMES + 500))

    assert [s.shape for s in segments] == [(SEGMENT_FRAMES, 8), (SEGMENT_FRAMES, 8)]
    assert segments[1][:500].min() == 1.0
    assert segments[1][500:].max() == 0.0


def test_padding_frames_beyond_content_are_not_decoded():
    features = np.zeros((2 * SEGMENT_FRAMES, 8), dtype=np.float32)
    generator = ScriptedGenerator(texts=["only one"])

    _, text = transcribe_window(generator, features, content_frames=120, options=partial_options(max_new_tokens=8))

    assert text == "only one"
    assert len(generator.segments) == 1


def test_segment_texts_are_joined_and_silent_segments_dropped():
    features = np.zeros((3 * SEGMENT_FRAMES, 8), dtype=np.float32)
    generator = ScriptedGenerator(texts=[" find me ", "", "a quiet cafe"])
    options = final_options(max_new_tokens=224)

    tokens, text = transcribe_window(generator, features, content_frames=3 * SEGMENT_FRAMES, options=options)

    assert text == "find me a quiet cafe"
    assert tokens == tuple(ord(ch) for ch in "find me") + tuple(ord(ch) for ch in "a quiet cafe")
    assert generator.options == [options, options, options]


def test_transformers_generator_passes_options_to_generate():
    torch = pytest.importorskip("torch")
    from voice_search_server.providers.whisper import TransformersSegmentGenerator

    @dataclass
    class RecordingModel:
        calls: list = field(default_factory=list)

        def parameters(self):
            yield torch.zeros(1, dtype=torch.float32)

        def generate(self, **kwargs):
            self.calls.append(kwargs)
            return {"sequences": torch.tensor([[50258, 50360, 50364, 7, 8, 50257]])}

    @dataclass
    class Tokenizer:
        all_special_ids: tuple = (50257, 50258, 50360, 50364)

        def decode(self, ids, skip_special_tokens=True):
            return " ".join(f"w{i}" for i in ids)

    model = RecordingModel()
    generator = TransformersSegmentGenerator(model=model, tokenizer=Tokenizer(), torch=torch)
    segment = np.zeros((SEGMENT_FRAMES, 128), dtype=np.float32)

    tokens, text = generator.generate(segment, final_options(max_new_tokens=224))

    assert (tokens, text) == ((7, 8), "w7 w8")
    call = model.calls[0]
    assert tuple(call["input_features"].shape) == (1, 128, SEGMENT_FRAMES)
    assert call["temperature"] == TEMPERATURES
    assert call["max_new_tokens"] == 224
