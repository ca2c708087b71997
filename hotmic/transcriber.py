"""
Utterance transcription

Splits audio into model-sized windows, extracts a spectrogram per window
and decodes it with the resident engine.
"""

import logging
from typing import List

import numpy as np

from hotmic.config import Config, DecodeConfig
from hotmic.engine import DecodeEngine, TranscriptionResult
from hotmic.errors import ConfigError, DecodeError
from hotmic.features import SAMPLE_RATE, FeatureExtractor, create_feature_extractor
from hotmic.model import load_model

logger = logging.getLogger(__name__)


class Transcriber:
    """
    Audio-to-text pipeline around one loaded model

    Audio longer than one window is split into overlapping chunks that are
    decoded independently and joined with spaces.
    """

    def __init__(
        self,
        features: FeatureExtractor,
        engine: DecodeEngine,
        decode_config: DecodeConfig,
        model_name: str = "",
        device: str = "cpu",
    ):
        self.features = features
        self.engine = engine
        self.model_name = model_name
        self.device = device
        self.chunk_samples = int(decode_config.chunk_length_secs * SAMPLE_RATE)
        overlap_samples = int(decode_config.chunk_overlap_secs * SAMPLE_RATE)
        if not 0 <= overlap_samples < self.chunk_samples:
            raise ConfigError(
                "decode.chunk_overlap_secs must be shorter than decode.chunk_length_secs"
            )
        self.stride = self.chunk_samples - overlap_samples

        # Statistics
        self.transcription_count = 0

    @classmethod
    def from_config(cls, config: Config) -> "Transcriber":
        """Load the model and build the full pipeline (fatal on failure)"""
        loaded = load_model(config.model)
        features = create_feature_extractor(config.features, loaded.backend.num_mel_bins)
        engine = DecodeEngine(
            loaded.backend,
            loaded.tokenizer,
            config.decode,
            english_only=loaded.english_only,
            prompt=config.model.prompt,
            seed=config.decode.seed,
        )
        return cls(features, engine, config.decode, model_name=loaded.name, device=loaded.device)

    @property
    def gpu_enabled(self) -> bool:
        return not self.device.startswith("cpu")

    def chunk_offsets(self, num_samples: int) -> List[int]:
        """Start offsets of the windows covering num_samples samples"""
        offsets = [0]
        while offsets[-1] + self.chunk_samples < num_samples:
            offsets.append(offsets[-1] + self.stride)
        return offsets

    def transcribe(self, samples: np.ndarray, sample_rate: int = SAMPLE_RATE) -> TranscriptionResult:
        """
        Transcribe 16kHz mono float32 samples

        An empty buffer yields an empty result rather than an error.

        Raises:
            DecodeError: On feature extraction or forward-pass failure
        """
        if sample_rate != SAMPLE_RATE:
            raise DecodeError(f"Audio must be {SAMPLE_RATE}Hz, got {sample_rate}Hz")
        if len(samples) == 0:
            return TranscriptionResult.empty()

        duration = len(samples) / SAMPLE_RATE
        offsets = self.chunk_offsets(len(samples))
        logger.info(
            f"Transcribing {len(samples)} samples ({duration:.2f}s) in {len(offsets)} chunk(s)"
        )

        results = []
        for offset in offsets:
            chunk = samples[offset:offset + self.chunk_samples]
            mel = self.features.extract(chunk)
            results.append(self.engine.transcribe(mel))

        self.transcription_count += 1
        if len(results) == 1:
            return results[0]
        return _merge(results)


def _merge(results: List[TranscriptionResult]) -> TranscriptionResult:
    text = " ".join(r.text for r in results if r.text)
    return TranscriptionResult(
        text=text,
        avg_logprob=float(np.mean([r.avg_logprob for r in results])),
        compression_ratio=max(r.compression_ratio for r in results),
        temperature=max(r.temperature for r in results),
        tokens=tuple(t for r in results for t in r.tokens),
        accepted=all(r.accepted for r in results),
    )
