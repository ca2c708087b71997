"""
Autoregressive decode with temperature fallback

The encoder runs once per utterance. Decoding then walks an ascending
temperature schedule: each attempt starts from the special-token prefix,
selects tokens under a suppression mask until end-of-transcript or the
length bound, and is scored by average log-probability and compression
ratio. The first attempt meeting both thresholds wins; if none does, the
last (highest temperature) attempt is returned.
"""

import logging
import zlib
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from hotmic.config import DecodeConfig
from hotmic.errors import ConfigError, DecodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpecialTokens:
    sot: int
    eot: int
    transcribe: int
    no_timestamps: int
    blank: int
    language: Optional[int] = None


class Tokenizer(Protocol):
    special: SpecialTokens

    def encode(self, text: str) -> List[int]:
        ...

    def decode(self, token_ids: Sequence[int]) -> str:
        ...


class DecoderBackend(Protocol):
    """One encoder pass, then one decoder step per token"""
    vocab_size: int
    max_target_positions: int

    def encode(self, mel: np.ndarray) -> Any:
        ...

    def decode_step(
        self, new_tokens: Sequence[int], audio_features: Any, cache: Any
    ) -> Tuple[np.ndarray, Any]:
        """Feed tokens not yet in `cache`; return last-position logits and the new cache"""
        ...


def build_suppress_mask(vocab_size: int, special: SpecialTokens) -> np.ndarray:
    """
    Additive logit mask: 0 for allowed tokens, -inf for the blank token
    and every timestamp token (all ids after <|notimestamps|>)
    """
    mask = np.zeros(vocab_size, dtype=np.float32)
    mask[special.blank] = -np.inf
    mask[special.no_timestamps + 1:] = -np.inf
    return mask


def compression_ratio(text: str) -> float:
    """Raw UTF-8 length over deflate-compressed length; high values mean repetition"""
    if not text:
        return 0.0
    data = text.encode("utf-8")
    return len(data) / len(zlib.compress(data))


def log_softmax(logits: np.ndarray) -> np.ndarray:
    logits = logits.astype(np.float64)
    peak = np.max(logits)
    shifted = logits - peak
    return shifted - np.log(np.sum(np.exp(shifted)))


@dataclass
class DecodeState:
    """Mutable state of one decode attempt"""
    temperature: float
    tokens: List[int]
    generated: List[int] = field(default_factory=list)
    sum_logprob: float = 0.0
    scored_tokens: int = 0
    cache: Any = None

    @property
    def avg_logprob(self) -> float:
        if self.scored_tokens == 0:
            return 0.0
        return self.sum_logprob / self.scored_tokens


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    avg_logprob: float
    compression_ratio: float
    temperature: float
    tokens: Tuple[int, ...] = ()
    accepted: bool = True

    @classmethod
    def empty(cls) -> "TranscriptionResult":
        return cls(text="", avg_logprob=0.0, compression_ratio=0.0, temperature=0.0)


class DecodeEngine:
    """
    Temperature-fallback greedy decoder over a resident model

    Args:
        backend: Encoder/decoder forward passes
        tokenizer: Vocabulary and special tokens
        decode_config: Schedule and quality thresholds
        english_only: Prefix without language/task tokens (".en" models)
        prompt: Optional technical-vocabulary prompt appended to the prefix
        seed: Seed for sampling at temperatures above zero
    """

    def __init__(
        self,
        backend: DecoderBackend,
        tokenizer: Tokenizer,
        decode_config: DecodeConfig,
        english_only: bool = False,
        prompt: Optional[str] = None,
        seed: Optional[int] = None,
    ):
        self.backend = backend
        self.tokenizer = tokenizer
        self.config = decode_config
        self.temperatures = sorted(decode_config.temperatures)
        if not self.temperatures:
            raise ConfigError("decode.temperatures must not be empty")
        self.english_only = english_only
        self.suppress_mask = build_suppress_mask(backend.vocab_size, tokenizer.special)
        self.prefix = self._build_prefix(prompt)
        self.max_new_tokens = max(backend.max_target_positions - len(self.prefix), 0)
        self._rng = np.random.default_rng(seed)

        logger.info(
            f"Suppress mask created: {int(np.isinf(self.suppress_mask).sum())} tokens suppressed"
        )

    def _build_prefix(self, prompt: Optional[str]) -> List[int]:
        special = self.tokenizer.special
        if self.english_only or special.language is None:
            tokens = [special.sot, special.no_timestamps]
        else:
            tokens = [special.sot, special.language, special.transcribe, special.no_timestamps]

        if prompt:
            prompt_tokens = self.tokenizer.encode(" " + prompt.strip())
            limit = self.config.max_prompt_tokens
            if len(prompt_tokens) > limit:
                # Long prompts push the decoder into loops
                logger.warning(
                    f"Initial prompt has {len(prompt_tokens)} tokens, truncating to {limit}"
                )
                prompt_tokens = prompt_tokens[:limit]
            tokens.extend(prompt_tokens)

        logger.debug(f"Decoder prefix: {len(tokens)} tokens")
        return tokens

    def transcribe(self, mel: np.ndarray) -> TranscriptionResult:
        """
        Run the encoder once, then decode along the temperature schedule

        Raises:
            DecodeError: On any forward-pass failure
        """
        try:
            audio_features = self.backend.encode(mel)
        except DecodeError:
            raise
        except Exception as e:
            raise DecodeError(f"Encoder forward pass failed: {e}") from e

        attempts: List[TranscriptionResult] = []
        for temperature in self.temperatures:
            attempt = self.decode_at_temperature(audio_features, temperature)
            attempts.append(attempt)

            logger.debug(
                f"Decode at temp {temperature}: logprob={attempt.avg_logprob:.3f}, "
                f"compression={attempt.compression_ratio:.3f}"
            )
            if attempt.accepted:
                return attempt
            logger.debug(f"Quality check failed at temp {temperature}, trying next")

        last = attempts[-1]
        logger.warning(
            f"All {len(attempts)} temperatures failed quality checks; "
            f"returning last attempt (temp {last.temperature})"
        )
        return last

    def decode_at_temperature(self, audio_features: Any, temperature: float) -> TranscriptionResult:
        """One independent decode attempt at a fixed temperature"""
        special = self.tokenizer.special
        state = DecodeState(temperature=temperature, tokens=list(self.prefix))
        pending: List[int] = list(self.prefix)

        for _ in range(self.max_new_tokens):
            try:
                logits, state.cache = self.backend.decode_step(pending, audio_features, state.cache)
            except DecodeError:
                raise
            except Exception as e:
                raise DecodeError(f"Decoder forward pass failed: {e}") from e

            logits = np.asarray(logits, dtype=np.float32) + self.suppress_mask
            if not np.isfinite(logits).any():
                raise DecodeError("Decoder produced no finite logits")

            token = self._select(logits, temperature)
            state.sum_logprob += float(log_softmax(logits)[token])
            state.scored_tokens += 1

            if token == special.eot:
                break

            state.tokens.append(token)
            state.generated.append(token)
            pending = [token]

        text = self.tokenizer.decode(state.generated).strip()
        ratio = compression_ratio(text)
        avg_logprob = state.avg_logprob
        accepted = (
            avg_logprob >= self.config.logprob_threshold
            and ratio <= self.config.compression_ratio_threshold
        )
        return TranscriptionResult(
            text=text,
            avg_logprob=avg_logprob,
            compression_ratio=ratio,
            temperature=temperature,
            tokens=tuple(state.generated),
            accepted=accepted,
        )

    def _select(self, logits: np.ndarray, temperature: float) -> int:
        if temperature <= 0.0:
            return int(np.argmax(logits))
        scaled = logits.astype(np.float64) / temperature
        probs = np.exp(scaled - np.max(scaled))
        probs /= probs.sum()
        return int(self._rng.choice(len(probs), p=probs))
