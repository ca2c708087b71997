"""
Resident Whisper model

Loads weights and tokenizer once and exposes the encoder pass and single
decoder steps to the decode engine.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

import numpy as np
import torch
from transformers import WhisperForConditionalGeneration, WhisperTokenizer

from hotmic.config import ModelConfig
from hotmic.engine import SpecialTokens
from hotmic.errors import ModelLoadError

logger = logging.getLogger(__name__)

ENGLISH_ONLY_VOCAB_SIZE = 51864


def select_device(preference: str = "auto") -> Tuple[torch.device, torch.dtype]:
    """CUDA first, then Apple MPS, then CPU; half precision on either GPU"""
    if preference != "auto":
        device = torch.device(preference)
    elif torch.cuda.is_available():
        device = torch.device("cuda")
        logger.info(f"CUDA device: {torch.cuda.get_device_name(0)}")
    elif getattr(torch.backends, "mps", None) is not None and torch.backends.mps.is_available():
        device = torch.device("mps")
    else:
        logger.warning("No GPU accelerator found, falling back to CPU")
        device = torch.device("cpu")

    dtype = torch.float16 if device.type in ("cuda", "mps") else torch.float32
    return device, dtype


class WhisperTokenizerAdapter:
    """Special-token lookup and text conversion over a Hugging Face tokenizer"""

    def __init__(self, tokenizer: WhisperTokenizer, language: str):
        self._tokenizer = tokenizer
        blank = tokenizer.encode(" ", add_special_tokens=False)
        if len(blank) != 1:
            raise ModelLoadError("Tokenizer has no single blank token")
        self.special = SpecialTokens(
            sot=self._token_id("<|startoftranscript|>"),
            eot=self._token_id("<|endoftext|>"),
            transcribe=self._token_id("<|transcribe|>"),
            no_timestamps=self._token_id("<|notimestamps|>"),
            blank=blank[0],
            language=self._token_id(f"<|{language}|>"),
        )
        logger.debug(f"Special tokens: {self.special}")

    def _token_id(self, token: str) -> int:
        token_id = self._tokenizer.convert_tokens_to_ids(token)
        if token_id is None or token_id == self._tokenizer.unk_token_id:
            raise ModelLoadError(f"Token not found: {token}")
        return token_id

    def encode(self, text: str) -> List[int]:
        return self._tokenizer.encode(text, add_special_tokens=False)

    def decode(self, token_ids: Sequence[int]) -> str:
        return self._tokenizer.decode(list(token_ids), skip_special_tokens=True)


class WhisperBackend:
    """Encoder pass and cached single-step decoder over a loaded model"""

    def __init__(self, model: WhisperForConditionalGeneration, device: torch.device, dtype: torch.dtype):
        self.model = model
        self.device = device
        self.dtype = dtype
        self.vocab_size = model.config.vocab_size
        self.max_target_positions = model.config.max_target_positions
        self.num_mel_bins = model.config.num_mel_bins

    @torch.inference_mode()
    def encode(self, mel: np.ndarray) -> torch.Tensor:
        features = torch.from_numpy(np.ascontiguousarray(mel)).unsqueeze(0)
        features = features.to(device=self.device, dtype=self.dtype)
        encoder_output = self.model.model.encoder(input_features=features)
        audio_features = encoder_output.last_hidden_state
        logger.debug(f"Encoder output: {tuple(audio_features.shape)}")
        return audio_features

    @torch.inference_mode()
    def decode_step(
        self, new_tokens: Sequence[int], audio_features: torch.Tensor, cache: Any
    ) -> Tuple[np.ndarray, Any]:
        input_ids = torch.tensor([list(new_tokens)], dtype=torch.long, device=self.device)
        output = self.model.model.decoder(
            input_ids=input_ids,
            encoder_hidden_states=audio_features,
            past_key_values=cache,
            use_cache=True,
        )
        logits = self.model.proj_out(output.last_hidden_state[:, -1, :])
        return logits[0].float().cpu().numpy(), output.past_key_values


@dataclass
class LoadedModel:
    name: str
    backend: WhisperBackend
    tokenizer: WhisperTokenizerAdapter
    english_only: bool

    @property
    def device(self) -> str:
        return str(self.backend.device)

    @property
    def gpu_enabled(self) -> bool:
        return self.backend.device.type != "cpu"


def load_model(model_config: ModelConfig) -> LoadedModel:
    """
    Load weights and tokenizer from a local directory or Hugging Face model id

    Raises:
        ModelLoadError: If weights, config or tokenizer cannot be loaded
    """
    device, dtype = select_device(model_config.device)
    logger.info(f"Loading Whisper model: {model_config.path} (device={device}, dtype={dtype})")

    try:
        model = WhisperForConditionalGeneration.from_pretrained(
            model_config.path, torch_dtype=dtype
        )
        model = model.to(device).eval()
        hf_tokenizer = WhisperTokenizer.from_pretrained(model_config.path)
    except (OSError, ValueError, RuntimeError) as e:
        raise ModelLoadError(f"Failed to load model {model_config.path}: {e}") from e

    english_only = (
        ".en" in model_config.path or model.config.vocab_size == ENGLISH_ONLY_VOCAB_SIZE
    )
    if english_only:
        logger.info("Detected English-only model - using simplified token sequence")
    language = "en" if english_only else model_config.language
    tokenizer = WhisperTokenizerAdapter(hf_tokenizer, language)

    if model_config.draft_model_path:
        logger.info(
            f"Draft model {model_config.draft_model_path} configured; "
            "decoding uses the main model only"
        )

    logger.info(f"Model loaded and resident on {device} (num_mel_bins={model.config.num_mel_bins})")
    return LoadedModel(
        name=model_config.path,
        backend=WhisperBackend(model, device, dtype),
        tokenizer=tokenizer,
        english_only=english_only,
    )
