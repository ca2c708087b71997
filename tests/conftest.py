"""Pytest configuration and fixtures for hotmic tests."""

import logging
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import pytest

from hotmic.capture import AudioBuffer
from hotmic.config import Config, DecodeConfig
from hotmic.engine import SpecialTokens, TranscriptionResult
from hotmic.status import StatusMarkers


# Configure logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# Toy vocabulary laid out like Whisper's: words, then specials, then timestamps
VOCAB_SIZE = 60
BLANK = 1
EOT = 40
SOT = 41
LANGUAGE = 42
TRANSCRIBE = 43
NO_TIMESTAMPS = 44
FIRST_TIMESTAMP = 45


class StubTokenizer:
    """Word ids 2..39 decode to "w<id>"."""

    def __init__(self, language: Optional[int] = LANGUAGE):
        self.special = SpecialTokens(
            sot=SOT,
            eot=EOT,
            transcribe=TRANSCRIBE,
            no_timestamps=NO_TIMESTAMPS,
            blank=BLANK,
            language=language,
        )

    def encode(self, text: str) -> List[int]:
        return [2 + (i % 38) for i, _ in enumerate(text.split())]

    def decode(self, token_ids: Sequence[int]) -> str:
        return " ".join(f"w{t}" for t in token_ids)


class ScriptedBackend:
    """
    Decoder that replays one token script per decode attempt.

    Each script is (tokens, margin): at step i the scripted token gets logit
    `margin` and every other token 0; after the script runs out it emits EOT.
    A fresh attempt is recognised by an empty cache.
    """

    def __init__(self, scripts, max_target_positions: int = 100):
        self.scripts = scripts
        self.vocab_size = VOCAB_SIZE
        self.max_target_positions = max_target_positions
        self.encode_calls = 0
        self.attempts = 0
        self.fed_tokens: List[List[int]] = []
        self.encode_error: Optional[Exception] = None
        self.step_error: Optional[Exception] = None
        self.extra_logits = {}

    def encode(self, mel):
        self.encode_calls += 1
        if self.encode_error is not None:
            raise self.encode_error
        return "audio-features"

    def decode_step(self, new_tokens, audio_features, cache):
        if self.step_error is not None:
            raise self.step_error
        if cache is None:
            self.attempts += 1
            position = 0
        else:
            position = cache
        self.fed_tokens.append(list(new_tokens))

        tokens, margin = self.scripts[min(self.attempts, len(self.scripts)) - 1]
        logits = np.zeros(self.vocab_size, dtype=np.float32)
        for token_id, value in self.extra_logits.items():
            logits[token_id] = value
        target = tokens[position] if position < len(tokens) else EOT
        logits[target] = margin
        return logits, position + 1


class FakeTranscriber:
    """Stands in for the model pipeline; optionally blocks until released."""

    def __init__(self, text: str = "hello world", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls = []
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.model_name = "fake-whisper"
        self.device = "cpu"
        self.gpu_enabled = False

    def transcribe(self, samples, sample_rate):
        self.calls.append((len(samples), sample_rate))
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5.0)
        if self.error is not None:
            raise self.error
        return TranscriptionResult(
            text=self.text,
            avg_logprob=-0.1,
            compression_ratio=1.0,
            temperature=0.0,
        )


class FakeCapture:
    """Records nothing; waits on the session flags the way AudioCapture does."""

    def __init__(self, samples: int = 16000, poll: float = 0.01):
        self.samples = samples
        self.poll = poll
        self.stop_callbacks = 0
        self.error: Optional[Exception] = None

    def _buffer(self) -> AudioBuffer:
        return AudioBuffer(np.full(self.samples, 0.1, dtype=np.float32), 16000)

    def capture_fixed(self, duration_secs, cancel=None):
        if self.error is not None:
            raise self.error
        time.sleep(self.poll)
        if cancel is not None and cancel.is_set():
            return AudioBuffer.empty(16000)
        return self._buffer()

    def capture_toggle(self, max_duration_secs, stop, cancel=None, on_stop=None):
        if self.error is not None:
            raise self.error
        deadline = time.monotonic() + max_duration_secs
        while time.monotonic() < deadline:
            if stop.is_set() or (cancel is not None and cancel.is_set()):
                break
            time.sleep(self.poll)
        if cancel is not None and cancel.is_set():
            return AudioBuffer.empty(16000)
        if on_stop is not None:
            self.stop_callbacks += 1
            on_stop()
        return self._buffer()


@pytest.fixture
def decode_config():
    """Decode settings with the default thresholds."""
    return DecodeConfig()


@pytest.fixture
def stub_tokenizer():
    return StubTokenizer()


@pytest.fixture
def fake_transcriber():
    return FakeTranscriber()


@pytest.fixture
def fake_capture():
    return FakeCapture()


@pytest.fixture
def short_tmp():
    """Short temporary directory; Unix socket paths are limited to ~100 bytes."""
    path = Path(tempfile.mkdtemp(prefix="hm"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def markers(tmp_path):
    return StatusMarkers(tmp_path / "state")


@pytest.fixture
def daemon_config(short_tmp):
    """Config whose socket lives in a temporary directory."""
    return Config.from_dict({"daemon": {"socket_path": str(short_tmp / "d.sock")}})


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()

