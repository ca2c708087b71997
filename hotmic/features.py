"""
Log-mel spectrogram extraction

The encoder consumes exactly N_FRAMES frames per 30 second window. Every
extractor output is checked against that count before it reaches a tensor;
a spectrogram with any other frame count is rejected.

Two implementations share the contract:
- NativeMelLibrary: the mojo-audio shared library over its C ABI (ctypes)
- NumpyMelExtractor: STFT + slaney mel filterbank in numpy
"""

import ctypes
import logging
from enum import IntEnum
from functools import lru_cache
from pathlib import Path
from typing import Optional, Protocol

import numpy as np
from transformers.audio_utils import mel_filter_bank

from hotmic.config import FeatureConfig
from hotmic.errors import FeatureError

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
N_FFT = 400
HOP_LENGTH = 160
CHUNK_LENGTH = 30
N_SAMPLES = CHUNK_LENGTH * SAMPLE_RATE  # 480000 samples in a 30-second chunk
ENCODER_DOWNSAMPLING = 2


def expected_frames(num_samples: int, hop_length: int = HOP_LENGTH) -> int:
    """Frame count produced for a buffer of exactly num_samples samples"""
    return num_samples // hop_length


N_FRAMES = expected_frames(N_SAMPLES)  # 3000 frames in a mel spectrogram input
N_AUDIO_CTX = N_FRAMES // ENCODER_DOWNSAMPLING  # 1500 encoder source positions


def pad_or_trim(samples: np.ndarray, length: int = N_SAMPLES) -> np.ndarray:
    """Zero-pad or truncate to exactly `length` samples"""
    samples = np.asarray(samples, dtype=np.float32)
    if len(samples) > length:
        return samples[:length]
    if len(samples) < length:
        return np.pad(samples, (0, length - len(samples)))
    return samples


class MelBackend(Protocol):
    def compute(self, samples: np.ndarray, n_mels: int) -> np.ndarray:
        ...


@lru_cache(maxsize=4)
def mel_filters(n_mels: int) -> np.ndarray:
    """Slaney-normalised mel filterbank of shape (1 + N_FFT // 2, n_mels)"""
    return mel_filter_bank(
        num_frequency_bins=1 + N_FFT // 2,
        num_mel_filters=n_mels,
        min_frequency=0.0,
        max_frequency=SAMPLE_RATE / 2,
        sampling_rate=SAMPLE_RATE,
        norm="slaney",
        mel_scale="slaney",
    ).astype(np.float32)


class NumpyMelExtractor:
    """Whisper log-mel spectrogram computed with numpy"""

    def compute(self, samples: np.ndarray, n_mels: int) -> np.ndarray:
        samples = np.asarray(samples, dtype=np.float32)
        window = np.hanning(N_FFT + 1)[:-1].astype(np.float32)

        padded = np.pad(samples, N_FFT // 2, mode="reflect")
        frames = np.lib.stride_tricks.sliding_window_view(padded, N_FFT)[::HOP_LENGTH]
        stft = np.fft.rfft(frames * window, axis=-1)

        # Centered framing yields one frame past the window; drop it
        magnitudes = (np.abs(stft[:-1]) ** 2).astype(np.float32)

        mel_spec = magnitudes @ mel_filters(n_mels)
        log_spec = np.log10(np.maximum(mel_spec, 1e-10)).T
        log_spec = np.maximum(log_spec, log_spec.max() - 8.0)
        return ((log_spec + 4.0) / 4.0).astype(np.float32)


class MelStatus(IntEnum):
    """Error codes returned across the native boundary"""
    SUCCESS = 0
    INVALID_INPUT = -1
    ALLOCATION = -2
    PROCESSING = -3
    BUFFER_SIZE = -4
    INVALID_HANDLE = -5

    @classmethod
    def from_code(cls, code: int) -> "MelStatus":
        try:
            return cls(code)
        except ValueError:
            return cls.PROCESSING


class MelNormalization(IntEnum):
    NONE = 0
    WHISPER = 1
    MIN_MAX = 2
    Z_SCORE = 3


class MelConfigStruct(ctypes.Structure):
    _fields_ = [
        ("sample_rate", ctypes.c_int32),
        ("n_fft", ctypes.c_int32),
        ("hop_length", ctypes.c_int32),
        ("n_mels", ctypes.c_int32),
        ("normalization", ctypes.c_int32),
    ]

    @classmethod
    def whisper(cls, n_mels: int) -> "MelConfigStruct":
        return cls(SAMPLE_RATE, N_FFT, HOP_LENGTH, n_mels, MelNormalization.WHISPER)


class NativeMelLibrary:
    """
    Wrapper around libmojo_audio's mel spectrogram C interface

    The library returns an opaque handle; the caller queries its shape,
    copies the data into a caller-owned buffer and frees the handle.
    """

    DEFAULT_PATHS = (
        Path("lib/libmojo_audio.so"),
        Path("/usr/local/lib/libmojo_audio.so"),
    )

    def __init__(self, lib):
        self._compute = lib.mojo_mel_spectrogram_compute
        self._compute.argtypes = [
            ctypes.POINTER(ctypes.c_float),
            ctypes.c_size_t,
            ctypes.POINTER(MelConfigStruct),
        ]
        self._compute.restype = ctypes.c_int64

        self._get_shape = lib.mojo_mel_spectrogram_get_shape
        self._get_shape.argtypes = [
            ctypes.c_int64,
            ctypes.POINTER(ctypes.c_size_t),
            ctypes.POINTER(ctypes.c_size_t),
        ]
        self._get_shape.restype = ctypes.c_int32

        self._get_size = lib.mojo_mel_spectrogram_get_size
        self._get_size.argtypes = [ctypes.c_int64]
        self._get_size.restype = ctypes.c_size_t

        self._get_data = lib.mojo_mel_spectrogram_get_data
        self._get_data.argtypes = [
            ctypes.c_int64,
            ctypes.POINTER(ctypes.c_float),
            ctypes.c_size_t,
        ]
        self._get_data.restype = ctypes.c_int32

        self._free = lib.mojo_mel_spectrogram_free
        self._free.argtypes = [ctypes.c_int64]
        self._free.restype = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "NativeMelLibrary":
        """
        Load the shared library from `path` or the default search paths

        Raises:
            FeatureError: If the library or one of its symbols is missing
        """
        candidates = [path] if path is not None else list(cls.DEFAULT_PATHS)
        for candidate in candidates:
            if not candidate.exists():
                continue
            try:
                library = cls(ctypes.CDLL(str(candidate)))
            except (OSError, AttributeError) as e:
                logger.warning(f"Failed to load mojo-audio from {candidate}: {e}")
                continue
            logger.info(f"Loaded mojo-audio from: {candidate}")
            return library
        searched = ", ".join(str(c) for c in candidates)
        raise FeatureError(f"Could not load libmojo_audio.so (searched: {searched})")

    def compute(self, samples: np.ndarray, n_mels: int) -> np.ndarray:
        samples = np.ascontiguousarray(samples, dtype=np.float32)
        if len(samples) == 0:
            raise FeatureError("Empty audio input")

        config = MelConfigStruct.whisper(n_mels)
        handle = self._compute(
            samples.ctypes.data_as(ctypes.POINTER(ctypes.c_float)),
            len(samples),
            ctypes.pointer(config),
        )
        if handle <= 0:
            raise FeatureError(f"Mel computation failed: {MelStatus.from_code(int(handle)).name}")

        try:
            out_mels = ctypes.c_size_t(0)
            out_frames = ctypes.c_size_t(0)
            status = self._get_shape(handle, ctypes.pointer(out_mels), ctypes.pointer(out_frames))
            if status != MelStatus.SUCCESS:
                raise FeatureError(f"Failed to get mel shape: {MelStatus.from_code(status).name}")

            size = self._get_size(handle)
            if size == 0 or size != out_mels.value * out_frames.value:
                raise FeatureError(f"Invalid mel spectrogram size: {size}")

            data = np.empty(size, dtype=np.float32)
            status = self._get_data(
                handle, data.ctypes.data_as(ctypes.POINTER(ctypes.c_float)), size
            )
            if status != MelStatus.SUCCESS:
                raise FeatureError(f"Failed to get mel data: {MelStatus.from_code(status).name}")
        finally:
            self._free(handle)

        return data.reshape(out_mels.value, out_frames.value)


class FeatureExtractor:
    """Pads audio to one context window and returns a validated spectrogram"""

    def __init__(self, n_mels: int, backend: MelBackend):
        self.n_mels = n_mels
        self.backend = backend

    def extract(self, samples: np.ndarray) -> np.ndarray:
        """
        Convert up to one window of 16kHz mono samples to a (n_mels, N_FRAMES) spectrogram

        Raises:
            FeatureError: If the backend fails or returns the wrong shape
        """
        if len(samples) > N_SAMPLES:
            logger.warning(f"Truncating {len(samples)} samples to one {CHUNK_LENGTH}s window")
        window = pad_or_trim(samples)

        mel = np.asarray(self.backend.compute(window, self.n_mels), dtype=np.float32)

        if mel.ndim != 2 or mel.shape != (self.n_mels, N_FRAMES):
            raise FeatureError(
                f"Spectrogram shape {mel.shape} does not match encoder input "
                f"({self.n_mels}, {N_FRAMES})"
            )
        logger.debug(f"Mel spectrogram: {mel.shape[0]}x{mel.shape[1]}")
        return mel


def create_feature_extractor(feature_config: FeatureConfig, n_mels: int) -> FeatureExtractor:
    """Native library when configured, numpy otherwise"""
    if feature_config.library_path:
        backend = NativeMelLibrary.load(Path(feature_config.library_path).expanduser())
    else:
        backend = NumpyMelExtractor()
    return FeatureExtractor(n_mels, backend)
