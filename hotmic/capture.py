"""
Microphone capture

Opens an input stream on the selected (or default) device, accumulates
samples from the audio callback into a lock-protected buffer, and returns
mono float32 audio at the model's sample rate.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np
import sounddevice as sd

from hotmic.config import AudioConfig
from hotmic.errors import CaptureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioBuffer:
    """Mono float32 PCM at a declared sample rate"""
    samples: np.ndarray
    sample_rate: int
    channels: int = 1

    def __post_init__(self):
        self.samples.setflags(write=False)

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) / self.sample_rate

    @classmethod
    def empty(cls, sample_rate: int) -> "AudioBuffer":
        return cls(np.zeros(0, dtype=np.float32), sample_rate)


class SampleAccumulator:
    """Growable buffer filled from the audio callback thread"""

    def __init__(self):
        self._chunks: List[np.ndarray] = []
        self._lock = threading.Lock()
        self.frames = 0

    def push(self, chunk: np.ndarray) -> None:
        with self._lock:
            self._chunks.append(chunk)
            self.frames += len(chunk)

    def collect(self, channels: int) -> np.ndarray:
        """Return all frames as a (frames, channels) float32 array"""
        with self._lock:
            if not self._chunks:
                return np.zeros((0, channels), dtype=np.float32)
            return np.concatenate(self._chunks).astype(np.float32, copy=False)


def to_mono(frames: np.ndarray) -> np.ndarray:
    """Average interleaved channels down to one"""
    if frames.ndim == 1:
        return frames.astype(np.float32, copy=False)
    if frames.shape[1] == 1:
        return frames[:, 0].astype(np.float32, copy=False)
    return frames.mean(axis=1).astype(np.float32)


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Linear-interpolation resampling from source_rate to target_rate"""
    if source_rate == target_rate or len(samples) == 0:
        return samples.astype(np.float32, copy=False)
    target_len = max(1, int(round(len(samples) * target_rate / source_rate)))
    source_x = np.linspace(0.0, 1.0, num=len(samples), endpoint=False)
    target_x = np.linspace(0.0, 1.0, num=target_len, endpoint=False)
    return np.interp(target_x, source_x, samples.astype(np.float64)).astype(np.float32)


class AudioCapture:
    """
    Records one session's worth of audio

    Two modes:
    - fixed: record exactly `duration` seconds
    - toggle: record until `stop` is set or `max_duration` elapses, then keep
      recording for the trailing window so the last words are not cut off

    Both modes return early, discarding nothing, when `cancel` is set.
    """

    def __init__(self, audio_config: AudioConfig):
        self.audio_config = audio_config
        self.target_rate = audio_config.sample_rate

    def select_device(self) -> Tuple[Optional[object], dict]:
        """
        Resolve the configured device, or the system default input

        Returns:
            (device, device_info) where device is passed to the stream

        Raises:
            CaptureError: If no input device is available
        """
        device = self.audio_config.device
        try:
            if device is not None:
                info = sd.query_devices(device, kind='input')
            else:
                info = sd.query_devices(kind='input')
        except (ValueError, sd.PortAudioError) as e:
            if device is not None:
                raise CaptureError(f"Input device {device!r} unavailable: {e}") from e
            info = self._first_input_device()
            device = info['index']

        if info['max_input_channels'] < 1:
            raise CaptureError(f"Device {info['name']!r} has no input channels")

        logger.info(
            f"Audio device: {info['name']} "
            f"({int(info['default_samplerate'])}Hz, {info['max_input_channels']} ch)"
        )
        return device, info

    @staticmethod
    def _first_input_device() -> dict:
        """Fallback when there is no default input: first device with inputs"""
        try:
            devices = sd.query_devices()
        except sd.PortAudioError as e:
            raise CaptureError(f"Cannot enumerate audio devices: {e}") from e
        for idx, info in enumerate(devices):
            if info['max_input_channels'] > 0:
                logger.info(f"Using first available mic: [{idx}] {info['name']}")
                return dict(info, index=idx)
        raise CaptureError("No input device available. Check microphone permissions.")

    def capture_fixed(
        self, duration_secs: float, cancel: Optional[threading.Event] = None
    ) -> AudioBuffer:
        """Capture exactly duration_secs seconds"""
        logger.info(f"Starting audio capture: {duration_secs}s")
        buffer = self._record(duration_secs, stop=None, cancel=cancel, trailing_secs=0.0)
        limit = int(round(duration_secs * buffer.sample_rate))
        if len(buffer) > limit:
            buffer = AudioBuffer(buffer.samples[:limit].copy(), buffer.sample_rate)
        return buffer

    def capture_toggle(
        self,
        max_duration_secs: float,
        stop: threading.Event,
        cancel: Optional[threading.Event] = None,
        on_stop: Optional[Callable[[], None]] = None,
    ) -> AudioBuffer:
        """
        Capture until stop is set or max_duration_secs elapses, plus trailing window

        on_stop is called once, before the trailing window starts.
        """
        logger.info(f"Starting toggle mode capture (max {max_duration_secs}s)")
        return self._record(
            max_duration_secs,
            stop=stop,
            cancel=cancel,
            trailing_secs=self.audio_config.trailing_secs,
            on_stop=on_stop,
        )

    def _record(
        self,
        max_duration_secs: float,
        stop: Optional[threading.Event],
        cancel: Optional[threading.Event],
        trailing_secs: float,
        on_stop: Optional[Callable[[], None]] = None,
    ) -> AudioBuffer:
        device, info = self.select_device()
        source_rate = int(info['default_samplerate'])
        channels = min(int(info['max_input_channels']), 2)
        accumulator = SampleAccumulator()
        started = threading.Event()

        def audio_callback(indata, frames, time_info, status):
            if status:
                logger.warning(f"Audio status: {status}")
            if not started.is_set():
                started.set()
                logger.info("Recording started - speak now!")
            accumulator.push(indata.copy())

        try:
            stream = sd.InputStream(
                device=device,
                channels=channels,
                samplerate=source_rate,
                dtype='float32',
                callback=audio_callback,
            )
        except (sd.PortAudioError, ValueError) as e:
            raise CaptureError(f"Failed to open input stream: {e}") from e

        try:
            stream.start()
        except (sd.PortAudioError, ValueError) as e:
            stream.close()
            raise CaptureError(f"Failed to start input stream: {e}") from e

        try:
            self._wait(max_duration_secs, stop, cancel)
            if on_stop is not None and not _is_set(cancel):
                on_stop()
            if trailing_secs > 0 and not _is_set(cancel):
                logger.info(f"Buffering trailing audio ({trailing_secs}s)...")
                self._sleep_unless(trailing_secs, cancel)
        finally:
            stream.stop()
            stream.close()

        frames = accumulator.collect(channels)
        logger.info(
            f"Captured {len(frames)} frames "
            f"({len(frames) / source_rate:.2f}s at {source_rate}Hz, {channels} ch)"
        )

        if _is_set(cancel):
            logger.info("Capture cancelled, discarding audio")
            return AudioBuffer.empty(self.target_rate)

        if len(frames) == 0:
            logger.warning("No audio captured - check microphone permissions")
            return AudioBuffer.empty(self.target_rate)

        mono = to_mono(frames)
        if source_rate != self.target_rate:
            logger.info(f"Resampling {source_rate}Hz -> {self.target_rate}Hz")
        samples = resample(mono, source_rate, self.target_rate)
        logger.info(
            f"Final audio: {len(samples)} samples ({len(samples) / self.target_rate:.2f}s)"
        )
        return AudioBuffer(samples, self.target_rate)

    def _wait(
        self,
        max_duration_secs: float,
        stop: Optional[threading.Event],
        cancel: Optional[threading.Event],
    ) -> None:
        """Poll the stop/cancel flags until one is set or the duration elapses"""
        poll_interval = self.audio_config.poll_interval_secs
        deadline = time.monotonic() + max_duration_secs
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info(f"Max duration reached ({max_duration_secs}s)")
                return
            time.sleep(min(poll_interval, remaining))
            if _is_set(cancel):
                return
            if _is_set(stop):
                logger.info("Stop signal received")
                return

    def _sleep_unless(self, seconds: float, cancel: Optional[threading.Event]) -> None:
        if cancel is None:
            time.sleep(seconds)
        else:
            cancel.wait(seconds)


def _is_set(flag: Optional[threading.Event]) -> bool:
    return flag is not None and flag.is_set()
