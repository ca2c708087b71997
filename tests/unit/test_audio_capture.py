"""Unit tests for microphone capture with the sounddevice module mocked."""

import threading
import time
from unittest.mock import patch

import numpy as np
import pytest

from hotmic.capture import AudioBuffer, AudioCapture, SampleAccumulator, resample, to_mono
from hotmic.config import AudioConfig
from hotmic.errors import CaptureError


class FakePortAudioError(Exception):
    pass


class FakeInputStream:
    """Delivers blocks from a thread, paced by wall-clock time like a real device."""

    def __init__(self, samplerate, channels, callback, left=1.0, right=0.0, start_error=None,
                 **kwargs):
        self.samplerate = samplerate
        self.channels = channels
        self.callback = callback
        self.kwargs = kwargs
        self.levels = [left, right][:channels]
        self._emitted = 0
        self._started_at = 0.0
        self._stop = threading.Event()
        self._thread = None
        self.start_error = start_error
        self.closed = False

    def _push_until(self, now):
        due = int((now - self._started_at) * self.samplerate) - self._emitted
        if due <= 0:
            return
        block = np.tile(np.array(self.levels, dtype=np.float32), (due, 1))
        self.callback(block, due, None, None)
        self._emitted += due

    def _run(self):
        while not self._stop.is_set():
            self._push_until(time.monotonic())
            time.sleep(0.005)

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        self._started_at = time.monotonic()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        self._thread.join()
        self._push_until(time.monotonic())

    def close(self):
        self.closed = True


class FakeSoundDevice:
    """Stands in for the sounddevice module."""

    PortAudioError = FakePortAudioError

    def __init__(self, samplerate=16000, channels=1, has_default=True, devices=None):
        self.info = {
            "name": "Fake Mic",
            "index": 0,
            "max_input_channels": channels,
            "default_samplerate": float(samplerate),
        }
        self.has_default = has_default
        self.devices = devices if devices is not None else [self.info]
        self.stream = None
        self.open_error = None
        self.start_error = None

    def query_devices(self, device=None, kind=None):
        if device is None and kind is None:
            return self.devices
        if device is not None and device != self.info["name"]:
            raise ValueError(f"No input device matching {device!r}")
        if device is None and not self.has_default:
            raise FakePortAudioError("Error querying device -1")
        return self.info

    def InputStream(self, device, channels, samplerate, dtype, callback):
        if self.open_error is not None:
            raise self.open_error
        assert dtype == "float32"
        self.stream = FakeInputStream(
            samplerate, channels, callback, start_error=self.start_error, device=device
        )
        return self.stream


def make_capture(**overrides):
    config = AudioConfig(trailing_secs=0.2, poll_interval_secs=0.01)
    for key, value in overrides.items():
        setattr(config, key, value)
    return AudioCapture(config)


@pytest.mark.unit
class TestHelpers:
    """Test buffer and conversion helpers."""

    def test_audio_buffer_is_read_only(self):
        buffer = AudioBuffer(np.zeros(16000, dtype=np.float32), 16000)

        assert len(buffer) == 16000
        assert buffer.duration == 1.0
        with pytest.raises(ValueError):
            buffer.samples[0] = 1.0

    def test_empty_buffer(self):
        buffer = AudioBuffer.empty(16000)
        assert len(buffer) == 0
        assert buffer.duration == 0.0

    def test_accumulator_collects_in_order(self):
        acc = SampleAccumulator()
        acc.push(np.ones((3, 1), dtype=np.float32))
        acc.push(np.zeros((2, 1), dtype=np.float32))

        frames = acc.collect(1)

        assert acc.frames == 5
        assert frames[:, 0].tolist() == [1, 1, 1, 0, 0]

    def test_accumulator_empty(self):
        assert SampleAccumulator().collect(2).shape == (0, 2)

    def test_to_mono_averages_channels(self):
        stereo = np.array([[1.0, 0.0], [0.5, 0.5]], dtype=np.float32)
        assert to_mono(stereo).tolist() == [0.5, 0.5]

    def test_to_mono_single_channel(self):
        frames = np.array([[0.1], [0.2]], dtype=np.float32)
        assert to_mono(frames).shape == (2,)

    def test_resample_48k_to_16k(self):
        samples = np.zeros(48000, dtype=np.float32)
        result = resample(samples, 48000, 16000)
        assert len(result) == 16000
        assert result.dtype == np.float32

    def test_resample_44k1_to_16k(self):
        result = resample(np.zeros(44100, dtype=np.float32), 44100, 16000)
        assert len(result) == 16000

    def test_resample_same_rate_passthrough(self):
        samples = np.ones(100, dtype=np.float32)
        assert resample(samples, 16000, 16000) is samples


@pytest.mark.unit
class TestDeviceSelection:
    """Test input device selection."""

    def test_default_device(self):
        fake = FakeSoundDevice()
        with patch("hotmic.capture.sd", fake):
            device, info = make_capture().select_device()

        assert device is None
        assert info["name"] == "Fake Mic"

    def test_fallback_to_first_input(self):
        output_only = {"name": "Speakers", "max_input_channels": 0, "default_samplerate": 48000.0}
        fake = FakeSoundDevice(has_default=False)
        fake.devices = [output_only, fake.info]
        with patch("hotmic.capture.sd", fake):
            device, info = make_capture().select_device()

        assert device == 1
        assert info["name"] == "Fake Mic"

    def test_no_input_device(self):
        output_only = {"name": "Speakers", "max_input_channels": 0, "default_samplerate": 48000.0}
        fake = FakeSoundDevice(has_default=False, devices=[output_only])
        with patch("hotmic.capture.sd", fake):
            with pytest.raises(CaptureError, match="No input device"):
                make_capture().select_device()

    def test_configured_device_missing(self):
        with patch("hotmic.capture.sd", FakeSoundDevice()):
            with pytest.raises(CaptureError, match="unavailable"):
                make_capture(device="USB Headset").select_device()

    def test_device_without_inputs(self):
        with patch("hotmic.capture.sd", FakeSoundDevice(channels=0)):
            with pytest.raises(CaptureError, match="no input channels"):
                make_capture().select_device()

    def test_stream_open_failure(self):
        fake = FakeSoundDevice()
        fake.open_error = FakePortAudioError("Device unavailable")
        with patch("hotmic.capture.sd", fake):
            with pytest.raises(CaptureError, match="Failed to open"):
                make_capture().capture_fixed(0.1)

    def test_stream_start_failure_closes_stream(self):
        fake = FakeSoundDevice()
        fake.start_error = FakePortAudioError("Device busy")
        with patch("hotmic.capture.sd", fake):
            with pytest.raises(CaptureError, match="Failed to start"):
                make_capture().capture_toggle(5, stop=threading.Event())
        assert fake.stream.closed


@pytest.mark.unit
class TestCapture:
    """Test fixed and toggle recording."""

    def test_fixed_duration_is_exact(self):
        with patch("hotmic.capture.sd", FakeSoundDevice()):
            buffer = make_capture().capture_fixed(0.3)

        assert buffer.sample_rate == 16000
        assert len(buffer) == 4800

    def test_fixed_duration_resampled_from_48k(self):
        with patch("hotmic.capture.sd", FakeSoundDevice(samplerate=48000)):
            buffer = make_capture().capture_fixed(0.3)

        assert buffer.sample_rate == 16000
        assert len(buffer) == 4800

    def test_stereo_downmixed(self):
        fake = FakeSoundDevice(channels=2)
        with patch("hotmic.capture.sd", fake):
            buffer = make_capture().capture_fixed(0.2)

        assert fake.stream.channels == 2
        assert buffer.channels == 1
        assert np.allclose(buffer.samples, 0.5)

    def test_channels_capped_at_two(self):
        fake = FakeSoundDevice(channels=8)
        with patch("hotmic.capture.sd", fake):
            make_capture().capture_fixed(0.1)

        assert fake.stream.channels == 2

    def test_toggle_records_trailing_window_after_stop(self):
        stop = threading.Event()
        stop_calls = []
        timer = threading.Timer(0.3, stop.set)
        timer.start()
        try:
            with patch("hotmic.capture.sd", FakeSoundDevice()):
                started = time.monotonic()
                buffer = make_capture().capture_toggle(
                    10, stop=stop, on_stop=lambda: stop_calls.append(time.monotonic())
                )
                elapsed = time.monotonic() - started
        finally:
            timer.cancel()

        assert len(stop_calls) == 1
        # Stop after 0.3s plus the 0.2s trailing window
        assert 0.45 <= buffer.duration <= 1.5
        assert elapsed < 5
        # Stop callback fires when the flag is seen, before the trailing window
        assert stop_calls[0] - started >= 0.25

    def test_toggle_max_duration(self):
        stop = threading.Event()
        with patch("hotmic.capture.sd", FakeSoundDevice()):
            buffer = make_capture(trailing_secs=0.0).capture_toggle(1, stop=stop)

        assert 0.95 <= buffer.duration <= 1.5

    def test_cancel_discards_audio(self):
        stop = threading.Event()
        cancel = threading.Event()
        stop_calls = []
        timer = threading.Timer(0.1, cancel.set)
        timer.start()
        try:
            with patch("hotmic.capture.sd", FakeSoundDevice()):
                buffer = make_capture().capture_toggle(
                    10, stop=stop, cancel=cancel, on_stop=lambda: stop_calls.append(1)
                )
        finally:
            timer.cancel()

        assert len(buffer) == 0
        assert stop_calls == []

    def test_cancel_fixed(self):
        cancel = threading.Event()
        cancel.set()
        with patch("hotmic.capture.sd", FakeSoundDevice()):
            buffer = make_capture().capture_fixed(5, cancel=cancel)

        assert len(buffer) == 0
