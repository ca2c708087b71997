"""Unit tests for the recording session state machine."""

import threading

import numpy as np
import pytest

from conftest import FakeCapture, FakeTranscriber, wait_for
from hotmic.errors import AlreadyRecording, CaptureError, DecodeError, NotRecording
from hotmic.protocol import RecordingMode
from hotmic.session import SessionManager, SessionState


@pytest.fixture
def manager(fake_capture, fake_transcriber, markers):
    return SessionManager(fake_capture, fake_transcriber, markers)


@pytest.mark.unit
class TestSessionManager:
    """Test session transitions and outcomes."""

    def test_initially_idle(self, manager):
        assert manager.state == SessionState.IDLE
        assert manager.active is None

    def test_toggle_start_stop_success(self, manager, fake_transcriber, markers):
        session = manager.start(30)

        assert manager.state == SessionState.RECORDING
        assert markers.recording_file.exists()

        assert manager.stop() is session
        outcome = session.wait(5.0)

        assert outcome == {"status": "success", "text": "hello world"}
        assert manager.state == SessionState.IDLE
        assert fake_transcriber.calls == [(16000, 16000)]
        assert not markers.recording_file.exists()
        assert not markers.processing_file.exists()
        assert manager.completed_sessions == 1

    def test_start_while_active_rejected(self, manager):
        session = manager.start(30)
        try:
            with pytest.raises(AlreadyRecording):
                manager.start(30)
        finally:
            manager.stop()
            session.wait(5.0)

    @pytest.mark.parametrize("phase", [SessionState.BUFFERING, SessionState.TRANSCRIBING])
    def test_start_rejected_after_stop(self, phase, fake_transcriber, markers):
        # A slow poll holds the capture loop in its trailing window
        poll = 1.0 if phase == SessionState.BUFFERING else 0.01
        manager = SessionManager(FakeCapture(poll=poll), fake_transcriber, markers)
        fake_transcriber.gate = threading.Event()

        session = manager.start(30)
        manager.stop()
        if phase == SessionState.TRANSCRIBING:
            assert fake_transcriber.entered.wait(5.0)
        try:
            assert manager.state == phase
            with pytest.raises(AlreadyRecording, match=phase.value):
                manager.start(30)
        finally:
            fake_transcriber.gate.set()
            session.wait(5.0)

        assert manager.state == SessionState.IDLE
        assert len(fake_transcriber.calls) == 1

    def test_stop_when_idle_rejected(self, manager):
        with pytest.raises(NotRecording):
            manager.stop()

    def test_cancel_when_idle_rejected(self, manager):
        with pytest.raises(NotRecording):
            manager.cancel()

    def test_repeated_stop_attaches_to_same_result(self, manager, fake_transcriber):
        fake_transcriber.gate = threading.Event()
        session = manager.start(30)
        manager.stop()
        assert fake_transcriber.entered.wait(5.0)
        assert manager.state == SessionState.TRANSCRIBING

        # Second stop while transcribing is a no-op
        assert manager.stop() is session
        assert manager.state == SessionState.TRANSCRIBING

        fake_transcriber.gate.set()
        assert session.wait(5.0)["status"] == "success"
        assert len(fake_transcriber.calls) == 1

    def test_processing_marker_while_transcribing(self, manager, fake_transcriber, markers):
        fake_transcriber.gate = threading.Event()
        session = manager.start(30)
        manager.stop()
        assert fake_transcriber.entered.wait(5.0)

        assert markers.processing_file.exists()
        assert not markers.recording_file.exists()

        fake_transcriber.gate.set()
        session.wait(5.0)
        assert not markers.processing_file.exists()

    def test_start_after_completion(self, manager):
        first = manager.start(30)
        manager.stop()
        first.wait(5.0)

        second = manager.start(30)
        assert second.id != first.id
        manager.stop()
        assert second.wait(5.0)["status"] == "success"

    def test_fixed_session_completes_without_stop(self, manager):
        session = manager.start(1, RecordingMode.FIXED)

        assert session.wait(5.0)["status"] == "success"
        assert manager.state == SessionState.IDLE

    def test_fixed_session_cannot_be_stopped(self, manager, fake_capture):
        fake_capture.poll = 0.5
        session = manager.start(1, RecordingMode.FIXED)
        try:
            with pytest.raises(NotRecording, match="Fixed-duration"):
                manager.stop()
        finally:
            session.wait(5.0)

    def test_signal_stop_ends_toggle_recording(self, manager):
        session = manager.start(30)

        manager.signal_stop()

        assert session.stop_requested.is_set()
        assert session.wait(5.0)["status"] == "success"

    def test_signal_stop_when_idle_is_harmless(self, manager):
        manager.signal_stop()
        assert manager.state == SessionState.IDLE

    def test_stop_enters_buffering(self, manager, fake_capture):
        fake_capture.poll = 0.2
        session = manager.start(30)

        manager.stop()

        assert session.state == SessionState.BUFFERING
        session.wait(5.0)

    def test_cancel_discards_recording(self, manager, fake_transcriber, markers):
        session = manager.start(30)

        assert manager.cancel() is session
        outcome = session.wait(5.0)

        assert outcome == {"status": "error", "message": "Recording cancelled"}
        assert fake_transcriber.calls == []
        assert manager.state == SessionState.IDLE
        assert not markers.recording_file.exists()

    def test_decode_error_resets_to_idle(self, fake_capture, markers):
        transcriber = FakeTranscriber(error=DecodeError("Decoder forward pass failed: boom"))
        manager = SessionManager(fake_capture, transcriber, markers)

        session = manager.start(30)
        manager.stop()
        outcome = session.wait(5.0)

        assert outcome["status"] == "error"
        assert "boom" in outcome["message"]
        assert manager.state == SessionState.IDLE
        # The machine is usable again
        manager.start(30)
        manager.cancel().wait(5.0)

    def test_capture_error_reported(self, fake_transcriber, markers):
        capture = FakeCapture()
        capture.error = CaptureError("No input device available")
        manager = SessionManager(capture, fake_transcriber, markers)

        outcome = manager.start(30).wait(5.0)

        assert outcome == {"status": "error", "message": "No input device available"}
        assert manager.state == SessionState.IDLE

    def test_unexpected_error_reported_as_internal(self, fake_capture, markers):
        transcriber = FakeTranscriber(error=KeyError("weights"))
        manager = SessionManager(fake_capture, transcriber, markers)

        session = manager.start(30)
        manager.stop()
        outcome = session.wait(5.0)

        assert outcome["status"] == "error"
        assert outcome["message"].startswith("Internal error")
        assert manager.state == SessionState.IDLE

    def test_empty_capture_returns_empty_text(self, fake_transcriber, markers):
        manager = SessionManager(FakeCapture(samples=0), fake_transcriber, markers)

        session = manager.start(30)
        manager.stop()

        assert session.wait(5.0) == {"status": "success", "text": ""}
        assert fake_transcriber.calls == []

    def test_toggle_times_out_at_max_duration(self, manager):
        session = manager.start(1)
        assert session.wait(5.0)["status"] == "success"


@pytest.mark.unit
class TestTranscribeSamples:
    """Test client-supplied audio transcription."""

    def test_transcribe_when_idle(self, manager, fake_transcriber, markers):
        result = manager.transcribe_samples(np.zeros(8000, dtype=np.float32), 16000)

        assert result.text == "hello world"
        assert fake_transcriber.calls == [(8000, 16000)]
        assert manager.state == SessionState.IDLE
        assert not markers.processing_file.exists()

    def test_rejected_while_recording(self, manager):
        session = manager.start(30)
        try:
            with pytest.raises(AlreadyRecording):
                manager.transcribe_samples(np.zeros(10, dtype=np.float32), 16000)
        finally:
            manager.stop()
            session.wait(5.0)

    def test_transcribe_session_cannot_be_stopped(self, manager, fake_transcriber):
        fake_transcriber.gate = threading.Event()
        worker = threading.Thread(
            target=manager.transcribe_samples,
            args=(np.zeros(10, dtype=np.float32), 16000),
        )
        worker.start()
        try:
            assert fake_transcriber.entered.wait(5.0)
            assert manager.state == SessionState.TRANSCRIBING
            with pytest.raises(NotRecording):
                manager.stop()
        finally:
            fake_transcriber.gate.set()
            worker.join(5.0)

    def test_errors_propagate_and_reset(self, fake_capture, markers):
        transcriber = FakeTranscriber(error=DecodeError("bad"))
        manager = SessionManager(fake_capture, transcriber, markers)

        with pytest.raises(DecodeError):
            manager.transcribe_samples(np.zeros(10, dtype=np.float32), 16000)
        assert wait_for(lambda: manager.state == SessionState.IDLE)
