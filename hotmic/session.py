"""
Recording session state machine

At most one session is active per daemon:

    IDLE -> RECORDING -> BUFFERING -> TRANSCRIBING -> IDLE

A background worker thread owns capture and decode for the active session.
Clients wait on the session's completion event for the final response.
Any failure returns the machine to IDLE with an error response.
"""

import itertools
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

import numpy as np

from hotmic.capture import AudioBuffer, AudioCapture
from hotmic.engine import TranscriptionResult
from hotmic.errors import AlreadyRecording, HotmicError, NotRecording
from hotmic.protocol import RecordingMode, make_error_response, make_success_response
from hotmic.status import StatusMarkers

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    BUFFERING = "buffering"
    TRANSCRIBING = "transcribing"


class Session:
    """One record-then-transcribe cycle"""

    _ids = itertools.count(1)

    def __init__(self, mode: Optional[RecordingMode], max_duration_secs: int = 0):
        self.id = next(self._ids)
        self.mode = mode
        self.max_duration_secs = max_duration_secs
        self.state = SessionState.IDLE
        self.stop_requested = threading.Event()
        self.cancel_requested = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self._done = threading.Event()
        self._outcome: Optional[Dict[str, Any]] = None

    def finish(self, outcome: Dict[str, Any]) -> None:
        self._outcome = outcome
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Block until the session ends; returns its final response"""
        if not self._done.wait(timeout):
            return None
        return self._outcome

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def __repr__(self) -> str:
        return f"Session(id={self.id}, mode={self.mode}, state={self.state.value})"


class Transcribes(Protocol):
    def transcribe(self, samples: np.ndarray, sample_rate: int) -> TranscriptionResult:
        ...


class SessionManager:
    """
    Serializes access to the audio device and the resident model

    Only start/stop/cancel/transcribe_samples change which session is
    active. The stop flag on the active session is the one piece of state
    shared with the signal handler.
    """

    def __init__(self, capture: AudioCapture, transcriber: Transcribes, markers: StatusMarkers):
        self.capture = capture
        self.transcriber = transcriber
        self.markers = markers
        self._lock = threading.Lock()
        self._active: Optional[Session] = None

        # Statistics
        self.completed_sessions = 0

    @property
    def state(self) -> SessionState:
        session = self._active
        return session.state if session is not None else SessionState.IDLE

    @property
    def active(self) -> Optional[Session]:
        return self._active

    def start(self, max_duration_secs: int, mode: RecordingMode = RecordingMode.TOGGLE) -> Session:
        """
        Begin a recording session on a background thread

        Raises:
            AlreadyRecording: If any session is active
        """
        with self._lock:
            if self._active is not None:
                raise AlreadyRecording(self._active.state.value)
            session = Session(RecordingMode(mode), max_duration_secs)
            session.state = SessionState.RECORDING
            self._active = session

        logger.info(f"Starting {session.mode.value} recording (max {max_duration_secs}s)")
        self._update_markers(self.markers.mark_recording)

        session.thread = threading.Thread(
            target=self._run,
            args=(session,),
            name=f"session-{session.id}",
            daemon=True,
        )
        session.thread.start()
        return session

    def stop(self) -> Session:
        """
        Request the end of a toggle recording; the trailing window follows

        Repeated requests while buffering or transcribing return the same
        session without further effect.

        Raises:
            NotRecording: If no toggle session is active
        """
        with self._lock:
            session = self._active
            if session is None or session.mode is None:
                raise NotRecording()
            if session.mode == RecordingMode.FIXED:
                raise NotRecording("Fixed-duration recording stops on its own")
            session.stop_requested.set()
            if session.state == SessionState.RECORDING:
                session.state = SessionState.BUFFERING
                logger.info("Stop requested - buffering trailing audio")
            else:
                logger.debug(f"Stop ignored, session already {session.state.value}")
        return session

    def cancel(self) -> Session:
        """
        Abort the active recording without transcribing

        Raises:
            NotRecording: If no recording session is active
        """
        with self._lock:
            session = self._active
            if session is None or session.mode is None:
                raise NotRecording()
            session.cancel_requested.set()
            session.stop_requested.set()
        logger.info("Cancel requested - discarding recording")
        return session

    def signal_stop(self) -> None:
        """Signal-handler entry point: set the stop flag only"""
        session = self._active
        if session is not None:
            session.stop_requested.set()

    def transcribe_samples(self, samples: np.ndarray, sample_rate: int) -> TranscriptionResult:
        """
        Transcribe client-supplied audio on the calling thread

        Raises:
            AlreadyRecording: If a session is active
        """
        with self._lock:
            if self._active is not None:
                raise AlreadyRecording(self._active.state.value)
            session = Session(mode=None)
            session.state = SessionState.TRANSCRIBING
            self._active = session

        self._update_markers(self.markers.mark_processing)
        try:
            return self.transcriber.transcribe(samples, sample_rate)
        finally:
            self._reset(session)

    def _run(self, session: Session) -> None:
        """Worker: capture, then decode, then return to IDLE"""
        outcome: Dict[str, Any]
        try:
            buffer = self._capture(session)
            if session.cancel_requested.is_set():
                outcome = make_error_response("Recording cancelled")
            else:
                result = self._transcribe(session, buffer)
                logger.info(
                    f"Session {session.id} transcribed {len(result.text)} chars "
                    f"(temp {result.temperature}, logprob {result.avg_logprob:.3f})"
                )
                outcome = make_success_response(result.text)
        except HotmicError as e:
            logger.error(f"Session {session.id} failed: {e}")
            outcome = make_error_response(str(e))
        except Exception as e:
            logger.exception(f"Session {session.id} crashed")
            outcome = make_error_response(f"Internal error: {e}")
        finally:
            self._reset(session)

        self.completed_sessions += 1
        session.finish(outcome)

    def _capture(self, session: Session) -> AudioBuffer:
        if session.mode == RecordingMode.FIXED:
            return self.capture.capture_fixed(
                session.max_duration_secs, cancel=session.cancel_requested
            )
        return self.capture.capture_toggle(
            session.max_duration_secs,
            stop=session.stop_requested,
            cancel=session.cancel_requested,
            on_stop=lambda: self._enter_buffering(session),
        )

    def _enter_buffering(self, session: Session) -> None:
        with self._lock:
            if session.state == SessionState.RECORDING:
                session.state = SessionState.BUFFERING

    def _transcribe(self, session: Session, buffer: AudioBuffer) -> TranscriptionResult:
        with self._lock:
            session.state = SessionState.TRANSCRIBING
        self._update_markers(self.markers.mark_processing)

        if len(buffer) == 0:
            logger.info("No audio captured, returning empty transcription")
            return TranscriptionResult.empty()

        logger.info(f"Transcribing {len(buffer)} samples ({buffer.duration:.2f}s)...")
        return self.transcriber.transcribe(buffer.samples, buffer.sample_rate)

    def _reset(self, session: Session) -> None:
        with self._lock:
            session.state = SessionState.IDLE
            if self._active is session:
                self._active = None
        self._update_markers(self.markers.clear)

    @staticmethod
    def _update_markers(update: Callable[[], None]) -> None:
        try:
            update()
        except OSError as e:
            logger.warning(f"Could not update status markers: {e}")
