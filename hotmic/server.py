"""
hotmic daemon

The daemon owns the loaded Whisper model and at most one recording session.
Clients talk to it over a Unix socket, one request per connection, each
connection served on its own thread. SIGTERM/SIGINT end the daemon; SIGUSR1
ends the current toggle recording.
"""

import logging
import signal
import socket
import threading
from typing import Any, Callable, Dict, Optional

from hotmic.capture import AudioCapture
from hotmic.config import Config, get_state_dir
from hotmic.errors import HotmicError, ProtocolError
from hotmic.features import SAMPLE_RATE
from hotmic.ipc import create_server_socket, recv_message, send_message
from hotmic.protocol import (
    Request,
    RequestType,
    make_error_response,
    make_ok_response,
    make_pong_response,
    make_recording_response,
    make_status_response,
    make_success_response,
    parse_request,
)
from hotmic.session import SessionManager, Transcribes
from hotmic.status import StatusMarkers
from hotmic.transcriber import Transcriber

logger = logging.getLogger(__name__)

STOP_SIGNAL = signal.SIGUSR1
ACCEPT_TIMEOUT_SECS = 1.0
SHUTDOWN_JOIN_SECS = 5.0

Response = Dict[str, Any]


class Server:
    """
    Resident transcription daemon

    Pass transcriber, capture or markers to replace the pieces normally
    built from config (the model is then never loaded).
    """

    def __init__(
        self,
        config: Config,
        transcriber: Optional[Transcribes] = None,
        capture: Optional[AudioCapture] = None,
        markers: Optional[StatusMarkers] = None,
    ):
        self.config = config
        self._transcriber = transcriber
        self._capture = capture or AudioCapture(config.audio)
        self._markers = markers or StatusMarkers(
            get_state_dir(), refresh_command=config.output.refresh_command
        )
        self._listener: Optional[socket.socket] = None
        self._stopping = threading.Event()
        self.sessions: Optional[SessionManager] = None
        self.ready = threading.Event()

        self._handlers: Dict[RequestType, Callable[[Request], Response]] = {
            RequestType.PING: self._on_ping,
            RequestType.STOP_RECORDING: self._on_stop,
            RequestType.CANCEL_RECORDING: self._on_cancel,
            RequestType.TRANSCRIBE_AUDIO: self._on_transcribe,
            RequestType.GET_STATUS: self._on_status,
            RequestType.SHUTDOWN: self._on_shutdown,
        }

    def run(self) -> None:
        """Install signal handlers and serve; main thread only"""
        signal.signal(signal.SIGTERM, self._terminate_signal_handler)
        signal.signal(signal.SIGINT, self._terminate_signal_handler)
        signal.signal(STOP_SIGNAL, self._stop_signal_handler)
        self.serve()

    def serve(self) -> None:
        """
        Claim the socket, load the model, then accept clients until shutdown

        The socket is claimed first so a second daemon fails before spending
        time on model loading.

        Raises:
            DaemonAlreadyRunning: If another daemon owns the socket
            ModelLoadError: If the model cannot be loaded
        """
        socket_path = self.config.get_socket_path()
        self._listener = create_server_socket(socket_path)
        self._stopping.clear()

        try:
            if self._transcriber is None:
                logger.info(f"Loading model {self.config.model.path}")
                self._transcriber = Transcriber.from_config(self.config)
                logger.info("Model resident, ready for requests")

            self.sessions = SessionManager(self._capture, self._transcriber, self._markers)
            self._markers.write_daemon_pid()

            self._listener.listen(5)
            self._listener.settimeout(ACCEPT_TIMEOUT_SECS)
            logger.info(f"Daemon listening on {socket_path}")
            self.ready.set()

            self._accept_loop()
        finally:
            self._teardown()

    def shutdown(self) -> None:
        self._stopping.set()

    def _terminate_signal_handler(self, signum: int, frame) -> None:
        logger.info(f"Got signal {signum}, stopping daemon")
        self._stopping.set()

    def _stop_signal_handler(self, signum: int, frame) -> None:
        # Flag only; the capture thread polls it
        if self.sessions is not None:
            self.sessions.signal_stop()

    def _accept_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self._stopping.is_set():
                    logger.error(f"accept() failed: {e}")
                break

            worker = threading.Thread(target=self._serve_connection, args=(conn,), daemon=True)
            worker.start()

    def _serve_connection(self, conn: socket.socket) -> None:
        """Read one request from conn and write its response(s)"""
        conn.settimeout(self.config.daemon.request_timeout_secs)
        try:
            try:
                message = recv_message(conn)
                if message is None:
                    return
                request = parse_request(message)
            except socket.timeout:
                logger.warning("Timed out reading request frame")
                send_message(conn, make_error_response("Invalid request: timed out reading frame"))
                return
            except ProtocolError as e:
                logger.warning(f"Rejected malformed request: {e}")
                send_message(conn, make_error_response(f"Invalid request: {e}"))
                return

            # Start and stop replies wait on the session, which has no time bound
            conn.settimeout(None)

            logger.info(f"Request: {request.type.value}")
            if request.type == RequestType.START_RECORDING:
                self._on_start(conn, request)
            else:
                send_message(conn, self._dispatch(request))

        except OSError as e:
            logger.debug(f"Client went away: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error serving request: {e}")
            try:
                send_message(conn, make_error_response(str(e)))
            except OSError:
                pass
        finally:
            conn.close()

    def _dispatch(self, request: Request) -> Response:
        handler = self._handlers.get(request.type)
        if handler is None:
            return make_error_response(f"unknown request type: {request.type.value}")
        try:
            return handler(request)
        except HotmicError as e:
            return make_error_response(str(e))

    def _on_start(self, conn: socket.socket, request: Request) -> None:
        """Reply Recording, then hold the connection open for the session result"""
        try:
            session = self.sessions.start(request.max_duration_secs, request.mode)
        except HotmicError as e:
            send_message(conn, make_error_response(str(e)))
            return

        send_message(conn, make_recording_response())
        outcome = session.wait()
        try:
            send_message(conn, outcome)
        except OSError:
            logger.debug(f"Start client for session {session.id} disconnected before result")

    def _on_ping(self, request: Request) -> Response:
        return make_pong_response()

    def _on_stop(self, request: Request) -> Response:
        return self.sessions.stop().wait()

    def _on_cancel(self, request: Request) -> Response:
        self.sessions.cancel().wait()
        return make_ok_response("Recording cancelled")

    def _on_transcribe(self, request: Request) -> Response:
        result = self.sessions.transcribe_samples(request.samples, SAMPLE_RATE)
        return make_success_response(result.text)

    def _on_status(self, request: Request) -> Response:
        return make_status_response(
            state=self.sessions.state.value,
            model_name=getattr(self._transcriber, "model_name", ""),
            device=getattr(self._transcriber, "device", "cpu"),
            gpu_enabled=bool(getattr(self._transcriber, "gpu_enabled", False)),
        )

    def _on_shutdown(self, request: Request) -> Response:
        logger.info("Shutdown requested by client")
        self._stopping.set()
        active = self.sessions.active
        if active is not None and active.mode is not None:
            active.cancel_requested.set()
        return make_ok_response("shutting down")

    def _teardown(self) -> None:
        logger.info("Stopping daemon")
        self.ready.clear()

        active = self.sessions.active if self.sessions else None
        if active is not None and active.thread is not None:
            active.cancel_requested.set()
            active.thread.join(timeout=SHUTDOWN_JOIN_SECS)

        if self._listener is not None:
            try:
                self._listener.close()
            except OSError:
                pass

        try:
            self.config.get_socket_path().unlink()
        except FileNotFoundError:
            pass

        self._markers.clear()
        self._markers.remove_daemon_pid()
        logger.info("Daemon stopped")


def run_server(config: Config) -> None:
    """Run the daemon in the foreground until it is told to stop"""
    Server(config).run()
