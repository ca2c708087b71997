"""
hotmic client

Thin CLI client for communicating with the hotmic daemon.
"""

import logging
import os
import signal
import wave
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import numpy as np

from hotmic.capture import resample, to_mono
from hotmic.config import Config, get_state_dir
from hotmic.errors import ProtocolError
from hotmic.features import SAMPLE_RATE
from hotmic.ipc import create_client_socket, recv_message, send_message
from hotmic.protocol import (
    RecordingMode,
    ResponseStatus,
    make_cancel_request,
    make_ping_request,
    make_shutdown_request,
    make_start_request,
    make_status_request,
    make_stop_request,
    make_transcribe_request,
    parse_response,
)
from hotmic.status import StatusMarkers

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_USAGE = 2


class DaemonClient:
    """Sends one request per connection and reads the daemon's replies"""

    def __init__(self, config: Config):
        self.config = config
        self.socket_path = config.get_socket_path()
        self.timeout = config.daemon.client_timeout_secs

    def request(self, message: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Send a request and return its single response

        Raises:
            ConnectionError: If the daemon is unreachable or hangs up
            ProtocolError: If the response is malformed
        """
        responses = self.exchange(message, timeout)
        try:
            return next(responses)
        finally:
            responses.close()

    def exchange(
        self, message: Dict[str, Any], timeout: Optional[float] = None
    ) -> Iterator[Dict[str, Any]]:
        """Send a request and yield responses until the daemon closes the connection"""
        sock = create_client_socket(self.socket_path, timeout=timeout or self.timeout)
        try:
            send_message(sock, message)
            received = False
            while True:
                try:
                    response = recv_message(sock)
                except TimeoutError as e:
                    raise ConnectionError("Timed out waiting for daemon response") from e
                if response is None:
                    if not received:
                        raise ConnectionError("No response from daemon")
                    return
                received = True
                yield parse_response(response)
        finally:
            sock.close()

    def is_running(self) -> bool:
        try:
            response = self.request(make_ping_request(), timeout=2.0)
        except (ConnectionError, ProtocolError, OSError):
            return False
        return response["status"] == ResponseStatus.PONG.value


def _report(response: Dict[str, Any]) -> int:
    """Print success text to stdout; log errors"""
    status = response["status"]
    if status == ResponseStatus.SUCCESS.value:
        if response["text"]:
            print(response["text"])
        return EXIT_SUCCESS
    if status == ResponseStatus.ERROR.value:
        logger.error(f"Daemon error: {response['message']}")
        return EXIT_ERROR
    if status == ResponseStatus.OK.value:
        return EXIT_SUCCESS
    logger.error(f"Unexpected response: {response}")
    return EXIT_ERROR


def _run(action) -> int:
    try:
        return action()
    except ConnectionError as e:
        logger.error(f"Cannot reach daemon: {e}")
        return EXIT_ERROR
    except (ProtocolError, OSError) as e:
        logger.error(f"Communication error: {e}")
        return EXIT_ERROR


def client_start(
    config: Config,
    duration: int,
    mode: RecordingMode = RecordingMode.TOGGLE,
    wait: bool = True,
) -> int:
    """
    Start a recording session

    Args:
        config: Configuration
        duration: Maximum (toggle) or exact (fixed) duration in seconds
        mode: Recording mode
        wait: Keep the connection open and print the transcription

    Returns:
        Exit code
    """
    client = DaemonClient(config)
    # The result arrives after capture, trailing window and decode
    timeout = duration + config.audio.trailing_secs + client.timeout

    def action() -> int:
        responses = client.exchange(make_start_request(duration, mode), timeout=timeout)
        try:
            first = next(responses)
            if first["status"] != ResponseStatus.RECORDING.value:
                return _report(first)
            if not wait:
                return EXIT_SUCCESS
            final = next(responses, None)
            if final is None:
                logger.error("Daemon closed the connection before the result")
                return EXIT_ERROR
            return _report(final)
        finally:
            responses.close()

    return _run(action)


def client_stop(config: Config) -> int:
    """Stop the toggle recording and print its transcription"""
    client = DaemonClient(config)
    return _run(lambda: _report(client.request(make_stop_request())))


def client_cancel(config: Config) -> int:
    """Discard the active recording"""
    client = DaemonClient(config)
    return _run(lambda: _report(client.request(make_cancel_request())))


def client_ping(config: Config) -> int:
    client = DaemonClient(config)
    if client.is_running():
        print("pong")
        return EXIT_SUCCESS
    logger.error("Daemon is not running")
    return EXIT_ERROR


def client_status(config: Config) -> int:
    """Print daemon state, model and device"""
    client = DaemonClient(config)

    def action() -> int:
        response = client.request(make_status_request())
        if response["status"] != ResponseStatus.STATUS.value:
            return _report(response)
        print(f"state: {response.get('state')}")
        print(f"model: {response.get('model_name')}")
        print(f"device: {response.get('device')} (gpu: {response.get('gpu_enabled')})")
        return EXIT_SUCCESS

    return _run(action)


def client_shutdown(config: Config) -> int:
    client = DaemonClient(config)
    return _run(lambda: _report(client.request(make_shutdown_request())))


def client_signal_stop(config: Config) -> int:
    """Deliver the stop signal to the daemon process (for hotkey scripts)"""
    pid = StatusMarkers(get_state_dir()).read_daemon_pid()
    if pid is None:
        logger.error("Daemon pid file not found; is the daemon running?")
        return EXIT_ERROR
    try:
        os.kill(pid, signal.SIGUSR1)
    except ProcessLookupError:
        logger.error(f"Daemon process {pid} not running")
        return EXIT_ERROR
    except PermissionError as e:
        logger.error(f"Cannot signal daemon process {pid}: {e}")
        return EXIT_ERROR
    return EXIT_SUCCESS


def read_wav(path: Path) -> np.ndarray:
    """Read a 16-bit PCM WAV file as 16kHz mono float32"""
    with wave.open(str(path), "rb") as wf:
        if wf.getsampwidth() != 2:
            raise ValueError(f"Only 16-bit PCM WAV is supported ({path})")
        channels = wf.getnchannels()
        rate = wf.getframerate()
        data = wf.readframes(wf.getnframes())

    frames = np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0
    frames = frames.reshape(-1, channels)
    return resample(to_mono(frames), rate, SAMPLE_RATE)


def client_transcribe_file(config: Config, path: Path) -> int:
    """Send a WAV file's audio to the daemon and print the transcription"""
    try:
        samples = read_wav(path)
    except (OSError, ValueError, wave.Error) as e:
        logger.error(f"Cannot read {path}: {e}")
        return EXIT_ERROR

    client = DaemonClient(config)
    return _run(lambda: _report(client.request(make_transcribe_request(samples))))

