"""
Daemon socket transport

Each message is a 4-byte big-endian length followed by that many bytes of
UTF-8 JSON. One request per connection; the daemon may answer with more than
one message before closing (StartRecording gets Recording, then the result).
"""

import json
import logging
import os
import socket
import struct
from pathlib import Path
from typing import Any, Dict, Optional

from hotmic.errors import ProtocolError

logger = logging.getLogger(__name__)

FRAME_HEADER = struct.Struct(">I")
MAX_MESSAGE_SIZE = 64 * 1024 * 1024  # room for TranscribeAudio payloads


class DaemonAlreadyRunning(RuntimeError):
    """Another daemon is serving on the socket path"""


def create_server_socket(socket_path: Path) -> socket.socket:
    """
    Bind the daemon's listening socket

    A leftover socket file is removed only if no daemon answers on it.

    Args:
        socket_path: Filesystem address of the socket

    Returns:
        Bound (not yet listening) socket, readable by the owner only

    Raises:
        DaemonAlreadyRunning: If a live daemon owns the socket
    """
    if socket_path.exists():
        if probe_socket(socket_path):
            raise DaemonAlreadyRunning(f"Daemon already running on {socket_path}")
        logger.info(f"Removing stale socket file {socket_path}")
        socket_path.unlink()

    socket_path.parent.mkdir(parents=True, exist_ok=True)
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        server.bind(str(socket_path))
    except OSError as e:
        server.close()
        raise DaemonAlreadyRunning(f"Cannot bind {socket_path}: {e}") from e

    os.chmod(socket_path, 0o600)
    return server


def create_client_socket(socket_path: Path, timeout: Optional[float] = None) -> socket.socket:
    """
    Connect to the daemon

    Args:
        socket_path: Filesystem address of the socket
        timeout: Per-operation timeout in seconds; None blocks

    Raises:
        ConnectionError: If no daemon is listening
    """
    if not socket_path.exists():
        raise ConnectionError(f"Daemon socket not found: {socket_path}")

    conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    conn.settimeout(timeout)
    try:
        conn.connect(str(socket_path))
    except OSError as e:
        conn.close()
        raise ConnectionError(f"Cannot connect to daemon at {socket_path}: {e}") from e
    return conn


def probe_socket(socket_path: Path, timeout: float = 2.0) -> bool:
    """Return True if a daemon answers a ping on socket_path"""
    try:
        conn = create_client_socket(socket_path, timeout=timeout)
    except ConnectionError:
        return False
    try:
        send_message(conn, {"type": "ping"})
        return recv_message(conn) is not None
    except (OSError, ProtocolError):
        return False
    finally:
        conn.close()


def send_message(sock: socket.socket, message: Dict[str, Any]) -> None:
    """Serialize message as JSON and write it as one frame"""
    body = json.dumps(message).encode("utf-8")
    if len(body) > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message too large: {len(body)} bytes")
    sock.sendall(FRAME_HEADER.pack(len(body)) + body)


def recv_message(sock: socket.socket) -> Optional[Any]:
    """
    Read one frame and decode its JSON body

    Returns:
        The decoded value, or None if the peer closed the connection

    Raises:
        ProtocolError: If the frame is oversized or not valid UTF-8 JSON
    """
    header = _read_exactly(sock, FRAME_HEADER.size)
    if header is None:
        return None

    (size,) = FRAME_HEADER.unpack(header)
    if size > MAX_MESSAGE_SIZE:
        raise ProtocolError(f"Message too large: {size} bytes")

    body = _read_exactly(sock, size)
    if body is None:
        return None

    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Malformed message: {e}") from None


def _read_exactly(sock: socket.socket, size: int) -> Optional[bytes]:
    """Read size bytes, or return None if the stream ends first"""
    buf = bytearray(size)
    view = memoryview(buf)
    received = 0
    while received < size:
        count = sock.recv_into(view[received:])
        if count == 0:
            return None
        received += count
    return bytes(buf)
