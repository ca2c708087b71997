"""
Daemon request/response schema

Requests are JSON objects tagged by "type"; responses are tagged by "status".
"""

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

from hotmic.errors import ProtocolError


class RequestType(str, Enum):
    PING = "ping"
    START_RECORDING = "start_recording"
    STOP_RECORDING = "stop_recording"
    CANCEL_RECORDING = "cancel_recording"
    TRANSCRIBE_AUDIO = "transcribe_audio"
    GET_STATUS = "get_status"
    SHUTDOWN = "shutdown"


class ResponseStatus(str, Enum):
    PONG = "pong"
    OK = "ok"
    RECORDING = "recording"
    SUCCESS = "success"
    ERROR = "error"
    STATUS = "status"


class RecordingMode(str, Enum):
    """Toggle sessions stop on request; fixed sessions run their full duration"""
    TOGGLE = "toggle"
    FIXED = "fixed"


# u32 on the wire
MAX_DURATION_SECS = 2 ** 32 - 1


@dataclass(frozen=True)
class Request:
    """A validated client request"""
    type: RequestType
    max_duration_secs: int = 0
    mode: RecordingMode = RecordingMode.TOGGLE
    samples: Optional[np.ndarray] = None


def parse_request(message: Any) -> Request:
    """
    Validate a decoded JSON message and build a Request

    Raises:
        ProtocolError: On unknown types or missing/invalid fields
    """
    if not isinstance(message, dict):
        raise ProtocolError("request must be a JSON object")

    raw_type = message.get("type")
    if raw_type is None:
        raise ProtocolError("missing 'type' field")
    try:
        request_type = RequestType(raw_type)
    except ValueError:
        raise ProtocolError(f"unknown request type: {raw_type!r}") from None

    if request_type == RequestType.START_RECORDING:
        duration = message.get("max_duration_secs")
        if isinstance(duration, bool) or not isinstance(duration, int):
            raise ProtocolError("'max_duration_secs' must be an integer")
        if not 0 < duration <= MAX_DURATION_SECS:
            raise ProtocolError(f"'max_duration_secs' out of range: {duration}")
        try:
            mode = RecordingMode(message.get("mode", RecordingMode.TOGGLE.value))
        except ValueError:
            raise ProtocolError(f"unknown recording mode: {message.get('mode')!r}") from None
        return Request(request_type, max_duration_secs=duration, mode=mode)

    if request_type == RequestType.TRANSCRIBE_AUDIO:
        return Request(request_type, samples=decode_samples(message.get("samples")))

    return Request(request_type)


def encode_samples(samples: np.ndarray) -> str:
    """Encode float32 samples as base64 little-endian bytes"""
    data = np.asarray(samples, dtype="<f4").tobytes()
    return base64.b64encode(data).decode("ascii")


def decode_samples(encoded: Any) -> np.ndarray:
    if not isinstance(encoded, str):
        raise ProtocolError("'samples' must be a base64 string")
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"invalid base64 samples: {e}") from None
    if len(data) % 4:
        raise ProtocolError("sample payload is not a whole number of float32 values")
    return np.frombuffer(data, dtype="<f4").astype(np.float32)


# Request helpers

def make_ping_request() -> Dict[str, Any]:
    return {"type": RequestType.PING.value}


def make_start_request(
    max_duration_secs: int, mode: RecordingMode = RecordingMode.TOGGLE
) -> Dict[str, Any]:
    return {
        "type": RequestType.START_RECORDING.value,
        "max_duration_secs": max_duration_secs,
        "mode": RecordingMode(mode).value,
    }


def make_stop_request() -> Dict[str, Any]:
    return {"type": RequestType.STOP_RECORDING.value}


def make_cancel_request() -> Dict[str, Any]:
    return {"type": RequestType.CANCEL_RECORDING.value}


def make_transcribe_request(samples: np.ndarray) -> Dict[str, Any]:
    return {"type": RequestType.TRANSCRIBE_AUDIO.value, "samples": encode_samples(samples)}


def make_status_request() -> Dict[str, Any]:
    return {"type": RequestType.GET_STATUS.value}


def make_shutdown_request() -> Dict[str, Any]:
    return {"type": RequestType.SHUTDOWN.value}


# Response helpers

def make_pong_response() -> Dict[str, Any]:
    return {"status": ResponseStatus.PONG.value}


def make_ok_response(message: str) -> Dict[str, Any]:
    return {"status": ResponseStatus.OK.value, "message": message}


def make_recording_response() -> Dict[str, Any]:
    return {"status": ResponseStatus.RECORDING.value}


def make_success_response(text: str) -> Dict[str, Any]:
    return {"status": ResponseStatus.SUCCESS.value, "text": text}


def make_error_response(message: str) -> Dict[str, Any]:
    return {"status": ResponseStatus.ERROR.value, "message": message}


def make_status_response(
    state: str, model_name: str, device: str, gpu_enabled: bool
) -> Dict[str, Any]:
    return {
        "status": ResponseStatus.STATUS.value,
        "state": state,
        "model_name": model_name,
        "device": device,
        "gpu_enabled": gpu_enabled,
    }


def parse_response(message: Any) -> Dict[str, Any]:
    """
    Check that a decoded response carries a known status

    Raises:
        ProtocolError: If the response is not a recognised shape
    """
    if not isinstance(message, dict):
        raise ProtocolError("response must be a JSON object")
    try:
        status = ResponseStatus(message.get("status"))
    except ValueError:
        raise ProtocolError(f"unknown response status: {message.get('status')!r}") from None
    if status == ResponseStatus.SUCCESS and not isinstance(message.get("text"), str):
        raise ProtocolError("success response without 'text'")
    if status in (ResponseStatus.ERROR, ResponseStatus.OK) and not isinstance(
        message.get("message"), str
    ):
        raise ProtocolError(f"{status.value} response without 'message'")
    return message
