"""
Exception hierarchy for hotmic

Recoverable errors are reported to clients as structured error responses;
ModelLoadError is fatal to the daemon.
"""


class HotmicError(Exception):
    """Base class for all hotmic errors"""


class ConfigError(HotmicError):
    """Invalid or unreadable configuration"""


class CaptureError(HotmicError):
    """No input device, or the device could not be opened"""


class AlreadyRecording(HotmicError):
    """StartRecording issued while a session is active"""

    def __init__(self, state: str = "recording"):
        super().__init__(f"Already recording (state: {state})")
        self.state = state


class NotRecording(HotmicError):
    """StopRecording issued with no stoppable session"""

    def __init__(self, message: str = "Not recording"):
        super().__init__(message)


class DecodeError(HotmicError):
    """Fatal failure inside a forward pass or decode loop"""


class FeatureError(DecodeError):
    """Spectrogram extraction failed or produced the wrong shape"""


class ModelLoadError(HotmicError):
    """Model or tokenizer could not be loaded"""


class ProtocolError(HotmicError):
    """Malformed message on the IPC channel"""
