"""
hotmic: Resident speech-to-text dictation daemon

Keeps one Whisper model loaded, records from the microphone on request and
returns the transcription to a thin client over a Unix socket.
"""

__version__ = "0.1.0"
