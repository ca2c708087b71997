"""
Status markers for external indicators

Status bars poll these files instead of querying the daemon:
- recording.pid: "<pid>\n<started-at epoch seconds>\n" while capturing
- processing: present while a transcription is running
"""

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class RecordingMarker:
    pid: int
    started_at: int


class StatusMarkers:
    """Writes and removes the marker files in the state directory"""

    def __init__(self, state_dir: Path, refresh_command: Optional[str] = None):
        self.state_dir = state_dir
        self.refresh_command = refresh_command

    @property
    def recording_file(self) -> Path:
        return self.state_dir / "recording.pid"

    @property
    def processing_file(self) -> Path:
        return self.state_dir / "processing"

    @property
    def daemon_pid_file(self) -> Path:
        return self.state_dir / "daemon.pid"

    def mark_recording(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.recording_file.write_text(f"{os.getpid()}\n{int(time.time())}\n")
        self._remove(self.processing_file)
        logger.debug(f"Recording marker written: {self.recording_file}")
        self.refresh()

    def mark_processing(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._remove(self.recording_file)
        self.processing_file.write_text("")
        self.refresh()

    def clear(self) -> None:
        """Remove all session markers (back to idle)"""
        removed = self._remove(self.recording_file)
        removed = self._remove(self.processing_file) or removed
        if removed:
            self.refresh()

    def read_recording(self) -> Optional[RecordingMarker]:
        """
        Read the recording marker, dropping it if stale

        Returns:
            The marker, or None if absent, invalid or owned by a dead process
        """
        try:
            lines = self.recording_file.read_text().splitlines()
        except FileNotFoundError:
            return None

        try:
            pid = int(lines[0])
            started_at = int(lines[1]) if len(lines) > 1 else 0
        except (IndexError, ValueError):
            pid = 0
            started_at = 0

        if pid <= 0 or not _process_exists(pid):
            logger.info(f"Cleaning up stale recording marker (pid {pid})")
            self._remove(self.recording_file)
            return None

        return RecordingMarker(pid=pid, started_at=started_at)

    def write_daemon_pid(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.daemon_pid_file.write_text(f"{os.getpid()}\n")

    def read_daemon_pid(self) -> Optional[int]:
        try:
            return int(self.daemon_pid_file.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def remove_daemon_pid(self) -> None:
        self._remove(self.daemon_pid_file)

    def refresh(self) -> None:
        """Spawn the configured status-bar refresh command, detached"""
        if not self.refresh_command:
            return
        try:
            subprocess.Popen(
                shlex.split(self.refresh_command),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning(f"Status refresh command failed: {e}")

    @staticmethod
    def _remove(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False


def _process_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
