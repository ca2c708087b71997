"""
hotmic CLI

Entry point for the hotmic command.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

from hotmic import __version__
from hotmic.client import (
    EXIT_ERROR,
    EXIT_SUCCESS,
    EXIT_USAGE,
    client_cancel,
    client_ping,
    client_shutdown,
    client_signal_stop,
    client_start,
    client_status,
    client_stop,
    client_transcribe_file,
)
from hotmic.config import Config
from hotmic.errors import ConfigError, HotmicError
from hotmic.ipc import DaemonAlreadyRunning
from hotmic.protocol import RecordingMode
from hotmic.server import run_server


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
QUIET_LOGGERS = ("transformers", "torch", "urllib3")


def setup_logging(verbose: bool = False) -> None:
    """Daemon logging to stdout; DEBUG when verbose"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stdout,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def create_parser() -> argparse.ArgumentParser:
    """Build the hotmic argument parser"""
    parser = argparse.ArgumentParser(
        prog="hotmic",
        description="Resident speech-to-text dictation daemon",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"hotmic {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to config file (default: ~/.config/hotmic/config.yml)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser(
        "serve",
        help="Start the daemon (keeps the model loaded)",
    )
    serve_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    start_parser = subparsers.add_parser(
        "start",
        help="Start recording; prints the transcription when done",
    )
    start_parser.add_argument(
        "-d", "--duration",
        type=int,
        default=None,
        help="Maximum seconds to record (default: audio.timeout_secs)",
    )
    start_parser.add_argument(
        "--fixed",
        action="store_true",
        help="Record exactly --duration seconds instead of waiting for stop",
    )
    start_parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Return once recording has started",
    )

    subparsers.add_parser("stop", help="Stop recording and print the transcription")
    subparsers.add_parser("cancel", help="Discard the current recording")
    subparsers.add_parser(
        "signal-stop",
        help="Send the stop signal to the daemon process",
    )
    subparsers.add_parser("status", help="Show daemon state, model and device")
    subparsers.add_parser("ping", help="Check that the daemon is running")
    subparsers.add_parser("shutdown", help="Stop the daemon")

    transcribe_parser = subparsers.add_parser(
        "transcribe",
        help="Transcribe a 16-bit PCM WAV file with the daemon's model",
    )
    transcribe_parser.add_argument("path", type=Path, help="WAV file")

    return parser


def _serve(parsed: argparse.Namespace, config: Config) -> int:
    try:
        run_server(config)
    except (DaemonAlreadyRunning, HotmicError) as e:
        logging.getLogger("hotmic").error(str(e))
        return EXIT_ERROR
    return EXIT_SUCCESS


def _start(parsed: argparse.Namespace, config: Config) -> int:
    duration = parsed.duration if parsed.duration is not None else config.audio.timeout_secs
    if duration <= 0:
        print("Duration must be positive", file=sys.stderr)
        return EXIT_USAGE
    mode = RecordingMode.FIXED if parsed.fixed else RecordingMode.TOGGLE
    return client_start(config, duration, mode=mode, wait=not parsed.no_wait)


COMMANDS: Dict[str, Callable[[argparse.Namespace, Config], int]] = {
    "serve": _serve,
    "start": _start,
    "stop": lambda parsed, config: client_stop(config),
    "cancel": lambda parsed, config: client_cancel(config),
    "signal-stop": lambda parsed, config: client_signal_stop(config),
    "status": lambda parsed, config: client_status(config),
    "ping": lambda parsed, config: client_ping(config),
    "shutdown": lambda parsed, config: client_shutdown(config),
    "transcribe": lambda parsed, config: client_transcribe_file(config, parsed.path),
}


def main(args: Optional[List[str]] = None) -> int:
    """Parse args, load config and dispatch; returns the process exit code"""
    parser = create_parser()
    parsed = parser.parse_args(args)

    command = COMMANDS.get(parsed.command) if parsed.command else None
    if command is None:
        parser.print_help()
        return EXIT_USAGE

    if parsed.command == "serve":
        setup_logging(verbose=parsed.verbose)
    else:
        # Clients print results on stdout; only errors go to stderr
        logging.basicConfig(level=logging.ERROR, format="%(message)s", stream=sys.stderr)

    try:
        config = Config.load(parsed.config)
    except ConfigError as e:
        print(f"Invalid config: {e}", file=sys.stderr)
        return EXIT_ERROR

    return command(parsed, config)


if __name__ == "__main__":
    sys.exit(main())
