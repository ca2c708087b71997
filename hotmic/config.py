"""
hotmic configuration

One YAML file (~/.config/hotmic/config.yml by default) with a section per
dataclass below. Missing keys take the defaults; unknown keys are errors.
"""

import logging
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from hotmic.errors import ConfigError

logger = logging.getLogger(__name__)

APP_NAME = "hotmic"

DEFAULT_PROMPT = (
    "async, await, impl, struct, enum, pub, static, btreemap, hashmap, kubernetes, k8s, "
    "docker, container, pod, lifecycle, workflow, ci/cd, yaml, json, rustlang, python, "
    "javascript, typescript, bash, git, repo, branch, commit, push, pull, merge, rebase, "
    "upstream, downstream, middleware, database, sql, postgres, redis, api, endpoint, "
    "graphql, rest, grpc, protobuf, systemd, journalctl, flatpak, wayland, nix, cargo."
)


def _xdg_dir(env_var: str, fallback: str) -> Path:
    value = os.environ.get(env_var)
    if value:
        return Path(value)
    return Path.home() / fallback


def get_config_dir() -> Path:
    """Directory holding config.yml (~/.config/hotmic)"""
    return _xdg_dir("XDG_CONFIG_HOME", ".config") / APP_NAME


def get_state_dir() -> Path:
    """Directory for pid and status markers (~/.local/state/hotmic)"""
    state_dir = _xdg_dir("XDG_STATE_HOME", ".local/state") / APP_NAME
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def get_runtime_dir() -> Path:
    """Per-user runtime directory for the daemon socket"""
    runtime = os.environ.get("XDG_RUNTIME_DIR")
    if runtime:
        runtime_dir = Path(runtime) / APP_NAME
        runtime_dir.mkdir(parents=True, exist_ok=True)
        return runtime_dir
    return get_state_dir()


@dataclass
class DaemonConfig:
    """Socket location and read timeouts"""
    socket_path: Optional[str] = None
    client_timeout_secs: float = 30.0
    request_timeout_secs: float = 5.0


@dataclass
class AudioConfig:
    """Microphone capture settings"""
    sample_rate: int = 16000
    device: Optional[Any] = None
    timeout_secs: int = 30
    trailing_secs: float = 1.0
    poll_interval_secs: float = 0.1


@dataclass
class ModelConfig:
    """Speech model configuration"""
    path: str = "openai/whisper-large-v3-turbo"
    language: str = "en"
    prompt: Optional[str] = DEFAULT_PROMPT
    draft_model_path: Optional[str] = None
    device: str = "auto"


@dataclass
class DecodeConfig:
    """Decode loop configuration"""
    temperatures: List[float] = field(default_factory=lambda: [0.0, 0.2, 0.4, 0.6, 0.8, 1.0])
    logprob_threshold: float = -1.0
    compression_ratio_threshold: float = 2.4
    max_prompt_tokens: int = 50
    chunk_length_secs: float = 30.0
    chunk_overlap_secs: float = 5.0
    seed: Optional[int] = None


@dataclass
class FeatureConfig:
    """Spectrogram extraction configuration"""
    library_path: Optional[str] = None


@dataclass
class OutputConfig:
    """Status indicator configuration"""
    refresh_command: Optional[str] = None


@dataclass
class Config:
    """All configuration sections"""
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    decode: DecodeConfig = field(default_factory=DecodeConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    config_path: Optional[Path] = None

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """
        Read config from config_path, or from the default location

        Without an explicit path, a missing default file means built-in
        defaults.

        Raises:
            SystemExit: If an explicitly given config file is missing
            ConfigError: If the file is not valid YAML or has unknown keys
        """
        if config_path is not None:
            resolved_path = config_path
            if not resolved_path.exists():
                logger.error(f"Config file not found: {resolved_path}")
                logger.error("Copy config.example.yml to that path and customize it.")
                sys.exit(1)
        else:
            resolved_path = get_config_dir() / "config.yml"
            if not resolved_path.exists():
                logger.debug(f"No config at {resolved_path}, using defaults")
                return cls()

        config = cls.from_dict(_load_yaml(resolved_path), config_path=resolved_path.parent)
        logger.info(f"Loaded config from {resolved_path}")
        return config

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config_path: Optional[Path] = None) -> "Config":
        """Build a Config from parsed YAML sections"""
        return cls(
            daemon=_section(DaemonConfig, data, "daemon"),
            audio=_section(AudioConfig, data, "audio"),
            model=_section(ModelConfig, data, "model"),
            decode=_section(DecodeConfig, data, "decode"),
            features=_section(FeatureConfig, data, "features"),
            output=_section(OutputConfig, data, "output"),
            config_path=config_path,
        )

    def get_socket_path(self) -> Path:
        """Socket path; relative paths resolve against the config file directory"""
        if not self.daemon.socket_path:
            return get_runtime_dir() / "daemon.sock"
        socket_path = Path(self.daemon.socket_path).expanduser()
        if socket_path.is_absolute() or self.config_path is None:
            return socket_path
        return self.config_path / socket_path


def _section(section_cls, data: Dict[str, Any], name: str):
    values = data.get(name) or {}
    if not isinstance(values, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    known = {f.name for f in fields(section_cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in '{name}': {', '.join(unknown)}")
    return section_cls(**values)


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping of sections")
    return data
