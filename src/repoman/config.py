import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    AGENT_LOG_NAME,
    AGENT_PID_NAME,
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_CLONES_DIR,
    DEFAULT_LOGS_DIR,
    DEFAULT_PRISTINES_DIR,
    DEFAULT_SYNC_INTERVAL,
    DEFAULT_VAULT_DIR,
    LOG_FILE_NAME,
    METADATA_FILE_NAME,
    VAULT_FILE_NAME,
)

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30m', '2d') to seconds."""
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(?:(s|sec|m|min|h|hr|d|day)s?)?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2) or "s"
    multiplier = {
        "s": 1,
        "sec": 1,
        "m": 60,
        "min": 60,
        "h": 3600,
        "hr": 3600,
        "d": 86400,
        "day": 86400,
    }
    return int(num * multiplier[unit])


def expand_path(value: str | Path) -> Path:
    """Expands a leading '~' in a configured path."""
    return Path(value).expanduser()


@dataclass
class PathsConfig:
    """Filesystem roots for managed state.

    Attributes:
        vault_dir (Path): Holds vault.json and per-repository metadata.
        pristines_dir (Path): Holds the bare mirrors.
        clones_dir (Path): Holds the working copies.
        logs_dir (Path): Holds logs and the agent PID file.
    """

    vault_dir: Path = DEFAULT_VAULT_DIR
    pristines_dir: Path = DEFAULT_PRISTINES_DIR
    clones_dir: Path = DEFAULT_CLONES_DIR
    logs_dir: Path = DEFAULT_LOGS_DIR


@dataclass
class AgentConfig:
    """Agent and batch scheduling settings.

    Attributes:
        default_interval (int): Seconds between syncs for repositories without
            their own sync_interval.
        batch_workers (int): Maximum concurrent workers for fleet-wide commands.
    """

    default_interval: int = DEFAULT_SYNC_INTERVAL
    batch_workers: int = 8


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
        gc_days (int): Default age threshold, in days, for stale clones.
    """

    max_log_size: int = 5 * 1024 * 1024
    gc_days: int = 30


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        paths (PathsConfig): Filesystem roots.
        agent (AgentConfig): Scheduler settings.
        limits (LimitsConfig): Resource limits.
    """

    paths: PathsConfig = field(default_factory=PathsConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads configuration from disk, applying defaults where necessary.

        Args:
            path (Path | None): An explicit config file. Defaults to CONFIG_FILE.

        Returns:
            Config: The populated configuration object.
        """
        instance = cls()
        source = path or CONFIG_FILE
        if source.exists():
            instance._merge_from_file(source)
        return instance

    # --- Derived paths ---

    @property
    def vault_file(self) -> Path:
        return self.paths.vault_dir / VAULT_FILE_NAME

    def metadata_dir(self, name: str) -> Path:
        return self.paths.vault_dir / name

    def metadata_file(self, name: str) -> Path:
        return self.metadata_dir(name) / METADATA_FILE_NAME

    def pristine_path(self, name: str) -> Path:
        return self.paths.pristines_dir / name

    def clone_path(self, dir_name: str) -> Path:
        return self.paths.clones_dir / dir_name

    @property
    def log_file(self) -> Path:
        return self.paths.logs_dir / LOG_FILE_NAME

    @property
    def agent_log_file(self) -> Path:
        return self.paths.logs_dir / AGENT_LOG_NAME

    @property
    def agent_pid_file(self) -> Path:
        return self.paths.logs_dir / AGENT_PID_NAME

    def ensure_dirs(self) -> None:
        """Creates every configured root directory."""
        for directory in (
            self.paths.vault_dir,
            self.paths.pristines_dir,
            self.paths.clones_dir,
            self.paths.logs_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if not data:
                return

            for section in ("paths", "agent", "limits"):
                if section not in data:
                    continue
                if not isinstance(data[section], dict):
                    logger.warning(
                        f"Config error in [{section}]: expected a table. "
                        "Falling back to default."
                    )
                    continue
                setattr(
                    self,
                    section,
                    self._update_dataclass(
                        section, getattr(self, section), data[section]
                    ),
                )

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: "
                f"{', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k == "default_interval":
                    filtered_updates[k] = parse_time(v)
                elif section_name == "paths":
                    filtered_updates[k] = expand_path(v)
                elif k in ("batch_workers", "gc_days"):
                    value = int(v)
                    if value < 1:
                        raise ValueError(f"must be positive, got {v}")
                    filtered_updates[k] = value
                else:
                    filtered_updates[k] = v
            except (TypeError, ValueError) as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)
