import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, ClassVar

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_HISTORY_SEQUENCE_COLUMN,
    DEFAULT_HISTORY_SUBJECT_COLUMN,
    DEFAULT_HISTORY_TABLE,
    WORKSPACE_CONFIG_NAME,
)
from .system import get_device_name

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


def parse_duration_ms(value: int | str) -> int:
    """Converts human-readable durations (e.g., '5s', '750ms', '1min') to milliseconds.

    Bare integers are taken as milliseconds.
    """
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Invalid duration '{value}'")
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(ms|s|sec|m|min)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid duration format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"ms": 1, "s": 1000, "sec": 1000, "m": 60_000, "min": 60_000}
    return int(num * multiplier[unit])


@dataclass(frozen=True)
class WorkspaceConfig:
    """Everything the sync engine needs to know about one workspace.

    The engine receives this value explicitly and never looks up platform
    folders on its own.

    Attributes:
        path (Path): The replicated data directory (a git work tree).
        device_name (str): Name written into automatic commit messages.
        remote_name (str): The git remote to push to and pull from.
        debounce_ms (int): Quiet period before a watched change is synced.
        history_table (str): Table deduplicated by natural key during merges.
        history_subject_column (str): Subject part of the natural key.
        history_sequence_column (str): Sequence part of the natural key.
        notify (bool): Whether failed background syncs raise a desktop notification.
    """

    path: Path
    device_name: str
    remote_name: str = "origin"
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    history_table: str = DEFAULT_HISTORY_TABLE
    history_subject_column: str = DEFAULT_HISTORY_SUBJECT_COLUMN
    history_sequence_column: str = DEFAULT_HISTORY_SEQUENCE_COLUMN
    notify: bool = False


@dataclass
class CoreConfig:
    """Core application settings.

    Attributes:
        remote_name (str): The git remote used as the replication transport.
        device_name (str | None): Overrides the host name in commit messages.
    """

    remote_name: str = "origin"
    device_name: str | None = None


@dataclass
class SyncConfig:
    """Watcher and session settings.

    Attributes:
        debounce (int): Sliding debounce window in milliseconds.
        notify (bool): Desktop notification when a background sync fails.
    """

    debounce: int = DEFAULT_DEBOUNCE_MS
    notify: bool = False


@dataclass
class MergeConfig:
    """Conflict resolution settings.

    Attributes:
        history_table (str): The high-churn table merged by natural key.
        subject_column (str): Column identifying the subject of a history entry.
        sequence_column (str): Column holding the sequence/episode number.
    """

    history_table: str = DEFAULT_HISTORY_TABLE
    subject_column: str = DEFAULT_HISTORY_SUBJECT_COLUMN
    sequence_column: str = DEFAULT_HISTORY_SEQUENCE_COLUMN


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        core (CoreConfig): Core settings.
        sync (SyncConfig): Watcher/session settings.
        merge (MergeConfig): Conflict resolution settings.
        limits (LimitsConfig): Resource limits.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    # Cache for the base global configuration
    _global_cache: ClassVar["Config | None"] = None

    @classmethod
    def load(cls, workspace: Path | None = None) -> "Config":
        """Loads and merges configuration from defaults, global, and workspace sources.

        Args:
            workspace (Path | None): The data directory to search for a local config.

        Returns:
            Config: The fully merged configuration object.
        """
        # 1. Load or Retrieve Global Config
        if cls._global_cache is None:
            instance = cls()
            if CONFIG_FILE.exists():
                instance._merge_from_file(CONFIG_FILE)
            cls._global_cache = instance

        # Sections are copied so workspace overrides never leak into the cache.
        base = cls._global_cache
        instance = cls(
            core=replace(base.core),
            sync=replace(base.sync),
            merge=replace(base.merge),
            limits=replace(base.limits),
        )

        # 2. Load Workspace Config (if applicable)
        if workspace:
            local_toml = workspace / WORKSPACE_CONFIG_NAME
            if local_toml.exists():
                instance._merge_from_file(local_toml)

        return instance

    def workspace_config(self, path: Path) -> WorkspaceConfig:
        """Builds the explicit engine configuration for a data directory.

        Args:
            path (Path): The workspace root.

        Returns:
            WorkspaceConfig: The value handed to `SyncEngine`.
        """
        return WorkspaceConfig(
            path=path,
            device_name=self.core.device_name or get_device_name(),
            remote_name=self.core.remote_name,
            debounce_ms=self.sync.debounce,
            history_table=self.merge.history_table,
            history_subject_column=self.merge.subject_column,
            history_sequence_column=self.merge.sequence_column,
            notify=self.sync.notify,
        )

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

            for section in ("core", "sync", "merge", "limits"):
                if section in data:
                    updated = self._update_dataclass(
                        section, getattr(self, section), data[section]
                    )
                    setattr(self, section, updated)

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except Exception as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        # 1. Catch and warn about typos / unknown keys
        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        # 2. Process valid keys
        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                # Route specific keys through our parsers
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k == "debounce":
                    filtered_updates[k] = parse_duration_ms(v)
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)
