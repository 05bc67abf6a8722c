import os
from pathlib import Path

"""Global constants and default path definitions for Git Replica.

This module defines the filesystem layout for logs and user configuration
(adhering to XDG standards where applicable), the application identifier,
and the git-level markers and commit messages shared with existing synced
histories.
"""

# --- Identity ---
APP_NAME = "git-replica"
"""str: The human-readable application name."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-replica"
"""Path: The directory for runtime state data (logs)."""

LOG_FILE = STATE_DIR / "replica.log"
"""Path: The file path for the background watcher logs."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/git-replica"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The global configuration file path."""

WORKSPACE_CONFIG_NAME = "replica.toml"
"""str: Optional per-workspace configuration file name."""

# --- Sync Constants ---
DEFAULT_DEBOUNCE_MS = 5000
"""int: Quiet period after the last change before a sync is triggered."""

GIT_DIR_NAME = ".git"

IGNORED_SUFFIXES = ("-journal", "-wal", "-shm", ".tmp", ".bak")
"""
tuple[str, ...]: File name endings of transient database and editor
artifacts that never trigger a sync.
"""

MERGE_MARKER = "MERGE_HEAD"
"""str: Git internal file present while a merge is in progress."""

REBASE_MARKERS = ["rebase-merge", "rebase-apply"]
"""list[str]: Git internal directories present while a rebase is stopped."""

SYNC_COMMIT_TEMPLATE = "Auto-sync from {device} at {timestamp}"
"""str: Commit message for automatic syncs. Must match existing histories."""

SYNC_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"

MERGE_COMMIT_MESSAGE = "Auto-merged sync conflicts"
"""str: Commit message that finalizes an automatic conflict resolution."""

# --- Git output signals ---
UP_TO_DATE_SIGNAL = "Everything up-to-date"
NOTHING_TO_COMMIT_SIGNAL = "nothing to commit"

# --- Merge Defaults ---
DEFAULT_HISTORY_TABLE = "watch_history"
"""str: The high-churn history table deduplicated by natural key."""

DEFAULT_HISTORY_SUBJECT_COLUMN = "anime_id"
DEFAULT_HISTORY_SEQUENCE_COLUMN = "episode_number"

# --- Default data directory (CLI only) ---
DATA_DIR_NAME = "koware"
"""str: Folder name of the replicated data directory used by the CLI."""
