"""Git Replica: local-first multi-device replication over git.

This package watches a data directory, commits and pushes its changes on a
debounced schedule, and reconciles divergent copies of SQLite databases and
JSON documents when two devices edited the same files.
"""

from . import (
    cli,
    config,
    conflicts,
    constants,
    engine,
    git_wrapper,
    merge,
    system,
    watcher,
)

__all__ = [
    "cli",
    "config",
    "conflicts",
    "constants",
    "engine",
    "git_wrapper",
    "merge",
    "system",
    "watcher",
]
