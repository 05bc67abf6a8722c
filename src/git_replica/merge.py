"""Typed merge strategies for conflicted workspace files.

Each conflicted path is classified by a pure function into a MergeKind and
handed to the matching strategy. Strategies read both sides of the conflict
from the index (stage 2 is the local side, stage 3 the remote side), write the
reconciled result into the workspace and report a MergeOutcome. Staging the
result is left to the caller.
"""

import copy
import json
import logging
import os
import shutil
import sqlite3
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Protocol

from .config import WorkspaceConfig
from .constants import APP_NAME
from .git_wrapper import STAGE_LOCAL, STAGE_REMOTE, GitError, GitRepo

logger = logging.getLogger(APP_NAME)


class MergeKind(Enum):
    """The merge capability selected for a conflicted file."""

    SQLITE = "sqlite"
    JSON = "json"
    KEEP_LOCAL = "keep-local"


def classify(path: str) -> MergeKind:
    """Selects the merge strategy for a workspace-relative path.

    Args:
        path (str): The conflicted path as reported by git.

    Returns:
        MergeKind: SQLITE for `.db`, JSON for `.json`, KEEP_LOCAL otherwise.
    """
    suffix = PurePosixPath(path).suffix.lower()
    if suffix == ".db":
        return MergeKind.SQLITE
    if suffix == ".json":
        return MergeKind.JSON
    return MergeKind.KEEP_LOCAL


@dataclass
class MergeOutcome:
    """Result of resolving one conflicted file.

    Attributes:
        resolved (bool): Whether the file may be staged as resolved.
        message (str): Human-readable description of what was kept.
        records_merged (int): Rows pulled in from the remote side.
    """

    resolved: bool
    message: str
    records_merged: int = 0


class MergeStrategy(Protocol):
    def resolve(
        self, path: str, cancel: threading.Event | None = None
    ) -> MergeOutcome: ...


def keep_local(repo: GitRepo, path: str) -> MergeOutcome:
    """Restores the local side of a conflicted path.

    If this device deleted the file, the deletion is what gets kept: the
    workspace copy is removed so that staging the path records the removal.

    Raises:
        GitError: If git cannot be queried or the checkout fails.
    """
    if not repo.has_stage(path, STAGE_LOCAL):
        (repo.path / path).unlink(missing_ok=True)
        return MergeOutcome(True, "Kept local deletion")
    repo.checkout_ours(path)
    return MergeOutcome(True, "Kept local version")


class GenericKeepLocal:
    """Resolves files with opaque structure by keeping the local version."""

    def __init__(self, repo: GitRepo):
        self.repo = repo

    def resolve(self, path: str, cancel: threading.Event | None = None) -> MergeOutcome:
        return keep_local(self.repo, path)


def deep_merge(local: dict, remote: dict) -> dict:
    """Recursively merges two JSON objects, preferring local values.

    Keys only present remotely are appended after the local keys. When both
    sides hold an object under the same key the objects are merged; any other
    disagreement keeps the local value.

    Args:
        local (dict): The local document.
        remote (dict): The remote document.

    Returns:
        dict: A new merged document; neither input is modified.
    """
    result = copy.deepcopy(local)
    for key, value in remote.items():
        if key not in result:
            result[key] = copy.deepcopy(value)
        elif isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
    return result


class JsonDeepMerge:
    """Reconciles JSON configuration documents by deep merging objects."""

    def __init__(self, repo: GitRepo):
        self.repo = repo

    def _read_side(self, path: str, stage: int) -> str:
        try:
            blob = self.repo.show_blob(path, stage)
            return blob.decode("utf-8-sig", errors="replace")
        except GitError as e:
            logger.debug(f"Could not read stage {stage} of {path}: {e}")
            return ""

    def _write(self, path: str, text: str) -> None:
        (self.repo.path / path).write_text(text, encoding="utf-8", newline="")

    def resolve(self, path: str, cancel: threading.Event | None = None) -> MergeOutcome:
        local_text = self._read_side(path, STAGE_LOCAL)
        remote_text = self._read_side(path, STAGE_REMOTE)

        if not local_text.strip() or not remote_text.strip():
            if local_text.strip():
                self._write(path, local_text)
                return MergeOutcome(True, "Kept local version")
            if remote_text.strip():
                self._write(path, remote_text)
                return MergeOutcome(True, "Kept remote version")
            return MergeOutcome(False, "Both versions empty")

        try:
            local_doc = json.loads(local_text)
            remote_doc = json.loads(remote_text)
        except json.JSONDecodeError as e:
            logger.warning(f"MERGE {path}: invalid JSON ({e}). Keeping local.")
            outcome = keep_local(self.repo, path)
            return MergeOutcome(True, f"{outcome.message} (invalid JSON: {e.msg})")

        if isinstance(local_doc, dict) and isinstance(remote_doc, dict):
            merged = deep_merge(local_doc, remote_doc)
            self._write(path, json.dumps(merged, indent=2, ensure_ascii=False))
            return MergeOutcome(True, "Deep merged JSON")

        self._write(path, local_text)
        return MergeOutcome(True, "Kept local version (non-object JSON)")


@dataclass(frozen=True)
class HistoryKey:
    """Natural key of the high-churn history table.

    Rows are identified by (subject, sequence, timestamp) instead of their
    autoincrement id, which two devices may hand out independently.
    """

    table: str
    subject_column: str
    sequence_column: str


@dataclass(frozen=True)
class _Column:
    name: str
    type: str
    pk: int


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def detect_timestamp_column(names: list[str]) -> str | None:
    """Returns the first column that looks like a timestamp.

    A column qualifies when its name contains 'time' or 'date', or ends in '_at'.
    """
    for name in names:
        lowered = name.lower()
        if "time" in lowered or "date" in lowered or lowered.endswith("_at"):
            return name
    return None


def _table_columns(conn: sqlite3.Connection, table: str) -> list[_Column]:
    rows = conn.execute(f"PRAGMA table_info({_quote(table)})").fetchall()
    return [_Column(name=r[1], type=(r[2] or "").upper(), pk=r[5]) for r in rows]


def _ensure_table(
    merged: sqlite3.Connection, remote: sqlite3.Connection, table: str
) -> None:
    """Creates a table that only exists on the remote side."""
    exists = merged.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    if exists:
        return
    row = remote.execute(
        "SELECT sql FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    if row and row[0]:
        merged.execute(row[0])
        logger.info(f"MERGE: created table {table} from remote schema.")


def _merge_table(
    merged: sqlite3.Connection,
    remote: sqlite3.Connection,
    table: str,
    history: HistoryKey,
) -> int:
    """Copies every remote row of one table into the merged database.

    Returns:
        int: Number of rows actually inserted.
    """
    try:
        columns = _table_columns(remote, table)
        if not columns:
            return 0
        _ensure_table(merged, remote, table)

        names = [c.name for c in columns]
        pk_columns = [c for c in columns if c.pk]
        primary_key = pk_columns[0].name if pk_columns else None
        timestamp_column = detect_timestamp_column(names)

        use_natural_key = (
            table == history.table
            and timestamp_column is not None
            and history.subject_column in names
            and history.sequence_column in names
        )

        if use_natural_key:
            # An INTEGER PRIMARY KEY is a rowid alias: let SQLite assign a fresh one.
            skip = None
            if len(pk_columns) == 1 and pk_columns[0].type == "INTEGER":
                skip = primary_key
            insert_names = [n for n in names if n != skip]
            key_names = [
                history.subject_column,
                history.sequence_column,
                timestamp_column,
            ]
            where = " AND ".join(f"{_quote(n)} IS ?" for n in key_names)
            sql = (
                f"INSERT INTO {_quote(table)} "
                f"({', '.join(_quote(n) for n in insert_names)}) "
                f"SELECT {', '.join('?' for _ in insert_names)} "
                f"WHERE NOT EXISTS (SELECT 1 FROM {_quote(table)} WHERE {where})"
            )
        else:
            insert_names = names
            sql = (
                f"INSERT OR IGNORE INTO {_quote(table)} "
                f"({', '.join(_quote(n) for n in insert_names)}) "
                f"VALUES ({', '.join('?' for _ in insert_names)})"
            )

        select = f"SELECT {', '.join(_quote(n) for n in names)} FROM {_quote(table)}"
        inserted = 0
        with merged:
            for row in remote.execute(select):
                values = dict(zip(names, row))
                params: list[Any] = [values[n] for n in insert_names]
                if use_natural_key:
                    params.extend(values[n] for n in key_names)
                try:
                    cursor = merged.execute(sql, params)
                    inserted += max(cursor.rowcount, 0)
                except sqlite3.Error as e:
                    logger.warning(f"MERGE: skipped row in {table}: {e}")
        return inserted

    except sqlite3.Error as e:
        logger.warning(f"MERGE: table {table} merge error: {e}")
        return 0


def merge_databases(
    merged_path: Path,
    remote_path: Path,
    history: HistoryKey,
    cancel: threading.Event | None = None,
) -> int:
    """Unions every user table of the remote database into `merged_path`.

    Only the merged connection writes; the remote file is opened read-only.
    Each table is committed separately, so stopping early through `cancel`
    leaves a consistent database holding the tables copied so far.

    Args:
        merged_path (Path): Database to write into (a copy of the local side).
        remote_path (Path): The remote side's database.
        history (HistoryKey): Natural key definition for the history table.
        cancel (threading.Event | None): Checked between tables.

    Returns:
        int: Total number of rows pulled in from the remote side.
    """
    merged = sqlite3.connect(merged_path)
    try:
        remote = sqlite3.connect(f"{remote_path.as_uri()}?mode=ro", uri=True)
        try:
            tables = [
                row[0]
                for row in remote.execute(
                    "SELECT name FROM sqlite_master "
                    "WHERE type='table' AND name NOT LIKE 'sqlite_%'"
                )
            ]
            total = 0
            for table in tables:
                if cancel is not None and cancel.is_set():
                    logger.info("MERGE: cancelled between tables.")
                    break
                total += _merge_table(merged, remote, table, history)
            return total
        finally:
            remote.close()
    finally:
        merged.close()


class SqliteRowMerge:
    """Reconciles two divergent copies of an embedded SQLite database."""

    def __init__(self, repo: GitRepo, history: HistoryKey):
        self.repo = repo
        self.history = history

    def _keep_local(self, path: str, reason: str) -> MergeOutcome:
        outcome = keep_local(self.repo, path)
        return MergeOutcome(True, f"{outcome.message} ({reason})")

    def resolve(self, path: str, cancel: threading.Event | None = None) -> MergeOutcome:
        target = self.repo.path / path
        # The ".tmp" suffix keeps the watcher quiet while the file lands.
        staging = target.with_name(target.name + ".tmp")

        with tempfile.TemporaryDirectory(prefix="replica-merge-") as tmp:
            tmp_dir = Path(tmp)
            local_copy = tmp_dir / "local.db"
            remote_copy = tmp_dir / "remote.db"
            merged_copy = tmp_dir / "merged.db"

            try:
                local_copy.write_bytes(self.repo.show_blob(path, STAGE_LOCAL))
                remote_copy.write_bytes(self.repo.show_blob(path, STAGE_REMOTE))
            except (GitError, OSError) as e:
                logger.warning(f"MERGE {path}: could not extract both sides: {e}")
                return self._keep_local(path, "extraction failed")

            try:
                shutil.copyfile(local_copy, merged_copy)
                count = merge_databases(merged_copy, remote_copy, self.history, cancel)

                shutil.copyfile(merged_copy, staging)
                os.replace(staging, target)
            except Exception as e:
                logger.warning(f"MERGE {path}: database merge failed: {e}")
                staging.unlink(missing_ok=True)
                return self._keep_local(path, "merge failed")

        logger.info(f"MERGE {path}: merged {count} record(s) from remote.")
        return MergeOutcome(True, f"Merged {count} record(s) from remote", count)


def build_strategies(
    repo: GitRepo, config: WorkspaceConfig
) -> dict[MergeKind, MergeStrategy]:
    """Creates one strategy instance per MergeKind for a workspace."""
    history = HistoryKey(
        table=config.history_table,
        subject_column=config.history_subject_column,
        sequence_column=config.history_sequence_column,
    )
    return {
        MergeKind.SQLITE: SqliteRowMerge(repo, history),
        MergeKind.JSON: JsonDeepMerge(repo),
        MergeKind.KEEP_LOCAL: GenericKeepLocal(repo),
    }
