"""Tests for conflict detection and resolution, including two real devices."""

import json
import shutil
import sqlite3
import subprocess
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_replica.config import WorkspaceConfig
from git_replica.conflicts import ConflictDetector, ConflictResolver
from git_replica.engine import SyncEngine
from git_replica.git_wrapper import GitError
from git_replica.merge import MergeKind, MergeOutcome

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


# --- Resolver with mocked strategies ---


@pytest.fixture
def repo() -> MagicMock:
    mock = MagicMock()
    mock.diff_conflicted.return_value = ["a.db", "b.json", "c.txt"]
    return mock


def strategies(**outcomes: object) -> dict:
    """Builds a strategy table whose resolve() returns (or raises) the given values."""
    table = {}
    for kind in MergeKind:
        strategy = MagicMock()
        value = outcomes.get(kind.name, MergeOutcome(True, "ok"))
        if isinstance(value, Exception):
            strategy.resolve.side_effect = value
        else:
            strategy.resolve.return_value = value
        table[kind] = strategy
    return table


def make_resolver(repo: MagicMock, **outcomes: object) -> ConflictResolver:
    config = WorkspaceConfig(path=Path("."), device_name="d")
    return ConflictResolver(repo, config, strategies(**outcomes))


def test_no_conflicts_is_success(repo: MagicMock) -> None:
    repo.diff_conflicted.return_value = []

    report = make_resolver(repo).auto_resolve_conflicts()

    assert report.success
    assert report.message == "No conflicts to resolve"
    repo.commit.assert_not_called()


def test_all_resolved_files_are_staged_and_committed(repo: MagicMock) -> None:
    resolver = make_resolver(repo)

    report = resolver.auto_resolve_conflicts()

    assert report.success
    assert report.resolved_count == 3
    assert report.message == "Resolved 3 conflict(s)"
    assert [c.args[0] for c in repo.add.call_args_list] == ["a.db", "b.json", "c.txt"]
    repo.commit.assert_called_once_with("Auto-merged sync conflicts")
    resolver.strategies[MergeKind.SQLITE].resolve.assert_called_once_with("a.db", None)


def test_one_failure_does_not_stop_the_others(repo: MagicMock) -> None:
    """Verifies that a crashing strategy leaves only its own file unresolved."""
    report = make_resolver(repo, JSON=RuntimeError("boom")).auto_resolve_conflicts()

    assert not report.success
    assert report.resolved_count == 2
    assert report.unresolved_paths == ["b.json"]
    assert report.message == "Could not resolve 1 file(s): b.json"
    repo.commit.assert_not_called()


def test_unresolved_outcome_is_reported(repo: MagicMock) -> None:
    report = make_resolver(
        repo, JSON=MergeOutcome(False, "Both versions empty")
    ).auto_resolve_conflicts()

    assert report.unresolved_paths == ["b.json"]
    assert [c.args[0] for c in repo.add.call_args_list] == ["a.db", "c.txt"]


def test_cancellation_reports_remaining_files(repo: MagicMock) -> None:
    cancel = threading.Event()
    cancel.set()

    report = make_resolver(repo).auto_resolve_conflicts(cancel)

    assert not report.success
    assert report.unresolved_paths == ["a.db", "b.json", "c.txt"]
    assert report.message.startswith("Resolution cancelled after 0 file(s)")


def test_merge_commit_failure_is_reported(repo: MagicMock) -> None:
    repo.commit.side_effect = GitError(["commit"], 1, "", "fatal: unable to write index")

    report = make_resolver(repo).auto_resolve_conflicts()

    assert not report.success
    assert report.message == "Failed to commit merge: fatal: unable to write index"


def test_failed_keep_local_fallback_leaves_file_unresolved(repo: MagicMock) -> None:
    """Verifies that a database conflict stays unresolved only if the fallback fails too."""
    repo.diff_conflicted.return_value = ["history.db"]
    repo.show_blob.side_effect = GitError(["show"], 128, "", "bad object")
    repo.has_stage.return_value = True
    repo.checkout_ours.side_effect = GitError(["checkout"], 1, "", "index.lock exists")
    resolver = ConflictResolver(repo, WorkspaceConfig(path=Path("."), device_name="d"))

    report = resolver.auto_resolve_conflicts()

    assert not report.success
    assert report.unresolved_paths == ["history.db"]
    repo.add.assert_not_called()
    repo.commit.assert_not_called()


def test_detector_tolerates_git_errors(
    repo: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    repo.diff_conflicted.side_effect = GitError(["diff"], 128, "", "not a git repository")

    detector = ConflictDetector(repo)

    assert detector.get_conflicted_files() == []
    assert not detector.has_unmerged_files()
    assert "Git error listing conflicted files" in caplog.text


def test_abort_merge(repo: MagicMock) -> None:
    resolver = make_resolver(repo)
    assert resolver.abort_merge() is True

    repo.merge_abort.side_effect = GitError(["merge"], 128, "", "no merge to abort")
    assert resolver.abort_merge() is False


# --- Two devices sharing a real remote ---


def git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    ).stdout


def configure_identity(path: Path) -> None:
    git(path, "config", "user.name", "Replica Test")
    git(path, "config", "user.email", "replica@example.com")
    git(path, "config", "commit.gpgsign", "false")


def write_history(db: Path, rows: list[tuple[int, int, str]]) -> None:
    conn = sqlite3.connect(db)
    try:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS watch_history ("
            "id INTEGER PRIMARY KEY AUTOINCREMENT, anime_id INTEGER, "
            "episode_number INTEGER, watched_at TEXT)"
        )
        conn.executemany(
            "INSERT INTO watch_history (anime_id, episode_number, watched_at) "
            "VALUES (?, ?, ?)",
            rows,
        )
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def devices(tmp_path: Path) -> tuple[Path, Path]:
    """A bare remote with two clones that share one initial commit."""
    remote = tmp_path / "remote.git"
    git(tmp_path, "init", "--bare", "-b", "main", str(remote))

    device_a = tmp_path / "a"
    device_a.mkdir()
    git(device_a, "init", "-b", "main")
    configure_identity(device_a)
    git(device_a, "remote", "add", "origin", str(remote))
    write_history(device_a / "history.db", [(1, 1, "2024-01-01 09:00")])
    (device_a / "settings.json").write_text('{"theme": "light"}')
    (device_a / "notes.txt").write_text("base\n")
    git(device_a, "add", "-A")
    git(device_a, "commit", "-m", "initial")
    git(device_a, "push", "-u", "origin", "main")

    device_b = tmp_path / "b"
    git(tmp_path, "clone", str(remote), str(device_b))
    configure_identity(device_b)
    return device_a, device_b


def make_engine(path: Path, name: str) -> SyncEngine:
    return SyncEngine(WorkspaceConfig(path=path, device_name=name))


@requires_git
def test_sync_round_trip_between_devices(devices: tuple[Path, Path]) -> None:
    device_a, device_b = devices
    (device_a / "notes.txt").write_text("from a\n")

    result = make_engine(device_a, "a").force_sync()
    assert result.success, result.message

    again = make_engine(device_a, "a").force_sync()
    assert again.success
    assert again.message == "Already in sync"

    git(device_b, "pull", "origin", "main")
    assert (device_b / "notes.txt").read_text() == "from a\n"
    assert git(device_b, "log", "-1", "--format=%s").startswith("Auto-sync from a at ")


@requires_git
def test_full_conflict_scenario(devices: tuple[Path, Path]) -> None:
    """Verifies that database, JSON and text conflicts are all resolved in one pass."""
    device_a, device_b = devices

    write_history(device_a / "history.db", [(5, 3, "2024-02-01 20:00")])
    (device_a / "settings.json").write_text('{"theme": "dark"}')
    (device_a / "notes.txt").write_text("from a\n")
    assert make_engine(device_a, "a").force_sync().success

    write_history(device_b / "history.db", [(5, 3, "2024-02-01 23:15")])
    (device_b / "settings.json").write_text('{"theme": "light", "quality": "1080p"}')
    (device_b / "notes.txt").write_text("from b\n")
    engine = make_engine(device_b, "b")

    blocked = engine.force_sync()
    assert not blocked.success
    assert blocked.message.startswith("Merge conflicts need resolution")
    assert engine.is_in_merge_state()
    assert engine.get_conflicted_files() == ["history.db", "notes.txt", "settings.json"]

    report = engine.auto_resolve_conflicts()

    assert report.success, report.message
    assert report.resolved_count == 3
    assert not engine.has_unmerged_files()
    assert not engine.is_in_merge_state()

    conn = sqlite3.connect(device_b / "history.db")
    try:
        rows = conn.execute(
            "SELECT watched_at FROM watch_history "
            "WHERE anime_id = 5 AND episode_number = 3 ORDER BY watched_at"
        ).fetchall()
        total = conn.execute("SELECT COUNT(*) FROM watch_history").fetchone()[0]
    finally:
        conn.close()
    assert rows == [("2024-02-01 20:00",), ("2024-02-01 23:15",)]
    assert total == 3

    assert json.loads((device_b / "settings.json").read_text()) == {
        "theme": "light",
        "quality": "1080p",
    }
    assert (device_b / "notes.txt").read_text() == "from b\n"

    assert engine.force_sync().success
    git(device_a, "pull", "origin", "main")
    assert (device_a / "notes.txt").read_text() == "from b\n"


@requires_git
def test_local_deletions_are_kept_on_modify_delete_conflicts(
    devices: tuple[Path, Path],
) -> None:
    """Verifies that every strategy resolves a file this device deleted but the other edited."""
    device_a, device_b = devices

    write_history(device_a / "history.db", [(5, 3, "2024-02-01 20:00")])
    (device_a / "settings.json").write_text('{"theme": "dark"}')
    (device_a / "notes.txt").write_text("from a\n")
    assert make_engine(device_a, "a").force_sync().success

    (device_b / "history.db").unlink()
    (device_b / "settings.json").unlink()
    (device_b / "notes.txt").unlink()
    engine = make_engine(device_b, "b")

    blocked = engine.force_sync()
    assert not blocked.success
    assert engine.get_conflicted_files() == ["history.db", "notes.txt", "settings.json"]

    report = engine.auto_resolve_conflicts()

    assert report.success, report.message
    assert report.resolved_count == 3
    assert not engine.has_unmerged_files()
    assert not engine.is_in_merge_state()

    assert not (device_b / "notes.txt").exists()
    assert not (device_b / "history.db").exists()
    # JSON keeps whichever side still has content.
    assert json.loads((device_b / "settings.json").read_text()) == {"theme": "dark"}

    assert engine.force_sync().success
    git(device_a, "pull", "origin", "main")
    assert not (device_a / "notes.txt").exists()
    assert (device_a / "settings.json").exists()
