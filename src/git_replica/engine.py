import datetime
import logging
import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from logging.handlers import RotatingFileHandler

from .config import WorkspaceConfig
from .conflicts import ConflictResolver, ResolutionReport
from .constants import (
    APP_NAME,
    GIT_DIR_NAME,
    LOG_FILE,
    NOTHING_TO_COMMIT_SIGNAL,
    SYNC_COMMIT_TEMPLATE,
    SYNC_TIMESTAMP_FORMAT,
    UP_TO_DATE_SIGNAL,
)
from .git_wrapper import GitError, GitRepo
from .system import get_system
from .watcher import Debouncer, FileWatcher

SYSTEM = get_system()

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


class SyncTrigger(Enum):
    """Why a sync session was started."""

    DEBOUNCE = "debounce"
    FORCED = "forced"


@dataclass
class SyncResult:
    """Outcome of one sync attempt.

    Attributes:
        success (bool): Whether the workspace is in sync with the remote.
        message (str): Human-readable status, including git's error text on failure.
        trigger (SyncTrigger): What started the attempt.
    """

    success: bool
    message: str
    trigger: SyncTrigger = SyncTrigger.FORCED


class SyncEngine:
    """Watches a workspace and replicates it through git.

    At most one sync session runs at a time. A caller that arrives while a
    session is active gets an immediate "in progress" result instead of
    waiting; changes it would have synced stay pending and are picked up
    once the active session finishes.
    """

    def __init__(self, config: WorkspaceConfig):
        """Initializes the engine without touching the filesystem.

        Args:
            config (WorkspaceConfig): The workspace to replicate.
        """
        self.config = config
        self._session_lock = threading.Lock()
        self._pending = threading.Event()
        self._enabled = False
        self._observers: list[Callable[[SyncResult], None]] = []
        self._debouncer = Debouncer(config.debounce_ms, self.triggered_sync, self._pending)
        self._watcher = FileWatcher(config.path, self._debouncer)

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def has_pending_changes(self) -> bool:
        return self._pending.is_set()

    def add_observer(self, callback: Callable[[SyncResult], None]) -> None:
        """Registers a callback invoked with every successful SyncResult."""
        self._observers.append(callback)

    # --- Capability ---

    def _open_repo(self) -> GitRepo | None:
        try:
            return GitRepo(self.config.path)
        except ValueError:
            return None

    def check_capability(self) -> str | None:
        """Explains why the workspace cannot sync, re-checked on every call.

        Returns:
            str | None: The reason, or None if history and remote both exist.
        """
        if not (self.config.path / GIT_DIR_NAME).is_dir():
            return f"No git repository in {self.config.path}"
        repo = self._open_repo()
        if repo is None or not repo.has_remote(self.config.remote_name):
            return f"Remote '{self.config.remote_name}' is not configured"
        return None

    def is_sync_capable(self) -> bool:
        return self.check_capability() is None

    # --- Watching ---

    def start(self) -> bool:
        """Starts watching the workspace for changes.

        Returns:
            bool: False (and nothing is started) unless the workspace has
            history and a configured remote.
        """
        if reason := self.check_capability():
            logger.info(f"Auto-sync not started: {reason}")
            return False
        if self._enabled:
            return True

        try:
            self._watcher.start()
        except OSError as e:
            logger.error(f"Could not watch {self.config.path}: {e}")
            return False

        self._enabled = True
        logger.info(f"Auto-sync enabled, watching {self.config.path} for changes.")
        return True

    def stop(self) -> None:
        """Stops watching and disarms any pending debounce timer."""
        self._enabled = False
        self._watcher.stop()
        logger.info("Auto-sync disabled.")

    # --- Sync Sessions ---

    def force_sync(self) -> SyncResult:
        """Runs a sync immediately, whether or not changes were observed."""
        return self._execute(SyncTrigger.FORCED)

    def triggered_sync(self) -> SyncResult:
        """Runs a sync only if the watcher saw changes since the last session."""
        return self._execute(SyncTrigger.DEBOUNCE)

    def _execute(self, trigger: SyncTrigger) -> SyncResult:
        forced = trigger is SyncTrigger.FORCED
        if self._debouncer.is_running:
            self._debouncer.cancel()

        if not self._session_lock.acquire(blocking=False):
            return SyncResult(False, "Sync already in progress", trigger)

        try:
            if not forced and not self._pending.is_set():
                result = SyncResult(True, "No changes to sync", trigger)
            else:
                self._pending.clear()
                if not self._enabled and not forced:
                    result = SyncResult(False, "Sync engine not enabled", trigger)
                else:
                    result = self._run_session(trigger)
        finally:
            self._session_lock.release()

        # Changes that landed during the session get their own window.
        if self._enabled and self._pending.is_set():
            self._debouncer.rearm()

        if result.success:
            logger.info(f"SYNC ({trigger.value}): {result.message}")
            self._notify_observers(result)
        else:
            logger.error(f"SYNC ERROR ({trigger.value}): {result.message}")
            if trigger is SyncTrigger.DEBOUNCE and self.config.notify:
                SYSTEM.notify("Sync Failed", result.message)
        return result

    def _notify_observers(self, result: SyncResult) -> None:
        for callback in list(self._observers):
            try:
                callback(result)
            except Exception:
                logger.exception("Sync observer failed")

    def _run_session(self, trigger: SyncTrigger) -> SyncResult:
        """Performs one stage -> commit -> push cycle.

        Every git failure is converted into a failed SyncResult carrying git's
        own error text; nothing is raised to the caller.
        """

        def fail(message: str) -> SyncResult:
            return SyncResult(False, message, trigger)

        if reason := self.check_capability():
            return fail(reason)
        repo = GitRepo(self.config.path)
        remote = self.config.remote_name

        # 1. Refuse to stage over an unfinished merge or rebase.
        try:
            if conflicted := repo.diff_conflicted():
                return fail(f"Unresolved conflicts: {', '.join(conflicted)}")
        except GitError as e:
            return fail(f"Failed to inspect workspace: {e.output}")
        if repo.is_rebasing():
            return fail("A rebase is in progress")

        # 2. Stage.
        try:
            repo.add_all()
            staged = repo.has_staged_changes()
        except GitError as e:
            return fail(f"Failed to stage: {e.output}")

        # 3. Nothing new locally: still push any unpushed commits.
        if not staged:
            try:
                repo.push(remote)
            except GitError as e:
                if UP_TO_DATE_SIGNAL not in e.output:
                    return fail(f"Push failed: {e.output}")
            return SyncResult(True, "Already in sync", trigger)

        # 4. Commit.
        timestamp = datetime.datetime.now().strftime(SYNC_TIMESTAMP_FORMAT)
        message = SYNC_COMMIT_TEMPLATE.format(
            device=self.config.device_name, timestamp=timestamp
        )
        try:
            repo.commit(message)
        except GitError as e:
            if NOTHING_TO_COMMIT_SIGNAL not in e.output:
                return fail(f"Commit failed: {e.output}")

        # 5. Push, with a single pull-rebase retry.
        return self._push_with_retry(repo, trigger)

    def _push_with_retry(self, repo: GitRepo, trigger: SyncTrigger) -> SyncResult:
        remote = self.config.remote_name
        try:
            repo.push(remote)
            return SyncResult(True, "Synced successfully", trigger)
        except GitError as e:
            logger.info(f"Push rejected, pulling with rebase: {e.output}")

        branch = ""
        try:
            branch = repo.current_branch()
            if not branch:
                return SyncResult(False, "Push failed: HEAD is detached", trigger)
            repo.pull_rebase(remote, branch)
        except GitError as e:
            return self._merge_after_failed_rebase(repo, branch, e, trigger)

        try:
            repo.push(remote)
        except GitError as e:
            return SyncResult(False, f"Push failed: {e.output}", trigger)
        return SyncResult(True, "Synced successfully", trigger)

    def _merge_after_failed_rebase(
        self, repo: GitRepo, branch: str, error: GitError, trigger: SyncTrigger
    ) -> SyncResult:
        """Turns a conflicting rebase into a merge the resolver can work on.

        During a merge stage 2 is the local side and stage 3 the remote side,
        which is what the merge strategies expect.
        """
        remote = self.config.remote_name
        if not repo.is_rebasing():
            return SyncResult(False, f"Pull failed: {error.output}", trigger)

        try:
            repo.rebase_abort()
            repo.pull_merge(remote, branch)
        except GitError as e:
            try:
                conflicted = repo.diff_conflicted()
            except GitError:
                conflicted = []
            if conflicted:
                return SyncResult(
                    False,
                    f"Merge conflicts need resolution: {', '.join(conflicted)}",
                    trigger,
                )
            return SyncResult(False, f"Pull failed: {e.output}", trigger)

        try:
            repo.push(remote)
        except GitError as e:
            return SyncResult(False, f"Push failed: {e.output}", trigger)
        return SyncResult(True, "Synced successfully (merged remote changes)", trigger)

    # --- Conflicts ---

    def _resolver(self) -> ConflictResolver | None:
        repo = self._open_repo()
        return ConflictResolver(repo, self.config) if repo else None

    def get_conflicted_files(self) -> list[str]:
        resolver = self._resolver()
        return resolver.detector.get_conflicted_files() if resolver else []

    def has_unmerged_files(self) -> bool:
        resolver = self._resolver()
        return bool(resolver and resolver.detector.has_unmerged_files())

    def is_in_merge_state(self) -> bool:
        resolver = self._resolver()
        return bool(resolver and resolver.detector.is_in_merge_state())

    def auto_resolve_conflicts(
        self, cancel: threading.Event | None = None
    ) -> ResolutionReport:
        """Resolves all unmerged paths, outside of any running sync session."""
        resolver = self._resolver()
        if resolver is None:
            return ResolutionReport(False, f"No git repository in {self.config.path}")
        if not self._session_lock.acquire(blocking=False):
            return ResolutionReport(False, "Sync already in progress")
        try:
            return resolver.auto_resolve_conflicts(cancel)
        finally:
            self._session_lock.release()

    def abort_merge(self) -> bool:
        resolver = self._resolver()
        return bool(resolver and resolver.abort_merge())


def setup_logging(interactive: bool, max_log_size: int = 5 * 1024 * 1024) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr and
                            a rotating file.
        max_log_size (int): Max bytes for the log file before rotation.
    """
    if logger.handlers:
        return

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        # In watch mode, rotate logs to file.
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
