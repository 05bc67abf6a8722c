import logging
import threading
from dataclasses import dataclass, field

from .config import WorkspaceConfig
from .constants import APP_NAME, MERGE_COMMIT_MESSAGE, NOTHING_TO_COMMIT_SIGNAL
from .git_wrapper import GitError, GitRepo
from .merge import MergeOutcome, MergeStrategy, build_strategies, classify

logger = logging.getLogger(APP_NAME)


@dataclass
class ResolutionReport:
    """Aggregate result of one automatic resolution pass.

    Attributes:
        success (bool): True only if every conflicted path was resolved and committed.
        message (str): Human-readable summary, naming unresolved paths.
        resolved_count (int): Number of files resolved in this pass.
        unresolved_paths (list[str]): Paths still unmerged after the pass.
    """

    success: bool
    message: str
    resolved_count: int = 0
    unresolved_paths: list[str] = field(default_factory=list)


class ConflictDetector:
    """Answers questions about unmerged paths. Nothing is cached between calls."""

    def __init__(self, repo: GitRepo):
        self.repo = repo

    def get_conflicted_files(self) -> list[str]:
        """Lists unmerged paths in the order git reports them.

        Returns:
            list[str]: Workspace-relative paths. Empty if git cannot be queried.
        """
        try:
            return self.repo.diff_conflicted()
        except GitError as e:
            logger.warning(f"Git error listing conflicted files: {e}")
            return []

    def has_unmerged_files(self) -> bool:
        return bool(self.get_conflicted_files())

    def is_in_merge_state(self) -> bool:
        return self.repo.is_merging()


class ConflictResolver:
    """Dispatches every conflicted path to its merge strategy and finalizes the merge."""

    def __init__(
        self,
        repo: GitRepo,
        config: WorkspaceConfig,
        strategies: dict | None = None,
    ):
        """Initializes the resolver.

        Args:
            repo (GitRepo): The workspace backend.
            config (WorkspaceConfig): Supplies the history table natural key.
            strategies (dict | None): Overrides the MergeKind -> strategy table.
        """
        self.repo = repo
        self.detector = ConflictDetector(repo)
        self.strategies = strategies or build_strategies(repo, config)

    def _resolve_one(self, path: str, cancel: threading.Event | None) -> MergeOutcome:
        kind = classify(path)
        strategy: MergeStrategy = self.strategies[kind]
        logger.debug(f"Resolving {path} with {kind.value} strategy.")
        return strategy.resolve(path, cancel)

    def auto_resolve_conflicts(
        self, cancel: threading.Event | None = None
    ) -> ResolutionReport:
        """Attempts to resolve every unmerged path in one pass.

        A failure in one file never stops the others. The merge commit is only
        created once no unresolved paths remain.

        Args:
            cancel (threading.Event | None): Checked between files. Files not
                reached are reported as unresolved.

        Returns:
            ResolutionReport: The aggregate outcome.
        """
        conflicted = self.detector.get_conflicted_files()
        if not conflicted:
            return ResolutionReport(True, "No conflicts to resolve")

        logger.info(f"Found {len(conflicted)} conflicted file(s), attempting auto-resolve.")

        resolved = 0
        unresolved: list[str] = []
        cancelled = False

        for index, path in enumerate(conflicted):
            if cancel is not None and cancel.is_set():
                unresolved.extend(conflicted[index:])
                cancelled = True
                break

            try:
                outcome = self._resolve_one(path, cancel)
                if outcome.resolved:
                    self.repo.add(path)
            except Exception as e:
                logger.error(f"MERGE ERROR {path}: {e}")
                unresolved.append(path)
                continue

            if outcome.resolved:
                resolved += 1
                logger.info(f"RESOLVED {path}: {outcome.message}")
            else:
                unresolved.append(path)
                logger.warning(f"UNRESOLVED {path}: {outcome.message}")

        if cancelled:
            return ResolutionReport(
                False,
                f"Resolution cancelled after {resolved} file(s); "
                f"remaining: {', '.join(unresolved)}",
                resolved,
                unresolved,
            )

        if unresolved:
            return ResolutionReport(
                False,
                f"Could not resolve {len(unresolved)} file(s): {', '.join(unresolved)}",
                resolved,
                unresolved,
            )

        try:
            self.repo.commit(MERGE_COMMIT_MESSAGE)
        except GitError as e:
            if NOTHING_TO_COMMIT_SIGNAL not in e.output:
                return ResolutionReport(
                    False, f"Failed to commit merge: {e.output}", resolved
                )

        return ResolutionReport(True, f"Resolved {resolved} conflict(s)", resolved)

    def abort_merge(self) -> bool:
        """Aborts the in-progress merge.

        Returns:
            bool: True if `git merge --abort` succeeded.
        """
        try:
            self.repo.merge_abort()
            return True
        except GitError as e:
            logger.warning(f"Merge abort failed: {e}")
            return False
