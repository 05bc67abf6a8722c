import logging
import os
import subprocess
from pathlib import Path

from .constants import APP_NAME, GIT_DIR_NAME, MERGE_MARKER, REBASE_MARKERS

logger = logging.getLogger(APP_NAME)

# Keeps git from flashing a console window when spawned from a GUI host on Windows.
_CREATION_FLAGS = getattr(subprocess, "CREATE_NO_WINDOW", 0)

STAGE_LOCAL = 2
STAGE_REMOTE = 3


class GitError(RuntimeError):
    """Raised when a git invocation exits with a non-zero status.

    Attributes:
        command (list[str]): The git arguments that were executed.
        returncode (int): The exit status (-1 if git could not be spawned).
        stdout (str): Captured standard output.
        stderr (str): Captured standard error.
    """

    def __init__(self, command: list[str], returncode: int, stdout: str, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stdout = stdout.strip()
        self.stderr = stderr.strip()
        super().__init__(f"Git error: {self.stderr or self.stdout or returncode}")

    @property
    def output(self) -> str:
        """Returns stdout and stderr joined, for matching git's status phrases."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def _decode(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


class GitRepo:
    """A wrapper around the Git command-line interface for a replicated workspace.

    Every operation the sync engine needs from its transport is exposed as a
    discrete method. All commands run with the workspace as the working
    directory, never attach to a terminal, and have both output streams drained
    concurrently before the exit status is read.

    Attributes:
        path (Path): The file system path to the workspace root.
    """

    def __init__(self, path: Path):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the workspace root directory.

        Raises:
            ValueError: If the specified path does not contain a .git directory.
        """
        self.path = path
        if not (self.path / GIT_DIR_NAME).exists():
            raise ValueError(f"Not a git repository: {self.path}")

    @property
    def git_dir(self) -> Path:
        return self.path / GIT_DIR_NAME

    def _exec(
        self, args: list[str], text: bool = True, env: dict | None = None
    ) -> subprocess.CompletedProcess:
        """Spawns git and waits for it.

        `subprocess.run` with captured output reads stdout and stderr through
        `communicate()`, so a chatty command can never block on a full pipe.

        Raises:
            GitError: If git exits non-zero or cannot be started.
        """
        try:
            return subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                stdin=subprocess.DEVNULL,
                text=text,
                encoding="utf-8" if text else None,
                errors="replace" if text else None,
                check=True,
                env=env,
                creationflags=_CREATION_FLAGS,
            )
        except subprocess.CalledProcessError as e:
            raise GitError(args, e.returncode, _decode(e.stdout), _decode(e.stderr)) from e
        except OSError as e:
            raise GitError(args, -1, "", str(e)) from e

    def _run(self, args: list[str], env: dict | None = None) -> str:
        """Executes a Git command within the workspace context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            env (Optional[dict], optional): Environment variables to pass to the
                                            subprocess. Defaults to None.

        Returns:
            str: The stripped stdout of the command.

        Raises:
            GitError: If the git command returns a non-zero exit code.
        """
        return self._exec(args, env=env).stdout.strip()

    @staticmethod
    def _network_env() -> dict[str, str]:
        """Environment for commands that talk to the remote: never prompt."""
        env = os.environ.copy()
        env["GIT_SSH_COMMAND"] = "ssh -o BatchMode=yes"
        env["GIT_TERMINAL_PROMPT"] = "0"
        return env

    # --- Inspection ---

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch.

        Returns:
            str: The branch name, or an empty string on a detached HEAD.
        """
        return self._run(["branch", "--show-current"])

    def status_porcelain(self) -> list[str]:
        """Returns the porcelain (machine-readable) status of the workspace.

        Returns:
            list[str]: A list of status lines returned by `git status --porcelain`.
        """
        output = self._run(["status", "--porcelain"])
        return output.splitlines() if output else []

    def remote_url(self, remote: str) -> str | None:
        """Resolves the URL of a remote.

        Args:
            remote (str): The remote name (e.g., 'origin').

        Returns:
            Optional[str]: The configured URL, or None if the remote is missing.
        """
        try:
            url = self._run(["remote", "get-url", remote])
        except GitError as e:
            logger.debug(f"remote get-url failed for '{remote}': {e}")
            return None
        return url or None

    def has_remote(self, remote: str) -> bool:
        return self.remote_url(remote) is not None

    def has_staged_changes(self) -> bool:
        """Checks whether the index differs from HEAD.

        Returns:
            bool: True if `git diff --cached` reports at least one path.
        """
        return bool(self._run(["diff", "--cached", "--name-only"]))

    def get_last_commit(self) -> str | None:
        """Summarizes the last commit as '<hash> <relative time> <subject>'."""
        try:
            return self._run(["log", "-1", "--format=%h %cr %s"]) or None
        except GitError as e:
            logger.debug(f"Failed to read last commit: {e}")
            return None

    def diff_conflicted(self) -> list[str]:
        """Lists the paths currently marked unmerged, in git's order.

        Returns:
            list[str]: Workspace-relative paths with forward slashes.
        """
        output = self._exec(["diff", "--name-only", "-z", "--diff-filter=U"]).stdout
        return [p for p in output.split("\0") if p]

    def show_blob(self, path: str, stage: int) -> bytes:
        """Reads one side of a conflicted file from the index.

        Args:
            path (str): The workspace-relative path.
            stage (int): 2 for the local ("ours") side, 3 for the remote ("theirs").

        Returns:
            bytes: The raw blob content.

        Raises:
            GitError: If the stage does not exist for this path.
        """
        return self._exec(["show", f":{stage}:{path}"], text=False).stdout

    def has_stage(self, path: str, stage: int) -> bool:
        """Checks whether an unmerged path has an index entry at `stage`.

        A modify/delete conflict has no entry for the side that deleted the file.

        Args:
            path (str): The workspace-relative path.
            stage (int): 2 for the local side, 3 for the remote side.

        Returns:
            bool: True if `git ls-files -u` lists the stage for this path.
        """
        output = self._exec(["ls-files", "-u", "-z", "--", path]).stdout
        for entry in output.split("\0"):
            meta, _, _ = entry.partition("\t")
            fields = meta.split()
            if len(fields) == 3 and fields[2] == str(stage):
                return True
        return False

    def is_merging(self) -> bool:
        return (self.git_dir / MERGE_MARKER).exists()

    def is_rebasing(self) -> bool:
        return any((self.git_dir / marker).exists() for marker in REBASE_MARKERS)

    # --- Mutation ---

    def add_all(self) -> None:
        """
        Stages all changes (modified, deleted, and untracked files)
        in the workspace.
        """
        self._run(["add", "-A"])

    def add(self, path: str) -> None:
        """Stages a single path, marking it resolved if it was conflicted.

        A path missing from the workspace is staged as a removal.
        """
        self._run(["add", "-A", "--", path])

    def commit(self, message: str) -> None:
        """Creates a new commit with the provided message.

        Args:
            message (str): The commit message.
        """
        self._run(["commit", "-m", message])

    def checkout_ours(self, path: str) -> None:
        """Restores the local side of a conflicted path into the workspace."""
        self._run(["checkout", "--ours", "--", path])

    def merge_abort(self) -> None:
        self._run(["merge", "--abort"])

    def rebase_abort(self) -> None:
        self._run(["rebase", "--abort"])

    # --- Transport ---

    def push(self, remote: str) -> str:
        """Pushes the current branch, setting its upstream.

        Args:
            remote (str): The remote name.

        Returns:
            str: Git's progress output (stderr), e.g. 'Everything up-to-date'.
        """
        res = self._exec(["push", "-u", remote, "HEAD"], env=self._network_env())
        return res.stderr.strip()

    def pull_rebase(self, remote: str, branch: str) -> None:
        """Fetches the remote branch and replays local commits on top of it."""
        self._run(["pull", "--rebase", remote, branch], env=self._network_env())

    def pull_merge(self, remote: str, branch: str) -> None:
        """Fetches the remote branch and merges it, leaving conflicts staged."""
        self._run(
            ["pull", "--no-rebase", "--no-edit", remote, branch],
            env=self._network_env(),
        )
