import argparse
import os
import sys
import threading
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from .config import Config
from .constants import APP_NAME, DATA_DIR_NAME, LOG_FILE
from .engine import SyncEngine, SyncResult, setup_logging
from .git_wrapper import GitError, GitRepo

console = Console()


def default_data_dir() -> Path:
    """Resolves the replicated data directory for this platform.

    Returns:
        Path: `%APPDATA%/koware` on Windows, `~/.config/koware` elsewhere.
    """
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / DATA_DIR_NAME
    return Path.home() / ".config" / DATA_DIR_NAME


def build_engine(data_dir: Path) -> SyncEngine:
    """Creates an engine for `data_dir` using the layered configuration."""
    conf = Config.load(data_dir)
    return SyncEngine(conf.workspace_config(data_dir))


def show_status(engine: SyncEngine) -> None:
    """Displays capability, remote and pending state of the workspace."""
    path = engine.config.path
    content = Text()
    content.append("Directory: ", style="bold")
    content.append(f"{path}\n")

    reason = engine.check_capability()
    content.append("Sync:      ", style="bold")
    if reason:
        content.append(f"Unavailable ({reason})", style="bold yellow")
        console.print(Panel(content, title="Replica Status", expand=False))
        return
    content.append("Ready\n", style="green")

    repo = GitRepo(path)
    try:
        branch = repo.current_branch() or "(detached)"
        pending = len(repo.status_porcelain())
    except GitError as e:
        console.print(f"[bold red]ERROR:[/bold red] {e}")
        return

    content.append(f"Branch:    {branch}\n")
    content.append(f"Remote:    {repo.remote_url(engine.config.remote_name)}\n")
    content.append(f"Device:    {engine.config.device_name}\n")
    content.append(f"Last:      {repo.get_last_commit() or 'Never'}\n", style="dim")
    if pending:
        content.append(f"Changes:   {pending} uncommitted", style="yellow")
    else:
        content.append("Changes:   clean", style="green")

    conflicted = engine.get_conflicted_files()
    if conflicted or engine.is_in_merge_state():
        content.append("\n\n⚠ MERGE IN PROGRESS: ", style="bold yellow")
        content.append(
            f"{len(conflicted)} unmerged file(s). Run 'git-replica resolve'.",
            style="yellow",
        )

    console.print(Panel(content, title="Replica Status", expand=False))


def print_result(result: SyncResult) -> None:
    if result.success:
        console.print(f"[bold green]SUCCESS:[/bold green] {result.message}")
    else:
        console.print(f"[bold red]FAILED:[/bold red] {result.message}")


def run_watch(engine: SyncEngine) -> bool:
    """Watches the workspace until interrupted.

    Returns:
        bool: False if watching could not be started.
    """
    if not engine.start():
        console.print(
            "[bold red]ERROR:[/bold red] Auto-sync requires a git repository "
            f"with remote '{engine.config.remote_name}'."
        )
        return False

    engine.add_observer(print_result)
    console.print(
        f"Watching [cyan]{engine.config.path}[/cyan] "
        f"(debounce {engine.config.debounce_ms} ms). Ctrl+C to stop."
    )
    stop = threading.Event()
    try:
        stop.wait()
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")
    finally:
        engine.stop()
    return True


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the Git Replica CLI."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Replicate a local data directory across devices through git.",
    )
    parser.add_argument(
        "--dir",
        type=Path,
        default=None,
        help="Data directory to sync (default: platform data directory)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Log engine activity to stdout"
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("status", help="Show sync status")
    subparsers.add_parser("now", help="Stage, commit and push immediately")
    subparsers.add_parser("watch", help="Auto-sync changes until interrupted")
    subparsers.add_parser("conflicts", help="List files with merge conflicts")
    subparsers.add_parser("resolve", help="Automatically resolve merge conflicts")
    subparsers.add_parser("abort", help="Abort the merge in progress")

    args = parser.parse_args(argv)
    data_dir = (args.dir or default_data_dir()).expanduser().resolve()
    engine = build_engine(data_dir)

    if args.command == "watch":
        limits = Config.load(data_dir).limits
        setup_logging(interactive=False, max_log_size=limits.max_log_size)
        console.print(f"Logging to [dim]{LOG_FILE}[/dim]")
        sys.exit(0 if run_watch(engine) else 1)
    elif args.verbose:
        setup_logging(interactive=True)

    if args.command == "now":
        with console.status("Syncing...", spinner="dots"):
            result = engine.force_sync()
        print_result(result)
        sys.exit(0 if result.success else 1)
    elif args.command == "conflicts":
        conflicted = engine.get_conflicted_files()
        if not conflicted:
            console.print("No conflicts.", style="green")
            return
        for path in conflicted:
            console.print(f"  [yellow]U[/yellow] {path}")
        return
    elif args.command == "resolve":
        with console.status("Resolving conflicts...", spinner="dots"):
            report = engine.auto_resolve_conflicts()
        if report.success:
            console.print(f"[bold green]SUCCESS:[/bold green] {report.message}")
            return
        console.print(f"[bold yellow]WARNING:[/bold yellow] {report.message}")
        sys.exit(1)
    elif args.command == "abort":
        if engine.abort_merge():
            console.print("Merge aborted.", style="bold green")
            return
        console.print("[bold red]ERROR:[/bold red] Could not abort merge.")
        sys.exit(1)

    show_status(engine)


if __name__ == "__main__":
    main()
