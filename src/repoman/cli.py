import argparse
import logging
import sys
from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import daemon, gc, ops, service, sync
from .batch import run_batch
from .config import Config, parse_time
from .constants import APP_NAME
from .errors import InvalidInputError, RepomanError

logger = logging.getLogger(APP_NAME)
console = Console()

AGENT_ACTIONS = ("start", "stop", "status", "run")


def _fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _parse_interval(value: str) -> int:
    seconds = parse_time(value)
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"invalid interval: {value}")
    return seconds


# --- Command handlers ---


def cmd_add(url: str | None, interval: int | None, config: Config) -> None:
    name = ops.add_repo(url, config, sync_interval=interval)
    console.print(f"[bold green]✔[/bold green] Added repository [cyan]{name}[/cyan]")


def cmd_init(name: str | None, config: Config) -> None:
    if name:
        path = ops.init_pristine(name, config)
        console.print(f"[bold green]✔[/bold green] Pristine created at {path}")
        return
    run_batch(
        ops.get_uninitialized_repos(config),
        lambda n, c: ops.init_pristine(n, c, quiet=True),
        config,
        "Init",
    )


def cmd_clone(
    pristine: str, clone_name: str | None, branch: str | None, config: Config
) -> None:
    path = ops.clone_from_pristine(pristine, config, clone_name=clone_name, branch=branch)
    console.print(f"[bold green]✔[/bold green] Clone created at {path}")


def cmd_sync(name: str | None, config: Config) -> None:
    if name:
        sync.sync_pristine(name, config)
        console.print(f"[bold green]✔[/bold green] Synced [cyan]{name}[/cyan]")
        return
    run_batch(
        ops.get_syncable_repos(config),
        lambda n, c: sync.sync_pristine(n, c, quiet=True),
        config,
        "Sync",
    )


def cmd_update(name: str | None, config: Config) -> None:
    if name:
        sync.update_repo(name, config)
        console.print(f"[bold green]✔[/bold green] Updated [cyan]{name}[/cyan]")
        return
    run_batch(
        ops.get_syncable_repos(config),
        lambda n, c: sync.update_repo(n, c, quiet=True),
        config,
        "Update",
    )


def cmd_destroy(args: argparse.Namespace, config: Config) -> None:
    if args.all_clones:
        removed = ops.destroy_all_clones(args.all_clones, config)
        console.print(f"Removed {len(removed)} clone(s) of [cyan]{args.all_clones}[/cyan]")
    elif args.all_pristines:
        removed = ops.destroy_all_pristines(config)
        console.print(f"Removed {len(removed)} pristine(s)")
    elif args.stale is not None:
        removed = ops.destroy_stale_clones(args.stale, config)
        console.print(
            f"Removed {len(removed)} stale clone(s) (older than {args.stale} days)"
        )
    elif args.target:
        path = ops.destroy_target(args.target, config)
        console.print(f"[bold green]✔[/bold green] Removed {path}")
    else:
        raise InvalidInputError(
            "Specify a target, --all-clones NAME, --all-pristines, or --stale DAYS"
        )


def cmd_list(verbose: bool, config: Config) -> None:
    repos = ops.list_all_repos(config)
    if not repos:
        console.print("[yellow]No repositories registered.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Repository", style="cyan")
    table.add_column("Pristine")
    table.add_column("Clones", justify="right")
    table.add_column("Last Sync", justify="right", style="dim")
    table.add_column("Latest Tag")
    if verbose:
        table.add_column("URL", style="dim")
        table.add_column("Added", style="dim")

    for repo in repos:
        pristine = "[green]yes[/green]" if repo.has_pristine else "[red]no[/red]"
        row = [
            repo.name,
            pristine,
            str(len(repo.clones)),
            _fmt_time(repo.last_sync),
            repo.latest_tag or "-",
        ]
        if verbose:
            row.extend([repo.url, _fmt_time(repo.added_date)])
        table.add_row(*row)

    console.print(table)

    if verbose:
        for repo in repos:
            for clone in repo.clones:
                console.print(f"  [cyan]{repo.name}[/cyan] {clone.name}: {clone.path}")


def cmd_status(name: str, config: Config) -> None:
    status = ops.get_detailed_status(name, config)

    lines = [
        f"URL: {status.url}",
        f"Pristine: {'present' if status.pristine_exists else '[red]missing[/red]'}",
        f"Branches: {', '.join(status.pristine_branches) or '-'}",
        f"Latest tag: {status.latest_tag or '-'}",
        f"Last sync: {status.last_sync or 'never'}",
        f"Sync interval: {status.sync_interval or config.agent.default_interval}s",
    ]
    if not status.alternates_ok:
        lines.append(
            "[bold yellow]WARNING:[/bold yellow] a clone references a missing "
            "object store"
        )
    console.print(Panel("\n".join(lines), title=f"[bold]{status.name}[/bold]"))

    if not status.clones:
        console.print("[dim]No clones.[/dim]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Clone", style="cyan")
    table.add_column("Branch")
    table.add_column("Dirty", justify="right")
    table.add_column("Ahead/Behind", justify="right")
    table.add_column("Path", style="dim")
    for clone in status.clones:
        if not clone.exists:
            table.add_row(clone.name, "[red]missing[/red]", "-", "-", str(clone.path))
            continue
        table.add_row(
            clone.name,
            clone.branch or "[yellow](detached)[/yellow]",
            str(clone.dirty_files),
            f"+{clone.ahead}/-{clone.behind}",
            str(clone.path),
        )
    console.print(table)


def cmd_alias(names: list[str], remove: bool, config: Config) -> None:
    if remove:
        if len(names) != 1:
            raise InvalidInputError("Usage: alias -r ALIAS")
        ops.remove_alias(names[0], config)
        console.print(f"Alias [cyan]{names[0]}[/cyan] removed")
    elif len(names) == 2:
        name, alias = names
        ops.add_alias(alias, name, config)
        console.print(f"Alias [cyan]{alias}[/cyan] -> {name}")
    elif not names:
        aliases = ops.list_aliases(config)
        if not aliases:
            console.print("[yellow]No aliases defined.[/yellow]")
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Alias", style="cyan")
        table.add_column("Repository")
        for alias, name in aliases:
            table.add_row(alias, name)
        console.print(table)
    else:
        raise InvalidInputError("Usage: alias [NAME ALIAS] | alias -r ALIAS")


def cmd_agent(action: str, config: Config) -> None:
    if action not in AGENT_ACTIONS:
        expected = ", ".join(f"'{a}'" for a in AGENT_ACTIONS)
        raise InvalidInputError(
            f"Invalid agent action: {action}. Expected one of {expected}"
        )
    if action == "start":
        pid = service.start_agent(config)
        console.print(f"[bold green]✔[/bold green] Agent started (PID: {pid})")
    elif action == "stop":
        pid = service.stop_agent(config)
        console.print(f"[bold green]✔[/bold green] Agent stopped (PID: {pid})")
    elif action == "status":
        console.print(service.agent_status(config))
    else:
        daemon.setup_logging(config, foreground=True)
        daemon.run_agent_loop(config)


def cmd_gc(days: int, dry_run: bool, config: Config) -> None:
    report = gc.run_gc(days, dry_run, config)
    prefix = "\\[dry-run] " if dry_run else ""

    if not report.stale_clones:
        console.print(f"{prefix}No stale clones found (threshold: {days} days)")
    else:
        verb = "Would remove" if dry_run else "Removed"
        for stale in report.stale_clones:
            console.print(
                f"{prefix}{verb} [cyan]{stale.repo_name}[/cyan] clone "
                f"{stale.clone_name} ({stale.days_old} days old)"
            )
    console.print(f"{prefix}Pristines GC'd: {report.pristines_gc_run}")


def cmd_remove(name: str, config: Config) -> None:
    report = ops.remove_repo(name, config)
    for path in report.clones_removed:
        console.print(f"  Removed clone {path}")
    if report.pristine_removed:
        console.print("  Removed pristine")
    if report.aliases_removed:
        console.print(f"  Removed aliases: {', '.join(report.aliases_removed)}")
    for failure in report.failures:
        console.print(f"  [yellow]Could not remove {failure}[/yellow]")
    console.print(f"Repository [cyan]{report.name}[/cyan] removed")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Manage bare mirrors of remote repositories and cheap clones of them.",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Echo debug logging to stderr"
    )
    subparsers = parser.add_subparsers(dest="command")

    add_parser = subparsers.add_parser("add", help="Register a repository")
    add_parser.add_argument(
        "url", nargs="?", help="Remote URL (default: remotes of the current repo)"
    )
    add_parser.add_argument(
        "--interval",
        type=_parse_interval,
        help="Automatic sync interval, e.g. 3600, 30m or 1d",
    )

    init_parser = subparsers.add_parser(
        "init", help="Create the pristine mirror (all uninitialized if no name)"
    )
    init_parser.add_argument("name", nargs="?")

    clone_parser = subparsers.add_parser("clone", help="Create a clone of a pristine")
    clone_parser.add_argument("pristine", help="Repository name or alias")
    clone_parser.add_argument(
        "clone_name", nargs="?", help="Clone suffix (default: random)"
    )
    clone_parser.add_argument("-b", "--branch", help="Branch to check out")

    sync_parser = subparsers.add_parser(
        "sync", help="Fetch a pristine from its remote (all if no name)"
    )
    sync_parser.add_argument("name", nargs="?")

    destroy_parser = subparsers.add_parser(
        "destroy", help="Remove a pristine or clone"
    )
    destroy_parser.add_argument("target", nargs="?")
    destroy_parser.add_argument(
        "--all-clones", metavar="NAME", help="Remove every clone of a repository"
    )
    destroy_parser.add_argument(
        "--all-pristines", action="store_true", help="Remove every pristine"
    )
    destroy_parser.add_argument(
        "--stale", type=int, metavar="DAYS", help="Remove clones older than DAYS"
    )

    list_parser = subparsers.add_parser("list", help="List registered repositories")
    list_parser.add_argument("-v", "--verbose", action="store_true")

    agent_parser = subparsers.add_parser("agent", help="Control the background agent")
    agent_parser.add_argument("action", help="start, stop, status or run")

    status_parser = subparsers.add_parser("status", help="Show repository details")
    status_parser.add_argument("name")

    open_parser = subparsers.add_parser(
        "open", help="Print the path of a pristine or clone"
    )
    open_parser.add_argument("target")

    alias_parser = subparsers.add_parser("alias", help="Manage aliases")
    alias_parser.add_argument("names", nargs="*", metavar="NAME ALIAS")
    alias_parser.add_argument(
        "-r", "--remove", action="store_true", help="Remove the given alias"
    )

    update_parser = subparsers.add_parser(
        "update", help="Sync a pristine and fast-forward its clones (all if no name)"
    )
    update_parser.add_argument("name", nargs="?")

    gc_parser = subparsers.add_parser("gc", help="Remove stale clones, compact pristines")
    gc_parser.add_argument("--days", type=int, help="Age threshold in days")
    gc_parser.add_argument(
        "--dry-run", action="store_true", help="Show what would be removed"
    )

    remove_parser = subparsers.add_parser(
        "remove", help="Unregister a repository and delete all its data"
    )
    remove_parser.add_argument("name")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the repoman CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    config = Config.load()
    config.ensure_dirs()
    daemon.setup_logging(config, debug=args.debug)
    logger.debug(f"command: {args.command}")

    try:
        if args.command == "add":
            cmd_add(args.url, args.interval, config)
        elif args.command == "init":
            cmd_init(args.name, config)
        elif args.command == "clone":
            cmd_clone(args.pristine, args.clone_name, args.branch, config)
        elif args.command == "sync":
            cmd_sync(args.name, config)
        elif args.command == "destroy":
            cmd_destroy(args, config)
        elif args.command == "list":
            cmd_list(args.verbose, config)
        elif args.command == "agent":
            cmd_agent(args.action, config)
        elif args.command == "status":
            cmd_status(args.name, config)
        elif args.command == "open":
            print(ops.find_path(args.target, config))
        elif args.command == "alias":
            cmd_alias(args.names, args.remove, config)
        elif args.command == "update":
            cmd_update(args.name, config)
        elif args.command == "gc":
            days = args.days if args.days is not None else config.limits.gc_days
            cmd_gc(days, args.dry_run, config)
        elif args.command == "remove":
            cmd_remove(args.name, config)
    except RepomanError as e:
        logger.error(f"{args.command} failed: {e}")
        console.print(f"[bold red]Error:[/bold red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
