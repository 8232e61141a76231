"""Refreshing mirrors from their remotes and clones from their mirrors."""

import enum
import logging
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

from .config import Config
from .constants import APP_NAME
from .credentials import CredentialNegotiator
from .errors import BackendError, NotFoundError, classify_git_error
from .git_wrapper import GitRepo, MergeAnalysis
from .metadata import CloneEntry, SyncKind, edit_metadata, load_metadata
from .progress import ProgressReporter
from .vault import require_repo

logger = logging.getLogger(APP_NAME)
console = Console()

MIRROR_REFSPECS = ["+refs/heads/*:refs/heads/*", "+refs/tags/*:refs/tags/*"]
CLONE_REFSPECS = ["+refs/heads/*:refs/remotes/origin/*"]


class UpdateOutcome(enum.Enum):
    UP_TO_DATE = "up-to-date"
    FAST_FORWARDED = "fast-forwarded"
    DIVERGED = "diverged"
    SKIPPED = "skipped"


@dataclass
class CloneUpdate:
    """Result of reconciling one clone with its mirror.

    Attributes:
        clone_name (str): The clone's suffix.
        path (Path): The clone's directory.
        outcome (UpdateOutcome): What happened.
        message (str): Human-readable detail, e.g. the reason for a skip.
    """

    clone_name: str
    path: Path
    outcome: UpdateOutcome
    message: str


def sync_pristine(
    name: str, config: Config, kind: SyncKind = "manual", quiet: bool = False
) -> None:
    """Fetches every branch and tag from the remote into the mirror.

    The mirror's `origin` remote is created if missing and re-pointed if it
    no longer matches the recorded default URL.

    Args:
        name (str): Canonical name or alias.
        config (Config): Active configuration.
        kind (SyncKind): Recorded as the sync kind ('manual' or 'auto').
        quiet (bool): Suppress console output.

    Raises:
        NotFoundError: If the repository or its mirror does not exist.
        AuthenticationError: If the remote rejected every credential.
    """
    canonical = require_repo(name, config)
    pristine_path = config.pristine_path(canonical)
    if not pristine_path.exists():
        raise NotFoundError(f"Pristine '{canonical}' not found")

    metadata = load_metadata(canonical, config)
    url = metadata.default_url()
    pristine = GitRepo(pristine_path, bare=True)

    current_url = pristine.remote_url("origin")
    if current_url is None:
        logger.debug(f"sync_pristine: adding origin {url} to '{canonical}'")
        pristine.add_remote("origin", url)
    elif current_url != url:
        logger.info(f"sync_pristine: origin of '{canonical}' changed to {url}")
        pristine.set_remote_url("origin", url)

    negotiator = CredentialNegotiator(metadata.auth_config, label="sync")
    reporter = ProgressReporter("sync", None if quiet else console)

    if not quiet:
        console.print(f"Syncing pristine [cyan]{canonical}[/cyan]...")
    logger.info(f"sync_pristine: fetching '{canonical}' from {url} ({kind})")
    try:
        pristine.fetch(
            "origin", MIRROR_REFSPECS, credentials=negotiator, progress=reporter
        )
    except BackendError as e:
        reporter.finish()
        logger.error(f"sync_pristine: fetch failed for '{canonical}': {e}")
        raise classify_git_error(e, canonical) from e
    reporter.finish()

    with edit_metadata(canonical, config) as metadata:
        metadata.default_branch = pristine.head_branch()
        metadata.tracked_branches = pristine.list_branches()
        metadata.mark_synced(kind)


def _skip(entry: CloneEntry, reason: str) -> CloneUpdate:
    logger.info(f"update: skipping clone '{entry.name}': {reason}")
    return CloneUpdate(entry.name, entry.path, UpdateOutcome.SKIPPED, reason)


def update_clone(entry: CloneEntry) -> CloneUpdate:
    """Fetches from the mirror and fast-forwards the clone's current branch.

    Identical tips are left alone, a fast-forwardable or unborn branch is moved
    to the mirror's tip and force-checked-out, and a diverged branch is left
    untouched for a manual merge. Clones that cannot be opened, lack an origin,
    are detached, or have no tracking ref are skipped.

    Args:
        entry (CloneEntry): The clone to reconcile.

    Returns:
        CloneUpdate: The outcome for this clone.
    """
    try:
        repo = GitRepo(entry.path)
    except BackendError as e:
        return _skip(entry, f"cannot open repository ({e})")

    if repo.remote_url("origin") is None:
        return _skip(entry, "no origin remote")

    try:
        repo.fetch("origin", CLONE_REFSPECS)
    except BackendError as e:
        return _skip(entry, f"fetch from pristine failed ({e})")

    branch = repo.current_branch()
    if branch is None:
        return _skip(entry, "HEAD is detached")

    remote_oid = repo.rev_parse(f"refs/remotes/origin/{branch}")
    if remote_oid is None:
        return _skip(entry, f"no tracking ref for branch '{branch}'")

    local_oid = repo.rev_parse("HEAD")
    if local_oid == remote_oid:
        return CloneUpdate(
            entry.name, entry.path, UpdateOutcome.UP_TO_DATE, "already up-to-date"
        )

    analysis = repo.merge_analysis(remote_oid)
    if analysis is MergeAnalysis.UP_TO_DATE:
        return CloneUpdate(
            entry.name, entry.path, UpdateOutcome.UP_TO_DATE, "already up-to-date"
        )
    if analysis is MergeAnalysis.DIVERGED:
        logger.warning(f"update: clone '{entry.name}' has diverged on '{branch}'")
        return CloneUpdate(
            entry.name,
            entry.path,
            UpdateOutcome.DIVERGED,
            "has diverged, manual merge required",
        )

    logger.info(
        f"update: fast-forwarding '{entry.name}' {branch} "
        f"{(local_oid or 'unborn')[:8]} -> {remote_oid[:8]}"
    )
    repo.update_ref(f"refs/heads/{branch}", remote_oid, local_oid)
    repo.checkout(branch, force=True)
    return CloneUpdate(
        entry.name, entry.path, UpdateOutcome.FAST_FORWARDED, "fast-forwarded"
    )


def update_repo(
    name: str, config: Config, kind: SyncKind = "manual", quiet: bool = False
) -> list[CloneUpdate]:
    """Syncs the mirror, then reconciles every existing clone with it.

    Args:
        name (str): Canonical name or alias.
        config (Config): Active configuration.
        kind (SyncKind): Recorded as the sync kind.
        quiet (bool): Suppress console output.

    Returns:
        list[CloneUpdate]: One result per clone whose directory exists.
    """
    canonical = require_repo(name, config)
    sync_pristine(canonical, config, kind=kind, quiet=quiet)

    results = []
    for entry in load_metadata(canonical, config).clones:
        if not entry.path.exists():
            logger.debug(f"update: clone path missing for '{entry.name}'")
            continue
        try:
            result = update_clone(entry)
        except BackendError as e:
            logger.error(f"update: clone '{entry.name}' failed: {e}")
            result = CloneUpdate(entry.name, entry.path, UpdateOutcome.SKIPPED, str(e))
        results.append(result)

        if not quiet:
            style = {
                UpdateOutcome.FAST_FORWARDED: "green",
                UpdateOutcome.DIVERGED: "yellow",
                UpdateOutcome.SKIPPED: "dim",
            }.get(result.outcome, "white")
            console.print(
                f"  [{style}]{entry.path.name}: {result.message}[/{style}]"
            )

    return results
