import logging
import secrets
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from rich.console import Console

from . import gc
from .config import Config
from .constants import APP_NAME, CLONE_SUFFIX_CHARS, CLONE_SUFFIX_LENGTH
from .credentials import CredentialNegotiator
from .errors import (
    AlreadyExistsError,
    BackendError,
    InvalidInputError,
    NotFoundError,
    RepomanError,
    StorageError,
    classify_git_error,
)
from .git_wrapper import GitRepo, _git
from .metadata import (
    CloneEntry,
    Metadata,
    edit_metadata,
    load_metadata,
    save_metadata,
)
from .progress import ProgressReporter
from .vault import edit_vault, extract_repo_name, load_vault, require_repo

logger = logging.getLogger(APP_NAME)
console = Console()


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except OSError as e:
        raise StorageError(f"Could not remove {path}: {e}") from e


def generate_clone_suffix() -> str:
    """Returns a random lowercase-alphanumeric clone suffix."""
    return "".join(
        secrets.choice(CLONE_SUFFIX_CHARS) for _ in range(CLONE_SUFFIX_LENGTH)
    )


# --- Registry ---


def detect_current_repo_urls(path: Path | None = None) -> list[str]:
    """Collects the remote URLs of the repository containing `path`.

    The default remote comes first, chosen as the first of: the current
    branch's configured remote, `remote.pushDefault`, `origin`, or the
    alphabetically first remote.

    Args:
        path (Path | None): Directory to inspect. Defaults to the cwd.

    Returns:
        list[str]: Remote URLs, default first.

    Raises:
        InvalidInputError: If `path` is not in a repository or it has no remotes.
    """
    path = path or Path.cwd()
    try:
        toplevel = Path(_git(["rev-parse", "--show-toplevel"], cwd=path))
        repo = GitRepo(toplevel)
    except BackendError as e:
        raise InvalidInputError(f"Not a git repository: {path}") from e

    remote_urls: dict[str, str] = {}
    for name in sorted(repo.remotes()):
        url = repo.remote_url(name)
        if url:
            remote_urls[name] = url
    if not remote_urls:
        raise InvalidInputError("No remotes found in current repository")

    default_name = None
    branch = repo.current_branch()
    if branch:
        default_name = repo.config_get(f"branch.{branch}.remote")
    if default_name is None:
        default_name = repo.config_get("remote.pushDefault")
    if default_name not in remote_urls:
        default_name = "origin" if "origin" in remote_urls else next(iter(remote_urls))

    urls = [remote_urls[default_name]]
    urls.extend(url for name, url in remote_urls.items() if name != default_name)
    return urls


def add_repo(
    url: str | None, config: Config, sync_interval: int | None = None
) -> str:
    """Registers a repository and creates its metadata record.

    Args:
        url (str | None): The remote URL. When None, the remotes of the
            repository in the current directory are used.
        config (Config): Active configuration.
        sync_interval (int | None): Seconds between automatic syncs.

    Returns:
        str: The canonical repository name.
    """
    if url:
        urls = [url]
    else:
        urls = detect_current_repo_urls()
        if len(urls) > 1:
            console.print(
                f"Multiple remotes detected. Adding all remotes with "
                f"[cyan]{urls[0]}[/cyan] as default."
            )
            console.print("[dim]You can change defaults later by editing metadata.[/dim]")

    name = extract_repo_name(urls[0])
    logger.debug(f"add_repo: '{name}' from {len(urls)} url(s)")

    with edit_vault(config) as vault:
        vault.add(name, urls[0])
        save_metadata(name, Metadata(git_urls=urls, sync_interval=sync_interval), config)

    logger.info(f"add_repo: added '{name}' ({urls[0]})")
    return name


@dataclass
class RemovalReport:
    """Outcome of a cascading repository removal.

    Each step runs independently; failures are collected instead of aborting.
    """

    name: str
    clones_removed: list[Path] = field(default_factory=list)
    pristine_removed: bool = False
    metadata_removed: bool = False
    aliases_removed: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)


def remove_repo(name: str, config: Config) -> RemovalReport:
    """Removes a repository with its clones, mirror, metadata and aliases.

    Args:
        name (str): Canonical name or alias.
        config (Config): Active configuration.

    Returns:
        RemovalReport: What was removed and what failed.

    Raises:
        NotFoundError: If the repository is not registered.
    """
    with edit_vault(config) as vault:
        canonical = vault.resolve(name)
        if not vault.contains(canonical):
            raise NotFoundError(f"Repository '{canonical}' not found in vault")

        logger.info(f"remove_repo: removing '{canonical}' (resolved from '{name}')")
        report = RemovalReport(name=canonical)

        try:
            clones = load_metadata(canonical, config).clones
        except RepomanError as e:
            logger.warning(f"remove_repo: could not read metadata for '{canonical}': {e}")
            clones = []
        for clone in clones:
            if not clone.path.exists():
                continue
            try:
                shutil.rmtree(clone.path)
                report.clones_removed.append(clone.path)
            except OSError as e:
                logger.warning(f"remove_repo: failed to remove clone '{clone.path}': {e}")
                report.failures.append(f"clone {clone.path}: {e}")

        pristine_path = config.pristine_path(canonical)
        if pristine_path.exists():
            try:
                shutil.rmtree(pristine_path)
                report.pristine_removed = True
            except OSError as e:
                logger.warning(f"remove_repo: failed to remove pristine: {e}")
                report.failures.append(f"pristine {pristine_path}: {e}")

        metadata_dir = config.metadata_dir(canonical)
        if metadata_dir.exists():
            try:
                shutil.rmtree(metadata_dir)
                report.metadata_removed = True
            except OSError as e:
                logger.warning(f"remove_repo: failed to remove metadata: {e}")
                report.failures.append(f"metadata {metadata_dir}: {e}")

        report.aliases_removed = vault.remove_aliases_for(canonical)
        vault.remove(canonical)

    return report


def add_alias(alias: str, name: str, config: Config) -> None:
    with edit_vault(config) as vault:
        vault.add_alias(alias, name)
    logger.info(f"alias: '{alias}' -> '{name}'")


def remove_alias(alias: str, config: Config) -> None:
    with edit_vault(config) as vault:
        vault.remove_alias(alias)
    logger.info(f"alias: removed '{alias}'")


def list_aliases(config: Config) -> list[tuple[str, str]]:
    return load_vault(config).list_aliases()


def get_uninitialized_repos(config: Config) -> list[str]:
    """Repositories registered without a mirror on disk."""
    return [
        name
        for name in load_vault(config).list_names()
        if not config.pristine_path(name).exists()
    ]


def get_syncable_repos(config: Config) -> list[str]:
    """Repositories that have a mirror on disk."""
    return [
        name
        for name in load_vault(config).list_names()
        if config.pristine_path(name).exists()
    ]


# --- Pristines ---


def init_pristine(name: str, config: Config, quiet: bool = False) -> Path:
    """Creates the bare mirror for a registered repository.

    Args:
        name (str): Canonical name or alias.
        config (Config): Active configuration.
        quiet (bool): Suppress console output (used by batch runs).

    Returns:
        Path: The new mirror's directory.

    Raises:
        NotFoundError: If the repository is not registered.
        AlreadyExistsError: If the mirror already exists.
        AuthenticationError: If the remote rejected every credential.
    """
    canonical = require_repo(name, config)
    metadata = load_metadata(canonical, config)
    url = metadata.default_url()

    pristine_path = config.pristine_path(canonical)
    if pristine_path.exists():
        raise AlreadyExistsError(f"Pristine '{canonical}' already exists")

    negotiator = CredentialNegotiator(metadata.auth_config, label="init")
    reporter = ProgressReporter("init", None if quiet else console)

    if not quiet:
        console.print(f"Cloning [cyan]{canonical}[/cyan] into pristine...")
    logger.info(f"init_pristine: cloning '{url}' -> {pristine_path}")
    try:
        repo = GitRepo.clone_bare(
            url, pristine_path, credentials=negotiator, progress=reporter
        )
    except BackendError as e:
        reporter.finish()
        logger.error(f"init_pristine: clone failed for '{canonical}': {e}")
        raise classify_git_error(e, canonical) from e
    reporter.finish()

    with edit_metadata(canonical, config) as metadata:
        metadata.default_branch = repo.head_branch()
        metadata.tracked_branches = repo.list_branches()
        metadata.mark_pristine_created()

    logger.info(f"init_pristine: pristine created at {pristine_path}")
    return pristine_path


def destroy_pristine(name: str, config: Config) -> Path:
    """Removes a mirror while keeping the repository registered.

    Raises:
        NotFoundError: If the repository or its mirror does not exist.
    """
    canonical = require_repo(name, config)
    pristine_path = config.pristine_path(canonical)
    if not pristine_path.exists():
        raise NotFoundError(f"Pristine '{canonical}' not found")

    logger.info(f"destroy_pristine: removing {pristine_path}")
    _remove_tree(pristine_path)

    try:
        with edit_metadata(canonical, config) as metadata:
            metadata.clear_pristine_created()
    except NotFoundError:
        logger.debug(f"destroy_pristine: no metadata for '{canonical}'")
    return pristine_path


def destroy_all_pristines(config: Config) -> list[Path]:
    """Removes every mirror, keeping registrations. Failures are skipped."""
    removed = []
    for name in load_vault(config).list_names():
        pristine_path = config.pristine_path(name)
        if pristine_path.exists():
            try:
                shutil.rmtree(pristine_path)
            except OSError as e:
                logger.warning(f"destroy_all_pristines: failed to remove '{pristine_path}': {e}")
                continue
            removed.append(pristine_path)

        try:
            with edit_metadata(name, config) as metadata:
                metadata.clear_pristine_created()
        except RepomanError as e:
            logger.debug(f"destroy_all_pristines: metadata not updated for '{name}': {e}")
    return removed


# --- Clones ---


def clone_from_pristine(
    pristine_name: str,
    config: Config,
    clone_name: str | None = None,
    branch: str | None = None,
) -> Path:
    """Creates a working copy that borrows its objects from the mirror.

    Args:
        pristine_name (str): Canonical name or alias.
        config (Config): Active configuration.
        clone_name (str | None): Suffix for the clone; random when omitted.
        branch (str | None): Branch to check out; the mirror's HEAD otherwise.

    Returns:
        Path: The clone's directory, `<clones_dir>/<name>-<suffix>`.

    Raises:
        NotFoundError: If the repository, its mirror, or `branch` is missing.
        AlreadyExistsError: If the clone directory already exists.
    """
    canonical = require_repo(pristine_name, config)
    pristine_path = config.pristine_path(canonical)
    if not pristine_path.exists():
        raise NotFoundError(f"Pristine '{canonical}' not found")

    if clone_name is not None and (not clone_name or "/" in clone_name):
        raise InvalidInputError(f"Invalid clone name: '{clone_name}'")
    suffix = clone_name or generate_clone_suffix()
    while clone_name is None and config.clone_path(f"{canonical}-{suffix}").exists():
        suffix = generate_clone_suffix()

    dir_name = f"{canonical}-{suffix}"
    clone_path = config.clone_path(dir_name)
    if clone_path.exists():
        raise AlreadyExistsError(f"Clone '{dir_name}' already exists")

    pristine = GitRepo(pristine_path, bare=True)
    if branch and not pristine.ref_exists(f"refs/heads/{branch}"):
        raise NotFoundError(f"Branch '{branch}' not found in pristine '{canonical}'")

    console.print(f"Creating clone [cyan]{dir_name}[/cyan] from pristine...")
    logger.info(f"clone_from_pristine: {pristine_path} -> {clone_path}")
    try:
        clone = GitRepo.init(clone_path)
        clone.write_alternates([pristine.objects_dir])
        clone.add_remote("origin", str(pristine_path.resolve()))
        clone.fetch("origin", ["+refs/heads/*:refs/remotes/origin/*"])

        target = branch or pristine.head_branch() or "main"
        if clone.ref_exists(f"refs/remotes/origin/{target}"):
            clone.checkout_new_branch(target, f"origin/{target}")
        else:
            head_commit = pristine.rev_parse("HEAD")
            if head_commit:
                logger.debug(f"clone_from_pristine: no origin/{target}, detaching")
                clone.checkout_detached(head_commit, force=True)
    except BackendError:
        shutil.rmtree(clone_path, ignore_errors=True)
        raise

    with edit_metadata(canonical, config) as metadata:
        metadata.remove_clone(suffix)
        metadata.add_clone(suffix, clone_path)

    return clone_path


def _find_clone_by_suffix(
    suffix: str, config: Config
) -> tuple[str, CloneEntry] | None:
    for repo_name in load_vault(config).list_names():
        try:
            metadata = load_metadata(repo_name, config)
        except RepomanError:
            continue
        entry = metadata.get_clone(suffix)
        if entry is not None:
            return repo_name, entry
    return None


def destroy_clone(name_or_dir: str, config: Config) -> Path:
    """Removes a clone given its suffix or its full directory name.

    The directory-name form maps back to its repository by splitting on the
    last hyphen, so clones whose suffixes contain hyphens may not have
    their metadata entry removed; the directory is removed regardless.

    Raises:
        NotFoundError: If neither form resolves.
    """
    found = _find_clone_by_suffix(name_or_dir, config)
    if found is not None:
        repo_name, entry = found
        if entry.path.exists():
            logger.info(f"destroy_clone: removing {entry.path}")
            _remove_tree(entry.path)
        with edit_metadata(repo_name, config) as metadata:
            metadata.remove_clone(entry.name)
        return entry.path

    clone_path = config.clone_path(name_or_dir)
    if clone_path.exists():
        pristine_name, _, suffix = name_or_dir.rpartition("-")
        if pristine_name and config.metadata_file(pristine_name).exists():
            try:
                with edit_metadata(pristine_name, config) as metadata:
                    metadata.remove_clone(suffix)
            except RepomanError as e:
                logger.warning(f"destroy_clone: metadata not updated: {e}")
        logger.info(f"destroy_clone: removing {clone_path}")
        _remove_tree(clone_path)
        return clone_path

    raise NotFoundError(f"Clone '{name_or_dir}' not found")


def destroy_target(target: str, config: Config) -> Path:
    """Destroys a pristine, clone directory, or clone suffix, in that order."""
    vault = load_vault(config)
    canonical = vault.resolve(target)
    if vault.contains(canonical) and config.pristine_path(canonical).exists():
        return destroy_pristine(canonical, config)

    if config.clone_path(target).exists():
        return destroy_clone(target, config)

    if _find_clone_by_suffix(target, config) is not None:
        return destroy_clone(target, config)

    raise NotFoundError(f"Clone '{target}' not found")


def destroy_all_clones(pristine_name: str, config: Config) -> list[Path]:
    """Removes every clone of a repository. Failures are logged and skipped.

    Returns:
        list[Path]: Clone directories that were removed.
    """
    canonical = require_repo(pristine_name, config)
    removed = []
    with edit_metadata(canonical, config) as metadata:
        for entry in list(metadata.clones):
            if entry.path.exists():
                try:
                    shutil.rmtree(entry.path)
                except OSError as e:
                    logger.warning(f"destroy_all_clones: failed to remove '{entry.path}': {e}")
                    continue
            removed.append(entry.path)
            metadata.remove_clone(entry.name)
    return removed


def destroy_stale_clones(days: int, config: Config) -> list[Path]:
    """Removes clones whose HEAD commit is older than `days` days."""
    return gc.remove_stale_clones(gc.find_stale_clones(days, config), config)


def find_path(target: str, config: Config) -> Path:
    """Locates a pristine (by name or alias), clone suffix, or clone directory.

    Raises:
        NotFoundError: If nothing matches.
    """
    vault = load_vault(config)
    pristine_path = config.pristine_path(vault.resolve(target))
    if pristine_path.exists():
        return pristine_path

    found = _find_clone_by_suffix(target, config)
    if found is not None and found[1].path.exists():
        return found[1].path

    clone_path = config.clone_path(target)
    if clone_path.exists():
        return clone_path

    raise NotFoundError(f"Clone '{target}' not found")


# --- Reporting ---


@dataclass
class RepoStatus:
    name: str
    url: str
    added_date: datetime
    has_pristine: bool
    pristine_path: Path | None = None
    pristine_created: datetime | None = None
    clones: list[CloneEntry] = field(default_factory=list)
    last_sync: datetime | None = None
    default_branch: str | None = None
    latest_tag: str | None = None


def list_all_repos(config: Config) -> list[RepoStatus]:
    """Summarizes every registered repository.

    Missing or unreadable metadata yields a status with empty details.
    """
    statuses = []
    for entry in load_vault(config).entries:
        pristine_path = config.pristine_path(entry.name)
        has_pristine = pristine_path.exists()
        try:
            metadata: Metadata | None = load_metadata(entry.name, config)
        except RepomanError as e:
            logger.debug(f"list: no metadata for '{entry.name}': {e}")
            metadata = None

        statuses.append(
            RepoStatus(
                name=entry.name,
                url=entry.url,
                added_date=entry.added_date,
                has_pristine=has_pristine,
                pristine_path=pristine_path if has_pristine else None,
                pristine_created=metadata.pristine_created if metadata else None,
                clones=list(metadata.clones) if metadata else [],
                last_sync=(
                    metadata.last_sync.timestamp
                    if metadata and metadata.last_sync
                    else None
                ),
                default_branch=metadata.default_branch if metadata else None,
                latest_tag=metadata.latest_tag if metadata else None,
            )
        )
    return statuses


@dataclass
class CloneStatus:
    name: str
    path: Path
    exists: bool = False
    branch: str | None = None
    dirty_files: int = 0
    ahead: int = 0
    behind: int = 0


@dataclass
class DetailedStatus:
    name: str
    url: str
    pristine_exists: bool
    pristine_branches: list[str] = field(default_factory=list)
    clones: list[CloneStatus] = field(default_factory=list)
    latest_tag: str | None = None
    last_sync: str | None = None
    sync_interval: int | None = None
    alternates_ok: bool = True


def _clone_status(entry: CloneEntry) -> CloneStatus:
    status = CloneStatus(name=entry.name, path=entry.path)
    if not entry.path.exists():
        return status
    try:
        repo = GitRepo(entry.path)
        status.exists = True
        status.branch = repo.current_branch()
        status.dirty_files = len(repo.status_porcelain())
        if status.branch:
            tracking = f"refs/remotes/origin/{status.branch}"
            if repo.rev_parse("HEAD") and repo.rev_parse(tracking):
                status.ahead, status.behind = repo.ahead_behind("HEAD", tracking)
    except BackendError as e:
        logger.debug(f"status: cannot inspect clone '{entry.name}': {e}")
    return status


def alternates_healthy(entry: CloneEntry) -> bool:
    """Checks that every object store a clone borrows from still exists.

    Broken references are reported, never repaired.
    """
    alternates = entry.path / ".git" / "objects" / "info" / "alternates"
    if not alternates.exists():
        return True
    healthy = True
    for line in alternates.read_text().splitlines():
        if line.strip() and not Path(line.strip()).exists():
            logger.warning(
                f"alternates path missing for clone '{entry.name}': {line.strip()}"
            )
            healthy = False
    return healthy


def get_detailed_status(name: str, config: Config) -> DetailedStatus:
    """Collects mirror, clone and health details for one repository.

    Raises:
        NotFoundError: If the repository or its metadata does not exist.
    """
    vault = load_vault(config)
    entry = vault.get_entry(name)
    if entry is None:
        raise NotFoundError(f"Repository '{vault.resolve(name)}' not found in vault")
    metadata = load_metadata(entry.name, config)

    pristine_path = config.pristine_path(entry.name)
    status = DetailedStatus(
        name=entry.name,
        url=entry.url,
        pristine_exists=pristine_path.exists(),
        latest_tag=metadata.latest_tag,
        sync_interval=metadata.sync_interval,
    )
    if status.pristine_exists:
        try:
            status.pristine_branches = GitRepo(pristine_path, bare=True).list_branches()
        except BackendError as e:
            logger.debug(f"status: cannot open pristine '{entry.name}': {e}")

    if metadata.last_sync:
        stamp = metadata.last_sync.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC")
        status.last_sync = f"{stamp} ({metadata.last_sync.kind})"

    for clone in metadata.clones:
        status.clones.append(_clone_status(clone))
        if clone.path.exists() and not alternates_healthy(clone):
            status.alternates_ok = False

    return status
