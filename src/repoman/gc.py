"""Stale clone detection and mirror compaction."""

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from .config import Config
from .constants import APP_NAME
from .errors import BackendError, RepomanError
from .git_wrapper import GitRepo
from .metadata import edit_metadata, load_metadata
from .vault import load_vault

logger = logging.getLogger(APP_NAME)

SECONDS_PER_DAY = 86400


@dataclass
class StaleClone:
    repo_name: str
    clone_name: str
    path: Path
    days_old: int


@dataclass
class GcReport:
    """Outcome of a GC run; a dry run fills it identically minus `removed`.

    Attributes:
        stale_clones (list[StaleClone]): Clones past the age threshold.
        pristines_gc_run (int): Mirrors compacted (or that would be).
        removed (list[Path]): Clone directories actually deleted.
    """

    stale_clones: list[StaleClone] = field(default_factory=list)
    pristines_gc_run: int = 0
    removed: list[Path] = field(default_factory=list)


def is_stale(commit_time: float, now: float, days: int) -> bool:
    """A commit exactly `days` old is not stale; one second older is."""
    return commit_time < now - days * SECONDS_PER_DAY


def find_stale_clones(
    days: int, config: Config, now: float | None = None
) -> list[StaleClone]:
    """Finds clones whose HEAD commit is older than `days` days.

    Clones whose directory is missing, that cannot be opened, or that have no
    commit yet are ignored.

    Args:
        days (int): Age threshold in days.
        config (Config): Active configuration.
        now (float | None): Reference Unix time. Defaults to the current time.

    Returns:
        list[StaleClone]: Every clone past the threshold.
    """
    now = time.time() if now is None else now
    vault = load_vault(config)
    stale = []

    for repo_name in vault.list_names():
        try:
            metadata = load_metadata(repo_name, config)
        except RepomanError as e:
            logger.debug(f"gc: skipping '{repo_name}': {e}")
            continue

        for clone in metadata.clones:
            if not clone.path.exists():
                continue
            try:
                commit_time = GitRepo(clone.path).head_commit_time()
            except (BackendError, ValueError) as e:
                logger.debug(f"gc: cannot read HEAD of '{clone.name}': {e}")
                continue

            if is_stale(commit_time, now, days):
                stale.append(
                    StaleClone(
                        repo_name=repo_name,
                        clone_name=clone.name,
                        path=clone.path,
                        days_old=int((now - commit_time) // SECONDS_PER_DAY),
                    )
                )

    return stale


def gc_pristines(config: Config, dry_run: bool = False) -> int:
    """Runs `git gc --auto` in every existing mirror.

    Returns:
        int: Mirrors compacted, or that would be compacted in a dry run.
    """
    vault = load_vault(config)
    count = 0
    for repo_name in vault.list_names():
        pristine_path = config.pristine_path(repo_name)
        if not pristine_path.exists():
            continue
        if dry_run:
            logger.debug(f"gc: would run git gc --auto in {pristine_path}")
            count += 1
            continue

        logger.info(f"gc: running git gc --auto in {pristine_path}")
        try:
            GitRepo(pristine_path, bare=True).gc_auto()
            count += 1
        except BackendError as e:
            logger.warning(f"gc: git gc failed for '{repo_name}': {e}")
    return count


def remove_stale_clones(stale: list[StaleClone], config: Config) -> list[Path]:
    """Deletes stale clones and de-lists them, continuing past failures.

    Returns:
        list[Path]: Directories that were removed.
    """
    removed = []
    for sc in stale:
        if sc.path.exists():
            logger.info(f"gc: removing stale clone '{sc.clone_name}' at {sc.path}")
            try:
                shutil.rmtree(sc.path)
            except OSError as e:
                logger.warning(f"gc: failed to remove '{sc.path}': {e}")
                continue
        try:
            with edit_metadata(sc.repo_name, config) as metadata:
                metadata.remove_clone(sc.clone_name)
        except RepomanError as e:
            logger.warning(f"gc: could not update metadata for '{sc.repo_name}': {e}")
        removed.append(sc.path)
    return removed


def run_gc(
    days: int, dry_run: bool, config: Config, now: float | None = None
) -> GcReport:
    """Finds stale clones, compacts mirrors, then removes the stale clones.

    A dry run performs neither compaction nor removal but reports the same
    candidates and counts.

    Args:
        days (int): Age threshold in days.
        dry_run (bool): Preview without modifying anything.
        config (Config): Active configuration.
        now (float | None): Reference Unix time. Defaults to the current time.

    Returns:
        GcReport: Candidates, mirror count, and removed paths.
    """
    logger.info(f"run_gc: days={days}, dry_run={dry_run}")
    report = GcReport(stale_clones=find_stale_clones(days, config, now=now))
    report.pristines_gc_run = gc_pristines(config, dry_run=dry_run)
    if not dry_run:
        report.removed = remove_stale_clones(report.stale_clones, config)
    return report
