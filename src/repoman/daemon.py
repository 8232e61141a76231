import atexit
import logging
import os
import signal
import sys
import time
from collections.abc import Callable
from datetime import datetime
from logging.handlers import RotatingFileHandler
from types import FrameType

from .config import Config
from .constants import APP_NAME
from .errors import RepomanError
from .metadata import Metadata, load_metadata, utcnow
from .sync import update_repo
from .tags import check_for_new_tag, update_latest_tag
from .vault import load_vault

logger = logging.getLogger(APP_NAME)

MIN_SLEEP_SECONDS = 1.0


def setup_logging(config: Config, debug: bool = False, foreground: bool = False) -> None:
    """Configures the logging subsystem.

    A rotating file handler always records DEBUG and above. A stderr handler
    is added when `debug` is set or the agent runs in the foreground.

    Args:
        config (Config): Supplies the log directory and rotation size.
        debug (bool): Echo DEBUG records to stderr.
        foreground (bool): Echo INFO records to stderr.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG)

    try:
        config.paths.logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.log_file,
            maxBytes=config.limits.max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)
    except OSError as e:
        print(f"Could not open log file {config.log_file}: {e}", file=sys.stderr)

    if debug or foreground:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(logging.DEBUG if debug else logging.INFO)
        logger.addHandler(stream_handler)


def seconds_until_due(
    metadata: Metadata, default_interval: int, now: datetime
) -> float:
    """Returns how long until a repository is due for sync; 0 means due now.

    Args:
        metadata (Metadata): The repository's record.
        default_interval (int): Interval used when the record sets none.
        now (datetime): Reference time (timezone-aware).
    """
    if metadata.last_sync is None:
        return 0.0
    interval = (
        metadata.sync_interval
        if metadata.sync_interval is not None
        else default_interval
    )
    elapsed = (now - metadata.last_sync.timestamp).total_seconds()
    return max(0.0, interval - elapsed)


def process_due_repo(name: str, config: Config) -> None:
    """Checks for a new tag, then updates the mirror and its clones.

    A failed tag check is logged and does not prevent the update.
    """
    try:
        new_tag = check_for_new_tag(name, config)
        if new_tag:
            update_latest_tag(name, new_tag, config)
            logger.info(f"TAG {name}: new latest tag {new_tag}")
    except RepomanError as e:
        logger.warning(f"TAG CHECK FAILED {name}: {e}")

    results = update_repo(name, config, kind="auto", quiet=True)
    for result in results:
        logger.info(f"UPDATED {name}/{result.clone_name}: {result.message}")
    logger.info(f"SYNCED {name}")


def run_cycle(config: Config, now: datetime | None = None) -> float:
    """Runs one poll over the registry and returns how long to sleep.

    Repositories without a mirror are ignored. Due repositories are processed
    in order; each failure is logged and the cycle moves on.

    Args:
        config (Config): Active configuration.
        now (datetime | None): Reference time for due calculations.

    Returns:
        float: The smallest remaining interval among repositories that were
        not due (at least one second), or the default interval when none were
        pending.
    """
    now = now or utcnow()
    default_interval = config.agent.default_interval

    try:
        vault = load_vault(config)
    except RepomanError as e:
        logger.error(f"CYCLE ERROR: could not load vault: {e}")
        return float(default_interval)

    next_wake: float | None = None
    for name in vault.list_names():
        if not config.pristine_path(name).exists():
            continue
        try:
            metadata = load_metadata(name, config)
        except RepomanError as e:
            logger.warning(f"SKIPPED {name}: {e}")
            continue

        remaining = seconds_until_due(metadata, default_interval, now)
        if remaining > 0:
            remaining = max(MIN_SLEEP_SECONDS, remaining)
            next_wake = remaining if next_wake is None else min(next_wake, remaining)
            continue

        try:
            process_due_repo(name, config)
        except Exception:
            logger.exception(f"LOOP ERROR {name}")

    return float(default_interval) if next_wake is None else next_wake


def _write_pid_file(config: Config) -> None:
    pid_file = config.agent_pid_file
    try:
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))
        atexit.register(lambda: pid_file.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def run_agent_loop(
    config: Config,
    sleep: Callable[[float], None] = time.sleep,
    max_cycles: int | None = None,
) -> None:
    """The agent's main loop: poll, process due repositories, sleep, repeat.

    Runs until the process is terminated. SIGTERM exits cleanly so the PID
    file is removed.

    Args:
        config (Config): Active configuration.
        sleep (Callable[[float], None]): Sleep function.
        max_cycles (int | None): Stop after this many cycles (None: forever).
    """

    def term_handler(_signum: int, _frame: FrameType | None) -> None:
        logger.info("Agent received SIGTERM, exiting.")
        sys.exit(0)

    signal.signal(signal.SIGTERM, term_handler)
    _write_pid_file(config)
    logger.info(f"Agent started (PID: {os.getpid()})")

    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        delay = run_cycle(config)
        cycles += 1
        logger.info(f"Agent sleeping {delay:.0f}s")
        sleep(delay)
