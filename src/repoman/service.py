import logging
import os
import signal
import subprocess
import sys

from .config import Config
from .constants import APP_NAME
from .errors import ProcessControlError

logger = logging.getLogger(APP_NAME)


def read_pid(config: Config) -> int | None:
    """Returns the PID recorded for the agent, or None if absent or unreadable."""
    try:
        return int(config.agent_pid_file.read_text().strip())
    except (OSError, ValueError):
        return None


def is_agent_running(config: Config) -> int | None:
    """Probes the recorded PID with signal 0.

    A PID file that names a dead process is removed.

    Returns:
        int | None: The live agent's PID, or None.
    """
    pid = read_pid(config)
    if pid is None:
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        logger.info(f"Removing stale agent PID file (PID: {pid})")
        config.agent_pid_file.unlink(missing_ok=True)
        return None
    except PermissionError:
        # Exists but belongs to another user.
        return pid
    return pid


def start_agent(config: Config) -> int:
    """Spawns `python -m repoman agent run` detached from the terminal.

    Returns:
        int: The new agent's PID.

    Raises:
        ProcessControlError: If an agent is already running or spawning fails.
    """
    if pid := is_agent_running(config):
        raise ProcessControlError(f"Agent is already running (PID: {pid})")

    config.ensure_dirs()
    log_path = config.agent_log_file
    cmd = [sys.executable, "-m", "repoman", "agent", "run"]
    try:
        with open(log_path, "a") as log:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
    except OSError as e:
        raise ProcessControlError(f"Failed to start agent: {e}") from e

    config.agent_pid_file.write_text(str(proc.pid))
    logger.info(f"Agent started (PID: {proc.pid}), logging to {log_path}")
    return proc.pid


def stop_agent(config: Config) -> int:
    """Sends SIGTERM to the running agent and removes its PID file.

    Returns:
        int: The PID that was signalled.

    Raises:
        ProcessControlError: If no agent is running or it cannot be signalled.
    """
    pid = is_agent_running(config)
    if pid is None:
        raise ProcessControlError("Agent is not running")
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        logger.debug(f"Agent {pid} exited before SIGTERM")
    except PermissionError as e:
        raise ProcessControlError(f"Cannot stop agent (PID: {pid}): {e}") from e

    config.agent_pid_file.unlink(missing_ok=True)
    logger.info(f"Agent stopped (PID: {pid})")
    return pid


def agent_status(config: Config) -> str:
    pid = is_agent_running(config)
    if pid is None:
        return "Agent is not running"
    return f"Agent is running (PID: {pid})\nLog file: {config.agent_log_file}"
