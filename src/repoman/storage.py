import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from filelock import FileLock, Timeout

from .constants import APP_NAME
from .errors import StorageError

logger = logging.getLogger(APP_NAME)

LOCK_TIMEOUT = 30.0
"""float: Seconds to wait for another process to release a record lock."""


def read_json(path: Path) -> Any:
    """Reads and decodes a JSON record.

    Args:
        path (Path): The file to read.

    Returns:
        Any: The decoded document.

    Raises:
        StorageError: If the file cannot be read or is not valid JSON.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise StorageError(f"Could not read {path}: {e}") from e


def write_json_atomic(path: Path, data: Any) -> None:
    """Writes a JSON record by swapping in a fully written temporary file.

    Args:
        path (Path): The destination file. Parent directories are created.
        data (Any): A JSON-serializable document.

    Raises:
        StorageError: If serialization or any filesystem step fails.
    """
    tmp_file = path.with_name(f"{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(data, indent=2)
        with open(tmp_file, "w", encoding="utf-8") as f:
            f.write(payload + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_file, path)
    except (OSError, TypeError, ValueError) as e:
        tmp_file.unlink(missing_ok=True)
        raise StorageError(f"Could not write {path}: {e}") from e


@contextmanager
def record_lock(path: Path, timeout: float = LOCK_TIMEOUT) -> Iterator[None]:
    """Holds an advisory lock next to a record for a read-modify-write cycle.

    Args:
        path (Path): The record being protected; the lock is `<path>.lock`.
        timeout (float): Seconds to wait before giving up.

    Raises:
        StorageError: If the lock cannot be acquired in time.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(path.with_name(f"{path.name}.lock")), timeout=timeout)
    try:
        lock.acquire()
    except Timeout as e:
        raise StorageError(f"Timed out waiting for lock on {path}") from e
    try:
        yield
    finally:
        lock.release()
