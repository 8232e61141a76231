"""repoman: bare-mirror repository manager.

This package keeps one pristine bare mirror per registered remote repository
and hands out cheap working-copy clones that borrow the mirror's objects. It
provides the command-line interface, the background sync agent, and the core
registry, lifecycle and sync logic.
"""

from . import (
    batch,
    cli,
    config,
    constants,
    credentials,
    daemon,
    errors,
    gc,
    git_wrapper,
    metadata,
    ops,
    progress,
    service,
    storage,
    sync,
    tags,
    vault,
)

__all__ = [
    "batch",
    "cli",
    "config",
    "constants",
    "credentials",
    "daemon",
    "errors",
    "gc",
    "git_wrapper",
    "metadata",
    "ops",
    "progress",
    "service",
    "storage",
    "sync",
    "tags",
    "vault",
]
