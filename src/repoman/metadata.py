"""Per-repository durable state.

Each registered repository owns one JSON record at
`<vault_dir>/<name>/metadata.json`. Every mutation helper bumps
`last_updated`. Callers that read, modify and write a record go through
`edit_metadata`, which holds an advisory lock for the whole cycle so two
processes touching the same repository serialize instead of overwriting
each other.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Literal

from .config import Config
from .constants import APP_NAME
from .errors import InvalidInputError, NotFoundError, StorageError
from .storage import read_json, record_lock, write_json_atomic

logger = logging.getLogger(APP_NAME)

SyncKind = Literal["auto", "manual"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class CloneEntry:
    """A working copy registered against a pristine.

    Attributes:
        name (str): The clone's suffix, unique within its repository.
        path (Path): The clone's directory.
        created (datetime): When the clone was made.
    """

    name: str
    path: Path
    created: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "created": format_ts(self.created),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CloneEntry":
        return cls(
            name=data["name"],
            path=Path(data["path"]),
            created=parse_ts(data.get("created")) or utcnow(),
        )


@dataclass
class SyncInfo:
    timestamp: datetime
    kind: SyncKind

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": format_ts(self.timestamp), "kind": self.kind}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncInfo":
        # Older records name the field sync_type.
        kind = data.get("kind") or data.get("sync_type") or "manual"
        return cls(timestamp=parse_ts(data["timestamp"]) or utcnow(), kind=kind)


@dataclass
class AuthConfig:
    """Optional authentication hints for a repository's remotes.

    Attributes:
        ssh_key_path (str | None): Private key to present for SSH remotes.
        token_env_var (str | None): Environment variable holding an HTTPS token.
    """

    ssh_key_path: str | None = None
    token_env_var: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"ssh_key_path": self.ssh_key_path, "token_env_var": self.token_env_var}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthConfig":
        return cls(
            ssh_key_path=data.get("ssh_key_path"),
            token_env_var=data.get("token_env_var"),
        )


@dataclass
class Metadata:
    """The durable record for one registered repository.

    Attributes:
        git_urls (list[str]): Remote URLs; element 0 is the default/origin.
        created_on (datetime): When the repository was registered.
        last_updated (datetime): Bumped by every mutation.
        default_branch (str | None): The mirror's HEAD branch, once known.
        tracked_branches (list[str]): Branches present in the mirror.
        clones (list[CloneEntry]): Working copies made from the mirror.
        sync_interval (int | None): Seconds between automatic syncs; None
            means the agent's default applies.
        last_sync (SyncInfo | None): The most recent successful sync.
        auth_config (AuthConfig | None): Credential hints.
        latest_tag (str | None): The last tag observed on the remote.
        pristine_created (datetime | None): Set when a mirror was created.
    """

    git_urls: list[str]
    created_on: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    default_branch: str | None = None
    tracked_branches: list[str] = field(default_factory=list)
    clones: list[CloneEntry] = field(default_factory=list)
    sync_interval: int | None = None
    last_sync: SyncInfo | None = None
    auth_config: AuthConfig | None = None
    latest_tag: str | None = None
    pristine_created: datetime | None = None

    def default_url(self) -> str:
        """Returns the primary remote URL.

        Raises:
            InvalidInputError: If no URLs are recorded.
        """
        if not self.git_urls:
            raise InvalidInputError("Repository has no git URLs")
        return self.git_urls[0]

    def touch(self) -> None:
        self.last_updated = utcnow()

    def add_clone(self, name: str, path: Path) -> CloneEntry:
        entry = CloneEntry(name=name, path=path)
        self.clones.append(entry)
        self.touch()
        return entry

    def remove_clone(self, name: str) -> CloneEntry | None:
        """Removes a clone entry by suffix, returning it if it was present."""
        for i, clone in enumerate(self.clones):
            if clone.name == name:
                self.touch()
                return self.clones.pop(i)
        return None

    def get_clone(self, name: str) -> CloneEntry | None:
        return next((c for c in self.clones if c.name == name), None)

    def mark_synced(self, kind: SyncKind) -> None:
        self.last_sync = SyncInfo(timestamp=utcnow(), kind=kind)
        self.touch()

    def mark_pristine_created(self) -> None:
        self.pristine_created = utcnow()
        self.touch()

    def clear_pristine_created(self) -> None:
        self.pristine_created = None
        self.touch()

    def to_dict(self) -> dict[str, Any]:
        return {
            "git_urls": list(self.git_urls),
            "created_on": format_ts(self.created_on),
            "last_updated": format_ts(self.last_updated),
            "default_branch": self.default_branch,
            "tracked_branches": list(self.tracked_branches),
            "clones": [c.to_dict() for c in self.clones],
            "sync_interval": self.sync_interval,
            "last_sync": self.last_sync.to_dict() if self.last_sync else None,
            "auth_config": self.auth_config.to_dict() if self.auth_config else None,
            "latest_tag": self.latest_tag,
            "pristine_created": format_ts(self.pristine_created),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Metadata":
        return cls(
            git_urls=list(data.get("git_urls") or []),
            created_on=parse_ts(data.get("created_on")) or utcnow(),
            last_updated=parse_ts(data.get("last_updated")) or utcnow(),
            default_branch=data.get("default_branch"),
            tracked_branches=list(data.get("tracked_branches") or []),
            clones=[CloneEntry.from_dict(c) for c in data.get("clones") or []],
            sync_interval=data.get("sync_interval"),
            last_sync=(
                SyncInfo.from_dict(data["last_sync"]) if data.get("last_sync") else None
            ),
            auth_config=(
                AuthConfig.from_dict(data["auth_config"])
                if data.get("auth_config")
                else None
            ),
            latest_tag=data.get("latest_tag"),
            pristine_created=parse_ts(data.get("pristine_created")),
        )


def load_metadata(name: str, config: Config) -> Metadata:
    """Loads a repository's metadata record.

    Raises:
        NotFoundError: If the record does not exist.
        StorageError: If the record cannot be read or decoded.
    """
    path = config.metadata_file(name)
    if not path.exists():
        raise NotFoundError(f"Metadata for '{name}' not found")
    data = read_json(path)
    if not isinstance(data, dict):
        raise StorageError(f"Corrupt metadata for '{name}': not a JSON object")
    try:
        return Metadata.from_dict(data)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise StorageError(f"Corrupt metadata for '{name}': {e}") from e


def save_metadata(name: str, metadata: Metadata, config: Config) -> None:
    """Persists a repository's metadata, creating its directory if needed."""
    write_json_atomic(config.metadata_file(name), metadata.to_dict())


@contextmanager
def edit_metadata(name: str, config: Config) -> Iterator[Metadata]:
    """Locks, loads and yields a metadata record, saving it on clean exit.

    Args:
        name (str): Canonical repository name.
        config (Config): Active configuration.

    Yields:
        Metadata: The freshly loaded record to mutate in place.

    Raises:
        NotFoundError: If the record does not exist.
    """
    path = config.metadata_file(name)
    if not path.exists():
        raise NotFoundError(f"Metadata for '{name}' not found")
    with record_lock(path):
        metadata = load_metadata(name, config)
        yield metadata
        save_metadata(name, metadata, config)
