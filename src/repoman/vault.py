"""The registry of repositories and their aliases.

The vault lives at `<vault_dir>/vault.json` as
`{"entries": [{name, url, added_date}], "aliases": {alias: name}}`. Nothing is
cached between calls: every entry point reloads the file, and writers hold a
lock across their load-mutate-save cycle.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator

from .config import Config
from .constants import APP_NAME
from .errors import AlreadyExistsError, InvalidInputError, NotFoundError, StorageError
from .metadata import format_ts, parse_ts, utcnow
from .storage import read_json, record_lock, write_json_atomic

logger = logging.getLogger(APP_NAME)


def extract_repo_name(url: str) -> str:
    """Derives a canonical repository name from a remote URL or path.

    Handles `https://host/user/repo(.git)`, scp-like `git@host:user/repo(.git)`,
    nested groups, trailing slashes and plain filesystem paths.

    Args:
        url (str): The URL or path to inspect.

    Returns:
        str: The final path segment without a `.git` suffix.

    Raises:
        InvalidInputError: If no name can be extracted.
    """
    cleaned = url.strip().rstrip("/").removesuffix(".git").rstrip("/")

    if ":" in cleaned and "://" not in cleaned:
        cleaned = cleaned.rsplit(":", 1)[1]

    name = cleaned.rsplit("/", 1)[-1]
    if not name:
        raise InvalidInputError(f"Invalid repository URL: '{url}'")
    return name


@dataclass
class VaultEntry:
    name: str
    url: str
    added_date: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "added_date": format_ts(self.added_date),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VaultEntry":
        return cls(
            name=data["name"],
            url=data["url"],
            added_date=parse_ts(data.get("added_date")) or utcnow(),
        )


@dataclass
class Vault:
    """Name to URL directory plus a single-level alias table.

    Attributes:
        entries (list[VaultEntry]): Registered repositories, in insertion order.
        aliases (dict[str, str]): Alias to canonical name.
    """

    entries: list[VaultEntry] = field(default_factory=list)
    aliases: dict[str, str] = field(default_factory=dict)

    def resolve(self, name_or_alias: str) -> str:
        """Maps an alias to its canonical name; unknown names pass through."""
        return self.aliases.get(name_or_alias, name_or_alias)

    def get_entry(self, name_or_alias: str) -> VaultEntry | None:
        resolved = self.resolve(name_or_alias)
        return next((e for e in self.entries if e.name == resolved), None)

    def contains(self, name_or_alias: str) -> bool:
        return self.get_entry(name_or_alias) is not None

    def list_names(self) -> list[str]:
        return [e.name for e in self.entries]

    def add(self, name: str, url: str) -> VaultEntry:
        """Registers a repository.

        Raises:
            AlreadyExistsError: If a repository or an alias already has the name.
        """
        if any(e.name == name for e in self.entries):
            raise AlreadyExistsError(f"Repository '{name}' already exists in vault")
        if name in self.aliases:
            raise AlreadyExistsError(
                f"'{name}' is already an alias for '{self.aliases[name]}'"
            )
        entry = VaultEntry(name=name, url=url)
        self.entries.append(entry)
        return entry

    def remove(self, name: str) -> VaultEntry | None:
        for i, entry in enumerate(self.entries):
            if entry.name == name:
                return self.entries.pop(i)
        return None

    def add_alias(self, alias: str, name: str) -> None:
        """Maps `alias` to the canonical `name`.

        Raises:
            NotFoundError: If `name` is not a registered repository.
        """
        if not any(e.name == name for e in self.entries):
            raise NotFoundError(f"Repository '{name}' not found in vault")
        self.aliases[alias] = name

    def remove_alias(self, alias: str) -> None:
        if alias not in self.aliases:
            raise NotFoundError(f"Alias '{alias}' not found")
        del self.aliases[alias]

    def remove_aliases_for(self, name: str) -> list[str]:
        """Drops every alias pointing at `name` and returns the removed keys."""
        removed = sorted(a for a, target in self.aliases.items() if target == name)
        for alias in removed:
            del self.aliases[alias]
        return removed

    def list_aliases(self) -> list[tuple[str, str]]:
        return sorted(self.aliases.items())

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "aliases": dict(sorted(self.aliases.items())),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Vault":
        return cls(
            entries=[VaultEntry.from_dict(e) for e in data.get("entries") or []],
            aliases=dict(data.get("aliases") or {}),
        )


def load_vault(config: Config) -> Vault:
    """Loads the registry; a missing file is an empty vault.

    Raises:
        StorageError: If the file exists but cannot be decoded.
    """
    path = config.vault_file
    if not path.exists():
        return Vault()
    data = read_json(path)
    try:
        return Vault.from_dict(data)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise StorageError(f"Corrupt vault file {path}: {e}") from e


def save_vault(vault: Vault, config: Config) -> None:
    write_json_atomic(config.vault_file, vault.to_dict())


@contextmanager
def edit_vault(config: Config) -> Iterator[Vault]:
    """Locks, loads and yields the registry, saving it on clean exit."""
    with record_lock(config.vault_file):
        vault = load_vault(config)
        yield vault
        save_vault(vault, config)


def require_repo(name_or_alias: str, config: Config) -> str:
    """Resolves an alias and checks the repository is registered.

    Returns:
        str: The canonical repository name.

    Raises:
        NotFoundError: If the resolved name is not in the vault.
    """
    vault = load_vault(config)
    canonical = vault.resolve(name_or_alias)
    if not vault.contains(canonical):
        raise NotFoundError(f"Repository '{canonical}' not found in vault")
    return canonical
