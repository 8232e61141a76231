"""Latest-tag discovery on a repository's default remote."""

import logging

import semver

from .config import Config
from .constants import APP_NAME
from .credentials import CredentialNegotiator
from .errors import BackendError, classify_git_error
from .git_wrapper import GitRepo
from .metadata import edit_metadata, load_metadata
from .vault import require_repo

logger = logging.getLogger(APP_NAME)

TAG_PREFIX = "refs/tags/"


def parse_tag_version(tag: str) -> semver.Version | None:
    """Parses a tag as a semantic version, allowing one leading 'v' or 'V'."""
    candidate = tag[1:] if tag[:1] in ("v", "V") else tag
    try:
        return semver.Version.parse(candidate)
    except ValueError:
        return None


def select_latest_tag(tags: list[str]) -> str | None:
    """Picks the latest tag.

    Any semantic-version tag outranks every other tag, and semantic-version
    tags are ordered by version precedence. Without any, the lexicographically
    greatest tag wins.

    Args:
        tags (list[str]): Bare tag names.

    Returns:
        str | None: The winner, or None for an empty list.
    """
    versioned = []
    plain = []
    for tag in tags:
        version = parse_tag_version(tag)
        if version is None:
            plain.append(tag)
        else:
            versioned.append((version, tag))

    if versioned:
        return max(versioned, key=lambda pair: (pair[0], pair[1]))[1]
    if plain:
        return max(plain)
    return None


def list_remote_tags(url: str, negotiator: CredentialNegotiator) -> list[str]:
    """Lists the tag names advertised by `url`, without peeled entries."""
    return [
        ref.removeprefix(TAG_PREFIX)
        for ref in GitRepo.list_remote_refs(url, credentials=negotiator)
        if ref.startswith(TAG_PREFIX) and not ref.endswith("^{}")
    ]


def check_for_new_tag(name: str, config: Config) -> str | None:
    """Looks up the remote's latest tag and compares it to the stored one.

    Args:
        name (str): Canonical name or alias.
        config (Config): Active configuration.

    Returns:
        str | None: The latest tag if it differs from `latest_tag`, else None.

    Raises:
        AuthenticationError: If the remote rejected every credential.
    """
    canonical = require_repo(name, config)
    metadata = load_metadata(canonical, config)
    url = metadata.default_url()
    negotiator = CredentialNegotiator(metadata.auth_config, label="tags")

    try:
        tags = list_remote_tags(url, negotiator)
    except BackendError as e:
        raise classify_git_error(e, canonical) from e

    latest = select_latest_tag(tags)
    logger.debug(f"tags: '{canonical}' has {len(tags)} tag(s), latest {latest}")
    if latest is None or latest == metadata.latest_tag:
        return None
    return latest


def update_latest_tag(name: str, tag: str, config: Config) -> None:
    canonical = require_repo(name, config)
    with edit_metadata(canonical, config) as metadata:
        metadata.latest_tag = tag
        metadata.touch()
    logger.info(f"tags: '{canonical}' latest tag is now {tag}")
