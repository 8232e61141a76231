"""Credential selection for authenticated fetches and clones.

A `CredentialNegotiator` is handed to every network operation of the git layer.
The git layer asks it once per connection attempt which credential to present
for a given challenge; the negotiator walks a fixed preference order and
refuses to answer a second time within the same connection so a remote that
keeps rejecting credentials cannot keep the caller looping.
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .constants import APP_NAME
from .errors import CredentialError
from .metadata import AuthConfig

logger = logging.getLogger(APP_NAME)


class CredentialType(enum.Flag):
    """Challenge types a remote may accept."""

    SSH_KEY = enum.auto()
    DEFAULT = enum.auto()
    USER_PASS_PLAINTEXT = enum.auto()


class CredentialKind(enum.Enum):
    SSH_KEY = "ssh_key"
    SSH_AGENT = "ssh_agent"
    DEFAULT = "default"
    USER_PASS = "userpass"
    HELPER = "helper"


@dataclass(frozen=True)
class Credential:
    """A credential chosen for one connection attempt.

    Attributes:
        kind (CredentialKind): How the credential is presented.
        username (str | None): The user to authenticate as.
        key_path (Path | None): Private key for SSH_KEY credentials.
        password (str | None): Secret for USER_PASS credentials.
    """

    kind: CredentialKind
    username: str | None = None
    key_path: Path | None = None
    password: str | None = field(default=None, repr=False)


class CredentialNegotiator:
    """Ordered credential strategy scoped to a single connection.

    Preference order, first applicable wins:
        1. explicit SSH key from the repository's auth config
        2. the SSH agent, when no explicit key is configured
        3. ambient default credentials
        4. a token read from the configured environment variable
        5. the platform credential helper

    Attributes:
        attempts (int): How many times the callback has been invoked.
    """

    def __init__(
        self,
        auth_config: AuthConfig | None = None,
        label: str = "fetch",
        environ: Mapping[str, str] | None = None,
    ):
        self.ssh_key_path = (
            Path(auth_config.ssh_key_path).expanduser()
            if auth_config and auth_config.ssh_key_path
            else None
        )
        self.token_env_var = auth_config.token_env_var if auth_config else None
        self.label = label
        self.environ = environ if environ is not None else os.environ
        self.attempts = 0

    def __call__(
        self, url: str, username_from_url: str | None, allowed: CredentialType
    ) -> Credential:
        """Selects the credential for the current challenge.

        Args:
            url (str): The remote URL being contacted.
            username_from_url (str | None): The user embedded in the URL, if any.
            allowed (CredentialType): Challenge types the remote accepts.

        Returns:
            Credential: The credential to present.

        Raises:
            CredentialError: On any repeat invocation, or when nothing applies.
        """
        logger.debug(
            f"{self.label} credentials: attempt={self.attempts}, url={url}, "
            f"username={username_from_url}, allowed={allowed}"
        )
        if self.attempts > 0:
            logger.debug(f"{self.label} credentials: rejecting retry")
            raise CredentialError("authentication failed")
        self.attempts += 1

        if CredentialType.SSH_KEY in allowed:
            if self.ssh_key_path is not None:
                if username_from_url:
                    logger.debug(
                        f"{self.label} credentials: trying SSH key {self.ssh_key_path}"
                    )
                    return Credential(
                        CredentialKind.SSH_KEY,
                        username=username_from_url,
                        key_path=self.ssh_key_path,
                    )
            elif username_from_url:
                logger.debug(
                    f"{self.label} credentials: trying ssh-agent for '{username_from_url}'"
                )
                return Credential(CredentialKind.SSH_AGENT, username=username_from_url)

        if CredentialType.DEFAULT in allowed:
            logger.debug(f"{self.label} credentials: trying default credentials")
            return Credential(CredentialKind.DEFAULT)

        if CredentialType.USER_PASS_PLAINTEXT in allowed:
            if self.token_env_var:
                token = self.environ.get(self.token_env_var)
                if token:
                    logger.debug(
                        f"{self.label} credentials: using token from {self.token_env_var}"
                    )
                    return Credential(
                        CredentialKind.USER_PASS, username="git", password=token
                    )
            if username_from_url:
                logger.debug(
                    f"{self.label} credentials: trying credential helper "
                    f"for '{username_from_url}'"
                )
                return Credential(CredentialKind.HELPER, username=username_from_url)

        logger.debug(f"{self.label} credentials: no matching credential type")
        raise CredentialError("No valid credentials available")
