"""Tests for credential selection and the anti-loop guard."""

from pathlib import Path

import pytest

from repoman.credentials import (
    Credential,
    CredentialKind,
    CredentialNegotiator,
    CredentialType,
)
from repoman.errors import (
    AuthenticationError,
    CredentialError,
    classify_git_error,
    is_auth_failure,
)
from repoman.errors import GitCommandError
from repoman.metadata import AuthConfig

SSH_URL = "git@example.com:acme/widget.git"
HTTPS_URL = "https://example.com/acme/widget.git"
ALL = CredentialType.SSH_KEY | CredentialType.DEFAULT | CredentialType.USER_PASS_PLAINTEXT


def test_explicit_key_wins_for_ssh(tmp_path: Path) -> None:
    key = tmp_path / "id_deploy"
    negotiator = CredentialNegotiator(AuthConfig(ssh_key_path=str(key)), environ={})

    cred = negotiator(SSH_URL, "git", ALL)

    assert cred == Credential(CredentialKind.SSH_KEY, username="git", key_path=key)


def test_agent_used_without_explicit_key() -> None:
    negotiator = CredentialNegotiator(None, environ={})

    cred = negotiator(SSH_URL, "git", CredentialType.SSH_KEY)

    assert cred.kind is CredentialKind.SSH_AGENT
    assert cred.username == "git"


def test_default_credentials_when_offered() -> None:
    negotiator = CredentialNegotiator(None, environ={})

    cred = negotiator(HTTPS_URL, None, CredentialType.DEFAULT | CredentialType.USER_PASS_PLAINTEXT)

    assert cred.kind is CredentialKind.DEFAULT


def test_token_from_environment() -> None:
    """Verifies that an HTTPS challenge is answered with the configured token."""
    negotiator = CredentialNegotiator(
        AuthConfig(token_env_var="WIDGET_TOKEN"), environ={"WIDGET_TOKEN": "s3cret"}
    )

    cred = negotiator(HTTPS_URL, None, CredentialType.USER_PASS_PLAINTEXT)

    assert cred.kind is CredentialKind.USER_PASS
    assert cred.password == "s3cret"
    assert "s3cret" not in repr(cred)


def test_helper_is_last_resort() -> None:
    negotiator = CredentialNegotiator(
        AuthConfig(token_env_var="UNSET_TOKEN"), environ={}
    )

    cred = negotiator(HTTPS_URL, "alice", CredentialType.USER_PASS_PLAINTEXT)

    assert cred == Credential(CredentialKind.HELPER, username="alice")


def test_no_applicable_credential_fails() -> None:
    negotiator = CredentialNegotiator(None, environ={})

    with pytest.raises(CredentialError, match="No valid credentials available"):
        negotiator(HTTPS_URL, None, CredentialType.USER_PASS_PLAINTEXT)


@pytest.mark.parametrize(
    "auth, allowed, username",
    [
        (None, CredentialType.SSH_KEY, "git"),
        (AuthConfig(ssh_key_path="/keys/id"), CredentialType.SSH_KEY, "git"),
        (None, CredentialType.DEFAULT, None),
    ],
)
def test_second_invocation_always_fails(
    auth: AuthConfig | None, allowed: CredentialType, username: str | None
) -> None:
    """Verifies the anti-loop guard: one answer per connection, then refusal.

    Args:
        auth (AuthConfig | None): Repository auth hints.
        allowed (CredentialType): The challenge offered by the remote.
        username (str | None): The user embedded in the URL.
    """
    negotiator = CredentialNegotiator(auth, environ={})

    negotiator(SSH_URL, username, allowed)
    assert negotiator.attempts == 1

    with pytest.raises(CredentialError, match="authentication failed"):
        negotiator(SSH_URL, username, allowed)
    assert negotiator.attempts == 1


def test_classify_credential_rejection() -> None:
    err = classify_git_error(CredentialError("authentication failed"), "widget")

    assert isinstance(err, AuthenticationError)
    assert "Authentication failed for 'widget'" in str(err)
    assert "ssh-add" in str(err)
    assert "credential.helper" in str(err)


def test_classify_by_stderr_only() -> None:
    """Verifies that classification looks at git's stderr, not the command line."""
    auth = GitCommandError(["fetch", "origin"], "fatal: Authentication failed for 'x'")
    assert isinstance(classify_git_error(auth, "widget"), AuthenticationError)

    other = GitCommandError(
        ["-c", "credential.helper=", "fetch", "origin"], "fatal: repository not found"
    )
    assert classify_git_error(other, "widget") is other


@pytest.mark.parametrize(
    "stderr",
    [
        "fatal: '/srv/git/authlib' does not appear to be a git repository",
        "fatal: repository 'https://example.com/acme/oauth2-proxy.git/' not found",
        "fatal: could not read from /opt/credential-manager/objects",
    ],
)
def test_classify_ignores_auth_words_in_paths(stderr: str) -> None:
    """Verifies that names like 'authlib' in git's output do not look like a
    rejected credential."""
    err = GitCommandError(["fetch", "origin"], stderr)

    assert not is_auth_failure(stderr)
    assert classify_git_error(err, "authlib") is err


@pytest.mark.parametrize(
    "stderr",
    [
        "git@example.com: Permission denied (publickey).",
        "fatal: could not read Username for 'https://example.com': terminal prompts disabled",
        "remote: Invalid username or password.",
        "fatal: unable to access 'https://example.com/x.git/': The requested URL returned error: 403",
    ],
)
def test_classify_real_auth_rejections(stderr: str) -> None:
    err = GitCommandError(["fetch", "origin"], stderr)
    assert isinstance(classify_git_error(err, "widget"), AuthenticationError)
