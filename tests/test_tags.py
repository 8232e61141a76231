"""Tests for latest-tag selection and change detection."""

from unittest.mock import MagicMock

import pytest
from hypothesis import given
from hypothesis import strategies as st

from repoman.config import Config
from repoman.errors import AuthenticationError, CredentialError
from repoman.metadata import Metadata, load_metadata, save_metadata
from repoman.tags import (
    check_for_new_tag,
    list_remote_tags,
    parse_tag_version,
    select_latest_tag,
    update_latest_tag,
)
from repoman.vault import edit_vault

versions = st.tuples(
    st.integers(min_value=0, max_value=50),
    st.integers(min_value=0, max_value=50),
    st.integers(min_value=0, max_value=50),
)


@pytest.fixture
def widget(config: Config) -> str:
    with edit_vault(config) as vault:
        vault.add("widget", "git@example.com:acme/widget.git")
    save_metadata("widget", Metadata(git_urls=["git@example.com:acme/widget.git"]), config)
    return "widget"


def test_parse_tag_version_prefixes() -> None:
    assert str(parse_tag_version("v1.2.3")) == "1.2.3"
    assert str(parse_tag_version("V1.2.3")) == "1.2.3"
    assert str(parse_tag_version("1.2.3-rc.1")) == "1.2.3-rc.1"
    assert parse_tag_version("vv1.2.3") is None
    assert parse_tag_version("release-2024") is None
    assert parse_tag_version("v1.2") is None


def test_semver_beats_lexicographic_order() -> None:
    """Verifies numeric precedence, e.g. v1.10.0 outranks v1.9.0."""
    assert select_latest_tag(["v1.9.0", "v1.10.0"]) == "v1.10.0"
    assert select_latest_tag(["v1.9.0", "v2.0.0", "v1.10.0"]) == "v2.0.0"
    assert select_latest_tag(["v1.0.0-rc.1", "v1.0.0"]) == "v1.0.0"


def test_any_semver_outranks_non_semver() -> None:
    assert select_latest_tag(["zzz-final", "v0.0.1", "nightly"]) == "v0.0.1"


def test_non_semver_only_is_lexicographic() -> None:
    assert select_latest_tag(["alpha", "gamma", "beta"]) == "gamma"
    assert select_latest_tag([]) is None


@given(st.lists(versions, min_size=1, unique=True), st.lists(st.text(alphabet="xyz-", min_size=1)))
def test_latest_is_greatest_version(
    triples: list[tuple[int, int, int]], junk: list[str]
) -> None:
    """
    Property: With any mix of semantic-version and other tags, the winner is
    the tag of the greatest version, whatever the list order.
    """
    tags = [f"v{a}.{b}.{c}" for a, b, c in triples] + junk
    expected = "v{}.{}.{}".format(*max(triples))

    assert select_latest_tag(tags) == expected
    assert select_latest_tag(list(reversed(tags))) == expected


def test_list_remote_tags_filters_peeled(mocker: MagicMock) -> None:
    mocker.patch(
        "repoman.tags.GitRepo.list_remote_refs",
        return_value=[
            "HEAD",
            "refs/heads/main",
            "refs/tags/v1.0.0",
            "refs/tags/v1.0.0^{}",
            "refs/tags/nightly",
        ],
    )

    assert list_remote_tags("u", MagicMock()) == ["v1.0.0", "nightly"]


def test_check_for_new_tag(config: Config, widget: str, mocker: MagicMock) -> None:
    """Verifies that only a changed winner is reported.

    Args:
        config (Config): Isolated configuration fixture.
        widget (str): A registered repository.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mocker.patch(
        "repoman.tags.GitRepo.list_remote_refs",
        return_value=["refs/tags/v1.9.0", "refs/tags/v1.10.0"],
    )

    assert check_for_new_tag(widget, config) == "v1.10.0"

    update_latest_tag(widget, "v1.10.0", config)
    assert load_metadata(widget, config).latest_tag == "v1.10.0"
    assert check_for_new_tag(widget, config) is None


def test_check_for_new_tag_auth_failure(
    config: Config, widget: str, mocker: MagicMock
) -> None:
    mocker.patch(
        "repoman.tags.GitRepo.list_remote_refs",
        side_effect=CredentialError("authentication failed"),
    )

    with pytest.raises(AuthenticationError, match="widget"):
        check_for_new_tag(widget, config)
