"""Tests for per-repository metadata records and their storage."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from repoman.config import Config
from repoman.errors import InvalidInputError, NotFoundError, StorageError
from repoman.metadata import (
    AuthConfig,
    Metadata,
    SyncInfo,
    edit_metadata,
    load_metadata,
    save_metadata,
)
from repoman.storage import read_json, write_json_atomic

LONG_AGO = datetime(2000, 1, 1, tzinfo=timezone.utc)


def test_load_missing_metadata(config: Config) -> None:
    with pytest.raises(NotFoundError, match="Metadata for 'widget' not found"):
        load_metadata("widget", config)


def test_save_creates_directory_and_round_trips(config: Config) -> None:
    """Verifies that saving creates the per-repository directory and keeps fields.

    Args:
        config (Config): Isolated configuration fixture.
    """
    metadata = Metadata(
        git_urls=["git@example.com:acme/widget.git", "https://mirror/widget.git"],
        sync_interval=600,
        auth_config=AuthConfig(ssh_key_path="~/.ssh/deploy", token_env_var="TOKEN"),
    )
    metadata.add_clone("abc123", config.clone_path("widget-abc123"))
    metadata.mark_synced("auto")
    metadata.latest_tag = "v1.2.0"

    save_metadata("widget", metadata, config)

    assert config.metadata_file("widget").exists()
    loaded = load_metadata("widget", config)
    assert loaded.git_urls == metadata.git_urls
    assert loaded.sync_interval == 600
    assert loaded.auth_config == metadata.auth_config
    assert loaded.clones[0].name == "abc123"
    assert loaded.clones[0].path == config.clone_path("widget-abc123")
    assert loaded.last_sync is not None and loaded.last_sync.kind == "auto"
    assert loaded.last_sync.timestamp == metadata.last_sync.timestamp
    assert loaded.latest_tag == "v1.2.0"


def test_metadata_json_field_names(config: Config) -> None:
    metadata = Metadata(git_urls=["u"])
    metadata.mark_synced("manual")
    save_metadata("widget", metadata, config)

    data = json.loads(config.metadata_file("widget").read_text())

    assert set(data) >= {
        "git_urls",
        "created_on",
        "last_updated",
        "clones",
        "sync_interval",
        "last_sync",
        "auth_config",
        "latest_tag",
        "pristine_created",
    }
    assert data["last_sync"]["kind"] == "manual"


def test_mutations_bump_last_updated() -> None:
    """Verifies that every mutation helper refreshes last_updated."""
    metadata = Metadata(git_urls=["u"])

    for mutate in (
        lambda: metadata.add_clone("a", Path("/tmp/a")),
        lambda: metadata.remove_clone("a"),
        lambda: metadata.mark_synced("manual"),
        lambda: metadata.mark_pristine_created(),
        lambda: metadata.clear_pristine_created(),
        metadata.touch,
    ):
        metadata.last_updated = LONG_AGO
        mutate()
        assert metadata.last_updated > LONG_AGO


def test_remove_clone_reports_presence() -> None:
    metadata = Metadata(git_urls=["u"])
    metadata.add_clone("a", Path("/tmp/a"))

    assert metadata.remove_clone("a") is not None
    assert metadata.remove_clone("a") is None
    assert metadata.get_clone("a") is None


def test_default_url() -> None:
    assert Metadata(git_urls=["first", "second"]).default_url() == "first"
    with pytest.raises(InvalidInputError):
        Metadata(git_urls=[]).default_url()


def test_sync_info_accepts_legacy_key() -> None:
    info = SyncInfo.from_dict(
        {"timestamp": "2024-05-01T10:00:00+00:00", "sync_type": "auto"}
    )
    assert info.kind == "auto"
    assert info.timestamp == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)


def test_edit_metadata_persists(config: Config) -> None:
    save_metadata("widget", Metadata(git_urls=["u"]), config)

    with edit_metadata("widget", config) as metadata:
        metadata.latest_tag = "v2.0.0"

    assert load_metadata("widget", config).latest_tag == "v2.0.0"


def test_edit_metadata_missing(config: Config) -> None:
    with pytest.raises(NotFoundError):
        with edit_metadata("ghost", config):
            pass
    assert not config.metadata_dir("ghost").exists()


def test_corrupt_metadata_is_storage_error(config: Config) -> None:
    path = config.metadata_file("widget")
    path.parent.mkdir(parents=True)
    path.write_text("{not json")

    with pytest.raises(StorageError):
        load_metadata("widget", config)


@pytest.mark.parametrize("document", ["[]", "null", "\"widget\"", "42"])
def test_non_object_metadata_is_storage_error(config: Config, document: str) -> None:
    path = config.metadata_file("widget")
    path.parent.mkdir(parents=True)
    path.write_text(document)

    with pytest.raises(StorageError, match="Corrupt metadata for 'widget'"):
        load_metadata("widget", config)


def test_write_json_atomic_leaves_no_temp_file(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "record.json"

    write_json_atomic(target, {"a": 1})

    assert read_json(target) == {"a": 1}
    assert not (tmp_path / "nested" / "record.json.tmp").exists()


def test_write_json_atomic_rejects_unserializable(tmp_path: Path) -> None:
    target = tmp_path / "record.json"
    target.write_text('{"kept": true}')

    with pytest.raises(StorageError):
        write_json_atomic(target, {"bad": object()})

    assert read_json(target) == {"kept": True}
    assert not (tmp_path / "record.json.tmp").exists()
