import re
import shutil
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from repoman import ops
from repoman.config import Config
from repoman.errors import (
    AlreadyExistsError,
    AuthenticationError,
    CredentialError,
    InvalidInputError,
    NotFoundError,
)
from repoman.metadata import Metadata, load_metadata, save_metadata
from repoman.vault import load_vault

URL = "git@example.com:acme/widget.git"


@pytest.fixture(autouse=True)
def quiet_console(mocker: MagicMock) -> MagicMock:
    return mocker.patch("repoman.ops.console")


@pytest.fixture
def widget(config: Config) -> str:
    """A registered repository with a fake mirror and two clones on disk."""
    ops.add_repo(URL, config)
    config.pristine_path("widget").mkdir(parents=True)
    with_clones = load_metadata("widget", config)
    for suffix in ("aaaaaa", "bbbbbb"):
        path = config.clone_path(f"widget-{suffix}")
        path.mkdir(parents=True)
        with_clones.add_clone(suffix, path)
    save_metadata("widget", with_clones, config)
    return "widget"


def test_generate_clone_suffix() -> None:
    for _ in range(50):
        assert re.fullmatch(r"[a-z0-9]{6}", ops.generate_clone_suffix())


def test_add_repo_registers_and_creates_metadata(config: Config) -> None:
    name = ops.add_repo(URL, config, sync_interval=900)

    assert name == "widget"
    assert load_vault(config).get_entry("widget").url == URL
    metadata = load_metadata("widget", config)
    assert metadata.git_urls == [URL]
    assert metadata.sync_interval == 900


def test_add_repo_duplicate(config: Config) -> None:
    ops.add_repo(URL, config)
    with pytest.raises(AlreadyExistsError):
        ops.add_repo("https://example.com/other/widget.git", config)


def test_add_repo_from_current_directory(config: Config, mocker: MagicMock) -> None:
    """Verifies that all detected remotes are stored, default first.

    Args:
        config (Config): Isolated configuration fixture.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mocker.patch(
        "repoman.ops.detect_current_repo_urls",
        return_value=["git@example.com:me/widget.git", "https://upstream/widget.git"],
    )

    assert ops.add_repo(None, config) == "widget"
    assert load_metadata("widget", config).git_urls == [
        "git@example.com:me/widget.git",
        "https://upstream/widget.git",
    ]


def test_detect_outside_repository(tmp_path: Path, mocker: MagicMock) -> None:
    mocker.patch("repoman.ops._git", side_effect=ops.BackendError("not a repo"))
    with pytest.raises(InvalidInputError, match="Not a git repository"):
        ops.detect_current_repo_urls(tmp_path)


def test_remove_repo_cascades(config: Config, widget: str) -> None:
    """Verifies that removal deletes clones, mirror, metadata and aliases."""
    ops.add_alias("w", widget, config)
    ops.add_alias("wid", widget, config)

    report = ops.remove_repo("w", config)

    assert report.name == "widget"
    assert report.pristine_removed and report.metadata_removed
    assert sorted(p.name for p in report.clones_removed) == [
        "widget-aaaaaa",
        "widget-bbbbbb",
    ]
    assert report.aliases_removed == ["w", "wid"]
    assert report.failures == []
    assert not config.pristine_path("widget").exists()
    assert not config.clone_path("widget-aaaaaa").exists()
    assert not config.metadata_dir("widget").exists()
    vault = load_vault(config)
    assert not vault.contains("widget")
    assert vault.aliases == {}


def test_remove_repo_continues_past_failures(
    config: Config, widget: str, mocker: MagicMock
) -> None:
    real_rmtree = shutil.rmtree

    def flaky(path: Path, *args, **kwargs) -> None:
        if Path(path).name == "widget-aaaaaa":
            raise PermissionError("busy")
        real_rmtree(path, *args, **kwargs)

    mocker.patch("repoman.ops.shutil.rmtree", side_effect=flaky)

    report = ops.remove_repo("widget", config)

    assert len(report.failures) == 1
    assert report.pristine_removed
    assert not load_vault(config).contains("widget")


def test_remove_unknown_repo(config: Config) -> None:
    with pytest.raises(NotFoundError):
        ops.remove_repo("ghost", config)


def test_aliases(config: Config, widget: str) -> None:
    ops.add_alias("w", widget, config)
    assert ops.list_aliases(config) == [("w", "widget")]

    ops.remove_alias("w", config)
    assert ops.list_aliases(config) == []

    with pytest.raises(NotFoundError):
        ops.add_alias("g", "ghost", config)


def test_repo_partitions(config: Config, widget: str) -> None:
    ops.add_repo("https://example.com/acme/gadget.git", config)

    assert ops.get_syncable_repos(config) == ["widget"]
    assert ops.get_uninitialized_repos(config) == ["gadget"]


def test_init_pristine_existing(config: Config, widget: str) -> None:
    with pytest.raises(AlreadyExistsError, match="Pristine 'widget' already exists"):
        ops.init_pristine("widget", config)


def test_init_pristine_unknown(config: Config) -> None:
    with pytest.raises(NotFoundError):
        ops.init_pristine("ghost", config)


def test_init_pristine_auth_failure(config: Config, mocker: MagicMock) -> None:
    """Verifies that a refused credential surfaces as an AuthenticationError."""
    ops.add_repo(URL, config)
    mocker.patch(
        "repoman.ops.GitRepo.clone_bare",
        side_effect=CredentialError("authentication failed"),
    )

    with pytest.raises(AuthenticationError, match="Authentication failed for 'widget'"):
        ops.init_pristine("widget", config)
    assert load_metadata("widget", config).pristine_created is None


def test_init_pristine_records_branches(config: Config, mocker: MagicMock) -> None:
    ops.add_repo(URL, config)
    ops.add_alias("w", "widget", config)
    handle = MagicMock()
    handle.head_branch.return_value = "main"
    handle.list_branches.return_value = ["dev", "main"]
    clone_bare = mocker.patch("repoman.ops.GitRepo.clone_bare", return_value=handle)

    path = ops.init_pristine("w", config, quiet=True)

    assert path == config.pristine_path("widget")
    assert clone_bare.call_args.args[:2] == (URL, config.pristine_path("widget"))
    metadata = load_metadata("widget", config)
    assert metadata.default_branch == "main"
    assert metadata.tracked_branches == ["dev", "main"]
    assert metadata.pristine_created is not None


def test_clone_requires_mirror(config: Config) -> None:
    ops.add_repo(URL, config)
    with pytest.raises(NotFoundError, match="Pristine 'widget' not found"):
        ops.clone_from_pristine("widget", config)


def test_clone_name_collision(config: Config, widget: str) -> None:
    with pytest.raises(AlreadyExistsError, match="Clone 'widget-aaaaaa' already exists"):
        ops.clone_from_pristine("widget", config, clone_name="aaaaaa")


def test_destroy_clone_by_suffix(config: Config, widget: str) -> None:
    path = ops.destroy_clone("aaaaaa", config)

    assert path == config.clone_path("widget-aaaaaa")
    assert not path.exists()
    assert [c.name for c in load_metadata("widget", config).clones] == ["bbbbbb"]


def test_destroy_clone_by_directory(config: Config, widget: str) -> None:
    ops.destroy_clone("widget-bbbbbb", config)

    assert not config.clone_path("widget-bbbbbb").exists()
    assert [c.name for c in load_metadata("widget", config).clones] == ["aaaaaa"]


def test_destroy_clone_by_directory_with_hyphenated_suffix(
    config: Config, widget: str
) -> None:
    """A hyphen inside the clone suffix defeats the last-hyphen split: the
    directory is removed but its metadata entry is left behind."""
    path = config.clone_path("widget-feature-x")
    path.mkdir(parents=True)
    metadata = load_metadata("widget", config)
    metadata.add_clone("feature-x", path)
    save_metadata("widget", metadata, config)

    ops.destroy_clone("widget-feature-x", config)

    assert not path.exists()
    assert load_metadata("widget", config).get_clone("feature-x") is not None


def test_destroy_clone_missing(config: Config, widget: str) -> None:
    with pytest.raises(NotFoundError, match="Clone 'zzz' not found"):
        ops.destroy_clone("zzz", config)


def test_destroy_target_prefers_pristine(config: Config, widget: str) -> None:
    path = ops.destroy_target("widget", config)

    assert path == config.pristine_path("widget")
    assert not path.exists()
    assert load_vault(config).contains("widget")
    assert config.clone_path("widget-aaaaaa").exists()


def test_destroy_target_falls_through(config: Config, widget: str) -> None:
    assert ops.destroy_target("widget-aaaaaa", config) == config.clone_path("widget-aaaaaa")
    assert ops.destroy_target("bbbbbb", config) == config.clone_path("widget-bbbbbb")
    with pytest.raises(NotFoundError):
        ops.destroy_target("nothing", config)


def test_destroy_pristine_clears_metadata(config: Config, widget: str) -> None:
    metadata = load_metadata("widget", config)
    metadata.mark_pristine_created()
    save_metadata("widget", metadata, config)

    ops.destroy_pristine("widget", config)

    assert load_metadata("widget", config).pristine_created is None
    with pytest.raises(NotFoundError):
        ops.destroy_pristine("widget", config)


def test_destroy_all_clones_best_effort(
    config: Config, widget: str, mocker: MagicMock
) -> None:
    """Verifies that one failed removal is skipped and the rest still happen."""
    real_rmtree = shutil.rmtree

    def flaky(path: Path, *args, **kwargs) -> None:
        if Path(path).name == "widget-aaaaaa":
            raise PermissionError("busy")
        real_rmtree(path, *args, **kwargs)

    mocker.patch("repoman.ops.shutil.rmtree", side_effect=flaky)

    removed = ops.destroy_all_clones("widget", config)

    assert removed == [config.clone_path("widget-bbbbbb")]
    assert [c.name for c in load_metadata("widget", config).clones] == ["aaaaaa"]


def test_destroy_all_pristines(config: Config, widget: str) -> None:
    ops.add_repo("https://example.com/acme/gadget.git", config)

    removed = ops.destroy_all_pristines(config)

    assert removed == [config.pristine_path("widget")]
    assert load_vault(config).list_names() == ["widget", "gadget"]


def test_find_path(config: Config, widget: str) -> None:
    ops.add_alias("w", widget, config)

    assert ops.find_path("w", config) == config.pristine_path("widget")
    assert ops.find_path("aaaaaa", config) == config.clone_path("widget-aaaaaa")
    assert ops.find_path("widget-bbbbbb", config) == config.clone_path("widget-bbbbbb")
    with pytest.raises(NotFoundError):
        ops.find_path("nope", config)


def test_list_all_repos(config: Config, widget: str) -> None:
    ops.add_repo("https://example.com/acme/gadget.git", config)

    statuses = {s.name: s for s in ops.list_all_repos(config)}

    assert statuses["widget"].has_pristine
    assert len(statuses["widget"].clones) == 2
    assert not statuses["gadget"].has_pristine
    assert statuses["gadget"].pristine_path is None


def test_alternates_health(config: Config, widget: str) -> None:
    entry = load_metadata("widget", config).clones[0]
    alternates = entry.path / ".git" / "objects" / "info" / "alternates"
    alternates.parent.mkdir(parents=True)

    alternates.write_text(f"{config.pristine_path('widget')}\n")
    assert ops.alternates_healthy(entry)

    alternates.write_text(f"{config.pristine_path('gone')}/objects\n")
    assert not ops.alternates_healthy(entry)


def test_detailed_status_unknown(config: Config) -> None:
    with pytest.raises(NotFoundError):
        ops.get_detailed_status("ghost", config)


def test_metadata_untouched_by_unrelated_repo(config: Config, widget: str) -> None:
    save_metadata("gadget", Metadata(git_urls=["u"]), config)
    ops.destroy_clone("aaaaaa", config)
    assert load_metadata("gadget", config).clones == []
