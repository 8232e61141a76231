"""Shared fixtures: every test gets its own state roots under tmp_path."""

from pathlib import Path

import pytest

from repoman.config import Config, PathsConfig


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """A configuration whose vault, pristines, clones and logs live in tmp_path.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.

    Returns:
        Config: The isolated configuration, with its directories created.
    """
    conf = Config(
        paths=PathsConfig(
            vault_dir=tmp_path / "vault",
            pristines_dir=tmp_path / "pristines",
            clones_dir=tmp_path / "clones",
            logs_dir=tmp_path / "logs",
        )
    )
    conf.ensure_dirs()
    return conf
