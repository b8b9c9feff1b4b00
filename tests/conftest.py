"""Shared pytest fixtures for cargo-ensure-installed tests."""

from pathlib import Path
from typing import Any, Callable

import pytest

import cargo_ensure_installed as cei


@pytest.fixture(autouse=True)
def _reset_logger_handlers():
    """main() attaches a stderr handler; drop it so it never outlives capsys."""
    yield
    cei.logger.handlers.clear()


@pytest.fixture
def cargo_home(tmp_path: Path) -> Path:
    home = tmp_path / "cargo"
    home.mkdir()
    return home


@pytest.fixture
def make_config(cargo_home: Path) -> Callable[..., cei.EnsureConfig]:
    """Build a config rooted at the temporary cargo home, with optional overrides."""

    def _make(**overrides: Any) -> cei.EnsureConfig:
        return cei.build_config(
            cei.EnsureSettings(**cei.DEFAULT_SETTINGS),
            {},
            cargo_home=str(cargo_home),
            **overrides,
        )

    return _make


@pytest.fixture
def write_crates_toml(cargo_home: Path) -> Callable[[str], Path]:
    def _write(contents: str) -> Path:
        path = cargo_home / ".crates.toml"
        path.write_text(contents)
        return path

    return _write


@pytest.fixture
def isolated_config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the settings file at a temporary directory."""
    config_home = tmp_path / "config"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.setenv("APPDATA", str(config_home))
    monkeypatch.delenv("CARGO_REGISTRY_TOKEN", raising=False)
    return config_home / cei.APP_NAME
