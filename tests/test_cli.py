"""Tests for the cargo-ensure-installed command line."""

import json
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from cargo_ensure_installed import APP_NAME, main

RUSTFMT_090 = (
    '[v1]\n"rustfmt 0.9.0 (registry+https://github.com/rust-lang/crates.io-index)"'
    ' = ["rustfmt"]\n'
)


@pytest.fixture
def installed_rustfmt(cargo_home: Path) -> Path:
    (cargo_home / ".crates.toml").write_text(RUSTFMT_090)
    return cargo_home


def test_version(capsys: pytest.CaptureFixture) -> None:
    main(["version"])
    assert capsys.readouterr().out.startswith(f"{APP_NAME} v")


def test_check_skip(isolated_config_dir, installed_rustfmt, capsys) -> None:
    main(["check", "-p", "rustfmt", "-r", "0.9.0", "--cargo-home", str(installed_rustfmt)])
    assert capsys.readouterr().out.startswith("skip: rustfmt 0.9.0")


def test_check_install_exits_2(isolated_config_dir, cargo_home, capsys) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["check", "-p", "rustfmt", "-r", "^1.2", "--cargo-home", str(cargo_home)])
    assert exc_info.value.code == 2
    assert "installed: none" in capsys.readouterr().out


def test_cargo_subcommand_argument_is_dropped(isolated_config_dir, installed_rustfmt, capsys) -> None:
    main(
        [
            "ensure-installed",
            "check",
            "--package",
            "rustfmt",
            "--version",
            "0.9.0",
            "--cargo-home",
            str(installed_rustfmt),
        ]
    )
    assert capsys.readouterr().out.startswith("skip:")


def test_parse_error_exits_1(isolated_config_dir, cargo_home, capsys) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["ensure", "-p", "rustfmt", "-r", "not-a-version", "--cargo-home", str(cargo_home)])
    assert exc_info.value.code == 1
    assert "'not-a-version'" in capsys.readouterr().err


def test_ensure_skips(isolated_config_dir, installed_rustfmt) -> None:
    with patch("cargo_ensure_installed.subprocess.run") as run:
        main(["ensure", "-p", "rustfmt", "-r", "0.9.0", "--cargo-home", str(installed_rustfmt)])
    run.assert_not_called()


def test_ensure_passes_through_cargo_exit_status(isolated_config_dir, cargo_home) -> None:
    with patch(
        "cargo_ensure_installed.subprocess.run",
        return_value=subprocess.CompletedProcess([], 101),
    ) as run, pytest.raises(SystemExit) as exc_info:
        main(
            [
                "ensure",
                "-p",
                "rustfmt",
                "-r",
                "0.9.0",
                "--cargo-home",
                str(cargo_home),
                "--locked",
            ]
        )
    assert exc_info.value.code == 101
    assert run.call_args[0][0] == [
        "cargo", "install", "--force", "--vers", "0.9.0", "--locked", "rustfmt"
    ]


def test_list(isolated_config_dir, installed_rustfmt, capsys) -> None:
    main(["list", "--cargo-home", str(installed_rustfmt)])
    assert "- rustfmt 0.9.0" in capsys.readouterr().out


def test_config_set_and_get(isolated_config_dir: Path, capsys) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["config", "set", "locked=true"])
    assert exc_info.value.code == 0
    saved = json.loads((isolated_config_dir / "config.json").read_text())
    assert saved["locked"] is True

    with pytest.raises(SystemExit):
        main(["config", "get", "locked"])
    assert capsys.readouterr().out.strip() == "true"


@pytest.mark.parametrize(
    "key_value",
    ["unknown=1", "locked=maybe", "probe_method=pip", "registry_timeout=soon", "no-equals"],
)
def test_config_set_rejects_invalid(isolated_config_dir: Path, key_value: str) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["config", "set", key_value])
    assert exc_info.value.code == 1
    assert not (isolated_config_dir / "config.json").exists()


def test_config_file_settings_apply(isolated_config_dir: Path, cargo_home: Path) -> None:
    isolated_config_dir.mkdir(parents=True)
    (isolated_config_dir / "config.json").write_text(
        json.dumps({"cargo_bin": "/opt/rust/bin/cargo", "registry": "internal"})
    )
    with patch(
        "cargo_ensure_installed.subprocess.run",
        return_value=subprocess.CompletedProcess([], 0),
    ) as run:
        main(["ensure", "-p", "rustfmt", "-r", "1", "--cargo-home", str(cargo_home)])
    assert run.call_args[0][0] == [
        "/opt/rust/bin/cargo",
        "install",
        "--force",
        "--vers",
        "1",
        "--registry",
        "internal",
        "rustfmt",
    ]


def test_unparsable_config_falls_back_to_defaults(isolated_config_dir: Path, capsys) -> None:
    isolated_config_dir.mkdir(parents=True)
    (isolated_config_dir / "config.json").write_text("{not json")
    with pytest.raises(SystemExit):
        main(["config", "get", "cargo_bin"])
    captured = capsys.readouterr()
    assert captured.out.strip() == '"cargo"'
    assert "Could not parse config file" in captured.err


def test_list_single_crate_shows_malformed_entries(isolated_config_dir, cargo_home, capsys) -> None:
    (cargo_home / ".crates.toml").write_text(
        "[v1]\n"
        '"rustfmt garbage-string (registry+https://github.com/rust-lang/crates.io-index)" = []\n'
        '"rustfmt 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)" = []\n'
        '"ripgrep 13.0.0 (registry+https://github.com/rust-lang/crates.io-index)" = []\n'
    )
    main(["list", "rustfmt", "--cargo-home", str(cargo_home)])
    out = capsys.readouterr().out
    assert "- rustfmt 1.0.0" in out
    assert "- rustfmt garbage-string [malformed, ignored]" in out
    assert "ripgrep" not in out


def test_list_single_crate_not_installed(isolated_config_dir, cargo_home, capsys) -> None:
    main(["list", "rustfmt", "--cargo-home", str(cargo_home)])
    assert "Not installed." in capsys.readouterr().out


@pytest.mark.parametrize(
    "file_settings",
    [
        {"locked": "false"},
        {"registry_timeout": "10"},
        {"cargo_bin": None},
        {"probe_method": "pip"},
    ],
)
def test_invalid_config_values_fall_back_to_defaults(
    isolated_config_dir: Path, cargo_home: Path, capsys, file_settings: dict
) -> None:
    isolated_config_dir.mkdir(parents=True)
    (isolated_config_dir / "config.json").write_text(json.dumps(file_settings))
    with patch(
        "cargo_ensure_installed.subprocess.run",
        return_value=subprocess.CompletedProcess([], 0),
    ) as run:
        main(["ensure", "-p", "rustfmt", "-r", "1", "--cargo-home", str(cargo_home)])
    assert run.call_args[0][0] == ["cargo", "install", "--force", "--vers", "1", "rustfmt"]
    assert "Invalid value" in capsys.readouterr().err


def test_cargo_killed_by_signal_exits_128_plus_signal(isolated_config_dir, cargo_home) -> None:
    with patch(
        "cargo_ensure_installed.subprocess.run",
        return_value=subprocess.CompletedProcess([], -9),
    ), pytest.raises(SystemExit) as exc_info:
        main(["ensure", "-p", "rustfmt", "-r", "1", "--cargo-home", str(cargo_home)])
    assert exc_info.value.code == 137
