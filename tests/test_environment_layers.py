from __future__ import annotations

import os
from pathlib import Path

import pytest

from pilot_core import paths as core_paths
from pilot_core.environment import (
    DATA_DIR_ENV,
    HOSTNAME_ENV,
    LOOPBACK_HOST,
    PORT_ENV,
    SUPERVISED_ENV,
    EnvironmentLayer,
    EnvironmentSnapshot,
    build_child_environment,
    child_environment_layers,
    merge_environment_layers,
)


def test_merge_environment_layers_later_layer_wins() -> None:
    merged = merge_environment_layers(
        [
            EnvironmentLayer(name="inherited", values={"A": "inherited", "B": "inherited"}),
            EnvironmentLayer(name="shell", values={"B": "shell", "C": "shell"}),
            EnvironmentLayer(name="overrides", values={"C": "override"}),
        ]
    )

    assert merged == {"A": "inherited", "B": "shell", "C": "override"}


def test_child_environment_prefers_shell_values_over_inherited(tmp_path: Path) -> None:
    env = build_child_environment(
        snapshot=EnvironmentSnapshot({"OPENAI_API_KEY": "from-zshrc", "EDITOR": "vim"}),
        inherited={"OPENAI_API_KEY": "from-launchd", "LANG": "C"},
        port=43123,
        home=tmp_path,
        data_dir=tmp_path / "data",
    )

    assert env["OPENAI_API_KEY"] == "from-zshrc"
    assert env["EDITOR"] == "vim"
    assert env["LANG"] == "C"


def test_child_environment_fixed_overrides_beat_shell_and_inherited(tmp_path: Path) -> None:
    data_dir = tmp_path / "data"
    env = build_child_environment(
        snapshot=EnvironmentSnapshot({PORT_ENV: "9999", HOSTNAME_ENV: "0.0.0.0", "HOME": "/elsewhere"}),
        inherited={PORT_ENV: "8888", SUPERVISED_ENV: "0"},
        port=43123,
        home=tmp_path,
        data_dir=data_dir,
    )

    assert env[PORT_ENV] == "43123"
    assert env[HOSTNAME_ENV] == LOOPBACK_HOST
    assert env[DATA_DIR_ENV] == str(data_dir)
    assert env[SUPERVISED_ENV] == "1"
    assert env["HOME"] == str(tmp_path)


def test_child_environment_path_prefixes_local_bins_before_shell_path(tmp_path: Path) -> None:
    data_dir = tmp_path / "data"
    env = build_child_environment(
        snapshot=EnvironmentSnapshot({"PATH": "/Users/me/.cargo/bin:/usr/bin"}),
        inherited={"PATH": "/usr/bin:/bin"},
        port=1,
        home=tmp_path,
        data_dir=data_dir,
        extra_path=("/opt/tools/bin",),
    )

    entries = env["PATH"].split(os.pathsep)
    assert entries[0] == "/opt/tools/bin"
    assert "/usr/local/bin" in entries
    assert str(tmp_path / ".local" / "bin") in entries
    assert str(data_dir / "bin") in entries
    assert entries.index(str(data_dir / "bin")) < entries.index("/Users/me/.cargo/bin")


def test_child_environment_falls_back_to_inherited_path_when_shell_has_none(tmp_path: Path) -> None:
    layers = child_environment_layers(
        snapshot=EnvironmentSnapshot(),
        inherited={"PATH": "/inherited/bin"},
        port=1,
        home=tmp_path,
        data_dir=tmp_path,
    )

    assert [layer.name for layer in layers] == ["inherited", "shell", "overrides"]
    assert layers[-1].values["PATH"].split(os.pathsep)[-1] == "/inherited/bin"


def test_child_environment_defaults_to_process_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PILOT_INHERITED_PROBE", "present")

    env = build_child_environment(snapshot=EnvironmentSnapshot(), port=1, home=tmp_path, data_dir=tmp_path)

    assert env["PILOT_INHERITED_PROBE"] == "present"


def test_resolve_data_dir_prefers_configured_value(tmp_path: Path) -> None:
    configured = tmp_path / "custom"

    assert core_paths.resolve_data_dir({"data_dir": str(configured)}, home=tmp_path) == configured.resolve()
    assert core_paths.resolve_data_dir({}, home=tmp_path) == core_paths.default_data_dir(tmp_path)


def test_default_data_dir_is_platform_specific(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(core_paths.sys, "platform", "darwin")
    assert core_paths.default_data_dir(tmp_path) == tmp_path / "Library" / "Application Support" / "pilot_desktop"

    monkeypatch.setattr(core_paths.sys, "platform", "linux")
    assert core_paths.default_data_dir(tmp_path) == tmp_path / ".local" / "share" / "pilot_desktop"


def test_runtime_paths_bin_dir(tmp_path: Path) -> None:
    runtime = core_paths.RuntimePaths(home=tmp_path, data_dir=tmp_path / "data", server_dir=tmp_path)

    assert runtime.bin_dir == tmp_path / "data" / "bin"
