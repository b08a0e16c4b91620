from __future__ import annotations

import os
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from pilot_core.paths import local_bin_dirs


LOOPBACK_HOST = "127.0.0.1"
PORT_ENV = "PORT"
HOSTNAME_ENV = "HOSTNAME"
DATA_DIR_ENV = "PILOT_DATA_DIR"
SUPERVISED_ENV = "PILOT_SUPERVISED"


@dataclass(frozen=True)
class EnvironmentSnapshot(Mapping[str, str]):
    """Read-only view of environment variables captured once per run."""

    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    def __getitem__(self, key: str) -> str:
        return self.variables[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.variables)

    def __len__(self) -> int:
        return len(self.variables)


@dataclass(frozen=True)
class EnvironmentLayer:
    name: str
    values: Mapping[str, str]


def merge_environment_layers(layers: Sequence[EnvironmentLayer]) -> dict[str, str]:
    """Merge layers in order; a later layer wins over every earlier one."""
    merged: dict[str, str] = {}
    for layer in layers:
        for key, value in layer.values.items():
            merged[str(key)] = str(value)
    return merged


def build_search_path(*, home: Path, data_dir: Path, shell_path: str, extra_path: Sequence[str] = ()) -> str:
    entries = [*extra_path, *local_bin_dirs(home, data_dir)]
    if shell_path:
        entries.append(shell_path)
    return os.pathsep.join(entries)


def child_environment_layers(
    *,
    snapshot: Mapping[str, str],
    inherited: Mapping[str, str],
    port: int,
    home: Path,
    data_dir: Path,
    extra_path: Sequence[str] = (),
) -> list[EnvironmentLayer]:
    """Layers for the server child, lowest precedence first.

    Shell-captured values sit above the inherited environment so keys from
    the user's startup files (API keys, PATH) win over whatever the GUI
    session handed to this process. Fixed overrides win outright.
    """
    shell_path = snapshot.get("PATH") or inherited.get("PATH") or ""
    overrides = {
        PORT_ENV: str(int(port)),
        HOSTNAME_ENV: LOOPBACK_HOST,
        DATA_DIR_ENV: str(data_dir),
        SUPERVISED_ENV: "1",
        "HOME": str(home),
        "PATH": build_search_path(home=home, data_dir=data_dir, shell_path=shell_path, extra_path=extra_path),
    }
    return [
        EnvironmentLayer(name="inherited", values=inherited),
        EnvironmentLayer(name="shell", values=snapshot),
        EnvironmentLayer(name="overrides", values=overrides),
    ]


def build_child_environment(
    *,
    snapshot: Mapping[str, str],
    port: int,
    home: Path,
    data_dir: Path,
    inherited: Mapping[str, str] | None = None,
    extra_path: Sequence[str] = (),
) -> dict[str, str]:
    layers = child_environment_layers(
        snapshot=snapshot,
        inherited=dict(os.environ) if inherited is None else inherited,
        port=port,
        home=home,
        data_dir=data_dir,
        extra_path=extra_path,
    )
    return merge_environment_layers(layers)
