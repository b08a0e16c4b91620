from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping


APP_DIR_NAME = "pilot_desktop"
BASE_BIN_DIRS = ("/usr/local/bin", "/opt/homebrew/bin", "/usr/bin", "/bin")


@dataclass(frozen=True)
class RuntimePaths:
    home: Path
    data_dir: Path
    server_dir: Path

    @property
    def bin_dir(self) -> Path:
        return self.data_dir / "bin"


def default_data_dir(home: Path | None = None) -> Path:
    resolved_home = (home or Path.home()).expanduser()
    if sys.platform == "darwin":
        return resolved_home / "Library" / "Application Support" / APP_DIR_NAME
    return resolved_home / ".local" / "share" / APP_DIR_NAME


def default_server_dir() -> Path:
    # The bundled server runs as ``-m pilot_desktop.server`` from the source root.
    return Path(__file__).resolve().parents[1]


def resolve_data_dir(paths_values: Mapping[str, Any] | None, *, home: Path | None = None) -> Path:
    if paths_values is not None:
        configured = str(paths_values.get("data_dir") or "").strip()
        if configured:
            return Path(configured).expanduser().resolve()
    return default_data_dir(home)


def local_bin_dirs(home: Path, data_dir: Path) -> list[str]:
    """Directories put ahead of the shell ``PATH`` for the child server."""
    return [
        *BASE_BIN_DIRS,
        str(home / ".npm-global" / "bin"),
        str(home / ".local" / "bin"),
        str(data_dir / "bin"),
    ]
