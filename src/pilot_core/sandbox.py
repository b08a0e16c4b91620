from __future__ import annotations

import ntpath
import os
import posixpath
import re
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath

from pilot_core.errors import SandboxViolationError


_WINDOWS_DRIVE_PATTERN = re.compile(r"^[A-Za-z]:")
_WINDOWS_UNC_PATTERN = re.compile(r"^(\\\\|//)[^\\/]")


def _looks_like_windows_path(path: str) -> bool:
    if os.name == "nt":
        return True
    return bool(_WINDOWS_DRIVE_PATTERN.match(path)) or "\\" in path


def _pure_path(path: str) -> PurePath:
    if _looks_like_windows_path(path):
        return PureWindowsPath(ntpath.normpath(path))
    return PurePosixPath(posixpath.normpath(path))


def is_root_path(path: str) -> bool:
    """True when ``path`` has no named segment below its drive or root."""
    raw = str(path or "").strip()
    if not raw:
        return True
    if _looks_like_windows_path(raw) and _WINDOWS_UNC_PATTERN.match(raw):
        # \\server\share is the root of a UNC volume.
        return len(PureWindowsPath(raw).parts) <= 1
    pure = _pure_path(raw)
    if not pure.anchor:
        return False
    return len(pure.parts) <= 1


def _native_path(path: str) -> PurePath:
    # Host separator rules only: on POSIX a backslash is part of a file name.
    return PurePath(os.path.normpath(path))


def is_path_safe(base: str, candidate: str) -> bool:
    """True when ``candidate`` equals ``base`` or lies beneath it.

    Both arguments must already be absolute and are parsed with the host's
    own separator rules. Comparison is segment by segment and case
    sensitive, so ``/home/alice-2`` is not inside ``/home/alice``.
    """
    base_text = str(base or "").strip()
    candidate_text = str(candidate or "").strip()
    if not base_text or not candidate_text:
        return False
    base_path = _native_path(base_text)
    candidate_path = _native_path(candidate_text)
    if not base_path.is_absolute() or not candidate_path.is_absolute():
        return False
    base_parts = base_path.parts
    candidate_parts = candidate_path.parts
    if len(candidate_parts) < len(base_parts):
        return False
    return candidate_parts[: len(base_parts)] == base_parts


def resolve_request_path(raw_path: str, *, cwd: str | None = None) -> str:
    """Absolute, symlink-resolved form of a path received from the UI."""
    candidate = Path(str(raw_path)).expanduser()
    if not candidate.is_absolute() and cwd:
        candidate = Path(cwd) / candidate
    return os.path.realpath(candidate)


def check_preview_access(
    candidate: str,
    base: str | None = None,
    *,
    home: str | None = None,
    require_base: bool = False,
) -> str:
    """Apply the preview scope policy to an already resolved ``candidate``.

    With an explicit ``base`` the filesystem root is refused and the
    candidate must stay inside ``base``. Without one the user's home
    directory is the scope unless ``require_base`` is set. Returns the
    scope that authorized the access.
    """
    if base:
        if is_root_path(base):
            raise SandboxViolationError("Cannot use filesystem root as base directory")
        if not is_path_safe(base, candidate):
            raise SandboxViolationError("File is outside the project scope")
        return base

    if require_base:
        raise SandboxViolationError("A base directory is required to preview files")

    home_dir = home if home is not None else os.path.realpath(Path.home())
    if not is_path_safe(home_dir, candidate):
        raise SandboxViolationError("File is outside the allowed scope")
    return home_dir
