from __future__ import annotations

from dataclasses import asdict, dataclass
from itertools import islice
from pathlib import Path
from typing import Any

from pilot_core.config import DEFAULT_PREVIEW_MAX_LINES, DEFAULT_PREVIEW_MAX_LINES_CAP


_LANGUAGE_BY_SUFFIX = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".json": "json",
    ".md": "markdown",
    ".html": "html",
    ".css": "css",
    ".scss": "scss",
    ".sh": "bash",
    ".bash": "bash",
    ".zsh": "bash",
    ".yml": "yaml",
    ".yaml": "yaml",
    ".toml": "toml",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".swift": "swift",
    ".sql": "sql",
    ".xml": "xml",
}


@dataclass(frozen=True)
class FilePreview:
    path: str
    content: str
    language: str
    line_count: int

    def as_payload(self) -> dict[str, Any]:
        return asdict(self)


def detect_language(path: str | Path) -> str:
    candidate = Path(path)
    if candidate.name == "Dockerfile":
        return "dockerfile"
    return _LANGUAGE_BY_SUFFIX.get(candidate.suffix.lower(), "plaintext")


def clamp_max_lines(
    raw_value: Any,
    *,
    default: int = DEFAULT_PREVIEW_MAX_LINES,
    cap: int = DEFAULT_PREVIEW_MAX_LINES_CAP,
) -> int:
    """Requested line count bounded to ``1..cap``; unparsable input gives ``default``."""
    try:
        requested = int(str(raw_value).strip()) if raw_value is not None else int(default)
    except ValueError:
        requested = int(default)
    return max(1, min(requested, int(cap)))


def read_file_preview(path: str | Path, max_lines: int) -> FilePreview:
    file_path = Path(path)
    if not file_path.is_file():
        raise FileNotFoundError(f"File not found: {file_path}")
    with file_path.open("r", encoding="utf-8", errors="replace", newline="") as handle:
        lines = [line.rstrip("\r\n") for line in islice(handle, max(0, int(max_lines)))]
    return FilePreview(
        path=str(file_path),
        content="\n".join(lines),
        language=detect_language(file_path),
        line_count=len(lines),
    )
