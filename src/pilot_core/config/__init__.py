from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    import tomli as tomllib

from pilot_core.errors import ConfigError


_SECTION_KEYS = ("paths", "server", "environment", "preview", "logging")

DEFAULT_STARTUP_TIMEOUT_SECONDS = 30.0
DEFAULT_PROBE_INTERVAL_SECONDS = 0.2
DEFAULT_PROBE_TIMEOUT_SECONDS = 1.0
DEFAULT_STOP_GRACE_SECONDS = 4.0
DEFAULT_DIAGNOSTIC_BUFFER_LINES = 200
DEFAULT_DIAGNOSTIC_TAIL_LINES = 10
DEFAULT_MAX_RESTARTS = 3
DEFAULT_CAPTURE_TIMEOUT_SECONDS = 5.0
DEFAULT_PREVIEW_MAX_LINES = 200
DEFAULT_PREVIEW_MAX_LINES_CAP = 1000


def _ensure_dict(value: object, *, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a table/object.")
    return dict(value)


def _ensure_optional_str(value: object, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string.")
    return value


def _ensure_positive_float(value: object, *, label: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{label} must be a number.")
    if value <= 0:
        raise ConfigError(f"{label} must be greater than zero.")
    return float(value)


def _ensure_positive_int(value: object, *, label: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer.")
    if value <= 0:
        raise ConfigError(f"{label} must be greater than zero.")
    return int(value)


def _ensure_non_negative_int(value: object, *, label: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer.")
    if value < 0:
        raise ConfigError(f"{label} must not be negative.")
    return int(value)


def _ensure_bool(value: object, *, label: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"{label} must be true or false.")
    return value


def _ensure_str_tuple(value: object, *, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{label} must be a list of strings.")
    return tuple(value)


@dataclass(frozen=True)
class PathsConfig:
    values: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ServerConfig:
    command: tuple[str, ...] = ()
    cwd: str | None = None
    startup_timeout_seconds: float = DEFAULT_STARTUP_TIMEOUT_SECONDS
    probe_interval_seconds: float = DEFAULT_PROBE_INTERVAL_SECONDS
    probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    stop_grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS
    diagnostic_buffer_lines: int = DEFAULT_DIAGNOSTIC_BUFFER_LINES
    diagnostic_tail_lines: int = DEFAULT_DIAGNOSTIC_TAIL_LINES
    max_restarts: int = DEFAULT_MAX_RESTARTS


@dataclass(frozen=True)
class EnvironmentConfig:
    shell: str | None = None
    capture_timeout_seconds: float = DEFAULT_CAPTURE_TIMEOUT_SECONDS
    extra_path: tuple[str, ...] = ()


@dataclass(frozen=True)
class PreviewConfig:
    default_max_lines: int = DEFAULT_PREVIEW_MAX_LINES
    max_lines_cap: int = DEFAULT_PREVIEW_MAX_LINES_CAP
    require_base_dir: bool = False


@dataclass(frozen=True)
class LoggingConfig:
    values: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LauncherConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    environment: EnvironmentConfig = field(default_factory=EnvironmentConfig)
    preview: PreviewConfig = field(default_factory=PreviewConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | dict[str, Any]) -> "LauncherConfig":
        if not isinstance(payload, Mapping):
            raise ConfigError("Config payload root must be a table/object.")

        raw = dict(payload)
        paths = PathsConfig(values=_ensure_dict(raw.get("paths"), label="section 'paths'"))
        logging = LoggingConfig(values=_ensure_dict(raw.get("logging"), label="section 'logging'"))
        server = _parse_server(raw)
        environment = _parse_environment(raw)
        preview = _parse_preview(raw)

        extras = {k: v for k, v in raw.items() if k not in _SECTION_KEYS}
        return cls(
            paths=paths,
            server=server,
            environment=environment,
            preview=preview,
            logging=logging,
            extras=extras,
        )

    @classmethod
    def from_toml_path(cls, path: str | Path) -> "LauncherConfig":
        config_path = Path(path)
        try:
            raw = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
        try:
            parsed = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ConfigError("Config payload root must be a table/object.")
        return cls.from_dict(parsed)


def _parse_server(raw_root: dict[str, Any]) -> ServerConfig:
    server_raw = _ensure_dict(raw_root.get("server"), label="section 'server'")
    command = _ensure_str_tuple(server_raw.get("command"), label="server.command")
    return ServerConfig(
        command=command,
        cwd=_ensure_optional_str(server_raw.get("cwd"), label="server.cwd"),
        startup_timeout_seconds=_ensure_positive_float(
            server_raw.get("startup_timeout_seconds"),
            label="server.startup_timeout_seconds",
            default=DEFAULT_STARTUP_TIMEOUT_SECONDS,
        ),
        probe_interval_seconds=_ensure_positive_float(
            server_raw.get("probe_interval_seconds"),
            label="server.probe_interval_seconds",
            default=DEFAULT_PROBE_INTERVAL_SECONDS,
        ),
        probe_timeout_seconds=_ensure_positive_float(
            server_raw.get("probe_timeout_seconds"),
            label="server.probe_timeout_seconds",
            default=DEFAULT_PROBE_TIMEOUT_SECONDS,
        ),
        stop_grace_seconds=_ensure_positive_float(
            server_raw.get("stop_grace_seconds"),
            label="server.stop_grace_seconds",
            default=DEFAULT_STOP_GRACE_SECONDS,
        ),
        diagnostic_buffer_lines=_ensure_positive_int(
            server_raw.get("diagnostic_buffer_lines"),
            label="server.diagnostic_buffer_lines",
            default=DEFAULT_DIAGNOSTIC_BUFFER_LINES,
        ),
        diagnostic_tail_lines=_ensure_positive_int(
            server_raw.get("diagnostic_tail_lines"),
            label="server.diagnostic_tail_lines",
            default=DEFAULT_DIAGNOSTIC_TAIL_LINES,
        ),
        max_restarts=_ensure_non_negative_int(
            server_raw.get("max_restarts"),
            label="server.max_restarts",
            default=DEFAULT_MAX_RESTARTS,
        ),
    )


def _parse_environment(raw_root: dict[str, Any]) -> EnvironmentConfig:
    environment_raw = _ensure_dict(raw_root.get("environment"), label="section 'environment'")
    return EnvironmentConfig(
        shell=_ensure_optional_str(environment_raw.get("shell"), label="environment.shell"),
        capture_timeout_seconds=_ensure_positive_float(
            environment_raw.get("capture_timeout_seconds"),
            label="environment.capture_timeout_seconds",
            default=DEFAULT_CAPTURE_TIMEOUT_SECONDS,
        ),
        extra_path=_ensure_str_tuple(environment_raw.get("extra_path"), label="environment.extra_path"),
    )


def _parse_preview(raw_root: dict[str, Any]) -> PreviewConfig:
    preview_raw = _ensure_dict(raw_root.get("preview"), label="section 'preview'")
    default_max_lines = _ensure_positive_int(
        preview_raw.get("default_max_lines"),
        label="preview.default_max_lines",
        default=DEFAULT_PREVIEW_MAX_LINES,
    )
    max_lines_cap = _ensure_positive_int(
        preview_raw.get("max_lines_cap"),
        label="preview.max_lines_cap",
        default=DEFAULT_PREVIEW_MAX_LINES_CAP,
    )
    if default_max_lines > max_lines_cap:
        raise ConfigError("preview.default_max_lines must not exceed preview.max_lines_cap.")
    return PreviewConfig(
        default_max_lines=default_max_lines,
        max_lines_cap=max_lines_cap,
        require_base_dir=_ensure_bool(
            preview_raw.get("require_base_dir"),
            label="preview.require_base_dir",
            default=False,
        ),
    )


def load_launcher_config(path: str | Path | None = None) -> LauncherConfig:
    if path is None:
        return LauncherConfig()
    return LauncherConfig.from_toml_path(path)


def load_launcher_config_dict(payload: Mapping[str, Any] | dict[str, Any]) -> LauncherConfig:
    return LauncherConfig.from_dict(payload)


__all__ = [
    "EnvironmentConfig",
    "LauncherConfig",
    "LoggingConfig",
    "PathsConfig",
    "PreviewConfig",
    "ServerConfig",
    "load_launcher_config",
    "load_launcher_config_dict",
]
