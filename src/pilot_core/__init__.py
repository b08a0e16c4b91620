from __future__ import annotations

from .config import (
    LauncherConfig,
    load_launcher_config,
    load_launcher_config_dict,
)
from .environment import EnvironmentSnapshot, build_child_environment
from .errors import (
    ConfigError,
    EnvironmentCaptureError,
    HealthCheckTimeoutError,
    PortAllocationError,
    SandboxViolationError,
    SpawnError,
    StartupCancelledError,
    StartupCrashError,
    SupervisorStateError,
    TypedLauncherError,
)
from .paths import RuntimePaths, default_data_dir, resolve_data_dir
from .ports import allocate_loopback_port
from .sandbox import check_preview_access, is_path_safe, is_root_path
from .shell_env import capture_shell_environment

__all__ = [
    "ConfigError",
    "EnvironmentCaptureError",
    "EnvironmentSnapshot",
    "HealthCheckTimeoutError",
    "LauncherConfig",
    "PortAllocationError",
    "RuntimePaths",
    "SandboxViolationError",
    "SpawnError",
    "StartupCancelledError",
    "StartupCrashError",
    "SupervisorStateError",
    "TypedLauncherError",
    "allocate_loopback_port",
    "build_child_environment",
    "capture_shell_environment",
    "check_preview_access",
    "default_data_dir",
    "is_path_safe",
    "is_root_path",
    "load_launcher_config",
    "load_launcher_config_dict",
    "resolve_data_dir",
]
