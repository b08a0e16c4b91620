from __future__ import annotations


class TypedLauncherError(RuntimeError):
    """Base class for typed operational errors surfaced to users."""

    error_code = "INTERNAL_ERROR"
    failure_class = "internal"
    user_message = "An internal error occurred."
    fatal = True

    def metadata(self) -> dict[str, str]:
        return {
            "error_code": self.error_code,
            "failure_class": self.failure_class,
            "user_message": self.user_message,
        }

    def payload(self, *, detail: str | None = None) -> dict[str, str]:
        payload = self.metadata()
        payload["detail"] = str(self) if detail is None else str(detail)
        return payload


def typed_error_metadata(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedLauncherError):
        return exc.metadata()
    return None


def typed_error_payload(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedLauncherError):
        return exc.payload()
    return None


def is_fatal_error(exc: BaseException) -> bool:
    if isinstance(exc, TypedLauncherError):
        return bool(exc.fatal)
    return True


class ConfigError(TypedLauncherError):
    """Configuration parsing or validation error."""

    error_code = "CONFIG_ERROR"
    failure_class = "configuration"
    user_message = "Configuration is invalid."


class EnvironmentCaptureError(TypedLauncherError):
    """Login shell environment could not be harvested."""

    error_code = "ENVIRONMENT_CAPTURE_ERROR"
    failure_class = "environment"
    user_message = "The shell environment could not be loaded."
    fatal = False


class PortAllocationError(TypedLauncherError):
    """The OS refused to hand out a loopback port."""

    error_code = "PORT_ALLOCATION_ERROR"
    failure_class = "network"
    user_message = "No local port is available for the internal server."


class SpawnError(TypedLauncherError):
    """The server process could not be created."""

    error_code = "SPAWN_ERROR"
    failure_class = "process"
    user_message = "The internal server could not be launched."


class StartupCrashError(TypedLauncherError):
    """The server process exited before it became healthy."""

    error_code = "STARTUP_CRASH"
    failure_class = "process"
    user_message = "The internal server exited during startup."


class HealthCheckTimeoutError(TypedLauncherError):
    """The server never answered its health endpoint in time."""

    error_code = "HEALTH_CHECK_TIMEOUT"
    failure_class = "health"
    user_message = "The internal server did not become ready in time."


class StartupCancelledError(TypedLauncherError):
    """Startup was interrupted by a stop or quit request."""

    error_code = "STARTUP_CANCELLED"
    failure_class = "lifecycle"
    user_message = "Startup was cancelled."
    fatal = False


class SupervisorStateError(TypedLauncherError):
    """Operation is not valid in the supervisor's current state."""

    error_code = "SUPERVISOR_STATE_ERROR"
    failure_class = "lifecycle"
    user_message = "The internal server is already running."


class SandboxViolationError(TypedLauncherError):
    """Requested path resolves outside its permitted scope."""

    error_code = "SANDBOX_VIOLATION"
    failure_class = "authorization"
    user_message = "Access to this path is not allowed."
    fatal = False
