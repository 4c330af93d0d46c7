"""authwatch errors."""


class AuthwatchError(Exception):
    """Base error for authwatch operations."""

    def __init__(self, message: str, code: str = "AUTHWATCH_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ConfigError(AuthwatchError):
    """Configuration could not be loaded or is invalid."""

    def __init__(self, message: str):
        super().__init__(message, "CONFIG_ERROR")


class SourceStartError(AuthwatchError):
    """The log streaming subprocess could not be spawned."""

    def __init__(self, command: list[str], reason: str):
        super().__init__(
            f"Failed to start log source {' '.join(command)}: {reason}",
            "SOURCE_START_FAILED",
        )
        self.command = command
        self.reason = reason


class SchedulerError(AuthwatchError):
    """A task could not be registered."""

    def __init__(self, message: str):
        super().__init__(message, "SCHEDULER_ERROR")


class StorageError(AuthwatchError):
    """Database operation failed."""

    def __init__(self, message: str):
        super().__init__(message, "STORAGE_ERROR")


class NotifierError(AuthwatchError):
    """Telegram delivery failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, "NOTIFIER_ERROR")
        self.status_code = status_code


class GeoIPError(AuthwatchError):
    """GeoIP lookup or database refresh failed."""

    def __init__(self, message: str):
        super().__init__(message, "GEOIP_ERROR")
