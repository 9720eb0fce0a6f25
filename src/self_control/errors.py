class SelfControlError(Exception):
    """Base class for every error the CLI reports to the user."""


class ConfigError(SelfControlError):
    """A persisted document is missing or malformed."""


class InvalidInputError(SelfControlError):
    """User input failed validation (time format, weekday, duplicates, unknown site)."""


class HostsFileError(SelfControlError):
    """The hosts file could not be read or rewritten."""

    def __init__(self, path, error: OSError):
        self.path = path
        self.error = error
        super().__init__(f"Cannot update hosts file {path}: {error}")


class ProcessControlError(SelfControlError):
    """A background instance could not be inspected or stopped."""


class NoActiveScheduleError(SelfControlError):
    """No schedule range covers the current time."""


class StrictModeError(SelfControlError):
    """An action was refused because strict mode is holding an active block."""

    def __init__(self, message: str, expires_at: str | None = None):
        self.expires_at = expires_at
        if expires_at:
            message = f"{message} Expires at: {expires_at}"
        super().__init__(message)
