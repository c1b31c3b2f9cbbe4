"""
Error taxonomy for the statistics recorder.

Access denial is not an error: AccessGuard returns a deny decision instead.
"""


class ValidationError(ValueError):
    """Caller supplied an empty name/value or a path outside the data root."""


class ConfigError(ValueError):
    """Startup configuration is missing or invalid."""


class ConfigReloadFailure(Exception):
    """Allowlist file could not be read or parsed; previous snapshot stays."""


class PersistenceFailure(OSError):
    """A buffered snapshot could not be appended to its CSV file."""

    def __init__(self, path, cause: Exception):
        super().__init__(f"write to {path} failed: {cause}")
        self.path = path
        self.cause = cause
