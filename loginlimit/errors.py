"""
Exceptions raised by the login limiter.
"""


class LoginLimitError(Exception):
    """Base exception for login limiter errors."""
    pass


class ConfigurationError(LoginLimitError):
    """Invalid or missing throttling configuration."""
    pass


class StorageError(LoginLimitError):
    """Reading or writing attempt/ban records failed."""
    pass
