"""Exceptions raised by nsdkit."""


class NsdError(Exception):
    """Base class for nsdkit errors."""


class InvalidServiceError(NsdError, ValueError):
    """A service name, type, port or TXT record was rejected as malformed."""


class PlatformNotStartedError(NsdError, RuntimeError):
    """A platform operation was requested before the platform was started."""
