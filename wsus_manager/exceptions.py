"""
WSUS Manager Exceptions
Error types raised by the platform backends. Public operations catch these at
their boundary and turn them into result values.
"""


class WsusManagerError(Exception):
    """Base class for all WSUS Manager errors."""


class ServiceNotFoundError(WsusManagerError):
    """The named service is not installed on this host."""

    def __init__(self, service_name: str):
        super().__init__(f"Service '{service_name}' was not found")
        self.service_name = service_name


class ServiceControlError(WsusManagerError):
    """A start/stop/kill command was rejected by the service manager."""


class DatabaseError(WsusManagerError):
    """A database command could not be executed."""


class UnsafePathError(WsusManagerError):
    """A path failed pre-flight validation."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Unsafe path '{path}': {reason}")
        self.path = path
        self.reason = reason


class TransferError(WsusManagerError):
    """An export or import step failed."""


class TransferCancelledError(TransferError):
    """The caller cancelled an export or import."""
