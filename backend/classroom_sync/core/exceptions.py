"""
Custom exception classes for unified error handling.
"""

from fastapi import HTTPException


class AppBaseError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message: str, detail: str | None = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class ProtocolError(AppBaseError):
    """Raised when a device frame cannot be accepted on its connection.

    `reason` is the machine-readable code sent back in the `error` frame.
    """
    def __init__(self, reason: str, detail: str | None = None, close: bool = False):
        self.reason = reason
        self.close = close
        super().__init__(message=f"Protocol error: {reason}", detail=detail)


class DeviceNotRegisteredError(ProtocolError):
    """Raised when an identify names a hardware address the registry doesn't know."""
    def __init__(self, mac: str):
        super().__init__(
            reason="device_not_registered",
            detail=f"No device registered with address {mac}",
            close=True,
        )


class InvalidSecretError(ProtocolError):
    """Raised when an identify carries a wrong or missing shared secret."""
    def __init__(self, mac: str):
        super().__init__(
            reason="invalid_or_missing_secret",
            detail=f"Secret rejected for {mac}",
            close=True,
        )


class RegistryUnavailableError(AppBaseError):
    """Raised when the device registry cannot be reached."""
    def __init__(self, message: str = "Device registry unavailable"):
        super().__init__(
            message=message,
            detail="Service is running in limited mode until the registry is back.",
        )


class ConcurrentUpdateError(AppBaseError):
    """Raised when an optimistic read-modify-write keeps losing the race."""
    def __init__(self, mac: str, attempts: int):
        super().__init__(
            message=f"Concurrent update on device {mac}",
            detail=f"Gave up after {attempts} attempts",
        )


class ScheduleCompileError(AppBaseError):
    """Raised when a schedule's recurrence can't be turned into a trigger."""
    def __init__(self, schedule_id: str, original_error: str):
        super().__init__(
            message=f"Schedule '{schedule_id}' could not be compiled",
            detail=original_error,
        )


class ProvisioningError(AppBaseError):
    """Raised when a device document fails provisioning checks."""
    def __init__(self, message: str):
        super().__init__(message=message, detail="Validation failed")


# ── Utility: convert to HTTPException ────────────────────

def app_error_to_http(error: AppBaseError, status_code: int = 400) -> HTTPException:
    """Convert an AppBaseError to an HTTPException with consistent JSON body."""
    return HTTPException(
        status_code=status_code,
        detail={
            "error": error.message,
            "detail": error.detail,
            "type": type(error).__name__,
        },
    )
