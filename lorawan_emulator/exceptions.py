"""
Custom exceptions for the emulator sync and provisioning service

Exceptions are raised inside a component and converted into the uniform
result shape (ErrorDetails / envelope) at that component's boundary.
"""
from typing import Optional, Any


class EmulatorException(Exception):
    """Base exception for all emulator errors"""

    status_code: Optional[int] = None

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict] = None,
        status_code: Optional[int] = None
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses"""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# ============================================================
# Input Exceptions
# ============================================================

class ValidationError(EmulatorException):
    """Malformed input, caught before any network call"""

    def __init__(self, field: str, message: str, error_code: str = "VALIDATION_ERROR"):
        super().__init__(
            message=f"Validation error for {field}: {message}",
            error_code=error_code,
            details={"field": field, "error": message},
            status_code=400
        )
        self.field = field


class ConfigMissingError(EmulatorException):
    """A required externally supplied secret or setting is absent"""

    def __init__(self, setting_name: str):
        super().__init__(
            message=f"{setting_name} is not configured",
            error_code="CONFIG_MISSING",
            details={"missing": setting_name}
        )
        self.setting_name = setting_name


# ============================================================
# Credential Exceptions
# ============================================================

class AuthError(EmulatorException):
    """Missing or invalid credential / webhook secret"""

    def __init__(self, message: str = "Authentication failed", error_code: str = "AUTH_ERROR"):
        super().__init__(message=message, error_code=error_code, status_code=401)


class PermissionDeniedError(EmulatorException):
    """Credential is valid but lacks the required scope"""

    def __init__(self, message: str = "Insufficient permissions", required_rights: Optional[list] = None):
        super().__init__(
            message=message,
            error_code="PERMISSION_DENIED",
            details={"required_rights": required_rights} if required_rights else {},
            status_code=403
        )


# ============================================================
# Remote Service Exceptions
# ============================================================

class NotFoundError(EmulatorException):
    """Org, device or application absent upstream"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND",
            details={"resource": resource, "identifier": str(identifier)},
            status_code=404
        )


class UpstreamError(EmulatorException):
    """Remote service reachable but returned a failure"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: str = "UPSTREAM_FAILURE",
        request_id: Optional[str] = None,
        body_snippet: Optional[str] = None
    ):
        details = {}
        if request_id:
            details["request_id"] = request_id
        if body_snippet:
            details["body_snippet"] = body_snippet
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            status_code=status_code
        )
        self.request_id = request_id
        self.body_snippet = body_snippet


class NetworkError(EmulatorException):
    """Transport-level failure, no response received"""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        url: Optional[str] = None,
        duration_ms: Optional[int] = None
    ):
        details = {}
        if endpoint:
            details["endpoint"] = endpoint
        if url:
            details["url"] = url
        if duration_ms is not None:
            details["duration_ms"] = duration_ms
        super().__init__(message=message, error_code="NETWORK_ERROR", details=details)
        self.endpoint = endpoint
        self.url = url
        self.duration_ms = duration_ms


# ============================================================
# Storage Exceptions
# ============================================================

class DatabaseError(EmulatorException):
    """Database operation failed"""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="DATABASE_ERROR",
            details={"operation": operation} if operation else {},
            status_code=503
        )
