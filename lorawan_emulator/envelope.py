"""
Response envelope and error classification

Every remote call result is wrapped as
{ok, data | error, error_code, hint, request_id, status_code}.
Hints are a status/code keyed lookup so the same failure always explains
itself the same way.
"""
from typing import Optional, Any, Dict
from urllib.parse import urlsplit

from pydantic import BaseModel

from .exceptions import EmulatorException
from .secrets import last4
from .utils import generate_request_id, truncate

MAX_DIAGNOSTIC_SNIPPET = 2048

# ============================================================
# Hints
# ============================================================

STATUS_HINTS = {
    401: "Unauthorized: the SYNC API key is invalid or missing. Check SYNC_API_KEY.",
    403: "Forbidden: the API key lacks permissions for this organization.",
    404: "Not found: the org-state endpoint or the organization does not exist. Check PLATFORM_BASE_URL.",
    500: "Platform internal error. Check platform logs with the request ID.",
    502: "Platform unavailable: the service is temporarily unavailable. Try again in a moment.",
    503: "Platform unavailable: the service is temporarily unavailable. Try again in a moment.",
}

BAD_REQUEST_HINTS = {
    "MISSING_ORG_ID": "Bad request: no organization ID was provided. Select an organization first.",
    "INVALID_ORG_ID": "Bad request: the organization ID format is invalid. Must be a valid UUID.",
}

CODE_HINTS = {
    "CONFIG_MISSING": "Service configuration incomplete. Set PLATFORM_BASE_URL and SYNC_API_KEY.",
    "UPSTREAM_FAILURE": "The platform rejected the request. The organization may not exist or the key may lack permissions for it.",
    "NETWORK_ERROR": "Network error: check connectivity and that the platform is reachable.",
    "RETRY_EXHAUSTED": "Platform temporarily unavailable: every retry failed. Wait a moment and pull again, or check platform status.",
    "VALIDATION_ERROR": "Fix the listed fields and try again.",
    "AUTH_MISSING": "Send the x-webhook-secret header configured for this application.",
    "AUTH_INVALID": "The x-webhook-secret header does not match the registered secret.",
    "NOT_VISIBLE_ON_AS": "Device is registered but not visible on the Application Server. Re-run provisioning or check the API key has Application Server rights.",
    "DEVICE_NOT_FOUND": "Device does not exist in TTN. Provision it first, then set ABP.",
    "PERMISSION_DENIED": "Generate a new API key with the required rights.",
}

DEFAULT_HINT = "Try again or export a support snapshot for diagnosis."


def hint_for(
    status_code: Optional[int] = None,
    error_code: Optional[str] = None,
    message: Optional[str] = None
) -> str:
    """
    Pick the remediation hint for a failure

    Status code wins, then error code, then a couple of message patterns.
    """
    if status_code == 400:
        return BAD_REQUEST_HINTS.get(
            error_code or "",
            "Bad request: the request was malformed. Check the organization ID."
        )
    if status_code in STATUS_HINTS:
        return STATUS_HINTS[status_code]
    if status_code and 500 <= status_code < 600:
        return STATUS_HINTS[503]

    if error_code == "CONFIG_MISSING" and message:
        return f"Service configuration incomplete: {message}. Set it in the environment or as a secret."
    if error_code in CODE_HINTS:
        return CODE_HINTS[error_code]

    if message:
        if "not configured" in message:
            return CODE_HINTS["CONFIG_MISSING"]
        if "timeout" in message.lower() or "timed out" in message.lower():
            return "Network connection issues. Check connectivity and try again."

    return DEFAULT_HINT

# ============================================================
# Diagnostics
# ============================================================

def redact_url(url: Optional[str]) -> Optional[str]:
    """Keep scheme, host and path; drop query strings and credentials"""
    if not url:
        return None
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://{host}{parts.path}"


class RequestDiagnostics(BaseModel):
    """Support data attached to failures"""
    endpoint: str
    target_url_redacted: Optional[str] = None
    duration_ms: Optional[int] = None
    response_status: Optional[int] = None
    content_type: Optional[str] = None
    body_snippet: Optional[str] = None
    auth_key_last4: Optional[str] = None

    @classmethod
    def build(
        cls,
        endpoint: str,
        url: Optional[str] = None,
        duration_ms: Optional[int] = None,
        response_status: Optional[int] = None,
        content_type: Optional[str] = None,
        body: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> "RequestDiagnostics":
        return cls(
            endpoint=endpoint,
            target_url_redacted=redact_url(url),
            duration_ms=duration_ms,
            response_status=response_status,
            content_type=content_type,
            body_snippet=truncate(body, MAX_DIAGNOSTIC_SNIPPET) or None,
            auth_key_last4=last4(api_key),
        )

    @classmethod
    def from_exception(
        cls,
        endpoint: str,
        exc: EmulatorException,
        duration_ms: Optional[int] = None,
    ) -> "RequestDiagnostics":
        """Diagnostics for a call that produced no response"""
        details = exc.details or {}
        measured = details.get("duration_ms")
        return cls.build(
            endpoint=details.get("endpoint") or endpoint,
            url=details.get("url"),
            duration_ms=measured if measured is not None else duration_ms,
        )


class ErrorDetails(BaseModel):
    """Uniform failure shape returned across component boundaries"""
    message: str
    error_code: Optional[str] = None
    status_code: Optional[int] = None
    request_id: Optional[str] = None
    hint: str = DEFAULT_HINT
    details: Optional[Dict[str, Any]] = None
    diagnostics: Optional[RequestDiagnostics] = None

    @classmethod
    def from_exception(
        cls,
        exc: EmulatorException,
        diagnostics: Optional[RequestDiagnostics] = None
    ) -> "ErrorDetails":
        return cls(
            message=exc.message,
            error_code=exc.error_code,
            status_code=exc.status_code,
            request_id=exc.details.get("request_id"),
            hint=hint_for(exc.status_code, exc.error_code, exc.message),
            details=exc.details or None,
            diagnostics=diagnostics,
        )

# ============================================================
# Envelopes
# ============================================================

def success_envelope(data: Any = None, request_id: Optional[str] = None, **extra) -> Dict[str, Any]:
    """Success body: {ok: true, data, request_id, ...}"""
    body = {
        "ok": True,
        "data": data,
        "request_id": request_id or generate_request_id(),
    }
    body.update(extra)
    return body


def error_envelope(
    error: str,
    request_id: Optional[str] = None,
    error_code: Optional[str] = None,
    hint: Optional[str] = None,
    status_code: Optional[int] = None,
    **extra
) -> Dict[str, Any]:
    """Failure body: {ok: false, error, error_code, hint, request_id, status_code, ...}"""
    body = {
        "ok": False,
        "error": error,
        "error_code": error_code,
        "hint": hint or hint_for(status_code, error_code, error),
        "request_id": request_id or generate_request_id(),
        "status_code": status_code,
    }
    body.update(extra)
    return body


def envelope_from_error(error: ErrorDetails, **extra) -> Dict[str, Any]:
    """Failure body for a component result that carries ErrorDetails"""
    return error_envelope(
        error.message,
        request_id=error.request_id,
        error_code=error.error_code,
        hint=error.hint,
        status_code=error.status_code,
        diagnostics=error.diagnostics.model_dump(mode="json") if error.diagnostics else None,
        **extra
    )


def envelope_from_exception(exc: EmulatorException, request_id: Optional[str] = None) -> Dict[str, Any]:
    return error_envelope(
        exc.message,
        request_id=request_id,
        error_code=exc.error_code,
        status_code=exc.status_code,
        details=exc.details or None,
    )
