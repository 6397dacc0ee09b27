"""Classification of Odoo faults into the sync error taxonomy.

Both protocols report server-side exceptions by (qualified) exception name:
JSON-RPC in ``error.data.name``, XML-RPC inside ``faultString``. The name
decides whether a failure is worth retrying.
"""

from typing import Any, Dict, Optional

from core.errors import (
    AuthenticationExpiredError,
    SyncError,
    TransientNetworkError,
    ValidationError,
)


# Session no longer valid; one re-authentication is worth trying.
AUTH_FAULTS = (
    "SessionExpiredException",
    "AccessDenied",
)

# Business-rule rejections; retrying the same payload cannot succeed.
VALIDATION_FAULTS = (
    "ValidationError",
    "UserError",
    "MissingError",
    "AccessError",
    "RedirectWarning",
    "ValueError",
    "TypeError",
    "KeyError",
)

# JSON-RPC error code Odoo uses for an expired session.
SESSION_EXPIRED_CODE = 100


def _short_name(name: str) -> str:
    return name.rsplit(".", 1)[-1] if name else ""


def classify_fault(name: str, message: str, code: Any = None) -> SyncError:
    """Map a remote exception to a taxonomy error.

    Args:
        name: Exception name, qualified or not (e.g. "odoo.exceptions.UserError")
        message: Human readable fault message
        code: Protocol error code, if any
    """
    short = _short_name(name)
    details = {"fault": name, "code": code}

    if code == SESSION_EXPIRED_CODE or short in AUTH_FAULTS:
        return AuthenticationExpiredError(f"Session rejected: {message}", details=details)
    if short in VALIDATION_FAULTS:
        return ValidationError(f"Remote rejected the request: {message}", details=details)
    # Serialization failures, internal errors and anything unrecognised.
    return TransientNetworkError(f"Remote server error: {message}", details=details)


def classify_jsonrpc_error(error: Dict[str, Any]) -> SyncError:
    """Classify the ``error`` member of a JSON-RPC response."""
    data = error.get("data") or {}
    name = data.get("name", "") if isinstance(data, dict) else ""
    message = (
        (data.get("message") if isinstance(data, dict) else None)
        or error.get("message")
        or "Unknown RPC error"
    )
    return classify_fault(name, message, error.get("code"))


def classify_xmlrpc_fault(fault_code: Any, fault_string: str) -> SyncError:
    """Classify an XML-RPC Fault.

    Odoo puts either the bare message or a full traceback in
    ``faultString``; the exception name is found by scanning for the
    known names.
    """
    text = fault_string or ""
    name = ""
    for candidate in AUTH_FAULTS + VALIDATION_FAULTS:
        if candidate in text or candidate == str(fault_code):
            name = candidate
            break
    message = text.strip().splitlines()[-1] if text.strip() else "Unknown XML-RPC fault"
    return classify_fault(name, message, fault_code)


def classify_http_status(status: int, body: str = "") -> Optional[SyncError]:
    """Classify an HTTP status; None for success."""
    if status < 400:
        return None
    snippet = (body or "")[:500]
    details = {"status": status}
    if status in (401, 403):
        return AuthenticationExpiredError(f"HTTP {status}: {snippet}", details=details)
    if status == 429 or status >= 500:
        return TransientNetworkError(f"HTTP {status}: {snippet}", status_code=status, details=details)
    return ValidationError(f"HTTP {status}: {snippet}", details=details)
