"""Failure kinds of a refresh attempt."""

from .auth import is_auth_failure, is_http_success
from .client import RequestResult
from .timeutil import truncate_for_display

HTTP_BODY_DISPLAY_LEN = 200


class QuotaError(Exception):
    """Base class; ``str(err)`` is the text shown to the user."""


class CredentialMissing(QuotaError):
    def __init__(self, message: str = "Missing FIRMWARE_API_KEY"):
        super().__init__(message)


class TransportError(QuotaError):
    def __init__(self, kind: str, detail: str = ""):
        self.kind = kind
        self.detail = detail
        message = f"Request failed: {kind}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class HttpError(QuotaError):
    def __init__(self, status: int, body: str = ""):
        self.status = status
        message = f"HTTP error: {status}"
        if body:
            message += f": {truncate_for_display(body, HTTP_BODY_DISPLAY_LEN)}"
        super().__init__(message)


class AuthFailure(QuotaError):
    def __init__(self, status: int):
        self.status = status
        super().__init__(f"Unauthorized after trying all auth methods (HTTP {status})")


class ParseError(QuotaError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Parse error: {reason}")


def classify_result(result: RequestResult) -> QuotaError | None:
    """Map a finished request to its failure kind, or ``None`` if the body is usable."""
    if not result.transport_ok:
        return TransportError(result.transport_error, result.transport_error_detail)
    if is_auth_failure(result):
        return AuthFailure(result.http_status)
    if not is_http_success(result.http_status):
        return HttpError(result.http_status, result.body)
    return None
