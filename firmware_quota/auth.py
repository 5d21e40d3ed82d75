"""Credential-encoding strategies and the fallback scan across them."""

import enum
import logging
from typing import Callable

from .client import RequestResult

lib_logger = logging.getLogger("firmware_quota")

TOKEN_PREFIX = "fw_api_"


class AuthMethod(enum.Enum):
    BEARER_FULL_KEY = "bearer-full-key"
    BEARER_TOKEN = "bearer-token"
    X_API_KEY = "x-api-key"
    AUTHORIZATION_RAW = "authorization-raw"


# Scan order when no preference is cached
AUTH_METHOD_ORDER = (
    AuthMethod.BEARER_FULL_KEY,
    AuthMethod.BEARER_TOKEN,
    AuthMethod.X_API_KEY,
    AuthMethod.AUTHORIZATION_RAW,
)


def extract_token(api_key: str) -> str:
    if api_key.startswith(TOKEN_PREFIX):
        return api_key[len(TOKEN_PREFIX):]
    return api_key


def build_auth_header(method: AuthMethod, api_key: str, token: str) -> tuple[str, str]:
    if method is AuthMethod.BEARER_TOKEN:
        return ("Authorization", f"Bearer {token}")
    if method is AuthMethod.X_API_KEY:
        return ("X-API-Key", api_key)
    if method is AuthMethod.AUTHORIZATION_RAW:
        return ("Authorization", api_key)
    return ("Authorization", f"Bearer {api_key}")


def is_http_success(status: int) -> bool:
    return 200 <= status < 300


def is_unauthorized(body: str) -> bool:
    return "unauthorized" in body.lower()


def is_auth_failure(result: RequestResult) -> bool:
    if result.http_status == 401:
        return True
    return is_unauthorized(result.body)


def is_success(result: RequestResult) -> bool:
    return (
        result.transport_ok
        and is_http_success(result.http_status)
        and not is_auth_failure(result)
    )


def _is_hard_failure(result: RequestResult) -> bool:
    """A failure that another credential encoding would not fix."""
    if not result.transport_ok:
        return True
    return not is_auth_failure(result) and not is_http_success(result.http_status)


def resolve(
    send: Callable[[tuple[str, str]], RequestResult],
    api_key: str,
    token: str,
    preferred: AuthMethod | None = None,
) -> tuple[RequestResult, AuthMethod | None]:
    """Try the preferred method, then the rest in fixed order.

    Returns the last result and the method that succeeded, or ``None`` when
    no method produced a successful, authorized response. Scanning stops at
    the first failure that is not auth-related so a server outage is not
    reported as a credential problem.
    """

    def attempt(method: AuthMethod) -> RequestResult:
        return send(build_auth_header(method, api_key, token))

    last = RequestResult()

    if preferred is not None:
        last = attempt(preferred)
        if is_success(last):
            return last, preferred
        if _is_hard_failure(last):
            return last, None
        lib_logger.info(f"Cached auth method {preferred.value} rejected, rescanning")

    for method in AUTH_METHOD_ORDER:
        if method is preferred:
            continue
        last = attempt(method)
        if is_success(last):
            return last, method
        if _is_hard_failure(last):
            break

    return last, None
