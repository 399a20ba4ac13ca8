"""Error classification for remote API calls.

Every failure leaving the gateway is an ``ApiError`` whose ``kind`` was
computed exactly once, here, from the transport error. Callers switch on
the kind; nothing downstream inspects nested causes.
"""

from __future__ import annotations

import json
import re
from enum import Enum

import httpx

from setupauth.exceptions import ReauthenticationRequired, SetupAuthError


class ErrorKind(Enum):
    """Categories of remote failures with different handling strategies."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    ALREADY_EXISTS = "already_exists"
    INVALID_ARGUMENT = "invalid_argument"
    RATE_LIMITED = "rate_limited"
    STALE_TOKEN = "stale_token"
    REAUTH_REQUIRED = "reauth_required"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"

    @property
    def transient(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.UNAVAILABLE)


class ApiError(Exception):
    """Raised when a remote call fails.

    Wraps the underlying transport error with a readable message and
    preserves the original exception for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        status_code: int | None = None,
        operation: str = "",
        original: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.operation = operation
        self.original = original

    def __repr__(self) -> str:
        return (
            f"ApiError(kind={self.kind.value!r}, status={self.status_code!r}, "
            f"operation={self.operation!r}, message={str(self)!r})"
        )


# Google's canonical error status strings.
_STATUS_KINDS: dict[str, ErrorKind] = {
    "NOT_FOUND": ErrorKind.NOT_FOUND,
    "PERMISSION_DENIED": ErrorKind.PERMISSION_DENIED,
    "ALREADY_EXISTS": ErrorKind.ALREADY_EXISTS,
    "INVALID_ARGUMENT": ErrorKind.INVALID_ARGUMENT,
    "RESOURCE_EXHAUSTED": ErrorKind.RATE_LIMITED,
    "ABORTED": ErrorKind.STALE_TOKEN,
    "UNAUTHENTICATED": ErrorKind.REAUTH_REQUIRED,
    "UNAVAILABLE": ErrorKind.UNAVAILABLE,
    "INTERNAL": ErrorKind.UNAVAILABLE,
    "DEADLINE_EXCEEDED": ErrorKind.UNAVAILABLE,
}

# Message patterns; order matters (first match wins).
_PATTERNS: list[tuple[re.Pattern, ErrorKind]] = [
    (
        re.compile(r"invalid_rapt|reauth", re.IGNORECASE),
        ErrorKind.REAUTH_REQUIRED,
    ),
    (
        re.compile(r"concurrent policy changes|etag", re.IGNORECASE),
        ErrorKind.STALE_TOKEN,
    ),
    (
        re.compile(r"already exists|already enabled", re.IGNORECASE),
        ErrorKind.ALREADY_EXISTS,
    ),
    (
        re.compile(r"permission denied|does not have permission|forbidden", re.IGNORECASE),
        ErrorKind.PERMISSION_DENIED,
    ),
    (
        re.compile(r"not found", re.IGNORECASE),
        ErrorKind.NOT_FOUND,
    ),
    (
        re.compile(r"rate limit|too many requests|quota exceeded", re.IGNORECASE),
        ErrorKind.RATE_LIMITED,
    ),
]


def classify(error: BaseException) -> ErrorKind:
    """Classify one transport-level error into an ``ErrorKind``."""
    if isinstance(error, ApiError):
        return error.kind
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.UNAVAILABLE
    if isinstance(error, httpx.HTTPStatusError):
        return classify_response(error.response.status_code, _safe_body(error.response))
    return _classify_text(str(error))


def classify_response(status_code: int, body: str) -> ErrorKind:
    """Classify an HTTP error from its status code and raw body."""
    payload = _parse_body(body)
    err = payload.get("error") if isinstance(payload, dict) else None

    # OAuth token endpoint errors: {"error": "invalid_grant", "error_subtype": ...}
    if isinstance(err, str):
        subtype = str(payload.get("error_subtype", ""))
        description = str(payload.get("error_description", ""))
        if subtype == "invalid_rapt" or (
            err == "invalid_grant" and "reauth" in description.lower()
        ):
            return ErrorKind.REAUTH_REQUIRED
        if err in ("invalid_grant", "invalid_token"):
            return ErrorKind.REAUTH_REQUIRED

    if isinstance(err, dict):
        status = str(err.get("status", "")).upper()
        message = str(err.get("message", ""))
        if status == "FAILED_PRECONDITION" and "etag" in message.lower():
            return ErrorKind.STALE_TOKEN
        if status in _STATUS_KINDS:
            return _STATUS_KINDS[status]
        kind = _classify_text(message)
        if kind is not ErrorKind.UNKNOWN:
            return kind

    if status_code == 401:
        return ErrorKind.REAUTH_REQUIRED
    if status_code == 403:
        return ErrorKind.PERMISSION_DENIED
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 409:
        return ErrorKind.ALREADY_EXISTS
    if status_code == 412:
        return ErrorKind.STALE_TOKEN
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code >= 500:
        return ErrorKind.UNAVAILABLE
    if status_code == 400:
        return ErrorKind.INVALID_ARGUMENT
    return ErrorKind.UNKNOWN


def error_message(body: str, limit: int = 300) -> str:
    """Extract a short human message from an error body."""
    payload = _parse_body(body)
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])[:limit]
        if isinstance(err, str):
            description = payload.get("error_description")
            return f"{err}: {description}"[:limit] if description else err[:limit]
    if "<!DOCTYPE html>" in body or "<html" in body.lower():
        return "HTML error page returned"
    return body.strip()[:limit]


def _classify_text(text: str) -> ErrorKind:
    for pattern, kind in _PATTERNS:
        if pattern.search(text or ""):
            return kind
    return ErrorKind.UNKNOWN


def _parse_body(body: str) -> object:
    if not body:
        return {}
    try:
        return json.loads(body)
    except (json.JSONDecodeError, TypeError, ValueError):
        return {}


def _safe_body(response: httpx.Response) -> str:
    try:
        return response.text
    except Exception:
        return ""


def translate(error: ApiError) -> SetupAuthError | None:
    """Map kinds with a fixed operator remedy onto the exception tree."""
    if error.kind is ErrorKind.REAUTH_REQUIRED:
        return ReauthenticationRequired(
            f"Credentials were rejected while calling "
            f"{error.operation or 'a Google API'}: {error}"
        )
    return None
