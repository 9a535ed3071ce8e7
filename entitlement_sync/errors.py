"""Error taxonomy shared by every external-call boundary.

``classify_error`` maps exceptions, HTTP failures and error-shaped dicts onto
a small set of kinds; ``technical_message`` pulls a log-friendly message out
of the same values. Neither produces user-facing text.
"""

import asyncio
import json
import re
from enum import Enum
from typing import Any, Optional

import httpx
from google.auth import exceptions as auth_exceptions


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    INVALID_TOKEN = "invalid-token"
    NOT_FOUND = "not-found"
    PLATFORM_ERROR = "platform-error"
    CONFLICT = "conflict"
    GENERIC = "generic"


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.CONFLICT})

RETRY_BASE_SECONDS = 5.0
RETRY_MAX_SECONDS = 300.0

PERMISSION_STATUS_CODES = (401, 403)

# Purchase tokens travel in request paths; error text keeps only the route
_TOKEN_IN_PATH = re.compile(r"(/tokens/)[^/\s'\":?]+")


class EntitlementSyncError(Exception):
    """Base exception for entitlement sync errors."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.GENERIC, cause: Any = None):
        super().__init__(message)
        self.kind = kind
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class ConfigurationError(EntitlementSyncError):
    """Raised when configuration or credentials are invalid or missing."""

    def __init__(self, message: str):
        super().__init__(message, kind=ErrorKind.GENERIC)


class VerificationError(EntitlementSyncError):
    """Raised when the billing platform could not produce a verification result."""


class AcknowledgmentError(EntitlementSyncError):
    """Raised when the billing platform rejected or never answered an acknowledge call."""


class StoreConflictError(EntitlementSyncError):
    """Raised when a conditional write finds the document changed since it was read."""

    def __init__(self, message: str, cause: Any = None):
        super().__init__(message, kind=ErrorKind.CONFLICT, cause=cause)


_NETWORK_CODES = (
    "network-request-failed",
    "err_network",
    "econnrefused",
    "econnreset",
    "enotfound",
    "ehostunreach",
    "enetunreach",
    "eai_again",
    "unavailable",
    "offline",
)

_TIMEOUT_CODES = (
    "deadline-exceeded",
    "deadline_exceeded",
    "econnaborted",
    "etimedout",
    "timeout",
    "time-out",
)

_NETWORK_PATTERNS = [
    re.compile(p)
    for p in (
        r"network",
        r"offline",
        r"could(?:n't| not) connect",
        r"unable to connect",
        r"connection\s+(?:failed|lost|error|refused|reset)",
        r"host unreachable",
        r"name resolution",
        r"socket hang up",
        r"rate limit",
        r"temporarily unavailable",
    )
]

_TIMEOUT_PATTERNS = [
    re.compile(p)
    for p in (r"timed out", r"timeout", r"time-out", r"deadline exceeded", r"took too long")
]

_INVALID_TOKEN_PATTERNS = [
    re.compile(p) for p in (r"invalid (?:purchase )?token", r"purchasetoken", r"invalid value")
]


def status_code_of(error: Any) -> Optional[int]:
    """HTTP-ish status code carried by an error value, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code

    response = _get(error, "response")
    for candidate in (_get(response, "status_code"), _get(response, "status")):
        if isinstance(candidate, int):
            return candidate

    for attr in ("status_code", "status", "code"):
        value = _get(error, attr)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def kind_for_status(status_code: int) -> ErrorKind:
    """Map an HTTP status returned by the billing platform onto the taxonomy."""
    if status_code in (404, 410):
        return ErrorKind.NOT_FOUND
    if status_code == 400:
        return ErrorKind.INVALID_TOKEN
    if status_code == 409:
        return ErrorKind.CONFLICT
    if status_code in (408, 504):
        return ErrorKind.TIMEOUT
    if status_code == 429 or status_code >= 500:
        return ErrorKind.NETWORK
    if status_code >= 400:
        return ErrorKind.PLATFORM_ERROR
    return ErrorKind.GENERIC


def is_permission_error(error: Any) -> bool:
    """Whether the platform refused the service account (401/403)."""
    if isinstance(error, auth_exceptions.RefreshError):
        return True
    return status_code_of(error) in PERMISSION_STATUS_CODES


def classify_error(error: Any) -> ErrorKind:
    """Classify an arbitrary failure value."""
    if isinstance(error, EntitlementSyncError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(error, (httpx.TransportError, ConnectionError, auth_exceptions.TransportError)):
        return ErrorKind.NETWORK
    if isinstance(error, auth_exceptions.GoogleAuthError):
        return ErrorKind.PLATFORM_ERROR

    status_code = status_code_of(error)
    if status_code is not None and status_code >= 400:
        return kind_for_status(status_code)

    combined = " ".join(_collect_candidates(error)).lower()
    if not combined:
        return ErrorKind.GENERIC
    if any(code in combined for code in _TIMEOUT_CODES) or _matches(combined, _TIMEOUT_PATTERNS):
        return ErrorKind.TIMEOUT
    if any(code in combined for code in _NETWORK_CODES) or _matches(combined, _NETWORK_PATTERNS):
        return ErrorKind.NETWORK
    if _matches(combined, _INVALID_TOKEN_PATTERNS):
        return ErrorKind.INVALID_TOKEN
    return ErrorKind.GENERIC


def technical_message(error: Any) -> Optional[str]:
    """First meaningful message in an error value, for logs."""
    candidates = _collect_candidates(error)
    if candidates:
        return candidates[0]

    if error is not None and not isinstance(error, (str, int, float, bool)):
        try:
            serialized = json.dumps(error, default=str)
        except (TypeError, ValueError):
            return None
        if len(serialized) > 2:
            return _TOKEN_IN_PATH.sub(r"\1...", serialized)[:400]
    return None


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


def retry_delay_seconds(attempt: int) -> float:
    """Capped exponential backoff for retryable failures (attempt starts at 1)."""
    attempt = attempt if attempt > 0 else 1
    return min(RETRY_BASE_SECONDS * 2 ** (attempt - 1), RETRY_MAX_SECONDS)


def is_already_acknowledged_error(error: Any) -> bool:
    """Whether an acknowledge failure means the purchase was acknowledged before."""
    if status_code_of(error) == 409:
        return True
    combined = " ".join(_collect_candidates(error)).lower()
    return "already acknowledged" in combined or "alreadyacknowledged" in combined


def _get(value: Any, key: str) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get(key)
    return getattr(value, key, None)


def _string(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        stripped = _TOKEN_IN_PATH.sub(r"\1...", value.strip())
        return stripped or None
    return None


def _collect_candidates(error: Any) -> list[str]:
    candidates: list[str] = []

    def push(value: Any) -> None:
        text = _string(value)
        if text:
            candidates.append(text)

    def push_details(value: Any) -> None:
        if isinstance(value, dict):
            push(value.get("message"))
            push(value.get("code"))
            push(value.get("reason"))
            push(value.get("status"))

    def push_response(response: Any) -> None:
        if response is None:
            return
        push(_get(response, "status_code") or _get(response, "status"))
        push(_get(response, "reason_phrase") or _get(response, "statusText"))
        body = _response_body(response)
        if isinstance(body, dict):
            inner = body.get("error")
            if isinstance(inner, dict):
                push_details(inner)
            else:
                push(inner)
            push(body.get("message"))

    if isinstance(error, str):
        push(error)
        return candidates

    if isinstance(error, BaseException):
        push(str(error))
        push(type(error).__name__)
        push(_get(error, "code"))
        push_response(_get(error, "response"))
        cause = error.__cause__ or _get(error, "cause")
        if isinstance(cause, BaseException):
            push(str(cause))
            push(_get(cause, "code"))
        elif isinstance(cause, dict):
            push(cause.get("message"))
            push(cause.get("code"))
            push_details(cause.get("details"))
        return candidates

    if isinstance(error, dict):
        push(error.get("message"))
        push(error.get("code"))
        push(error.get("status"))
        push(error.get("statusText"))
        push(error.get("reason"))
        inner = error.get("error")
        if isinstance(inner, dict):
            push_details(inner)
        else:
            push(inner)
        push_details(error.get("details"))
        push_response(error.get("response"))
    return candidates


def _response_body(response: Any) -> Any:
    if isinstance(response, httpx.Response):
        try:
            return response.json()
        except (ValueError, httpx.ResponseNotRead):
            return None
    return _get(response, "data")


def _matches(value: str, patterns: list[re.Pattern]) -> bool:
    return any(pattern.search(value) for pattern in patterns)
