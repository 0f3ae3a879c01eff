"""Error types and failure classification for the outbox sync engine.

Every failure raised while processing an outbox item is mapped to one of four
classes by :func:`classify_error`.  The class decides whether the item is
retried and whether the tenant's calendar connection must be flagged invalid:

=============  ==========  ============================
Class          Retriable   Side effect
=============  ==========  ============================
auth_invalid   no          connection flagged invalid
not_found      no          none
rate_limited   yes         none
transient      yes         none
=============  ==========  ============================

Payload-schema violations are not classified here. The worker dead-letters
them before any provider call is made.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

import httpx

_MAX_ERROR_LENGTH = 500

# Google reports quota exhaustion as 403 with one of these error reasons.
_RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"})

# OAuth token endpoint codes that blame this deployment's client id or secret,
# not the tenant's refresh token.
OAUTH_CLIENT_ERROR_CODES = frozenset({"invalid_client", "unauthorized_client"})


class CalendarProviderError(RuntimeError):
    """Base error for calendar provider failures."""


class CalendarCredentialError(CalendarProviderError):
    """Raised when OAuth client credentials or the tenant refresh token are unusable."""


class CalendarTransportError(CalendarProviderError):
    """Raised when an HTTP request to Google fails before a response arrives."""


class CalendarTokenRefreshError(CalendarProviderError):
    """Raised when refresh-token exchange fails.

    ``error_code`` is the OAuth ``error`` field, e.g. ``invalid_grant``.
    """

    def __init__(
        self, message: str, *, status_code: int | None = None, error_code: str | None = None
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


class CalendarRequestError(CalendarProviderError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str, reason: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.reason = reason
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class ConnectionInvalidError(Exception):
    """Raised when a workspace has no usable calendar connection."""

    def __init__(self, workspace_id: object) -> None:
        self.workspace_id = workspace_id
        super().__init__(f"No valid Google Calendar connection for workspace {workspace_id}")


class PayloadValidationError(ValueError):
    """Raised when an outbox payload does not match its operation's schema."""


class ErrorClass(StrEnum):
    AUTH_INVALID = "auth_invalid"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"

    @property
    def retriable(self) -> bool:
        return self in (ErrorClass.RATE_LIMITED, ErrorClass.TRANSIENT)


@dataclass(frozen=True)
class Classification:
    """Result of classifying one failure."""

    error_class: ErrorClass
    message: str

    @property
    def retriable(self) -> bool:
        return self.error_class.retriable

    @property
    def invalidates_connection(self) -> bool:
        return self.error_class is ErrorClass.AUTH_INVALID


def _classify_status(status_code: int, reason: str | None) -> ErrorClass:
    if status_code == 401:
        return ErrorClass.AUTH_INVALID
    if status_code == 403:
        if reason in _RATE_LIMIT_REASONS:
            return ErrorClass.RATE_LIMITED
        return ErrorClass.AUTH_INVALID
    if status_code in (404, 410):
        return ErrorClass.NOT_FOUND
    if status_code == 429:
        return ErrorClass.RATE_LIMITED
    return ErrorClass.TRANSIENT


def _classify_message(message: str) -> ErrorClass:
    lowered = message.lower()
    if any(code in lowered for code in OAUTH_CLIENT_ERROR_CODES):
        return ErrorClass.TRANSIENT
    if "invalid_grant" in lowered or "unauthorized" in lowered:
        return ErrorClass.AUTH_INVALID
    if "rate limit" in lowered or "quota" in lowered:
        return ErrorClass.RATE_LIMITED
    if "not found" in lowered:
        return ErrorClass.NOT_FOUND
    return ErrorClass.TRANSIENT


def classify_error(exc: BaseException) -> Classification:
    """Map an exception raised by a handler onto an :class:`ErrorClass`."""
    message = sanitize_error_message(f"{type(exc).__name__}: {exc}")

    if isinstance(exc, ConnectionInvalidError | CalendarCredentialError):
        return Classification(ErrorClass.AUTH_INVALID, message)
    if isinstance(exc, CalendarRequestError):
        return Classification(_classify_status(exc.status_code, exc.reason), message)
    if isinstance(exc, CalendarTokenRefreshError):
        # Google answers a revoked or expired refresh token with 400 invalid_grant.
        # A rejected client id or secret is a deployment fault and leaves the
        # tenant's connection alone.
        code = exc.error_code
        if code == "invalid_grant" or (code is None and "invalid_grant" in str(exc)):
            return Classification(ErrorClass.AUTH_INVALID, message)
        return Classification(ErrorClass.TRANSIENT, message)
    if isinstance(exc, CalendarTransportError):
        return Classification(ErrorClass.TRANSIENT, message)
    if isinstance(exc, httpx.HTTPStatusError):
        return Classification(_classify_status(exc.response.status_code, None), message)
    if isinstance(exc, httpx.HTTPError | TimeoutError | OSError):
        return Classification(ErrorClass.TRANSIENT, message)
    return Classification(_classify_message(str(exc)), message)


def redact_credential_values(message: str) -> str:
    """Redact OAuth secrets from a message before it is logged or persisted."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\b(Bearer)\s+[A-Za-z0-9._\-]+", r"\1 [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    """Redact, collapse whitespace and truncate a message for ``last_error``."""
    return " ".join(redact_credential_values(message).split())[:_MAX_ERROR_LENGTH]
