"""Google Calendar provider adapter.

Wraps the Calendar v3 REST API behind :class:`CalendarProvider` with three
operations the sync handlers need: create, update and delete an event.  Access
tokens are obtained from each workspace's refresh token and cached until
shortly before expiry.  Every HTTP call goes through one shared
``httpx.AsyncClient`` whose timeout bounds each provider call.

Non-2xx responses are raised as :class:`CalendarRequestError` carrying the
status code and Google's error ``reason``; classification into retry classes
happens in :mod:`calsync.sync.errors`.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import quote
from uuid import UUID

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from calsync.core.clock import Clock, SystemClock
from calsync.sync.errors import (
    OAUTH_CLIENT_ERROR_CODES,
    CalendarCredentialError,
    CalendarProviderError,
    CalendarRequestError,
    CalendarTokenRefreshError,
    CalendarTransportError,
)
from calsync.sync.models import CalendarEventFields, Connection

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

RATE_LIMIT_RETRY_STATUS_CODES = frozenset({429, 503})
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_TOKEN_TTL_SECONDS = 3600
# Tokens are treated as expired this long before Google says they are.
TOKEN_EXPIRY_MARGIN_SECONDS = 60
_MAX_ERROR_CHARS = 200


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials plus the workspace refresh token."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _strip(cls, value: str, info: ValidationInfo) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError(f"{info.field_name} is blank")
        return stripped


@dataclass(frozen=True)
class _AccessToken:
    value: str
    expires_at: datetime

    def valid(self, now: datetime) -> bool:
        return now < self.expires_at


def _token_ttl(expires_in: Any) -> int:
    if isinstance(expires_in, bool) or not isinstance(expires_in, int | float) or expires_in <= 0:
        return DEFAULT_TOKEN_TTL_SECONDS
    return max(int(expires_in) - TOKEN_EXPIRY_MARGIN_SECONDS, 30)


class _GoogleOAuthClient:
    """Exchanges the refresh token for access tokens and caches the current one."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
        clock: Clock | None = None,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._clock = clock or SystemClock()
        self._token: _AccessToken | None = None
        self._lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        async with self._lock:
            if force_refresh or self._token is None or not self._token.valid(self._clock.now()):
                self._token = await self._exchange()
            return self._token.value

    async def _exchange(self) -> _AccessToken:
        form = {
            "grant_type": "refresh_token",
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
            "refresh_token": self._credentials.refresh_token,
        }
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL, data=form, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(f"OAuth token refresh request failed: {exc}") from exc

        if not response.is_success:
            message, error_code = _parse_google_error(response)
            if error_code in OAUTH_CLIENT_ERROR_CODES:
                logger.error(
                    "Google rejected the OAuth client (%s); check provider.client_id and "
                    "provider.client_secret",
                    error_code,
                )
            raise CalendarTokenRefreshError(
                f"OAuth token refresh rejected with HTTP {response.status_code}: {message}",
                status_code=response.status_code,
                error_code=error_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError("OAuth token response is not JSON") from exc
        value = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(value, str) or not value.strip():
            raise CalendarTokenRefreshError("OAuth token response has no access_token")

        ttl = _token_ttl(body.get("expires_in"))
        return _AccessToken(value.strip(), self._clock.now() + timedelta(seconds=ttl))


def _squash(text: str) -> str:
    return " ".join(text.split())[:_MAX_ERROR_CHARS]


def _parse_google_error(response: httpx.Response) -> tuple[str, str | None]:
    """Return ``(message, reason)`` from a Google error response.

    Google puts the human message in ``error.message`` and the machine reason
    in ``error.errors[0].reason``; the token endpoint uses a bare ``error``
    string instead, which is returned as both message and reason.
    """
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None

    message: str | None = None
    reason: str | None = None
    if isinstance(error, dict):
        if isinstance(error.get("message"), str) and error["message"].strip():
            message = error["message"]
        for entry in error.get("errors") or []:
            if isinstance(entry, dict) and isinstance(entry.get("reason"), str):
                reason = entry["reason"]
                break
    elif isinstance(error, str) and error.strip():
        message = error
        reason = error.strip()

    if message is None:
        message = response.text.strip() or f"HTTP {response.status_code} with empty body"
    return _squash(message), reason


def _google_rfc3339(value: datetime) -> str:
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")


def build_google_event_body(fields: CalendarEventFields) -> dict[str, Any]:
    """Translate event fields into a Google Calendar API event resource."""
    body: dict[str, Any] = {"summary": fields.title}
    if fields.description is not None:
        body["description"] = fields.description
    if fields.location is not None:
        body["location"] = fields.location
    if fields.color_id is not None:
        body["colorId"] = fields.color_id

    if fields.is_all_day:
        start_date = fields.start.date()
        end_date = fields.end.date()
        # Google treats the all-day end date as exclusive.
        if end_date <= start_date:
            end_date = start_date + timedelta(days=1)
        body["start"] = {"date": start_date.isoformat()}
        body["end"] = {"date": end_date.isoformat()}
    else:
        body["start"] = {"dateTime": _google_rfc3339(fields.start)}
        body["end"] = {"dateTime": _google_rfc3339(fields.end)}

    if fields.recurrence:
        body["recurrence"] = list(fields.recurrence)
    return body


class CalendarProvider(abc.ABC):
    """Abstract interface for the external calendar the outbox syncs to."""

    @property
    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    async def create_event(self, *, calendar_id: str, fields: CalendarEventFields) -> str:
        """Create an event and return its external id."""

    @abc.abstractmethod
    async def update_event(
        self, *, calendar_id: str, event_id: str, fields: CalendarEventFields
    ) -> str:
        """Replace an existing event and return its external id."""

    @abc.abstractmethod
    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        """Delete an event. A missing event raises CalendarRequestError(404/410)."""

    async def shutdown(self) -> None:
        return None


class GoogleCalendarProvider(CalendarProvider):
    """Google provider with OAuth refresh-token and authenticated request helpers."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient | None = None,
        *,
        rate_limit_retries: int = 0,
        timeout_s: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Clock | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._oauth = _GoogleOAuthClient(credentials, self._http_client, clock)
        self._rate_limit_retries = rate_limit_retries

    @property
    def name(self) -> str:
        return "google"

    async def create_event(self, *, calendar_id: str, fields: CalendarEventFields) -> str:
        payload = await self._request_google_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            json_body=build_google_event_body(fields),
        )
        return _require_event_id(payload)

    async def update_event(
        self, *, calendar_id: str, event_id: str, fields: CalendarEventFields
    ) -> str:
        payload = await self._request_google_json(
            "PUT",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            json_body=build_google_event_body(fields),
        )
        return _require_event_id(payload, fallback=event_id)

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        await self._request_google_json(
            "DELETE",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
        )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._send(method, f"{GOOGLE_CALENDAR_API_BASE_URL}{path}", json_body)

        if not response.is_success:
            message, reason = _parse_google_error(response)
            raise CalendarRequestError(
                status_code=response.status_code, message=message, reason=reason
            )
        if response.status_code == 204 or not response.content:
            return {}

        try:
            body = response.json()
        except ValueError as exc:
            raise CalendarProviderError("Calendar API success response is not JSON") from exc
        if not isinstance(body, dict):
            raise CalendarProviderError("Calendar API success response is not a JSON object")
        return body

    async def _send(
        self, method: str, url: str, json_body: dict[str, Any] | None
    ) -> httpx.Response:
        """One logical call: a forced token refresh on 401, then optional throttle retries."""
        response = await self._request_once(method, url, json_body)
        if response.status_code == 401:
            response = await self._request_once(method, url, json_body, force_refresh=True)

        # Off by default; the outbox schedules its own backoff.
        for retry in range(self._rate_limit_retries):
            if response.status_code not in RATE_LIMIT_RETRY_STATUS_CODES:
                break
            delay = _throttle_delay(response, retry)
            logger.warning(
                "Calendar API throttled with HTTP %d; retry %d/%d in %.1fs",
                response.status_code,
                retry + 1,
                self._rate_limit_retries,
                delay,
            )
            await asyncio.sleep(delay)
            response = await self._request_once(method, url, json_body)
        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        json_body: dict[str, Any] | None,
        *,
        force_refresh: bool = False,
    ) -> httpx.Response:
        token = await self._oauth.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method, url, json=json_body, headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.HTTPError as exc:
            raise CalendarTransportError(f"Google Calendar request failed: {exc!r}") from exc


def _throttle_delay(response: httpx.Response, retry: int) -> float:
    retry_after = response.headers.get("Retry-After") if response.status_code == 429 else None
    if retry_after is not None:
        try:
            return float(retry_after)
        except ValueError:
            pass
    return RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)


def _require_event_id(payload: dict[str, Any], fallback: str | None = None) -> str:
    event_id = payload.get("id")
    if isinstance(event_id, str) and event_id.strip():
        return event_id
    if fallback is not None:
        return fallback
    raise CalendarProviderError("Google Calendar response is missing an event id")


# ---------------------------------------------------------------------------
# Per-workspace provider construction
# ---------------------------------------------------------------------------


class CredentialDecryptor(Protocol):
    """Turns a stored ``refresh_token_encrypted`` value into a usable token."""

    def decrypt(self, ciphertext: str) -> str: ...


class PassthroughDecryptor:
    """Decryptor for deployments that store refresh tokens unencrypted."""

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext


class ProviderFactory(abc.ABC):
    """Builds the provider used for one workspace's connection."""

    @abc.abstractmethod
    def for_connection(self, connection: Connection) -> CalendarProvider: ...

    async def close(self) -> None:
        return None


class GoogleProviderFactory(ProviderFactory):
    """Caches one :class:`GoogleCalendarProvider` per workspace refresh token.

    All providers share a single ``httpx.AsyncClient`` owned by the factory.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        decryptor: CredentialDecryptor | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_SECONDS,
        rate_limit_retries: int = 0,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._client_id = client_id
        self._clock = clock
        self._client_secret = client_secret
        self._decryptor = decryptor or PassthroughDecryptor()
        self._rate_limit_retries = rate_limit_retries
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._providers: dict[tuple[UUID, str], GoogleCalendarProvider] = {}

    def for_connection(self, connection: Connection) -> CalendarProvider:
        if not connection.refresh_token_encrypted:
            raise CalendarCredentialError(
                f"Workspace {connection.workspace_id} has no stored refresh token"
            )
        key = (connection.workspace_id, connection.refresh_token_encrypted)
        provider = self._providers.get(key)
        if provider is None:
            try:
                credentials = GoogleOAuthCredentials(
                    client_id=self._client_id,
                    client_secret=self._client_secret,
                    refresh_token=self._decryptor.decrypt(connection.refresh_token_encrypted),
                )
            except ValueError as exc:
                raise CalendarCredentialError(
                    f"Unusable Google credentials for workspace {connection.workspace_id}"
                ) from exc
            # A rotated token replaces the cached provider for that workspace.
            for stale in [k for k in self._providers if k[0] == connection.workspace_id]:
                del self._providers[stale]
            provider = GoogleCalendarProvider(
                credentials,
                self._http_client,
                rate_limit_retries=self._rate_limit_retries,
                clock=self._clock,
            )
            self._providers[key] = provider
        return provider

    async def close(self) -> None:
        self._providers.clear()
        if self._owns_http_client:
            await self._http_client.aclose()
