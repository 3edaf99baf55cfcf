"""Session token exchange for the hosted chat endpoint.

The chat endpoint accepts short-lived session tokens only. A long-lived
credential (a GitHub OAuth or personal access token) is exchanged for one on
demand, cached until shortly before it expires, and refreshed by a single
shared request no matter how many sessions ask for it at once.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol

import httpx

from .errors import AIServiceError, NotAuthenticatedError

__all__ = [
    "DEFAULT_EXCHANGE_URL",
    "CredentialSource",
    "EnvironmentCredentialSource",
    "SettingsCredentialSource",
    "SessionToken",
    "SessionTokenManager",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_EXCHANGE_URL = "https://api.github.com/copilot_internal/v2/token"
CREDENTIAL_ENV_VAR = "INKPILOT_GITHUB_TOKEN"


class CredentialSource(Protocol):
    """Supplies the long-lived credential and accepts invalidation."""

    def get_credential(self) -> str | None:
        ...

    def invalidate(self) -> None:
        ...


class EnvironmentCredentialSource:
    """Reads the credential from an environment variable."""

    def __init__(self, env_var: str = CREDENTIAL_ENV_VAR, *, environ: Mapping[str, str] | None = None) -> None:
        self._env_var = env_var
        self._environ = environ if environ is not None else os.environ
        self._invalidated = False

    def get_credential(self) -> str | None:
        if self._invalidated:
            return None
        value = (self._environ.get(self._env_var) or "").strip()
        return value or None

    def invalidate(self) -> None:
        # The environment cannot be rewritten from here; refuse the value until restart.
        self._invalidated = True


class SettingsCredentialSource:
    """Reads the credential held (encrypted) by :class:`SettingsStore`."""

    def __init__(self, store: Any) -> None:
        self._store = store

    def get_credential(self) -> str | None:
        settings = self._store.load()
        value = (getattr(settings, "github_token", "") or "").strip()
        return value or None

    def invalidate(self) -> None:
        if not self._store.clear_secret("github_token"):
            return
        LOGGER.info("Cleared stored GitHub credential after it was rejected")


@dataclass(slots=True)
class SessionToken:
    """Short-lived token returned by the exchange endpoint."""

    token: str
    expires_at: float
    refresh_in: float | None = None
    endpoints: Mapping[str, str] = field(default_factory=dict)

    def is_fresh(self, now: float, safety_margin: float) -> bool:
        return self.expires_at - now > safety_margin

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SessionToken":
        token = payload.get("token")
        if not isinstance(token, str) or not token:
            raise AIServiceError("Token exchange response did not include a token")
        try:
            expires_at = float(payload.get("expires_at") or 0)
        except (TypeError, ValueError) as exc:
            raise AIServiceError("Token exchange response had an invalid expiry") from exc
        refresh_in = payload.get("refresh_in")
        endpoints = payload.get("endpoints")
        return cls(
            token=token,
            expires_at=expires_at,
            refresh_in=float(refresh_in) if isinstance(refresh_in, (int, float)) else None,
            endpoints=dict(endpoints) if isinstance(endpoints, Mapping) else {},
        )


class SessionTokenManager:
    """Caches a session token and coalesces concurrent refreshes.

    One manager is shared by every session of a process. ``get_session_token``
    returns the cached token while it has more than ``safety_margin`` seconds
    left; otherwise all concurrent callers await the same exchange task.
    """

    def __init__(
        self,
        credentials: CredentialSource,
        *,
        exchange_url: str = DEFAULT_EXCHANGE_URL,
        http_client: httpx.AsyncClient | None = None,
        headers: Mapping[str, str] | None = None,
        safety_margin: float = 60.0,
        request_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._exchange_url = exchange_url
        self._http_client = http_client
        self._owns_client = http_client is None
        self._headers = dict(headers or {})
        self._safety_margin = max(0.0, float(safety_margin))
        self._request_timeout = request_timeout
        self._clock = clock
        self._cached: SessionToken | None = None
        self._refresh_task: asyncio.Task[SessionToken] | None = None

    @property
    def cached_token(self) -> SessionToken | None:
        return self._cached

    async def get_session_token(self) -> str:
        cached = self._cached
        if cached is not None and cached.is_fresh(self._clock(), self._safety_margin):
            return cached.token
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._refresh())
            self._refresh_task = task
        # Shielded so one caller's cancellation does not abort the shared exchange.
        token = await asyncio.shield(task)
        return token.token

    def reset(self) -> None:
        """Forget the cached token; the next call performs a fresh exchange."""

        self._cached = None

    def invalidate(self) -> None:
        """Reset the cache and invalidate the long-lived credential."""

        self.reset()
        try:
            self._credentials.invalidate()
        except Exception:
            LOGGER.warning("Credential source failed to invalidate", exc_info=True)

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _refresh(self) -> SessionToken:
        try:
            credential = self._credentials.get_credential()
            if not credential:
                raise NotAuthenticatedError("No GitHub credential is configured")
            token = await self._exchange(credential)
            self._cached = token
            LOGGER.debug("Obtained session token expiring at %s", token.expires_at)
            return token
        finally:
            self._refresh_task = None

    async def _exchange(self, credential: str) -> SessionToken:
        headers = {"Accept": "application/json", **self._headers, "Authorization": f"token {credential}"}
        try:
            response = await self._client().get(self._exchange_url, headers=headers)
        except httpx.HTTPError as exc:
            raise AIServiceError(f"Token exchange failed: {exc}") from exc
        if response.status_code in (401, 403):
            LOGGER.warning("Token exchange rejected the credential (status %s)", response.status_code)
            self.invalidate()
            raise NotAuthenticatedError(response.text[:500], status_code=response.status_code)
        if response.status_code >= 400:
            raise AIServiceError(
                f"Token exchange failed with status {response.status_code}",
                status_code=response.status_code,
                detail=response.text[:2000],
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AIServiceError("Token exchange returned invalid JSON") from exc
        if not isinstance(payload, Mapping):
            raise AIServiceError("Token exchange returned an unexpected payload")
        return SessionToken.from_payload(payload)

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._request_timeout)
            self._owns_client = True
        return self._http_client
