"""OAuth access-token refresh for providers with expiring credentials.

Refreshes are coalesced per provider key: while one is in flight, further
callers wait on it instead of hitting the token endpoint again. Refreshed
tokens are written onto the live config and, best effort, back to the
config file on disk.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

import httpx

from nimbus.config import Config, CredentialRecord, OAuthConfig, ProviderConfig, persist_provider_credential
from nimbus.exceptions import CredentialRefreshError
from nimbus.logging import get_logger

log = get_logger(__name__)

CredentialPersister = Callable[[str, CredentialRecord, str], Any]


def _persist_to_config_file(provider_key: str, record: CredentialRecord, api_key: str) -> Any:
    return persist_provider_credential(provider_key, record, api_key=api_key)


async def refresh_oauth_token(
    refresh_token: str,
    issuer: str,
    client_id: str,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
    provider_key: str = "",
) -> CredentialRecord:
    """Exchange a refresh token for a fresh access token.

    Raises:
        CredentialRefreshError: on a non-2xx answer, a transport failure,
            or a response without an access token
    """
    payload = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
    }
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.post(f"{issuer.rstrip('/')}/oauth/token", data=payload)
    except httpx.HTTPError as exc:
        raise CredentialRefreshError(provider_key, str(exc)) from exc

    if not resp.is_success:
        raise CredentialRefreshError(provider_key, f"token endpoint returned {resp.status_code}")

    try:
        data = resp.json()
        access_token = data["access_token"]
    except (ValueError, KeyError, TypeError) as exc:
        raise CredentialRefreshError(provider_key, "malformed token response") from exc

    return CredentialRecord(
        type="oauth",
        access_token=access_token,
        refresh_token=data.get("refresh_token") or refresh_token,
        expires_at=time.time() + int(data.get("expires_in") or 3600),
    )


class CredentialRefreshCoalescer:
    """Keeps OAuth credentials fresh with at most one refresh per key in flight."""

    def __init__(
        self,
        oauth: OAuthConfig | None = None,
        persist: CredentialPersister | None = _persist_to_config_file,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.oauth = oauth or OAuthConfig()
        self._persist = persist
        self._transport = transport
        self._clock = clock
        self._in_flight: dict[str, asyncio.Task[None]] = {}

    def in_flight(self, provider_key: str) -> bool:
        return provider_key in self._in_flight

    def needs_refresh(self, provider: ProviderConfig | None) -> bool:
        """True for an OAuth credential on a refreshable backend close to expiry."""
        if provider is None or provider.auth is None or provider.auth.type != "oauth":
            return False
        if self.oauth.refreshable_base_url not in (provider.base_url or ""):
            return False
        return provider.auth.expires_at <= self._clock() + self.oauth.refresh_margin_seconds

    async def ensure_fresh_credential(self, config: Config, provider_key: str | None = None) -> None:
        """Refresh the provider's credential if it is about to expire.

        Never raises for refresh problems: on failure the old credential
        stays in place.
        """
        key = provider_key or self.oauth.default_provider_key
        provider = config.providers.get(key)
        if not self.needs_refresh(provider):
            return

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(key, provider))
            self._in_flight[key] = task
        # Shielded so a cancelled waiter does not cancel the shared refresh.
        await asyncio.shield(task)

    async def _refresh(self, key: str, provider: ProviderConfig) -> None:
        auth = provider.auth
        try:
            try:
                record = await refresh_oauth_token(
                    auth.refresh_token,
                    issuer=self.oauth.issuer,
                    client_id=self.oauth.client_id,
                    timeout=self.oauth.timeout,
                    transport=self._transport,
                    provider_key=key,
                )
            except CredentialRefreshError as exc:
                log.warning("OAuth token refresh failed, keeping current credential", provider=key, error=str(exc))
                return

            provider.api_key = record.access_token
            auth.access_token = record.access_token
            auth.refresh_token = record.refresh_token
            auth.expires_at = record.expires_at
            log.info("OAuth access token refreshed", provider=key, expires_at=record.expires_at)

            if self._persist is not None:
                try:
                    await asyncio.to_thread(self._persist, key, auth, record.access_token)
                except Exception as exc:
                    log.warning("Could not persist refreshed credential", provider=key, error=str(exc))
        finally:
            self._in_flight.pop(key, None)

    async def close(self) -> None:
        """Wait for refreshes still in flight."""
        pending = list(self._in_flight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
