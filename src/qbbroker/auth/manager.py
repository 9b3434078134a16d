"""
Token manager — the only component that talks to Intuit's token endpoint.

Serves valid access tokens from a short-lived in-memory cache, refreshes them
shortly before expiry, and persists every issued or rotated token through the
credential store.

Intuit may rotate the refresh token on every refresh and invalidates the old
one when it does, so two independent refreshes of the same token cannot both
succeed. Refresh is therefore single-flight per manager instance.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any
from urllib.parse import urlencode

import httpx

from qbbroker.auth.store import (
    CompanyInfo,
    CredentialRecord,
    CredentialStore,
    expires_at_from,
    mask_token,
)
from qbbroker.config import BrokerConfig
from qbbroker.errors import (
    AuthenticationRequiredError,
    BrokerError,
    ReauthorizationRequiredError,
    StorageError,
    TokenExchangeError,
    TokenRefreshError,
    classify_token_error,
)

logger = logging.getLogger("qbbroker.auth.manager")

AUTHORIZATION_URL = "https://appcenter.intuit.com/connect/oauth2"
TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"
ACCOUNTING_SCOPE = "com.intuit.quickbooks.accounting"
DEFAULT_COMPANY_NAME = "QuickBooks Company"

RefreshListener = Callable[[CredentialRecord], None]


class TokenManager:
    """Caches, refreshes and persists QuickBooks OAuth2 tokens.

    Usage::

        manager = TokenManager(BrokerConfig.load())
        url = manager.generate_authorization_url(state, redirect_uri)
        # ... user authorizes, listener returns code + realm id ...
        await manager.exchange_code(code, realm_id, redirect_uri=redirect_uri)

        token = await manager.get_access_token("Acme Corp")
    """

    def __init__(
        self,
        config: BrokerConfig,
        store: CredentialStore | None = None,
    ) -> None:
        self.config = config
        self.store = store or CredentialStore(
            config.storage_dir,
            config.environment,
            encrypt=config.encrypt_at_rest,
        )
        self._http_client: httpx.AsyncClient | None = None
        self._cache: CredentialRecord | None = None
        self._cache_key: str | None = None
        self._cache_expiry = 0
        self._refresh_task: asyncio.Task[CredentialRecord] | None = None
        self._refresh_realm: str | None = None
        self._refresh_listeners: list[RefreshListener] = []

    @property
    def _buffer_ms(self) -> int:
        return self.config.refresh_buffer_seconds * 1000

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.network_timeout,
                headers={"Accept": "application/json"},
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def add_refresh_listener(self, listener: RefreshListener) -> None:
        """Register a callback invoked with each freshly refreshed record."""
        self._refresh_listeners.append(listener)

    # ------------------------------------------------------------------
    # Authorization code flow
    # ------------------------------------------------------------------

    def generate_authorization_url(self, state: str, redirect_uri: str) -> str:
        """Build the Intuit consent URL for ``state`` and ``redirect_uri``."""
        self.config.require_credentials()
        params = {
            "client_id": self.config.client_id,
            "response_type": "code",
            "scope": ACCOUNTING_SCOPE,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"{AUTHORIZATION_URL}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        realm_id: str,
        *,
        redirect_uri: str,
        company_name: str | None = None,
    ) -> CredentialRecord:
        """Exchange an authorization code for the tenant's first token pair."""
        self.config.require_credentials()
        logger.info("Exchanging authorization code for realm %s", realm_id)

        data = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            operation="authorization_code",
        )

        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not access_token or not refresh_token:
            raise TokenExchangeError(
                "Incomplete token payload returned from QuickBooks",
                metadata={"realm_id": realm_id},
            )

        existing = self.store.load(realm_id)
        record = CredentialRecord(
            realm_id=realm_id,
            company_name=company_name
            or (existing.company_name if existing and existing.realm_id == realm_id else "")
            or DEFAULT_COMPANY_NAME,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at_from(data.get("expires_in", 3600)),
            environment=self.config.environment,
        )
        record = self.store.save(record)
        self._clear_cache()

        logger.info(
            "Stored %s tokens for realm %s (access token %s)",
            self.config.environment.value, realm_id, mask_token(record.access_token),
        )
        return record

    def import_refresh_token(
        self,
        refresh_token: str,
        realm_id: str,
        company_name: str | None = None,
    ) -> CredentialRecord:
        """Seed a tenant from an existing refresh token (headless setups).

        The access token is left empty so the first read forces a refresh.
        """
        record = CredentialRecord(
            realm_id=realm_id,
            company_name=company_name or DEFAULT_COMPANY_NAME,
            access_token="",
            refresh_token=refresh_token,
            expires_at=0,
            environment=self.config.environment,
        )
        record = self.store.save(record)
        self._clear_cache()
        logger.info("Imported refresh token for realm %s", realm_id)
        return record

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    async def get_access_token(self, tenant: str | None = None) -> str:
        """Return a valid access token for ``tenant`` (realm id or company name).

        Raises:
            AuthenticationRequiredError: No stored credential for the tenant.
            TokenRefreshError: Refresh failed transiently; retry later.
            ReauthorizationRequiredError: Refresh token rejected; reconnect.
        """
        while True:
            cached = self._cached_token(tenant)
            if cached is not None:
                return cached

            record = self.store.load(tenant)
            if record is None or not record.refresh_token:
                raise AuthenticationRequiredError(
                    f'No QuickBooks credentials for company "{tenant or "default"}". '
                    "Please authenticate first.",
                    metadata={"tenant": tenant},
                )

            if record.is_valid(self.config.refresh_buffer_seconds):
                self._set_cache(record, tenant)
                return record.access_token

            inflight = self._refresh_task
            if inflight is None:
                refreshed = await self._start_refresh(record)
                self._set_cache(refreshed, tenant)
                return refreshed.access_token

            if self._refresh_realm == record.realm_id:
                refreshed = await asyncio.shield(inflight)
                self._set_cache(refreshed, tenant)
                return refreshed.access_token

            # Another tenant is refreshing; wait for it, then look again
            await asyncio.wait({inflight})

    async def refresh(self, tenant: str | None = None) -> CredentialRecord:
        """Force a refresh for ``tenant`` regardless of the current expiry."""
        record = self.store.load(tenant)
        if record is None:
            raise AuthenticationRequiredError(
                f'No QuickBooks credentials for company "{tenant or "default"}".',
                metadata={"tenant": tenant},
            )
        while self._refresh_task is not None:
            if self._refresh_realm == record.realm_id:
                return await asyncio.shield(self._refresh_task)
            await asyncio.wait({self._refresh_task})
        refreshed = await self._start_refresh(record)
        self._set_cache(refreshed, tenant)
        return refreshed

    async def _start_refresh(self, record: CredentialRecord) -> CredentialRecord:
        task = asyncio.ensure_future(self._refresh(record))
        self._refresh_task = task
        self._refresh_realm = record.realm_id
        task.add_done_callback(self._refresh_finished)
        return await asyncio.shield(task)

    def _refresh_finished(self, task: asyncio.Task[CredentialRecord]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
            self._refresh_realm = None
        if not task.cancelled():
            # Mark retrieved; waiting callers still receive the exception
            task.exception()

    async def _refresh(self, record: CredentialRecord) -> CredentialRecord:
        logger.debug("Refreshing access token for realm %s", record.realm_id)
        try:
            data = await self._post_token(
                {"grant_type": "refresh_token", "refresh_token": record.refresh_token},
                operation="refresh_token",
            )
        except ReauthorizationRequiredError:
            logger.warning(
                "Refresh token for realm %s was rejected; clearing stored credentials",
                record.realm_id,
            )
            self._clear_cache(record.realm_id)
            try:
                self.store.delete(record.realm_id)
            except StorageError as e:
                logger.error(
                    "Could not clear rejected credentials for realm %s: %s", record.realm_id, e
                )
            raise

        access_token = data.get("access_token")
        if not access_token:
            raise TokenRefreshError(
                "Incomplete refresh payload returned from QuickBooks",
                metadata={"realm_id": record.realm_id},
            )

        rotated = data.get("refresh_token")
        refreshed = replace(
            record,
            access_token=access_token,
            # Intuit may rotate the refresh token; keep the old one if it didn't
            refresh_token=rotated or record.refresh_token,
            expires_at=expires_at_from(data.get("expires_in", 3600)),
        )
        refreshed = self.store.save(refreshed)

        logger.info(
            "Refreshed access token for realm %s (expires in %ds%s)",
            record.realm_id,
            int(data.get("expires_in", 3600)),
            ", refresh token rotated" if rotated and rotated != record.refresh_token else "",
        )
        for listener in list(self._refresh_listeners):
            try:
                listener(refreshed)
            except Exception:
                logger.exception("Refresh listener failed")
        return refreshed

    async def _post_token(self, payload: dict[str, str], *, operation: str) -> dict[str, Any]:
        """POST to the token endpoint and classify any failure."""
        self.config.require_credentials()
        client = await self._get_client()
        retryable = TokenRefreshError if operation == "refresh_token" else TokenExchangeError

        try:
            resp = await client.post(
                TOKEN_URL,
                data=payload,
                auth=(self.config.client_id, self.config.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise retryable(
                f"Timed out contacting QuickBooks token endpoint ({operation})",
                metadata={"operation": operation},
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            raise retryable(
                f"Network error contacting QuickBooks token endpoint: {e}",
                metadata={"operation": operation},
                cause=e,
            ) from e

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code != 200:
            raise classify_token_error(resp.status_code, data, operation)
        return data

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cached_token(self, tenant: str | None) -> str | None:
        cache = self._cache
        if cache is None or self._cache_expiry <= int(time.time() * 1000):
            return None
        if tenant is None:
            matches = self._cache_key is None
        else:
            # Names match only through the key the store resolved them from
            matches = tenant == cache.realm_id or tenant == self._cache_key
        return cache.access_token if matches else None

    def _set_cache(self, record: CredentialRecord, tenant: str | None) -> None:
        self._cache = record
        self._cache_key = tenant
        self._cache_expiry = record.expires_at - self._buffer_ms

    def _clear_cache(self, realm_id: str | None = None) -> None:
        if realm_id is None or (self._cache is not None and self._cache.realm_id == realm_id):
            self._cache = None
            self._cache_key = None
            self._cache_expiry = 0

    # ------------------------------------------------------------------
    # Tenant management
    # ------------------------------------------------------------------

    def list_companies(self) -> list[CompanyInfo]:
        return self.store.list()

    def has_tokens(self) -> bool:
        return self.store.exists()

    def get_record(self, tenant: str | None = None) -> CredentialRecord | None:
        return self.store.load(tenant)

    def rename_company(self, realm_id: str, company_name: str) -> CredentialRecord:
        record = self.store.load(realm_id)
        if record is None or record.realm_id != realm_id:
            raise AuthenticationRequiredError(
                f"No QuickBooks credentials for realm {realm_id}",
                metadata={"tenant": realm_id},
            )
        record = self.store.save(replace(record, company_name=company_name))
        self._clear_cache(realm_id)
        return record

    def clear_tokens(self, tenant: str | None = None) -> int:
        """Delete one tenant's credentials, or all of them when ``tenant`` is omitted."""
        if tenant is None:
            removed = self.store.delete()
            self._clear_cache()
            return removed

        record = self.store.load(tenant)
        removed = self.store.delete(tenant)
        if record is not None:
            self._clear_cache(record.realm_id)
        return removed

    async def revoke(self, tenant: str | None = None) -> int:
        """Revoke the tenant's refresh token at Intuit, then delete it locally.

        Revocation is best-effort; local credentials are removed either way.
        """
        record = self.store.load(tenant)
        if record is None:
            return 0
        try:
            client = await self._get_client()
            resp = await client.post(
                REVOKE_URL,
                json={"token": record.refresh_token},
                auth=(self.config.client_id, self.config.client_secret),
            )
            if resp.status_code != 200:
                logger.warning(
                    "QuickBooks token revocation for realm %s returned %d",
                    record.realm_id, resp.status_code,
                )
        except (httpx.HTTPError, BrokerError) as e:
            logger.warning("QuickBooks token revocation for realm %s failed: %s", record.realm_id, e)
        return self.clear_tokens(record.realm_id)
