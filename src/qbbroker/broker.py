"""
Multi-tenant client broker.

Turns a tenant reference (realm id, company name, or nothing) into an
authenticated :class:`QuickBooksClient`, and drives the interactive
browser-based authorization flow that connects a new company.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from qbbroker.auth.listener import OAuthCallbackListener
from qbbroker.auth.manager import DEFAULT_COMPANY_NAME, TokenManager
from qbbroker.auth.store import CompanyInfo, CredentialRecord
from qbbroker.config import BrokerConfig
from qbbroker.errors import (
    AmbiguousCompanyError,
    AuthenticationRequiredError,
    BrokerError,
    CompanyNotFoundError,
)
from qbbroker.quickbooks import QuickBooksClient

logger = logging.getLogger("qbbroker.broker")

ClientFactory = Callable[..., QuickBooksClient]


@dataclass
class AuthenticationResult:
    """Outcome of :meth:`QuickBooksBroker.authenticate`."""

    status: str
    message: str
    companies: list[CompanyInfo] = field(default_factory=list)
    realm_id: str | None = None
    company_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "companies": [c._asdict() for c in self.companies],
            "realm_id": self.realm_id,
            "company_name": self.company_name,
        }


class QuickBooksBroker:
    """Hands out authenticated QuickBooks clients per company.

    Usage::

        broker = QuickBooksBroker(BrokerConfig.load())
        if not broker.list_companies():
            await broker.authenticate()
        client = await broker.resolve_client("Acme Corp")
        customers = await client.query_entity("Customer")
    """

    def __init__(
        self,
        config: BrokerConfig,
        manager: TokenManager | None = None,
        *,
        client_factory: ClientFactory = QuickBooksClient,
        listener_factory: Callable[..., OAuthCallbackListener] = OAuthCallbackListener,
        open_browser: Callable[[str], Any] | None = None,
    ) -> None:
        self.config = config
        self.manager = manager or TokenManager(config)
        self._client_factory = client_factory
        self._listener_factory = listener_factory
        self._open_browser = open_browser or webbrowser.open
        self._clients: dict[str, QuickBooksClient] = {}
        self._auth_lock = asyncio.Lock()
        self.manager.add_refresh_listener(self._on_refresh)

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def list_companies(self) -> list[CompanyInfo]:
        return self.manager.list_companies()

    def _resolve_record(self, tenant_ref: str | None) -> CredentialRecord:
        companies = self.list_companies()
        if not companies:
            raise AuthenticationRequiredError(
                "No QuickBooks companies are connected. Please authenticate first.",
                metadata={"tenant": tenant_ref},
            )

        if tenant_ref is None and len(companies) > 1:
            names = ", ".join(f"{c.company_name} ({c.realm_id})" for c in companies)
            raise AmbiguousCompanyError(
                f"Multiple QuickBooks companies are connected; specify one of: {names}",
                metadata={"companies": [c._asdict() for c in companies]},
            )

        record = self.manager.get_record(tenant_ref)
        if record is None:
            names = ", ".join(c.company_name for c in companies)
            raise CompanyNotFoundError(
                f'Company "{tenant_ref}" not found. Connected companies: {names}',
                metadata={"tenant": tenant_ref},
            )
        return record

    async def resolve_client(self, tenant_ref: str | None = None) -> QuickBooksClient:
        """Return an authenticated client for ``tenant_ref``.

        Raises:
            AuthenticationRequiredError: No companies are connected.
            AmbiguousCompanyError: No reference given but several companies exist.
            CompanyNotFoundError: The reference matches no connected company.
        """
        record = self._resolve_record(tenant_ref)
        access_token = await self.manager.get_access_token(record.realm_id)

        client = self._clients.get(record.realm_id)
        if client is not None and client.access_token == access_token:
            return client
        if client is not None:
            await client.close()

        client = self._client_factory(
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            access_token=access_token,
            realm_id=record.realm_id,
            environment=self.config.environment,
        )
        self._clients[record.realm_id] = client
        logger.debug("Created QuickBooks client for realm %s", record.realm_id)
        return client

    async def get_access_token(self, tenant: str | None = None) -> str:
        return await self.manager.get_access_token(tenant)

    def _on_refresh(self, record: CredentialRecord) -> None:
        # Rebuilt lazily on the next resolve_client()
        self._clients.pop(record.realm_id, None)

    def clear_tokens(self, tenant_ref: str | None = None) -> int:
        """Disconnect one company, or every company in this environment."""
        if tenant_ref is None:
            self._clients.clear()
        else:
            record = self.manager.get_record(tenant_ref)
            if record is not None:
                self._clients.pop(record.realm_id, None)
        return self.manager.clear_tokens(tenant_ref)

    def status(self) -> list[dict[str, Any]]:
        """Per-company connection summary for operators."""
        rows = []
        for info in self.list_companies():
            record = self.manager.get_record(info.realm_id)
            if record is None:
                continue
            expires = (
                datetime.fromtimestamp(record.expires_at / 1000, tz=timezone.utc)
                if record.expires_at
                else None
            )
            rows.append(
                {
                    "realm_id": record.realm_id,
                    "company_name": record.company_name,
                    "environment": record.environment.value,
                    "access_token_valid": record.is_valid(self.config.refresh_buffer_seconds),
                    "expires_at": expires.isoformat() if expires else None,
                }
            )
        return rows

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
        await self.manager.close()

    # ------------------------------------------------------------------
    # Interactive authorization
    # ------------------------------------------------------------------

    async def authenticate(self, force: bool = False) -> AuthenticationResult:
        """Connect a QuickBooks company through the browser consent flow.

        When companies are already connected and ``force`` is false, nothing
        happens and the connected companies are reported instead.
        """
        async with self._auth_lock:
            companies = self.list_companies()
            if companies and not force:
                names = ", ".join(c.company_name for c in companies)
                return AuthenticationResult(
                    status="already_connected",
                    message=(
                        f"Already connected to {len(companies)} QuickBooks "
                        f"{'company' if len(companies) == 1 else 'companies'}: {names}. "
                        "Use force to connect another company."
                    ),
                    companies=companies,
                )

            self.config.require_credentials()
            listener = self._listener_factory(self.config.callback)
            try:
                _port, state = listener.start()
                redirect_uri = listener.callback_url
                auth_url = self.manager.generate_authorization_url(state, redirect_uri)

                logger.info("Opening browser for QuickBooks authorization")
                if not self.config.open_browser or not self._open_browser(auth_url):
                    logger.warning("Open this URL to authorize QuickBooks access: %s", auth_url)

                result = await listener.await_callback()
                if not result.realm_id:
                    raise AuthenticationRequiredError(
                        "QuickBooks did not return a company (realmId) in the callback"
                    )

                record = await self.manager.exchange_code(
                    result.code, result.realm_id, redirect_uri=redirect_uri
                )
                record = await self._apply_company_name(record)

                if self.config.callback.expose_tokens:
                    listener.set_token_data(
                        refresh_token=record.refresh_token, realm_id=record.realm_id
                    )
                    await listener.linger()
            finally:
                await listener.aclose()

            self._clients.pop(record.realm_id, None)
            logger.info(
                "Connected QuickBooks company %s (realm %s)", record.company_name, record.realm_id
            )
            return AuthenticationResult(
                status="connected",
                message=f"Successfully connected to {record.company_name}.",
                companies=self.list_companies(),
                realm_id=record.realm_id,
                company_name=record.company_name,
            )

    async def _apply_company_name(self, record: CredentialRecord) -> CredentialRecord:
        """Replace the placeholder name with the one from CompanyInfo, if reachable."""
        if record.company_name != DEFAULT_COMPANY_NAME:
            return record
        client = self._client_factory(
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            access_token=record.access_token,
            realm_id=record.realm_id,
            environment=self.config.environment,
        )
        try:
            info = await client.get_company_info()
        except BrokerError as e:
            logger.warning("Could not look up company name for realm %s: %s", record.realm_id, e)
            return record
        finally:
            await client.close()

        name = info.get("CompanyName") or info.get("LegalName")
        if not name:
            return record
        return self.manager.rename_company(record.realm_id, name)
