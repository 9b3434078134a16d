"""
QuickBooks Online Accounting API client.

A thin async wrapper over the QBO REST API v3 bound to one company (realm)
and one access token. Token lifecycle lives in the token manager; the broker
hands out a fresh client whenever the access token changes.

QuickBooks API docs:
  https://developer.intuit.com/app/developer/qbo/docs/api/accounting/all-entities
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from qbbroker.config import Environment
from qbbroker.errors import NetworkError, classify_api_error

logger = logging.getLogger("qbbroker.quickbooks")

# QuickBooks API endpoints
_QBO_BASE_URL = "https://quickbooks.api.intuit.com/v3/company"
_QBO_SANDBOX_URL = "https://sandbox-quickbooks.api.intuit.com/v3/company"

_MINOR_VERSION = "75"

# Max results per API page
_PAGE_SIZE = 1000


class QuickBooksClient:
    """Authenticated client for a single QuickBooks company.

    Usage::

        client = QuickBooksClient(
            client_id="ABcDef...",
            client_secret="xyz123...",
            access_token="eyJ...",
            realm_id="4620816365213515760",
            environment=Environment.SANDBOX,
        )
        invoices = await client.query_entity("Invoice", where="Balance > '0'")
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        access_token: str,
        realm_id: str,
        environment: Environment | str = Environment.SANDBOX,
        *,
        timeout: float = 60.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.access_token = access_token
        self.realm_id = realm_id
        self.environment = Environment(environment)
        self.timeout = timeout

        self._base_url = (
            _QBO_BASE_URL if self.environment is Environment.PRODUCTION else _QBO_SANDBOX_URL
        )
        self._http: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return f"{self._base_url}/{self.realm_id}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # API helpers
    # ------------------------------------------------------------------

    async def _api_get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Make an authenticated GET request to the QBO API."""
        client = await self._get_client()
        url = f"{self.base_url}/{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }
        query_params = {"minorversion": _MINOR_VERSION, **(params or {})}

        try:
            resp = await client.get(url, headers=headers, params=query_params)
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Timed out calling QuickBooks {endpoint}",
                metadata={"endpoint": endpoint, "realm_id": self.realm_id},
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(
                f"Network error calling QuickBooks {endpoint}: {e}",
                metadata={"endpoint": endpoint, "realm_id": self.realm_id},
                cause=e,
            ) from e

        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            error = classify_api_error(resp.status_code, payload)
            logger.warning(
                "QuickBooks %s for realm %s failed: %s",
                endpoint, self.realm_id, error.message,
            )
            raise error

        return resp.json()

    async def query(self, statement: str) -> list[dict[str, Any]]:
        """Execute a QBO query (SQL-like) and handle pagination.

        The QBO query API uses STARTPOSITION and MAXRESULTS for pagination.
        """
        all_results: list[dict[str, Any]] = []
        start_pos = 1

        while True:
            paged_query = f"{statement} STARTPOSITION {start_pos} MAXRESULTS {_PAGE_SIZE}"
            data = await self._api_get("query", params={"query": paged_query})

            response = data.get("QueryResponse", {})

            # The entity list is the only list value; the rest is paging metadata
            entities: list[dict[str, Any]] = []
            for value in response.values():
                if isinstance(value, list):
                    entities = value
                    break

            if not entities:
                break

            all_results.extend(entities)
            if len(entities) < _PAGE_SIZE:
                break

            start_pos += _PAGE_SIZE

        logger.debug("Query returned %d rows for realm %s", len(all_results), self.realm_id)
        return all_results

    async def query_entity(
        self,
        entity: str,
        where: str | None = None,
        order_by: str | None = None,
    ) -> list[dict[str, Any]]:
        statement = f"SELECT * FROM {entity}"
        if where:
            statement += f" WHERE {where}"
        if order_by:
            statement += f" ORDERBY {order_by}"
        return await self.query(statement)

    async def get_entity(self, entity: str, entity_id: str) -> dict[str, Any]:
        """Read a single entity by id, e.g. ``get_entity("Invoice", "130")``."""
        data = await self._api_get(f"{entity.lower()}/{entity_id}")
        return data.get(entity, data)

    async def get_company_info(self) -> dict[str, Any]:
        data = await self._api_get(f"companyinfo/{self.realm_id}")
        return data.get("CompanyInfo", {})

    async def report(self, name: str, **params: Any) -> dict[str, Any]:
        """Run a named report such as ``ProfitAndLoss`` or ``BalanceSheet``."""
        str_params = {k: str(v) for k, v in params.items() if v is not None}
        return await self._api_get(f"reports/{name}", params=str_params)
