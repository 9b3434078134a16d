"""Tests for the QuickBooks Online API client."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from qbbroker.config import Environment
from qbbroker.errors import (
    AuthenticationRequiredError,
    NetworkError,
    QuickBooksAPIError,
    RateLimitError,
)
from qbbroker.quickbooks import QuickBooksClient


def _client(environment: Environment = Environment.SANDBOX) -> QuickBooksClient:
    return QuickBooksClient(
        client_id="test_client",
        client_secret="test_secret",
        access_token="access-123",
        realm_id="4620816365",
        environment=environment,
    )


def _response(status_code: int = 200, payload: dict[str, Any] | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    return resp


def _mock_http(*responses: MagicMock) -> AsyncMock:
    http = AsyncMock()
    http.is_closed = False
    http.get.side_effect = list(responses)
    return http


class TestQuickBooksClient:
    def test_base_urls(self) -> None:
        assert _client().base_url == (
            "https://sandbox-quickbooks.api.intuit.com/v3/company/4620816365"
        )
        assert _client(Environment.PRODUCTION).base_url == (
            "https://quickbooks.api.intuit.com/v3/company/4620816365"
        )

    @pytest.mark.asyncio
    async def test_get_company_info(self) -> None:
        qb = _client()
        qb._http = _mock_http(_response(200, {"CompanyInfo": {"CompanyName": "Acme Corp"}}))

        info = await qb.get_company_info()
        assert info["CompanyName"] == "Acme Corp"

        call = qb._http.get.call_args
        assert call[0][0].endswith("/4620816365/companyinfo/4620816365")
        assert call[1]["headers"]["Authorization"] == "Bearer access-123"
        assert "minorversion" in call[1]["params"]

    @pytest.mark.asyncio
    async def test_query_single_page(self) -> None:
        qb = _client()
        qb._http = _mock_http(
            _response(200, {"QueryResponse": {"Customer": [{"Id": "1"}, {"Id": "2"}],
                                              "startPosition": 1, "maxResults": 2}})
        )

        rows = await qb.query_entity("Customer", where="Active = true", order_by="DisplayName")

        assert [r["Id"] for r in rows] == ["1", "2"]
        query = qb._http.get.call_args[1]["params"]["query"]
        assert query == (
            "SELECT * FROM Customer WHERE Active = true ORDERBY DisplayName "
            "STARTPOSITION 1 MAXRESULTS 1000"
        )

    @pytest.mark.asyncio
    async def test_query_paginates(self) -> None:
        qb = _client()
        first_page = [{"Id": str(i)} for i in range(1000)]
        qb._http = _mock_http(
            _response(200, {"QueryResponse": {"Invoice": first_page}}),
            _response(200, {"QueryResponse": {"Invoice": [{"Id": "1000"}]}}),
        )

        rows = await qb.query("SELECT * FROM Invoice")

        assert len(rows) == 1001
        second_query = qb._http.get.call_args_list[1][1]["params"]["query"]
        assert "STARTPOSITION 1001" in second_query

    @pytest.mark.asyncio
    async def test_query_empty(self) -> None:
        qb = _client()
        qb._http = _mock_http(_response(200, {"QueryResponse": {}}))
        assert await qb.query("SELECT * FROM Bill") == []

    @pytest.mark.asyncio
    async def test_get_entity(self) -> None:
        qb = _client()
        qb._http = _mock_http(_response(200, {"Invoice": {"Id": "130", "TotalAmt": 42.0}}))

        invoice = await qb.get_entity("Invoice", "130")
        assert invoice["TotalAmt"] == 42.0
        assert qb._http.get.call_args[0][0].endswith("/invoice/130")

    @pytest.mark.asyncio
    async def test_report(self) -> None:
        qb = _client()
        qb._http = _mock_http(_response(200, {"Header": {"ReportName": "ProfitAndLoss"}}))

        report = await qb.report("ProfitAndLoss", start_date="2024-01-01", accounting_method=None)
        assert report["Header"]["ReportName"] == "ProfitAndLoss"
        params = qb._http.get.call_args[1]["params"]
        assert params["start_date"] == "2024-01-01"
        assert "accounting_method" not in params


class TestErrors:
    @pytest.mark.asyncio
    async def test_401(self) -> None:
        qb = _client()
        qb._http = _mock_http(_response(401))
        with pytest.raises(AuthenticationRequiredError):
            await qb.get_company_info()

    @pytest.mark.asyncio
    async def test_429(self) -> None:
        qb = _client()
        qb._http = _mock_http(_response(429))
        with pytest.raises(RateLimitError) as exc_info:
            await qb.get_company_info()
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_fault_messages(self) -> None:
        qb = _client()
        fault = {"Fault": {"Error": [{"Message": "Invalid query", "code": "4000"}]}}
        qb._http = _mock_http(_response(400, fault))
        with pytest.raises(QuickBooksAPIError, match="Invalid query") as exc_info:
            await qb.query("SELECT nonsense")
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        qb = _client()
        qb._http = AsyncMock()
        qb._http.is_closed = False
        qb._http.get.side_effect = httpx.ReadTimeout("slow")
        with pytest.raises(NetworkError) as exc_info:
            await qb.get_company_info()
        assert exc_info.value.retryable
