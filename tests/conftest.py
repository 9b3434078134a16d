"""Shared fixtures."""

from __future__ import annotations

import pytest

_ENV_VARS = (
    "QB_PRODUCTION",
    "QUICKBOOKS_PRODUCTION",
    "INTUIT_CLIENT_ID",
    "INTUIT_CLIENT_SECRET",
    "INTUIT_CLIENT_ID_PRODUCTION",
    "INTUIT_CLIENT_SECRET_PRODUCTION",
    "QB_CLIENT_ID",
    "QB_CLIENT_SECRET",
    "QB_STORAGE_DIR",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
