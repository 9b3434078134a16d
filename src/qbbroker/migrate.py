"""
Import legacy single-file token stores into the credential store.

Older deployments kept tokens in ``tokens.json`` (production) or
``tokens_sandbox.json`` (sandbox), either as one company's token object or as
a mapping of company name to token object, with camelCase or snake_case keys.
Imported records get ``expires_at = 0`` so the first use forces a refresh.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

from qbbroker.auth.store import CredentialRecord, CredentialStore
from qbbroker.config import Environment
from qbbroker.errors import BrokerError

logger = logging.getLogger("qbbroker.migrate")

_DEFAULT_NAME = "QuickBooks Company"


def legacy_file_name(environment: Environment) -> str:
    return "tokens.json" if environment is Environment.PRODUCTION else "tokens_sandbox.json"


def default_legacy_paths(store: CredentialStore) -> list[Path]:
    """Locations older versions wrote token files to."""
    name = legacy_file_name(store.environment)
    return [
        Path.cwd() / name,
        store.storage_dir.parent / name,
        Path.home() / ".summon" / name,
    ]


def _field(data: dict[str, Any], camel: str, snake: str) -> Any:
    return data.get(camel) if data.get(camel) is not None else data.get(snake)


def _parse_entry(data: dict[str, Any], fallback_name: str | None) -> dict[str, str] | None:
    refresh_token = _field(data, "refreshToken", "refresh_token")
    realm_id = _field(data, "realmId", "realm_id")
    if not refresh_token or not realm_id:
        return None
    return {
        "realm_id": str(realm_id),
        "company_name": _field(data, "companyName", "company_name") or fallback_name or _DEFAULT_NAME,
        "access_token": _field(data, "accessToken", "access_token") or "",
        "refresh_token": refresh_token,
    }


def parse_legacy_tokens(data: Any) -> list[dict[str, str]]:
    """Extract token entries from a legacy payload (single or multi-company)."""
    if not isinstance(data, dict):
        raise ValueError("legacy token file must contain a JSON object")

    single = _parse_entry(data, None)
    if single is not None:
        return [single]

    entries = []
    for company_name, value in data.items():
        if isinstance(value, dict):
            entry = _parse_entry(value, company_name)
            if entry is not None:
                entries.append(entry)
    return entries


def migrate_legacy_tokens(
    store: CredentialStore,
    paths: list[Path] | None = None,
    *,
    archive: bool = True,
) -> tuple[int, list[str]]:
    """Import every legacy token file found at ``paths``.

    Migrated files are renamed to ``<name>.migrated-<timestamp>`` when
    ``archive`` is set.

    Returns:
        ``(migrated, errors)``: number of records imported and one message
        per file that could not be migrated.
    """
    migrated = 0
    errors: list[str] = []

    for path in paths if paths is not None else default_legacy_paths(store):
        path = Path(path).expanduser()
        if not path.is_file():
            continue
        logger.info("Found legacy token file: %s", path)

        try:
            entries = parse_legacy_tokens(json.loads(path.read_text()))
            for entry in entries:
                store.save(
                    CredentialRecord(
                        expires_at=0,
                        environment=store.environment,
                        **entry,
                    )
                )
                migrated += 1

            if archive:
                archived = path.with_name(f"{path.name}.migrated-{int(time.time() * 1000)}")
                path.rename(archived)
                logger.info("Archived legacy file to: %s", archived)
        except (OSError, ValueError, BrokerError) as e:
            errors.append(f"Failed to migrate {path}: {e}")
            logger.warning("Failed to migrate %s: %s", path, e)

    return migrated, errors
