"""
Credential store — durable, environment-isolated storage of tenant tokens.

One file per environment (``tokens_sandbox.json`` / ``tokens_production.json``)
holds every connected QuickBooks company for that environment, keyed by
realm id. Files are encrypted at rest with Fernet and replaced atomically on
every write, so a crash mid-write never leaves a half-written store behind.

The store has no network or refresh logic; the token manager owns that.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import socket
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, NamedTuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from qbbroker.config import Environment
from qbbroker.errors import StorageError

if os.name == "nt":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger("qbbroker.auth.store")

_STORE_VERSION = 1
_SALT_FILE = ".key_salt"


def now_ms() -> int:
    return int(time.time() * 1000)


def expires_at_from(expires_in: int | float) -> int:
    """Absolute expiry (epoch ms) for a token issued now with ``expires_in`` seconds."""
    return now_ms() + int(float(expires_in) * 1000)


def mask_token(token: str | None) -> str:
    if not token:
        return "<none>"
    return f"{token[:6]}..." if len(token) > 6 else "..."


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class CompanyInfo(NamedTuple):
    realm_id: str
    company_name: str


@dataclass
class CredentialRecord:
    """Token pair for one QuickBooks company (realm)."""

    realm_id: str
    company_name: str
    access_token: str
    refresh_token: str
    expires_at: int
    environment: Environment = Environment.SANDBOX

    def is_valid(self, buffer_seconds: float = 300) -> bool:
        """True while the access token has more than ``buffer_seconds`` left."""
        if not self.access_token:
            return False
        return self.expires_at > now_ms() + int(buffer_seconds * 1000)

    @property
    def info(self) -> CompanyInfo:
        return CompanyInfo(self.realm_id, self.company_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "realm_id": self.realm_id,
            "company_name": self.company_name,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "environment": self.environment.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CredentialRecord:
        return cls(
            realm_id=str(data["realm_id"]),
            company_name=data.get("company_name") or "",
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or "",
            expires_at=int(data.get("expires_at") or 0),
            environment=Environment(data.get("environment", Environment.SANDBOX.value)),
        )


# ---------------------------------------------------------------------------
# Encryption helpers
# ---------------------------------------------------------------------------


def _derive_key(storage_dir: Path) -> bytes:
    """Derive a Fernet key from the host name and a per-directory salt.

    Tokens are only readable on the machine that stored them.
    """
    salt_file = storage_dir / _SALT_FILE
    if salt_file.exists():
        salt = salt_file.read_bytes()
    else:
        salt = os.urandom(16)
        storage_dir.mkdir(parents=True, exist_ok=True)
        salt_file.write_bytes(salt)
        salt_file.chmod(0o600)

    password = socket.gethostname().encode() + b"qbbroker-v1"
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=480000,
    )
    return base64.urlsafe_b64encode(kdf.derive(password))


class _Unreadable(Exception):
    """Store file exists but cannot be decoded."""


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class CredentialStore:
    """File-backed credential store for a single environment partition.

    Usage::

        store = CredentialStore(Path("~/.qbbroker").expanduser(), Environment.SANDBOX)
        store.save(record)
        store.load("Acme")        # by exact company name
        store.load("4620816365")  # by realm id
        store.delete()            # removes every sandbox record
    """

    def __init__(
        self,
        storage_dir: Path | str,
        environment: Environment | str = Environment.SANDBOX,
        *,
        encrypt: bool = True,
    ) -> None:
        self.storage_dir = Path(storage_dir).expanduser()
        self.environment = Environment(environment)
        self.encrypt = encrypt
        self._fernet: Fernet | None = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self.storage_dir / f"tokens_{self.environment.value}.json"

    @property
    def lock_path(self) -> Path:
        return self.storage_dir / f".{self.path.name}.lock"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def save(self, record: CredentialRecord) -> CredentialRecord:
        """Insert or update ``record``; returns what was persisted.

        An empty ``refresh_token`` keeps the previously stored one.
        """
        if record.environment is not self.environment:
            raise ValueError(
                f"Record for {record.environment.value} cannot be saved "
                f"in the {self.environment.value} store"
            )

        with self._locked():
            records = self._read_strict()
            previous = records.get(record.realm_id)
            refresh_token = record.refresh_token or (previous.refresh_token if previous else "")
            if not refresh_token:
                raise StorageError(
                    f"Refusing to store realm {record.realm_id} without a refresh token",
                    metadata={"realm_id": record.realm_id},
                )
            stored = replace(record, refresh_token=refresh_token)
            records[record.realm_id] = stored
            self._write(records)

        logger.debug(
            "Saved %s credentials for realm %s (%s)",
            self.environment.value, stored.realm_id, stored.company_name,
        )
        return stored

    def load(self, identifier: str | None = None) -> CredentialRecord | None:
        """Find a record by realm id, then by exact company name.

        Without an identifier the first record (ordered by company name) is
        returned, so single-tenant callers can omit it.
        """
        return self._resolve(self._read_lenient(), identifier)

    def list(self) -> list[CompanyInfo]:
        return [r.info for r in self._ordered(self._read_lenient())]

    def delete(self, identifier: str | None = None) -> int:
        """Delete one record, or every record of this environment when
        ``identifier`` is omitted. Returns the number removed."""
        with self._locked():
            if identifier is None:
                # Clearing everything is also the remediation for a corrupt store
                removed = len(self._read_lenient())
                records: dict[str, CredentialRecord] = {}
                if self.path.exists():
                    self._write(records)
            else:
                records = self._read_strict()
                match = self._resolve(records, identifier)
                if match is None:
                    logger.debug("No %s credentials match %r", self.environment.value, identifier)
                    return 0
                del records[match.realm_id]
                removed = 1
                self._write(records)

        logger.info(
            "Deleted %d %s credential record(s)%s",
            removed,
            self.environment.value,
            f" for {identifier!r}" if identifier is not None else "",
        )
        return removed

    def exists(self) -> bool:
        return bool(self._read_lenient())

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _ordered(records: dict[str, CredentialRecord]) -> list[CredentialRecord]:
        return sorted(records.values(), key=lambda r: (r.company_name, r.realm_id))

    def _resolve(
        self,
        records: dict[str, CredentialRecord],
        identifier: str | None,
    ) -> CredentialRecord | None:
        if identifier is None:
            ordered = self._ordered(records)
            return ordered[0] if ordered else None
        if identifier in records:
            return records[identifier]
        for record in self._ordered(records):
            if record.company_name == identifier:
                return record
        return None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the thread lock and an exclusive OS lock on a sidecar file."""
        with self._lock:
            try:
                self.storage_dir.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
            except OSError as e:
                raise StorageError(
                    f"Cannot lock credential store {self.path}: {e}",
                    metadata={"path": str(self.path)},
                    cause=e,
                ) from e
            try:
                if os.name == "nt":
                    msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
                else:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                yield
            finally:
                # Closing the descriptor releases the lock
                os.close(fd)

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(_derive_key(self.storage_dir))
        return self._fernet

    def _read_lenient(self) -> dict[str, CredentialRecord]:
        try:
            return self._read()
        except _Unreadable as e:
            logger.warning("Ignoring unreadable credential store %s: %s", self.path, e)
            return {}

    def _read_strict(self) -> dict[str, CredentialRecord]:
        try:
            return self._read()
        except _Unreadable as e:
            raise StorageError(
                f"Credential store {self.path} is unreadable ({e}). "
                "Move it aside or clear authentication and reconnect.",
                metadata={"path": str(self.path)},
                cause=e,
            ) from e

    def _read(self) -> dict[str, CredentialRecord]:
        try:
            content = self.path.read_text()
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise _Unreadable(str(e)) from e

        if not content.strip():
            return {}

        # Plain JSON stores (encryption disabled, or written before it was enabled)
        if not content.lstrip().startswith("{"):
            try:
                content = self._get_fernet().decrypt(content.strip().encode()).decode()
            except (InvalidToken, ValueError) as e:
                raise _Unreadable("cannot decrypt") from e

        try:
            payload = json.loads(content)
            raw_records = payload.get("records", {})
            records = {
                realm_id: CredentialRecord.from_dict({**data, "realm_id": realm_id})
                for realm_id, data in raw_records.items()
            }
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise _Unreadable(f"invalid content: {e}") from e

        return {k: r for k, r in records.items() if r.environment is self.environment}

    def _write(self, records: dict[str, CredentialRecord]) -> None:
        payload = {
            "version": _STORE_VERSION,
            "environment": self.environment.value,
            "records": {realm_id: r.to_dict() for realm_id, r in records.items()},
        }
        data = json.dumps(payload, indent=2)

        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            if self.encrypt:
                data = self._get_fernet().encrypt(data.encode()).decode()

            fd, tmp_name = tempfile.mkstemp(
                dir=self.storage_dir, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageError(
                f"Failed to write credential store {self.path}: {e}",
                metadata={"path": str(self.path)},
                cause=e,
            ) from e
