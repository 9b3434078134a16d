"""Tests for the credential store."""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import pytest

from qbbroker.auth.store import (
    CompanyInfo,
    CredentialRecord,
    CredentialStore,
    expires_at_from,
    mask_token,
)
from qbbroker.config import Environment
from qbbroker.errors import StorageError


def _record(
    realm_id: str = "111",
    company_name: str = "Acme",
    *,
    access_token: str = "access",
    refresh_token: str = "refresh",
    expires_in: float = 3600,
    environment: Environment = Environment.SANDBOX,
) -> CredentialRecord:
    return CredentialRecord(
        realm_id=realm_id,
        company_name=company_name,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=int((time.time() + expires_in) * 1000),
        environment=environment,
    )


def _store(tmp_path: Path, environment: Environment = Environment.SANDBOX) -> CredentialStore:
    return CredentialStore(tmp_path, environment, encrypt=False)


# ---------------------------------------------------------------------------
# CredentialRecord
# ---------------------------------------------------------------------------


class TestCredentialRecord:
    def test_valid_with_an_hour_left(self) -> None:
        assert _record(expires_in=3600).is_valid()

    def test_invalid_within_buffer(self) -> None:
        # 4 minutes left is inside the 5 minute buffer
        assert not _record(expires_in=240).is_valid()

    def test_invalid_without_access_token(self) -> None:
        assert not _record(access_token="").is_valid()

    def test_custom_buffer(self) -> None:
        assert _record(expires_in=240).is_valid(buffer_seconds=60)

    def test_dict_round_trip(self) -> None:
        original = _record(environment=Environment.PRODUCTION)
        restored = CredentialRecord.from_dict(original.to_dict())
        assert restored == original

    def test_info(self) -> None:
        assert _record("9", "Widget").info == CompanyInfo("9", "Widget")

    def test_expires_at_from(self) -> None:
        before = int(time.time() * 1000)
        expires_at = expires_at_from(3600)
        assert before + 3_600_000 <= expires_at <= before + 3_601_000

    def test_mask_token(self) -> None:
        assert mask_token("abcdefghijkl") == "abcdef..."
        assert mask_token("") == "<none>"
        assert mask_token(None) == "<none>"


# ---------------------------------------------------------------------------
# Save / load
# ---------------------------------------------------------------------------


class TestSaveLoad:
    def test_round_trip_by_realm_and_name(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        record = _record()
        store.save(record)

        assert store.load("111") == record
        assert store.load("Acme") == record

    def test_load_without_identifier_returns_a_record(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record("2", "Widget"))
        store.save(_record("1", "Acme"))
        assert store.load().company_name == "Acme"

    def test_load_unknown_returns_none(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record())
        assert store.load("nope") is None

    def test_load_empty_store(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        assert store.load() is None
        assert store.list() == []
        assert not store.exists()

    def test_realm_id_takes_precedence_over_name(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record("222", "Acme"))
        store.save(_record("333", "222"))
        assert store.load("222").realm_id == "222"

    def test_save_replaces_existing_realm(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record(access_token="old"))
        store.save(_record(access_token="new"))
        assert store.load("111").access_token == "new"
        assert len(store.list()) == 1

    def test_empty_refresh_token_preserves_previous(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record(refresh_token="keep-me"))
        stored = store.save(_record(access_token="rotated", refresh_token=""))
        assert stored.refresh_token == "keep-me"
        assert store.load("111").refresh_token == "keep-me"
        assert store.load("111").access_token == "rotated"

    def test_new_record_without_refresh_token_rejected(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        with pytest.raises(StorageError):
            store.save(_record(refresh_token=""))

    def test_wrong_environment_rejected(self, tmp_path: Path) -> None:
        store = _store(tmp_path, Environment.SANDBOX)
        with pytest.raises(ValueError):
            store.save(_record(environment=Environment.PRODUCTION))

    def test_file_layout(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record())
        payload = json.loads((tmp_path / "tokens_sandbox.json").read_text())
        assert payload["version"] == 1
        assert payload["environment"] == "sandbox"
        assert payload["records"]["111"]["company_name"] == "Acme"

    def test_file_permissions(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record())
        assert (store.path.stat().st_mode & 0o777) == 0o600

    def test_no_temp_files_left_behind(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record())
        store.save(_record("222", "Widget"))
        assert sorted(p.name for p in tmp_path.iterdir()) == [
            ".tokens_sandbox.json.lock",
            "tokens_sandbox.json",
        ]


# ---------------------------------------------------------------------------
# Listing & multi-tenant
# ---------------------------------------------------------------------------


class TestMultiTenant:
    def test_two_companies(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record("111", "Acme"))
        store.save(_record("222", "Widget Co"))

        assert store.list() == [CompanyInfo("111", "Acme"), CompanyInfo("222", "Widget Co")]
        assert store.load("Widget Co").realm_id == "222"
        assert store.load("222").company_name == "Widget Co"

    def test_environment_isolation(self, tmp_path: Path) -> None:
        sandbox = _store(tmp_path, Environment.SANDBOX)
        production = _store(tmp_path, Environment.PRODUCTION)

        sandbox.save(_record("111", "Acme"))
        production.save(_record("999", "Live Co", environment=Environment.PRODUCTION))

        assert sandbox.list() == [CompanyInfo("111", "Acme")]
        assert production.list() == [CompanyInfo("999", "Live Co")]
        assert sandbox.load("999") is None

        sandbox.delete()
        assert production.load("999") is not None


# ---------------------------------------------------------------------------
# Shared store across processes
# ---------------------------------------------------------------------------


class TestConcurrentWriters:
    def test_rotated_refresh_token_survives_interleaved_save(self, tmp_path: Path) -> None:
        server_store = _store(tmp_path)
        cli_store = _store(tmp_path)
        server_store.save(_record("111", "Acme", refresh_token="old_refresh"))

        rotate = threading.Thread(
            target=cli_store.save,
            args=(_record("111", "Acme", refresh_token="rotated_refresh"),),
        )
        read_strict = server_store._read_strict
        blocked = []

        def read_then_rotate() -> dict[str, CredentialRecord]:
            records = read_strict()
            rotate.start()
            rotate.join(timeout=0.5)
            blocked.append(rotate.is_alive())
            return records

        server_store._read_strict = read_then_rotate  # type: ignore[method-assign]
        server_store.save(_record("222", "Widget"))
        rotate.join(timeout=5)

        assert blocked == [True]
        assert not rotate.is_alive()
        assert cli_store.load("111").refresh_token == "rotated_refresh"
        assert cli_store.load("222") is not None

    def test_delete_waits_for_other_writer(self, tmp_path: Path) -> None:
        first = _store(tmp_path)
        second = _store(tmp_path)
        first.save(_record("111", "Acme"))

        with first._locked():
            remover = threading.Thread(target=second.delete, args=("111",))
            remover.start()
            remover.join(timeout=0.3)
            assert remover.is_alive()

        remover.join(timeout=5)
        assert first.load("111") is None


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDelete:
    def test_delete_one(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record("111", "Acme"))
        store.save(_record("222", "Widget"))

        assert store.delete("Acme") == 1
        assert store.list() == [CompanyInfo("222", "Widget")]

    def test_delete_unknown_is_noop(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record())
        assert store.delete("nope") == 0
        assert store.exists()

    def test_delete_without_identifier_removes_all(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.save(_record("111", "Acme"))
        store.save(_record("222", "Widget"))

        assert store.delete() == 2
        assert store.list() == []
        assert not store.exists()

    def test_delete_all_on_missing_file(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        assert store.delete() == 0
        assert not store.path.exists()


# ---------------------------------------------------------------------------
# Corruption & encryption
# ---------------------------------------------------------------------------


class TestCorruption:
    def test_corrupt_file_reads_as_empty(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.path.write_text("{not json")
        assert store.load() is None
        assert store.list() == []

    def test_corrupt_file_blocks_writes(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.path.write_text("{not json")
        with pytest.raises(StorageError):
            store.save(_record())
        assert store.path.read_text() == "{not json"

    def test_clear_all_recovers_corrupt_store(self, tmp_path: Path) -> None:
        store = _store(tmp_path)
        store.path.write_text("{not json")
        store.delete()
        store.save(_record())
        assert store.load("111") is not None


class TestEncryption:
    def test_encrypted_at_rest(self, tmp_path: Path) -> None:
        store = CredentialStore(tmp_path, Environment.SANDBOX)
        store.save(_record(refresh_token="super-secret-refresh"))

        raw = store.path.read_text()
        assert "super-secret-refresh" not in raw
        assert not raw.startswith("{")
        assert (tmp_path / ".key_salt").exists()

        reopened = CredentialStore(tmp_path, Environment.SANDBOX)
        assert reopened.load("111").refresh_token == "super-secret-refresh"

    def test_reads_plain_store_when_encrypted(self, tmp_path: Path) -> None:
        _store(tmp_path).save(_record())
        encrypted = CredentialStore(tmp_path, Environment.SANDBOX)
        assert encrypted.load("Acme").realm_id == "111"

    def test_undecryptable_file_is_unreadable(self, tmp_path: Path) -> None:
        store = CredentialStore(tmp_path, Environment.SANDBOX)
        store.path.write_text("gAAAAAgarbage")
        assert store.load() is None
        with pytest.raises(StorageError):
            store.save(_record())
