"""Shared fixtures: a fixed-key cipher and in-memory stores standing in for Postgres."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest

from scripts.saasmgmt.config import DatabaseConfig, EncryptionConfig, SaasConfig
from scripts.saasmgmt.connections import CONNECTION_STATUSES, ConnectionStore
from scripts.saasmgmt.credentials import CredentialsService, CredentialStore
from scripts.saasmgmt.crypto import CredentialCipher

TEST_KEY = bytes(range(32))


class InMemoryCredentialStore(CredentialStore):
    """CredentialStore keeping rows in a dict keyed like the unique index."""

    def __init__(self) -> None:
        super().__init__(db=MagicMock())
        self.rows: dict[tuple[str, str, str], dict[str, Any]] = {}

    def upsert(self, company_id, app_type, app_name, credentials, user_id):
        key = (company_id, app_type, app_name)
        now = datetime.now(timezone.utc)
        row = self.rows.get(key) or {"id": uuid.uuid4(), "created_at": now}
        row.update({
            "company_id": company_id,
            "app_type": app_type,
            "app_name": app_name,
            "credentials": credentials,
            "is_active": True,
            "created_by": user_id,
            "updated_at": now,
        })
        self.rows[key] = row
        return dict(row)

    def find_active(self, company_id, app_type, app_name=None):
        matches = [
            r for (c, a, n), r in self.rows.items()
            if c == company_id and a == app_type and r["is_active"]
            and (app_name is None or n == app_name)
        ]
        return dict(matches[-1]) if matches else None

    def list_active(self, company_id):
        return [dict(r) for (c, _, _), r in self.rows.items() if c == company_id and r["is_active"]]

    def deactivate(self, company_id, app_type, app_name=None):
        count = 0
        for (c, a, n), r in self.rows.items():
            if c == company_id and a == app_type and r["is_active"] and app_name in (None, n):
                r["is_active"] = False
                count += 1
        return count


class InMemoryConnectionStore(ConnectionStore):
    """ConnectionStore that encrypts tokens for real but keeps rows in memory."""

    def __init__(self, cipher: CredentialCipher) -> None:
        super().__init__(db=MagicMock(), cipher=cipher)
        self.rows: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.sync_marks: list[tuple[str, str, Optional[str]]] = []

    def upsert(self, company_id, app_type, app_name, external_account_id,
               tokens=None, scope=None, details=None, status="connected"):
        assert status in CONNECTION_STATUSES
        key = (company_id, app_type, external_account_id)
        row = self.rows.get(key) or {"id": uuid.uuid4(), "created_at": datetime.now(timezone.utc)}
        row.update({
            "company_id": company_id,
            "app_type": app_type,
            "app_name": app_name,
            "external_account_id": external_account_id,
            "tokens": {k: self.cipher.encrypt(v).to_document() for k, v in (tokens or {}).items() if v},
            "scope": scope or [],
            "details": details or {},
            "status": status,
            "sync_status": "idle",
            "error_message": None,
            "last_sync": datetime.now(timezone.utc),
            "is_active": True,
        })
        self.rows[key] = row
        return dict(row)

    def find_active(self, company_id, app_type, app_name=None):
        matches = [
            r for (c, a, _), r in self.rows.items()
            if c == company_id and a == app_type and r["is_active"]
            and (app_name is None or r["app_name"] == app_name)
        ]
        return dict(matches[-1]) if matches else None

    def list_active(self, company_id=None, app_type=None):
        return [
            dict(r) for (c, a, _), r in self.rows.items()
            if r["is_active"] and company_id in (None, c) and app_type in (None, a)
        ]

    def mark_sync(self, connection_id, sync_status, error_message=None):
        self.sync_marks.append((str(connection_id), sync_status, error_message))

    def update_tokens(self, connection_id, tokens):
        for row in self.rows.values():
            if str(row["id"]) == str(connection_id):
                row["tokens"] = {
                    k: self.cipher.encrypt(v).to_document() for k, v in tokens.items() if v
                }

    def deactivate(self, company_id, app_type, app_name=None):
        count = 0
        for (c, a, _), r in self.rows.items():
            if c == company_id and a == app_type and r["is_active"] and app_name in (None, r["app_name"]):
                r["is_active"] = False
                r["status"] = "disconnected"
                count += 1
        return count


@pytest.fixture
def encryption_config() -> EncryptionConfig:
    return EncryptionConfig(key=TEST_KEY)


@pytest.fixture
def cipher(encryption_config: EncryptionConfig) -> CredentialCipher:
    return CredentialCipher(encryption_config)


@pytest.fixture
def config(encryption_config: EncryptionConfig) -> SaasConfig:
    return SaasConfig(
        database=DatabaseConfig(url="postgresql://localhost/test"),
        encryption=encryption_config,
        batch_size=2,
    )


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def credentials_service(credential_store, cipher) -> CredentialsService:
    return CredentialsService(credential_store, cipher)


@pytest.fixture
def connection_store(cipher) -> InMemoryConnectionStore:
    return InMemoryConnectionStore(cipher)


@pytest.fixture
def mock_db() -> MagicMock:
    """Database double whose transaction() yields a MagicMock cursor."""
    db = MagicMock()
    cursor = MagicMock()
    db.transaction.return_value.__enter__.return_value = cursor
    db.transaction.return_value.__exit__.return_value = False
    db.cursor = cursor
    db.record_run_start.return_value = "run-1"
    db.upsert_batch.side_effect = lambda cur, table, columns, rows, **kw: len(rows)
    return db
