"""ServiceConnection records: validated links to a vendor account."""

from __future__ import annotations

import logging
from typing import Any, Optional

import psycopg2.extras

from scripts.saasmgmt.crypto import CredentialCipher, EncryptedValue
from scripts.saasmgmt.db import Database, rows_to_dicts
from scripts.saasmgmt.errors import DecryptionError, NotFoundError

logger = logging.getLogger("saasmgmt.connections")

CONNECTION_STATUSES = ("connected", "error", "syncing", "pending", "disconnected")
SYNC_STATUSES = ("idle", "syncing", "completed", "failed")

_COLUMNS = (
    "id, company_id, app_type, app_name, external_account_id, tokens, scope, "
    "status, sync_status, error_message, details, last_sync, is_active, created_at"
)


class ConnectionStore:
    """SQL access to service_connections. Tokens are encrypted on the way in."""

    def __init__(self, db: Database, cipher: CredentialCipher) -> None:
        self.db = db
        self.cipher = cipher

    def upsert(
        self,
        company_id: str,
        app_type: str,
        app_name: str,
        external_account_id: str,
        tokens: Optional[dict[str, str]] = None,
        scope: Optional[list[str]] = None,
        details: Optional[dict[str, Any]] = None,
        status: str = "connected",
    ) -> dict[str, Any]:
        if status not in CONNECTION_STATUSES:
            raise ValueError(f"Unknown connection status: {status}")
        encrypted = {
            name: self.cipher.encrypt(value).to_document()
            for name, value in (tokens or {}).items()
            if value
        }
        with self.db.transaction() as cur:
            cur.execute(
                f"""INSERT INTO service_connections
                       (company_id, app_type, app_name, external_account_id, tokens,
                        scope, details, status, is_active, last_sync)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, TRUE, NOW())
                    ON CONFLICT (company_id, app_type, external_account_id) DO UPDATE SET
                        app_name = EXCLUDED.app_name,
                        tokens = EXCLUDED.tokens,
                        scope = EXCLUDED.scope,
                        details = EXCLUDED.details,
                        status = EXCLUDED.status,
                        error_message = NULL,
                        is_active = TRUE,
                        updated_at = NOW()
                    RETURNING {_COLUMNS}""",
                (
                    company_id,
                    app_type,
                    app_name,
                    external_account_id,
                    psycopg2.extras.Json(encrypted),
                    psycopg2.extras.Json(scope or []),
                    psycopg2.extras.Json(details or {}),
                    status,
                ),
            )
            connection = rows_to_dicts(cur)[0]
        logger.info(
            "Upserted connection for account %s", external_account_id,
            extra={"company_id": company_id, "app_type": app_type,
                   "connection_id": str(connection["id"])},
        )
        return connection

    def get(self, connection_id: str) -> dict[str, Any]:
        row = self.db.fetch_one(
            f"SELECT {_COLUMNS} FROM service_connections WHERE id = %s AND is_active",
            (connection_id,),
        )
        if row is None:
            raise NotFoundError(f"Connection {connection_id} not found")
        return row

    def find_active(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        sql = (
            f"SELECT {_COLUMNS} FROM service_connections "
            "WHERE company_id = %s AND app_type = %s AND is_active"
        )
        params: list[Any] = [company_id, app_type]
        if app_name:
            sql += " AND app_name = %s"
            params.append(app_name)
        sql += " ORDER BY created_at DESC LIMIT 1"
        return self.db.fetch_one(sql, params)

    def list_active(
        self, company_id: Optional[str] = None, app_type: Optional[str] = None
    ) -> list[dict[str, Any]]:
        sql = f"SELECT {_COLUMNS} FROM service_connections WHERE is_active"
        params: list[Any] = []
        if company_id:
            sql += " AND company_id = %s"
            params.append(company_id)
        if app_type:
            sql += " AND app_type = %s"
            params.append(app_type)
        sql += " ORDER BY company_id, app_type"
        return self.db.fetch_all(sql, params)

    def mark_sync(
        self,
        connection_id: str,
        sync_status: str,
        error_message: Optional[str] = None,
    ) -> None:
        if sync_status not in SYNC_STATUSES:
            raise ValueError(f"Unknown sync status: {sync_status}")
        sets = ["sync_status = %s", "error_message = %s", "updated_at = NOW()"]
        if sync_status == "syncing":
            sets.append("status = 'syncing'")
        elif sync_status == "completed":
            sets.extend(["status = 'connected'", "last_sync = NOW()"])
        elif sync_status == "failed":
            sets.append("status = 'error'")
        with self.db.transaction() as cur:
            cur.execute(
                f"UPDATE service_connections SET {', '.join(sets)} WHERE id = %s",
                (sync_status, error_message, connection_id),
            )

    def update_tokens(self, connection_id: str, tokens: dict[str, str]) -> None:
        """Replace the stored tokens after a vendor refresh."""
        encrypted = {
            name: self.cipher.encrypt(value).to_document()
            for name, value in tokens.items()
            if value
        }
        with self.db.transaction() as cur:
            cur.execute(
                """UPDATE service_connections
                   SET tokens = %s, updated_at = NOW()
                   WHERE id = %s""",
                (psycopg2.extras.Json(encrypted), connection_id),
            )
        logger.info("Stored refreshed tokens", extra={"connection_id": str(connection_id)})

    def deactivate(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> int:
        sql = (
            "UPDATE service_connections "
            "SET is_active = FALSE, status = 'disconnected', updated_at = NOW() "
            "WHERE company_id = %s AND app_type = %s AND is_active"
        )
        params: list[Any] = [company_id, app_type]
        if app_name:
            sql += " AND app_name = %s"
            params.append(app_name)
        with self.db.transaction() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    def decrypt_tokens(self, connection: dict[str, Any]) -> dict[str, str]:
        out: dict[str, str] = {}
        for name, doc in (connection.get("tokens") or {}).items():
            value = EncryptedValue.from_document(doc)
            if value is None:
                logger.warning("Malformed token %s on connection %s", name, connection.get("id"))
                continue
            try:
                out[name] = self.cipher.decrypt(value)
            except DecryptionError as exc:
                logger.warning("Cannot decrypt token %s: %s", name, exc)
        return out
