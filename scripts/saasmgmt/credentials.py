"""Encrypted per-company credential sets.

A credential set is unique per (company_id, app_type, app_name). Sensitive
fields are stored as AES-GCM triples; everything else is stored as given.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import psycopg2.extras

from scripts.saasmgmt.crypto import CredentialCipher, EncryptedValue
from scripts.saasmgmt.db import Database, rows_to_dicts
from scripts.saasmgmt.errors import DecryptionError, ValidationError
from scripts.saasmgmt.validators import (
    CredentialRequirements,
    CredentialValidation,
    get_credential_requirements,
    is_sensitive_field,
    validate_credentials,
)

logger = logging.getLogger("saasmgmt.credentials")

_COLUMNS = "id, company_id, app_type, app_name, credentials, is_active, created_by, created_at, updated_at"


class CredentialStore:
    """SQL access to the app_credentials table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def upsert(
        self,
        company_id: str,
        app_type: str,
        app_name: str,
        credentials: dict[str, Any],
        user_id: Optional[str],
    ) -> dict[str, Any]:
        with self.db.transaction() as cur:
            cur.execute(
                f"""INSERT INTO app_credentials
                       (company_id, app_type, app_name, credentials, is_active, created_by)
                    VALUES (%s, %s, %s, %s, TRUE, %s)
                    ON CONFLICT (company_id, app_type, app_name) DO UPDATE SET
                        credentials = EXCLUDED.credentials,
                        is_active = TRUE,
                        created_by = EXCLUDED.created_by,
                        updated_at = NOW()
                    RETURNING {_COLUMNS}""",
                (company_id, app_type, app_name, psycopg2.extras.Json(credentials), user_id),
            )
            return rows_to_dicts(cur)[0]

    def find_active(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        sql = (
            f"SELECT {_COLUMNS} FROM app_credentials "
            "WHERE company_id = %s AND app_type = %s AND is_active"
        )
        params: list[Any] = [company_id, app_type]
        if app_name:
            sql += " AND app_name = %s"
            params.append(app_name)
        sql += " ORDER BY updated_at DESC LIMIT 1"
        return self.db.fetch_one(sql, params)

    def list_active(self, company_id: str) -> list[dict[str, Any]]:
        return self.db.fetch_all(
            f"SELECT {_COLUMNS} FROM app_credentials "
            "WHERE company_id = %s AND is_active ORDER BY app_type, app_name",
            (company_id,),
        )

    def deactivate(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> int:
        sql = (
            "UPDATE app_credentials SET is_active = FALSE, updated_at = NOW() "
            "WHERE company_id = %s AND app_type = %s AND is_active"
        )
        params: list[Any] = [company_id, app_type]
        if app_name:
            sql += " AND app_name = %s"
            params.append(app_name)
        with self.db.transaction() as cur:
            cur.execute(sql, params)
            return cur.rowcount


class CredentialsService:
    """Save, validate and decrypt credential sets.

    ``on_saved`` is called with (company_id, app_type, app_name) after every
    successful save so that a connection can be established; its failures are
    logged and never fail the save.
    """

    def __init__(
        self,
        store: CredentialStore,
        cipher: CredentialCipher,
        on_saved: Optional[Callable[[str, str, str], Any]] = None,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.on_saved = on_saved

    def validate_credentials(self, app_type: str, fields: dict[str, str]) -> CredentialValidation:
        return validate_credentials(app_type, fields)

    def get_credential_requirements(self, app_type: str) -> Optional[CredentialRequirements]:
        return get_credential_requirements(app_type)

    def save_credentials(
        self,
        company_id: str,
        app_type: str,
        app_name: str,
        fields: dict[str, str],
        user_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Validate, encrypt and upsert a credential set.

        Raises ValidationError when a required field is missing or blank; nothing
        is written in that case.
        """
        cleaned = {
            name: value.strip()
            for name, value in fields.items()
            if isinstance(value, str) and value.strip()
        }
        validation = validate_credentials(app_type, cleaned)
        if not validation.is_valid:
            raise ValidationError(app_type, validation.missing_fields)

        stored: dict[str, Any] = {
            name: self.cipher.encrypt(value).to_document() if is_sensitive_field(name) else value
            for name, value in cleaned.items()
        }

        record = self.store.upsert(company_id, app_type, app_name, stored, user_id)
        logger.info(
            "Saved credential set %s with fields %s",
            app_name, sorted(stored),
            extra={"company_id": company_id, "app_type": app_type},
        )

        if self.on_saved is not None:
            try:
                self.on_saved(company_id, app_type, app_name)
            except Exception as exc:
                logger.warning(
                    "Connection sync after save failed: %s", exc,
                    extra={"company_id": company_id, "app_type": app_type},
                )
        return record

    def decrypt_fields(self, stored: dict[str, Any], app_type: str = "") -> dict[str, str]:
        """Decrypt each field on its own, skipping corrupted values."""
        out: dict[str, str] = {}
        for name, value in (stored or {}).items():
            if isinstance(value, str) and not is_sensitive_field(name):
                out[name] = value
                continue
            encrypted = EncryptedValue.from_document(value)
            if encrypted is None:
                logger.warning(
                    "Invalid encrypted credential format for %s, skipping", name,
                    extra={"app_type": app_type},
                )
                continue
            try:
                out[name] = self.cipher.decrypt(encrypted)
            except DecryptionError as exc:
                logger.warning(
                    "Failed to decrypt credential %s, skipping: %s", name, exc,
                    extra={"app_type": app_type},
                )
        return out

    def get_decrypted_credentials(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> Optional[dict[str, str]]:
        record = self.store.find_active(company_id, app_type, app_name)
        if record is None:
            return None
        decrypted = self.decrypt_fields(record.get("credentials") or {}, app_type)
        if not decrypted:
            logger.warning(
                "No usable credential fields in %s", record.get("app_name"),
                extra={"company_id": company_id, "app_type": app_type},
            )
            return None
        return decrypted

    def get_credentials(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """The stored record with every field value masked."""
        record = self.store.find_active(company_id, app_type, app_name)
        if record is None:
            return None
        return _masked(record)

    def get_all_credentials(self, company_id: str) -> list[dict[str, Any]]:
        return [_masked(r) for r in self.store.list_active(company_id)]

    def has_credentials(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> bool:
        record = self.store.find_active(company_id, app_type, app_name)
        return record is not None and bool(record.get("credentials"))

    def delete_credentials(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> int:
        return self.store.deactivate(company_id, app_type, app_name)


def _masked(record: dict[str, Any]) -> dict[str, Any]:
    creds = record.get("credentials") or {}
    return {
        "id": str(record.get("id")),
        "appType": record.get("app_type"),
        "appName": record.get("app_name"),
        "isActive": record.get("is_active", True),
        "createdAt": record.get("created_at"),
        "hasCredentials": bool(creds),
        "credentials": {k: ("***" if v else None) for k, v in creds.items()},
    }
