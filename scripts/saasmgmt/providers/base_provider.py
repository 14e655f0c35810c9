"""Abstract base class for all vendor providers."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import psycopg2.extras
import requests

from scripts.saasmgmt.config import SaasConfig
from scripts.saasmgmt.connections import ConnectionStore
from scripts.saasmgmt.db import Database
from scripts.saasmgmt.errors import VendorAPIError
from scripts.saasmgmt.validators import CredentialValidation, validate_credentials

logger = logging.getLogger("saasmgmt.provider")


@dataclass
class PlatformUser:
    external_id: str
    email: Optional[str]
    display_name: Optional[str] = None
    is_admin: bool = False
    suspended: bool = False
    last_activity: Optional[datetime] = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class PlatformTeam:
    external_id: str
    name: str
    member_count: Optional[int] = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class PlatformResource:
    """An inventoried vendor object such as a repository or a cost line."""

    external_id: str
    resource_type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectResult:
    """What a successful connect or OAuth code exchange yields."""

    external_account_id: str
    account_name: str
    tokens: dict[str, str] = field(default_factory=dict)
    scope: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Vendor timestamps come as ISO-8601 strings, epoch seconds or datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc) if value > 0 else None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable timestamp %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class BaseProvider(ABC):
    """Each provider declares APP_TYPE and implements fetch_users().

    Direct-connect vendors override connect(); OAuth vendors set OAUTH and
    override authorize_url() and exchange_code() instead.
    """

    APP_TYPE: str = ""
    DISPLAY_NAME: str = ""
    OAUTH: bool = False

    def __init__(
        self,
        config: SaasConfig,
        db: Database,
        connections: ConnectionStore,
    ) -> None:
        self.config = config
        self.db = db
        self.connections = connections
        self.batch_size = config.batch_size
        self.timeout = config.http_timeout_s

    # ------------------------------------------------------------------
    # Capability triple: validate / connect-or-exchange / sync
    # ------------------------------------------------------------------

    def validate(self, fields: dict[str, str]) -> CredentialValidation:
        return validate_credentials(self.APP_TYPE, fields)

    def connect(self, company_id: str, app_name: str, fields: dict[str, str]) -> ConnectResult:
        raise NotImplementedError(f"{self.APP_TYPE} connects through OAuth")

    def authorize_url(self, state: str, fields: dict[str, str]) -> str:
        raise NotImplementedError(f"{self.APP_TYPE} does not use OAuth")

    def exchange_code(self, code: str, fields: dict[str, str]) -> ConnectResult:
        raise NotImplementedError(f"{self.APP_TYPE} does not use OAuth")

    @abstractmethod
    def fetch_users(self, secrets: dict[str, str]) -> list[PlatformUser]:
        """Pull every user from the vendor, normalized."""

    def fetch_teams(self, secrets: dict[str, str]) -> list[PlatformTeam]:
        return []

    def fetch_resources(self, secrets: dict[str, str]) -> list[PlatformResource]:
        return []

    def refresh_tokens(
        self, connection: dict[str, Any], secrets: dict[str, str]
    ) -> Optional[dict[str, str]]:
        """Renew an expired access token and store it on the connection.

        Returns the new tokens, or None when the vendor has nothing to refresh.
        """
        return None

    def _fetch_users_refreshing(
        self, connection: dict[str, Any], secrets: dict[str, str]
    ) -> tuple[list[PlatformUser], dict[str, str]]:
        """fetch_users(), retried once with refreshed tokens after an HTTP 401."""
        try:
            return self.fetch_users(secrets), secrets
        except VendorAPIError as exc:
            if exc.status_code != 401:
                raise
            tokens = self.refresh_tokens(connection, secrets)
            if not tokens:
                raise
        logger.info(
            "Access token rejected, retrying with refreshed tokens",
            extra={"app_type": self.APP_TYPE, "connection_id": str(connection["id"])},
        )
        secrets = {**secrets, **tokens}
        return self.fetch_users(secrets), secrets

    def sync(self, connection: dict[str, Any], fields: dict[str, str]) -> dict[str, int]:
        """Pull users, teams and resources and replace this connection's rows.

        ``fields`` are the decrypted credentials; connection tokens override
        them where both carry the same name. Rows the vendor no longer
        returns are deactivated, scoped to this connection.
        """
        secrets = {**fields, **self.connections.decrypt_tokens(connection)}
        users, secrets = self._fetch_users_refreshing(connection, secrets)
        teams = self.fetch_teams(secrets)
        resources = self.fetch_resources(secrets)

        company_id = connection["company_id"]
        connection_id = str(connection["id"])
        with self.db.transaction() as cur:
            user_count = self._upsert_users(cur, company_id, connection_id, users)
            self._deactivate_missing(
                cur, "platform_users", company_id, connection_id, [u.external_id for u in users]
            )
            team_count = self._upsert_teams(cur, company_id, connection_id, teams)
            self._deactivate_missing(
                cur, "platform_teams", company_id, connection_id, [t.external_id for t in teams]
            )
            resource_count = self._upsert_resources(cur, company_id, connection_id, resources)
            self._deactivate_missing(
                cur, "platform_resources", company_id, connection_id,
                [r.external_id for r in resources],
            )

        results = {"users": user_count}
        if teams:
            results["teams"] = team_count
        if resources:
            results["resources"] = resource_count
        return results

    def sync_with_tracking(
        self, connection: dict[str, Any], fields: dict[str, str]
    ) -> dict[str, int]:
        """Wrap sync() with sync_runs tracking and connection sync status.

        Failures are recorded and re-raised as VendorAPIError; nothing is
        retried.
        """
        company_id = connection["company_id"]
        connection_id = str(connection["id"])
        log_extra = {
            "company_id": company_id,
            "app_type": self.APP_TYPE,
            "connection_id": connection_id,
        }
        run_id = self.db.record_run_start(company_id, self.APP_TYPE, connection_id)
        self.connections.mark_sync(connection_id, "syncing")
        started = time.monotonic()
        try:
            results = self.sync(connection, fields)
        except Exception as exc:
            error = exc if isinstance(exc, VendorAPIError) else VendorAPIError(self.APP_TYPE, str(exc))
            message = str(error)[:1000]
            self.db.record_run_end(run_id, "FAILED", error_message=message)
            self.connections.mark_sync(connection_id, "failed", message)
            logger.error("Sync failed: %s", message, extra={**log_extra, "run_id": run_id})
            if error is exc:
                raise
            raise error from exc

        total = sum(results.values())
        self.db.record_run_end(run_id, "SUCCESS", records_upserted=total)
        self.connections.mark_sync(connection_id, "completed")
        logger.info(
            "Sync complete",
            extra={
                **log_extra,
                "run_id": run_id,
                "records": total,
                "duration_s": round(time.monotonic() - started, 3),
            },
        )
        return results

    # ------------------------------------------------------------------
    # HTTP / persistence helpers
    # ------------------------------------------------------------------

    def _check_response(self, resp: requests.Response, what: str) -> Any:
        """Return the decoded JSON body or raise VendorAPIError."""
        if not resp.ok:
            raise VendorAPIError(
                self.APP_TYPE,
                f"{what} failed with HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise VendorAPIError(self.APP_TYPE, f"{what} returned invalid JSON") from exc

    def _batch_rows(self, rows: list[Any], size: int | None = None) -> list[list[Any]]:
        """Split rows into batches of the configured size."""
        size = size or self.batch_size
        return [rows[i : i + size] for i in range(0, len(rows), size)]

    def _upsert_users(
        self, cur, company_id: str, connection_id: str, users: list[PlatformUser]
    ) -> int:
        columns = [
            "company_id", "app_type", "connection_id", "external_id", "email",
            "display_name", "is_admin", "suspended", "last_activity",
            "attributes", "is_active",
        ]
        rows = [
            (
                company_id,
                self.APP_TYPE,
                connection_id,
                u.external_id,
                u.email.strip() if u.email else None,
                u.display_name,
                u.is_admin,
                u.suspended,
                u.last_activity,
                psycopg2.extras.Json(u.attributes),
                True,
            )
            for u in users
        ]
        return self._upsert_rows(cur, "platform_users", columns, rows)

    def _upsert_teams(
        self, cur, company_id: str, connection_id: str, teams: list[PlatformTeam]
    ) -> int:
        columns = [
            "company_id", "app_type", "connection_id", "external_id",
            "name", "member_count", "attributes", "is_active",
        ]
        rows = [
            (
                company_id,
                self.APP_TYPE,
                connection_id,
                t.external_id,
                t.name,
                t.member_count,
                psycopg2.extras.Json(t.attributes),
                True,
            )
            for t in teams
        ]
        return self._upsert_rows(cur, "platform_teams", columns, rows)

    def _upsert_resources(
        self, cur, company_id: str, connection_id: str, resources: list[PlatformResource]
    ) -> int:
        columns = [
            "company_id", "app_type", "connection_id", "external_id",
            "resource_type", "name", "attributes", "is_active",
        ]
        rows = [
            (
                company_id,
                self.APP_TYPE,
                connection_id,
                r.external_id,
                r.resource_type,
                r.name,
                psycopg2.extras.Json(r.attributes),
                True,
            )
            for r in resources
        ]
        return self._upsert_rows(cur, "platform_resources", columns, rows)

    def _upsert_rows(self, cur, table: str, columns: list[str], rows: list[tuple]) -> int:
        # The first four columns are the primary key of every platform table.
        total = 0
        for batch in self._batch_rows(rows):
            total += self.db.upsert_batch(
                cur, table, columns, batch,
                conflict_columns=columns[:4],
                update_columns=columns[4:],
            )
        return total

    def _deactivate_missing(
        self, cur, table: str, company_id: str, connection_id: str, seen_ids: list[str]
    ) -> None:
        cur.execute(
            f"""UPDATE {table} SET is_active = FALSE, updated_at = NOW()
                WHERE company_id = %s AND app_type = %s AND connection_id = %s
                  AND is_active AND NOT (external_id = ANY(%s))""",
            (company_id, self.APP_TYPE, connection_id, seen_ids),
        )
