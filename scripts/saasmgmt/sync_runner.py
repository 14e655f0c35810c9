"""Run vendor syncs for active connections, isolating failures per connection."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from scripts.saasmgmt.connections import ConnectionStore
from scripts.saasmgmt.credentials import CredentialsService
from scripts.saasmgmt.errors import NotFoundError, SaasMgmtError
from scripts.saasmgmt.providers import APP_TYPES
from scripts.saasmgmt.providers.base_provider import BaseProvider

logger = logging.getLogger("saasmgmt.sync")


class SyncRunner:
    def __init__(
        self,
        credentials: CredentialsService,
        connections: ConnectionStore,
        provider_factory: Callable[[str], BaseProvider],
    ) -> None:
        self.credentials = credentials
        self.connections = connections
        self.provider_factory = provider_factory

    def sync_connection(self, connection: dict[str, Any]) -> dict[str, int]:
        """Sync one connection with the credential set it was made from."""
        company_id = connection["company_id"]
        app_type = connection["app_type"]
        # OAuth vendors sync from connection tokens; credentials may be absent.
        fields = self.credentials.get_decrypted_credentials(
            company_id, app_type, connection.get("app_name")
        ) or {}
        provider = self.provider_factory(app_type)
        return provider.sync_with_tracking(connection, fields)

    def sync_service(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> dict[str, int]:
        """Sync one vendor connection. Raises NotFoundError or VendorAPIError."""
        connection = self.connections.find_active(company_id, app_type, app_name)
        if connection is None:
            raise NotFoundError(f"No active {app_type} connection for company {company_id}")
        return self.sync_connection(connection)

    def sync_company(
        self, company_id: str, app_types: Optional[list[str]] = None
    ) -> dict[str, dict[str, Any]]:
        """Sync every active connection; one failing does not stop the rest.

        Results are keyed ``"<app_type>:<app_name>"``.
        """
        wanted = app_types or APP_TYPES
        targets = [
            c for c in self.connections.list_active(company_id=company_id)
            if c["app_type"] in wanted
        ]

        results: dict[str, dict[str, Any]] = {}
        for connection in targets:
            label = f"{connection['app_type']}:{connection['app_name']}"
            try:
                results[label] = self.sync_connection(connection)
            except SaasMgmtError as exc:
                logger.error(
                    "Sync failed, continuing with remaining connections: %s", exc,
                    extra={
                        "company_id": company_id,
                        "app_type": connection["app_type"],
                        "connection_id": str(connection["id"]),
                    },
                )
                results[label] = {"error": str(exc)}
        return results
