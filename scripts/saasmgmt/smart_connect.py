"""Smart-connect: decide whether a service needs setup, OAuth or a direct connect.

States per (company, app type):

    setup-required -> credentials-invalid | available -> connected | error

Every public method returns a ``{success, action|status, message, ...}`` dict
and never raises for vendor or credential problems.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

import requests

from scripts.saasmgmt.config import OAuthConfig
from scripts.saasmgmt.connections import ConnectionStore
from scripts.saasmgmt.credentials import CredentialsService
from scripts.saasmgmt.errors import SaasMgmtError, ValidationError
from scripts.saasmgmt.providers import APP_TYPES
from scripts.saasmgmt.providers.base_provider import BaseProvider, ConnectResult
from scripts.saasmgmt.state_token import decode_state, encode_state

if TYPE_CHECKING:
    from scripts.saasmgmt.scheduler import SyncScheduler

logger = logging.getLogger("saasmgmt.smart_connect")

ACTION_TEXT = {
    "setup-required": "Set up credentials",
    "credentials-invalid": "Fix credentials",
    "available": "Connect",
    "connected": "Manage",
    "error": "Reconnect",
}

# A connection in any of these states counts as live.
LIVE_CONNECTION_STATUSES = ("connected", "syncing")


DisconnectTarget = tuple[str, Callable[[str, str, Optional[str]], int]]


class SmartConnectService:
    """Connect state machine over credential sets and their connections.

    A connection carries the ``app_name`` of the credential set it was made
    from, so a company can hold several sets for one vendor (two GitHub
    organizations, say) and each is connected and reported on its own.
    """

    def __init__(
        self,
        credentials: CredentialsService,
        connections: ConnectionStore,
        provider_factory: Callable[[str], BaseProvider],
        oauth: OAuthConfig,
        state_key: bytes,
        scheduler: Optional["SyncScheduler"] = None,
        disconnect_targets: Optional[list[DisconnectTarget]] = None,
    ) -> None:
        self.credentials = credentials
        self.connections = connections
        self.provider_factory = provider_factory
        self.oauth = oauth
        self.state_key = state_key
        self.scheduler = scheduler
        # Cleaned up in order after the credential set on disconnect.
        self.disconnect_targets: list[DisconnectTarget] = (
            list(disconnect_targets)
            if disconnect_targets is not None
            else [("service_connections", connections.deactivate)]
        )

    def _credential_set_name(
        self, company_id: str, app_type: str, app_name: Optional[str]
    ) -> Optional[str]:
        record = self.credentials.get_credentials(company_id, app_type, app_name)
        if record is None or not record["hasCredentials"]:
            return None
        return record["appName"]

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_service_status(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> dict[str, Any]:
        provider = self.provider_factory(app_type)
        set_name = self._credential_set_name(company_id, app_type, app_name)
        has_credentials = set_name is not None
        connection = self.connections.find_active(company_id, app_type, set_name or app_name)

        if not has_credentials:
            status = "setup-required"
        else:
            fields = self.credentials.get_decrypted_credentials(company_id, app_type, set_name)
            if fields is None or not provider.validate(fields).is_valid:
                status = "credentials-invalid"
            elif connection is not None and connection.get("status") == "error":
                status = "error"
            elif connection is not None and connection.get("status") in LIVE_CONNECTION_STATUSES:
                status = "connected"
            else:
                status = "available"

        return {
            "id": app_type,
            "name": provider.DISPLAY_NAME,
            "appName": set_name,
            "status": status,
            "hasCredentials": has_credentials,
            "hasActiveConnection": connection is not None,
            "actionText": ACTION_TEXT[status],
            "lastSync": connection.get("last_sync") if connection else None,
        }

    def get_services_status(self, company_id: str) -> list[dict[str, Any]]:
        return [self.get_service_status(company_id, app_type) for app_type in APP_TYPES]

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    def smart_connect(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> dict[str, Any]:
        if app_type not in APP_TYPES:
            return _response(False, "error", f"Unsupported service: {app_type}")
        provider = self.provider_factory(app_type)

        set_name = self._credential_set_name(company_id, app_type, app_name)
        if set_name is None:
            return _response(
                False, "setup-required",
                f"Add {provider.DISPLAY_NAME} credentials before connecting",
            )
        fields = self.credentials.get_decrypted_credentials(company_id, app_type, set_name)
        if fields is None:
            return _response(
                False, "credentials-invalid",
                f"Stored {provider.DISPLAY_NAME} credentials could not be decrypted; please re-enter them",
            )
        validation = provider.validate(fields)
        if not validation.is_valid:
            return _response(
                False, "credentials-invalid",
                f"Missing required fields: {', '.join(validation.missing_fields)}",
            )

        existing = self.connections.find_active(company_id, app_type, set_name)
        if existing is not None and existing.get("status") in LIVE_CONNECTION_STATUSES:
            return _response(
                True, "already-connected",
                f"{provider.DISPLAY_NAME} is already connected",
                data=_connection_summary(existing),
            )

        if provider.OAUTH:
            state = encode_state(company_id, app_type, self.state_key, app_name=set_name)
            return _response(
                True, "oauth-redirect",
                f"Redirecting to {provider.DISPLAY_NAME} for authorization",
                redirectUrl=provider.authorize_url(state, fields),
            )
        return self._connect_direct(provider, company_id, set_name, fields)

    def _connect_direct(
        self,
        provider: BaseProvider,
        company_id: str,
        app_name: str,
        fields: dict[str, str],
    ) -> dict[str, Any]:
        log_extra = {"company_id": company_id, "app_type": provider.APP_TYPE}
        try:
            result = provider.connect(company_id, app_name, fields)
        except ValidationError as exc:
            logger.warning("Connect rejected credentials: %s", exc, extra=log_extra)
            return _response(False, "credentials-invalid", str(exc))
        except (SaasMgmtError, requests.RequestException) as exc:
            logger.error("Connect failed: %s", exc, extra=log_extra)
            return _response(False, "error", str(exc))

        connection = self._store_connection(company_id, provider.APP_TYPE, app_name, result)
        return _response(
            True, "connected",
            f"{provider.DISPLAY_NAME} connected successfully",
            data=_connection_summary(connection),
        )

    def complete_oauth(self, app_type: str, code: str, state: str) -> dict[str, Any]:
        """Finish an OAuth redirect: check state, exchange the code, store the connection."""
        if app_type not in APP_TYPES:
            return _response(False, "error", f"Unsupported service: {app_type}")
        try:
            decoded = decode_state(state, app_type, self.oauth.state_ttl_seconds, self.state_key)
        except SaasMgmtError as exc:
            logger.warning("Rejected OAuth callback: %s", exc, extra={"app_type": app_type})
            return _response(False, "error", str(exc))

        company_id = decoded.company_id
        provider = self.provider_factory(app_type)
        set_name = self._credential_set_name(company_id, app_type, decoded.app_name)
        fields = (
            self.credentials.get_decrypted_credentials(company_id, app_type, set_name)
            if set_name is not None
            else None
        )
        if fields is None:
            return _response(
                False, "setup-required",
                f"{provider.DISPLAY_NAME} credentials not found for this company",
            )
        try:
            result = provider.exchange_code(code, fields)
        except (SaasMgmtError, requests.RequestException) as exc:
            logger.error(
                "OAuth code exchange failed: %s", exc,
                extra={"company_id": company_id, "app_type": app_type},
            )
            return _response(False, "error", str(exc))

        connection = self._store_connection(company_id, app_type, set_name, result)
        return _response(
            True, "connected",
            f"{provider.DISPLAY_NAME} connected successfully",
            data=_connection_summary(connection),
        )

    def sync_credentials_to_connection(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Re-establish a direct connection after credentials change.

        OAuth vendors need a user redirect, so nothing happens for them.
        """
        if app_type not in APP_TYPES:
            return None
        provider = self.provider_factory(app_type)
        if provider.OAUTH:
            logger.info(
                "Credentials saved; OAuth connect is user initiated",
                extra={"company_id": company_id, "app_type": app_type},
            )
            return None
        set_name = self._credential_set_name(company_id, app_type, app_name)
        if set_name is None:
            return None
        fields = self.credentials.get_decrypted_credentials(company_id, app_type, set_name)
        if fields is None or not provider.validate(fields).is_valid:
            return None
        return self._connect_direct(provider, company_id, set_name, fields)

    def _store_connection(
        self, company_id: str, app_type: str, app_name: str, result: ConnectResult
    ) -> dict[str, Any]:
        connection = self.connections.upsert(
            company_id=company_id,
            app_type=app_type,
            app_name=app_name,
            external_account_id=result.external_account_id,
            tokens=result.tokens,
            scope=result.scope,
            details={**result.details, "accountName": result.account_name},
        )
        if self.scheduler is not None:
            self.scheduler.schedule_connection(company_id, app_type)
        return connection

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect_service(
        self, company_id: str, app_type: str, app_name: Optional[str] = None
    ) -> dict[str, Any]:
        """Best-effort soft delete of credentials and connections.

        Without ``app_name`` every credential set of the vendor goes. Each
        deletion is attempted on its own; failures are collected in
        ``errors`` and only successful deletions are counted. The sync job
        is cancelled once no connection of the vendor is left.
        """
        result: dict[str, Any] = {
            "credentialsDeleted": 0,
            "connectionsDeleted": 0,
            "errors": [],
        }
        log_extra = {"company_id": company_id, "app_type": app_type}

        try:
            result["credentialsDeleted"] = self.credentials.delete_credentials(
                company_id, app_type, app_name
            )
        except Exception as exc:
            logger.error("Credential delete failed: %s", exc, extra=log_extra)
            result["errors"].append(f"credentials: {exc}")

        for target, deactivate in self.disconnect_targets:
            try:
                result["connectionsDeleted"] += deactivate(company_id, app_type, app_name)
            except Exception as exc:
                logger.error("Disconnect of %s failed: %s", target, exc, extra=log_extra)
                result["errors"].append(f"{target}: {exc}")

        if self.scheduler is not None:
            try:
                if self.connections.find_active(company_id, app_type) is None:
                    self.scheduler.cancel_connection(company_id, app_type)
            except Exception as exc:
                result["errors"].append(f"scheduler: {exc}")

        logger.info(
            "Disconnected service: %d credential sets, %d connections, %d errors",
            result["credentialsDeleted"], result["connectionsDeleted"], len(result["errors"]),
            extra=log_extra,
        )
        return result


def _response(success: bool, action: str, message: str, **extra: Any) -> dict[str, Any]:
    out = {"success": success, "action": action, "message": message}
    out.update({k: v for k, v in extra.items() if v is not None})
    return out


def _connection_summary(connection: dict[str, Any]) -> dict[str, Any]:
    details = connection.get("details") or {}
    return {
        "connectionId": str(connection.get("id")),
        "externalAccountId": connection.get("external_account_id"),
        "appName": connection.get("app_name"),
        "accountName": details.get("accountName") or connection.get("app_name"),
        "status": connection.get("status"),
        "lastSync": connection.get("last_sync"),
    }
