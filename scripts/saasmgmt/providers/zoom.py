"""Zoom provider: OAuth account install, token refresh and user sync."""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import urlencode

import requests

from scripts.saasmgmt.config import SaasConfig
from scripts.saasmgmt.connections import ConnectionStore
from scripts.saasmgmt.db import Database
from scripts.saasmgmt.errors import VendorAPIError
from scripts.saasmgmt.providers.base_provider import (
    BaseProvider,
    ConnectResult,
    PlatformUser,
    parse_timestamp,
)

logger = logging.getLogger("saasmgmt.zoom")

AUTHORIZE_URL = "https://zoom.us/oauth/authorize"
TOKEN_URL = "https://zoom.us/oauth/token"
API_BASE = "https://api.zoom.us/v2"

SCOPES = [
    "user:read:admin",
    "account:read:admin",
    "report:read:admin",
]

LICENSE_TYPES = {1: "Basic", 2: "Licensed", 3: "On-prem"}


def license_type(user_type: object) -> str:
    try:
        return LICENSE_TYPES.get(int(user_type), "On-prem")
    except (TypeError, ValueError):
        return "On-prem"


class ZoomProvider(BaseProvider):
    APP_TYPE = "zoom"
    DISPLAY_NAME = "Zoom"
    OAUTH = True

    def __init__(self, config: SaasConfig, db: Database, connections: ConnectionStore) -> None:
        super().__init__(config, db, connections)
        self._session = requests.Session()

    def _redirect_uri(self, fields: dict[str, str]) -> str:
        return fields.get("redirectUri") or self.config.oauth.redirect_uri(self.APP_TYPE)

    def authorize_url(self, state: str, fields: dict[str, str]) -> str:
        query = urlencode({
            "response_type": "code",
            "client_id": fields["clientId"],
            "redirect_uri": self._redirect_uri(fields),
            "scope": " ".join(SCOPES),
            "state": state,
        })
        return f"{AUTHORIZE_URL}?{query}"

    def exchange_code(self, code: str, fields: dict[str, str]) -> ConnectResult:
        resp = self._session.post(
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._redirect_uri(fields),
            },
            auth=(fields["clientId"], fields["clientSecret"]),
            timeout=self.timeout,
        )
        token_data = self._check_response(resp, "token exchange")
        access_token = token_data.get("access_token")
        if not access_token:
            raise VendorAPIError(self.APP_TYPE, "token exchange returned no access token")

        resp = self._session.get(
            f"{API_BASE}/accounts",
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self.timeout,
        )
        accounts = self._check_response(resp, "GET /accounts").get("accounts") or []
        if not accounts:
            raise VendorAPIError(self.APP_TYPE, "no accounts found")
        account = accounts[0]

        tokens = {"accessToken": access_token}
        if token_data.get("refresh_token"):
            tokens["refreshToken"] = token_data["refresh_token"]
        return ConnectResult(
            external_account_id=str(account["id"]),
            account_name=account.get("account_name") or str(account["id"]),
            tokens=tokens,
            scope=[s for s in token_data.get("scope", "").split(" ") if s],
            details={
                "accountType": account.get("account_type") or "basic",
                "planType": account.get("plan_type") or "basic",
            },
        )

    def refresh_tokens(
        self, connection: dict[str, Any], secrets: dict[str, str]
    ) -> Optional[dict[str, str]]:
        """Trade the refresh token for a new pair; Zoom rotates both on every refresh."""
        refresh_token = secrets.get("refreshToken")
        if not refresh_token or not secrets.get("clientId") or not secrets.get("clientSecret"):
            return None
        resp = self._session.post(
            TOKEN_URL,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth=(secrets["clientId"], secrets["clientSecret"]),
            timeout=self.timeout,
        )
        token_data = self._check_response(resp, "token refresh")
        access_token = token_data.get("access_token")
        if not access_token:
            raise VendorAPIError(self.APP_TYPE, "token refresh returned no access token")

        tokens = {
            "accessToken": access_token,
            "refreshToken": token_data.get("refresh_token") or refresh_token,
        }
        self.connections.update_tokens(str(connection["id"]), tokens)
        logger.info(
            "Refreshed Zoom access token",
            extra={"app_type": self.APP_TYPE, "connection_id": str(connection["id"])},
        )
        return tokens

    def fetch_users(self, secrets: dict[str, str]) -> list[PlatformUser]:
        token = secrets.get("accessToken")
        if not token:
            raise VendorAPIError(self.APP_TYPE, "connection has no access token")

        raw_users: list[dict] = []
        params = {"status": "active", "page_size": 300}
        while True:
            resp = self._session.get(
                f"{API_BASE}/users",
                headers={"Authorization": f"Bearer {token}"},
                params=params,
                timeout=self.timeout,
            )
            body = self._check_response(resp, "GET /users")
            raw_users.extend(body.get("users", []))
            next_token = body.get("next_page_token")
            if not next_token:
                break
            params = {**params, "next_page_token": next_token}

        users = [self._to_platform_user(u) for u in raw_users]
        logger.info("Fetched %d Zoom users", len(users), extra={"app_type": self.APP_TYPE})
        return users

    @staticmethod
    def _to_platform_user(u: dict) -> PlatformUser:
        name = u.get("display_name") or f"{u.get('first_name', '')} {u.get('last_name', '')}".strip()
        return PlatformUser(
            external_id=u["id"],
            email=u.get("email"),
            display_name=name or None,
            is_admin=u.get("role_name") in ("Owner", "Admin"),
            suspended=u.get("status") != "active",
            last_activity=parse_timestamp(u.get("last_login_time")),
            attributes={
                "licenseType": license_type(u.get("type")),
                "userType": u.get("type"),
                "status": u.get("status"),
                "department": u.get("dept"),
            },
        )
