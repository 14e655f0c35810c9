"""Slack provider: OAuth v2 workspace install and users.list sync."""

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

logger = logging.getLogger("saasmgmt.slack")

AUTHORIZE_URL = "https://slack.com/oauth/v2/authorize"
API_BASE = "https://slack.com/api"

SCOPES = [
    "channels:read",
    "groups:read",
    "users:read",
    "users:read.email",
    "team:read",
]


class SlackProvider(BaseProvider):
    APP_TYPE = "slack"
    DISPLAY_NAME = "Slack"
    OAUTH = True

    def __init__(self, config: SaasConfig, db: Database, connections: ConnectionStore) -> None:
        super().__init__(config, db, connections)
        self._session = requests.Session()

    def _redirect_uri(self, fields: dict[str, str]) -> str:
        return fields.get("redirectUri") or self.config.oauth.redirect_uri(self.APP_TYPE)

    def _call(
        self,
        method: str,
        token: Optional[str] = None,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Call a Web API method; Slack signals errors with ok=false."""
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        url = f"{API_BASE}/{method}"
        if data is not None:
            resp = self._session.post(url, data=data, headers=headers, timeout=self.timeout)
        else:
            resp = self._session.get(url, params=params, headers=headers, timeout=self.timeout)
        body = self._check_response(resp, method)
        if not body.get("ok"):
            raise VendorAPIError(self.APP_TYPE, f"{method}: {body.get('error', 'unknown error')}")
        return body

    def authorize_url(self, state: str, fields: dict[str, str]) -> str:
        query = urlencode({
            "client_id": fields["clientId"],
            "scope": ",".join(SCOPES),
            "redirect_uri": self._redirect_uri(fields),
            "state": state,
        })
        return f"{AUTHORIZE_URL}?{query}"

    def exchange_code(self, code: str, fields: dict[str, str]) -> ConnectResult:
        token_data = self._call(
            "oauth.v2.access",
            data={
                "client_id": fields["clientId"],
                "client_secret": fields["clientSecret"],
                "code": code,
                "redirect_uri": self._redirect_uri(fields),
            },
        )
        access_token = token_data["access_token"]
        team = self._call("team.info", token=access_token)["team"]

        tokens = {"accessToken": access_token}
        if token_data.get("refresh_token"):
            tokens["refreshToken"] = token_data["refresh_token"]
        return ConnectResult(
            external_account_id=team["id"],
            account_name=team.get("name", team["id"]),
            tokens=tokens,
            scope=[s for s in token_data.get("scope", "").split(",") if s],
            details={"teamId": team["id"], "domain": team.get("domain")},
        )

    def fetch_users(self, secrets: dict[str, str]) -> list[PlatformUser]:
        token = secrets.get("accessToken")
        if not token:
            raise VendorAPIError(self.APP_TYPE, "connection has no access token")

        members: list[dict] = []
        cursor = ""
        while True:
            params = {"limit": 200}
            if cursor:
                params["cursor"] = cursor
            body = self._call("users.list", token=token, params=params)
            members.extend(body.get("members", []))
            cursor = body.get("response_metadata", {}).get("next_cursor", "")
            if not cursor:
                break

        users = [
            self._to_platform_user(m)
            for m in members
            if not m.get("deleted") and not (m.get("is_bot") and not m.get("is_app_user"))
            and m.get("id") != "USLACKBOT"
        ]
        logger.info("Fetched %d Slack users", len(users), extra={"app_type": self.APP_TYPE})
        return users

    @staticmethod
    def _to_platform_user(m: dict) -> PlatformUser:
        profile = m.get("profile", {})
        return PlatformUser(
            external_id=m["id"],
            email=profile.get("email"),
            display_name=m.get("real_name") or profile.get("real_name") or m.get("name"),
            is_admin=bool(m.get("is_admin") or m.get("is_owner")),
            suspended=bool(m.get("deleted")),
            last_activity=parse_timestamp(m.get("updated")),
            attributes={
                "username": m.get("name"),
                "has2FA": bool(m.get("has_2fa")),
                "isOwner": bool(m.get("is_owner")),
                "timezone": m.get("tz"),
            },
        )
