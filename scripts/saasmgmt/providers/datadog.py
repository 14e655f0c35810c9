"""Datadog provider: API/application key pair, users and teams."""

from __future__ import annotations

import logging
from typing import Any

import requests

from scripts.saasmgmt.config import SaasConfig
from scripts.saasmgmt.connections import ConnectionStore
from scripts.saasmgmt.crypto import mask_secret
from scripts.saasmgmt.db import Database
from scripts.saasmgmt.errors import VendorAPIError
from scripts.saasmgmt.providers.base_provider import (
    BaseProvider,
    ConnectResult,
    PlatformTeam,
    PlatformUser,
    parse_timestamp,
)

logger = logging.getLogger("saasmgmt.datadog")

DEFAULT_SITE = "datadoghq.com"
PAGE_SIZE = 100


class DatadogProvider(BaseProvider):
    APP_TYPE = "datadog"
    DISPLAY_NAME = "Datadog"

    def __init__(self, config: SaasConfig, db: Database, connections: ConnectionStore) -> None:
        super().__init__(config, db, connections)
        self._session = requests.Session()

    @staticmethod
    def _base(secrets: dict[str, str]) -> str:
        return f"https://api.{secrets.get('site') or DEFAULT_SITE}"

    @staticmethod
    def _headers(secrets: dict[str, str]) -> dict[str, str]:
        return {
            "DD-API-KEY": secrets.get("apiKey", ""),
            "DD-APPLICATION-KEY": secrets.get("applicationKey", ""),
            "Content-Type": "application/json",
        }

    def _get_all(self, path: str, secrets: dict[str, str]) -> list[dict[str, Any]]:
        """Page through a v2 collection with page[size]/page[number]."""
        items: list[dict[str, Any]] = []
        page = 0
        while True:
            resp = self._session.get(
                f"{self._base(secrets)}{path}",
                headers=self._headers(secrets),
                params={"page[size]": PAGE_SIZE, "page[number]": page},
                timeout=self.timeout,
            )
            data = self._check_response(resp, f"GET {path}").get("data") or []
            items.extend(data)
            if len(data) < PAGE_SIZE:
                return items
            page += 1

    def connect(self, company_id: str, app_name: str, fields: dict[str, str]) -> ConnectResult:
        resp = self._session.get(
            f"{self._base(fields)}/api/v1/validate",
            headers=self._headers(fields),
            timeout=self.timeout,
        )
        body = self._check_response(resp, "key validation")
        if not body.get("valid"):
            raise VendorAPIError(
                self.APP_TYPE, f"API key {mask_secret(fields.get('apiKey'))} is not valid"
            )
        site = fields.get("site") or DEFAULT_SITE
        org = fields.get("organizationName", "")
        return ConnectResult(
            external_account_id=f"{site}/{org}",
            account_name=org,
            details={"site": site, "organizationName": org},
        )

    def fetch_users(self, secrets: dict[str, str]) -> list[PlatformUser]:
        users = []
        for item in self._get_all("/api/v2/users", secrets):
            attrs = item.get("attributes", {})
            relationships = item.get("relationships", {})
            users.append(PlatformUser(
                external_id=item["id"],
                email=attrs.get("email"),
                display_name=attrs.get("name") or attrs.get("email"),
                suspended=bool(attrs.get("disabled")),
                last_activity=parse_timestamp(attrs.get("modified_at")),
                attributes={
                    "handle": attrs.get("handle"),
                    "title": attrs.get("title"),
                    "verified": attrs.get("verified"),
                    "status": attrs.get("status"),
                    "roles": [r["id"] for r in relationships.get("roles", {}).get("data", [])],
                },
            ))
        logger.info("Fetched %d Datadog users", len(users), extra={"app_type": self.APP_TYPE})
        return users

    def fetch_teams(self, secrets: dict[str, str]) -> list[PlatformTeam]:
        teams = []
        for item in self._get_all("/api/v2/team", secrets):
            attrs = item.get("attributes", {})
            teams.append(PlatformTeam(
                external_id=item["id"],
                name=attrs.get("name", ""),
                member_count=attrs.get("user_count", 0),
                attributes={
                    "handle": attrs.get("handle"),
                    "description": attrs.get("description"),
                },
            ))
        return teams
