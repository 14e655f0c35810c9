"""GitHub provider: personal access token, org members, teams, repositories."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import requests

from scripts.saasmgmt.config import SaasConfig
from scripts.saasmgmt.connections import ConnectionStore
from scripts.saasmgmt.crypto import mask_secret
from scripts.saasmgmt.db import Database
from scripts.saasmgmt.errors import VendorAPIError
from scripts.saasmgmt.providers.base_provider import (
    BaseProvider,
    ConnectResult,
    PlatformResource,
    PlatformTeam,
    PlatformUser,
    parse_timestamp,
)

logger = logging.getLogger("saasmgmt.github")

DEFAULT_API_URL = "https://api.github.com"


class GitHubProvider(BaseProvider):
    APP_TYPE = "github"
    DISPLAY_NAME = "GitHub"

    def __init__(self, config: SaasConfig, db: Database, connections: ConnectionStore) -> None:
        super().__init__(config, db, connections)
        self._session = requests.Session()
        self._session.headers.update({
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })

    def _base(self, secrets: dict[str, str]) -> str:
        return (secrets.get("apiUrl") or DEFAULT_API_URL).rstrip("/")

    def _headers(self, secrets: dict[str, str]) -> dict[str, str]:
        return {"Authorization": f"token {secrets.get('personalAccessToken', '')}"}

    def _get_paginated(
        self, url: str, secrets: dict[str, str], params: Optional[dict] = None
    ) -> list[dict]:
        """Fetch all pages from a GitHub REST API endpoint."""
        results: list[dict] = []
        params = dict(params or {})
        params.setdefault("per_page", "100")

        while url:
            resp = self._session.get(
                url, params=params, headers=self._headers(secrets), timeout=self.timeout
            )
            if resp.status_code == 403 and "rate limit" in resp.text.lower():
                reset = int(resp.headers.get("X-RateLimit-Reset", "0"))
                raise VendorAPIError(
                    self.APP_TYPE,
                    f"rate limit exceeded, resets in {max(reset - int(time.time()), 0)}s",
                    status_code=403,
                )
            data = self._check_response(resp, f"GET {url}")
            if isinstance(data, list):
                results.extend(data)
            else:
                results.append(data)

            # Follow Link header for pagination
            url = ""
            params = {}
            link = resp.headers.get("Link", "")
            for part in link.split(","):
                if 'rel="next"' in part:
                    url = part.split(";")[0].strip().strip("<>")
                    break
        return results

    def _get(self, url: str, secrets: dict[str, str]) -> dict[str, Any]:
        resp = self._session.get(url, headers=self._headers(secrets), timeout=self.timeout)
        return self._check_response(resp, f"GET {url}")

    def connect(self, company_id: str, app_name: str, fields: dict[str, str]) -> ConnectResult:
        """Validate the token against GET /user."""
        try:
            me = self._get(f"{self._base(fields)}/user", fields)
        except VendorAPIError as exc:
            raise VendorAPIError(
                self.APP_TYPE,
                f"Token {mask_secret(fields.get('personalAccessToken'))} was rejected",
                status_code=exc.status_code,
            ) from exc
        org = fields.get("organization")
        logger.info(
            "Validated GitHub token for %s", me.get("login"),
            extra={"company_id": company_id, "app_type": self.APP_TYPE},
        )
        return ConnectResult(
            external_account_id=org or str(me["id"]),
            account_name=org or me.get("login", "GitHub"),
            scope=["repo", "admin:org", "user"],
            details={
                "login": me.get("login"),
                "userId": me.get("id"),
                "organization": org,
                "apiUrl": self._base(fields),
            },
        )

    def fetch_users(self, secrets: dict[str, str]) -> list[PlatformUser]:
        base = self._base(secrets)
        org = secrets.get("organization")
        if org:
            members = self._get_paginated(f"{base}/orgs/{org}/members", secrets)
        else:
            members = [self._get(f"{base}/user", secrets)]

        users: list[PlatformUser] = []
        for member in members:
            login = member.get("login", "")
            try:
                detail = self._get(f"{base}/users/{login}", secrets)
            except VendorAPIError as exc:
                logger.warning("Falling back to member summary for %s: %s", login, exc)
                detail = member
            users.append(PlatformUser(
                external_id=str(detail.get("id", member.get("id"))),
                email=detail.get("email"),
                display_name=detail.get("name") or login,
                is_admin=bool(detail.get("site_admin")),
                suspended=bool(detail.get("suspended_at")),
                last_activity=parse_timestamp(detail.get("updated_at")),
                attributes={
                    "login": login,
                    "type": detail.get("type"),
                    "company": detail.get("company"),
                    "publicRepos": detail.get("public_repos"),
                },
            ))
        logger.info("Fetched %d GitHub users", len(users), extra={"app_type": self.APP_TYPE})
        return users

    def fetch_teams(self, secrets: dict[str, str]) -> list[PlatformTeam]:
        org = secrets.get("organization")
        if not org:
            return []
        base = self._base(secrets)
        teams: list[PlatformTeam] = []
        for team in self._get_paginated(f"{base}/orgs/{org}/teams", secrets):
            slug = team.get("slug", "")
            members = self._get_paginated(f"{base}/orgs/{org}/teams/{slug}/members", secrets)
            teams.append(PlatformTeam(
                external_id=str(team["id"]),
                name=team.get("name", slug),
                member_count=len(members),
                attributes={
                    "slug": slug,
                    "privacy": team.get("privacy"),
                    "members": [m.get("login") for m in members],
                },
            ))
        return teams

    def fetch_resources(self, secrets: dict[str, str]) -> list[PlatformResource]:
        """Repositories of the organization, or of the token owner without one."""
        base = self._base(secrets)
        org = secrets.get("organization")
        if org:
            repos = self._get_paginated(f"{base}/orgs/{org}/repos", secrets, {"type": "all"})
        else:
            repos = self._get_paginated(f"{base}/user/repos", secrets)

        resources = [
            PlatformResource(
                external_id=str(repo["id"]),
                resource_type="repository",
                name=repo.get("full_name") or repo.get("name", ""),
                attributes={
                    "private": bool(repo.get("private")),
                    "visibility": repo.get("visibility"),
                    "archived": bool(repo.get("archived")),
                    "language": repo.get("language"),
                    "stars": repo.get("stargazers_count", 0),
                    "defaultBranch": repo.get("default_branch"),
                    "pushedAt": repo.get("pushed_at"),
                },
            )
            for repo in repos
        ]
        logger.info("Fetched %d GitHub repositories", len(resources), extra={"app_type": self.APP_TYPE})
        return resources
