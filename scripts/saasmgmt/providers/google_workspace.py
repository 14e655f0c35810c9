"""Google Workspace provider: directory users via a delegated service account."""

from __future__ import annotations

import json
import logging

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from scripts.saasmgmt.errors import ValidationError, VendorAPIError
from scripts.saasmgmt.providers.base_provider import (
    BaseProvider,
    ConnectResult,
    PlatformUser,
    parse_timestamp,
)
from scripts.saasmgmt.validators import service_account_key_problems

logger = logging.getLogger("saasmgmt.google_workspace")

SCOPES = [
    "https://www.googleapis.com/auth/admin.directory.user.readonly",
    "https://www.googleapis.com/auth/admin.directory.customer.readonly",
]

# The Admin SDK reports this for accounts that have never signed in.
NEVER_LOGGED_IN_PREFIX = "1970-01-01"


class GoogleWorkspaceProvider(BaseProvider):
    APP_TYPE = "google-workspace"
    DISPLAY_NAME = "Google Workspace"

    def connect(self, company_id: str, app_name: str, fields: dict[str, str]) -> ConnectResult:
        """Check the service-account key structure; no API call is made."""
        problems = service_account_key_problems(fields.get("serviceAccountKey", ""))
        if problems:
            raise ValidationError(self.APP_TYPE, problems)
        key = json.loads(fields["serviceAccountKey"])
        admin_email = fields.get("adminEmail", "")
        domain = admin_email.split("@")[-1] if "@" in admin_email else admin_email
        return ConnectResult(
            external_account_id=fields.get("customerId") or domain,
            account_name=domain,
            scope=list(SCOPES),
            details={
                "domain": domain,
                "adminEmail": admin_email,
                "serviceAccountEmail": key["client_email"],
                "projectId": key["project_id"],
            },
        )

    def _directory(self, secrets: dict[str, str]):
        info = json.loads(secrets["serviceAccountKey"])
        creds = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
        creds = creds.with_subject(secrets["adminEmail"])
        return build("admin", "directory_v1", credentials=creds, cache_discovery=False)

    def fetch_users(self, secrets: dict[str, str]) -> list[PlatformUser]:
        service = self._directory(secrets)
        raw_users: list[dict] = []
        request = service.users().list(
            customer=secrets.get("customerId") or "my_customer",
            maxResults=500,
            orderBy="email",
            projection="full",
        )
        while request is not None:
            try:
                response = request.execute()
            except HttpError as e:
                raise VendorAPIError(
                    self.APP_TYPE, f"users.list failed: {e}", status_code=e.resp.status
                ) from e
            raw_users.extend(response.get("users", []))
            request = service.users().list_next(request, response)

        users = [self._to_platform_user(u) for u in raw_users]
        logger.info("Fetched %d Google Workspace users", len(users), extra={"app_type": self.APP_TYPE})
        return users

    @staticmethod
    def _to_platform_user(u: dict) -> PlatformUser:
        last_login = u.get("lastLoginTime")
        if not last_login or last_login.startswith(NEVER_LOGGED_IN_PREFIX):
            last_login = None
        return PlatformUser(
            external_id=u["id"],
            email=u.get("primaryEmail"),
            display_name=u.get("name", {}).get("fullName"),
            is_admin=bool(u.get("isAdmin")),
            suspended=bool(u.get("suspended")),
            last_activity=parse_timestamp(last_login),
            attributes={
                "has2FA": bool(u.get("isEnrolledIn2Sv")),
                "isDelegatedAdmin": bool(u.get("isDelegatedAdmin")),
                "orgUnitPath": u.get("orgUnitPath") or "/",
                "creationTime": u.get("creationTime"),
            },
        )
