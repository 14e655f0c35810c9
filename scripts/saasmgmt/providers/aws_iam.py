"""AWS provider: IAM users with policies, MFA devices and access keys, plus
Cost Explorer spend per service.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from scripts.saasmgmt.crypto import mask_secret
from scripts.saasmgmt.errors import VendorAPIError
from scripts.saasmgmt.providers.base_provider import (
    BaseProvider,
    ConnectResult,
    PlatformResource,
    PlatformUser,
    parse_timestamp,
)

logger = logging.getLogger("saasmgmt.aws")

ADMIN_POLICY_MARKERS = ("Admin", "PowerUser")

BILLING_WINDOW_DAYS = 30
COST_METRIC = "UnblendedCost"
# Cost Explorer has a single endpoint regardless of where resources run.
COST_EXPLORER_REGION = "us-east-1"


class AwsIamProvider(BaseProvider):
    APP_TYPE = "aws"
    DISPLAY_NAME = "AWS"

    def _session(self, secrets: dict[str, str]) -> boto3.session.Session:
        return boto3.session.Session(
            aws_access_key_id=secrets.get("accessKey"),
            aws_secret_access_key=secrets.get("secretKey"),
            region_name=secrets.get("region") or "us-east-1",
        )

    def connect(self, company_id: str, app_name: str, fields: dict[str, str]) -> ConnectResult:
        """Verify the keys with STS before a connection is created."""
        try:
            identity = self._session(fields).client("sts").get_caller_identity()
        except (ClientError, BotoCoreError) as exc:
            raise VendorAPIError(
                self.APP_TYPE,
                f"Credential check failed for key {mask_secret(fields.get('accessKey'))}: {exc}",
            ) from exc
        account_id = identity["Account"]
        logger.info(
            "Verified AWS account %s", account_id,
            extra={"company_id": company_id, "app_type": self.APP_TYPE},
        )
        return ConnectResult(
            external_account_id=account_id,
            account_name=f"AWS {account_id}",
            details={
                "accountId": account_id,
                "arn": identity.get("Arn"),
                "region": fields.get("region") or "us-east-1",
            },
        )

    def _paginate(self, client, method: str, key: str, **kwargs) -> list[dict]:
        """Generic paginator for boto3 APIs."""
        items: list[dict] = []
        paginator = client.get_paginator(method)
        for page in paginator.paginate(**kwargs):
            items.extend(page.get(key, []))
        return items

    def fetch_users(self, secrets: dict[str, str]) -> list[PlatformUser]:
        iam = self._session(secrets).client("iam")
        try:
            iam_users = self._paginate(iam, "list_users", "Users")
            users = [self._to_platform_user(iam, u) for u in iam_users]
        except (ClientError, BotoCoreError) as exc:
            raise VendorAPIError(self.APP_TYPE, f"IAM listing failed: {exc}") from exc
        logger.info("Fetched %d AWS IAM users", len(users), extra={"app_type": self.APP_TYPE})
        return users

    def _to_platform_user(self, iam, user: dict) -> PlatformUser:
        name = user["UserName"]
        policies = [
            p.get("PolicyName", "")
            for p in self._paginate(iam, "list_attached_user_policies", "AttachedPolicies", UserName=name)
        ]
        groups = [
            g.get("GroupName", "")
            for g in self._paginate(iam, "list_groups_for_user", "Groups", UserName=name)
        ]
        access_keys = self._paginate(iam, "list_access_keys", "AccessKeyMetadata", UserName=name)
        mfa_devices = self._paginate(iam, "list_mfa_devices", "MFADevices", UserName=name)
        tags = user.get("Tags") or iam.list_user_tags(UserName=name).get("Tags", [])

        email = next(
            (t.get("Value") for t in tags if (t.get("Key") or "").lower() == "email"),
            None,
        )
        password_last_used = user.get("PasswordLastUsed")
        status = "inactive" if not access_keys and not password_last_used else "active"

        return PlatformUser(
            external_id=name,
            email=email,
            display_name=name,
            is_admin=any(m in p for p in policies for m in ADMIN_POLICY_MARKERS),
            suspended=status != "active",
            last_activity=parse_timestamp(password_last_used),
            attributes={
                "arn": user.get("Arn"),
                "status": status,
                "policies": policies,
                "groups": groups,
                "accessKeys": len(access_keys),
                "mfaEnabled": bool(mfa_devices),
                "createDate": str(user["CreateDate"]) if user.get("CreateDate") else None,
            },
        )

    def fetch_resources(self, secrets: dict[str, str]) -> list[PlatformResource]:
        """Unblended cost per AWS service over the last BILLING_WINDOW_DAYS.

        Keys without ce:GetCostAndUsage yield no cost lines instead of failing
        the user sync.
        """
        end = datetime.now(timezone.utc).date()
        start = end - timedelta(days=BILLING_WINDOW_DAYS)
        ce = self._session(secrets).client("ce", region_name=COST_EXPLORER_REGION)
        request: dict = {
            "TimePeriod": {"Start": start.isoformat(), "End": end.isoformat()},
            "Granularity": "MONTHLY",
            "Metrics": [COST_METRIC],
            "GroupBy": [{"Type": "DIMENSION", "Key": "SERVICE"}],
        }

        totals: dict[str, float] = {}
        currency = "USD"
        try:
            while True:
                page = ce.get_cost_and_usage(**request)
                for period in page.get("ResultsByTime", []):
                    for group in period.get("Groups", []):
                        service = (group.get("Keys") or ["Unknown"])[0]
                        metric = group.get("Metrics", {}).get(COST_METRIC, {})
                        totals[service] = totals.get(service, 0.0) + float(metric.get("Amount", 0))
                        currency = metric.get("Unit") or currency
                token = page.get("NextPageToken")
                if not token:
                    break
                request["NextPageToken"] = token
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("AccessDeniedException", "AccessDenied"):
                logger.warning(
                    "Cost Explorer not permitted for these keys, skipping billing: %s", exc,
                    extra={"app_type": self.APP_TYPE},
                )
                return []
            raise VendorAPIError(self.APP_TYPE, f"Cost Explorer query failed: {exc}") from exc
        except BotoCoreError as exc:
            raise VendorAPIError(self.APP_TYPE, f"Cost Explorer query failed: {exc}") from exc

        resources = [
            PlatformResource(
                external_id=f"cost:{service}",
                resource_type="billing",
                name=service,
                attributes={
                    "amount": round(amount, 2),
                    "currency": currency,
                    "metric": COST_METRIC,
                    "periodStart": start.isoformat(),
                    "periodEnd": end.isoformat(),
                },
            )
            for service, amount in sorted(totals.items())
        ]
        logger.info(
            "Fetched AWS costs for %d services", len(resources), extra={"app_type": self.APP_TYPE}
        )
        return resources
