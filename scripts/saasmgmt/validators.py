"""Per-vendor credential requirements and format checks.

Only presence of required fields is enforced. Format mismatches are reported
as warnings so that unusual-but-valid keys (new token prefixes, GovCloud
regions) can still be saved.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Optional
from urllib.parse import urlparse

logger = logging.getLogger("saasmgmt.validators")

SENSITIVE_FIELD_MARKERS = ("secret", "key", "token", "password")


@dataclass(frozen=True)
class CredentialField:
    name: str
    label: str
    type: str = "text"
    required: bool = True
    default: Optional[str] = None


@dataclass(frozen=True)
class CredentialRequirements:
    fields: tuple[CredentialField, ...]
    instructions: str

    def to_dict(self) -> dict:
        return {
            "fields": [
                {k: v for k, v in vars(f).items() if v is not None} for f in self.fields
            ],
            "instructions": self.instructions,
        }


@dataclass
class CredentialValidation:
    is_valid: bool
    missing_fields: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


REQUIREMENTS: dict[str, CredentialRequirements] = {
    "slack": CredentialRequirements(
        fields=(
            CredentialField("clientId", "Client ID"),
            CredentialField("clientSecret", "Client Secret", "password"),
            CredentialField(
                "redirectUri", "Redirect URI", required=False,
                default="http://localhost:5000/api/integrations/slack/callback",
            ),
        ),
        instructions="Create a Slack app at https://api.slack.com/apps and copy its Client ID and Client Secret.",
    ),
    "zoom": CredentialRequirements(
        fields=(
            CredentialField("clientId", "Client ID"),
            CredentialField("clientSecret", "Client Secret", "password"),
            CredentialField(
                "redirectUri", "Redirect URI", required=False,
                default="http://localhost:5000/api/integrations/zoom/callback",
            ),
        ),
        instructions="Create an OAuth app at https://marketplace.zoom.us/develop/create and copy its Client ID and Client Secret.",
    ),
    "google-workspace": CredentialRequirements(
        fields=(
            CredentialField("serviceAccountKey", "Service Account JSON Key", "textarea"),
            CredentialField("adminEmail", "Admin Email (for impersonation)", "email"),
            CredentialField("customerId", "Customer ID", required=False),
        ),
        instructions=(
            "Create a service account with domain-wide delegation, download its JSON key, "
            "and use a super admin email for impersonation."
        ),
    ),
    "github": CredentialRequirements(
        fields=(
            CredentialField("personalAccessToken", "Personal Access Token", "password"),
            CredentialField("organization", "Organization Name", required=False),
            CredentialField(
                "apiUrl", "GitHub API URL", required=False, default="https://api.github.com"
            ),
        ),
        instructions="Create a Personal Access Token with repo, admin:org and user scopes.",
    ),
    "aws": CredentialRequirements(
        fields=(
            CredentialField("accessKey", "Access Key ID"),
            CredentialField("secretKey", "Secret Access Key", "password"),
            CredentialField("region", "Default Region", default="us-east-1"),
        ),
        instructions=(
            "Create IAM access keys allowed to call iam:List* and sts:GetCallerIdentity; "
            "add ce:GetCostAndUsage to include monthly spend."
        ),
    ),
    "datadog": CredentialRequirements(
        fields=(
            CredentialField("organizationName", "Organization Name"),
            CredentialField("site", "Datadog Site", default="datadoghq.com"),
            CredentialField("apiKey", "API Key", "password"),
            CredentialField("applicationKey", "Application Key", "password"),
        ),
        instructions="Create an API key and an Application Key under Organization Settings.",
    ),
}

DATADOG_SITES = (
    "datadoghq.com",
    "us3.datadoghq.com",
    "us5.datadoghq.com",
    "datadoghq.eu",
    "ap1.datadoghq.com",
)

GOOGLE_SERVICE_ACCOUNT_KEYS = (
    "type", "project_id", "private_key_id", "private_key",
    "client_email", "client_id", "auth_uri", "token_uri",
)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_sensitive_field(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SENSITIVE_FIELD_MARKERS)


def get_credential_requirements(app_type: str) -> Optional[CredentialRequirements]:
    return REQUIREMENTS.get(app_type)


def _is_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _slack_warnings(f: dict[str, str]) -> list[str]:
    out = []
    if f.get("clientId") and not re.match(r"^\d+\.\d+$", f["clientId"]):
        out.append("Client ID should look like 123456789.987654321")
    if f.get("clientSecret") and len(f["clientSecret"]) < 30:
        out.append("Client Secret appears to be too short")
    if f.get("redirectUri") and not _is_url(f["redirectUri"]):
        out.append("Redirect URI should be an http(s) URL")
    return out


def _zoom_warnings(f: dict[str, str]) -> list[str]:
    out = []
    if f.get("clientId") and len(f["clientId"]) < 10:
        out.append("Client ID appears to be too short")
    if f.get("clientSecret") and len(f["clientSecret"]) < 20:
        out.append("Client Secret appears to be too short")
    if f.get("redirectUri") and not _is_url(f["redirectUri"]):
        out.append("Redirect URI should be an http(s) URL")
    return out


def _google_warnings(f: dict[str, str]) -> list[str]:
    out = []
    if f.get("serviceAccountKey"):
        out.extend(service_account_key_problems(f["serviceAccountKey"]))
    if f.get("adminEmail") and not _EMAIL_RE.match(f["adminEmail"]):
        out.append("Admin Email does not look like an email address")
    if f.get("customerId") and not re.match(r"^C[a-zA-Z0-9]{8,}$", f["customerId"]):
        out.append('Customer ID should start with "C" followed by alphanumeric characters')
    return out


def _github_warnings(f: dict[str, str]) -> list[str]:
    out = []
    token = f.get("personalAccessToken", "")
    if token and not token.startswith(("ghp_", "github_pat_")) and len(token) < 40:
        out.append("Personal Access Token format appears unusual")
    if f.get("organization") and not re.match(r"^[a-zA-Z0-9\-_.]+$", f["organization"]):
        out.append("Organization name contains unexpected characters")
    if f.get("apiUrl") and not _is_url(f["apiUrl"]):
        out.append("API URL should be an http(s) URL")
    return out


def _aws_warnings(f: dict[str, str]) -> list[str]:
    out = []
    if f.get("accessKey") and not re.match(r"^(AKIA|ASIA)[0-9A-Z]{16}$", f["accessKey"]):
        out.append("Access Key ID format appears unusual (should start with AKIA or ASIA)")
    if f.get("secretKey") and len(f["secretKey"]) != 40:
        out.append("Secret Access Key should be exactly 40 characters long")
    if f.get("region") and not re.match(r"^[a-z]{2}(-gov)?-[a-z]+-\d$", f["region"]):
        out.append("Region format appears unusual (e.g. us-east-1)")
    return out


def _datadog_warnings(f: dict[str, str]) -> list[str]:
    out = []
    if f.get("site") and f["site"] not in DATADOG_SITES:
        out.append(f"Site should be one of: {', '.join(DATADOG_SITES)}")
    if f.get("apiKey") and len(f["apiKey"]) != 32:
        out.append("API Key should be exactly 32 characters long")
    if f.get("applicationKey") and len(f["applicationKey"]) != 40:
        out.append("Application Key should be exactly 40 characters long")
    return out


_FORMAT_CHECKS: dict[str, Callable[[dict[str, str]], list[str]]] = {
    "slack": _slack_warnings,
    "zoom": _zoom_warnings,
    "google-workspace": _google_warnings,
    "github": _github_warnings,
    "aws": _aws_warnings,
    "datadog": _datadog_warnings,
}


def service_account_key_problems(raw: str) -> list[str]:
    """Structural problems with a Google service-account JSON key, empty if none."""
    try:
        data = json.loads(raw)
    except ValueError:
        return ["Service Account Key must be valid JSON"]
    if not isinstance(data, dict):
        return ["Service Account Key must be a JSON object"]
    problems = []
    missing = [k for k in GOOGLE_SERVICE_ACCOUNT_KEYS if not data.get(k)]
    if missing:
        problems.append(f"Service Account Key is missing fields: {', '.join(missing)}")
    if data.get("type") and data["type"] != "service_account":
        problems.append('Service Account Key must be of type "service_account"')
    if data.get("private_key") and "BEGIN PRIVATE KEY" not in data["private_key"]:
        problems.append("Service Account Key has an invalid private key format")
    return problems


def validate_credentials(app_type: str, fields: dict[str, str]) -> CredentialValidation:
    requirements = REQUIREMENTS.get(app_type)
    if requirements is None:
        return CredentialValidation(is_valid=False, missing_fields=["Invalid app type"])

    missing = [
        f.label
        for f in requirements.fields
        if f.required and not (fields.get(f.name) or "").strip()
    ]
    warnings = _FORMAT_CHECKS[app_type](fields)
    if warnings:
        logger.info(
            "Credential format warnings: %s", "; ".join(warnings),
            extra={"app_type": app_type},
        )
    return CredentialValidation(
        is_valid=not missing, missing_fields=missing, warnings=warnings
    )
