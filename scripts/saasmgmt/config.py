"""Configuration via environment variables with cloud-native secret support.

Supports:
  - Environment variables and .env files (local dev)
  - AWS Secrets Manager / GCP Secret Manager references for secrets
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass, field

from dotenv import load_dotenv

from scripts.saasmgmt.secret_refs import resolve_database_url, resolve_secret

logger = logging.getLogger("saasmgmt.config")

# Development-only key material; production refuses to start without ENCRYPTION_KEY.
FALLBACK_KEY_SEED = "saas-management-platform-default-key"

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    min_connections: int = 2
    max_connections: int = 10


@dataclass(frozen=True)
class EncryptionConfig:
    key: bytes  # 32 bytes for AES-256
    is_fallback: bool = False

    @classmethod
    def from_hex(cls, key_hex: str) -> "EncryptionConfig":
        if not _HEX_KEY_RE.match(key_hex):
            raise ValueError("ENCRYPTION_KEY must be 64 hexadecimal characters (32 bytes)")
        return cls(key=bytes.fromhex(key_hex))

    @classmethod
    def development_fallback(cls) -> "EncryptionConfig":
        digest = hashlib.sha256(FALLBACK_KEY_SEED.encode("utf-8")).digest()
        return cls(key=digest, is_fallback=True)


@dataclass(frozen=True)
class OAuthConfig:
    callback_base_url: str = "http://localhost:5000/api/integrations"
    state_ttl_seconds: int = 600

    def redirect_uri(self, app_type: str) -> str:
        return f"{self.callback_base_url.rstrip('/')}/{app_type}/callback"


@dataclass(frozen=True)
class SchedulerConfig:
    aws_interval_min: int = 360
    slack_interval_min: int = 60
    zoom_interval_min: int = 60
    github_interval_min: int = 30
    google_workspace_interval_min: int = 60
    datadog_interval_min: int = 120
    correlation_interval_min: int = 30
    misfire_grace_time: int = 300

    def interval_for(self, app_type: str) -> int:
        attr = f"{app_type.replace('-', '_')}_interval_min"
        return getattr(self, attr, 60)


@dataclass(frozen=True)
class SaasConfig:
    database: DatabaseConfig
    encryption: EncryptionConfig
    environment: str = "development"
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    batch_size: int = 500
    http_timeout_s: float = 30.0

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def load_encryption_config(environment: str) -> EncryptionConfig:
    """Build the cipher key from ENCRYPTION_KEY.

    Raises ValueError when the key is missing in production.
    """
    raw = os.environ.get("ENCRYPTION_KEY", "")
    if raw:
        return EncryptionConfig.from_hex(resolve_secret(raw).strip())
    if environment == "production":
        raise ValueError("ENCRYPTION_KEY environment variable is required in production")
    logger.warning(
        "ENCRYPTION_KEY not set; using the development fallback key. "
        "Stored credentials are not protected."
    )
    return EncryptionConfig.development_fallback()


def load_config() -> SaasConfig:
    """Load configuration from environment variables."""
    load_dotenv()

    environment = os.environ.get("APP_ENV", "development").lower()

    database = DatabaseConfig(
        url=resolve_database_url(),
        min_connections=int(os.environ.get("DB_MIN_CONNECTIONS", "2")),
        max_connections=int(os.environ.get("DB_MAX_CONNECTIONS", "10")),
    )

    oauth = OAuthConfig(
        callback_base_url=os.environ.get(
            "OAUTH_CALLBACK_BASE_URL", "http://localhost:5000/api/integrations"
        ),
        state_ttl_seconds=int(os.environ.get("OAUTH_STATE_TTL_SECONDS", "600")),
    )

    scheduler = SchedulerConfig(
        aws_interval_min=int(os.environ.get("SYNC_AWS_INTERVAL_MIN", "360")),
        slack_interval_min=int(os.environ.get("SYNC_SLACK_INTERVAL_MIN", "60")),
        zoom_interval_min=int(os.environ.get("SYNC_ZOOM_INTERVAL_MIN", "60")),
        github_interval_min=int(os.environ.get("SYNC_GITHUB_INTERVAL_MIN", "30")),
        google_workspace_interval_min=int(
            os.environ.get("SYNC_GOOGLE_WORKSPACE_INTERVAL_MIN", "60")
        ),
        datadog_interval_min=int(os.environ.get("SYNC_DATADOG_INTERVAL_MIN", "120")),
        correlation_interval_min=int(os.environ.get("CORRELATION_INTERVAL_MIN", "30")),
        misfire_grace_time=int(os.environ.get("SCHEDULER_MISFIRE_GRACE_S", "300")),
    )

    return SaasConfig(
        database=database,
        encryption=load_encryption_config(environment),
        environment=environment,
        oauth=oauth,
        scheduler=scheduler,
        batch_size=int(os.environ.get("SYNC_BATCH_SIZE", "500")),
        http_timeout_s=float(os.environ.get("HTTP_TIMEOUT_S", "30")),
    )
