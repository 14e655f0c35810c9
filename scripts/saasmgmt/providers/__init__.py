"""Vendor provider registry.

Adding a vendor means adding one entry here; nothing else branches on the
app type string.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from scripts.saasmgmt.config import SaasConfig
    from scripts.saasmgmt.connections import ConnectionStore
    from scripts.saasmgmt.db import Database
    from scripts.saasmgmt.providers.base_provider import BaseProvider

PROVIDER_REGISTRY: dict[str, tuple[str, str]] = {
    # app_type -> (module_path, class_name)
    "aws": ("scripts.saasmgmt.providers.aws_iam", "AwsIamProvider"),
    "github": ("scripts.saasmgmt.providers.github", "GitHubProvider"),
    "google-workspace": ("scripts.saasmgmt.providers.google_workspace", "GoogleWorkspaceProvider"),
    "slack": ("scripts.saasmgmt.providers.slack", "SlackProvider"),
    "zoom": ("scripts.saasmgmt.providers.zoom", "ZoomProvider"),
    "datadog": ("scripts.saasmgmt.providers.datadog", "DatadogProvider"),
}

APP_TYPES = tuple(PROVIDER_REGISTRY)


def get_provider_class(app_type: str) -> type["BaseProvider"]:
    entry = PROVIDER_REGISTRY.get(app_type)
    if entry is None:
        raise KeyError(f"Unknown app type: {app_type}")
    module_path, class_name = entry
    module = importlib.import_module(module_path)
    return getattr(module, class_name)


def get_provider(
    app_type: str,
    config: "SaasConfig",
    db: "Database",
    connections: "ConnectionStore",
) -> "BaseProvider":
    """Instantiate the provider registered for ``app_type``."""
    return get_provider_class(app_type)(config, db, connections)
