"""Error taxonomy shared by services, providers and the CLI."""

from __future__ import annotations

from typing import Optional


class SaasMgmtError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(SaasMgmtError):
    """Required credential fields are missing."""

    def __init__(self, app_type: str, missing_fields: list[str]) -> None:
        self.app_type = app_type
        self.missing_fields = list(missing_fields)
        super().__init__(
            f"Invalid {app_type} credentials, missing: {', '.join(self.missing_fields)}"
        )


class DecryptionError(SaasMgmtError):
    """Ciphertext failed authentication or could not be decoded."""


class VendorAPIError(SaasMgmtError):
    """A provider API returned a non-2xx response or an error payload."""

    def __init__(
        self,
        app_type: str,
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        self.app_type = app_type
        self.status_code = status_code
        super().__init__(f"{app_type}: {message}")


class NotFoundError(SaasMgmtError):
    """Credential set or connection does not exist."""


class StateTokenError(SaasMgmtError):
    """OAuth state parameter is malformed, expired or for another service."""
