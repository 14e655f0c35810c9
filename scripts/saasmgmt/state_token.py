"""OAuth ``state`` parameter: signed base64 JSON bound to a company and a service.

The token is ``<payload>.<signature>`` where the payload is unpadded urlsafe
base64 JSON and the signature is a hex HMAC-SHA256 of the payload under the
deployment's key. A token that was altered or minted without the key is
rejected before its contents are trusted.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Optional

from scripts.saasmgmt.errors import StateTokenError


@dataclass(frozen=True)
class OAuthState:
    company_id: str
    service: str
    timestamp: int  # epoch milliseconds
    app_name: Optional[str] = None


def _sign(payload: str, key: bytes) -> str:
    return hmac.new(key, payload.encode("ascii"), hashlib.sha256).hexdigest()


def encode_state(
    company_id: str,
    service: str,
    key: bytes,
    now: Optional[float] = None,
    app_name: Optional[str] = None,
) -> str:
    issued = int((time.time() if now is None else now) * 1000)
    data = {"companyId": company_id, "timestamp": issued, "service": service}
    if app_name:
        data["appName"] = app_name
    payload = base64.urlsafe_b64encode(json.dumps(data).encode("utf-8")).decode("ascii").rstrip("=")
    return f"{payload}.{_sign(payload, key)}"


def decode_state(
    token: str,
    expected_service: str,
    ttl_seconds: int,
    key: bytes,
    now: Optional[float] = None,
) -> OAuthState:
    """Verify and decode a state token.

    Raises StateTokenError if the signature does not match, the token cannot
    be parsed, names a different service, or was issued more than
    ``ttl_seconds`` ago.
    """
    payload, sep, signature = (token or "").rpartition(".")
    if not sep or not payload:
        raise StateTokenError("Malformed OAuth state")
    try:
        expected = _sign(payload, key)
    except UnicodeError as exc:
        raise StateTokenError("Malformed OAuth state") from exc
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
        raise StateTokenError("OAuth state signature is invalid")

    try:
        padded = payload + "=" * (-len(payload) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise StateTokenError("Malformed OAuth state") from exc
    if not isinstance(data, dict):
        raise StateTokenError("Malformed OAuth state")

    company_id = data.get("companyId")
    service = data.get("service")
    issued = data.get("timestamp")
    app_name = data.get("appName")
    if not isinstance(company_id, str) or not company_id or not isinstance(issued, int):
        raise StateTokenError("Malformed OAuth state")
    if app_name is not None and not isinstance(app_name, str):
        raise StateTokenError("Malformed OAuth state")
    if service != expected_service:
        raise StateTokenError(f"OAuth state was issued for {service!r}, not {expected_service!r}")

    current_ms = int((time.time() if now is None else now) * 1000)
    age_s = (current_ms - issued) / 1000
    if age_s > ttl_seconds or age_s < -60:
        raise StateTokenError("OAuth state has expired")
    return OAuthState(company_id=company_id, service=service, timestamp=issued, app_name=app_name)
