"""Cross-platform identity correlation.

Joins the active users of every platform by lower-cased email, then scores
each person for ghost status, security risk and license waste. Users without
a usable email never become correlation keys; the closest fuzzy match for
them is queued in identity_reconciliation_queue for a human to confirm.
"""

from __future__ import annotations

import logging
import math
import re
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from difflib import SequenceMatcher
from typing import Any, Optional

import psycopg2.extras

from scripts.saasmgmt.db import Database
from scripts.saasmgmt.providers.base_provider import parse_timestamp

logger = logging.getLogger("saasmgmt.correlation")

PLATFORMS = ("google-workspace", "github", "slack", "zoom", "aws")

PLATFORM_NAMES = {
    "google-workspace": "Google Workspace",
    "github": "GitHub",
    "slack": "Slack",
    "zoom": "Zoom",
    "aws": "AWS",
}

# Estimated monthly license cost per seat, USD.
LICENSE_COSTS = {
    "google-workspace": 12,
    "github": 4,
    "slack": 8,
    "aws": 0,
}
ZOOM_LICENSED_COST = 20
ZOOM_OTHER_COST = 15

GHOST_INACTIVE_DAYS = 90
MAX_RISK_SCORE = 100
MATCH_SUGGESTION_THRESHOLD = 0.8

NOREPLY_SUFFIX = "@users.noreply.github.com"

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Correlation key for an email, or None if it cannot identify a person."""
    if not email:
        return None
    key = email.strip().lower()
    if "@" not in key or key.endswith(NOREPLY_SUFFIX):
        return None
    return key


def platform_summary(app_type: str, user: dict[str, Any]) -> dict[str, Any]:
    """The per-platform entry stored under CrossPlatformUser.platforms."""
    attrs = user.get("attributes") or {}
    last_activity = parse_timestamp(user.get("last_activity"))
    summary: dict[str, Any] = {
        "userId": user.get("external_id"),
        "displayName": user.get("display_name"),
        "lastActivity": last_activity.isoformat() if last_activity else None,
        "isAdmin": bool(user.get("is_admin")),
        "suspended": bool(user.get("suspended")),
    }
    if app_type == "google-workspace":
        summary["has2FA"] = bool(attrs.get("has2FA"))
        summary["orgUnitPath"] = attrs.get("orgUnitPath")
    elif app_type == "github":
        summary["login"] = attrs.get("login")
    elif app_type == "slack":
        summary["username"] = attrs.get("username")
    elif app_type == "zoom":
        summary["licenseType"] = attrs.get("licenseType")
    elif app_type == "aws":
        summary["policies"] = attrs.get("policies", [])
    return summary


def build_user_map(
    users_by_platform: dict[str, list[dict[str, Any]]],
) -> dict[str, dict[str, Any]]:
    user_map: dict[str, dict[str, Any]] = {}
    for app_type in PLATFORMS:
        for user in users_by_platform.get(app_type, []):
            email = normalize_email(user.get("email"))
            if email is None:
                continue
            entry = user_map.setdefault(
                email, {"primaryEmail": email, "displayName": None, "platforms": {}}
            )
            entry["platforms"][app_type] = platform_summary(app_type, user)
            if not entry["displayName"] and user.get("display_name"):
                entry["displayName"] = user["display_name"]
    return user_map


def unmatched_users(
    users_by_platform: dict[str, list[dict[str, Any]]],
) -> list[tuple[str, dict[str, Any]]]:
    return [
        (app_type, user)
        for app_type in PLATFORMS
        for user in users_by_platform.get(app_type, [])
        if normalize_email(user.get("email")) is None
    ]


def _days_since(ts: datetime, now: datetime) -> int:
    return math.floor((now - ts).total_seconds() / 86400)


def calculate_ghost_status(
    platforms: dict[str, dict[str, Any]], now: Optional[datetime] = None
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    never_logged_in: list[str] = []
    total_days = 0
    for app_type in PLATFORMS:
        entry = platforms.get(app_type)
        if entry is None:
            continue
        last = parse_timestamp(entry.get("lastActivity"))
        if last is None:
            never_logged_in.append(app_type)
        else:
            total_days += _days_since(last, now)

    # Platforms with no login count toward the mean with zero days.
    average = total_days // len(platforms) if platforms else 0
    return {
        "isGhost": bool(never_logged_in) or average > GHOST_INACTIVE_DAYS,
        "neverLoggedInPlatforms": never_logged_in,
        "inactiveDays": average,
        "lastCalculated": now.isoformat(),
    }


def _active_elsewhere(platforms: dict[str, dict[str, Any]], app_type: str) -> bool:
    return any(
        name != app_type and not entry.get("suspended")
        for name, entry in platforms.items()
    )


def calculate_security_risks(
    platforms: dict[str, dict[str, Any]], now: Optional[datetime] = None
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    admin_without_2fa: list[str] = []
    suspended_with_access: list[str] = []
    score = 0

    google = platforms.get("google-workspace")
    if google:
        if google.get("isAdmin") and not google.get("has2FA"):
            admin_without_2fa.append("google-workspace")
            score += 25
        if google.get("suspended") and _active_elsewhere(platforms, "google-workspace"):
            suspended_with_access.append("google-workspace")
            score += 20

    github = platforms.get("github")
    if github:
        if github.get("isAdmin"):
            score += 10
        if github.get("suspended") and _active_elsewhere(platforms, "github"):
            suspended_with_access.append("github")
            score += 15

    if platforms.get("slack", {}).get("isAdmin"):
        score += 10
    if platforms.get("aws", {}).get("isAdmin"):
        score += 20

    return {
        "adminWithout2FA": admin_without_2fa,
        "suspendedWithAccess": suspended_with_access,
        "riskScore": min(score, MAX_RISK_SCORE),
        "lastCalculated": now.isoformat(),
    }


def license_cost(app_type: str, entry: dict[str, Any]) -> int:
    if app_type == "zoom":
        return ZOOM_LICENSED_COST if entry.get("licenseType") == "Licensed" else ZOOM_OTHER_COST
    return LICENSE_COSTS.get(app_type, 0)


def calculate_license_waste(
    platforms: dict[str, dict[str, Any]], now: Optional[datetime] = None
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    total = 0
    wasted = 0
    recommendations: list[str] = []
    for app_type in PLATFORMS:
        entry = platforms.get(app_type)
        if entry is None:
            continue
        cost = license_cost(app_type, entry)
        if cost == 0:
            continue
        total += cost
        if not entry.get("lastActivity"):
            wasted += cost
            recommendations.append(f"Remove unused {PLATFORM_NAMES[app_type]} license")
    return {
        "totalMonthlyCost": total,
        "wastedCost": wasted,
        "recommendations": recommendations,
        "lastCalculated": now.isoformat(),
    }


def _normalize_name(value: Optional[str]) -> str:
    return _NON_ALNUM.sub("", (value or "").lower())


def score_identity_match(
    candidate: dict[str, Any], email: str, display_name: Optional[str] = None
) -> float:
    """Best similarity (0-1) between a user's handles and a known person.

    The candidate's login, username and display name are compared with the
    email local part and the person's display name.
    """
    attrs = candidate.get("attributes") or {}
    handles = {
        _normalize_name(v)
        for v in (attrs.get("login"), attrs.get("username"), candidate.get("display_name"))
    }
    targets = {_normalize_name(email.split("@")[0]), _normalize_name(display_name)}
    handles.discard("")
    targets.discard("")
    if not handles or not targets:
        return 0.0
    return max(SequenceMatcher(None, h, t).ratio() for h in handles for t in targets)


def suggest_matches(
    user_map: dict[str, dict[str, Any]],
    unmatched: list[tuple[str, dict[str, Any]]],
    threshold: float = MATCH_SUGGESTION_THRESHOLD,
) -> list[dict[str, Any]]:
    """Best-scoring known email per unmatched user, if it clears ``threshold``."""
    suggestions = []
    for app_type, user in unmatched:
        best_email, best_score = None, 0.0
        for email, entry in user_map.items():
            if app_type in entry["platforms"]:
                continue
            score = score_identity_match(user, email, entry.get("displayName"))
            if score > best_score:
                best_email, best_score = email, score
        if best_email is not None and best_score >= threshold:
            suggestions.append({
                "app_type": app_type,
                "external_id": user.get("external_id"),
                "suggested_email": best_email,
                "confidence_score": round(best_score, 3),
                "match_method": "fuzzy_name",
            })
    return suggestions


def correlate_users(
    users_by_platform: dict[str, list[dict[str, Any]]], now: Optional[datetime] = None
) -> list[dict[str, Any]]:
    """Pure correlation pass: one record per distinct email."""
    now = now or datetime.now(timezone.utc)
    records = []
    for email, entry in build_user_map(users_by_platform).items():
        platforms = entry["platforms"]
        records.append({
            "primaryEmail": email,
            "displayName": entry["displayName"],
            "platforms": platforms,
            "ghostStatus": calculate_ghost_status(platforms, now),
            "securityRisks": calculate_security_risks(platforms, now),
            "licenseWaste": calculate_license_waste(platforms, now),
        })
    return records


_VIEW_COLUMNS = (
    "primary_email, platforms, ghost_status, security_risks, license_waste, "
    "last_sync, updated_at"
)


def _to_view(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "primaryEmail": row["primary_email"],
        "platforms": row["platforms"],
        "ghostStatus": row["ghost_status"],
        "securityRisks": row["security_risks"],
        "licenseWaste": row["license_waste"],
        "lastSync": row.get("last_sync"),
    }


class CrossPlatformCorrelator:
    def __init__(self, db: Database, max_workers: int = len(PLATFORMS)) -> None:
        self.db = db
        self.max_workers = max_workers

    def _fetch_platform_users(self, company_id: str, app_type: str) -> list[dict[str, Any]]:
        # Users of a disconnected service drop out with their connection.
        return self.db.fetch_all(
            """SELECT pu.external_id, pu.email, pu.display_name, pu.is_admin,
                      pu.suspended, pu.last_activity, pu.attributes
               FROM platform_users pu
               JOIN service_connections sc
                 ON sc.id = pu.connection_id AND sc.is_active
               WHERE pu.company_id = %s AND pu.app_type = %s AND pu.is_active""",
            (company_id, app_type),
        )

    def fetch_all_platforms(self, company_id: str) -> dict[str, list[dict[str, Any]]]:
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                app_type: pool.submit(self._fetch_platform_users, company_id, app_type)
                for app_type in PLATFORMS
            }
            return {app_type: f.result() for app_type, f in futures.items()}

    def correlate(self, company_id: str) -> list[dict[str, Any]]:
        """Rebuild every CrossPlatformUser for a company in one transaction.

        Any failure aborts the run and leaves existing rows untouched.
        """
        started = time.monotonic()
        log_extra = {"company_id": company_id}
        try:
            users_by_platform = self.fetch_all_platforms(company_id)
            logger.info(
                "Correlating users: %s",
                ", ".join(f"{k}={len(v)}" for k, v in users_by_platform.items()),
                extra=log_extra,
            )
            records = correlate_users(users_by_platform)
            suggestions = suggest_matches(
                build_user_map(users_by_platform), unmatched_users(users_by_platform)
            )
            with self.db.transaction() as cur:
                self._upsert_records(cur, company_id, records)
                self._deactivate_absent(cur, company_id, [r["primaryEmail"] for r in records])
                self._queue_suggestions(cur, company_id, suggestions)
        except Exception:
            logger.exception("Correlation aborted", extra=log_extra)
            raise

        logger.info(
            "Correlated %d users, queued %d match suggestions",
            len(records), len(suggestions),
            extra={
                **log_extra,
                "records": len(records),
                "duration_s": round(time.monotonic() - started, 3),
            },
        )
        return records

    def _upsert_records(self, cur, company_id: str, records: list[dict[str, Any]]) -> int:
        columns = [
            "company_id", "primary_email", "platforms", "ghost_status",
            "security_risks", "license_waste", "is_active", "last_sync",
        ]
        now = datetime.now(timezone.utc)
        rows = [
            (
                company_id,
                r["primaryEmail"],
                psycopg2.extras.Json(r["platforms"]),
                psycopg2.extras.Json(r["ghostStatus"]),
                psycopg2.extras.Json(r["securityRisks"]),
                psycopg2.extras.Json(r["licenseWaste"]),
                True,
                now,
            )
            for r in records
        ]
        return self.db.upsert_batch(
            cur, "cross_platform_users", columns, rows,
            conflict_columns=["company_id", "primary_email"],
            update_columns=columns[2:],
        )

    @staticmethod
    def _deactivate_absent(cur, company_id: str, emails: list[str]) -> None:
        cur.execute(
            """UPDATE cross_platform_users SET is_active = FALSE, updated_at = NOW()
               WHERE company_id = %s AND is_active AND NOT (primary_email = ANY(%s))""",
            (company_id, emails),
        )

    def _queue_suggestions(self, cur, company_id: str, suggestions: list[dict[str, Any]]) -> int:
        columns = [
            "company_id", "app_type", "external_id", "suggested_email",
            "confidence_score", "match_method",
        ]
        rows = [
            (
                company_id,
                s["app_type"],
                s["external_id"],
                s["suggested_email"],
                s["confidence_score"],
                s["match_method"],
            )
            for s in suggestions
        ]
        return self.db.upsert_batch(
            cur, "identity_reconciliation_queue", columns, rows,
            conflict_columns=["company_id", "app_type", "external_id", "suggested_email"],
            update_columns=["confidence_score", "match_method"],
        )

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def get_cross_platform_users(self, company_id: str) -> list[dict[str, Any]]:
        rows = self.db.fetch_all(
            f"SELECT {_VIEW_COLUMNS} FROM cross_platform_users "
            "WHERE company_id = %s AND is_active ORDER BY updated_at DESC",
            (company_id,),
        )
        return [_to_view(r) for r in rows]

    def get_ghost_users(self, company_id: str) -> list[dict[str, Any]]:
        rows = self.db.fetch_all(
            f"SELECT {_VIEW_COLUMNS} FROM cross_platform_users "
            "WHERE company_id = %s AND is_active "
            "AND (ghost_status->>'isGhost')::boolean "
            "ORDER BY (ghost_status->>'inactiveDays')::int DESC",
            (company_id,),
        )
        return [_to_view(r) for r in rows]

    def get_security_risks(self, company_id: str) -> list[dict[str, Any]]:
        rows = self.db.fetch_all(
            f"SELECT {_VIEW_COLUMNS} FROM cross_platform_users "
            "WHERE company_id = %s AND is_active "
            "AND (security_risks->>'riskScore')::int > 0 "
            "ORDER BY (security_risks->>'riskScore')::int DESC",
            (company_id,),
        )
        return [_to_view(r) for r in rows]

    def get_license_waste(self, company_id: str) -> list[dict[str, Any]]:
        rows = self.db.fetch_all(
            f"SELECT {_VIEW_COLUMNS} FROM cross_platform_users "
            "WHERE company_id = %s AND is_active "
            "AND (license_waste->>'wastedCost')::numeric > 0 "
            "ORDER BY (license_waste->>'wastedCost')::numeric DESC",
            (company_id,),
        )
        return [_to_view(r) for r in rows]

    def get_reconciliation_queue(self, company_id: str) -> list[dict[str, Any]]:
        return self.db.fetch_all(
            """SELECT app_type, external_id, suggested_email, confidence_score,
                      match_method, status
               FROM identity_reconciliation_queue
               WHERE company_id = %s AND status = 'PENDING'
               ORDER BY confidence_score DESC""",
            (company_id,),
        )
