"""Read-side aggregation for the dashboard overview."""

from __future__ import annotations

import logging
from typing import Any

from scripts.saasmgmt.connections import ConnectionStore
from scripts.saasmgmt.db import Database
from scripts.saasmgmt.providers import APP_TYPES

logger = logging.getLogger("saasmgmt.dashboard")

_EMPTY_VENDOR = {"users": 0, "admins": 0, "suspended": 0}
_EMPTY_TOTALS = {
    "users": 0,
    "ghostUsers": 0,
    "riskyUsers": 0,
    "monthlyLicenseCost": 0,
    "wastedLicenseCost": 0,
}


class DashboardService:
    """A vendor whose numbers cannot be read contributes zero; errors are only logged."""

    def __init__(self, db: Database, connections: ConnectionStore) -> None:
        self.db = db
        self.connections = connections

    def _vendor_counts(self, company_id: str, app_type: str) -> dict[str, int]:
        row = self.db.fetch_one(
            """SELECT COUNT(*) AS users,
                      COUNT(*) FILTER (WHERE pu.is_admin) AS admins,
                      COUNT(*) FILTER (WHERE pu.suspended) AS suspended
               FROM platform_users pu
               JOIN service_connections sc
                 ON sc.id = pu.connection_id AND sc.is_active
               WHERE pu.company_id = %s AND pu.app_type = %s AND pu.is_active""",
            (company_id, app_type),
        )
        return {k: int(row[k] or 0) for k in _EMPTY_VENDOR} if row else dict(_EMPTY_VENDOR)

    def _resources(self, company_id: str) -> dict[str, dict[str, Any]]:
        """Active resources per type; ``amount`` sums billing lines."""
        rows = self.db.fetch_all(
            """SELECT pr.resource_type,
                      COUNT(*) AS count,
                      COALESCE(SUM((pr.attributes->>'amount')::numeric), 0) AS amount
               FROM platform_resources pr
               JOIN service_connections sc
                 ON sc.id = pr.connection_id AND sc.is_active
               WHERE pr.company_id = %s AND pr.is_active
               GROUP BY pr.resource_type""",
            (company_id,),
        )
        return {
            r["resource_type"]: {"count": int(r["count"] or 0), "amount": float(r["amount"] or 0)}
            for r in rows
        }

    def _totals(self, company_id: str) -> dict[str, int]:
        row = self.db.fetch_one(
            """SELECT COUNT(*) AS users,
                      COUNT(*) FILTER (WHERE (ghost_status->>'isGhost')::boolean) AS ghost_users,
                      COUNT(*) FILTER (WHERE (security_risks->>'riskScore')::int > 0) AS risky_users,
                      COALESCE(SUM((license_waste->>'totalMonthlyCost')::numeric), 0) AS monthly_cost,
                      COALESCE(SUM((license_waste->>'wastedCost')::numeric), 0) AS wasted_cost
               FROM cross_platform_users
               WHERE company_id = %s AND is_active""",
            (company_id,),
        )
        if not row:
            return dict(_EMPTY_TOTALS)
        return {
            "users": int(row["users"] or 0),
            "ghostUsers": int(row["ghost_users"] or 0),
            "riskyUsers": int(row["risky_users"] or 0),
            "monthlyLicenseCost": int(row["monthly_cost"] or 0),
            "wastedLicenseCost": int(row["wasted_cost"] or 0),
        }

    def get_overview(self, company_id: str) -> dict[str, Any]:
        log_extra = {"company_id": company_id}
        try:
            active = self.connections.list_active(company_id=company_id)
        except Exception as exc:
            logger.warning("Connection listing failed, reporting none: %s", exc, extra=log_extra)
            active = []
        connections = {c["app_type"]: c for c in active}

        services: dict[str, dict[str, Any]] = {}
        for app_type in APP_TYPES:
            try:
                counts = self._vendor_counts(company_id, app_type)
            except Exception as exc:
                logger.warning(
                    "Counting users failed, reporting zero: %s", exc,
                    extra={**log_extra, "app_type": app_type},
                )
                counts = dict(_EMPTY_VENDOR)
            connection = connections.get(app_type)
            services[app_type] = {
                **counts,
                "connected": connection is not None,
                "connections": sum(1 for c in active if c["app_type"] == app_type),
                "status": connection["status"] if connection else "disconnected",
                "lastSync": connection.get("last_sync") if connection else None,
            }

        try:
            totals = self._totals(company_id)
        except Exception as exc:
            logger.warning("Correlation totals failed, reporting zero: %s", exc, extra=log_extra)
            totals = dict(_EMPTY_TOTALS)

        try:
            resources = self._resources(company_id)
        except Exception as exc:
            logger.warning("Resource summary failed, reporting none: %s", exc, extra=log_extra)
            resources = {}

        return {
            "services": services,
            "connectedServices": sum(1 for s in services.values() if s["connected"]),
            "totals": totals,
            "resources": resources,
        }
