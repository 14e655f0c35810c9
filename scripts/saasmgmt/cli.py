"""CLI entry point: sync, correlate, scheduler, status, disconnect, init-db."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from scripts.saasmgmt.config import load_config
from scripts.saasmgmt.db import Database
from scripts.saasmgmt.logging_config import configure_logging
from scripts.saasmgmt.providers import APP_TYPES
from scripts.saasmgmt.services import build_services

logger = logging.getLogger("saasmgmt.cli")

APP_TYPE_CHOICES = ["all", *APP_TYPES]


def cmd_sync(args: argparse.Namespace) -> None:
    """Run a one-shot sync for one or all connected services."""
    config = load_config()
    db = Database(config.database)
    try:
        services = build_services(config, db)
        app_types = None if args.app_type == "all" else [args.app_type]
        results = services.sync_runner.sync_company(args.company, app_types)
        for label, counts in results.items():
            logger.info("Sync results for %s: %s", label, counts, extra={"company_id": args.company})
        if args.correlate:
            services.correlator.correlate(args.company)
        if any("error" in r for r in results.values()):
            sys.exit(1)
    finally:
        db.close()


def cmd_correlate(args: argparse.Namespace) -> None:
    """Rebuild cross-platform users for a company."""
    config = load_config()
    db = Database(config.database)
    try:
        services = build_services(config, db)
        records = services.correlator.correlate(args.company)
        ghosts = sum(1 for r in records if r["ghostStatus"]["isGhost"])
        risky = sum(1 for r in records if r["securityRisks"]["riskScore"] > 0)
        wasted = sum(r["licenseWaste"]["wastedCost"] for r in records)
        print(f"Correlated {len(records)} users: {ghosts} ghosts, {risky} at risk, ${wasted}/month wasted")
    finally:
        db.close()


def cmd_scheduler(args: argparse.Namespace) -> None:
    """Start the APScheduler-based scheduling loop."""
    from apscheduler.schedulers.blocking import BlockingScheduler

    config = load_config()
    db = Database(config.database)
    try:
        services = build_services(config, db, scheduler=BlockingScheduler())
        services.scheduler.start()
    finally:
        db.close()


def cmd_status(args: argparse.Namespace) -> None:
    """Show service status and recent sync runs for a company."""
    config = load_config()
    db = Database(config.database)
    try:
        services = build_services(config, db)
        fmt = "{:<18}  {:<20}  {:<6}  {:<10}  {}"
        print(fmt.format("SERVICE", "STATUS", "CREDS", "ACTION", "LAST SYNC"))
        print("-" * 80)
        for s in services.smart_connect.get_services_status(args.company):
            print(fmt.format(
                s["id"],
                s["status"],
                "yes" if s["hasCredentials"] else "no",
                s["actionText"],
                str(s["lastSync"])[:19] if s["lastSync"] else "",
            ))

        runs = db.get_recent_runs(
            args.company,
            app_type=args.app_type if args.app_type != "all" else None,
            limit=args.limit,
        )
        print()
        if not runs:
            print("No sync runs found.")
            return
        fmt = "{:<36}  {:<18}  {:<8}  {:<20}  {:<20}  {:>8}  {}"
        print(fmt.format("RUN ID", "SERVICE", "STATUS", "STARTED", "FINISHED", "UPSERTED", "ERROR"))
        print("-" * 140)
        for r in runs:
            started = str(r["started_at"])[:19] if r["started_at"] else ""
            finished = str(r["finished_at"])[:19] if r["finished_at"] else ""
            error = (r.get("error_message") or "")[:40]
            print(fmt.format(
                str(r["id"])[:36],
                r["app_type"],
                r["status"],
                started,
                finished,
                r.get("records_upserted", 0),
                error,
            ))
    finally:
        db.close()


def cmd_disconnect(args: argparse.Namespace) -> None:
    """Soft-delete credentials and connections for a service."""
    config = load_config()
    db = Database(config.database)
    try:
        services = build_services(config, db)
        result = services.smart_connect.disconnect_service(
            args.company, args.app_type, args.app_name
        )
        print(json.dumps(result, indent=2))
        if result["errors"]:
            sys.exit(1)
    finally:
        db.close()


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create tables and indexes."""
    config = load_config()
    db = Database(config.database)
    try:
        db.apply_schema()
    finally:
        db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="saasmgmt",
        description="SaaS credential, sync and cross-platform analytics service",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Run one-shot sync")
    sync_parser.add_argument("--company", "-c", required=True, help="Company id")
    sync_parser.add_argument(
        "--app-type", "-a",
        choices=APP_TYPE_CHOICES,
        default="all",
        help="Service to sync (default: all connected)",
    )
    sync_parser.add_argument(
        "--correlate",
        action="store_true",
        help="Run correlation after syncing",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # correlate command
    corr_parser = subparsers.add_parser("correlate", help="Rebuild cross-platform users")
    corr_parser.add_argument("--company", "-c", required=True, help="Company id")
    corr_parser.set_defaults(func=cmd_correlate)

    # scheduler command
    sched_parser = subparsers.add_parser("scheduler", help="Start scheduled sync loop")
    sched_parser.set_defaults(func=cmd_scheduler)

    # status command
    status_parser = subparsers.add_parser("status", help="Show service status and sync runs")
    status_parser.add_argument("--company", "-c", required=True, help="Company id")
    status_parser.add_argument(
        "--app-type", "-a",
        choices=APP_TYPE_CHOICES,
        default="all",
        help="Filter sync runs by service",
    )
    status_parser.add_argument(
        "--limit", "-l",
        type=int,
        default=10,
        help="Number of runs to show (default: 10)",
    )
    status_parser.set_defaults(func=cmd_status)

    # disconnect command
    disc_parser = subparsers.add_parser("disconnect", help="Disconnect a service")
    disc_parser.add_argument("--company", "-c", required=True, help="Company id")
    disc_parser.add_argument("--app-type", "-a", choices=APP_TYPES, required=True)
    disc_parser.add_argument(
        "--app-name", "-n",
        default=None,
        help="Credential set to disconnect (default: every set for the service)",
    )
    disc_parser.set_defaults(func=cmd_disconnect)

    # init-db command
    init_parser = subparsers.add_parser("init-db", help="Apply the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    return parser


def main() -> None:
    """Main CLI entry point."""
    configure_logging()
    args = build_parser().parse_args()
    try:
        args.func(args)
    except Exception as exc:
        logger.exception("Command %s failed: %s", args.command, exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
