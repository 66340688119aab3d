"""Scheduled compliance job entry points.

Usage:
    python -m src.domains.compliance.jobs deadlines
    python -m src.domains.compliance.jobs deadlines --tenant tenant-123
    python -m src.domains.compliance.jobs batch --tenant tenant-123 --transactions tx-1,tx-2
    python -m src.domains.compliance.jobs init-db
"""

import argparse
import asyncio
import json
import sys

import structlog
from pydantic import BaseModel

from src.config import settings
from src.shared.logging import setup_logging

from .alerts import AlertEngine
from .batch import BatchComplianceOrchestrator
from .deadlines import DeadlineMonitor

logger = structlog.get_logger()


async def _run(args: argparse.Namespace) -> BaseModel | None:
    from src.db.database import async_session_factory, check_db, dispose_db, init_db
    from src.db.repository import SqlAlchemyComplianceStore

    try:
        if args.command == "init-db":
            await init_db()
            return None

        if not await check_db():
            print("Database unreachable", file=sys.stderr)
            sys.exit(1)

        store = SqlAlchemyComplianceStore(async_session_factory)
        alerts = AlertEngine(store, default_sla_hours=settings.alert_sla_default_hours)

        if args.command == "deadlines":
            monitor = DeadlineMonitor(
                store,
                alert_engine=alerts,
                tenant_timeout=settings.deadline_tenant_timeout_seconds,
                default_region=settings.default_region,
            )
            if args.tenant:
                return await monitor.run_tenant_deadline_checks(args.tenant)
            return await monitor.run_all_tenants_deadline_checks()

        orchestrator = BatchComplianceOrchestrator(
            store,
            alert_engine=alerts,
            max_workers=args.workers or settings.batch_max_workers,
            customer_timeout=settings.batch_customer_timeout_seconds,
            default_region=settings.default_region,
        )
        transaction_ids = [t.strip() for t in args.transactions.split(",") if t.strip()]
        return await orchestrator.run_batch_compliance(args.tenant, transaction_ids)
    finally:
        await dispose_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Kestrel compliance scheduled jobs")
    subparsers = parser.add_subparsers(dest="command", required=True)

    deadlines = subparsers.add_parser("deadlines", help="Check TTR and SMR submission deadlines")
    deadlines.add_argument("--tenant", type=str, default=None, help="Check one tenant only")

    batch = subparsers.add_parser("batch", help="Run batch compliance over imported transactions")
    batch.add_argument("--tenant", type=str, required=True, help="Tenant id")
    batch.add_argument(
        "--transactions", type=str, required=True, help="Comma-separated transaction ids"
    )
    batch.add_argument("--workers", type=int, default=None, help="Concurrent customers")

    subparsers.add_parser("init-db", help="Create tables (development only)")

    args = parser.parse_args()
    setup_logging(settings.log_level, settings.log_format)
    logger.info("compliance_job_started", job=args.command, version=settings.app_version)

    result = asyncio.run(_run(args))
    if result is not None:
        print(json.dumps(result.model_dump(mode="json"), indent=2))
        if getattr(result, "errors", None):
            sys.exit(2)


if __name__ == "__main__":
    main()
