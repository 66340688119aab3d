"""Daily scan of outstanding TTR and SMR obligations.

For every active tenant, outstanding reports with a submission deadline
are measured in business days against the tenant's calendar and alerted
once per day per report when they enter the alert window:

  TTR (10 business days to lodge)   alert at <= 5 days remaining
  SMR (3 business days to lodge)    alert at <= 2 days remaining

Severity ramps differ by report type; anything overdue is critical.
Failures are isolated per report and per tenant, so one bad row or one
unreachable tenant never stops the rest of the scan.
Each tenant scan runs under ``tenant_timeout``; a tenant that overruns is
recorded as timed out with whatever it had already counted.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from .alerts import AlertEngine, deadline_alert, start_of_utc_day
from .calendar import business_days_remaining, local_date
from .config import DEFAULT_REGION, RegionalConfig, RegionalConfigProvider, get_tenant_config
from .exceptions import TenantNotFoundError
from .models import (
    AlertSeverity,
    AllTenantsDeadlineResult,
    DeadlineCheckResult,
    EntityRef,
)
from .notifications import AuditSink, OutboxWebhookDispatcher, StoreAuditSink, WebhookDispatcher
from .store import ComplianceStore

logger = structlog.get_logger()

TTR_ALERT_DAYS = 5
SMR_ALERT_DAYS = 2


def deadline_severity(days_remaining: int, report_type: str) -> AlertSeverity:
    if days_remaining <= 0:
        return AlertSeverity.CRITICAL
    if report_type == "smr":
        return AlertSeverity.CRITICAL if days_remaining == 1 else AlertSeverity.HIGH
    if days_remaining <= 1:
        return AlertSeverity.CRITICAL
    if days_remaining <= 2:
        return AlertSeverity.HIGH
    if days_remaining <= 5:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


class DeadlineMonitor:
    def __init__(
        self,
        store: ComplianceStore,
        alert_engine: AlertEngine | None = None,
        audit: AuditSink | None = None,
        webhooks: WebhookDispatcher | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
        tenant_timeout: float | None = 120.0,
        default_region: str = DEFAULT_REGION,
    ) -> None:
        self.store = store
        self.tenant_timeout = tenant_timeout
        self.default_region = default_region
        self.audit = audit or StoreAuditSink(store)
        self.webhooks = webhooks or OutboxWebhookDispatcher(store)
        self.alerts = alert_engine or AlertEngine(store, self.audit, self.webhooks, now=now)
        self._now = now

    async def run_tenant_deadline_checks(
        self, tenant_id: str, config: RegionalConfig | None = None
    ) -> DeadlineCheckResult:
        result = DeadlineCheckResult(tenant_id=tenant_id)
        try:
            async with asyncio.timeout(self.tenant_timeout):
                await self._check_tenant(tenant_id, config, result)
        except TimeoutError:
            logger.warning(
                "deadline_tenant_timed_out", tenant_id=tenant_id, timeout=self.tenant_timeout
            )
            result.errors.append(f"timed out after {self.tenant_timeout:g}s")
        return result

    async def _check_tenant(
        self, tenant_id: str, config: RegionalConfig | None, result: DeadlineCheckResult
    ) -> None:
        if config is None:
            try:
                provider = RegionalConfigProvider(self.store, self.default_region)
                config = await provider.for_tenant(tenant_id)
            except TenantNotFoundError as exc:
                result.errors.append(str(exc))
                return

        with structlog.contextvars.bound_contextvars(tenant_id=tenant_id):
            await self._check_ttrs(tenant_id, config, result)
            await self._check_smrs(tenant_id, config, result)

            logger.info(
                "deadline_check_completed",
                ttr_alerts=result.ttr_alerts_created,
                smr_alerts=result.smr_alerts_created,
                skipped=result.skipped,
                errors=len(result.errors),
            )

        await self.audit.record(
            tenant_id,
            "deadline_check_run",
            "tenant",
            tenant_id,
            f"Daily deadline check: {result.ttr_alerts_created} TTR alerts, "
            f"{result.smr_alerts_created} SMR alerts",
            {
                "ttr_alerts": result.ttr_alerts_created,
                "smr_alerts": result.smr_alerts_created,
                "skipped": result.skipped,
                "errors": result.errors,
            },
        )

    async def run_all_tenants_deadline_checks(self) -> AllTenantsDeadlineResult:
        result = AllTenantsDeadlineResult()
        try:
            tenants = await self.store.list_active_tenants()
        except Exception as exc:
            logger.exception("deadline_tenant_fetch_failed")
            result.errors.append(f"Failed to fetch tenants: {exc}")
            return result

        for tenant in tenants:
            try:
                config = get_tenant_config(tenant.region, tenant.settings, self.default_region)
                tenant_result = await self.run_tenant_deadline_checks(tenant.id, config)
            except Exception as exc:
                logger.exception("deadline_tenant_check_failed", tenant_id=tenant.id)
                result.errors.append(f"[{tenant.id}] Tenant check failed: {exc}")
                continue

            result.tenants_checked += 1
            result.total_ttr_alerts += tenant_result.ttr_alerts_created
            result.total_smr_alerts += tenant_result.smr_alerts_created
            result.errors.extend(f"[{tenant.id}] {error}" for error in tenant_result.errors)

        logger.info(
            "deadline_checks_completed",
            tenants_checked=result.tenants_checked,
            ttr_alerts=result.total_ttr_alerts,
            smr_alerts=result.total_smr_alerts,
            errors=len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def _check_ttrs(
        self, tenant_id: str, config: RegionalConfig, result: DeadlineCheckResult
    ) -> None:
        try:
            pending = await self.store.list_outstanding_ttrs(tenant_id)
        except Exception as exc:
            logger.exception("ttr_fetch_failed")
            result.errors.append(f"TTR fetch error: {exc}")
            return

        for tx in pending:
            try:
                created = await self._alert_if_due(
                    tenant_id,
                    config,
                    report_type="ttr",
                    threshold=TTR_ALERT_DAYS,
                    entity=EntityRef(entity_type="transaction", entity_id=tx.id),
                    customer_id=tx.customer_id,
                    deadline=tx.ttr_submission_deadline,
                    amount=tx.amount,
                    currency=tx.currency,
                    reference=tx.ttr_reference,
                    result=result,
                )
                if created:
                    result.ttr_alerts_created += 1
            except Exception as exc:
                logger.exception("ttr_deadline_check_failed", transaction_id=tx.id)
                result.errors.append(f"TTR check error: {exc}")

    async def _check_smrs(
        self, tenant_id: str, config: RegionalConfig, result: DeadlineCheckResult
    ) -> None:
        try:
            pending = await self.store.list_outstanding_smrs(tenant_id)
        except Exception as exc:
            logger.exception("smr_fetch_failed")
            result.errors.append(f"SMR fetch error: {exc}")
            return

        for report in pending:
            try:
                created = await self._alert_if_due(
                    tenant_id,
                    config,
                    report_type="smr",
                    threshold=SMR_ALERT_DAYS,
                    entity=EntityRef(entity_type="smr_report", entity_id=report.id),
                    customer_id=report.customer_id,
                    deadline=report.submission_deadline,
                    result=result,
                )
                if created:
                    result.smr_alerts_created += 1
            except Exception as exc:
                logger.exception("smr_deadline_check_failed", report_id=report.id)
                result.errors.append(f"SMR check error: {exc}")

    async def _alert_if_due(
        self,
        tenant_id: str,
        config: RegionalConfig,
        *,
        report_type: str,
        threshold: int,
        entity: EntityRef,
        customer_id: str | None,
        deadline: datetime | None,
        result: DeadlineCheckResult,
        amount: float | None = None,
        currency: str | None = None,
        reference: str | None = None,
    ) -> bool:
        if deadline is None:
            return False

        now = self._now()
        today = local_date(now, config)
        days_remaining = business_days_remaining(deadline, config, today)
        if days_remaining > threshold:
            return False

        rule_code = f"{report_type.upper()}_DEADLINE_APPROACHING"
        already_sent = await self.store.find_recent_alert(
            tenant_id,
            rule_code,
            entity.entity_type,
            entity.entity_id,
            since=start_of_utc_day(now),
        )
        if already_sent is not None:
            result.skipped += 1
            return False

        customer_name = await self._customer_name(tenant_id, customer_id)
        severity = deadline_severity(days_remaining, report_type)
        due_date = local_date(deadline, config)

        outcome = await self.alerts.create_alert(
            deadline_alert(
                tenant_id,
                report_type,
                entity,
                customer_id,
                customer_name,
                days_remaining,
                due_date,
                severity,
                amount=amount,
                currency=currency,
                reference=reference,
            )
        )
        if outcome.skipped:
            result.skipped += 1
            return False
        if not outcome.success:
            result.errors.append(
                f"Failed to create {report_type.upper()} alert for {entity.entity_id}: "
                f"{outcome.error}"
            )
            return False

        overdue = days_remaining <= 0
        await self.audit.record(
            tenant_id,
            f"{report_type}_deadline_alert",
            entity.entity_type,
            entity.entity_id,
            f"{report_type.upper()} deadline alert: {days_remaining} days remaining",
            {
                "days_remaining": days_remaining,
                "deadline": due_date.isoformat(),
                "alert_id": outcome.alert_id,
                "alert_number": outcome.alert_number,
                "severity": severity.value,
            },
        )
        await self.webhooks.dispatch(
            tenant_id,
            "deadline.overdue" if overdue else "deadline.approaching",
            {
                "alert_id": outcome.alert_id,
                "alert_number": outcome.alert_number,
                "type": report_type,
                "entity_type": entity.entity_type,
                "entity_id": entity.entity_id,
                "customer_id": customer_id,
                "customer_name": customer_name,
                "days_remaining": days_remaining,
                "deadline": due_date.isoformat(),
                "severity": severity.value,
                "amount": amount,
                "currency": currency,
                "reference": reference,
            },
        )
        logger.warning(
            "deadline_alert_created",
            report_type=report_type,
            entity_id=entity.entity_id,
            days_remaining=days_remaining,
            severity=severity.value,
        )
        return True

    async def _customer_name(self, tenant_id: str, customer_id: str | None) -> str:
        if not customer_id:
            return "Unknown"
        customer = await self.store.get_customer(tenant_id, customer_id)
        if customer is None:
            return "Unknown"
        return customer.full_name or "Unknown"
