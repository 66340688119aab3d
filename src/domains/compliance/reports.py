"""Suspicious matter report (SMR) generation.

Reports are assembled from the customer and transaction records, given a
submission deadline from the business calendar and persisted as
``pending`` so the deadline monitor picks them up. Regulator-format export
and lodgement happen outside this package.

Regulatory basis: AML/CTF Act 2006 (Cth) s41. Three business days after
the suspicion is formed, or 24 hours where it relates to terrorism
financing.
"""

import secrets
import string
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from .calendar import calculate_smr_deadline
from .config import RegionalConfig
from .models import SMRReport, SMRResult, SuspiciousActivity, SuspiciousActivityType
from .notifications import AuditSink, OutboxWebhookDispatcher, StoreAuditSink, WebhookDispatcher
from .store import ComplianceStore

logger = structlog.get_logger()

_BASE36 = string.digits + string.ascii_lowercase


def generate_report_id(now: datetime) -> str:
    """SMR_{epoch milliseconds}_{six random base-36 characters}."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"SMR_{int(now.timestamp() * 1000)}_{suffix}"


class SMRReportGenerator:
    def __init__(
        self,
        store: ComplianceStore,
        audit: AuditSink | None = None,
        webhooks: WebhookDispatcher | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.audit = audit or StoreAuditSink(store)
        self.webhooks = webhooks or OutboxWebhookDispatcher(store)
        self._now = now

    async def generate(
        self, tenant_id: str, config: RegionalConfig, activity: SuspiciousActivity
    ) -> SMRResult:
        now = self._now()
        try:
            tenant = await self.store.get_tenant(tenant_id)
            customer = (
                await self.store.get_customer(tenant_id, activity.customer_id)
                if activity.customer_id
                else None
            )
            transactions = await self.store.get_transactions(tenant_id, activity.transaction_ids)

            urgent = activity.activity_type == SuspiciousActivityType.TERRORISM_FINANCING
            deadline = calculate_smr_deadline(activity.suspicion_formed_at, config, urgent=urgent)
            if not isinstance(deadline, datetime):
                deadline = datetime.combine(deadline, datetime.min.time(), tzinfo=UTC)

            total = sum(tx.amount for tx in transactions)
            currency = transactions[0].currency if transactions else config.currency
            report_id = generate_report_id(now)

            report = SMRReport(
                id=report_id,
                tenant_id=tenant_id,
                customer_id=activity.customer_id,
                activity_type=activity.activity_type,
                status="pending",
                is_urgent=urgent,
                submission_deadline=deadline,
                created_at=now,
                report={
                    "report_id": report_id,
                    "generated_at": now.isoformat(),
                    "tenant_name": tenant.name if tenant and tenant.name else "Unknown",
                    "regulator": config.regulator,
                    "suspected_activity": {
                        "type": activity.activity_type.value,
                        "description": activity.description,
                        "suspicion_formed_at": activity.suspicion_formed_at.isoformat(),
                        "customer_id": activity.customer_id,
                        "customer_name": customer.full_name if customer else None,
                        "transaction_ids": activity.transaction_ids,
                        "total_amount": total,
                        "currency": currency,
                    },
                    "grounds_for_suspicion": activity.grounds_for_suspicion,
                    "action_taken": activity.action_taken,
                    "reporting_officer": activity.reporting_officer.model_dump(),
                    "additional_information": activity.additional_information,
                    "transactions": [
                        {
                            "id": tx.id,
                            "date": tx.created_at.isoformat(),
                            "amount": tx.amount,
                            "currency": tx.currency,
                            "type": tx.transaction_type,
                        }
                        for tx in transactions
                    ],
                },
            )
            await self.store.insert_smr(report)
        except Exception as exc:
            logger.exception(
                "smr_generation_failed", tenant_id=tenant_id, customer_id=activity.customer_id
            )
            return SMRResult(success=False, error=str(exc))

        logger.warning(
            "smr_generated",
            tenant_id=tenant_id,
            report_id=report_id,
            customer_id=activity.customer_id,
            activity_type=activity.activity_type.value,
            urgent=urgent,
            submission_deadline=deadline.isoformat(),
        )

        await self.audit.record(
            tenant_id,
            "smr.generated",
            "smr_report",
            report_id,
            f"SMR generated for {activity.activity_type.value}",
            {
                "report_id": report_id,
                "customer_id": activity.customer_id,
                "transaction_count": len(activity.transaction_ids),
            },
        )
        await self.webhooks.dispatch(
            tenant_id,
            "smr.generated",
            {
                "report_id": report_id,
                "customer_id": activity.customer_id,
                "activity_type": activity.activity_type.value,
                "total_amount": total,
                "currency": currency,
                "submission_deadline": deadline.isoformat(),
            },
        )
        return SMRResult(success=True, report_id=report_id, submission_deadline=deadline)
