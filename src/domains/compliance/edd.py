"""Enhanced due diligence (EDD) investigations.

A customer has at most one open investigation. Opening one flags the
customer ``requires_edd`` so later batches do not re-trigger it.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from .models import EDDInvestigation, EDDResult, EDDStatus
from .notifications import AuditSink, OutboxWebhookDispatcher, StoreAuditSink, WebhookDispatcher
from .store import ComplianceStore

logger = structlog.get_logger()

EDD_SEQUENCE_SCOPE = "edd"


def format_investigation_number(day: datetime, sequence: int) -> str:
    return f"EDD-{day:%Y%m%d}-{sequence:04d}"


class EDDService:
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

    async def create_investigation(
        self,
        tenant_id: str,
        customer_id: str,
        reason: str,
        triggered_by: str = "system",
        transaction_id: str | None = None,
    ) -> EDDResult:
        """Open an investigation, or report the one already open for the customer."""
        try:
            existing = await self.store.find_open_edd(tenant_id, customer_id)
            if existing is not None:
                if transaction_id:
                    await self.store.update_transaction(
                        tenant_id, transaction_id, edd_investigation_id=existing.id
                    )
                return EDDResult(
                    success=False,
                    existing_investigation=True,
                    investigation_id=existing.id,
                    investigation_number=existing.investigation_number,
                    error="Customer already has an active investigation",
                )

            now = self._now()
            sequence = await self.store.next_sequence(
                tenant_id, EDD_SEQUENCE_SCOPE, now.astimezone(UTC).date()
            )
            investigation = EDDInvestigation(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                investigation_number=format_investigation_number(now.astimezone(UTC), sequence),
                customer_id=customer_id,
                transaction_id=transaction_id,
                status=EDDStatus.OPEN,
                trigger_reason=reason,
                triggered_by=triggered_by,
                created_at=now,
                updated_at=now,
            )
            await self.store.insert_edd(investigation)
            await self.store.update_customer(
                tenant_id,
                customer_id,
                requires_edd=True,
                edd_investigation_id=investigation.id,
            )
            if transaction_id:
                await self.store.update_transaction(
                    tenant_id, transaction_id, edd_investigation_id=investigation.id
                )
        except Exception as exc:
            logger.exception("edd_creation_failed", tenant_id=tenant_id, customer_id=customer_id)
            return EDDResult(success=False, error=str(exc))

        logger.warning(
            "edd_investigation_created",
            tenant_id=tenant_id,
            customer_id=customer_id,
            investigation_number=investigation.investigation_number,
            triggered_by=triggered_by,
        )

        await self.audit.record(
            tenant_id,
            "edd_investigation_created",
            "edd_investigation",
            investigation.id,
            f"EDD investigation created: {reason}",
            {
                "investigation_number": investigation.investigation_number,
                "customer_id": customer_id,
                "transaction_id": transaction_id,
                "triggered_by": triggered_by,
            },
        )
        await self.webhooks.dispatch(
            tenant_id,
            "edd.investigation_created",
            {
                "investigation_id": investigation.id,
                "investigation_number": investigation.investigation_number,
                "customer_id": customer_id,
                "transaction_id": transaction_id,
                "trigger_reason": reason,
                "triggered_by": triggered_by,
            },
        )
        return EDDResult(
            success=True,
            investigation_id=investigation.id,
            investigation_number=investigation.investigation_number,
        )

    async def escalate_investigation(
        self,
        tenant_id: str,
        investigation_id: str,
        reason: str,
        escalated_to: str = "management",
        escalated_by: str | None = None,
    ) -> EDDResult:
        try:
            investigation = await self.store.get_edd(tenant_id, investigation_id)
            if investigation is None:
                return EDDResult(
                    success=False, not_found=True, error="Investigation not found"
                )

            now = self._now()
            escalation = {
                "id": str(uuid.uuid4()),
                "escalated_at": now.isoformat(),
                "escalated_by": escalated_by,
                "escalated_to": escalated_to,
                "reason": reason,
                "resolved": False,
            }
            updated = investigation.model_copy(
                update={
                    "status": EDDStatus.ESCALATED,
                    "escalated_to": escalated_to,
                    "escalation_reason": reason,
                    "escalated_at": now,
                    "escalations": [*investigation.escalations, escalation],
                    "updated_at": now,
                }
            )
            await self.store.update_edd(updated)
        except Exception as exc:
            logger.exception(
                "edd_escalation_failed", tenant_id=tenant_id, investigation_id=investigation_id
            )
            return EDDResult(success=False, error=str(exc))

        logger.warning(
            "edd_investigation_escalated",
            tenant_id=tenant_id,
            investigation_id=investigation_id,
            escalated_to=escalated_to,
        )

        await self.audit.record(
            tenant_id,
            "edd_investigation_escalated",
            "edd_investigation",
            investigation_id,
            f"Investigation escalated: {reason}",
            {"reason": reason, "escalated_to": escalated_to},
        )
        await self.webhooks.dispatch(
            tenant_id,
            "edd.investigation_escalated",
            {
                "investigation_id": investigation_id,
                "investigation_number": updated.investigation_number,
                "customer_id": updated.customer_id,
                "escalated_to": escalated_to,
                "reason": reason,
            },
        )
        return EDDResult(
            success=True,
            investigation_id=investigation_id,
            investigation_number=updated.investigation_number,
        )
