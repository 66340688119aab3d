"""Audit trail and webhook outbox.

Both sinks run after the primary write has committed. A failure is logged
and swallowed: it never rolls back or fails the operation that produced it.
Webhook delivery itself (signing, retries) is done by the outbox worker.
"""

from typing import Any, Protocol

import structlog

from .models import AuditRecord, WebhookEvent
from .store import ComplianceStore

logger = structlog.get_logger()


class AuditSink(Protocol):
    async def record(
        self,
        tenant_id: str,
        action_type: str,
        entity_type: str,
        entity_id: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class WebhookDispatcher(Protocol):
    async def dispatch(self, tenant_id: str, event_type: str, payload: dict[str, Any]) -> None: ...


class StoreAuditSink:
    def __init__(self, store: ComplianceStore) -> None:
        self.store = store

    async def record(
        self,
        tenant_id: str,
        action_type: str,
        entity_type: str,
        entity_id: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self.store.insert_audit(
                AuditRecord(
                    tenant_id=tenant_id,
                    action_type=action_type,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    description=description,
                    metadata=metadata or {},
                )
            )
        except Exception:
            logger.exception(
                "audit_record_failed",
                tenant_id=tenant_id,
                action_type=action_type,
                entity_id=entity_id,
            )


class OutboxWebhookDispatcher:
    def __init__(self, store: ComplianceStore) -> None:
        self.store = store

    async def dispatch(self, tenant_id: str, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self.store.enqueue_webhook(
                WebhookEvent(tenant_id=tenant_id, event_type=event_type, payload=payload)
            )
            logger.debug("webhook_enqueued", tenant_id=tenant_id, event_type=event_type)
        except Exception:
            logger.exception("webhook_enqueue_failed", tenant_id=tenant_id, event_type=event_type)
