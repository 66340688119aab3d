"""Compliance alert engine: creation, suppression, numbering and lifecycle.

Creation runs a fixed sequence of guards:

  1. Rule lookup: a missing or disabled rule still creates the alert,
     without cooldown or rate-limit enforcement
  2. Cooldown: same rule + entity inside ``cooldown_minutes`` skips
  3. Daily rate limit: ``max_alerts_per_day`` reached for the rule skips
  4. Numbering: ALT-YYYYMMDD-NNNN from the store's atomic
     per-tenant-per-day counter
  5. Persist: alert and optional auto-created case in one unit;
     an auto-cased alert starts ``escalated``
  6. Notify: audit record and webhook after the commit

Cooldown and rate-limit checks are read-then-insert and therefore
best-effort under concurrent creation for the same rule: a few extra
alerts can slip past the limit. Numbering is not, because it never reads
a row count.

Lifecycle: new -> acknowledged -> (investigating) -> resolved | dismissed.
``is_escalated`` is orthogonal and can be set from any open state. The SLA
breach flag is recomputed on every read.
"""

import re
import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

import structlog

from .models import (
    Alert,
    AlertInput,
    AlertOperationResult,
    AlertResult,
    AlertRule,
    AlertSeverity,
    AlertStatus,
    AppliedFactor,
    Case,
    EntityRef,
    OperationStatus,
    ResolutionType,
    StructuringResult,
)
from .notifications import AuditSink, OutboxWebhookDispatcher, StoreAuditSink, WebhookDispatcher
from .risk_scoring import risk_alert_severity
from .store import ComplianceStore

logger = structlog.get_logger()

RULE_CODE_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]{1,49}$")

ALERT_SEQUENCE_SCOPE = "alert"


def format_alert_number(day: datetime, sequence: int) -> str:
    return f"ALT-{day:%Y%m%d}-{sequence:04d}"


def start_of_utc_day(moment: datetime) -> datetime:
    return datetime.combine(moment.astimezone(UTC).date(), time.min, tzinfo=UTC)


class AlertEngine:
    def __init__(
        self,
        store: ComplianceStore,
        audit: AuditSink | None = None,
        webhooks: WebhookDispatcher | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
        default_sla_hours: float | None = None,
    ) -> None:
        self.store = store
        self.audit = audit or StoreAuditSink(store)
        self.webhooks = webhooks or OutboxWebhookDispatcher(store)
        self._now = now
        self.default_sla_hours = default_sla_hours

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_alert(self, request: AlertInput) -> AlertResult:
        if not RULE_CODE_PATTERN.match(request.rule_code):
            return AlertResult(success=False, error=f"Invalid rule code: {request.rule_code!r}")

        tenant_id = request.tenant_id
        entity = request.entity
        now = self._now()
        sla_hours = request.sla_hours or self.default_sla_hours

        try:
            rule = await self._active_rule(tenant_id, request.rule_code)

            if rule is not None and (skip := await self._suppression(request, rule, now)):
                logger.info(
                    "alert_skipped",
                    tenant_id=tenant_id,
                    rule_code=request.rule_code,
                    entity_type=entity.entity_type,
                    entity_id=entity.entity_id,
                    reason=skip,
                )
                return AlertResult(success=False, skipped=True, skip_reason=skip)

            sequence = await self.store.next_sequence(
                tenant_id, ALERT_SEQUENCE_SCOPE, now.astimezone(UTC).date()
            )
            alert = Alert(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                alert_number=format_alert_number(now.astimezone(UTC), sequence),
                rule_id=rule.id if rule else None,
                rule_code=request.rule_code,
                alert_type=request.alert_type,
                severity=(rule.severity if rule and rule.severity else request.severity),
                status=AlertStatus.NEW,
                title=request.title,
                description=request.description,
                entity_type=entity.entity_type,
                entity_id=entity.entity_id,
                customer_id=request.customer_id,
                transaction_id=request.transaction_id,
                trigger_data=request.trigger_data,
                metadata={"rule_code": request.rule_code, "auto_created": True},
                created_at=now,
                sla_deadline=now + timedelta(hours=sla_hours) if sla_hours else None,
            )

            case = None
            wants_case = request.auto_create_case or (rule is not None and rule.auto_create_case)
            if wants_case and rule is not None and rule.case_type:
                case = Case(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    case_type=rule.case_type,
                    priority=rule.case_priority or request.case_priority or "medium",
                    title=f"Case: {request.title}",
                    description=request.description,
                    customer_id=request.customer_id,
                    alert_id=alert.id,
                    created_at=now,
                )
                alert = alert.model_copy(
                    update={
                        "status": AlertStatus.ESCALATED,
                        "case_id": case.id,
                        "is_escalated": True,
                        "escalated_at": now,
                        "escalation_reason": f"Auto-created case {case.id}",
                    }
                )

            await self.store.insert_alert(alert, case)
        except Exception as exc:
            logger.exception(
                "alert_creation_failed",
                tenant_id=tenant_id,
                rule_code=request.rule_code,
                entity_id=entity.entity_id,
            )
            return AlertResult(success=False, error=str(exc))

        logger.warning(
            "compliance_alert_created",
            tenant_id=tenant_id,
            alert_id=alert.id,
            alert_number=alert.alert_number,
            rule_code=request.rule_code,
            severity=alert.severity.value,
            case_id=alert.case_id,
            degraded=rule is None,
        )

        await self._notify_created(alert)
        return AlertResult(
            success=True,
            alert_id=alert.id,
            alert_number=alert.alert_number,
            case_id=alert.case_id,
        )

    async def create_alerts(self, requests: list[AlertInput]) -> list[AlertResult]:
        """Create alerts one after another, preserving input order."""
        return [await self.create_alert(request) for request in requests]

    async def _active_rule(self, tenant_id: str, rule_code: str) -> AlertRule | None:
        rule = await self.store.get_alert_rule(tenant_id, rule_code)
        if rule is None or not rule.enabled:
            logger.debug("alert_rule_not_active", tenant_id=tenant_id, rule_code=rule_code)
            return None
        return rule

    async def _suppression(self, request: AlertInput, rule: AlertRule, now: datetime) -> str | None:
        entity = request.entity

        if rule.cooldown_minutes:
            recent = await self.store.find_recent_alert(
                request.tenant_id,
                request.rule_code,
                entity.entity_type,
                entity.entity_id,
                since=now - timedelta(minutes=rule.cooldown_minutes),
            )
            if recent is not None:
                return (
                    f"Alert for {entity.entity_type} {entity.entity_id} already triggered "
                    f"within cooldown period ({rule.cooldown_minutes} minutes)"
                )

        if rule.max_alerts_per_day:
            today_count = await self.store.count_alerts(
                request.tenant_id, request.rule_code, since=start_of_utc_day(now)
            )
            if today_count >= rule.max_alerts_per_day:
                return (
                    f"Daily rate limit reached for rule {request.rule_code} "
                    f"({rule.max_alerts_per_day} alerts/day)"
                )

        return None

    async def _notify_created(self, alert: Alert) -> None:
        await self.audit.record(
            alert.tenant_id,
            "alert.created",
            "alert",
            alert.id,
            f"Alert {alert.alert_number} created: {alert.title}",
            {
                "alert_number": alert.alert_number,
                "rule_code": alert.rule_code,
                "severity": alert.severity.value,
                "entity_type": alert.entity_type,
                "entity_id": alert.entity_id,
                "case_id": alert.case_id,
            },
        )
        await self.webhooks.dispatch(
            alert.tenant_id,
            "alert.created",
            {
                "alert_id": alert.id,
                "alert_number": alert.alert_number,
                "title": alert.title,
                "description": alert.description,
                "severity": alert.severity.value,
                "status": alert.status.value,
                "entity_type": alert.entity_type,
                "entity_id": alert.entity_id,
                "customer_id": alert.customer_id,
                "case_id": alert.case_id,
            },
        )

    # ------------------------------------------------------------------
    # Reads and lifecycle transitions
    # ------------------------------------------------------------------

    async def get_alert(self, tenant_id: str, alert_id: str) -> AlertOperationResult:
        alert = await self.store.get_alert(tenant_id, alert_id)
        if alert is None:
            return _not_found(alert_id)
        return AlertOperationResult(status=OperationStatus.OK, alert=alert.with_sla(self._now()))

    async def acknowledge(
        self,
        tenant_id: str,
        alert_id: str,
        acknowledged_by: str | None = None,
        acknowledged_at: datetime | None = None,
    ) -> AlertOperationResult:
        alert = await self.store.get_alert(tenant_id, alert_id)
        if alert is None:
            return _not_found(alert_id)
        if alert.status not in (AlertStatus.NEW, AlertStatus.ESCALATED, AlertStatus.ACKNOWLEDGED):
            return _invalid(alert, "acknowledge")

        changes: dict[str, Any] = {"status": AlertStatus.ACKNOWLEDGED}
        if alert.acknowledged_at is None:
            changes["acknowledged_at"] = acknowledged_at or self._now()
            changes["acknowledged_by"] = acknowledged_by or "system"
        return await self._apply(alert, changes, "acknowledged")

    async def start_investigation(
        self, tenant_id: str, alert_id: str, investigator: str | None = None
    ) -> AlertOperationResult:
        alert = await self.store.get_alert(tenant_id, alert_id)
        if alert is None:
            return _not_found(alert_id)
        if alert.is_terminal:
            return _invalid(alert, "investigate")

        changes: dict[str, Any] = {"status": AlertStatus.INVESTIGATING}
        if investigator and alert.assigned_to is None:
            changes["assigned_to"] = investigator
            changes["assigned_at"] = self._now()
        return await self._apply(alert, changes, "investigating")

    async def assign(self, tenant_id: str, alert_id: str, assignee: str) -> AlertOperationResult:
        if not assignee.strip():
            return AlertOperationResult(
                status=OperationStatus.INVALID, error="Assignee must not be empty"
            )
        alert = await self.store.get_alert(tenant_id, alert_id)
        if alert is None:
            return _not_found(alert_id)
        if alert.is_terminal:
            return _invalid(alert, "assign")
        return await self._apply(
            alert, {"assigned_to": assignee, "assigned_at": self._now()}, "assigned"
        )

    async def resolve(
        self,
        tenant_id: str,
        alert_id: str,
        resolution_type: ResolutionType,
        resolved_by: str | None = None,
        resolved_at: datetime | None = None,
        notes: str | None = None,
    ) -> AlertOperationResult:
        return await self._close(
            tenant_id,
            alert_id,
            AlertStatus.RESOLVED,
            resolution_type,
            resolved_by,
            resolved_at,
            notes,
        )

    async def dismiss(
        self,
        tenant_id: str,
        alert_id: str,
        dismissed_by: str | None = None,
        notes: str | None = None,
        false_positive: bool = False,
    ) -> AlertOperationResult:
        status = AlertStatus.FALSE_POSITIVE if false_positive else AlertStatus.DISMISSED
        resolution = ResolutionType.FALSE_POSITIVE if false_positive else ResolutionType.NO_ACTION
        return await self._close(tenant_id, alert_id, status, resolution, dismissed_by, None, notes)

    async def escalate(
        self,
        tenant_id: str,
        alert_id: str,
        escalated_to: str,
        reason: str,
    ) -> AlertOperationResult:
        alert = await self.store.get_alert(tenant_id, alert_id)
        if alert is None:
            return _not_found(alert_id)
        if alert.is_terminal:
            return _invalid(alert, "escalate")
        return await self._apply(
            alert,
            {
                "is_escalated": True,
                "escalated_to": escalated_to,
                "escalation_reason": reason,
                "escalated_at": self._now(),
            },
            "escalated",
        )

    async def _close(
        self,
        tenant_id: str,
        alert_id: str,
        status: AlertStatus,
        resolution_type: ResolutionType,
        actor: str | None,
        at: datetime | None,
        notes: str | None,
    ) -> AlertOperationResult:
        alert = await self.store.get_alert(tenant_id, alert_id)
        if alert is None:
            return _not_found(alert_id)
        if alert.status == status:
            return AlertOperationResult(
                status=OperationStatus.OK, alert=alert.with_sla(self._now())
            )
        if alert.is_terminal:
            return _invalid(alert, status.value)

        changes: dict[str, Any] = {
            "status": status,
            "resolution_type": resolution_type,
            "resolution_notes": notes,
        }
        if alert.resolved_at is None:
            changes["resolved_at"] = at or self._now()
            changes["resolved_by"] = actor or "system"
        return await self._apply(alert, changes, status.value)

    async def _apply(
        self, alert: Alert, changes: dict[str, Any], action: str
    ) -> AlertOperationResult:
        updated = alert.model_copy(update=changes)
        await self.store.update_alert(updated)

        logger.info(
            "compliance_alert_updated",
            tenant_id=alert.tenant_id,
            alert_id=alert.id,
            action=action,
            status=updated.status.value,
        )
        await self.audit.record(
            alert.tenant_id,
            "alert.updated",
            "alert",
            alert.id,
            f"Alert {alert.alert_number} {action}",
            {"from_status": alert.status.value, "to_status": updated.status.value},
        )
        return AlertOperationResult(status=OperationStatus.OK, alert=updated.with_sla(self._now()))


def _not_found(alert_id: str) -> AlertOperationResult:
    return AlertOperationResult(
        status=OperationStatus.NOT_FOUND, error=f"Alert {alert_id} not found"
    )


def _invalid(alert: Alert, action: str) -> AlertOperationResult:
    return AlertOperationResult(
        status=OperationStatus.INVALID_TRANSITION,
        alert=alert,
        error=f"Cannot {action} alert {alert.alert_number} in status {alert.status.value}",
    )


# ---------------------------------------------------------------------------
# Alert builders for automated compliance events
# ---------------------------------------------------------------------------


def sanctions_match_alert(
    tenant_id: str,
    customer_id: str,
    customer_name: str,
    match_score: float,
    matched_name: str,
    source: str,
) -> AlertInput:
    return AlertInput(
        tenant_id=tenant_id,
        rule_code="SANCTIONS_MATCH",
        alert_type="sanctions_match",
        severity=AlertSeverity.CRITICAL,
        title=f"Sanctions match: {customer_name}",
        description=(
            f'Customer matched against {source} sanctions list: "{matched_name}" '
            f"({match_score * 100:.0f}% confidence). Immediate review required."
        ),
        entity=EntityRef(entity_type="customer", entity_id=customer_id),
        customer_id=customer_id,
        trigger_data={"match_score": match_score, "matched_name": matched_name, "source": source},
        sla_hours=4,
        auto_create_case=True,
    )


def high_risk_transaction_alert(
    tenant_id: str,
    transaction_id: str,
    customer_id: str,
    score: int,
    risk_level: str,
    factors: list[AppliedFactor],
) -> AlertInput:
    reasons = "; ".join(f.reason for f in factors[:3])
    return AlertInput(
        tenant_id=tenant_id,
        rule_code="HIGH_RISK_TRANSACTION",
        alert_type="high_risk_transaction",
        severity=risk_alert_severity(score),
        title=f"High risk transaction detected (score: {score})",
        description=f"Transaction flagged as high risk. Key factors: {reasons}",
        entity=EntityRef(entity_type="transaction", entity_id=transaction_id),
        customer_id=customer_id,
        transaction_id=transaction_id,
        trigger_data={
            "risk_score": score,
            "risk_level": risk_level,
            "factors": [f.model_dump() for f in factors],
        },
        sla_hours=48,
    )


def ttr_threshold_alert(
    tenant_id: str,
    transaction_id: str,
    customer_id: str,
    amount: float,
    currency: str,
    submission_days: int,
) -> AlertInput:
    return AlertInput(
        tenant_id=tenant_id,
        rule_code="TXN_TTR_THRESHOLD",
        alert_type="ttr_required",
        severity=AlertSeverity.HIGH,
        title=f"Transaction requires TTR ({currency} {amount:,.2f})",
        description=(
            "Transaction amount meets or exceeds TTR reporting threshold. "
            f"TTR must be submitted within {submission_days} business days."
        ),
        entity=EntityRef(entity_type="transaction", entity_id=transaction_id),
        customer_id=customer_id,
        transaction_id=transaction_id,
        trigger_data={"amount": amount, "currency": currency, "threshold": "ttr"},
        sla_hours=240,
    )


def structuring_alert(
    tenant_id: str, customer_id: str, result: StructuringResult
) -> AlertInput:
    return AlertInput(
        tenant_id=tenant_id,
        rule_code="STRUCTURING_DETECTED",
        alert_type="structuring",
        severity=AlertSeverity.CRITICAL,
        title="Potential structuring activity detected",
        description=(
            f"Customer has {result.transaction_count} suspicious transactions totaling "
            f"{result.total_amount:,.2f}. Indicators: {'; '.join(result.indicators)}. "
            "SMR may be required."
        ),
        entity=EntityRef(entity_type="customer", entity_id=customer_id),
        customer_id=customer_id,
        trigger_data={
            "transaction_count": result.transaction_count,
            "total_amount": result.total_amount,
            "indicators": result.indicators,
        },
        sla_hours=24,
        auto_create_case=True,
    )


def edd_triggered_alert(
    tenant_id: str, customer_id: str, investigation_number: str, trigger_reason: str
) -> AlertInput:
    return AlertInput(
        tenant_id=tenant_id,
        rule_code="EDD_TRIGGERED",
        alert_type="edd_triggered",
        severity=AlertSeverity.HIGH,
        title=f"EDD investigation {investigation_number} opened",
        description=(
            f"Enhanced Due Diligence investigation triggered: {trigger_reason}. "
            "Customer information must be collected and reviewed."
        ),
        entity=EntityRef(entity_type="customer", entity_id=customer_id),
        customer_id=customer_id,
        trigger_data={
            "investigation_number": investigation_number,
            "trigger_reason": trigger_reason,
        },
        sla_hours=120,
    )


def format_long_date(day: date) -> str:
    """e.g. ``Friday, 15 March 2024``."""
    return f"{day:%A}, {day.day} {day:%B %Y}"


def deadline_alert(
    tenant_id: str,
    report_type: str,
    entity: EntityRef,
    customer_id: str | None,
    customer_name: str,
    days_remaining: int,
    deadline: date,
    severity: AlertSeverity,
    amount: float | None = None,
    currency: str | None = None,
    reference: str | None = None,
) -> AlertInput:
    label = report_type.upper()
    due = format_long_date(deadline)
    plural = "" if days_remaining == 1 else "s"
    overdue = days_remaining <= 0

    if overdue:
        title = f"{label} Deadline OVERDUE"
        description = (
            f"{label} for {customer_name} is OVERDUE. Deadline was {due}. "
            "Immediate action required."
        )
    else:
        title = f"{label} Deadline Approaching ({days_remaining} day{plural})"
        description = (
            f"{label} for {customer_name} is due in {days_remaining} "
            f"business day{plural} ({due})."
        )

    return AlertInput(
        tenant_id=tenant_id,
        rule_code=f"{label}_DEADLINE_APPROACHING",
        alert_type="deadline",
        severity=severity,
        title=title,
        description=description,
        entity=entity,
        customer_id=customer_id,
        trigger_data={
            "type": report_type,
            "days_remaining": days_remaining,
            "deadline": deadline.isoformat(),
            "is_overdue": overdue,
            "amount": amount,
            "currency": currency,
            "reference": reference,
            "customer_name": customer_name,
        },
    )
