"""Tests for alert creation, suppression, numbering and lifecycle."""

import asyncio
from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from src.domains.compliance.alerts import (
    AlertEngine,
    deadline_alert,
    format_long_date,
    high_risk_transaction_alert,
)
from src.domains.compliance.exceptions import StorageError
from src.domains.compliance.models import (
    AlertInput,
    AlertRule,
    AlertSeverity,
    AlertStatus,
    AppliedFactor,
    EntityRef,
    OperationStatus,
    ResolutionType,
)

TENANT_ID = "tenant-au"
FIXED_NOW = datetime(2024, 3, 13, 1, 0, tzinfo=UTC)


def _input(**kwargs) -> AlertInput:
    defaults = {
        "tenant_id": TENANT_ID,
        "rule_code": "HIGH_RISK_TRANSACTION",
        "alert_type": "high_risk_transaction",
        "severity": AlertSeverity.HIGH,
        "title": "High risk transaction detected (score: 75)",
        "entity": EntityRef(entity_type="transaction", entity_id="tx-001"),
        "customer_id": "cust-001",
        "transaction_id": "tx-001",
    }
    defaults.update(kwargs)
    return AlertInput(**defaults)


def _rule(**kwargs) -> AlertRule:
    defaults = {
        "id": "rule-001",
        "tenant_id": TENANT_ID,
        "rule_code": "HIGH_RISK_TRANSACTION",
        "name": "High risk transaction",
    }
    defaults.update(kwargs)
    return AlertRule(**defaults)


class _Clock:
    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


@pytest.fixture
def clock():
    return _Clock(FIXED_NOW)


@pytest.fixture
def engine(store, clock):
    return AlertEngine(store, now=clock)


class TestCreation:
    @pytest.mark.asyncio
    async def test_creates_without_rule(self, store, engine):
        result = await engine.create_alert(_input())

        assert result.success
        assert result.alert_number == "ALT-20240313-0001"
        alert = store.alerts[result.alert_id]
        assert alert.rule_id is None
        assert alert.status == AlertStatus.NEW
        assert alert.severity == AlertSeverity.HIGH

    @pytest.mark.asyncio
    async def test_rule_severity_overrides_input(self, store, engine):
        store.add_alert_rule(_rule(severity=AlertSeverity.CRITICAL))
        result = await engine.create_alert(_input())
        assert store.alerts[result.alert_id].severity == AlertSeverity.CRITICAL
        assert store.alerts[result.alert_id].rule_id == "rule-001"

    @pytest.mark.asyncio
    async def test_invalid_rule_code(self, store, engine):
        result = await engine.create_alert(_input(rule_code="high-risk"))
        assert not result.success
        assert "Invalid rule code" in result.error
        assert store.alerts == {}

    @pytest.mark.asyncio
    async def test_numbers_increment_per_day(self, engine, clock):
        first = await engine.create_alert(_input())
        second = await engine.create_alert(_input())
        clock.moment = FIXED_NOW + timedelta(days=1)
        next_day = await engine.create_alert(_input())

        assert first.alert_number == "ALT-20240313-0001"
        assert second.alert_number == "ALT-20240313-0002"
        assert next_day.alert_number == "ALT-20240314-0001"

    @pytest.mark.asyncio
    async def test_concurrent_creation_never_duplicates_numbers(self, engine):
        results = await asyncio.gather(
            *(
                engine.create_alert(
                    _input(entity=EntityRef(entity_type="transaction", entity_id=f"tx-{i}"))
                )
                for i in range(25)
            )
        )
        numbers = [r.alert_number for r in results]
        assert all(r.success for r in results)
        assert len(set(numbers)) == 25
        assert sorted(numbers)[-1] == "ALT-20240313-0025"

    @pytest.mark.asyncio
    async def test_numbering_is_per_tenant(self, engine):
        await engine.create_alert(_input())
        other = await engine.create_alert(_input(tenant_id="tenant-nz"))
        assert other.alert_number == "ALT-20240313-0001"

    @pytest.mark.asyncio
    async def test_create_alerts_preserves_order(self, engine):
        results = await engine.create_alerts(
            [_input(title="first"), _input(rule_code="bad code"), _input(title="third")]
        )
        assert [r.success for r in results] == [True, False, True]

    @pytest.mark.asyncio
    async def test_default_sla_applies_when_trigger_sets_none(self, store, clock):
        engine = AlertEngine(store, now=clock, default_sla_hours=72)
        result = await engine.create_alert(_input())
        assert store.alerts[result.alert_id].sla_deadline == FIXED_NOW + timedelta(hours=72)

        result = await engine.create_alert(_input(sla_hours=4))
        assert store.alerts[result.alert_id].sla_deadline == FIXED_NOW + timedelta(hours=4)


class TestSuppression:
    @pytest.mark.asyncio
    async def test_cooldown_skips_same_entity(self, store, engine, clock):
        store.add_alert_rule(_rule(cooldown_minutes=60))
        first = await engine.create_alert(_input())
        clock.moment = FIXED_NOW + timedelta(minutes=30)
        second = await engine.create_alert(_input())

        assert first.success
        assert second.skipped
        assert not second.success
        assert second.skip_reason == (
            "Alert for transaction tx-001 already triggered within cooldown period (60 minutes)"
        )

    @pytest.mark.asyncio
    async def test_cooldown_is_per_entity(self, store, engine):
        store.add_alert_rule(_rule(cooldown_minutes=60))
        await engine.create_alert(_input())
        other = await engine.create_alert(
            _input(entity=EntityRef(entity_type="transaction", entity_id="tx-002"))
        )
        assert other.success

    @pytest.mark.asyncio
    async def test_cooldown_expires(self, store, engine, clock):
        store.add_alert_rule(_rule(cooldown_minutes=60))
        await engine.create_alert(_input())
        clock.moment = FIXED_NOW + timedelta(minutes=61)
        assert (await engine.create_alert(_input())).success

    @pytest.mark.asyncio
    async def test_daily_rate_limit(self, store, engine):
        store.add_alert_rule(_rule(max_alerts_per_day=2))
        results = [
            await engine.create_alert(
                _input(entity=EntityRef(entity_type="transaction", entity_id=f"tx-{i}"))
            )
            for i in range(3)
        ]
        assert [r.success for r in results] == [True, True, False]
        assert results[2].skip_reason == (
            "Daily rate limit reached for rule HIGH_RISK_TRANSACTION (2 alerts/day)"
        )

    @pytest.mark.asyncio
    async def test_disabled_rule_is_not_enforced(self, store, engine):
        store.add_alert_rule(_rule(enabled=False, cooldown_minutes=60))
        await engine.create_alert(_input())
        second = await engine.create_alert(_input())
        assert second.success
        assert store.alerts[second.alert_id].rule_id is None


class TestAutoCase:
    @pytest.mark.asyncio
    async def test_rule_creates_case(self, store, engine):
        store.add_alert_rule(
            _rule(auto_create_case=True, case_type="transaction_review", case_priority="high")
        )
        result = await engine.create_alert(_input())

        assert result.case_id is not None
        case = store.cases[result.case_id]
        assert case.alert_id == result.alert_id
        assert case.priority == "high"
        assert case.title.startswith("Case: ")
        assert store.alerts[result.alert_id].status == AlertStatus.ESCALATED

    @pytest.mark.asyncio
    async def test_escalation_flag_survives_acknowledge(self, store, engine):
        store.add_alert_rule(_rule(auto_create_case=True, case_type="transaction_review"))
        result = await engine.create_alert(_input())

        created = store.alerts[result.alert_id]
        assert created.is_escalated
        assert created.escalated_at == FIXED_NOW
        assert created.escalation_reason == f"Auto-created case {result.case_id}"

        acked = await engine.acknowledge(TENANT_ID, result.alert_id)
        assert acked.alert.status == AlertStatus.ACKNOWLEDGED
        assert acked.alert.is_escalated
        assert acked.alert.escalated_at == FIXED_NOW

    @pytest.mark.asyncio
    async def test_input_requests_case_but_rule_has_no_case_type(self, store, engine):
        store.add_alert_rule(_rule())
        result = await engine.create_alert(_input(auto_create_case=True))
        assert result.case_id is None
        assert store.cases == {}

    @pytest.mark.asyncio
    async def test_no_case_without_rule(self, store, engine):
        result = await engine.create_alert(_input(auto_create_case=True))
        assert result.success
        assert result.case_id is None


class TestSideEffects:
    @pytest.mark.asyncio
    async def test_audit_and_webhook_emitted(self, store, engine):
        result = await engine.create_alert(_input())

        assert [r.action_type for r in store.audit_log] == ["alert.created"]
        assert store.audit_log[0].entity_id == result.alert_id
        assert [e.event_type for e in store.webhook_outbox] == ["alert.created"]
        assert store.webhook_outbox[0].payload["alert_number"] == result.alert_number

    @pytest.mark.asyncio
    async def test_persist_failure_reported(self, store, engine):
        store.insert_alert = AsyncMock(side_effect=StorageError("connection refused"))
        result = await engine.create_alert(_input())

        assert not result.success
        assert not result.skipped
        assert result.error == "connection refused"
        assert store.audit_log == []
        assert store.webhook_outbox == []

    @pytest.mark.asyncio
    async def test_side_effect_failure_does_not_fail_creation(self, store, engine):
        store.insert_audit = AsyncMock(side_effect=RuntimeError("audit table locked"))
        store.enqueue_webhook = AsyncMock(side_effect=RuntimeError("outbox full"))
        result = await engine.create_alert(_input())

        assert result.success
        assert result.alert_id in store.alerts


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_acknowledge(self, engine):
        created = await engine.create_alert(_input())
        result = await engine.acknowledge(TENANT_ID, created.alert_id, acknowledged_by="analyst-1")

        assert result.status == OperationStatus.OK
        assert result.alert.status == AlertStatus.ACKNOWLEDGED
        assert result.alert.acknowledged_by == "analyst-1"
        assert result.alert.acknowledged_at == FIXED_NOW

    @pytest.mark.asyncio
    async def test_acknowledge_twice_keeps_first_stamp(self, engine, clock):
        created = await engine.create_alert(_input())
        await engine.acknowledge(TENANT_ID, created.alert_id, acknowledged_by="analyst-1")
        clock.moment = FIXED_NOW + timedelta(hours=1)
        again = await engine.acknowledge(TENANT_ID, created.alert_id, acknowledged_by="analyst-2")

        assert again.success
        assert again.alert.acknowledged_by == "analyst-1"
        assert again.alert.acknowledged_at == FIXED_NOW

    @pytest.mark.asyncio
    async def test_full_path_to_resolution(self, engine):
        created = await engine.create_alert(_input())
        await engine.acknowledge(TENANT_ID, created.alert_id)
        investigating = await engine.start_investigation(
            TENANT_ID, created.alert_id, investigator="analyst-1"
        )
        assert investigating.alert.status == AlertStatus.INVESTIGATING
        assert investigating.alert.assigned_to == "analyst-1"

        resolved = await engine.resolve(
            TENANT_ID,
            created.alert_id,
            ResolutionType.SMR_FILED,
            resolved_by="analyst-1",
            notes="SMR lodged",
        )
        assert resolved.alert.status == AlertStatus.RESOLVED
        assert resolved.alert.resolution_type == ResolutionType.SMR_FILED
        assert resolved.alert.resolved_at == FIXED_NOW
        assert resolved.alert.is_terminal

    @pytest.mark.asyncio
    async def test_resolve_is_idempotent(self, engine):
        created = await engine.create_alert(_input())
        await engine.resolve(TENANT_ID, created.alert_id, ResolutionType.LEGITIMATE)
        again = await engine.resolve(TENANT_ID, created.alert_id, ResolutionType.LEGITIMATE)
        assert again.status == OperationStatus.OK

    @pytest.mark.asyncio
    async def test_terminal_alert_rejects_transitions(self, engine):
        created = await engine.create_alert(_input())
        await engine.resolve(TENANT_ID, created.alert_id, ResolutionType.LEGITIMATE)

        for outcome in (
            await engine.dismiss(TENANT_ID, created.alert_id),
            await engine.acknowledge(TENANT_ID, created.alert_id),
            await engine.start_investigation(TENANT_ID, created.alert_id),
            await engine.escalate(TENANT_ID, created.alert_id, "mlro", "late"),
            await engine.assign(TENANT_ID, created.alert_id, "analyst-2"),
        ):
            assert outcome.status == OperationStatus.INVALID_TRANSITION
            assert outcome.alert.status == AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_dismiss_as_false_positive(self, engine):
        created = await engine.create_alert(_input())
        result = await engine.dismiss(
            TENANT_ID, created.alert_id, dismissed_by="analyst-1", false_positive=True
        )
        assert result.alert.status == AlertStatus.FALSE_POSITIVE
        assert result.alert.resolution_type == ResolutionType.FALSE_POSITIVE

    @pytest.mark.asyncio
    async def test_escalate_sets_flag_without_changing_status(self, engine):
        created = await engine.create_alert(_input())
        await engine.acknowledge(TENANT_ID, created.alert_id)
        result = await engine.escalate(TENANT_ID, created.alert_id, "mlro", "Customer is a PEP")

        assert result.alert.is_escalated
        assert result.alert.escalated_to == "mlro"
        assert result.alert.status == AlertStatus.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_assign_requires_assignee(self, engine):
        created = await engine.create_alert(_input())
        result = await engine.assign(TENANT_ID, created.alert_id, "  ")
        assert result.status == OperationStatus.INVALID

    @pytest.mark.asyncio
    async def test_unknown_alert(self, engine):
        result = await engine.acknowledge(TENANT_ID, "missing")
        assert result.status == OperationStatus.NOT_FOUND
        assert not result.success

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_read(self, engine):
        created = await engine.create_alert(_input())
        result = await engine.get_alert("tenant-nz", created.alert_id)
        assert result.status == OperationStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_updates_are_audited(self, store, engine):
        created = await engine.create_alert(_input())
        await engine.acknowledge(TENANT_ID, created.alert_id)
        updated = [r for r in store.audit_log if r.action_type == "alert.updated"]
        assert updated[0].metadata == {"from_status": "new", "to_status": "acknowledged"}


class TestSLA:
    @pytest.mark.asyncio
    async def test_breach_recomputed_on_read(self, engine, clock):
        created = await engine.create_alert(_input(sla_hours=4))

        assert not (await engine.get_alert(TENANT_ID, created.alert_id)).alert.sla_breached
        clock.moment = FIXED_NOW + timedelta(hours=5)
        assert (await engine.get_alert(TENANT_ID, created.alert_id)).alert.sla_breached

    @pytest.mark.asyncio
    async def test_resolved_in_time_never_breaches(self, engine, clock):
        created = await engine.create_alert(_input(sla_hours=4))
        clock.moment = FIXED_NOW + timedelta(hours=1)
        await engine.resolve(TENANT_ID, created.alert_id, ResolutionType.LEGITIMATE)
        clock.moment = FIXED_NOW + timedelta(days=3)
        assert not (await engine.get_alert(TENANT_ID, created.alert_id)).alert.sla_breached

    @pytest.mark.asyncio
    async def test_late_resolution_stays_breached(self, engine, clock):
        created = await engine.create_alert(_input(sla_hours=4))
        clock.moment = FIXED_NOW + timedelta(hours=6)
        result = await engine.resolve(TENANT_ID, created.alert_id, ResolutionType.LEGITIMATE)
        assert result.alert.sla_breached

    @pytest.mark.asyncio
    async def test_no_sla_never_breaches(self, engine, clock):
        created = await engine.create_alert(_input())
        clock.moment = FIXED_NOW + timedelta(days=30)
        assert not (await engine.get_alert(TENANT_ID, created.alert_id)).alert.sla_breached


class TestBuilders:
    def test_format_long_date(self):
        assert format_long_date(date(2024, 3, 15)) == "Friday, 15 March 2024"

    def test_high_risk_severity_follows_score(self):
        factors = [AppliedFactor(factor="pep_status", score=30, reason="PEP")]
        assert (
            high_risk_transaction_alert(TENANT_ID, "tx-1", "c-1", 85, "high", factors).severity
            == AlertSeverity.CRITICAL
        )
        assert (
            high_risk_transaction_alert(TENANT_ID, "tx-1", "c-1", 72, "high", factors).severity
            == AlertSeverity.HIGH
        )

    def test_deadline_alert_approaching(self):
        alert = deadline_alert(
            TENANT_ID,
            "ttr",
            EntityRef(entity_type="transaction", entity_id="tx-1"),
            "c-1",
            "Olivia Nguyen",
            1,
            date(2024, 3, 14),
            AlertSeverity.CRITICAL,
        )
        assert alert.rule_code == "TTR_DEADLINE_APPROACHING"
        assert alert.title == "TTR Deadline Approaching (1 day)"
        assert alert.description == (
            "TTR for Olivia Nguyen is due in 1 business day (Thursday, 14 March 2024)."
        )

    def test_deadline_alert_overdue(self):
        alert = deadline_alert(
            TENANT_ID,
            "smr",
            EntityRef(entity_type="smr_report", entity_id="SMR_1"),
            "c-1",
            "Olivia Nguyen",
            0,
            date(2024, 3, 11),
            AlertSeverity.CRITICAL,
        )
        assert alert.title == "SMR Deadline OVERDUE"
        assert alert.trigger_data["is_overdue"] is True
        assert "Deadline was Monday, 11 March 2024" in alert.description
