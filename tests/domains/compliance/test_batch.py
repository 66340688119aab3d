"""Tests for the batch compliance pipeline."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from src.domains.compliance.batch import BatchComplianceOrchestrator
from src.domains.compliance.models import (
    AlertSeverity,
    Customer,
    SanctionedEntity,
    Transaction,
)

FIXED_NOW = datetime(2024, 3, 13, 1, 0, tzinfo=UTC)


def _customer(store, customer_id, tenant_id="tenant-au", **kwargs) -> Customer:
    defaults = {
        "id": customer_id,
        "tenant_id": tenant_id,
        "first_name": "Customer",
        "last_name": customer_id.upper(),
        "created_at": FIXED_NOW - timedelta(days=400),
        "verification_status": "verified",
    }
    defaults.update(kwargs)
    return store.add_customer(Customer(**defaults))


def _tx(store, tx_id, customer_id, amount, hours_ago=1, tenant_id="tenant-au", **kwargs):
    return store.add_transaction(
        Transaction(
            id=tx_id,
            tenant_id=tenant_id,
            customer_id=customer_id,
            amount=amount,
            created_at=FIXED_NOW - timedelta(hours=hours_ago),
            **kwargs,
        )
    )


def _rule_codes(store):
    return sorted(a.rule_code for a in store.alerts.values())


@pytest.fixture
def orchestrator(store, clock):
    return BatchComplianceOrchestrator(store, now=clock)


class TestBatch:
    @pytest.mark.asyncio
    async def test_malformed_customer_is_isolated(self, store, tenant, orchestrator):
        ids = []
        for i in range(1, 6):
            _customer(store, f"cust-{i}")
            # cust-3's import carries a negative amount
            _tx(store, f"tx-{i}", f"cust-{i}", -250.0 if i == 3 else 500.0)
            ids.append(f"tx-{i}")

        result = await orchestrator.run_batch_compliance(tenant.id, ids)

        assert result.customers_failed == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Error processing customer cust-3: ")
        assert result.transactions_processed == 4
        assert result.customers_screened == 5
        assert result.risk_scores.low == 4
        for i in (1, 2, 4, 5):
            assert store.transactions[(tenant.id, f"tx-{i}")].risk_score == 0

    @pytest.mark.asyncio
    async def test_empty_batch(self, tenant, orchestrator):
        result = await orchestrator.run_batch_compliance(tenant.id, [])
        assert result.transactions_processed == 0
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, orchestrator):
        result = await orchestrator.run_batch_compliance("tenant-missing", ["tx-1"])
        assert result.errors == ["Batch processing failed: Tenant tenant-missing not found"]

    @pytest.mark.asyncio
    async def test_transaction_fetch_failure(self, store, tenant, orchestrator):
        store.get_transactions = AsyncMock(side_effect=RuntimeError("read replica lag"))
        result = await orchestrator.run_batch_compliance(tenant.id, ["tx-1"])
        assert result.errors == ["Failed to fetch transactions: read replica lag"]

    @pytest.mark.asyncio
    async def test_missing_customer_recorded(self, store, tenant, orchestrator):
        _tx(store, "tx-ghost", "cust-ghost", 500.0)
        result = await orchestrator.run_batch_compliance(tenant.id, ["tx-ghost"])
        assert result.errors == [
            "Error processing customer cust-ghost: Customer cust-ghost not found"
        ]

    @pytest.mark.asyncio
    async def test_slow_customer_times_out(self, store, tenant, clock):
        _customer(store, "cust-1")
        _customer(store, "cust-2")
        _tx(store, "tx-1", "cust-1", 500.0)
        _tx(store, "tx-2", "cust-2", 500.0)
        get_customer = store.get_customer

        async def slow_get_customer(tenant_id, customer_id):
            if customer_id == "cust-1":
                await asyncio.sleep(5)
            return await get_customer(tenant_id, customer_id)

        store.get_customer = slow_get_customer
        orchestrator = BatchComplianceOrchestrator(store, now=clock, customer_timeout=0.05)
        result = await orchestrator.run_batch_compliance(tenant.id, ["tx-1", "tx-2"])

        assert result.errors == ["Error processing customer cust-1: timed out after 0.05s"]
        assert result.transactions_processed == 1

    @pytest.mark.asyncio
    async def test_batch_audited(self, store, tenant, orchestrator):
        _customer(store, "cust-1")
        _tx(store, "tx-1", "cust-1", 500.0)
        await orchestrator.run_batch_compliance(tenant.id, ["tx-1"])

        (record,) = [r for r in store.audit_log if r.action_type == "compliance.batch_processed"]
        assert record.entity_type == "transaction_batch"
        assert record.metadata["transactions_processed"] == 1


class TestPipelineStages:
    @pytest.mark.asyncio
    async def test_ttr_flagged(self, store, tenant, orchestrator):
        _customer(store, "cust-1")
        _tx(store, "tx-big-01", "cust-1", 12_000.0)

        result = await orchestrator.run_batch_compliance(tenant.id, ["tx-big-01"])

        tx = store.transactions[(tenant.id, "tx-big-01")]
        assert tx.requires_ttr
        assert tx.ttr_reference == "TTR-20240313-tx-big-0"
        # 10 business days from Wednesday 13 March in Sydney
        assert tx.ttr_submission_deadline.date().isoformat() == "2024-03-27"
        assert _rule_codes(store) == ["TXN_TTR_THRESHOLD"]
        assert "transaction.ttr_required" in [e.event_type for e in store.webhook_outbox]
        assert result.alerts.created == 1

    @pytest.mark.asyncio
    async def test_repeated_transaction_id_processed_once(self, store, tenant, orchestrator):
        _customer(store, "cust-1")
        _tx(store, "tx-big-01", "cust-1", 12_000.0)

        result = await orchestrator.run_batch_compliance(tenant.id, ["tx-big-01", "tx-big-01"])

        assert result.transactions_processed == 1
        assert result.alerts.created == 1
        assert _rule_codes(store) == ["TXN_TTR_THRESHOLD"]

    @pytest.mark.asyncio
    async def test_existing_ttr_reference_kept(self, store, tenant, orchestrator):
        _customer(store, "cust-1")
        _tx(
            store,
            "tx-big-01",
            "cust-1",
            12_000.0,
            requires_ttr=True,
            ttr_reference="TTR-MANUAL-1",
        )
        await orchestrator.run_batch_compliance(tenant.id, ["tx-big-01"])
        assert store.transactions[(tenant.id, "tx-big-01")].ttr_reference == "TTR-MANUAL-1"

    @pytest.mark.asyncio
    async def test_high_risk_customer(self, store, tenant, orchestrator):
        _customer(
            store,
            "cust-pep",
            created_at=FIXED_NOW - timedelta(days=2),
            verification_status="unverified",
            is_pep=True,
        )
        _tx(store, "tx-1", "cust-pep", 60_000.0)

        result = await orchestrator.run_batch_compliance(tenant.id, ["tx-1"])

        tx = store.transactions[(tenant.id, "tx-1")]
        assert tx.risk_score == 85
        assert result.risk_scores.high == 1
        assert result.edd_triggered == 1
        assert _rule_codes(store) == [
            "EDD_TRIGGERED",
            "HIGH_RISK_TRANSACTION",
            "TXN_TTR_THRESHOLD",
        ]
        high_risk = [a for a in store.alerts.values() if a.rule_code == "HIGH_RISK_TRANSACTION"]
        assert high_risk[0].severity == AlertSeverity.CRITICAL

        investigation = next(iter(store.edd_investigations.values()))
        assert investigation.trigger_reason == (
            "Automatic: High-risk profile detected during batch import "
            "(risk level: low, PEP: true, Sanctioned: false)"
        )
        assert store.customers[(tenant.id, "cust-pep")].requires_edd

    @pytest.mark.asyncio
    async def test_sanctions_match(self, store, tenant, orchestrator):
        _customer(store, "cust-1", first_name="Viktor", last_name="Petrov")
        store.add_sanctioned_entity(
            SanctionedEntity(
                id="ent-1", source="DFAT", reference_number="DFAT-77", full_name="Viktor Petrov"
            )
        )
        _tx(store, "tx-1", "cust-1", 500.0)

        result = await orchestrator.run_batch_compliance(tenant.id, ["tx-1"])

        assert result.sanctions.matches == 1
        assert store.customers[(tenant.id, "cust-1")].is_sanctioned
        assert result.risk_scores.medium == 1
        assert result.edd_triggered == 1
        assert _rule_codes(store) == ["EDD_TRIGGERED", "SANCTIONS_MATCH"]
        assert "screening.match" in [e.event_type for e in store.webhook_outbox]

    @pytest.mark.asyncio
    async def test_structuring_generates_smr(self, store, tenant, orchestrator):
        _customer(store, "cust-1")
        for i, amount in enumerate([9_100.0, 9_200.0, 9_300.0]):
            _tx(store, f"tx-{i}", "cust-1", amount, hours_ago=72 - 24 * i)

        result = await orchestrator.run_batch_compliance(tenant.id, ["tx-0", "tx-1", "tx-2"])

        assert result.structuring_detected == 1
        assert result.smr_generated == 1
        assert "STRUCTURING_DETECTED" in _rule_codes(store)
        (report,) = store.smr_reports.values()
        assert report.status == "pending"
        assert report.customer_id == "cust-1"
        assert sorted(report.report["suspected_activity"]["transaction_ids"]) == [
            "tx-0",
            "tx-1",
            "tx-2",
        ]

    @pytest.mark.asyncio
    async def test_customer_already_under_edd(self, store, tenant, orchestrator):
        _customer(store, "cust-1", requires_edd=True)
        _tx(store, "tx-1", "cust-1", 60_000.0)
        result = await orchestrator.run_batch_compliance(tenant.id, ["tx-1"])
        assert result.edd_triggered == 0
        assert store.edd_investigations == {}

    @pytest.mark.asyncio
    async def test_alert_failures_counted_not_fatal(self, store, tenant, orchestrator):
        _customer(store, "cust-1")
        _tx(store, "tx-1", "cust-1", 12_000.0)
        store.insert_alert = AsyncMock(side_effect=RuntimeError("alerts table locked"))

        result = await orchestrator.run_batch_compliance(tenant.id, ["tx-1"])

        assert result.alerts.failed == 1
        assert result.customers_failed == 0
        assert result.transactions_processed == 1
