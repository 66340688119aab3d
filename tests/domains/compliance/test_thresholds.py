"""Tests for cumulative thresholds and TTR references."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from src.domains.compliance.models import Transaction
from src.domains.compliance.thresholds import (
    generate_ttr_reference,
    get_compliance_requirements,
)


def _seed(store, tenant, customer, now, amounts):
    for i, amount in enumerate(amounts):
        store.add_transaction(
            Transaction(
                id=f"hist-{i}",
                tenant_id=tenant.id,
                customer_id=customer.id,
                amount=amount,
                created_at=now - timedelta(days=30 + i),
            )
        )


class TestRequirements:
    @pytest.mark.asyncio
    async def test_first_small_transaction(self, store, au_config, tenant, customer):
        result = await get_compliance_requirements(
            store, tenant.id, customer.id, 500.0, au_config
        )
        assert not result.requires_kyc
        assert not result.requires_enhanced_dd
        assert not result.requires_ttr
        assert result.cumulative_amount == 500.0

    @pytest.mark.asyncio
    async def test_cumulative_crosses_kyc(self, store, au_config, tenant, customer, now):
        _seed(store, tenant, customer, now, [3_000.0, 1_500.0])
        result = await get_compliance_requirements(
            store, tenant.id, customer.id, 500.0, au_config
        )
        assert result.lifetime_total == 4_500.0
        assert result.requires_kyc
        assert not result.requires_ttr

    @pytest.mark.asyncio
    async def test_thresholds_are_inclusive(self, store, au_config, tenant, customer):
        result = await get_compliance_requirements(
            store, tenant.id, customer.id, 10_000.0, au_config
        )
        assert result.requires_ttr
        assert result.requires_kyc

    @pytest.mark.asyncio
    async def test_enhanced_dd_on_lifetime_total(self, store, au_config, tenant, customer, now):
        _seed(store, tenant, customer, now, [20_000.0, 25_000.0])
        result = await get_compliance_requirements(
            store, tenant.id, customer.id, 5_000.0, au_config
        )
        assert result.requires_enhanced_dd
        assert not result.requires_ttr

    @pytest.mark.asyncio
    async def test_history_failure_judges_amount_alone(self, au_config):
        store = AsyncMock()
        store.sum_customer_amounts.side_effect = RuntimeError("timeout")
        result = await get_compliance_requirements(store, "t", "c", 12_000.0, au_config)
        assert result.lifetime_total == 0.0
        assert result.requires_ttr


class TestTTRReference:
    def test_format(self):
        now = datetime(2024, 3, 13, 1, 0, tzinfo=UTC)
        assert generate_ttr_reference("a1b2c3d4-e5f6", now) == "TTR-20240313-a1b2c3d4"

    def test_uses_utc_date(self):
        sydney_morning = datetime(2024, 3, 13, 8, 0, tzinfo=UTC) - timedelta(hours=10)
        assert generate_ttr_reference("abc", sydney_morning) == "TTR-20240312-abc"
