"""Cumulative customer thresholds and TTR references.

KYC and enhanced due diligence obligations are measured against the
customer's lifetime total including the transaction under review; the TTR
obligation depends on the single transaction amount only.
"""

from datetime import UTC, datetime

import structlog

from .config import RegionalConfig
from .models import ComplianceRequirements
from .store import ComplianceStore

logger = structlog.get_logger()


async def get_compliance_requirements(
    store: ComplianceStore,
    tenant_id: str,
    customer_id: str,
    amount: float,
    config: RegionalConfig,
) -> ComplianceRequirements:
    thresholds = config.thresholds
    try:
        lifetime_total = await store.sum_customer_amounts(tenant_id, customer_id)
    except Exception:
        # Conservative answer: judge the current amount on its own
        logger.exception(
            "threshold_history_unavailable", tenant_id=tenant_id, customer_id=customer_id
        )
        lifetime_total = 0.0

    cumulative = lifetime_total + amount
    return ComplianceRequirements(
        requires_kyc=cumulative >= thresholds.kyc_required,
        requires_enhanced_dd=cumulative >= thresholds.enhanced_dd_required,
        requires_ttr=amount >= thresholds.ttr_required,
        lifetime_total=lifetime_total,
        cumulative_amount=cumulative,
    )


def generate_ttr_reference(transaction_id: str, now: datetime | None = None) -> str:
    """TTR-YYYYMMDD-{first 8 characters of the transaction id}, UTC date."""
    now = now or datetime.now(UTC)
    return f"TTR-{now.astimezone(UTC):%Y%m%d}-{transaction_id[:8]}"
