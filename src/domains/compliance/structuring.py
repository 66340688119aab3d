"""Structuring (smurfing) detection over a customer's recent history.

Three independent checks run over one history scan of the lookback window:

  1. Band clustering: at least ``min_count`` transactions in the
     suspicious band [min, max) just below the reporting threshold
  2. Cumulative evasion: recent + current total reaches the TTR threshold
     while at least two transactions sit in the band
  3. Continuation: the current transaction is itself in the band and
     at least two recent ones are too

Checks are not mutually exclusive; every check that fires contributes its
own indicator line to the result, and downstream report text treats each
as separate evidence.

Detection is advisory. A history read failure produces a non-triggering
result rather than blocking transaction processing.

Regulatory basis: AML/CTF Act 2006 (Cth) s142, conducting transactions so
as to avoid reporting requirements.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from .config import AmountRange, RegionalConfig
from .models import StructuringResult
from .store import ComplianceStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class StructuringConfig:
    window_days: int
    min_transaction_count: int
    amount_range: AmountRange
    ttr_threshold: float

    @classmethod
    def from_regional(cls, config: RegionalConfig) -> "StructuringConfig":
        thresholds = config.thresholds
        return cls(
            window_days=thresholds.structuring_window_days,
            min_transaction_count=thresholds.structuring_min_tx_count,
            amount_range=thresholds.structuring_amount_range,
            ttr_threshold=thresholds.ttr_required,
        )


def format_amount(value: float) -> str:
    """Grouped amount with up to three decimals and no trailing zeros."""
    return f"{value:,.3f}".rstrip("0").rstrip(".")


def in_band(amount: float, band: AmountRange) -> bool:
    return band.min <= amount < band.max


class StructuringDetector:
    def __init__(
        self,
        store: ComplianceStore,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self._now = now

    async def detect(
        self,
        tenant_id: str,
        customer_id: str,
        current_amount: float,
        config: StructuringConfig,
        exclude_transaction_id: str | None = None,
    ) -> StructuringResult:
        """Evaluate the three structuring patterns for one customer.

        ``exclude_transaction_id`` drops an already-persisted current
        transaction from the history so it is not counted twice.
        """
        window_start = self._now() - timedelta(days=config.window_days)
        try:
            history = await self.store.list_customer_transactions(
                tenant_id, customer_id, since=window_start
            )
        except Exception:
            logger.exception(
                "structuring_history_unavailable",
                tenant_id=tenant_id,
                customer_id=customer_id,
            )
            return StructuringResult()

        if exclude_transaction_id is not None:
            history = [tx for tx in history if tx.id != exclude_transaction_id]

        if not history:
            return StructuringResult(total_amount=current_amount)

        amounts = [tx.effective_amount for tx in history]
        band = config.amount_range
        band_count = sum(1 for amount in amounts if in_band(amount, band))
        total = sum(amounts) + current_amount

        indicators: list[str] = []

        if band_count >= config.min_transaction_count:
            indicators.append(
                f"{band_count} transactions between ${format_amount(band.min)}"
                f"-${format_amount(band.max)} in {config.window_days} days"
            )

        if total >= config.ttr_threshold and band_count >= 2:
            indicators.append(
                f"Cumulative total ${format_amount(total)} exceeds TTR threshold "
                f"with {band_count} suspicious transactions"
            )

        if in_band(current_amount, band) and band_count >= 2:
            indicators.append(
                f"Current transaction of ${format_amount(current_amount)} "
                "continues pattern of threshold-adjacent amounts"
            )

        result = StructuringResult(
            is_structuring=bool(indicators),
            transaction_count=band_count,
            total_amount=total,
            indicators=indicators,
        )

        if result.is_structuring:
            logger.warning(
                "structuring_detected",
                tenant_id=tenant_id,
                customer_id=customer_id,
                band_count=band_count,
                total_amount=total,
                indicator_count=len(indicators),
            )
        return result
