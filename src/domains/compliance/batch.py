"""Batch compliance pipeline run after a transaction import.

Transactions are grouped by customer and each customer is processed as an
independent unit:

  1. Sanctions screening of the customer
  2. Risk scoring of each transaction, TTR flagging above the threshold
  3. Structuring detection once, against the most recent transaction
  4. Automatic SMR when structuring is detected
  5. EDD investigation for high-risk, sanctioned or large-value customers

A failing or timed-out customer is recorded in the result's error list and
the batch moves on; the job never aborts part way. Units run concurrently
up to ``max_workers`` and the order of the error list is not significant.
"""

import asyncio
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from .alerts import (
    AlertEngine,
    edd_triggered_alert,
    high_risk_transaction_alert,
    sanctions_match_alert,
    structuring_alert,
    ttr_threshold_alert,
)
from .calendar import calculate_ttr_deadline
from .config import DEFAULT_REGION, RegionalConfig, RegionalConfigProvider
from .edd import EDDService
from .models import (
    AlertResult,
    BatchComplianceResult,
    Customer,
    RiskLevel,
    SuspiciousActivity,
    SuspiciousActivityType,
    Transaction,
)
from .notifications import AuditSink, OutboxWebhookDispatcher, StoreAuditSink, WebhookDispatcher
from .reports import SMRReportGenerator
from .risk_scoring import build_risk_context, calculate_risk_score
from .screening import DEFAULT_MINIMUM_MATCH_SCORE, SanctionsScreener
from .store import ComplianceStore
from .structuring import StructuringConfig, StructuringDetector
from .thresholds import generate_ttr_reference

logger = structlog.get_logger()

RECENT_ACTIVITY_DAYS = 7


class BatchComplianceOrchestrator:
    def __init__(
        self,
        store: ComplianceStore,
        alert_engine: AlertEngine | None = None,
        screener: SanctionsScreener | None = None,
        structuring_detector: StructuringDetector | None = None,
        smr_generator: SMRReportGenerator | None = None,
        edd_service: EDDService | None = None,
        audit: AuditSink | None = None,
        webhooks: WebhookDispatcher | None = None,
        max_workers: int = 4,
        customer_timeout: float = 30.0,
        default_region: str = DEFAULT_REGION,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.audit = audit or StoreAuditSink(store)
        self.webhooks = webhooks or OutboxWebhookDispatcher(store)
        self.alerts = alert_engine or AlertEngine(store, self.audit, self.webhooks, now=now)
        self.screener = screener or SanctionsScreener(
            store, minimum_match_score=DEFAULT_MINIMUM_MATCH_SCORE, now=now
        )
        self.structuring = structuring_detector or StructuringDetector(store, now=now)
        self.smr = smr_generator or SMRReportGenerator(store, self.audit, self.webhooks, now=now)
        self.edd = edd_service or EDDService(store, self.audit, self.webhooks, now=now)
        self.max_workers = max_workers
        self.customer_timeout = customer_timeout
        self.default_region = default_region
        self._now = now

    async def run_batch_compliance(
        self, tenant_id: str, transaction_ids: list[str]
    ) -> BatchComplianceResult:
        result = BatchComplianceResult(tenant_id=tenant_id)
        batch_id = str(uuid.uuid4())

        with structlog.contextvars.bound_contextvars(tenant_id=tenant_id, batch_id=batch_id):
            try:
                provider = RegionalConfigProvider(self.store, self.default_region)
                config = await provider.for_tenant(tenant_id)
            except Exception as exc:
                logger.exception("batch_config_unavailable")
                result.errors.append(f"Batch processing failed: {exc}")
                return result

            transaction_ids = list(dict.fromkeys(transaction_ids))

            try:
                transactions = await self.store.get_transactions(tenant_id, transaction_ids)
            except Exception as exc:
                logger.exception("batch_transactions_unavailable")
                result.errors.append(f"Failed to fetch transactions: {exc}")
                return result

            by_customer: dict[str, list[Transaction]] = defaultdict(list)
            for tx in transactions:
                by_customer[tx.customer_id].append(tx)
            for group in by_customer.values():
                group.sort(key=lambda tx: tx.created_at, reverse=True)

            logger.info(
                "batch_compliance_started",
                transactions=len(transactions),
                customers=len(by_customer),
            )

            semaphore = asyncio.Semaphore(self.max_workers)
            await asyncio.gather(
                *(
                    self._run_customer(semaphore, tenant_id, config, customer_id, txns, result)
                    for customer_id, txns in by_customer.items()
                )
            )

            logger.info(
                "batch_compliance_completed",
                transactions_processed=result.transactions_processed,
                customers_failed=result.customers_failed,
                alerts_created=result.alerts.created,
                errors=len(result.errors),
            )

        await self.audit.record(
            tenant_id,
            "compliance.batch_processed",
            "transaction_batch",
            batch_id,
            f"Batch compliance processing completed: {result.transactions_processed} "
            f"transactions, {result.alerts.created} alerts created",
            result.model_dump(mode="json"),
        )
        return result

    async def _run_customer(
        self,
        semaphore: asyncio.Semaphore,
        tenant_id: str,
        config: RegionalConfig,
        customer_id: str,
        transactions: list[Transaction],
        result: BatchComplianceResult,
    ) -> None:
        async with semaphore:
            try:
                async with asyncio.timeout(self.customer_timeout):
                    await self._process_customer(
                        tenant_id, config, customer_id, transactions, result
                    )
            except TimeoutError:
                logger.warning("batch_customer_timed_out", customer_id=customer_id)
                result.customers_failed += 1
                result.errors.append(
                    f"Error processing customer {customer_id}: "
                    f"timed out after {self.customer_timeout:g}s"
                )
            except Exception as exc:
                logger.exception("batch_customer_failed", customer_id=customer_id)
                result.customers_failed += 1
                result.errors.append(f"Error processing customer {customer_id}: {exc}")

    async def _process_customer(
        self,
        tenant_id: str,
        config: RegionalConfig,
        customer_id: str,
        transactions: list[Transaction],
        result: BatchComplianceResult,
    ) -> None:
        customer = await self.store.get_customer(tenant_id, customer_id)
        if customer is None:
            raise LookupError(f"Customer {customer_id} not found")

        customer = await self._screen(tenant_id, config, customer, result)

        for tx in transactions:
            await self._score_transaction(tenant_id, config, customer, tx, result)

        await self._check_structuring(tenant_id, config, customer, transactions, result)
        await self._check_edd(tenant_id, config, customer, transactions, result)

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    async def _screen(
        self,
        tenant_id: str,
        config: RegionalConfig,
        customer: Customer,
        result: BatchComplianceResult,
    ) -> Customer:
        """Screen the customer and return their post-screening state."""
        screening = await self.screener.screen_customer(
            tenant_id, customer, config.screening_sources
        )
        result.customers_screened += 1

        if not screening.is_match:
            result.sanctions.clear += 1
            return customer

        result.sanctions.matches += 1
        await self.store.update_customer(
            tenant_id, customer.id, is_sanctioned=True, risk_level=RiskLevel.HIGH
        )
        await self.webhooks.dispatch(
            tenant_id,
            "screening.match",
            {
                "customer_id": customer.id,
                "customer_name": customer.full_name,
                "match_score": screening.highest_score,
                "matches": [m.model_dump() for m in screening.matches],
            },
        )
        for match in screening.matches:
            self._count_alert(
                result,
                await self.alerts.create_alert(
                    sanctions_match_alert(
                        tenant_id,
                        customer.id,
                        customer.full_name,
                        match.match_score,
                        match.name,
                        match.source,
                    )
                ),
            )
        return customer.model_copy(update={"is_sanctioned": True, "risk_level": RiskLevel.HIGH})

    async def _score_transaction(
        self,
        tenant_id: str,
        config: RegionalConfig,
        customer: Customer,
        tx: Transaction,
        result: BatchComplianceResult,
    ) -> None:
        now = self._now()
        recent_count = await self.store.count_customer_transactions(
            tenant_id, customer.id, since=now - timedelta(days=RECENT_ACTIVITY_DAYS)
        )
        age_days = max(0, (now - customer.created_at).days)
        amount = tx.effective_amount

        risk = calculate_risk_score(
            build_risk_context(
                config,
                amount=amount,
                customer_age_days=age_days,
                recent_transaction_count=recent_count,
                currency=tx.currency,
                is_pep=customer.is_pep,
                is_sanctioned=customer.is_sanctioned,
                verification_status=customer.verification_status,
            )
        )
        await self.store.update_transaction(
            tenant_id,
            tx.id,
            risk_score=risk.score,
            risk_level=risk.risk_level,
            risk_factors=[f.model_dump() for f in risk.factors],
        )
        current = getattr(result.risk_scores, risk.risk_level.value)
        setattr(result.risk_scores, risk.risk_level.value, current + 1)

        if risk.is_high_risk:
            await self.webhooks.dispatch(
                tenant_id,
                "risk.high",
                {
                    "transaction_id": tx.id,
                    "customer_id": customer.id,
                    "risk_score": risk.score,
                    "risk_level": risk.risk_level.value,
                    "factors": [f.model_dump() for f in risk.factors],
                },
            )
            self._count_alert(
                result,
                await self.alerts.create_alert(
                    high_risk_transaction_alert(
                        tenant_id,
                        tx.id,
                        customer.id,
                        risk.score,
                        risk.risk_level.value,
                        risk.factors,
                    )
                ),
            )

        if tx.requires_ttr or amount >= config.thresholds.ttr_required:
            await self._flag_ttr(tenant_id, config, customer, tx, result)

        result.transactions_processed += 1

    async def _flag_ttr(
        self,
        tenant_id: str,
        config: RegionalConfig,
        customer: Customer,
        tx: Transaction,
        result: BatchComplianceResult,
    ) -> None:
        changes: dict[str, Any] = {}
        if not tx.requires_ttr:
            changes["requires_ttr"] = True
        if tx.ttr_reference is None:
            changes["ttr_reference"] = generate_ttr_reference(tx.id, self._now())
        if tx.ttr_submission_deadline is None:
            changes["ttr_submission_deadline"] = calculate_ttr_deadline(tx.created_at, config)
        if changes:
            await self.store.update_transaction(tenant_id, tx.id, **changes)

        await self.webhooks.dispatch(
            tenant_id,
            "transaction.ttr_required",
            {
                "transaction_id": tx.id,
                "customer_id": customer.id,
                "amount": tx.amount,
                "currency": tx.currency,
                "ttr_reference": changes.get("ttr_reference", tx.ttr_reference),
            },
        )
        self._count_alert(
            result,
            await self.alerts.create_alert(
                ttr_threshold_alert(
                    tenant_id,
                    tx.id,
                    customer.id,
                    tx.amount,
                    tx.currency,
                    config.deadlines.ttr_submission,
                )
            ),
        )

    async def _check_structuring(
        self,
        tenant_id: str,
        config: RegionalConfig,
        customer: Customer,
        transactions: list[Transaction],
        result: BatchComplianceResult,
    ) -> None:
        current = transactions[0]
        structuring_config = StructuringConfig.from_regional(config)
        detection = await self.structuring.detect(
            tenant_id,
            customer.id,
            current.effective_amount,
            structuring_config,
            exclude_transaction_id=current.id,
        )
        if not detection.is_structuring:
            return

        result.structuring_detected += 1
        self._count_alert(
            result,
            await self.alerts.create_alert(structuring_alert(tenant_id, customer.id, detection)),
        )

        indicators = detection.indicators
        smr = await self.smr.generate(
            tenant_id,
            config,
            SuspiciousActivity(
                activity_type=SuspiciousActivityType.MONEY_LAUNDERING,
                description=f"Potential structuring detected: {'; '.join(indicators)}",
                suspicion_formed_at=self._now(),
                customer_id=customer.id,
                transaction_ids=[tx.id for tx in transactions],
                grounds_for_suspicion=(
                    f"Customer engaged in {detection.transaction_count} transactions just "
                    "below reporting threshold over "
                    f"{structuring_config.window_days} days, totaling "
                    f"{detection.total_amount:,.2f}. {' '.join(indicators)}"
                ),
                action_taken=(
                    "SMR automatically generated. Customer flagged for EDD investigation."
                ),
            ),
        )
        if smr.success:
            result.smr_generated += 1
        else:
            result.errors.append(f"Failed to generate SMR for customer {customer.id}: {smr.error}")

    async def _check_edd(
        self,
        tenant_id: str,
        config: RegionalConfig,
        customer: Customer,
        transactions: list[Transaction],
        result: BatchComplianceResult,
    ) -> None:
        if customer.requires_edd:
            return

        # A PEP with a large transaction is covered by the large-transaction test
        large_transaction = any(
            tx.effective_amount >= config.thresholds.enhanced_dd_required for tx in transactions
        )
        if not (
            customer.risk_level == RiskLevel.HIGH or customer.is_sanctioned or large_transaction
        ):
            return

        reason = (
            "Automatic: High-risk profile detected during batch import "
            f"(risk level: {customer.risk_level.value}, PEP: {str(customer.is_pep).lower()}, "
            f"Sanctioned: {str(customer.is_sanctioned).lower()})"
        )
        edd = await self.edd.create_investigation(
            tenant_id,
            customer.id,
            reason,
            triggered_by="system",
            transaction_id=transactions[0].id,
        )
        if edd.existing_investigation:
            return
        if not edd.success:
            result.errors.append(f"Failed to trigger EDD for customer {customer.id}: {edd.error}")
            return

        result.edd_triggered += 1
        self._count_alert(
            result,
            await self.alerts.create_alert(
                edd_triggered_alert(
                    tenant_id, customer.id, edd.investigation_number or "", reason
                )
            ),
        )

    @staticmethod
    def _count_alert(result: BatchComplianceResult, outcome: AlertResult) -> None:
        if outcome.success:
            result.alerts.created += 1
        elif outcome.skipped:
            result.alerts.skipped += 1
        else:
            result.alerts.failed += 1
