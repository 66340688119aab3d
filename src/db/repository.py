"""PostgreSQL implementation of the compliance storage contract.

Each call runs in its own short transaction. Multi-row writes that must
land together (alert + auto-created case) share one transaction, and
human-readable sequence numbers come from a single upsert on
``daily_sequences`` so concurrent callers never read the same value.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any

import structlog
from sqlalchemy import func, inspect, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import (
    AlertDB,
    AlertRuleDB,
    AuditLogDB,
    Base,
    CaseDB,
    CustomerDB,
    DailySequenceDB,
    EDDInvestigationDB,
    SanctionedEntityDB,
    SanctionsScreeningDB,
    SMRReportDB,
    TenantDB,
    TransactionDB,
    WebhookOutboxDB,
)
from src.domains.compliance.exceptions import StorageError
from src.domains.compliance.models import (
    OPEN_EDD_STATUSES,
    Alert,
    AlertRule,
    AuditRecord,
    Case,
    Customer,
    EDDInvestigation,
    SanctionedEntity,
    ScreeningRecord,
    SMRReport,
    Tenant,
    Transaction,
    WebhookEvent,
)

logger = structlog.get_logger()

OUTSTANDING_SMR_STATUSES = ("pending", "under_review")

# ORM attribute name -> domain field name, where they differ
_RENAMED = {"metadata_": "metadata", "report_data": "report"}
_RENAMED_BACK = {v: k for k, v in _RENAMED.items()}


def _row_to_dict(row: Base) -> dict[str, Any]:
    return {
        _RENAMED.get(attr.key, attr.key): getattr(row, attr.key)
        for attr in inspect(row).mapper.column_attrs
    }


def _apply(row: Base, changes: dict[str, Any]) -> None:
    for key, value in changes.items():
        setattr(row, _RENAMED_BACK.get(key, key), value)


class SqlAlchemyComplianceStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as exc:
            logger.exception("compliance_store_error")
            raise StorageError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Tenants and customers
    # ------------------------------------------------------------------

    async def list_active_tenants(self) -> list[Tenant]:
        async with self._transaction() as session:
            rows = await session.scalars(select(TenantDB).where(TenantDB.is_active.is_(True)))
            return [Tenant.model_validate(_row_to_dict(r)) for r in rows]

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        async with self._transaction() as session:
            row = await session.get(TenantDB, tenant_id)
            return Tenant.model_validate(_row_to_dict(row)) if row else None

    async def get_customer(self, tenant_id: str, customer_id: str) -> Customer | None:
        async with self._transaction() as session:
            row = await session.get(CustomerDB, customer_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return Customer.model_validate(_row_to_dict(row))

    async def update_customer(self, tenant_id: str, customer_id: str, **changes: Any) -> None:
        async with self._transaction() as session:
            row = await session.get(CustomerDB, customer_id)
            if row is not None and row.tenant_id == tenant_id:
                _apply(row, changes)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def get_transactions(
        self, tenant_id: str, transaction_ids: list[str]
    ) -> list[Transaction]:
        if not transaction_ids:
            return []
        async with self._transaction() as session:
            rows = await session.scalars(
                select(TransactionDB).where(
                    TransactionDB.tenant_id == tenant_id,
                    TransactionDB.id.in_(transaction_ids),
                )
            )
            return [Transaction.model_validate(_row_to_dict(r)) for r in rows]

    async def list_customer_transactions(
        self, tenant_id: str, customer_id: str, since: datetime | None = None
    ) -> list[Transaction]:
        stmt = select(TransactionDB).where(
            TransactionDB.tenant_id == tenant_id,
            TransactionDB.customer_id == customer_id,
        )
        if since is not None:
            stmt = stmt.where(TransactionDB.created_at >= since)
        async with self._transaction() as session:
            rows = await session.scalars(stmt.order_by(TransactionDB.created_at.desc()))
            return [Transaction.model_validate(_row_to_dict(r)) for r in rows]

    async def count_customer_transactions(
        self, tenant_id: str, customer_id: str, since: datetime
    ) -> int:
        async with self._transaction() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(TransactionDB)
                .where(
                    TransactionDB.tenant_id == tenant_id,
                    TransactionDB.customer_id == customer_id,
                    TransactionDB.created_at >= since,
                )
            )
            return count or 0

    async def sum_customer_amounts(self, tenant_id: str, customer_id: str) -> float:
        async with self._transaction() as session:
            total = await session.scalar(
                select(
                    func.coalesce(
                        func.sum(func.coalesce(TransactionDB.amount_local, TransactionDB.amount)),
                        0.0,
                    )
                ).where(
                    TransactionDB.tenant_id == tenant_id,
                    TransactionDB.customer_id == customer_id,
                )
            )
            return float(total or 0.0)

    async def update_transaction(
        self, tenant_id: str, transaction_id: str, **changes: Any
    ) -> None:
        async with self._transaction() as session:
            row = await session.get(TransactionDB, transaction_id)
            if row is not None and row.tenant_id == tenant_id:
                _apply(row, changes)

    # ------------------------------------------------------------------
    # Reporting obligations
    # ------------------------------------------------------------------

    async def list_outstanding_ttrs(self, tenant_id: str) -> list[Transaction]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(TransactionDB).where(
                    TransactionDB.tenant_id == tenant_id,
                    TransactionDB.requires_ttr.is_(True),
                    TransactionDB.ttr_submitted_at.is_(None),
                    TransactionDB.ttr_submission_deadline.is_not(None),
                )
            )
            return [Transaction.model_validate(_row_to_dict(r)) for r in rows]

    async def list_outstanding_smrs(self, tenant_id: str) -> list[SMRReport]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(SMRReportDB).where(
                    SMRReportDB.tenant_id == tenant_id,
                    SMRReportDB.status.in_(OUTSTANDING_SMR_STATUSES),
                    SMRReportDB.submitted_at.is_(None),
                    SMRReportDB.submission_deadline.is_not(None),
                )
            )
            return [SMRReport.model_validate(_row_to_dict(r)) for r in rows]

    async def insert_smr(self, report: SMRReport) -> None:
        data = report.model_dump()
        data["report_data"] = data.pop("report")
        async with self._transaction() as session:
            session.add(SMRReportDB(**data))

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def get_alert_rule(self, tenant_id: str, rule_code: str) -> AlertRule | None:
        async with self._transaction() as session:
            row = await session.scalar(
                select(AlertRuleDB).where(
                    AlertRuleDB.tenant_id == tenant_id,
                    AlertRuleDB.rule_code == rule_code,
                )
            )
            return AlertRule.model_validate(_row_to_dict(row)) if row else None

    async def next_sequence(self, tenant_id: str, scope: str, day: date) -> int:
        stmt = (
            pg_insert(DailySequenceDB)
            .values(tenant_id=tenant_id, scope=scope, day=day, value=1)
            .on_conflict_do_update(
                index_elements=["tenant_id", "scope", "day"],
                set_={"value": DailySequenceDB.value + 1},
            )
            .returning(DailySequenceDB.value)
        )
        async with self._transaction() as session:
            return (await session.execute(stmt)).scalar_one()

    async def insert_alert(self, alert: Alert, case: Case | None = None) -> None:
        data = alert.model_dump(exclude={"sla_breached"})
        data["metadata_"] = data.pop("metadata")
        async with self._transaction() as session:
            session.add(AlertDB(**data))
            if case is not None:
                session.add(CaseDB(**case.model_dump()))

    async def get_alert(self, tenant_id: str, alert_id: str) -> Alert | None:
        async with self._transaction() as session:
            row = await session.get(AlertDB, alert_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return Alert.model_validate(_row_to_dict(row))

    async def update_alert(self, alert: Alert) -> None:
        async with self._transaction() as session:
            row = await session.get(AlertDB, alert.id)
            if row is None:
                raise StorageError(f"alert {alert.id} does not exist")
            _apply(row, alert.model_dump(exclude={"id", "tenant_id", "sla_breached"}))

    async def find_recent_alert(
        self,
        tenant_id: str,
        rule_code: str,
        entity_type: str,
        entity_id: str,
        since: datetime,
    ) -> Alert | None:
        async with self._transaction() as session:
            row = await session.scalar(
                select(AlertDB)
                .where(
                    AlertDB.tenant_id == tenant_id,
                    AlertDB.rule_code == rule_code,
                    AlertDB.entity_type == entity_type,
                    AlertDB.entity_id == entity_id,
                    AlertDB.created_at >= since,
                )
                .order_by(AlertDB.created_at.desc())
                .limit(1)
            )
            return Alert.model_validate(_row_to_dict(row)) if row else None

    async def count_alerts(self, tenant_id: str, rule_code: str, since: datetime) -> int:
        async with self._transaction() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(AlertDB)
                .where(
                    AlertDB.tenant_id == tenant_id,
                    AlertDB.rule_code == rule_code,
                    AlertDB.created_at >= since,
                )
            )
            return count or 0

    # ------------------------------------------------------------------
    # Side-effect sinks
    # ------------------------------------------------------------------

    async def insert_audit(self, record: AuditRecord) -> None:
        data = record.model_dump()
        data["metadata_"] = data.pop("metadata")
        async with self._transaction() as session:
            session.add(AuditLogDB(**data))

    async def enqueue_webhook(self, event: WebhookEvent) -> None:
        async with self._transaction() as session:
            session.add(WebhookOutboxDB(**event.model_dump()))

    # ------------------------------------------------------------------
    # Screening
    # ------------------------------------------------------------------

    async def list_sanctioned_entities(self, sources: list[str]) -> list[SanctionedEntity]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(SanctionedEntityDB).where(SanctionedEntityDB.source.in_(sources))
            )
            return [SanctionedEntity.model_validate(_row_to_dict(r)) for r in rows]

    async def insert_screening(self, record: ScreeningRecord) -> None:
        async with self._transaction() as session:
            session.add(SanctionsScreeningDB(**record.model_dump()))

    # ------------------------------------------------------------------
    # Enhanced due diligence
    # ------------------------------------------------------------------

    async def find_open_edd(self, tenant_id: str, customer_id: str) -> EDDInvestigation | None:
        async with self._transaction() as session:
            row = await session.scalar(
                select(EDDInvestigationDB)
                .where(
                    EDDInvestigationDB.tenant_id == tenant_id,
                    EDDInvestigationDB.customer_id == customer_id,
                    EDDInvestigationDB.status.in_([s.value for s in OPEN_EDD_STATUSES]),
                )
                .limit(1)
            )
            return EDDInvestigation.model_validate(_row_to_dict(row)) if row else None

    async def insert_edd(self, investigation: EDDInvestigation) -> None:
        async with self._transaction() as session:
            session.add(EDDInvestigationDB(**investigation.model_dump()))

    async def get_edd(self, tenant_id: str, investigation_id: str) -> EDDInvestigation | None:
        async with self._transaction() as session:
            row = await session.get(EDDInvestigationDB, investigation_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return EDDInvestigation.model_validate(_row_to_dict(row))

    async def update_edd(self, investigation: EDDInvestigation) -> None:
        async with self._transaction() as session:
            row = await session.get(EDDInvestigationDB, investigation.id)
            if row is None:
                raise StorageError(f"investigation {investigation.id} does not exist")
            _apply(row, investigation.model_dump(exclude={"id", "tenant_id"}))
