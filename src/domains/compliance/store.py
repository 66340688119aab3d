"""Storage contract for the compliance decision core.

Components receive a ``ComplianceStore`` through their constructors; there is
no module-level client. ``InMemoryComplianceStore`` backs tests and local dry
runs; ``src.db.repository.SqlAlchemyComplianceStore`` is the PostgreSQL
implementation used by the scheduled jobs.

Every query is tenant-scoped. Implementations raise ``StorageError`` when the
backing store fails; callers decide whether that failure is advisory.
"""

import asyncio
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Protocol

from .exceptions import StorageError
from .models import (
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


class ComplianceStore(Protocol):
    # Tenants and customers
    async def list_active_tenants(self) -> list[Tenant]: ...

    async def get_tenant(self, tenant_id: str) -> Tenant | None: ...

    async def get_customer(self, tenant_id: str, customer_id: str) -> Customer | None: ...

    async def update_customer(self, tenant_id: str, customer_id: str, **changes: Any) -> None: ...

    # Transactions
    async def get_transactions(
        self, tenant_id: str, transaction_ids: list[str]
    ) -> list[Transaction]: ...

    async def list_customer_transactions(
        self, tenant_id: str, customer_id: str, since: datetime | None = None
    ) -> list[Transaction]:
        """Customer history, newest first, optionally bounded below by ``since``."""
        ...

    async def count_customer_transactions(
        self, tenant_id: str, customer_id: str, since: datetime
    ) -> int: ...

    async def sum_customer_amounts(self, tenant_id: str, customer_id: str) -> float: ...

    async def update_transaction(
        self, tenant_id: str, transaction_id: str, **changes: Any
    ) -> None: ...

    # Reporting obligations
    async def list_outstanding_ttrs(self, tenant_id: str) -> list[Transaction]: ...

    async def list_outstanding_smrs(self, tenant_id: str) -> list[SMRReport]: ...

    async def insert_smr(self, report: SMRReport) -> None: ...

    # Alerts
    async def get_alert_rule(self, tenant_id: str, rule_code: str) -> AlertRule | None: ...

    async def next_sequence(self, tenant_id: str, scope: str, day: date) -> int:
        """Atomically increment and return the tenant's counter for ``scope`` on ``day``."""
        ...

    async def insert_alert(self, alert: Alert, case: Case | None = None) -> None:
        """Persist an alert and, when given, its linked case as one unit."""
        ...

    async def get_alert(self, tenant_id: str, alert_id: str) -> Alert | None: ...

    async def update_alert(self, alert: Alert) -> None: ...

    async def find_recent_alert(
        self,
        tenant_id: str,
        rule_code: str,
        entity_type: str,
        entity_id: str,
        since: datetime,
    ) -> Alert | None: ...

    async def count_alerts(self, tenant_id: str, rule_code: str, since: datetime) -> int: ...

    # Side-effect sinks
    async def insert_audit(self, record: AuditRecord) -> None: ...

    async def enqueue_webhook(self, event: WebhookEvent) -> None: ...

    # Screening
    async def list_sanctioned_entities(self, sources: list[str]) -> list[SanctionedEntity]: ...

    async def insert_screening(self, record: ScreeningRecord) -> None: ...

    # Enhanced due diligence
    async def find_open_edd(self, tenant_id: str, customer_id: str) -> EDDInvestigation | None: ...

    async def insert_edd(self, investigation: EDDInvestigation) -> None: ...

    async def get_edd(self, tenant_id: str, investigation_id: str) -> EDDInvestigation | None: ...

    async def update_edd(self, investigation: EDDInvestigation) -> None: ...


class InMemoryComplianceStore:
    """Dict-backed store.

    Counters and the alert+case insert run under a lock so concurrent
    coroutines see the same guarantees the database implementation gives.
    """

    def __init__(self) -> None:
        self.tenants: dict[str, Tenant] = {}
        self.customers: dict[tuple[str, str], Customer] = {}
        self.transactions: dict[tuple[str, str], Transaction] = {}
        self.smr_reports: dict[str, SMRReport] = {}
        self.alert_rules: dict[tuple[str, str], AlertRule] = {}
        self.alerts: dict[str, Alert] = {}
        self.cases: dict[str, Case] = {}
        self.audit_log: list[AuditRecord] = []
        self.webhook_outbox: list[WebhookEvent] = []
        self.sanctioned_entities: list[SanctionedEntity] = []
        self.screenings: list[ScreeningRecord] = []
        self.edd_investigations: dict[str, EDDInvestigation] = {}
        self._sequences: dict[tuple[str, str, date], int] = defaultdict(int)
        self._lock = asyncio.Lock()

    # -- seeding helpers ----------------------------------------------------

    def add_tenant(self, tenant: Tenant) -> Tenant:
        self.tenants[tenant.id] = tenant
        return tenant

    def add_customer(self, customer: Customer) -> Customer:
        self.customers[(customer.tenant_id, customer.id)] = customer
        return customer

    def add_transaction(self, transaction: Transaction) -> Transaction:
        self.transactions[(transaction.tenant_id, transaction.id)] = transaction
        return transaction

    def add_alert_rule(self, rule: AlertRule) -> AlertRule:
        self.alert_rules[(rule.tenant_id, rule.rule_code)] = rule
        return rule

    def add_sanctioned_entity(self, entity: SanctionedEntity) -> SanctionedEntity:
        self.sanctioned_entities.append(entity)
        return entity

    # -- tenants and customers ----------------------------------------------

    async def list_active_tenants(self) -> list[Tenant]:
        return [t for t in self.tenants.values() if t.is_active]

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        return self.tenants.get(tenant_id)

    async def get_customer(self, tenant_id: str, customer_id: str) -> Customer | None:
        customer = self.customers.get((tenant_id, customer_id))
        return customer.model_copy() if customer else None

    async def update_customer(self, tenant_id: str, customer_id: str, **changes: Any) -> None:
        key = (tenant_id, customer_id)
        if key in self.customers:
            self.customers[key] = self.customers[key].model_copy(update=changes)

    # -- transactions -------------------------------------------------------

    async def get_transactions(
        self, tenant_id: str, transaction_ids: list[str]
    ) -> list[Transaction]:
        return [
            self.transactions[(tenant_id, tx_id)].model_copy()
            for tx_id in transaction_ids
            if (tenant_id, tx_id) in self.transactions
        ]

    async def list_customer_transactions(
        self, tenant_id: str, customer_id: str, since: datetime | None = None
    ) -> list[Transaction]:
        rows = [
            tx.model_copy()
            for (t_id, _), tx in self.transactions.items()
            if t_id == tenant_id
            and tx.customer_id == customer_id
            and (since is None or tx.created_at >= since)
        ]
        return sorted(rows, key=lambda tx: tx.created_at, reverse=True)

    async def count_customer_transactions(
        self, tenant_id: str, customer_id: str, since: datetime
    ) -> int:
        return len(await self.list_customer_transactions(tenant_id, customer_id, since))

    async def sum_customer_amounts(self, tenant_id: str, customer_id: str) -> float:
        history = await self.list_customer_transactions(tenant_id, customer_id)
        return sum(tx.effective_amount for tx in history)

    async def update_transaction(
        self, tenant_id: str, transaction_id: str, **changes: Any
    ) -> None:
        key = (tenant_id, transaction_id)
        if key in self.transactions:
            self.transactions[key] = self.transactions[key].model_copy(update=changes)

    # -- reporting obligations ----------------------------------------------

    async def list_outstanding_ttrs(self, tenant_id: str) -> list[Transaction]:
        return [
            tx.model_copy()
            for (t_id, _), tx in self.transactions.items()
            if t_id == tenant_id
            and tx.requires_ttr
            and tx.ttr_submitted_at is None
            and tx.ttr_submission_deadline is not None
        ]

    async def list_outstanding_smrs(self, tenant_id: str) -> list[SMRReport]:
        return [
            r.model_copy()
            for r in self.smr_reports.values()
            if r.tenant_id == tenant_id
            and r.status in ("pending", "under_review")
            and r.submitted_at is None
            and r.submission_deadline is not None
        ]

    async def insert_smr(self, report: SMRReport) -> None:
        self.smr_reports[report.id] = report

    # -- alerts -------------------------------------------------------------

    async def get_alert_rule(self, tenant_id: str, rule_code: str) -> AlertRule | None:
        return self.alert_rules.get((tenant_id, rule_code))

    async def next_sequence(self, tenant_id: str, scope: str, day: date) -> int:
        async with self._lock:
            self._sequences[(tenant_id, scope, day)] += 1
            return self._sequences[(tenant_id, scope, day)]

    async def insert_alert(self, alert: Alert, case: Case | None = None) -> None:
        async with self._lock:
            if any(
                a.tenant_id == alert.tenant_id and a.alert_number == alert.alert_number
                for a in self.alerts.values()
            ):
                raise StorageError(f"duplicate alert number {alert.alert_number}")
            self.alerts[alert.id] = alert
            if case is not None:
                self.cases[case.id] = case

    async def get_alert(self, tenant_id: str, alert_id: str) -> Alert | None:
        alert = self.alerts.get(alert_id)
        if alert is None or alert.tenant_id != tenant_id:
            return None
        return alert.model_copy()

    async def update_alert(self, alert: Alert) -> None:
        self.alerts[alert.id] = alert

    async def find_recent_alert(
        self,
        tenant_id: str,
        rule_code: str,
        entity_type: str,
        entity_id: str,
        since: datetime,
    ) -> Alert | None:
        for alert in self.alerts.values():
            if (
                alert.tenant_id == tenant_id
                and alert.rule_code == rule_code
                and alert.entity_type == entity_type
                and alert.entity_id == entity_id
                and alert.created_at >= since
            ):
                return alert.model_copy()
        return None

    async def count_alerts(self, tenant_id: str, rule_code: str, since: datetime) -> int:
        return sum(
            1
            for alert in self.alerts.values()
            if alert.tenant_id == tenant_id
            and alert.rule_code == rule_code
            and alert.created_at >= since
        )

    # -- side-effect sinks --------------------------------------------------

    async def insert_audit(self, record: AuditRecord) -> None:
        self.audit_log.append(record)

    async def enqueue_webhook(self, event: WebhookEvent) -> None:
        self.webhook_outbox.append(event)

    # -- screening ----------------------------------------------------------

    async def list_sanctioned_entities(self, sources: list[str]) -> list[SanctionedEntity]:
        return [e for e in self.sanctioned_entities if e.source in sources]

    async def insert_screening(self, record: ScreeningRecord) -> None:
        self.screenings.append(record)

    # -- enhanced due diligence ---------------------------------------------

    async def find_open_edd(self, tenant_id: str, customer_id: str) -> EDDInvestigation | None:
        for inv in self.edd_investigations.values():
            if (
                inv.tenant_id == tenant_id
                and inv.customer_id == customer_id
                and inv.status in OPEN_EDD_STATUSES
            ):
                return inv.model_copy()
        return None

    async def insert_edd(self, investigation: EDDInvestigation) -> None:
        self.edd_investigations[investigation.id] = investigation

    async def get_edd(self, tenant_id: str, investigation_id: str) -> EDDInvestigation | None:
        inv = self.edd_investigations.get(investigation_id)
        if inv is None or inv.tenant_id != tenant_id:
            return None
        return inv.model_copy()

    async def update_edd(self, investigation: EDDInvestigation) -> None:
        self.edd_investigations[investigation.id] = investigation
