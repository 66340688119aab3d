"""Pydantic models for the compliance domain."""

import math
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AlertSeverity(StrEnum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(StrEnum):
    NEW = "new"
    ACKNOWLEDGED = "acknowledged"
    INVESTIGATING = "investigating"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"
    FALSE_POSITIVE = "false_positive"


TERMINAL_ALERT_STATUSES = frozenset(
    {AlertStatus.RESOLVED, AlertStatus.DISMISSED, AlertStatus.FALSE_POSITIVE}
)


class ResolutionType(StrEnum):
    LEGITIMATE = "legitimate"
    FALSE_POSITIVE = "false_positive"
    CASE_CREATED = "case_created"
    SMR_FILED = "smr_filed"
    NO_ACTION = "no_action"
    ESCALATED = "escalated"
    OTHER = "other"


class EDDStatus(StrEnum):
    OPEN = "open"
    AWAITING_CUSTOMER_INFO = "awaiting_customer_info"
    UNDER_REVIEW = "under_review"
    ESCALATED = "escalated"
    COMPLETED = "completed"


OPEN_EDD_STATUSES = frozenset(
    {
        EDDStatus.OPEN,
        EDDStatus.AWAITING_CUSTOMER_INFO,
        EDDStatus.UNDER_REVIEW,
        EDDStatus.ESCALATED,
    }
)


class SuspiciousActivityType(StrEnum):
    MONEY_LAUNDERING = "money_laundering"
    TERRORISM_FINANCING = "terrorism_financing"
    FRAUD = "fraud"
    TAX_EVASION = "tax_evasion"
    SANCTIONS_EVASION = "sanctions_evasion"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Stored entities (rows owned by the external store)
# ---------------------------------------------------------------------------


class Tenant(BaseModel):
    id: str
    name: str = ""
    region: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class Customer(BaseModel):
    id: str
    tenant_id: str
    first_name: str = ""
    last_name: str = ""
    date_of_birth: date | None = None
    created_at: datetime
    is_pep: bool = False
    is_sanctioned: bool = False
    verification_status: str = "unverified"
    risk_level: RiskLevel = RiskLevel.LOW
    risk_score: float = 0.0
    requires_edd: bool = False
    edd_investigation_id: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Transaction(BaseModel):
    id: str
    tenant_id: str
    customer_id: str
    amount: float
    amount_local: float | None = None
    currency: str = "AUD"
    direction: str = "outgoing"
    transaction_type: str = "transfer"
    country: str | None = None
    created_at: datetime

    risk_score: float | None = None
    risk_level: RiskLevel | None = None
    risk_factors: list[dict[str, Any]] = Field(default_factory=list)

    requires_ttr: bool = False
    ttr_reference: str | None = None
    ttr_submission_deadline: datetime | None = None
    ttr_submitted_at: datetime | None = None

    edd_investigation_id: str | None = None

    @property
    def effective_amount(self) -> float:
        """Local-currency amount where converted, otherwise the raw amount."""
        return self.amount_local if self.amount_local is not None else self.amount


class SMRReport(BaseModel):
    id: str
    tenant_id: str
    customer_id: str | None = None
    activity_type: SuspiciousActivityType = SuspiciousActivityType.MONEY_LAUNDERING
    status: str = "pending"
    is_urgent: bool = False
    submission_deadline: datetime | None = None
    submitted_at: datetime | None = None
    created_at: datetime
    report: dict[str, Any] = Field(default_factory=dict)


class AlertRule(BaseModel):
    id: str
    tenant_id: str
    rule_code: str
    name: str = ""
    severity: AlertSeverity | None = None
    enabled: bool = True
    cooldown_minutes: int | None = None
    max_alerts_per_day: int | None = None
    auto_create_case: bool = False
    case_type: str | None = None
    case_priority: str | None = None


class Alert(BaseModel):
    id: str
    tenant_id: str
    alert_number: str
    rule_id: str | None = None
    rule_code: str
    alert_type: str
    severity: AlertSeverity
    status: AlertStatus = AlertStatus.NEW
    title: str
    description: str | None = None
    entity_type: str
    entity_id: str
    customer_id: str | None = None
    transaction_id: str | None = None
    case_id: str | None = None
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    sla_deadline: datetime | None = None
    sla_breached: bool = False

    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    assigned_to: str | None = None
    assigned_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_type: ResolutionType | None = None
    resolution_notes: str | None = None

    is_escalated: bool = False
    escalated_to: str | None = None
    escalated_at: datetime | None = None
    escalation_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ALERT_STATUSES

    def with_sla(self, now: datetime) -> "Alert":
        """Return a copy with the SLA-breach flag recomputed against ``now``."""
        breached = False
        if self.sla_deadline is not None:
            if self.resolved_at is not None:
                breached = self.resolved_at > self.sla_deadline
            elif not self.is_terminal:
                breached = now > self.sla_deadline
        return self.model_copy(update={"sla_breached": breached})


class Case(BaseModel):
    id: str
    tenant_id: str
    case_type: str
    priority: str = "medium"
    status: str = "open"
    title: str
    description: str | None = None
    customer_id: str | None = None
    alert_id: str | None = None
    created_at: datetime


class AuditRecord(BaseModel):
    tenant_id: str
    action_type: str
    entity_type: str
    entity_id: str
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class WebhookEvent(BaseModel):
    tenant_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SanctionedEntity(BaseModel):
    id: str
    source: str
    reference_number: str
    full_name: str
    aliases: list[str] = Field(default_factory=list)
    date_of_birth: str | None = None
    entity_type: str = "individual"
    nationality: str | None = None
    sanctions_program: str | None = None


class ScreeningRecord(BaseModel):
    tenant_id: str
    customer_id: str
    screened_name: str
    screening_type: str = "sanctions"
    is_match: bool
    match_score: float = 0.0
    status: str
    matched_entities: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime


class EDDInvestigation(BaseModel):
    id: str
    tenant_id: str
    investigation_number: str
    customer_id: str
    transaction_id: str | None = None
    status: EDDStatus = EDDStatus.OPEN
    trigger_reason: str
    triggered_by: str
    escalated_to: str | None = None
    escalation_reason: str | None = None
    escalated_at: datetime | None = None
    escalations: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Evaluation inputs and results
# ---------------------------------------------------------------------------


class RiskContext(BaseModel):
    """Per-evaluation scoring input. Malformed numbers fail construction."""

    transaction_amount: float = Field(ge=0)
    currency: str = "AUD"
    customer_age_days: int = Field(ge=0)
    recent_transaction_count: int = Field(default=0, ge=0)
    unusual_pattern: bool = False
    is_pep: bool = False
    is_sanctioned: bool = False
    verification_status: str = "verified"

    ttr_threshold: float = Field(gt=0)
    kyc_threshold: float = Field(gt=0)
    enhanced_dd_threshold: float = Field(gt=0)

    @field_validator(
        "transaction_amount", "ttr_threshold", "kyc_threshold", "enhanced_dd_threshold"
    )
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("amount must be finite")
        return v


class AppliedFactor(BaseModel):
    factor: str
    score: int
    reason: str


class RiskResult(BaseModel):
    score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    factors: list[AppliedFactor] = Field(default_factory=list)

    @property
    def is_high_risk(self) -> bool:
        return self.risk_level == RiskLevel.HIGH


class StructuringResult(BaseModel):
    is_structuring: bool = False
    transaction_count: int = 0
    total_amount: float = 0.0
    indicators: list[str] = Field(default_factory=list)


class ComplianceRequirements(BaseModel):
    requires_kyc: bool
    requires_enhanced_dd: bool
    requires_ttr: bool
    lifetime_total: float = 0.0
    cumulative_amount: float


class ScreeningMatch(BaseModel):
    entity_id: str
    source: str
    reference_number: str
    name: str
    match_score: float
    match_type: str
    date_of_birth: str | None = None
    sanctions_program: str | None = None


class ScreeningResult(BaseModel):
    is_match: bool = False
    status: str = "clear"
    highest_score: float = 0.0
    matches: list[ScreeningMatch] = Field(default_factory=list)
    error: str | None = None


class EntityRef(BaseModel):
    entity_type: str
    entity_id: str


class AlertInput(BaseModel):
    tenant_id: str
    rule_code: str
    alert_type: str
    severity: AlertSeverity
    title: str
    description: str | None = None
    entity: EntityRef
    customer_id: str | None = None
    transaction_id: str | None = None
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    sla_hours: float | None = None
    auto_create_case: bool = False
    case_priority: str | None = None


class AlertResult(BaseModel):
    success: bool
    alert_id: str | None = None
    alert_number: str | None = None
    case_id: str | None = None
    skipped: bool = False
    skip_reason: str | None = None
    error: str | None = None


class OperationStatus(StrEnum):
    OK = "ok"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    INVALID = "invalid"


class AlertOperationResult(BaseModel):
    status: OperationStatus
    alert: Alert | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == OperationStatus.OK


class EDDResult(BaseModel):
    success: bool
    investigation_id: str | None = None
    investigation_number: str | None = None
    existing_investigation: bool = False
    not_found: bool = False
    error: str | None = None


class ReportingOfficer(BaseModel):
    name: str
    position: str
    contact_number: str


AUTOMATED_REPORTING_OFFICER = ReportingOfficer(
    name="Compliance System",
    position="Automated Compliance Monitoring",
    contact_number="N/A",
)


class SuspiciousActivity(BaseModel):
    """Details of a suspicion that an SMR is being raised for."""

    activity_type: SuspiciousActivityType
    description: str
    suspicion_formed_at: datetime
    customer_id: str | None = None
    transaction_ids: list[str] = Field(default_factory=list)
    grounds_for_suspicion: str
    action_taken: str
    reporting_officer: ReportingOfficer = AUTOMATED_REPORTING_OFFICER
    additional_information: str | None = None


class SMRResult(BaseModel):
    success: bool
    report_id: str | None = None
    submission_deadline: datetime | None = None
    error: str | None = None


class DeadlineCheckResult(BaseModel):
    tenant_id: str
    ttr_alerts_created: int = 0
    smr_alerts_created: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class AllTenantsDeadlineResult(BaseModel):
    tenants_checked: int = 0
    total_ttr_alerts: int = 0
    total_smr_alerts: int = 0
    errors: list[str] = Field(default_factory=list)


class AlertCounts(BaseModel):
    created: int = 0
    skipped: int = 0
    failed: int = 0


class SanctionsCounts(BaseModel):
    matches: int = 0
    clear: int = 0


class RiskCounts(BaseModel):
    high: int = 0
    medium: int = 0
    low: int = 0


class BatchComplianceResult(BaseModel):
    tenant_id: str
    transactions_processed: int = 0
    customers_screened: int = 0
    customers_failed: int = 0
    alerts: AlertCounts = Field(default_factory=AlertCounts)
    sanctions: SanctionsCounts = Field(default_factory=SanctionsCounts)
    risk_scores: RiskCounts = Field(default_factory=RiskCounts)
    structuring_detected: int = 0
    smr_generated: int = 0
    edd_triggered: int = 0
    errors: list[str] = Field(default_factory=list)
