"""Transaction risk scoring from a fixed, ordered factor list.

Each built-in factor is a predicate over the scoring context with a fixed
point value. Matching factors are summed and the total is capped at 100:

  score >= 70   high    EDD consideration, high-risk alert
  score >= 40   medium
  otherwise     low

The built-in factors and their points feed downstream severity mapping
(alert severity, EDD triggers) and must not be re-weighted. Tenants may
append their own factors, which are evaluated after the built-ins.

Regulatory basis:
  AML/CTF Rules (AUSTRAC) Chapter 15: Ongoing customer due diligence and
  transaction monitoring proportionate to ML/TF risk.
"""

from collections.abc import Callable
from dataclasses import dataclass

from .config import RegionalConfig
from .models import AlertSeverity, AppliedFactor, RiskContext, RiskLevel, RiskResult

MAX_RISK_SCORE = 100
HIGH_RISK_SCORE = 70
MEDIUM_RISK_SCORE = 40


@dataclass(frozen=True)
class RiskFactor:
    name: str
    score: int
    description: str
    condition: Callable[[RiskContext], bool]
    weight: int = 1


DEFAULT_RISK_FACTORS: tuple[RiskFactor, ...] = (
    RiskFactor(
        name="high_transaction_amount",
        score=30,
        description="Transaction exceeds enhanced DD threshold",
        condition=lambda ctx: ctx.transaction_amount > ctx.enhanced_dd_threshold,
    ),
    RiskFactor(
        name="medium_transaction_amount",
        score=20,
        description="Transaction exceeds TTR threshold",
        condition=lambda ctx: (
            ctx.ttr_threshold < ctx.transaction_amount <= ctx.enhanced_dd_threshold
        ),
    ),
    RiskFactor(
        name="kyc_threshold_amount",
        score=10,
        description="Transaction exceeds KYC threshold",
        condition=lambda ctx: ctx.kyc_threshold < ctx.transaction_amount <= ctx.ttr_threshold,
    ),
    RiskFactor(
        name="new_customer",
        score=15,
        description="Customer account less than 7 days old",
        condition=lambda ctx: ctx.customer_age_days < 7,
    ),
    RiskFactor(
        name="recent_customer",
        score=10,
        description="Customer account less than 30 days old",
        condition=lambda ctx: 7 <= ctx.customer_age_days < 30,
    ),
    RiskFactor(
        name="multiple_transactions",
        score=20,
        description="Multiple transactions in short period",
        condition=lambda ctx: ctx.recent_transaction_count >= 3,
    ),
    RiskFactor(
        name="unusual_pattern",
        score=25,
        description="Unusual transaction pattern detected",
        condition=lambda ctx: ctx.unusual_pattern,
    ),
    RiskFactor(
        name="pep_status",
        score=30,
        description="Customer is a Politically Exposed Person",
        condition=lambda ctx: ctx.is_pep,
    ),
    RiskFactor(
        name="sanctioned_status",
        score=50,
        description="Customer has potential sanctions match",
        condition=lambda ctx: ctx.is_sanctioned,
    ),
    RiskFactor(
        name="unverified_customer",
        score=10,
        description="Customer identity not verified",
        condition=lambda ctx: ctx.verification_status == "unverified",
    ),
)


def risk_level_for(score: int) -> RiskLevel:
    if score >= HIGH_RISK_SCORE:
        return RiskLevel.HIGH
    if score >= MEDIUM_RISK_SCORE:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def calculate_risk_score(
    context: RiskContext, custom_factors: list[RiskFactor] | tuple[RiskFactor, ...] = ()
) -> RiskResult:
    """Score a transaction context. Pure and total over a valid context."""
    applied: list[AppliedFactor] = []
    total = 0

    for factor in (*DEFAULT_RISK_FACTORS, *custom_factors):
        if not factor.condition(context):
            continue
        contribution = factor.score * factor.weight
        total += contribution
        applied.append(
            AppliedFactor(factor=factor.name, score=contribution, reason=factor.description)
        )

    score = min(total, MAX_RISK_SCORE)
    return RiskResult(score=score, risk_level=risk_level_for(score), factors=applied)


def build_risk_context(
    config: RegionalConfig,
    *,
    amount: float,
    customer_age_days: int,
    recent_transaction_count: int = 0,
    currency: str | None = None,
    unusual_pattern: bool = False,
    is_pep: bool = False,
    is_sanctioned: bool = False,
    verification_status: str = "verified",
) -> RiskContext:
    """Assemble a scoring context with the region's thresholds."""
    return RiskContext(
        transaction_amount=amount,
        currency=currency or config.currency,
        customer_age_days=customer_age_days,
        recent_transaction_count=recent_transaction_count,
        unusual_pattern=unusual_pattern,
        is_pep=is_pep,
        is_sanctioned=is_sanctioned,
        verification_status=verification_status,
        ttr_threshold=config.thresholds.ttr_required,
        kyc_threshold=config.thresholds.kyc_required,
        enhanced_dd_threshold=config.thresholds.enhanced_dd_required,
    )


def risk_alert_severity(score: int) -> AlertSeverity:
    """Alert severity for a high-risk transaction score."""
    return AlertSeverity.CRITICAL if score >= 80 else AlertSeverity.HIGH
