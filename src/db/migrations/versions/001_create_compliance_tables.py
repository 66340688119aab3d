"""Create compliance decision core tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _ts(name: str, nullable: bool = True, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kwargs)


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("region", sa.String(), nullable=True),
        sa.Column("settings", JSONB(), nullable=False, server_default="{}"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index(op.f("ix_tenants_is_active"), "tenants", ["is_active"])

    op.create_table(
        "customers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("first_name", sa.String(), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(), nullable=False, server_default=""),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("is_pep", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_sanctioned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("verification_status", sa.String(), nullable=False, server_default="unverified"),
        sa.Column("risk_level", sa.String(), nullable=False, server_default="low"),
        sa.Column("risk_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("requires_edd", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("edd_investigation_id", sa.String(), nullable=True),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
    )
    op.create_index(op.f("ix_customers_tenant_id"), "customers", ["tenant_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("amount_local", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(), nullable=False, server_default="AUD"),
        sa.Column("direction", sa.String(), nullable=False, server_default="outgoing"),
        sa.Column("transaction_type", sa.String(), nullable=False, server_default="transfer"),
        sa.Column("country", sa.String(), nullable=True),
        sa.Column("risk_score", sa.Float(), nullable=True),
        sa.Column("risk_level", sa.String(), nullable=True),
        sa.Column("risk_factors", JSONB(), nullable=False, server_default="[]"),
        sa.Column("requires_ttr", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ttr_reference", sa.String(), nullable=True),
        _ts("ttr_submission_deadline"),
        _ts("ttr_submitted_at"),
        sa.Column("edd_investigation_id", sa.String(), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index(op.f("ix_transactions_tenant_id"), "transactions", ["tenant_id"])
    op.create_index(op.f("ix_transactions_customer_id"), "transactions", ["customer_id"])
    op.create_index(op.f("ix_transactions_requires_ttr"), "transactions", ["requires_ttr"])
    op.create_index(op.f("ix_transactions_created_at"), "transactions", ["created_at"])

    op.create_table(
        "smr_reports",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("activity_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("is_urgent", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("submission_deadline"),
        _ts("submitted_at"),
        sa.Column("report_data", JSONB(), nullable=False, server_default="{}"),
        _ts("created_at", nullable=False),
    )
    op.create_index(op.f("ix_smr_reports_tenant_id"), "smr_reports", ["tenant_id"])

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("rule_code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("severity", sa.String(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=True),
        sa.Column("max_alerts_per_day", sa.Integer(), nullable=True),
        sa.Column("auto_create_case", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("case_type", sa.String(), nullable=True),
        sa.Column("case_priority", sa.String(), nullable=True),
        sa.UniqueConstraint("tenant_id", "rule_code"),
    )
    op.create_index(op.f("ix_alert_rules_tenant_id"), "alert_rules", ["tenant_id"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("alert_number", sa.String(), nullable=False),
        sa.Column("rule_id", sa.String(), nullable=True),
        sa.Column("rule_code", sa.String(), nullable=False),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="new"),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("case_id", sa.String(), nullable=True),
        sa.Column("trigger_data", JSONB(), nullable=False, server_default="{}"),
        sa.Column("metadata", JSONB(), nullable=False, server_default="{}"),
        _ts("created_at", nullable=False),
        _ts("sla_deadline"),
        _ts("acknowledged_at"),
        sa.Column("acknowledged_by", sa.String(), nullable=True),
        sa.Column("assigned_to", sa.String(), nullable=True),
        _ts("assigned_at"),
        _ts("resolved_at"),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolution_type", sa.String(), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("is_escalated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("escalated_to", sa.String(), nullable=True),
        _ts("escalated_at"),
        sa.Column("escalation_reason", sa.Text(), nullable=True),
        sa.UniqueConstraint("tenant_id", "alert_number"),
    )
    op.create_index(op.f("ix_alerts_tenant_id"), "alerts", ["tenant_id"])
    op.create_index(op.f("ix_alerts_rule_code"), "alerts", ["rule_code"])
    op.create_index(op.f("ix_alerts_entity_id"), "alerts", ["entity_id"])
    op.create_index(op.f("ix_alerts_created_at"), "alerts", ["created_at"])

    op.create_table(
        "cases",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("case_type", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("alert_id", sa.String(), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index(op.f("ix_cases_tenant_id"), "cases", ["tenant_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=False, server_default="{}"),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
    )
    op.create_index(op.f("ix_audit_logs_tenant_id"), "audit_logs", ["tenant_id"])
    op.create_index(op.f("ix_audit_logs_action_type"), "audit_logs", ["action_type"])
    op.create_index(op.f("ix_audit_logs_entity_id"), "audit_logs", ["entity_id"])

    op.create_table(
        "webhook_outbox",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload", JSONB(), nullable=False, server_default="{}"),
        _ts("delivered_at"),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
    )
    op.create_index(op.f("ix_webhook_outbox_tenant_id"), "webhook_outbox", ["tenant_id"])

    op.create_table(
        "sanctioned_entities",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("reference_number", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("aliases", JSONB(), nullable=False, server_default="[]"),
        sa.Column("date_of_birth", sa.String(), nullable=True),
        sa.Column("entity_type", sa.String(), nullable=False, server_default="individual"),
        sa.Column("nationality", sa.String(), nullable=True),
        sa.Column("sanctions_program", sa.String(), nullable=True),
    )
    op.create_index(op.f("ix_sanctioned_entities_source"), "sanctioned_entities", ["source"])

    op.create_table(
        "sanctions_screenings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("screened_name", sa.String(), nullable=False),
        sa.Column("screening_type", sa.String(), nullable=False, server_default="sanctions"),
        sa.Column("is_match", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("match_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("matched_entities", JSONB(), nullable=False, server_default="[]"),
        _ts("created_at", nullable=False),
    )
    op.create_index(
        op.f("ix_sanctions_screenings_tenant_id"), "sanctions_screenings", ["tenant_id"]
    )
    op.create_index(
        op.f("ix_sanctions_screenings_customer_id"), "sanctions_screenings", ["customer_id"]
    )

    op.create_table(
        "edd_investigations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("investigation_number", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("trigger_reason", sa.Text(), nullable=False),
        sa.Column("triggered_by", sa.String(), nullable=False),
        sa.Column("escalated_to", sa.String(), nullable=True),
        sa.Column("escalation_reason", sa.Text(), nullable=True),
        _ts("escalated_at"),
        sa.Column("escalations", JSONB(), nullable=False, server_default="[]"),
        _ts("created_at", nullable=False),
        _ts("updated_at"),
    )
    op.create_index(op.f("ix_edd_investigations_tenant_id"), "edd_investigations", ["tenant_id"])
    op.create_index(
        op.f("ix_edd_investigations_customer_id"), "edd_investigations", ["customer_id"]
    )

    op.create_table(
        "daily_sequences",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("scope", sa.String(), primary_key=True),
        sa.Column("day", sa.Date(), primary_key=True),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
    )


def downgrade() -> None:
    for table in (
        "daily_sequences",
        "edd_investigations",
        "sanctions_screenings",
        "sanctioned_entities",
        "webhook_outbox",
        "audit_logs",
        "cases",
        "alerts",
        "alert_rules",
        "smr_reports",
        "transactions",
        "customers",
        "tenants",
    ):
        op.drop_table(table)
