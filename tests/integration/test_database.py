"""Integration tests for database models."""

import pytest

pytestmark = pytest.mark.integration


class TestDatabase:
    def test_models_importable(self):
        from src.db.models import (
            AlertDB,
            CustomerDB,
            DailySequenceDB,
            EDDInvestigationDB,
            SMRReportDB,
            TenantDB,
            TransactionDB,
        )

        assert TenantDB.__tablename__ == "tenants"
        assert CustomerDB.__tablename__ == "customers"
        assert TransactionDB.__tablename__ == "transactions"
        assert SMRReportDB.__tablename__ == "smr_reports"
        assert AlertDB.__tablename__ == "alerts"
        assert EDDInvestigationDB.__tablename__ == "edd_investigations"
        assert DailySequenceDB.__tablename__ == "daily_sequences"

    def test_transaction_model_fields(self):
        from src.db.models import TransactionDB

        columns = {c.name for c in TransactionDB.__table__.columns}
        assert "requires_ttr" in columns
        assert "ttr_reference" in columns
        assert "ttr_submission_deadline" in columns
        assert "ttr_submitted_at" in columns
        assert "risk_factors" in columns

    def test_alert_model_fields(self):
        from src.db.models import AlertDB

        columns = {c.name for c in AlertDB.__table__.columns}
        assert "alert_number" in columns
        assert "rule_code" in columns
        assert "severity" in columns
        assert "status" in columns
        assert "sla_deadline" in columns
        # mapped as metadata_ on the class
        assert "metadata" in columns

    def test_alert_number_unique_per_tenant(self):
        from sqlalchemy import UniqueConstraint

        from src.db.models import AlertDB

        unique = [
            {c.name for c in constraint.columns}
            for constraint in AlertDB.__table__.constraints
            if isinstance(constraint, UniqueConstraint)
        ]
        assert {"tenant_id", "alert_number"} in unique

    def test_daily_sequence_primary_key(self):
        from src.db.models import DailySequenceDB

        pk = {c.name for c in DailySequenceDB.__table__.primary_key.columns}
        assert pk == {"tenant_id", "scope", "day"}

    def test_tenant_region_nullable(self):
        from src.db.models import TenantDB

        assert TenantDB.__table__.c.region.nullable

    @pytest.mark.asyncio
    async def test_dispose_without_open_connections(self):
        from src.db.database import dispose_db, engine

        await dispose_db()
        assert engine.pool.checkedout() == 0
