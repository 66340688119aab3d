"""Tests for sanctions list screening."""

from datetime import date
from unittest.mock import AsyncMock

import pytest

from src.domains.compliance.models import SanctionedEntity
from src.domains.compliance.screening import (
    SanctionsScreener,
    name_similarity,
    normalize_name,
)


def _entity(**kwargs) -> SanctionedEntity:
    defaults = {
        "id": "ent-001",
        "source": "DFAT",
        "reference_number": "DFAT-1001",
        "full_name": "Omar Abdul Haddadi",
        "aliases": [],
    }
    defaults.update(kwargs)
    return SanctionedEntity(**defaults)


@pytest.fixture
def screener(store, clock):
    return SanctionsScreener(store, now=clock)


class TestNormalization:
    def test_strips_accents_and_punctuation(self):
        assert normalize_name("  José O'Brien-Smith ") == "jose obriensmith"

    def test_similarity_bounds(self):
        assert name_similarity("John Smith", "john smith") == 1.0
        assert name_similarity("", "") == 0.0
        assert name_similarity("Jon Smith", "John Smith") == pytest.approx(0.9)


class TestScreen:
    @pytest.mark.asyncio
    async def test_clear_when_no_entities(self, screener):
        result = await screener.screen("Olivia Nguyen", ["DFAT"])
        assert not result.is_match
        assert result.status == "clear"
        assert result.matches == []

    @pytest.mark.asyncio
    async def test_exact_name_match(self, store, screener):
        store.add_sanctioned_entity(_entity())
        result = await screener.screen("Omar Abdul Haddadi", ["DFAT"])

        assert result.is_match
        assert result.status == "potential_match"
        assert result.highest_score == 1.0
        assert result.matches[0].match_type == "exact"

    @pytest.mark.asyncio
    async def test_alias_match(self, store, screener):
        store.add_sanctioned_entity(_entity(aliases=["Abu Yusuf"]))
        result = await screener.screen("abu yusuf", ["DFAT"])
        assert result.is_match
        assert result.matches[0].name == "Omar Abdul Haddadi"

    @pytest.mark.asyncio
    async def test_fuzzy_match(self, store, screener):
        store.add_sanctioned_entity(_entity(full_name="John Smith"))
        result = await screener.screen("Jon Smith", ["DFAT"])
        assert result.is_match
        assert result.matches[0].match_type == "fuzzy"
        assert result.matches[0].match_score == 0.9

    @pytest.mark.asyncio
    async def test_date_of_birth_boost(self, store, screener):
        store.add_sanctioned_entity(_entity(date_of_birth="1970-05-01"))

        without_dob = await screener.screen("Omar Haddad", ["DFAT"])
        with_dob = await screener.screen("Omar Haddad", ["DFAT"], date(1970, 5, 1))

        assert not without_dob.is_match
        assert with_dob.is_match
        assert with_dob.highest_score == 0.91

    @pytest.mark.asyncio
    async def test_only_requested_sources(self, store, screener):
        store.add_sanctioned_entity(_entity(source="OFAC"))
        result = await screener.screen("Omar Abdul Haddadi", ["DFAT", "UN"])
        assert not result.is_match

    @pytest.mark.asyncio
    async def test_duplicate_listings_collapse(self, store, screener):
        store.add_sanctioned_entity(_entity(id="ent-001"))
        store.add_sanctioned_entity(_entity(id="ent-002"))
        result = await screener.screen("Omar Abdul Haddadi", ["DFAT"])
        assert len(result.matches) == 1

    @pytest.mark.asyncio
    async def test_blank_name_never_matches(self, store, screener):
        store.add_sanctioned_entity(_entity())
        result = await screener.screen("  ", ["DFAT"])
        assert not result.is_match

    @pytest.mark.asyncio
    async def test_list_failure_is_clear_with_error(self, clock):
        store = AsyncMock()
        store.list_sanctioned_entities.side_effect = RuntimeError("list service down")
        screener = SanctionsScreener(store, now=clock)

        result = await screener.screen("Omar Abdul Haddadi", ["DFAT"])
        assert not result.is_match
        assert result.error == "list service down"


class TestScreenCustomer:
    @pytest.mark.asyncio
    async def test_records_screening(self, store, screener, customer):
        await screener.screen_customer(customer.tenant_id, customer, ["DFAT"])

        assert len(store.screenings) == 1
        record = store.screenings[0]
        assert record.customer_id == customer.id
        assert record.screened_name == "Olivia Nguyen"
        assert not record.is_match

    @pytest.mark.asyncio
    async def test_match_recorded_with_entities(self, store, screener, customer):
        store.add_sanctioned_entity(_entity(full_name="Olivia Nguyen"))
        result = await screener.screen_customer(customer.tenant_id, customer, ["DFAT"])

        assert result.is_match
        assert store.screenings[0].matched_entities[0]["reference_number"] == "DFAT-1001"
