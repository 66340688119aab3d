"""Sanctions list screening for customers.

Names are normalised (lowercase, accents stripped, punctuation removed)
before comparison. An entity matches exactly when the screened name is
contained in its listed name or equals one of its aliases; otherwise
entities sharing a name token are scored with a Levenshtein ratio, boosted
when the date of birth agrees.

Screening is advisory inside the batch pipeline: a list lookup failure
yields a neutral ``clear`` result carrying the error.
"""

import re
import unicodedata
from collections.abc import Callable
from datetime import UTC, date, datetime

import jellyfish
import structlog

from .models import (
    Customer,
    SanctionedEntity,
    ScreeningMatch,
    ScreeningRecord,
    ScreeningResult,
)
from .store import ComplianceStore

logger = structlog.get_logger()

DEFAULT_MINIMUM_MATCH_SCORE = 0.7

# Fuzzy candidates below this are discarded before the minimum-score filter
FUZZY_CANDIDATE_SCORE = 0.6

DOB_MATCH_BOOST = 0.3


def normalize_name(name: str) -> str:
    decomposed = unicodedata.normalize("NFD", name.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = re.sub(r"[^a-z0-9\s]", "", stripped)
    return " ".join(cleaned.split())


def name_similarity(a: str, b: str) -> float:
    """1 - levenshtein / longer length, over normalised names."""
    left, right = normalize_name(a), normalize_name(b)
    longest = max(len(left), len(right))
    if longest == 0:
        return 0.0
    return 1 - jellyfish.levenshtein_distance(left, right) / longest


def _dob_string(value: date | str | None) -> str | None:
    if value is None:
        return None
    return value.isoformat() if isinstance(value, date) else value


class SanctionsScreener:
    def __init__(
        self,
        store: ComplianceStore,
        minimum_match_score: float = DEFAULT_MINIMUM_MATCH_SCORE,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.minimum_match_score = minimum_match_score
        self._now = now

    async def screen(
        self,
        full_name: str,
        sources: list[str],
        date_of_birth: date | str | None = None,
    ) -> ScreeningResult:
        normalized = normalize_name(full_name)
        if not normalized:
            return ScreeningResult()

        try:
            entities = await self.store.list_sanctioned_entities(sources)
        except Exception as exc:
            logger.exception("sanctions_list_unavailable", sources=sources)
            return ScreeningResult(error=str(exc))

        dob = _dob_string(date_of_birth)
        candidates: list[ScreeningMatch] = []
        tokens = set(normalized.split())

        for entity in entities:
            if (exact := self._exact_match(normalized, entity)) is not None:
                candidates.append(exact)
                continue
            entity_tokens = set(normalize_name(entity.full_name).split())
            for alias in entity.aliases:
                entity_tokens |= set(normalize_name(alias).split())
            if tokens & entity_tokens:
                if (fuzzy := self._fuzzy_match(normalized, dob, entity)) is not None:
                    candidates.append(fuzzy)

        matches = [
            m for m in _deduplicate(candidates) if m.match_score >= self.minimum_match_score
        ]
        matches.sort(key=lambda m: m.match_score, reverse=True)

        return ScreeningResult(
            is_match=bool(matches),
            status="potential_match" if matches else "clear",
            highest_score=matches[0].match_score if matches else 0.0,
            matches=matches,
        )

    async def screen_customer(
        self, tenant_id: str, customer: Customer, sources: list[str]
    ) -> ScreeningResult:
        """Screen a customer and record the outcome against their profile."""
        result = await self.screen(customer.full_name, sources, customer.date_of_birth)
        if result.error is None:
            await self.store.insert_screening(
                ScreeningRecord(
                    tenant_id=tenant_id,
                    customer_id=customer.id,
                    screened_name=customer.full_name,
                    is_match=result.is_match,
                    match_score=result.highest_score,
                    status=result.status,
                    matched_entities=[m.model_dump() for m in result.matches],
                    created_at=self._now(),
                )
            )
        if result.is_match:
            logger.warning(
                "sanctions_potential_match",
                tenant_id=tenant_id,
                customer_id=customer.id,
                match_count=len(result.matches),
                highest_score=result.highest_score,
            )
        return result

    def _exact_match(self, normalized: str, entity: SanctionedEntity) -> ScreeningMatch | None:
        aliases = {normalize_name(a) for a in entity.aliases}
        if normalized in normalize_name(entity.full_name) or normalized in aliases:
            return _to_match(entity, 1.0, "exact")
        return None

    def _fuzzy_match(
        self, normalized: str, dob: str | None, entity: SanctionedEntity
    ) -> ScreeningMatch | None:
        score = name_similarity(normalized, entity.full_name)
        if dob and entity.date_of_birth and dob == entity.date_of_birth:
            score = min(1.0, score + DOB_MATCH_BOOST)
        for alias in entity.aliases:
            score = max(score, name_similarity(normalized, alias))

        if score < FUZZY_CANDIDATE_SCORE:
            return None
        return _to_match(entity, round(score, 2), "fuzzy")


def _to_match(entity: SanctionedEntity, score: float, match_type: str) -> ScreeningMatch:
    return ScreeningMatch(
        entity_id=entity.id,
        source=entity.source,
        reference_number=entity.reference_number,
        name=entity.full_name,
        match_score=score,
        match_type=match_type,
        date_of_birth=entity.date_of_birth,
        sanctions_program=entity.sanctions_program,
    )


def _deduplicate(matches: list[ScreeningMatch]) -> list[ScreeningMatch]:
    seen: set[str] = set()
    unique: list[ScreeningMatch] = []
    for match in matches:
        key = f"{match.reference_number}-{match.name}"
        if key in seen:
            continue
        seen.add(key)
        unique.append(match)
    return unique
