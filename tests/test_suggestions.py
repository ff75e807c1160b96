"""Tests for potential-match suggestions."""

from datetime import date
from decimal import Decimal

import pytest

from recon_matching.models import MatchStatus, MatchType, TransactionSource
from recon_matching.services.errors import ValidationError
from recon_matching.services.strategies import DEFAULT_SCORING
from recon_matching.services.suggestions import candidate_pool, suggest_matches, suggested_match_type
from tests.factories import TransactionFactory


@pytest.fixture
def source():
    return TransactionFactory.build(
        source=TransactionSource.BANK,
        amount=Decimal("250.00"),
        txn_date=date(2024, 3, 15),
        partner_id="P-7",
        reference="INV-2024-001",
        description="ACME Corp invoice payment",
    )


def test_suggested_match_type_thresholds() -> None:
    assert suggested_match_type(95, DEFAULT_SCORING) == MatchType.EXACT
    assert suggested_match_type(90, DEFAULT_SCORING) == MatchType.FUZZY
    assert suggested_match_type(75, DEFAULT_SCORING) == MatchType.PARTIAL


def test_candidate_pool_prefers_other_sources(source) -> None:
    same_source = TransactionFactory.build(source=TransactionSource.BANK)
    other_source = TransactionFactory.build(source=TransactionSource.ERP)
    claimed = TransactionFactory.build(source=TransactionSource.ERP, status=MatchStatus.MATCHED, match_id="g-1")
    assert candidate_pool(source, [source, same_source, other_source, claimed]) == [other_source]


def test_candidate_pool_falls_back_to_same_source(source) -> None:
    same_source = TransactionFactory.build(source=TransactionSource.BANK)
    assert candidate_pool(source, [same_source]) == [same_source]


def test_suggestions_ranked_with_reasons(source) -> None:
    strong = TransactionFactory.build(
        source=TransactionSource.ERP,
        amount=Decimal("250.00"),
        txn_date=date(2024, 3, 15),
        partner_id="P-7",
        reference="INV-2024-001",
        description="ACME Corp invoice payment",
    )
    weak = TransactionFactory.build(
        source=TransactionSource.ERP,
        amount=Decimal("252.00"),
        txn_date=date(2024, 3, 17),
        partner_id="P-8",
        reference="INV-2023-999",
        description="Office supplies",
    )

    result = suggest_matches(source, [weak, strong], limit=5, scoring=DEFAULT_SCORING)

    assert [candidate.transaction for candidate in result.candidates] == [strong, weak]
    assert result.overall_confidence == 100.0
    assert result.suggested_match_type == MatchType.EXACT
    assert result.candidates[0].match_reasons == [
        "exact amount",
        "same date",
        "same partner",
        "same reference",
        "similar description",
    ]
    weak_reasons = result.candidates[1].match_reasons
    assert "amount within $2.00" in weak_reasons
    assert "date within 2 days" in weak_reasons
    assert "reference prefix match" in weak_reasons


def test_ties_break_by_date_then_id(source) -> None:
    later = TransactionFactory.build(id="b", source=TransactionSource.ERP, amount=Decimal("250.00"))
    earlier_b = TransactionFactory.build(id="z", source=TransactionSource.ERP, amount=Decimal("250.00"))
    earlier_a = TransactionFactory.build(id="a", source=TransactionSource.ERP, amount=Decimal("250.00"))
    for txn in (later, earlier_a, earlier_b):
        txn.partner_id = None
        txn.reference = None
        txn.description = ""
    later.txn_date = date(2024, 3, 16)
    earlier_a.txn_date = earlier_b.txn_date = date(2024, 3, 14)

    result = suggest_matches(source, [later, earlier_b, earlier_a], fields=["amount"], scoring=DEFAULT_SCORING)
    assert [candidate.transaction.id for candidate in result.candidates] == ["a", "z", "b"]


def test_limit_caps_results(source) -> None:
    pool = [TransactionFactory.build(source=TransactionSource.ERP) for _ in range(4)]
    result = suggest_matches(source, pool, limit=2, scoring=DEFAULT_SCORING)
    assert len(result.candidates) == 2


def test_limit_must_be_positive(source) -> None:
    with pytest.raises(ValidationError):
        suggest_matches(source, [], limit=0)


def test_empty_pool(source) -> None:
    result = suggest_matches(source, [], scoring=DEFAULT_SCORING)
    assert result.candidates == []
    assert result.suggested_match_type is None
    assert result.overall_confidence == 0.0
