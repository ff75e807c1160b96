"""Unit tests for pairwise scoring and match strategies."""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from recon_matching.models import MatchType, TransactionSource
from recon_matching.schemas.rules import (
    ExactMatchConfig,
    FuzzyMatchConfig,
    ManualMatchConfig,
    NWayMatchConfig,
    Tolerance,
)
from recon_matching.services import strategies
from recon_matching.services.errors import PreconditionError, ValidationError
from recon_matching.services.strategies import (
    DEFAULT_SCORING,
    effective_amount_tolerance,
    execute,
    fields_agree,
    load_scoring_config,
    score_amount,
    score_date,
    score_description,
    score_pair,
    score_reference,
)
from recon_matching.services.variance import compute_variance
from tests.factories import TransactionFactory

NO_TOLERANCE = Tolerance()


def test_load_scoring_config_reads_yaml_and_env(monkeypatch: pytest.MonkeyPatch) -> None:
    config = load_scoring_config(force_reload=True)
    assert config.fuzzy_threshold == 85.0
    assert config.weight_amount == Decimal("0.4")
    assert config.fuzzy_fields == ("amount", "date")

    monkeypatch.setenv("MATCHING_FUZZY_THRESHOLD", "90")
    monkeypatch.setenv("MATCHING_DATE_WINDOW_DAYS", "5")
    updated = load_scoring_config(force_reload=True)
    assert updated.fuzzy_threshold == 90.0
    assert updated.date_days == 5


def test_load_scoring_config_malformed_yaml_uses_defaults(monkeypatch, tmp_path) -> None:
    bad = tmp_path / "matching.yaml"
    bad.write_text("scoring: [unclosed")
    monkeypatch.setattr(strategies, "CONFIG_PATH", bad)
    assert load_scoring_config(force_reload=True) == DEFAULT_SCORING


def test_load_scoring_config_missing_file_uses_defaults(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(strategies, "CONFIG_PATH", tmp_path / "absent.yaml")
    assert load_scoring_config(force_reload=True) == DEFAULT_SCORING


class TestFieldScores:
    def test_amount_equal(self) -> None:
        assert score_amount(Decimal("10"), Decimal("10"), NO_TOLERANCE, DEFAULT_SCORING) == 100.0

    def test_amount_within_tolerance_scales_to_ninety(self) -> None:
        tolerance = Tolerance(amount=Decimal("1.00"))
        assert score_amount(Decimal("1000.00"), Decimal("1000.50"), tolerance, DEFAULT_SCORING) == 95.0
        assert score_amount(Decimal("1000.00"), Decimal("1001.00"), tolerance, DEFAULT_SCORING) == 90.0

    def test_amount_beyond_tolerance(self) -> None:
        tolerance = Tolerance(amount=Decimal("1.00"))
        # 2% apart: 60 - 2 * 10
        assert score_amount(Decimal("100.00"), Decimal("98.00"), tolerance, DEFAULT_SCORING) == 40.0
        assert score_amount(Decimal("100.00"), Decimal("50.00"), tolerance, DEFAULT_SCORING) == 0.0

    def test_effective_tolerance_takes_larger_bound(self) -> None:
        tolerance = Tolerance(amount=Decimal("1.00"), percentage=Decimal("1"))
        allowed = effective_amount_tolerance(Decimal("500"), Decimal("400"), tolerance, DEFAULT_SCORING)
        assert allowed == Decimal("5")

    def test_effective_tolerance_defaults_from_config(self) -> None:
        allowed = effective_amount_tolerance(Decimal("10"), Decimal("10"), NO_TOLERANCE, DEFAULT_SCORING)
        assert allowed == Decimal("0.10")

    def test_date_scores(self) -> None:
        day = date(2024, 3, 15)
        assert score_date(day, day, NO_TOLERANCE, DEFAULT_SCORING) == 100.0
        tolerance = Tolerance(days=2)
        assert score_date(day, date(2024, 3, 16), tolerance, DEFAULT_SCORING) == 95.0
        # Two days beyond a two day window: 80 - 2 * 10
        assert score_date(day, date(2024, 3, 19), tolerance, DEFAULT_SCORING) == 60.0

    def test_reference_scores(self) -> None:
        assert score_reference("INV-001", "inv-001") == 100.0
        assert score_reference("INV-001", "INV-999") == 70.0
        assert score_reference("INV-001", "PO-001") == 0.0

    def test_description_similarity(self) -> None:
        assert score_description("ACME Corp payment", "acme corp payment") == 100.0
        assert score_description(None, "anything") == 0.0
        assert 0 < score_description("ACME Corp payment", "ACME invoice") < 100


def test_score_pair_normalizes_over_scored_fields() -> None:
    left = TransactionFactory.build(amount=Decimal("100.00"), reference=None)
    right = TransactionFactory.build(amount=Decimal("100.00"), reference="REF-1")
    score, breakdown = score_pair(left, right, ["amount", "reference"], NO_TOLERANCE, DEFAULT_SCORING)
    assert breakdown == {"amount": 100.0}
    assert score == 100.0


def test_score_pair_with_nothing_scored() -> None:
    left = TransactionFactory.build(partner_id=None)
    right = TransactionFactory.build(partner_id=None)
    assert score_pair(left, right, ["partner_id"], NO_TOLERANCE, DEFAULT_SCORING) == (0.0, {})


def test_fields_agree() -> None:
    left = TransactionFactory.build(amount=Decimal("100.00"), partner_id="P-1")
    right = TransactionFactory.build(amount=Decimal("100.05"), partner_id="p-1")
    assert fields_agree(left, right, "amount", NO_TOLERANCE, DEFAULT_SCORING)
    assert fields_agree(left, right, "partner_id", NO_TOLERANCE, DEFAULT_SCORING)
    assert not fields_agree(left, right, "amount", Tolerance(amount=Decimal("0.01")), DEFAULT_SCORING)


def test_fields_agree_missing_value_never_agrees() -> None:
    left = TransactionFactory.build(reference=None)
    right = TransactionFactory.build(reference=None)
    assert not fields_agree(left, right, "reference", NO_TOLERANCE, DEFAULT_SCORING)
    referenced = TransactionFactory.build(reference="INV-1")
    assert not fields_agree(left, referenced, "reference", NO_TOLERANCE, DEFAULT_SCORING)


class TestExecute:
    def test_exact_equal_amounts(self) -> None:
        candidates = [
            TransactionFactory.build(amount=Decimal("1000.00")),
            TransactionFactory.build(amount=Decimal("1000.00"), source=TransactionSource.SOURCE_B),
        ]
        result = execute(ExactMatchConfig(key_fields=["amount"]), candidates, DEFAULT_SCORING)
        assert result.is_match is True
        assert result.confidence == 100.0
        assert result.match_type == MatchType.EXACT
        assert compute_variance([txn.amount for txn in candidates]).variance == Decimal("0.00")

    def test_exact_always_compares_amount(self) -> None:
        candidates = [
            TransactionFactory.build(amount=Decimal("10.00"), reference="R1"),
            TransactionFactory.build(amount=Decimal("10.01"), reference="R1"),
        ]
        result = execute(ExactMatchConfig(key_fields=["reference"]), candidates, DEFAULT_SCORING)
        assert result.is_match is False
        assert result.confidence == 0.0
        assert "amount" in result.details

    def test_fuzzy_within_tolerance(self) -> None:
        candidates = [
            TransactionFactory.build(amount=Decimal("1000.00")),
            TransactionFactory.build(amount=Decimal("1000.50"), source=TransactionSource.SOURCE_B),
        ]
        config = FuzzyMatchConfig(threshold=85, tolerance=Tolerance(amount=Decimal("1.00")))
        result = execute(config, candidates, DEFAULT_SCORING)
        # amount 95 at weight 0.40, date 100 at weight 0.25
        assert result.is_match is True
        assert result.confidence == 96.92
        assert result.match_type == MatchType.FUZZY

        variance = compute_variance([txn.amount for txn in candidates])
        assert variance.variance == Decimal("0.25")
        assert variance.variance_percentage == Decimal("0.0250")

    def test_fuzzy_below_threshold(self) -> None:
        candidates = [
            TransactionFactory.build(amount=Decimal("100.00"), txn_date=date(2024, 3, 1)),
            TransactionFactory.build(amount=Decimal("90.00"), txn_date=date(2024, 3, 20)),
        ]
        result = execute(FuzzyMatchConfig(threshold=85), candidates, DEFAULT_SCORING)
        assert result.is_match is False
        assert result.confidence < 85

    def test_fuzzy_without_threshold_uses_configured_one(self) -> None:
        candidates = [
            TransactionFactory.build(amount=Decimal("1000.00")),
            TransactionFactory.build(amount=Decimal("1000.50"), source=TransactionSource.SOURCE_B),
        ]
        config = FuzzyMatchConfig(tolerance=Tolerance(amount=Decimal("1.00")))

        assert execute(config, candidates, DEFAULT_SCORING).is_match is True
        strict = execute(config, candidates, replace(DEFAULT_SCORING, fuzzy_threshold=99.0))
        assert strict.is_match is False
        assert strict.confidence == 96.92
        assert strict.details == "Weakest pair scored 96.92 against threshold 99.0"

    def test_fuzzy_threshold_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MATCHING_FUZZY_THRESHOLD", "99")
        scoring = load_scoring_config(force_reload=True)
        candidates = [
            TransactionFactory.build(amount=Decimal("1000.00")),
            TransactionFactory.build(amount=Decimal("1000.50"), source=TransactionSource.SOURCE_B),
        ]
        result = execute(FuzzyMatchConfig(tolerance=Tolerance(amount=Decimal("1.00"))), candidates, scoring)
        assert result.is_match is False

    def test_fuzzy_explicit_threshold_wins(self) -> None:
        candidates = [
            TransactionFactory.build(amount=Decimal("1000.00")),
            TransactionFactory.build(amount=Decimal("1000.50"), source=TransactionSource.SOURCE_B),
        ]
        config = FuzzyMatchConfig(threshold=90, tolerance=Tolerance(amount=Decimal("1.00")))
        assert execute(config, candidates, replace(DEFAULT_SCORING, fuzzy_threshold=99.0)).is_match is True

    def test_n_way_confidence_is_weakest_pair(self) -> None:
        candidates = [
            TransactionFactory.build(amount=Decimal("1000.00"), source=TransactionSource.SOURCE_A),
            TransactionFactory.build(amount=Decimal("1000.50"), source=TransactionSource.SOURCE_B),
            TransactionFactory.build(amount=Decimal("999.75"), source=TransactionSource.SOURCE_C),
        ]
        config = NWayMatchConfig(key_fields=["amount"], tolerance=Tolerance(amount=Decimal("1.00")))
        result = execute(config, candidates, DEFAULT_SCORING)
        assert result.is_match is True
        assert len(result.pair_scores) == 3
        assert result.confidence == min(pair.score for pair in result.pair_scores)
        assert result.confidence == 92.5

    def test_n_way_disagreement(self) -> None:
        candidates = [
            TransactionFactory.build(amount=Decimal("1000.00")),
            TransactionFactory.build(amount=Decimal("1000.50")),
            TransactionFactory.build(amount=Decimal("1010.00")),
        ]
        config = NWayMatchConfig(key_fields=["amount"], tolerance=Tolerance(amount=Decimal("1.00")))
        result = execute(config, candidates, DEFAULT_SCORING)
        assert result.is_match is False
        assert "disagree" in result.details

    def test_n_way_missing_key_field_is_not_a_match(self) -> None:
        candidates = [
            TransactionFactory.build(amount=Decimal("10.00"), txn_date=date(2024, 1, 1), reference=None),
            TransactionFactory.build(amount=Decimal("99999.00"), txn_date=date(2024, 1, 20), reference=None),
            TransactionFactory.build(amount=Decimal("3.00"), txn_date=date(2024, 1, 28), reference=None),
        ]
        result = execute(NWayMatchConfig(key_fields=["reference"]), candidates, DEFAULT_SCORING)
        assert result.is_match is False
        assert result.confidence == 0.0
        assert result.details == "Transactions disagree on reference"

    def test_n_way_min_confidence(self) -> None:
        candidates = [
            TransactionFactory.build(amount=Decimal("1000.00")),
            TransactionFactory.build(amount=Decimal("1000.50")),
            TransactionFactory.build(amount=Decimal("999.75")),
        ]
        config = NWayMatchConfig(
            key_fields=["amount"],
            tolerance=Tolerance(amount=Decimal("1.00")),
            min_confidence=95,
        )
        assert execute(config, candidates, DEFAULT_SCORING).is_match is False

    def test_n_way_needs_three(self) -> None:
        candidates = [TransactionFactory.build(), TransactionFactory.build()]
        with pytest.raises(PreconditionError):
            execute(NWayMatchConfig(key_fields=["amount"]), candidates, DEFAULT_SCORING)

    def test_any_strategy_needs_two(self) -> None:
        with pytest.raises(PreconditionError):
            execute(ExactMatchConfig(), [TransactionFactory.build()], DEFAULT_SCORING)

    def test_duplicate_candidates_rejected(self) -> None:
        txn = TransactionFactory.build()
        with pytest.raises(ValidationError):
            execute(FuzzyMatchConfig(), [txn, txn], DEFAULT_SCORING)

    def test_manual_always_matches(self) -> None:
        candidates = [TransactionFactory.build(amount=Decimal("1")), TransactionFactory.build(amount=Decimal("999"))]
        result = execute(ManualMatchConfig(), candidates, DEFAULT_SCORING)
        assert result.is_match is True
        assert result.match_type == MatchType.MANUAL
