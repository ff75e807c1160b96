"""Match strategy executor and pairwise scoring.

Scores are 0-100 floats. They are confidence values, not money, so float is
acceptable here; amounts themselves stay Decimal throughout.
"""

from __future__ import annotations

import os
import re
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from difflib import SequenceMatcher
from itertools import combinations
from pathlib import Path
from typing import Any

import yaml

from recon_matching.logger import get_logger
from recon_matching.models import MatchType, Transaction
from recon_matching.schemas.rules import (
    ExactMatchConfig,
    FieldType,
    FuzzyMatchConfig,
    ManualMatchConfig,
    MatchConfiguration,
    NWayMatchConfig,
    Tolerance,
)
from recon_matching.services.conditions import CoercionError, coerce_value, resolve_field
from recon_matching.services.errors import PreconditionError, ValidationError

logger = get_logger(__name__)

CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "matching.yaml"

AMOUNT_FIELDS = frozenset({"amount", "transaction.amount"})
DATE_FIELDS = frozenset({"date", "txn_date", "transaction.date"})
REFERENCE_FIELDS = frozenset({"reference", "transaction.reference"})
DESCRIPTION_FIELDS = frozenset({"description", "transaction.description"})


@dataclass(frozen=True)
class ScoringConfig:
    """Runtime configuration for pairwise scoring."""

    weight_amount: Decimal
    weight_date: Decimal
    weight_reference: Decimal
    weight_partner: Decimal
    weight_description: Decimal
    weight_other: Decimal
    fuzzy_fields: tuple[str, ...]
    fuzzy_threshold: float
    suggest_exact: float
    suggest_fuzzy: float
    amount_absolute: Decimal
    # Percent of the larger absolute amount
    amount_percent: Decimal
    date_days: int

    def weight_for(self, field_name: str) -> Decimal:
        if field_name in AMOUNT_FIELDS:
            return self.weight_amount
        if field_name in DATE_FIELDS:
            return self.weight_date
        if field_name in REFERENCE_FIELDS:
            return self.weight_reference
        if field_name in {"partner_id", "partner", "partner.id"}:
            return self.weight_partner
        if field_name in DESCRIPTION_FIELDS:
            return self.weight_description
        return self.weight_other


DEFAULT_SCORING = ScoringConfig(
    weight_amount=Decimal("0.40"),
    weight_date=Decimal("0.25"),
    weight_reference=Decimal("0.15"),
    weight_partner=Decimal("0.10"),
    weight_description=Decimal("0.10"),
    weight_other=Decimal("0.10"),
    fuzzy_fields=("amount", "date"),
    fuzzy_threshold=85.0,
    suggest_exact=90.0,
    suggest_fuzzy=75.0,
    amount_absolute=Decimal("0.10"),
    amount_percent=Decimal("0.5"),
    date_days=3,
)

_config_cache: ScoringConfig | None = None


def load_scoring_config(force_reload: bool = False) -> ScoringConfig:
    """Load scoring configuration from YAML if available.

    Caches the result to avoid repeated disk I/O.
    """
    global _config_cache
    if _config_cache is not None and not force_reload:
        return _config_cache

    config = DEFAULT_SCORING

    if CONFIG_PATH.exists():
        try:
            raw = yaml.safe_load(CONFIG_PATH.read_text()) or {}
            scoring = raw.get("scoring", {})
            weights = scoring.get("weights", {})
            thresholds = scoring.get("thresholds", {})
            tolerances = scoring.get("tolerances", {})

            config = ScoringConfig(
                weight_amount=Decimal(str(weights.get("amount", config.weight_amount))),
                weight_date=Decimal(str(weights.get("date", config.weight_date))),
                weight_reference=Decimal(str(weights.get("reference", config.weight_reference))),
                weight_partner=Decimal(str(weights.get("partner_id", config.weight_partner))),
                weight_description=Decimal(str(weights.get("description", config.weight_description))),
                weight_other=Decimal(str(weights.get("other", config.weight_other))),
                fuzzy_fields=tuple(scoring.get("fuzzy_fields", config.fuzzy_fields)),
                fuzzy_threshold=float(thresholds.get("fuzzy", config.fuzzy_threshold)),
                suggest_exact=float(thresholds.get("suggest_exact", config.suggest_exact)),
                suggest_fuzzy=float(thresholds.get("suggest_fuzzy", config.suggest_fuzzy)),
                amount_absolute=Decimal(str(tolerances.get("amount_absolute", config.amount_absolute))),
                amount_percent=Decimal(str(tolerances.get("amount_percent", config.amount_percent))),
                date_days=int(tolerances.get("date_days", config.date_days)),
            )
        except (OSError, yaml.YAMLError, InvalidOperation, TypeError, ValueError, AttributeError) as e:
            logger.warning(
                "Failed to load matching config - using defaults",
                config_path=str(CONFIG_PATH),
                error=str(e),
                error_type=type(e).__name__,
            )

    threshold_env = os.getenv("MATCHING_FUZZY_THRESHOLD")
    date_window_env = os.getenv("MATCHING_DATE_WINDOW_DAYS")
    if threshold_env:
        config = replace(config, fuzzy_threshold=float(threshold_env))
    if date_window_env:
        config = replace(config, date_days=int(date_window_env))

    _config_cache = config
    return config


@dataclass
class PairScore:
    left_id: str
    right_id: str
    score: float
    # Per-field 0-100 scores; fields missing on either side are absent
    breakdown: dict[str, float] = field(default_factory=dict)


@dataclass
class MatchResult:
    """Outcome of running one strategy over a candidate group."""

    strategy: str
    match_type: MatchType
    is_match: bool
    confidence: float
    pair_scores: list[PairScore] = field(default_factory=list)
    details: str = ""


# =============================================================================
# Field scoring
# =============================================================================


def normalize_text(value: str) -> str:
    """Normalize text for similarity comparison."""
    cleaned = re.sub(r"[^a-z0-9]+", " ", value.lower()).strip()
    return re.sub(r"\s+", " ", cleaned)


def score_description(a: str | None, b: str | None) -> float:
    """Score description similarity (0-100)."""
    if not a or not b:
        return 0.0
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a or not norm_b:
        return 0.0
    ratio = SequenceMatcher(None, norm_a, norm_b).ratio()
    tokens_a = set(norm_a.split())
    tokens_b = set(norm_b.split())
    token_score = len(tokens_a & tokens_b) / len(tokens_a | tokens_b) if tokens_a | tokens_b else 0
    return round(100 * (0.6 * ratio + 0.4 * token_score), 2)


def effective_amount_tolerance(a: Decimal, b: Decimal, tolerance: Tolerance, config: ScoringConfig) -> Decimal:
    """Absolute tolerance for a pair: the larger of the absolute and percentage bounds."""
    absolute = tolerance.amount
    percentage = tolerance.percentage
    if absolute is None and percentage is None:
        absolute, percentage = config.amount_absolute, config.amount_percent
    base = max(abs(a), abs(b))
    return max(absolute or Decimal("0"), base * (percentage or Decimal("0")) / Decimal("100"))


def score_amount(a: Decimal, b: Decimal, tolerance: Tolerance, config: ScoringConfig) -> float:
    """Score amount closeness (0-100)."""
    # Tiers:
    # - Equal: 100
    # - Within tolerance: 100 down to 90 at the tolerance edge
    # - Beyond tolerance: 60 minus 10 per percent of difference
    diff = abs(a - b)
    if diff == 0:
        return 100.0
    allowed = effective_amount_tolerance(a, b, tolerance, config)
    if allowed > 0 and diff <= allowed:
        return float(round(Decimal("100") - Decimal("10") * diff / allowed, 2))
    pct_diff = diff / max(abs(a), abs(b)) * Decimal("100")
    return float(round(max(Decimal("0"), Decimal("60") - pct_diff * Decimal("10")), 2))


def date_window(tolerance: Tolerance, config: ScoringConfig) -> int:
    return tolerance.days if tolerance.days is not None else config.date_days


def score_date(a: date, b: date, tolerance: Tolerance, config: ScoringConfig) -> float:
    """Score date proximity (0-100)."""
    diff_days = abs((a - b).days)
    if diff_days == 0:
        return 100.0
    window = date_window(tolerance, config)
    if window > 0 and diff_days <= window:
        return round(100 - 10 * diff_days / window, 2)
    return float(max(0, 80 - 10 * (diff_days - window)))


def score_reference(a: str, b: str) -> float:
    norm_a = a.strip().casefold()
    norm_b = b.strip().casefold()
    if norm_a == norm_b:
        return 100.0
    if len(norm_a) >= 3 and len(norm_b) >= 3 and norm_a[:3] == norm_b[:3]:
        return 70.0
    return 0.0


def _typed(record: Any, field_name: str) -> Any:
    """Field value typed for scoring, or None when missing or unusable."""
    raw = resolve_field(record, field_name)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    if field_name in AMOUNT_FIELDS:
        field_type = FieldType.AMOUNT
    elif field_name in DATE_FIELDS:
        field_type = FieldType.DATE
    else:
        field_type = FieldType.STRING
    try:
        return coerce_value(raw, field_type)
    except CoercionError:
        return None


def score_field(a: Any, b: Any, field_name: str, tolerance: Tolerance, config: ScoringConfig) -> float | None:
    """Score one field for a pair; None when either side has no value."""
    left = _typed(a, field_name)
    right = _typed(b, field_name)
    if left is None or right is None:
        return None
    if field_name in AMOUNT_FIELDS:
        return score_amount(left, right, tolerance, config)
    if field_name in DATE_FIELDS:
        return score_date(left, right, tolerance, config)
    if field_name in REFERENCE_FIELDS:
        return score_reference(left, right)
    if field_name in DESCRIPTION_FIELDS:
        return score_description(left, right)
    return 100.0 if left.strip().casefold() == right.strip().casefold() else 0.0


def score_pair(
    a: Any,
    b: Any,
    fields: Sequence[str],
    tolerance: Tolerance,
    config: ScoringConfig,
) -> tuple[float, dict[str, float]]:
    """Weighted pair similarity normalized over the fields that could be scored."""
    breakdown: dict[str, float] = {}
    for field_name in fields:
        score = score_field(a, b, field_name, tolerance, config)
        if score is not None:
            breakdown[field_name] = score
    if not breakdown:
        return 0.0, breakdown

    total_weight = sum(config.weight_for(name) for name in breakdown)
    if total_weight <= 0:
        return round(sum(breakdown.values()) / len(breakdown), 2), breakdown
    weighted = sum(Decimal(str(score)) * config.weight_for(name) for name, score in breakdown.items())
    return clamp_confidence(float(weighted / total_weight)), breakdown


def fields_agree(a: Any, b: Any, field_name: str, tolerance: Tolerance, config: ScoringConfig) -> bool:
    """True when a pair agrees on one key field within tolerance.

    A value missing on either side never agrees.
    """
    left = _typed(a, field_name)
    right = _typed(b, field_name)
    if left is None or right is None:
        return False
    if field_name in AMOUNT_FIELDS:
        return abs(left - right) <= effective_amount_tolerance(left, right, tolerance, config)
    if field_name in DATE_FIELDS:
        return abs((left - right).days) <= date_window(tolerance, config)
    return left.strip().casefold() == right.strip().casefold()


def clamp_confidence(value: float) -> float:
    return round(min(100.0, max(0.0, value)), 2)


# =============================================================================
# Strategies
# =============================================================================


def _pairwise(
    candidates: Sequence[Transaction],
    fields: Sequence[str],
    tolerance: Tolerance,
    config: ScoringConfig,
) -> list[PairScore]:
    pairs = []
    for left, right in combinations(candidates, 2):
        score, breakdown = score_pair(left, right, fields, tolerance, config)
        pairs.append(PairScore(left_id=left.id, right_id=right.id, score=score, breakdown=breakdown))
    return pairs


def _execute_exact(config: ExactMatchConfig, candidates: Sequence[Transaction]) -> MatchResult:
    key_fields = list(dict.fromkeys(["amount", *config.key_fields]))
    first = candidates[0]
    mismatched = [
        field_name
        for field_name in key_fields
        if any(_typed(other, field_name) != _typed(first, field_name) for other in candidates[1:])
    ]
    is_match = not mismatched
    details = (
        f"All {len(candidates)} transactions equal on {', '.join(key_fields)}"
        if is_match
        else f"Mismatch on {', '.join(mismatched)}"
    )
    return MatchResult(
        strategy="exact",
        match_type=MatchType.EXACT,
        is_match=is_match,
        confidence=100.0 if is_match else 0.0,
        details=details,
    )


def _execute_fuzzy(
    config: FuzzyMatchConfig,
    candidates: Sequence[Transaction],
    scoring: ScoringConfig,
) -> MatchResult:
    threshold = config.threshold if config.threshold is not None else scoring.fuzzy_threshold
    pairs = _pairwise(candidates, scoring.fuzzy_fields, config.tolerance, scoring)
    confidence = clamp_confidence(min(pair.score for pair in pairs))
    is_match = confidence >= threshold
    return MatchResult(
        strategy="fuzzy",
        match_type=MatchType.FUZZY,
        is_match=is_match,
        confidence=confidence,
        pair_scores=pairs,
        details=f"Weakest pair scored {confidence} against threshold {threshold}",
    )


def _execute_n_way(
    config: NWayMatchConfig,
    candidates: Sequence[Transaction],
    scoring: ScoringConfig,
) -> MatchResult:
    if len(candidates) < 3:
        raise PreconditionError(
            "N-way matching requires at least 3 transactions",
            details={"candidates": len(candidates)},
        )
    pairs = _pairwise(candidates, config.key_fields, config.tolerance, scoring)
    confidence = clamp_confidence(min(pair.score for pair in pairs))

    disagreements = [
        field_name
        for field_name in config.key_fields
        if any(
            not fields_agree(left, right, field_name, config.tolerance, scoring)
            for left, right in combinations(candidates, 2)
        )
    ]
    if disagreements:
        details = f"Transactions disagree on {', '.join(disagreements)}"
    elif confidence < config.min_confidence:
        details = f"Confidence {confidence} below minimum {config.min_confidence}"
    else:
        details = f"All {len(candidates)} transactions agree on {', '.join(config.key_fields)}"
    return MatchResult(
        strategy="n_way",
        match_type=MatchType.N_WAY,
        is_match=not disagreements and confidence >= config.min_confidence,
        confidence=confidence,
        pair_scores=pairs,
        details=details,
    )


def execute(
    config: MatchConfiguration,
    candidates: Sequence[Transaction],
    scoring: ScoringConfig | None = None,
) -> MatchResult:
    """Run a match configuration over a candidate group."""
    if len(candidates) < 2:
        raise PreconditionError(
            "Matching requires at least 2 transactions",
            details={"candidates": len(candidates)},
        )
    ids = [candidate.id for candidate in candidates]
    if len(set(ids)) != len(ids):
        raise ValidationError("Candidate transactions must be distinct", details={"transaction_ids": ids})

    scoring = scoring or load_scoring_config()

    if isinstance(config, ExactMatchConfig):
        return _execute_exact(config, candidates)
    if isinstance(config, FuzzyMatchConfig):
        return _execute_fuzzy(config, candidates, scoring)
    if isinstance(config, NWayMatchConfig):
        return _execute_n_way(config, candidates, scoring)
    if isinstance(config, ManualMatchConfig):
        return MatchResult(
            strategy="manual",
            match_type=MatchType.MANUAL,
            is_match=True,
            confidence=100.0,
            details="Manual match",
        )
    raise ValidationError(f"Unsupported match strategy: {getattr(config, 'strategy', config)!r}")
