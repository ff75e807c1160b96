"""Potential-match suggestions for a single unmatched transaction."""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from recon_matching.config import settings
from recon_matching.logger import get_logger
from recon_matching.models import MatchStatus, MatchType, Transaction
from recon_matching.schemas.rules import Tolerance
from recon_matching.services.errors import ValidationError
from recon_matching.services.strategies import (
    ScoringConfig,
    date_window,
    load_scoring_config,
    score_pair,
)

logger = get_logger(__name__)

# Amount differences up to this size are called out as a reason
AMOUNT_REASON_LIMIT = Decimal("5.00")
DESCRIPTION_REASON_SCORE = 60.0


@dataclass
class SuggestedCandidate:
    transaction: Transaction
    confidence: float
    match_reasons: list[str] = field(default_factory=list)


@dataclass
class PotentialMatch:
    """Transient ranked suggestion list; never persisted."""

    source_transaction: Transaction
    candidates: list[SuggestedCandidate]
    suggested_match_type: MatchType | None
    overall_confidence: float


def suggested_match_type(confidence: float, scoring: ScoringConfig) -> MatchType:
    if confidence > scoring.suggest_exact:
        return MatchType.EXACT
    if confidence > scoring.suggest_fuzzy:
        return MatchType.FUZZY
    return MatchType.PARTIAL


def match_reasons(
    source: Transaction,
    candidate: Transaction,
    breakdown: dict[str, float],
    tolerance: Tolerance,
    scoring: ScoringConfig,
) -> list[str]:
    """Readable reasons derived from the same fields that were scored."""
    reasons: list[str] = []

    if "amount" in breakdown:
        diff = abs(source.amount - candidate.amount)
        if diff == 0:
            reasons.append("exact amount")
        elif diff <= AMOUNT_REASON_LIMIT:
            reasons.append(f"amount within ${diff.quantize(Decimal('0.01'))}")

    if "date" in breakdown:
        diff_days = abs((source.txn_date - candidate.txn_date).days)
        if diff_days == 0:
            reasons.append("same date")
        elif diff_days <= date_window(tolerance, scoring):
            reasons.append(f"date within {diff_days} days")

    if breakdown.get("partner_id") == 100.0:
        reasons.append("same partner")

    reference_score = breakdown.get("reference")
    if reference_score == 100.0:
        reasons.append("same reference")
    elif reference_score and reference_score > 0:
        reasons.append("reference prefix match")

    if breakdown.get("description", 0.0) >= DESCRIPTION_REASON_SCORE:
        reasons.append("similar description")

    return reasons


def candidate_pool(source: Transaction, pool: Iterable[Transaction]) -> list[Transaction]:
    """Unmatched transactions other than the source, preferring other sources."""
    open_items = [
        txn
        for txn in pool
        if txn.id != source.id and txn.status == MatchStatus.UNMATCHED and txn.match_id is None
    ]
    cross_source = [txn for txn in open_items if txn.source != source.source]
    return cross_source or open_items


def suggest_matches(
    source: Transaction,
    pool: Iterable[Transaction],
    limit: int | None = None,
    *,
    fields: Sequence[str] | None = None,
    tolerance: Tolerance | None = None,
    scoring: ScoringConfig | None = None,
) -> PotentialMatch:
    """Rank plausible counterparts for ``source``.

    Uses the fuzzy pair scorer regardless of which rules are active. Ties are
    broken by earliest transaction date, then id, so output is stable.
    """
    limit = settings.suggestion_limit if limit is None else limit
    if limit < 1:
        raise ValidationError("Suggestion limit must be at least 1", details={"limit": limit})

    scoring = scoring or load_scoring_config()
    tolerance = tolerance or Tolerance()
    fields = list(fields or settings.suggestion_fields)

    scored: list[SuggestedCandidate] = []
    for candidate in candidate_pool(source, pool):
        confidence, breakdown = score_pair(source, candidate, fields, tolerance, scoring)
        scored.append(
            SuggestedCandidate(
                transaction=candidate,
                confidence=confidence,
                match_reasons=match_reasons(source, candidate, breakdown, tolerance, scoring),
            )
        )

    scored.sort(key=lambda item: (-item.confidence, item.transaction.txn_date, item.transaction.id))
    top = scored[:limit]

    if not top:
        logger.info("No suggestion candidates", transaction_id=source.id)
        return PotentialMatch(
            source_transaction=source,
            candidates=[],
            suggested_match_type=None,
            overall_confidence=0.0,
        )

    overall = top[0].confidence
    return PotentialMatch(
        source_transaction=source,
        candidates=top,
        suggested_match_type=suggested_match_type(overall, scoring),
        overall_confidence=overall,
    )
