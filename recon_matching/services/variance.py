"""Variance calculation for match groups."""

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from recon_matching.logger import get_logger
from recon_matching.services.errors import ErrorKind, ValidationError

logger = get_logger(__name__)

CENT = Decimal("0.01")
PERCENT_PLACES = Decimal("0.0001")


@dataclass(frozen=True)
class VarianceResult:
    """Spread of a group's amounts around their mean."""

    total: Decimal
    average: Decimal
    variance: Decimal
    # None when the average is zero but amounts still differ
    variance_percentage: Decimal | None
    warning: str | None = None
    warning_kind: ErrorKind | None = None


def compute_variance(amounts: Sequence[Decimal]) -> VarianceResult:
    """Compute the largest absolute deviation from the mean.

    variance = max |a_i - mean|, rounded half-up to cents.
    variance_percentage = variance / mean * 100, rounded to four places.
    A zero mean with nonzero spread has no meaningful percentage; the result
    carries a warning instead of raising.
    """
    if not amounts:
        raise ValidationError("Cannot compute variance of an empty amount list")

    values = [Decimal(amount) for amount in amounts]
    total = sum(values, Decimal("0"))
    average = total / len(values)
    spread = max(abs(value - average) for value in values)
    variance = spread.quantize(CENT, rounding=ROUND_HALF_UP)

    if average == 0:
        if spread == 0:
            return VarianceResult(
                total=total.quantize(CENT, rounding=ROUND_HALF_UP),
                average=average,
                variance=variance,
                variance_percentage=Decimal("0").quantize(PERCENT_PLACES),
            )
        warning = "Variance percentage undefined: amounts average to zero"
        logger.warning(
            "Degenerate variance computation",
            kind=ErrorKind.DEGENERATE_COMPUTATION.value,
            variance=str(variance),
            amounts=[str(value) for value in values],
        )
        return VarianceResult(
            total=total.quantize(CENT, rounding=ROUND_HALF_UP),
            average=average,
            variance=variance,
            variance_percentage=None,
            warning=warning,
            warning_kind=ErrorKind.DEGENERATE_COMPUTATION,
        )

    percentage = (variance / abs(average) * Decimal("100")).quantize(PERCENT_PLACES, rounding=ROUND_HALF_UP)
    return VarianceResult(
        total=total.quantize(CENT, rounding=ROUND_HALF_UP),
        average=average,
        variance=variance,
        variance_percentage=percentage,
    )
