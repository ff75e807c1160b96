"""Match group model - the unit of reconciliation outcome."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Float, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from recon_matching.database import Base
from recon_matching.models.base import JSONType, StringIDMixin, TimestampMixin
from recon_matching.models.transaction import MatchStatus, MatchType

# Group statuses from which approve/reject may proceed
REVIEWABLE_STATUSES = frozenset({MatchStatus.MATCHED, MatchStatus.UNDER_REVIEW})
TERMINAL_STATUSES = frozenset({MatchStatus.APPROVED, MatchStatus.REJECTED})


class MatchGroup(Base, StringIDMixin, TimestampMixin):
    """Two or more transactions reconciled as one real-world event."""

    __tablename__ = "match_groups"

    match_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    match_type: Mapped[MatchType] = mapped_column(SQLEnum(MatchType), nullable=False)
    # Scores are non-monetary; floats are acceptable for display/analysis.
    match_confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[MatchStatus] = mapped_column(
        SQLEnum(MatchStatus), nullable=False, default=MatchStatus.MATCHED, index=True
    )
    # Ordered member list
    transaction_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    variance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    variance_percentage: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    variance_warning: Mapped[str | None] = mapped_column(Text, nullable=True)

    rule_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("matching_rules.id", ondelete="SET NULL"),
        nullable=True,
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)

    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
