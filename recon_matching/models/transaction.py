"""Transaction models fed by the ingestion collaborator."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, Float, ForeignKey, Numeric, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from recon_matching.database import Base
from recon_matching.models.base import StringIDMixin, TimestampMixin, utcnow


class TransactionSource(str, Enum):
    """Originating system of a transaction."""

    SOURCE_A = "source_a"
    SOURCE_B = "source_b"
    SOURCE_C = "source_c"
    BANK = "bank"
    ERP = "erp"
    PAYMENT_GATEWAY = "payment_gateway"


class MatchStatus(str, Enum):
    """Reconciliation status shared by transactions and match groups."""

    UNMATCHED = "unmatched"
    POTENTIAL = "potential"
    MATCHED = "matched"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class MatchType(str, Enum):
    """How a match group was formed."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    PARTIAL = "partial"
    MANUAL = "manual"
    N_WAY = "n_way"


# Statuses that can be claimed into a new group
CLAIMABLE_STATUSES = frozenset({MatchStatus.UNMATCHED, MatchStatus.POTENTIAL})


class Transaction(Base, StringIDMixin, TimestampMixin):
    """A fact record from one source. Only the reconciliation columns ever change."""

    __tablename__ = "transactions"

    transaction_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source: Mapped[TransactionSource] = mapped_column(SQLEnum(TransactionSource), nullable=False, index=True)
    txn_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    partner_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    partner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[MatchStatus] = mapped_column(
        SQLEnum(MatchStatus), nullable=False, default=MatchStatus.UNMATCHED, index=True
    )
    match_type: Mapped[MatchType | None] = mapped_column(SQLEnum(MatchType), nullable=True)
    match_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("match_groups.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Scores are non-monetary; floats are acceptable for display/analysis.
    match_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    @property
    def is_claimable(self) -> bool:
        return self.status in CLAIMABLE_STATUSES and self.match_id is None

    def assign_match(self, match_id: str, match_type: MatchType, confidence: float) -> None:
        self.status = MatchStatus.MATCHED
        self.match_id = match_id
        self.match_type = match_type
        self.match_confidence = confidence
        self.updated_at = utcnow()

    def clear_match(self) -> None:
        self.status = MatchStatus.UNMATCHED
        self.match_id = None
        self.match_type = None
        self.match_confidence = None
        self.updated_at = utcnow()
