"""Pydantic schemas for the matching API."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from recon_matching.models import MatchGroup, MatchStatus, MatchType, Transaction, TransactionSource
from recon_matching.schemas.rules import Tolerance


class TransactionFilters(BaseModel):
    """Filters applied to transaction and match group listings."""

    status: list[MatchStatus] = Field(default_factory=list)
    match_type: list[MatchType] = Field(default_factory=list)
    source: list[TransactionSource] = Field(default_factory=list)
    date_from: date | None = None
    date_to: date | None = None
    amount_min: Decimal | None = None
    amount_max: Decimal | None = None
    partner_id: str | None = None
    search: str | None = None

    def matches_transaction(self, txn: Transaction) -> bool:
        if self.status and txn.status not in self.status:
            return False
        if self.match_type and txn.match_type not in self.match_type:
            return False
        if self.source and txn.source not in self.source:
            return False
        if self.date_from and txn.txn_date < self.date_from:
            return False
        if self.date_to and txn.txn_date > self.date_to:
            return False
        if self.amount_min is not None and txn.amount < self.amount_min:
            return False
        if self.amount_max is not None and txn.amount > self.amount_max:
            return False
        if self.partner_id and txn.partner_id != self.partner_id:
            return False
        if self.search:
            needle = self.search.casefold()
            haystack = " ".join(
                value
                for value in (
                    txn.transaction_number,
                    txn.description,
                    txn.reference,
                    txn.partner_name,
                )
                if value
            ).casefold()
            if needle not in haystack:
                return False
        return True

    def matches_group(self, group: MatchGroup, members: list[Transaction]) -> bool:
        """A group passes when its own fields pass and any member passes the rest."""
        if self.status and group.status not in self.status:
            return False
        if self.match_type and group.match_type not in self.match_type:
            return False
        member_filters = self.model_copy(update={"status": [], "match_type": []})
        return any(member_filters.matches_transaction(txn) for txn in members)


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    transaction_number: str
    source: TransactionSource
    txn_date: date
    amount: Decimal
    currency: str
    description: str
    reference: str | None
    partner_id: str | None
    partner_name: str | None
    account_number: str | None
    status: MatchStatus
    match_type: MatchType | None
    match_id: str | None
    match_confidence: float | None


class MatchGroupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    match_number: str
    match_type: MatchType
    match_confidence: float
    status: MatchStatus
    transaction_ids: list[str]
    total_amount: Decimal
    variance: Decimal
    variance_percentage: Decimal | None
    variance_warning: str | None
    rule_id: str | None
    created_by: str
    created_at: datetime
    approved_by: str | None
    approved_at: datetime | None
    rejected_by: str | None
    rejected_at: datetime | None
    rejection_reason: str | None
    transactions: list[TransactionResponse] = Field(default_factory=list)


class CandidateResponse(BaseModel):
    transaction: TransactionResponse
    confidence: float
    match_reasons: list[str]


class PotentialMatchResponse(BaseModel):
    source_transaction: TransactionResponse
    candidates: list[CandidateResponse]
    suggested_match_type: MatchType | None
    overall_confidence: float


class ManualMatchRequest(BaseModel):
    transaction_ids: list[str]
    created_by: str
    idempotency_key: str | None = Field(default=None, max_length=128)


class NWayRunRequest(BaseModel):
    """Batch n-way run over unmatched transactions."""

    key_fields: list[str] = Field(default_factory=lambda: ["amount", "date"])
    tolerance: Tolerance = Field(default_factory=Tolerance)
    min_confidence: float = Field(default=0.0, ge=0, le=100)
    sources: list[TransactionSource] = Field(default_factory=list)
    timeout_seconds: float | None = Field(default=None, gt=0)
    created_by: str | None = None


class AutoMatchRunRequest(BaseModel):
    """Rule-driven pairwise run over unmatched transactions."""

    sources: list[TransactionSource] = Field(default_factory=list)
    created_by: str | None = None


class ItemOutcomeResponse(BaseModel):
    partition: str
    transaction_ids: list[str]
    status: str
    error_kind: str | None = None
    message: str | None = None
    group_id: str | None = None


class BatchRunResponse(BaseModel):
    groups: list[MatchGroupResponse]
    outcomes: list[ItemOutcomeResponse]
    partitions_evaluated: int
    timed_out: bool
    run_id: str | None = None


class ApproveRequest(BaseModel):
    approver: str


class RejectRequest(BaseModel):
    rejecter: str
    reason: str = ""


class MatchStatisticsResponse(BaseModel):
    total_transactions: int
    matched: int
    unmatched: int
    under_review: int
    approved: int
    rejected: int
    match_rate: float
    exact_matches: int
    fuzzy_matches: int
    partial_matches: int
    manual_matches: int
    n_way_matches: int
    total_variance: Decimal
    average_confidence: float


class UnmatchResponse(BaseModel):
    group_id: str
    released_transaction_ids: list[str]
