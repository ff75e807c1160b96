"""SQLAlchemy models package."""

from recon_matching.models.match_group import REVIEWABLE_STATUSES, TERMINAL_STATUSES, MatchGroup
from recon_matching.models.rule import (
    ApprovalRequest,
    ApprovalStatus,
    MatchingRule,
    RuleChangeType,
    RuleStatus,
    RuleVersion,
)
from recon_matching.models.transaction import (
    CLAIMABLE_STATUSES,
    MatchStatus,
    MatchType,
    Transaction,
    TransactionSource,
)

__all__ = [
    "ApprovalRequest",
    "ApprovalStatus",
    "CLAIMABLE_STATUSES",
    "MatchGroup",
    "MatchStatus",
    "MatchType",
    "MatchingRule",
    "REVIEWABLE_STATUSES",
    "RuleChangeType",
    "RuleStatus",
    "RuleVersion",
    "TERMINAL_STATUSES",
    "Transaction",
    "TransactionSource",
]
