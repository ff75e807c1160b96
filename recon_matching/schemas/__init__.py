from recon_matching.schemas.base import BaseResponse, ListResponse, PaginatedResponse, Pagination
from recon_matching.schemas.matching import (
    ApproveRequest,
    AutoMatchRunRequest,
    BatchRunResponse,
    CandidateResponse,
    ItemOutcomeResponse,
    ManualMatchRequest,
    MatchGroupResponse,
    MatchStatisticsResponse,
    NWayRunRequest,
    PotentialMatchResponse,
    RejectRequest,
    TransactionFilters,
    TransactionResponse,
    UnmatchResponse,
)
from recon_matching.schemas.rules import (
    ApprovalRequestResponse,
    Comparator,
    Condition,
    ExactMatchConfig,
    FieldType,
    FuzzyMatchConfig,
    LogicalOperator,
    ManualMatchConfig,
    MatchConfiguration,
    NWayMatchConfig,
    RuleCreate,
    RuleResponse,
    RuleUpdate,
    RuleVersionResponse,
    Tolerance,
)

__all__ = [
    "ApprovalRequestResponse",
    "ApproveRequest",
    "AutoMatchRunRequest",
    "BaseResponse",
    "BatchRunResponse",
    "CandidateResponse",
    "Comparator",
    "Condition",
    "ExactMatchConfig",
    "FieldType",
    "FuzzyMatchConfig",
    "ItemOutcomeResponse",
    "ListResponse",
    "LogicalOperator",
    "ManualMatchConfig",
    "ManualMatchRequest",
    "MatchConfiguration",
    "MatchGroupResponse",
    "MatchStatisticsResponse",
    "NWayMatchConfig",
    "NWayRunRequest",
    "PaginatedResponse",
    "Pagination",
    "PotentialMatchResponse",
    "RejectRequest",
    "RuleCreate",
    "RuleResponse",
    "RuleUpdate",
    "RuleVersionResponse",
    "Tolerance",
    "TransactionFilters",
    "TransactionResponse",
    "UnmatchResponse",
]
