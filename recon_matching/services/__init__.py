"""Services package."""

from recon_matching.services.batch_matching import BatchMatchingService, BatchRunResult, ItemOutcome
from recon_matching.services.errors import (
    ConflictError,
    ErrorKind,
    MatchingError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from recon_matching.services.lifecycle import MatchLifecycleService, MatchStatistics
from recon_matching.services.rule_evaluator import evaluate_rule, explain_rule, select_applicable_rule
from recon_matching.services.rules import RuleService, validate_rule_definition
from recon_matching.services.sql_store import SqlMatchStore
from recon_matching.services.store import InMemoryMatchStore, MatchStore
from recon_matching.services.strategies import MatchResult, ScoringConfig, execute, load_scoring_config
from recon_matching.services.suggestions import PotentialMatch, suggest_matches
from recon_matching.services.variance import VarianceResult, compute_variance

__all__ = [
    "BatchMatchingService",
    "BatchRunResult",
    "ConflictError",
    "ErrorKind",
    "InMemoryMatchStore",
    "ItemOutcome",
    "MatchLifecycleService",
    "MatchResult",
    "MatchStatistics",
    "MatchStore",
    "MatchingError",
    "NotFoundError",
    "PotentialMatch",
    "PreconditionError",
    "RuleService",
    "ScoringConfig",
    "SqlMatchStore",
    "ValidationError",
    "VarianceResult",
    "compute_variance",
    "evaluate_rule",
    "execute",
    "explain_rule",
    "load_scoring_config",
    "select_applicable_rule",
    "suggest_matches",
    "validate_rule_definition",
]
