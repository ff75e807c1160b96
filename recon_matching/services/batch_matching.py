"""Batch matching runs over the unmatched pool.

Two runs are offered:

- ``run_n_way``: partitions the pool by a deterministic key (currency, amount
  bucket, date bucket), proposes groups of three or more transactions from
  distinct sources in each partition, and commits them in partition order.
- ``run_auto_match``: applies live rules pairwise; the first applicable rule
  (by priority) decides the strategy for each transaction.

Planning is CPU-only and runs in worker threads; commits go through the
lifecycle service one group at a time. Per-item failures are reported as
outcomes and never abort the run. A deadline stops further commits while
keeping what was already committed.
"""

from __future__ import annotations

import asyncio
from collections import Counter, defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from recon_matching.config import settings
from recon_matching.logger import async_log_timing, bind_run, get_logger, log_exception, log_timing
from recon_matching.models import MatchGroup, MatchingRule, MatchStatus, Transaction, TransactionSource
from recon_matching.schemas.matching import TransactionFilters
from recon_matching.schemas.rules import ExactMatchConfig, FuzzyMatchConfig, NWayMatchConfig
from recon_matching.services.errors import ErrorKind, MatchingError, PreconditionError
from recon_matching.services.lifecycle import MatchLifecycleService
from recon_matching.services.rule_evaluator import (
    evaluate_rule,
    parse_match_configuration,
    select_applicable_rule,
)
from recon_matching.services.rules import RuleService
from recon_matching.services.store import MatchStore
from recon_matching.services.strategies import (
    MatchResult,
    ScoringConfig,
    execute,
    fields_agree,
    load_scoring_config,
)

logger = get_logger(__name__)

MATCHED = "matched"
NO_MATCH = "no_match"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class ItemOutcome:
    """Result for one proposed group in a batch run."""

    partition: str
    transaction_ids: list[str]
    status: str
    error_kind: ErrorKind | None = None
    message: str | None = None
    group_id: str | None = None


@dataclass
class Proposal:
    partition: str
    transactions: list[Transaction]
    result: MatchResult
    rule_id: str | None = None


@dataclass
class BatchRunResult:
    groups: list[MatchGroup] = field(default_factory=list)
    outcomes: list[ItemOutcome] = field(default_factory=list)
    partitions_evaluated: int = 0
    timed_out: bool = False
    run_id: str | None = None


# =============================================================================
# Partitioning and planning (pure, run in threads)
# =============================================================================


def partition_key(txn: Transaction, amount_bucket: int, date_days: int) -> str:
    """Deterministic partition key: currency, rounded amount bucket, date bucket."""
    bucket = (txn.amount / Decimal(amount_bucket)).to_integral_value(rounding=ROUND_HALF_UP)
    date_bucket = txn.txn_date.toordinal() // date_days
    return f"{txn.currency}:{bucket}:{date_bucket}"


def partition_pool(
    pool: Sequence[Transaction],
    amount_bucket: int | None = None,
    date_days: int | None = None,
) -> dict[str, list[Transaction]]:
    """Group the pool by partition key; keys and members come back sorted."""
    amount_bucket = amount_bucket or settings.partition_amount_bucket
    date_days = date_days or settings.partition_date_days
    partitions: dict[str, list[Transaction]] = defaultdict(list)
    for txn in pool:
        partitions[partition_key(txn, amount_bucket, date_days)].append(txn)
    return {
        key: sorted(members, key=lambda txn: (txn.txn_date, txn.id))
        for key, members in sorted(partitions.items())
    }


def plan_n_way_partition(
    key: str,
    members: Sequence[Transaction],
    config: NWayMatchConfig,
    scoring: ScoringConfig,
) -> tuple[list[Proposal], list[ItemOutcome]]:
    """Greedily grow groups of mutually agreeing transactions from distinct sources."""
    proposals: list[Proposal] = []
    outcomes: list[ItemOutcome] = []
    used: set[str] = set()

    with log_timing("score_partition", logger=logger, level="debug", partition=key, size=len(members)) as ctx:
        for seed in members:
            if seed.id in used:
                continue
            group = [seed]
            for candidate in members:
                if candidate.id in used or candidate.id == seed.id:
                    continue
                if candidate.source in {member.source for member in group}:
                    continue
                if all(
                    fields_agree(member, candidate, field_name, config.tolerance, scoring)
                    for member in group
                    for field_name in config.key_fields
                ):
                    group.append(candidate)
            if len(group) < 3:
                continue

            ids = [txn.id for txn in group]
            try:
                result = execute(config, group, scoring)
            except MatchingError as exc:
                outcomes.append(
                    ItemOutcome(
                        partition=key,
                        transaction_ids=ids,
                        status=FAILED,
                        error_kind=exc.kind,
                        message=exc.message,
                    )
                )
                continue
            if result.is_match:
                proposals.append(Proposal(partition=key, transactions=group, result=result))
                used.update(ids)
            else:
                outcomes.append(
                    ItemOutcome(partition=key, transaction_ids=ids, status=NO_MATCH, message=result.details)
                )
        ctx["proposals"] = len(proposals)
    return proposals, outcomes


def plan_auto_matches(
    pool: Sequence[Transaction],
    rules: Sequence[MatchingRule],
    scoring: ScoringConfig,
) -> tuple[list[Proposal], list[ItemOutcome]]:
    """Pair each transaction with its best counterpart under the first applicable rule."""
    proposals: list[Proposal] = []
    outcomes: list[ItemOutcome] = []
    used: set[str] = set()
    ordered = sorted(pool, key=lambda txn: (txn.txn_date, txn.id))

    for txn in ordered:
        if txn.id in used:
            continue
        rule = select_applicable_rule(rules, txn)
        if rule is None:
            continue
        label = f"rule:{rule.rule_number}"
        try:
            config = parse_match_configuration(rule.match_configuration)
        except MatchingError as exc:
            outcomes.append(
                ItemOutcome(
                    partition=label, transaction_ids=[txn.id], status=FAILED, error_kind=exc.kind, message=exc.message
                )
            )
            continue
        if not isinstance(config, ExactMatchConfig | FuzzyMatchConfig):
            # n-way groups come from run_n_way; manual groups come from operators
            continue

        best: tuple[MatchResult, Transaction] | None = None
        for candidate in ordered:
            if candidate.id in used or candidate.id == txn.id or candidate.source == txn.source:
                continue
            if not evaluate_rule(rule, candidate):
                continue
            result = execute(config, [txn, candidate], scoring)
            if result.is_match and (best is None or result.confidence > best[0].confidence):
                best = (result, candidate)

        if best is None:
            outcomes.append(
                ItemOutcome(partition=label, transaction_ids=[txn.id], status=NO_MATCH, message="No counterpart found")
            )
            continue
        result, counterpart = best
        proposals.append(Proposal(partition=label, transactions=[txn, counterpart], result=result, rule_id=rule.id))
        used.update({txn.id, counterpart.id})
    return proposals, outcomes


# =============================================================================
# Runs
# =============================================================================


class BatchMatchingService:
    def __init__(self, store: MatchStore, scoring: ScoringConfig | None = None) -> None:
        self.store = store
        self.scoring = scoring or load_scoring_config()
        self.lifecycle = MatchLifecycleService(store)
        self.rules = RuleService(store)

    async def _open_pool(self, sources: Sequence[TransactionSource] | None) -> list[Transaction]:
        filters = TransactionFilters(status=[MatchStatus.UNMATCHED], source=list(sources or []))
        return [txn for txn in await self.store.list_transactions(filters) if txn.match_id is None]

    async def _commit(
        self,
        proposals: Sequence[Proposal],
        result: BatchRunResult,
        *,
        deadline: float,
        created_by: str | None,
    ) -> None:
        loop = asyncio.get_running_loop()
        for proposal in proposals:
            ids = [txn.id for txn in proposal.transactions]
            if result.timed_out or loop.time() >= deadline:
                result.timed_out = True
                result.outcomes.append(
                    ItemOutcome(
                        partition=proposal.partition,
                        transaction_ids=ids,
                        status=SKIPPED,
                        message="Deadline exceeded",
                    )
                )
                continue
            try:
                group = await self.lifecycle.create_match(
                    proposal.result,
                    proposal.transactions,
                    created_by=created_by,
                    rule_id=proposal.rule_id,
                )
            except MatchingError as exc:
                log_exception(
                    logger,
                    exc,
                    "Batch item failed",
                    level="warning",
                    include_traceback=False,
                    partition=proposal.partition,
                    error_kind=exc.kind.value,
                )
                result.outcomes.append(
                    ItemOutcome(
                        partition=proposal.partition,
                        transaction_ids=ids,
                        status=FAILED,
                        error_kind=exc.kind,
                        message=exc.message,
                    )
                )
                continue
            result.groups.append(group)
            result.outcomes.append(
                ItemOutcome(partition=proposal.partition, transaction_ids=ids, status=MATCHED, group_id=group.id)
            )

    async def run_n_way(
        self,
        config: NWayMatchConfig,
        *,
        sources: Sequence[TransactionSource] | None = None,
        timeout_seconds: float | None = None,
        created_by: str | None = None,
    ) -> BatchRunResult:
        """Find and commit n-way groups across the unmatched pool."""
        pool = await self._open_pool(sources)
        if len(pool) < 3:
            raise PreconditionError(
                "N-way matching requires at least 3 unmatched transactions",
                details={"candidates": len(pool)},
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout_seconds or settings.n_way_timeout_seconds)
        result = BatchRunResult()
        partitions = partition_pool(pool)

        with bind_run("n_way", created_by=created_by) as run_id:
            result.run_id = run_id
            async with async_log_timing("n_way_run", logger=logger, pool=len(pool), partitions=len(partitions)) as ctx:
                tasks = {
                    key: asyncio.ensure_future(
                        asyncio.to_thread(plan_n_way_partition, key, members, config, self.scoring)
                    )
                    for key, members in partitions.items()
                    if len(members) >= 3
                }
                if tasks:
                    await asyncio.wait(tasks.values(), timeout=max(0.0, deadline - loop.time()))

                proposals: list[Proposal] = []
                for key in sorted(tasks):
                    task = tasks[key]
                    if not task.done():
                        task.cancel()
                        result.timed_out = True
                        result.outcomes.append(
                            ItemOutcome(
                                partition=key,
                                transaction_ids=[txn.id for txn in partitions[key]],
                                status=SKIPPED,
                                message="Deadline exceeded before partition was evaluated",
                            )
                        )
                        continue
                    result.partitions_evaluated += 1
                    try:
                        planned, outcomes = task.result()
                    except Exception as exc:
                        log_exception(logger, exc, "Partition evaluation failed", partition=key)
                        result.outcomes.append(
                            ItemOutcome(
                                partition=key,
                                transaction_ids=[txn.id for txn in partitions[key]],
                                status=FAILED,
                                message=str(exc),
                            )
                        )
                        continue
                    proposals.extend(planned)
                    result.outcomes.extend(outcomes)

                await self._commit(proposals, result, deadline=deadline, created_by=created_by)
                ctx["groups_created"] = len(result.groups)
                ctx["timed_out"] = result.timed_out

        return result

    async def run_auto_match(
        self,
        *,
        sources: Sequence[TransactionSource] | None = None,
        timeout_seconds: float | None = None,
        created_by: str | None = None,
    ) -> BatchRunResult:
        """Apply live rules pairwise to the unmatched pool and commit the matches."""
        pool = await self._open_pool(sources)
        rules = await self.rules.list_active_rules()
        result = BatchRunResult()
        if not rules or len(pool) < 2:
            logger.info("Auto match skipped", rules=len(rules), pool=len(pool))
            return result

        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout_seconds or settings.n_way_timeout_seconds)

        with bind_run("auto_match", created_by=created_by) as run_id:
            result.run_id = run_id
            async with async_log_timing("auto_match_run", logger=logger, pool=len(pool), rules=len(rules)) as ctx:
                proposals, outcomes = await asyncio.to_thread(plan_auto_matches, pool, rules, self.scoring)
                result.partitions_evaluated = 1
                result.outcomes.extend(outcomes)
                await self._commit(proposals, result, deadline=deadline, created_by=created_by)

                applied = Counter(outcome.partition for outcome in result.outcomes)
                matched = Counter(outcome.partition for outcome in result.outcomes if outcome.status == MATCHED)
                for rule in rules:
                    label = f"rule:{rule.rule_number}"
                    if applied[label]:
                        await self.rules.record_outcome(rule.id, applied=applied[label], matched=matched[label])
                ctx["groups_created"] = len(result.groups)

        return result
