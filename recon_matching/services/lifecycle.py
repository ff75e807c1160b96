"""Match group lifecycle: creation, review, approval, rejection and unmatch.

State machine over ``MatchGroup.status``::

    matched -> under_review -> approved | rejected
    matched -> approved | rejected

Approved and rejected are terminal. Unmatch is not a state: it deletes the
group and releases its members back to ``unmatched``. Member transactions
follow the group status while the group exists.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from recon_matching.config import settings
from recon_matching.logger import get_logger
from recon_matching.models import (
    REVIEWABLE_STATUSES,
    TERMINAL_STATUSES,
    MatchGroup,
    MatchStatus,
    MatchType,
    Transaction,
)
from recon_matching.models.base import new_id, utcnow
from recon_matching.schemas.base import Pagination
from recon_matching.schemas.matching import TransactionFilters
from recon_matching.schemas.rules import ManualMatchConfig
from recon_matching.services.errors import (
    ConflictError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from recon_matching.services.store import MatchStore
from recon_matching.services.strategies import MatchResult, execute
from recon_matching.services.suggestions import PotentialMatch, suggest_matches
from recon_matching.services.variance import compute_variance

logger = get_logger(__name__)

TRANSACTION_SORT_FIELDS = frozenset(
    {"txn_date", "amount", "transaction_number", "source", "created_at", "partner_id"}
)
GROUP_SORT_FIELDS = frozenset(
    {"created_at", "match_confidence", "total_amount", "variance", "match_number", "status"}
)


@dataclass
class MatchStatistics:
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


@dataclass
class GroupView:
    """A match group with its member transactions in group order."""

    group: MatchGroup
    transactions: list[Transaction]


def _sort_key(field_name: str):
    def key(item: Any) -> tuple[bool, Any]:
        value = getattr(item, field_name)
        if hasattr(value, "value"):
            value = value.value
        return (value is None, value if value is not None else 0)

    return key


def _paginate(items: list, pagination: Pagination) -> list:
    return items[pagination.offset : pagination.offset + pagination.page_size]


def build_match_number(group_id: str, today: date | None = None) -> str:
    today = today or utcnow().date()
    return f"MG-{today:%Y%m%d}-{group_id[:8].upper()}"


class MatchLifecycleService:
    """Owns match group state and transaction membership."""

    def __init__(self, store: MatchStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_transaction(self, transaction_id: str) -> Transaction:
        transaction = await self.store.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    async def get_group(self, group_id: str) -> MatchGroup:
        group = await self.store.get_group(group_id)
        if group is None:
            raise NotFoundError(f"Match group {group_id} not found")
        return group

    async def get_group_view(self, group_id: str) -> GroupView:
        group = await self.get_group(group_id)
        return GroupView(group=group, transactions=await self._members(group))

    async def _members(self, group: MatchGroup) -> list[Transaction]:
        found = await self.store.get_transactions(group.transaction_ids)
        return [found[txn_id] for txn_id in group.transaction_ids if txn_id in found]

    async def list_unmatched(
        self,
        filters: TransactionFilters | None = None,
        pagination: Pagination | None = None,
    ) -> tuple[list[Transaction], int]:
        """Unmatched (and advisory potential) transactions, filtered and paged."""
        filters = filters or TransactionFilters()
        pagination = pagination or Pagination()
        if not filters.status:
            filters = filters.model_copy(update={"status": [MatchStatus.UNMATCHED, MatchStatus.POTENTIAL]})
        sort_by = pagination.sort_by or "txn_date"
        if sort_by not in TRANSACTION_SORT_FIELDS:
            raise ValidationError(f"Cannot sort transactions by '{sort_by}'")

        transactions = await self.store.list_transactions(filters)
        transactions.sort(key=_sort_key(sort_by), reverse=pagination.sort_order == "desc")
        return _paginate(transactions, pagination), len(transactions)

    async def list_matched(
        self,
        filters: TransactionFilters | None = None,
        pagination: Pagination | None = None,
    ) -> tuple[list[GroupView], int]:
        filters = filters or TransactionFilters()
        pagination = pagination or Pagination()
        sort_by = pagination.sort_by or "created_at"
        if sort_by not in GROUP_SORT_FIELDS:
            raise ValidationError(f"Cannot sort match groups by '{sort_by}'")

        views = []
        for group in await self.store.list_groups(filters.status or None):
            members = await self._members(group)
            if filters.matches_group(group, members):
                views.append(GroupView(group=group, transactions=members))

        group_key = _sort_key(sort_by)
        views.sort(key=lambda view: group_key(view.group), reverse=pagination.sort_order == "desc")
        return _paginate(views, pagination), len(views)

    async def suggest(self, transaction_id: str, limit: int | None = None) -> PotentialMatch:
        source = await self.get_transaction(transaction_id)
        pool = await self.store.list_transactions(TransactionFilters(status=[MatchStatus.UNMATCHED]))
        return suggest_matches(source, pool, limit)

    async def get_statistics(self) -> MatchStatistics:
        transactions = await self.store.list_transactions()
        groups = await self.store.list_groups()

        status_counts = Counter(txn.status for txn in transactions)
        type_counts = Counter(group.match_type for group in groups)
        total = len(transactions)
        owned = sum(1 for txn in transactions if txn.match_id is not None)
        confidences = [group.match_confidence for group in groups]

        return MatchStatistics(
            total_transactions=total,
            matched=status_counts[MatchStatus.MATCHED],
            unmatched=status_counts[MatchStatus.UNMATCHED] + status_counts[MatchStatus.POTENTIAL],
            under_review=status_counts[MatchStatus.UNDER_REVIEW],
            approved=status_counts[MatchStatus.APPROVED],
            rejected=status_counts[MatchStatus.REJECTED],
            match_rate=round(owned / total * 100, 2) if total else 0.0,
            exact_matches=type_counts[MatchType.EXACT],
            fuzzy_matches=type_counts[MatchType.FUZZY],
            partial_matches=type_counts[MatchType.PARTIAL],
            manual_matches=type_counts[MatchType.MANUAL],
            n_way_matches=type_counts[MatchType.N_WAY],
            total_variance=sum((group.variance for group in groups), Decimal("0.00")),
            average_confidence=round(sum(confidences) / len(confidences), 2) if confidences else 0.0,
        )

    # ------------------------------------------------------------------
    # Group creation
    # ------------------------------------------------------------------

    async def create_manual_match(
        self,
        transaction_ids: Sequence[str],
        created_by: str,
        idempotency_key: str | None = None,
    ) -> MatchGroup:
        """Group unmatched transactions by hand.

        Without an idempotency key every call creates a new group. With one, a
        repeat call returns the group the first call created.
        """
        ids = list(transaction_ids)
        if len(set(ids)) != len(ids):
            raise ValidationError("Transaction ids must be distinct", details={"transaction_ids": ids})
        if len(ids) < 2:
            raise ValidationError("A manual match needs at least 2 transactions", details={"transaction_ids": ids})

        if idempotency_key:
            existing = await self._existing_for_key(idempotency_key, ids)
            if existing is not None:
                return existing

        found = await self.store.get_transactions(ids)
        missing = [txn_id for txn_id in ids if txn_id not in found]
        if missing:
            raise NotFoundError("Transactions not found", details={"transaction_ids": missing})

        not_open = [txn_id for txn_id in ids if found[txn_id].status != MatchStatus.UNMATCHED]
        if not_open:
            raise ValidationError(
                "All transactions must be unmatched",
                details={"transaction_ids": not_open},
            )

        result = execute(ManualMatchConfig(), [found[txn_id] for txn_id in ids])
        return await self._commit_group(
            ids,
            result,
            created_by=created_by,
            idempotency_key=idempotency_key,
        )

    async def create_match(
        self,
        result: MatchResult,
        transactions: Sequence[Transaction],
        *,
        created_by: str | None = None,
        rule_id: str | None = None,
    ) -> MatchGroup:
        """Persist a strategy result as a new group (used by batch runs)."""
        if not result.is_match:
            raise ValidationError(
                "Cannot create a group from a non-matching result",
                details={"details": result.details},
            )
        ids = [txn.id for txn in transactions]
        owned = [txn.id for txn in transactions if not txn.is_claimable]
        if owned:
            raise PreconditionError(
                "Transactions already belong to a match group",
                details={"transaction_ids": owned},
            )
        return await self._commit_group(
            ids,
            result,
            created_by=created_by or settings.system_user,
            rule_id=rule_id,
        )

    async def _existing_for_key(self, idempotency_key: str, ids: list[str]) -> MatchGroup | None:
        existing = await self.store.get_group_by_idempotency_key(idempotency_key)
        if existing is None:
            return None
        if sorted(existing.transaction_ids) != sorted(ids):
            raise ValidationError(
                "Idempotency key was already used for different transactions",
                details={"idempotency_key": idempotency_key, "group_id": existing.id},
            )
        logger.info("Manual match replayed", group_id=existing.id, idempotency_key=idempotency_key)
        return existing

    async def _commit_group(
        self,
        ids: list[str],
        result: MatchResult,
        *,
        created_by: str,
        rule_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> MatchGroup:
        async with self.store.writer():
            if idempotency_key:
                existing = await self._existing_for_key(idempotency_key, ids)
                if existing is not None:
                    return existing

            locked = await self.store.lock_transactions(ids)
            missing = [txn_id for txn_id in ids if txn_id not in locked]
            if missing:
                raise NotFoundError("Transactions not found", details={"transaction_ids": missing})
            lost = [txn_id for txn_id in ids if not locked[txn_id].is_claimable]
            if lost:
                raise ConflictError(
                    "Transactions were claimed by another match",
                    details={"transaction_ids": lost},
                )

            members = [locked[txn_id] for txn_id in ids]
            variance = compute_variance([txn.amount for txn in members])
            now = utcnow()
            group_id = new_id()
            group = MatchGroup(
                id=group_id,
                match_number=build_match_number(group_id, now.date()),
                match_type=result.match_type,
                match_confidence=result.confidence,
                status=MatchStatus.MATCHED,
                transaction_ids=ids,
                total_amount=variance.total,
                variance=variance.variance,
                variance_percentage=variance.variance_percentage,
                variance_warning=variance.warning,
                rule_id=rule_id,
                idempotency_key=idempotency_key,
                created_by=created_by,
                approved_by=None,
                approved_at=None,
                rejected_by=None,
                rejected_at=None,
                rejection_reason=None,
                version=1,
                created_at=now,
                updated_at=now,
            )
            await self.store.put_group(group)
            for txn in members:
                txn.assign_match(group.id, result.match_type, result.confidence)
                await self.store.put_transaction(txn)

        logger.info(
            "Match group created",
            group_id=group.id,
            match_type=group.match_type.value,
            confidence=group.match_confidence,
            transactions=len(ids),
            variance=str(group.variance),
            rule_id=rule_id,
        )
        return group

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _lock_group(self, group_id: str) -> MatchGroup:
        group = await self.store.lock_group(group_id)
        if group is None:
            raise NotFoundError(f"Match group {group_id} not found")
        return group

    async def _locked_members(self, group: MatchGroup) -> list[Transaction]:
        locked = await self.store.lock_transactions(group.transaction_ids)
        return [locked[txn_id] for txn_id in group.transaction_ids if txn_id in locked]

    async def _set_status(self, group: MatchGroup, status: MatchStatus) -> None:
        now = utcnow()
        group.status = status
        group.version = (group.version or 1) + 1
        group.updated_at = now
        for txn in await self._locked_members(group):
            txn.status = status
            txn.updated_at = now
            await self.store.put_transaction(txn)
        await self.store.put_group(group)

    async def start_review(self, group_id: str) -> MatchGroup:
        async with self.store.writer():
            group = await self._lock_group(group_id)
            if group.status == MatchStatus.UNDER_REVIEW:
                return group
            if group.status in TERMINAL_STATUSES:
                raise PreconditionError(
                    f"Cannot review a match group in status {group.status.value}",
                    details={"group_id": group_id, "status": group.status.value},
                )
            await self._set_status(group, MatchStatus.UNDER_REVIEW)
        logger.info("Match group under review", group_id=group_id)
        return group

    async def approve(self, group_id: str, approver: str) -> MatchGroup:
        """Approve a group. Repeating an approval is a no-op."""
        async with self.store.writer():
            group = await self._lock_group(group_id)
            if group.status == MatchStatus.APPROVED:
                return group
            if group.status not in REVIEWABLE_STATUSES:
                raise PreconditionError(
                    f"Cannot approve a match group in status {group.status.value}",
                    details={"group_id": group_id, "status": group.status.value},
                )
            group.approved_by = approver
            group.approved_at = utcnow()
            await self._set_status(group, MatchStatus.APPROVED)
        logger.info("Match group approved", group_id=group_id, approver=approver)
        return group

    async def reject(self, group_id: str, rejecter: str, reason: str) -> MatchGroup:
        """Reject a group with a reason. Repeating a rejection is a no-op."""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", details={"group_id": group_id})
        async with self.store.writer():
            group = await self._lock_group(group_id)
            if group.status == MatchStatus.REJECTED:
                return group
            if group.status not in REVIEWABLE_STATUSES:
                raise PreconditionError(
                    f"Cannot reject a match group in status {group.status.value}",
                    details={"group_id": group_id, "status": group.status.value},
                )
            group.rejected_by = rejecter
            group.rejected_at = utcnow()
            group.rejection_reason = reason.strip()
            await self._set_status(group, MatchStatus.REJECTED)
        logger.info("Match group rejected", group_id=group_id, rejecter=rejecter)
        return group

    async def unmatch(self, group_id: str) -> list[str]:
        """Delete a group and release its members. Unknown ids are a no-op.

        Returns the released transaction ids.
        """
        async with self.store.writer():
            group = await self.store.lock_group(group_id)
            if group is None:
                logger.info("Unmatch of unknown group ignored", group_id=group_id)
                return []
            released = []
            for txn in await self._locked_members(group):
                if txn.match_id == group.id:
                    txn.clear_match()
                    await self.store.put_transaction(txn)
                    released.append(txn.id)
            await self.store.delete_group(group.id)
        logger.info("Match group deleted", group_id=group_id, released=len(released))
        return released
