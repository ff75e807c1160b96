"""SQLAlchemy-backed match store.

One store wraps one ``AsyncSession``. ``writer()`` is the unit of work: it
commits on success and rolls back on any error. Claims read transactions and
transitions read the group with ``SELECT ... FOR UPDATE`` so concurrent
writers serialize per row.
"""

from collections.abc import AsyncIterator, Collection, Iterable
from contextlib import asynccontextmanager

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from recon_matching.logger import get_logger
from recon_matching.models import (
    ApprovalRequest,
    ApprovalStatus,
    MatchGroup,
    MatchingRule,
    MatchStatus,
    RuleVersion,
    Transaction,
)
from recon_matching.schemas.matching import TransactionFilters

logger = get_logger(__name__)


def _like_pattern(term: str) -> str:
    safe = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{safe}%"


class SqlMatchStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @asynccontextmanager
    async def writer(self) -> AsyncIterator[None]:
        try:
            yield
            await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            logger.warning("Store write rolled back", error=str(exc), error_type=type(exc).__name__)
            raise

    async def _add(self, instance):
        self.session.add(instance)
        await self.session.flush()
        return instance

    # Transactions

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        return await self.session.get(Transaction, transaction_id)

    async def get_transactions(self, transaction_ids: Iterable[str]) -> dict[str, Transaction]:
        ids = list(transaction_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(Transaction).where(Transaction.id.in_(ids)))
        return {txn.id: txn for txn in result.scalars().all()}

    async def lock_transactions(self, transaction_ids: Iterable[str]) -> dict[str, Transaction]:
        # Sorted ids give a stable lock order across writers
        ids = sorted(set(transaction_ids))
        if not ids:
            return {}
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.id.in_(ids))
            .order_by(Transaction.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {txn.id: txn for txn in result.scalars().all()}

    async def list_transactions(self, filters: TransactionFilters | None = None) -> list[Transaction]:
        stmt = select(Transaction)
        if filters is not None:
            if filters.status:
                stmt = stmt.where(Transaction.status.in_(filters.status))
            if filters.match_type:
                stmt = stmt.where(Transaction.match_type.in_(filters.match_type))
            if filters.source:
                stmt = stmt.where(Transaction.source.in_(filters.source))
            if filters.date_from:
                stmt = stmt.where(Transaction.txn_date >= filters.date_from)
            if filters.date_to:
                stmt = stmt.where(Transaction.txn_date <= filters.date_to)
            if filters.amount_min is not None:
                stmt = stmt.where(Transaction.amount >= filters.amount_min)
            if filters.amount_max is not None:
                stmt = stmt.where(Transaction.amount <= filters.amount_max)
            if filters.partner_id:
                stmt = stmt.where(Transaction.partner_id == filters.partner_id)
            if filters.search:
                pattern = _like_pattern(filters.search)
                stmt = stmt.where(
                    or_(
                        Transaction.transaction_number.ilike(pattern, escape="\\"),
                        Transaction.description.ilike(pattern, escape="\\"),
                        Transaction.reference.ilike(pattern, escape="\\"),
                        Transaction.partner_name.ilike(pattern, escape="\\"),
                    )
                )
        result = await self.session.execute(stmt.order_by(Transaction.txn_date, Transaction.id))
        return list(result.scalars().all())

    async def put_transaction(self, transaction: Transaction) -> Transaction:
        return await self._add(transaction)

    # Match groups

    async def get_group(self, group_id: str) -> MatchGroup | None:
        return await self.session.get(MatchGroup, group_id)

    async def lock_group(self, group_id: str) -> MatchGroup | None:
        result = await self.session.execute(
            select(MatchGroup)
            .where(MatchGroup.id == group_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_group_by_idempotency_key(self, key: str) -> MatchGroup | None:
        result = await self.session.execute(select(MatchGroup).where(MatchGroup.idempotency_key == key))
        return result.scalar_one_or_none()

    async def list_groups(self, statuses: Collection[MatchStatus] | None = None) -> list[MatchGroup]:
        stmt = select(MatchGroup)
        if statuses:
            stmt = stmt.where(MatchGroup.status.in_(list(statuses)))
        result = await self.session.execute(stmt.order_by(MatchGroup.created_at, MatchGroup.id))
        return list(result.scalars().all())

    async def put_group(self, group: MatchGroup) -> MatchGroup:
        return await self._add(group)

    async def delete_group(self, group_id: str) -> None:
        await self.session.execute(delete(MatchGroup).where(MatchGroup.id == group_id))

    # Rules

    async def get_rule(self, rule_id: str) -> MatchingRule | None:
        return await self.session.get(MatchingRule, rule_id)

    async def list_rules(self) -> list[MatchingRule]:
        result = await self.session.execute(select(MatchingRule).order_by(MatchingRule.rule_number))
        return list(result.scalars().all())

    async def put_rule(self, rule: MatchingRule) -> MatchingRule:
        return await self._add(rule)

    async def delete_rule(self, rule_id: str) -> None:
        await self.session.execute(delete(MatchingRule).where(MatchingRule.id == rule_id))

    async def add_rule_version(self, version: RuleVersion) -> RuleVersion:
        return await self._add(version)

    async def list_rule_versions(self, rule_id: str) -> list[RuleVersion]:
        result = await self.session.execute(
            select(RuleVersion)
            .where(RuleVersion.rule_id == rule_id)
            .order_by(RuleVersion.version.desc(), RuleVersion.changed_at.desc())
        )
        return list(result.scalars().all())

    async def put_approval_request(self, request: ApprovalRequest) -> ApprovalRequest:
        return await self._add(request)

    async def list_approval_requests(
        self,
        rule_id: str | None = None,
        status: ApprovalStatus | None = None,
    ) -> list[ApprovalRequest]:
        stmt = select(ApprovalRequest)
        if rule_id is not None:
            stmt = stmt.where(ApprovalRequest.rule_id == rule_id)
        if status is not None:
            stmt = stmt.where(ApprovalRequest.status == status)
        result = await self.session.execute(stmt.order_by(ApprovalRequest.requested_at.desc()))
        return list(result.scalars().all())
