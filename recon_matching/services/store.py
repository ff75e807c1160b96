"""Store abstraction for the transaction pool, match groups and rules.

The lifecycle and rule services only talk to a ``MatchStore``. Every mutation
happens inside ``store.writer()``, which is the single-writer section: claims
are re-checked there so a lost race fails instead of overwriting.

NOTE: ``InMemoryMatchStore`` is per-process. Multiple workers each hold their
own pool; use the SQL backend for anything shared.
"""

import asyncio
from collections.abc import AsyncIterator, Collection, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

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


class MatchStore(Protocol):
    """Persistence boundary consumed by the matching services."""

    # Transactions
    async def get_transaction(self, transaction_id: str) -> Transaction | None: ...

    async def get_transactions(self, transaction_ids: Iterable[str]) -> dict[str, Transaction]: ...

    async def lock_transactions(self, transaction_ids: Iterable[str]) -> dict[str, Transaction]:
        """Fresh read of transactions for a claim. Call inside ``writer()``."""
        ...

    async def list_transactions(self, filters: TransactionFilters | None = None) -> list[Transaction]: ...

    async def put_transaction(self, transaction: Transaction) -> Transaction: ...

    # Match groups
    async def get_group(self, group_id: str) -> MatchGroup | None: ...

    async def lock_group(self, group_id: str) -> MatchGroup | None:
        """Fresh read of a group for a transition. Call inside ``writer()``."""
        ...

    async def get_group_by_idempotency_key(self, key: str) -> MatchGroup | None: ...

    async def list_groups(self, statuses: Collection[MatchStatus] | None = None) -> list[MatchGroup]: ...

    async def put_group(self, group: MatchGroup) -> MatchGroup: ...

    async def delete_group(self, group_id: str) -> None: ...

    # Rules
    async def get_rule(self, rule_id: str) -> MatchingRule | None: ...

    async def list_rules(self) -> list[MatchingRule]: ...

    async def put_rule(self, rule: MatchingRule) -> MatchingRule: ...

    async def delete_rule(self, rule_id: str) -> None: ...

    async def add_rule_version(self, version: RuleVersion) -> RuleVersion: ...

    async def list_rule_versions(self, rule_id: str) -> list[RuleVersion]: ...

    async def put_approval_request(self, request: ApprovalRequest) -> ApprovalRequest: ...

    async def list_approval_requests(
        self,
        rule_id: str | None = None,
        status: ApprovalStatus | None = None,
    ) -> list[ApprovalRequest]: ...

    def writer(self) -> AbstractAsyncContextManager[None]: ...


class InMemoryMatchStore:
    """Process-local store guarded by a single asyncio lock for writes."""

    def __init__(self) -> None:
        self._transactions: dict[str, Transaction] = {}
        self._groups: dict[str, MatchGroup] = {}
        self._rules: dict[str, MatchingRule] = {}
        self._rule_versions: dict[str, list[RuleVersion]] = {}
        self._approval_requests: dict[str, ApprovalRequest] = {}
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def writer(self) -> AsyncIterator[None]:
        async with self._lock:
            yield

    # Transactions

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        return self._transactions.get(transaction_id)

    async def get_transactions(self, transaction_ids: Iterable[str]) -> dict[str, Transaction]:
        return {
            txn_id: self._transactions[txn_id] for txn_id in transaction_ids if txn_id in self._transactions
        }

    async def lock_transactions(self, transaction_ids: Iterable[str]) -> dict[str, Transaction]:
        return await self.get_transactions(transaction_ids)

    async def list_transactions(self, filters: TransactionFilters | None = None) -> list[Transaction]:
        transactions = list(self._transactions.values())
        if filters is None:
            return transactions
        return [txn for txn in transactions if filters.matches_transaction(txn)]

    async def put_transaction(self, transaction: Transaction) -> Transaction:
        self._transactions[transaction.id] = transaction
        return transaction

    # Match groups

    async def get_group(self, group_id: str) -> MatchGroup | None:
        return self._groups.get(group_id)

    async def lock_group(self, group_id: str) -> MatchGroup | None:
        return await self.get_group(group_id)

    async def get_group_by_idempotency_key(self, key: str) -> MatchGroup | None:
        return next((group for group in self._groups.values() if group.idempotency_key == key), None)

    async def list_groups(self, statuses: Collection[MatchStatus] | None = None) -> list[MatchGroup]:
        groups = list(self._groups.values())
        if statuses:
            groups = [group for group in groups if group.status in statuses]
        return groups

    async def put_group(self, group: MatchGroup) -> MatchGroup:
        self._groups[group.id] = group
        return group

    async def delete_group(self, group_id: str) -> None:
        self._groups.pop(group_id, None)

    # Rules

    async def get_rule(self, rule_id: str) -> MatchingRule | None:
        return self._rules.get(rule_id)

    async def list_rules(self) -> list[MatchingRule]:
        return list(self._rules.values())

    async def put_rule(self, rule: MatchingRule) -> MatchingRule:
        self._rules[rule.id] = rule
        return rule

    async def delete_rule(self, rule_id: str) -> None:
        self._rules.pop(rule_id, None)
        self._rule_versions.pop(rule_id, None)
        self._approval_requests = {
            key: request for key, request in self._approval_requests.items() if request.rule_id != rule_id
        }

    async def add_rule_version(self, version: RuleVersion) -> RuleVersion:
        self._rule_versions.setdefault(version.rule_id, []).append(version)
        return version

    async def list_rule_versions(self, rule_id: str) -> list[RuleVersion]:
        # Newest first
        return list(reversed(self._rule_versions.get(rule_id, [])))

    async def put_approval_request(self, request: ApprovalRequest) -> ApprovalRequest:
        self._approval_requests[request.id] = request
        return request

    async def list_approval_requests(
        self,
        rule_id: str | None = None,
        status: ApprovalStatus | None = None,
    ) -> list[ApprovalRequest]:
        requests = list(self._approval_requests.values())
        if rule_id is not None:
            requests = [request for request in requests if request.rule_id == rule_id]
        if status is not None:
            requests = [request for request in requests if request.status == status]
        return sorted(requests, key=lambda item: item.requested_at, reverse=True)
