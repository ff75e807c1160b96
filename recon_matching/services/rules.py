"""Rule repository: versioned rule definitions, approval workflow and statistics.

Status flow::

    draft | rejected | inactive --submit--> pending_approval
    pending_approval --approve--> approved --activate--> active
    pending_approval --reject--> rejected
    active <--toggle--> inactive

Every definition change bumps ``version``; every change, including status
changes, appends a ``RuleVersion`` snapshot.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from recon_matching.logger import get_logger
from recon_matching.models import (
    ApprovalRequest,
    ApprovalStatus,
    MatchingRule,
    RuleChangeType,
    RuleStatus,
    RuleVersion,
)
from recon_matching.models.base import new_id, utcnow
from recon_matching.schemas.rules import (
    Condition,
    RuleCreate,
    RuleUpdate,
    RuleValidateRequest,
    match_configuration_adapter,
)
from recon_matching.services.conditions import validate_condition
from recon_matching.services.errors import NotFoundError, PreconditionError, ValidationError
from recon_matching.services.rule_evaluator import RuleExplanation, explain_rule, is_rule_live, order_rules
from recon_matching.services.store import MatchStore

logger = get_logger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 10
RULE_NUMBER_PATTERN = re.compile(r"^RUL-(\d+)$")

SUBMITTABLE_STATUSES = frozenset({RuleStatus.DRAFT, RuleStatus.REJECTED, RuleStatus.INACTIVE})
ACTIVATABLE_STATUSES = frozenset({RuleStatus.APPROVED, RuleStatus.INACTIVE, RuleStatus.ACTIVE})
RULE_SORT_FIELDS = frozenset(
    {"name", "priority", "rule_number", "created_at", "updated_at", "times_applied", "version", "status"}
)
TRACKED_FIELDS = ("name", "description", "conditions", "match_configuration", "priority", "tags", "applies_to")


def validate_rule_definition(
    name: str | None,
    conditions: Sequence[Condition | dict[str, Any]] | None,
    match_configuration: Any,
    priority: int | None,
) -> list[str]:
    """Return every problem that blocks submitting or activating a rule."""
    errors: list[str] = []

    if not name or not name.strip():
        errors.append("Rule name is required")

    if not conditions:
        errors.append("At least one condition is required")
    else:
        for index, raw in enumerate(conditions):
            try:
                condition = raw if isinstance(raw, Condition) else Condition.model_validate(raw)
            except PydanticValidationError as exc:
                errors.append(f"Condition {index + 1} is malformed: {exc.errors()[0]['msg']}")
                continue
            errors.extend(validate_condition(condition))

    if not match_configuration or (isinstance(match_configuration, dict) and not match_configuration.get("strategy")):
        errors.append("Match strategy is required")
    elif isinstance(match_configuration, dict):
        try:
            match_configuration_adapter.validate_python(match_configuration)
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            errors.append(f"Invalid match configuration ({location}): {first['msg']}")

    if priority is not None and not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        errors.append(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")

    return errors


def _dump_conditions(conditions: Sequence[Condition]) -> list[dict[str, Any]]:
    return [condition.model_dump(mode="json") for condition in conditions]


class RuleService:
    """Versioned rule storage on top of a ``MatchStore``."""

    def __init__(self, store: MatchStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_rule(self, rule_id: str) -> MatchingRule:
        rule = await self.store.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found")
        return rule

    async def list_rules(
        self,
        *,
        statuses: Sequence[RuleStatus] | None = None,
        is_enabled: bool | None = None,
        tags: Sequence[str] | None = None,
        search: str | None = None,
        sort_by: str | None = None,
        sort_order: str = "asc",
    ) -> list[MatchingRule]:
        rules = await self.store.list_rules()
        if statuses:
            rules = [rule for rule in rules if rule.status in statuses]
        if is_enabled is not None:
            rules = [rule for rule in rules if rule.is_enabled == is_enabled]
        if tags:
            wanted = set(tags)
            rules = [rule for rule in rules if wanted.intersection(rule.tags or [])]
        if search:
            needle = search.casefold()
            rules = [
                rule
                for rule in rules
                if needle in rule.name.casefold()
                or needle in (rule.description or "").casefold()
                or needle in rule.rule_number.casefold()
            ]

        if sort_by is None:
            return order_rules(rules)
        if sort_by not in RULE_SORT_FIELDS:
            raise ValidationError(f"Cannot sort rules by '{sort_by}'")

        def sort_key(rule: MatchingRule) -> tuple[bool, Any]:
            value = getattr(rule, sort_by)
            return (value is None, value if value is not None else 0)

        return sorted(rules, key=sort_key, reverse=sort_order == "desc")

    async def list_active_rules(self) -> list[MatchingRule]:
        """Live rules in application order."""
        return order_rules(rule for rule in await self.store.list_rules() if is_rule_live(rule))

    async def list_versions(self, rule_id: str) -> list[RuleVersion]:
        await self.get_rule(rule_id)
        return await self.store.list_rule_versions(rule_id)

    async def list_pending_approvals(self) -> list[ApprovalRequest]:
        return await self.store.list_approval_requests(status=ApprovalStatus.PENDING)

    async def list_tags(self) -> list[str]:
        return sorted({tag for rule in await self.store.list_rules() for tag in (rule.tags or [])})

    def validate(self, payload: RuleValidateRequest) -> list[str]:
        return validate_rule_definition(
            payload.name,
            payload.conditions,
            payload.match_configuration,
            payload.priority,
        )

    async def test_rule(self, rule_id: str, sample: dict[str, Any]) -> RuleExplanation:
        """Evaluate a rule against sample data and return the per-condition trace."""
        rule = await self.get_rule(rule_id)
        explanation = explain_rule(rule, sample)
        logger.info(
            "Rule tested",
            rule_id=rule_id,
            matched=explanation.matched,
            conditions=len(explanation.steps),
        )
        return explanation

    # ------------------------------------------------------------------
    # Definition changes
    # ------------------------------------------------------------------

    async def _next_rule_number(self) -> str:
        highest = 0
        for rule in await self.store.list_rules():
            match = RULE_NUMBER_PATTERN.match(rule.rule_number or "")
            if match:
                highest = max(highest, int(match.group(1)))
        return f"RUL-{highest + 1:05d}"

    async def _snapshot(
        self,
        rule: MatchingRule,
        change_type: RuleChangeType,
        changed_by: str,
        description: str = "",
        previous_version: int | None = None,
    ) -> RuleVersion:
        version = RuleVersion(
            id=new_id(),
            rule_id=rule.id,
            version=rule.version,
            name=rule.name,
            description=rule.description,
            conditions=list(rule.conditions),
            match_configuration=dict(rule.match_configuration),
            changed_by=changed_by,
            changed_at=utcnow(),
            change_type=change_type,
            change_description=description,
            previous_version=previous_version,
        )
        return await self.store.add_rule_version(version)

    def _check_priority(self, priority: int) -> None:
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(
                f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}",
                details={"priority": priority},
            )

    async def create_rule(self, data: RuleCreate) -> MatchingRule:
        """Create a draft rule at version 1."""
        if not data.name.strip():
            raise ValidationError("Rule name is required")
        self._check_priority(data.priority)
        invalid = [error for condition in data.conditions for error in validate_condition(condition)]
        if invalid:
            raise ValidationError("Invalid rule conditions", details={"errors": invalid})

        async with self.store.writer():
            now = utcnow()
            rule = MatchingRule(
                id=new_id(),
                rule_number=await self._next_rule_number(),
                name=data.name.strip(),
                description=data.description,
                status=RuleStatus.DRAFT,
                version=1,
                conditions=_dump_conditions(data.conditions),
                match_configuration=data.match_configuration.model_dump(mode="json"),
                priority=data.priority,
                is_enabled=False,
                tags=list(data.tags),
                applies_to=data.applies_to.model_dump(),
                created_by=data.created_by,
                updated_by=data.created_by,
                approved_by=None,
                approved_at=None,
                rejected_by=None,
                rejected_at=None,
                rejection_reason=None,
                times_applied=0,
                successful_matches=0,
                last_applied_at=None,
                created_at=now,
                updated_at=now,
            )
            await self.store.put_rule(rule)
            await self._snapshot(rule, RuleChangeType.CREATED, data.created_by, "Rule created")

        logger.info("Rule created", rule_id=rule.id, rule_number=rule.rule_number)
        return rule

    async def update_rule(self, rule_id: str, data: RuleUpdate) -> MatchingRule:
        """Apply a partial update; bumps the version when anything changed."""
        if data.priority is not None:
            self._check_priority(data.priority)
        if data.name is not None and not data.name.strip():
            raise ValidationError("Rule name is required")
        if data.conditions is not None:
            invalid = [error for condition in data.conditions for error in validate_condition(condition)]
            if invalid:
                raise ValidationError("Invalid rule conditions", details={"errors": invalid})

        async with self.store.writer():
            rule = await self.get_rule(rule_id)
            if rule.status == RuleStatus.PENDING_APPROVAL:
                raise PreconditionError(
                    "Rule is pending approval and cannot be edited",
                    details={"rule_id": rule_id},
                )

            updates: dict[str, Any] = {}
            if data.name is not None:
                updates["name"] = data.name.strip()
            if data.description is not None:
                updates["description"] = data.description
            if data.conditions is not None:
                updates["conditions"] = _dump_conditions(data.conditions)
            if data.match_configuration is not None:
                updates["match_configuration"] = data.match_configuration.model_dump(mode="json")
            if data.priority is not None:
                updates["priority"] = data.priority
            if data.tags is not None:
                updates["tags"] = list(data.tags)
            if data.applies_to is not None:
                updates["applies_to"] = data.applies_to.model_dump()

            changed = {key: value for key, value in updates.items() if getattr(rule, key) != value}
            if not changed:
                return rule

            if rule.status == RuleStatus.ACTIVE:
                errors = validate_rule_definition(
                    changed.get("name", rule.name),
                    changed.get("conditions", rule.conditions),
                    changed.get("match_configuration", rule.match_configuration),
                    changed.get("priority", rule.priority),
                )
                if errors:
                    raise ValidationError("Active rule would become invalid", details={"errors": errors})

            previous_version = rule.version
            for key, value in changed.items():
                setattr(rule, key, value)
            rule.version = previous_version + 1
            rule.updated_by = data.updated_by
            rule.updated_at = utcnow()
            await self.store.put_rule(rule)
            await self._snapshot(
                rule,
                RuleChangeType.UPDATED,
                data.updated_by,
                data.change_description or f"Updated {', '.join(sorted(changed))}",
                previous_version=previous_version,
            )

        logger.info("Rule updated", rule_id=rule_id, version=rule.version, fields=sorted(changed))
        return rule

    async def delete_rule(self, rule_id: str) -> None:
        async with self.store.writer():
            await self.get_rule(rule_id)
            await self.store.delete_rule(rule_id)
        logger.info("Rule deleted", rule_id=rule_id)

    # ------------------------------------------------------------------
    # Approval workflow
    # ------------------------------------------------------------------

    async def _last_approved_snapshot(self, rule_id: str) -> RuleVersion | None:
        for version in await self.store.list_rule_versions(rule_id):
            if version.change_type == RuleChangeType.APPROVED:
                return version
        return None

    async def _pending_request(self, rule_id: str) -> ApprovalRequest | None:
        pending = await self.store.list_approval_requests(rule_id=rule_id, status=ApprovalStatus.PENDING)
        return pending[0] if pending else None

    async def submit_for_approval(
        self,
        rule_id: str,
        requested_by: str,
        comments: str | None = None,
    ) -> ApprovalRequest:
        """Send a valid rule for approval. Resubmitting returns the open request."""
        async with self.store.writer():
            rule = await self.get_rule(rule_id)
            if rule.status == RuleStatus.PENDING_APPROVAL:
                existing = await self._pending_request(rule_id)
                if existing is not None:
                    return existing
            elif rule.status not in SUBMITTABLE_STATUSES:
                raise PreconditionError(
                    f"Cannot submit a rule in status {rule.status.value}",
                    details={"rule_id": rule_id, "status": rule.status.value},
                )

            errors = validate_rule_definition(rule.name, rule.conditions, rule.match_configuration, rule.priority)
            if errors:
                raise ValidationError("Rule is not valid", details={"errors": errors})

            baseline = await self._last_approved_snapshot(rule_id)
            changes = []
            for field_name in ("name", "description", "conditions", "match_configuration"):
                old_value = getattr(baseline, field_name) if baseline else None
                new_value = getattr(rule, field_name)
                if old_value != new_value:
                    changes.append({"field": field_name, "old_value": old_value, "new_value": new_value})

            request = ApprovalRequest(
                id=new_id(),
                rule_id=rule.id,
                rule_name=rule.name,
                rule_version=rule.version,
                requested_by=requested_by,
                requested_at=utcnow(),
                status=ApprovalStatus.PENDING,
                reviewed_by=None,
                reviewed_at=None,
                comments=comments,
                changes=changes,
            )
            await self.store.put_approval_request(request)
            rule.status = RuleStatus.PENDING_APPROVAL
            rule.is_enabled = False
            rule.updated_by = requested_by
            rule.updated_at = utcnow()
            await self.store.put_rule(rule)

        logger.info("Rule submitted for approval", rule_id=rule_id, version=rule.version)
        return request

    async def approve_rule(self, rule_id: str, approver: str, comments: str | None = None) -> MatchingRule:
        async with self.store.writer():
            rule = await self.get_rule(rule_id)
            if rule.status == RuleStatus.APPROVED:
                return rule
            if rule.status != RuleStatus.PENDING_APPROVAL:
                raise PreconditionError(
                    f"Cannot approve a rule in status {rule.status.value}",
                    details={"rule_id": rule_id, "status": rule.status.value},
                )
            now = utcnow()
            rule.status = RuleStatus.APPROVED
            rule.approved_by = approver
            rule.approved_at = now
            rule.rejected_by = None
            rule.rejected_at = None
            rule.rejection_reason = None
            rule.updated_by = approver
            rule.updated_at = now
            await self.store.put_rule(rule)
            await self._close_request(rule_id, ApprovalStatus.APPROVED, approver, comments)
            await self._snapshot(rule, RuleChangeType.APPROVED, approver, comments or "Rule approved")

        logger.info("Rule approved", rule_id=rule_id, approver=approver)
        return rule

    async def reject_rule(self, rule_id: str, rejecter: str, reason: str) -> MatchingRule:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", details={"rule_id": rule_id})
        async with self.store.writer():
            rule = await self.get_rule(rule_id)
            if rule.status == RuleStatus.REJECTED:
                return rule
            if rule.status != RuleStatus.PENDING_APPROVAL:
                raise PreconditionError(
                    f"Cannot reject a rule in status {rule.status.value}",
                    details={"rule_id": rule_id, "status": rule.status.value},
                )
            now = utcnow()
            rule.status = RuleStatus.REJECTED
            rule.rejected_by = rejecter
            rule.rejected_at = now
            rule.rejection_reason = reason.strip()
            rule.updated_by = rejecter
            rule.updated_at = now
            await self.store.put_rule(rule)
            await self._close_request(rule_id, ApprovalStatus.REJECTED, rejecter, reason.strip())
            await self._snapshot(rule, RuleChangeType.REJECTED, rejecter, reason.strip())

        logger.info("Rule rejected", rule_id=rule_id, rejecter=rejecter)
        return rule

    async def _close_request(
        self,
        rule_id: str,
        status: ApprovalStatus,
        reviewer: str,
        comments: str | None,
    ) -> None:
        request = await self._pending_request(rule_id)
        if request is None:
            return
        request.status = status
        request.reviewed_by = reviewer
        request.reviewed_at = utcnow()
        if comments:
            request.comments = comments
        await self.store.put_approval_request(request)

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def _set_enabled(self, rule: MatchingRule, enabled: bool, actor: str) -> MatchingRule:
        if rule.status not in ACTIVATABLE_STATUSES:
            raise PreconditionError(
                f"Rule in status {rule.status.value} must be approved before activation",
                details={"rule_id": rule.id, "status": rule.status.value},
            )
        if enabled:
            errors = validate_rule_definition(rule.name, rule.conditions, rule.match_configuration, rule.priority)
            if errors:
                raise ValidationError("Rule cannot be activated", details={"errors": errors})

        target = RuleStatus.ACTIVE if enabled else RuleStatus.INACTIVE
        if rule.status == target and rule.is_enabled == enabled:
            return rule
        rule.is_enabled = enabled
        rule.status = target
        rule.updated_by = actor
        rule.updated_at = utcnow()
        await self.store.put_rule(rule)
        await self._snapshot(
            rule,
            RuleChangeType.ACTIVATED if enabled else RuleChangeType.DEACTIVATED,
            actor,
            "Rule activated" if enabled else "Rule deactivated",
        )
        logger.info("Rule status changed", rule_id=rule.id, status=target.value)
        return rule

    async def activate_rule(self, rule_id: str, actor: str) -> MatchingRule:
        async with self.store.writer():
            return await self._set_enabled(await self.get_rule(rule_id), True, actor)

    async def deactivate_rule(self, rule_id: str, actor: str) -> MatchingRule:
        async with self.store.writer():
            return await self._set_enabled(await self.get_rule(rule_id), False, actor)

    async def toggle_rule(self, rule_id: str, actor: str) -> MatchingRule:
        """Flip between active and inactive."""
        async with self.store.writer():
            rule = await self.get_rule(rule_id)
            return await self._set_enabled(rule, not is_rule_live(rule), actor)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def record_outcome(self, rule_id: str, *, applied: int = 1, matched: int = 0) -> MatchingRule:
        """Apply a rule outcome to the rule's usage statistics."""
        async with self.store.writer():
            rule = await self.get_rule(rule_id)
            rule.times_applied = (rule.times_applied or 0) + applied
            rule.successful_matches = (rule.successful_matches or 0) + matched
            rule.last_applied_at = utcnow()
            await self.store.put_rule(rule)
        return rule
