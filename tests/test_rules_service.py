"""Tests for the rule repository and approval workflow."""

import pytest

from recon_matching.models import ApprovalStatus, RuleChangeType, RuleStatus
from recon_matching.schemas.rules import (
    Comparator,
    Condition,
    ExactMatchConfig,
    FieldType,
    FuzzyMatchConfig,
    RuleCreate,
    RuleUpdate,
    RuleValidateRequest,
)
from recon_matching.services.errors import NotFoundError, PreconditionError, ValidationError
from recon_matching.services.rules import RuleService, validate_rule_definition

POSITIVE = Condition(field="amount", field_type=FieldType.AMOUNT, comparator=Comparator.GREATER_THAN, value="0")


def _create_payload(**overrides) -> RuleCreate:
    data = {
        "name": "Bank to ERP exact",
        "description": "Same amount on both sides",
        "conditions": [POSITIVE],
        "match_configuration": ExactMatchConfig(key_fields=["amount"]),
        "priority": 3,
        "tags": ["bank", "erp"],
        "created_by": "analyst",
    }
    data.update(overrides)
    return RuleCreate(**data)


async def _active_rule(service: RuleService, **overrides):
    rule = await service.create_rule(_create_payload(**overrides))
    await service.submit_for_approval(rule.id, "analyst")
    await service.approve_rule(rule.id, "lead")
    return await service.activate_rule(rule.id, "lead")


class TestValidateRuleDefinition:
    def test_valid(self) -> None:
        assert validate_rule_definition("r", [POSITIVE], {"strategy": "exact"}, 5) == []

    def test_collects_every_problem(self) -> None:
        errors = validate_rule_definition("", [], {}, 11)
        assert errors == [
            "Rule name is required",
            "At least one condition is required",
            "Match strategy is required",
            "Priority must be between 1 and 10",
        ]

    def test_malformed_condition_and_configuration(self) -> None:
        errors = validate_rule_definition(
            "r",
            [{"field": "amount", "comparator": "equals"}],
            {"strategy": "fuzzy", "threshold": 150},
            None,
        )
        assert errors[0].startswith("Condition 1 is malformed")
        assert errors[1].startswith("Invalid match configuration")


@pytest.mark.asyncio
async def test_create_rule_starts_as_draft(store) -> None:
    service = RuleService(store)
    rule = await service.create_rule(_create_payload())

    assert rule.rule_number == "RUL-00001"
    assert rule.status == RuleStatus.DRAFT
    assert rule.version == 1
    assert rule.is_enabled is False
    assert rule.match_configuration == {"strategy": "exact", "key_fields": ["amount"]}

    versions = await service.list_versions(rule.id)
    assert [(v.version, v.change_type) for v in versions] == [(1, RuleChangeType.CREATED)]

    second = await service.create_rule(_create_payload(name="Second"))
    assert second.rule_number == "RUL-00002"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"name": "  "}, {"priority": 0}, {"conditions": [POSITIVE.model_copy(update={"value": "abc"})]}],
)
async def test_create_rule_validation(store, overrides) -> None:
    with pytest.raises(ValidationError):
        await RuleService(store).create_rule(_create_payload(**overrides))


@pytest.mark.asyncio
async def test_update_bumps_version_and_snapshots(store) -> None:
    service = RuleService(store)
    rule = await service.create_rule(_create_payload())

    updated = await service.update_rule(rule.id, RuleUpdate(priority=2, updated_by="analyst"))

    assert updated.version == 2
    assert updated.priority == 2
    versions = await service.list_versions(rule.id)
    assert versions[0].version == 2
    assert versions[0].previous_version == 1
    assert versions[0].change_description == "Updated priority"


@pytest.mark.asyncio
async def test_update_without_changes_keeps_version(store) -> None:
    service = RuleService(store)
    rule = await service.create_rule(_create_payload())
    unchanged = await service.update_rule(rule.id, RuleUpdate(priority=3, updated_by="analyst"))
    assert unchanged.version == 1
    assert len(await service.list_versions(rule.id)) == 1


@pytest.mark.asyncio
async def test_update_blocked_while_pending(store) -> None:
    service = RuleService(store)
    rule = await service.create_rule(_create_payload())
    await service.submit_for_approval(rule.id, "analyst")
    with pytest.raises(PreconditionError):
        await service.update_rule(rule.id, RuleUpdate(name="Renamed", updated_by="analyst"))


@pytest.mark.asyncio
async def test_approval_flow(store) -> None:
    service = RuleService(store)
    rule = await service.create_rule(_create_payload())

    request = await service.submit_for_approval(rule.id, "analyst", "please review")
    assert request.status == ApprovalStatus.PENDING
    assert {change["field"] for change in request.changes} == {
        "name",
        "description",
        "conditions",
        "match_configuration",
    }
    assert rule.status == RuleStatus.PENDING_APPROVAL
    assert await service.submit_for_approval(rule.id, "analyst") is request
    assert await service.list_pending_approvals() == [request]

    await service.approve_rule(rule.id, "lead", "looks good")
    assert rule.status == RuleStatus.APPROVED
    assert rule.approved_by == "lead"
    assert request.status == ApprovalStatus.APPROVED
    assert request.reviewed_by == "lead"
    assert await service.list_pending_approvals() == []

    active = await service.activate_rule(rule.id, "lead")
    assert active.status == RuleStatus.ACTIVE
    assert active.is_enabled is True
    assert await service.list_active_rules() == [rule]


@pytest.mark.asyncio
async def test_resubmission_lists_only_changed_fields(store) -> None:
    service = RuleService(store)
    rule = await _active_rule(service)
    await service.deactivate_rule(rule.id, "lead")
    await service.update_rule(rule.id, RuleUpdate(name="Renamed", updated_by="analyst"))

    request = await service.submit_for_approval(rule.id, "analyst")

    assert request.changes == [{"field": "name", "old_value": "Bank to ERP exact", "new_value": "Renamed"}]
    assert request.rule_version == 2


@pytest.mark.asyncio
async def test_reject_rule(store) -> None:
    service = RuleService(store)
    rule = await service.create_rule(_create_payload())
    await service.submit_for_approval(rule.id, "analyst")

    with pytest.raises(ValidationError):
        await service.reject_rule(rule.id, "lead", " ")
    rejected = await service.reject_rule(rule.id, "lead", "too broad")

    assert rejected.status == RuleStatus.REJECTED
    assert rejected.rejection_reason == "too broad"
    versions = await service.list_versions(rule.id)
    assert versions[0].change_type == RuleChangeType.REJECTED

    # A rejected rule can be fixed and resubmitted
    await service.update_rule(rule.id, RuleUpdate(priority=1, updated_by="analyst"))
    request = await service.submit_for_approval(rule.id, "analyst")
    assert request.status == ApprovalStatus.PENDING


@pytest.mark.asyncio
async def test_invalid_rule_cannot_be_submitted(store) -> None:
    service = RuleService(store)
    rule = await service.create_rule(_create_payload(conditions=[]))
    with pytest.raises(ValidationError) as exc_info:
        await service.submit_for_approval(rule.id, "analyst")
    assert "At least one condition is required" in exc_info.value.details["errors"]


@pytest.mark.asyncio
async def test_activation_requires_approval(store) -> None:
    service = RuleService(store)
    rule = await service.create_rule(_create_payload())
    with pytest.raises(PreconditionError):
        await service.activate_rule(rule.id, "lead")
    with pytest.raises(PreconditionError):
        await service.approve_rule(rule.id, "lead")


@pytest.mark.asyncio
async def test_toggle_flips_between_active_and_inactive(store) -> None:
    service = RuleService(store)
    rule = await _active_rule(service)

    toggled = await service.toggle_rule(rule.id, "lead")
    assert toggled.status == RuleStatus.INACTIVE
    assert toggled.is_enabled is False
    assert await service.list_active_rules() == []

    toggled = await service.toggle_rule(rule.id, "lead")
    assert toggled.status == RuleStatus.ACTIVE
    change_types = [version.change_type for version in await service.list_versions(rule.id)]
    assert change_types[:3] == [RuleChangeType.ACTIVATED, RuleChangeType.DEACTIVATED, RuleChangeType.ACTIVATED]


@pytest.mark.asyncio
async def test_update_active_rule_is_revalidated(store) -> None:
    service = RuleService(store)
    rule = await _active_rule(service)
    with pytest.raises(ValidationError):
        await service.update_rule(rule.id, RuleUpdate(conditions=[], updated_by="analyst"))

    updated = await service.update_rule(
        rule.id,
        RuleUpdate(match_configuration=FuzzyMatchConfig(threshold=90), updated_by="analyst"),
    )
    assert updated.match_configuration["strategy"] == "fuzzy"
    assert updated.status == RuleStatus.ACTIVE


@pytest.mark.asyncio
async def test_list_rules_filters_and_sorts(store) -> None:
    service = RuleService(store)
    first = await service.create_rule(_create_payload(name="Card settlements", priority=4, tags=["card"]))
    second = await service.create_rule(_create_payload(name="Wire transfers", priority=2, tags=["wire"]))

    assert await service.list_rules() == [second, first]
    assert await service.list_rules(tags=["card"]) == [first]
    assert await service.list_rules(search="wire") == [second]
    assert await service.list_rules(sort_by="name", sort_order="desc") == [second, first]
    assert await service.list_rules(statuses=[RuleStatus.ACTIVE]) == []
    assert await service.list_tags() == ["card", "wire"]
    with pytest.raises(ValidationError):
        await service.list_rules(sort_by="conditions")


@pytest.mark.asyncio
async def test_test_rule_trace(store) -> None:
    service = RuleService(store)
    rule = await service.create_rule(_create_payload())
    explanation = await service.test_rule(rule.id, {"amount": "12.50"})
    assert explanation.matched is True
    assert [step.passed for step in explanation.steps] == [True]


@pytest.mark.asyncio
async def test_record_outcome(store) -> None:
    service = RuleService(store)
    rule = await service.create_rule(_create_payload())
    await service.record_outcome(rule.id, applied=3, matched=2)
    assert rule.times_applied == 3
    assert rule.successful_matches == 2
    assert rule.last_applied_at is not None


@pytest.mark.asyncio
async def test_delete_rule(store) -> None:
    service = RuleService(store)
    rule = await service.create_rule(_create_payload())
    await service.delete_rule(rule.id)
    with pytest.raises(NotFoundError):
        await service.get_rule(rule.id)
    with pytest.raises(NotFoundError):
        await service.delete_rule(rule.id)


def test_validate_payload(store) -> None:
    errors = RuleService(store).validate(RuleValidateRequest(name="r"))
    assert errors == ["At least one condition is required", "Match strategy is required"]
