"""Matching rules API router."""

from typing import Literal

from fastapi import APIRouter, Query, status

from recon_matching.deps import Store
from recon_matching.models import RuleStatus
from recon_matching.schemas.base import ListResponse
from recon_matching.schemas.rules import (
    ApprovalRequestResponse,
    ConditionTrace,
    RuleCreate,
    RuleDecisionRequest,
    RuleRejectRequest,
    RuleResponse,
    RuleSubmitRequest,
    RuleTestRequest,
    RuleTestResponse,
    RuleToggleRequest,
    RuleUpdate,
    RuleValidateRequest,
    RuleValidationResponse,
    RuleVersionResponse,
)
from recon_matching.services.errors import MatchingError
from recon_matching.services.rules import RuleService
from recon_matching.utils import raise_matching_error

router = APIRouter(prefix="/rules", tags=["rules"])


@router.get("", response_model=ListResponse[RuleResponse])
async def list_rules(
    store: Store,
    rule_status: list[RuleStatus] | None = Query(default=None, alias="status"),
    is_enabled: bool | None = Query(default=None),
    tags: list[str] | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    sort_by: str | None = Query(default=None),
    sort_order: Literal["asc", "desc"] = Query(default="asc"),
) -> ListResponse[RuleResponse]:
    try:
        rules = await RuleService(store).list_rules(
            statuses=rule_status,
            is_enabled=is_enabled,
            tags=tags,
            search=search,
            sort_by=sort_by,
            sort_order=sort_order,
        )
    except MatchingError as exc:
        raise_matching_error(exc)
    return ListResponse[RuleResponse](items=[RuleResponse.model_validate(rule) for rule in rules], total=len(rules))


@router.post("", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(payload: RuleCreate, store: Store) -> RuleResponse:
    try:
        rule = await RuleService(store).create_rule(payload)
    except MatchingError as exc:
        raise_matching_error(exc)
    return RuleResponse.model_validate(rule)


@router.get("/approvals", response_model=list[ApprovalRequestResponse])
async def list_pending_approvals(store: Store) -> list[ApprovalRequestResponse]:
    requests = await RuleService(store).list_pending_approvals()
    return [ApprovalRequestResponse.model_validate(request) for request in requests]


@router.get("/tags", response_model=list[str])
async def list_tags(store: Store) -> list[str]:
    return await RuleService(store).list_tags()


@router.post("/validate", response_model=RuleValidationResponse)
async def validate_rule(payload: RuleValidateRequest, store: Store) -> RuleValidationResponse:
    errors = RuleService(store).validate(payload)
    return RuleValidationResponse(valid=not errors, errors=errors)


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: str, store: Store) -> RuleResponse:
    try:
        rule = await RuleService(store).get_rule(rule_id)
    except MatchingError as exc:
        raise_matching_error(exc)
    return RuleResponse.model_validate(rule)


@router.put("/{rule_id}", response_model=RuleResponse)
async def update_rule(rule_id: str, payload: RuleUpdate, store: Store) -> RuleResponse:
    try:
        rule = await RuleService(store).update_rule(rule_id, payload)
    except MatchingError as exc:
        raise_matching_error(exc)
    return RuleResponse.model_validate(rule)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: str, store: Store) -> None:
    try:
        await RuleService(store).delete_rule(rule_id)
    except MatchingError as exc:
        raise_matching_error(exc)


@router.post("/{rule_id}/toggle", response_model=RuleResponse)
async def toggle_rule(rule_id: str, payload: RuleToggleRequest, store: Store) -> RuleResponse:
    try:
        rule = await RuleService(store).toggle_rule(rule_id, payload.actor)
    except MatchingError as exc:
        raise_matching_error(exc)
    return RuleResponse.model_validate(rule)


@router.post("/{rule_id}/submit", response_model=ApprovalRequestResponse)
async def submit_rule(rule_id: str, payload: RuleSubmitRequest, store: Store) -> ApprovalRequestResponse:
    try:
        request = await RuleService(store).submit_for_approval(rule_id, payload.requested_by, payload.comments)
    except MatchingError as exc:
        raise_matching_error(exc)
    return ApprovalRequestResponse.model_validate(request)


@router.post("/{rule_id}/approve", response_model=RuleResponse)
async def approve_rule(rule_id: str, payload: RuleDecisionRequest, store: Store) -> RuleResponse:
    try:
        rule = await RuleService(store).approve_rule(rule_id, payload.actor, payload.comments)
    except MatchingError as exc:
        raise_matching_error(exc)
    return RuleResponse.model_validate(rule)


@router.post("/{rule_id}/reject", response_model=RuleResponse)
async def reject_rule(rule_id: str, payload: RuleRejectRequest, store: Store) -> RuleResponse:
    try:
        rule = await RuleService(store).reject_rule(rule_id, payload.actor, payload.reason)
    except MatchingError as exc:
        raise_matching_error(exc)
    return RuleResponse.model_validate(rule)


@router.get("/{rule_id}/versions", response_model=list[RuleVersionResponse])
async def list_versions(rule_id: str, store: Store) -> list[RuleVersionResponse]:
    try:
        versions = await RuleService(store).list_versions(rule_id)
    except MatchingError as exc:
        raise_matching_error(exc)
    return [RuleVersionResponse.model_validate(version) for version in versions]


@router.post("/{rule_id}/test", response_model=RuleTestResponse)
async def test_rule(rule_id: str, payload: RuleTestRequest, store: Store) -> RuleTestResponse:
    try:
        explanation = await RuleService(store).test_rule(rule_id, payload.sample)
    except MatchingError as exc:
        raise_matching_error(exc)
    return RuleTestResponse(
        matched=explanation.matched,
        details=explanation.details,
        trace=[
            ConditionTrace(
                index=step.index,
                field=step.condition.field,
                comparator=step.condition.comparator,
                passed=step.passed,
                running_result=step.running_result,
            )
            for step in explanation.steps
        ],
    )
