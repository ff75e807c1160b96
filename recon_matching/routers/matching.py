"""Matching API router: pools, suggestions, groups and batch runs."""

import csv
from io import StringIO

from fastapi import APIRouter, Query, status
from fastapi.responses import StreamingResponse

from recon_matching.deps import Filters, Paging, Store
from recon_matching.logger import get_logger
from recon_matching.schemas.base import PaginatedResponse, Pagination
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
    TransactionResponse,
    UnmatchResponse,
)
from recon_matching.services.batch_matching import BatchMatchingService, BatchRunResult
from recon_matching.services.errors import MatchingError
from recon_matching.services.lifecycle import GroupView, MatchLifecycleService
from recon_matching.services.rule_evaluator import parse_match_configuration
from recon_matching.utils import raise_matching_error

router = APIRouter(prefix="/matching", tags=["matching"])
logger = get_logger(__name__)


def _group_response(view: GroupView) -> MatchGroupResponse:
    return MatchGroupResponse.model_validate(view.group).model_copy(
        update={"transactions": [TransactionResponse.model_validate(txn) for txn in view.transactions]}
    )


def _batch_response(result: BatchRunResult, lifecycle_views: list[GroupView]) -> BatchRunResponse:
    return BatchRunResponse(
        groups=[_group_response(view) for view in lifecycle_views],
        outcomes=[
            ItemOutcomeResponse(
                partition=outcome.partition,
                transaction_ids=outcome.transaction_ids,
                status=outcome.status,
                error_kind=outcome.error_kind.value if outcome.error_kind else None,
                message=outcome.message,
                group_id=outcome.group_id,
            )
            for outcome in result.outcomes
        ],
        partitions_evaluated=result.partitions_evaluated,
        timed_out=result.timed_out,
        run_id=result.run_id,
    )


async def _views(service: MatchLifecycleService, result: BatchRunResult) -> list[GroupView]:
    return [await service.get_group_view(group.id) for group in result.groups]


@router.get("/unmatched", response_model=PaginatedResponse[TransactionResponse])
async def list_unmatched(store: Store, filters: Filters, pagination: Paging) -> PaginatedResponse[TransactionResponse]:
    try:
        items, total = await MatchLifecycleService(store).list_unmatched(filters, pagination)
    except MatchingError as exc:
        raise_matching_error(exc)
    return PaginatedResponse[TransactionResponse].build(
        [TransactionResponse.model_validate(txn) for txn in items],
        total=total,
        pagination=pagination,
    )


@router.get("/matched", response_model=PaginatedResponse[MatchGroupResponse])
async def list_matched(store: Store, filters: Filters, pagination: Paging) -> PaginatedResponse[MatchGroupResponse]:
    try:
        views, total = await MatchLifecycleService(store).list_matched(filters, pagination)
    except MatchingError as exc:
        raise_matching_error(exc)
    return PaginatedResponse[MatchGroupResponse].build(
        [_group_response(view) for view in views],
        total=total,
        pagination=pagination,
    )


@router.get("/statistics", response_model=MatchStatisticsResponse)
async def get_statistics(store: Store) -> MatchStatisticsResponse:
    stats = await MatchLifecycleService(store).get_statistics()
    return MatchStatisticsResponse.model_validate(stats, from_attributes=True)


@router.get("/export")
async def export_matched(store: Store, filters: Filters) -> StreamingResponse:
    """Export match groups as CSV, one row per member transaction."""
    service = MatchLifecycleService(store)
    views: list[GroupView] = []
    page = 1
    while True:
        batch, total = await service.list_matched(filters, Pagination(page=page, page_size=500, sort_order="asc"))
        views.extend(batch)
        if len(views) >= total or not batch:
            break
        page += 1

    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        [
            "match_number",
            "match_type",
            "status",
            "confidence",
            "variance",
            "variance_percentage",
            "transaction_number",
            "source",
            "date",
            "amount",
            "currency",
            "reference",
        ]
    )
    for view in views:
        group = view.group
        for txn in view.transactions:
            writer.writerow(
                [
                    group.match_number,
                    group.match_type.value,
                    group.status.value,
                    group.match_confidence,
                    group.variance,
                    "" if group.variance_percentage is None else group.variance_percentage,
                    txn.transaction_number,
                    txn.source.value,
                    txn.txn_date.isoformat(),
                    txn.amount,
                    txn.currency,
                    txn.reference or "",
                ]
            )

    content = output.getvalue()
    output.close()
    logger.info("Matches exported", groups=len(views))
    return StreamingResponse(
        StringIO(content),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=matched-transactions.csv"},
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(transaction_id: str, store: Store) -> TransactionResponse:
    try:
        txn = await MatchLifecycleService(store).get_transaction(transaction_id)
    except MatchingError as exc:
        raise_matching_error(exc)
    return TransactionResponse.model_validate(txn)


@router.get("/transactions/{transaction_id}/suggestions", response_model=PotentialMatchResponse)
async def suggest_matches(
    transaction_id: str,
    store: Store,
    limit: int | None = Query(default=None, ge=1, le=100),
) -> PotentialMatchResponse:
    try:
        suggestion = await MatchLifecycleService(store).suggest(transaction_id, limit)
    except MatchingError as exc:
        raise_matching_error(exc)
    return PotentialMatchResponse(
        source_transaction=TransactionResponse.model_validate(suggestion.source_transaction),
        candidates=[
            CandidateResponse(
                transaction=TransactionResponse.model_validate(candidate.transaction),
                confidence=candidate.confidence,
                match_reasons=candidate.match_reasons,
            )
            for candidate in suggestion.candidates
        ],
        suggested_match_type=suggestion.suggested_match_type,
        overall_confidence=suggestion.overall_confidence,
    )


@router.post("/manual", response_model=MatchGroupResponse, status_code=status.HTTP_201_CREATED)
async def create_manual_match(payload: ManualMatchRequest, store: Store) -> MatchGroupResponse:
    service = MatchLifecycleService(store)
    try:
        group = await service.create_manual_match(
            payload.transaction_ids,
            payload.created_by,
            idempotency_key=payload.idempotency_key,
        )
        view = await service.get_group_view(group.id)
    except MatchingError as exc:
        raise_matching_error(exc)
    return _group_response(view)


@router.post("/n-way", response_model=BatchRunResponse)
async def run_n_way(payload: NWayRunRequest, store: Store) -> BatchRunResponse:
    batch = BatchMatchingService(store)
    try:
        config = parse_match_configuration(
            {
                "strategy": "n_way",
                "key_fields": payload.key_fields,
                "tolerance": payload.tolerance.model_dump(),
                "min_confidence": payload.min_confidence,
            }
        )
        result = await batch.run_n_way(
            config,
            sources=payload.sources,
            timeout_seconds=payload.timeout_seconds,
            created_by=payload.created_by,
        )
        views = await _views(batch.lifecycle, result)
    except MatchingError as exc:
        raise_matching_error(exc)
    return _batch_response(result, views)


@router.post("/auto", response_model=BatchRunResponse)
async def run_auto_match(payload: AutoMatchRunRequest, store: Store) -> BatchRunResponse:
    batch = BatchMatchingService(store)
    try:
        result = await batch.run_auto_match(sources=payload.sources, created_by=payload.created_by)
        views = await _views(batch.lifecycle, result)
    except MatchingError as exc:
        raise_matching_error(exc)
    return _batch_response(result, views)


@router.get("/groups/{group_id}", response_model=MatchGroupResponse)
async def get_group(group_id: str, store: Store) -> MatchGroupResponse:
    try:
        view = await MatchLifecycleService(store).get_group_view(group_id)
    except MatchingError as exc:
        raise_matching_error(exc)
    return _group_response(view)


@router.post("/groups/{group_id}/review", response_model=MatchGroupResponse)
async def start_review(group_id: str, store: Store) -> MatchGroupResponse:
    service = MatchLifecycleService(store)
    try:
        await service.start_review(group_id)
        view = await service.get_group_view(group_id)
    except MatchingError as exc:
        raise_matching_error(exc)
    return _group_response(view)


@router.post("/groups/{group_id}/approve", response_model=MatchGroupResponse)
async def approve_group(group_id: str, payload: ApproveRequest, store: Store) -> MatchGroupResponse:
    service = MatchLifecycleService(store)
    try:
        await service.approve(group_id, payload.approver)
        view = await service.get_group_view(group_id)
    except MatchingError as exc:
        raise_matching_error(exc)
    return _group_response(view)


@router.post("/groups/{group_id}/reject", response_model=MatchGroupResponse)
async def reject_group(group_id: str, payload: RejectRequest, store: Store) -> MatchGroupResponse:
    service = MatchLifecycleService(store)
    try:
        await service.reject(group_id, payload.rejecter, payload.reason)
        view = await service.get_group_view(group_id)
    except MatchingError as exc:
        raise_matching_error(exc)
    return _group_response(view)


@router.delete("/groups/{group_id}", response_model=UnmatchResponse)
async def unmatch_group(group_id: str, store: Store) -> UnmatchResponse:
    """Delete a group and release its transactions. Unknown ids succeed with nothing released."""
    released = await MatchLifecycleService(store).unmatch(group_id)
    return UnmatchResponse(group_id=group_id, released_transaction_ids=released)
