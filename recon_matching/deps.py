"""Common FastAPI dependencies for consistent type annotations.

Usage:
    from recon_matching.deps import Store

    async def my_endpoint(store: Store):
        # store is the MatchStore selected by STORE_BACKEND
        ...
"""

from datetime import date
from decimal import Decimal
from typing import Annotated, Literal

from fastapi import Depends, Query

from recon_matching.database import get_store
from recon_matching.models import MatchStatus, MatchType, TransactionSource
from recon_matching.schemas.base import Pagination
from recon_matching.schemas.matching import TransactionFilters
from recon_matching.services.store import MatchStore


def get_filters(
    status: list[MatchStatus] | None = Query(default=None),
    match_type: list[MatchType] | None = Query(default=None),
    source: list[TransactionSource] | None = Query(default=None),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    amount_min: Decimal | None = Query(default=None),
    amount_max: Decimal | None = Query(default=None),
    partner_id: str | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
) -> TransactionFilters:
    return TransactionFilters(
        status=status or [],
        match_type=match_type or [],
        source=source or [],
        date_from=date_from,
        date_to=date_to,
        amount_min=amount_min,
        amount_max=amount_max,
        partner_id=partner_id,
        search=search,
    )


def get_pagination(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=500),
    sort_by: str | None = Query(default=None),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
) -> Pagination:
    return Pagination(page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order)


Store = Annotated[MatchStore, Depends(get_store)]
Filters = Annotated[TransactionFilters, Depends(get_filters)]
Paging = Annotated[Pagination, Depends(get_pagination)]

__all__ = ["Filters", "Paging", "Store"]
