"""Common exception utilities for FastAPI routers."""

from typing import NoReturn

from fastapi import HTTPException, status
from fastapi.encoders import jsonable_encoder

from recon_matching.services.errors import ErrorKind, MatchingError

ERROR_KIND_STATUS = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.PRECONDITION: status.HTTP_409_CONFLICT,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


def raise_matching_error(exc: MatchingError) -> NoReturn:
    """Translate a matching error into an HTTP error carrying its kind.

    Precondition and conflict both map to 409; clients tell them apart by ``kind``.
    """
    raise HTTPException(
        status_code=ERROR_KIND_STATUS.get(exc.kind, status.HTTP_400_BAD_REQUEST),
        detail=jsonable_encoder({"kind": exc.kind.value, "message": exc.message, "details": exc.details}),
    ) from exc
