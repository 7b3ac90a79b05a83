from typing import NoReturn

from fastapi import HTTPException

from app.services.errors import (
    InvalidTransitionError,
    LockConflictError,
    MarketplaceError,
    NotFoundError,
    PermissionDeniedError,
    StorageFailureError,
)


def raise_http_error(exc: MarketplaceError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (LockConflictError, InvalidTransitionError)):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StorageFailureError):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))
