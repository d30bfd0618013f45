from typing import NoReturn

from fastapi import HTTPException

from app.services.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ServiceError,
    TransientIOError,
)


def raise_service_http_error(exc: ServiceError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (ConflictError, InvalidTransitionError)):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransientIOError):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))
