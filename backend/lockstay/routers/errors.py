"""
领域错误 -> HTTP 错误
"""
from fastapi import HTTPException, status

from lockstay.services.errors import (
    BookingDomainError, ConflictError, InvalidTransitionError,
    NotFoundError, StoreUnavailableError,
)


def to_http_exception(e: Exception) -> HTTPException:
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={
            "code": e.code,
            "message": e.message,
            "current": getattr(e.current, "value", e.current),
            "requested": e.requested,
        })
    if isinstance(e, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    if isinstance(e, StoreUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    if isinstance(e, BookingDomainError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
