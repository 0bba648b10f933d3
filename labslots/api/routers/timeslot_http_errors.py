from typing import NoReturn

from fastapi import HTTPException, status

from labslots.core.timeslots import (
    InvalidDateError,
    SlotAlreadyProcessedError,
    SlotNotFoundError,
    SlotOwnershipError,
    SlotRepositoryError,
    SlotValidationError,
)

HTTP_422_UNPROCESSABLE = getattr(
    status,
    "HTTP_422_UNPROCESSABLE_CONTENT",
    status.HTTP_422_UNPROCESSABLE_ENTITY,
)


def raise_timeslot_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, SlotValidationError):
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail=exc.to_detail()) from exc
    if isinstance(exc, InvalidDateError):
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail=str(exc)) from exc
    if isinstance(exc, SlotNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, SlotAlreadyProcessedError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, SlotOwnershipError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, SlotRepositoryError):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="REPOSITORY_FAILURE",
        ) from exc
    raise exc
