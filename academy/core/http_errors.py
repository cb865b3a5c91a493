from __future__ import annotations

from fastapi import HTTPException

from academy.core.errors import AcademyError, InvalidRange, NotFound


def to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=exc.to_dict())
    if isinstance(exc, InvalidRange):
        return HTTPException(status_code=422, detail=exc.to_dict())
    if isinstance(exc, AcademyError):
        return HTTPException(status_code=409, detail=exc.to_dict())
    if isinstance(exc, PermissionError):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
