"""Structured response envelope for every domain route.

Success::

    {"success": true, "message": "...", "data": {...}}

Failure::

    {"success": false, "error": "...", "error_kind": "ConflictError", "data": {...}}

``data`` on a failure carries the exception's context attributes (field,
entity, current status, conversion issues) when there are any.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from activity_harvester.core.exceptions import (
    ConflictError,
    ConversionError,
    ExtractionError,
    HarvesterError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)

#: HTTP status per error class; the first ``isinstance`` match wins.
ERROR_STATUS: tuple[tuple[type[HarvesterError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ConversionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ExtractionError, status.HTTP_502_BAD_GATEWAY),
    (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for(exc: HarvesterError) -> int:
    for cls, code in ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def success(
    data: Any = None,
    message: Optional[str] = None,
    status_code: int = status.HTTP_200_OK,
) -> JSONResponse:
    body: dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = jsonable_encoder(data)
    return JSONResponse(body, status_code=status_code)


def failure(
    error: str,
    error_kind: str,
    status_code: int,
    data: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "error": error, "error_kind": error_kind}
    if data:
        body["data"] = jsonable_encoder(data)
    return JSONResponse(body, status_code=status_code)


def error_context(exc: HarvesterError) -> dict[str, Any]:
    """Context attributes of *exc* worth returning to the caller."""
    context: dict[str, Any] = {}
    for attr in ("field", "entity", "entity_id", "current_status", "status_code"):
        value = getattr(exc, attr, None)
        if value is not None:
            context[attr] = value
    if isinstance(exc, ConversionError):
        context["issues"] = exc.issues
        context.update(exc.details)
    return context


def from_exception(exc: HarvesterError) -> JSONResponse:
    return failure(str(exc), exc.kind, status_for(exc), error_context(exc))
