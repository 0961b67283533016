from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from automation.context import get_correlation_id
from automation.workflows.errors import GraphNotFoundError, PersistenceError, WorkflowEngineError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or request.headers.get("x-correlation-id")
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def engine_error_response(request: Request, exc: WorkflowEngineError) -> JSONResponse:
    if isinstance(exc, GraphNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, PersistenceError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return error_response(request, status_code=status_code, code=exc.code, message=exc.message, details=exc.to_dict())


def parse_tenant_id(raw: str | None) -> uuid.UUID:
    if not raw:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="x-tenant-id header is required")
    try:
        return uuid.UUID(raw)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="x-tenant-id must be a UUID") from exc
