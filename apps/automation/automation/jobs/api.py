from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from automation.api.errors import engine_error_response, error_response, parse_tenant_id
from automation.core.database import get_db
from automation.jobs.models import JOB_STATUSES, AutomationJob
from automation.jobs.queue import list_jobs
from automation.jobs.schemas import JobRead
from automation.workflows.errors import WorkflowEngineError

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("", response_model=list[JobRead])
def list_automation_jobs(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    job_type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    x_tenant_id: str | None = Header(default=None),
) -> list[JobRead] | JSONResponse:
    try:
        tenant_id = parse_tenant_id(x_tenant_id)
        if status_filter is not None and status_filter not in JOB_STATUSES:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"unknown status '{status_filter}'")
        rows = list_jobs(db, tenant_id, status=status_filter, job_type=job_type, limit=limit)
        return [JobRead.model_validate(row) for row in rows]
    except WorkflowEngineError as exc:
        return engine_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="job_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/{job_id}", response_model=JobRead)
def get_automation_job(
    request: Request,
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    x_tenant_id: str | None = Header(default=None),
) -> JobRead | JSONResponse:
    try:
        tenant_id = parse_tenant_id(x_tenant_id)
        job = db.get(AutomationJob, job_id)
        if job is None or job.tenant_id != tenant_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
        return JobRead.model_validate(job)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="job_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
