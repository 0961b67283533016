from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from automation.context import get_correlation_id
from automation.core.config import get_settings
from automation.jobs.models import COMPLETED, FAILED, PENDING, PROCESSING, AutomationJob
from automation.metrics import observe_expired_leases, observe_job_claims, observe_job_enqueued
from automation.workflows.errors import PersistenceError
from automation.workflows.models import utcnow


logger = logging.getLogger("automation.jobs")
tracer = trace.get_tracer("automation.jobs")

_MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class ClaimedJob:
    """A job a worker holds between claim and complete/fail."""

    id: uuid.UUID
    job_type: str
    tenant_id: uuid.UUID
    payload: dict[str, Any]
    claim_token: uuid.UUID
    claimed_by: str
    correlation_id: str | None
    created_at: datetime
    started_at: datetime


def add_job(
    session: Session,
    job_type: str,
    payload: dict[str, Any],
    tenant_id: uuid.UUID,
    *,
    dedupe_key: str | None = None,
    correlation_id: str | None = None,
) -> tuple[uuid.UUID, bool]:
    """Stage a Pending job in the caller's transaction.

    Returns the job id and whether a new row was added. A job that already
    carries ``dedupe_key`` is returned as-is.
    """
    if dedupe_key is not None:
        existing = session.scalar(select(AutomationJob.id).where(AutomationJob.dedupe_key == dedupe_key))
        if existing is not None:
            return existing, False

    job = AutomationJob(
        job_type=job_type,
        tenant_id=tenant_id,
        status=PENDING,
        payload_json=json.dumps(payload, default=str),
        dedupe_key=dedupe_key,
        correlation_id=correlation_id or get_correlation_id(),
    )
    session.add(job)
    session.flush()
    observe_job_enqueued(job_type)
    logger.info(
        "job.enqueued",
        extra={"job_id": str(job.id), "job_type": job_type, "tenant_id": str(tenant_id), "status": PENDING},
    )
    return job.id, True


class JobQueue:
    def __init__(self, session_factory: Callable[[], Session], *, lease_seconds: int | None = None) -> None:
        self._session_factory = session_factory
        self.lease_seconds = lease_seconds if lease_seconds is not None else get_settings().job_lease_seconds

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        tenant_id: uuid.UUID,
        *,
        dedupe_key: str | None = None,
        correlation_id: str | None = None,
    ) -> uuid.UUID:
        with self._session_factory() as session:
            try:
                job_id, _ = add_job(
                    session,
                    job_type,
                    payload,
                    tenant_id,
                    dedupe_key=dedupe_key,
                    correlation_id=correlation_id,
                )
                session.commit()
                return job_id
            except IntegrityError as exc:
                session.rollback()
                # Lost a race with another producer using the same dedupe key.
                existing = (
                    session.scalar(select(AutomationJob.id).where(AutomationJob.dedupe_key == dedupe_key))
                    if dedupe_key is not None
                    else None
                )
                if existing is None:
                    raise PersistenceError("enqueue", exc) from exc
                return existing
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError("enqueue", exc) from exc

    def claim(self, batch_size: int, worker_id: str) -> list[ClaimedJob]:
        """Move up to ``batch_size`` Pending jobs to Processing for ``worker_id``.

        Candidate rows are selected with ``FOR UPDATE SKIP LOCKED`` and each one
        is then flipped with an update guarded on ``status = Pending``, so a row
        can only ever be handed to one caller even on stores without row locks.
        """
        if batch_size <= 0:
            return []

        now = utcnow()
        lease_until = now + timedelta(seconds=self.lease_seconds)
        with tracer.start_as_current_span("jobs.claim") as span, self._session_factory() as session:
            span.set_attribute("worker_id", worker_id)
            try:
                candidate_ids = session.scalars(
                    select(AutomationJob.id)
                    .where(AutomationJob.status == PENDING)
                    .order_by(AutomationJob.created_at, AutomationJob.id)
                    .limit(batch_size)
                    .with_for_update(skip_locked=True)
                ).all()

                tokens: dict[uuid.UUID, uuid.UUID] = {}
                for job_id in candidate_ids:
                    token = uuid.uuid4()
                    result = session.execute(
                        update(AutomationJob)
                        .where(AutomationJob.id == job_id, AutomationJob.status == PENDING)
                        .values(
                            status=PROCESSING,
                            started_at=now,
                            claimed_by=worker_id,
                            claim_token=token,
                            lease_expires_at=lease_until,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        tokens[job_id] = token

                rows = (
                    session.scalars(select(AutomationJob).where(AutomationJob.id.in_(list(tokens)))).all()
                    if tokens
                    else []
                )
                claimed = [
                    ClaimedJob(
                        id=row.id,
                        job_type=row.job_type,
                        tenant_id=row.tenant_id,
                        payload=row.payload,
                        claim_token=tokens[row.id],
                        claimed_by=worker_id,
                        correlation_id=row.correlation_id,
                        created_at=row.created_at,
                        started_at=now,
                    )
                    for row in rows
                ]
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError("claim", exc) from exc

            span.set_attribute("claimed", len(claimed))

        claimed.sort(key=lambda job: (job.created_at, str(job.id)))
        observe_job_claims(len(claimed))
        if claimed:
            logger.info("job.claimed", extra={"worker_id": worker_id, "claimed": len(claimed)})
        return claimed

    def complete(
        self,
        job_id: uuid.UUID,
        result: dict[str, Any] | None = None,
        *,
        claim_token: uuid.UUID | None = None,
    ) -> bool:
        return self._finish(job_id, COMPLETED, result=result, error=None, claim_token=claim_token)

    def fail(
        self,
        job_id: uuid.UUID,
        error: str,
        *,
        result: dict[str, Any] | None = None,
        claim_token: uuid.UUID | None = None,
    ) -> bool:
        return self._finish(job_id, FAILED, result=result, error=error or "job failed", claim_token=claim_token)

    def release(self, jobs: list[ClaimedJob]) -> int:
        """Hand claimed but unstarted jobs back to Pending.

        Each row is reset only while it is still Processing under the caller's
        claim token, so a job the lease sweep already failed stays failed.
        """
        if not jobs:
            return 0

        released = 0
        with self._session_factory() as session:
            try:
                for job in jobs:
                    outcome = session.execute(
                        update(AutomationJob)
                        .where(
                            AutomationJob.id == job.id,
                            AutomationJob.status == PROCESSING,
                            AutomationJob.claim_token == job.claim_token,
                        )
                        .values(
                            status=PENDING,
                            started_at=None,
                            claimed_by=None,
                            claim_token=None,
                            lease_expires_at=None,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    released += outcome.rowcount or 0
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError("release jobs", exc) from exc

        if released:
            logger.info("job.released", extra={"worker_id": jobs[0].claimed_by, "claimed": released, "status": PENDING})
        return released

    def _finish(
        self,
        job_id: uuid.UUID,
        status: str,
        *,
        result: dict[str, Any] | None,
        error: str | None,
        claim_token: uuid.UUID | None,
    ) -> bool:
        """Processing -> terminal. Jobs that are not Processing, or held under another token, are left alone."""
        conditions = [AutomationJob.id == job_id, AutomationJob.status == PROCESSING]
        if claim_token is not None:
            conditions.append(AutomationJob.claim_token == claim_token)

        with self._session_factory() as session:
            try:
                outcome = session.execute(
                    update(AutomationJob)
                    .where(*conditions)
                    .values(
                        status=status,
                        completed_at=utcnow(),
                        error=error[:_MAX_ERROR_LENGTH] if error else None,
                        result_json=json.dumps(result, default=str) if result is not None else None,
                        lease_expires_at=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"mark job {status.lower()}", exc) from exc

        transitioned = outcome.rowcount == 1
        if not transitioned:
            logger.info("job.finish_ignored", extra={"job_id": str(job_id), "status": status})
        return transitioned

    def fail_expired_leases(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self._session_factory() as session:
            try:
                outcome = session.execute(
                    update(AutomationJob)
                    .where(
                        AutomationJob.status == PROCESSING,
                        AutomationJob.lease_expires_at.is_not(None),
                        AutomationJob.lease_expires_at < now,
                    )
                    .values(status=FAILED, completed_at=now, error="lease expired before the job finished", lease_expires_at=None)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError("expire leases", exc) from exc

        expired = outcome.rowcount or 0
        if expired:
            observe_expired_leases(expired)
            logger.warning("job.leases_expired", extra={"claimed": expired, "status": FAILED})
        return expired

    def get(self, job_id: uuid.UUID) -> AutomationJob | None:
        with self._session_factory() as session:
            try:
                return session.get(AutomationJob, job_id)
            except SQLAlchemyError as exc:
                raise PersistenceError("get job", exc) from exc

    def list_for_tenant(
        self,
        tenant_id: uuid.UUID,
        *,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
    ) -> list[AutomationJob]:
        with self._session_factory() as session:
            return list_jobs(session, tenant_id, status=status, job_type=job_type, limit=limit)


def list_jobs(
    session: Session,
    tenant_id: uuid.UUID,
    *,
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 50,
) -> list[AutomationJob]:
    stmt = select(AutomationJob).where(AutomationJob.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(AutomationJob.status == status)
    if job_type is not None:
        stmt = stmt.where(AutomationJob.job_type == job_type)
    stmt = stmt.order_by(AutomationJob.created_at.desc(), AutomationJob.id).limit(limit)
    try:
        return list(session.scalars(stmt).all())
    except SQLAlchemyError as exc:
        raise PersistenceError("list jobs", exc) from exc
