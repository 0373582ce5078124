"""Durable job queue on top of a relational table.

Claiming is atomic per row: a candidate is only returned when the
conditional ``UPDATE ... WHERE status = 'pending'`` affected exactly that
row, so racing workers can never both claim it. The advisory lock in
``coordination`` throttles draining on top of this.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Generic, TypeVar

from sqlalchemy import func, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from chatppc.config import Settings
from chatppc.models.job import ACTIVE_JOB_STATUSES, JobStatus, QueueJobBase

logger = logging.getLogger(__name__)

JobT = TypeVar("JobT", bound=QueueJobBase)

_ERROR_MAX_CHARS = 2000


class EnqueueOutcome(str, Enum):
    QUEUED = "queued"
    DUPLICATE = "duplicate"
    FULL = "full"


@dataclass(frozen=True, slots=True)
class ClaimedJob:
    """Snapshot of a job row taken at claim time."""

    id: str
    source_message_id: str
    target_key: str
    username: str
    message: str
    image_urls: list[str]
    attempts: int
    provider: str | None = None


@dataclass(frozen=True, slots=True)
class QueueRunResult:
    processed: int
    lock_skipped: bool

    def as_dict(self) -> dict:
        return {"processed": self.processed, "lockSkipped": self.lock_skipped}


class JobStore(Generic[JobT]):
    """Queue operations for one job table."""

    __slots__ = ("_engine", "_model", "_max_attempts", "_settings")

    def __init__(
        self,
        engine: Engine,
        model: type[JobT],
        settings: Settings,
        max_attempts: int,
    ) -> None:
        self._engine = engine
        self._model = model
        self._settings = settings
        self._max_attempts = max_attempts

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    # ── enqueue ──────────────────────────────────────────────────

    def enqueue(
        self,
        *,
        source_message_id: str,
        target_key: str,
        username: str,
        message: str,
        image_urls: list[str],
        max_active: int | None = None,
        **extra: str,
    ) -> EnqueueOutcome:
        """Insert a pending job unless a live one exists for the same target.

        With ``max_active`` set, the insert is skipped when that many jobs for
        ``target_key`` are already pending or processing.
        """
        if max_active is not None and self.count_active(target_key) >= max_active:
            return EnqueueOutcome.FULL

        job = self._model(
            source_message_id=source_message_id,
            target_key=target_key,
            username=username,
            message=message,
            image_urls_json=json.dumps(image_urls[:4]),
            **extra,
        )
        try:
            with Session(self._engine) as session:
                session.add(job)
                session.commit()
        except IntegrityError:
            logger.debug(
                "Duplicate %s job for %s/%s",
                self._model.__tablename__,
                source_message_id,
                target_key,
            )
            return EnqueueOutcome.DUPLICATE
        return EnqueueOutcome.QUEUED

    # ── claim ────────────────────────────────────────────────────

    def recover_stale(self, now: datetime | None = None) -> int:
        """Return PROCESSING jobs abandoned by a dead worker to PENDING."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self._settings.queue_stale_processing_seconds)
        model = self._model
        with self._engine.begin() as conn:
            result = conn.execute(
                update(model)
                .where(
                    model.status == JobStatus.PROCESSING.value,
                    or_(model.locked_at == None, model.locked_at < cutoff),  # noqa: E711
                )
                .values(
                    status=JobStatus.PENDING.value,
                    run_at=now,
                    locked_at=None,
                    last_error="Recovered stale processing job",
                    updated_at=now,
                )
            )
        if result.rowcount:
            logger.info(
                "Recovered %d stale %s job(s)", result.rowcount, model.__tablename__
            )
        return result.rowcount or 0

    def claim_batch(self, max_jobs: int, now: datetime | None = None) -> list[ClaimedJob]:
        """Claim up to ``max_jobs`` ready jobs, oldest first."""
        now = now or datetime.now(timezone.utc)
        model = self._model
        with Session(self._engine) as session:
            candidate_ids = session.exec(
                select(model.id)
                .where(model.status == JobStatus.PENDING.value)
                .where(model.run_at <= now)
                .order_by(model.created_at, model.id)
                .limit(max_jobs * 2)
            ).all()

        claimed: list[ClaimedJob] = []
        for job_id in candidate_ids:
            if len(claimed) >= max_jobs:
                break
            with self._engine.begin() as conn:
                result = conn.execute(
                    update(model)
                    .where(model.id == job_id, model.status == JobStatus.PENDING.value)
                    .values(
                        status=JobStatus.PROCESSING.value,
                        locked_at=now,
                        attempts=model.attempts + 1,
                        updated_at=now,
                    )
                )
            if result.rowcount != 1:
                continue  # Another worker won this row
            job = self._snapshot(job_id)
            if job is not None:
                claimed.append(job)
        return claimed

    def _snapshot(self, job_id: str) -> ClaimedJob | None:
        with Session(self._engine) as session:
            row = session.get(self._model, job_id)
            if row is None:
                return None
            return ClaimedJob(
                id=row.id,
                source_message_id=row.source_message_id,
                target_key=row.target_key,
                username=row.username,
                message=row.message,
                image_urls=row.image_urls,
                attempts=row.attempts,
                provider=getattr(row, "provider", None),
            )

    # ── transitions ──────────────────────────────────────────────

    def mark_completed(self, job_id: str, *, expected_attempts: int | None = None) -> bool:
        now = datetime.now(timezone.utc)
        return self._update(
            job_id,
            expected_attempts,
            status=JobStatus.COMPLETED.value,
            completed_at=now,
            locked_at=None,
            last_error=None,
            updated_at=now,
        )

    def mark_failed(self, job_id: str, error: str, *, expected_attempts: int | None = None) -> bool:
        now = datetime.now(timezone.utc)
        return self._update(
            job_id,
            expected_attempts,
            status=JobStatus.FAILED.value,
            failed_at=now,
            locked_at=None,
            last_error=error[:_ERROR_MAX_CHARS],
            updated_at=now,
        )

    def increment_attempts(self, job_id: str) -> None:
        model = self._model
        with self._engine.begin() as conn:
            conn.execute(
                update(model)
                .where(model.id == job_id)
                .values(attempts=model.attempts + 1, updated_at=datetime.now(timezone.utc))
            )

    def schedule_retry(
        self, job_id: str, attempts: int, error: str, *, expected_attempts: int | None = None
    ) -> datetime | None:
        """Put a job back to PENDING with linear backoff.

        Returns the next run time, or None when the job is no longer held by
        this claim.
        """
        now = datetime.now(timezone.utc)
        delay = min(
            self._settings.queue_retry_max_delay_seconds,
            self._settings.queue_retry_base_delay_seconds * max(1, attempts),
        )
        run_at = now + timedelta(seconds=delay)
        applied = self._update(
            job_id,
            expected_attempts,
            status=JobStatus.PENDING.value,
            run_at=run_at,
            locked_at=None,
            last_error=error[:_ERROR_MAX_CHARS],
            updated_at=now,
        )
        return run_at if applied else None

    def record_failure(self, job: ClaimedJob, error: str) -> bool:
        """Retry or fail a job after an error. Returns True when terminal."""
        if job.attempts >= self._max_attempts:
            if not self.mark_failed(job.id, error, expected_attempts=job.attempts):
                self._log_lost_claim(job)
                return False
            logger.warning(
                "%s job %s failed permanently after %d attempt(s): %s",
                self._model.__tablename__,
                job.id,
                job.attempts,
                error,
            )
            return True
        run_at = self.schedule_retry(job.id, job.attempts, error, expected_attempts=job.attempts)
        if run_at is None:
            self._log_lost_claim(job)
            return False
        logger.info(
            "Scheduled retry %d/%d for %s job %s at %s",
            job.attempts + 1,
            self._max_attempts,
            self._model.__tablename__,
            job.id,
            run_at.isoformat(),
        )
        return False

    def _update(self, job_id: str, expected_attempts: int | None, **values) -> bool:
        """Apply a transition to a PROCESSING job; False when the claim was lost."""
        model = self._model
        stmt = update(model).where(
            model.id == job_id, model.status == JobStatus.PROCESSING.value
        )
        if expected_attempts is not None:
            stmt = stmt.where(model.attempts == expected_attempts)
        with self._engine.begin() as conn:
            result = conn.execute(stmt.values(**values))
        return result.rowcount == 1

    def _log_lost_claim(self, job: ClaimedJob) -> None:
        logger.warning(
            "%s job %s attempt %d no longer holds its claim; result dropped",
            self._model.__tablename__,
            job.id,
            job.attempts,
        )

    # ── read ─────────────────────────────────────────────────────

    def get(self, job_id: str) -> JobT | None:
        with Session(self._engine) as session:
            return session.get(self._model, job_id)

    def count_active(self, target_key: str | None = None) -> int:
        model = self._model
        stmt = select(func.count()).select_from(model).where(
            model.status.in_(ACTIVE_JOB_STATUSES)  # type: ignore[union-attr]
        )
        if target_key is not None:
            stmt = stmt.where(model.target_key == target_key)
        with Session(self._engine) as session:
            return int(session.exec(stmt).one())

    def count_ready(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        model = self._model
        with Session(self._engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(model)
                    .where(model.status == JobStatus.PENDING.value)
                    .where(model.run_at <= now)
                ).one()
            )

    def stats(self) -> dict[str, int]:
        model = self._model
        counts = {status.value: 0 for status in JobStatus}
        with Session(self._engine) as session:
            rows = session.exec(
                select(model.status, func.count()).group_by(model.status)
            ).all()
        for status, count in rows:
            counts[status] = int(count)
        return counts
