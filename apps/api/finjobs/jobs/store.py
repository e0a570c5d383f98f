"""SQL-backed queue store.

All job mutations go through the conditional updates in this module. Each
update names the source state in its WHERE clause, so a transition only
happens if the job is still where the caller last saw it; ``rowcount`` tells
the caller whether it won. This is what makes ``claim_next`` safe across
worker threads and processes, and what keeps terminal states terminal.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional
from uuid import UUID

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from finjobs.common.models import Job, utcnow
from finjobs.jobs.backoff import BackoffPolicy
from finjobs.jobs.exceptions import JobNotFound, JobStateConflict, QueueUnavailable

logger = logging.getLogger(__name__)

# Dialects that understand FOR UPDATE SKIP LOCKED
_SKIP_LOCKED_DIALECTS = {"postgresql", "mysql"}

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
DEAD_LETTERED = "dead_lettered"
TERMINAL_STATES = (COMPLETED, DEAD_LETTERED)
# Fresh candidate batches tried when every candidate was lost to another claimer
MAX_CLAIM_ROUNDS = 3


@dataclass(frozen=True)
class JobRecord:
    """Detached snapshot of a job row."""

    id: UUID
    queue_name: str
    type: str
    payload: dict[str, Any]
    priority: int
    state: str
    attempts: int
    max_attempts: int
    backoff_kind: str
    backoff_delay_ms: int
    timeout_ms: int
    progress: int
    result: Any
    last_error: Optional[str]
    cancel_requested: bool
    claimed_by: Optional[str]
    claimed_at: Optional[datetime]
    lease_expires_at: Optional[datetime]
    created_at: datetime
    ready_at: datetime
    processed_at: Optional[datetime]
    finished_at: Optional[datetime]

    @classmethod
    def from_row(cls, job: Job) -> "JobRecord":
        return cls(
            id=job.id,
            queue_name=job.queue_name,
            type=job.type,
            payload=job.payload,
            priority=job.priority,
            state=job.state,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            backoff_kind=job.backoff_kind,
            backoff_delay_ms=job.backoff_delay_ms,
            timeout_ms=job.timeout_ms,
            progress=job.progress,
            result=job.result,
            last_error=job.last_error,
            cancel_requested=job.cancel_requested,
            claimed_by=job.claimed_by,
            claimed_at=job.claimed_at,
            lease_expires_at=job.lease_expires_at,
            created_at=job.created_at,
            ready_at=job.ready_at,
            processed_at=job.processed_at,
            finished_at=job.finished_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


def _as_uuid(job_id: UUID | str) -> UUID:
    if isinstance(job_id, UUID):
        return job_id
    try:
        return UUID(str(job_id))
    except ValueError as e:
        raise JobNotFound(job_id) from e


class QueueStore:
    """Durable job storage with atomic claim, delayed visibility and priority.

    Args:
        session_factory: Factory producing SQLAlchemy sessions
        clock: Returns the current UTC time; injectable for tests
        reclaim_grace_seconds: Added to a job's timeout to form its lease
        max_backoff_ms: Cap applied to exponential backoff
    """

    def __init__(
        self,
        session_factory: sessionmaker | Callable[[], Session],
        clock: Callable[[], datetime] = utcnow,
        reclaim_grace_seconds: float = 30.0,
        max_backoff_ms: int = 300_000,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._grace = timedelta(seconds=reclaim_grace_seconds)
        self._max_backoff_ms = max_backoff_ms

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except (OperationalError, DisconnectionError) as e:
            session.rollback()
            logger.error(f"Queue store unavailable: {e}", exc_info=True)
            raise QueueUnavailable(f"Queue store unavailable: {e}") from e
        except DBAPIError as e:
            session.rollback()
            if e.connection_invalidated:
                raise QueueUnavailable(f"Queue store connection lost: {e}") from e
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _supports_skip_locked(session: Session) -> bool:
        try:
            return session.get_bind().dialect.name in _SKIP_LOCKED_DIALECTS
        except Exception:
            return False

    @staticmethod
    def _load(session: Session, job_id: UUID) -> Optional[Job]:
        return session.execute(select(Job).where(Job.id == job_id)).scalar_one_or_none()

    # Enqueue / read

    def add(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        delay_ms: int = 0,
        max_attempts: int = 3,
        backoff: BackoffPolicy | None = None,
        timeout_ms: int = 60000,
    ) -> JobRecord:
        """Insert a waiting job, visible once ``delay_ms`` has elapsed."""
        backoff = backoff or BackoffPolicy()
        now = self._clock()
        job = Job(
            queue_name=queue_name,
            type=job_type,
            payload=payload,
            priority=priority,
            state=WAITING,
            attempts=0,
            max_attempts=max_attempts,
            backoff_kind=backoff.kind,
            backoff_delay_ms=backoff.delay_ms,
            timeout_ms=timeout_ms,
            progress=0,
            cancel_requested=False,
            created_at=now,
            ready_at=now + timedelta(milliseconds=max(delay_ms, 0)),
            updated_at=now,
        )
        with self._session() as session:
            session.add(job)
            session.commit()
            session.refresh(job)
            return JobRecord.from_row(job)

    def get(self, job_id: UUID | str) -> JobRecord:
        """Return a job snapshot or raise JobNotFound."""
        uid = _as_uuid(job_id)
        with self._session() as session:
            job = self._load(session, uid)
            if job is None:
                raise JobNotFound(job_id)
            return JobRecord.from_row(job)

    def list_jobs(
        self,
        queue_name: str,
        state: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[JobRecord]:
        stmt = select(Job).where(Job.queue_name == queue_name)
        if state:
            stmt = stmt.where(Job.state == state)
        stmt = stmt.order_by(Job.created_at.desc()).limit(limit).offset(offset)
        with self._session() as session:
            return [JobRecord.from_row(j) for j in session.execute(stmt).scalars().all()]

    # Claim / progress / ack / nack

    def claim_next(
        self, queue_name: str, worker_id: str, batch_size: int = 5
    ) -> Optional[JobRecord]:
        """Atomically claim the next ready job in ``queue_name``.

        Candidates are ordered by priority (desc), ready time, then creation
        time. Each candidate is taken with a conditional update that only
        succeeds while the job is still waiting and ready; a lost race moves
        on to the next candidate. When a whole batch is lost to other
        claimers a fresh batch is selected, up to ``MAX_CLAIM_ROUNDS`` times.

        Returns:
            The claimed job, or None if nothing is ready
        """
        now = self._clock()
        stmt = (
            select(Job.id, Job.timeout_ms)
            .where(
                Job.queue_name == queue_name,
                Job.state == WAITING,
                Job.ready_at <= now,
            )
            .order_by(Job.priority.desc(), Job.ready_at.asc(), Job.created_at.asc())
            .limit(batch_size)
        )
        for _ in range(MAX_CLAIM_ROUNDS):
            claimed, had_candidates = self._claim_round(stmt, queue_name, worker_id, now)
            if claimed is not None or not had_candidates:
                return claimed
        logger.debug(f"Worker {worker_id} lost every claim race on {queue_name}")
        return None

    def _claim_round(
        self, stmt, queue_name: str, worker_id: str, now: datetime
    ) -> tuple[Optional[JobRecord], bool]:
        with self._session() as session:
            skip_locked = self._supports_skip_locked(session)
            if skip_locked:
                stmt = stmt.with_for_update(skip_locked=True)
            candidates = session.execute(stmt).all()
            if not candidates:
                session.rollback()
                return None, False
            if not skip_locked:
                # End the read before writing so SQLite takes the write lock fresh
                session.rollback()

            for job_id, timeout_ms in candidates:
                lease = now + timedelta(milliseconds=timeout_ms) + self._grace
                result = session.execute(
                    update(Job)
                    .where(
                        Job.id == job_id,
                        Job.state == WAITING,
                        Job.ready_at <= now,
                    )
                    .values(
                        state=ACTIVE,
                        claimed_by=worker_id,
                        claimed_at=now,
                        lease_expires_at=lease,
                        processed_at=now,
                        attempts=Job.attempts + 1,
                        progress=0,
                        cancel_requested=False,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    session.commit()
                    claimed = self._load(session, job_id)
                    logger.debug(
                        f"Worker {worker_id} claimed job {job_id} from {queue_name}"
                    )
                    return JobRecord.from_row(claimed), True
            session.commit()
            return None, True

    def report_progress(self, job_id: UUID | str, percent: int) -> bool:
        """Record advisory progress for an active job (last write wins)."""
        pct = max(0, min(100, int(percent)))
        with self._session() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == _as_uuid(job_id), Job.state == ACTIVE)
                .values(progress=pct, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def ack(
        self, job_id: UUID | str, result: Any = None, worker_id: str | None = None
    ) -> bool:
        """Complete an active job.

        Returns:
            True if this call completed the job; False if it was not active
            (already acked, reclaimed or dead-lettered)
        """
        now = self._clock()
        stmt = update(Job).where(Job.id == _as_uuid(job_id), Job.state == ACTIVE)
        if worker_id is not None:
            stmt = stmt.where(Job.claimed_by == worker_id)
        with self._session() as session:
            res = session.execute(
                stmt.values(
                    state=COMPLETED,
                    result=result,
                    progress=100,
                    finished_at=now,
                    lease_expires_at=None,
                    updated_at=now,
                ).execution_options(synchronize_session=False)
            )
            session.commit()
            return res.rowcount == 1

    def nack(
        self,
        job_id: UUID | str,
        error: str,
        retryable: bool = True,
        worker_id: str | None = None,
    ) -> Optional[str]:
        """Fail the current attempt of an active job.

        Retryable failures with attempts left go back to waiting after the
        job's backoff delay; everything else is dead-lettered.

        Returns:
            The new state, or None if the job was not active for this worker
        """
        uid = _as_uuid(job_id)
        now = self._clock()
        with self._session() as session:
            job = self._load(session, uid)
            if job is None:
                raise JobNotFound(job_id)
            if job.state != ACTIVE or (worker_id is not None and job.claimed_by != worker_id):
                session.rollback()
                return None
            new_state, values = self._failure_transition(job, error, retryable, now)
            stmt = (
                update(Job)
                .where(
                    Job.id == uid,
                    Job.state == ACTIVE,
                    Job.attempts == job.attempts,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if worker_id is not None:
                stmt = stmt.where(Job.claimed_by == worker_id)
            result = session.execute(stmt)
            session.commit()
            return new_state if result.rowcount == 1 else None

    def _failure_transition(
        self, job: Job, error: str, retryable: bool, now: datetime
    ) -> tuple[str, dict[str, Any]]:
        cleared = {
            "claimed_by": None,
            "claimed_at": None,
            "lease_expires_at": None,
            "last_error": error,
            "updated_at": now,
        }
        if retryable and job.attempts < job.max_attempts:
            policy = BackoffPolicy(
                kind=job.backoff_kind,
                delay_ms=job.backoff_delay_ms,
                max_delay_ms=self._max_backoff_ms,
            )
            delay = policy.delay_for(job.attempts)
            return WAITING, {
                **cleared,
                "state": WAITING,
                "ready_at": now + timedelta(milliseconds=delay),
            }
        return DEAD_LETTERED, {**cleared, "state": DEAD_LETTERED, "finished_at": now}

    # Cancellation

    def cancel(self, job_id: UUID | str) -> str:
        """Remove a waiting job or flag an active one for cooperative cancel.

        Returns:
            ``removed`` or ``cancel_requested``

        Raises:
            JobNotFound: Unknown job
            JobStateConflict: The job already reached a terminal state
        """
        uid = _as_uuid(job_id)
        with self._session() as session:
            job = self._load(session, uid)
            if job is None:
                raise JobNotFound(job_id)
            state = job.state
            session.rollback()

            if state == WAITING:
                result = session.execute(
                    delete(Job)
                    .where(Job.id == uid, Job.state == WAITING)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                if result.rowcount == 1:
                    return "removed"
                state = ACTIVE  # Claimed in the meantime

            if state == ACTIVE:
                result = session.execute(
                    update(Job)
                    .where(Job.id == uid, Job.state == ACTIVE)
                    .values(cancel_requested=True, updated_at=self._clock())
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                if result.rowcount == 1:
                    return "cancel_requested"

        raise JobStateConflict(
            f"Job {job_id} already finished and cannot be cancelled",
            {"job_id": str(job_id)},
        )

    def is_cancel_requested(self, job_id: UUID | str) -> bool:
        with self._session() as session:
            flag = session.execute(
                select(Job.cancel_requested).where(Job.id == _as_uuid(job_id))
            ).scalar_one_or_none()
            return bool(flag)

    # Supervision and maintenance

    def reclaim_expired(self) -> list[tuple[UUID, str]]:
        """Return active jobs whose lease ran out to waiting (or dead letter).

        A lease runs out when a worker neither acked nor nacked within the
        job's timeout plus grace, for example because its process died.

        Returns:
            ``(job_id, new_state)`` for every reclaimed job
        """
        now = self._clock()
        reclaimed: list[tuple[UUID, str]] = []
        with self._session() as session:
            expired = session.execute(
                select(Job).where(Job.state == ACTIVE, Job.lease_expires_at < now)
            ).scalars().all()
            plans = []
            for job in expired:
                error = (
                    f"ExecutionCrash: claim by {job.claimed_by} expired without ack or nack"
                )
                plans.append(
                    (
                        job.id,
                        job.attempts,
                        job.claimed_by,
                        *self._failure_transition(job, error, True, now),
                    )
                )
            session.rollback()

            for job_id, attempts, claimed_by, new_state, values in plans:
                result = session.execute(
                    update(Job)
                    .where(
                        Job.id == job_id,
                        Job.state == ACTIVE,
                        Job.attempts == attempts,
                        Job.lease_expires_at < now,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    reclaimed.append((job_id, new_state))
                    logger.warning(
                        f"Reclaimed job {job_id} from {claimed_by} -> {new_state}"
                    )
            session.commit()
        return reclaimed

    def cleanup(
        self, completed_before: datetime, dead_lettered_before: datetime
    ) -> dict[str, int]:
        """Delete terminal jobs that finished before the given cutoffs."""
        with self._session() as session:
            completed = session.execute(
                delete(Job)
                .where(Job.state == COMPLETED, Job.finished_at < completed_before)
                .execution_options(synchronize_session=False)
            ).rowcount
            dead = session.execute(
                delete(Job)
                .where(Job.state == DEAD_LETTERED, Job.finished_at < dead_lettered_before)
                .execution_options(synchronize_session=False)
            ).rowcount
            session.commit()
        return {"completed": completed, "dead_lettered": dead}

    def counts(self, queue_name: str) -> dict[str, int]:
        """Job counts by state for one queue.

        ``waiting`` covers every unclaimed job; ``delayed`` and ``failed`` are
        the subsets not yet ready and awaiting a retry respectively.
        """
        now = self._clock()
        counts = {
            WAITING: 0,
            "delayed": 0,
            "failed": 0,
            ACTIVE: 0,
            COMPLETED: 0,
            DEAD_LETTERED: 0,
        }
        with self._session() as session:
            rows = session.execute(
                select(Job.state, func.count())
                .where(Job.queue_name == queue_name)
                .group_by(Job.state)
            ).all()
            for state, count in rows:
                counts[state] = count
            counts["delayed"] = session.execute(
                select(func.count()).where(
                    and_(
                        Job.queue_name == queue_name,
                        Job.state == WAITING,
                        Job.ready_at > now,
                    )
                )
            ).scalar_one()
            counts["failed"] = session.execute(
                select(func.count()).where(
                    and_(
                        Job.queue_name == queue_name,
                        Job.state == WAITING,
                        Job.last_error.is_not(None),
                    )
                )
            ).scalar_one()
        counts["total"] = (
            counts[WAITING] + counts[ACTIVE] + counts[COMPLETED] + counts[DEAD_LETTERED]
        )
        return counts
