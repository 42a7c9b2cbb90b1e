"""
Job Queue

Durable work queue on top of the jobs table.

Jobs are dequeued by descending priority, ties broken by earliest enqueue
time. Leasing, completion and requeueing are compare-and-swap updates
(``UPDATE ... WHERE state = ...``) so any number of worker processes can
share one database without double execution.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from docjobs.db.connection import Database
from docjobs.db.models import Job, JobState, LEASED_STATES, utcnow
from docjobs.exceptions import LeaseExhausted, PoolSaturated, failure_reason

logger = logging.getLogger(__name__)

CANCELLED = 'cancelled'


@dataclass
class RequeueReport:
    """Outcome of one expired-lease sweep"""
    requeued: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.failed)


class JobQueue:
    """
    Queue for document processing jobs.

    Provides methods for:
    - Enqueuing stored jobs
    - Atomic leasing with expiry
    - Lease heartbeats and completion
    - Requeueing expired leases with attempt accounting and backoff

    Usage:
        queue = JobQueue(db)

        queue.enqueue(job_id, priority=JobPriority.HIGH)

        job = queue.lease('worker-1')
        if job:
            queue.start(job.id, 'worker-1')
            ...
            queue.complete(job.id, 'worker-1', output_key=key)

        # Periodically
        queue.requeue_expired()
    """

    def __init__(
        self,
        db: Database,
        lease_seconds: float = 300,
        max_attempts: int = 3,
        retry_delay_base: float = 5.0,
        retry_delay_max: float = 300.0,
        batch_size: int = 10,
        clock: Callable[[], datetime] = utcnow
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.db = db
        self.lease_seconds = lease_seconds
        self.max_attempts = max_attempts
        self.retry_delay_base = retry_delay_base
        self.retry_delay_max = retry_delay_max
        self.batch_size = batch_size
        self.clock = clock

    @classmethod
    def from_config(cls, db: Database, config, clock: Callable[[], datetime] = utcnow) -> 'JobQueue':
        return cls(
            db,
            lease_seconds=config.get('queue.lease_seconds', 300),
            max_attempts=config.get('queue.max_attempts', 3),
            retry_delay_base=config.get('queue.retry_delay_base', 5.0),
            retry_delay_max=config.get('queue.retry_delay_max', 300.0),
            batch_size=config.get('queue.batch_size', 10),
            clock=clock
        )

    def backoff(self, attempts: int) -> float:
        """Delay in seconds before a job that has been retried ``attempts`` times is eligible again"""
        return min(self.retry_delay_base * (2 ** attempts), self.retry_delay_max)

    def enqueue(self, job_id: str, priority: Optional[int] = None) -> str:
        """
        Make a stored pending job visible to workers.

        Enqueueing an already enqueued job is a no-op.

        Args:
            job_id: Job to enqueue
            priority: Overrides the priority stored on the job

        Returns:
            Job ID

        Raises:
            ValueError: If the job does not exist or is no longer pending
        """
        now = self.clock()
        values: Dict[str, Any] = {'enqueued_at': now, 'available_at': now, 'updated_at': now}
        if priority is not None:
            values['priority'] = int(priority)

        with self.db.transaction() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.state == JobState.PENDING.value,
                    Job.enqueued_at.is_(None)
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                job = session.get(Job, job_id)
                if job is None or job.state != JobState.PENDING.value:
                    raise ValueError(f"Job {job_id} not found or not pending")
                logger.debug(f"Job {job_id} already enqueued")
                return job_id

        logger.info(f"Enqueued job {job_id}")
        return job_id

    def _candidates(self, session: Session, now: datetime) -> List[str]:
        query = (
            select(Job.id)
            .where(
                Job.state == JobState.PENDING.value,
                Job.enqueued_at.is_not(None),
                or_(Job.available_at.is_(None), Job.available_at <= now),
                Job.cancel_requested.is_(False)
            )
            .order_by(Job.priority.desc(), Job.enqueued_at.asc())
            .limit(self.batch_size)
        )
        return list(session.execute(query).scalars())

    def lease(self, worker_id: str, lease_seconds: Optional[float] = None) -> Optional[Job]:
        """
        Lease the best eligible job.

        Args:
            worker_id: Identity of the leasing worker
            lease_seconds: Lease duration, defaults to the queue's

        Returns:
            The leased job or None when nothing is eligible
        """
        duration = timedelta(seconds=lease_seconds or self.lease_seconds)

        while True:
            now = self.clock()
            with self.db.session() as session:
                candidates = self._candidates(session, now)
            if not candidates:
                return None

            for job_id in candidates:
                with self.db.transaction() as session:
                    result = session.execute(
                        update(Job)
                        .where(Job.id == job_id, Job.state == JobState.PENDING.value)
                        .values(
                            state=JobState.LEASED.value,
                            lease_owner=worker_id,
                            lease_expires_at=now + duration,
                            updated_at=now
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        job = session.get(Job, job_id)
                if result.rowcount == 1:
                    logger.info(f"Worker {worker_id} leased job {job_id}")
                    return job
                logger.debug(f"Lost lease race for job {job_id}")
            # Every candidate was taken by someone else, look again

    def start(self, job_id: str, worker_id: str) -> bool:
        """Move a leased job into processing; False if the lease is no longer ours"""
        now = self.clock()
        with self.db.transaction() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.state == JobState.LEASED.value,
                    Job.lease_owner == worker_id,
                    Job.lease_expires_at > now
                )
                .values(state=JobState.PROCESSING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def extend_lease(self, job_id: str, worker_id: str, lease_seconds: Optional[float] = None) -> bool:
        """
        Heartbeat: push the lease expiry forward.

        Returns:
            False if the lease already expired or belongs to another worker
        """
        now = self.clock()
        with self.db.transaction() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.state.in_(LEASED_STATES),
                    Job.lease_owner == worker_id,
                    Job.lease_expires_at > now
                )
                .values(
                    lease_expires_at=now + timedelta(seconds=lease_seconds or self.lease_seconds),
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def complete(self, job_id: str, worker_id: str, session: Optional[Session] = None, **fields: Any) -> bool:
        """
        Mark a processing job completed.

        Args:
            job_id: Job to complete
            worker_id: Must hold the job's lease
            session: Join this session's transaction instead of committing
            **fields: Extra columns to set (output_key, credits_charged, ...)

        Returns:
            True if this call performed the transition
        """
        now = self.clock()
        with self.db.scope(session) as s:
            result = s.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.state == JobState.PROCESSING.value,
                    Job.lease_owner == worker_id
                )
                .values(
                    state=JobState.COMPLETED.value,
                    lease_owner=None,
                    lease_expires_at=None,
                    error_code=None,
                    error_detail=None,
                    completed_at=now,
                    updated_at=now,
                    **fields
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 1:
            logger.info(f"Job {job_id} completed")
            return True
        return False

    def fail(
        self,
        job_id: str,
        code: str,
        detail: Optional[str] = None,
        worker_id: Optional[str] = None,
        session: Optional[Session] = None,
        **fields: Any
    ) -> bool:
        """
        Mark a job failed.

        Args:
            job_id: Job to fail
            code: Machine readable reason, e.g. ``transform_failed``
            detail: Human readable reason, derived from ``code`` when omitted
            worker_id: When given, only fail while this worker holds the job
            session: Join this session's transaction instead of committing
            **fields: Extra columns to set

        Returns:
            True if this call performed the transition
        """
        now = self.clock()
        conditions = [Job.id == job_id, Job.state.in_(
            (JobState.PENDING.value,) + LEASED_STATES
        )]
        if worker_id is not None:
            conditions.append(Job.lease_owner == worker_id)

        with self.db.scope(session) as s:
            result = s.execute(
                update(Job)
                .where(*conditions)
                .values(
                    state=JobState.FAILED.value,
                    lease_owner=None,
                    lease_expires_at=None,
                    error_code=code,
                    error_detail=detail or failure_reason(code),
                    completed_at=now,
                    updated_at=now,
                    **fields
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 1:
            logger.warning(f"Job {job_id} failed: {code}")
            return True
        return False

    def _retry_or_fail(self, session: Session, job: Job, now: datetime,
                       exhausted_code: str, owner_condition) -> Optional[bool]:
        """Requeue with backoff (True), fail when attempts are used up (False), None if the CAS lost"""
        if job.cancel_requested:
            values = dict(
                state=JobState.FAILED.value,
                error_code=CANCELLED,
                error_detail=failure_reason(CANCELLED),
                completed_at=now
            )
            requeued = False
        elif job.attempts >= self.max_attempts:
            values = dict(
                state=JobState.FAILED.value,
                error_code=exhausted_code,
                error_detail=failure_reason(exhausted_code),
                completed_at=now
            )
            requeued = False
        else:
            values = dict(
                state=JobState.PENDING.value,
                attempts=job.attempts + 1,
                available_at=now + timedelta(seconds=self.backoff(job.attempts))
            )
            requeued = True

        result = session.execute(
            update(Job)
            .where(Job.id == job.id, Job.state.in_(LEASED_STATES), owner_condition)
            .values(lease_owner=None, lease_expires_at=None, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return requeued

    def release(self, job_id: str, worker_id: str, code: str = PoolSaturated.code) -> Optional[bool]:
        """
        Give a leased job back before its lease expires.

        Used when execution could not run to a result (pool saturated, worker
        crashed). Counts as an attempt exactly like an expired lease.

        Returns:
            True if requeued, False if it failed for good, None if not held by ``worker_id``
        """
        exhausted_code = PoolSaturated.code if code == PoolSaturated.code else LeaseExhausted.code
        now = self.clock()
        with self.db.transaction() as session:
            job = session.get(Job, job_id)
            if job is None or job.lease_owner != worker_id:
                return None
            outcome = self._retry_or_fail(session, job, now, exhausted_code, Job.lease_owner == worker_id)
        if outcome is not None:
            logger.info(f"Worker {worker_id} released job {job_id} ({code}), requeued={outcome}")
        return outcome

    def requeue_expired(self) -> RequeueReport:
        """
        Sweep leases past expiry.

        A job that was already requeued ``max_attempts`` times fails with
        ``lease_exhausted``; any other job returns to pending with its attempt
        counter incremented and an exponential backoff before it can be leased
        again.
        """
        now = self.clock()
        report = RequeueReport()
        with self.db.session() as session:
            expired = list(session.execute(
                select(Job)
                .where(Job.state.in_(LEASED_STATES), Job.lease_expires_at <= now)
                .order_by(Job.lease_expires_at.asc())
            ).scalars())

        for job in expired:
            with self.db.transaction() as session:
                outcome = self._retry_or_fail(
                    session, job, now, LeaseExhausted.code,
                    and_(Job.lease_owner == job.lease_owner, Job.lease_expires_at <= now)
                )
            if outcome is True:
                report.requeued.append(job.id)
            elif outcome is False:
                report.failed.append(job.id)

        if report.total:
            logger.warning(f"Expired leases: {len(report.requeued)} requeued, {len(report.failed)} failed")
        return report

    def cancel(self, job_id: str) -> Optional[str]:
        """
        Cancel a job.

        A pending job fails immediately with reason ``cancelled``. A leased or
        processing job only gets an advisory flag: it is not requeued after
        its lease ends but a running transform is left to finish.

        Returns:
            ``'cancelled'``, ``'cancel_requested'`` or None if the job is unknown or terminal
        """
        now = self.clock()
        with self.db.transaction() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.PENDING.value)
                .values(
                    state=JobState.FAILED.value,
                    error_code=CANCELLED,
                    error_detail=failure_reason(CANCELLED),
                    completed_at=now,
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 1:
            logger.info(f"Cancelled job {job_id}")
            return 'cancelled'

        with self.db.transaction() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state.in_(LEASED_STATES))
                .values(cancel_requested=True, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 1:
            logger.info(f"Cancellation requested for job {job_id}")
            return 'cancel_requested'
        return None

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get status of a job"""
        with self.db.session() as session:
            job = session.get(Job, job_id)
            if not job:
                return None
            return {
                'id': job.id,
                'account_id': job.account_id,
                'operation': job.operation,
                'state': job.state,
                'priority': job.priority,
                'attempts': job.attempts,
                'lease_owner': job.lease_owner,
                'lease_expires_at': job.lease_expires_at.isoformat() if job.lease_expires_at else None,
                'error_code': job.error_code,
                'created_at': job.created_at.isoformat() if job.created_at else None,
                'completed_at': job.completed_at.isoformat() if job.completed_at else None
            }

    def get_pending_count(self, operation: Optional[str] = None) -> int:
        """Get count of enqueued pending jobs"""
        with self.db.session() as session:
            query = (
                select(func.count())
                .select_from(Job)
                .where(Job.state == JobState.PENDING.value, Job.enqueued_at.is_not(None))
            )
            if operation:
                query = query.where(Job.operation == operation)
            return int(session.execute(query).scalar_one())

    def get_queue_stats(self) -> Dict[str, Any]:
        """Get queue statistics"""
        with self.db.session() as session:
            by_state = dict(session.execute(
                select(Job.state, func.count()).group_by(Job.state)
            ).all())
            by_operation = dict(session.execute(
                select(Job.operation, func.count()).group_by(Job.operation)
            ).all())
            expired_leases = session.execute(
                select(func.count())
                .select_from(Job)
                .where(Job.state.in_(LEASED_STATES), Job.lease_expires_at <= self.clock())
            ).scalar_one()

        return {
            'total': sum(by_state.values()),
            'by_state': by_state,
            'by_operation': by_operation,
            'expired_leases': int(expired_leases)
        }
