"""
Job Orchestrator

Admission, execution and finalization of document jobs.

State machine: ``pending -> leased -> processing -> completed | failed``.

Side effects on the happy path happen in a fixed order:

1. admission checks (entitlement, rate limit, file size, options, credit
   availability; nothing is deducted yet)
2. job row persisted as ``pending`` with deterministic object keys
3. input bytes uploaded
4. job enqueued
5. a worker leases the job, the orchestrator moves it to ``processing``
6. the worker pool runs the transform while the lease is kept alive
7. output key recorded, output uploaded, then credits deducted and the job
   completed in a single transaction

Credits are charged only on the transition into ``completed``. Because the
object keys are persisted before the objects are written, running
``execute`` again for the same job after a crash resumes or no-ops instead of
charging twice.
"""

import hashlib
import logging
import os
import re
import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.exc import IntegrityError

from docjobs.config import DocJobsConfig
from docjobs.db.connection import Database
from docjobs.db.models import Job, JobState, LEASED_STATES, generate_id, utcnow
from docjobs.db.repository import AccountRepository, JobRepository, UsageRecordRepository
from docjobs.entitlements import Entitlement, Operation, credit_cost, resolve
from docjobs.exceptions import (
    AccountNotFound,
    ConcurrencyLimitReached,
    EntitlementDenied,
    ExecutionError,
    FileTooLarge,
    InsufficientCredits,
    InvalidOptions,
    PoolSaturated,
    RateLimited,
    ServiceUnavailable,
    TransformFailed,
)
from docjobs.storage import AbstractStorage
from .credit_ledger import CreditLedger
from .options import validate_options
from .queue import CANCELLED, JobQueue, RequeueReport
from .rate_limiter import FailurePolicy, RateLimiter
from .worker_pool import TransformResult, TransformTask, WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = '.pdf'
OUTPUT_EXTENSIONS = {
    Operation.MERGE.value: '.pdf',
    Operation.SPLIT.value: '.zip',
    Operation.EXTRACT.value: '.json',
}
_EXTENSION_RE = re.compile(r'^\.[a-z0-9]{1,10}$')


@dataclass(frozen=True)
class JobView:
    """Read model of a job as exposed to callers"""
    id: str
    account_id: str
    operation: str
    state: str
    filename: Optional[str]
    input_size: int
    options: Dict[str, Any]
    priority: int
    attempts: int
    credits_charged: int
    error_code: Optional[str]
    error_detail: Optional[str]
    cancel_requested: bool
    processing_ms: Optional[int]
    download_url: Optional[str]
    created_at: Optional[datetime]
    completed_at: Optional[datetime]
    expires_at: Optional[datetime]

    @classmethod
    def from_job(cls, job: Job, download_url: Optional[str] = None) -> 'JobView':
        return cls(
            id=job.id,
            account_id=job.account_id,
            operation=job.operation,
            state=job.state,
            filename=job.filename,
            input_size=job.input_size or 0,
            options=dict(job.options or {}),
            priority=job.priority,
            attempts=job.attempts,
            credits_charged=job.credits_charged or 0,
            error_code=job.error_code,
            error_detail=job.error_detail,
            cancel_requested=bool(job.cancel_requested),
            processing_ms=job.processing_ms,
            download_url=download_url,
            created_at=job.created_at,
            completed_at=job.completed_at,
            expires_at=job.expires_at,
        )

    @property
    def is_terminal(self) -> bool:
        return JobState(self.state).is_terminal

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('created_at', 'completed_at', 'expires_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


Listener = Callable[[JobView], None]


class _LeaseLost(Exception):
    """The job changed hands while this worker was finalizing it"""


class JobOrchestrator:
    """
    Coordinates admission, execution and finalization of jobs.

    Usage:
        orchestrator = JobOrchestrator(db, storage, rate_limiter, pool, queue, ledger)

        # Request path
        job_id = orchestrator.submit(account_id, 'compress', data, {'quality': 'low'})
        view = orchestrator.get_job(job_id, account_id)

        # Worker path
        orchestrator.process_next('worker-1')
    """

    def __init__(
        self,
        db: Database,
        storage: AbstractStorage,
        rate_limiter: RateLimiter,
        pool: WorkerPool,
        queue: JobQueue,
        ledger: CreditLedger,
        config: Optional[DocJobsConfig] = None,
        listeners: Optional[List[Listener]] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.storage = storage
        self.rate_limiter = rate_limiter
        self.pool = pool
        self.queue = queue
        self.ledger = ledger
        self.config = config or DocJobsConfig.instance()
        self.listeners: List[Listener] = list(listeners or [])
        self.clock = clock

        self.accounts = AccountRepository(db)
        self.jobs = JobRepository(db)
        self.usage = UsageRecordRepository(db)

        self.processing_limit = self.config.get('rate_limit.processing.limit', 30)
        self.processing_window = self.config.get('rate_limit.processing.window_seconds', 60)
        self.credit_costs = self.config.get('credits.costs', {}) or {}
        self.delete_input_on_failure = self.config.get('cleanup.delete_input_on_failure', True)
        self.heartbeat_interval = self.config.get('worker.heartbeat_interval', 10.0)
        self.transform_timeout = self.config.get('worker.transform_timeout', 120.0)
        self.url_expires_in = self.config.get('storage.url_expires_in', 3600)
        self.enqueue_grace = self.config.get('queue.enqueue_grace_seconds', 300)

    # Listeners

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked with the JobView after every state change"""
        self.listeners.append(listener)

    def _notify(self, job_id: str) -> None:
        if not self.listeners:
            return
        view = self.get_job(job_id)
        if view is None:
            return
        for listener in self.listeners:
            try:
                listener(view)
            except Exception:
                logger.exception(f"Job listener failed for {job_id}")

    # Keys

    @staticmethod
    def _extension(filename: Optional[str]) -> str:
        ext = os.path.splitext(filename or '')[1].lower()
        return ext if _EXTENSION_RE.match(ext) else DEFAULT_EXTENSION

    @staticmethod
    def object_prefix(account_id: str, operation: str, job_id: str) -> str:
        return f"users/{account_id}/{operation}/{job_id}"

    def input_key_for(self, account_id: str, operation: str, job_id: str, filename: Optional[str]) -> str:
        return f"{self.object_prefix(account_id, operation, job_id)}/input{self._extension(filename)}"

    def output_key_for(self, job: Job) -> str:
        ext = OUTPUT_EXTENSIONS.get(job.operation, self._extension(job.filename))
        return f"{self.object_prefix(job.account_id, job.operation, job.id)}/output{ext}"

    # Admission

    def _check_entitlement(self, account_id: str, entitlement: Entitlement, operation: str) -> None:
        if not entitlement.allows(operation):
            logger.info(f"Operation {operation} denied for {account_id} on tier {entitlement.tier.value}")
            raise EntitlementDenied(
                f"The {operation} operation is not available on the {entitlement.tier.value} plan",
                operation=operation, tier=entitlement.tier.value
            )
        active = self.jobs.count_active(account_id)
        if active >= entitlement.max_concurrent_jobs:
            logger.info(f"Concurrency limit reached for {account_id}: {active}/{entitlement.max_concurrent_jobs}")
            raise ConcurrencyLimitReached(limit=entitlement.max_concurrent_jobs)

    def _check_rate_limit(self, account_id: str) -> None:
        result = self.rate_limiter.check_and_increment(
            account_id,
            self.processing_limit,
            self.processing_window,
            policy=FailurePolicy.CLOSED
        )
        if not result.allowed:
            raise RateLimited(reset_at=result.reset_at)

    @staticmethod
    def _check_file_size(entitlement: Entitlement, size: int) -> None:
        if size <= 0:
            raise InvalidOptions("The uploaded file is empty", errors=['input: file is empty'])
        if size > entitlement.max_file_size_bytes:
            raise FileTooLarge(
                f"File size exceeds the {entitlement.max_file_size_bytes // (1024 * 1024)}MB limit of your plan",
                size=size, limit=entitlement.max_file_size_bytes
            )

    def submit(
        self,
        account_id: str,
        operation: Union[Operation, str],
        input_bytes: bytes,
        options: Optional[Dict[str, Any]] = None,
        filename: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        """
        Admit a processing request and queue it.

        Args:
            account_id: Authenticated account
            operation: Requested operation
            input_bytes: Document to process
            options: Raw operation options
            filename: Original file name (used for the object key extension)
            idempotency_key: Returns the existing job for a repeated request

        Returns:
            Job ID

        Raises:
            AdmissionError: RateLimited, InsufficientCredits, EntitlementDenied,
                FileTooLarge or InvalidOptions
            ServiceUnavailable: A backing store failed; safe to retry
        """
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFound(account_id=account_id)
        if not account.active:
            raise EntitlementDenied("Account is inactive")

        if idempotency_key:
            existing = self.jobs.find_by_idempotency_key(account_id, idempotency_key)
            if existing is not None:
                logger.debug(f"Duplicate submission {idempotency_key} -> {existing.id}")
                return existing.id

        operation = str(getattr(operation, 'value', operation))
        entitlement = resolve(account.tier)

        self._check_entitlement(account_id, entitlement, operation)
        self._check_rate_limit(account_id)
        self._check_file_size(entitlement, len(input_bytes))
        validated = validate_options(operation, options)

        cost = credit_cost(operation, self.credit_costs)
        if not self.ledger.has_credits(account_id, cost):
            logger.info(f"Insufficient credits for {account_id}: {operation} needs {cost}")
            raise InsufficientCredits(required=cost)

        job_id = generate_id(Job)
        input_key = self.input_key_for(account_id, operation, job_id, filename)
        try:
            self.jobs.create({
                'id': job_id,
                'account_id': account_id,
                'operation': operation,
                'filename': filename,
                'input_size': len(input_bytes),
                'input_checksum': hashlib.sha256(input_bytes).hexdigest(),
                'options': validated,
                'idempotency_key': idempotency_key,
                'priority': int(entitlement.queue_priority),
                'state': JobState.PENDING.value,
                'input_key': input_key,
            })
        except IntegrityError:
            # A concurrent submission with the same idempotency key won
            existing = self.jobs.find_by_idempotency_key(account_id, idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            logger.debug(f"Duplicate submission {idempotency_key} -> {existing.id}")
            return existing.id

        try:
            self.storage.put(input_key, input_bytes)
        except ServiceUnavailable:
            self.queue.fail(job_id, ServiceUnavailable.code, expires_at=self.clock())
            raise

        self.queue.enqueue(job_id, int(entitlement.queue_priority))
        logger.info(f"Admitted job {job_id}: {operation} for {account_id} ({len(input_bytes)} bytes)")
        self._notify(job_id)
        return job_id

    # Read model

    def _view(self, job: Job) -> JobView:
        url = None
        if job.state == JobState.COMPLETED.value and job.output_key:
            url = self.storage.get_url(job.output_key, self.url_expires_in)
        return JobView.from_job(job, download_url=url)

    def get_job(self, job_id: str, account_id: Optional[str] = None) -> Optional[JobView]:
        """
        Current state of a job.

        Args:
            job_id: Job to look up
            account_id: When given, jobs of other accounts are reported as missing
        """
        job = self.jobs.get(job_id)
        if job is None or (account_id is not None and job.account_id != account_id):
            return None
        return self._view(job)

    def list_jobs(self, account_id: str, state: Optional[str] = None, limit: int = 50) -> List[JobView]:
        return [self._view(job) for job in self.jobs.list_for_account(account_id, state=state, limit=limit)]

    # Execution

    def process_next(self, worker_id: str) -> Optional[JobView]:
        """Lease the next job and execute it; None when the queue is empty"""
        job = self.queue.lease(worker_id)
        if job is None:
            return None
        return self.execute(job.id, worker_id)

    def execute(self, job_id: str, worker_id: str) -> Optional[JobView]:
        """
        Run a leased job to a terminal state.

        Safe to call again for the same job: terminal jobs are left untouched,
        a job whose output is already stored is only finalized.

        Returns:
            The job after this call, None if it does not exist
        """
        job = self.jobs.get(job_id)
        if job is None:
            return None
        if job.job_state.is_terminal:
            return self._view(job)
        if job.lease_owner != worker_id or job.state not in LEASED_STATES:
            logger.warning(f"Worker {worker_id} does not hold job {job_id}")
            return self._view(job)

        if job.state == JobState.LEASED.value:
            if not self.queue.start(job_id, worker_id):
                logger.warning(f"Lease on job {job_id} lapsed before processing started")
                return self.get_job(job_id)
            self._notify(job_id)

        if job.cancel_requested:
            self._fail(job, worker_id, CANCELLED)
            return self.get_job(job_id)

        if job.output_key and self.storage.exists(job.output_key):
            logger.info(f"Output of job {job_id} already stored, finalizing")
            self._finalize(job, worker_id, job.processing_ms)
            return self.get_job(job_id)

        try:
            data = self.storage.get(job.input_key)
        except FileNotFoundError:
            logger.error(f"Input object of job {job_id} is missing")
            self._fail(job, worker_id, TransformFailed.code, "The uploaded file is no longer available")
            return self.get_job(job_id)
        except ServiceUnavailable:
            self._release(job, worker_id, ServiceUnavailable.code)
            return self.get_job(job_id)

        task = TransformTask(job_id=job.id, operation=job.operation, data=data, options=dict(job.options or {}))
        try:
            future = self.pool.submit(task)
        except PoolSaturated:
            self._release(job, worker_id, PoolSaturated.code)
            return self.get_job(job_id)

        try:
            result = self._await(future, job_id, worker_id)
        except ExecutionError as e:
            # WorkerCrashed is retried through the queue, TransformFailed is final
            if e.retryable:
                self._release(job, worker_id, e.code)
            else:
                self._fail(job, worker_id, e.code)
            return self.get_job(job_id)

        if result is None:
            # Abandoned; the lease lapses and the sweep takes over
            return self.get_job(job_id)

        output_key = self.output_key_for(job)
        if not self.jobs.record_output_key(job_id, output_key, worker_id):
            logger.warning(f"Lost job {job_id} before its output was stored")
            return self.get_job(job_id)
        try:
            self.storage.put(output_key, result.data)
        except ServiceUnavailable:
            self._release(job, worker_id, ServiceUnavailable.code)
            return self.get_job(job_id)

        job.output_key = output_key
        self._finalize(job, worker_id, result.duration_ms)
        return self.get_job(job_id)

    def _await(self, future: Future, job_id: str, worker_id: str) -> Optional[TransformResult]:
        """Wait for the transform, heartbeating the lease; None when abandoned"""
        deadline = time.monotonic() + self.transform_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                logger.error(f"Transform for job {job_id} exceeded {self.transform_timeout}s, abandoning")
                return None
            try:
                return future.result(timeout=min(self.heartbeat_interval, remaining))
            except FutureTimeoutError:
                if not self.queue.extend_lease(job_id, worker_id):
                    future.cancel()
                    logger.warning(f"Lease on job {job_id} lost during processing, abandoning")
                    return None

    def _retention(self, account_id: str) -> timedelta:
        account = self.accounts.get(account_id)
        return timedelta(days=resolve(account.tier if account else None).retention_days)

    def _finalize(self, job: Job, worker_id: str, processing_ms: Optional[int]) -> None:
        """Deduct credits and complete the job in one transaction"""
        cost = credit_cost(job.operation, self.credit_costs)
        expires_at = self.clock() + self._retention(job.account_id)
        output_key = job.output_key or self.output_key_for(job)
        job.processing_ms = processing_ms

        try:
            with self.db.transaction() as session:
                self.ledger.try_deduct(job.account_id, cost, session=session)
                completed = self.queue.complete(
                    job.id, worker_id, session=session,
                    output_key=output_key,
                    credits_charged=cost,
                    processing_ms=processing_ms,
                    expires_at=expires_at
                )
                if not completed:
                    raise _LeaseLost()
                self.usage.record(job, success=True, credits=cost, session=session)
        except _LeaseLost:
            logger.warning(f"Job {job.id} changed hands before completion, not charged")
            return
        except InsufficientCredits:
            logger.warning(f"Account {job.account_id} ran out of credits before job {job.id} completed")
            self.storage.delete(output_key)
            self._fail(job, worker_id, InsufficientCredits.code, output_key=None)
            return

        logger.info(f"Job {job.id} completed, charged {cost} credits")
        self._notify(job.id)

    def _fail(self, job: Job, worker_id: Optional[str], code: str, detail: Optional[str] = None, **fields: Any) -> bool:
        fields.setdefault('expires_at', self.clock() + self._retention(job.account_id))
        delete_input = self.delete_input_on_failure and job.input_key and code != ServiceUnavailable.code
        if delete_input:
            fields['input_key'] = None

        with self.db.transaction() as session:
            failed = self.queue.fail(job.id, code, detail, worker_id=worker_id, session=session, **fields)
            if failed and code != CANCELLED:
                self.usage.record(job, success=False, error_code=code, session=session)
        if not failed:
            return False

        if delete_input:
            self.storage.delete(job.input_key)
        self._notify(job.id)
        return True

    def _release(self, job: Job, worker_id: str, code: str) -> None:
        """Hand a job back to the queue; record it when that used up its attempts"""
        outcome = self.queue.release(job.id, worker_id, code)
        if outcome is False:
            self._after_terminal_failure(job.id)
        elif outcome:
            self._notify(job.id)

    def _after_terminal_failure(self, job_id: str) -> None:
        """Retention, usage and input cleanup for a job the queue failed on its own"""
        job = self.jobs.get(job_id)
        if job is None or job.state != JobState.FAILED.value:
            return
        if job.error_code != CANCELLED:
            self.usage.record(job, success=False, error_code=job.error_code)
        self._expire_failed(job)
        self._notify(job_id)

    def _expire_failed(self, job: Job) -> None:
        fields: Dict[str, Any] = {'expires_at': self.clock() + self._retention(job.account_id)}
        delete_input = self.delete_input_on_failure and job.input_key
        if delete_input:
            fields['input_key'] = None
        self.jobs.update(job.id, fields)
        if delete_input:
            self.storage.delete(job.input_key)

    def sweep(self) -> RequeueReport:
        """
        Periodic maintenance of in-flight jobs.

        Requeues expired leases and records jobs that ran out of attempts.
        Admissions that stopped between storing the job row and enqueueing it
        are settled once older than ``queue.enqueue_grace_seconds``: the job
        is enqueued when its input object exists and failed otherwise.
        """
        report = self.queue.requeue_expired()
        for job_id in report.failed:
            self._after_terminal_failure(job_id)
        for job_id in report.requeued:
            self._notify(job_id)
        self._settle_unenqueued(report)
        return report

    def _settle_unenqueued(self, report: RequeueReport) -> None:
        cutoff = self.clock() - timedelta(seconds=self.enqueue_grace)
        for job in self.jobs.list_unenqueued(cutoff):
            if job.input_key and self.storage.exists(job.input_key):
                try:
                    self.queue.enqueue(job.id)
                except ValueError:
                    # Cancelled in the meantime
                    continue
                logger.warning(f"Enqueued stranded job {job.id}")
                report.requeued.append(job.id)
                self._notify(job.id)
            elif self._fail(job, None, ServiceUnavailable.code, "The upload did not complete"):
                report.failed.append(job.id)

    # Account-facing operations

    def cancel(self, job_id: str, account_id: str) -> Optional[str]:
        """
        Cancel a job of ``account_id``.

        Returns:
            ``'cancelled'`` (pending job removed), ``'cancel_requested'``
            (running job flagged) or None if the job is unknown or finished
        """
        job = self.jobs.get(job_id)
        if job is None or job.account_id != account_id:
            return None
        outcome = self.queue.cancel(job_id)
        if outcome == 'cancelled':
            self._expire_failed(job)
        if outcome:
            self._notify(job_id)
        return outcome

    def delete_job(self, job_id: str, account_id: str) -> bool:
        """
        Delete a job and its stored objects.

        Pending jobs are cancelled first; leased or processing jobs cannot be deleted.
        """
        job = self.jobs.get(job_id)
        if job is None or job.account_id != account_id:
            return False
        if job.state in LEASED_STATES:
            return False
        if job.state == JobState.PENDING.value and self.queue.cancel(job_id) != 'cancelled':
            return False

        self._delete_objects(job)
        deleted = self.jobs.delete(job_id)
        if deleted:
            logger.info(f"Deleted job {job_id}")
        return deleted

    def _delete_objects(self, job: Job) -> None:
        for key in (job.input_key, job.output_key):
            if key:
                self.storage.delete(key)

    def _purge(self, finished: List[Job]) -> int:
        count = 0
        for job in finished:
            self._delete_objects(job)
            if self.jobs.delete(job.id):
                count += 1
        return count

    def cleanup_expired(self, limit: int = 500) -> int:
        """Delete finished jobs past their retention period, objects first"""
        count = self._purge(self.jobs.list_expired(self.clock(), limit=limit))
        if count:
            logger.info(f"Cleaned up {count} expired jobs")
        return count

    def clear_completed(self, older_than_days: int = 30, limit: int = 500) -> int:
        """
        Delete finished jobs that ended more than ``older_than_days`` ago,
        ignoring retention. Stored objects go together with the rows.

        Returns:
            Number of jobs cleared
        """
        cutoff = self.clock() - timedelta(days=older_than_days)
        count = self._purge(self.jobs.list_finished_before(cutoff, limit=limit))
        logger.info(f"Cleared {count} finished jobs")
        return count

    def get_usage_summary(self, account_id: str) -> Dict[str, Any]:
        """Credit balance and per-operation usage of the current period"""
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFound(account_id=account_id)
        summary = self.usage.summary(account_id, since=account.period_reset_at)
        return {
            **summary,
            'account_id': account_id,
            'tier': account.tier,
            'monthly_allotment': account.monthly_allotment,
            'credits_used': account.credits_used,
            'credits_remaining': account.credits_remaining,
            'period_reset_at': account.period_reset_at.isoformat(),
            'active_jobs': self.jobs.count_active(account_id)
        }
