"""
DocJobs Jobs Module

Admission and execution of document processing jobs.

Components:
- RateLimiter: Fixed-window request limits per identity
- CreditLedger: Atomic monthly credit balance per account
- JobQueue: Durable priority queue with leases
- WorkerPool: Isolated parallel transform execution
- JobOrchestrator: Admission, execution and finalization of jobs
- Worker: Async loop feeding queued jobs to the orchestrator
"""

from .rate_limiter import RateLimiter, RateLimitResult, FailurePolicy
from .credit_ledger import CreditLedger
from .queue import JobQueue, RequeueReport
from .worker_pool import WorkerPool, TransformTask, TransformResult
from .options import validate_options
from .orchestrator import JobOrchestrator, JobView
from .worker import Worker, WorkerConfig, run_worker

__all__ = [
    # Admission
    'RateLimiter',
    'RateLimitResult',
    'FailurePolicy',
    'CreditLedger',
    'validate_options',

    # Queue
    'JobQueue',
    'RequeueReport',

    # Execution
    'WorkerPool',
    'TransformTask',
    'TransformResult',
    'JobOrchestrator',
    'JobView',

    # Worker
    'Worker',
    'WorkerConfig',
    'run_worker'
]
