"""
DocJobs exceptions

Admission errors are raised synchronously from ``JobOrchestrator.submit`` and
are never retried by the system. Execution errors end up on the job record as
``failed`` with a stable ``code`` and a human-readable ``reason``.
"""

from typing import Any, Dict, List, Optional


class DocJobsError(Exception):
    """Base class for all DocJobs errors"""

    code = 'error'
    default_reason = 'Unexpected error'

    def __init__(self, reason: Optional[str] = None, **details: Any):
        self.reason = reason or self.default_reason
        self.details: Dict[str, Any] = details
        super().__init__(self.reason)

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'reason': self.reason, **self.details}


class ServiceUnavailable(DocJobsError):
    """A backing store (metadata, cache or object storage) is unreachable; safe to retry"""

    code = 'service_unavailable'
    default_reason = 'Service temporarily unavailable, please retry'


class CounterStoreUnavailable(ServiceUnavailable):
    """The cache/counter store could not perform an atomic increment"""

    code = 'counter_store_unavailable'


class AccountNotFound(DocJobsError):
    code = 'account_not_found'
    default_reason = 'Account not found'


# Admission

class AdmissionError(DocJobsError):
    """Request rejected before a job was created"""

    code = 'admission_error'
    default_reason = 'Request rejected'


class RateLimited(AdmissionError):
    code = 'rate_limited'
    default_reason = 'Too many requests, slow down'

    def __init__(self, reason: Optional[str] = None, reset_at: Optional[int] = None, **details: Any):
        super().__init__(reason, reset_at=reset_at, **details)
        self.reset_at = reset_at


class InsufficientCredits(AdmissionError):
    code = 'insufficient_credits'
    default_reason = 'Insufficient credits for this operation'


class EntitlementDenied(AdmissionError):
    code = 'entitlement_denied'
    default_reason = 'Operation not available on your plan'


class ConcurrencyLimitReached(EntitlementDenied):
    code = 'concurrency_limit_reached'
    default_reason = 'Too many jobs in progress for your plan'


class FileTooLarge(AdmissionError):
    code = 'file_too_large'
    default_reason = 'File size exceeds plan limit'


class InvalidOptions(AdmissionError):
    code = 'invalid_options'
    default_reason = 'Invalid request parameters'

    def __init__(self, reason: Optional[str] = None, errors: Optional[List[str]] = None, **details: Any):
        self.errors = list(errors or [])
        super().__init__(reason, errors=self.errors, **details)


# Execution

class ExecutionError(DocJobsError):
    """Failure while executing an admitted job"""

    code = 'execution_error'
    default_reason = 'Processing failed'
    retryable = False


class TransformFailed(ExecutionError):
    code = 'transform_failed'
    default_reason = 'The document could not be processed'


class PoolSaturated(ExecutionError):
    code = 'pool_saturated'
    default_reason = 'Processing capacity exhausted, please retry later'
    retryable = True


class WorkerCrashed(ExecutionError):
    code = 'worker_crashed'
    default_reason = 'The processing worker stopped unexpectedly'
    retryable = True


class LeaseExhausted(ExecutionError):
    code = 'lease_exhausted'
    default_reason = 'Processing did not finish after several attempts'


# Human-readable reasons stored on failed jobs, keyed by error code
FAILURE_REASONS: Dict[str, str] = {
    TransformFailed.code: TransformFailed.default_reason,
    PoolSaturated.code: PoolSaturated.default_reason,
    WorkerCrashed.code: WorkerCrashed.default_reason,
    LeaseExhausted.code: LeaseExhausted.default_reason,
    InsufficientCredits.code: 'Insufficient credits when the job finished',
    ServiceUnavailable.code: 'Storage was unavailable while processing the file',
    'cancelled': 'Cancelled by the user',
}


def failure_reason(code: str) -> str:
    """Public reason for a failure code (never a raw exception message)"""
    return FAILURE_REASONS.get(code, ExecutionError.default_reason)
