from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, BigInteger, text

from docjobs.db.connection import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores UTC without tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_id(model_class=None) -> str:
    """Generate a unique ID for a model"""
    if model_class is None:
        return str(uuid4())

    # Map model classes to their prefixes
    prefix_map = {
        'Account': 'acc',
        'Job': 'job',
        'UsageRecord': 'use',
    }
    prefix = prefix_map.get(model_class.__name__, '')
    return f"{prefix}_{uuid4().hex}"


class JobState(str, Enum):
    """Job lifecycle states"""
    PENDING = "pending"
    LEASED = "leased"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


ACTIVE_STATES = (JobState.PENDING.value, JobState.LEASED.value, JobState.PROCESSING.value)
LEASED_STATES = (JobState.LEASED.value, JobState.PROCESSING.value)


class Account(Base):
    """
    Billable identity with a subscription tier and a monthly credit allotment

    Accounts are never deleted, only deactivated.
    """
    __tablename__ = 'accounts'

    id = Column(String(64), primary_key=True, default=lambda: generate_id(Account))
    tier = Column(String(32), nullable=False, default='FREE')
    monthly_allotment = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    period_reset_at = Column(DateTime, nullable=False, default=utcnow)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def credits_remaining(self) -> int:
        return max(0, self.monthly_allotment - self.credits_used)


class Job(Base):
    """One requested document transformation and its lifecycle state"""
    __tablename__ = 'jobs'
    __table_args__ = (
        Index('ix_jobs_dequeue', 'state', 'priority', 'enqueued_at'),
        Index('ix_jobs_lease_expiry', 'state', 'lease_expires_at'),
        Index('ix_jobs_account_state', 'account_id', 'state'),
        # One live job per idempotency key; a failed job frees its key
        Index(
            'uq_jobs_idempotency', 'account_id', 'idempotency_key',
            unique=True,
            sqlite_where=text("state != 'failed'"),
            postgresql_where=text("state != 'failed'")
        ),
    )

    id = Column(String(64), primary_key=True, default=lambda: generate_id(Job))
    account_id = Column(String(64), ForeignKey('accounts.id'), nullable=False)
    operation = Column(String(32), nullable=False)
    filename = Column(String(255), nullable=True)
    input_size = Column(BigInteger, nullable=False, default=0)
    input_checksum = Column(String(64), nullable=True)  # SHA-256
    options = Column(JSON, nullable=False, default=dict)
    idempotency_key = Column(String(255), nullable=True)

    state = Column(String(20), nullable=False, default=JobState.PENDING.value)
    priority = Column(Integer, nullable=False, default=1)
    attempts = Column(Integer, nullable=False, default=0)
    enqueued_at = Column(DateTime, nullable=True)  # NULL until the input is stored
    available_at = Column(DateTime, nullable=True)  # retry backoff gate
    lease_owner = Column(String(128), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    input_key = Column(String(512), nullable=True)
    output_key = Column(String(512), nullable=True)
    credits_charged = Column(Integer, nullable=False, default=0)
    error_code = Column(String(64), nullable=True)
    error_detail = Column(Text, nullable=True)
    processing_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    @property
    def job_state(self) -> JobState:
        return JobState(self.state)


class UsageRecord(Base):
    """Per-job usage entry written when a job reaches a terminal state"""
    __tablename__ = 'usage_records'

    id = Column(String(64), primary_key=True, default=lambda: generate_id(UsageRecord))
    account_id = Column(String(64), ForeignKey('accounts.id'), nullable=False, index=True)
    job_id = Column(String(64), ForeignKey('jobs.id', ondelete='SET NULL'), nullable=True)
    operation = Column(String(32), nullable=False)
    input_size = Column(BigInteger, nullable=False, default=0)
    processing_ms = Column(Integer, nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False)
    error_code = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
