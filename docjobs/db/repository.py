from typing import Type, TypeVar, Generic, Optional, List, Dict, Any
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from docjobs.entitlements import Tier, parse_tier, resolve
from .models import ACTIVE_STATES, Account, Job, JobState, UsageRecord, utcnow
from .connection import Database, Base

T = TypeVar('T', bound=Base)


class BaseRepository(Generic[T]):
    """Base repository class for common database operations"""

    def __init__(self, model_class: Type[T], db: Database):
        self.model_class = model_class
        self.db = db

    def create(self, data: Dict[str, Any], session: Optional[Session] = None) -> T:
        """Create a new record"""
        with self.db.scope(session) as s:
            instance = self.model_class(**data)
            s.add(instance)
            s.flush()
            return instance

    def get(self, id: str) -> Optional[T]:
        """Get a record by ID"""
        with self.db.session() as session:
            return session.get(self.model_class, id)

    def update(self, id: str, data: Dict[str, Any], session: Optional[Session] = None) -> bool:
        """Update columns of a record"""
        with self.db.scope(session) as s:
            result = s.execute(
                update(self.model_class)
                .where(self.model_class.id == id)
                .values(**data)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def delete(self, id: str) -> bool:
        """Delete a record"""
        with self.db.transaction() as session:
            instance = session.get(self.model_class, id)
            if instance:
                session.delete(instance)
                return True
            return False

    def list(self, **filters) -> List[T]:
        """List records with optional filters"""
        with self.db.session() as session:
            query = select(self.model_class)
            for key, value in filters.items():
                query = query.where(getattr(self.model_class, key) == value)
            return list(session.execute(query).scalars())


class AccountRepository(BaseRepository[Account]):
    """Repository for account operations"""

    def __init__(self, db: Database):
        super().__init__(Account, db)

    def create_account(self, tier: Any = Tier.FREE, account_id: Optional[str] = None,
                       credits_used: int = 0) -> Account:
        """Create an account whose allotment follows its tier"""
        tier = parse_tier(tier)
        data: Dict[str, Any] = {
            'tier': tier.value,
            'monthly_allotment': resolve(tier).max_credits_per_month,
            'credits_used': credits_used,
        }
        if account_id:
            data['id'] = account_id
        return self.create(data)

    def set_tier(self, account_id: str, tier: Any) -> bool:
        tier = parse_tier(tier)
        with self.db.transaction() as session:
            result = session.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(
                    tier=tier.value,
                    monthly_allotment=resolve(tier).max_credits_per_month,
                    updated_at=utcnow()
                )
            )
            return result.rowcount == 1

    def deactivate(self, account_id: str) -> bool:
        with self.db.transaction() as session:
            result = session.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(active=False, updated_at=utcnow())
            )
            return result.rowcount == 1


class JobRepository(BaseRepository[Job]):
    """Repository for job records"""

    def __init__(self, db: Database):
        super().__init__(Job, db)

    def list_for_account(self, account_id: str, state: Optional[str] = None,
                         limit: int = 50) -> List[Job]:
        """Jobs of an account, newest first"""
        with self.db.session() as session:
            query = select(Job).where(Job.account_id == account_id)
            if state:
                query = query.where(Job.state == state)
            query = query.order_by(Job.created_at.desc()).limit(limit)
            return list(session.execute(query).scalars())

    def count_active(self, account_id: str) -> int:
        """Non-terminal jobs of an account"""
        with self.db.session() as session:
            query = (
                select(func.count())
                .select_from(Job)
                .where(Job.account_id == account_id, Job.state.in_(ACTIVE_STATES))
            )
            return int(session.execute(query).scalar_one())

    def find_by_idempotency_key(self, account_id: str, key: str) -> Optional[Job]:
        """Latest non-failed job submitted with the same idempotency key"""
        with self.db.session() as session:
            query = (
                select(Job)
                .where(
                    Job.account_id == account_id,
                    Job.idempotency_key == key,
                    Job.state != JobState.FAILED.value
                )
                .order_by(Job.created_at.desc())
                .limit(1)
            )
            return session.execute(query).scalar_one_or_none()

    def record_output_key(self, job_id: str, output_key: str, worker_id: str) -> bool:
        """Persist the output key while the caller still holds the job"""
        with self.db.transaction() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.state == JobState.PROCESSING.value,
                    Job.lease_owner == worker_id
                )
                .values(output_key=output_key, updated_at=utcnow())
            )
            return result.rowcount == 1

    def list_unenqueued(self, created_before: datetime, limit: int = 500) -> List[Job]:
        """Pending jobs that were stored but never made visible to workers"""
        with self.db.session() as session:
            query = (
                select(Job)
                .where(
                    Job.state == JobState.PENDING.value,
                    Job.enqueued_at.is_(None),
                    Job.created_at <= created_before
                )
                .order_by(Job.created_at.asc())
                .limit(limit)
            )
            return list(session.execute(query).scalars())

    def list_expired(self, now: datetime, limit: int = 500) -> List[Job]:
        """Terminal jobs whose retention period has passed"""
        with self.db.session() as session:
            query = (
                select(Job)
                .where(
                    Job.state.in_((JobState.COMPLETED.value, JobState.FAILED.value)),
                    Job.expires_at.is_not(None),
                    Job.expires_at < now
                )
                .limit(limit)
            )
            return list(session.execute(query).scalars())


    def list_finished_before(self, cutoff: datetime, limit: int = 500) -> List[Job]:
        """Terminal jobs that ended before ``cutoff``, whatever their retention"""
        with self.db.session() as session:
            query = (
                select(Job)
                .where(
                    Job.state.in_((JobState.COMPLETED.value, JobState.FAILED.value)),
                    Job.completed_at < cutoff
                )
                .limit(limit)
            )
            return list(session.execute(query).scalars())


class UsageRecordRepository(BaseRepository[UsageRecord]):
    """Repository for usage records"""

    def __init__(self, db: Database):
        super().__init__(UsageRecord, db)

    def record(self, job: Job, success: bool, credits: int = 0,
               error_code: Optional[str] = None, session: Optional[Session] = None) -> UsageRecord:
        return self.create({
            'account_id': job.account_id,
            'job_id': job.id,
            'operation': job.operation,
            'input_size': job.input_size or 0,
            'processing_ms': job.processing_ms,
            'credits': credits,
            'success': success,
            'error_code': error_code,
        }, session=session)

    def summary(self, account_id: str, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Aggregated usage per operation"""
        with self.db.session() as session:
            query = select(UsageRecord).where(UsageRecord.account_id == account_id)
            if since is not None:
                query = query.where(UsageRecord.created_at >= since)
            records = list(session.execute(query).scalars())

        summary: Dict[str, Any] = {
            'total_jobs': len(records),
            'successful_jobs': 0,
            'failed_jobs': 0,
            'credits_used': 0,
            'bytes_processed': 0,
            'by_operation': {}
        }
        for record in records:
            op = summary['by_operation'].setdefault(
                record.operation, {'jobs': 0, 'credits': 0, 'failed': 0}
            )
            op['jobs'] += 1
            op['credits'] += record.credits
            summary['credits_used'] += record.credits
            if record.success:
                summary['successful_jobs'] += 1
                summary['bytes_processed'] += record.input_size
            else:
                summary['failed_jobs'] += 1
                op['failed'] += 1
        return summary
