"""
Shared fixtures for DocJobs tests

Every test gets its own SQLite file and storage directory under tmp_path.
The worker pool runs in thread mode so handlers can be plain closures.
"""

import threading
from datetime import datetime, timedelta

import pytest

from docjobs.cache import InMemoryCounterStore
from docjobs.config import DocJobsConfig
from docjobs.db.connection import Database
from docjobs.db.models import utcnow
from docjobs.db.repository import AccountRepository, JobRepository
from docjobs.jobs.credit_ledger import CreditLedger
from docjobs.jobs.orchestrator import JobOrchestrator
from docjobs.jobs.queue import JobQueue
from docjobs.jobs.rate_limiter import RateLimiter
from docjobs.jobs.worker_pool import WorkerPool
from docjobs.storage import FileSystemStorage
from docjobs.transforms import TransformRegistry


class FakeClock:
    """Settable clock returning naive UTC datetimes"""

    def __init__(self, start: datetime = None):
        self.now = start or utcnow()
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += timedelta(seconds=seconds)


class FakeTime:
    """Settable float clock (unix seconds)"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fake_compress(data, options):
    if data.startswith(b'%CORRUPT'):
        raise ValueError('not a PDF document')
    return b'%PDF-compressed-' + options.get('quality', 'medium').encode() + b'-' + data[:16]


def fake_watermark(data, options):
    return data + b'\n% watermark: ' + options['text'].encode()


def make_registry() -> TransformRegistry:
    registry = TransformRegistry()
    registry.register('compress', fake_compress)
    registry.register('watermark', fake_watermark)
    return registry


def config_dict(tmp_path):
    return {
        'database': {'type': 'sqlite', 'sqlite': {'path': str(tmp_path / 'docjobs.db')}},
        'storage': {'type': 'filesystem', 'filesystem': {'path': str(tmp_path / 'storage')}},
        'cache': {'type': 'memory'},
        'pool': {'mode': 'thread', 'max_workers': 2, 'max_queue_depth': 4},
        'queue': {'lease_seconds': 60, 'max_attempts': 3, 'retry_delay_base': 0.0, 'retry_delay_max': 0.0},
        'worker': {
            'poll_interval': 0.05,
            'max_concurrent': 2,
            'sweep_interval': 60.0,
            'heartbeat_interval': 0.5,
            'transform_timeout': 10.0,
            'shutdown_timeout': 5.0
        },
    }


@pytest.fixture
def config(tmp_path):
    return DocJobsConfig.from_dict(config_dict(tmp_path))


@pytest.fixture
def db(config):
    database = Database(config)
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path):
    return FileSystemStorage({'path': str(tmp_path / 'storage')})


@pytest.fixture
def accounts(db):
    return AccountRepository(db)


@pytest.fixture
def jobs(db):
    return JobRepository(db)


@pytest.fixture
def ledger(db):
    return CreditLedger(db)


@pytest.fixture
def queue(db, config, clock):
    return JobQueue.from_config(db, config, clock=clock)


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def pool(registry):
    worker_pool = WorkerPool(registry, max_workers=2, max_queue_depth=4, mode='thread', poll_interval=0.02)
    yield worker_pool
    worker_pool.shutdown(wait=True)


@pytest.fixture
def orchestrator(db, storage, pool, queue, ledger, config, clock):
    return JobOrchestrator(
        db=db,
        storage=storage,
        rate_limiter=RateLimiter(InMemoryCounterStore()),
        pool=pool,
        queue=queue,
        ledger=ledger,
        config=config,
        clock=clock
    )


def make_job(jobs, account_id, priority=1, operation='compress', **fields):
    """Insert a stored, not yet enqueued job row"""
    data = {
        'account_id': account_id,
        'operation': operation,
        'priority': priority,
        'state': 'pending',
        'input_key': f'users/{account_id}/{operation}/input.pdf',
        'input_size': 10,
    }
    data.update(fields)
    return jobs.create(data).id
