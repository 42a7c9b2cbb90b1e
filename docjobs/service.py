"""
Wiring of the job subsystem from configuration
"""

import logging
from typing import Optional

from docjobs.cache import create_counter_store
from docjobs.config import DocJobsConfig
from docjobs.db.connection import Database
from docjobs.jobs.credit_ledger import CreditLedger
from docjobs.jobs.orchestrator import JobOrchestrator
from docjobs.jobs.queue import JobQueue
from docjobs.jobs.rate_limiter import RateLimiter
from docjobs.jobs.worker_pool import Transform, WorkerPool
from docjobs.storage import StorageFactory
from docjobs.transforms import TransformRegistry

logger = logging.getLogger(__name__)


class DocJobs:
    """
    All components of the job subsystem built from one configuration

    Usage:
        service = DocJobs.setup(DocJobsConfig.from_file('config.yaml'), transform=registry)
        job_id = service.orchestrator.submit(account_id, 'compress', data)
        ...
        service.close()
    """

    def __init__(self, config: DocJobsConfig, db: Database, orchestrator: JobOrchestrator):
        self.config = config
        self.db = db
        self.orchestrator = orchestrator

    @property
    def queue(self) -> JobQueue:
        return self.orchestrator.queue

    @property
    def ledger(self) -> CreditLedger:
        return self.orchestrator.ledger

    @property
    def pool(self) -> WorkerPool:
        return self.orchestrator.pool

    @classmethod
    def setup(
        cls,
        config: Optional[DocJobsConfig] = None,
        transform: Optional[Transform] = None,
        create_tables: bool = True
    ) -> 'DocJobs':
        """
        Build database, storage, counter store, queue, ledger, pool and orchestrator

        Args:
            config: Configuration, defaults to the process-wide one
            transform: Transform used by the worker pool; an empty registry
                rejects every job, which is fine for API-only processes
            create_tables: Create missing tables on startup
        """
        config = config or DocJobsConfig.instance()
        db = Database(config)
        if create_tables:
            db.create_tables()

        storage = StorageFactory.create_storage(config.get_storage_config())
        rate_limiter = RateLimiter(create_counter_store(config.get_cache_config()))
        queue = JobQueue.from_config(db, config)
        pool = WorkerPool.from_config(transform or TransformRegistry(), config)

        orchestrator = JobOrchestrator(
            db=db,
            storage=storage,
            rate_limiter=rate_limiter,
            pool=pool,
            queue=queue,
            ledger=CreditLedger(db),
            config=config
        )
        logger.info("DocJobs initialized")
        return cls(config, db, orchestrator)

    def close(self) -> None:
        self.pool.shutdown(wait=True)
        self.db.dispose()
