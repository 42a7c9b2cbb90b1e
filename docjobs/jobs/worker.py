"""
Async Job Worker

Leases jobs from the queue and runs them through the orchestrator.
Supports:
- Concurrency control
- Periodic sweep of expired leases
- Graceful shutdown on SIGTERM / SIGINT

Blocking calls (database, storage, waiting on the worker pool) run in
threads via ``asyncio.to_thread`` so the event loop only schedules.
"""

import asyncio
import logging
import os
import signal
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set
from uuid import uuid4

from docjobs.db.models import JobState
from .orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Worker configuration"""
    # Polling
    poll_interval: float = 1.0  # seconds

    # Concurrency
    max_concurrent: int = 4

    # Expired lease sweep
    sweep_interval: float = 30.0  # seconds

    # Graceful shutdown
    shutdown_timeout: float = 30.0

    @classmethod
    def from_config(cls, config) -> 'WorkerConfig':
        return cls(
            poll_interval=config.get('worker.poll_interval', 1.0),
            max_concurrent=config.get('worker.max_concurrent', 4),
            sweep_interval=config.get('worker.sweep_interval', 30.0),
            shutdown_timeout=config.get('worker.shutdown_timeout', 30.0)
        )


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class Worker:
    """
    Async job worker.

    Usage:
        worker = Worker(orchestrator, WorkerConfig(max_concurrent=4))

        # Run until stopped
        await worker.run()

        # Or drain whatever is eligible right now
        await worker.run_once()
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        config: Optional[WorkerConfig] = None,
        worker_id: Optional[str] = None
    ):
        self.orchestrator = orchestrator
        self.config = config or WorkerConfig()
        self.worker_id = worker_id or default_worker_id()

        # State
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

        # Metrics
        self._processed_count = 0
        self._failed_count = 0
        self._requeued_count = 0
        self._start_time: Optional[datetime] = None

    async def run(self) -> None:
        """
        Run the worker.

        Leases and executes jobs until shutdown.
        """
        logger.info(f"Starting worker {self.worker_id}...")

        self._running = True
        self._start_time = datetime.now(timezone.utc)
        self._setup_signal_handlers()
        sweeper = asyncio.create_task(self._sweep_loop())

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    started = await self._fill_slots()
                    if len(self._tasks) >= self.config.max_concurrent:
                        await asyncio.wait(
                            set(self._tasks),
                            timeout=self.config.poll_interval,
                            return_when=asyncio.FIRST_COMPLETED
                        )
                    elif not started:
                        await self._idle(self.config.poll_interval)
                except Exception as e:
                    logger.exception(f"Worker loop error: {e}")
                    await self._idle(self.config.poll_interval)
        finally:
            sweeper.cancel()
            if self._tasks:
                logger.info(f"Waiting for {len(self._tasks)} active jobs to complete...")
                done, pending = await asyncio.wait(set(self._tasks), timeout=self.config.shutdown_timeout)
                if pending:
                    logger.warning("Shutdown timeout - some jobs may not have completed")
            self._running = False
            logger.info(
                f"Worker stopped. Processed: {self._processed_count}, Failed: {self._failed_count}"
            )

    async def run_once(self) -> int:
        """
        Execute every job that is eligible now, then return.

        Returns:
            Number of jobs executed
        """
        before = self._processed_count + self._failed_count + self._requeued_count
        while True:
            await self._fill_slots()
            if not self._tasks:
                break
            await asyncio.wait(set(self._tasks), return_when=asyncio.FIRST_COMPLETED)
        return self._processed_count + self._failed_count + self._requeued_count - before

    async def stop(self) -> None:
        """Stop the worker gracefully"""
        logger.info("Stopping worker...")
        self._running = False
        self._shutdown_event.set()

    async def _idle(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _fill_slots(self) -> int:
        """Lease jobs until every slot is busy or nothing is eligible"""
        self._tasks.difference_update([task for task in self._tasks if task.done()])
        started = 0
        while len(self._tasks) < self.config.max_concurrent:
            job = await asyncio.to_thread(self.orchestrator.queue.lease, self.worker_id)
            if job is None:
                break
            task = asyncio.create_task(self._process(job.id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        return started

    async def _process(self, job_id: str) -> None:
        try:
            view = await asyncio.to_thread(self.orchestrator.execute, job_id, self.worker_id)
        except Exception as e:
            # Lease lapses and the sweep requeues the job
            logger.exception(f"Job {job_id} raised during execution: {e}")
            self._failed_count += 1
            return

        if view is None:
            return
        if view.state == JobState.COMPLETED.value:
            self._processed_count += 1
        elif view.state == JobState.FAILED.value:
            self._failed_count += 1
        else:
            self._requeued_count += 1

    async def _sweep_loop(self) -> None:
        while not self._shutdown_event.is_set():
            await self._idle(self.config.sweep_interval)
            if self._shutdown_event.is_set():
                break
            try:
                await asyncio.to_thread(self.orchestrator.sweep)
            except Exception as e:
                logger.error(f"Expired lease sweep failed: {e}")

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown"""
        try:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.create_task(self.stop())
                )
        except (NotImplementedError, RuntimeError):
            # Signal handling not available (e.g., Windows, non-main thread)
            pass

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        uptime = None
        if self._start_time:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return {
            'worker_id': self.worker_id,
            'running': self._running,
            'active_jobs': len(self._tasks),
            'processed_count': self._processed_count,
            'failed_count': self._failed_count,
            'requeued_count': self._requeued_count,
            'uptime_seconds': uptime,
            'pool': self.orchestrator.pool.stats()
        }


async def run_worker(
    orchestrator: JobOrchestrator,
    config: Optional[WorkerConfig] = None
) -> None:
    """
    Convenience function to run a worker.

    Args:
        orchestrator: Orchestrator wired to the queue and worker pool
        config: Optional worker configuration
    """
    worker = Worker(orchestrator, config)
    try:
        await worker.run()
    finally:
        orchestrator.pool.shutdown(wait=True)
