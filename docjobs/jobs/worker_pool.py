"""
Worker Pool

Runs CPU-bound transforms on a fixed number of execution contexts.

Each context is a thread that takes one task at a time from a bounded
backlog. In ``process`` mode the thread hands the transform to its own
single-process executor, so a transform that crashes its interpreter only
fails its own Future and the context starts a fresh process for the next
task. In ``thread`` mode the transform runs in the context thread itself.
Anything a transform raises, ``SystemExit`` included, fails only its own
Future; a context thread that exits anyway is replaced on the next submit.

When the backlog is full ``submit`` raises PoolSaturated instead of queueing
without bound.
"""

import logging
import multiprocessing
import os
import queue
import threading
import time
from concurrent.futures import Future, ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from docjobs.exceptions import ExecutionError, PoolSaturated, TransformFailed, WorkerCrashed

logger = logging.getLogger(__name__)

Transform = Callable[[str, bytes, Dict[str, Any]], bytes]

MODES = ('process', 'thread')


@dataclass(frozen=True)
class TransformTask:
    """One unit of work: bytes, operation and validated options"""
    job_id: str
    operation: str
    data: bytes
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransformResult:
    job_id: str
    data: bytes
    duration_ms: int


class _ExecutionContext(threading.Thread):
    """Executes tasks from the pool backlog one at a time"""

    def __init__(self, pool: 'WorkerPool', index: int):
        super().__init__(name=f"docjobs-pool-{index}", daemon=True)
        self.pool = pool
        self.executor: Optional[ProcessPoolExecutor] = None

    def _new_executor(self) -> ProcessPoolExecutor:
        return ProcessPoolExecutor(max_workers=1, mp_context=self.pool.mp_context)

    def _invoke(self, task: TransformTask) -> Any:
        if self.pool.mode == 'thread':
            return self.pool.transform(task.operation, task.data, task.options)
        if self.executor is None:
            self.executor = self._new_executor()
        return self.executor.submit(
            self.pool.transform, task.operation, task.data, task.options
        ).result()

    def _replace_executor(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=False)
        self.executor = self._new_executor()

    def run(self) -> None:
        try:
            while True:
                try:
                    future, task = self.pool._backlog.get(timeout=self.pool.poll_interval)
                except queue.Empty:
                    if self.pool._closed.is_set():
                        break
                    continue
                try:
                    if future.set_running_or_notify_cancel():
                        self._execute(future, task)
                except Exception:
                    logger.exception(f"Execution context {self.name} failed on job {task.job_id}")
                    if not future.done():
                        future.set_exception(WorkerCrashed(job_id=task.job_id))
                finally:
                    self.pool._backlog.task_done()
        finally:
            if self.executor is not None:
                self.executor.shutdown(wait=True)

    def _execute(self, future: Future, task: TransformTask) -> None:
        self.pool._count('running', 1)
        started = time.monotonic()
        try:
            output = self._invoke(task)
            if not isinstance(output, (bytes, bytearray)):
                raise TransformFailed(detail=f"transform returned {type(output).__name__}")
        except BrokenProcessPool:
            logger.error(f"Execution context {self.name} crashed on job {task.job_id}")
            self._replace_executor()
            self.pool._count('crashed', 1)
            future.set_exception(WorkerCrashed(job_id=task.job_id))
        except ExecutionError as e:
            self.pool._count('failed', 1)
            future.set_exception(e)
        except Exception as e:
            logger.warning(f"Transform {task.operation} failed for job {task.job_id}: {e!r}")
            self.pool._count('failed', 1)
            failure = TransformFailed(job_id=task.job_id)
            failure.__cause__ = e
            future.set_exception(failure)
        except BaseException as e:
            # SystemExit and the like raised by the transform, also re-raised from a child process
            logger.error(f"Transform {task.operation} aborted for job {task.job_id}: {e!r}")
            self.pool._count('failed', 1)
            failure = TransformFailed(job_id=task.job_id)
            failure.__cause__ = e
            future.set_exception(failure)
        else:
            self.pool._count('completed', 1)
            future.set_result(TransformResult(
                job_id=task.job_id,
                data=bytes(output),
                duration_ms=int((time.monotonic() - started) * 1000)
            ))
        finally:
            self.pool._count('running', -1)


class WorkerPool:
    """
    Fixed-size pool of isolated transform execution contexts.

    Usage:
        with WorkerPool(registry, max_workers=4, max_queue_depth=16) as pool:
            future = pool.submit(TransformTask(job.id, 'compress', data, options))
            result = future.result()
    """

    def __init__(
        self,
        transform: Transform,
        max_workers: Optional[int] = None,
        max_queue_depth: int = 32,
        mode: str = 'process',
        start_method: Optional[str] = None,
        poll_interval: float = 0.1
    ):
        """
        Args:
            transform: ``transform(operation, data, options) -> bytes``; must be
                picklable in process mode
            max_workers: Number of execution contexts, defaults to the CPU count
            max_queue_depth: Tasks allowed to wait for a free context
            mode: ``process`` or ``thread``
            start_method: multiprocessing start method for process mode
            poll_interval: How often idle contexts check for shutdown
        """
        if mode not in MODES:
            raise ValueError(f"Unknown pool mode: {mode}")
        if max_queue_depth < 1:
            raise ValueError("max_queue_depth must be at least 1")

        self.transform = transform
        self.max_workers = max_workers or os.cpu_count() or 1
        self.max_queue_depth = max_queue_depth
        self.mode = mode
        self.mp_context = multiprocessing.get_context(start_method) if mode == 'process' else None
        self.poll_interval = poll_interval

        self._backlog: 'queue.Queue' = queue.Queue(maxsize=max_queue_depth)
        self._closed = threading.Event()
        self._stats_lock = threading.Lock()
        self._stats = {'running': 0, 'completed': 0, 'failed': 0, 'crashed': 0, 'rejected': 0}

        self._contexts_lock = threading.Lock()
        self._contexts: List[_ExecutionContext] = [
            _ExecutionContext(self, i) for i in range(self.max_workers)
        ]
        for context in self._contexts:
            context.start()
        logger.info(f"Worker pool started: {self.max_workers} {mode} contexts, queue depth {max_queue_depth}")

    @classmethod
    def from_config(cls, transform: Transform, config) -> 'WorkerPool':
        return cls(
            transform,
            max_workers=config.get('pool.max_workers'),
            max_queue_depth=config.get('pool.max_queue_depth', 32),
            mode=config.get('pool.mode', 'process'),
            start_method=config.get('pool.start_method')
        )

    def _count(self, key: str, delta: int) -> None:
        with self._stats_lock:
            self._stats[key] += delta

    def _replace_dead_contexts(self) -> None:
        """Start a fresh context in place of any that exited while the pool is open"""
        with self._contexts_lock:
            for i, context in enumerate(self._contexts):
                if context.is_alive() or self._closed.is_set():
                    continue
                logger.error(f"Execution context {context.name} died, replacing it")
                replacement = _ExecutionContext(self, i)
                replacement.start()
                self._contexts[i] = replacement

    def submit(self, task: TransformTask, timeout: float = 0.0) -> 'Future[TransformResult]':
        """
        Submit a task.

        Args:
            task: Task to execute
            timeout: Seconds to wait for room in the backlog; 0 fails immediately

        Returns:
            Future resolving to a TransformResult, or failing with
            TransformFailed / WorkerCrashed

        Raises:
            PoolSaturated: The backlog stayed full
            RuntimeError: The pool was shut down
        """
        if self._closed.is_set():
            raise RuntimeError('cannot submit after shutdown')
        self._replace_dead_contexts()

        future: Future = Future()
        try:
            if timeout > 0:
                self._backlog.put((future, task), block=True, timeout=timeout)
            else:
                self._backlog.put_nowait((future, task))
        except queue.Full:
            self._count('rejected', 1)
            logger.warning(f"Worker pool saturated, rejected job {task.job_id}")
            raise PoolSaturated(job_id=task.job_id)
        return future

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats.update({
            'mode': self.mode,
            'capacity': self.max_workers,
            'max_queue_depth': self.max_queue_depth,
            'queued': self._backlog.qsize(),
            'alive': sum(1 for context in self._contexts if context.is_alive()),
        })
        return stats

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        """
        Stop accepting tasks.

        Queued tasks still run unless ``cancel_pending`` is set, in which case
        their Futures are cancelled. Running transforms always finish.
        """
        self._closed.set()
        if cancel_pending:
            while True:
                try:
                    future, _ = self._backlog.get_nowait()
                except queue.Empty:
                    break
                future.cancel()
                self._backlog.task_done()
        if wait:
            for context in self._contexts:
                context.join()
        logger.info("Worker pool shut down")

    def __enter__(self) -> 'WorkerPool':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True)
