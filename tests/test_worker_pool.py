"""
Tests for the isolated worker pool
"""

import os
import sys
import threading

import pytest

from docjobs.exceptions import PoolSaturated, TransformFailed, WorkerCrashed
from docjobs.jobs.worker_pool import TransformTask, WorkerPool


def process_transform(operation, data, options):
    """Module level so it can be pickled into worker processes"""
    if operation == 'crash':
        os._exit(1)
    if operation == 'fail':
        raise ValueError('broken document')
    if operation == 'exit':
        sys.exit(3)
    return data.upper()


def task(job_id, operation='compress', data=b'pdf'):
    return TransformTask(job_id=job_id, operation=operation, data=data, options={})


class BlockingTransform:
    """Holds every call until released"""

    def __init__(self):
        self.release = threading.Event()
        self.started = threading.Semaphore(0)

    def __call__(self, operation, data, options):
        self.started.release()
        self.release.wait(timeout=10)
        return data[::-1]


class TestThreadPool:

    def setup_method(self):
        self.transform = BlockingTransform()
        self.pool = WorkerPool(self.transform, max_workers=2, max_queue_depth=1, mode='thread', poll_interval=0.02)

    def teardown_method(self):
        self.transform.release.set()
        self.pool.shutdown(wait=True)

    def test_capacity_plus_queue_then_saturated(self):
        running = [self.pool.submit(task('job_1')), self.pool.submit(task('job_2'))]
        assert self.transform.started.acquire(timeout=5)
        assert self.transform.started.acquire(timeout=5)

        queued = self.pool.submit(task('job_3'))
        with pytest.raises(PoolSaturated):
            self.pool.submit(task('job_4'))
        assert self.pool.stats()['rejected'] == 1

        self.transform.release.set()
        for future in running + [queued]:
            result = future.result(timeout=5)
            assert result.data == b'fdp'
            assert result.duration_ms >= 0
        assert self.pool.stats()['completed'] == 3

    def test_cancel_queued_task(self):
        self.pool.submit(task('job_1'))
        self.pool.submit(task('job_2'))
        assert self.transform.started.acquire(timeout=5)
        assert self.transform.started.acquire(timeout=5)

        queued = self.pool.submit(task('job_3'))
        assert queued.cancel()

        self.transform.release.set()
        self.pool.shutdown(wait=True)
        assert queued.cancelled()
        assert self.pool.stats()['completed'] == 2

    def test_submit_after_shutdown(self):
        self.transform.release.set()
        self.pool.shutdown(wait=True)
        with pytest.raises(RuntimeError):
            self.pool.submit(task('job_1'))

    def test_stats_shape(self):
        stats = self.pool.stats()
        assert stats['mode'] == 'thread'
        assert stats['capacity'] == 2
        assert stats['max_queue_depth'] == 1


class TestTransformErrors:

    def test_exception_becomes_transform_failed(self):
        with WorkerPool(process_transform, max_workers=1, mode='thread', poll_interval=0.02) as pool:
            future = pool.submit(task('job_1', operation='fail'))
            error = future.exception(timeout=5)
        assert isinstance(error, TransformFailed)
        assert isinstance(error.__cause__, ValueError)
        assert pool.stats()['failed'] == 1

    def test_non_bytes_result(self):
        with WorkerPool(lambda operation, data, options: 'text', max_workers=1, mode='thread',
                        poll_interval=0.02) as pool:
            error = pool.submit(task('job_1')).exception(timeout=5)
        assert isinstance(error, TransformFailed)

    def test_system_exit_fails_only_its_future(self):
        with WorkerPool(process_transform, max_workers=1, mode='thread', poll_interval=0.02) as pool:
            error = pool.submit(task('job_1', operation='exit')).exception(timeout=5)
            assert isinstance(error, TransformFailed)
            assert isinstance(error.__cause__, SystemExit)

            result = pool.submit(task('job_2', data=b'abc')).result(timeout=5)
            assert result.data == b'ABC'
            assert pool.stats()['alive'] == 1

    def test_dead_context_is_replaced(self):
        with WorkerPool(process_transform, max_workers=1, mode='thread', poll_interval=0.02) as pool:
            dead = threading.Thread(target=lambda: None)
            dead.start()
            dead.join()
            pool._contexts[0] = dead
            assert pool.stats()['alive'] == 0

            result = pool.submit(task('job_1', data=b'abc')).result(timeout=5)
            assert result.data == b'ABC'
            assert pool.stats()['alive'] == 1

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            WorkerPool(process_transform, mode='fiber')
        with pytest.raises(ValueError):
            WorkerPool(process_transform, max_queue_depth=0)


class TestProcessPool:

    def test_crash_is_contained(self):
        with WorkerPool(process_transform, max_workers=1, mode='process', start_method='spawn',
                        poll_interval=0.02) as pool:
            crashed = pool.submit(task('job_1', operation='crash'))
            assert isinstance(crashed.exception(timeout=60), WorkerCrashed)

            # The context starts a fresh process for the next task
            result = pool.submit(task('job_2', data=b'abc')).result(timeout=60)
            assert result.data == b'ABC'

            stats = pool.stats()
            assert stats['crashed'] == 1
            assert stats['completed'] == 1

    def test_failure_in_process(self):
        with WorkerPool(process_transform, max_workers=1, mode='process', start_method='spawn',
                        poll_interval=0.02) as pool:
            error = pool.submit(task('job_1', operation='fail')).exception(timeout=60)
        assert isinstance(error, TransformFailed)

    def test_system_exit_in_process(self):
        with WorkerPool(process_transform, max_workers=1, mode='process', start_method='spawn',
                        poll_interval=0.02) as pool:
            error = pool.submit(task('job_1', operation='exit')).exception(timeout=60)
            assert isinstance(error, TransformFailed)
            assert isinstance(error.__cause__, SystemExit)

            result = pool.submit(task('job_2', data=b'abc')).result(timeout=60)
            assert result.data == b'ABC'
            assert pool.stats()['alive'] == 1
