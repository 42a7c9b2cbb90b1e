"""
Tests for the durable job queue
"""

import threading

import pytest

from conftest import make_job
from docjobs.db.models import JobState
from docjobs.entitlements import Tier
from docjobs.jobs.queue import JobQueue


@pytest.fixture
def account_id(accounts):
    return accounts.create_account(Tier.BUSINESS).id


class TestEnqueueAndLease:

    def test_unenqueued_job_is_invisible(self, queue, jobs, account_id):
        make_job(jobs, account_id)
        assert queue.lease('w1') is None
        assert queue.get_pending_count() == 0

    def test_lease_sets_owner_and_expiry(self, queue, jobs, account_id, clock):
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)

        job = queue.lease('w1')
        assert job.id == job_id
        assert job.state == JobState.LEASED.value
        assert job.lease_owner == 'w1'
        assert (job.lease_expires_at - clock()).total_seconds() == 60
        assert queue.lease('w2') is None

    def test_priority_then_fifo(self, queue, jobs, account_id, clock):
        low_first = make_job(jobs, account_id, priority=1)
        high = make_job(jobs, account_id, priority=3)
        low_second = make_job(jobs, account_id, priority=1)
        for job_id in (low_first, high, low_second):
            queue.enqueue(job_id)
            clock.advance(1)

        leased = [queue.lease('w1').id for _ in range(3)]
        assert leased == [high, low_first, low_second]

    def test_enqueue_is_idempotent(self, queue, jobs, account_id, clock):
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)
        first = jobs.get(job_id).enqueued_at
        clock.advance(5)
        queue.enqueue(job_id)
        assert jobs.get(job_id).enqueued_at == first

    def test_enqueue_terminal_job(self, queue, jobs, account_id):
        job_id = make_job(jobs, account_id, state='failed')
        with pytest.raises(ValueError):
            queue.enqueue(job_id)

    def test_concurrent_leases_never_share_a_job(self, queue, jobs, account_id):
        job_ids = set()
        for _ in range(12):
            job_id = make_job(jobs, account_id)
            queue.enqueue(job_id)
            job_ids.add(job_id)

        leased = []
        lock = threading.Lock()

        def drain(worker_id):
            while True:
                job = queue.lease(worker_id)
                if job is None:
                    return
                with lock:
                    leased.append(job.id)

        threads = [threading.Thread(target=drain, args=(f'w{i}',)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(leased) == sorted(job_ids)


class TestLeaseLifecycle:

    def test_start_and_complete(self, queue, jobs, account_id):
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)
        queue.lease('w1')

        assert not queue.start(job_id, 'w2')
        assert queue.start(job_id, 'w1')
        assert not queue.complete(job_id, 'w2', output_key='out')
        assert queue.complete(job_id, 'w1', output_key='out', credits_charged=1)

        job = jobs.get(job_id)
        assert job.state == JobState.COMPLETED.value
        assert job.output_key == 'out'
        assert job.lease_owner is None
        assert job.completed_at is not None
        # Completing twice is refused
        assert not queue.complete(job_id, 'w1')

    def test_start_after_expiry_is_refused(self, queue, jobs, account_id, clock):
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)
        queue.lease('w1')
        clock.advance(61)
        assert not queue.start(job_id, 'w1')

    def test_extend_lease(self, queue, jobs, account_id, clock):
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)
        queue.lease('w1')

        clock.advance(50)
        assert queue.extend_lease(job_id, 'w1')
        clock.advance(50)
        assert queue.requeue_expired().total == 0
        assert not queue.extend_lease(job_id, 'w2')

        clock.advance(11)
        assert not queue.extend_lease(job_id, 'w1')

    def test_fail(self, queue, jobs, account_id):
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)
        queue.lease('w1')

        assert not queue.fail(job_id, 'transform_failed', worker_id='w2')
        assert queue.fail(job_id, 'transform_failed', worker_id='w1')
        job = jobs.get(job_id)
        assert job.state == JobState.FAILED.value
        assert job.error_code == 'transform_failed'
        assert job.error_detail == 'The document could not be processed'
        assert not queue.fail(job_id, 'transform_failed')


class TestRequeue:

    def test_expired_lease_is_requeued(self, queue, jobs, account_id, clock):
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)
        queue.lease('w1')

        clock.advance(61)
        report = queue.requeue_expired()
        assert report.requeued == [job_id]

        job = jobs.get(job_id)
        assert job.state == JobState.PENDING.value
        assert job.attempts == 1
        assert job.lease_owner is None
        assert queue.lease('w2').id == job_id

    def test_attempts_are_exhausted(self, db, jobs, account_id, clock):
        queue = JobQueue(db, lease_seconds=10, max_attempts=2, retry_delay_base=0, clock=clock)
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)

        outcomes = []
        for _ in range(3):
            assert queue.lease('w1').id == job_id
            clock.advance(11)
            report = queue.requeue_expired()
            outcomes.append('requeued' if report.requeued else 'failed')

        assert outcomes == ['requeued', 'requeued', 'failed']
        job = jobs.get(job_id)
        assert job.state == JobState.FAILED.value
        assert job.error_code == 'lease_exhausted'
        assert queue.lease('w1') is None

    def test_backoff_delays_retry(self, db, jobs, account_id, clock):
        queue = JobQueue(db, lease_seconds=10, retry_delay_base=5, retry_delay_max=300, clock=clock)
        assert [queue.backoff(n) for n in (0, 1, 2, 10)] == [5, 10, 20, 300]

        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)
        queue.lease('w1')
        clock.advance(11)
        queue.requeue_expired()

        assert queue.lease('w1') is None
        clock.advance(5)
        assert queue.lease('w1').id == job_id

    def test_release(self, queue, jobs, account_id):
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)
        queue.lease('w1')

        assert queue.release(job_id, 'w2') is None
        assert queue.release(job_id, 'w1', 'worker_crashed') is True
        job = jobs.get(job_id)
        assert job.state == JobState.PENDING.value
        assert job.attempts == 1

    def test_release_exhausted_by_saturation(self, db, jobs, account_id, clock):
        queue = JobQueue(db, max_attempts=1, retry_delay_base=0, clock=clock)
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)

        queue.lease('w1')
        assert queue.release(job_id, 'w1', 'pool_saturated') is True
        queue.lease('w1')
        assert queue.release(job_id, 'w1', 'pool_saturated') is False
        assert jobs.get(job_id).error_code == 'pool_saturated'


class TestCancel:

    def test_cancel_pending(self, queue, jobs, account_id):
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)

        assert queue.cancel(job_id) == 'cancelled'
        job = jobs.get(job_id)
        assert job.state == JobState.FAILED.value
        assert job.error_code == 'cancelled'
        assert queue.lease('w1') is None
        assert queue.cancel(job_id) is None

    def test_cancel_leased_is_advisory(self, queue, jobs, account_id, clock):
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)
        queue.lease('w1')

        assert queue.cancel(job_id) == 'cancel_requested'
        assert jobs.get(job_id).state == JobState.LEASED.value

        # Not requeued once the lease ends
        clock.advance(61)
        report = queue.requeue_expired()
        assert report.failed == [job_id]
        assert jobs.get(job_id).error_code == 'cancelled'

    def test_cancel_unknown(self, queue):
        assert queue.cancel('job_missing') is None


class TestStats:

    def test_queue_stats(self, queue, jobs, account_id, clock):
        for operation in ('compress', 'compress', 'watermark'):
            queue.enqueue(make_job(jobs, account_id, operation=operation))
        queue.lease('w1')
        clock.advance(61)

        stats = queue.get_queue_stats()
        assert stats['total'] == 3
        assert stats['by_state'] == {'pending': 2, 'leased': 1}
        assert stats['by_operation'] == {'compress': 2, 'watermark': 1}
        assert stats['expired_leases'] == 1
        assert queue.get_pending_count() == 2

    def test_job_status(self, queue, jobs, account_id):
        job_id = make_job(jobs, account_id)
        queue.enqueue(job_id)
        status = queue.get_job_status(job_id)
        assert status['state'] == 'pending'
        assert status['account_id'] == account_id
        assert queue.get_job_status('job_missing') is None
