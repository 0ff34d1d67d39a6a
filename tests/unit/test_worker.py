"""
Unit tests for the worker pool.

Exercises the polling cycle directly (run_cycle) and the full loop
(run with a stop event) against the in-memory job store.

Test categories:
  - Concurrency bound: never more than `concurrency` jobs in flight
  - Settling: retryable failures requeue, others fail terminally
  - Claim races: a lost claim is skipped, never processed
  - Lifecycle: run() stops on the event and drains
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from railway import ErrorCode, Result

from tests.conftest import Harness, make_batch
from vc_pipeline.adapters.memory import InMemoryJobRepository
from vc_pipeline.domain.models import IssuanceJob, JobResult, JobStatus
from vc_pipeline.worker import IssuanceWorkerPool, new_worker_id


def _service(process) -> MagicMock:
    service = MagicMock()
    service.process.side_effect = process
    return service


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestConcurrencyBound:
    def test_cycle_dispatches_at_most_concurrency_jobs(self) -> None:
        """
        GIVEN five pending jobs and a pool with concurrency=2
        WHEN one cycle runs
        THEN exactly two jobs are processed, and they run at the same time.
        """
        jobs = InMemoryJobRepository()
        for n in range(5):
            jobs.enqueue(f"B{n}")
        both_running = threading.Barrier(2, timeout=5)

        def process(job: IssuanceJob) -> Result[IssuanceJob]:
            both_running.wait()
            return Result.success(job)

        pool = IssuanceWorkerPool(jobs, _service(process), concurrency=2)

        assert pool.run_cycle() == 2
        assert len(jobs.find_claimable(10).value()) == 3

    def test_in_flight_never_exceeds_bound(self) -> None:
        jobs = InMemoryJobRepository()
        for n in range(7):
            jobs.enqueue(f"B{n}")
        lock = threading.Lock()
        active = 0
        peak = 0

        def process(job: IssuanceJob) -> Result[IssuanceJob]:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return Result.success(job)

        pool = IssuanceWorkerPool(jobs, _service(process), concurrency=3)
        processed = 0
        while (dispatched := pool.run_cycle()) > 0:
            processed += dispatched

        assert processed == 7
        assert peak <= 3

    def test_cycle_at_capacity_dispatches_nothing(self) -> None:
        """
        GIVEN a cycle on another thread holding the only slot
        WHEN a second cycle runs
        THEN it dispatches nothing and the pending job stays queued.
        """
        jobs = InMemoryJobRepository()
        jobs.enqueue("B1")
        jobs.enqueue("B2")
        entered = threading.Event()
        release = threading.Event()

        def process(job: IssuanceJob) -> Result[IssuanceJob]:
            entered.set()
            release.wait(5)
            return Result.success(job)

        pool = IssuanceWorkerPool(jobs, _service(process), concurrency=1)
        first = threading.Thread(target=pool.run_cycle)
        first.start()
        assert entered.wait(5)

        assert pool.run_cycle() == 0
        assert len(jobs.find_claimable(10).value()) == 1

        release.set()
        first.join(timeout=5)
        assert pool.status()["active_jobs"] == []

    def test_concurrency_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="at least 1"):
            IssuanceWorkerPool(InMemoryJobRepository(), MagicMock(), concurrency=0)


class TestSettling:
    def test_transient_failure_retries_until_exhausted(self) -> None:
        """
        GIVEN a job with max_attempts=3 whose processing always times out
        WHEN cycles run until nothing is claimable
        THEN the job was attempted three times and ends failed with the error.
        """
        jobs = InMemoryJobRepository()
        job = jobs.enqueue("B1", max_attempts=3).value()
        service = _service(lambda j: Result.failure(ErrorCode.TIMEOUT_ERROR, "provider slow"))
        pool = IssuanceWorkerPool(jobs, service, concurrency=1)

        cycles = 0
        while pool.run_cycle() > 0:
            cycles += 1

        final = jobs.get(job.id).value()
        assert cycles == 3
        assert service.process.call_count == 3
        assert final.status is JobStatus.FAILED
        assert final.attempts == 3
        assert final.last_error == "provider slow"

    def test_validation_failure_is_not_retried(self) -> None:
        jobs = InMemoryJobRepository()
        job = jobs.enqueue("B1", max_attempts=3).value()
        service = _service(lambda j: Result.failure(ErrorCode.VALIDATION_ERROR, "payload rejected"))
        pool = IssuanceWorkerPool(jobs, service, concurrency=1)

        pool.run_cycle()

        final = jobs.get(job.id).value()
        assert final.status is JobStatus.FAILED
        assert final.attempts == 1
        assert pool.run_cycle() == 0

    def test_exception_in_processing_is_contained_and_retried(self) -> None:
        jobs = InMemoryJobRepository()
        job = jobs.enqueue("B1").value()

        def explode(j: IssuanceJob) -> Result[IssuanceJob]:
            raise RuntimeError("kaboom")

        pool = IssuanceWorkerPool(jobs, _service(explode), concurrency=1)

        pool.run_cycle()

        requeued = jobs.get(job.id).value()
        assert requeued.status is JobStatus.PENDING
        assert "kaboom" in (requeued.last_error or "")

    def test_one_failing_job_does_not_affect_siblings(self) -> None:
        jobs = InMemoryJobRepository()
        bad = jobs.enqueue("BAD").value()
        good = jobs.enqueue("GOOD").value()

        def process(j: IssuanceJob) -> Result[IssuanceJob]:
            if j.batch_id == "BAD":
                return Result.failure(ErrorCode.VALIDATION_ERROR, "bad batch")
            return jobs.mark_success(j.id, JobResult("vc-1", "https://x/vc-1", uuid4()))

        pool = IssuanceWorkerPool(jobs, _service(process), concurrency=2)

        assert pool.run_cycle() == 2
        assert jobs.get(bad.id).value().status is JobStatus.FAILED
        assert jobs.get(good.id).value().status is JobStatus.SUCCESS


class TestClaimRace:
    def test_lost_claim_is_skipped(self) -> None:
        """
        GIVEN another worker claims the job between poll and claim
        WHEN the cycle runs
        THEN the job is not processed here and its state is untouched.
        """
        candidate = IssuanceJob(batch_id="B1")
        jobs = MagicMock()
        jobs.find_claimable.return_value = Result.success([candidate])
        jobs.claim.return_value = Result.failure(ErrorCode.CONFLICT_ERROR, "not claimable")
        service = MagicMock()
        pool = IssuanceWorkerPool(jobs, service, concurrency=1)

        pool.run_cycle()

        service.process.assert_not_called()
        jobs.mark_failed_or_requeue.assert_not_called()
        jobs.mark_failed.assert_not_called()

    def test_poll_failure_dispatches_nothing(self) -> None:
        jobs = MagicMock()
        jobs.find_claimable.return_value = Result.failure(ErrorCode.DATABASE_ERROR, "down")
        pool = IssuanceWorkerPool(jobs, MagicMock(), concurrency=1)

        assert pool.run_cycle() == 0


class TestLifecycle:
    def test_run_processes_until_stopped(self, harness: Harness) -> None:
        """
        GIVEN a pool running in its own thread over the real issuance service
        WHEN a job is queued and the stop event is then set
        THEN the job completes and the loop exits.
        """
        harness.batches.add_batch(make_batch("B1"))
        request = harness.service.request_issuance("B1").value()
        pool = IssuanceWorkerPool(
            harness.jobs, harness.service, concurrency=2, poll_interval_seconds=0.01
        )
        stop = threading.Event()
        thread = threading.Thread(target=pool.run, args=(stop,))
        thread.start()

        finished = _wait_until(
            lambda: harness.jobs.get(request.job.id).value().status is JobStatus.SUCCESS
        )
        assert pool.status()["running"]
        stop.set()
        thread.join(timeout=5)

        assert finished
        assert not thread.is_alive()
        assert not pool.status()["running"]
        assert harness.certificates.find_by_batch("B1").is_success()

    def test_shutdown_waits_for_in_flight_jobs(self) -> None:
        """
        GIVEN a job still running in a cycle on another thread
        WHEN shutdown is requested
        THEN shutdown returns only after that job has finished.
        """
        jobs = InMemoryJobRepository()
        jobs.enqueue("B1")
        finished: list[str] = []

        def process(job: IssuanceJob) -> Result[IssuanceJob]:
            time.sleep(0.3)
            finished.append(job.batch_id)
            return Result.success(job)

        pool = IssuanceWorkerPool(
            jobs, _service(process), concurrency=1, shutdown_timeout_seconds=5
        )
        cycle = threading.Thread(target=pool.run_cycle)
        cycle.start()
        assert _wait_until(lambda: len(pool.status()["active_jobs"]) == 1)

        pool.shutdown()

        assert finished == ["B1"]
        assert pool.status()["active_jobs"] == []
        cycle.join(timeout=5)

    def test_status_reports_configuration(self) -> None:
        pool = IssuanceWorkerPool(
            InMemoryJobRepository(), MagicMock(), concurrency=4, worker_id="worker-x"
        )
        status = pool.status()
        assert status["worker_id"] == "worker-x"
        assert status["concurrency"] == 4
        assert status["active_jobs"] == []

    def test_worker_ids_are_unique(self) -> None:
        assert new_worker_id() != new_worker_id()
        assert new_worker_id().startswith("worker-")
