"""
Worker pool — polls the job store and processes issuance jobs in parallel.

One polling loop, a bounded ThreadPoolExecutor for the jobs themselves:

  every poll_interval seconds (or until the stop event is set):
    free = concurrency - in_flight
    find_claimable(free) → claim each → IssuanceService.process → settle

Each job runs inside a LoggingExecutionContext, so an exception escaping a
job becomes a TECHNICAL_ERROR failure for that job alone. Each cycle is a
join barrier: it waits for every job it launched, and one job failing never
cancels the others. Inside run() cycles therefore never overlap; the free-slot
check and the shutdown drain apply when run_cycle is also driven from other
threads.

The only guarantee across workers (threads or processes) is the store's
atomic claim. The in-flight set only stops this process from dispatching
the same job twice.
"""

from __future__ import annotations

import secrets
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any
from uuid import UUID

import structlog
from railway import ErrorCode, FailureDescription, LoggingExecutionContext

from vc_pipeline.domain.models import IssuanceJob
from vc_pipeline.domain.ports import JobRepository
from vc_pipeline.issuance import IssuanceService

log = structlog.get_logger()


def new_worker_id() -> str:
    return f"worker-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class IssuanceWorkerPool:
    """
    Claims and processes issuance jobs with at most `concurrency` in flight.

    Construct one per process and call run(stop_event) from a dedicated
    thread; set the event to stop polling. Jobs already running are allowed
    to finish, bounded by shutdown_timeout_seconds.
    """

    def __init__(
        self,
        jobs: JobRepository,
        service: IssuanceService,
        concurrency: int = 2,
        poll_interval_seconds: float = 3.0,
        shutdown_timeout_seconds: float = 30.0,
        worker_id: str | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._jobs = jobs
        self._service = service
        self._concurrency = concurrency
        self._poll_interval = poll_interval_seconds
        self._shutdown_timeout = shutdown_timeout_seconds
        self.worker_id = worker_id or new_worker_id()

        self._in_flight: set[UUID] = set()
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix="issuance-worker"
        )
        self._running = threading.Event()

    # ──────────────────────── Loop ────────────────────────

    def run(self, stop: threading.Event) -> None:
        """Poll until `stop` is set, then drain in-flight jobs."""
        self._running.set()
        log.info(
            "worker.started",
            worker_id=self.worker_id,
            concurrency=self._concurrency,
            poll_interval_seconds=self._poll_interval,
        )
        try:
            while not stop.is_set():
                self.run_cycle()
                stop.wait(self._poll_interval)
        finally:
            self._running.clear()
            self.shutdown()

    def run_cycle(self) -> int:
        """
        One polling cycle: claim up to the free slots and wait for them.

        Safe to call from several threads; slots held by another caller's
        cycle are not reused. Returns the number of jobs dispatched.
        """
        with self._lock:
            free = self._concurrency - len(self._in_flight)
        if free <= 0:
            log.debug("worker.at_capacity", worker_id=self.worker_id)
            return 0

        found = self._jobs.find_claimable(free)
        if found.is_failure():
            log.error("worker.poll_failed", worker_id=self.worker_id, error=found.error().describe())
            return 0

        dispatched = [job for job in found.value() if self._reserve(job.id)]
        if not dispatched:
            return 0

        log.info("worker.dispatching", worker_id=self.worker_id, jobs=len(dispatched))
        futures = [self._executor.submit(self._handle, job) for job in dispatched]
        wait(futures)
        return len(dispatched)

    def shutdown(self) -> None:
        """Block until no job is in flight or the timeout passes."""
        deadline = time.monotonic() + self._shutdown_timeout
        while True:
            with self._lock:
                remaining = len(self._in_flight)
            if remaining == 0:
                break
            if time.monotonic() >= deadline:
                log.warning("worker.shutdown_timeout", worker_id=self.worker_id, remaining=remaining)
                break
            log.info("worker.draining", worker_id=self.worker_id, remaining=remaining)
            time.sleep(min(1.0, self._shutdown_timeout))
        self._executor.shutdown(wait=False)
        log.info("worker.stopped", worker_id=self.worker_id)

    def status(self) -> dict[str, Any]:
        with self._lock:
            active = sorted(str(job_id) for job_id in self._in_flight)
        return {
            "worker_id": self.worker_id,
            "running": self._running.is_set(),
            "concurrency": self._concurrency,
            "poll_interval_seconds": self._poll_interval,
            "active_jobs": active,
        }

    # ──────────────────────── Per job ────────────────────────

    def _reserve(self, job_id: UUID) -> bool:
        with self._lock:
            if job_id in self._in_flight or len(self._in_flight) >= self._concurrency:
                return False
            self._in_flight.add(job_id)
            return True

    def _handle(self, candidate: IssuanceJob) -> None:
        try:
            claimed = self._jobs.claim(candidate.id, self.worker_id)
            if claimed.is_failure():
                error = claimed.error()
                if error.code is ErrorCode.CONFLICT_ERROR:
                    log.info("worker.claim_lost", job_id=str(candidate.id))
                else:
                    log.error("worker.claim_failed", job_id=str(candidate.id), error=error.describe())
                return

            job = claimed.value()
            log.info(
                "worker.job_claimed",
                job_id=str(job.id),
                batch_id=job.batch_id,
                attempt=job.attempts,
                worker_id=self.worker_id,
            )
            ctx = LoggingExecutionContext(operation="IssueCredential", job_id=str(job.id))
            outcome = ctx.execute(lambda: self._service.process(job))
            if outcome.is_failure():
                self._settle_failure(job, outcome.error())
        finally:
            with self._lock:
                self._in_flight.discard(candidate.id)

    def _settle_failure(self, job: IssuanceJob, error: FailureDescription) -> None:
        message = error.describe()
        if error.retryable:
            settled = self._jobs.mark_failed_or_requeue(job.id, message)
        else:
            settled = self._jobs.mark_failed(job.id, message)

        settled.peek(
            lambda j: log.warning(
                "worker.job_failed",
                job_id=str(j.id),
                status=j.status.value,
                attempts=j.attempts,
                code=error.code.value,
                error=message,
            )
        ).peek_failure(
            lambda err: log.error(
                "worker.settle_failed", job_id=str(job.id), error=err.describe()
            )
        )
