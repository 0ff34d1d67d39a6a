"""
In-memory adapters — lock-guarded stores for the memory backend and tests.

Adapter layer — implements JobRepository, CertificateRepository,
RevocationLedger, BatchDirectory and Notifier with plain dicts.

Every mutating operation runs entirely under one threading.Lock, so a claim
is the in-process equivalent of the conditional UPDATE the PostgreSQL
adapter issues: check and write happen atomically, never read-then-write
across two critical sections. Stored models are frozen; updates replace the
entry with a new instance built via dataclasses.replace().
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from uuid import UUID, uuid4

import structlog
from railway import ErrorCode
from railway.result import Result

from vc_pipeline.domain.models import (
    BatchRecord,
    Certificate,
    CertificateStatus,
    InspectionRecord,
    IssuanceJob,
    JobResult,
    JobStatus,
    Revocation,
    utcnow,
)

log = structlog.get_logger()


class InMemoryJobRepository:
    """Implements the JobRepository port."""

    def __init__(self) -> None:
        self._jobs: dict[UUID, IssuanceJob] = {}
        self._lock = threading.Lock()

    def enqueue(
        self, batch_id: str, inspection_id: str | None = None, max_attempts: int = 3
    ) -> Result[IssuanceJob]:
        job = IssuanceJob(batch_id=batch_id, inspection_id=inspection_id, max_attempts=max_attempts)
        with self._lock:
            self._jobs[job.id] = job
        log.info("jobs.enqueued", job_id=str(job.id), batch_id=batch_id)
        return Result.success(job)

    def get(self, job_id: UUID) -> Result[IssuanceJob]:
        with self._lock:
            job = self._jobs.get(job_id)
        return Result.from_optional(job, f"Issuance job {job_id} not found")

    def find_claimable(self, limit: int) -> Result[list[IssuanceJob]]:
        with self._lock:
            jobs = sorted(
                (j for j in self._jobs.values() if j.claimable),
                key=lambda j: j.created_at,
            )
        return Result.success(jobs[: max(limit, 0)])

    def find_unresolved_for_batch(self, batch_id: str) -> Result[list[IssuanceJob]]:
        with self._lock:
            jobs = [
                j
                for j in self._jobs.values()
                if j.batch_id == batch_id
                and j.status in (JobStatus.PENDING, JobStatus.PROCESSING)
            ]
        return Result.success(sorted(jobs, key=lambda j: j.created_at))

    def claim(self, job_id: UUID, worker_id: str) -> Result[IssuanceJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.claimable:
                return Result.failure(
                    ErrorCode.CONFLICT_ERROR, f"Issuance job {job_id} is not claimable"
                )
            claimed = replace(
                job,
                status=JobStatus.PROCESSING,
                worker_id=worker_id,
                attempts=job.attempts + 1,
                updated_at=utcnow(),
            )
            self._jobs[job_id] = claimed
        return Result.success(claimed)

    def mark_success(self, job_id: UUID, result: JobResult) -> Result[IssuanceJob]:
        return self._update(
            job_id,
            status=JobStatus.SUCCESS,
            result=result,
            certificate_id=result.certificate_id,
            worker_id=None,
            last_error=None,
        )

    def mark_failed_or_requeue(self, job_id: UUID, error: str) -> Result[IssuanceJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return Result.failure(ErrorCode.NOT_FOUND, f"Issuance job {job_id} not found")
            status = JobStatus.FAILED if job.retries_exhausted else JobStatus.PENDING
            updated = replace(
                job, status=status, last_error=error, worker_id=None, updated_at=utcnow()
            )
            self._jobs[job_id] = updated
        return Result.success(updated)

    def mark_failed(self, job_id: UUID, error: str) -> Result[IssuanceJob]:
        return self._update(job_id, status=JobStatus.FAILED, last_error=error, worker_id=None)

    def count_by_status(self) -> Result[dict[str, int]]:
        with self._lock:
            counts = Counter(j.status.value for j in self._jobs.values())
        return Result.success({s.value: counts.get(s.value, 0) for s in JobStatus})

    def purge_finished(self, older_than: datetime) -> Result[int]:
        with self._lock:
            doomed = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status.terminal and job.updated_at < older_than
            ]
            for job_id in doomed:
                del self._jobs[job_id]
        return Result.success(len(doomed))

    def _update(self, job_id: UUID, **changes: object) -> Result[IssuanceJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return Result.failure(ErrorCode.NOT_FOUND, f"Issuance job {job_id} not found")
            updated = replace(job, updated_at=utcnow(), **changes)  # type: ignore[arg-type]
            self._jobs[job_id] = updated
        return Result.success(updated)


class InMemoryCertificateRepository:
    """Implements the CertificateRepository port with a unique index on batch id."""

    def __init__(self) -> None:
        self._certificates: dict[UUID, Certificate] = {}
        self._lock = threading.Lock()

    def add(self, certificate: Certificate) -> Result[Certificate]:
        with self._lock:
            if any(c.batch_id == certificate.batch_id for c in self._certificates.values()):
                return Result.failure(
                    ErrorCode.CONFLICT_ERROR,
                    f"Certificate already exists for batch {certificate.batch_id}",
                )
            self._certificates[certificate.id] = certificate
        return Result.success(certificate)

    def get(self, certificate_id: UUID) -> Result[Certificate]:
        with self._lock:
            certificate = self._certificates.get(certificate_id)
        return Result.from_optional(certificate, f"Certificate {certificate_id} not found")

    def find_by_hash(self, content_hash: str) -> Result[Certificate]:
        return self._find(lambda c: c.content_hash == content_hash, f"hash {content_hash}")

    def find_by_provider_id(self, provider_credential_id: str) -> Result[Certificate]:
        return self._find(
            lambda c: c.provider_credential_id == provider_credential_id,
            f"provider id {provider_credential_id}",
        )

    def find_by_batch(self, batch_id: str) -> Result[Certificate]:
        return self._find(lambda c: c.batch_id == batch_id, f"batch {batch_id}")

    def update_provider_fields(
        self, certificate_id: UUID, provider_credential_id: str, retrieval_url: str | None
    ) -> Result[Certificate]:
        with self._lock:
            certificate = self._certificates.get(certificate_id)
            if certificate is None:
                return Result.failure(
                    ErrorCode.NOT_FOUND, f"Certificate {certificate_id} not found"
                )
            updated = replace(
                certificate,
                provider_credential_id=provider_credential_id,
                retrieval_url=retrieval_url or certificate.retrieval_url,
            )
            if not certificate.revoked and certificate.status is not CertificateStatus.EXPIRED:
                updated = replace(updated, status=CertificateStatus.ACTIVE)
            self._certificates[certificate_id] = updated
        return Result.success(updated)

    def mark_revoked(
        self, certificate_id: UUID, revoked_by: str, reason: str, revoked_at: datetime
    ) -> Result[Certificate]:
        with self._lock:
            certificate = self._certificates.get(certificate_id)
            if certificate is None:
                return Result.failure(
                    ErrorCode.NOT_FOUND, f"Certificate {certificate_id} not found"
                )
            if certificate.revoked:
                return Result.success(certificate)
            updated = replace(
                certificate,
                status=CertificateStatus.REVOKED,
                revoked=True,
                revoked_at=revoked_at,
                revoked_by=revoked_by,
                revocation_reason=reason,
            )
            self._certificates[certificate_id] = updated
        return Result.success(updated)

    def mark_expired(self, certificate_id: UUID) -> Result[Certificate]:
        with self._lock:
            certificate = self._certificates.get(certificate_id)
            if certificate is None:
                return Result.failure(
                    ErrorCode.NOT_FOUND, f"Certificate {certificate_id} not found"
                )
            if certificate.status is CertificateStatus.ACTIVE:
                certificate = replace(certificate, status=CertificateStatus.EXPIRED)
                self._certificates[certificate_id] = certificate
        return Result.success(certificate)

    def expire_due(self, now: datetime) -> Result[int]:
        with self._lock:
            due = [
                c
                for c in self._certificates.values()
                if c.status is CertificateStatus.ACTIVE
                and c.expires_at is not None
                and c.expires_at < now
            ]
            for certificate in due:
                self._certificates[certificate.id] = replace(
                    certificate, status=CertificateStatus.EXPIRED
                )
        return Result.success(len(due))

    def count_by_status(self) -> Result[dict[str, int]]:
        with self._lock:
            counts = Counter(c.status.value for c in self._certificates.values())
        return Result.success({s.value: counts.get(s.value, 0) for s in CertificateStatus})

    def _find(self, predicate: Callable[[Certificate], bool], description: str) -> Result[Certificate]:
        with self._lock:
            match = next((c for c in self._certificates.values() if predicate(c)), None)
        return Result.from_optional(match, f"No certificate with {description}")


class InMemoryRevocationLedger:
    """Implements the RevocationLedger port. Append-only."""

    def __init__(self) -> None:
        self._revocations: list[Revocation] = []
        self._lock = threading.Lock()

    def append(self, revocation: Revocation) -> Result[Revocation]:
        with self._lock:
            self._revocations.append(revocation)
        log.info(
            "revocations.appended",
            revocation_id=str(revocation.id),
            reason=revocation.reason.value,
        )
        return Result.success(revocation)

    def append_if_absent(self, revocation: Revocation) -> Result[bool]:
        key = revocation.provider_credential_id
        with self._lock:
            if key is not None and any(r.provider_credential_id == key for r in self._revocations):
                return Result.success(False)
            self._revocations.append(revocation)
        log.info(
            "revocations.appended",
            revocation_id=str(revocation.id),
            reason=revocation.reason.value,
        )
        return Result.success(True)

    def find_matching(
        self,
        certificate_id: UUID | None = None,
        content_hash: str | None = None,
        provider_credential_id: str | None = None,
    ) -> Result[list[Revocation]]:
        with self._lock:
            matches = [
                r
                for r in self._revocations
                if (certificate_id is not None and r.certificate_id == certificate_id)
                or (content_hash is not None and r.content_hash == content_hash)
                or (
                    provider_credential_id is not None
                    and r.provider_credential_id == provider_credential_id
                )
            ]
        return Result.success(matches)


class InMemoryBatchDirectory:
    """
    Implements the BatchDirectory port over seeded records.

    Batches and inspections belong to other services; this directory only
    holds what `add_batch` / `add_inspection` put in it.
    """

    def __init__(self) -> None:
        self._batches: dict[str, BatchRecord] = {}
        self._inspections: dict[str, InspectionRecord] = {}
        self._certified_at: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def add_batch(self, batch: BatchRecord) -> None:
        with self._lock:
            self._batches[batch.id] = batch

    def add_inspection(self, inspection: InspectionRecord) -> None:
        with self._lock:
            self._inspections[inspection.id] = inspection

    def get_batch(self, batch_id: str) -> Result[BatchRecord]:
        with self._lock:
            batch = self._batches.get(batch_id)
        return Result.from_optional(batch, f"Batch {batch_id} not found")

    def get_inspection(self, inspection_id: str) -> Result[InspectionRecord]:
        with self._lock:
            inspection = self._inspections.get(inspection_id)
        return Result.from_optional(inspection, f"Inspection {inspection_id} not found")

    def mark_certified(self, batch_id: str, certified_at: datetime) -> Result[bool]:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.status != "approved":
                return Result.success(False)
            self._batches[batch_id] = replace(batch, status="certified")
            self._certified_at[batch_id] = certified_at
        return Result.success(True)


class InMemoryNotifier:
    """Implements the Notifier port by recording what would have been sent."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, UUID]] = []
        self._lock = threading.Lock()

    def certificate_issued(self, batch: BatchRecord, certificate: Certificate) -> Result[str]:
        notification_id = str(uuid4())
        with self._lock:
            self.sent.append((batch.farmer_id, certificate.id))
        log.info(
            "notifications.certificate_issued",
            farmer_id=batch.farmer_id,
            certificate_id=str(certificate.id),
        )
        return Result.success(notification_id)
