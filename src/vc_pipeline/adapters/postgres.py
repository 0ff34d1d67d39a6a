"""
PostgreSQL adapters — jobs, certificates, revocations and collaborator tables.

Adapter layer — implements JobRepository, CertificateRepository,
RevocationLedger, BatchDirectory and Notifier using psycopg (v3) with
parameterized queries.

The claim is one conditional UPDATE:

  UPDATE issuance_jobs SET status='processing', attempts=attempts+1, ...
   WHERE id=%s AND status='pending' AND attempts < max_attempts
  RETURNING *

Row-level locking makes it a compare-and-swap: of N concurrent claimers,
exactly one gets a row back. No ORM — raw SQL for control and transparency.
All exceptions are caught at this adapter boundary via Result.from_computation().
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID, uuid4

import psycopg
import structlog
from psycopg import errors as pg_errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from railway import ErrorCode, FailureDescription
from railway.result import Result

from vc_pipeline.domain.models import (
    BatchRecord,
    Certificate,
    CertificateStatus,
    CredentialDocument,
    InspectionRecord,
    IssuanceJob,
    JobResult,
    JobStatus,
    Revocation,
    RevocationReason,
)

log = structlog.get_logger()

T = TypeVar("T")


class _PsycopgAdapter:
    """Shared connection handling: one short-lived connection per operation."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        with psycopg.connect(self._dsn, row_factory=dict_row) as conn, conn.cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall() if cur.description else []
            conn.commit()
            return rows

    def _rowcount(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        with psycopg.connect(self._dsn) as conn, conn.cursor() as cur:
            cur.execute(sql, params)
            count = cur.rowcount
            conn.commit()
            return count

    def _query(
        self,
        sql: str,
        params: tuple[Any, ...],
        mapper: Callable[[dict[str, Any]], T],
        error_message: str,
    ) -> Result[list[T]]:
        return Result.from_computation(
            lambda: [mapper(row) for row in self._fetch(sql, params)],
            ErrorCode.DATABASE_ERROR,
            error_message,
        )


def _first(rows: list[T], code: ErrorCode, message: str) -> Result[T]:
    return Result.from_optional(rows[0] if rows else None, message, code)


def _float(value: Any) -> float | None:
    return float(value) if isinstance(value, Decimal | int | float) else None


# ─────────────────────── Jobs ───────────────────────

_JOB_COLUMNS = """
    id, batch_id, inspection_id, certificate_id, status, attempts, max_attempts,
    worker_id, last_error, result, created_at, updated_at
"""

_INSERT_JOB = f"""
INSERT INTO issuance_jobs (id, batch_id, inspection_id, max_attempts, created_at, updated_at)
VALUES (%s, %s, %s, %s, %s, %s)
RETURNING {_JOB_COLUMNS}
"""

_SELECT_CLAIMABLE = f"""
SELECT {_JOB_COLUMNS} FROM issuance_jobs
 WHERE status = 'pending' AND attempts < max_attempts
 ORDER BY created_at ASC
 LIMIT %s
"""

_CLAIM_JOB = f"""
UPDATE issuance_jobs
   SET status = 'processing', worker_id = %s, attempts = attempts + 1, updated_at = now()
 WHERE id = %s AND status = 'pending' AND attempts < max_attempts
RETURNING {_JOB_COLUMNS}
"""

_MARK_SUCCESS = f"""
UPDATE issuance_jobs
   SET status = 'success', result = %s, certificate_id = %s,
       worker_id = NULL, last_error = NULL, updated_at = now()
 WHERE id = %s
RETURNING {_JOB_COLUMNS}
"""

_MARK_FAILED_OR_REQUEUE = f"""
UPDATE issuance_jobs
   SET status = CASE WHEN attempts >= max_attempts THEN 'failed' ELSE 'pending' END,
       last_error = %s, worker_id = NULL, updated_at = now()
 WHERE id = %s
RETURNING {_JOB_COLUMNS}
"""

_MARK_FAILED = f"""
UPDATE issuance_jobs
   SET status = 'failed', last_error = %s, worker_id = NULL, updated_at = now()
 WHERE id = %s
RETURNING {_JOB_COLUMNS}
"""


def _job_from_row(row: dict[str, Any]) -> IssuanceJob:
    raw_result = row["result"]
    result = (
        JobResult(
            provider_credential_id=raw_result["providerCredentialId"],
            retrieval_url=raw_result["retrievalUrl"],
            certificate_id=UUID(raw_result["certificateId"]),
        )
        if raw_result
        else None
    )
    return IssuanceJob(
        id=row["id"],
        batch_id=row["batch_id"],
        inspection_id=row["inspection_id"],
        certificate_id=row["certificate_id"],
        status=JobStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        worker_id=row["worker_id"],
        last_error=row["last_error"],
        result=result,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PsycopgJobRepository(_PsycopgAdapter):
    """Implements the JobRepository port."""

    def enqueue(
        self, batch_id: str, inspection_id: str | None = None, max_attempts: int = 3
    ) -> Result[IssuanceJob]:
        job = IssuanceJob(batch_id=batch_id, inspection_id=inspection_id, max_attempts=max_attempts)
        return (
            self._query(
                _INSERT_JOB,
                (job.id, batch_id, inspection_id, max_attempts, job.created_at, job.updated_at),
                _job_from_row,
                "Failed to enqueue issuance job",
            )
            .flat_map(lambda rows: _first(rows, ErrorCode.DATABASE_ERROR, "Insert returned no row"))
            .peek(lambda j: log.info("jobs.enqueued", job_id=str(j.id), batch_id=batch_id))
        )

    def get(self, job_id: UUID) -> Result[IssuanceJob]:
        return self._query(
            f"SELECT {_JOB_COLUMNS} FROM issuance_jobs WHERE id = %s",
            (job_id,),
            _job_from_row,
            "Failed to load issuance job",
        ).flat_map(lambda rows: _first(rows, ErrorCode.NOT_FOUND, f"Issuance job {job_id} not found"))

    def find_claimable(self, limit: int) -> Result[list[IssuanceJob]]:
        return self._query(
            _SELECT_CLAIMABLE, (max(limit, 0),), _job_from_row, "Failed to list claimable jobs"
        )

    def find_unresolved_for_batch(self, batch_id: str) -> Result[list[IssuanceJob]]:
        return self._query(
            f"SELECT {_JOB_COLUMNS} FROM issuance_jobs"
            " WHERE batch_id = %s AND status IN ('pending', 'processing')"
            " ORDER BY created_at ASC",
            (batch_id,),
            _job_from_row,
            "Failed to list unresolved jobs",
        )

    def claim(self, job_id: UUID, worker_id: str) -> Result[IssuanceJob]:
        return self._query(
            _CLAIM_JOB, (worker_id, job_id), _job_from_row, "Failed to claim issuance job"
        ).flat_map(
            lambda rows: _first(
                rows, ErrorCode.CONFLICT_ERROR, f"Issuance job {job_id} is not claimable"
            )
        )

    def mark_success(self, job_id: UUID, result: JobResult) -> Result[IssuanceJob]:
        payload = Jsonb(
            {
                "providerCredentialId": result.provider_credential_id,
                "retrievalUrl": result.retrieval_url,
                "certificateId": str(result.certificate_id),
            }
        )
        return self._update(_MARK_SUCCESS, (payload, result.certificate_id, job_id), job_id)

    def mark_failed_or_requeue(self, job_id: UUID, error: str) -> Result[IssuanceJob]:
        return self._update(_MARK_FAILED_OR_REQUEUE, (error, job_id), job_id)

    def mark_failed(self, job_id: UUID, error: str) -> Result[IssuanceJob]:
        return self._update(_MARK_FAILED, (error, job_id), job_id)

    def count_by_status(self) -> Result[dict[str, int]]:
        return self._query(
            "SELECT status, count(*) AS n FROM issuance_jobs GROUP BY status",
            (),
            lambda row: (row["status"], int(row["n"])),
            "Failed to count jobs",
        ).map(lambda pairs: {s.value: dict(pairs).get(s.value, 0) for s in JobStatus})

    def purge_finished(self, older_than: datetime) -> Result[int]:
        return Result.from_computation(
            lambda: self._rowcount(
                "DELETE FROM issuance_jobs"
                " WHERE status IN ('success', 'failed') AND updated_at < %s",
                (older_than,),
            ),
            ErrorCode.DATABASE_ERROR,
            "Failed to purge finished jobs",
        )

    def _update(self, sql: str, params: tuple[Any, ...], job_id: UUID) -> Result[IssuanceJob]:
        return self._query(sql, params, _job_from_row, "Failed to update issuance job").flat_map(
            lambda rows: _first(rows, ErrorCode.NOT_FOUND, f"Issuance job {job_id} not found")
        )


# ─────────────────────── Certificates ───────────────────────

_CERT_COLUMNS = """
    id, batch_id, credential_document, provider_credential_id, retrieval_url,
    content_hash, qr_envelope, status, revoked, issued_by, issued_at, expires_at,
    revoked_at, revoked_by, revocation_reason
"""

_INSERT_CERT = f"""
INSERT INTO certificates ({_CERT_COLUMNS})
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
RETURNING {_CERT_COLUMNS}
"""

_UPDATE_PROVIDER_FIELDS = f"""
UPDATE certificates
   SET provider_credential_id = %s,
       retrieval_url = COALESCE(%s, retrieval_url),
       status = CASE WHEN revoked OR status = 'expired' THEN status ELSE 'active' END
 WHERE id = %s
RETURNING {_CERT_COLUMNS}
"""

_MARK_REVOKED = f"""
UPDATE certificates
   SET status = 'revoked', revoked = TRUE, revoked_at = %s, revoked_by = %s,
       revocation_reason = %s
 WHERE id = %s AND revoked = FALSE
RETURNING {_CERT_COLUMNS}
"""

_MARK_EXPIRED = f"""
UPDATE certificates SET status = 'expired'
 WHERE id = %s AND status = 'active'
RETURNING {_CERT_COLUMNS}
"""


def _certificate_from_row(row: dict[str, Any]) -> Certificate:
    return Certificate(
        id=row["id"],
        batch_id=row["batch_id"],
        document=CredentialDocument(row["credential_document"]),
        provider_credential_id=row["provider_credential_id"],
        retrieval_url=row["retrieval_url"],
        content_hash=row["content_hash"],
        qr_envelope=row["qr_envelope"],
        status=CertificateStatus(row["status"]),
        revoked=row["revoked"],
        issued_by=row["issued_by"],
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        revoked_at=row["revoked_at"],
        revoked_by=row["revoked_by"],
        revocation_reason=row["revocation_reason"],
    )


def _conflict_on_unique(batch_id: str) -> Callable[[FailureDescription], FailureDescription]:
    def mapper(error: FailureDescription) -> FailureDescription:
        if isinstance(error.exception, pg_errors.UniqueViolation):
            return FailureDescription(
                ErrorCode.CONFLICT_ERROR,
                f"Certificate already exists for batch {batch_id}",
                error.exception,
            )
        return error

    return mapper


class PsycopgCertificateRepository(_PsycopgAdapter):
    """Implements the CertificateRepository port. `batch_id` is UNIQUE in the table."""

    def add(self, certificate: Certificate) -> Result[Certificate]:
        c = certificate
        params = (
            c.id,
            c.batch_id,
            Jsonb(dict(c.document.raw)),
            c.provider_credential_id,
            c.retrieval_url,
            c.content_hash,
            c.qr_envelope,
            c.status.value,
            c.revoked,
            c.issued_by,
            c.issued_at,
            c.expires_at,
            c.revoked_at,
            c.revoked_by,
            c.revocation_reason,
        )
        return (
            self._query(_INSERT_CERT, params, _certificate_from_row, "Failed to store certificate")
            .map_failure(_conflict_on_unique(c.batch_id))
            .flat_map(lambda rows: _first(rows, ErrorCode.DATABASE_ERROR, "Insert returned no row"))
            .peek(
                lambda stored: log.info(
                    "certificates.stored",
                    certificate_id=str(stored.id),
                    batch_id=stored.batch_id,
                )
            )
        )

    def get(self, certificate_id: UUID) -> Result[Certificate]:
        return self._find_one("id = %s", certificate_id, f"Certificate {certificate_id} not found")

    def find_by_hash(self, content_hash: str) -> Result[Certificate]:
        return self._find_one(
            "content_hash = %s", content_hash, f"No certificate with hash {content_hash}"
        )

    def find_by_provider_id(self, provider_credential_id: str) -> Result[Certificate]:
        return self._find_one(
            "provider_credential_id = %s",
            provider_credential_id,
            f"No certificate with provider id {provider_credential_id}",
        )

    def find_by_batch(self, batch_id: str) -> Result[Certificate]:
        return self._find_one("batch_id = %s", batch_id, f"No certificate with batch {batch_id}")

    def update_provider_fields(
        self, certificate_id: UUID, provider_credential_id: str, retrieval_url: str | None
    ) -> Result[Certificate]:
        return self._query(
            _UPDATE_PROVIDER_FIELDS,
            (provider_credential_id, retrieval_url, certificate_id),
            _certificate_from_row,
            "Failed to update certificate",
        ).flat_map(
            lambda rows: _first(rows, ErrorCode.NOT_FOUND, f"Certificate {certificate_id} not found")
        )

    def mark_revoked(
        self, certificate_id: UUID, revoked_by: str, reason: str, revoked_at: datetime
    ) -> Result[Certificate]:
        # A certificate that is already revoked keeps its original revocation metadata.
        return self._query(
            _MARK_REVOKED,
            (revoked_at, revoked_by, reason, certificate_id),
            _certificate_from_row,
            "Failed to revoke certificate",
        ).flat_map(lambda rows: Result.success(rows[0]) if rows else self.get(certificate_id))

    def mark_expired(self, certificate_id: UUID) -> Result[Certificate]:
        return self._query(
            _MARK_EXPIRED, (certificate_id,), _certificate_from_row, "Failed to expire certificate"
        ).flat_map(lambda rows: Result.success(rows[0]) if rows else self.get(certificate_id))

    def expire_due(self, now: datetime) -> Result[int]:
        return Result.from_computation(
            lambda: self._rowcount(
                "UPDATE certificates SET status = 'expired'"
                " WHERE status = 'active' AND expires_at IS NOT NULL AND expires_at < %s",
                (now,),
            ),
            ErrorCode.DATABASE_ERROR,
            "Failed to expire certificates",
        )

    def count_by_status(self) -> Result[dict[str, int]]:
        return self._query(
            "SELECT status, count(*) AS n FROM certificates GROUP BY status",
            (),
            lambda row: (row["status"], int(row["n"])),
            "Failed to count certificates",
        ).map(lambda pairs: {s.value: dict(pairs).get(s.value, 0) for s in CertificateStatus})

    def _find_one(self, where: str, value: Any, not_found: str) -> Result[Certificate]:
        return self._query(
            f"SELECT {_CERT_COLUMNS} FROM certificates WHERE {where} LIMIT 1",
            (value,),
            _certificate_from_row,
            "Failed to load certificate",
        ).flat_map(lambda rows: _first(rows, ErrorCode.NOT_FOUND, not_found))


# ─────────────────────── Revocations ───────────────────────

_INSERT_REVOCATION = """
INSERT INTO revocations (
    id, certificate_id, content_hash, provider_credential_id, revoked_by, reason, revoked_at
) VALUES (%s, %s, %s, %s, %s, %s, %s)
"""

_SELECT_MATCHING = """
SELECT id, certificate_id, content_hash, provider_credential_id, revoked_by, reason, revoked_at
  FROM revocations
 WHERE certificate_id = %s OR content_hash = %s OR provider_credential_id = %s
 ORDER BY revoked_at ASC
"""

_LOCK_PROVIDER_ID = "SELECT pg_advisory_xact_lock(hashtext(%s))"

_EXISTS_FOR_PROVIDER_ID = "SELECT 1 FROM revocations WHERE provider_credential_id = %s LIMIT 1"


def _revocation_params(r: Revocation) -> tuple[Any, ...]:
    return (
        r.id,
        r.certificate_id,
        r.content_hash,
        r.provider_credential_id,
        r.revoked_by,
        r.reason.value,
        r.revoked_at,
    )


def _revocation_from_row(row: dict[str, Any]) -> Revocation:
    return Revocation(
        id=row["id"],
        certificate_id=row["certificate_id"],
        content_hash=row["content_hash"],
        provider_credential_id=row["provider_credential_id"],
        revoked_by=row["revoked_by"],
        reason=RevocationReason(row["reason"]),
        revoked_at=row["revoked_at"],
    )


class PsycopgRevocationLedger(_PsycopgAdapter):
    """Implements the RevocationLedger port. Rows are never updated or deleted."""

    def append(self, revocation: Revocation) -> Result[Revocation]:
        r = revocation
        return Result.from_computation(
            lambda: self._rowcount(_INSERT_REVOCATION, _revocation_params(r)),
            ErrorCode.DATABASE_ERROR,
            "Failed to append revocation",
        ).map(lambda _: revocation).peek(
            lambda _: log.info(
                "revocations.appended", revocation_id=str(r.id), reason=r.reason.value
            )
        )

    def append_if_absent(self, revocation: Revocation) -> Result[bool]:
        r = revocation
        if r.provider_credential_id is None:
            return self.append(r).map(lambda _: True)
        return Result.from_computation(
            lambda: self._insert_unless_recorded(r),
            ErrorCode.DATABASE_ERROR,
            "Failed to append revocation",
        )

    def _insert_unless_recorded(self, revocation: Revocation) -> bool:
        # The advisory lock serializes writers per provider id until commit,
        # so the existence check below sees any row a concurrent writer added.
        with psycopg.connect(self._dsn) as conn, conn.cursor() as cur:
            cur.execute(_LOCK_PROVIDER_ID, (revocation.provider_credential_id,))
            cur.execute(_EXISTS_FOR_PROVIDER_ID, (revocation.provider_credential_id,))
            if cur.fetchone() is not None:
                conn.commit()
                return False
            cur.execute(_INSERT_REVOCATION, _revocation_params(revocation))
            conn.commit()
        log.info(
            "revocations.appended",
            revocation_id=str(revocation.id),
            reason=revocation.reason.value,
        )
        return True

    def find_matching(
        self,
        certificate_id: UUID | None = None,
        content_hash: str | None = None,
        provider_credential_id: str | None = None,
    ) -> Result[list[Revocation]]:
        # NULL = NULL is never true, so absent identifiers simply match nothing.
        return self._query(
            _SELECT_MATCHING,
            (certificate_id, content_hash, provider_credential_id),
            _revocation_from_row,
            "Failed to query revocations",
        )


# ─────────────────────── Collaborator tables ───────────────────────


def _batch_from_row(row: dict[str, Any]) -> BatchRecord:
    return BatchRecord(
        id=row["id"],
        product_type=row["product_type"],
        product_name=row["product_name"],
        farmer_id=row["farmer_id"],
        farmer_name=row["farmer_name"],
        farmer_organization=row["farmer_organization"],
        quantity=_float(row["quantity"]),
        unit=row["unit"],
        harvest_date=row["harvest_date"],
        location=row["location"] or {},
        status=row["status"],
    )


def _inspection_from_row(row: dict[str, Any]) -> InspectionRecord:
    return InspectionRecord(
        id=row["id"],
        batch_id=row["batch_id"],
        inspector_id=row["inspector_id"],
        inspector_name=row["inspector_name"],
        status=row["status"],
        outcome=row["outcome"],
        quality_grade=row["quality_grade"],
        readings=row["readings"],
        notes=row["notes"],
        overall_score=_float(row["overall_score"]),
        inspected_at=row["inspected_at"],
        completed_at=row["completed_at"],
    )


class PsycopgBatchDirectory(_PsycopgAdapter):
    """Implements the BatchDirectory port over the `batches` and `inspections` tables."""

    def get_batch(self, batch_id: str) -> Result[BatchRecord]:
        return self._query(
            "SELECT * FROM batches WHERE id = %s",
            (batch_id,),
            _batch_from_row,
            "Failed to load batch",
        ).flat_map(lambda rows: _first(rows, ErrorCode.NOT_FOUND, f"Batch {batch_id} not found"))

    def get_inspection(self, inspection_id: str) -> Result[InspectionRecord]:
        return self._query(
            "SELECT * FROM inspections WHERE id = %s",
            (inspection_id,),
            _inspection_from_row,
            "Failed to load inspection",
        ).flat_map(
            lambda rows: _first(rows, ErrorCode.NOT_FOUND, f"Inspection {inspection_id} not found")
        )

    def mark_certified(self, batch_id: str, certified_at: datetime) -> Result[bool]:
        return Result.from_computation(
            lambda: self._rowcount(
                "UPDATE batches SET status = 'certified', certified_at = %s"
                " WHERE id = %s AND status = 'approved'",
                (certified_at, batch_id),
            )
            > 0,
            ErrorCode.DATABASE_ERROR,
            "Failed to mark batch certified",
        )


class PsycopgNotifier(_PsycopgAdapter):
    """Implements the Notifier port by inserting into the `notifications` table."""

    def certificate_issued(self, batch: BatchRecord, certificate: Certificate) -> Result[str]:
        notification_id = uuid4()
        return Result.from_computation(
            lambda: self._rowcount(
                "INSERT INTO notifications (id, user_id, type, title, message, payload)"
                " VALUES (%s, %s, %s, %s, %s, %s)",
                (
                    notification_id,
                    batch.farmer_id,
                    "certificate_issued",
                    "Certificate Issued",
                    f"Your certificate for batch {batch.id} ({batch.product_name}) has been successfully issued.",
                    Jsonb(
                        {
                            "batchId": batch.id,
                            "certificateId": str(certificate.id),
                            "vcId": certificate.provider_credential_id,
                        }
                    ),
                ),
            ),
            ErrorCode.DATABASE_ERROR,
            "Failed to store notification",
        ).map(lambda _: str(notification_id))
