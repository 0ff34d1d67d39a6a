"""
Issuance — request policy and the per-job railway.

Domain layer — pure business logic. All I/O is injected via ports.

A claimed job flows through a railway of ports:

  get_batch(job.batch_id)
    → get_inspection(job.inspection_id)       (only when the job names one)
      → certificates.find_by_batch(batch)     (reused if an earlier attempt stored it)
        → build_credential_payload(batch, inspection)
          → issuer.issue(payload)
            → certificates.add(certificate)   (content hash + QR envelope)
              → jobs.mark_success(job, result)

Each stage returns Result[T]. Failures short-circuit automatically; the
worker decides from the failure's ErrorCode whether the job is retried.
After the job is marked successful the batch is moved to `certified` and the
farmer is notified. Both are best-effort: the credential exists and the job
is done, so their failures are logged and never undo the success.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

import structlog
from railway import ErrorCode
from railway.result import Result

from vc_pipeline.domain.canonical import QrEnvelope, content_hash
from vc_pipeline.domain.models import (
    BatchRecord,
    Certificate,
    CredentialPayload,
    InspectionRecord,
    IssuanceJob,
    IssuedCredential,
    JobResult,
    utcnow,
)
from vc_pipeline.domain.ports import (
    BatchDirectory,
    CertificateRepository,
    CredentialIssuer,
    JobRepository,
    Notifier,
)

log = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class IssuanceRequest:
    """Outcome of request_issuance: the job to watch, and whether it is new."""

    job: IssuanceJob
    created: bool


@dataclass(frozen=True, slots=True)
class _JobContext:
    job: IssuanceJob
    batch: BatchRecord
    inspection: InspectionRecord | None = None


def harvest_season(harvest_date: date | None) -> str | None:
    """Northern-hemisphere season of the harvest month."""
    if harvest_date is None:
        return None
    month = harvest_date.month
    if 3 <= month <= 5:
        return "Spring"
    if 6 <= month <= 8:
        return "Summer"
    if 9 <= month <= 11:
        return "Fall"
    return "Winter"


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def build_credential_payload(
    batch: BatchRecord,
    inspection: InspectionRecord | None,
    issuer_did: str,
    expires_at: datetime,
) -> CredentialPayload:
    """
    Assemble the credential subject for a batch.

    Every value is plain JSON (dates as ISO strings) so that the document the
    provider signs hashes identically wherever it is stored.
    """
    subject: dict[str, Any] = {
        "id": f"did:agriqcert:batch:{batch.id}",
        "batchId": batch.id,
        "productType": batch.product_type,
        "productName": batch.product_name,
        "quantity": batch.quantity,
        "unit": batch.unit,
        "harvestDate": _iso(batch.harvest_date),
        "farmer": {
            "id": batch.farmer_id,
            "name": batch.farmer_name,
            "organization": batch.farmer_organization,
        },
        "location": dict(batch.location),
        "traceabilityInfo": {
            "farmId": batch.farmer_id,
            "batchNumber": batch.id,
            "harvestSeason": harvest_season(batch.harvest_date),
        },
    }
    if inspection is not None:
        subject["inspection"] = {
            "id": inspection.id,
            "inspector": {"id": inspection.inspector_id, "name": inspection.inspector_name},
            "inspectedAt": _iso(inspection.inspected_at),
            "completedAt": _iso(inspection.completed_at),
            "status": inspection.status,
            "outcome": dict(inspection.outcome) if inspection.outcome else None,
            "qualityGrade": inspection.quality_grade,
            "readings": inspection.readings,
            "notes": inspection.notes,
            "overallScore": inspection.overall_score,
        }
    return CredentialPayload(
        credential_subject=subject,
        issuer=issuer_did,
        expiration_date=expires_at,
    )


class IssuanceService:
    """
    Issuance policy and job processing over injected ports.

    Constructed once by the composition root and shared by the HTTP surface
    (request_issuance) and the worker pool (process).
    """

    def __init__(
        self,
        jobs: JobRepository,
        certificates: CertificateRepository,
        batches: BatchDirectory,
        issuer: CredentialIssuer,
        notifier: Notifier,
        issuer_did: str,
        expiry_days: int = 365,
        max_attempts: int = 3,
    ) -> None:
        self._jobs = jobs
        self._certificates = certificates
        self._batches = batches
        self._issuer = issuer
        self._notifier = notifier
        self._issuer_did = issuer_did
        self._expiry = timedelta(days=expiry_days)
        self._max_attempts = max_attempts

    # ──────────────────────── Request policy ────────────────────────

    def request_issuance(
        self,
        batch_id: str,
        inspection_id: str | None = None,
        requested_by: str | None = None,
    ) -> Result[IssuanceRequest]:
        """
        Enqueue an issuance job for a batch, or return the one already in flight.

        Fails with NOT_FOUND for an unknown batch or inspection,
        VALIDATION_ERROR for an inspection of another batch or one that did
        not pass, and CONFLICT_ERROR when the batch is already certified.
        """
        return (
            self._batches.get_batch(batch_id)
            .flat_map(lambda _: self._check_inspection(batch_id, inspection_id))
            .flat_map(lambda _: self._require_no_certificate(batch_id))
            .flat_map(lambda _: self._jobs.find_unresolved_for_batch(batch_id))
            .flat_map(
                lambda unresolved: Result.success(IssuanceRequest(unresolved[0], created=False))
                if unresolved
                else self._jobs.enqueue(batch_id, inspection_id, self._max_attempts).map(
                    lambda job: IssuanceRequest(job, created=True)
                )
            )
            .peek(
                lambda req: log.info(
                    "issuance.requested",
                    batch_id=batch_id,
                    job_id=str(req.job.id),
                    created=req.created,
                    requested_by=requested_by,
                )
            )
        )

    def _check_inspection(self, batch_id: str, inspection_id: str | None) -> Result[str]:
        if inspection_id is None:
            return Result.success(batch_id)
        return (
            self._batches.get_inspection(inspection_id)
            .ensure(
                lambda i: i.batch_id == batch_id,
                ErrorCode.VALIDATION_ERROR,
                "Inspection does not belong to the specified batch",
            )
            .ensure(
                lambda i: i.passed,
                ErrorCode.VALIDATION_ERROR,
                "Inspection must be completed and passed to issue certificate",
            )
            .map(lambda _: batch_id)
        )

    def _require_no_certificate(self, batch_id: str) -> Result[str]:
        found = self._certificates.find_by_batch(batch_id)
        if found.is_success():
            return Result.failure(
                ErrorCode.CONFLICT_ERROR, f"Certificate already exists for batch {batch_id}"
            )
        if found.error().code is ErrorCode.NOT_FOUND:
            return Result.success(batch_id)
        return Result.failure_from(found.error())

    # ──────────────────────── Job processing ────────────────────────

    def process(self, job: IssuanceJob) -> Result[IssuanceJob]:
        """
        Drive a claimed job to success.

        Returns the job as marked successful, or the failure of the first
        stage that failed. The job's status is left for the caller to settle.
        """
        return (
            self._batches.get_batch(job.batch_id)
            .flat_map(lambda batch: self._load_inspection(job, batch))
            .flat_map(self._issue_or_resume)
            .flat_map(lambda issued: self._complete(issued[0], issued[1]))
        )

    def _load_inspection(self, job: IssuanceJob, batch: BatchRecord) -> Result[_JobContext]:
        if job.inspection_id is None:
            return Result.success(_JobContext(job, batch))
        return self._batches.get_inspection(job.inspection_id).map(
            lambda inspection: _JobContext(job, batch, inspection)
        )

    def _issue_or_resume(self, ctx: _JobContext) -> Result[tuple[_JobContext, Certificate]]:
        # A certificate stored by an earlier attempt whose mark_success failed
        # completes the job; the provider is not asked for a second credential.
        found = self._certificates.find_by_batch(ctx.batch.id)
        if found.is_success():
            log.info(
                "issuance.resumed",
                job_id=str(ctx.job.id),
                batch_id=ctx.batch.id,
                certificate_id=str(found.value().id),
            )
            return Result.success((ctx, found.value()))
        if found.error().code is ErrorCode.NOT_FOUND:
            return self._issue(ctx)
        return Result.failure_from(found.error())

    def _issue(self, ctx: _JobContext) -> Result[tuple[_JobContext, Certificate]]:
        issued_at = utcnow()
        expires_at = issued_at + self._expiry
        payload = build_credential_payload(ctx.batch, ctx.inspection, self._issuer_did, expires_at)
        return (
            self._issuer.issue(payload)
            .map(lambda issued: self._to_certificate(ctx, issued, issued_at, expires_at))
            .flat_map(self._certificates.add)
            .map(lambda certificate: (ctx, certificate))
        )

    def _to_certificate(
        self,
        ctx: _JobContext,
        issued: IssuedCredential,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Certificate:
        digest = content_hash(issued.document.raw)
        envelope = QrEnvelope(
            provider_credential_id=issued.provider_credential_id,
            retrieval_url=issued.retrieval_url,
            content_hash=digest,
        )
        issued_by = ctx.inspection.inspector_id if ctx.inspection else ctx.batch.farmer_id
        return Certificate(
            batch_id=ctx.batch.id,
            document=issued.document,
            content_hash=digest,
            qr_envelope=envelope.to_json(),
            issued_by=issued_by,
            provider_credential_id=issued.provider_credential_id,
            retrieval_url=issued.retrieval_url,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def _complete(self, ctx: _JobContext, certificate: Certificate) -> Result[IssuanceJob]:
        result = JobResult(
            provider_credential_id=certificate.provider_credential_id or "",
            retrieval_url=certificate.retrieval_url or "",
            certificate_id=certificate.id,
        )
        return self._jobs.mark_success(ctx.job.id, result).peek(
            lambda _: self._after_success(ctx.batch, certificate)
        )

    def _after_success(self, batch: BatchRecord, certificate: Certificate) -> None:
        # A raising collaborator must not turn a finished job back into a retry.
        Result.from_computation(
            lambda: self._batches.mark_certified(batch.id, utcnow()),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            "Batch status update raised",
        ).flat_map(lambda r: r).peek_failure(
            lambda err: log.warning(
                "issuance.certify_batch_failed", batch_id=batch.id, error=err.describe()
            )
        )
        Result.from_computation(
            lambda: self._notifier.certificate_issued(batch, certificate),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            "Notification raised",
        ).flat_map(lambda r: r).peek_failure(
            lambda err: log.warning(
                "issuance.notification_failed", batch_id=batch.id, error=err.describe()
            )
        )
        log.info(
            "issuance.completed",
            batch_id=batch.id,
            certificate_id=str(certificate.id),
            vc_id=certificate.provider_credential_id,
        )
