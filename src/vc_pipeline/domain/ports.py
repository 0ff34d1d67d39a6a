"""
Ports — Protocol-based interfaces for storage and external collaborators.

These define WHAT the pipeline needs without specifying HOW it's done.
Following hexagonal architecture:

  Domain ← Ports (protocols) ← Adapters (implementations)

Each port is a Protocol (structural typing) so adapters satisfy the contract
simply by implementing the methods. Every operation returns a Result; the
adapter turns its own exceptions into a Failure at the boundary.

Two adapter families exist: PostgreSQL (psycopg) and in-memory. Both implement
the claim as a single conditional update, never read-then-write.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from railway.result import Result

from vc_pipeline.domain.models import (
    BatchRecord,
    Certificate,
    CredentialDocument,
    CredentialPayload,
    InspectionRecord,
    IssuanceJob,
    IssuedCredential,
    JobResult,
    ProviderVerification,
    Revocation,
    WebhookEvent,
)


@runtime_checkable
class JobRepository(Protocol):
    """
    Port: durable issuance jobs.

    `claim` is the only cross-worker guarantee: it succeeds for exactly one
    caller per pending job. A lost race is a CONFLICT_ERROR failure.
    """

    def enqueue(
        self, batch_id: str, inspection_id: str | None = None, max_attempts: int = 3
    ) -> Result[IssuanceJob]: ...

    def get(self, job_id: UUID) -> Result[IssuanceJob]: ...

    def find_claimable(self, limit: int) -> Result[list[IssuanceJob]]: ...

    def find_unresolved_for_batch(self, batch_id: str) -> Result[list[IssuanceJob]]: ...

    def claim(self, job_id: UUID, worker_id: str) -> Result[IssuanceJob]: ...

    def mark_success(self, job_id: UUID, result: JobResult) -> Result[IssuanceJob]: ...

    def mark_failed_or_requeue(self, job_id: UUID, error: str) -> Result[IssuanceJob]: ...

    def mark_failed(self, job_id: UUID, error: str) -> Result[IssuanceJob]: ...

    def count_by_status(self) -> Result[dict[str, int]]: ...

    def purge_finished(self, older_than: datetime) -> Result[int]: ...


@runtime_checkable
class CertificateRepository(Protocol):
    """
    Port: issued certificates, one per batch.

    `add` fails with CONFLICT_ERROR when the batch already has a certificate.
    Lookups fail with NOT_FOUND when nothing matches.
    """

    def add(self, certificate: Certificate) -> Result[Certificate]: ...

    def get(self, certificate_id: UUID) -> Result[Certificate]: ...

    def find_by_hash(self, content_hash: str) -> Result[Certificate]: ...

    def find_by_provider_id(self, provider_credential_id: str) -> Result[Certificate]: ...

    def find_by_batch(self, batch_id: str) -> Result[Certificate]: ...

    def update_provider_fields(
        self, certificate_id: UUID, provider_credential_id: str, retrieval_url: str | None
    ) -> Result[Certificate]: ...

    def mark_revoked(
        self, certificate_id: UUID, revoked_by: str, reason: str, revoked_at: datetime
    ) -> Result[Certificate]: ...

    def mark_expired(self, certificate_id: UUID) -> Result[Certificate]: ...

    def expire_due(self, now: datetime) -> Result[int]: ...

    def count_by_status(self) -> Result[dict[str, int]]: ...


@runtime_checkable
class RevocationLedger(Protocol):
    """
    Port: append-only revocation events.

    A certificate counts as revoked if any record matches it by any of the
    three identifiers, so `find_matching` checks all of them at once.
    """

    def append(self, revocation: Revocation) -> Result[Revocation]: ...

    def append_if_absent(self, revocation: Revocation) -> Result[bool]:
        """
        Append unless a record already carries the same provider credential id.

        Check and insert are atomic. Success(True) when appended.
        """
        ...

    def find_matching(
        self,
        certificate_id: UUID | None = None,
        content_hash: str | None = None,
        provider_credential_id: str | None = None,
    ) -> Result[list[Revocation]]: ...


@runtime_checkable
class CredentialIssuer(Protocol):
    """
    Port: the external signing/storage provider.

    Transient failures (timeouts, network, 5xx, 429) come back with a
    retryable ErrorCode; payload rejections with VALIDATION_ERROR.
    """

    def issue(self, payload: CredentialPayload) -> Result[IssuedCredential]: ...

    def verify(self, document: CredentialDocument) -> Result[ProviderVerification]: ...

    def parse_webhook(self, raw_body: bytes, signature: str | None) -> Result[WebhookEvent]: ...


@runtime_checkable
class CredentialFetcher(Protocol):
    """Port: dereference a retrieval URL into the credential JSON it serves."""

    def fetch(self, url: str) -> Result[Mapping[str, Any]]: ...


@runtime_checkable
class BatchDirectory(Protocol):
    """Port: read access to batches and inspections, plus the certified transition."""

    def get_batch(self, batch_id: str) -> Result[BatchRecord]: ...

    def get_inspection(self, inspection_id: str) -> Result[InspectionRecord]: ...

    def mark_certified(self, batch_id: str, certified_at: datetime) -> Result[bool]: ...


@runtime_checkable
class Notifier(Protocol):
    """Port: tell the farmer their certificate exists. Best-effort."""

    def certificate_issued(self, batch: BatchRecord, certificate: Certificate) -> Result[str]:
        """Returns the notification id."""
        ...
