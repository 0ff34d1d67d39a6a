"""
Domain models — immutable data structures for jobs, certificates and revocations.

These are value objects with no behavior beyond self-validation and a few
derived properties. Storage adapters build new instances instead of mutating
existing ones; every state transition is a fresh row read back from the store.

All models are frozen dataclasses (immutable).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

W3C_CREDENTIALS_CONTEXT = "https://www.w3.org/2018/credentials/v1"
AGRI_CREDENTIALS_CONTEXT = "https://schemas.agriqcert.com/v1"
VERIFIABLE_CREDENTIAL = "VerifiableCredential"
QUALITY_CERTIFICATE = "AgricultureQualityCertificate"


def utcnow() -> datetime:
    return datetime.now(UTC)


# ─────────────────────── Issuance jobs ───────────────────────


class JobStatus(StrEnum):
    """pending → processing → {success | pending (retry) | failed}."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILED)


@dataclass(frozen=True, slots=True)
class JobResult:
    """What a successful job produced: the provider's credential and our certificate."""

    provider_credential_id: str
    retrieval_url: str
    certificate_id: UUID


@dataclass(frozen=True, slots=True)
class IssuanceJob:
    """
    One request to issue a credential for a batch.

    `attempts` counts claims, not failures: a job claimed three times with
    max_attempts=3 has no retries left even if the third run is still in
    flight.
    """

    batch_id: str
    id: UUID = field(default_factory=uuid4)
    inspection_id: str | None = None
    certificate_id: UUID | None = None
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    worker_id: str | None = None
    last_error: str | None = None
    result: JobResult | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def claimable(self) -> bool:
        return self.status is JobStatus.PENDING and self.attempts < self.max_attempts

    @property
    def retries_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


# ─────────────────────── Credentials ───────────────────────


@dataclass(frozen=True, slots=True)
class CredentialDocument:
    """
    A W3C verifiable credential as JSON.

    `raw` is the opaque document exactly as the provider returned it; it is
    what gets stored and hashed. The properties are read-only views used for
    validation and lookups and never feed back into the hash.
    """

    raw: Mapping[str, Any]

    @property
    def contexts(self) -> list[Any]:
        value = self.raw.get("@context")
        if isinstance(value, str):
            return [value]
        return list(value) if isinstance(value, list) else []

    @property
    def types(self) -> list[Any]:
        value = self.raw.get("type")
        if isinstance(value, str):
            return [value]
        return list(value) if isinstance(value, list) else []

    @property
    def issuer(self) -> str:
        value = self.raw.get("issuer")
        if isinstance(value, Mapping):
            return str(value.get("id", ""))
        return str(value) if value else ""

    @property
    def issuance_date(self) -> str:
        return str(self.raw.get("issuanceDate") or "")

    @property
    def expiration_date(self) -> datetime | None:
        value = self.raw.get("expirationDate")
        if not isinstance(value, str) or not value:
            return None
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)

    @property
    def subject(self) -> Mapping[str, Any]:
        value = self.raw.get("credentialSubject")
        return value if isinstance(value, Mapping) else {}

    @property
    def credential_id(self) -> str | None:
        value = self.raw.get("id")
        return str(value) if value else None

    @property
    def batch_id(self) -> str | None:
        value = self.subject.get("batchId")
        return str(value) if value else None

    @property
    def proof(self) -> Mapping[str, Any]:
        value = self.raw.get("proof")
        return value if isinstance(value, Mapping) else {}

    def without_proof(self) -> dict[str, Any]:
        return {k: v for k, v in self.raw.items() if k != "proof"}


@dataclass(frozen=True, slots=True)
class CredentialPayload:
    """Unsigned credential handed to the issuer adapter."""

    credential_subject: dict[str, Any]
    issuer: str
    expiration_date: datetime | None = None
    types: tuple[str, ...] = (VERIFIABLE_CREDENTIAL, QUALITY_CERTIFICATE)
    contexts: tuple[str, ...] = (W3C_CREDENTIALS_CONTEXT, AGRI_CREDENTIALS_CONTEXT)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "@context": list(self.contexts),
            "type": list(self.types),
            "issuer": self.issuer,
            "credentialSubject": self.credential_subject,
        }
        if self.expiration_date is not None:
            body["expirationDate"] = self.expiration_date.isoformat()
        return body


@dataclass(frozen=True, slots=True)
class IssuedCredential:
    """What the provider returns for a successful issuance."""

    provider_credential_id: str
    retrieval_url: str
    document: CredentialDocument


@dataclass(frozen=True, slots=True)
class ProviderVerification:
    """The provider's opinion of a credential: signature and its own revocation state."""

    valid: bool
    signature_valid: bool
    revoked: bool = False
    issuer: str = ""
    details: str | None = None


# ─────────────────────── Certificates ───────────────────────


class CertificateStatus(StrEnum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class Certificate:
    """
    A credential issued for exactly one batch.

    `content_hash` is the SHA-256 of the canonical document; verification
    recomputes it from the presented document and compares.
    """

    batch_id: str
    document: CredentialDocument = field(repr=False)
    content_hash: str
    qr_envelope: str = field(repr=False)
    issued_by: str
    id: UUID = field(default_factory=uuid4)
    provider_credential_id: str | None = None
    retrieval_url: str | None = None
    status: CertificateStatus = CertificateStatus.ACTIVE
    revoked: bool = False
    issued_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None
    revoked_at: datetime | None = None
    revoked_by: str | None = None
    revocation_reason: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.status is CertificateStatus.EXPIRED:
            return True
        return self.expires_at is not None and self.expires_at < (now or utcnow())


# ─────────────────────── Revocations ───────────────────────


class RevocationReason(StrEnum):
    COMPROMISED_KEY = "compromised_key"
    CESSATION_OF_OPERATION = "cessation_of_operation"
    AFFILIATION_CHANGED = "affiliation_changed"
    SUPERSEDED = "superseded"
    FRAUD = "fraud"
    QUALITY_ISSUE = "quality_issue"
    EXPIRED_INSPECTION = "expired_inspection"
    ADMINISTRATIVE = "administrative"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class Revocation:
    """
    An append-only revocation event.

    Must reference the certificate by at least one of certificate id,
    content hash or provider credential id.
    """

    revoked_by: str
    reason: RevocationReason
    id: UUID = field(default_factory=uuid4)
    certificate_id: UUID | None = None
    content_hash: str | None = None
    provider_credential_id: str | None = None
    revoked_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not (self.certificate_id or self.content_hash or self.provider_credential_id):
            raise ValueError(
                "Revocation requires at least one of certificate_id, "
                "content_hash or provider_credential_id"
            )


# ─────────────────────── Collaborator records ───────────────────────


@dataclass(frozen=True, slots=True)
class BatchRecord:
    """A product batch as owned by the batch service."""

    id: str
    product_type: str
    product_name: str
    farmer_id: str
    quantity: float | None = None
    unit: str | None = None
    harvest_date: date | None = None
    farmer_name: str | None = None
    farmer_organization: str | None = None
    location: Mapping[str, Any] = field(default_factory=dict)
    status: str = "approved"


@dataclass(frozen=True, slots=True)
class InspectionRecord:
    """A quality inspection as owned by the inspection service."""

    id: str
    batch_id: str
    inspector_id: str
    status: str
    inspector_name: str | None = None
    outcome: Mapping[str, Any] | None = None
    quality_grade: str | None = None
    readings: Any = None
    notes: str | None = None
    overall_score: float | None = None
    inspected_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def passed(self) -> bool:
        classification = (self.outcome or {}).get("classification")
        return self.status == "completed" and classification == "pass"


# ─────────────────────── Webhooks ───────────────────────


class WebhookStatus(StrEnum):
    ISSUED = "issued"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class WebhookEvent:
    """A provider notification whose signature has already been checked."""

    provider_credential_id: str
    status: str
    timestamp: datetime = field(default_factory=utcnow)
    event_id: str | None = None
    retrieval_url: str | None = None
    reason: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)
