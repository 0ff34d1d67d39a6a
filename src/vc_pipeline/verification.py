"""
Verification engine — one answer for a credential however it is presented.

Accepts exactly one of three inputs (a tagged union):

  RawDocument(document)  — the credential as a mapping or JSON text
  RetrievalUrl(url)      — where the provider stores it
  QrPayload(payload)     — the string scanned from a certificate's QR code

and reduces each to a credential document before running the same checks:

  structure   W3C context and types, issuer, issuanceDate, credentialSubject
  signature   through the issuer adapter
  integrity   recomputed content hash vs. the stored certificate's hash
  revocation  ledger by certificate id, content hash or provider id

  valid = structure_ok and signature_valid and not revoked and hash_matches
          (and the ledger could actually be consulted)

verify() never raises. Unreadable input, unknown QR shapes, unreachable URLs
and failing collaborators all come back as valid=False with the reason in
`errors`.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import structlog
from railway import ErrorCode
from railway.result import Result

from vc_pipeline.domain.canonical import QrEnvelope, content_hash
from vc_pipeline.domain.models import (
    QUALITY_CERTIFICATE,
    VERIFIABLE_CREDENTIAL,
    W3C_CREDENTIALS_CONTEXT,
    Certificate,
    CredentialDocument,
    utcnow,
)
from vc_pipeline.domain.ports import (
    CertificateRepository,
    CredentialFetcher,
    CredentialIssuer,
    RevocationLedger,
)

log = structlog.get_logger()


# ─────────────────────── Inputs ───────────────────────


@dataclass(frozen=True, slots=True)
class RawDocument:
    document: Mapping[str, Any] | str


@dataclass(frozen=True, slots=True)
class RetrievalUrl:
    url: str


@dataclass(frozen=True, slots=True)
class QrPayload:
    payload: str


type VerificationInput = RawDocument | RetrievalUrl | QrPayload


# ─────────────────────── Result ───────────────────────


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """
    Every signal the engine computed, plus the verdict.

    `expired` is informational: an expired credential is reported as such
    but expiry alone does not make it invalid.
    """

    valid: bool
    structure_valid: bool
    signature_valid: bool
    revoked: bool
    hash_matches: bool
    revocation_checked: bool = False
    expired: bool = False
    content_hash: str | None = None
    certificate_id: UUID | None = None
    provider_credential_id: str | None = None
    issuer: str = ""
    source: str = ""
    errors: tuple[str, ...] = field(default=())

    @classmethod
    def rejected(cls, source: str, error: str) -> VerificationResult:
        return cls(
            valid=False,
            structure_valid=False,
            signature_valid=False,
            revoked=False,
            hash_matches=False,
            source=source,
            errors=(error,),
        )


@dataclass(frozen=True, slots=True)
class _Resolved:
    document: CredentialDocument
    source: str
    envelope: QrEnvelope | None = None


def structure_errors(document: CredentialDocument) -> list[str]:
    errors: list[str] = []
    if W3C_CREDENTIALS_CONTEXT not in document.contexts:
        errors.append("Invalid or missing W3C credentials context")
    types = document.types
    if VERIFIABLE_CREDENTIAL not in types:
        errors.append("Invalid or missing VerifiableCredential type")
    if QUALITY_CERTIFICATE not in types:
        errors.append(f"Missing {QUALITY_CERTIFICATE} type")
    if not document.issuer:
        errors.append("Missing issuer field")
    if not document.issuance_date:
        errors.append("Missing issuanceDate field")
    if not document.subject:
        errors.append("Missing credentialSubject field")
    return errors


def _source_of(request: VerificationInput) -> str:
    match request:
        case RawDocument():
            return "document"
        case RetrievalUrl():
            return "url"
        case QrPayload():
            return "qr"
    return "unknown"


class VerificationEngine:
    """Validates credentials against the certificate store and revocation ledger."""

    def __init__(
        self,
        certificates: CertificateRepository,
        ledger: RevocationLedger,
        issuer: CredentialIssuer,
        fetcher: CredentialFetcher,
    ) -> None:
        self._certificates = certificates
        self._ledger = ledger
        self._issuer = issuer
        self._fetcher = fetcher

    def verify(self, request: VerificationInput) -> VerificationResult:
        source = _source_of(request)
        resolved = Result.from_computation(
            lambda: self._resolve(request),
            ErrorCode.UNKNOWN_ERROR,
            "Could not read credential",
        ).flat_map(lambda inner: inner)
        outcome = resolved.flat_map(
            lambda found: Result.from_computation(
                lambda: self._evaluate(found),
                ErrorCode.UNKNOWN_ERROR,
                "Verification failed",
            )
        )
        result = outcome.either(
            lambda verdict: verdict,
            lambda err: VerificationResult.rejected(source, err.describe()),
        )
        log.info(
            "verification.completed",
            source=source,
            valid=result.valid,
            revoked=result.revoked,
            hash_matches=result.hash_matches,
            certificate_id=str(result.certificate_id) if result.certificate_id else None,
        )
        return result

    # ──────────────────────── Normalization ────────────────────────

    def _resolve(self, request: VerificationInput) -> Result[_Resolved]:
        match request:
            case RawDocument(document):
                return _as_document(document).map(lambda doc: _Resolved(doc, "document"))
            case RetrievalUrl(url):
                return self._fetch(url).map(lambda doc: _Resolved(doc, "url"))
            case QrPayload(payload):
                return self._from_qr(payload)
        return Result.failure(ErrorCode.VALIDATION_ERROR, "Unsupported verification input")

    def _fetch(self, url: str) -> Result[CredentialDocument]:
        if not url:
            return Result.failure(ErrorCode.VALIDATION_ERROR, "Empty retrieval URL")
        return self._fetcher.fetch(url).flat_map(_as_document)

    def _from_qr(self, payload: str) -> Result[_Resolved]:
        parsed = Result.from_computation(
            lambda: json.loads(payload),
            ErrorCode.VALIDATION_ERROR,
            "Invalid QR payload",
        ).ensure(
            lambda data: isinstance(data, dict),
            ErrorCode.VALIDATION_ERROR,
            "Invalid QR payload: expected a JSON object",
        )
        return parsed.flat_map(self._from_qr_data)

    def _from_qr_data(self, data: dict[str, Any]) -> Result[_Resolved]:
        envelope = QrEnvelope.from_mapping(data)
        if envelope is not None:
            return self._dereference(envelope).map(
                lambda doc: _Resolved(doc, "qr", envelope)
            )
        if isinstance(data.get("vc"), dict):
            return _as_document(data["vc"]).map(lambda doc: _Resolved(doc, "qr"))
        if "credentialSubject" in data or "@context" in data:
            return _as_document(data).map(lambda doc: _Resolved(doc, "qr"))
        return Result.failure(ErrorCode.VALIDATION_ERROR, "Unknown QR payload format")

    def _dereference(self, envelope: QrEnvelope) -> Result[CredentialDocument]:
        if envelope.retrieval_url:
            return self._fetch(envelope.retrieval_url)
        if envelope.provider_credential_id:
            return self._certificates.find_by_provider_id(envelope.provider_credential_id).map(
                lambda cert: cert.document
            )
        if envelope.content_hash:
            return self._certificates.find_by_hash(envelope.content_hash).map(
                lambda cert: cert.document
            )
        return Result.failure(ErrorCode.VALIDATION_ERROR, "QR envelope carries no reference")

    # ──────────────────────── Checks ────────────────────────

    def _evaluate(self, resolved: _Resolved) -> VerificationResult:
        document = resolved.document
        envelope = resolved.envelope
        errors = structure_errors(document)
        structure_ok = not errors

        signature_valid = False
        provider_revoked = False
        checked = self._issuer.verify(document)
        if checked.is_success():
            signature_valid = checked.value().signature_valid
            provider_revoked = checked.value().revoked
            if not signature_valid:
                errors.append(checked.value().details or "Signature is not valid")
        else:
            errors.append(f"Signature check unavailable: {checked.error().describe()}")

        digest = content_hash(document.raw)
        provider_ids = _provider_ids(document, envelope)
        certificate = self._locate(digest, provider_ids, document.batch_id, errors)

        hash_matches = certificate is not None and certificate.content_hash == digest
        if certificate is None:
            errors.append("No certificate on record for this credential")
        elif not hash_matches:
            errors.append("Content hash does not match the issued certificate")
        if envelope is not None and envelope.content_hash and envelope.content_hash != digest:
            hash_matches = False
            errors.append("QR hash does not match the credential content")

        provider_id = (
            certificate.provider_credential_id
            if certificate is not None and certificate.provider_credential_id
            else next(iter(provider_ids), None)
        )
        matches = self._ledger.find_matching(
            certificate_id=certificate.id if certificate is not None else None,
            content_hash=digest,
            provider_credential_id=provider_id,
        )
        revocation_checked = matches.is_success()
        if not revocation_checked:
            errors.append(f"Revocation check unavailable: {matches.error().describe()}")
        revoked = (
            bool(matches.get_or_else([]))
            or (certificate is not None and certificate.revoked)
            or provider_revoked
        )
        if revoked:
            errors.append("Credential has been revoked")

        expiration = document.expiration_date
        expired = (expiration is not None and expiration < utcnow()) or (
            certificate is not None and certificate.is_expired()
        )

        valid = (
            structure_ok
            and signature_valid
            and not revoked
            and hash_matches
            and revocation_checked
        )
        return VerificationResult(
            valid=valid,
            structure_valid=structure_ok,
            signature_valid=signature_valid,
            revoked=revoked,
            hash_matches=hash_matches,
            revocation_checked=revocation_checked,
            expired=expired,
            content_hash=digest,
            certificate_id=certificate.id if certificate is not None else None,
            provider_credential_id=provider_id,
            issuer=document.issuer,
            source=resolved.source,
            errors=tuple(errors),
        )

    def _locate(
        self,
        digest: str,
        provider_ids: list[str],
        batch_id: str | None,
        errors: list[str],
    ) -> Certificate | None:
        """Find the certificate by hash, then provider id, then subject batch id."""
        lookups: list[Callable[[], Result[Certificate]]] = [
            lambda: self._certificates.find_by_hash(digest)
        ]
        lookups += [
            (lambda pid=pid: self._certificates.find_by_provider_id(pid)) for pid in provider_ids
        ]
        if batch_id:
            lookups.append(lambda: self._certificates.find_by_batch(batch_id))

        for lookup in lookups:
            found = lookup()
            if found.is_success():
                return found.value()
            if found.error().code is not ErrorCode.NOT_FOUND:
                errors.append(f"Certificate lookup failed: {found.error().describe()}")
        return None


def _as_document(value: Any) -> Result[CredentialDocument]:
    if isinstance(value, str):
        return Result.from_computation(
            lambda: json.loads(value),
            ErrorCode.VALIDATION_ERROR,
            "Malformed credential JSON",
        ).flat_map(_as_document)
    if not isinstance(value, Mapping):
        return Result.failure(ErrorCode.VALIDATION_ERROR, "Credential must be a JSON object")
    return Result.success(CredentialDocument(dict(value)))


def _provider_ids(document: CredentialDocument, envelope: QrEnvelope | None) -> list[str]:
    """Candidate provider ids: the envelope id, the document id and its last path segment."""
    candidates: list[str] = []
    if envelope is not None and envelope.provider_credential_id:
        candidates.append(envelope.provider_credential_id)
    doc_id = document.credential_id
    if doc_id:
        candidates.append(doc_id)
        tail = doc_id.rstrip("/").rsplit("/", 1)[-1]
        if tail:
            candidates.append(tail)
    return list(dict.fromkeys(candidates))
