"""
Manual revocation — an operator withdraws a certificate.

  get(certificate_id)                      404 when unknown
    → ensure not already revoked           409 otherwise
      → ledger.append(Revocation)          carries all three identifiers
        → certificates.mark_revoked(...)

The ledger entry is written first: verification consults the ledger on every
check, so once the append succeeds the certificate reads as revoked even if
updating the certificate row fails afterwards.
"""

from __future__ import annotations

from uuid import UUID

import structlog
from railway import ErrorCode
from railway.result import Result

from vc_pipeline.domain.models import Certificate, Revocation, RevocationReason, utcnow
from vc_pipeline.domain.ports import CertificateRepository, RevocationLedger

log = structlog.get_logger()


def parse_reason(reason: str) -> Result[RevocationReason]:
    try:
        return Result.success(RevocationReason(reason))
    except ValueError:
        allowed = ", ".join(r.value for r in RevocationReason)
        return Result.failure(
            ErrorCode.VALIDATION_ERROR,
            f"Unknown revocation reason {reason!r}; expected one of: {allowed}",
        )


def revoke_certificate(
    certificates: CertificateRepository,
    ledger: RevocationLedger,
    certificate_id: UUID,
    reason: str,
    revoked_by: str,
) -> Result[Certificate]:
    """Revoke a certificate and record why. Returns the updated certificate."""
    return parse_reason(reason).flat_map(
        lambda parsed: certificates.get(certificate_id)
        .ensure(
            lambda cert: not cert.revoked,
            ErrorCode.CONFLICT_ERROR,
            f"Certificate {certificate_id} is already revoked",
        )
        .flat_map(lambda cert: _record(certificates, ledger, cert, parsed, revoked_by))
    )


def _record(
    certificates: CertificateRepository,
    ledger: RevocationLedger,
    certificate: Certificate,
    reason: RevocationReason,
    revoked_by: str,
) -> Result[Certificate]:
    revocation = Revocation(
        revoked_by=revoked_by,
        reason=reason,
        certificate_id=certificate.id,
        content_hash=certificate.content_hash,
        provider_credential_id=certificate.provider_credential_id,
        revoked_at=utcnow(),
    )
    return (
        ledger.append(revocation)
        .flat_map(
            lambda rev: certificates.mark_revoked(
                certificate.id, revoked_by, reason.value, rev.revoked_at
            )
        )
        .peek(
            lambda cert: log.info(
                "revocation.recorded",
                certificate_id=str(cert.id),
                batch_id=cert.batch_id,
                reason=reason.value,
                revoked_by=revoked_by,
            )
        )
    )
