"""
Webhook reconciler — applies provider callbacks to local state.

  issuer.parse_webhook(raw_body, signature)   signature checked first
    → find certificate by provider credential id
      → issued   refresh provider fields, status back to active (never un-revokes)
        revoked  append a Revocation unless one exists for the provider id,
                 then mark the certificate revoked
        expired  active certificate → expired

The provider credential id is the deduplication key, so a replayed or
re-delivered callback leaves state exactly as the first delivery did.
Unknown statuses are acknowledged and ignored.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

import structlog
from railway import ErrorCode
from railway.result import Result

from vc_pipeline.domain.models import (
    Certificate,
    Revocation,
    RevocationReason,
    WebhookEvent,
    WebhookStatus,
)
from vc_pipeline.domain.ports import CertificateRepository, CredentialIssuer, RevocationLedger

log = structlog.get_logger()

WEBHOOK_ACTOR = "system"


@dataclass(frozen=True, slots=True)
class WebhookOutcome:
    event: WebhookEvent
    action: str
    certificate_id: UUID | None = None


class WebhookReconciler:
    """Verifies provider callbacks and applies them idempotently."""

    def __init__(
        self,
        issuer: CredentialIssuer,
        certificates: CertificateRepository,
        ledger: RevocationLedger,
    ) -> None:
        self._issuer = issuer
        self._certificates = certificates
        self._ledger = ledger

    def handle(self, raw_body: bytes, signature: str | None) -> Result[WebhookOutcome]:
        """
        Verify and apply one callback.

        A missing or wrong signature fails before anything is read from the
        body, let alone written.
        """
        return (
            self._issuer.parse_webhook(raw_body, signature)
            .peek_failure(
                lambda err: log.warning("webhook.rejected", code=err.code.value, error=err.message)
            )
            .flat_map(self._apply)
            .peek(
                lambda outcome: log.info(
                    "webhook.applied",
                    vc_id=outcome.event.provider_credential_id,
                    status=outcome.event.status,
                    action=outcome.action,
                )
            )
        )

    def _apply(self, event: WebhookEvent) -> Result[WebhookOutcome]:
        match event.status:
            case WebhookStatus.ISSUED:
                return self._with_certificate(event, self._on_issued)
            case WebhookStatus.REVOKED:
                return self._on_revoked(event)
            case WebhookStatus.EXPIRED:
                return self._with_certificate(event, self._on_expired)
        return Result.success(WebhookOutcome(event, "ignored"))

    def _find(self, event: WebhookEvent) -> Result[list[Certificate]]:
        """Zero or one certificates carrying this provider id."""
        found = self._certificates.find_by_provider_id(event.provider_credential_id)
        if found.is_failure() and found.error().code is ErrorCode.NOT_FOUND:
            return Result.success([])
        return found.map(lambda cert: [cert])

    def _with_certificate(
        self,
        event: WebhookEvent,
        action: Callable[[WebhookEvent, Certificate], Result[WebhookOutcome]],
    ) -> Result[WebhookOutcome]:
        return self._find(event).flat_map(
            lambda certs: action(event, certs[0])
            if certs
            else Result.success(WebhookOutcome(event, "ignored"))
        )

    def _on_issued(self, event: WebhookEvent, cert: Certificate) -> Result[WebhookOutcome]:
        return self._certificates.update_provider_fields(
            cert.id, event.provider_credential_id, event.retrieval_url
        ).map(lambda updated: WebhookOutcome(event, "activated", updated.id))

    def _on_expired(self, event: WebhookEvent, cert: Certificate) -> Result[WebhookOutcome]:
        return self._certificates.mark_expired(cert.id).map(
            lambda updated: WebhookOutcome(event, "expired", updated.id)
        )

    def _on_revoked(self, event: WebhookEvent) -> Result[WebhookOutcome]:
        return self._find(event).flat_map(
            lambda certs: self._revoke(event, certs[0] if certs else None)
        )

    def _revoke(self, event: WebhookEvent, cert: Certificate | None) -> Result[WebhookOutcome]:
        reason = _reason_of(event)
        # Deduplicated on the provider credential id; concurrent deliveries
        # of the same callback append at most one record.
        recorded = self._ledger.append_if_absent(
            Revocation(
                revoked_by=WEBHOOK_ACTOR,
                reason=reason,
                certificate_id=cert.id if cert else None,
                content_hash=cert.content_hash if cert else None,
                provider_credential_id=event.provider_credential_id,
                revoked_at=event.timestamp,
            )
        ).map(lambda appended: "revoked" if appended else "already_revoked")

        if cert is None:
            return recorded.map(lambda action: WebhookOutcome(event, action))
        return recorded.flat_map(
            lambda action: self._certificates.mark_revoked(
                cert.id, WEBHOOK_ACTOR, reason.value, event.timestamp
            ).map(lambda updated: WebhookOutcome(event, action, updated.id))
        )


def _reason_of(event: WebhookEvent) -> RevocationReason:
    try:
        return RevocationReason(event.reason) if event.reason else RevocationReason.OTHER
    except ValueError:
        return RevocationReason.OTHER
