"""
Shared test fixtures and builders for the vc-pipeline test suite.

Everything here runs in-process: memory stores, the local Ed25519 issuer
and the real services wired on top of them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime

import pytest

from vc_pipeline.adapters.local_issuer import LocalCredentialIssuer
from vc_pipeline.adapters.memory import (
    InMemoryBatchDirectory,
    InMemoryCertificateRepository,
    InMemoryJobRepository,
    InMemoryNotifier,
    InMemoryRevocationLedger,
)
from vc_pipeline.config import AppSettings
from vc_pipeline.domain.models import BatchRecord, Certificate, InspectionRecord
from vc_pipeline.issuance import IssuanceService
from vc_pipeline.verification import VerificationEngine
from vc_pipeline.webhooks import WebhookReconciler

ISSUER_DID = "did:web:agriqcert.test"
WEBHOOK_SECRET = "whsec-test"
BASE_URL = "https://credentials.agriqcert.test/credentials"
SIGNING_SEED = "11" * 32


def memory_settings(**overrides: object) -> AppSettings:
    """Settings for a self-contained process: memory stores and the local issuer."""
    fields: dict[str, object] = {
        "storage": {"backend": "memory"},
        "issuer": {
            "mode": "local",
            "issuer_did": ISSUER_DID,
            "webhook_secret": WEBHOOK_SECRET,
            "signing_seed": SIGNING_SEED,
            "public_base_url": BASE_URL,
        },
        "worker": {"poll_interval_seconds": 0.05},
    }
    fields.update(overrides)
    return AppSettings(_env_file=None, **fields)  # type: ignore[arg-type]


def make_batch(batch_id: str = "B1", **overrides: object) -> BatchRecord:
    """A batch ready for certification."""
    fields: dict[str, object] = {
        "id": batch_id,
        "product_type": "coffee",
        "product_name": "Arabica Green Beans",
        "farmer_id": "farmer-7",
        "quantity": 1200.0,
        "unit": "kg",
        "harvest_date": date(2026, 4, 12),
        "farmer_name": "Amina Tesfaye",
        "farmer_organization": "Sidama Growers Union",
        "location": {"region": "Sidama", "country": "ET"},
    }
    fields.update(overrides)
    return BatchRecord(**fields)  # type: ignore[arg-type]


def make_inspection(
    inspection_id: str = "I1",
    batch_id: str = "B1",
    status: str = "completed",
    classification: str = "pass",
    **overrides: object,
) -> InspectionRecord:
    fields: dict[str, object] = {
        "id": inspection_id,
        "batch_id": batch_id,
        "inspector_id": "inspector-3",
        "status": status,
        "inspector_name": "Dawit Bekele",
        "outcome": {"classification": classification},
        "quality_grade": "A",
        "readings": {"moisture": 10.5},
        "overall_score": 91.0,
        "inspected_at": datetime(2026, 5, 2, 9, 30, tzinfo=UTC),
        "completed_at": datetime(2026, 5, 2, 11, 0, tzinfo=UTC),
    }
    fields.update(overrides)
    return InspectionRecord(**fields)  # type: ignore[arg-type]


@dataclass
class Harness:
    """The services wired over memory stores and the local issuer."""

    jobs: InMemoryJobRepository
    certificates: InMemoryCertificateRepository
    ledger: InMemoryRevocationLedger
    batches: InMemoryBatchDirectory
    notifier: InMemoryNotifier
    issuer: LocalCredentialIssuer
    service: IssuanceService
    engine: VerificationEngine
    reconciler: WebhookReconciler

    def issue(self, batch_id: str = "B1", inspection_id: str | None = None) -> Certificate:
        """Seed (if needed), request, claim and process — returns the certificate."""
        if self.batches.get_batch(batch_id).is_failure():
            self.batches.add_batch(make_batch(batch_id))
        request = self.service.request_issuance(batch_id, inspection_id).value()
        job = self.jobs.claim(request.job.id, "worker-test").value()
        self.service.process(job).value()
        return self.certificates.find_by_batch(batch_id).value()


@pytest.fixture()
def local_issuer() -> LocalCredentialIssuer:
    return LocalCredentialIssuer(
        issuer_did=ISSUER_DID,
        webhook_secret=WEBHOOK_SECRET,
        public_base_url=BASE_URL,
        signing_seed=SIGNING_SEED,
    )


@pytest.fixture()
def harness(local_issuer: LocalCredentialIssuer) -> Harness:
    jobs = InMemoryJobRepository()
    certificates = InMemoryCertificateRepository()
    ledger = InMemoryRevocationLedger()
    batches = InMemoryBatchDirectory()
    notifier = InMemoryNotifier()
    service = IssuanceService(
        jobs=jobs,
        certificates=certificates,
        batches=batches,
        issuer=local_issuer,
        notifier=notifier,
        issuer_did=ISSUER_DID,
    )
    return Harness(
        jobs=jobs,
        certificates=certificates,
        ledger=ledger,
        batches=batches,
        notifier=notifier,
        issuer=local_issuer,
        service=service,
        engine=VerificationEngine(certificates, ledger, local_issuer, local_issuer),
        reconciler=WebhookReconciler(local_issuer, certificates, ledger),
    )
