"""
Application entry point — wires dependencies and runs the worker pool.

Composition root: creates concrete adapters for the configured backends,
injects them into the services, and runs the worker pool in the foreground
with housekeeping on a background scheduler.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Configure structlog for structured logging
  2. Load and validate configuration from environment
  3. Create concrete adapter instances (stores, issuer, fetcher, directory, notifier)
  4. Wire the services (issuance, verification, revocation, webhooks, housekeeping)
  5. Start housekeeping, run the worker pool until SIGINT/SIGTERM
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from dataclasses import dataclass
from types import FrameType
from uuid import UUID

import structlog
from railway.result import Result

from vc_pipeline import __version__
from vc_pipeline.adapters.http_client import HttpCredentialFetcher, HttpCredentialIssuer
from vc_pipeline.adapters.local_issuer import LocalCredentialIssuer
from vc_pipeline.adapters.memory import (
    InMemoryBatchDirectory,
    InMemoryCertificateRepository,
    InMemoryJobRepository,
    InMemoryNotifier,
    InMemoryRevocationLedger,
)
from vc_pipeline.adapters.postgres import (
    PsycopgBatchDirectory,
    PsycopgCertificateRepository,
    PsycopgJobRepository,
    PsycopgNotifier,
    PsycopgRevocationLedger,
)
from vc_pipeline.adapters.schema import apply_schema
from vc_pipeline.config import AppSettings, IssuerMode, StorageBackend
from vc_pipeline.domain.models import Certificate
from vc_pipeline.domain.ports import (
    BatchDirectory,
    CertificateRepository,
    CredentialFetcher,
    CredentialIssuer,
    JobRepository,
    Notifier,
    RevocationLedger,
)
from vc_pipeline.housekeeping import HousekeepingReport, collect_stats, run_housekeeping
from vc_pipeline.issuance import IssuanceService
from vc_pipeline.revocation import revoke_certificate
from vc_pipeline.scheduler import create_scheduler
from vc_pipeline.verification import VerificationEngine
from vc_pipeline.webhooks import WebhookReconciler
from vc_pipeline.worker import IssuanceWorkerPool


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Colored, human-readable console output with ISO timestamps; events below
    `log_level` are dropped before rendering.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO))


@dataclass(frozen=True, slots=True)
class Pipeline:
    """Every port and service of one running process."""

    jobs: JobRepository
    certificates: CertificateRepository
    ledger: RevocationLedger
    batches: BatchDirectory
    notifier: Notifier
    issuer: CredentialIssuer
    fetcher: CredentialFetcher
    issuance: IssuanceService
    verification: VerificationEngine
    webhooks: WebhookReconciler
    workers: IssuanceWorkerPool
    job_retention_days: int = 30

    def housekeeping(self) -> Result[HousekeepingReport]:
        return run_housekeeping(self.certificates, self.jobs, self.job_retention_days)

    def stats(self) -> Result[dict[str, dict[str, int]]]:
        return collect_stats(self.certificates, self.jobs)

    def revoke(self, certificate_id: UUID, reason: str, revoked_by: str) -> Result[Certificate]:
        return revoke_certificate(self.certificates, self.ledger, certificate_id, reason, revoked_by)


type _Stores = tuple[JobRepository, CertificateRepository, RevocationLedger, BatchDirectory, Notifier]


def _create_stores(settings: AppSettings) -> _Stores:
    if settings.storage.backend is StorageBackend.MEMORY:
        return (
            InMemoryJobRepository(),
            InMemoryCertificateRepository(),
            InMemoryRevocationLedger(),
            InMemoryBatchDirectory(),
            InMemoryNotifier(),
        )
    dsn = settings.database.get_dsn()
    return (
        PsycopgJobRepository(dsn),
        PsycopgCertificateRepository(dsn),
        PsycopgRevocationLedger(dsn),
        PsycopgBatchDirectory(dsn),
        PsycopgNotifier(dsn),
    )


def _create_issuer(settings: AppSettings) -> tuple[CredentialIssuer, CredentialFetcher]:
    issuer_settings = settings.issuer
    webhook_secret = issuer_settings.webhook_secret.get_secret_value()
    if issuer_settings.mode is IssuerMode.LOCAL:
        local = LocalCredentialIssuer(
            issuer_did=issuer_settings.issuer_did,
            webhook_secret=webhook_secret,
            public_base_url=issuer_settings.public_base_url,
            signing_seed=(
                issuer_settings.signing_seed.get_secret_value()
                if issuer_settings.signing_seed
                else None
            ),
        )
        return local, local
    remote = HttpCredentialIssuer(
        api_url=issuer_settings.api_url,
        api_key=issuer_settings.api_key.get_secret_value(),
        webhook_secret=webhook_secret,
        timeout=settings.http_timeout_seconds,
    )
    return remote, HttpCredentialFetcher(timeout=settings.http_timeout_seconds)


def create_pipeline(settings: AppSettings) -> Pipeline:
    """
    Instantiate all concrete adapters and services from application settings.

    Storage backend and issuer mode are chosen independently, so the local
    issuer can run against PostgreSQL and the memory stores against the
    provider's API.
    """
    jobs, certificates, ledger, batches, notifier = _create_stores(settings)
    issuer, fetcher = _create_issuer(settings)
    issuance = IssuanceService(
        jobs=jobs,
        certificates=certificates,
        batches=batches,
        issuer=issuer,
        notifier=notifier,
        issuer_did=settings.issuer.issuer_did,
        expiry_days=settings.credential.expiry_days,
        max_attempts=settings.worker.max_attempts,
    )
    workers = IssuanceWorkerPool(
        jobs=jobs,
        service=issuance,
        concurrency=settings.worker.concurrency,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        shutdown_timeout_seconds=settings.worker.shutdown_timeout_seconds,
    )
    return Pipeline(
        jobs=jobs,
        certificates=certificates,
        ledger=ledger,
        batches=batches,
        notifier=notifier,
        issuer=issuer,
        fetcher=fetcher,
        issuance=issuance,
        verification=VerificationEngine(certificates, ledger, issuer, fetcher),
        webhooks=WebhookReconciler(issuer, certificates, ledger),
        workers=workers,
        job_retention_days=settings.housekeeping.job_retention_days,
    )


def prepare_storage(settings: AppSettings) -> None:
    """Apply the schema when running on PostgreSQL with DATABASE__APPLY_SCHEMA set."""
    if settings.storage.backend is StorageBackend.POSTGRES and settings.database.apply_schema:
        apply_schema(settings.database.get_dsn())


def _register_shutdown_signals(stop: threading.Event) -> None:
    """Register SIGINT and SIGTERM handlers that stop the worker loop."""
    log = structlog.get_logger()

    def _shutdown(signum: int, frame: FrameType | None) -> None:
        sig_name = signal.Signals(signum).name
        log.info("app.shutdown_requested", signal=sig_name)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)


def main() -> None:
    """Wire dependencies, start housekeeping and run the worker pool."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()

    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        storage=settings.storage.backend.value,
        issuer_mode=settings.issuer.mode.value,
        concurrency=settings.worker.concurrency,
        housekeeping_cron=settings.housekeeping.cron,
    )

    try:
        prepare_storage(settings)
        pipeline = create_pipeline(settings)
    except Exception as e:
        log.error("app.fatal_error", error=str(e))
        sys.exit(1)

    stop = threading.Event()
    _register_shutdown_signals(stop)

    scheduler = create_scheduler(
        housekeeping_fn=pipeline.housekeeping,
        cron=settings.housekeeping.cron,
        run_on_startup=settings.housekeeping.run_on_startup,
    )
    scheduler.start()
    log.info("app.scheduler_started", cron=settings.housekeeping.cron)

    try:
        pipeline.workers.run(stop)
    except Exception as e:
        log.error("app.fatal_error", error=str(e))
        sys.exit(1)
    finally:
        scheduler.shutdown(wait=False)
        log.info("app.shutdown", reason="stop requested")


if __name__ == "__main__":
    main()
