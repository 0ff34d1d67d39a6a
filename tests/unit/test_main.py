"""
Unit tests for the main module — composition root.

Tests verify structlog configuration and the wiring logic
without making real HTTP calls or database connections.
"""

from __future__ import annotations

import signal
import threading
from unittest.mock import MagicMock, patch

import structlog

from tests.conftest import make_batch, memory_settings
from vc_pipeline.adapters.http_client import HttpCredentialFetcher, HttpCredentialIssuer
from vc_pipeline.adapters.local_issuer import LocalCredentialIssuer
from vc_pipeline.adapters.memory import InMemoryCertificateRepository, InMemoryJobRepository
from vc_pipeline.adapters.postgres import PsycopgCertificateRepository, PsycopgJobRepository
from vc_pipeline.domain.models import JobStatus
from vc_pipeline.main import (
    _register_shutdown_signals,
    configure_structlog,
    create_pipeline,
    prepare_storage,
)
from vc_pipeline.verification import RawDocument


class TestConfigureStructlog:
    """Verify structlog configuration function."""

    def test_configure_structlog_sets_log_level(self) -> None:
        """
        GIVEN log_level="WARNING"
        WHEN configure_structlog is called
        THEN structlog is configured (no exception raised).
        """
        configure_structlog("WARNING")
        log = structlog.get_logger()
        assert log is not None

    def test_configure_structlog_invalid_level_falls_back(self) -> None:
        """
        GIVEN an invalid log_level string
        WHEN configure_structlog is called
        THEN it falls back to INFO (no crash).
        """
        configure_structlog("NONEXISTENT")
        assert structlog.get_logger() is not None


class TestCreatePipeline:
    def test_memory_and_local_wiring(self) -> None:
        pipeline = create_pipeline(memory_settings())

        assert isinstance(pipeline.jobs, InMemoryJobRepository)
        assert isinstance(pipeline.certificates, InMemoryCertificateRepository)
        assert isinstance(pipeline.issuer, LocalCredentialIssuer)
        assert pipeline.fetcher is pipeline.issuer
        assert pipeline.workers.status()["concurrency"] == 2

    def test_http_issuer_wiring(self) -> None:
        pipeline = create_pipeline(
            memory_settings(issuer={"mode": "http", "api_key": "k", "webhook_secret": "s"})
        )

        assert isinstance(pipeline.issuer, HttpCredentialIssuer)
        assert isinstance(pipeline.fetcher, HttpCredentialFetcher)

    def test_postgres_wiring_does_not_connect(self) -> None:
        """
        GIVEN postgres storage with a DSN
        WHEN the pipeline is created
        THEN psycopg repositories are wired; nothing connects until first use.
        """
        pipeline = create_pipeline(
            memory_settings(
                storage={"backend": "postgres"},
                database={"dsn": "postgresql://u:p@localhost:1/none"},
            )
        )

        assert isinstance(pipeline.jobs, PsycopgJobRepository)
        assert isinstance(pipeline.certificates, PsycopgCertificateRepository)

    def test_wired_pipeline_issues_verifies_and_revokes(self) -> None:
        """
        GIVEN a pipeline wired from memory/local settings
        WHEN a batch is requested, one worker cycle runs and the certificate
             is then revoked
        THEN the job succeeds, the credential verifies, and after revocation
             it no longer does.
        """
        pipeline = create_pipeline(memory_settings())
        pipeline.batches.add_batch(make_batch("B1"))  # type: ignore[attr-defined]
        request = pipeline.issuance.request_issuance("B1").value()

        assert pipeline.workers.run_cycle() == 1
        job = pipeline.jobs.get(request.job.id).value()
        assert job.status is JobStatus.SUCCESS
        cert = pipeline.certificates.get(job.certificate_id).value()  # type: ignore[arg-type]

        assert pipeline.verification.verify(RawDocument(cert.document.raw)).valid
        assert pipeline.revoke(cert.id, "fraud", "ops").is_success()
        assert not pipeline.verification.verify(RawDocument(cert.document.raw)).valid
        assert pipeline.stats().value()["certificates"]["revoked"] == 1
        assert pipeline.housekeeping().is_success()


class TestPrepareStorage:
    @patch("vc_pipeline.main.apply_schema")
    def test_memory_backend_never_applies_schema(self, mock_apply: MagicMock) -> None:
        prepare_storage(memory_settings())
        mock_apply.assert_not_called()

    @patch("vc_pipeline.main.apply_schema")
    def test_postgres_applies_schema_when_asked(self, mock_apply: MagicMock) -> None:
        dsn = "postgresql://u:p@localhost:1/none"
        prepare_storage(
            memory_settings(
                storage={"backend": "postgres"}, database={"dsn": dsn, "apply_schema": True}
            )
        )
        mock_apply.assert_called_once_with(dsn)

    @patch("vc_pipeline.main.apply_schema")
    def test_postgres_leaves_schema_alone_by_default(self, mock_apply: MagicMock) -> None:
        prepare_storage(
            memory_settings(
                storage={"backend": "postgres"}, database={"dsn": "postgresql://u:p@h/db"}
            )
        )
        mock_apply.assert_not_called()


class TestShutdownSignals:
    @patch("vc_pipeline.main.signal.signal")
    def test_registers_signal_handlers(self, mock_signal: MagicMock) -> None:
        """
        GIVEN a stop event
        WHEN shutdown signals are registered
        THEN SIGINT and SIGTERM handlers are installed and set the event.
        """
        stop = threading.Event()
        _register_shutdown_signals(stop)

        handlers = {call.args[0]: call.args[1] for call in mock_signal.call_args_list}
        assert set(handlers) == {signal.SIGINT, signal.SIGTERM}

        handlers[signal.SIGTERM](signal.SIGTERM, None)
        assert stop.is_set()
