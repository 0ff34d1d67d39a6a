"""
FastAPI + Uvicorn ASGI application.

Runs the issuance pipeline as a web service: the REST surface for issuance,
verification, revocation and provider callbacks, with the worker pool and
the housekeeping scheduler in background threads.

Architecture:
  - FastAPI: lightweight web framework
  - Uvicorn: production ASGI server (handles signals, graceful shutdown)
  - Worker pool: polls the job store in its own thread until the lifespan ends
  - APScheduler: housekeeping in a background thread
  - K8s Probes: liveness (worker thread alive) + readiness (pipeline wired)

Blocking pipeline calls run through asyncio.to_thread so the event loop
stays free.

Entry point for production: uvicorn vc_pipeline.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from railway import ErrorCode, FailureDescription
from railway.result import Result

from vc_pipeline import __version__
from vc_pipeline.adapters.signed_webhook import SIGNATURE_HEADER
from vc_pipeline.config import AppSettings
from vc_pipeline.domain.models import Certificate, IssuanceJob
from vc_pipeline.issuance import IssuanceRequest
from vc_pipeline.main import Pipeline, configure_structlog, create_pipeline, prepare_storage
from vc_pipeline.scheduler import create_scheduler
from vc_pipeline.verification import (
    QrPayload,
    RawDocument,
    RetrievalUrl,
    VerificationInput,
    VerificationResult,
)
from vc_pipeline.webhooks import WebhookOutcome

# ─────────────────────── Global State ───────────────────────
# Set during app startup; read by the probes and the routes.

_pipeline: Pipeline | None = None
_worker_thread: threading.Thread | None = None
_stop_event: threading.Event | None = None
_scheduler: BackgroundScheduler | None = None
_error_message: str | None = None
log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup: load settings, wire the pipeline, start worker thread and scheduler.
    Shutdown: stop polling, drain in-flight jobs, stop the scheduler.
    """
    global _pipeline, _worker_thread, _stop_event, _scheduler, _error_message

    try:
        settings = AppSettings()
    except Exception as e:
        _error_message = f"Configuration error: {e}"
        log.error("asgi.startup_error", error=_error_message)
        raise

    configure_structlog(settings.log_level)
    log.info(
        "asgi.startup_config",
        version=__version__,
        storage=settings.storage.backend.value,
        issuer_mode=settings.issuer.mode.value,
        concurrency=settings.worker.concurrency,
        housekeeping_cron=settings.housekeeping.cron,
    )

    try:
        prepare_storage(settings)
        pipeline = create_pipeline(settings)
        scheduler = create_scheduler(
            housekeeping_fn=pipeline.housekeeping,
            cron=settings.housekeeping.cron,
            run_on_startup=settings.housekeeping.run_on_startup,
        )
    except Exception as e:
        _error_message = f"Failed to initialize pipeline: {e}"
        log.error("asgi.init_error", error=_error_message)
        raise

    stop = threading.Event()

    def run_workers() -> None:
        """Run the worker pool in a background thread (blocking)."""
        global _error_message
        try:
            pipeline.workers.run(stop)
        except Exception as e:
            _error_message = f"Worker pool error: {e}"
            log.error("asgi.worker_error", error=_error_message)

    _pipeline = pipeline
    _stop_event = stop
    _scheduler = scheduler
    _worker_thread = threading.Thread(target=run_workers, name="issuance-poller", daemon=True)
    _worker_thread.start()
    scheduler.start()
    log.info("asgi.startup_complete")

    yield  # ← App is running here; Uvicorn handles requests

    # ──── Shutdown ────
    log.info("asgi.shutdown", reason="SIGTERM or server stop")
    stop.set()
    try:
        scheduler.shutdown(wait=True)
    except Exception as e:
        log.warning("asgi.scheduler_shutdown_error", error=str(e))

    join_timeout = settings.worker.shutdown_timeout_seconds + settings.worker.poll_interval_seconds
    _worker_thread.join(timeout=join_timeout)
    if _worker_thread.is_alive():
        log.warning("asgi.worker_thread_timeout", timeout_seconds=join_timeout)

    log.info("asgi.shutdown_complete")


# ─────────────────────── Request bodies ───────────────────────


class IssueBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_id: str = Field(alias="batchId", min_length=1)
    inspection_id: str | None = Field(default=None, alias="inspectionId")
    requested_by: str | None = Field(default=None, alias="requestedBy")


class VerifyBody(BaseModel):
    """Exactly one of vcJson, vcUrl or qrPayload."""

    model_config = ConfigDict(populate_by_name=True)

    vc_json: dict[str, Any] | str | None = Field(default=None, alias="vcJson")
    vc_url: str | None = Field(default=None, alias="vcUrl")
    qr_payload: str | None = Field(default=None, alias="qrPayload")

    def to_input(self) -> Result[VerificationInput]:
        given: list[VerificationInput] = []
        if self.vc_json is not None:
            given.append(RawDocument(self.vc_json))
        if self.vc_url is not None:
            given.append(RetrievalUrl(self.vc_url))
        if self.qr_payload is not None:
            given.append(QrPayload(self.qr_payload))
        if len(given) != 1:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR,
                "Provide exactly one of vcJson, vcUrl or qrPayload",
            )
        return Result.success(given[0])


class RevokeBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reason: str
    revoked_by: str = Field(alias="revokedBy", min_length=1)


# ─────────────────────── Views ───────────────────────


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def job_view(job: IssuanceJob) -> dict[str, Any]:
    return {
        "id": str(job.id),
        "batchId": job.batch_id,
        "inspectionId": job.inspection_id,
        "certificateId": str(job.certificate_id) if job.certificate_id else None,
        "status": job.status.value,
        "attempts": job.attempts,
        "maxAttempts": job.max_attempts,
        "workerId": job.worker_id,
        "lastError": job.last_error,
        "result": (
            {
                "providerCredentialId": job.result.provider_credential_id,
                "retrievalUrl": job.result.retrieval_url,
                "certificateId": str(job.result.certificate_id),
            }
            if job.result
            else None
        ),
        "createdAt": _iso(job.created_at),
        "updatedAt": _iso(job.updated_at),
    }


def certificate_view(cert: Certificate) -> dict[str, Any]:
    return {
        "id": str(cert.id),
        "batchId": cert.batch_id,
        "status": cert.status.value,
        "revoked": cert.revoked,
        "providerCredentialId": cert.provider_credential_id,
        "retrievalUrl": cert.retrieval_url,
        "contentHash": cert.content_hash,
        "qrEnvelope": cert.qr_envelope,
        "issuedBy": cert.issued_by,
        "issuedAt": _iso(cert.issued_at),
        "expiresAt": _iso(cert.expires_at),
        "revokedAt": _iso(cert.revoked_at),
        "revokedBy": cert.revoked_by,
        "revocationReason": cert.revocation_reason,
    }


def verification_view(result: VerificationResult) -> dict[str, Any]:
    return {
        "valid": result.valid,
        "structureValid": result.structure_valid,
        "signatureValid": result.signature_valid,
        "revoked": result.revoked,
        "hashMatches": result.hash_matches,
        "revocationChecked": result.revocation_checked,
        "expired": result.expired,
        "contentHash": result.content_hash,
        "certificateId": str(result.certificate_id) if result.certificate_id else None,
        "providerCredentialId": result.provider_credential_id,
        "issuer": result.issuer,
        "source": result.source,
        "errors": list(result.errors),
    }


def _failure_response(failure: FailureDescription) -> JSONResponse:
    return JSONResponse(
        status_code=failure.code.status,
        content={
            "status": "failed",
            "error_code": failure.code.value,
            "message": failure.message,
        },
    )


def _unavailable() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"status": "unavailable", "reason": "Pipeline not initialized"},
    )


async def _run[T](
    operation: Callable[[Pipeline], Result[T]],
    on_success: Callable[[T], JSONResponse],
) -> JSONResponse:
    """Run a blocking pipeline operation off the event loop and map its Result."""
    pipeline = _pipeline
    if pipeline is None:
        return _unavailable()
    result = await asyncio.to_thread(operation, pipeline)
    return result.either(on_success, _failure_response)


# ─────────────────────── FastAPI Application ───────────────────────

app = FastAPI(
    title="vc-pipeline",
    description="Verifiable credential issuance, verification and revocation "
    "for agricultural quality certificates",
    version=__version__,
    lifespan=lifespan,
)


@app.get("/health")
async def health() -> JSONResponse:
    """
    Kubernetes liveness probe.

    Returns 503 if startup failed or the worker thread died.
    """
    if _error_message:
        log.warning("health.check_failed", error=_error_message)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": _error_message},
        )

    if not _worker_thread or not _worker_thread.is_alive():
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "reason": "worker thread not running"},
        )

    return JSONResponse(status_code=200, content={"status": "healthy", "worker_running": True})


@app.get("/ready")
async def ready() -> JSONResponse:
    """Kubernetes readiness probe — ready once the pipeline is wired."""
    if _error_message:
        return JSONResponse(status_code=503, content={"status": "error", "error": _error_message})

    if _pipeline is None:
        return JSONResponse(status_code=503, content={"status": "starting"})

    return JSONResponse(status_code=200, content={"status": "ready"})


@app.get("/info")
async def info() -> dict[str, Any]:
    """Application metadata and worker state, for debugging and monitoring."""
    return {
        "name": "vc-pipeline",
        "version": __version__,
        "worker_thread_alive": _worker_thread is not None and _worker_thread.is_alive(),
        "worker": _pipeline.workers.status() if _pipeline is not None else None,
        "scheduler_running": _scheduler is not None and _scheduler.running,
        "has_error": _error_message is not None,
    }


@app.post("/v1/vc/issue")
async def issue(body: IssueBody) -> JSONResponse:
    """
    Queue credential issuance for a batch.

    202 with the job (new, or the one already pending for the batch);
    404 unknown batch or inspection; 400 inspection not passed;
    409 batch already certified.
    """

    def _accepted(request: IssuanceRequest) -> JSONResponse:
        return JSONResponse(
            status_code=202,
            content={"created": request.created, "job": job_view(request.job)},
        )

    return await _run(
        lambda p: p.issuance.request_issuance(body.batch_id, body.inspection_id, body.requested_by),
        _accepted,
    )


@app.get("/v1/vc/jobs/{job_id}")
async def get_job(job_id: UUID) -> JSONResponse:
    return await _run(
        lambda p: p.jobs.get(job_id),
        lambda job: JSONResponse(status_code=200, content=job_view(job)),
    )


@app.post("/v1/vc/verify")
async def verify(body: VerifyBody) -> JSONResponse:
    """
    Verify a credential given as a document, a retrieval URL or a QR payload.

    Always 200 with the verdict once the input is well-formed; an invalid
    credential is a negative verdict, not an error.
    """
    request = body.to_input()
    if request.is_failure():
        return _failure_response(request.error())
    return await _run(
        lambda p: Result.success(p.verification.verify(request.value())),
        lambda verdict: JSONResponse(status_code=200, content=verification_view(verdict)),
    )


@app.post("/v1/vc/webhook")
async def webhook(request: Request) -> JSONResponse:
    """
    Provider callback. The signature over the raw body is checked before
    anything else: 400 without a signature, 401 with a wrong one.
    """
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    def _applied(outcome: WebhookOutcome) -> JSONResponse:
        return JSONResponse(
            status_code=200,
            content={
                "received": True,
                "action": outcome.action,
                "certificateId": str(outcome.certificate_id) if outcome.certificate_id else None,
            },
        )

    return await _run(lambda p: p.webhooks.handle(raw_body, signature), _applied)


@app.post("/v1/vc/certificates/{certificate_id}/revoke")
async def revoke(certificate_id: UUID, body: RevokeBody) -> JSONResponse:
    return await _run(
        lambda p: p.revoke(certificate_id, body.reason, body.revoked_by),
        lambda cert: JSONResponse(status_code=200, content=certificate_view(cert)),
    )


@app.get("/v1/vc/stats")
async def stats() -> JSONResponse:
    return await _run(
        lambda p: p.stats(),
        lambda counts: JSONResponse(status_code=200, content=counts),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "vc_pipeline.asgi:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
