"""
HTTP adapter — the external credential provider via httpx.

Adapter layer — implements CredentialIssuer and CredentialFetcher using
httpx for sync HTTP calls.

Endpoints:
  POST {api_url}/v1/credentials/issue   → {id, url, credential}
  POST {api_url}/v1/credentials/verify  → {valid, signatureValid, revoked, issuer}
  GET  {retrieval_url}                  → credential JSON

Retry/backoff via tenacity on transient errors (network, timeout, 5xx, 429).
What is left after retries is classified into an ErrorCode: timeouts and
server errors stay retryable for the job queue, other 4xx answers mean the
provider rejected the payload and become VALIDATION_ERROR.
All HTTP errors are captured into Result failures — no exceptions leak to
the business logic layer.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
import structlog
from railway import ErrorCode, FailureDescription
from railway.result import Result
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from vc_pipeline.adapters.signed_webhook import parse_signed_webhook
from vc_pipeline.domain.models import (
    CredentialDocument,
    CredentialPayload,
    IssuedCredential,
    ProviderVerification,
    WebhookEvent,
    utcnow,
)

log = structlog.get_logger()


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TimeoutException | httpx.NetworkError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def classify_http_failure(error: FailureDescription) -> FailureDescription:
    """Re-code a generic EXTERNAL_SERVICE_ERROR by what actually went wrong."""
    exc = error.exception
    code = error.code
    if isinstance(exc, httpx.TimeoutException):
        code = ErrorCode.TIMEOUT_ERROR
    elif isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (429, 503):
            code = ErrorCode.SERVICE_UNAVAILABLE_ERROR
        elif 400 <= status < 500:
            code = ErrorCode.VALIDATION_ERROR
    if code is error.code:
        return error
    return FailureDescription(code, error.message, exc)


_transient_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=0.1, max=30),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


class HttpCredentialIssuer:
    """
    Issue and verify credentials through the provider's REST API.

    Implements the CredentialIssuer port.
    Webhook signatures are checked locally with the shared secret.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        webhook_secret: str,
        timeout: float = 30,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._timeout = timeout

    def issue(self, payload: CredentialPayload) -> Result[IssuedCredential]:
        """
        Ask the provider to sign and store a credential.

        Returns Result[IssuedCredential] on success, or a failure whose code
        tells the worker whether the job may be retried.
        """
        return Result.from_computation(
            lambda: self._do_issue(payload),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            "Credential issuance failed",
        ).map_failure(classify_http_failure)

    def verify(self, document: CredentialDocument) -> Result[ProviderVerification]:
        return Result.from_computation(
            lambda: self._do_verify(document),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            "Credential verification failed",
        ).map_failure(classify_http_failure)

    def parse_webhook(self, raw_body: bytes, signature: str | None) -> Result[WebhookEvent]:
        return parse_signed_webhook(raw_body, signature, self._webhook_secret)

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    @_transient_retry
    def _do_issue(self, payload: CredentialPayload) -> IssuedCredential:
        """HTTP call with retry — exceptions caught by from_computation."""
        credential = payload.to_dict()
        credential["issuanceDate"] = utcnow().isoformat()
        with httpx.Client(timeout=self._timeout, headers=self._headers()) as client:
            response = client.post(
                f"{self._api_url}/v1/credentials/issue", json={"credential": credential}
            )
            response.raise_for_status()
            body = response.json()
            issued = IssuedCredential(
                provider_credential_id=str(body["id"]),
                retrieval_url=str(body["url"]),
                document=CredentialDocument(body["credential"]),
            )
            log.info("provider.issued", vc_id=issued.provider_credential_id)
            return issued

    @_transient_retry
    def _do_verify(self, document: CredentialDocument) -> ProviderVerification:
        """HTTP call with retry — exceptions caught by from_computation."""
        with httpx.Client(timeout=self._timeout, headers=self._headers()) as client:
            response = client.post(
                f"{self._api_url}/v1/credentials/verify",
                json={"credential": dict(document.raw)},
            )
            response.raise_for_status()
            body = response.json()
            return ProviderVerification(
                valid=bool(body.get("valid")),
                signature_valid=bool(body.get("signatureValid")),
                revoked=bool(body.get("revoked", False)),
                issuer=str(body.get("issuer") or document.issuer),
                details=body.get("details"),
            )


class HttpCredentialFetcher:
    """
    Dereference retrieval URLs.

    Implements the CredentialFetcher port. Accepts either the bare credential
    or the provider's {"credential": {...}} wrapper.
    """

    def __init__(self, timeout: float = 30) -> None:
        self._timeout = timeout

    def fetch(self, url: str) -> Result[Mapping[str, Any]]:
        return Result.from_computation(
            lambda: self._do_fetch(url),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            f"Failed to fetch credential from {url}",
        ).map_failure(classify_http_failure)

    @_transient_retry
    def _do_fetch(self, url: str) -> Mapping[str, Any]:
        """HTTP GET with retry — exceptions caught by from_computation."""
        with httpx.Client(timeout=self._timeout, follow_redirects=True) as client:
            response = client.get(url)
            response.raise_for_status()
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError("Credential response is not a JSON object")
            wrapped = body.get("credential")
            if "@context" not in body and isinstance(wrapped, dict):
                body = wrapped
            log.info("provider.fetched", url=url)
            return body
