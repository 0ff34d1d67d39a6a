"""
Local issuer adapter — Ed25519 signing without the external provider.

Adapter layer — implements CredentialIssuer and CredentialFetcher in-process
using PyNaCl, for development and for running the whole pipeline with the
memory backend.

Signing follows the Ed25519Signature2020 shape: the canonical JSON of the
credential without its proof is signed, and the hex signature goes into
proof.proofValue. Issued documents are kept in a registry and served back
for their own retrieval URLs.
"""

from __future__ import annotations

import copy
import secrets
import threading
from collections.abc import Mapping
from typing import Any

import structlog
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey
from railway import ErrorCode
from railway.result import Result

from vc_pipeline.adapters.signed_webhook import parse_signed_webhook
from vc_pipeline.domain.canonical import canonical_json
from vc_pipeline.domain.models import (
    CredentialDocument,
    CredentialPayload,
    IssuedCredential,
    ProviderVerification,
    WebhookEvent,
    utcnow,
)

log = structlog.get_logger()

PROOF_TYPE = "Ed25519Signature2020"


class LocalCredentialIssuer:
    """
    Sign credentials with a local Ed25519 key.

    `signing_seed` is a 32-byte hex seed; without one a fresh key is
    generated and credentials only verify for the lifetime of the process.
    """

    def __init__(
        self,
        issuer_did: str,
        webhook_secret: str,
        public_base_url: str,
        signing_seed: str | None = None,
    ) -> None:
        self._issuer_did = issuer_did
        self._webhook_secret = webhook_secret
        self._base_url = public_base_url.rstrip("/")
        self._signing_key = (
            SigningKey(bytes.fromhex(signing_seed)) if signing_seed else SigningKey.generate()
        )
        self._registry: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    @property
    def public_key_hex(self) -> str:
        return self._signing_key.verify_key.encode().hex()

    def issue(self, payload: CredentialPayload) -> Result[IssuedCredential]:
        return Result.from_computation(
            lambda: self._sign(payload),
            ErrorCode.TECHNICAL_ERROR,
            "Local credential signing failed",
        )

    def verify(self, document: CredentialDocument) -> Result[ProviderVerification]:
        proof = document.proof
        issuer = document.issuer
        if proof.get("type") != PROOF_TYPE or not proof.get("proofValue"):
            return Result.success(
                ProviderVerification(False, False, issuer=issuer, details="Missing or unsupported proof")
            )
        try:
            signature = bytes.fromhex(str(proof["proofValue"]))
            message = canonical_json(document.without_proof()).encode("utf-8")
            self._signing_key.verify_key.verify(message, signature)
        except (BadSignatureError, ValueError):
            return Result.success(
                ProviderVerification(False, False, issuer=issuer, details="Signature does not match")
            )
        return Result.success(ProviderVerification(True, True, issuer=issuer))

    def parse_webhook(self, raw_body: bytes, signature: str | None) -> Result[WebhookEvent]:
        return parse_signed_webhook(raw_body, signature, self._webhook_secret)

    def fetch(self, url: str) -> Result[Mapping[str, Any]]:
        """Implements the CredentialFetcher port for URLs this issuer handed out."""
        prefix = f"{self._base_url}/"
        vc_id = url[len(prefix):] if url.startswith(prefix) else None
        with self._lock:
            stored = self._registry.get(vc_id) if vc_id else None
            document = copy.deepcopy(stored)
        return Result.from_optional(document, f"No credential served at {url}")

    def _sign(self, payload: CredentialPayload) -> IssuedCredential:
        vc_id = f"vc_local_{secrets.token_hex(12)}"
        url = f"{self._base_url}/{vc_id}"
        now = utcnow().isoformat()

        document = payload.to_dict()
        document["id"] = url
        document["issuanceDate"] = now
        signature = self._signing_key.sign(canonical_json(document).encode("utf-8")).signature
        document["proof"] = {
            "type": PROOF_TYPE,
            "created": now,
            "verificationMethod": f"{self._issuer_did}#key-1",
            "proofPurpose": "assertionMethod",
            "proofValue": signature.hex(),
        }

        with self._lock:
            self._registry[vc_id] = copy.deepcopy(document)
        log.info("local_issuer.issued", vc_id=vc_id)
        return IssuedCredential(
            provider_credential_id=vc_id,
            retrieval_url=url,
            document=CredentialDocument(document),
        )
