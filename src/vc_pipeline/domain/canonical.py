"""
Canonical serialization, content hashing and the QR envelope.

The content hash is the tamper-evidence anchor of a certificate: SHA-256 over
the canonical form of the credential document (sorted keys, no insignificant
whitespace, UTF-8). Two documents that differ only in key order or spacing
hash the same; any change to a value does not.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

QR_ENVELOPE_TYPE = "AgriQCert_Certificate"
QR_ENVELOPE_TYPES = frozenset({QR_ENVELOPE_TYPE, "AgriQCert"})


def canonical_json(document: Mapping[str, Any]) -> str:
    return json.dumps(document, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def content_hash(document: Mapping[str, Any]) -> str:
    """Hex SHA-256 of the canonical serialization."""
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class QrEnvelope:
    """
    Compact pointer encoded in a certificate's QR code.

    Carries no credential content, only enough to find and check it:
    the provider id, where to fetch the document, and the expected hash.
    """

    provider_credential_id: str | None
    retrieval_url: str | None
    content_hash: str | None
    type: str = QR_ENVELOPE_TYPE

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.type,
                "id": self.provider_credential_id,
                "url": self.retrieval_url,
                "hash": self.content_hash,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> QrEnvelope | None:
        """Read an envelope; None when the mapping is not one."""
        kind = data.get("type")
        if not isinstance(kind, str) or kind not in QR_ENVELOPE_TYPES:
            return None
        url = data.get("url") or data.get("vcUrl")
        return cls(
            provider_credential_id=_opt_str(data.get("id")),
            retrieval_url=_opt_str(url),
            content_hash=_opt_str(data.get("hash")),
            type=kind,
        )


def _opt_str(value: Any) -> str | None:
    return str(value) if value else None
