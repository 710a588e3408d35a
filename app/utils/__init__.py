import hashlib
from typing import Mapping, Optional

CREDENTIAL_HEADERS = {"authorization", "proxy-authorization", "cookie"}


def token_fingerprint(token: Optional[str]) -> str:
    """Provide a stable, low-leak token identifier for logs."""
    if not token:
        return "<empty>"
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]
    return f"len={len(token)} sha256={digest}"


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Copy of ``headers`` safe to log: credential values become fingerprints."""
    return {
        name: (
            token_fingerprint(value)
            if name.lower() in CREDENTIAL_HEADERS
            else value
        )
        for name, value in headers.items()
    }
