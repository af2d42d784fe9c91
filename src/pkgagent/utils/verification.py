"""SHA-256 digest validation for package integrity checking."""

import re

_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def normalize_sha256(digest: str) -> str:
    """Validate a SHA-256 hex digest and return it lowercased.

    Raises:
        ValueError: If digest is not exactly 64 hex characters
    """
    if not isinstance(digest, str) or not _SHA256_RE.match(digest):
        raise ValueError(f"Invalid SHA-256 format: {digest!r} (must be 64-char hex)")
    return digest.lower()
