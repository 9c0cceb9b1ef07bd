"""Content fingerprints that ignore line-ending churn."""

from __future__ import annotations

import hashlib
from pathlib import Path


def normalize(content: bytes | str) -> bytes:
    """Encode to bytes and fold CRLF line endings to LF."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return content.replace(b"\r\n", b"\n")


def fingerprint(content: bytes | str) -> str:
    """SHA-256 hex digest of line-ending-normalized content."""
    return hashlib.sha256(normalize(content)).hexdigest()


def fingerprint_file(path: Path) -> str:
    """Read a file from disk and return its fingerprint."""
    return fingerprint(path.read_bytes())
