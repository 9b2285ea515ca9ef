"""Hashing helpers for stable identifiers."""

import hashlib


def calculate_content_hash(content: str | bytes) -> str:
    """Hex sha256 of ``content``; strings are hashed as UTF-8."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def project_id_for_path(path: str) -> str:
    """Project id for a working directory.

    The same path always maps to the same id, so projects seen by different
    assistants merge into one row.
    """
    return calculate_content_hash(path)[:16]
