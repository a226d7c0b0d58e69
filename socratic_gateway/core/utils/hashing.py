"""Hashing helpers for deterministic, process-independent choices.

Python's built-in ``hash()`` is salted per process, so anything that must
pick the same item across restarts goes through SHA256 instead.
"""

import hashlib


def content_hash(content: str) -> str:
    """Compute a SHA256 hex digest of the given string.

    Example:
        >>> content_hash("")
        'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def stable_index(key: str, size: int) -> int:
    """Map ``key`` onto ``range(size)`` deterministically.

    Args:
        key: Any string, e.g. a session identifier
        size: Number of buckets, must be positive

    Returns:
        An index in ``[0, size)`` that depends only on ``key`` and ``size``

    Raises:
        ValueError: If size is not positive
    """
    if size <= 0:
        raise ValueError(f"size must be positive, got {size}")
    return int(content_hash(key)[:16], 16) % size
