"""Utility modules for the gateway core."""

from socratic_gateway.core.utils.hashing import content_hash, stable_index

__all__ = ["content_hash", "stable_index"]
