"""Helpers for keeping provider secrets out of logs and API responses."""

from typing import Optional


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Return a masked form of a secret: 'abcd****'. Short values are fully masked."""
    if not value:
        return ""
    if len(value) <= visible * 2:
        return "*" * len(value)
    return value[:visible] + "*" * (len(value) - visible)
