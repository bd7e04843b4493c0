"""
Shared utility functions.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def generate_id(prefix: str = "") -> str:
    """
    Generate a unique ID with optional prefix.

    Args:
        prefix: Optional prefix (e.g., "user", "chain")

    Returns:
        A full UUID4 string, prefixed like "chain_3f2a..." when a prefix is given
    """
    uid = str(uuid.uuid4())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def epoch_ms(moment: datetime | None = None) -> int:
    """Milliseconds since the epoch, the timestamp format stored on records."""
    return int((moment or utc_now()).timestamp() * 1000)
