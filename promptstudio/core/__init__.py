"""
Core models, errors and helpers shared by every layer.
"""

from promptstudio.core.errors import (
    ServiceError,
    Unauthenticated,
    PermissionDenied,
    NotFound,
    QuotaExceeded,
    InvalidFormat,
    ServiceUnavailable,
    Conflict,
)
from promptstudio.core.models import (
    Role,
    User,
    Session,
    Owned,
    Unowned,
    Ownership,
    ownership_of,
    CamelModel,
    Chain,
    Artist,
    Inspiration,
)
from promptstudio.core.utils import generate_id, utc_now, epoch_ms

__all__ = [
    # Errors
    "ServiceError",
    "Unauthenticated",
    "PermissionDenied",
    "NotFound",
    "QuotaExceeded",
    "InvalidFormat",
    "ServiceUnavailable",
    "Conflict",
    # Models
    "Role",
    "User",
    "Session",
    "Owned",
    "Unowned",
    "Ownership",
    "ownership_of",
    "CamelModel",
    "Chain",
    "Artist",
    "Inspiration",
    # Utils
    "generate_id",
    "utc_now",
    "epoch_ms",
]
