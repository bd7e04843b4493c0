"""
Service error taxonomy.

Every failure a caller can see is one of these. The API layer turns them
into `{"error": ..., "code": ...}` responses with the matching status.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for caller-visible errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class Unauthenticated(ServiceError):
    """Authentication required"""
    status_code = 401
    code = "unauthenticated"


class PermissionDenied(ServiceError):
    """Permission denied"""
    status_code = 403
    code = "permission_denied"


class NotFound(ServiceError):
    """Not found"""
    status_code = 404
    code = "not_found"


class QuotaExceeded(ServiceError):
    """Storage quota exceeded"""
    status_code = 413
    code = "quota_exceeded"


class InvalidFormat(ServiceError):
    """Invalid request payload"""
    status_code = 400
    code = "invalid_format"


class ServiceUnavailable(ServiceError):
    """Required backing store is not configured"""
    status_code = 503
    code = "service_unavailable"


class Conflict(ServiceError):
    """Resource already exists"""
    status_code = 409
    code = "conflict"
