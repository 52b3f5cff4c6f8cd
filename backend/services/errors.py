"""
Error taxonomy for the tour planner core.

Every error carries a stable error_code and an HTTP status; server.py renders them as
{"success": false, "message": ..., "error": {"type": error_code, "details": ...}}.
"""
from typing import Any, Dict, Optional


class TourPlannerError(Exception):
    """Base exception for all tour planner errors."""
    error_code = "INTERNAL_SERVER_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class Unauthorized(TourPlannerError):
    """No identity, or the identity does not own the resource."""
    error_code = "UNAUTHORIZED"
    http_status = 401


class Forbidden(TourPlannerError):
    """Identity is known but the subscription gate denies access."""
    error_code = "FORBIDDEN"
    http_status = 403


class NotFound(TourPlannerError):
    error_code = "NOT_FOUND"
    http_status = 404


class ValidationError(TourPlannerError):
    """Business-rule violation."""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class OutOfRange(TourPlannerError):
    error_code = "OUT_OF_RANGE"
    http_status = 400


class InvalidTarget(TourPlannerError):
    error_code = "INVALID_TARGET"
    http_status = 400


class InvalidState(TourPlannerError):
    error_code = "INVALID_STATE"
    http_status = 409


class Expired(TourPlannerError):
    error_code = "EXPIRED"
    http_status = 410


class ConflictError(TourPlannerError):
    """Concurrent write collision (version mismatch) or duplicate resource."""
    error_code = "CONFLICT"
    http_status = 409


class StorageUnavailable(TourPlannerError):
    error_code = "STORAGE_UNAVAILABLE"
    http_status = 503


class RateLimited(TourPlannerError):
    error_code = "RATE_LIMITED"
    http_status = 429


class NotificationFailed(TourPlannerError):
    """The notification collaborator could not deliver; details carry its reason."""
    error_code = "NOTIFICATION_FAILED"
    http_status = 502
