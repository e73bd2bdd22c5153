"""
Application exceptions.

Services raise these; the app factory maps every ``CampusError`` onto the
JSON error envelope with its HTTP status, so routes never build failure
responses by hand.
"""


class CampusError(Exception):
    """Base class for expected, client-visible failures."""

    status_code = 500
    code = "error"

    def __init__(self, message="", code=None, status_code=None):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or ""
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"code": self.code, "message": self.message}


# Validation (400)

class ValidationError(CampusError):
    """Request is missing required fields or carries malformed values."""
    status_code = 400
    code = "validation_error"


class OverpaymentError(CampusError):
    """Payment amount exceeds the remaining balance."""
    status_code = 400
    code = "overpayment"

    def __init__(self, remaining, message=None):
        self.remaining = remaining
        super().__init__(message or f"Amount exceeds remaining balance ({remaining})")


class AlreadyDeletedError(CampusError):
    """Record is already soft-deleted."""
    status_code = 400
    code = "already_deleted"


# Authorization (401 / 403)

class AuthenticationRequired(CampusError):
    """Authentication required."""
    status_code = 401
    code = "unauthenticated"


class PermissionDenied(CampusError):
    """Caller's role does not allow this operation."""
    status_code = 403
    code = "forbidden"


class RootPrivilegeRequired(PermissionDenied):
    """Only root administrators can perform this operation."""
    code = "root_required"


# State conflicts

class RecordLockedError(CampusError):
    """Record is locked for the period and cannot be changed."""
    status_code = 403
    code = "record_locked"


class NotFoundError(CampusError):
    """Record not found."""
    status_code = 404
    code = "not_found"


class ConflictError(CampusError):
    """Record conflicts with existing data."""
    status_code = 409
    code = "conflict"


class ConcurrentUpdateError(ConflictError):
    """Record was changed by another request; retry with fresh data."""
    code = "concurrent_update"


class AuditLogImmutableError(CampusError):
    """Audit logs are immutable."""
    status_code = 500
    code = "audit_log_immutable"
