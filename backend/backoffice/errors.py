# Overview: Domain error taxonomy shared by the service layer.

"""
Errors raised by the document core.

Only ConflictError, IllegalTransitionError and PermissionDeniedError are
meant to reach end users; audit-path failures never leave audit_service.
"""


class DomainError(ValueError):
    """Base class for business rule violations."""


class ValidationError(DomainError):
    """400-level input problem."""


class NotFoundError(DomainError):
    """Referenced document or request does not exist."""


class ConflictError(DomainError):
    """State changed underneath the caller; refresh and retry."""


class IllegalTransitionError(DomainError):
    """Requested status is not reachable from the current status."""


class PermissionDeniedError(DomainError):
    """Actor lacks a capability and the action cannot be deferred."""
