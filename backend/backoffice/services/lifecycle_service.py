# Overview: Service-layer document lifecycle coordinator; numbering, status changes and audit for every document type.

"""
Document Lifecycle Coordinator

================================================================================
PURPOSE: One entry point for creating, editing, deleting and moving documents
================================================================================

Every document module (orders, quotes, expense orders) goes through here so
the same guarantees hold for all of them:

CREATE:
    1. Allocate the number inside the document's own transaction
    2. Insert the document in its initial status
    3. Commit both together (a failed insert never burns a number)
    4. Queue the audit entry (not awaited)

CHANGE STATUS:
    Applied  -> commit the new status (version-checked), queue audit
    Deferred -> file an authorization request, document untouched
    Rejected -> IllegalTransitionError / PermissionDeniedError, nothing written

RULES:
- Every write needs the type's manage capability (system actor exempt)
- number, status and id are never writable through update_document()
- Editing and deleting are limited to each type's editable/deletable statuses;
  a locked order can be edited with EDIT_LOCKED_ORDERS or an approved,
  unexpired edit request
- Concurrent writes to the same document are caught by the version column
  and surface as ConflictError
- Audit failures never affect the outcome of any of these operations

================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from ..extensions import db
from ..models import AuthorizationRequest
from ..models.authorization import REQUEST_STATUS_PENDING
from backoffice.time_utils import parse_iso_datetime
from . import audit_service, authorization_service, sequence_service
from .concurrency import lock_for_update, run_with_retry
from .document_types import DocumentType, commit_document_change, get_document_type
from .permission_service import get_user_permissions, require_permission, user_has_permission
from .transition_service import (
    Applied,
    Deferred,
    Rejected,
    PERMISSION_DENIED,
    attempt_transition,
)


IMMUTABLE_FIELDS = {"id", "status", "version_id", "created_at", "created_by_user_id"}


@dataclass
class StatusChangeResult:
    document: object
    outcome: object
    request: AuthorizationRequest | None = None

    @property
    def applied(self) -> bool:
        return isinstance(self.outcome, Applied)

    @property
    def deferred(self) -> bool:
        return isinstance(self.outcome, Deferred)


# =============================================================================
# Helpers
# =============================================================================

def require_manage_capability(doc_type: DocumentType, user_id: int | None) -> None:
    """
    Users need the type's manage capability for any write. The system
    actor (user_id=None) is exempt here but holds no gate capability.
    """
    if user_id is not None:
        require_permission(user_id, doc_type.manage_capability)


def load_document_for_update(doc_type: DocumentType, document_id: int):
    query = db.session.query(doc_type.model).filter(doc_type.model.id == document_id)
    document = lock_for_update(query).populate_existing().first()
    if document is None:
        raise NotFoundError(f"{doc_type.name} {document_id} not found")
    return document


def _clean_fields(doc_type: DocumentType, fields: dict) -> dict:
    """Validate caller-supplied field values against the type's writable set."""
    immutable = (IMMUTABLE_FIELDS | {doc_type.number_field}) & set(fields)
    if immutable:
        raise ValidationError(f"Cannot set {', '.join(sorted(immutable))}")

    unknown = set(fields) - doc_type.writable_fields
    if unknown:
        raise ValidationError(f"Unknown fields for {doc_type.name}: {', '.join(sorted(unknown))}")

    values = {}
    for key, value in fields.items():
        if key in doc_type.datetime_fields and isinstance(value, str):
            try:
                value = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{key} must be an ISO-8601 datetime") from None
        elif key.endswith("_cents") or key.endswith("_bps"):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{key} must be a non-negative integer")
        values[key] = value
    return values


def new_document(doc_type: DocumentType, *, user_id: int | None, values: dict):
    """
    Allocate a number and add a new document to the session. No commit.

    The caller commits, so the counter bump and the insert land together.
    """
    number = sequence_service.next_number(doc_type.name, doc_type.prefix, commit=False)
    document = doc_type.model(
        status=doc_type.table.initial_status,
        created_by_user_id=user_id,
        **{doc_type.number_field: number},
        **values,
    )
    db.session.add(document)
    db.session.flush()
    if doc_type.on_update is not None:
        doc_type.on_update(document)
    return document


def can_edit_locked(doc_type: DocumentType, document, user_id: int | None) -> bool:
    """
    Past its editable statuses a document can still be edited, in the
    statuses that take edit requests, by holders of the override
    capability or by a user with an active (approved, unexpired) request.
    """
    if user_id is None or document.status not in doc_type.edit_request_statuses:
        return False
    if doc_type.edit_override_capability and user_has_permission(user_id, doc_type.edit_override_capability):
        return True
    return authorization_service.has_active_edit_permission(doc_type.name, document.id, user_id)


# =============================================================================
# Create / update / delete
# =============================================================================

def create_document(document_type: str, *, user_id: int | None = None, fields: dict | None = None):
    """
    Create a document with a freshly allocated number.

    Write conflicts on the counter are retried; a duplicate number (e.g.
    after a careless counter reset) surfaces as ConflictError.
    """
    doc_type = get_document_type(document_type)
    require_manage_capability(doc_type, user_id)
    values = _clean_fields(doc_type, fields or {})
    attempts = int(current_app.config.get("SEQUENCE_RETRY_ATTEMPTS", 5))

    def _create():
        document = new_document(doc_type, user_id=user_id, values=values)
        db.session.commit()
        return document

    try:
        document = run_with_retry(_create, attempts=attempts)
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"Could not create {doc_type.name}: number already in use") from None

    current_app.logger.info(
        "%s %s created by user %s", doc_type.name, getattr(document, doc_type.number_field), user_id
    )
    audit_service.log_create(doc_type.audit_model, document.id, doc_type.take_snapshot(document), user_id)
    return document


def update_document(
    document_type: str,
    document_id: int,
    changes: dict,
    *,
    user_id: int | None = None,
    expected_version: int | None = None,
):
    """
    Edit writable fields while the document is in an editable status, or
    past it when can_edit_locked() allows the user to.
    """
    doc_type = get_document_type(document_type)
    require_manage_capability(doc_type, user_id)
    values = _clean_fields(doc_type, changes or {})
    document = load_document_for_update(doc_type, document_id)

    if expected_version is not None and document.version_id != expected_version:
        raise ConflictError(
            f"{doc_type.name} {document.id} is at version {document.version_id}, not {expected_version}; refresh and retry"
        )
    if document.status not in doc_type.editable_statuses and not can_edit_locked(doc_type, document, user_id):
        if document.status in doc_type.edit_request_statuses:
            raise ValidationError(
                f"{doc_type.name} is {document.status}; request edit permission to change it"
            )
        raise ValidationError(f"{doc_type.name} cannot be edited in status {document.status}")

    before = doc_type.take_snapshot(document)
    for key, value in values.items():
        setattr(document, key, value)
    if doc_type.on_update is not None:
        doc_type.on_update(document)

    commit_document_change(doc_type, document)
    audit_service.log_update(doc_type.audit_model, document.id, before, doc_type.take_snapshot(document), user_id)
    return document


def delete_document(document_type: str, document_id: int, *, user_id: int | None = None) -> None:
    doc_type = get_document_type(document_type)
    require_manage_capability(doc_type, user_id)
    document = load_document_for_update(doc_type, document_id)

    if document.status not in doc_type.deletable_statuses:
        raise ValidationError(f"{doc_type.name} cannot be deleted in status {document.status}")

    pending = (
        db.session.query(AuthorizationRequest.id)
        .filter_by(document_type=doc_type.name, document_id=document.id, status=REQUEST_STATUS_PENDING)
        .first()
    )
    if pending:
        raise ConflictError(f"{doc_type.name} {document.id} has a pending authorization request")

    before = doc_type.take_snapshot(document)
    db.session.delete(document)
    commit_document_change(doc_type, document)

    current_app.logger.info("%s %s deleted by user %s", doc_type.name, document_id, user_id)
    audit_service.log_delete(doc_type.audit_model, document_id, before, user_id)


# =============================================================================
# Status changes
# =============================================================================

def change_status(
    document_type: str,
    document_id: int,
    requested_status: str,
    *,
    user_id: int | None,
    reason: str | None = None,
    expected_status: str | None = None,
) -> StatusChangeResult:
    """
    Move a document to requested_status, or defer it for approval.

    expected_status, when given, is the status the caller last saw; if the
    document has moved since, ConflictError is raised instead of acting on
    a stale view.
    """
    doc_type = get_document_type(document_type)
    require_manage_capability(doc_type, user_id)
    document = load_document_for_update(doc_type, document_id)

    if expected_status is not None and document.status != expected_status:
        raise ConflictError(
            f"{doc_type.name} {document.id} is {document.status}, not {expected_status}; refresh and retry"
        )

    before = doc_type.take_snapshot(document)
    outcome = attempt_transition(
        document,
        requested_status,
        get_user_permissions(user_id),
        doc_type.table,
    )

    if isinstance(outcome, Rejected):
        if outcome.kind == PERMISSION_DENIED:
            raise PermissionDeniedError(outcome.reason)
        raise IllegalTransitionError(outcome.reason)

    if isinstance(outcome, Deferred):
        if user_id is None:
            raise PermissionDeniedError(f"Moving to {requested_status} requires {outcome.capability}")
        request = authorization_service.create_request(
            doc_type.name, document.id, requested_status, reason, user_id
        )
        current_app.logger.info(
            "%s %s -> %s deferred to authorization request %s",
            doc_type.name, document.id, requested_status, request.id,
        )
        return StatusChangeResult(document, outcome, request)

    if doc_type.on_applied is not None:
        doc_type.on_applied(document, outcome.to_status, user_id)

    commit_document_change(doc_type, document)
    current_app.logger.info(
        "%s %s moved %s -> %s by user %s",
        doc_type.name, document.id, outcome.from_status, outcome.to_status, user_id,
    )
    audit_service.log_update(doc_type.audit_model, document.id, before, doc_type.take_snapshot(document), user_id)
    return StatusChangeResult(document, outcome)
