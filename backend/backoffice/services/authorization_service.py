# Overview: Service-layer operations for authorization requests; deferred status changes awaiting review.

"""
Authorization Request Workflow

WHY: Some transitions (deliver an order on credit, authorize an expense
order) need a privileged actor. When someone without the capability asks
for one, the change is deferred into a PENDING request instead of being
refused. A reviewer approves (the transition is applied then) or rejects
(the document is left alone).

LIFECYCLE:
PENDING -> APPROVED  (transition applied in the same commit)
PENDING -> REJECTED  (document untouched)

EDIT REQUESTS: the same review loop for editing a document past its
editable statuses (an order already in production). Approval grants the
requester a window of EDIT_PERMISSION_MINUTES; expire_edit_permissions()
closes windows that have run out:
PENDING -> APPROVED (expires_at set) -> EXPIRED
PENDING -> REJECTED

INVARIANTS:
- At most one PENDING request per document. Checked up front for a clear
  message, and enforced by a partial unique index for concurrent filings.
- A request is resolved exactly once. Resolution is a conditional UPDATE
  (WHERE status = 'PENDING'); the loser of a double approval sees rowcount 0.
- Approval re-checks the document: if its status is no longer the one the
  request was filed against, the approval is refused as a conflict.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from ..extensions import db
from ..models import AuthorizationRequest, EditRequest
from ..models.authorization import (
    REQUEST_STATUS_PENDING,
    REQUEST_STATUS_APPROVED,
    REQUEST_STATUS_REJECTED,
    REQUEST_STATUS_EXPIRED,
)
from backoffice.time_utils import utcnow
from . import audit_service, notification_service
from .document_types import DocumentType, commit_document_change, get_document_type
from .permission_service import actor_has_capability, get_user_permissions, users_with_permission
from .transition_service import Applied, attempt_transition


AUDIT_MODEL = "AuthorizationRequest"


def _load_document(doc_type: DocumentType, document_id: int, *, fresh: bool = False):
    document = db.session.get(doc_type.model, document_id, populate_existing=fresh)
    if document is None:
        raise NotFoundError(f"{doc_type.name} {document_id} not found")
    return document


def _describe(doc_type: DocumentType, document) -> str:
    return f"{doc_type.name} {getattr(document, doc_type.number_field)}"


# =============================================================================
# Filing
# =============================================================================

def create_request(
    document_type: str,
    document_id: int,
    requested_status: str,
    reason: str | None,
    requested_by_user_id: int,
) -> AuthorizationRequest:
    """
    File a PENDING request for a gated transition.

    Raises:
        IllegalTransitionError: requested_status is not reachable now
        ValidationError: the transition is not gated, or the requester could apply it directly
        PermissionDeniedError: the gate does not allow deferral
        ConflictError: a PENDING request already exists for the document
    """
    doc_type = get_document_type(document_type)
    document = _load_document(doc_type, document_id)
    table = doc_type.table

    if not table.is_legal(document.status, requested_status):
        raise IllegalTransitionError(
            f"{doc_type.name} cannot move from {document.status} to {requested_status}"
        )

    gate = table.gate_for(requested_status)
    if gate is None:
        raise ValidationError(f"{requested_status} does not require authorization; apply it directly")
    if not gate.deferrable:
        raise PermissionDeniedError(f"Moving to {requested_status} requires {gate.capability}")
    if actor_has_capability(requested_by_user_id, gate.capability):
        raise ValidationError("You hold the required capability; apply the change directly")

    existing = (
        db.session.query(AuthorizationRequest.id)
        .filter_by(document_type=doc_type.name, document_id=document.id, status=REQUEST_STATUS_PENDING)
        .first()
    )
    if existing:
        raise ConflictError(f"{_describe(doc_type, document)} already has a pending authorization request")

    request = AuthorizationRequest(
        document_type=doc_type.name,
        document_id=document.id,
        current_status=document.status,
        requested_status=requested_status,
        reason=reason,
        status=REQUEST_STATUS_PENDING,
        requested_by_user_id=requested_by_user_id,
        created_at=utcnow(),
    )
    db.session.add(request)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(
            f"{_describe(doc_type, document)} already has a pending authorization request"
        ) from None

    current_app.logger.info(
        "Authorization request %s filed: %s %s -> %s by user %s",
        request.id, doc_type.name, document.id, requested_status, requested_by_user_id,
    )
    audit_service.log_create(AUDIT_MODEL, request.id, request.to_dict(), requested_by_user_id)

    reviewers = [uid for uid in users_with_permission(gate.capability) if uid != requested_by_user_id]
    notification_service.notify(
        reviewers,
        "Authorization requested",
        f"{_describe(doc_type, document)}: {document.status} -> {requested_status}"
        + (f". Reason: {reason}" if reason else ""),
        related_type=AUDIT_MODEL,
        related_id=request.id,
    )
    return request


# =============================================================================
# Review
# =============================================================================

def _required_capability(doc_type: DocumentType, requested_status: str) -> str | None:
    gate = doc_type.table.gate_for(requested_status)
    return gate.capability if gate else None


def _check_reviewer(doc_type: DocumentType, request: AuthorizationRequest, reviewed_by_user_id: int) -> None:
    capability = _required_capability(doc_type, request.requested_status)
    if capability and not actor_has_capability(reviewed_by_user_id, capability):
        raise PermissionDeniedError(f"Reviewing this request requires {capability}")


def _claim(
    request_id: int,
    new_status: str,
    reviewed_by_user_id: int,
    notes: str | None,
    *,
    model=AuthorizationRequest,
    **values,
) -> None:
    """Move the request out of PENDING, or raise ConflictError if someone already did."""
    result = db.session.execute(
        update(model)
        .where(
            model.id == request_id,
            model.status == REQUEST_STATUS_PENDING,
        )
        .values(
            status=new_status,
            reviewed_by_user_id=reviewed_by_user_id,
            reviewed_at=utcnow(),
            review_notes=notes,
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise ConflictError("This request has already been resolved; refresh and retry")


def approve(request_id: int, reviewed_by_user_id: int, notes: str | None = None) -> AuthorizationRequest:
    """
    Approve a PENDING request and apply its transition in one commit.

    Raises:
        NotFoundError, PermissionDeniedError
        ConflictError: already resolved, or the document moved since filing
        IllegalTransitionError: the transition is no longer permitted (e.g. guard)
    """
    request = get_request(request_id)
    doc_type = get_document_type(request.document_type)
    _check_reviewer(doc_type, request, reviewed_by_user_id)

    if request.status != REQUEST_STATUS_PENDING:
        raise ConflictError(f"Request is already {request.status}")

    _claim(request.id, REQUEST_STATUS_APPROVED, reviewed_by_user_id, notes)

    document = _load_document(doc_type, request.document_id, fresh=True)
    if document.status != request.current_status:
        db.session.rollback()
        raise ConflictError(
            f"{_describe(doc_type, document)} moved from {request.current_status} to "
            f"{document.status} since the request was filed; refresh and retry"
        )

    before = doc_type.take_snapshot(document)
    outcome = attempt_transition(
        document,
        request.requested_status,
        get_user_permissions(reviewed_by_user_id),
        doc_type.table,
    )
    if not isinstance(outcome, Applied):
        db.session.rollback()
        raise IllegalTransitionError(getattr(outcome, "reason", "Transition could not be applied"))

    if doc_type.on_applied is not None:
        doc_type.on_applied(document, outcome.to_status, reviewed_by_user_id)

    # Claim and transition land together; a stale version undoes both
    commit_document_change(doc_type, document)

    db.session.refresh(request)
    current_app.logger.info(
        "Authorization request %s approved by user %s: %s %s -> %s",
        request.id, reviewed_by_user_id, doc_type.name, document.id, outcome.to_status,
    )

    audit_service.log_update(
        AUDIT_MODEL,
        request.id,
        {"status": REQUEST_STATUS_PENDING},
        request.to_dict(),
        reviewed_by_user_id,
    )
    audit_service.log_update(
        doc_type.audit_model,
        document.id,
        before,
        doc_type.take_snapshot(document),
        reviewed_by_user_id,
    )
    notification_service.notify(
        [request.requested_by_user_id],
        "Authorization approved",
        f"{_describe(doc_type, document)} is now {outcome.to_status}",
        related_type=AUDIT_MODEL,
        related_id=request.id,
    )
    return request


def reject(request_id: int, reviewed_by_user_id: int, notes: str | None = None) -> AuthorizationRequest:
    """Reject a PENDING request. The document status is left unchanged."""
    request = get_request(request_id)
    doc_type = get_document_type(request.document_type)
    _check_reviewer(doc_type, request, reviewed_by_user_id)

    if request.status != REQUEST_STATUS_PENDING:
        raise ConflictError(f"Request is already {request.status}")

    _claim(request.id, REQUEST_STATUS_REJECTED, reviewed_by_user_id, notes)
    db.session.commit()
    db.session.refresh(request)

    current_app.logger.info(
        "Authorization request %s rejected by user %s", request.id, reviewed_by_user_id
    )
    audit_service.log_update(
        AUDIT_MODEL,
        request.id,
        {"status": REQUEST_STATUS_PENDING},
        request.to_dict(),
        reviewed_by_user_id,
    )
    notification_service.notify(
        [request.requested_by_user_id],
        "Authorization rejected",
        f"{request.document_type} {request.document_id}: {request.requested_status} was not approved"
        + (f". Notes: {notes}" if notes else ""),
        related_type=AUDIT_MODEL,
        related_id=request.id,
    )
    return request


# =============================================================================
# Edit requests
# =============================================================================

EDIT_AUDIT_MODEL = "EditRequest"


def _edit_capability(doc_type: DocumentType) -> str:
    if doc_type.edit_override_capability is None:
        raise ValidationError(f"{doc_type.name} does not support edit requests")
    return doc_type.edit_override_capability


def _describe_by_id(doc_type: DocumentType, document_id: int) -> str:
    document = db.session.get(doc_type.model, document_id)
    if document is None:
        return f"{doc_type.name} {document_id}"
    return _describe(doc_type, document)


def request_edit(
    document_type: str,
    document_id: int,
    requested_by_user_id: int,
    observations: str | None = None,
) -> EditRequest:
    """
    Ask for permission to edit a document that is past its editable statuses.

    Raises:
        ValidationError: the status does not take edit requests, or the
            requester can edit without one
        PermissionDeniedError: the requester cannot manage this document type
        ConflictError: the requester already has a PENDING request for it
    """
    doc_type = get_document_type(document_type)
    capability = _edit_capability(doc_type)
    document = _load_document(doc_type, document_id)

    if document.status in doc_type.editable_statuses:
        raise ValidationError(f"{_describe(doc_type, document)} is {document.status}; edit it directly")
    if document.status not in doc_type.edit_request_statuses:
        raise ValidationError(f"{doc_type.name} status {document.status} does not allow edit requests")
    if actor_has_capability(requested_by_user_id, capability):
        raise ValidationError("You can edit this document directly without requesting permission")
    if not actor_has_capability(requested_by_user_id, doc_type.manage_capability):
        raise PermissionDeniedError(f"Permission denied: {doc_type.manage_capability}")

    existing = (
        db.session.query(EditRequest.id)
        .filter_by(
            document_type=doc_type.name,
            document_id=document.id,
            requested_by_user_id=requested_by_user_id,
            status=REQUEST_STATUS_PENDING,
        )
        .first()
    )
    if existing:
        raise ConflictError(f"You already have a pending edit request for {_describe(doc_type, document)}")

    request = EditRequest(
        document_type=doc_type.name,
        document_id=document.id,
        observations=observations,
        status=REQUEST_STATUS_PENDING,
        requested_by_user_id=requested_by_user_id,
        created_at=utcnow(),
    )
    db.session.add(request)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(
            f"You already have a pending edit request for {_describe(doc_type, document)}"
        ) from None

    current_app.logger.info(
        "Edit request %s filed: %s %s by user %s",
        request.id, doc_type.name, document.id, requested_by_user_id,
    )
    audit_service.log_create(EDIT_AUDIT_MODEL, request.id, request.to_dict(), requested_by_user_id)
    notification_service.notify(
        [uid for uid in users_with_permission(capability) if uid != requested_by_user_id],
        "Edit requested",
        f"User {requested_by_user_id} asks to edit {_describe(doc_type, document)}"
        + (f". Observations: {observations}" if observations else ""),
        related_type=EDIT_AUDIT_MODEL,
        related_id=request.id,
    )
    return request


def _check_edit_reviewer(doc_type: DocumentType, reviewed_by_user_id: int) -> None:
    capability = _edit_capability(doc_type)
    if not actor_has_capability(reviewed_by_user_id, capability):
        raise PermissionDeniedError(f"Reviewing edit requests requires {capability}")


def approve_edit(request_id: int, reviewed_by_user_id: int, notes: str | None = None) -> EditRequest:
    """
    Approve a PENDING edit request. The requester may edit the document
    until expires_at (now + EDIT_PERMISSION_MINUTES).
    """
    request = get_edit_request(request_id)
    doc_type = get_document_type(request.document_type)
    _check_edit_reviewer(doc_type, reviewed_by_user_id)

    if request.status != REQUEST_STATUS_PENDING:
        raise ConflictError(f"Edit request is already {request.status}")

    minutes = int(current_app.config.get("EDIT_PERMISSION_MINUTES", 5))
    expires_at = utcnow() + timedelta(minutes=minutes)
    _claim(
        request.id,
        REQUEST_STATUS_APPROVED,
        reviewed_by_user_id,
        notes,
        model=EditRequest,
        expires_at=expires_at,
    )
    db.session.commit()
    db.session.refresh(request)

    current_app.logger.info(
        "Edit request %s approved by user %s: %s %s editable by user %s for %d minutes",
        request.id, reviewed_by_user_id, doc_type.name, request.document_id,
        request.requested_by_user_id, minutes,
    )
    audit_service.log_update(
        EDIT_AUDIT_MODEL,
        request.id,
        {"status": REQUEST_STATUS_PENDING},
        request.to_dict(),
        reviewed_by_user_id,
    )
    notification_service.notify(
        [request.requested_by_user_id],
        "Edit approved",
        f"You can edit {_describe_by_id(doc_type, request.document_id)} for the next {minutes} minutes",
        related_type=EDIT_AUDIT_MODEL,
        related_id=request.id,
    )
    return request


def reject_edit(request_id: int, reviewed_by_user_id: int, notes: str | None = None) -> EditRequest:
    request = get_edit_request(request_id)
    doc_type = get_document_type(request.document_type)
    _check_edit_reviewer(doc_type, reviewed_by_user_id)

    if request.status != REQUEST_STATUS_PENDING:
        raise ConflictError(f"Edit request is already {request.status}")

    _claim(request.id, REQUEST_STATUS_REJECTED, reviewed_by_user_id, notes, model=EditRequest)
    db.session.commit()
    db.session.refresh(request)

    current_app.logger.info("Edit request %s rejected by user %s", request.id, reviewed_by_user_id)
    audit_service.log_update(
        EDIT_AUDIT_MODEL,
        request.id,
        {"status": REQUEST_STATUS_PENDING},
        request.to_dict(),
        reviewed_by_user_id,
    )
    notification_service.notify(
        [request.requested_by_user_id],
        "Edit rejected",
        f"Your request to edit {_describe_by_id(doc_type, request.document_id)} was not approved"
        + (f". Notes: {notes}" if notes else ""),
        related_type=EDIT_AUDIT_MODEL,
        related_id=request.id,
    )
    return request


def has_active_edit_permission(
    document_type: str,
    document_id: int,
    user_id: int | None,
    now: datetime | None = None,
) -> bool:
    """True while user_id holds an APPROVED edit request that has not expired."""
    if user_id is None:
        return False
    now = now or utcnow()
    active = (
        db.session.query(EditRequest.id)
        .filter(
            EditRequest.document_type == document_type,
            EditRequest.document_id == document_id,
            EditRequest.requested_by_user_id == user_id,
            EditRequest.status == REQUEST_STATUS_APPROVED,
            EditRequest.expires_at > now,
        )
        .first()
    )
    return active is not None


def expire_edit_permissions(now: datetime | None = None) -> int:
    """
    Mark APPROVED edit requests whose window has closed as EXPIRED and
    tell each requester. Meant to run every minute (`flask authorizations
    expire` from cron).

    Returns the number of requests expired by this call.
    """
    now = now or utcnow()
    candidates = (
        db.session.query(EditRequest)
        .filter(EditRequest.status == REQUEST_STATUS_APPROVED, EditRequest.expires_at <= now)
        .order_by(EditRequest.id.asc())
        .all()
    )
    if not candidates:
        current_app.logger.debug("No expired edit permissions")
        return 0

    expired = []
    for request in candidates:
        # Another runner may have expired it already
        result = db.session.execute(
            update(EditRequest)
            .where(EditRequest.id == request.id, EditRequest.status == REQUEST_STATUS_APPROVED)
            .values(status=REQUEST_STATUS_EXPIRED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            expired.append(request)
    db.session.commit()

    for request in expired:
        db.session.refresh(request)
        audit_service.log_update(
            EDIT_AUDIT_MODEL,
            request.id,
            {"status": REQUEST_STATUS_APPROVED},
            request.to_dict(),
            None,
        )
        doc_type = get_document_type(request.document_type)
        notification_service.notify(
            [request.requested_by_user_id],
            "Edit permission expired",
            f"Your permission to edit {_describe_by_id(doc_type, request.document_id)} has expired",
            related_type=EDIT_AUDIT_MODEL,
            related_id=request.id,
        )

    current_app.logger.info("Expired %d edit permissions", len(expired))
    return len(expired)


# =============================================================================
# Queries
# =============================================================================

def get_request(request_id: int) -> AuthorizationRequest:
    request = db.session.get(AuthorizationRequest, request_id)
    if request is None:
        raise NotFoundError(f"Authorization request {request_id} not found")
    return request


def find_pending_requests(document_type: str | None = None, document_id: int | None = None) -> list[AuthorizationRequest]:
    query = db.session.query(AuthorizationRequest).filter_by(status=REQUEST_STATUS_PENDING)
    if document_type:
        query = query.filter_by(document_type=document_type)
    if document_id is not None:
        query = query.filter_by(document_id=document_id)
    return query.order_by(AuthorizationRequest.created_at.asc(), AuthorizationRequest.id.asc()).all()


def find_by_user(user_id: int) -> list[AuthorizationRequest]:
    """Requests filed by user_id, newest first."""
    return (
        db.session.query(AuthorizationRequest)
        .filter_by(requested_by_user_id=user_id)
        .order_by(AuthorizationRequest.created_at.desc(), AuthorizationRequest.id.desc())
        .all()
    )


def get_edit_request(request_id: int) -> EditRequest:
    request = db.session.get(EditRequest, request_id)
    if request is None:
        raise NotFoundError(f"Edit request {request_id} not found")
    return request


def find_pending_edit_requests(document_type: str | None = None, document_id: int | None = None) -> list[EditRequest]:
    query = db.session.query(EditRequest).filter_by(status=REQUEST_STATUS_PENDING)
    if document_type:
        query = query.filter_by(document_type=document_type)
    if document_id is not None:
        query = query.filter_by(document_id=document_id)
    return query.order_by(EditRequest.created_at.asc(), EditRequest.id.asc()).all()
