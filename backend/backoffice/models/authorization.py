from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


REQUEST_STATUS_PENDING = "PENDING"
REQUEST_STATUS_APPROVED = "APPROVED"
REQUEST_STATUS_REJECTED = "REJECTED"
REQUEST_STATUS_EXPIRED = "EXPIRED"


class AuthorizationRequest(db.Model):
    """
    Deferred status change awaiting a privileged reviewer.

    LIFECYCLE:
    1. PENDING: filed when a gated transition is attempted without capability
    2. APPROVED: reviewer approved; the transition was applied in the same unit of work
    3. REJECTED: reviewer rejected; document status untouched

    INVARIANT: at most one PENDING request per document, enforced by a
    partial unique index so concurrent filings cannot both succeed.

    current_status is the document status when the request was filed.
    Approval is refused if the document has moved on since.
    """
    __tablename__ = "authorization_requests"
    __table_args__ = (
        db.Index(
            "uq_authorization_requests_one_pending",
            "document_type",
            "document_id",
            unique=True,
            sqlite_where=db.text("status = 'PENDING'"),
            postgresql_where=db.text("status = 'PENDING'"),
        ),
        db.Index("ix_authorization_requests_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    document_type = db.Column(db.String(32), nullable=False)
    document_id = db.Column(db.Integer, nullable=False, index=True)

    current_status = db.Column(db.String(32), nullable=False)
    requested_status = db.Column(db.String(32), nullable=False)
    reason = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=REQUEST_STATUS_PENDING, index=True)

    requested_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    reviewed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    review_notes = db.Column(db.Text, nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    requested_by = db.relationship("User", foreign_keys=[requested_by_user_id])
    reviewed_by = db.relationship("User", foreign_keys=[reviewed_by_user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "document_id": self.document_id,
            "current_status": self.current_status,
            "requested_status": self.requested_status,
            "reason": self.reason,
            "status": self.status,
            "requested_by_user_id": self.requested_by_user_id,
            "reviewed_by_user_id": self.reviewed_by_user_id,
            "review_notes": self.review_notes,
            "reviewed_at": to_utc_z(self.reviewed_at),
            "created_at": to_utc_z(self.created_at),
        }


class EditRequest(db.Model):
    """
    Request to edit a document that is past its editable statuses.

    LIFECYCLE:
    1. PENDING: filed by a user without the type's edit override capability
    2. APPROVED: reviewer granted a time-boxed window (expires_at)
    3. REJECTED: reviewer refused; nothing changes
    4. EXPIRED: the window ran out (set by expire_edit_permissions)

    While APPROVED and expires_at is in the future, the requester may edit
    the document's writable fields as if it were still editable.

    INVARIANT: at most one PENDING request per (document, requester).
    """
    __tablename__ = "edit_requests"
    __table_args__ = (
        db.Index(
            "uq_edit_requests_one_pending",
            "document_type",
            "document_id",
            "requested_by_user_id",
            unique=True,
            sqlite_where=db.text("status = 'PENDING'"),
            postgresql_where=db.text("status = 'PENDING'"),
        ),
        db.Index("ix_edit_requests_status_expires", "status", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    document_type = db.Column(db.String(32), nullable=False)
    document_id = db.Column(db.Integer, nullable=False, index=True)
    observations = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=REQUEST_STATUS_PENDING, index=True)

    requested_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    reviewed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    review_notes = db.Column(db.Text, nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    requested_by = db.relationship("User", foreign_keys=[requested_by_user_id])
    reviewed_by = db.relationship("User", foreign_keys=[reviewed_by_user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "document_id": self.document_id,
            "observations": self.observations,
            "status": self.status,
            "requested_by_user_id": self.requested_by_user_id,
            "reviewed_by_user_id": self.reviewed_by_user_id,
            "review_notes": self.review_notes,
            "reviewed_at": to_utc_z(self.reviewed_at),
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
        }
