from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


AUDIT_ACTIONS = ("CREATE", "UPDATE", "DELETE")


class AuditLogEntry(db.Model):
    """
    Before/after snapshot of one mutation of a business record.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.

    WHY: Historical reconstruction of documents (who changed what, when).
    Not used for authorization decisions.

    record_id is a string so any model's key fits. Related models (order
    items, payments) carry their parent reference inside old_data/new_data,
    which is how an order's history finds them.
    """
    __tablename__ = "audit_log"
    __table_args__ = (
        db.Index("ix_audit_log_model_record", "model", "record_id"),
        db.Index("ix_audit_log_created", "created_at"),
        db.CheckConstraint("action IN ('CREATE', 'UPDATE', 'DELETE')", name="ck_audit_log_action"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    model = db.Column(db.String(64), nullable=False, index=True)
    record_id = db.Column(db.String(64), nullable=False, index=True)
    action = db.Column(db.String(16), nullable=False, index=True)

    old_data = db.Column(db.JSON, nullable=True)
    new_data = db.Column(db.JSON, nullable=True)

    # Nullable for system actions
    user_id = db.Column(db.Integer, nullable=True, index=True)

    # Captured when the mutation happened, not when the row was written
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "model": self.model,
            "record_id": self.record_id,
            "action": self.action,
            "old_data": self.old_data,
            "new_data": self.new_data,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }
