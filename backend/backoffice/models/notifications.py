from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


class Notification(db.Model):
    """
    In-app notification for a single user.

    Delivery is best-effort: nothing in the document core depends on a
    notification row existing.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_user_read", "user_id", "is_read"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)

    # Generic pointer to what the notification is about
    related_type = db.Column(db.String(64), nullable=True)
    related_id = db.Column(db.Integer, nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "related_type": self.related_type,
            "related_id": self.related_id,
            "is_read": self.is_read,
            "created_at": to_utc_z(self.created_at),
        }
