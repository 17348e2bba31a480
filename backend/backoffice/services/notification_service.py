# Overview: Service-layer operations for notifications; best-effort in-app messages.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Notification


def notify(
    user_ids,
    title: str,
    message: str,
    related_type: str | None = None,
    related_id: int | None = None,
) -> int:
    """
    Create one notification per recipient and commit.

    Best-effort: failures are logged and swallowed. Callers must commit
    their own work BEFORE calling this, since a failure rolls back the
    session.

    Returns the number of notifications written.
    """
    recipients = sorted({uid for uid in user_ids if uid is not None})
    if not recipients:
        return 0

    try:
        for user_id in recipients:
            db.session.add(Notification(
                user_id=user_id,
                title=title,
                message=message,
                related_type=related_type,
                related_id=related_id,
            ))
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to deliver notification '%s' to %s", title, recipients)
        return 0

    return len(recipients)


def unread_for_user(user_id: int) -> list[Notification]:
    return (
        db.session.query(Notification)
        .filter_by(user_id=user_id, is_read=False)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .all()
    )
