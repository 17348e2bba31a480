# Overview: Service-layer operations for the audit trail; fire-and-forget writes and history queries.

"""
Audit Trail

WHY: Every create/update/delete of a business document is recorded with
before/after snapshots so a document's history can be reconstructed.

WRITE PATH (record):
- The caller's data is copied synchronously (JSON-safe deep copy) and the
  timestamp is taken at call time.
- Summarization, redaction and the INSERT happen on the background
  dispatcher in a separate app context and session.
- record() returns as soon as the work is queued. Nothing waits for the
  row, and no failure on this path reaches the caller. One attempt only.

CONSISTENCY: A client may see the updated document before its audit row
exists. Business state never depends on the audit write.

READ PATH: history_for() and list_audit_logs() are plain queries with the
actor resolved to a user summary (or None for system actions).
"""

from __future__ import annotations

import json

from flask import current_app
from sqlalchemy import and_, or_

from ..errors import ValidationError
from ..extensions import db, dispatcher
from ..models import AuditLogEntry, User
from ..models.audit import AUDIT_ACTIONS
from backoffice.time_utils import utcnow, parse_iso_datetime, end_of_day


# Child model -> snapshot key holding the parent order id
RELATED_REFERENCES = {
    "OrderItem": ("Order", "order_id"),
    "Payment": ("Order", "order_id"),
}


# =============================================================================
# Snapshot shaping
# =============================================================================

def _count(data: dict, key: str):
    value = data.get(key)
    if isinstance(value, list):
        return len(value)
    return data.get(f"{key}_count")


def summarize_order(data: dict) -> dict:
    """
    Reduced order snapshot: key scalars plus counts of nested collections.

    Orders churn (items, payments); storing the full graph on every change
    makes rows large and hard to compare.
    """
    return {
        "order_number": data.get("order_number"),
        "status": data.get("status"),
        "client_name": data.get("client_name"),
        "subtotal_cents": data.get("subtotal_cents"),
        "tax_cents": data.get("tax_cents"),
        "total_cents": data.get("total_cents"),
        "paid_amount_cents": data.get("paid_amount_cents"),
        "balance_cents": data.get("balance_cents"),
        "items_count": _count(data, "items"),
        "payments_count": _count(data, "payments"),
        "notes": data.get("notes"),
    }


SUMMARIZERS = {
    "Order": summarize_order,
}


def redact(data, sensitive_fields=None, marker: str | None = None):
    """Replace sensitive keys at any depth with the redaction marker."""
    if sensitive_fields is None:
        sensitive_fields = current_app.config.get("AUDIT_SENSITIVE_FIELDS", frozenset())
    if marker is None:
        marker = current_app.config.get("AUDIT_REDACTION_MARKER", "[REDACTED]")

    if isinstance(data, dict):
        return {
            key: marker if str(key).lower() in sensitive_fields else redact(value, sensitive_fields, marker)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact(value, sensitive_fields, marker) for value in data]
    return data


def _detach(data):
    """JSON-safe deep copy, so later mutations by the caller are not seen."""
    if data is None:
        return None
    return json.loads(json.dumps(data, default=str))


def prepare_snapshot(model: str, data):
    if data is None:
        return None
    summarize = SUMMARIZERS.get(model)
    if summarize is not None and isinstance(data, dict):
        data = summarize(data)
    return redact(data)


# =============================================================================
# Write path
# =============================================================================

def _persist(entry: AuditLogEntry) -> None:
    db.session.add(entry)
    db.session.commit()


def _write_entry(action, model, record_id, old_data, new_data, user_id, occurred_at) -> None:
    """Runs on the background dispatcher."""
    try:
        entry = AuditLogEntry(
            model=model,
            record_id=record_id,
            action=action,
            old_data=prepare_snapshot(model, old_data),
            new_data=prepare_snapshot(model, new_data),
            user_id=user_id,
            created_at=occurred_at,
        )
        _persist(entry)
    except Exception:
        db.session.rollback()
        current_app.logger.exception(
            "Audit write failed for %s %s %s", action, model, record_id
        )


def record(
    action: str,
    model: str,
    record_id,
    old_data=None,
    new_data=None,
    user_id: int | None = None,
) -> None:
    """
    Queue an audit entry and return immediately. Never raises.
    """
    try:
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")

        dispatcher.submit(
            _write_entry,
            action,
            model,
            str(record_id),
            _detach(old_data),
            _detach(new_data),
            user_id,
            utcnow(),
        )
    except Exception:
        current_app.logger.exception(
            "Audit dispatch failed for %s %s %s", action, model, record_id
        )


def log_create(model: str, record_id, data, user_id: int | None = None) -> None:
    record("CREATE", model, record_id, None, data, user_id)


def log_update(model: str, record_id, old_data, new_data, user_id: int | None = None) -> None:
    record("UPDATE", model, record_id, old_data, new_data, user_id)


def log_delete(model: str, record_id, data, user_id: int | None = None) -> None:
    record("DELETE", model, record_id, data, None, user_id)


# =============================================================================
# Read path
# =============================================================================

def _actor_summaries(entries: list[AuditLogEntry]) -> dict[int, dict]:
    user_ids = {e.user_id for e in entries if e.user_id is not None}
    if not user_ids:
        return {}
    users = db.session.query(User).filter(User.id.in_(user_ids)).all()
    return {u.id: u.to_summary() for u in users}


def _enrich(entries: list[AuditLogEntry]) -> list[dict]:
    actors = _actor_summaries(entries)
    rows = []
    for entry in entries:
        row = entry.to_dict()
        row["user"] = actors.get(entry.user_id) if entry.user_id is not None else None
        rows.append(row)
    return rows


def _reference_matches(column, key: str, record_id: str):
    value = column[key]
    if record_id.isdigit():
        return value.as_integer() == int(record_id)
    return value.as_string() == record_id


def history_for(record_id, model: str) -> list[dict]:
    """
    Chronological history of one record, including related child records.

    Integer ids repeat across tables, so the model is required: direct
    matches are that model's entries for record_id, and child models
    (order items, payments) are included only when model is their parent.
    """
    if not model:
        raise ValidationError("model is required for history lookups")
    record_id = str(record_id)

    clauses = [and_(AuditLogEntry.record_id == record_id, AuditLogEntry.model == model)]
    for child_model, (parent_model, key) in RELATED_REFERENCES.items():
        if model != parent_model:
            continue
        clauses.append(and_(
            AuditLogEntry.model == child_model,
            or_(
                _reference_matches(AuditLogEntry.new_data, key, record_id),
                _reference_matches(AuditLogEntry.old_data, key, record_id),
            ),
        ))

    entries = (
        db.session.query(AuditLogEntry)
        .filter(or_(*clauses))
        .order_by(AuditLogEntry.created_at.asc(), AuditLogEntry.id.asc())
        .all()
    )
    return _enrich(entries)


def list_audit_logs(
    *,
    page: int = 1,
    limit: int = 50,
    user_id: int | None = None,
    action: str | None = None,
    model: str | None = None,
    start_date=None,
    end_date=None,
) -> tuple[list[dict], int]:
    """
    Filtered, paginated audit browsing, newest first.

    start_date/end_date accept datetimes or ISO strings; end_date covers
    the whole of its day.
    """
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 50), 1), 500)

    query = db.session.query(AuditLogEntry)
    if user_id is not None:
        query = query.filter(AuditLogEntry.user_id == user_id)
    if action:
        query = query.filter(AuditLogEntry.action == action)
    if model:
        query = query.filter(AuditLogEntry.model == model)

    if isinstance(start_date, str):
        start_date = parse_iso_datetime(start_date)
    if isinstance(end_date, str):
        end_date = parse_iso_datetime(end_date)
    if start_date is not None:
        query = query.filter(AuditLogEntry.created_at >= start_date)
    if end_date is not None:
        query = query.filter(AuditLogEntry.created_at <= end_of_day(end_date))

    total = query.count()
    entries = (
        query.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return _enrich(entries), total
