# Overview: Registry of document types; binds each model to its numbering, transition table and editing rules.

"""
Document Type Registry

Each DocumentType says, for one kind of business document:
- which model and column hold it and its number
- which sequence and prefix issue the number
- which transition table governs its status
- which capability is needed to create, edit, delete or move it
- which statuses allow editing and deletion, and which fields are writable
- past those statuses, where an edit request can unlock editing and which
  capability edits without one
- how it is snapshotted for the audit trail
- what else changes when a transition is applied (on_applied)

Both the lifecycle coordinator and the authorization workflow look types
up here, so neither depends on the other for this information.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, ValidationError
from ..extensions import db
from ..models import Order, Quote, ExpenseOrder
from backoffice.time_utils import utcnow
from .sequence_service import DEFAULT_PREFIXES
from .transition_service import (
    TransitionTable,
    ORDER_TABLE,
    QUOTE_TABLE,
    EXPENSE_ORDER_TABLE,
)


@dataclass(frozen=True)
class DocumentType:
    name: str
    model: type
    audit_model: str
    number_field: str
    table: TransitionTable
    manage_capability: str
    editable_statuses: frozenset
    deletable_statuses: frozenset
    writable_fields: frozenset
    datetime_fields: frozenset = frozenset()
    # Statuses past editable_statuses where an edit request can be filed
    edit_request_statuses: frozenset = frozenset()
    edit_override_capability: str | None = None
    snapshot: Callable | None = None
    # on_applied(document, to_status, actor_user_id)
    on_applied: Callable | None = None
    # on_update(document) after field changes
    on_update: Callable | None = None

    @property
    def prefix(self) -> str:
        return DEFAULT_PREFIXES[self.name]

    def take_snapshot(self, document) -> dict:
        if self.snapshot is not None:
            return self.snapshot(document)
        return document.to_dict()


def order_snapshot(order: Order) -> dict:
    data = order.to_dict()
    data["items"] = [item.to_dict() for item in order.items]
    data["payments"] = [payment.to_dict() for payment in order.payments]
    return data


def _stamp_expense_authorization(expense_order: ExpenseOrder, to_status: str, actor_user_id: int | None) -> None:
    if to_status == "AUTHORIZED":
        expense_order.authorized_by_user_id = actor_user_id
        expense_order.authorized_at = utcnow()


DOCUMENT_TYPES = {
    "ORDER": DocumentType(
        name="ORDER",
        model=Order,
        audit_model="Order",
        number_field="order_number",
        table=ORDER_TABLE,
        manage_capability="MANAGE_ORDERS",
        editable_statuses=frozenset({"DRAFT"}),
        deletable_statuses=frozenset({"DRAFT"}),
        writable_fields=frozenset({"client_name", "notes", "delivery_date", "tax_rate_bps"}),
        datetime_fields=frozenset({"delivery_date"}),
        edit_request_statuses=frozenset({"CONFIRMED", "IN_PRODUCTION", "READY"}),
        edit_override_capability="EDIT_LOCKED_ORDERS",
        snapshot=order_snapshot,
        on_update=Order.recalculate_totals,
    ),
    "QUOTE": DocumentType(
        name="QUOTE",
        model=Quote,
        audit_model="Quote",
        number_field="quote_number",
        table=QUOTE_TABLE,
        manage_capability="MANAGE_QUOTES",
        editable_statuses=frozenset({"DRAFT", "SENT"}),
        deletable_statuses=frozenset({"DRAFT"}),
        writable_fields=frozenset({"client_name", "notes", "valid_until", "total_cents"}),
        datetime_fields=frozenset({"valid_until"}),
    ),
    "EXPENSE_ORDER": DocumentType(
        name="EXPENSE_ORDER",
        model=ExpenseOrder,
        audit_model="ExpenseOrder",
        number_field="og_number",
        table=EXPENSE_ORDER_TABLE,
        manage_capability="MANAGE_EXPENSE_ORDERS",
        editable_statuses=frozenset({"DRAFT", "CREATED"}),
        deletable_statuses=frozenset({"DRAFT"}),
        writable_fields=frozenset({"supplier_name", "concept", "observations", "total_cents"}),
        on_applied=_stamp_expense_authorization,
    ),
}


def get_document_type(name: str) -> DocumentType:
    try:
        return DOCUMENT_TYPES[name]
    except KeyError:
        raise ValidationError(f"Unknown document type: {name}") from None


def commit_document_change(doc_type: DocumentType, document) -> None:
    """Commit the session; a stale version_id becomes ConflictError."""
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConflictError(
            f"{doc_type.name} {document.id} was changed by someone else; refresh and retry"
        ) from None
