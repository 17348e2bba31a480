# Overview: Service-layer operations for orders; line items, payments and quote conversion.

"""
Order Operations

Items and payments are child rows of an order. Their audit entries carry
order_id in the snapshot, which is how audit_service.history_for() pulls
them into the order's history.

RULES:
- Items can be added or removed only while the order is DRAFT
- Payments are accepted from CONFIRMED until the order is settled, and
  never beyond the outstanding balance
- Totals are recomputed on every item or payment change
- Users need MANAGE_ORDERS (and MANAGE_QUOTES to convert a quote)
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, IllegalTransitionError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, Payment, Quote
from . import audit_service
from .concurrency import run_with_retry
from .document_types import commit_document_change, get_document_type, order_snapshot
from .lifecycle_service import load_document_for_update, new_document, require_manage_capability
from .permission_service import get_user_permissions
from .transition_service import Applied, QUOTE_TABLE, attempt_transition


PAYMENT_METHODS = {"CASH", "TRANSFER", "CARD", "CHECK", "OTHER"}
PAYABLE_STATUSES = {"CONFIRMED", "IN_PRODUCTION", "READY", "DELIVERED_ON_CREDIT"}


def _load_order(order_id: int, user_id: int | None) -> Order:
    order_type = get_document_type("ORDER")
    require_manage_capability(order_type, user_id)
    return load_document_for_update(order_type, order_id)


def add_item(
    order_id: int,
    description: str,
    quantity: int,
    unit_price_cents: int,
    *,
    user_id: int | None = None,
) -> OrderItem:
    if not description or not description.strip():
        raise ValidationError("description is required")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")
    if isinstance(unit_price_cents, bool) or not isinstance(unit_price_cents, int) or unit_price_cents < 0:
        raise ValidationError("unit_price_cents must be a non-negative integer")

    order = _load_order(order_id, user_id)
    if order.status != "DRAFT":
        raise ValidationError(f"Items can only be added to DRAFT orders (order is {order.status})")

    before = order_snapshot(order)
    item = OrderItem(
        description=description.strip(),
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        total_cents=quantity * unit_price_cents,
    )
    order.items.append(item)
    order.recalculate_totals()
    commit_document_change(get_document_type("ORDER"), order)

    audit_service.log_create("OrderItem", item.id, item.to_dict(), user_id)
    audit_service.log_update("Order", order.id, before, order_snapshot(order), user_id)
    return item


def remove_item(order_id: int, item_id: int, *, user_id: int | None = None) -> None:
    order = _load_order(order_id, user_id)
    if order.status != "DRAFT":
        raise ValidationError(f"Items can only be removed from DRAFT orders (order is {order.status})")

    item = next((i for i in order.items if i.id == item_id), None)
    if item is None:
        raise NotFoundError(f"Item {item_id} not found on order {order_id}")

    before = order_snapshot(order)
    item_data = item.to_dict()
    order.items.remove(item)
    order.recalculate_totals()
    commit_document_change(get_document_type("ORDER"), order)

    audit_service.log_delete("OrderItem", item_id, item_data, user_id)
    audit_service.log_update("Order", order.id, before, order_snapshot(order), user_id)


def add_payment(
    order_id: int,
    amount_cents: int,
    method: str = "CASH",
    reference: str | None = None,
    *,
    user_id: int | None = None,
) -> Payment:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("amount_cents must be a positive integer")
    method = (method or "").upper()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"method must be one of: {', '.join(sorted(PAYMENT_METHODS))}")

    order = _load_order(order_id, user_id)
    if order.status not in PAYABLE_STATUSES:
        raise ValidationError(f"Payments are not accepted for orders in status {order.status}")
    if amount_cents > order.balance_cents:
        raise ValidationError(
            f"Payment of {amount_cents} exceeds the outstanding balance of {order.balance_cents}"
        )

    before = order_snapshot(order)
    payment = Payment(
        amount_cents=amount_cents,
        method=method,
        reference=reference,
        received_by_user_id=user_id,
    )
    order.payments.append(payment)
    order.recalculate_totals()
    commit_document_change(get_document_type("ORDER"), order)

    audit_service.log_create("Payment", payment.id, payment.to_dict(), user_id)
    audit_service.log_update("Order", order.id, before, order_snapshot(order), user_id)
    return payment


def convert_quote_to_order(quote_id: int, *, user_id: int | None = None) -> tuple[Quote, Order]:
    """
    Turn an ACCEPTED quote into a DRAFT order.

    The quote moves to CONVERTED, the order gets a fresh OP number and one
    line carrying the quoted total, and both commit together.
    """
    quote_type = get_document_type("QUOTE")
    order_type = get_document_type("ORDER")
    require_manage_capability(quote_type, user_id)
    require_manage_capability(order_type, user_id)
    capabilities = get_user_permissions(user_id)
    attempts = int(current_app.config.get("SEQUENCE_RETRY_ATTEMPTS", 5))
    snapshots = {}

    def _convert():
        quote = load_document_for_update(quote_type, quote_id)
        snapshots["quote_before"] = quote.to_dict()

        outcome = attempt_transition(quote, "CONVERTED", capabilities, QUOTE_TABLE)
        if not isinstance(outcome, Applied):
            db.session.rollback()
            raise IllegalTransitionError(
                getattr(outcome, "reason", f"Quote {quote.quote_number} cannot be converted")
            )

        order = new_document(
            order_type,
            user_id=user_id,
            values={"client_name": quote.client_name, "notes": quote.notes},
        )
        if quote.total_cents:
            order.items.append(OrderItem(
                description=f"Per quote {quote.quote_number}",
                quantity=1,
                unit_price_cents=quote.total_cents,
                total_cents=quote.total_cents,
            ))
            order.recalculate_totals()
        db.session.flush()
        quote.order_id = order.id
        commit_document_change(quote_type, quote)
        return quote, order

    try:
        quote, order = run_with_retry(_convert, attempts=attempts)
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Could not convert quote: order number already in use") from None

    current_app.logger.info(
        "Quote %s converted to order %s by user %s", quote.quote_number, order.order_number, user_id
    )
    audit_service.log_update("Quote", quote.id, snapshots["quote_before"], quote.to_dict(), user_id)
    audit_service.log_create("Order", order.id, order_snapshot(order), user_id)
    return quote, order
