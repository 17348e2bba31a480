from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


class SequenceCounter(db.Model):
    """
    One row per document type holding the last issued number for a year.

    WHY: Human-readable document codes (OP-2026-0043) must never collide,
    even when two documents of the same type are created concurrently.
    The row is only ever mutated through a single conditional upsert
    (see sequence_service.next_number), never read-then-written.

    RESET: When the effective year differs from the stored year the next
    allocation writes last_number=1 for the new year.
    """
    __tablename__ = "sequence_counters"

    document_type = db.Column(db.String(32), primary_key=True)
    prefix = db.Column(db.String(16), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    last_number = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __table_args__ = (
        db.CheckConstraint("last_number >= 0", name="ck_sequence_counters_last_number"),
    )

    def to_dict(self) -> dict:
        return {
            "document_type": self.document_type,
            "prefix": self.prefix,
            "year": self.year,
            "last_number": self.last_number,
            "updated_at": to_utc_z(self.updated_at),
        }


class Order(db.Model):
    """
    Production order (OP).

    LIFECYCLE:
    DRAFT -> CONFIRMED -> IN_PRODUCTION -> READY -> DELIVERED | PAID
    READY -> DELIVERED_ON_CREDIT (requires approval) -> PAID
    Any pre-delivery status -> CANCELLED

    Money is stored in cents. balance = total - paid.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable document number (e.g., "OP-2026-0001"), immutable
    order_number = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(32), nullable=False, default="DRAFT", index=True)

    client_name = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    delivery_date = db.Column(db.DateTime(timezone=True), nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_by = db.relationship("User", foreign_keys=[created_by_user_id])
    items = db.relationship("OrderItem", backref="order", lazy=True, order_by="OrderItem.id", cascade="all, delete-orphan")
    payments = db.relationship("Payment", backref="order", lazy=True, order_by="Payment.id", cascade="all, delete-orphan")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def number(self) -> str:
        return self.order_number

    @property
    def balance_cents(self) -> int:
        return (self.total_cents or 0) - (self.paid_amount_cents or 0)

    def recalculate_totals(self) -> None:
        """Recompute subtotal, tax and total from items, and paid amount from payments."""
        self.subtotal_cents = sum(item.total_cents for item in self.items)
        # Tax rounded half up to the cent
        self.tax_cents = (self.subtotal_cents * (self.tax_rate_bps or 0) + 5000) // 10000
        self.total_cents = self.subtotal_cents + self.tax_cents
        self.paid_amount_cents = sum(payment.amount_cents for payment in self.payments)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "status": self.status,
            "client_name": self.client_name,
            "notes": self.notes,
            "delivery_date": to_utc_z(self.delivery_date),
            "subtotal_cents": self.subtotal_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "balance_cents": self.balance_cents,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class OrderItem(db.Model):
    """
    Line item on an order. Audit rows for items carry order_id so the
    order's history can correlate them.
    """
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
            "created_at": to_utc_z(self.created_at),
        }


class Payment(db.Model):
    """
    Payment applied against an order balance.
    """
    __tablename__ = "payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(16), nullable=False, default="CASH")  # CASH, TRANSFER, CARD, CHECK, OTHER
    reference = db.Column(db.String(128), nullable=True)

    received_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "reference": self.reference,
            "received_by_user_id": self.received_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class Quote(db.Model):
    """
    Sales quote (COT).

    LIFECYCLE:
    DRAFT -> SENT -> ACCEPTED -> CONVERTED (creates an Order)
    SENT -> REJECTED -> DRAFT (revision)
    DRAFT | SENT | ACCEPTED -> CANCELLED
    """
    __tablename__ = "quotes"
    __table_args__ = (
        db.UniqueConstraint("quote_number", name="uq_quotes_quote_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    quote_number = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(32), nullable=False, default="DRAFT", index=True)

    client_name = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    # Set when the quote is converted
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", foreign_keys=[order_id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def number(self) -> str:
        return self.quote_number

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quote_number": self.quote_number,
            "status": self.status,
            "client_name": self.client_name,
            "notes": self.notes,
            "valid_until": to_utc_z(self.valid_until),
            "total_cents": self.total_cents,
            "order_id": self.order_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class ExpenseOrder(db.Model):
    """
    Expense order (OG).

    LIFECYCLE:
    DRAFT <-> CREATED -> AUTHORIZED -> PAID
    DRAFT -> AUTHORIZED

    AUTHORIZED requires APPROVE_EXPENSE_ORDERS; staff without it file an
    authorization request. PAID requires the same capability outright.
    """
    __tablename__ = "expense_orders"
    __table_args__ = (
        db.UniqueConstraint("og_number", name="uq_expense_orders_og_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    og_number = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(32), nullable=False, default="DRAFT", index=True)

    supplier_name = db.Column(db.String(255), nullable=True)
    concept = db.Column(db.String(255), nullable=True)
    observations = db.Column(db.Text, nullable=True)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    authorized_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    authorized_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    authorized_by = db.relationship("User", foreign_keys=[authorized_by_user_id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def number(self) -> str:
        return self.og_number

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "og_number": self.og_number,
            "status": self.status,
            "supplier_name": self.supplier_name,
            "concept": self.concept,
            "observations": self.observations,
            "total_cents": self.total_cents,
            "authorized_by_user_id": self.authorized_by_user_id,
            "authorized_at": to_utc_z(self.authorized_at),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
