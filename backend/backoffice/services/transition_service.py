# Overview: Service-layer status transition engine; one generic engine driven by per-type tables.

"""
Status Transition Engine

WHY: Orders, quotes and expense orders all move through a constrained
status graph, and some moves need a capability the actor may not hold.
Each graph is plain data (TransitionTable); one engine evaluates them all.

OUTCOMES:
- Applied:  legal, and the actor holds any required capability.
            document.status is updated in memory; the caller persists.
- Deferred: legal, gated, actor lacks the capability, and the gate allows
            deferral. The document is NOT touched; the caller files an
            authorization request.
- Rejected: not in the legal set (ILLEGAL_TRANSITION), blocked by a
            document guard (ILLEGAL_TRANSITION), or gated without
            deferral and the actor lacks the capability (PERMISSION_DENIED).

The engine never reads the database. Capabilities come in as a set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Mapping

from ..errors import ValidationError


ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
PERMISSION_DENIED = "PERMISSION_DENIED"


@dataclass(frozen=True)
class Gate:
    """Capability required to enter a status."""
    capability: str
    deferrable: bool = True


@dataclass(frozen=True)
class TransitionTable:
    document_type: str
    initial_status: str
    transitions: Mapping[str, frozenset]
    gates: Mapping[str, Gate] = field(default_factory=dict)
    # guard(document, requested_status) -> reason string to block, or None
    guard: Callable | None = None

    @property
    def statuses(self) -> frozenset:
        found = set(self.transitions)
        for targets in self.transitions.values():
            found.update(targets)
        return frozenset(found)

    @property
    def terminal_statuses(self) -> frozenset:
        return frozenset(s for s in self.statuses if not self.transitions.get(s))

    def allowed_from(self, status: str) -> frozenset:
        return self.transitions.get(status, frozenset())

    def is_legal(self, current_status: str, requested_status: str) -> bool:
        return requested_status in self.allowed_from(current_status)

    def gate_for(self, requested_status: str) -> Gate | None:
        return self.gates.get(requested_status)


@dataclass(frozen=True)
class Applied:
    from_status: str
    to_status: str


@dataclass(frozen=True)
class Deferred:
    from_status: str
    to_status: str
    capability: str


@dataclass(frozen=True)
class Rejected:
    from_status: str
    to_status: str
    reason: str
    kind: str = ILLEGAL_TRANSITION


def attempt_transition(document, requested_status: str, actor_capabilities, table: TransitionTable):
    """
    Evaluate moving document to requested_status.

    Returns Applied, Deferred or Rejected. Only Applied mutates the document.
    """
    current = document.status
    capabilities = frozenset(actor_capabilities or ())

    if not table.is_legal(current, requested_status):
        allowed = ", ".join(sorted(table.allowed_from(current))) or "none (terminal)"
        return Rejected(
            current,
            requested_status,
            f"{table.document_type} cannot move from {current} to {requested_status}. Allowed: {allowed}",
        )

    if table.guard is not None:
        blocked = table.guard(document, requested_status)
        if blocked:
            return Rejected(current, requested_status, blocked)

    gate = table.gate_for(requested_status)
    if gate is not None and gate.capability not in capabilities:
        if gate.deferrable:
            return Deferred(current, requested_status, gate.capability)
        return Rejected(
            current,
            requested_status,
            f"Moving {table.document_type} to {requested_status} requires {gate.capability}",
            kind=PERMISSION_DENIED,
        )

    document.status = requested_status
    return Applied(current, requested_status)


# =============================================================================
# TRANSITION TABLES
# =============================================================================

def _order_guard(order, requested_status: str) -> str | None:
    if requested_status in ("PAID", "DELIVERED") and order.balance_cents > 0:
        return (
            f"Order has an outstanding balance of {order.balance_cents} cents; "
            f"record payments before marking it {requested_status}"
        )
    return None


ORDER_TABLE = TransitionTable(
    document_type="ORDER",
    initial_status="DRAFT",
    transitions={
        "DRAFT": frozenset({"CONFIRMED", "CANCELLED"}),
        "CONFIRMED": frozenset({"IN_PRODUCTION", "CANCELLED"}),
        "IN_PRODUCTION": frozenset({"READY", "CANCELLED"}),
        "READY": frozenset({"DELIVERED", "DELIVERED_ON_CREDIT", "PAID"}),
        "DELIVERED_ON_CREDIT": frozenset({"PAID"}),
        "DELIVERED": frozenset(),
        "PAID": frozenset(),
        "CANCELLED": frozenset(),
    },
    gates={
        "DELIVERED_ON_CREDIT": Gate("APPROVE_STATUS_CHANGES", deferrable=True),
    },
    guard=_order_guard,
)


QUOTE_TABLE = TransitionTable(
    document_type="QUOTE",
    initial_status="DRAFT",
    transitions={
        "DRAFT": frozenset({"SENT", "CANCELLED"}),
        "SENT": frozenset({"ACCEPTED", "REJECTED", "CANCELLED"}),
        "ACCEPTED": frozenset({"CONVERTED", "CANCELLED"}),
        "REJECTED": frozenset({"DRAFT"}),
        "CONVERTED": frozenset(),
        "CANCELLED": frozenset(),
    },
)


EXPENSE_ORDER_TABLE = TransitionTable(
    document_type="EXPENSE_ORDER",
    initial_status="DRAFT",
    transitions={
        "DRAFT": frozenset({"CREATED", "AUTHORIZED"}),
        "CREATED": frozenset({"AUTHORIZED", "DRAFT"}),
        "AUTHORIZED": frozenset({"PAID"}),
        "PAID": frozenset(),
    },
    gates={
        "AUTHORIZED": Gate("APPROVE_EXPENSE_ORDERS", deferrable=True),
        "PAID": Gate("APPROVE_EXPENSE_ORDERS", deferrable=False),
    },
)


TABLES = {
    table.document_type: table
    for table in (ORDER_TABLE, QUOTE_TABLE, EXPENSE_ORDER_TABLE)
}


def table_for(document_type: str) -> TransitionTable:
    try:
        return TABLES[document_type]
    except KeyError:
        raise ValidationError(f"No transition table for {document_type}") from None
