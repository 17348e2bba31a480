"""
Status transition engine tests.

The engine is pure: documents are plain objects with a status (and, for
orders, a balance), capabilities are sets. No database needed.
"""

from types import SimpleNamespace

import pytest

from backoffice.errors import ValidationError
from backoffice.permissions import PERMISSION_DEFINITIONS
from backoffice.services.transition_service import (
    Applied,
    Deferred,
    Rejected,
    ILLEGAL_TRANSITION,
    PERMISSION_DENIED,
    TABLES,
    ORDER_TABLE,
    QUOTE_TABLE,
    EXPENSE_ORDER_TABLE,
    attempt_transition,
    table_for,
)


ALL_CAPABILITIES = {code for code, _, _, _ in PERMISSION_DEFINITIONS}


def make_doc(status, balance_cents=0):
    return SimpleNamespace(status=status, balance_cents=balance_cents)


# =============================================================================
# EXHAUSTIVE TABLE CHECK
# =============================================================================


@pytest.mark.parametrize("table", list(TABLES.values()), ids=list(TABLES))
def test_never_applies_a_status_outside_the_table(table):
    candidates = set(table.statuses) | {"BOGUS"}

    for current in table.statuses:
        for requested in candidates:
            for capabilities in (set(), ALL_CAPABILITIES):
                doc = make_doc(current)
                outcome = attempt_transition(doc, requested, capabilities, table)

                if requested not in table.allowed_from(current):
                    assert isinstance(outcome, Rejected), (current, requested)
                    assert outcome.kind == ILLEGAL_TRANSITION
                    assert doc.status == current
                elif isinstance(outcome, Applied):
                    assert doc.status == requested
                else:
                    # Only gated targets may be held back
                    assert table.gate_for(requested) is not None
                    assert not capabilities
                    assert doc.status == current


@pytest.mark.parametrize("table", list(TABLES.values()), ids=list(TABLES))
def test_privileged_actor_applies_every_legal_move(table):
    for current, targets in table.transitions.items():
        for requested in targets:
            doc = make_doc(current)
            outcome = attempt_transition(doc, requested, ALL_CAPABILITIES, table)
            assert isinstance(outcome, Applied), (current, requested)
            assert outcome.from_status == current
            assert outcome.to_status == requested


def test_same_status_is_not_a_transition():
    for table in TABLES.values():
        for status in table.statuses:
            outcome = attempt_transition(make_doc(status), status, ALL_CAPABILITIES, table)
            assert isinstance(outcome, Rejected)


def test_terminal_statuses():
    assert ORDER_TABLE.terminal_statuses == {"DELIVERED", "PAID", "CANCELLED"}
    assert QUOTE_TABLE.terminal_statuses == {"CONVERTED", "CANCELLED"}
    assert EXPENSE_ORDER_TABLE.terminal_statuses == {"PAID"}


def test_expense_order_table():
    assert EXPENSE_ORDER_TABLE.allowed_from("DRAFT") == {"CREATED", "AUTHORIZED"}
    assert EXPENSE_ORDER_TABLE.allowed_from("CREATED") == {"AUTHORIZED", "DRAFT"}
    assert EXPENSE_ORDER_TABLE.allowed_from("AUTHORIZED") == {"PAID"}
    assert EXPENSE_ORDER_TABLE.allowed_from("PAID") == frozenset()


def test_rejection_lists_allowed_targets():
    outcome = attempt_transition(make_doc("DRAFT"), "PAID", ALL_CAPABILITIES, EXPENSE_ORDER_TABLE)
    assert isinstance(outcome, Rejected)
    assert "AUTHORIZED, CREATED" in outcome.reason


# =============================================================================
# GATES
# =============================================================================


class TestGates:

    def test_gated_without_capability_is_deferred(self):
        doc = make_doc("CREATED")
        outcome = attempt_transition(doc, "AUTHORIZED", set(), EXPENSE_ORDER_TABLE)

        assert isinstance(outcome, Deferred)
        assert outcome.capability == "APPROVE_EXPENSE_ORDERS"
        assert doc.status == "CREATED"

    def test_gated_with_capability_is_applied(self):
        doc = make_doc("CREATED")
        outcome = attempt_transition(doc, "AUTHORIZED", {"APPROVE_EXPENSE_ORDERS"}, EXPENSE_ORDER_TABLE)

        assert isinstance(outcome, Applied)
        assert doc.status == "AUTHORIZED"

    def test_non_deferrable_gate_is_permission_denied(self):
        doc = make_doc("AUTHORIZED")
        outcome = attempt_transition(doc, "PAID", {"MANAGE_EXPENSE_ORDERS"}, EXPENSE_ORDER_TABLE)

        assert isinstance(outcome, Rejected)
        assert outcome.kind == PERMISSION_DENIED
        assert doc.status == "AUTHORIZED"

    def test_ungated_move_ignores_capabilities(self):
        doc = make_doc("DRAFT")
        assert isinstance(attempt_transition(doc, "CREATED", None, EXPENSE_ORDER_TABLE), Applied)

    def test_order_credit_delivery_is_deferrable(self):
        doc = make_doc("READY", balance_cents=5000)
        outcome = attempt_transition(doc, "DELIVERED_ON_CREDIT", {"MANAGE_ORDERS"}, ORDER_TABLE)
        assert isinstance(outcome, Deferred)
        assert outcome.capability == "APPROVE_STATUS_CHANGES"


# =============================================================================
# ORDER BALANCE GUARD
# =============================================================================


class TestOrderGuard:

    @pytest.mark.parametrize("target", ["PAID", "DELIVERED"])
    def test_outstanding_balance_blocks_settlement(self, target):
        doc = make_doc("READY", balance_cents=100)
        outcome = attempt_transition(doc, target, ALL_CAPABILITIES, ORDER_TABLE)

        assert isinstance(outcome, Rejected)
        assert outcome.kind == ILLEGAL_TRANSITION
        assert "outstanding balance" in outcome.reason
        assert doc.status == "READY"

    def test_settled_order_can_be_paid(self):
        doc = make_doc("DELIVERED_ON_CREDIT", balance_cents=0)
        assert isinstance(attempt_transition(doc, "PAID", set(), ORDER_TABLE), Applied)


def test_table_for_unknown_type():
    assert table_for("QUOTE") is QUOTE_TABLE
    with pytest.raises(ValidationError):
        table_for("INVOICE")
