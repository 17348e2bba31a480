"""
Document number allocation tests.

Verifies:
- Numbers are formatted PREFIX-YEAR-NNNN and increase by one
- A different year restarts the counter at 1
- Concurrent callers never receive the same number
- Operator tools (reset, sync) adjust the counter as documented
"""

import threading

import pytest

from backoffice.errors import ValidationError
from backoffice.extensions import db
from backoffice.models import Order, SequenceCounter
from backoffice.services import lifecycle_service, sequence_service
from backoffice.time_utils import current_year


# =============================================================================
# FORMAT AND INCREMENT
# =============================================================================


class TestNextNumber:

    def test_three_sequential_order_numbers(self, db_session):
        numbers = [sequence_service.next_number("ORDER", "OP", 2026) for _ in range(3)]
        assert numbers == ["OP-2026-0001", "OP-2026-0002", "OP-2026-0003"]

    def test_counter_row_created_lazily(self, db_session):
        assert db_session.get(SequenceCounter, "QUOTE") is None

        sequence_service.next_number("QUOTE", "COT", 2026)

        counter = db_session.get(SequenceCounter, "QUOTE")
        assert counter.prefix == "COT"
        assert counter.year == 2026
        assert counter.last_number == 1

    def test_types_are_independent(self, db_session):
        assert sequence_service.next_number("ORDER", "OP", 2026) == "OP-2026-0001"
        assert sequence_service.next_number("EXPENSE_ORDER", "OG", 2026) == "OG-2026-0001"
        assert sequence_service.next_number("ORDER", "OP", 2026) == "OP-2026-0002"

    def test_defaults_to_current_year(self, db_session):
        number = sequence_service.next_number("ORDER", "OP")
        assert number == f"OP-{current_year()}-0001"

    def test_generate_number_uses_default_prefix(self, db_session):
        assert sequence_service.generate_number("EXPENSE_ORDER").startswith(f"OG-{current_year()}-")
        assert sequence_service.generate_number("WORK_ORDER").startswith("OT-")

    def test_unknown_type_for_generate_number(self, db_session):
        with pytest.raises(ValidationError):
            sequence_service.generate_number("INVOICE")

    def test_requires_type_and_prefix(self, db_session):
        with pytest.raises(ValidationError):
            sequence_service.next_number("", "OP", 2026)
        with pytest.raises(ValidationError):
            sequence_service.next_number("ORDER", "", 2026)

    def test_commit_false_joins_caller_transaction(self, db_session):
        sequence_service.next_number("ORDER", "OP", 2026)
        assert sequence_service.next_number("ORDER", "OP", 2026, commit=False) == "OP-2026-0002"

        db_session.rollback()

        assert sequence_service.next_number("ORDER", "OP", 2026) == "OP-2026-0002"


# =============================================================================
# YEAR RESET
# =============================================================================


class TestYearReset:

    def test_new_year_restarts_at_one(self, db_session):
        for _ in range(5):
            sequence_service.next_number("ORDER", "OP", 2025)

        assert sequence_service.next_number("ORDER", "OP", 2026) == "OP-2026-0001"
        assert sequence_service.next_number("ORDER", "OP", 2026) == "OP-2026-0002"

    def test_reset_ignores_previous_last_number(self, db_session):
        db_session.add(SequenceCounter(document_type="ORDER", prefix="OP", year=2025, last_number=4321))
        db_session.commit()

        assert sequence_service.next_number("ORDER", "OP", 2026) == "OP-2026-0001"

    def test_explicit_older_year_also_restarts(self, db_session):
        sequence_service.next_number("ORDER", "OP", 2026)
        sequence_service.next_number("ORDER", "OP", 2026)

        assert sequence_service.next_number("ORDER", "OP", 2025) == "OP-2025-0001"
        assert db_session.get(SequenceCounter, "ORDER").year == 2025


# =============================================================================
# OVERFLOW
# =============================================================================


class TestOverflow:

    def test_widens_past_pad_width(self, db_session, caplog):
        db_session.add(SequenceCounter(document_type="ORDER", prefix="OP", year=2026, last_number=9998))
        db_session.commit()

        assert sequence_service.next_number("ORDER", "OP", 2026) == "OP-2026-9999"
        assert sequence_service.next_number("ORDER", "OP", 2026) == "OP-2026-10000"
        assert "widening" in caplog.text

    def test_pad_width_is_configurable(self, app, db_session):
        original = app.config["SEQUENCE_PAD_WIDTH"]
        app.config["SEQUENCE_PAD_WIDTH"] = 6
        try:
            assert sequence_service.next_number("ORDER", "OP", 2026) == "OP-2026-000001"
        finally:
            app.config["SEQUENCE_PAD_WIDTH"] = original


# =============================================================================
# CONCURRENCY
# =============================================================================


class TestConcurrentAllocation:

    def test_concurrent_callers_get_distinct_contiguous_numbers(self, app, db_session):
        threads_count = 8
        per_thread = 10
        numbers = []
        errors = []
        lock = threading.Lock()
        start = threading.Barrier(threads_count)

        def worker():
            with app.app_context():
                try:
                    start.wait()
                    for _ in range(per_thread):
                        number = sequence_service.next_number("ORDER", "OP", 2026)
                        with lock:
                            numbers.append(number)
                except Exception as exc:  # surfaced below
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(60)

        assert errors == []
        assert len(numbers) == threads_count * per_thread
        assert len(set(numbers)) == len(numbers)

        suffixes = sorted(int(n.rsplit("-", 1)[1]) for n in numbers)
        assert suffixes == list(range(1, threads_count * per_thread + 1))

    def test_different_types_allocate_in_parallel(self, app, db_session):
        results = {}

        def worker(document_type, prefix):
            with app.app_context():
                try:
                    results[document_type] = [
                        sequence_service.next_number(document_type, prefix, 2026) for _ in range(5)
                    ]
                finally:
                    db.session.remove()

        threads = [
            threading.Thread(target=worker, args=("ORDER", "OP")),
            threading.Thread(target=worker, args=("QUOTE", "COT")),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(60)

        assert results["ORDER"] == [f"OP-2026-{n:04d}" for n in range(1, 6)]
        assert results["QUOTE"] == [f"COT-2026-{n:04d}" for n in range(1, 6)]


# =============================================================================
# OPERATOR TOOLS
# =============================================================================


class TestOperatorTools:

    def test_reset_counter_restarts_numbering(self, db_session):
        sequence_service.next_number("ORDER", "OP", 2026)
        sequence_service.next_number("ORDER", "OP", 2026)

        counter = sequence_service.reset_counter("ORDER")
        assert counter.last_number == 0
        assert sequence_service.next_number("ORDER", "OP", 2026) == "OP-2026-0001"

    def test_reset_missing_counter(self, db_session):
        with pytest.raises(ValidationError):
            sequence_service.reset_counter("ORDER")

    def test_sync_raises_counter_to_highest_used(self, db_session):
        year = current_year()
        for n in (3, 7, 5):
            db_session.add(Order(order_number=f"OP-{year}-{n:04d}"))
        db_session.add(Order(order_number=f"OP-{year - 1}-0099"))
        db_session.commit()

        counter = sequence_service.sync_counter_from_table("ORDER", Order, "order_number")

        assert counter.last_number == 7
        assert sequence_service.generate_number("ORDER") == f"OP-{year}-0008"

    def test_sync_never_lowers_counter(self, db_session):
        db_session.add(SequenceCounter(document_type="ORDER", prefix="OP", year=2026, last_number=50))
        db_session.add(Order(order_number="OP-2026-0010"))
        db_session.commit()

        counter = sequence_service.sync_counter_from_table("ORDER", Order, "order_number", "OP", 2026)
        assert counter.last_number == 50

    def test_sync_refuses_an_earlier_year(self, db_session):
        year = current_year()
        assert lifecycle_service.create_document("ORDER").order_number == f"OP-{year}-0001"

        with pytest.raises(ValidationError):
            sequence_service.sync_counter_from_table("ORDER", Order, "order_number", "OP", year - 1)

        counter = db_session.get(SequenceCounter, "ORDER")
        assert (counter.year, counter.last_number) == (year, 1)
        assert lifecycle_service.create_document("ORDER").order_number == f"OP-{year}-0002"

    def test_list_counters(self, db_session):
        sequence_service.next_number("QUOTE", "COT", 2026)
        sequence_service.next_number("ORDER", "OP", 2026)

        assert [c.document_type for c in sequence_service.list_counters()] == ["ORDER", "QUOTE"]
