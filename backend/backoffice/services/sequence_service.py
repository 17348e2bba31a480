# Overview: Service-layer operations for document sequences; allocates human-readable document numbers.

"""
Document Number Allocation

WHY: Document codes like OP-2026-0043 are printed, quoted to clients and
used to find paperwork. Two documents must never share a code, and a
year's numbers should run 0001, 0002, ... without holes.

HOW: One counter row per document type. Every allocation is ONE
conditional write that both decides "reset or increment" and performs it:

    INSERT ... VALUES (type, prefix, year, 1)
    ON CONFLICT (document_type) DO UPDATE SET
        last_number = CASE WHEN year = :year THEN last_number + 1 ELSE 1 END,
        year = :year
    RETURNING last_number

There is no read-then-write window, so concurrent callers are serialized
by the row lock the database takes for the upsert. Dialects without
ON CONFLICT fall back to a compare-and-swap loop.

GAP-FREE CREATION: Callers creating a document pass commit=False so the
counter bump and the document insert commit (or roll back) together.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, ValidationError
from ..extensions import db
from ..models import SequenceCounter
from backoffice.time_utils import current_year, utcnow
from .concurrency import run_with_retry


DEFAULT_PREFIXES = {
    "ORDER": "OP",
    "QUOTE": "COT",
    "EXPENSE_ORDER": "OG",
    "WORK_ORDER": "OT",
    "PRODUCTION": "PROD",
}

_CAS_ATTEMPTS = 10


def format_number(prefix: str, year: int, number: int, pad_width: int | None = None) -> str:
    """
    Render a document code.

    Numbers wider than pad_width are written in full (OP-2026-10000);
    the padding is a minimum, never a truncation.
    """
    if pad_width is None:
        pad_width = int(current_app.config.get("SEQUENCE_PAD_WIDTH", 4))
    return f"{prefix}-{year}-{number:0{pad_width}d}"


def _upsert_insert(dialect_name: str):
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None


def _allocate_upsert(insert, document_type: str, prefix: str, year: int) -> int:
    table = SequenceCounter.__table__
    stmt = insert(table).values(
        document_type=document_type,
        prefix=prefix,
        year=year,
        last_number=1,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.document_type],
        set_={
            "last_number": case(
                (table.c.year == year, table.c.last_number + 1),
                else_=1,
            ),
            "year": year,
            "prefix": prefix,
            "updated_at": func.now(),
        },
    ).returning(table.c.last_number)
    return db.session.execute(stmt).scalar_one()


def _allocate_compare_and_swap(document_type: str, prefix: str, year: int) -> int:
    """
    Portable fallback: read, then write only if the row is unchanged.

    Losing the race means rowcount == 0; re-read and try again.
    """
    for _ in range(_CAS_ATTEMPTS):
        row = (
            db.session.query(SequenceCounter.year, SequenceCounter.last_number)
            .filter(SequenceCounter.document_type == document_type)
            .first()
        )

        if row is None:
            try:
                with db.session.begin_nested():
                    db.session.add(SequenceCounter(
                        document_type=document_type,
                        prefix=prefix,
                        year=year,
                        last_number=1,
                    ))
                return 1
            except IntegrityError:
                continue  # Someone else created it first

        stored_year, last_number = row
        new_number = last_number + 1 if stored_year == year else 1

        result = db.session.execute(
            update(SequenceCounter)
            .where(
                SequenceCounter.document_type == document_type,
                SequenceCounter.year == stored_year,
                SequenceCounter.last_number == last_number,
            )
            .values(last_number=new_number, year=year, prefix=prefix, updated_at=utcnow())
        )
        if result.rowcount == 1:
            return new_number

    raise ConflictError(f"Could not allocate a number for {document_type}; try again")


def _allocate(document_type: str, prefix: str, year: int) -> int:
    insert = _upsert_insert(db.session.get_bind().dialect.name)
    if insert is not None:
        return _allocate_upsert(insert, document_type, prefix, year)
    return _allocate_compare_and_swap(document_type, prefix, year)


def next_number(
    document_type: str,
    prefix: str,
    year: int | None = None,
    *,
    commit: bool = True,
) -> str:
    """
    Allocate and format the next number for document_type.

    year defaults to the current calendar year. When it differs from the
    year stored on the counter (in either direction) the counter restarts
    at 1 for that year.

    commit=True: the allocation is its own transaction, retried on write
    conflicts. commit=False: the allocation joins the caller's open
    transaction and the caller owns commit, rollback and retry.
    """
    if not document_type:
        raise ValidationError("document_type is required")
    if not prefix:
        raise ValidationError("prefix is required")

    effective_year = year if year is not None else current_year()
    pad_width = int(current_app.config.get("SEQUENCE_PAD_WIDTH", 4))

    def _op() -> int:
        number = _allocate(document_type, prefix, effective_year)
        if commit:
            db.session.commit()
        return number

    if commit:
        attempts = int(current_app.config.get("SEQUENCE_RETRY_ATTEMPTS", 5))
        number = run_with_retry(_op, attempts=attempts)
    else:
        number = _op()

    if number >= 10 ** pad_width:
        current_app.logger.warning(
            "Sequence %s passed %d digits in %d (now %d); codes are widening",
            document_type, pad_width, effective_year, number,
        )

    return format_number(prefix, effective_year, number, pad_width)


def prefix_for(document_type: str) -> str:
    try:
        return DEFAULT_PREFIXES[document_type]
    except KeyError:
        raise ValidationError(f"Unknown document type: {document_type}") from None


def generate_number(document_type: str, *, commit: bool = True) -> str:
    """Next number for a known document type, current year, default prefix."""
    return next_number(document_type, prefix_for(document_type), commit=commit)


# =============================================================================
# Operator tools
# =============================================================================

def list_counters() -> list[SequenceCounter]:
    return db.session.query(SequenceCounter).order_by(SequenceCounter.document_type).all()


def get_counter(document_type: str) -> SequenceCounter | None:
    return db.session.get(SequenceCounter, document_type)


def reset_counter(document_type: str) -> SequenceCounter:
    """
    Set last_number back to 0 so the next allocation issues 0001.

    Only safe when no documents of this type exist for the stored year;
    otherwise the next allocation collides with an existing document.
    """
    counter = get_counter(document_type)
    if counter is None:
        raise ValidationError(f"No counter exists for {document_type}")

    counter.last_number = 0
    db.session.commit()
    current_app.logger.warning("Sequence %s reset to 0 for %d", document_type, counter.year)
    return counter


def _parse_suffix(code: str | None, prefix: str, year: int) -> int | None:
    head = f"{prefix}-{year}-"
    if not code or not code.startswith(head):
        return None
    tail = code[len(head):]
    return int(tail) if tail.isdigit() else None


def sync_counter_from_table(
    document_type: str,
    model,
    column: str,
    prefix: str | None = None,
    year: int | None = None,
) -> SequenceCounter:
    """
    Raise the counter to the highest number already used in a document table.

    Used after importing legacy documents. Never lowers the counter, and
    never moves it back to an earlier year than the one it holds: the next
    allocation would restart at 1 and collide with numbers already issued.
    """
    prefix = prefix or prefix_for(document_type)
    effective_year = year if year is not None else current_year()

    number_col = getattr(model, column)
    codes = (
        db.session.query(number_col)
        .filter(number_col.like(f"{prefix}-{effective_year}-%"))
        .all()
    )
    highest = max(
        (n for n in (_parse_suffix(code, prefix, effective_year) for (code,) in codes) if n is not None),
        default=0,
    )

    def _op() -> SequenceCounter:
        counter = get_counter(document_type)
        if counter is not None and effective_year < counter.year:
            raise ValidationError(
                f"{document_type} is counting {counter.year}; cannot sync back to {effective_year}"
            )
        if counter is None:
            counter = SequenceCounter(
                document_type=document_type,
                prefix=prefix,
                year=effective_year,
                last_number=highest,
            )
            db.session.add(counter)
        elif counter.year != effective_year:
            counter.year = effective_year
            counter.prefix = prefix
            counter.last_number = highest
        elif counter.last_number < highest:
            counter.prefix = prefix
            counter.last_number = highest
        db.session.commit()
        return counter

    counter = run_with_retry(_op)
    current_app.logger.info(
        "Sequence %s synced to %d for %d", document_type, counter.last_number, effective_year
    )
    return counter
