"""Immutable views of a loan's two lifecycle states.

A loan starts as an ``ActiveLoan`` when a copy is borrowed and becomes a
``ReturnedLoan`` when the copy comes back. Both carry the same stable
``loan_id`` so the borrow facts stay auditable after the return.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class ActiveLoan:
    loan_id: int
    isbn: str
    book_title: str
    borrower_name: str
    member_id: Optional[str]
    borrowed_date: datetime
    due_date: datetime

    transaction_type = 'borrow'
    status = 'active'
    returned_date = None
    fine_amount = 0

    @property
    def is_active(self) -> bool:
        return True


@dataclass(frozen=True)
class ReturnedLoan:
    loan_id: int
    isbn: str
    book_title: str
    borrower_name: str
    member_id: Optional[str]
    borrowed_date: datetime
    due_date: datetime
    returned_date: datetime
    fine_amount: int

    transaction_type = 'return'
    status = 'returned'

    @property
    def is_active(self) -> bool:
        return False


LoanRecord = Union[ActiveLoan, ReturnedLoan]


def to_loan_record(loan) -> LoanRecord:
    """Build the immutable record for a stored ``Loan`` row."""
    common = dict(
        loan_id=loan.id,
        isbn=loan.isbn,
        book_title=loan.book_title,
        borrower_name=loan.borrower_name,
        member_id=loan.member_code or None,
        borrowed_date=loan.borrowed_date,
        due_date=loan.due_date,
    )
    if loan.return_event is None:
        return ActiveLoan(**common)
    return ReturnedLoan(
        returned_date=loan.return_event.returned_date,
        fine_amount=loan.return_event.fine_amount,
        **common,
    )


def _as_datetime(value, end_of_day=False):
    if isinstance(value, datetime):
        return value
    start = datetime(value.year, value.month, value.day)
    return start + ONE_DAY if end_of_day else start


def days_overdue(due_date: datetime, when: datetime) -> int:
    """Whole days past due, any part of a day counting as a full day.

    A plain ``date`` due date is due until the end of that day.
    """
    due_date = _as_datetime(due_date, end_of_day=True)
    when = _as_datetime(when)
    if when <= due_date:
        return 0
    return math.ceil((when - due_date) / ONE_DAY)


def is_overdue(record: LoanRecord, now: datetime) -> bool:
    return record.is_active and record.due_date < now
