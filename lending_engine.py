"""Borrow / return state machine.

Every operation runs in a single session: the inventory update, the ledger
append and the member counter update either all commit or all roll back.
Copy allocation is a conditional ``UPDATE ... WHERE available_copies > 0``,
so two concurrent borrows of the last copy cannot both succeed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config import Config
from exceptions import (
    InternalError, InvalidInputError, InvalidStateError, LibraryError, NotFoundError,
    UnavailableError,
)
from library_stores import CatalogStore, MemberStore, TransactionLedger
from loan_records import days_overdue, to_loan_record

logger = logging.getLogger(__name__)


def compute_fine(due_date, returned_date, rate=100):
    """Fine for a return: ``rate`` per started day past the due date, else 0."""
    return days_overdue(due_date, returned_date) * rate


@dataclass
class BorrowResult:
    loan: object
    book: object
    message: str = 'Book borrowed successfully'

    @property
    def record(self):
        return to_loan_record(self.loan)


@dataclass
class ReturnResult:
    loan: object
    book: object
    fine_amount: int
    message: str = 'Book returned successfully'

    @property
    def record(self):
        return to_loan_record(self.loan)


def _parse_due_days(due_days, default):
    if due_days is None or due_days == '':
        return default
    try:
        value = int(due_days)
    except (TypeError, ValueError):
        raise InvalidInputError(f"Due days must be a whole number, got {due_days!r}")
    if value < 1:
        raise InvalidInputError(f"Due days must be at least 1, got {value}")
    return value


class LendingEngine:
    """Moves copies between available and borrowed and keeps the ledger in step."""

    def __init__(self, session_factory, config=None, clock=datetime.now):
        self.session_factory = session_factory
        self.config = config or Config()
        self.clock = clock

    def borrow(self, isbn, member_id=None, borrower_name=None, due_days=None):
        if not isbn or not str(isbn).strip():
            raise InvalidInputError('ISBN is required to borrow a book')
        isbn = str(isbn).strip()
        member_id = member_id.strip() if member_id else None
        borrower_name = borrower_name.strip() if borrower_name else None
        if not member_id and not borrower_name:
            raise InvalidInputError('A member ID or a borrower name is required to borrow a book')
        due_days = _parse_due_days(due_days, self.config.DEFAULT_DUE_DAYS)

        session = self.session_factory()
        try:
            catalog = CatalogStore(session)
            members = MemberStore(session)
            ledger = TransactionLedger(session)

            member = None
            if member_id:
                member = members.get_by_member_id(member_id)
                if member is None:
                    raise NotFoundError(f"Member {member_id} not found")
                borrower_name = member.name

            book = catalog.get_by_isbn(isbn)
            if book is None:
                raise NotFoundError(f"Book with ISBN {isbn} not found")

            if not catalog.take_copy(isbn):
                raise UnavailableError(f"No copies of '{book.title}' available for borrowing")

            borrowed_date = self.clock()
            due_date = borrowed_date + timedelta(days=due_days)
            catalog.stamp_borrower(isbn, borrower_name, borrowed_date, due_date)
            loan = ledger.append_borrow(
                isbn=book.isbn,
                book_title=book.title,
                borrower_name=borrower_name,
                borrowed_date=borrowed_date,
                due_date=due_date,
                member=member,
            )
            if member is not None:
                members.record_borrow(member.id)

            session.commit()
            session.refresh(book)
            logger.info(
                f"Borrowed '{book.title}' ({isbn}) by {borrower_name}, loan {loan.id}, "
                f"due {due_date:%Y-%m-%d}, {book.available_copies}/{book.total_copies} left"
            )
            return BorrowResult(loan=loan, book=book)
        except LibraryError as e:
            session.rollback()
            logger.warning(f"Borrow rejected for ISBN {isbn}: {e}")
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error while borrowing {isbn}: {e}", exc_info=True)
            raise InternalError(f"Failed to borrow book {isbn}") from e
        finally:
            session.close()

    def return_loan(self, loan_id):
        session = self.session_factory()
        try:
            catalog = CatalogStore(session)
            members = MemberStore(session)
            ledger = TransactionLedger(session)

            loan = ledger.get(loan_id)
            if loan is None:
                raise NotFoundError(f"Transaction {loan_id} not found")
            if not loan.is_active:
                raise InvalidStateError(f"Transaction {loan_id} is not an active borrowing")

            book = catalog.get_by_isbn(loan.isbn)
            if book is None:
                raise NotFoundError(f"Book with ISBN {loan.isbn} for transaction {loan_id} not found")

            returned_date = self.clock()
            fine_amount = compute_fine(loan.due_date, returned_date, self.config.FINE_PER_DAY)

            try:
                ledger.append_return(loan, returned_date, fine_amount)
            except IntegrityError:
                raise InvalidStateError(f"Transaction {loan_id} has already been returned")

            if not catalog.put_back_copy(loan.isbn):
                raise InvalidStateError(
                    f"Book {loan.isbn} already has all {book.total_copies} copies on the shelf"
                )

            if loan.member_ref is not None:
                members.record_return(loan.member_ref, fined=fine_amount > 0)

            session.commit()
            session.refresh(book)
            if fine_amount > 0:
                logger.info(
                    f"Returned '{loan.book_title}' on loan {loan.id} late, "
                    f"{days_overdue(loan.due_date, returned_date)} day(s) overdue, fine {fine_amount}"
                )
            else:
                logger.info(f"Returned '{loan.book_title}' on loan {loan.id} on time")
            return ReturnResult(loan=loan, book=book, fine_amount=fine_amount)
        except LibraryError as e:
            session.rollback()
            logger.warning(f"Return rejected for transaction {loan_id}: {e}")
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error while returning {loan_id}: {e}", exc_info=True)
            raise InternalError(f"Failed to return transaction {loan_id}") from e
        finally:
            session.close()
