"""Catalog, member and ledger stores over a SQLAlchemy session.

The stores never commit; the caller owns the session and decides when a
unit of work is complete.
"""
import logging
import random
from datetime import datetime

from sqlalchemy import and_, case, func, or_

from database_models import BOOK_AVAILABLE, BOOK_BORROWED, Book, Loan, LoanReturn, Member
from exceptions import ConflictError

logger = logging.getLogger(__name__)


def generate_isbn(rng=random):
    """Return a checksum-free ISBN-13 shaped string like 978-1-234-567890-1."""
    group = rng.randint(1, 9)
    registrant = rng.randint(100, 999)
    publication = rng.randint(100000, 999999)
    check = rng.randint(0, 9)
    return f"978-{group}-{registrant}-{publication}-{check}"


def generate_member_id(rng=random, today=None):
    """Return a readable member id like MEM20261234."""
    today = today or datetime.now()
    return f"MEM{today.year}{rng.randint(1000, 9999)}"


def _like(term):
    escaped = term.lower().replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


def _status_after(available):
    return case((available > 0, BOOK_AVAILABLE), else_=BOOK_BORROWED)


class CatalogStore:
    """Book records and their copy counts."""

    def __init__(self, session, isbn_generator=generate_isbn, max_isbn_attempts=5):
        self.session = session
        self.isbn_generator = isbn_generator
        self.max_isbn_attempts = max_isbn_attempts

    def get(self, book_id):
        return self.session.get(Book, book_id)

    def get_by_isbn(self, isbn):
        return self.session.query(Book).filter(Book.isbn == isbn).first()

    def list_all(self):
        return self.session.query(Book).order_by(Book.created_at.desc(), Book.id.desc()).all()

    def list_available(self, limit=None):
        query = self.session.query(Book).filter(Book.status == BOOK_AVAILABLE).order_by(Book.title)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def search(self, text):
        pattern = _like(text.strip())
        return (
            self.session.query(Book)
            .filter(or_(
                func.lower(Book.title).like(pattern, escape='\\'),
                func.lower(Book.author).like(pattern, escape='\\'),
                func.lower(Book.isbn).like(pattern, escape='\\'),
                func.lower(Book.genre).like(pattern, escape='\\'),
            ))
            .order_by(Book.title)
            .all()
        )

    def next_isbn(self):
        """Generate an ISBN not yet in the catalog, or raise ConflictError."""
        for attempt in range(1, self.max_isbn_attempts + 1):
            candidate = self.isbn_generator()
            if self.get_by_isbn(candidate) is None:
                return candidate
            logger.debug(f"Generated ISBN {candidate} already taken (attempt {attempt})")
        raise ConflictError(
            f"Failed to generate a unique ISBN after {self.max_isbn_attempts} attempts"
        )

    def add(self, title, author, shelf_location, total_copies=1, genre=None, isbn=None):
        if isbn:
            if self.get_by_isbn(isbn) is not None:
                raise ConflictError(f"A book with ISBN {isbn} already exists")
        else:
            isbn = self.next_isbn()
        book = Book(
            isbn=isbn,
            title=title,
            author=author,
            genre=genre,
            shelf_location=shelf_location,
            total_copies=total_copies,
            available_copies=total_copies,
            status=BOOK_AVAILABLE,
        )
        self.session.add(book)
        self.session.flush()
        return book

    def delete(self, book):
        self.session.delete(book)
        self.session.flush()

    def take_copy(self, isbn):
        """Decrement available copies only if one is left. Returns True on success."""
        remaining = Book.available_copies - 1
        updated = (
            self.session.query(Book)
            .filter(Book.isbn == isbn, Book.available_copies > 0)
            .update(
                {Book.available_copies: remaining, Book.status: _status_after(remaining)},
                synchronize_session=False,
            )
        )
        return updated == 1

    def put_back_copy(self, isbn):
        """Increment available copies only while below total. Returns True on success."""
        updated = (
            self.session.query(Book)
            .filter(Book.isbn == isbn, Book.available_copies < Book.total_copies)
            .update(
                {
                    Book.available_copies: Book.available_copies + 1,
                    Book.status: BOOK_AVAILABLE,
                    Book.borrower_name: None,
                    Book.borrowed_date: None,
                    Book.due_date: None,
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    def stamp_borrower(self, isbn, borrower_name, borrowed_date, due_date):
        self.session.query(Book).filter(Book.isbn == isbn).update(
            {
                Book.borrower_name: borrower_name,
                Book.borrowed_date: borrowed_date,
                Book.due_date: due_date,
            },
            synchronize_session=False,
        )

    def count(self, status=None):
        query = self.session.query(func.count(Book.id))
        if status is not None:
            query = query.filter(Book.status == status)
        return query.scalar()


class MemberStore:
    """Member records and their cached loan counters."""

    def __init__(self, session):
        self.session = session

    def get(self, pk):
        return self.session.get(Member, pk)

    def get_by_member_id(self, member_id):
        if not member_id:
            return None
        return self.session.query(Member).filter(Member.member_id == member_id.strip()).first()

    def get_by_email(self, email):
        return self.session.query(Member).filter(func.lower(Member.email) == email.strip().lower()).first()

    def list_all(self):
        return self.session.query(Member).order_by(Member.created_at.desc(), Member.id.desc()).all()

    def search(self, text):
        pattern = _like(text.strip())
        return (
            self.session.query(Member)
            .filter(or_(
                func.lower(Member.name).like(pattern, escape='\\'),
                func.lower(Member.email).like(pattern, escape='\\'),
                func.lower(Member.member_id).like(pattern, escape='\\'),
                func.lower(Member.phone).like(pattern, escape='\\'),
            ))
            .order_by(Member.name)
            .all()
        )

    def add(self, member_id, name, email, phone, address=None, joined=None):
        member = Member(
            member_id=member_id,
            name=name,
            email=email.strip().lower(),
            phone=phone,
            address=address,
            membership_date=joined or datetime.now(),
        )
        self.session.add(member)
        self.session.flush()
        return member

    def delete(self, member):
        self.session.delete(member)
        self.session.flush()

    def record_borrow(self, pk):
        self.session.query(Member).filter(Member.id == pk).update(
            {
                Member.borrowed_books: Member.borrowed_books + 1,
                Member.total_borrowed: Member.total_borrowed + 1,
            },
            synchronize_session=False,
        )

    def record_return(self, pk, fined):
        values = {
            Member.borrowed_books: case(
                (Member.borrowed_books > 0, Member.borrowed_books - 1), else_=0
            ),
        }
        if fined:
            values[Member.overdue_books] = Member.overdue_books + 1
        self.session.query(Member).filter(Member.id == pk).update(values, synchronize_session=False)


class TransactionLedger:
    """Borrow and return events; the source of truth for loan history."""

    def __init__(self, session):
        self.session = session

    def _loans(self):
        return self.session.query(Loan)

    def _active(self):
        return self._loans().outerjoin(LoanReturn, LoanReturn.loan_id == Loan.id).filter(LoanReturn.id.is_(None))

    def _returned(self):
        return self._loans().join(LoanReturn, LoanReturn.loan_id == Loan.id)

    def get(self, loan_id):
        return self.session.get(Loan, loan_id)

    def append_borrow(self, isbn, book_title, borrower_name, borrowed_date, due_date, member=None):
        loan = Loan(
            isbn=isbn,
            book_title=book_title,
            borrower_name=borrower_name,
            member_ref=member.id if member is not None else None,
            member_code=member.member_id if member is not None else None,
            borrowed_date=borrowed_date,
            due_date=due_date,
            created_at=borrowed_date,
            return_event=None,
        )
        self.session.add(loan)
        self.session.flush()
        return loan

    def append_return(self, loan, returned_date, fine_amount):
        """Record the return event. A second return for the same loan violates the unique key."""
        event = LoanReturn(loan=loan, returned_date=returned_date, fine_amount=fine_amount)
        self.session.add(event)
        self.session.flush()
        return event

    def list_recent(self, limit=100):
        return self._loans().order_by(Loan.created_at.desc(), Loan.id.desc()).limit(limit).all()

    def list_active(self, limit=None):
        query = self._active().order_by(Loan.due_date.asc(), Loan.id.asc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def list_overdue(self, now):
        return self._active().filter(Loan.due_date < now).order_by(Loan.due_date.asc()).all()

    def _member_filter(self, member):
        legacy = and_(
            Loan.member_ref.is_(None),
            or_(Loan.member_code.is_(None), Loan.member_code == ''),
            Loan.borrower_name == member.name,
        )
        return or_(Loan.member_ref == member.id, Loan.member_code == member.member_id, legacy)

    def entries_for_member(self, member):
        return (
            self._loans()
            .filter(self._member_filter(member))
            .order_by(Loan.borrowed_date.desc(), Loan.id.desc())
            .all()
        )

    def active_for_member(self, member):
        return (
            self._active()
            .filter(self._member_filter(member))
            .order_by(Loan.due_date.asc(), Loan.id.asc())
            .all()
        )

    def fined_returns(self):
        return (
            self._returned()
            .filter(LoanReturn.fine_amount > 0)
            .order_by(LoanReturn.returned_date.desc())
            .all()
        )

    def borrowed_between(self, start, end):
        return (
            self._loans()
            .filter(Loan.borrowed_date >= start, Loan.borrowed_date < end)
            .order_by(Loan.borrowed_date.asc(), Loan.id.asc())
            .all()
        )

    def returned_between(self, start, end):
        return (
            self._returned()
            .filter(LoanReturn.returned_date >= start, LoanReturn.returned_date < end)
            .order_by(LoanReturn.returned_date.asc(), Loan.id.asc())
            .all()
        )

    def has_active_for_isbn(self, isbn):
        return self._active().filter(Loan.isbn == isbn).first() is not None

    def count_active_for_isbn(self, isbn):
        return self._active().filter(Loan.isbn == isbn).count()

    def count(self):
        return self.session.query(func.count(Loan.id)).scalar()

    def count_active(self):
        return self._active().count()

    def count_overdue(self, now):
        return self._active().filter(Loan.due_date < now).count()
