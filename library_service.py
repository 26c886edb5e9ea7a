"""Facade that wires stores, engines and the responder into one API.

Mutations return ``(entity_dict, message)`` pairs; reads return plain data.
"""
import logging
import random
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config import Config
from database_models import (
    BOOK_AVAILABLE, BOOK_BORROWED, MEMBERSHIP_STATUSES, create_database, get_session_factory,
)
from exceptions import ConflictError, InternalError, InvalidInputError, LibraryError, NotFoundError
from lending_engine import LendingEngine
from library_stores import CatalogStore, MemberStore, TransactionLedger, generate_isbn, generate_member_id
from notifications import NotificationService
from query_responder import QueryResponder
from reporting import ReportingEngine

logger = logging.getLogger(__name__)

BOOK_FIELDS = ('title', 'author', 'genre', 'shelf_location', 'isbn', 'total_copies')
MEMBER_FIELDS = ('name', 'email', 'phone', 'address', 'membership_status')


def _require(fields, **values):
    missing = [name for name in fields if not values.get(name) or not str(values[name]).strip()]
    if missing:
        raise InvalidInputError(f"Missing required field(s): {', '.join(missing)}")


def _copies(value):
    try:
        copies = int(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"Total copies must be a whole number, got {value!r}")
    if copies < 1:
        raise InvalidInputError('Total copies must be at least 1')
    return copies


class LibraryService:

    def __init__(self, session_factory, config=None, clock=datetime.now, rng=None, transport=None):
        self.session_factory = session_factory
        self.config = config or Config()
        self.clock = clock
        self.rng = rng or random.Random()
        self.lending = LendingEngine(session_factory, self.config, clock)
        self.reporting = ReportingEngine(session_factory, self.config, clock)
        self.notifications = NotificationService(session_factory, self.config, transport, clock)
        self.responder = QueryResponder(self.reporting, session_factory, self.config, clock)

    @classmethod
    def from_url(cls, db_url=None, **kwargs):
        config = kwargs.pop('config', None) or Config()
        engine = create_database(db_url or config.DB_URL)
        return cls(get_session_factory(engine), config=config, **kwargs)

    def _write(self, action, work):
        """Run ``work(session)`` as one unit of work and commit it."""
        session = self.session_factory()
        try:
            result = work(session)
            session.commit()
            return result
        except LibraryError as e:
            session.rollback()
            logger.warning(f"{action} rejected: {e}")
            raise
        except IntegrityError as e:
            session.rollback()
            logger.warning(f"{action} violated a unique constraint: {e.orig}")
            raise ConflictError(f"{action} failed: a record with the same unique key already exists") from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error during {action}: {e}", exc_info=True)
            raise InternalError(f"{action} failed") from e
        finally:
            session.close()

    def _read(self, work):
        session = self.session_factory()
        try:
            return work(session)
        except SQLAlchemyError as e:
            logger.error(f"Database error during read: {e}", exc_info=True)
            raise InternalError('Failed to read from the store') from e
        finally:
            session.close()

    # ---- catalog

    def _isbn_generator(self):
        return generate_isbn(self.rng)

    def _book(self, session, book_id):
        book = CatalogStore(session).get(book_id)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    def list_books(self):
        return self._read(lambda s: [b.to_dict() for b in CatalogStore(s).list_all()])

    def get_book(self, book_id):
        return self._read(lambda s: self._book(s, book_id).to_dict())

    def get_book_by_isbn(self, isbn):
        def work(session):
            book = CatalogStore(session).get_by_isbn(isbn)
            if book is None:
                raise NotFoundError(f"Book with ISBN {isbn} not found")
            return book.to_dict()
        return self._read(work)

    def search_books(self, query):
        return self._read(lambda s: [b.to_dict() for b in CatalogStore(s).search(query or '')])

    def create_book(self, title, author, shelf_location, total_copies=1, genre=None, isbn=None):
        _require(('title', 'author', 'shelf_location'), title=title, author=author, shelf_location=shelf_location)
        copies = _copies(total_copies)

        def work(session):
            catalog = CatalogStore(session, self._isbn_generator, self.config.ISBN_ATTEMPTS)
            book = catalog.add(
                title=title.strip(),
                author=author.strip(),
                shelf_location=shelf_location.strip(),
                total_copies=copies,
                genre=genre.strip() if genre else None,
                isbn=isbn.strip() if isbn else None,
            )
            logger.info(f"Added book '{book.title}' ({book.isbn}) with {copies} copies")
            return book.to_dict()

        return self._write('Add book', work), 'Book added successfully'

    def update_book(self, book_id, **changes):
        unknown = set(changes) - set(BOOK_FIELDS)
        if unknown:
            raise InvalidInputError(f"Unknown book field(s): {', '.join(sorted(unknown))}")

        def work(session):
            catalog = CatalogStore(session)
            book = self._book(session, book_id)
            if 'isbn' in changes and changes['isbn'] != book.isbn:
                if not changes['isbn'] or catalog.get_by_isbn(changes['isbn']) is not None:
                    raise ConflictError(f"ISBN {changes['isbn']!r} is missing or already in use")
                if TransactionLedger(session).has_active_for_isbn(book.isbn):
                    raise InvalidInputError(f"Cannot change ISBN of {book.isbn} while copies are on loan")
                book.isbn = changes['isbn']
            for name in ('title', 'author', 'shelf_location'):
                if name in changes:
                    _require((name,), **{name: changes[name]})
                    setattr(book, name, changes[name].strip())
            if 'genre' in changes:
                book.genre = changes['genre'] or None
            if 'total_copies' in changes:
                new_total = _copies(changes['total_copies'])
                on_loan = TransactionLedger(session).count_active_for_isbn(book.isbn)
                if new_total < on_loan:
                    raise InvalidInputError(
                        f"Cannot set total copies of {book.isbn} to {new_total} while {on_loan} are on loan"
                    )
                book.total_copies = new_total
                book.available_copies = new_total - on_loan
                book.status = BOOK_AVAILABLE if book.available_copies > 0 else BOOK_BORROWED
            session.flush()
            logger.info(f"Updated book {book.isbn}: {', '.join(sorted(changes)) or 'no changes'}")
            return book.to_dict()

        return self._write('Update book', work), 'Book updated successfully'

    def delete_book(self, book_id):
        def work(session):
            book = self._book(session, book_id)
            if TransactionLedger(session).has_active_for_isbn(book.isbn):
                # returns for these loans will fail with NotFoundError
                logger.warning(f"Deleting book {book.isbn} while it still has active loans")
            CatalogStore(session).delete(book)
            logger.info(f"Deleted book '{book.title}' ({book.isbn})")

        self._write('Delete book', work)
        return 'Book deleted successfully'

    # ---- members

    def _member(self, session, member_id):
        member = MemberStore(session).get_by_member_id(member_id)
        if member is None:
            raise NotFoundError(f"Member {member_id} not found")
        return member

    def register_member(self, name, email, phone, address=None):
        _require(('name', 'email', 'phone'), name=name, email=email, phone=phone)

        def work(session):
            members = MemberStore(session)
            if members.get_by_email(email) is not None:
                raise ConflictError('Email already registered')
            member = members.add(
                member_id=generate_member_id(self.rng, self.clock()),
                name=name.strip(),
                email=email,
                phone=phone.strip(),
                address=address.strip() if address else None,
                joined=self.clock(),
            )
            logger.info(f"Registered member {member.member_id} ({member.name})")
            return member.to_dict()

        return self._write('Register member', work), 'Member registered successfully'

    def list_members(self):
        return self._read(lambda s: [m.to_dict() for m in MemberStore(s).list_all()])

    def get_member(self, member_id):
        return self._read(lambda s: self._member(s, member_id).to_dict())

    def get_member_by_email(self, email):
        def work(session):
            member = MemberStore(session).get_by_email(email)
            if member is None:
                raise NotFoundError(f"Member with email {email} not found")
            return member.to_dict()
        return self._read(work)

    def search_members(self, query):
        return self._read(lambda s: [m.to_dict() for m in MemberStore(s).search(query or '')])

    def update_member(self, member_id, **changes):
        unknown = set(changes) - set(MEMBER_FIELDS)
        if unknown:
            raise InvalidInputError(f"Unknown member field(s): {', '.join(sorted(unknown))}")

        def work(session):
            members = MemberStore(session)
            member = self._member(session, member_id)
            if 'email' in changes:
                _require(('email',), email=changes['email'])
                email = changes['email'].strip().lower()
                other = members.get_by_email(email)
                if other is not None and other.id != member.id:
                    raise ConflictError('Email already registered')
                member.email = email
            if 'membership_status' in changes:
                if changes['membership_status'] not in MEMBERSHIP_STATUSES:
                    raise InvalidInputError(
                        f"Membership status must be one of {', '.join(MEMBERSHIP_STATUSES)}"
                    )
                member.membership_status = changes['membership_status']
            for name in ('name', 'phone'):
                if name in changes:
                    _require((name,), **{name: changes[name]})
                    setattr(member, name, changes[name].strip())
            if 'address' in changes:
                member.address = changes['address'] or None
            session.flush()
            logger.info(f"Updated member {member.member_id}: {', '.join(sorted(changes)) or 'no changes'}")
            return member.to_dict()

        return self._write('Update member', work), 'Member updated successfully'

    def delete_member(self, member_id):
        def work(session):
            member = self._member(session, member_id)
            MemberStore(session).delete(member)
            logger.info(f"Deleted member {member.member_id} ({member.name})")

        self._write('Delete member', work)
        return 'Member deleted successfully'

    def member_summary(self, member_id):
        return self.reporting.member_summary(member_id)

    # ---- lending

    def borrow(self, isbn, member_id=None, borrower_name=None, due_days=None):
        result = self.lending.borrow(isbn, member_id=member_id, borrower_name=borrower_name, due_days=due_days)
        return {'transaction': result.loan.to_dict(), 'book': result.book.to_dict()}, result.message

    def return_book(self, transaction_id):
        result = self.lending.return_loan(transaction_id)
        return {
            'transaction': result.loan.to_dict(),
            'book': result.book.to_dict(),
            'fine_amount': result.fine_amount,
        }, result.message

    def list_transactions(self, limit=None):
        return self.reporting.recent_transactions(limit)

    def list_active(self):
        return self.reporting.active_borrowings()

    def dashboard_stats(self):
        return self.reporting.dashboard_stats()

    def send_loan_reminder(self, transaction_id):
        result = self.notifications.send_loan_reminder(transaction_id)
        return result, result.message

    def ask(self, message, member_id=None):
        return self.responder.handle(message, member_id)
