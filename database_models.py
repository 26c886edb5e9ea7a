from sqlalchemy import (
    create_engine, event, Column, Integer, String, DateTime, ForeignKey, CheckConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from datetime import datetime

Base = declarative_base()

BOOK_AVAILABLE = 'available'
BOOK_BORROWED = 'borrowed'

MEMBERSHIP_STATUSES = ('active', 'suspended', 'expired')


def _iso(value):
    return value.isoformat() if value is not None else None


class Book(Base):
    """book table - one row per catalog title with its copy counts"""
    __tablename__ = 'books'
    __table_args__ = (
        CheckConstraint('total_copies >= 1', name='ck_books_total_copies'),
        CheckConstraint(
            'available_copies >= 0 AND available_copies <= total_copies',
            name='ck_books_available_copies'
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(32), nullable=False, unique=True)
    title = Column(String(500), nullable=False)
    author = Column(String(300), nullable=False)
    genre = Column(String(100), nullable=True)
    shelf_location = Column(String(100), nullable=False)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=BOOK_AVAILABLE)

    # mirrors of the latest loan, not authoritative
    borrower_name = Column(String(200), nullable=True)
    borrowed_date = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'isbn': self.isbn,
            'title': self.title,
            'author': self.author,
            'genre': self.genre,
            'shelf_location': self.shelf_location,
            'total_copies': self.total_copies,
            'available_copies': self.available_copies,
            'status': self.status,
            'borrower_name': self.borrower_name,
            'borrowed_date': _iso(self.borrowed_date),
            'due_date': _iso(self.due_date),
        }

    def __repr__(self):
        return (f"<Book(isbn='{self.isbn}', title='{self.title}', "
                f"available={self.available_copies}/{self.total_copies})>")


class Member(Base):
    """member table - library members and their running loan counters"""
    __tablename__ = 'members'

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(String(32), nullable=False, unique=True)
    name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=False, unique=True)
    phone = Column(String(50), nullable=False)
    address = Column(String(500), nullable=True)
    membership_date = Column(DateTime, nullable=False, default=datetime.now)
    membership_status = Column(String(20), nullable=False, default='active')

    # cached counters, the ledger is the source of truth
    borrowed_books = Column(Integer, nullable=False, default=0)
    total_borrowed = Column(Integer, nullable=False, default=0)
    overdue_books = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.now)

    loans = relationship('Loan', back_populates='member')

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'address': self.address,
            'membership_date': _iso(self.membership_date),
            'membership_status': self.membership_status,
            'borrowed_books': self.borrowed_books,
            'total_borrowed': self.total_borrowed,
            'overdue_books': self.overdue_books,
        }

    def __repr__(self):
        return f"<Member(member_id='{self.member_id}', name='{self.name}')>"


class Loan(Base):
    """loan table - the borrow event of a loan; only member_ref is ever cleared after insert"""
    __tablename__ = 'loans'

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(32), nullable=False, index=True)
    book_title = Column(String(500), nullable=False)
    borrower_name = Column(String(200), nullable=False)
    member_ref = Column(Integer, ForeignKey('members.id', ondelete='SET NULL'), nullable=True)
    member_code = Column(String(32), nullable=True, index=True)

    borrowed_date = Column(DateTime, nullable=False, index=True)
    due_date = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    member = relationship('Member', back_populates='loans')
    return_event = relationship('LoanReturn', back_populates='loan', uselist=False, lazy='joined')

    @property
    def is_active(self):
        return self.return_event is None

    @property
    def transaction_type(self):
        return 'borrow' if self.is_active else 'return'

    @property
    def status(self):
        return 'active' if self.is_active else 'returned'

    @property
    def returned_date(self):
        return None if self.return_event is None else self.return_event.returned_date

    @property
    def fine_amount(self):
        return 0 if self.return_event is None else self.return_event.fine_amount

    def to_dict(self):
        return {
            'id': self.id,
            'isbn': self.isbn,
            'book_title': self.book_title,
            'borrower_name': self.borrower_name,
            'member_id': self.member_code,
            'transaction_type': self.transaction_type,
            'status': self.status,
            'borrowed_date': _iso(self.borrowed_date),
            'due_date': _iso(self.due_date),
            'returned_date': _iso(self.returned_date),
            'fine_amount': self.fine_amount,
        }

    def __repr__(self):
        return f"<Loan(id={self.id}, isbn='{self.isbn}', status={self.status})>"


class LoanReturn(Base):
    """loan return table - the return event of a loan, at most one per loan"""
    __tablename__ = 'loan_returns'
    __table_args__ = (
        CheckConstraint('fine_amount >= 0', name='ck_loan_returns_fine'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    loan_id = Column(Integer, ForeignKey('loans.id'), nullable=False, unique=True)
    returned_date = Column(DateTime, nullable=False, index=True)
    fine_amount = Column(Integer, nullable=False, default=0)

    loan = relationship('Loan', back_populates='return_event')

    def __repr__(self):
        return f"<LoanReturn(loan_id={self.loan_id}, fine={self.fine_amount})>"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_database(db_url='sqlite:///library_operations.db'):
    connect_args = {}
    if db_url.startswith('sqlite'):
        connect_args = {'check_same_thread': False, 'timeout': 30}
    engine = create_engine(db_url, echo=False, connect_args=connect_args)
    if engine.dialect.name == 'sqlite':
        event.listen(engine, 'connect', _enable_sqlite_foreign_keys)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_session(engine):
    Session = get_session_factory(engine)
    return Session()


if __name__ == "__main__":
    engine = create_database()
    print(f"Database created successfully: library_operations.db")
    print("\nTables created:")
    for table in Base.metadata.tables.keys():
        print(f"  - {table}")
