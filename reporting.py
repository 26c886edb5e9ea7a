"""Read-side reports over the catalog, members and the ledger.

Nothing here mutates state and nothing is cached: every call recomputes
from the store. Member figures are always derived from the ledger, never
from the member's cached counters.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

import pandas as pd

from config import Config
from database_models import BOOK_AVAILABLE, BOOK_BORROWED
from exceptions import NotFoundError
from library_stores import CatalogStore, MemberStore, TransactionLedger
from loan_records import LoanRecord, is_overdue, to_loan_record

logger = logging.getLogger(__name__)


@dataclass
class DashboardStats:
    total_books: int
    available_books: int
    borrowed_books: int
    total_transactions: int
    active_borrowings: int
    overdue_borrowings: int

    def to_dict(self):
        return dict(self.__dict__)


@dataclass
class MemberSummary:
    member: dict
    current_borrowed: int
    total_borrowed: int
    returned_books: int
    overdue_books: int
    total_fine_paid: int
    transactions: List[LoanRecord] = field(default_factory=list)

    @property
    def counters_in_sync(self):
        """False when the member's cached counters disagree with the ledger."""
        return (
            self.member['borrowed_books'] == self.current_borrowed
            and self.member['total_borrowed'] == self.total_borrowed
        )


@dataclass
class FinedMember:
    member_id: Optional[str]
    name: str
    total_fine: int
    fine_count: int
    latest_fine_date: Optional[datetime]


def day_bounds(day):
    """Local midnight of ``day`` and the following midnight."""
    if isinstance(day, datetime):
        day = day.date()
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)


class ReportingEngine:

    def __init__(self, session_factory, config=None, clock=datetime.now):
        self.session_factory = session_factory
        self.config = config or Config()
        self.clock = clock

    def _resolve_member(self, session, member_id):
        member = MemberStore(session).get_by_member_id(member_id)
        if member is None:
            raise NotFoundError(f"Member {member_id} not found")
        return member

    def dashboard_stats(self):
        now = self.clock()
        session = self.session_factory()
        try:
            catalog = CatalogStore(session)
            ledger = TransactionLedger(session)
            return DashboardStats(
                total_books=catalog.count(),
                available_books=catalog.count(BOOK_AVAILABLE),
                borrowed_books=catalog.count(BOOK_BORROWED),
                total_transactions=ledger.count(),
                active_borrowings=ledger.count_active(),
                overdue_borrowings=ledger.count_overdue(now),
            )
        finally:
            session.close()

    def recent_transactions(self, limit=None):
        limit = limit or self.config.TRANSACTION_LIST_LIMIT
        session = self.session_factory()
        try:
            return [to_loan_record(l) for l in TransactionLedger(session).list_recent(limit)]
        finally:
            session.close()

    def active_borrowings(self, limit=None):
        """Active loans, soonest due first."""
        session = self.session_factory()
        try:
            return [to_loan_record(l) for l in TransactionLedger(session).list_active(limit)]
        finally:
            session.close()

    def overdue_borrowings(self):
        now = self.clock()
        session = self.session_factory()
        try:
            return [to_loan_record(l) for l in TransactionLedger(session).list_overdue(now)]
        finally:
            session.close()

    def member_summary(self, member_id):
        now = self.clock()
        session = self.session_factory()
        try:
            member = self._resolve_member(session, member_id)
            records = [to_loan_record(l) for l in TransactionLedger(session).entries_for_member(member)]
        finally:
            session.close()

        returned = [r for r in records if not r.is_active]
        return MemberSummary(
            member=member.to_dict(),
            current_borrowed=sum(1 for r in records if r.is_active),
            # every loan starts as a borrow event
            total_borrowed=len(records),
            returned_books=len(returned),
            overdue_books=sum(1 for r in records if is_overdue(r, now)),
            total_fine_paid=sum(r.fine_amount for r in returned),
            transactions=records,
        )

    def current_borrowings(self, member_id):
        session = self.session_factory()
        try:
            member = self._resolve_member(session, member_id)
            return [to_loan_record(l) for l in TransactionLedger(session).active_for_member(member)]
        finally:
            session.close()

    def member_overdue(self, member_id):
        now = self.clock()
        return [r for r in self.current_borrowings(member_id) if is_overdue(r, now)]

    def borrow_history(self, member_id, limit=None):
        limit = limit or self.config.HISTORY_LIMIT
        return self.member_summary(member_id).transactions[:limit]

    def member_fine_total(self, member_id):
        return self.member_summary(member_id).total_fine_paid

    def members_with_fines(self, limit=None):
        """Fined returns grouped per member (or borrower name for legacy rows)."""
        limit = limit or self.config.FINED_MEMBERS_LIMIT
        session = self.session_factory()
        try:
            fined = [to_loan_record(l) for l in TransactionLedger(session).fined_returns()]
        finally:
            session.close()

        if not fined:
            return []

        fines_df = pd.DataFrame([
            {
                'key': r.member_id or r.borrower_name or 'Unknown',
                'member_id': r.member_id or '',
                'name': r.borrower_name or 'Unknown name',
                'fine_amount': r.fine_amount,
                'returned_date': r.returned_date,
            }
            for r in fined
        ])
        grouped = (
            fines_df.groupby('key', sort=False)
            .agg(
                member_id=('member_id', 'first'),
                name=('name', 'first'),
                total_fine=('fine_amount', 'sum'),
                fine_count=('fine_amount', 'size'),
                latest_fine_date=('returned_date', 'max'),
            )
            .sort_values(['total_fine', 'latest_fine_date'], ascending=[False, False])
            .head(limit)
        )
        logger.debug(f"Aggregated {len(fines_df)} fined returns into {len(grouped)} members")

        return [
            FinedMember(
                member_id=row['member_id'] or None,
                name=row['name'],
                total_fine=int(row['total_fine']),
                fine_count=int(row['fine_count']),
                latest_fine_date=(
                    row['latest_fine_date'].to_pydatetime()
                    if pd.notna(row['latest_fine_date']) else None
                ),
            )
            for row in grouped.to_dict('records')
        ]

    def borrowed_on_date(self, day):
        start, end = day_bounds(day)
        session = self.session_factory()
        try:
            return [to_loan_record(l) for l in TransactionLedger(session).borrowed_between(start, end)]
        finally:
            session.close()

    def returned_on_date(self, day):
        start, end = day_bounds(day)
        session = self.session_factory()
        try:
            return [to_loan_record(l) for l in TransactionLedger(session).returned_between(start, end)]
        finally:
            session.close()

    def available_books(self, limit=None):
        limit = limit or self.config.AVAILABLE_BOOKS_LIMIT
        session = self.session_factory()
        try:
            return [b.to_dict() for b in CatalogStore(session).list_available(limit)]
        finally:
            session.close()
