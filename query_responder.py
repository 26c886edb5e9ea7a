"""Canned answers to free-text questions about the library.

A message is classified by ``INTENT_RULES``: rules are tried top to bottom
and the first matching rule wins, so the table order is the precedence
(for example "what time do you close" is an hours question even though it
could look like anything else). Replies are plain text rendered from the
reporting engine; this module keeps no state.
"""
import logging
import re
from datetime import datetime
from enum import Enum

import pandas as pd

from config import Config
from lending_engine import compute_fine
from library_stores import MemberStore
from loan_records import days_overdue

logger = logging.getLogger(__name__)


class Intent(Enum):
    HOURS = 'hours'
    CONTACT = 'contact'
    MEMBER_BORROW_HISTORY = 'member-borrow-history'
    OVERDUE = 'overdue'
    MEMBERS_WITH_FINES = 'members-with-fines'
    FINES = 'fines'
    SUMMARY = 'summary'
    BORROWED_ON_DATE = 'borrowed-on-date'
    CURRENT_BORROWED = 'current-borrowed'
    AVAILABLE_BOOKS = 'available-books'
    BORROWED_BOOKS_ALL = 'borrowed-books-all'
    RETURNED_ON_DATE = 'returned-on-date'
    GENERAL = 'general'


MEMBER_INTENTS = frozenset({
    Intent.CURRENT_BORROWED,
    Intent.OVERDUE,
    Intent.FINES,
    Intent.SUMMARY,
    Intent.MEMBER_BORROW_HISTORY,
})


def _any(text, *words):
    return any(w in text for w in words)


def _word(text, word):
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


INTENT_RULES = (
    (Intent.HOURS, lambda t: _any(t, 'open', 'close', 'time', 'hour')),
    (Intent.CONTACT, lambda t: _any(t, 'contact', 'phone', 'email', 'address')),
    (Intent.MEMBER_BORROW_HISTORY,
     lambda t: _any(t, 'what', 'which') and 'book' in t and 'member' in t and 'borrowed' in t),
    (Intent.OVERDUE, lambda t: _any(t, 'overdue', 'late')),
    (Intent.MEMBERS_WITH_FINES,
     lambda t: _any(t, 'members', 'which', 'who') and _any(t, 'fine', 'penalty', 'fees')),
    (Intent.FINES, lambda t: _any(t, 'fine', 'penalty', 'fees')),
    (Intent.SUMMARY, lambda t: _any(t, 'summary', 'history', 'activity')),
    (Intent.BORROWED_ON_DATE, lambda t: 'borrowed' in t and _word(t, 'on')),
    (Intent.CURRENT_BORROWED,
     lambda t: _any(t, 'currently borrowed', 'currently have', 'current borrowed',
                    'current books', 'my books')
     or ('borrowed' in t and 'now' in t)),
    (Intent.AVAILABLE_BOOKS, lambda t: 'available' in t and 'book' in t),
    (Intent.BORROWED_BOOKS_ALL, lambda t: 'borrowed books' in t or ('who' in t and 'borrowed' in t)),
    (Intent.RETURNED_ON_DATE, lambda t: 'returned' in t and 'books' in t),
)


def classify_intent(message):
    text = message.lower()
    for intent, matches in INTENT_RULES:
        if matches(text):
            return intent
    return Intent.GENERAL


_ORDINAL = re.compile(r"\b(\d+)(st|nd|rd|th)\b", re.IGNORECASE)

# (pattern, builder, formats)
_DATE_PATTERNS = (
    (re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b"),
     lambda m: f"{m[1]}-{int(m[2]):02d}-{int(m[3]):02d}", ('%Y-%m-%d',)),
    (re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b"),
     lambda m: f"{int(m[1]):02d}/{int(m[2]):02d}/{m[3]}", ('%d/%m/%Y',)),
    (re.compile(r"\b(\d{1,2})\s+([A-Za-z]{3,9})\.?,?\s+(\d{4})\b"),
     lambda m: f"{int(m[1]):02d} {m[2].title()} {m[3]}", ('%d %b %Y', '%d %B %Y')),
    (re.compile(r"\b([A-Za-z]{3,9})\.?\s+(\d{1,2}),?\s+(\d{4})\b"),
     lambda m: f"{int(m[2]):02d} {m[1].title()} {m[3]}", ('%d %b %Y', '%d %B %Y')),
)


def extract_date(message):
    """Find and parse a calendar date in free text, or return None."""
    text = _ORDINAL.sub(r"\1", message)
    text = re.sub(r"\s+", " ", text)
    for pattern, build, formats in _DATE_PATTERNS:
        for match in pattern.finditer(text):
            candidate = build(match)
            for fmt in formats:
                parsed = pd.to_datetime(candidate, format=fmt, errors='coerce')
                if pd.notna(parsed):
                    return parsed.date()
    return None


def _day(value):
    return f"{value:%a %b %d %Y}" if value else 'N/A'


def _member_tag(record):
    return f" (Member ID: {record.member_id})" if record.member_id else ''


class QueryResponder:

    def __init__(self, reporting, session_factory, config=None, clock=datetime.now):
        self.reporting = reporting
        self.session_factory = session_factory
        self.config = config or Config()
        self.clock = clock

    def _find_member(self, member_id):
        session = self.session_factory()
        try:
            member = MemberStore(session).get_by_member_id(member_id)
            return member.to_dict() if member is not None else None
        finally:
            session.close()

    def handle(self, message, member_id=None):
        if not message or not isinstance(message, str) or not message.strip():
            return 'Please send a text message to the chatbot.'

        intent = classify_intent(message)
        logger.debug(f"Classified {message!r} as {intent.value}")

        if intent is Intent.HOURS:
            return self._hours()
        if intent is Intent.CONTACT:
            return self._contact()

        member = None
        if member_id and member_id.strip():
            member = self._find_member(member_id)
            if member is None:
                return (
                    f"I couldn't find a member with ID {member_id.strip()}. "
                    'Please check your member ID or ask staff to confirm it.'
                )

        if intent in MEMBER_INTENTS and member is None:
            return (
                'To answer that, please provide the member ID so I can look up this member. '
                'For example: "Member ID is MEM20261234".'
            )

        handler = {
            Intent.CURRENT_BORROWED: self._current_borrowed,
            Intent.OVERDUE: self._overdue,
            Intent.FINES: self._fines,
            Intent.SUMMARY: self._summary,
            Intent.MEMBER_BORROW_HISTORY: self._borrow_history,
        }.get(intent)
        if handler is not None:
            return handler(member)

        if intent is Intent.MEMBERS_WITH_FINES:
            return self._members_with_fines()
        if intent is Intent.AVAILABLE_BOOKS:
            return self._available_books()
        if intent is Intent.BORROWED_BOOKS_ALL:
            return self._borrowed_books_all()
        if intent is Intent.BORROWED_ON_DATE:
            return self._borrowed_on_date(message)
        if intent is Intent.RETURNED_ON_DATE:
            return self._returned_on_date(message)
        return self._general()

    def _hours(self):
        return (
            'Our opening hours are:\n'
            + '\n'.join(self.config.LIBRARY_HOURS)
            + f"\n\nLocation: {self.config.LIBRARY_ADDRESS}."
        )

    def _contact(self):
        return (
            'You can contact us using:\n'
            f"Phone: {self.config.LIBRARY_PHONE}\n"
            f"Email: {self.config.LIBRARY_EMAIL}\n"
            f"Address: {self.config.LIBRARY_ADDRESS}"
        )

    def _current_borrowed(self, member):
        borrows = self.reporting.current_borrowings(member['member_id'])
        if not borrows:
            return f"This member ({member['name']}) does not have any books currently borrowed."
        lines = [
            f"#{i}\nTitle : {r.book_title}\nISBN  : {r.isbn}\nDue   : {_day(r.due_date)}"
            for i, r in enumerate(borrows, start=1)
        ]
        return (
            f"This member ({member['name']}) currently has {len(borrows)} active borrowing(s):\n\n"
            + '\n\n'.join(lines)
        )

    def _overdue(self, member):
        now = self.clock()
        overdue = self.reporting.member_overdue(member['member_id'])
        if not overdue:
            return f"Good news! This member ({member['name']}) does not have any overdue books right now."
        lines = []
        for i, r in enumerate(overdue, start=1):
            fine = compute_fine(r.due_date, now, self.config.FINE_PER_DAY)
            lines.append(
                f"#{i}\n"
                f"Title    : {r.book_title}\n"
                f"ISBN     : {r.isbn}\n"
                f"Due date : {_day(r.due_date)}\n"
                f"Overdue  : {days_overdue(r.due_date, now)} day(s)\n"
                f"Fine est.: {self.config.format_money(fine)}"
            )
        return (
            f"This member currently has {len(overdue)} overdue book(s):\n\n"
            + '\n\n'.join(lines)
            + '\n\nPlease inform the member to return them as soon as possible.'
        )

    def _fines(self, member):
        total = self.reporting.member_fine_total(member['member_id'])
        if total == 0:
            return f"This member ({member['name']}) does not have any recorded past fines."
        return (
            f"This member ({member['name']}) has total recorded fines of "
            f"{self.config.format_money(total)}. "
            'For an exact breakdown, please refer to the fines/transactions view.'
        )

    def _summary(self, member):
        summary = self.reporting.member_summary(member['member_id'])
        return (
            f"Member summary for {member['name']} (ID: {member['member_id']}):\n"
            f"• Current borrowed books: {summary.current_borrowed}\n"
            f"• Total books ever borrowed: {summary.total_borrowed}\n"
            f"• Books returned: {summary.returned_books}\n"
            f"• Overdue books right now: {summary.overdue_books}\n"
            f"• Total fines recorded: {self.config.format_money(summary.total_fine_paid)}\n"
            'For detailed history of every transaction, please see the member summary screen used by staff.'
        )

    def _borrow_history(self, member):
        history = self.reporting.borrow_history(member['member_id'])
        if not history:
            return f"This member ({member['name']}) has no recorded borrowings in the system."
        lines = [
            f"#{i}\n"
            f"Title      : {r.book_title}\n"
            f"ISBN       : {r.isbn}\n"
            f"Borrowed on: {_day(r.borrowed_date)}\n"
            f"Returned on: {_day(r.returned_date) if r.returned_date else 'Not yet returned'}\n"
            f"Status     : {r.status}"
            for i, r in enumerate(history, start=1)
        ]
        return (
            f"Borrowing history for {member['name']} (ID: {member['member_id']}) - "
            f"latest {len(history)} record(s):\n\n"
            + '\n\n'.join(lines)
        )

    def _members_with_fines(self):
        fined = self.reporting.members_with_fines()
        if not fined:
            return 'No members currently have any recorded fines in the system.'
        lines = [
            f"#{i}\n"
            f"Name       : {m.name}\n"
            f"Member ID  : {m.member_id or 'Not recorded'}\n"
            f"Returns    : {m.fine_count} with fines\n"
            f"Total fines: {self.config.format_money(m.total_fine)}\n"
            f"Last fine  : {_day(m.latest_fine_date)}"
            for i, m in enumerate(fined, start=1)
        ]
        return (
            f"These members have recorded fines in the system (top {self.config.FINED_MEMBERS_LIMIT} "
            'by total fines):\n\n'
            + '\n\n'.join(lines)
            + '\n\nNote: This list is based on recorded fine amounts from return transactions '
            'and does not track whether fines have later been paid.'
        )

    def _available_books(self):
        books = self.reporting.available_books()
        if not books:
            return 'There are no books currently marked as available in the system.'
        lines = [
            f"#{i}\n"
            f"Title   : {b['title']}\n"
            f"Author  : {b['author']}\n"
            f"ISBN    : {b['isbn']}\n"
            f"Copies  : {b['available_copies']}/{b['total_copies']} copies\n"
            f"Shelf   : {b['shelf_location'] or 'Not specified'}"
            for i, b in enumerate(books, start=1)
        ]
        return (
            f"Here is a sample of available books (up to {self.config.AVAILABLE_BOOKS_LIMIT}):\n\n"
            + '\n\n'.join(lines)
            + '\n\nFor the full list, please use the main Books page.'
        )

    def _borrowed_books_all(self):
        borrows = self.reporting.active_borrowings(self.config.BORROWED_BOOKS_LIMIT)
        if not borrows:
            return 'There are no active borrowed books in the system right now.'
        lines = [
            f"#{i}\n"
            f"Title    : {r.book_title}\n"
            f"ISBN     : {r.isbn}\n"
            f"Borrower : {r.borrower_name}{_member_tag(r)}\n"
            f"Due date : {_day(r.due_date)}"
            for i, r in enumerate(borrows, start=1)
        ]
        return (
            f"Here are up to {self.config.BORROWED_BOOKS_LIMIT} currently borrowed books "
            'and who borrowed them:\n\n'
            + '\n\n'.join(lines)
        )

    def _borrowed_on_date(self, message):
        day = extract_date(message)
        if day is None:
            return (
                'Please specify the date more clearly, for example: '
                '"What are the borrowed books on 15 Jan 2026" or "borrowed books on 2026-01-15".'
            )
        borrows = self.reporting.borrowed_on_date(day)
        nice_date = _day(day)
        if not borrows:
            return f"No books were recorded as borrowed on {nice_date}."
        lines = [
            f"#{i}\n"
            f"Title    : {r.book_title}\n"
            f"ISBN     : {r.isbn}\n"
            f"Borrower : {r.borrower_name}{_member_tag(r)}\n"
            f"Time     : {r.borrowed_date:%H:%M}\n"
            f"Due date : {_day(r.due_date)}"
            for i, r in enumerate(borrows, start=1)
        ]
        return f"Books borrowed on {nice_date}:\n\n" + '\n\n'.join(lines)

    def _returned_on_date(self, message):
        day = extract_date(message)
        if day is None:
            return (
                'Please specify the date more clearly, for example: '
                '"What are the returned books on 15 Jan 2026" or "returned books on 2026-01-15".'
            )
        returns = self.reporting.returned_on_date(day)
        nice_date = _day(day)
        if not returns:
            return f"No books were recorded as returned on {nice_date}."
        lines = [
            f"#{i}\n"
            f"Title    : {r.book_title}\n"
            f"ISBN     : {r.isbn}\n"
            f"Borrower : {r.borrower_name}{_member_tag(r)}\n"
            f"Time     : {r.returned_date:%H:%M}\n"
            f"Fine     : {self.config.format_money(r.fine_amount) if r.fine_amount > 0 else 'None'}"
            for i, r in enumerate(returns, start=1)
        ]
        return f"Books returned on {nice_date}:\n\n" + '\n\n'.join(lines)

    def _general(self):
        return (
            "I can help you with library hours, contact details, overall borrowing activity, "
            "and a member's borrowing status. For example, try asking:\n"
            '• "What time do you open?"\n'
            '• "How can I contact the library?"\n'
            '• "Give me available booklist"\n'
            '• "What are the borrowed books and who borrowed them"\n'
            '• "Which members currently have fines?"\n'
            '• "What are the borrowed books on 15 Jan 2026"\n'
            '• "What are the returned books on 15 Jan 2026"\n'
            '• "What books has this member borrowed?" (include the member ID)\n'
            '• "Does this member have any overdue books?"'
        )
