"""
Pytest tests for lending_engine.py
Borrow / return state machine, inventory invariants and fine computation
"""

import threading
from datetime import date, datetime

import pytest

from database_models import Book, Member
from exceptions import (
    InvalidInputError, InvalidStateError, NotFoundError, UnavailableError,
)
from lending_engine import LendingEngine, compute_fine
from loan_records import ActiveLoan, ReturnedLoan


def set_book_copies(session_factory, isbn, available):
    session = session_factory()
    try:
        book = session.query(Book).filter(Book.isbn == isbn).one()
        book.available_copies = available
        session.commit()
    finally:
        session.close()


def set_member_counter(session_factory, member_id, **counters):
    session = session_factory()
    try:
        member = session.query(Member).filter(Member.member_id == member_id).one()
        for name, value in counters.items():
            setattr(member, name, value)
        session.commit()
    finally:
        session.close()


def assert_inventory_invariants(book):
    assert 0 <= book['available_copies'] <= book['total_copies']
    assert (book['status'] == 'available') == (book['available_copies'] > 0)


def test_compute_fine_on_time_is_zero():
    due = datetime(2026, 1, 10, 10, 0)
    assert compute_fine(due, datetime(2026, 1, 9, 18, 0)) == 0
    assert compute_fine(due, due) == 0


def test_compute_fine_whole_days():
    due = datetime(2026, 1, 10, 10, 0)
    assert compute_fine(due, datetime(2026, 1, 12, 10, 0)) == 200


def test_compute_fine_partial_day_counts_as_full_day():
    due = datetime(2026, 1, 10, 0, 0)
    assert compute_fine(due, datetime(2026, 1, 10, 0, 1)) == 100
    assert compute_fine(due, datetime(2026, 1, 12, 10, 0)) == 300


def test_compute_fine_calendar_due_date_runs_to_end_of_day():
    assert compute_fine(date(2026, 1, 10), datetime(2026, 1, 12, 10, 0)) == 200
    assert compute_fine(date(2026, 1, 10), datetime(2026, 1, 10, 23, 0)) == 0


def test_compute_fine_uses_configured_rate():
    due = datetime(2026, 1, 10, 10, 0)
    assert compute_fine(due, datetime(2026, 1, 13, 10, 0), rate=50) == 150


def test_borrow_decrements_copies_and_stamps_book(service, book, member, clock):
    data, message = service.borrow(book['isbn'], member_id=member['member_id'])

    assert message == 'Book borrowed successfully'
    loan = data['transaction']
    assert loan['transaction_type'] == 'borrow'
    assert loan['status'] == 'active'
    assert loan['fine_amount'] == 0
    assert loan['returned_date'] is None
    assert loan['borrower_name'] == 'Nimal Perera'
    assert loan['member_id'] == member['member_id']
    assert loan['due_date'] == datetime(2026, 1, 19, 10, 0).isoformat()

    updated = data['book']
    assert updated['available_copies'] == 1
    assert updated['status'] == 'available'
    assert updated['borrower_name'] == 'Nimal Perera'
    assert_inventory_invariants(updated)


def test_borrow_updates_member_counters(service, book, member):
    service.borrow(book['isbn'], member_id=member['member_id'])

    refreshed = service.get_member(member['member_id'])
    assert refreshed['borrowed_books'] == 1
    assert refreshed['total_borrowed'] == 1
    assert refreshed['overdue_books'] == 0


def test_borrow_last_copy_marks_book_borrowed(service, member):
    single, _ = service.create_book('Gamperaliya', 'Martin Wickramasinghe', 'B-3')

    data, _ = service.borrow(single['isbn'], member_id=member['member_id'], due_days=7)

    assert data['book']['available_copies'] == 0
    assert data['book']['status'] == 'borrowed'
    assert data['transaction']['due_date'] == datetime(2026, 1, 12, 10, 0).isoformat()


def test_borrow_legacy_path_with_borrower_name(service, book):
    data, _ = service.borrow(book['isbn'], borrower_name='Walk-in Reader')

    assert data['transaction']['member_id'] is None
    assert data['transaction']['borrower_name'] == 'Walk-in Reader'


def test_borrow_without_copies_fails_without_state_change(service, member):
    single, _ = service.create_book('Viragaya', 'Martin Wickramasinghe', 'B-4')
    service.borrow(single['isbn'], member_id=member['member_id'])
    before_stats = service.dashboard_stats()
    before_member = service.get_member(member['member_id'])

    with pytest.raises(UnavailableError):
        service.borrow(single['isbn'], member_id=member['member_id'])

    after = service.get_book_by_isbn(single['isbn'])
    assert after['available_copies'] == 0
    assert after['status'] == 'borrowed'
    assert service.dashboard_stats() == before_stats
    assert service.get_member(member['member_id']) == before_member


def test_borrow_unknown_book(service, member):
    with pytest.raises(NotFoundError):
        service.borrow('978-0-000-000000-0', member_id=member['member_id'])


def test_borrow_unknown_member(service, book):
    with pytest.raises(NotFoundError):
        service.borrow(book['isbn'], member_id='MEM20269999')
    assert service.get_book_by_isbn(book['isbn'])['available_copies'] == 2


def test_borrow_requires_member_or_borrower(service, book):
    with pytest.raises(InvalidInputError):
        service.borrow(book['isbn'])


def test_borrow_requires_isbn(service, member):
    with pytest.raises(InvalidInputError):
        service.borrow('', member_id=member['member_id'])


@pytest.mark.parametrize('due_days', [0, -3, 'soon'])
def test_borrow_rejects_bad_due_days(service, book, member, due_days):
    with pytest.raises(InvalidInputError):
        service.borrow(book['isbn'], member_id=member['member_id'], due_days=due_days)


def test_return_on_time_has_no_fine(service, book, member, clock):
    data, _ = service.borrow(book['isbn'], member_id=member['member_id'])
    clock.advance(days=3)

    returned, message = service.return_book(data['transaction']['id'])

    assert message == 'Book returned successfully'
    assert returned['fine_amount'] == 0
    assert returned['transaction']['transaction_type'] == 'return'
    assert returned['transaction']['status'] == 'returned'
    assert returned['transaction']['returned_date'] == datetime(2026, 1, 8, 10, 0).isoformat()
    assert returned['book']['available_copies'] == 2
    assert returned['book']['borrower_name'] is None
    assert_inventory_invariants(returned['book'])

    refreshed = service.get_member(member['member_id'])
    assert refreshed['borrowed_books'] == 0
    assert refreshed['overdue_books'] == 0


def test_late_return_is_fined_and_counted(service, book, member, clock):
    data, _ = service.borrow(book['isbn'], member_id=member['member_id'], due_days=5)
    clock.advance(days=7, hours=1)

    returned, _ = service.return_book(data['transaction']['id'])

    # 2 days and 1 hour late
    assert returned['fine_amount'] == 300
    assert returned['transaction']['fine_amount'] == 300
    assert service.get_member(member['member_id'])['overdue_books'] == 1


def test_return_keeps_borrow_facts(service, book, member, clock):
    data, _ = service.borrow(book['isbn'], member_id=member['member_id'])
    clock.advance(days=1)

    result = service.lending.return_loan(data['transaction']['id'])
    record = result.record

    assert isinstance(record, ReturnedLoan)
    assert record.loan_id == data['transaction']['id']
    assert record.borrowed_date == datetime(2026, 1, 5, 10, 0)
    assert record.returned_date == datetime(2026, 1, 6, 10, 0)


def test_borrow_result_record_is_active(service, book, member):
    result = service.lending.borrow(book['isbn'], member_id=member['member_id'])
    assert isinstance(result.record, ActiveLoan)
    assert result.record.is_active


def test_return_twice_fails_and_leaves_state(service, book, member, clock):
    data, _ = service.borrow(book['isbn'], member_id=member['member_id'])
    loan_id = data['transaction']['id']
    service.return_book(loan_id)
    book_after_first = service.get_book_by_isbn(book['isbn'])
    member_after_first = service.get_member(member['member_id'])

    with pytest.raises(InvalidStateError):
        service.return_book(loan_id)

    assert service.get_book_by_isbn(book['isbn']) == book_after_first
    assert service.get_member(member['member_id']) == member_after_first


def test_return_unknown_transaction(service):
    with pytest.raises(NotFoundError):
        service.return_book(4242)


def test_return_with_deleted_book_is_not_found(service, book, member):
    data, _ = service.borrow(book['isbn'], member_id=member['member_id'])
    service.delete_book(book['id'])

    with pytest.raises(NotFoundError):
        service.return_book(data['transaction']['id'])

    assert [r.loan_id for r in service.list_active()] == [data['transaction']['id']]


def test_return_never_pushes_copies_past_total(service, session_factory, book, member):
    data, _ = service.borrow(book['isbn'], member_id=member['member_id'])
    # inventory drifted: every copy is already back on the shelf
    set_book_copies(session_factory, book['isbn'], available=2)

    with pytest.raises(InvalidStateError):
        service.return_book(data['transaction']['id'])

    assert service.get_book_by_isbn(book['isbn'])['available_copies'] == 2
    assert [r.loan_id for r in service.list_active()] == [data['transaction']['id']]


def test_return_clamps_member_counter_at_zero(service, session_factory, book, member):
    data, _ = service.borrow(book['isbn'], member_id=member['member_id'])
    set_member_counter(session_factory, member['member_id'], borrowed_books=0)

    service.return_book(data['transaction']['id'])

    assert service.get_member(member['member_id'])['borrowed_books'] == 0


def test_legacy_return_does_not_touch_members(service, book, member, clock):
    data, _ = service.borrow(book['isbn'], borrower_name='Nimal Perera')
    clock.advance(days=30)

    returned, _ = service.return_book(data['transaction']['id'])

    assert returned['fine_amount'] == 1600
    assert service.get_member(member['member_id'])['overdue_books'] == 0


def test_end_to_end_two_copies(service, member, clock):
    two_copies, _ = service.create_book('Kaliyugaya', 'Martin Wickramasinghe', 'C-1', total_copies=2)
    isbn = two_copies['isbn']

    first, _ = service.borrow(isbn, member_id=member['member_id'], due_days=14)
    second, _ = service.borrow(isbn, member_id=member['member_id'], due_days=14)
    assert second['book']['available_copies'] == 0
    assert second['book']['status'] == 'borrowed'

    with pytest.raises(UnavailableError):
        service.borrow(isbn, member_id=member['member_id'])

    clock.advance(days=20)
    returned, _ = service.return_book(first['transaction']['id'])

    assert returned['fine_amount'] == 600
    assert returned['book']['available_copies'] == 1
    assert returned['book']['status'] == 'available'

    refreshed = service.get_member(member['member_id'])
    assert refreshed['borrowed_books'] == 1
    assert refreshed['total_borrowed'] == 2
    assert refreshed['overdue_books'] == 1


def test_concurrent_borrows_of_last_copy(session_factory, config, clock, service):
    single, _ = service.create_book('Yuganthaya', 'Martin Wickramasinghe', 'C-2')
    engine = LendingEngine(session_factory, config, clock)
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def attempt(name):
        barrier.wait()
        try:
            engine.borrow(single['isbn'], borrower_name=name)
            outcome = 'ok'
        except UnavailableError:
            outcome = 'unavailable'
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt, args=(n,)) for n in ('Reader A', 'Reader B')]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(outcomes) == ['ok', 'unavailable']
    after = service.get_book_by_isbn(single['isbn'])
    assert after['available_copies'] == 0
    assert len(service.list_active()) == 1


def test_shrinking_copies_below_loans_is_rejected(service, book, member):
    first, _ = service.borrow(book['isbn'], member_id=member['member_id'])
    second, _ = service.borrow(book['isbn'], borrower_name='Walk-in Reader')

    with pytest.raises(InvalidInputError):
        service.update_book(book['id'], total_copies=1)

    unchanged = service.get_book(book['id'])
    assert (unchanged['total_copies'], unchanged['available_copies']) == (2, 0)

    # both loans can still come back
    for data in (first, second):
        returned, _ = service.return_book(data['transaction']['id'])
        assert_inventory_invariants(returned['book'])
    assert service.get_book(book['id'])['available_copies'] == 2


def test_return_after_growing_copies(service, book, member):
    data, _ = service.borrow(book['isbn'], member_id=member['member_id'])

    grown, _ = service.update_book(book['id'], total_copies=5)
    assert (grown['total_copies'], grown['available_copies']) == (5, 4)
    assert_inventory_invariants(grown)

    returned, _ = service.return_book(data['transaction']['id'])
    assert returned['book']['available_copies'] == 5
    assert_inventory_invariants(returned['book'])
    assert service.list_active() == []
