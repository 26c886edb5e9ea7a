"""
Pytest tests for the legacy import in library_cli.py
Tests data quality analysis, cleaning and saving of legacy transaction exports
"""

import logging

import pytest
import pandas as pd
import numpy as np
from datetime import datetime
from library_cli import (
    LEGACY_COLUMNS,
    analyse_data_quality,
    clean_legacy_transactions,
    save_legacy_transactions
)

ISBN_A = '978-1-111-111111-1'
ISBN_B = '978-2-222-222222-2'


@pytest.fixture
def sample_legacy_df():
    """Fixture providing a legacy export with known issues"""
    return pd.DataFrame({
        'ISBN': [ISBN_A, f'"{ISBN_A}"', ISBN_B, np.nan, np.nan],
        'Book Title': ['Madol Doova', 'Madol Doova', 'Gamperaliya', 'Lost Book', np.nan],
        'Borrower': ['Kamal Silva', ' Sunil Fernando ', 'Ruwan', 'Nobody', np.nan],
        'Borrowed': ['01/01/2023', '"02/01/2023"', '32/01/2023', '05/01/2023', np.nan],
        'Due': ['15/01/2023', np.nan, '15/02/2023', np.nan, np.nan],
        'Returned': ['18/01/2023', np.nan, '10/02/2023', np.nan, np.nan]
    })


@pytest.fixture
def catalog_book(service):
    """Fixture providing a single-copy book matching the legacy ISBN"""
    created, _ = service.create_book('Madol Doova', 'Martin Wickramasinghe', 'A-12', isbn=ISBN_A)
    return created


def test_analyse_data_quality_reports_issues(sample_legacy_df):
    """Test that missing values and unparseable dates are reported"""
    issues = analyse_data_quality(sample_legacy_df)

    assert ('missing_values', 'ISBN', 2) in issues
    assert ('missing_values', 'Borrower', 1) in issues
    assert ('invalid_date', 2, '32/01/2023') in issues
    # quoted dates are not issues
    assert not any(issue[0] == 'invalid_date' and issue[1] == 1 for issue in issues)


def test_analyse_data_quality_missing_columns():
    """Test that an export without the expected columns is flagged"""
    issues = analyse_data_quality(pd.DataFrame({'Id': [1]}))

    assert issues == [('missing_columns', LEGACY_COLUMNS)]


def test_clean_legacy_removes_incomplete_rows(sample_legacy_df):
    """Test that empty rows, rows missing an ISBN and bad borrowed dates are removed"""
    cleaned = clean_legacy_transactions(sample_legacy_df)

    # Should have 2 valid rows
    assert len(cleaned) == 2
    assert cleaned['ISBN'].tolist() == [ISBN_A, ISBN_A]
    assert not cleaned['borrowed_date'].isna().any()


def test_clean_legacy_strips_quotes_and_whitespace(sample_legacy_df):
    """Test that quoted and padded values are cleaned"""
    cleaned = clean_legacy_transactions(sample_legacy_df)

    assert cleaned['Borrower'].tolist() == ['Kamal Silva', 'Sunil Fernando']
    assert cleaned['borrowed_date'].tolist() == [datetime(2023, 1, 1), datetime(2023, 1, 2)]


def test_clean_legacy_defaults_due_date(sample_legacy_df):
    """Test that a missing due date is borrowed date plus the loan period"""
    cleaned = clean_legacy_transactions(sample_legacy_df, loan_period=21)

    assert cleaned['due_date'].tolist() == [datetime(2023, 1, 15), datetime(2023, 1, 23)]


def test_clean_legacy_calculates_fines(sample_legacy_df):
    """Test that late legacy returns are fined per started day"""
    cleaned = clean_legacy_transactions(sample_legacy_df, fine_rate=50)

    # returned 3 days after the due date; the second row is still out
    assert cleaned['fine_amount'].tolist() == [150, 0]


def test_clean_legacy_drops_return_before_borrow():
    """Test that a return earlier than the borrow is treated as not returned"""
    legacy_df = pd.DataFrame({
        'ISBN': [ISBN_A],
        'Book Title': ['Madol Doova'],
        'Borrower': ['Kamal Silva'],
        'Borrowed': ['10/01/2023'],
        'Due': ['24/01/2023'],
        'Returned': ['01/01/2023']
    })

    cleaned = clean_legacy_transactions(legacy_df)

    assert cleaned['returned_date'].isna().all()
    assert cleaned['fine_amount'].tolist() == [0]


def test_clean_legacy_empty_export():
    """Test that an empty export cleans to an empty frame"""
    cleaned = clean_legacy_transactions(pd.DataFrame(columns=LEGACY_COLUMNS))

    assert len(cleaned) == 0


def test_save_legacy_transactions(service, session_factory, catalog_book, sample_legacy_df):
    """Test that returned rows are saved with their fines and open rows take a copy"""
    cleaned = clean_legacy_transactions(sample_legacy_df)

    imported, skipped = save_legacy_transactions(cleaned, session_factory)

    assert (imported, skipped) == (2, 0)
    book = service.get_book_by_isbn(ISBN_A)
    assert book['available_copies'] == 0
    assert book['status'] == 'borrowed'

    [active] = service.list_active()
    assert active.borrower_name == 'Sunil Fernando'
    assert active.member_id is None

    [fined] = service.reporting.members_with_fines()
    assert (fined.name, fined.total_fine) == ('Kamal Silva', 300)


def test_save_legacy_skips_open_loans_without_copies(service, session_factory, catalog_book, sample_legacy_df):
    """Test that an open legacy loan is skipped when no copy is on the shelf"""
    service.borrow(ISBN_A, borrower_name='Current Reader')
    cleaned = clean_legacy_transactions(sample_legacy_df)

    imported, skipped = save_legacy_transactions(cleaned, session_factory)

    assert (imported, skipped) == (1, 1)
    assert service.get_book_by_isbn(ISBN_A)['available_copies'] == 0
    assert service.dashboard_stats().total_transactions == 2


def test_save_legacy_reports_unknown_isbn(service, session_factory, sample_legacy_df, caplog):
    """Test that an open legacy loan for a book missing from the catalog is skipped and logged as such"""
    cleaned = clean_legacy_transactions(sample_legacy_df)

    with caplog.at_level(logging.ERROR, logger='library_cli'):
        imported, skipped = save_legacy_transactions(cleaned, session_factory)

    # the returned row needs no copy, the open row has no book to take
    assert (imported, skipped) == (1, 1)
    assert f"ISBN {ISBN_A} not in catalog" in caplog.text
    assert 'no copy' not in caplog.text
