"""
Library Operations Command Line
Runs lending, reporting and chatbot operations against the library database,
and imports legacy transaction history (borrower names only, no member link)
from CSV exports after cleaning and validating them with pandas.
"""

import argparse
import logging
import sys

import numpy as np
import pandas as pd

from config import Config
from database_models import create_database, get_session_factory
from exceptions import InternalError, InvalidInputError, LibraryError
from lending_engine import compute_fine
from library_service import LibraryService
from library_stores import CatalogStore, TransactionLedger

logger = logging.getLogger(__name__)

LEGACY_COLUMNS = ['ISBN', 'Book Title', 'Borrower', 'Borrowed', 'Due', 'Returned']
LEGACY_DATE_FORMAT = '%d/%m/%Y'


def configure_logging(log_path):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_path),
            logging.StreamHandler()
        ]
    )


def parse_arguments(argv=None):
    config = Config()
    parser = argparse.ArgumentParser(
        description='Library Operations - lending, reporting and legacy import'
    )

    parser.add_argument(
        '--db-url',
        default=config.DB_URL,
        help=f'SQLAlchemy database URL (default: {config.DB_URL})'
    )

    parser.add_argument(
        '--log-path',
        default=config.LOG_PATH,
        help=f'Path for the operations log (default: {config.LOG_PATH})'
    )

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('init-db', help='Create the database tables')

    add_book = sub.add_parser('add-book', help='Add a book to the catalog')
    add_book.add_argument('--title', required=True)
    add_book.add_argument('--author', required=True)
    add_book.add_argument('--shelf', required=True, help='Shelf location')
    add_book.add_argument('--copies', type=int, default=1)
    add_book.add_argument('--genre')
    add_book.add_argument('--isbn', help='ISBN (generated when omitted)')

    register = sub.add_parser('register-member', help='Register a library member')
    register.add_argument('--name', required=True)
    register.add_argument('--email', required=True)
    register.add_argument('--phone', required=True)
    register.add_argument('--address')

    borrow = sub.add_parser('borrow', help='Borrow a copy of a book')
    borrow.add_argument('isbn')
    who = borrow.add_mutually_exclusive_group(required=True)
    who.add_argument('--member-id')
    who.add_argument('--borrower-name', help='Borrower name for loans without a member')
    borrow.add_argument(
        '--due-days',
        type=int,
        default=config.DEFAULT_DUE_DAYS,
        help=f'Number of days until the loan is due (default: {config.DEFAULT_DUE_DAYS})'
    )

    ret = sub.add_parser('return', help='Return a borrowed copy')
    ret.add_argument('transaction_id', type=int)

    sub.add_parser('stats', help='Show dashboard statistics')
    sub.add_parser('active', help='List active borrowings, soonest due first')

    ask = sub.add_parser('ask', help='Ask the library chatbot a question')
    ask.add_argument('message')
    ask.add_argument('--member-id')

    remind = sub.add_parser('remind', help='Send a loan reminder email')
    remind.add_argument('transaction_id', type=int)

    legacy = sub.add_parser('import-legacy', help='Import legacy transaction history from CSV')
    legacy.add_argument('csv_path')
    legacy.add_argument(
        '--loan-period',
        type=int,
        default=config.DEFAULT_DUE_DAYS,
        help=f'Days allowed when a legacy row has no due date (default: {config.DEFAULT_DUE_DAYS})'
    )

    return parser.parse_args(argv)


def load_legacy_transactions(csv_path):
    return pd.read_csv(csv_path, dtype=str)


def analyse_data_quality(legacy_df):

    issues = []

    logger.info("Starting legacy data quality analysis")
    logger.info(f"Legacy transactions: Total rows: {len(legacy_df)}")

    missing_columns = [c for c in LEGACY_COLUMNS if c not in legacy_df.columns]
    if missing_columns:
        logger.error(f"Legacy export is missing columns: {missing_columns}")
        issues.append(('missing_columns', missing_columns))
        return issues

    for column in ['ISBN', 'Book Title', 'Borrower', 'Borrowed']:
        missing = legacy_df[column].isna().sum()
        if missing:
            logger.warning(f"Legacy - Rows with NaN in {column}: {missing}")
            issues.append(('missing_values', column, int(missing)))
    logger.warning(f"Legacy - Completely empty rows: {legacy_df.isna().all(axis=1).sum()}")

    borrowed = pd.to_datetime(
        legacy_df['Borrowed'].str.strip().str.strip('"'), format=LEGACY_DATE_FORMAT, errors='coerce'
    )
    unparseable = legacy_df['Borrowed'].notna() & borrowed.isna()
    for idx in legacy_df.index[unparseable]:
        logger.error(f"Invalid date found - Row {idx}: {legacy_df.at[idx, 'Borrowed']}")
        issues.append(('invalid_date', idx, legacy_df.at[idx, 'Borrowed']))

    logger.info(f"Legacy data quality analysis complete. Total issues found: {len(issues)}")
    return issues


def clean_legacy_transactions(legacy_df, loan_period=14, fine_rate=100):

    logger.info(f"Starting legacy transactions cleaning (loan period: {loan_period} days)")

    # remove completely empty rows
    original_count = len(legacy_df)
    legacy_df = legacy_df.dropna(how='all')
    removed = original_count - len(legacy_df)
    if removed > 0:
        logger.info(f"Removed {removed} completely empty rows from legacy data")

    legacy_df = legacy_df.copy()

    # clean text fields (remove extra quotes and whitespace)
    def clean_text(value):
        if pd.isna(value):
            return np.nan
        value = str(value).strip().strip('"').strip()
        return value or np.nan

    for column in LEGACY_COLUMNS:
        legacy_df[column] = legacy_df[column].apply(clean_text)
    logger.debug("Cleaned text fields (removed extra quotes)")

    # remove rows with NaN in identifying fields
    before_nan_removal = len(legacy_df)
    legacy_df = legacy_df.dropna(subset=['ISBN', 'Book Title', 'Borrower', 'Borrowed']).copy()
    removed_nan = before_nan_removal - len(legacy_df)
    if removed_nan > 0:
        logger.info(f"Removed {removed_nan} rows with missing ISBN, title, borrower or borrowed date")

    legacy_df['borrowed_date'] = pd.to_datetime(legacy_df['Borrowed'], format=LEGACY_DATE_FORMAT, errors='coerce')
    legacy_df['due_date'] = pd.to_datetime(legacy_df['Due'], format=LEGACY_DATE_FORMAT, errors='coerce')
    legacy_df['returned_date'] = pd.to_datetime(legacy_df['Returned'], format=LEGACY_DATE_FORMAT, errors='coerce')

    unparsed_borrowed = legacy_df['borrowed_date'].isna().sum()
    if unparsed_borrowed > 0:
        logger.warning(f"{unparsed_borrowed} borrowed dates could not be parsed, dropping those rows")
        legacy_df = legacy_df[legacy_df['borrowed_date'].notna()].copy()

    missing_due = legacy_df['due_date'].isna()
    legacy_df.loc[missing_due, 'due_date'] = legacy_df.loc[missing_due, 'borrowed_date'] + pd.Timedelta(days=loan_period)
    if missing_due.sum() > 0:
        logger.info(f"Defaulted {missing_due.sum()} due dates to borrowed date + {loan_period} days")

    early_return = legacy_df['returned_date'].notna() & (legacy_df['returned_date'] < legacy_df['borrowed_date'])
    if early_return.sum() > 0:
        logger.warning(f"Dropped {early_return.sum()} returned dates earlier than the borrowed date")
        legacy_df.loc[early_return, 'returned_date'] = pd.NaT

    legacy_df['fine_amount'] = [
        compute_fine(due.to_pydatetime(), returned.to_pydatetime(), fine_rate) if pd.notna(returned) else 0
        for due, returned in zip(legacy_df['due_date'], legacy_df['returned_date'])
    ]

    fined_count = (legacy_df['fine_amount'] > 0).sum()
    logger.info(f"Legacy cleaning complete. Found {fined_count} fined returns out of {len(legacy_df)} records")

    return legacy_df


def save_legacy_transactions(legacy_df, session_factory):
    """Append cleaned legacy rows to the ledger. Returns (imported, skipped)."""

    logger.info(f"Saving {len(legacy_df)} legacy transactions to the ledger")

    session = session_factory()
    imported = skipped = 0
    try:
        catalog = CatalogStore(session)
        ledger = TransactionLedger(session)
        for idx, row in legacy_df.iterrows():
            still_out = pd.isna(row['returned_date'])
            # an unreturned legacy loan must hold a real copy
            if still_out:
                if catalog.get_by_isbn(row['ISBN']) is None:
                    logger.error(f"Skipped row {idx}: ISBN {row['ISBN']} not in catalog for an open legacy loan")
                    skipped += 1
                    continue
                if not catalog.take_copy(row['ISBN']):
                    logger.error(f"Skipped row {idx}: no copy of ISBN {row['ISBN']} available for an open legacy loan")
                    skipped += 1
                    continue
            loan = ledger.append_borrow(
                isbn=row['ISBN'],
                book_title=row['Book Title'],
                borrower_name=row['Borrower'],
                borrowed_date=row['borrowed_date'].to_pydatetime(),
                due_date=row['due_date'].to_pydatetime(),
            )
            if not still_out:
                ledger.append_return(loan, row['returned_date'].to_pydatetime(), int(row['fine_amount']))
            imported += 1
        session.commit()
        logger.info(f"Imported {imported} legacy transactions, skipped {skipped}")
    except Exception as e:
        session.rollback()
        logger.error(f"Database error: {e}", exc_info=True)
        raise InternalError('Legacy import failed') from e
    finally:
        session.close()
    return imported, skipped


def _print_loans(records):
    if not records:
        print("No active borrowings.")
        return
    for r in records:
        who = f"{r.borrower_name} ({r.member_id})" if r.member_id else r.borrower_name
        print(f"  #{r.loan_id}  {r.book_title} [{r.isbn}]  {who}  due {r.due_date:%Y-%m-%d}")


def run_command(args, service):
    if args.command == 'init-db':
        print("Database ready.")
    elif args.command == 'add-book':
        book, message = service.create_book(
            title=args.title, author=args.author, shelf_location=args.shelf,
            total_copies=args.copies, genre=args.genre, isbn=args.isbn,
        )
        print(f"{message}: {book['title']} ({book['isbn']})")
    elif args.command == 'register-member':
        member, message = service.register_member(args.name, args.email, args.phone, args.address)
        print(f"{message}: {member['member_id']} ({member['name']})")
    elif args.command == 'borrow':
        data, message = service.borrow(
            args.isbn, member_id=args.member_id, borrower_name=args.borrower_name, due_days=args.due_days
        )
        print(f"{message}: transaction {data['transaction']['id']}, due {data['transaction']['due_date']}")
    elif args.command == 'return':
        data, message = service.return_book(args.transaction_id)
        print(f"{message}: fine {service.config.format_money(data['fine_amount'])}")
    elif args.command == 'stats':
        for name, value in service.dashboard_stats().to_dict().items():
            print(f"  {name}: {value}")
    elif args.command == 'active':
        _print_loans(service.list_active())
    elif args.command == 'ask':
        print(service.ask(args.message, args.member_id))
    elif args.command == 'remind':
        _, message = service.send_loan_reminder(args.transaction_id)
        print(message)
    elif args.command == 'import-legacy':
        legacy_df = load_legacy_transactions(args.csv_path)
        issues = analyse_data_quality(legacy_df)
        if any(issue[0] == 'missing_columns' for issue in issues):
            raise InvalidInputError(f"Legacy export {args.csv_path} does not have the expected columns")
        legacy_df = clean_legacy_transactions(legacy_df, args.loan_period, service.config.FINE_PER_DAY)
        imported, skipped = save_legacy_transactions(legacy_df, service.session_factory)
        print(f"Imported {imported} legacy transactions ({skipped} skipped, {len(issues)} issues found)")


def main(argv=None):
    args = parse_arguments(argv)
    configure_logging(args.log_path)

    logger.info(f"Library operations command: {args.command}")
    engine = create_database(args.db_url)
    service = LibraryService(get_session_factory(engine))

    try:
        run_command(args, service)
    except LibraryError as e:
        logger.error(f"{args.command} failed: {e.kind}: {e.message}")
        print(f"Error ({e.kind}): {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
