"""Shared pytest fixtures: a temp SQLite library, a controllable clock and mail capture"""

import random
from datetime import datetime, timedelta

import pytest

from config import Config
from database_models import create_database, get_session_factory
from library_service import LibraryService
from notifications import MailTransport


class FakeClock:
    """Callable clock that only moves when a test moves it"""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingTransport(MailTransport):
    """Mail transport that keeps sent messages in memory"""

    def __init__(self, fail_with=None):
        self.sent = []
        self.fail_with = fail_with

    def send(self, recipient, subject, body):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((recipient, subject, body))


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 5, 10, 0))


@pytest.fixture
def config():
    cfg = Config()
    cfg.SMTP_HOST = None
    cfg.MAIL_FROM = None
    cfg.FINE_PER_DAY = 100
    cfg.DEFAULT_DUE_DAYS = 14
    cfg.FINE_CURRENCY = 'Rs.'
    return cfg


@pytest.fixture
def db_engine(tmp_path):
    engine = create_database(f"sqlite:///{tmp_path / 'library_test.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def service(session_factory, config, clock, transport):
    return LibraryService(session_factory, config=config, clock=clock, rng=random.Random(1234), transport=transport)


@pytest.fixture
def member(service):
    created, _ = service.register_member('Nimal Perera', 'Nimal@Example.com', '0771234567', 'Kandy')
    return created


@pytest.fixture
def book(service):
    created, _ = service.create_book(
        'Madol Doova', 'Martin Wickramasinghe', 'A-12', total_copies=2, genre='Fiction'
    )
    return created
