"""Shared test fixtures."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from skiptrace import import_models, create_app
from skiptrace.database import Base, make_engine
from skiptrace.models.lead import Lead
from skiptrace.pipeline.base import ProviderAdapter, LookupResult, Phone, Email
from skiptrace.pipeline.errors import ProviderFailure
from skiptrace.pipeline.manager import build_run_manager
from skiptrace.services.ledger import Ledger


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite engine with schema created.

    A file (not :memory:) so worker threads opening their own connections
    all see the same database.
    """
    engine = make_engine(f"sqlite:///{tmp_path / 'skiptrace.db'}")
    import_models()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    """Session for assertions and seeding. Rolls back after each test."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


class FixedClock:
    """Injectable clock: returns a fixed aware datetime until advanced."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_lead(db_session):
    """Factory fixture — inserts a Lead row."""
    def _make(lead_id='L1', **overrides):
        defaults = dict(
            id=lead_id,
            owner_name='Pat Owner',
            address='12 Elm St',
            city='Springfield',
            state='IL',
            zip_code='62701',
        )
        defaults.update(overrides)
        lead = Lead(**defaults)
        db_session.add(lead)
        db_session.commit()
        return lead
    return _make


class FakeAdapter(ProviderAdapter):
    """Scriptable provider: succeeds with canned contacts or raises ProviderFailure."""

    def __init__(self, name, slot, cost_cents=0, phones=None, emails=None, error=None, fail_for=()):
        super().__init__(slot, {'cost_cents': cost_cents})
        self.name = name
        self.phones = phones if phones is not None else [Phone(number='+15550000001', type='mobile', confidence=90)]
        self.emails = emails if emails is not None else []
        self.error = error
        self.fail_for = set(fail_for)
        self.calls = []

    def lookup(self, lead):
        self.calls.append(lead.id)
        if self.error or lead.id in self.fail_for:
            raise ProviderFailure(self.name, self.error or 'scripted failure')
        return LookupResult(phones=list(self.phones), emails=list(self.emails), cost_cents=self.cost_cents)


@pytest.fixture
def make_adapter():
    """Factory fixture — builds a FakeAdapter."""
    def _make(name='fake', slot='primary', **kwargs):
        return FakeAdapter(name, slot, **kwargs)
    return _make


@pytest.fixture
def chain(make_adapter):
    """Default three-slot chain: primary 25c, secondary 30c, free 0c."""
    return [
        make_adapter('batchdata', 'primary', cost_cents=25,
                     emails=[Email(address='owner@example.com', confidence=80)]),
        make_adapter('whitepages', 'secondary', cost_cents=30),
        make_adapter('public_records', 'free', cost_cents=0),
    ]


@pytest.fixture
def ledger(session_factory):
    return Ledger(session_factory)


@pytest.fixture
def make_manager(session_factory, clock):
    """Factory fixture — RunManager wired to the test database and a fixed clock."""
    def _make(chain, daily_limit_cents=1000, concurrency=1, breakers=None):
        return build_run_manager(
            session_factory=session_factory,
            chain=chain,
            breakers=breakers or {},
            clock=clock,
            daily_limit_cents=daily_limit_cents,
            concurrency=concurrency,
        )
    return _make


@pytest.fixture
def manager(make_manager, chain):
    return make_manager(chain)


@pytest.fixture
def app(manager):
    """Flask test app with the test RunManager."""
    app = create_app(run_manager=manager)
    app.config['TESTING'] = True
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c
