"""Pytest fixtures for vendor ledger tests."""

from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from vendor_ledger.calculators.earning import FLAT_FEE_POLICY
from vendor_ledger.config import Settings
from vendor_ledger.database import create_schema, get_engine, make_session_factory
from vendor_ledger.events.emitter import EventEmitter
from vendor_ledger.events.types import DomainEvent
from vendor_ledger.services.assignment_service import AssignmentService
from vendor_ledger.services.ledger_service import LedgerService

# In-memory SQLite; each test gets its own database
TEST_DATABASE_URL = "sqlite://"


class FakeClock:
    """Controllable clock for deterministic deadlines."""

    def __init__(self, start: datetime = datetime(2024, 3, 15, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    """Settings with the documented defaults, independent of the environment."""
    values = dict(
        database_url=TEST_DATABASE_URL,
        rejection_penalty=Decimal("100"),
        cancellation_penalty=Decimal("100"),
        auto_rejection_penalty=Decimal("100"),
        task_acceptance_fee=Decimal("0"),
        response_window_minutes=25,
        auto_reject_interval_seconds=60,
        payout_policy="flat_fee",
        default_security_deposit=Decimal("0"),
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


def bump_row_version(db: Session, model, **criteria) -> None:
    """Advance a versioned row the way another writer's commit would, unseen by the ORM."""
    table = model.__table__
    stmt = update(table).values(version=table.c.version + 1)
    for column, value in criteria.items():
        stmt = stmt.where(table.c[column] == value)
    db.execute(stmt)


@pytest.fixture
def engine():
    """Fresh in-memory database with the schema applied."""
    engine = get_engine(TEST_DATABASE_URL)
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    """Database session for a test; rolled back afterwards."""
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def events(emitter: EventEmitter) -> list[DomainEvent]:
    """Every event emitted during the test, in order."""
    recorded: list[DomainEvent] = []
    emitter.on_all(recorded.append)
    return recorded


@pytest.fixture
def ledger(db: Session, clock: FakeClock, emitter: EventEmitter) -> LedgerService:
    return LedgerService(db, policy=FLAT_FEE_POLICY, clock=clock, emitter=emitter)


@pytest.fixture
def service(
    db: Session,
    ledger: LedgerService,
    settings: Settings,
    clock: FakeClock,
    emitter: EventEmitter,
) -> AssignmentService:
    return AssignmentService(db, ledger, settings=settings, clock=clock, emitter=emitter)


@pytest.fixture
def wallet(ledger: LedgerService):
    """Wallet for vendor V1 with a 500 balance."""
    wallet = ledger.open_wallet("V1")
    ledger.add_deposit("V1", amount=Decimal("500"), reference="seed")
    return wallet
