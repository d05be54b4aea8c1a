import os
import sqlite3
import uuid
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)

from app.db import Base
from app.models.account import Account
from app.models.catalog import Product
from app.models.subscription import BillingCycle
from app.schemas.subscription import SubscriptionCreate
from app.services.billing.dunning import Dunning
from app.services.billing.invoices import Invoices
from app.services.billing.payments import Payments
from app.services.clock import FrozenClock
from app.services.events.log import SubscriptionEvents
from app.services.subscriptions import Subscriptions

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=UTC)


@pytest.fixture()
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        # Use PostgreSQL for tests (recommended)
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def db_session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FrozenClock(NOW)


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def account(db_session):
    account = Account(
        name="Test Customer",
        email=_unique_email(),
        phone="+15550100",
        tax_id="TAX-001",
        billing_address={"line1": "1 Main St", "city": "Springfield", "country": "US"},
        is_active=True,
    )
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture()
def product(db_session):
    product = Product(
        name="Static IP",
        sku=f"IP-{uuid.uuid4().hex[:6]}",
        price=Decimal("10.00"),
        currency="USD",
        is_active=True,
    )
    db_session.add(product)
    db_session.commit()
    db_session.refresh(product)
    return product


@pytest.fixture()
def other_product(db_session):
    product = Product(
        name="Router Rental",
        sku=f"RT-{uuid.uuid4().hex[:6]}",
        price=Decimal("5.00"),
        currency="USD",
        is_active=True,
    )
    db_session.add(product)
    db_session.commit()
    db_session.refresh(product)
    return product


@pytest.fixture()
def subscriptions_service(clock):
    return Subscriptions(clock=clock)


@pytest.fixture()
def invoices_service(clock):
    return Invoices(clock=clock)


@pytest.fixture()
def payments_service(clock):
    return Payments(clock=clock, timeout=2.0)


@pytest.fixture()
def dunning_service(clock, payments_service):
    return Dunning(clock=clock, payments=payments_service)


@pytest.fixture()
def events_service(clock):
    return SubscriptionEvents(clock=clock)


@pytest.fixture()
def make_subscription(db_session, subscriptions_service, account):
    """Create a subscription through the service with overridable defaults."""

    def _make(activate: bool = True, **overrides):
        data = {
            "account_id": account.id,
            "name": "Fiber 100",
            "billing_cycle": BillingCycle.monthly,
            "billing_day_of_month": 1,
            "base_amount": Decimal("50.00"),
            "start_date": datetime(2025, 1, 1, tzinfo=UTC),
            "notice_period_days": 30,
        }
        data.update(overrides)
        subscription = subscriptions_service.create(db_session, SubscriptionCreate(**data))
        if activate:
            subscription = subscriptions_service.activate(db_session, subscription.id)
        return subscription

    return _make
