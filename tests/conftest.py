"""
Shared fixtures
===============

In-memory SQLite database and a frozen clock shared by the test modules.
"""

from datetime import datetime, timedelta, timezone

import pytest

from iapsync import models  # noqa: F401
from iapsync.database import Base, create_db_engine, create_session_factory
from iapsync.domain import Product, ProductType, datetime_to_ms
from iapsync.repository import SqlDatabase

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


def ms(moment: datetime) -> str:
    """Epoch milliseconds as the stores send them, a decimal string."""
    return str(datetime_to_ms(moment))


def frozen_clock() -> datetime:
    return NOW


@pytest.fixture
def session():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    db_session = create_session_factory(engine)()
    yield db_session
    db_session.close()
    engine.dispose()


@pytest.fixture
def db(session):
    return SqlDatabase(session)


@pytest.fixture
def monthly_product(db):
    return db.create_product(
        Product(
            price=499,
            currency="USD",
            sku_ios="com.example.monthly",
            sku_android="monthly",
            type=ProductType.RENEWABLE_SUBSCRIPTION,
        )
    )


@pytest.fixture
def coins_product(db):
    return db.create_product(
        Product(
            price=199,
            currency="USD",
            sku_ios="com.example.coins",
            sku_android="coins",
            type=ProductType.CONSUMABLE,
        )
    )
