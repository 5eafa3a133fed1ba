from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fxoffice.db import Base
from fxoffice.models import Currency, User


def make_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db():
    engine = make_engine()
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def add_currency(db, code: str, market_rate: str = "1", is_active: bool = True) -> Currency:
    currency = Currency(
        code=code,
        name=code,
        market_rate=Decimal(market_rate),
        buy_rate=Decimal(market_rate),
        sell_rate=Decimal(market_rate),
        discount_percent=Decimal("2.5"),
        markup_percent=Decimal("3.5"),
        manual_buy_rate=False,
        manual_sell_rate=False,
        is_active=is_active,
        last_updated=datetime.now(timezone.utc),
    )
    db.add(currency)
    db.flush()
    return currency


def add_user(db, email: str, subject: str, **flags) -> User:
    now = datetime.now(timezone.utc)
    user = User(
        email=email,
        subject=subject,
        is_active=flags.pop("is_active", True),
        is_manager=flags.pop("is_manager", False),
        is_compliance_officer=flags.pop("is_compliance_officer", False),
        is_template=flags.pop("is_template", False),
        can_modify_exchange_rates=flags.pop("can_modify_exchange_rates", False),
        can_edit_fees_commissions=flags.pop("can_edit_fees_commissions", False),
        can_transfer_between_accounts=flags.pop("can_transfer_between_accounts", False),
        can_reconcile_accounts=flags.pop("can_reconcile_accounts", False),
        invitation_status="accepted",
        created_at=now,
        updated_at=now,
        **flags,
    )
    db.add(user)
    db.flush()
    return user


@pytest.fixture()
def manager(db) -> User:
    return add_user(db, "manager@example.com", "auth|manager", is_manager=True)


@pytest.fixture()
def teller(db) -> User:
    return add_user(db, "teller@example.com", "auth|teller")
