"""Pytest configuration and fixtures."""

import os

# The app engine is created at import; point it at SQLite before anything imports it.
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db.session import get_db
from main import app
# Import all models to ensure they're registered with Base.metadata
from app.db.models import *  # noqa: F401,F403
from app.db.models.inventory import Direction, RefDocType, TxnType
from services.inventory import ledger

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

COMPANY = "acme"
ACTOR = "tester"
T0 = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # let SQLAlchemy own BEGIN so SAVEPOINTs nest inside the outer transaction
    @event.listens_for(engine, "connect")
    def _no_implicit_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        test_client.headers.update({"X-Company-Id": COMPANY, "X-User-Id": ACTOR})
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def stock_in(db_session: Session):
    """Receive a fresh lot of ``qty`` via an adjustment posting; returns the txn."""
    def _stock_in(qty, *, warehouse_id="WH1", sku_id="SKU1", minutes=0, **meta):
        return ledger.post(
            db_session,
            company_id=COMPANY,
            actor=ACTOR,
            txn_type=TxnType.ADJUSTMENT_IN,
            direction=Direction.IN,
            warehouse_id=warehouse_id,
            sku_id=sku_id,
            qty=Decimal(str(qty)),
            ref_doc_type=RefDocType.ADJUSTMENT,
            ref_doc_id=None,
            txn_time=T0 + timedelta(minutes=minutes),
            **meta,
        )
    return _stock_in


def lots_of(db: Session, warehouse_id="WH1", sku_id="SKU1"):
    from app.db.models.inventory import Lot
    db.expire_all()
    return (
        db.query(Lot)
        .filter(Lot.company_id == COMPANY, Lot.warehouse_id == warehouse_id, Lot.sku_id == sku_id)
        .order_by(Lot.id.asc())
        .all()
    )


def balance_of(db: Session, warehouse_id="WH1", sku_id="SKU1"):
    db.expire_all()
    return ledger.get_balance(db, company_id=COMPANY, warehouse_id=warehouse_id, sku_id=sku_id)
