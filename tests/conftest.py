"""Pytest fixtures for testing"""

import pytest
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Generator
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from settlement_gateway.api.main import create_app
from settlement_gateway.api.dependencies import get_blob_store, get_clock
from settlement_gateway.domain.capabilities import Actor, Capability
from settlement_gateway.domain.clock import FixedClock
from settlement_gateway.domain.exceptions import InsufficientStock
from settlement_gateway.domain.ledger import LedgerAccount
from settlement_gateway.infrastructure.database.models import Base
from settlement_gateway.infrastructure.database.session import get_db


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

ALL_CAPABILITIES = ",".join(c.value for c in Capability)


class InMemoryInventory:
    """Inventory double for domain tests"""

    def __init__(self, stock: Dict[int, int] | None = None):
        self.stock = dict(stock or {})

    def stock_of(self, product_id: int) -> int:
        return self.stock.get(product_id, 0)

    def add_stock(self, product_id: int, quantity: int) -> None:
        self.stock[product_id] = self.stock_of(product_id) + quantity

    def remove_stock(self, product_id: int, quantity: int) -> None:
        available = self.stock_of(product_id)
        if quantity > available:
            raise InsufficientStock(product_id, quantity, available)
        self.stock[product_id] = available - quantity


class FakeBlobStore:
    """Blob store double: every ref exists unless listed as missing"""

    def __init__(self):
        self.missing = set()

    async def exists(self, ref: str) -> bool:
        return ref not in self.missing


@pytest.fixture
def make_inventory():
    """Factory for in-memory inventories seeded with a stock map"""
    return InMemoryInventory


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 1, 15, 9, 0, 0))


@pytest.fixture
def operator() -> Actor:
    """Back-office user holding every capability"""
    return Actor(actor_id="operator-1", capabilities=frozenset(Capability))


@pytest.fixture
def clerk() -> Actor:
    """Store clerk without verification rights"""
    return Actor(actor_id="clerk-1", capabilities=frozenset({Capability.RECORD_SALES}))


@pytest.fixture
def account() -> LedgerAccount:
    """Active account with limit 1,000,000 and 400,000 drawn, due 2025-01-31"""
    acct = LedgerAccount.open("cust-1", Decimal("1000000"), term_days=30, granted_at=date(2025, 1, 1))
    acct.id = 1
    acct.draw(Decimal("400000"))
    return acct


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def client(db: Session, clock: FixedClock, blob_store: FakeBlobStore) -> TestClient:
    """Create FastAPI test client with test database, fixed clock and fake blob store"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    return TestClient(app)


@pytest.fixture
def operator_headers() -> dict:
    return {"X-Actor-Id": "operator-1", "X-Actor-Capabilities": ALL_CAPABILITIES}
