"""Integration tests for persistence: version checks, unique constraints and stock"""

import pytest
from datetime import date, datetime
from decimal import Decimal
from sqlalchemy.orm import Session

from settlement_gateway.domain.exceptions import (
    ActiveAccountExists,
    ConcurrentModification,
    DuplicateReturn,
    InsufficientStock,
)
from settlement_gateway.domain.ledger import LedgerAccount
from settlement_gateway.domain.models import (
    GuestOrder,
    OrderState,
    PaymentMethod,
    ReasonCode,
    RefundMethod,
    ReturnedLine,
    Sale,
    SaleItem,
    SaleReturn,
)
from settlement_gateway.domain.settlement import compute_settlement
from settlement_gateway.infrastructure.database.inventory import SqlInventory
from settlement_gateway.infrastructure.database.repositories import (
    AccountRepository,
    OrderRepository,
    ReturnRepository,
    SaleRepository,
)
from settlement_gateway.infrastructure.database.session import transactional


def _saved_account(db: Session, customer_id="cust-1") -> LedgerAccount:
    account = LedgerAccount.open(customer_id, Decimal("1000"), term_days=30, granted_at=date(2025, 1, 1))
    with transactional(db):
        AccountRepository(db).save(account)
    return account


def test_account_round_trip(db: Session):
    account = _saved_account(db)

    loaded = AccountRepository(db).get(account.id)

    assert loaded == account
    assert AccountRepository(db).get_active_for_customer("cust-1").id == account.id


def test_lost_update_is_a_conflict(db: Session):
    """Test two writers on one account: the second, holding a stale version, loses"""
    account = _saved_account(db)
    mine = AccountRepository(db).get(account.id)

    other = Session(bind=db.get_bind())
    try:
        with transactional(other):
            theirs = AccountRepository(other).get(account.id)
            theirs.draw(Decimal("100"))
            AccountRepository(other).save(theirs)
    finally:
        other.close()

    with pytest.raises(ConcurrentModification):
        with transactional(db):
            mine.draw(Decimal("200"))
            AccountRepository(db).save(mine)

    assert AccountRepository(db).get(account.id).principal_owed == Decimal("100.00")


def test_stale_snapshot_in_same_session_is_a_conflict(db: Session):
    """Test an order read before another request's commit cannot overwrite it"""
    with transactional(db):
        OrderRepository(db).save(GuestOrder(tracking_token="tok-1", total=Decimal("80000.00")))
    first = OrderRepository(db).get_by_token("tok-1")
    second = OrderRepository(db).get_by_token("tok-1")

    first.state = OrderState.CANCELLED
    first.cancellation_reason = "Out of stock"
    with transactional(db):
        OrderRepository(db).save(first)
    assert first.version == second.version + 1

    second.verified_paid_amount = Decimal("10000.00")
    with pytest.raises(ConcurrentModification):
        with transactional(db):
            OrderRepository(db).save(second)

    stored = OrderRepository(db).get_by_token("tok-1")
    assert stored.state == OrderState.CANCELLED
    assert stored.verified_paid_amount == Decimal("0.00")


def test_second_active_account_violates_unique_index(db: Session):
    _saved_account(db)

    with pytest.raises(ActiveAccountExists):
        _saved_account(db)


def test_concurrent_second_return_is_duplicate(db: Session):
    sale = Sale(
        customer_id="cust-1",
        payment_method=PaymentMethod.CASH,
        items=[SaleItem(product_id=101, quantity=2, unit_price=Decimal("50.00"))],
        sold_at=datetime(2025, 1, 15, 9, 0),
    )
    with transactional(db):
        SaleRepository(db).create(sale)

    def _return():
        lines = [
            ReturnedLine(
                sale_item_id=sale.items[0].id,
                product_id=101,
                quantity=1,
                unit_price=Decimal("50.00"),
                reason_code=ReasonCode.NOT_NEEDED,
            )
        ]
        return SaleReturn(
            sale_id=sale.id,
            returned_lines=lines,
            exchange_lines=[],
            general_reason="",
            computation=compute_settlement(lines, [], refund_method=RefundMethod.CASH),
            created_at=sale.sold_at,
        )

    with transactional(db):
        ReturnRepository(db).create(_return())

    with pytest.raises(DuplicateReturn):
        with transactional(db):
            ReturnRepository(db).create(_return())


def test_sql_inventory_moves(db: Session):
    inventory = SqlInventory(db)
    inventory.set_stock(101, 2)
    inventory.add_stock(101, 3)
    inventory.add_stock(202, 1)

    assert inventory.stock_of(101) == 5
    assert inventory.stock_of(202) == 1
    assert inventory.stock_of(303) == 0

    with pytest.raises(InsufficientStock):
        inventory.remove_stock(101, 6)
    inventory.remove_stock(101, 5)
    assert inventory.stock_of(101) == 0
