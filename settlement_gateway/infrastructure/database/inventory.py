"""Inventory adapter over the product_stock table.

Stock lives in the same database as the ledger, so stock moves commit or
roll back together with the operation that caused them.
"""

from sqlalchemy.orm import Session

from settlement_gateway.domain.exceptions import InsufficientStock, ValidationError
from settlement_gateway.infrastructure.database.models import ProductStock


class SqlInventory:
    def __init__(self, db: Session):
        self.db = db

    def _row(self, product_id: int, create: bool = False):
        row = (
            self.db.query(ProductStock)
            .filter(ProductStock.product_id == product_id)
            .with_for_update()
            .first()
        )
        if row is None and create:
            row = ProductStock(product_id=product_id, quantity=0)
            self.db.add(row)
        return row

    def stock_of(self, product_id: int) -> int:
        row = self.db.get(ProductStock, product_id)
        return row.quantity if row else 0

    def add_stock(self, product_id: int, quantity: int) -> None:
        if quantity <= 0:
            raise ValidationError("Stock adjustments must be positive")
        row = self._row(product_id, create=True)
        row.quantity += quantity
        self.db.flush()

    def remove_stock(self, product_id: int, quantity: int) -> None:
        if quantity <= 0:
            raise ValidationError("Stock adjustments must be positive")
        row = self._row(product_id)
        available = row.quantity if row else 0
        if quantity > available:
            raise InsufficientStock(product_id, quantity, available)
        row.quantity -= quantity
        self.db.flush()

    def set_stock(self, product_id: int, quantity: int) -> None:
        """Seed or correct a stock level (inventory service sync)"""
        if quantity < 0:
            raise ValidationError("Stock cannot be negative")
        row = self._row(product_id, create=True)
        row.quantity = quantity
        self.db.flush()
