"""Inventory collaborator interface consumed by the settlement engines"""

from typing import Protocol


class Inventory(Protocol):
    def stock_of(self, product_id: int) -> int:
        """Units currently available."""
        ...

    def add_stock(self, product_id: int, quantity: int) -> None:
        ...

    def remove_stock(self, product_id: int, quantity: int) -> None:
        """Raises InsufficientStock when fewer than ``quantity`` units are available."""
        ...
