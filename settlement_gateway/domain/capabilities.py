"""Explicit capabilities passed into every decision call"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet

from settlement_gateway.domain.exceptions import PermissionDenied


class Capability(str, Enum):
    VERIFY_INSTALLMENTS = "installments.verify"
    DECIDE_CREDIT_REQUESTS = "credit_requests.decide"
    MANAGE_ACCOUNTS = "accounts.manage"
    RECORD_SALES = "sales.record"
    PROCESS_RETURNS = "returns.process"
    MANAGE_SUPPLIER_RETURNS = "supplier_returns.manage"
    VERIFY_ORDER_PAYMENTS = "orders.verify"
    MANAGE_INVENTORY = "inventory.manage"


@dataclass(frozen=True)
class Actor:
    """The acting user as resolved by the identity collaborator"""

    actor_id: str
    capabilities: FrozenSet[Capability] = field(default_factory=frozenset)

    def require(self, capability: Capability) -> None:
        if capability not in self.capabilities:
            raise PermissionDenied(self.actor_id, capability.value)


# Used for unauthenticated guest flows (order lookup and proof upload)
GUEST = Actor(actor_id="guest")
