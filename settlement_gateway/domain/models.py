"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union


class AccountState(str, Enum):
    ACTIVE = "active"
    PAID_OFF = "paid_off"
    DEFAULTED = "defaulted"
    CANCELLED = "cancelled"


class InstallmentState(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class CreditRequestState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Verdict(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class PaymentMethod(str, Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    CREDIT_ACCOUNT = "credit_account"


class RefundMethod(str, Enum):
    CASH = "cash"
    CREDIT_ACCOUNT = "credit_account"


class ReasonCode(str, Enum):
    WRONG_ITEM = "wrong_item"
    NOT_NEEDED = "not_needed"
    DEFECTIVE = "defective"


class ExchangeTag(str, Enum):
    """Informational: how the exchange relates to what was returned"""

    NO_EXCHANGE = "no_exchange"
    SAME_PRODUCT = "same_product"
    DIFFERENT_PRODUCT = "different_product"


class SupplierCaseState(str, Enum):
    PENDING = "pending"
    SHIPPED = "shipped"
    PARTIALLY_RECEIVED = "partially_received"
    COMPLETED = "completed"


class OrderState(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    AWAITING_PAYMENT_TIMEBOXED = "awaiting_payment_timeboxed"
    IN_VERIFICATION = "in_verification"
    PARTIALLY_PAID = "partially_paid"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    CANCELLED_BY_INACTIVITY = "cancelled_by_inactivity"


class DeliveryMethod(str, Enum):
    SHIPPING = "shipping"
    STORE_PICKUP = "store_pickup"


@dataclass
class ProofOfPayment:
    """Reference to an evidentiary attachment held by the blob store"""

    ref: str
    submitted_at: datetime


@dataclass
class Installment:
    """Customer payment toward a credit account ("abono")"""

    account_id: int
    amount: Decimal
    paid_on_date: date
    payment_method: PaymentMethod
    state: InstallmentState = InstallmentState.PENDING
    proofs: List[ProofOfPayment] = field(default_factory=list)
    rejection_reason: Optional[str] = None
    submitted_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    id: Optional[int] = None
    version: Optional[int] = None


@dataclass
class CreditRequest:
    customer_id: str
    requested_amount: Decimal
    requested_term_days: int
    state: CreditRequestState = CreditRequestState.PENDING
    approved_amount: Optional[Decimal] = None
    decision_note: Optional[str] = None
    resulting_account_id: Optional[int] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    id: Optional[int] = None
    version: Optional[int] = None


@dataclass
class SaleItem:
    product_id: int
    quantity: int
    unit_price: Decimal
    id: Optional[int] = None


@dataclass
class Sale:
    customer_id: str
    payment_method: PaymentMethod
    items: List[SaleItem]
    sold_at: Optional[datetime] = None
    credit_account_id: Optional[int] = None
    id: Optional[int] = None

    @property
    def total(self) -> Decimal:
        return sum((i.unit_price * i.quantity for i in self.items), Decimal("0.00"))


@dataclass
class ReturnedLine:
    """One line of a sale being handed back"""

    sale_item_id: int
    product_id: int
    quantity: int
    unit_price: Decimal  # price at original sale
    reason_code: ReasonCode


@dataclass
class ExchangeLine:
    product_id: int
    quantity: int
    unit_price: Decimal  # price at exchange time


# Settlement direction: exactly one variant, each carrying only its own resolution


@dataclass(frozen=True)
class NoSettlement:
    direction: str = "none"


@dataclass(frozen=True)
class OwedToCustomer:
    amount: Decimal
    refund_method: RefundMethod
    direction: str = "owed_to_customer"


@dataclass(frozen=True)
class OwedByCustomer:
    amount: Decimal
    payment_method: PaymentMethod
    direction: str = "owed_by_customer"


Settlement = Union[NoSettlement, OwedToCustomer, OwedByCustomer]


@dataclass
class SettlementComputation:
    """Output of netting a return against an exchange"""

    total_returned: Decimal
    total_exchanged: Decimal
    balance: Decimal
    settlement: Settlement
    exchange_tag: ExchangeTag


@dataclass
class SaleReturn:
    sale_id: int
    returned_lines: List[ReturnedLine]
    exchange_lines: List[ExchangeLine]
    general_reason: str
    computation: SettlementComputation
    created_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    id: Optional[int] = None

    @property
    def defective_lines(self) -> List[ReturnedLine]:
        return [l for l in self.returned_lines if l.reason_code == ReasonCode.DEFECTIVE]


@dataclass
class SupplierCaseLine:
    product_id: int
    quantity_shipped: int
    quantity_received: Optional[int] = None
    substitute_product_id: Optional[int] = None
    reception_notes: Optional[str] = None


@dataclass
class SupplierReturnCase:
    return_id: int
    state: SupplierCaseState = SupplierCaseState.PENDING
    supplier_ref: Optional[str] = None
    lines: List[SupplierCaseLine] = field(default_factory=list)
    shipped_at: Optional[datetime] = None
    reception_date: Optional[date] = None
    id: Optional[int] = None
    version: Optional[int] = None


@dataclass
class GuestOrder:
    tracking_token: str
    total: Decimal
    state: OrderState = OrderState.AWAITING_PAYMENT
    payment_deadline: Optional[datetime] = None
    verified_paid_amount: Decimal = Decimal("0.00")
    credit_amount_used: Decimal = Decimal("0.00")
    credit_account_id: Optional[int] = None
    # Credit drawn by a cancelled order that the account could no longer take back
    credit_refund_due: Decimal = Decimal("0.00")
    delivery_method: DeliveryMethod = DeliveryMethod.SHIPPING
    proofs: List[ProofOfPayment] = field(default_factory=list)
    cancellation_reason: Optional[str] = None
    id: Optional[int] = None
    version: Optional[int] = None

    @property
    def outstanding(self) -> Decimal:
        return self.total - self.credit_amount_used - self.verified_paid_amount


@dataclass
class Transition:
    """Audit record of one state change"""

    entity_type: str
    entity_id: int
    from_state: Optional[str]
    to_state: str
    occurred_at: datetime
    actor_id: Optional[str] = None
    detail: dict = field(default_factory=dict)
