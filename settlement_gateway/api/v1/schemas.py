"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

from settlement_gateway.domain.models import (
    AccountState,
    CreditRequestState,
    DeliveryMethod,
    ExchangeTag,
    InstallmentState,
    OrderState,
    PaymentMethod,
    ReasonCode,
    RefundMethod,
    SupplierCaseState,
    Verdict,
)

# Amounts travel as decimal strings with two fraction digits
Money = Annotated[Decimal, PlainSerializer(lambda v: f"{v:.2f}", return_type=str, when_used="json")]


# Credit accounts and installments


class AccountResponse(BaseModel):
    """Snapshot of a credit account"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: str
    state: AccountState
    approved_limit: Money
    principal_owed: Money
    accrued_interest: Money
    available_for_purchase: Money
    total_payable: Money
    granted_at: date
    due_at: date
    interest_accrued_through: Optional[date] = None


class ProofSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ref: str
    submitted_at: datetime


class InstallmentRequest(BaseModel):
    """Request body for POST /v1/credit-accounts/{id}/installments"""

    amount: Decimal = Field(..., gt=0)
    paid_on_date: date
    payment_method: PaymentMethod
    proof_ref: Optional[str] = Field(None, min_length=1)


class InstallmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    amount: Money
    paid_on_date: date
    payment_method: PaymentMethod
    state: InstallmentState
    proofs: List[ProofSchema]
    rejection_reason: Optional[str] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None


class ProofRequest(BaseModel):
    proof_ref: str = Field(..., min_length=1, description="Blob store reference of the uploaded proof")


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class InstallmentDecisionResponse(BaseModel):
    """Response for installment verify/reject: the installment and the account after it"""

    installment: InstallmentResponse
    account: AccountResponse


class AccrueInterestRequest(BaseModel):
    as_of: Optional[date] = Field(None, description="Defaults to today in the business timezone")


class AccrueInterestResponse(BaseModel):
    interest_added: Money
    account: AccountResponse


# Credit requests


class CreditRequestCreate(BaseModel):
    """Request body for POST /v1/credit-requests"""

    customer_id: str = Field(..., min_length=1)
    requested_amount: Decimal = Field(..., gt=0)
    requested_term_days: int = Field(..., gt=0)


class CreditRequestDecision(BaseModel):
    verdict: Verdict
    approved_amount: Optional[Decimal] = Field(None, gt=0)
    note: Optional[str] = None


class CreditRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: str
    requested_amount: Money
    requested_term_days: int
    state: CreditRequestState
    approved_amount: Optional[Money] = None
    decision_note: Optional[str] = None
    resulting_account_id: Optional[int] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None


# Sales, returns and supplier cases


class SaleItemSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    product_id: int
    quantity: int = Field(..., gt=0)
    unit_price: Money = Field(..., ge=0)


class SaleRequest(BaseModel):
    """Request body for POST /v1/sales"""

    customer_id: str = Field(..., min_length=1)
    payment_method: PaymentMethod
    items: List[SaleItemSchema] = Field(..., min_length=1)


class SaleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: str
    payment_method: PaymentMethod
    credit_account_id: Optional[int] = None
    sold_at: datetime
    total: Money
    items: List[SaleItemSchema]


class ReturnedItemRequest(BaseModel):
    sale_item_id: int
    quantity: int = Field(..., gt=0)
    reason_code: ReasonCode


class ExchangeItemRequest(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)


class ReturnRequest(BaseModel):
    """Request body for POST /v1/sales/{id}/returns"""

    returned_items: List[ReturnedItemRequest] = Field(..., min_length=1)
    exchange_items: List[ExchangeItemRequest] = Field(default_factory=list)
    general_reason: str = ""
    refund_method: Optional[RefundMethod] = None
    payment_method: Optional[PaymentMethod] = None


class ReturnedLineSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sale_item_id: int
    product_id: int
    quantity: int
    unit_price: Money
    reason_code: ReasonCode


class ExchangeLineSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    quantity: int
    unit_price: Money


class SettlementSchema(BaseModel):
    direction: str  # none | owed_to_customer | owed_by_customer
    amount: Money
    refund_method: Optional[RefundMethod] = None
    payment_method: Optional[PaymentMethod] = None


class ReturnResponse(BaseModel):
    id: int
    sale_id: int
    general_reason: str
    exchange_tag: ExchangeTag
    total_returned: Money
    total_exchanged: Money
    balance: Money
    settlement: SettlementSchema
    returned_lines: List[ReturnedLineSchema]
    exchange_lines: List[ExchangeLineSchema]
    supplier_case_id: Optional[int] = None
    created_at: datetime


class ShipLineRequest(BaseModel):
    product_id: int
    quantity_shipped: int = Field(..., gt=0)


class ShipRequest(BaseModel):
    supplier_ref: str = Field(..., min_length=1)
    lines: Optional[List[ShipLineRequest]] = Field(None, description="Omit to ship every defective unit")


class ReceptionLineRequest(BaseModel):
    product_id: int
    quantity_received: int = Field(..., ge=0)
    substitute_product_id: Optional[int] = None
    reception_notes: Optional[str] = None


class ReceptionRequest(BaseModel):
    reception_date: date
    lines: List[ReceptionLineRequest] = Field(..., min_length=1)


class SupplierCaseLineSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    quantity_shipped: int
    quantity_received: Optional[int] = None
    substitute_product_id: Optional[int] = None
    reception_notes: Optional[str] = None


class SupplierCaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    return_id: int
    state: SupplierCaseState
    supplier_ref: Optional[str] = None
    shipped_at: Optional[datetime] = None
    reception_date: Optional[date] = None
    lines: List[SupplierCaseLineSchema]


# Guest orders


class OrderCreate(BaseModel):
    """Request body for POST /v1/orders"""

    total: Decimal = Field(..., gt=0)
    timeboxed: bool = False
    customer_id: Optional[str] = Field(None, description="Required when part of the total is paid with credit")
    credit_amount: Optional[Decimal] = Field(None, gt=0)
    delivery_method: DeliveryMethod = DeliveryMethod.SHIPPING


class TimeboxRequest(BaseModel):
    window_minutes: Optional[int] = Field(None, gt=0)


class OrderDecision(BaseModel):
    verdict: Verdict
    verified_amount: Optional[Decimal] = Field(None, gt=0)
    reason: Optional[str] = None


class OrderStatusChange(BaseModel):
    status: OrderState
    reason: Optional[str] = None


class OrderResponse(BaseModel):
    """Guest-facing view of an order, looked up by tracking token"""

    model_config = ConfigDict(from_attributes=True)

    tracking_token: str
    state: OrderState
    total: Money
    outstanding: Money
    verified_paid_amount: Money
    credit_amount_used: Money
    credit_refund_due: Money
    delivery_method: DeliveryMethod
    payment_deadline: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    proofs: List[ProofSchema]


class SweepResponse(BaseModel):
    cancelled: List[str]


# Audit


class TransitionSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: int
    from_state: Optional[str] = None
    to_state: str
    actor_id: Optional[str] = None
    occurred_at: datetime
    detail: Optional[dict] = None


class AuditResponse(BaseModel):
    entity_type: str
    entity_id: int
    transitions: List[TransitionSchema]


# Inventory


class StockLevel(BaseModel):
    """Request body for PUT /v1/products/{id}/stock"""

    quantity: int = Field(..., ge=0)


class StockResponse(BaseModel):
    product_id: int
    quantity: int
