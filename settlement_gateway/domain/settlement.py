"""Return + exchange settlement: netting, classification and application"""

from typing import List, Optional, Sequence

from settlement_gateway.domain.capabilities import Actor, Capability
from settlement_gateway.domain.clock import Clock
from settlement_gateway.domain.exceptions import (
    InsufficientStock,
    ReturnQuantityExceeded,
    ValidationError,
)
from settlement_gateway.domain.inventory import Inventory
from settlement_gateway.domain.ledger import LedgerAccount
from settlement_gateway.domain.models import (
    ExchangeLine,
    ExchangeTag,
    NoSettlement,
    OwedByCustomer,
    OwedToCustomer,
    PaymentMethod,
    ReasonCode,
    RefundMethod,
    ReturnedLine,
    Sale,
    SaleItem,
    SaleReturn,
    Settlement,
    SettlementComputation,
    SupplierReturnCase,
)
from settlement_gateway.domain.money import ZERO, to_money


def classify_exchange(returned: Sequence[ReturnedLine], exchanged: Sequence[ExchangeLine]) -> ExchangeTag:
    """Informational tag; never feeds the money computation"""
    if not exchanged:
        return ExchangeTag.NO_EXCHANGE
    returned_products = {l.product_id for l in returned if l.quantity > 0}
    if all(l.product_id in returned_products for l in exchanged):
        return ExchangeTag.SAME_PRODUCT
    return ExchangeTag.DIFFERENT_PRODUCT


def compute_settlement(
    returned: Sequence[ReturnedLine],
    exchanged: Sequence[ExchangeLine],
    refund_method: Optional[RefundMethod] = None,
    payment_method: Optional[PaymentMethod] = None,
) -> SettlementComputation:
    """
    Net a return against an exchange.

    balance = total_exchanged - total_returned
      balance < 0  -> OwedToCustomer(|balance|), needs refund_method
      balance > 0  -> OwedByCustomer(balance), needs payment_method
      balance == 0 -> NoSettlement; neither method may be given

    Example:
        return 1 x A @ 50,000, exchange 1 x B @ 60,000
        -> balance +10,000, OwedByCustomer(10,000, payment_method)
    """
    total_returned = to_money(sum((l.unit_price * l.quantity for l in returned), ZERO))
    total_exchanged = to_money(sum((l.unit_price * l.quantity for l in exchanged), ZERO))
    balance = total_exchanged - total_returned

    settlement: Settlement
    if balance < ZERO:
        if refund_method is None:
            raise ValidationError("refund_method is required when money is owed to the customer")
        if payment_method is not None:
            raise ValidationError("payment_method is only accepted when the customer owes money")
        settlement = OwedToCustomer(amount=-balance, refund_method=RefundMethod(refund_method))
    elif balance > ZERO:
        if payment_method is None:
            raise ValidationError("payment_method is required when the customer owes money")
        if refund_method is not None:
            raise ValidationError("refund_method is only accepted when money is owed to the customer")
        settlement = OwedByCustomer(amount=balance, payment_method=PaymentMethod(payment_method))
    else:
        if refund_method is not None or payment_method is not None:
            raise ValidationError("No refund or payment method applies to a balanced exchange")
        settlement = NoSettlement()

    return SettlementComputation(
        total_returned=total_returned,
        total_exchanged=total_exchanged,
        balance=balance,
        settlement=settlement,
        exchange_tag=classify_exchange(returned, exchanged),
    )


def _returned_lines(sale: Sale, requested: Sequence[dict]) -> List[ReturnedLine]:
    items = {item.id: item for item in sale.items}
    seen = set()
    lines = []
    for req in requested:
        item_id = req["sale_item_id"]
        quantity = req["quantity"]
        if item_id not in items:
            raise ValidationError(f"Sale item {item_id} does not belong to sale {sale.id}")
        if item_id in seen:
            raise ValidationError(f"Sale item {item_id} appears more than once")
        seen.add(item_id)
        if quantity <= 0:
            raise ValidationError("Returned quantities must be positive")
        item = items[item_id]
        if quantity > item.quantity:
            raise ReturnQuantityExceeded(item_id, quantity, item.quantity)
        lines.append(
            ReturnedLine(
                sale_item_id=item_id,
                product_id=item.product_id,
                quantity=quantity,
                unit_price=item.unit_price,
                reason_code=ReasonCode(req["reason_code"]),
            )
        )
    if not lines:
        raise ValidationError("A return needs at least one returned item")
    return lines


def _exchange_lines(requested: Sequence[dict]) -> List[ExchangeLine]:
    seen = set()
    lines = []
    for req in requested:
        if req["product_id"] in seen:
            raise ValidationError(f"Product {req['product_id']} appears more than once in the exchange")
        seen.add(req["product_id"])
        if req["quantity"] <= 0:
            raise ValidationError("Exchange quantities must be positive")
        price = to_money(req["unit_price"])
        if price < ZERO:
            raise ValidationError("Exchange prices must not be negative")
        lines.append(ExchangeLine(product_id=req["product_id"], quantity=req["quantity"], unit_price=price))
    return lines


def process_return(
    sale: Sale,
    returned_items: Sequence[dict],
    exchange_items: Sequence[dict],
    general_reason: str,
    actor: Actor,
    inventory: Inventory,
    clock: Clock,
    refund_method: Optional[RefundMethod] = None,
    payment_method: Optional[PaymentMethod] = None,
    account: Optional[LedgerAccount] = None,
) -> SaleReturn:
    """
    Validate, settle and apply a return with optional exchange.

    Effects (stock moves, credit restore/draw) are applied in memory and
    through ``inventory``; the caller commits them together with the return
    or rolls everything back. One return per sale is enforced by the caller's
    store.

    Raises:
        ValidationError: malformed lines or missing/extra settlement method
        ReturnQuantityExceeded: more units returned than were sold
        InsufficientStock: exchange quantity above current stock
        InsufficientCredit: additional payment drawn on credit not available
    """
    actor.require(Capability.PROCESS_RETURNS)
    returned = _returned_lines(sale, returned_items)
    exchanged = _exchange_lines(exchange_items)
    computation = compute_settlement(returned, exchanged, refund_method, payment_method)

    # Stock check uses stock as it stands before returned units are added back
    for line in exchanged:
        available = inventory.stock_of(line.product_id)
        if line.quantity > available:
            raise InsufficientStock(line.product_id, line.quantity, available)

    settlement = computation.settlement
    uses_credit = (
        isinstance(settlement, OwedToCustomer) and settlement.refund_method == RefundMethod.CREDIT_ACCOUNT
    ) or (isinstance(settlement, OwedByCustomer) and settlement.payment_method == PaymentMethod.CREDIT_ACCOUNT)
    if uses_credit:
        if account is None:
            raise ValidationError(f"Customer {sale.customer_id} has no active credit account")
        if isinstance(settlement, OwedToCustomer):
            account.restore(settlement.amount)
        else:
            account.draw(settlement.amount)

    for line in returned:
        inventory.add_stock(line.product_id, line.quantity)
    for line in exchanged:
        inventory.remove_stock(line.product_id, line.quantity)

    return SaleReturn(
        sale_id=sale.id,
        returned_lines=returned,
        exchange_lines=exchanged,
        general_reason=(general_reason or "").strip(),
        computation=computation,
        created_at=clock.now(),
        processed_by=actor.actor_id,
    )


def open_supplier_case(sale_return: SaleReturn) -> Optional[SupplierReturnCase]:
    """Pending supplier case for the defective part of a return, if any"""
    if not sale_return.defective_lines:
        return None
    return SupplierReturnCase(return_id=sale_return.id)


def record_sale(
    customer_id: str,
    items: Sequence[dict],
    payment_method: PaymentMethod,
    actor: Actor,
    inventory: Inventory,
    clock: Clock,
    account: Optional[LedgerAccount] = None,
) -> Sale:
    """Record a sale, take its units out of stock and draw credit when paid on account"""
    actor.require(Capability.RECORD_SALES)
    if not items:
        raise ValidationError("A sale needs at least one item")

    sale_items = []
    for req in items:
        if req["quantity"] <= 0:
            raise ValidationError("Sold quantities must be positive")
        price = to_money(req["unit_price"])
        if price < ZERO:
            raise ValidationError("Prices must not be negative")
        sale_items.append(SaleItem(product_id=req["product_id"], quantity=req["quantity"], unit_price=price))

    sale = Sale(
        customer_id=customer_id,
        payment_method=PaymentMethod(payment_method),
        items=sale_items,
        sold_at=clock.now(),
    )

    for item in sale_items:
        available = inventory.stock_of(item.product_id)
        if item.quantity > available:
            raise InsufficientStock(item.product_id, item.quantity, available)

    if sale.payment_method == PaymentMethod.CREDIT_ACCOUNT:
        if account is None:
            raise ValidationError(f"Customer {customer_id} has no active credit account")
        account.draw(sale.total)
        sale.credit_account_id = account.id

    for item in sale_items:
        inventory.remove_stock(item.product_id, item.quantity)
    return sale
