"""Defective goods sent back to a supplier and reconciliation of what comes back"""

from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional, Sequence

from settlement_gateway.domain.capabilities import Actor, Capability
from settlement_gateway.domain.clock import Clock
from settlement_gateway.domain.exceptions import (
    AlreadyReconciled,
    InvalidTransition,
    OverReceipt,
    ValidationError,
)
from settlement_gateway.domain.inventory import Inventory
from settlement_gateway.domain.models import (
    SaleReturn,
    SupplierCaseLine,
    SupplierCaseState,
    SupplierReturnCase,
    Transition,
)

RECONCILED_STATES = (SupplierCaseState.PARTIALLY_RECEIVED, SupplierCaseState.COMPLETED)


def _defective_quantities(sale_return: SaleReturn) -> Dict[int, int]:
    quantities: Dict[int, int] = defaultdict(int)
    for line in sale_return.defective_lines:
        quantities[line.product_id] += line.quantity
    return dict(quantities)


def ship(
    case: SupplierReturnCase,
    sale_return: SaleReturn,
    supplier_ref: str,
    lines: Optional[Sequence[dict]],
    actor: Actor,
    inventory: Inventory,
    clock: Clock,
) -> Transition:
    """
    PENDING -> SHIPPED.

    Only defective returned products may be shipped, up to the quantity
    returned as defective. Without explicit lines every defective unit ships.
    The shipped units leave stock again (the return had put them back).
    """
    actor.require(Capability.MANAGE_SUPPLIER_RETURNS)
    if case.state != SupplierCaseState.PENDING:
        raise InvalidTransition("supplier_case", case.id, case.state.value, SupplierCaseState.SHIPPED.value)
    if not supplier_ref or not supplier_ref.strip():
        raise ValidationError("supplier_ref is required")

    defective = _defective_quantities(sale_return)
    if not defective:
        raise ValidationError("The return has no defective items to send to a supplier")

    if lines is None:
        requested = [{"product_id": p, "quantity_shipped": q} for p, q in defective.items()]
    else:
        requested = list(lines)
    if not requested:
        raise ValidationError("At least one line must be shipped")

    case_lines: List[SupplierCaseLine] = []
    seen = set()
    for req in requested:
        product_id = req["product_id"]
        quantity = req["quantity_shipped"]
        if product_id not in defective:
            raise ValidationError(f"Product {product_id} was not returned as defective")
        if product_id in seen:
            raise ValidationError(f"Product {product_id} appears more than once")
        seen.add(product_id)
        if quantity <= 0 or quantity > defective[product_id]:
            raise ValidationError(
                f"Product {product_id}: can ship between 1 and {defective[product_id]} units"
            )
        case_lines.append(SupplierCaseLine(product_id=product_id, quantity_shipped=quantity))

    for line in case_lines:
        inventory.remove_stock(line.product_id, line.quantity_shipped)

    case.lines = case_lines
    case.supplier_ref = supplier_ref.strip()
    case.shipped_at = clock.now()
    case.state = SupplierCaseState.SHIPPED
    return Transition(
        entity_type="supplier_case",
        entity_id=case.id,
        from_state=SupplierCaseState.PENDING.value,
        to_state=case.state.value,
        occurred_at=case.shipped_at,
        actor_id=actor.actor_id,
        detail={"supplier_ref": case.supplier_ref, "units": sum(l.quantity_shipped for l in case_lines)},
    )


def confirm_reception(
    case: SupplierReturnCase,
    received_lines: Sequence[dict],
    reception_date: date,
    actor: Actor,
    inventory: Inventory,
    clock: Clock,
) -> Transition:
    """
    SHIPPED -> PARTIALLY_RECEIVED | COMPLETED, exactly once per case.

    Every shipped line must be reported. Received units enter stock as the
    substitute product when the supplier sent a different one.

    Raises:
        AlreadyReconciled: reception was already confirmed
        OverReceipt: more units received than shipped on any line
    """
    actor.require(Capability.MANAGE_SUPPLIER_RETURNS)
    if case.state in RECONCILED_STATES:
        raise AlreadyReconciled(f"Supplier case {case.id} was already reconciled ({case.state.value})")
    if case.state != SupplierCaseState.SHIPPED:
        raise InvalidTransition(
            "supplier_case", case.id, case.state.value, SupplierCaseState.COMPLETED.value
        )
    if reception_date > clock.today():
        raise ValidationError("reception_date cannot be in the future")

    by_product = {}
    for req in received_lines:
        if req["product_id"] in by_product:
            raise ValidationError(f"Product {req['product_id']} appears more than once")
        by_product[req["product_id"]] = req

    shipped_products = {line.product_id for line in case.lines}
    unknown = set(by_product) - shipped_products
    if unknown:
        raise ValidationError(f"Products {sorted(unknown)} were not shipped in this case")
    missing = shipped_products - set(by_product)
    if missing:
        raise ValidationError(f"Reception must report every shipped product, missing {sorted(missing)}")

    # Validate every line before touching stock or the case
    for line in case.lines:
        received = by_product[line.product_id]["quantity_received"]
        if received < 0:
            raise ValidationError("Received quantities must not be negative")
        if received > line.quantity_shipped:
            raise OverReceipt(line.product_id, received, line.quantity_shipped)

    short = False
    for line in case.lines:
        req = by_product[line.product_id]
        line.quantity_received = req["quantity_received"]
        line.substitute_product_id = req.get("substitute_product_id")
        line.reception_notes = req.get("reception_notes")
        if line.quantity_received < line.quantity_shipped:
            short = True
        if line.quantity_received > 0:
            inventory.add_stock(line.substitute_product_id or line.product_id, line.quantity_received)

    case.reception_date = reception_date
    case.state = SupplierCaseState.PARTIALLY_RECEIVED if short else SupplierCaseState.COMPLETED
    return Transition(
        entity_type="supplier_case",
        entity_id=case.id,
        from_state=SupplierCaseState.SHIPPED.value,
        to_state=case.state.value,
        occurred_at=clock.now(),
        actor_id=actor.actor_id,
        detail={
            "received": sum(l.quantity_received for l in case.lines),
            "shipped": sum(l.quantity_shipped for l in case.lines),
        },
    )
