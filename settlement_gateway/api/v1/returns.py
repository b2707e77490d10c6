"""Sales, returns with exchange, and supplier return cases"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from settlement_gateway.api.dependencies import get_actor, get_clock, get_request_id
from settlement_gateway.api.v1.audit import record_transition
from settlement_gateway.api.v1.schemas import (
    ExchangeLineSchema,
    ReceptionRequest,
    ReturnedLineSchema,
    ReturnRequest,
    ReturnResponse,
    SaleRequest,
    SaleResponse,
    SettlementSchema,
    ShipRequest,
    SupplierCaseResponse,
)
from settlement_gateway.domain import settlement as settlement_engine
from settlement_gateway.domain import supplier_returns
from settlement_gateway.domain.capabilities import Actor
from settlement_gateway.domain.clock import Clock
from settlement_gateway.domain.exceptions import DuplicateReturn, NotFoundError
from settlement_gateway.domain.models import (
    OwedByCustomer,
    OwedToCustomer,
    PaymentMethod,
    RefundMethod,
    SaleReturn,
    Transition,
)
from settlement_gateway.infrastructure.database.inventory import SqlInventory
from settlement_gateway.infrastructure.database.repositories import (
    AccountRepository,
    ReturnRepository,
    SaleRepository,
    SupplierCaseRepository,
)
from settlement_gateway.infrastructure.database.session import get_db, transactional
from settlement_gateway.infrastructure.observability.metrics import settlement_counter, supplier_reception_counter

router = APIRouter()


def _return_response(sale_return: SaleReturn, supplier_case_id: int | None) -> ReturnResponse:
    computation = sale_return.computation
    settlement = computation.settlement
    return ReturnResponse(
        id=sale_return.id,
        sale_id=sale_return.sale_id,
        general_reason=sale_return.general_reason,
        exchange_tag=computation.exchange_tag,
        total_returned=computation.total_returned,
        total_exchanged=computation.total_exchanged,
        balance=computation.balance,
        settlement=SettlementSchema(
            direction=settlement.direction,
            amount=getattr(settlement, "amount", 0),
            refund_method=settlement.refund_method if isinstance(settlement, OwedToCustomer) else None,
            payment_method=settlement.payment_method if isinstance(settlement, OwedByCustomer) else None,
        ),
        returned_lines=[ReturnedLineSchema.model_validate(l) for l in sale_return.returned_lines],
        exchange_lines=[ExchangeLineSchema.model_validate(l) for l in sale_return.exchange_lines],
        supplier_case_id=supplier_case_id,
        created_at=sale_return.created_at,
    )


def _supplier_case_id(db: Session, return_id: int) -> int | None:
    try:
        return SupplierCaseRepository(db).get_for_return(return_id).id
    except NotFoundError:
        return None


@router.post("/sales", response_model=SaleResponse, status_code=201)
def create_sale(
    body: SaleRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """Record a sale; paying with the credit account draws the total on it"""
    accounts = AccountRepository(db)
    with transactional(db):
        account = None
        if body.payment_method == PaymentMethod.CREDIT_ACCOUNT:
            account = accounts.get_active_for_customer(body.customer_id)
        sale = settlement_engine.record_sale(
            body.customer_id,
            [item.model_dump(exclude={"id"}) for item in body.items],
            body.payment_method,
            actor,
            SqlInventory(db),
            clock,
            account=account,
        )
        SaleRepository(db).create(sale)
        if account is not None:
            accounts.save(account)
    return SaleResponse.model_validate(sale)


@router.post("/sales/{sale_id}/returns", response_model=ReturnResponse, status_code=201)
def create_return(
    sale_id: int,
    body: ReturnRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Process a return with optional exchange as one atomic unit.

    Flow:
    1. Validate lines against the sale and the exchange against stock
    2. Net returned against exchanged value into exactly one settlement direction
    3. Restore or draw credit when the settlement goes through the credit account
    4. Move stock, persist the return and open a supplier case for defective items
    """
    trace_id = get_request_id(request)
    returns = ReturnRepository(db)
    accounts = AccountRepository(db)
    with transactional(db):
        sale = SaleRepository(db).get(sale_id)
        if returns.exists_for_sale(sale_id):
            raise DuplicateReturn(sale_id)

        account = None
        if body.refund_method == RefundMethod.CREDIT_ACCOUNT or body.payment_method == PaymentMethod.CREDIT_ACCOUNT:
            account = accounts.get_active_for_customer(sale.customer_id)

        sale_return = settlement_engine.process_return(
            sale,
            [line.model_dump() for line in body.returned_items],
            [line.model_dump() for line in body.exchange_items],
            body.general_reason,
            actor,
            SqlInventory(db),
            clock,
            refund_method=body.refund_method,
            payment_method=body.payment_method,
            account=account,
        )
        returns.create(sale_return)
        if account is not None:
            accounts.save(account)

        settlement = sale_return.computation.settlement
        record_transition(
            db,
            trace_id,
            Transition(
                entity_type="sale_return",
                entity_id=sale_return.id,
                from_state=None,
                to_state=settlement.direction,
                occurred_at=sale_return.created_at,
                actor_id=actor.actor_id,
                detail={"sale_id": sale_id, "amount": str(getattr(settlement, "amount", "0.00"))},
            ),
        )

        case = settlement_engine.open_supplier_case(sale_return)
        if case is not None:
            SupplierCaseRepository(db).save(case)
            record_transition(
                db,
                trace_id,
                Transition(
                    entity_type="supplier_case",
                    entity_id=case.id,
                    from_state=None,
                    to_state=case.state.value,
                    occurred_at=sale_return.created_at,
                    actor_id=actor.actor_id,
                    detail={"return_id": sale_return.id},
                ),
            )

    settlement_counter.labels(direction=settlement.direction).inc()
    return _return_response(sale_return, case.id if case else None)


@router.get("/returns/{return_id}", response_model=ReturnResponse)
def get_return(return_id: int, db: Session = Depends(get_db)):
    return _return_response(ReturnRepository(db).get(return_id), _supplier_case_id(db, return_id))


@router.get("/returns/{return_id}/supplier-case", response_model=SupplierCaseResponse)
def get_supplier_case(return_id: int, db: Session = Depends(get_db)):
    return SupplierCaseResponse.model_validate(SupplierCaseRepository(db).get_for_return(return_id))


@router.post("/returns/{return_id}/supplier-case/ship", response_model=SupplierCaseResponse)
def ship_supplier_case(
    return_id: int,
    body: ShipRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """Send defective units to the supplier; shipped units leave stock"""
    cases = SupplierCaseRepository(db)
    with transactional(db):
        sale_return = ReturnRepository(db).get(return_id)
        case = cases.get_for_return(return_id, for_update=True)
        transition = supplier_returns.ship(
            case,
            sale_return,
            body.supplier_ref,
            [line.model_dump() for line in body.lines] if body.lines is not None else None,
            actor,
            SqlInventory(db),
            clock,
        )
        cases.save(case)
        record_transition(db, get_request_id(request), transition)
    return SupplierCaseResponse.model_validate(case)


@router.post("/returns/{return_id}/supplier-case/confirm-reception", response_model=SupplierCaseResponse)
def confirm_supplier_reception(
    return_id: int,
    body: ReceptionRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Reconcile what the supplier sent back, exactly once per case.

    Short lines leave the case PARTIALLY_RECEIVED; received units enter stock
    under the substitute product when one was sent.
    """
    cases = SupplierCaseRepository(db)
    with transactional(db):
        case = cases.get_for_return(return_id, for_update=True)
        transition = supplier_returns.confirm_reception(
            case,
            [line.model_dump() for line in body.lines],
            body.reception_date,
            actor,
            SqlInventory(db),
            clock,
        )
        cases.save(case)
        record_transition(db, get_request_id(request), transition)

    supplier_reception_counter.labels(outcome=case.state.value).inc()
    return SupplierCaseResponse.model_validate(case)
