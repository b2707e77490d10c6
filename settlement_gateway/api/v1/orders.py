"""Guest orders: tracking, payment proofs, verification and deadlines"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from settlement_gateway.api.dependencies import check_proof_ref, get_actor, get_blob_store, get_clock, get_request_id
from settlement_gateway.api.v1.audit import record_transition
from settlement_gateway.api.v1.schemas import (
    OrderCreate,
    OrderDecision,
    OrderResponse,
    OrderStatusChange,
    ProofRequest,
    SweepResponse,
    TimeboxRequest,
)
from settlement_gateway.config import settings
from settlement_gateway.domain.capabilities import Actor, Capability
from settlement_gateway.domain.clock import Clock
from settlement_gateway.domain.exceptions import ValidationError
from settlement_gateway.domain.models import GuestOrder, Transition
from settlement_gateway.domain.money import ZERO
from settlement_gateway.domain.proof_workflow import (
    change_order_status,
    open_guest_order,
    order_payment_workflow,
    start_timebox,
)
from settlement_gateway.infrastructure.clients.blob_store import BlobStoreClient
from settlement_gateway.infrastructure.database.repositories import AccountRepository, OrderRepository
from settlement_gateway.infrastructure.database.session import get_db, transactional
from settlement_gateway.infrastructure.observability.metrics import (
    order_auto_cancel_counter,
    order_payment_decision_counter,
)

router = APIRouter()


def _expire_if_overdue(db: Session, token: str, clock: Clock, request_id: str) -> GuestOrder:
    """
    Apply a passed payment deadline in its own transaction.

    Committing the cancellation before the caller's own work keeps it even
    when that work fails, so a late proof never undoes the deadline.
    """
    orders = OrderRepository(db)
    with transactional(db):
        order = orders.get_by_token(token, for_update=True)
        transition = order_payment_workflow(clock).check_deadline(order)
        if transition is not None:
            orders.save(order)
            record_transition(db, request_id, transition)
    if transition is not None:
        order_auto_cancel_counter.labels(trigger="lazy").inc()
    return order


def _order_account(db: Session, order: GuestOrder):
    if order.credit_amount_used > ZERO:
        return AccountRepository(db).get(order.credit_account_id, for_update=True)
    return None


@router.post("/orders", response_model=OrderResponse, status_code=201)
def create_order(
    body: OrderCreate,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Open an order awaiting payment.

    Drawing part of the total on a customer's credit account is a store
    operation and needs the sales capability.
    """
    accounts = AccountRepository(db)
    with transactional(db):
        account = None
        if body.credit_amount is not None:
            actor.require(Capability.RECORD_SALES)
            if not body.customer_id:
                raise ValidationError("customer_id is required to pay with credit")
            account = accounts.get_active_for_customer(body.customer_id)
            if account is None:
                raise ValidationError(f"Customer {body.customer_id} has no active credit account")

        order = open_guest_order(
            body.total,
            clock,
            timeboxed=body.timeboxed,
            window_minutes=settings.order_payment_window_minutes,
            account=account,
            credit_amount=body.credit_amount,
            delivery_method=body.delivery_method,
        )
        OrderRepository(db).save(order)
        if account is not None:
            accounts.save(account)
        record_transition(
            db,
            get_request_id(request),
            Transition(
                entity_type="guest_order",
                entity_id=order.id,
                from_state=None,
                to_state=order.state.value,
                occurred_at=clock.now(),
                actor_id=actor.actor_id,
                detail={
                    "total": str(order.total),
                    "credit_amount_used": str(order.credit_amount_used),
                    "delivery_method": order.delivery_method.value,
                },
            ),
        )
    return OrderResponse.model_validate(order)


@router.get("/orders/{token}", response_model=OrderResponse)
def get_order(
    token: str,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Order status by tracking token; an overdue timeboxed order is cancelled on read"""
    return OrderResponse.model_validate(_expire_if_overdue(db, token, clock, get_request_id(request)))


@router.post("/orders/{token}/timebox", response_model=OrderResponse)
def timebox_order(
    token: str,
    body: TimeboxRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Start the payment window; the order is cancelled if no proof arrives in time"""
    orders = OrderRepository(db)
    with transactional(db):
        order = orders.get_by_token(token, for_update=True)
        transition = start_timebox(order, clock, body.window_minutes or settings.order_payment_window_minutes)
        orders.save(order)
        record_transition(db, get_request_id(request), transition)
    return OrderResponse.model_validate(order)


@router.post("/orders/{token}/proofs", response_model=OrderResponse)
async def submit_order_proof(
    token: str,
    body: ProofRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    blob_store: BlobStoreClient = Depends(get_blob_store),
):
    """Attach a proof of payment; the order moves to IN_VERIFICATION"""
    request_id = get_request_id(request)
    await check_proof_ref(blob_store, body.proof_ref)
    _expire_if_overdue(db, token, clock, request_id)

    orders = OrderRepository(db)
    with transactional(db):
        order = orders.get_by_token(token, for_update=True)
        transition = order_payment_workflow(clock).submit_proof(order, body.proof_ref)
        orders.save(order)
        record_transition(db, request_id, transition)
    return OrderResponse.model_validate(order)


@router.post("/orders/{token}/decide", response_model=OrderResponse)
def decide_order_payment(
    token: str,
    body: OrderDecision,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Verify the proofs of an order in IN_VERIFICATION.

    Approval adds ``verified_amount`` to what has been paid (CONFIRMED once
    nothing is outstanding, PARTIALLY_PAID otherwise). Rejection cancels the
    order and gives back any credit it drew.
    """
    orders = OrderRepository(db)
    accounts = AccountRepository(db)
    with transactional(db):
        order = orders.get_by_token(token, for_update=True)
        account = _order_account(db, order)
        transition = order_payment_workflow(clock).decide(
            order,
            body.verdict,
            actor,
            reason=body.reason,
            verified_amount=body.verified_amount,
            account=account,
        )
        orders.save(order)
        if account is not None:
            accounts.save(account)
        record_transition(db, get_request_id(request), transition)

    order_payment_decision_counter.labels(verdict=body.verdict.value).inc()
    return OrderResponse.model_validate(order)


@router.post("/orders/{token}/status", response_model=OrderResponse)
def change_status(
    token: str,
    body: OrderStatusChange,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Fulfilment and manual cancellation.

    Shipped orders go CONFIRMED -> SHIPPED -> DELIVERED; store pickup orders go
    straight from CONFIRMED to DELIVERED. Cancelling releases drawn credit and
    reports any part the account could not take back as ``credit_refund_due``.
    """
    orders = OrderRepository(db)
    accounts = AccountRepository(db)
    with transactional(db):
        order = orders.get_by_token(token, for_update=True)
        account = _order_account(db, order)
        transition = change_order_status(order, body.status, actor, clock, reason=body.reason, account=account)
        orders.save(order)
        if account is not None:
            accounts.save(account)
        record_transition(db, get_request_id(request), transition)
    return OrderResponse.model_validate(order)


@router.post("/orders/sweep-deadlines", response_model=SweepResponse)
def sweep_deadlines(
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Cancel every timeboxed order whose deadline has passed.

    Meant for a scheduler; safe to run concurrently with lazy checks and with
    itself, since each order is cancelled by whichever check locks it first.
    """
    actor.require(Capability.VERIFY_ORDER_PAYMENTS)
    request_id = get_request_id(request)
    orders = OrderRepository(db)
    workflow = order_payment_workflow(clock)
    cancelled = []
    with transactional(db):
        for order in orders.list_overdue_timeboxed(clock.now()):
            transition = workflow.check_deadline(order)
            if transition is None:
                continue
            orders.save(order)
            record_transition(db, request_id, transition)
            cancelled.append(order.tracking_token)

    if cancelled:
        order_auto_cancel_counter.labels(trigger="sweep").inc(len(cancelled))
    return SweepResponse(cancelled=cancelled)
