"""Proof-of-payment verification workflow.

One state machine serves both credit installments and guest order payments.
A ``WorkflowVariant`` declares, per payment kind, which states accept proofs,
which states can be decided and what an approval does; the workflow itself
owns the guarded transitions, so both kinds get the same double-decision and
deadline guarantees.

Installment:  PENDING -> VERIFIED | REJECTED                      (terminal)
Order:        AWAITING_PAYMENT -> AWAITING_PAYMENT_TIMEBOXED
              AWAITING_PAYMENT* | PARTIALLY_PAID -> IN_VERIFICATION  (proof)
              IN_VERIFICATION -> CONFIRMED | PARTIALLY_PAID | CANCELLED
              AWAITING_PAYMENT_TIMEBOXED -> CANCELLED_BY_INACTIVITY  (deadline)

Cancelling an order gives the credit it drew back to the account, as far as
the account can still take it; the rest becomes a refund due to the customer.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Union

from settlement_gateway.domain.capabilities import Actor, Capability
from settlement_gateway.domain.clock import Clock
from settlement_gateway.domain.exceptions import (
    AccountNotActive,
    AlreadyDecided,
    InvalidTransition,
    NotFoundError,
    OverpaymentRejected,
    ValidationError,
)
from settlement_gateway.domain.ledger import LedgerAccount
from settlement_gateway.domain.models import (
    AccountState,
    DeliveryMethod,
    GuestOrder,
    Installment,
    InstallmentState,
    OrderState,
    PaymentMethod,
    ProofOfPayment,
    Transition,
    Verdict,
)
from settlement_gateway.domain.money import ZERO, require_positive, to_money
from settlement_gateway.utils.date_utils import add_minutes

Payable = Union[Installment, GuestOrder]


class PaymentKind(str, Enum):
    INSTALLMENT = "installment"
    ORDER_PAYMENT = "order_payment"


def _approve_installment(installment: Installment, verified_amount, account: Optional[LedgerAccount]):
    if not installment.proofs:
        raise ValidationError("A proof of payment is required before verification")
    if account is None or account.id != installment.account_id:
        raise NotFoundError("credit_account", installment.account_id)
    # Ledger first: an overpayment aborts before the installment changes
    account.apply_installment(installment.amount)
    return InstallmentState.VERIFIED


def _reject_installment(installment: Installment, reason: str, account):
    installment.rejection_reason = reason
    return InstallmentState.REJECTED


def _approve_order_payment(order: GuestOrder, verified_amount, account):
    if verified_amount is None:
        raise ValidationError("verified_amount is required to approve an order payment")
    amount = require_positive(verified_amount, "verified_amount")
    if amount > order.outstanding:
        raise OverpaymentRejected(amount, order.outstanding)
    order.verified_paid_amount += amount
    return OrderState.CONFIRMED if order.outstanding == ZERO else OrderState.PARTIALLY_PAID


def _reject_order_payment(order: GuestOrder, reason: str, account: Optional[LedgerAccount]):
    _release_order_credit(order, account)
    order.cancellation_reason = reason
    return OrderState.CANCELLED


@dataclass(frozen=True)
class WorkflowVariant:
    kind: PaymentKind
    entity_type: str
    accepts_proofs: FrozenSet[Enum]
    decidable: FrozenSet[Enum]
    in_review: Optional[Enum]  # state a proof submission moves the entity to
    capability: Capability
    on_approve: Callable
    on_reject: Callable


INSTALLMENT = WorkflowVariant(
    kind=PaymentKind.INSTALLMENT,
    entity_type="installment",
    accepts_proofs=frozenset({InstallmentState.PENDING}),
    decidable=frozenset({InstallmentState.PENDING}),
    in_review=None,
    capability=Capability.VERIFY_INSTALLMENTS,
    on_approve=_approve_installment,
    on_reject=_reject_installment,
)

ORDER_PAYMENT = WorkflowVariant(
    kind=PaymentKind.ORDER_PAYMENT,
    entity_type="guest_order",
    accepts_proofs=frozenset(
        {
            OrderState.AWAITING_PAYMENT,
            OrderState.AWAITING_PAYMENT_TIMEBOXED,
            OrderState.IN_VERIFICATION,
            OrderState.PARTIALLY_PAID,
        }
    ),
    decidable=frozenset({OrderState.IN_VERIFICATION}),
    in_review=OrderState.IN_VERIFICATION,
    capability=Capability.VERIFY_ORDER_PAYMENTS,
    on_approve=_approve_order_payment,
    on_reject=_reject_order_payment,
)


class ProofOfPaymentWorkflow:
    """Guarded transitions shared by every payment kind"""

    def __init__(self, variant: WorkflowVariant, clock: Clock):
        self.variant = variant
        self.clock = clock

    def _transition(self, entity: Payable, to_state, actor: Optional[Actor] = None, **detail) -> Transition:
        from_state = entity.state
        entity.state = to_state
        return Transition(
            entity_type=self.variant.entity_type,
            entity_id=entity.id,
            from_state=from_state.value,
            to_state=to_state.value,
            occurred_at=self.clock.now(),
            actor_id=actor.actor_id if actor else None,
            detail=detail,
        )

    def submit_proof(self, entity: Payable, proof_ref: str) -> Optional[Transition]:
        """
        Attach a proof. Proofs accumulate until a decision is made.

        A timeboxed order whose deadline has already passed is cancelled first,
        so a late proof always loses to the deadline, whether the sweep ran or not.

        Returns:
            The state transition caused by the submission, if any
        """
        if not proof_ref or not proof_ref.strip():
            raise ValidationError("proof_ref must not be empty")

        self.check_deadline(entity)
        if entity.state not in self.variant.accepts_proofs:
            raise AlreadyDecided(self.variant.entity_type, entity.id, entity.state.value)

        entity.proofs.append(ProofOfPayment(ref=proof_ref.strip(), submitted_at=self.clock.now()))

        if self.variant.in_review is not None and entity.state != self.variant.in_review:
            if entity.state == OrderState.AWAITING_PAYMENT_TIMEBOXED:
                entity.payment_deadline = None
            return self._transition(entity, self.variant.in_review, proof_ref=proof_ref)
        return None

    def decide(
        self,
        entity: Payable,
        verdict: Verdict,
        actor: Actor,
        reason: Optional[str] = None,
        verified_amount: Optional[Decimal] = None,
        account: Optional[LedgerAccount] = None,
    ) -> Transition:
        """
        Single authoritative decision.

        The first decision wins; any later call fails with AlreadyDecided.
        Side effects of an approval (ledger application, verified amounts) run
        before the state changes and abort the whole decision on failure.
        """
        actor.require(self.variant.capability)
        if entity.state not in self.variant.decidable:
            raise AlreadyDecided(self.variant.entity_type, entity.id, entity.state.value)

        if verdict == Verdict.APPROVE:
            to_state = self.variant.on_approve(entity, verified_amount, account)
            detail = {"verdict": verdict.value}
            if verified_amount is not None:
                detail["verified_amount"] = str(to_money(verified_amount))
        else:
            if not reason or not reason.strip():
                raise ValidationError("A reason is required to reject a payment")
            to_state = self.variant.on_reject(entity, reason.strip(), account)
            detail = {"verdict": verdict.value, "reason": reason.strip()}
            if isinstance(entity, GuestOrder):
                detail.update(_credit_release_detail(entity))

        if isinstance(entity, Installment):
            entity.decided_at = self.clock.now()
            entity.decided_by = actor.actor_id
        return self._transition(entity, to_state, actor, **detail)

    def check_deadline(self, entity: Payable) -> Optional[Transition]:
        """
        Cancel a timeboxed order whose payment deadline has passed.

        Safe to call any number of times, from a sweep or lazily on read:
        only the first call after the deadline changes anything.
        """
        if not isinstance(entity, GuestOrder):
            return None
        if entity.state != OrderState.AWAITING_PAYMENT_TIMEBOXED:
            return None
        now = self.clock.now()
        if entity.payment_deadline is None or now <= entity.payment_deadline:
            return None

        deadline = entity.payment_deadline
        entity.payment_deadline = None
        entity.cancellation_reason = "No proof of payment received before the deadline"
        return self._transition(
            entity, OrderState.CANCELLED_BY_INACTIVITY, deadline=deadline.isoformat()
        )


def installment_workflow(clock: Clock) -> ProofOfPaymentWorkflow:
    return ProofOfPaymentWorkflow(INSTALLMENT, clock)


def order_payment_workflow(clock: Clock) -> ProofOfPaymentWorkflow:
    return ProofOfPaymentWorkflow(ORDER_PAYMENT, clock)


# Order lifecycle outside the proof workflow

FULFILMENT_TRANSITIONS: Dict[OrderState, FrozenSet[OrderState]] = {
    OrderState.AWAITING_PAYMENT: frozenset({OrderState.CANCELLED}),
    OrderState.AWAITING_PAYMENT_TIMEBOXED: frozenset({OrderState.CANCELLED}),
    OrderState.IN_VERIFICATION: frozenset({OrderState.CANCELLED}),
    OrderState.PARTIALLY_PAID: frozenset({OrderState.CANCELLED}),
    OrderState.CONFIRMED: frozenset({OrderState.SHIPPED, OrderState.CANCELLED}),
    OrderState.SHIPPED: frozenset({OrderState.DELIVERED, OrderState.CANCELLED}),
}

# Store pickup skips shipping: a confirmed order is handed over at the counter
PICKUP_TRANSITIONS: Dict[OrderState, FrozenSet[OrderState]] = {
    **FULFILMENT_TRANSITIONS,
    OrderState.CONFIRMED: frozenset({OrderState.DELIVERED, OrderState.CANCELLED}),
}


def _release_order_credit(order: GuestOrder, account: Optional[LedgerAccount]) -> None:
    """
    Give back the credit a cancelled order drew.

    The customer may have repaid part or all of it in the meantime, so only
    what is still owed goes back to the account, and only while the account
    is open. Whatever cannot be restored is recorded as a refund due.
    """
    if order.credit_amount_used == ZERO:
        return
    if account is None or account.id != order.credit_account_id:
        raise NotFoundError("credit_account", order.credit_account_id)

    restorable = ZERO
    if account.state in (AccountState.ACTIVE, AccountState.DEFAULTED):
        restorable = min(order.credit_amount_used, account.principal_owed)
    if restorable > ZERO:
        account.restore(restorable)
    order.credit_refund_due = order.credit_amount_used - restorable


def _credit_release_detail(order: GuestOrder) -> dict:
    if order.credit_amount_used == ZERO:
        return {}
    return {
        "credit_restored": str(order.credit_amount_used - order.credit_refund_due),
        "credit_refund_due": str(order.credit_refund_due),
    }


def open_guest_order(
    total: Decimal,
    clock: Clock,
    timeboxed: bool = False,
    window_minutes: int = 60,
    account: Optional[LedgerAccount] = None,
    credit_amount: Optional[Decimal] = None,
    delivery_method: DeliveryMethod = DeliveryMethod.SHIPPING,
) -> GuestOrder:
    """
    Open an order awaiting payment.

    Part (or all) of the total may be drawn on the customer's credit account;
    an order fully covered by credit is confirmed immediately. Timeboxed orders
    get a payment deadline ``window_minutes`` from now.
    """
    total = require_positive(total, "total")
    order = GuestOrder(tracking_token=uuid.uuid4().hex, total=total, delivery_method=delivery_method)

    if credit_amount is not None and to_money(credit_amount) > ZERO:
        if account is None:
            raise ValidationError("A credit account is required to pay with credit")
        if timeboxed:
            raise ValidationError("Orders paid partly with credit cannot be timeboxed")
        credit = to_money(credit_amount)
        if credit > total:
            raise ValidationError("credit_amount cannot exceed the order total")
        account.draw(credit)
        order.credit_amount_used = credit
        order.credit_account_id = account.id
        if order.outstanding == ZERO:
            order.state = OrderState.CONFIRMED
            return order

    if timeboxed:
        start_timebox(order, clock, window_minutes)
    return order


def start_timebox(order: GuestOrder, clock: Clock, window_minutes: int) -> Transition:
    if order.state != OrderState.AWAITING_PAYMENT:
        raise InvalidTransition(
            "guest_order", order.id, order.state.value, OrderState.AWAITING_PAYMENT_TIMEBOXED.value
        )
    if window_minutes <= 0:
        raise ValidationError("window_minutes must be positive")
    if order.credit_amount_used > ZERO:
        raise ValidationError("Orders paid partly with credit cannot be timeboxed")
    now = clock.now()
    order.payment_deadline = add_minutes(now, window_minutes)
    order.state = OrderState.AWAITING_PAYMENT_TIMEBOXED
    return Transition(
        entity_type="guest_order",
        entity_id=order.id,
        from_state=OrderState.AWAITING_PAYMENT.value,
        to_state=order.state.value,
        occurred_at=now,
        detail={"payment_deadline": order.payment_deadline.isoformat()},
    )


def change_order_status(
    order: GuestOrder,
    target: OrderState,
    actor: Actor,
    clock: Clock,
    reason: Optional[str] = None,
    account: Optional[LedgerAccount] = None,
) -> Transition:
    """Fulfilment and manual cancellation; cancelling gives drawn credit back."""
    actor.require(Capability.VERIFY_ORDER_PAYMENTS)
    table = PICKUP_TRANSITIONS if order.delivery_method == DeliveryMethod.STORE_PICKUP else FULFILMENT_TRANSITIONS
    allowed = table.get(order.state, frozenset())
    if target not in allowed:
        raise InvalidTransition("guest_order", order.id, order.state.value, target.value)

    detail = {}
    if target == OrderState.CANCELLED:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to cancel an order")
        _release_order_credit(order, account)
        order.cancellation_reason = reason.strip()
        order.payment_deadline = None
        detail["reason"] = order.cancellation_reason
        detail.update(_credit_release_detail(order))

    from_state = order.state
    order.state = target
    return Transition(
        entity_type="guest_order",
        entity_id=order.id,
        from_state=from_state.value,
        to_state=target.value,
        occurred_at=clock.now(),
        actor_id=actor.actor_id,
        detail=detail,
    )


def capture_installment(
    account: LedgerAccount,
    amount: Decimal,
    paid_on_date,
    payment_method,
    clock: Clock,
    proof_ref: Optional[str] = None,
) -> Installment:
    """
    Register a customer payment awaiting verification.

    A pending installment has no effect on the ledger; the amount is checked
    against what is payable now and again when the installment is verified.
    """
    amount = require_positive(amount)
    if account.state not in (AccountState.ACTIVE, AccountState.DEFAULTED):
        raise AccountNotActive(f"Credit account {account.id} is {account.state.value}")
    if amount > account.total_payable:
        raise OverpaymentRejected(amount, account.total_payable)
    if payment_method == PaymentMethod.CREDIT_ACCOUNT:
        raise ValidationError("An installment cannot be paid with the credit account itself")
    if paid_on_date > clock.today():
        raise ValidationError("paid_on_date cannot be in the future")

    now = clock.now()
    installment = Installment(
        account_id=account.id,
        amount=amount,
        paid_on_date=paid_on_date,
        payment_method=payment_method,
        submitted_at=now,
    )
    if proof_ref and proof_ref.strip():
        installment.proofs.append(ProofOfPayment(ref=proof_ref.strip(), submitted_at=now))
    return installment
