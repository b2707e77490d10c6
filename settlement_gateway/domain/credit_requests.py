"""Credit request decisions: an approval opens the customer's credit account"""

from decimal import Decimal
from typing import Optional, Tuple

from settlement_gateway.domain.capabilities import Actor, Capability
from settlement_gateway.domain.clock import Clock
from settlement_gateway.domain.exceptions import ActiveAccountExists, AlreadyDecided, ValidationError
from settlement_gateway.domain.ledger import LedgerAccount
from settlement_gateway.domain.models import CreditRequest, CreditRequestState, Transition, Verdict
from settlement_gateway.domain.money import require_positive


def open_request(customer_id: str, requested_amount: Decimal, requested_term_days: int) -> CreditRequest:
    if not customer_id:
        raise ValidationError("customer_id is required")
    if requested_term_days <= 0:
        raise ValidationError("requested_term_days must be positive")
    return CreditRequest(
        customer_id=customer_id,
        requested_amount=require_positive(requested_amount, "requested_amount"),
        requested_term_days=requested_term_days,
    )


def decide(
    request: CreditRequest,
    verdict: Verdict,
    actor: Actor,
    clock: Clock,
    has_active_account: bool,
    approved_amount: Optional[Decimal] = None,
    note: Optional[str] = None,
) -> Tuple[Transition, Optional[LedgerAccount]]:
    """
    Decide a pending request exactly once.

    Rejection needs a note. Approval needs a positive amount (the requested
    amount unless overridden) and returns the new ACTIVE account, which the
    caller persists before stamping ``resulting_account_id``.
    """
    actor.require(Capability.DECIDE_CREDIT_REQUESTS)
    if request.state != CreditRequestState.PENDING:
        raise AlreadyDecided("credit_request", request.id, request.state.value)

    note = note.strip() if note else None
    account = None
    if verdict == Verdict.REJECT:
        if not note:
            raise ValidationError("A note is required to reject a credit request")
        request.state = CreditRequestState.REJECTED
    else:
        amount = require_positive(
            approved_amount if approved_amount is not None else request.requested_amount,
            "approved_amount",
        )
        if has_active_account:
            raise ActiveAccountExists(request.customer_id)
        account = LedgerAccount.open(
            customer_id=request.customer_id,
            approved_limit=amount,
            term_days=request.requested_term_days,
            granted_at=clock.today(),
        )
        request.approved_amount = amount
        request.state = CreditRequestState.APPROVED

    request.decision_note = note
    request.decided_at = clock.now()
    request.decided_by = actor.actor_id
    detail = {"verdict": verdict.value}
    if request.approved_amount is not None:
        detail["approved_amount"] = str(request.approved_amount)
    return (
        Transition(
            entity_type="credit_request",
            entity_id=request.id,
            from_state=CreditRequestState.PENDING.value,
            to_state=request.state.value,
            occurred_at=request.decided_at,
            actor_id=actor.actor_id,
            detail=detail,
        ),
        account,
    )
