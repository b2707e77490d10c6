"""Credit accounts, installments and credit requests"""

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from settlement_gateway.api.dependencies import check_proof_ref, get_actor, get_blob_store, get_clock, get_request_id
from settlement_gateway.api.v1.audit import record_transition
from settlement_gateway.api.v1.schemas import (
    AccountResponse,
    AccrueInterestRequest,
    AccrueInterestResponse,
    CreditRequestCreate,
    CreditRequestDecision,
    CreditRequestResponse,
    InstallmentDecisionResponse,
    InstallmentRequest,
    InstallmentResponse,
    ProofRequest,
    RejectRequest,
)
from settlement_gateway.config import settings
from settlement_gateway.domain import credit_requests
from settlement_gateway.domain.capabilities import Actor, Capability
from settlement_gateway.domain.clock import Clock
from settlement_gateway.domain.models import AccountState, Transition, Verdict
from settlement_gateway.domain.proof_workflow import capture_installment, installment_workflow
from settlement_gateway.infrastructure.clients.blob_store import BlobStoreClient
from settlement_gateway.infrastructure.database.repositories import (
    AccountRepository,
    CreditRequestRepository,
    InstallmentRepository,
)
from settlement_gateway.infrastructure.database.session import get_db, transactional
from settlement_gateway.infrastructure.observability.metrics import (
    installment_decision_counter,
    record_credit_request_decision,
)

router = APIRouter()


def _account_transition(account, from_state: AccountState | None, actor: Actor, now: datetime, **detail) -> Transition:
    return Transition(
        entity_type="credit_account",
        entity_id=account.id,
        from_state=from_state.value if from_state else None,
        to_state=account.state.value,
        occurred_at=now,
        actor_id=actor.actor_id,
        detail=detail,
    )


# Accounts


@router.get("/credit-accounts/{account_id}", response_model=AccountResponse)
def get_account(account_id: int, db: Session = Depends(get_db)):
    return AccountResponse.model_validate(AccountRepository(db).get(account_id))


@router.get("/credit-accounts/{account_id}/installments", response_model=list[InstallmentResponse])
def list_installments(account_id: int, db: Session = Depends(get_db)):
    """Installments of an account, newest first"""
    AccountRepository(db).get(account_id)
    return [InstallmentResponse.model_validate(i) for i in InstallmentRepository(db).list_for_account(account_id)]


@router.post("/credit-accounts/{account_id}/accrue-interest", response_model=AccrueInterestResponse)
def accrue_interest(
    account_id: int,
    body: AccrueInterestRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Accrue late interest up to ``as_of`` (default today).

    The rate is the server-side configured one; repeating the call for the
    same date adds nothing.
    """
    actor.require(Capability.MANAGE_ACCOUNTS)
    as_of = body.as_of or clock.today()
    accounts = AccountRepository(db)
    with transactional(db):
        account = accounts.get(account_id, for_update=True)
        added = account.accrue_interest(settings.late_interest_annual_rate, as_of)
        accounts.save(account)
    return AccrueInterestResponse(interest_added=added, account=AccountResponse.model_validate(account))


@router.post("/credit-accounts/{account_id}/default", response_model=AccountResponse)
def mark_defaulted(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """Move an overdue account with an outstanding balance to DEFAULTED"""
    actor.require(Capability.MANAGE_ACCOUNTS)
    accounts = AccountRepository(db)
    with transactional(db):
        account = accounts.get(account_id, for_update=True)
        account.mark_defaulted(clock.today())
        accounts.save(account)
        record_transition(
            db, get_request_id(request), _account_transition(account, AccountState.ACTIVE, actor, clock.now())
        )
    return AccountResponse.model_validate(account)


@router.post("/credit-accounts/{account_id}/cancel", response_model=AccountResponse)
def cancel_account(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """Close an account that owes nothing, freeing the customer for a new request"""
    actor.require(Capability.MANAGE_ACCOUNTS)
    accounts = AccountRepository(db)
    with transactional(db):
        account = accounts.get(account_id, for_update=True)
        account.cancel()
        accounts.save(account)
        record_transition(
            db, get_request_id(request), _account_transition(account, AccountState.ACTIVE, actor, clock.now())
        )
    return AccountResponse.model_validate(account)


# Installments


@router.post("/credit-accounts/{account_id}/installments", response_model=InstallmentResponse, status_code=201)
async def create_installment(
    account_id: int,
    body: InstallmentRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
    blob_store: BlobStoreClient = Depends(get_blob_store),
):
    """
    Register a customer payment awaiting verification.

    The ledger is untouched until an operator verifies the installment.
    """
    if body.proof_ref:
        await check_proof_ref(blob_store, body.proof_ref)

    with transactional(db):
        account = AccountRepository(db).get(account_id)
        installment = capture_installment(
            account, body.amount, body.paid_on_date, body.payment_method, clock, proof_ref=body.proof_ref
        )
        InstallmentRepository(db).save(installment)
        record_transition(
            db,
            get_request_id(request),
            Transition(
                entity_type="installment",
                entity_id=installment.id,
                from_state=None,
                to_state=installment.state.value,
                occurred_at=installment.submitted_at,
                actor_id=actor.actor_id,
                detail={"amount": str(installment.amount)},
            ),
        )
    return InstallmentResponse.model_validate(installment)


@router.post("/installments/{installment_id}/proofs", response_model=InstallmentResponse)
async def add_installment_proof(
    installment_id: int,
    body: ProofRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    blob_store: BlobStoreClient = Depends(get_blob_store),
):
    await check_proof_ref(blob_store, body.proof_ref)
    installments = InstallmentRepository(db)
    with transactional(db):
        installment = installments.get(installment_id, for_update=True)
        installment_workflow(clock).submit_proof(installment, body.proof_ref)
        installments.save(installment)
    return InstallmentResponse.model_validate(installment)


def _decide_installment(db, request_id, installment_id, verdict, actor, clock, reason=None):
    installments = InstallmentRepository(db)
    accounts = AccountRepository(db)
    with transactional(db):
        installment = installments.get(installment_id, for_update=True)
        account = accounts.get(installment.account_id, for_update=True)
        previous_state = account.state
        transition = installment_workflow(clock).decide(installment, verdict, actor, reason=reason, account=account)
        installments.save(installment)
        accounts.save(account)
        record_transition(db, request_id, transition)
        if account.state != previous_state:
            record_transition(db, request_id, _account_transition(account, previous_state, actor, clock.now()))

    installment_decision_counter.labels(verdict=verdict.value).inc()
    return InstallmentDecisionResponse(
        installment=InstallmentResponse.model_validate(installment),
        account=AccountResponse.model_validate(account),
    )


@router.post("/installments/{installment_id}/verify", response_model=InstallmentDecisionResponse)
def verify_installment(
    installment_id: int,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Approve a pending installment and apply it to the ledger.

    Flow:
    1. Lock installment and account
    2. Apply the amount (principal first, then interest); an overpayment aborts
    3. Mark the installment VERIFIED; the account is PAID_OFF once nothing is owed
    """
    return _decide_installment(db, get_request_id(request), installment_id, Verdict.APPROVE, actor, clock)


@router.post("/installments/{installment_id}/reject", response_model=InstallmentDecisionResponse)
def reject_installment(
    installment_id: int,
    body: RejectRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    return _decide_installment(
        db, get_request_id(request), installment_id, Verdict.REJECT, actor, clock, reason=body.reason
    )


# Credit requests


@router.post("/credit-requests", response_model=CreditRequestResponse, status_code=201)
def create_credit_request(
    body: CreditRequestCreate,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    with transactional(db):
        credit_request = credit_requests.open_request(
            body.customer_id, body.requested_amount, body.requested_term_days
        )
        CreditRequestRepository(db).save(credit_request)
        record_transition(
            db,
            get_request_id(request),
            Transition(
                entity_type="credit_request",
                entity_id=credit_request.id,
                from_state=None,
                to_state=credit_request.state.value,
                occurred_at=clock.now(),
                actor_id=actor.actor_id,
            ),
        )
    return CreditRequestResponse.model_validate(credit_request)


@router.get("/credit-requests/{request_id}", response_model=CreditRequestResponse)
def get_credit_request(request_id: int, db: Session = Depends(get_db)):
    return CreditRequestResponse.model_validate(CreditRequestRepository(db).get(request_id))


@router.post("/credit-requests/{request_id}/decide", response_model=CreditRequestResponse)
def decide_credit_request(
    request_id: int,
    body: CreditRequestDecision,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    clock: Clock = Depends(get_clock),
):
    """
    Approve or reject a pending credit request.

    Approval opens exactly one ACTIVE account and stamps its id on the request.
    A customer holding an active account cannot be approved again.
    """
    trace_id = get_request_id(request)
    requests_repo = CreditRequestRepository(db)
    accounts = AccountRepository(db)
    with transactional(db):
        credit_request = requests_repo.get(request_id, for_update=True)
        has_active = accounts.get_active_for_customer(credit_request.customer_id) is not None
        transition, account = credit_requests.decide(
            credit_request,
            body.verdict,
            actor,
            clock,
            has_active_account=has_active,
            approved_amount=body.approved_amount,
            note=body.note,
        )
        if account is not None:
            accounts.save(account)
            credit_request.resulting_account_id = account.id
            transition.detail["account_id"] = account.id
            record_transition(db, trace_id, _account_transition(account, None, actor, clock.now()))
        requests_repo.save(credit_request)
        record_transition(db, trace_id, transition)

    record_credit_request_decision(body.verdict.value, account.approved_limit if account else None)
    return CreditRequestResponse.model_validate(credit_request)
