"""Data access layer: maps ORM rows to domain objects and back"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_gateway.domain.exceptions import (
    ActiveAccountExists,
    ConcurrentModification,
    DuplicateReturn,
    NotFoundError,
)
from settlement_gateway.domain.ledger import LedgerAccount
from settlement_gateway.domain.models import (
    AccountState,
    CreditRequest,
    CreditRequestState,
    DeliveryMethod,
    ExchangeLine,
    ExchangeTag,
    GuestOrder,
    Installment,
    InstallmentState,
    NoSettlement,
    OrderState,
    OwedByCustomer,
    OwedToCustomer,
    PaymentMethod,
    ProofOfPayment,
    ReasonCode,
    RefundMethod,
    ReturnedLine,
    Sale,
    SaleItem,
    SaleReturn,
    SettlementComputation,
    SupplierCaseLine,
    SupplierCaseState,
    SupplierReturnCase,
    Transition,
)
from settlement_gateway.infrastructure.database.models import (
    CreditAccount,
    CreditInstallment,
    CreditRequestRecord,
    ExchangeLineRecord,
    GuestOrderRecord,
    ReturnedLineRecord,
    SaleItemRecord,
    SaleRecord,
    SaleReturnRecord,
    StateTransitionRecord,
    SupplierCaseLineRecord,
    SupplierCaseRecord,
)


def _proofs_to_json(proofs: List[ProofOfPayment]) -> list:
    return [{"ref": p.ref, "submitted_at": p.submitted_at.isoformat()} for p in proofs]


def _proofs_from_json(data: Optional[list]) -> List[ProofOfPayment]:
    return [
        ProofOfPayment(ref=p["ref"], submitted_at=datetime.fromisoformat(p["submitted_at"]))
        for p in (data or [])
    ]


def _load(db: Session, model, entity_id, entity_type: str, for_update: bool):
    query = db.query(model).filter(model.id == entity_id)
    if for_update:
        query = query.with_for_update()
    row = query.first()
    if row is None:
        raise NotFoundError(entity_type, entity_id)
    return row


def _current_row(db: Session, model, entity, entity_type: str):
    """
    Row an update applies to.

    The entity must have been read at the row's current version; the
    version column then catches a writer that commits in between.
    """
    row = db.get(model, entity.id)
    if row is None:
        raise NotFoundError(entity_type, entity.id)
    if row.version != entity.version:
        raise ConcurrentModification(
            f"{entity_type} {entity.id} was changed by another request (version {entity.version}, now {row.version})"
        )
    return row


class AccountRepository:
    """Repository for credit accounts"""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _to_domain(row: CreditAccount) -> LedgerAccount:
        return LedgerAccount(
            id=row.id,
            customer_id=row.customer_id,
            approved_limit=row.approved_limit,
            granted_at=row.granted_at,
            term_days=row.term_days,
            due_at=row.due_at,
            principal_owed=row.principal_owed,
            accrued_interest=row.accrued_interest,
            state=AccountState(row.state),
            interest_accrued_through=row.interest_accrued_through,
            version=row.version,
        )

    def get(self, account_id: int, for_update: bool = False) -> LedgerAccount:
        return self._to_domain(_load(self.db, CreditAccount, account_id, "credit_account", for_update))

    def get_active_for_customer(self, customer_id: str, for_update: bool = True) -> Optional[LedgerAccount]:
        query = self.db.query(CreditAccount).filter(
            CreditAccount.customer_id == customer_id,
            CreditAccount.state == AccountState.ACTIVE.value,
        )
        if for_update:
            query = query.with_for_update()
        row = query.first()
        return self._to_domain(row) if row else None

    def save(self, account: LedgerAccount) -> LedgerAccount:
        """Insert or update; the version column guards against lost updates"""
        row = (
            _current_row(self.db, CreditAccount, account, "credit_account")
            if account.id is not None
            else CreditAccount()
        )
        row.customer_id = account.customer_id
        row.approved_limit = account.approved_limit
        row.principal_owed = account.principal_owed
        row.accrued_interest = account.accrued_interest
        row.state = account.state.value
        row.granted_at = account.granted_at
        row.due_at = account.due_at
        row.term_days = account.term_days
        row.interest_accrued_through = account.interest_accrued_through
        if account.id is None:
            self.db.add(row)
            try:
                self.db.flush()
            except IntegrityError as e:
                raise ActiveAccountExists(account.customer_id) from e
            account.id = row.id
        else:
            self.db.flush()
        account.version = row.version
        return account


class InstallmentRepository:
    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _to_domain(row: CreditInstallment) -> Installment:
        return Installment(
            id=row.id,
            account_id=row.account_id,
            amount=row.amount,
            paid_on_date=row.paid_on_date,
            payment_method=PaymentMethod(row.payment_method),
            state=InstallmentState(row.state),
            proofs=_proofs_from_json(row.proofs),
            rejection_reason=row.rejection_reason,
            submitted_at=row.submitted_at,
            decided_at=row.decided_at,
            decided_by=row.decided_by,
            version=row.version,
        )

    def get(self, installment_id: int, for_update: bool = False) -> Installment:
        return self._to_domain(_load(self.db, CreditInstallment, installment_id, "installment", for_update))

    def list_for_account(self, account_id: int) -> List[Installment]:
        rows = (
            self.db.query(CreditInstallment)
            .filter(CreditInstallment.account_id == account_id)
            .order_by(CreditInstallment.id.desc())
            .all()
        )
        return [self._to_domain(r) for r in rows]

    def save(self, installment: Installment) -> Installment:
        row = (
            _current_row(self.db, CreditInstallment, installment, "installment")
            if installment.id is not None
            else CreditInstallment(account_id=installment.account_id)
        )
        row.amount = installment.amount
        row.paid_on_date = installment.paid_on_date
        row.payment_method = installment.payment_method.value
        row.state = installment.state.value
        row.proofs = _proofs_to_json(installment.proofs)
        row.rejection_reason = installment.rejection_reason
        row.submitted_at = installment.submitted_at
        row.decided_at = installment.decided_at
        row.decided_by = installment.decided_by
        if installment.id is None:
            self.db.add(row)
        self.db.flush()
        installment.id = row.id
        installment.version = row.version
        return installment


class CreditRequestRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, request_id: int, for_update: bool = False) -> CreditRequest:
        row = _load(self.db, CreditRequestRecord, request_id, "credit_request", for_update)
        return CreditRequest(
            id=row.id,
            customer_id=row.customer_id,
            requested_amount=row.requested_amount,
            requested_term_days=row.requested_term_days,
            state=CreditRequestState(row.state),
            approved_amount=row.approved_amount,
            decision_note=row.decision_note,
            resulting_account_id=row.resulting_account_id,
            decided_at=row.decided_at,
            decided_by=row.decided_by,
            version=row.version,
        )

    def save(self, request: CreditRequest) -> CreditRequest:
        row = (
            _current_row(self.db, CreditRequestRecord, request, "credit_request")
            if request.id is not None
            else CreditRequestRecord(customer_id=request.customer_id)
        )
        row.requested_amount = request.requested_amount
        row.requested_term_days = request.requested_term_days
        row.state = request.state.value
        row.approved_amount = request.approved_amount
        row.decision_note = request.decision_note
        row.resulting_account_id = request.resulting_account_id
        row.decided_at = request.decided_at
        row.decided_by = request.decided_by
        if request.id is None:
            self.db.add(row)
        self.db.flush()
        request.id = row.id
        request.version = row.version
        return request


class SaleRepository:
    """Sales are written once and only read afterwards"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, sale_id: int) -> Sale:
        row = _load(self.db, SaleRecord, sale_id, "sale", for_update=False)
        return Sale(
            id=row.id,
            customer_id=row.customer_id,
            payment_method=PaymentMethod(row.payment_method),
            credit_account_id=row.credit_account_id,
            sold_at=row.sold_at,
            items=[
                SaleItem(id=i.id, product_id=i.product_id, quantity=i.quantity, unit_price=i.unit_price)
                for i in row.items
            ],
        )

    def create(self, sale: Sale) -> Sale:
        row = SaleRecord(
            customer_id=sale.customer_id,
            payment_method=sale.payment_method.value,
            credit_account_id=sale.credit_account_id,
            sold_at=sale.sold_at,
            items=[
                SaleItemRecord(product_id=i.product_id, quantity=i.quantity, unit_price=i.unit_price)
                for i in sale.items
            ],
        )
        self.db.add(row)
        self.db.flush()
        sale.id = row.id
        for item, item_row in zip(sale.items, row.items):
            item.id = item_row.id
        return sale


class ReturnRepository:
    def __init__(self, db: Session):
        self.db = db

    def exists_for_sale(self, sale_id: int) -> bool:
        return (
            self.db.query(SaleReturnRecord.id).filter(SaleReturnRecord.sale_id == sale_id).first()
            is not None
        )

    def get(self, return_id: int) -> SaleReturn:
        row = _load(self.db, SaleReturnRecord, return_id, "sale_return", for_update=False)
        if row.direction == "owed_to_customer":
            settlement = OwedToCustomer(amount=row.settlement_amount, refund_method=RefundMethod(row.refund_method))
        elif row.direction == "owed_by_customer":
            settlement = OwedByCustomer(amount=row.settlement_amount, payment_method=PaymentMethod(row.payment_method))
        else:
            settlement = NoSettlement()
        return SaleReturn(
            id=row.id,
            sale_id=row.sale_id,
            general_reason=row.general_reason,
            created_at=row.created_at,
            processed_by=row.processed_by,
            returned_lines=[
                ReturnedLine(
                    sale_item_id=l.sale_item_id,
                    product_id=l.product_id,
                    quantity=l.quantity,
                    unit_price=l.unit_price,
                    reason_code=ReasonCode(l.reason_code),
                )
                for l in row.returned_lines
            ],
            exchange_lines=[
                ExchangeLine(product_id=l.product_id, quantity=l.quantity, unit_price=l.unit_price)
                for l in row.exchange_lines
            ],
            computation=SettlementComputation(
                total_returned=row.total_returned,
                total_exchanged=row.total_exchanged,
                balance=row.balance,
                settlement=settlement,
                exchange_tag=ExchangeTag(row.exchange_tag),
            ),
        )

    def create(self, sale_return: SaleReturn) -> SaleReturn:
        """Insert a return; a concurrent return for the same sale loses on the unique constraint"""
        computation = sale_return.computation
        settlement = computation.settlement
        row = SaleReturnRecord(
            sale_id=sale_return.sale_id,
            general_reason=sale_return.general_reason,
            exchange_tag=computation.exchange_tag.value,
            total_returned=computation.total_returned,
            total_exchanged=computation.total_exchanged,
            balance=computation.balance,
            direction=settlement.direction,
            settlement_amount=getattr(settlement, "amount", 0),
            refund_method=settlement.refund_method.value if isinstance(settlement, OwedToCustomer) else None,
            payment_method=settlement.payment_method.value if isinstance(settlement, OwedByCustomer) else None,
            processed_by=sale_return.processed_by,
            created_at=sale_return.created_at,
            returned_lines=[
                ReturnedLineRecord(
                    sale_item_id=l.sale_item_id,
                    product_id=l.product_id,
                    quantity=l.quantity,
                    unit_price=l.unit_price,
                    reason_code=l.reason_code.value,
                )
                for l in sale_return.returned_lines
            ],
            exchange_lines=[
                ExchangeLineRecord(product_id=l.product_id, quantity=l.quantity, unit_price=l.unit_price)
                for l in sale_return.exchange_lines
            ],
        )
        self.db.add(row)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise DuplicateReturn(sale_return.sale_id) from e
        sale_return.id = row.id
        return sale_return


class SupplierCaseRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_for_return(self, return_id: int, for_update: bool = False) -> SupplierReturnCase:
        query = self.db.query(SupplierCaseRecord).filter(SupplierCaseRecord.return_id == return_id)
        if for_update:
            query = query.with_for_update()
        row = query.first()
        if row is None:
            raise NotFoundError("supplier_case", f"for return {return_id}")
        return SupplierReturnCase(
            id=row.id,
            return_id=row.return_id,
            state=SupplierCaseState(row.state),
            supplier_ref=row.supplier_ref,
            shipped_at=row.shipped_at,
            reception_date=row.reception_date,
            lines=[
                SupplierCaseLine(
                    product_id=l.product_id,
                    quantity_shipped=l.quantity_shipped,
                    quantity_received=l.quantity_received,
                    substitute_product_id=l.substitute_product_id,
                    reception_notes=l.reception_notes,
                )
                for l in row.lines
            ],
            version=row.version,
        )

    def save(self, case: SupplierReturnCase) -> SupplierReturnCase:
        row = (
            _current_row(self.db, SupplierCaseRecord, case, "supplier_case")
            if case.id is not None
            else SupplierCaseRecord(return_id=case.return_id)
        )
        row.state = case.state.value
        row.supplier_ref = case.supplier_ref
        row.shipped_at = case.shipped_at
        row.reception_date = case.reception_date

        existing = {l.product_id: l for l in row.lines}
        for line in case.lines:
            line_row = existing.get(line.product_id)
            if line_row is None:
                line_row = SupplierCaseLineRecord(product_id=line.product_id)
                row.lines.append(line_row)
            line_row.quantity_shipped = line.quantity_shipped
            line_row.quantity_received = line.quantity_received
            line_row.substitute_product_id = line.substitute_product_id
            line_row.reception_notes = line.reception_notes

        if case.id is None:
            self.db.add(row)
        self.db.flush()
        case.id = row.id
        case.version = row.version
        return case


class OrderRepository:
    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _to_domain(row: GuestOrderRecord) -> GuestOrder:
        return GuestOrder(
            id=row.id,
            tracking_token=row.tracking_token,
            total=row.total,
            state=OrderState(row.state),
            payment_deadline=row.payment_deadline,
            verified_paid_amount=row.verified_paid_amount,
            credit_amount_used=row.credit_amount_used,
            credit_account_id=row.credit_account_id,
            credit_refund_due=row.credit_refund_due,
            delivery_method=DeliveryMethod(row.delivery_method),
            proofs=_proofs_from_json(row.proofs),
            cancellation_reason=row.cancellation_reason,
            version=row.version,
        )

    def get_by_token(self, token: str, for_update: bool = False) -> GuestOrder:
        query = self.db.query(GuestOrderRecord).filter(GuestOrderRecord.tracking_token == token)
        if for_update:
            query = query.with_for_update()
        row = query.first()
        if row is None:
            raise NotFoundError("guest_order", token)
        return self._to_domain(row)

    def list_overdue_timeboxed(self, now: datetime) -> List[GuestOrder]:
        rows = (
            self.db.query(GuestOrderRecord)
            .filter(
                GuestOrderRecord.state == OrderState.AWAITING_PAYMENT_TIMEBOXED.value,
                GuestOrderRecord.payment_deadline < now,
            )
            .with_for_update(skip_locked=True)
            .all()
        )
        return [self._to_domain(r) for r in rows]

    def save(self, order: GuestOrder) -> GuestOrder:
        row = (
            _current_row(self.db, GuestOrderRecord, order, "guest_order")
            if order.id is not None
            else GuestOrderRecord(tracking_token=order.tracking_token)
        )
        row.total = order.total
        row.state = order.state.value
        row.payment_deadline = order.payment_deadline
        row.verified_paid_amount = order.verified_paid_amount
        row.credit_amount_used = order.credit_amount_used
        row.credit_account_id = order.credit_account_id
        row.credit_refund_due = order.credit_refund_due
        row.delivery_method = order.delivery_method.value
        row.proofs = _proofs_to_json(order.proofs)
        row.cancellation_reason = order.cancellation_reason
        if order.id is None:
            self.db.add(row)
        self.db.flush()
        order.id = row.id
        order.version = row.version
        return order


class TransitionRepository:
    """Append-only audit log"""

    def __init__(self, db: Session):
        self.db = db

    def record(self, transition: Transition, entity_id: Optional[int] = None) -> None:
        self.db.add(
            StateTransitionRecord(
                entity_type=transition.entity_type,
                entity_id=entity_id if entity_id is not None else transition.entity_id,
                from_state=transition.from_state,
                to_state=transition.to_state,
                actor_id=transition.actor_id,
                occurred_at=transition.occurred_at,
                detail=transition.detail or None,
            )
        )

    def list_for(self, entity_type: str, entity_id: int) -> List[StateTransitionRecord]:
        return (
            self.db.query(StateTransitionRecord)
            .filter(
                StateTransitionRecord.entity_type == entity_type,
                StateTransitionRecord.entity_id == entity_id,
            )
            .order_by(StateTransitionRecord.id)
            .all()
        )
