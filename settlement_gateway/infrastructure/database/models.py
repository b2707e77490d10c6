"""SQLAlchemy ORM models

Mutable aggregates carry a ``version`` column used as SQLAlchemy's
``version_id_col``: an UPDATE against a stale version raises StaleDataError.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

Money = Numeric(14, 2)


class CreditAccount(Base):
    """Revolving credit line, one active per customer"""

    __tablename__ = "credit_account"

    id = Column(Integer, primary_key=True)
    customer_id = Column(Text, nullable=False, index=True)
    approved_limit = Column(Money, nullable=False)
    principal_owed = Column(Money, nullable=False, default=0)
    accrued_interest = Column(Money, nullable=False, default=0)
    state = Column(Text, nullable=False, default="active")
    granted_at = Column(Date, nullable=False)
    due_at = Column(Date, nullable=False)
    term_days = Column(Integer, nullable=False)
    interest_accrued_through = Column(Date, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=False), nullable=False, server_default=func.now())

    installments = relationship("CreditInstallment", back_populates="account")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("principal_owed >= 0", name="ck_account_principal_non_negative"),
        CheckConstraint("accrued_interest >= 0", name="ck_account_interest_non_negative"),
        Index(
            "uq_credit_account_active_customer",
            "customer_id",
            unique=True,
            postgresql_where=text("state = 'active'"),
            sqlite_where=text("state = 'active'"),
        ),
    )


class CreditInstallment(Base):
    """Installment ("abono") awaiting or past verification"""

    __tablename__ = "credit_installment"

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("credit_account.id"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    paid_on_date = Column(Date, nullable=False)
    payment_method = Column(Text, nullable=False)
    state = Column(Text, nullable=False, default="pending")
    proofs = Column(JSON, nullable=False, default=list)
    rejection_reason = Column(Text, nullable=True)
    submitted_at = Column(DateTime(timezone=False), nullable=True)
    decided_at = Column(DateTime(timezone=False), nullable=True)
    decided_by = Column(Text, nullable=True)
    version = Column(Integer, nullable=False)

    account = relationship("CreditAccount", back_populates="installments")

    __mapper_args__ = {"version_id_col": version}


class CreditRequestRecord(Base):
    __tablename__ = "credit_request"

    id = Column(Integer, primary_key=True)
    customer_id = Column(Text, nullable=False, index=True)
    requested_amount = Column(Money, nullable=False)
    requested_term_days = Column(Integer, nullable=False)
    state = Column(Text, nullable=False, default="pending")
    approved_amount = Column(Money, nullable=True)
    decision_note = Column(Text, nullable=True)
    resulting_account_id = Column(Integer, ForeignKey("credit_account.id"), nullable=True)
    decided_at = Column(DateTime(timezone=False), nullable=True)
    decided_by = Column(Text, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=False), nullable=False, server_default=func.now())

    __mapper_args__ = {"version_id_col": version}


class SaleRecord(Base):
    __tablename__ = "sale"

    id = Column(Integer, primary_key=True)
    customer_id = Column(Text, nullable=False, index=True)
    payment_method = Column(Text, nullable=False)
    credit_account_id = Column(Integer, ForeignKey("credit_account.id"), nullable=True)
    sold_at = Column(DateTime(timezone=False), nullable=False)

    items = relationship("SaleItemRecord", back_populates="sale", cascade="all, delete-orphan")


class SaleItemRecord(Base):
    __tablename__ = "sale_item"

    id = Column(Integer, primary_key=True)
    sale_id = Column(Integer, ForeignKey("sale.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)

    sale = relationship("SaleRecord", back_populates="items")


class SaleReturnRecord(Base):
    """Return (with optional exchange) of one sale and its settlement"""

    __tablename__ = "sale_return"

    id = Column(Integer, primary_key=True)
    sale_id = Column(Integer, ForeignKey("sale.id"), nullable=False)
    general_reason = Column(Text, nullable=False, default="")
    exchange_tag = Column(Text, nullable=False)
    total_returned = Column(Money, nullable=False)
    total_exchanged = Column(Money, nullable=False)
    balance = Column(Money, nullable=False)
    direction = Column(Text, nullable=False)
    settlement_amount = Column(Money, nullable=False)
    refund_method = Column(Text, nullable=True)
    payment_method = Column(Text, nullable=True)
    processed_by = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), nullable=False)

    returned_lines = relationship("ReturnedLineRecord", cascade="all, delete-orphan")
    exchange_lines = relationship("ExchangeLineRecord", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("sale_id", name="uq_sale_return_sale"),
        CheckConstraint(
            "(direction = 'owed_to_customer' AND refund_method IS NOT NULL AND payment_method IS NULL)"
            " OR (direction = 'owed_by_customer' AND payment_method IS NOT NULL AND refund_method IS NULL)"
            " OR (direction = 'none' AND refund_method IS NULL AND payment_method IS NULL)",
            name="ck_sale_return_single_resolution",
        ),
    )


class ReturnedLineRecord(Base):
    __tablename__ = "sale_return_line"

    id = Column(Integer, primary_key=True)
    return_id = Column(Integer, ForeignKey("sale_return.id", ondelete="CASCADE"), nullable=False)
    sale_item_id = Column(Integer, ForeignKey("sale_item.id"), nullable=False)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)
    reason_code = Column(Text, nullable=False)


class ExchangeLineRecord(Base):
    __tablename__ = "sale_exchange_line"

    id = Column(Integer, primary_key=True)
    return_id = Column(Integer, ForeignKey("sale_return.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)


class SupplierCaseRecord(Base):
    __tablename__ = "supplier_return_case"

    id = Column(Integer, primary_key=True)
    return_id = Column(Integer, ForeignKey("sale_return.id"), nullable=False, unique=True)
    supplier_ref = Column(Text, nullable=True)
    state = Column(Text, nullable=False, default="pending")
    shipped_at = Column(DateTime(timezone=False), nullable=True)
    reception_date = Column(Date, nullable=True)
    version = Column(Integer, nullable=False)

    lines = relationship(
        "SupplierCaseLineRecord",
        cascade="all, delete-orphan",
        order_by="SupplierCaseLineRecord.id",
    )

    __mapper_args__ = {"version_id_col": version}


class SupplierCaseLineRecord(Base):
    __tablename__ = "supplier_case_line"

    id = Column(Integer, primary_key=True)
    case_id = Column(Integer, ForeignKey("supplier_return_case.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, nullable=False)
    quantity_shipped = Column(Integer, nullable=False)
    quantity_received = Column(Integer, nullable=True)
    substitute_product_id = Column(Integer, nullable=True)
    reception_notes = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("quantity_received IS NULL OR quantity_received <= quantity_shipped", name="ck_no_over_receipt"),
    )


class GuestOrderRecord(Base):
    __tablename__ = "guest_order"

    id = Column(Integer, primary_key=True)
    tracking_token = Column(Text, nullable=False, unique=True)
    total = Column(Money, nullable=False)
    state = Column(Text, nullable=False)
    payment_deadline = Column(DateTime(timezone=False), nullable=True)
    verified_paid_amount = Column(Money, nullable=False, default=0)
    credit_amount_used = Column(Money, nullable=False, default=0)
    credit_account_id = Column(Integer, ForeignKey("credit_account.id"), nullable=True)
    credit_refund_due = Column(Money, nullable=False, default=0)
    delivery_method = Column(Text, nullable=False, default="shipping")
    proofs = Column(JSON, nullable=False, default=list)
    cancellation_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=False), nullable=False, server_default=func.now())

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint(
            "(state = 'awaiting_payment_timeboxed') = (payment_deadline IS NOT NULL)",
            name="ck_order_deadline_iff_timeboxed",
        ),
        CheckConstraint("credit_refund_due <= credit_amount_used", name="ck_order_refund_within_credit"),
        Index("ix_guest_order_timeboxed_deadline", "state", "payment_deadline"),
    )


class ProductStock(Base):
    """Stock level per product, backing the SQL inventory adapter"""

    __tablename__ = "product_stock"

    product_id = Column(Integer, primary_key=True, autoincrement=False)
    quantity = Column(Integer, nullable=False, default=0)

    __table_args__ = (CheckConstraint("quantity >= 0", name="ck_stock_non_negative"),)


class StateTransitionRecord(Base):
    """Append-only audit trail of state changes"""

    __tablename__ = "state_transition"

    id = Column(Integer, primary_key=True)
    entity_type = Column(Text, nullable=False)
    entity_id = Column(Integer, nullable=False)
    from_state = Column(Text, nullable=True)
    to_state = Column(Text, nullable=False)
    actor_id = Column(Text, nullable=True)
    occurred_at = Column(DateTime(timezone=False), nullable=False)
    detail = Column(JSON, nullable=True)

    __table_args__ = (Index("ix_state_transition_entity", "entity_type", "entity_id"),)
