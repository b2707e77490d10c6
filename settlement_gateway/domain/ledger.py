"""Revolving credit account for one customer.

Every mutating method validates first and only then assigns, so a failed
call leaves the account exactly as it was.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from settlement_gateway.domain.exceptions import (
    AccountNotActive,
    InsufficientCredit,
    InvalidTransition,
    OverpaymentRejected,
    RestoreExceedsLimit,
    ValidationError,
)
from settlement_gateway.domain.models import AccountState
from settlement_gateway.domain.money import ZERO, require_positive, to_money
from settlement_gateway.utils.date_utils import add_days, days_between

DAYS_PER_YEAR = Decimal(365)


@dataclass
class LedgerAccount:
    customer_id: str
    approved_limit: Decimal
    granted_at: date
    term_days: int
    due_at: date
    principal_owed: Decimal = ZERO
    accrued_interest: Decimal = ZERO
    state: AccountState = AccountState.ACTIVE
    interest_accrued_through: Optional[date] = None
    id: Optional[int] = None
    version: Optional[int] = None  # row version this snapshot was read at

    @classmethod
    def open(cls, customer_id: str, approved_limit: Decimal, term_days: int, granted_at: date) -> "LedgerAccount":
        if term_days <= 0:
            raise ValidationError("term_days must be positive")
        due_at = add_days(granted_at, term_days)
        return cls(
            customer_id=customer_id,
            approved_limit=require_positive(approved_limit, "approved_limit"),
            granted_at=granted_at,
            term_days=term_days,
            due_at=due_at,
            interest_accrued_through=due_at,
        )

    @property
    def available_for_purchase(self) -> Decimal:
        return max(ZERO, self.approved_limit - self.principal_owed)

    @property
    def total_payable(self) -> Decimal:
        return self.principal_owed + self.accrued_interest

    def _require_state(self, *allowed: AccountState) -> None:
        if self.state not in allowed:
            raise AccountNotActive(f"Credit account {self.id} is {self.state.value}")

    def draw(self, amount: Decimal) -> None:
        """Reserve credit against a sale."""
        amount = require_positive(amount)
        self._require_state(AccountState.ACTIVE)
        if amount > self.available_for_purchase:
            raise InsufficientCredit(amount, self.available_for_purchase)
        self.principal_owed += amount

    def restore(self, amount: Decimal) -> None:
        """Give credit back (return settled to the account, cancelled order)."""
        amount = require_positive(amount)
        self._require_state(AccountState.ACTIVE, AccountState.DEFAULTED)
        if amount > self.principal_owed:
            raise RestoreExceedsLimit(amount, self.principal_owed)
        self.principal_owed -= amount

    def apply_installment(self, amount: Decimal) -> None:
        """Apply a verified payment: principal first, then interest."""
        amount = require_positive(amount)
        self._require_state(AccountState.ACTIVE, AccountState.DEFAULTED)
        if amount > self.total_payable:
            raise OverpaymentRejected(amount, self.total_payable)

        to_principal = min(amount, self.principal_owed)
        to_interest = amount - to_principal
        self.principal_owed -= to_principal
        self.accrued_interest -= to_interest

        if self.total_payable == ZERO:
            self.state = AccountState.PAID_OFF

    def accrue_interest(self, rate: Decimal, as_of: date) -> Decimal:
        """
        Accrue simple late interest (Actual/365) on principal up to ``as_of``.

        Interest runs only after ``due_at``, from the later of ``due_at`` and the
        last accrual date. Result depends only on stored state and ``as_of``;
        repeating a call for the same date accrues nothing.

        Returns:
            The interest added by this call
        """
        if rate < 0:
            raise ValidationError("Interest rate must not be negative")
        if self.state not in (AccountState.ACTIVE, AccountState.DEFAULTED):
            return ZERO

        start = max(self.due_at, self.interest_accrued_through or self.due_at)
        days = days_between(start, as_of)
        if days <= 0:
            return ZERO

        interest = to_money(self.principal_owed * Decimal(str(rate)) * days / DAYS_PER_YEAR)
        self.accrued_interest += interest
        self.interest_accrued_through = as_of
        return interest

    def mark_defaulted(self, as_of: date) -> None:
        if self.state != AccountState.ACTIVE or as_of <= self.due_at or self.total_payable == ZERO:
            raise InvalidTransition("credit_account", self.id, self.state.value, AccountState.DEFAULTED.value)
        self.state = AccountState.DEFAULTED

    def cancel(self) -> None:
        if self.state != AccountState.ACTIVE or self.total_payable != ZERO:
            raise InvalidTransition("credit_account", self.id, self.state.value, AccountState.CANCELLED.value)
        self.state = AccountState.CANCELLED
