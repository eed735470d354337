"""
Amortization Allocator

Pure functions that split weekly payments into return-to-capital and
profit, and derive the loan figures the metrics snapshot is built from.
No storage access, no validation.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any

from .money import ZERO, to_decimal, quantize_money


@dataclass(frozen=True)
class PaymentAllocation:
    """Split of a single payment"""
    return_to_capital: Decimal
    profit_amount: Decimal

    @property
    def total(self) -> Decimal:
        return self.return_to_capital + self.profit_amount


def allocate_payment(
    payment_amount: Any,
    total_profit: Any,
    total_amount_to_pay: Any,
    requested_amount: Any,
    amount_already_paid: Any
) -> PaymentAllocation:
    """
    Split a payment into return to capital and profit

    Profit is attributed in proportion to the loan's profit share of the
    total debt. Once the debt is fully paid everything is capital; a
    payment larger than what is still owed only carries profit on the
    part that was owed.

    Args:
        payment_amount: Amount of this payment
        total_profit: Profit the loan generates over its life
        total_amount_to_pay: Total debt (principal plus profit)
        requested_amount: Principal lent
        amount_already_paid: Sum of earlier payments

    Returns:
        PaymentAllocation whose parts add up exactly to the rounded payment
    """
    payment = to_decimal(payment_amount)
    profit = to_decimal(total_profit)
    total = to_decimal(total_amount_to_pay)
    remaining = total - to_decimal(amount_already_paid)

    if remaining <= 0 or total <= 0:
        return PaymentAllocation(return_to_capital=quantize_money(payment), profit_amount=ZERO)

    if payment > remaining:
        # Overpayment: profit only on the part that was still owed
        profit_amount = quantize_money(remaining * profit / total)
    else:
        profit_amount = quantize_money(payment * profit / total)

    return PaymentAllocation(
        return_to_capital=quantize_money(payment) - profit_amount,
        profit_amount=profit_amount
    )


def calculate_total_debt(requested_amount: Any, rate: Any) -> Decimal:
    """Principal plus the loan type's flat rate: requested * (1 + rate)"""
    return quantize_money(to_decimal(requested_amount) * (Decimal('1') + to_decimal(rate)))


def calculate_expected_weekly_payment(total_debt: Any, week_duration: int) -> Decimal:
    """Weekly installment; zero when the loan type has no duration"""
    if not week_duration or week_duration <= 0:
        return ZERO
    return quantize_money(to_decimal(total_debt) / Decimal(week_duration))


def calculate_loan_profit_amount(
    requested_amount: Any,
    rate: Any,
    pending_profit_from_previous: Any = ZERO
) -> Decimal:
    """
    Profit over the full life of a loan

    A renewal carries the profit the borrower had not yet paid on the
    loan it replaces.
    """
    base_profit = to_decimal(requested_amount) * to_decimal(rate)
    carried = max(to_decimal(pending_profit_from_previous), ZERO)
    return quantize_money(base_profit + carried)
