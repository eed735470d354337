"""
Payment Module

Records weekly collections against loans and keeps their ledger
transactions in step: exactly one INCOME per payment into the route's
cash fund or bank account, and one LOAN_PAYMENT_COMMISSION expense when
the lead earned a commission on it.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Any, List, Optional
import uuid

from .money import ZERO, quantize_money, sum_money, format_money
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .routes import RouteManager
from .accounts import Account, AccountManager, AccountType
from .transactions import (
    Transaction,
    TransactionProcessor,
    TransactionType,
    IncomeSource,
    ExpenseSource
)
from .loans import Loan, LoanManager, LoanPayment, LoanType, PaymentMethod, PaymentType
from .amortization import PaymentAllocation, allocate_payment, calculate_total_debt
from .exceptions import LendingError, RecordNotFoundError
from .logging_config import get_logger, log_action


@dataclass
class PaymentContext:
    """Records a payment's ledger effects depend on"""
    loan: Loan
    loan_type: LoanType
    cash_account: Account
    destination_account: Account


_UPDATABLE_FIELDS = {'amount', 'commission', 'received_at', 'payment_type', 'payment_method'}


class PaymentManager:
    """
    Manages loan payments and their INCOME and commission transactions
    """

    def __init__(
        self,
        storage: StorageInterface,
        route_manager: RouteManager,
        account_manager: AccountManager,
        transaction_processor: TransactionProcessor,
        loan_manager: LoanManager,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.route_manager = route_manager
        self.account_manager = account_manager
        self.transaction_processor = transaction_processor
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail

        self.payments_table = loan_manager.payments_table
        self.receipts_table = "lead_payments_received"
        self.logger = get_logger("lending.payments")

    def get_payment(self, payment_id: str) -> Optional[LoanPayment]:
        data = self.storage.load(self.payments_table, payment_id)
        return LoanPayment.from_dict(data) if data else None

    def require_payment(self, payment_id: str) -> LoanPayment:
        payment = self.get_payment(payment_id)
        if not payment:
            raise RecordNotFoundError(f"Payment {payment_id} not found")
        return payment

    def get_payment_transactions(self, payment_id: str) -> List[Transaction]:
        return self.transaction_processor.find_transactions(loan_payment_id=payment_id)

    def create_payment(
        self,
        loan_id: str,
        amount: Decimal,
        received_at: Optional[datetime] = None,
        commission: Decimal = ZERO,
        payment_type: PaymentType = PaymentType.PAYMENT,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        lead_payment_received_id: Optional[str] = None,
        apply_ledger_effects: bool = True
    ) -> LoanPayment:
        """
        Record a payment against a loan

        Args:
            loan_id: Loan being paid
            amount: Amount collected
            received_at: When the money was collected (defaults to now)
            commission: Collection commission owed to the lead
            payment_method: CASH lands in the cash fund, MONEY_TRANSFER in the bank
            lead_payment_received_id: Batch receipt the payment belongs to
            apply_ledger_effects: False only persists the payment; a batch
                caller then books transactions and balances itself

        Raises:
            RecordNotFoundError: Loan, receipt, lead or loan type not found
            AccountNotFoundError: Route lacks the cash fund or bank account
        """
        self._validate_amounts(amount, commission)

        now = datetime.now(timezone.utc)
        payment = LoanPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            amount=amount,
            received_at=received_at or now,
            commission=commission,
            payment_type=payment_type,
            payment_method=payment_method,
            lead_payment_received_id=lead_payment_received_id
        )

        with self.storage.atomic():
            self.loan_manager.require_loan(loan_id)
            if lead_payment_received_id and not self.storage.exists(self.receipts_table,
                                                                    lead_payment_received_id):
                raise RecordNotFoundError(f"Lead payment received {lead_payment_received_id} not found")

            self._save_payment(payment)
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_RECORDED,
                entity_type="loan_payment",
                entity_id=payment.id,
                metadata={
                    "loan_id": loan_id,
                    "amount": payment.amount,
                    "commission": payment.commission,
                    "payment_method": payment_method.value,
                    "apply_ledger_effects": apply_ledger_effects
                }
            )

            if apply_ledger_effects:
                self.on_payment_created(payment)

        log_action(
            self.logger, "info",
            f"Payment recorded: {format_money(payment.amount)} on loan {loan_id}",
            action="payment.created", resource=payment.id,
            extra={"payment_method": payment_method.value}
        )
        return payment

    def update_payment(
        self,
        payment_id: str,
        apply_ledger_effects: bool = True,
        **changes: Any
    ) -> LoanPayment:
        """Edit a payment; only the difference reaches account balances"""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise LendingError(f"Cannot update payment fields: {sorted(unknown)}")

        with self.storage.atomic():
            previous = self.require_payment(payment_id)
            payment = replace(previous, **changes)
            self._validate_amounts(payment.amount, payment.commission)
            payment.updated_at = datetime.now(timezone.utc)
            self._save_payment(payment)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_UPDATED,
                entity_type="loan_payment",
                entity_id=payment.id,
                metadata={
                    "loan_id": payment.loan_id,
                    "previous_amount": previous.amount,
                    "amount": payment.amount,
                    "commission": payment.commission,
                    "apply_ledger_effects": apply_ledger_effects
                }
            )

            if apply_ledger_effects:
                self.on_payment_updated(payment, previous)

        return payment

    def delete_payment(self, payment_id: str, apply_ledger_effects: bool = True) -> LoanPayment:
        """Delete a payment and reverse its transactions"""
        with self.storage.atomic():
            payment = self.require_payment(payment_id)
            self.storage.delete(self.payments_table, payment.id)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_DELETED,
                entity_type="loan_payment",
                entity_id=payment.id,
                metadata={"loan_id": payment.loan_id, "amount": payment.amount}
            )

            if apply_ledger_effects:
                self.on_payment_deleted(payment)

        return payment

    # Ledger propagation

    def on_payment_created(self, payment: LoanPayment) -> None:
        """Book a new payment's transactions and refresh the loan"""
        with self.storage.atomic():
            self.sync_payment_transactions(payment)
            self.resync_loan_payments(payment.loan_id)
        self.loan_manager.recompute_loan_metrics(payment.loan_id)

    def on_payment_updated(self, payment: LoanPayment, previous: LoanPayment) -> None:
        """Move the existing transactions to the payment's new figures"""
        with self.storage.atomic():
            self.sync_payment_transactions(payment)
            self.resync_loan_payments(payment.loan_id)
        self.loan_manager.recompute_loan_metrics(payment.loan_id)

    def on_payment_deleted(self, previous_payment: LoanPayment) -> None:
        """Reverse a deleted payment's transactions"""
        with self.storage.atomic():
            for transaction in self.get_payment_transactions(previous_payment.id):
                self.transaction_processor.delete_transaction(transaction.id)
            if self.loan_manager.get_loan(previous_payment.loan_id):
                self.resync_loan_payments(previous_payment.loan_id)
        self.loan_manager.recompute_loan_metrics(previous_payment.loan_id)

    def sync_payment_transactions(
        self,
        payment: LoanPayment,
        apply_balance: bool = True
    ) -> List[Transaction]:
        """
        Upsert the payment's INCOME and commission transactions

        Existing transactions are updated in place, never duplicated. A
        commission that drops to zero removes its expense.

        Returns:
            The payment's transactions after the sync
        """
        context = self._resolve_context(payment)
        allocation = self.allocate(payment, context)

        if payment.payment_method == PaymentMethod.MONEY_TRANSFER:
            income_source = IncomeSource.BANK_LOAN_PAYMENT
        else:
            income_source = IncomeSource.CASH_LOAN_PAYMENT

        income_fields = dict(
            amount=payment.amount,
            date=payment.received_at,
            income_source=income_source,
            destination_account_id=context.destination_account.id,
            profit_amount=allocation.profit_amount,
            return_to_capital=allocation.return_to_capital,
            description=f"Loan payment {format_money(payment.amount)}"
        )

        incomes = self.transaction_processor.find_transactions(
            loan_payment_id=payment.id, transaction_type=TransactionType.INCOME
        )
        if incomes:
            income = self.transaction_processor.update_transaction(
                incomes[0].id, apply_balance=apply_balance, **income_fields
            )
        else:
            income = self.transaction_processor.create_transaction(
                transaction_type=TransactionType.INCOME,
                loan_id=payment.loan_id,
                loan_payment_id=payment.id,
                lead_id=context.loan.lead_id,
                lead_payment_received_id=payment.lead_payment_received_id,
                apply_balance=apply_balance,
                **income_fields
            )
        synced = [income]

        commissions = self.transaction_processor.find_transactions(
            loan_payment_id=payment.id, expense_source=ExpenseSource.LOAN_PAYMENT_COMMISSION
        )
        commission_fields = dict(
            amount=payment.commission,
            date=payment.received_at,
            source_account_id=context.cash_account.id,
            description=f"Loan payment commission {format_money(payment.commission)}"
        )
        if payment.commission > ZERO:
            if commissions:
                synced.append(self.transaction_processor.update_transaction(
                    commissions[0].id, apply_balance=apply_balance, **commission_fields
                ))
            else:
                synced.append(self.transaction_processor.create_transaction(
                    transaction_type=TransactionType.EXPENSE,
                    expense_source=ExpenseSource.LOAN_PAYMENT_COMMISSION,
                    loan_id=payment.loan_id,
                    loan_payment_id=payment.id,
                    lead_id=context.loan.lead_id,
                    lead_payment_received_id=payment.lead_payment_received_id,
                    apply_balance=apply_balance,
                    **commission_fields
                ))
        else:
            for transaction in commissions:
                self.transaction_processor.delete_transaction(transaction.id, apply_balance=apply_balance)

        return synced

    def allocate(self, payment: LoanPayment, context: Optional[PaymentContext] = None) -> PaymentAllocation:
        """Split the payment using what was paid on the loan before it"""
        if context is None:
            context = self._resolve_context(payment)
        loan = context.loan

        total_debt = calculate_total_debt(loan.requested_amount, context.loan_type.rate)
        payment_key = (payment.received_at, payment.created_at, payment.id)
        already_paid = sum_money(
            p.amount for p in self.loan_manager.get_loan_payments(loan.id)
            if p.id != payment.id and (p.received_at, p.created_at, p.id) < payment_key
        )
        return allocate_payment(
            payment.amount, loan.profit_amount, total_debt, loan.requested_amount, already_paid
        )

    def resync_loan_payments(self, loan_id: str) -> int:
        """
        Re-derive profit attribution on every payment of a loan

        Only the attribution fields change; balances are untouched.

        Returns:
            Number of transactions whose attribution changed
        """
        loan = self.loan_manager.require_loan(loan_id)
        loan_type = self.loan_manager.require_loan_type(loan.loan_type_id)
        total_debt = calculate_total_debt(loan.requested_amount, loan_type.rate)

        updated = 0
        already_paid = ZERO
        for payment in self.loan_manager.get_loan_payments(loan_id):
            allocation = allocate_payment(
                payment.amount, loan.profit_amount, total_debt, loan.requested_amount, already_paid
            )
            already_paid += payment.amount

            for income in self.transaction_processor.find_transactions(
                loan_payment_id=payment.id, transaction_type=TransactionType.INCOME
            ):
                if (income.profit_amount, income.return_to_capital) == (
                        allocation.profit_amount, allocation.return_to_capital):
                    continue
                self.transaction_processor.update_transaction(
                    income.id,
                    apply_balance=False,
                    profit_amount=allocation.profit_amount,
                    return_to_capital=allocation.return_to_capital
                )
                updated += 1

        if updated:
            self.logger.debug(f"Resynced attribution on {updated} transactions of loan {loan_id}")
        return updated

    def _resolve_context(self, payment: LoanPayment) -> PaymentContext:
        loan = self.loan_manager.require_loan(payment.loan_id)
        if payment.lead_payment_received_id and not self.storage.exists(
                self.receipts_table, payment.lead_payment_received_id):
            raise RecordNotFoundError(f"Lead payment received {payment.lead_payment_received_id} not found")
        lead = self.route_manager.require_employee(loan.lead_id)
        loan_type = self.loan_manager.require_loan_type(loan.loan_type_id)

        cash_account = self.account_manager.require_route_account(
            lead.route_id, AccountType.EMPLOYEE_CASH_FUND
        )
        if payment.payment_method == PaymentMethod.MONEY_TRANSFER:
            destination = self.account_manager.require_route_account(lead.route_id, AccountType.BANK)
        else:
            destination = cash_account

        return PaymentContext(
            loan=loan,
            loan_type=loan_type,
            cash_account=cash_account,
            destination_account=destination
        )

    @staticmethod
    def _validate_amounts(amount: Decimal, commission: Decimal) -> None:
        if quantize_money(amount) < ZERO:
            raise LendingError("Payment amount cannot be negative")
        if quantize_money(commission) < ZERO:
            raise LendingError("Payment commission cannot be negative")

    def _save_payment(self, payment: LoanPayment) -> None:
        self.storage.save(self.payments_table, payment.id, payment.to_dict())
