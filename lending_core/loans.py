"""
Loan Module

Handles loan origination, disbursement against the lead's cash fund,
renewal chains, lifecycle updates and deletion, and the metrics snapshot
(total debt, weekly installment, total paid, pending amount) kept on
every loan.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .money import ZERO, quantize_money, sum_money, format_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .routes import RouteManager
from .accounts import AccountManager, AccountType
from .transactions import TransactionProcessor, TransactionType, ExpenseSource
from .amortization import (
    calculate_total_debt,
    calculate_expected_weekly_payment,
    calculate_loan_profit_amount
)
from .exceptions import RecordNotFoundError, LendingError
from .logging_config import get_logger, log_action


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"          # Being collected
    FINISHED = "finished"      # Fully paid or closed
    RENOVATED = "renovated"    # Replaced by a renewal
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (LoanStatus.FINISHED, LoanStatus.RENOVATED, LoanStatus.CANCELLED)


class PaymentType(Enum):
    PAYMENT = "payment"
    EXTRA_COLLECTION = "extra_collection"


class PaymentMethod(Enum):
    CASH = "cash"
    MONEY_TRANSFER = "money_transfer"


@dataclass
class LoanType(StorageRecord):
    """Product definition: flat rate over a number of weeks"""
    name: str
    rate: Decimal              # e.g. 0.40 for 40% over the life of the loan
    week_duration: int


@dataclass
class Loan(StorageRecord):
    """Lending agreement with its persisted metrics snapshot"""
    requested_amount: Decimal
    amount_given: Decimal               # May be less than requested when prior debt is netted
    loan_type_id: str
    lead_id: str
    sign_date: datetime
    borrower_id: Optional[str] = None
    previous_loan_id: Optional[str] = None  # Renewal chain
    commission_amount: Decimal = ZERO
    status: LoanStatus = LoanStatus.ACTIVE

    finished_date: Optional[datetime] = None
    renewed_date: Optional[datetime] = None
    bad_debt_date: Optional[datetime] = None
    is_deceased: bool = False
    finished_by_payments: bool = False

    profit_amount: Decimal = ZERO

    # Snapshot recomputed from the payment history
    total_debt_acquired: Decimal = ZERO
    expected_weekly_payment: Decimal = ZERO
    total_paid: Decimal = ZERO
    pending_amount_stored: Decimal = ZERO

    def __post_init__(self):
        for name in ('requested_amount', 'amount_given', 'commission_amount', 'profit_amount',
                     'total_debt_acquired', 'expected_weekly_payment', 'total_paid',
                     'pending_amount_stored'):
            setattr(self, name, quantize_money(getattr(self, name)))

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def disbursed_total(self) -> Decimal:
        """Cash that left the lead's fund when the loan was granted"""
        return self.amount_given + self.commission_amount


@dataclass
class LoanPayment(StorageRecord):
    """Single collection event against a loan"""
    loan_id: str
    amount: Decimal
    received_at: datetime
    commission: Decimal = ZERO  # Owed to the lead for collecting
    payment_type: PaymentType = PaymentType.PAYMENT
    payment_method: PaymentMethod = PaymentMethod.CASH
    lead_payment_received_id: Optional[str] = None

    def __post_init__(self):
        self.amount = quantize_money(self.amount)
        self.commission = quantize_money(self.commission)


_UPDATABLE_FIELDS = {
    'requested_amount', 'amount_given', 'commission_amount', 'loan_type_id', 'sign_date',
    'borrower_id', 'status', 'finished_date', 'bad_debt_date', 'is_deceased'
}


class LoanManager:
    """
    Manages loans from origination through renewal, payoff and deletion
    """

    def __init__(
        self,
        storage: StorageInterface,
        route_manager: RouteManager,
        account_manager: AccountManager,
        transaction_processor: TransactionProcessor,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.route_manager = route_manager
        self.account_manager = account_manager
        self.transaction_processor = transaction_processor
        self.audit_trail = audit_trail

        self.loans_table = "loans"
        self.loan_types_table = "loan_types"
        self.payments_table = "loan_payments"
        self.logger = get_logger("lending.loans")

    # Loan types

    def create_loan_type(self, name: str, rate: Decimal, week_duration: int) -> LoanType:
        if week_duration < 0:
            raise LendingError("Week duration cannot be negative")
        now = datetime.now(timezone.utc)
        loan_type = LoanType(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            rate=Decimal(str(rate)),
            week_duration=week_duration
        )
        self.storage.save(self.loan_types_table, loan_type.id, loan_type.to_dict())
        return loan_type

    def get_loan_type(self, loan_type_id: Optional[str]) -> Optional[LoanType]:
        if not loan_type_id:
            return None
        data = self.storage.load(self.loan_types_table, loan_type_id)
        return LoanType.from_dict(data) if data else None

    def require_loan_type(self, loan_type_id: Optional[str]) -> LoanType:
        loan_type = self.get_loan_type(loan_type_id)
        if not loan_type:
            raise RecordNotFoundError(f"Loan type {loan_type_id} not found")
        return loan_type

    # Lookups

    def get_loan(self, loan_id: Optional[str]) -> Optional[Loan]:
        """Get loan by ID"""
        if not loan_id:
            return None
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def require_loan(self, loan_id: Optional[str]) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise RecordNotFoundError(f"Loan {loan_id} not found")
        return loan

    def list_loans(self, **filters: Any) -> List[Loan]:
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda l: l.created_at)
        return loans

    def get_loan_payments(self, loan_id: str) -> List[LoanPayment]:
        """Payments of a loan ordered by when they were received"""
        payments = [LoanPayment.from_dict(data)
                    for data in self.storage.find(self.payments_table, {'loan_id': loan_id})]
        payments.sort(key=lambda p: (p.received_at, p.created_at))
        return payments

    # Origination

    def create_loan(
        self,
        requested_amount: Decimal,
        amount_given: Decimal,
        loan_type_id: str,
        lead_id: str,
        sign_date: Optional[datetime] = None,
        commission_amount: Decimal = ZERO,
        previous_loan_id: Optional[str] = None,
        borrower_id: Optional[str] = None
    ) -> Loan:
        """
        Originate a loan and disburse it from the lead's cash fund

        Args:
            requested_amount: Principal the borrower asked for
            amount_given: Cash actually handed over
            loan_type_id: Product defining rate and duration
            lead_id: Lead who disburses and collects
            sign_date: Signing date (defaults to now)
            commission_amount: Origination commission paid to the lead
            previous_loan_id: Loan this one renews

        Returns:
            Persisted Loan with profit and metrics filled in

        Raises:
            RecordNotFoundError: Unknown loan type, lead or previous loan
            AccountNotFoundError: Lead's route has no cash fund
            InsufficientFundsError: Cash fund cannot cover the disbursement
        """
        if quantize_money(requested_amount) < ZERO or quantize_money(amount_given) < ZERO:
            raise LendingError("Loan amounts cannot be negative")
        if quantize_money(commission_amount) < ZERO:
            raise LendingError("Commission cannot be negative")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            requested_amount=requested_amount,
            amount_given=amount_given,
            loan_type_id=loan_type_id,
            lead_id=lead_id,
            sign_date=sign_date or now,
            borrower_id=borrower_id,
            previous_loan_id=previous_loan_id,
            commission_amount=commission_amount
        )

        with self.storage.atomic():
            self.require_loan_type(loan_type_id)
            if previous_loan_id:
                self.require_loan(previous_loan_id)

            self._save_loan(loan)
            self.on_loan_created(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "lead_id": lead_id,
                    "requested_amount": loan.requested_amount,
                    "amount_given": loan.amount_given,
                    "commission_amount": loan.commission_amount,
                    "previous_loan_id": previous_loan_id
                }
            )

        log_action(
            self.logger, "info",
            f"Loan originated: {format_money(loan.amount_given)} given, {format_money(loan.requested_amount)} requested",
            action="loan.created", resource=loan.id,
            extra={"lead_id": lead_id, "renewal": bool(previous_loan_id)}
        )
        return self.require_loan(loan.id)

    def on_loan_created(self, loan: Loan) -> None:
        """
        Disburse a newly persisted loan

        Books the LOAN_GRANTED and LOAN_GRANTED_COMMISSION expenses against
        the lead's route cash fund, computes the loan's profit, closes the
        previous loan on a renewal and recomputes metrics. All or nothing.
        """
        with self.storage.atomic():
            cash_account = self.account_manager.require_lead_account(
                loan.lead_id, AccountType.EMPLOYEE_CASH_FUND
            )

            self.transaction_processor.create_transaction(
                amount=loan.amount_given,
                transaction_type=TransactionType.EXPENSE,
                expense_source=ExpenseSource.LOAN_GRANTED,
                source_account_id=cash_account.id,
                date=loan.sign_date,
                description=f"Loan granted {format_money(loan.amount_given)}",
                loan_id=loan.id,
                lead_id=loan.lead_id
            )
            self.transaction_processor.create_transaction(
                amount=loan.commission_amount,
                transaction_type=TransactionType.EXPENSE,
                expense_source=ExpenseSource.LOAN_GRANTED_COMMISSION,
                source_account_id=cash_account.id,
                date=loan.sign_date,
                description=f"Loan granted commission {format_money(loan.commission_amount)}",
                loan_id=loan.id,
                lead_id=loan.lead_id
            )

            loan.profit_amount = self.calculate_loan_profit_amount(loan)

            if loan.previous_loan_id:
                self._close_renewed_loan(loan)

            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

        self.recompute_loan_metrics(loan.id)

    def _close_renewed_loan(self, loan: Loan) -> None:
        previous = self.require_loan(loan.previous_loan_id)
        previous.status = LoanStatus.RENOVATED
        previous.finished_date = loan.sign_date
        previous.renewed_date = loan.sign_date
        previous.updated_at = datetime.now(timezone.utc)
        self._save_loan(previous)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_RENEWED,
            entity_type="loan",
            entity_id=previous.id,
            metadata={"renewed_by": loan.id, "finished_date": loan.sign_date}
        )

    # Updates

    def update_loan(self, loan_id: str, **changes: Any) -> Loan:
        """
        Change loan terms or status and propagate to the ledger

        Raises:
            RecordNotFoundError: Loan or new loan type not found
            InsufficientFundsError: A larger disbursement cannot be covered
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise LendingError(f"Cannot update loan fields: {sorted(unknown)}")

        with self.storage.atomic():
            previous = self.require_loan(loan_id)
            loan = replace(previous, **changes)
            if loan.loan_type_id != previous.loan_type_id:
                self.require_loan_type(loan.loan_type_id)

            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)
            self.on_loan_updated(loan, previous)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_UPDATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={key: getattr(loan, key) for key in changes}
            )

        return self.require_loan(loan_id)

    def on_loan_updated(self, loan: Loan, previous: Loan) -> None:
        """
        Propagate a loan edit

        A changed disbursement moves only the difference through the two
        existing disbursement transactions. Profit is recomputed over the
        full renewal chain and the metrics snapshot refreshed.
        """
        with self.storage.atomic():
            if loan.amount_given != previous.amount_given:
                self._update_disbursement(loan, ExpenseSource.LOAN_GRANTED, loan.amount_given)
            if loan.commission_amount != previous.commission_amount:
                self._update_disbursement(loan, ExpenseSource.LOAN_GRANTED_COMMISSION,
                                          loan.commission_amount)

            loan.profit_amount = self.calculate_loan_profit_amount(loan)

            if loan.status in TERMINAL_STATUSES and loan.finished_date is None:
                loan.finished_date = datetime.now(timezone.utc)
            if loan.status != previous.status:
                loan.finished_by_payments = False
                if loan.status == LoanStatus.FINISHED:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_FINISHED,
                        entity_type="loan",
                        entity_id=loan.id,
                        metadata={"finished_date": loan.finished_date, "manual": True}
                    )

            self._save_loan(loan)

        self.recompute_loan_metrics(loan.id)

    def _update_disbursement(self, loan: Loan, source: ExpenseSource, amount: Decimal) -> None:
        transactions = self.transaction_processor.find_transactions(
            loan_id=loan.id, expense_source=source
        )
        if not transactions:
            self.logger.warning(f"Loan {loan.id} has no {source.value} transaction to update")
            return
        self.transaction_processor.update_transaction(
            transactions[0].id,
            amount=amount,
            description=f"{source.value.replace('_', ' ').capitalize()} {format_money(amount)}"
        )

    def mark_bad_debt(self, loan_id: str, bad_debt_date: Optional[datetime] = None) -> Loan:
        """Flag a loan as written off for portfolio cleanup"""
        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            loan.bad_debt_date = bad_debt_date or datetime.now(timezone.utc)
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_BAD_DEBT,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "bad_debt_date": loan.bad_debt_date,
                    "pending_amount": loan.pending_amount_stored
                }
            )
        return loan

    # Deletion

    def delete_loan(self, loan_id: str) -> Loan:
        """
        Delete a loan and undo everything it did to the ledger

        Raises:
            RecordNotFoundError: Loan not found
            InsufficientFundsError: Collected payments were already spent
                from the account they were paid into
        """
        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            self.storage.delete(self.loans_table, loan.id)
            self.on_loan_deleted(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DELETED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "lead_id": loan.lead_id,
                    "amount_given": loan.amount_given,
                    "commission_amount": loan.commission_amount,
                    "previous_loan_id": loan.previous_loan_id
                }
            )

        log_action(self.logger, "info", "Loan deleted", action="loan.deleted", resource=loan.id)
        return loan

    def on_loan_deleted(self, previous_loan: Loan) -> None:
        """
        Reverse a deleted loan

        Removes every transaction tied to the loan, reactivates the loan it
        renewed and returns the disbursement to the lead's cash fund. A
        missing cash fund only skips the restoration.
        """
        with self.storage.atomic():
            transactions = self.transaction_processor.find_transactions(loan_id=previous_loan.id)
            disbursement_sources = (ExpenseSource.LOAN_GRANTED, ExpenseSource.LOAN_GRANTED_COMMISSION)

            # The disbursement comes back below as one restoration
            for transaction in transactions:
                if transaction.expense_source in disbursement_sources:
                    self.transaction_processor.delete_transaction(transaction.id, apply_balance=False)

            self._restore_disbursement(previous_loan)

            for transaction in transactions:
                if transaction.expense_source not in disbursement_sources:
                    self.transaction_processor.delete_transaction(transaction.id)

            for payment in self.get_loan_payments(previous_loan.id):
                self.storage.delete(self.payments_table, payment.id)

            if previous_loan.previous_loan_id:
                self._reactivate_loan(previous_loan.previous_loan_id)

    def _restore_disbursement(self, loan: Loan) -> None:
        amount = loan.disbursed_total
        if amount == ZERO:
            return
        cash_account = self.account_manager.get_lead_account(loan.lead_id, AccountType.EMPLOYEE_CASH_FUND)
        if not cash_account:
            self.logger.error(
                f"Cash fund for lead {loan.lead_id} not found; "
                f"{format_money(amount)} from deleted loan {loan.id} not restored"
            )
            return
        self.account_manager.apply_delta(cash_account.id, amount, reason=f"loan {loan.id} deleted")

    def _reactivate_loan(self, loan_id: str) -> None:
        loan = self.get_loan(loan_id)
        if not loan:
            self.logger.warning(f"Previous loan {loan_id} not found; nothing to reactivate")
            return
        loan.status = LoanStatus.ACTIVE
        loan.finished_date = None
        loan.renewed_date = None
        loan.finished_by_payments = False
        loan.updated_at = datetime.now(timezone.utc)
        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_REACTIVATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={}
        )

    # Metrics

    def recompute_loan_metrics(self, loan_id: str) -> Optional[Loan]:
        """
        Recompute and persist the loan's metrics snapshot

        Always derived from the full payment set, so safe to call after
        every write. Never raises: failures are logged and the caller's
        write stands.

        Returns:
            Updated Loan, or None if the loan is missing or the recompute failed
        """
        try:
            with self.storage.atomic():
                loan = self.get_loan(loan_id)
                if not loan:
                    self.logger.warning(f"Cannot recompute metrics: loan {loan_id} not found")
                    return None
                self._apply_metrics(loan)
                return loan
        except Exception:
            self.logger.error(f"Metrics recompute failed for loan {loan_id}", exc_info=True)
            return None

    def _apply_metrics(self, loan: Loan) -> None:
        loan_type = self.get_loan_type(loan.loan_type_id)
        rate = loan_type.rate if loan_type else ZERO
        week_duration = loan_type.week_duration if loan_type else 0

        payments = self.get_loan_payments(loan.id)
        total_debt = calculate_total_debt(loan.requested_amount, rate)
        total_paid = sum_money(p.amount for p in payments)

        loan.total_debt_acquired = total_debt
        loan.expected_weekly_payment = calculate_expected_weekly_payment(total_debt, week_duration)
        loan.total_paid = total_paid
        loan.pending_amount_stored = max(ZERO, quantize_money(total_debt - total_paid))

        newly_finished = False
        if payments and total_paid >= total_debt:
            if loan.finished_date is None:
                last_payment = max(payments, key=lambda p: p.received_at or p.created_at)
                loan.finished_date = last_payment.received_at or last_payment.created_at
                if loan.status == LoanStatus.ACTIVE:
                    loan.status = LoanStatus.FINISHED
                    loan.finished_by_payments = True
                newly_finished = True
        elif loan.finished_by_payments and loan.status == LoanStatus.FINISHED:
            # A payment edit reopened debt on a loan that payments had closed
            loan.status = LoanStatus.ACTIVE
            loan.finished_date = None
            loan.finished_by_payments = False

        loan.updated_at = datetime.now(timezone.utc)
        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_METRICS_RECOMPUTED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "total_debt_acquired": loan.total_debt_acquired,
                "expected_weekly_payment": loan.expected_weekly_payment,
                "total_paid": loan.total_paid,
                "pending_amount_stored": loan.pending_amount_stored
            }
        )
        if newly_finished:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_FINISHED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"finished_date": loan.finished_date, "total_paid": total_paid}
            )

    # Profit

    def calculate_loan_profit_amount(self, loan: Loan) -> Decimal:
        """Profit over the loan's life plus what the renewed loan still owed"""
        loan_type = self.get_loan_type(loan.loan_type_id)
        if not loan_type:
            return ZERO
        pending_from_previous = ZERO
        if loan.previous_loan_id:
            pending_from_previous = self.calculate_pending_profit_amount(loan.previous_loan_id)
        return calculate_loan_profit_amount(loan.requested_amount, loan_type.rate, pending_from_previous)

    def calculate_earned_profit(self, loan_id: str) -> Decimal:
        """Profit already collected, from the payments' transaction attribution"""
        return sum_money(
            t.profit_amount
            for t in self.transaction_processor.find_transactions(loan_id=loan_id)
            if t.loan_payment_id
        )

    def calculate_pending_profit_amount(self, loan_id: str) -> Decimal:
        """Profit not yet collected (0 for an unknown loan)"""
        loan = self.get_loan(loan_id)
        if not loan:
            return ZERO
        pending = loan.profit_amount - self.calculate_earned_profit(loan_id)
        return max(ZERO, quantize_money(pending))

    def get_loan_summary(self, loan_id: str) -> Dict[str, Any]:
        """Figures shown on the loan detail page"""
        loan = self.require_loan(loan_id)
        return {
            "loan_id": loan.id,
            "status": loan.status.value,
            "total_debt_acquired": loan.total_debt_acquired,
            "expected_weekly_payment": loan.expected_weekly_payment,
            "total_paid": loan.total_paid,
            "pending_amount": loan.pending_amount_stored,
            "profit_amount": loan.profit_amount,
            "earned_profit": self.calculate_earned_profit(loan_id),
            "pending_profit": self.calculate_pending_profit_amount(loan_id),
            "payment_count": len(self.get_loan_payments(loan_id))
        }

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
