"""
Lead Payment Receipts

A lead hands in the day's collections as one batch: cash, a bank
deposit, and possibly a shortfall (falco) against what the route
expected. The batch is booked in one atomic block and the cash fund and
bank balances move once by the consolidated net change.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from enum import Enum
import uuid

from .money import ZERO, quantize_money, sum_money, format_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .routes import RouteManager
from .accounts import AccountManager, AccountType
from .transactions import Transaction, TransactionProcessor, TransactionType, ExpenseSource
from .loans import LoanManager, LoanPayment, PaymentMethod, PaymentType
from .payments import PaymentManager
from .exceptions import LendingError, RecordNotFoundError
from .logging_config import get_logger, log_action


class PaymentStatus(Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"


@dataclass
class PaymentInput:
    """One loan's line in a batch receipt"""
    loan_id: str
    amount: Decimal
    commission: Decimal = ZERO
    payment_type: PaymentType = PaymentType.PAYMENT
    payment_method: PaymentMethod = PaymentMethod.CASH


@dataclass
class LeadPaymentReceived(StorageRecord):
    """Batch of collections a lead turned in on one day"""
    expected_amount: Decimal
    paid_amount: Decimal
    cash_paid_amount: Decimal
    bank_paid_amount: Decimal
    falco_amount: Decimal
    payment_status: PaymentStatus
    agent_id: str
    lead_id: str
    payment_date: datetime

    def __post_init__(self):
        for name in ('expected_amount', 'paid_amount', 'cash_paid_amount',
                     'bank_paid_amount', 'falco_amount'):
            setattr(self, name, quantize_money(getattr(self, name)))

    @property
    def shortfall(self) -> Decimal:
        """Falco originally recorded, before any compensation"""
        return max(ZERO, self.expected_amount - self.paid_amount)


class LeadPaymentManager:
    """
    Books batch receipts handed in by leads
    """

    def __init__(
        self,
        storage: StorageInterface,
        route_manager: RouteManager,
        account_manager: AccountManager,
        transaction_processor: TransactionProcessor,
        loan_manager: LoanManager,
        payment_manager: PaymentManager,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.route_manager = route_manager
        self.account_manager = account_manager
        self.transaction_processor = transaction_processor
        self.loan_manager = loan_manager
        self.payment_manager = payment_manager
        self.audit_trail = audit_trail

        self.receipts_table = payment_manager.receipts_table
        self.logger = get_logger("lending.receipts")

    def get_receipt(self, receipt_id: Optional[str]) -> Optional[LeadPaymentReceived]:
        if not receipt_id:
            return None
        data = self.storage.load(self.receipts_table, receipt_id)
        return LeadPaymentReceived.from_dict(data) if data else None

    def require_receipt(self, receipt_id: Optional[str]) -> LeadPaymentReceived:
        receipt = self.get_receipt(receipt_id)
        if not receipt:
            raise RecordNotFoundError(f"Lead payment received {receipt_id} not found")
        return receipt

    def save_receipt(self, receipt: LeadPaymentReceived) -> None:
        self.storage.save(self.receipts_table, receipt.id, receipt.to_dict())

    def get_receipt_payments(self, receipt_id: str) -> List[LoanPayment]:
        payments = [LoanPayment.from_dict(data) for data in self.storage.find(
            self.payment_manager.payments_table, {'lead_payment_received_id': receipt_id}
        )]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def record_lead_payment_received(
        self,
        expected_amount: Decimal,
        agent_id: str,
        lead_id: str,
        payments: Iterable[PaymentInput],
        cash_paid_amount: Decimal = ZERO,
        bank_paid_amount: Decimal = ZERO,
        payment_date: Optional[datetime] = None
    ) -> LeadPaymentReceived:
        """
        Book a lead's batch of collections

        Args:
            expected_amount: What the route expected the lead to collect
            agent_id: Employee who received the money
            lead_id: Lead who handed it in
            payments: Per-loan payment lines
            cash_paid_amount: Portion handed in as cash
            bank_paid_amount: Collected cash the lead deposited to the bank,
                booked as a cash fund to bank TRANSFER. Borrowers' own
                MONEY_TRANSFER payments already credit the bank through their
                INCOME and must not be included here.
            payment_date: Collection date (defaults to now)

        Returns:
            Persisted LeadPaymentReceived

        Raises:
            RecordNotFoundError: Unknown agent, lead or loan
            AccountNotFoundError: Lead's route lacks a cash fund or bank account
            InsufficientFundsError: Net effect would overdraw the cash fund
        """
        expected_amount = quantize_money(expected_amount)
        cash_paid_amount = quantize_money(cash_paid_amount)
        bank_paid_amount = quantize_money(bank_paid_amount)
        if min(expected_amount, cash_paid_amount, bank_paid_amount) < ZERO:
            raise LendingError("Receipt amounts cannot be negative")

        paid_amount = cash_paid_amount + bank_paid_amount
        falco_amount = max(ZERO, expected_amount - paid_amount)
        status = PaymentStatus.COMPLETE if paid_amount >= expected_amount else PaymentStatus.PARTIAL
        payment_date = payment_date or datetime.now(timezone.utc)
        payments = list(payments)

        now = datetime.now(timezone.utc)
        receipt = LeadPaymentReceived(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            expected_amount=expected_amount,
            paid_amount=paid_amount,
            cash_paid_amount=cash_paid_amount,
            bank_paid_amount=bank_paid_amount,
            falco_amount=falco_amount,
            payment_status=status,
            agent_id=agent_id,
            lead_id=lead_id,
            payment_date=payment_date
        )

        with self.storage.atomic():
            self.route_manager.require_employee(agent_id)
            self.route_manager.require_employee(lead_id)
            cash_account = self.account_manager.require_lead_account(lead_id, AccountType.EMPLOYEE_CASH_FUND)

            self.save_receipt(receipt)

            booked: List[Transaction] = []
            for line in payments:
                payment = self.payment_manager.create_payment(
                    loan_id=line.loan_id,
                    amount=line.amount,
                    received_at=payment_date,
                    commission=line.commission,
                    payment_type=line.payment_type,
                    payment_method=line.payment_method,
                    lead_payment_received_id=receipt.id,
                    apply_ledger_effects=False
                )
                booked.extend(self.payment_manager.sync_payment_transactions(payment, apply_balance=False))

            if bank_paid_amount > ZERO:
                bank_account = self.account_manager.require_lead_account(lead_id, AccountType.BANK)
                booked.append(self.transaction_processor.create_transaction(
                    amount=bank_paid_amount,
                    transaction_type=TransactionType.TRANSFER,
                    source_account_id=cash_account.id,
                    destination_account_id=bank_account.id,
                    date=payment_date,
                    description=f"Bank deposit {format_money(bank_paid_amount)}",
                    lead_id=lead_id,
                    lead_payment_received_id=receipt.id,
                    apply_balance=False
                ))

            if falco_amount > ZERO:
                booked.append(self.transaction_processor.create_transaction(
                    amount=falco_amount,
                    transaction_type=TransactionType.EXPENSE,
                    expense_source=ExpenseSource.FALCO_LOSS,
                    source_account_id=cash_account.id,
                    date=payment_date,
                    description=f"Falco loss {format_money(falco_amount)}",
                    lead_id=lead_id,
                    lead_payment_received_id=receipt.id,
                    apply_balance=False
                ))
                self.audit_trail.log_event(
                    event_type=AuditEventType.FALCO_LOSS_RECORDED,
                    entity_type="lead_payment_received",
                    entity_id=receipt.id,
                    metadata={"falco_amount": falco_amount, "lead_id": lead_id}
                )

            net_changes = self._consolidate(booked)
            self.transaction_processor.apply_effects(net_changes, f"lead payment received {receipt.id}")

            self.audit_trail.log_event(
                event_type=AuditEventType.LEAD_PAYMENT_RECEIVED,
                entity_type="lead_payment_received",
                entity_id=receipt.id,
                metadata={
                    "expected_amount": expected_amount,
                    "cash_paid_amount": cash_paid_amount,
                    "bank_paid_amount": bank_paid_amount,
                    "falco_amount": falco_amount,
                    "payment_status": status.value,
                    "payment_count": len(payments),
                    "net_changes": net_changes
                }
            )

        for loan_id in sorted({line.loan_id for line in payments}):
            self.loan_manager.recompute_loan_metrics(loan_id)

        log_action(
            self.logger, "info",
            f"Lead payment received: {format_money(paid_amount)} of {format_money(expected_amount)}",
            action="lead_payment.received", resource=receipt.id,
            extra={"lead_id": lead_id, "status": status.value, "falco_amount": str(falco_amount)}
        )
        return receipt

    def get_collected_total(self, receipt_id: str) -> Decimal:
        """Sum of the loan payments booked under a receipt"""
        return sum_money(p.amount for p in self.get_receipt_payments(receipt_id))

    @staticmethod
    def _consolidate(transactions: Iterable[Transaction]) -> Dict[str, Decimal]:
        net: Dict[str, Decimal] = {}
        for transaction in transactions:
            for account_id, amount in transaction.balance_effects().items():
                net[account_id] = net.get(account_id, ZERO) + amount
        return net
