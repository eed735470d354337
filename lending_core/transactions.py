"""
Transaction Processing Module

Every money movement in the back office is a Transaction. Applying one
mutates the stored balance of the accounts it touches:

- EXPENSE and TRANSFER decrease the source account
- INCOME and TRANSFER increase the destination account

A source account may never go below zero. Updates apply only the delta
between the old and new amount, deletes reverse the original effect.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .money import ZERO, quantize_money, format_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager
from .exceptions import InvalidTransactionError, RecordNotFoundError
from .logging_config import get_logger, log_action


class TransactionType(Enum):
    """Types of ledger movements"""
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"
    INVESTMENT = "investment"


class IncomeSource(Enum):
    """Business meaning of an INCOME transaction"""
    CASH_LOAN_PAYMENT = "cash_loan_payment"
    BANK_LOAN_PAYMENT = "bank_loan_payment"
    MONEY_INVESTMENT = "money_investment"
    BALANCE_ADJUSTMENT = "balance_adjustment"


class ExpenseSource(Enum):
    """Business meaning of an EXPENSE transaction"""
    VIATIC = "viatic"
    GASOLINE = "gasoline"
    ACCOMMODATION = "accommodation"
    NOMINA_SALARY = "nomina_salary"
    EXTERNAL_SALARY = "external_salary"
    VEHICLE_MAINTENANCE = "vehicle_maintenance"
    LOAN_GRANTED = "loan_granted"
    LOAN_GRANTED_COMMISSION = "loan_granted_commission"
    LOAN_PAYMENT_COMMISSION = "loan_payment_commission"
    LEAD_COMMISSION = "lead_commission"
    FALCO_LOSS = "falco_loss"
    BALANCE_ADJUSTMENT = "balance_adjustment"


DEBITS_SOURCE = (TransactionType.EXPENSE, TransactionType.TRANSFER)
CREDITS_DESTINATION = (TransactionType.INCOME, TransactionType.TRANSFER)


@dataclass
class Transaction(StorageRecord):
    """
    Atomic ledger movement
    """
    amount: Decimal
    date: datetime
    transaction_type: TransactionType
    income_source: Optional[IncomeSource] = None
    expense_source: Optional[ExpenseSource] = None
    source_account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    description: str = ""

    # Links back to the business records that produced the movement
    loan_id: Optional[str] = None
    loan_payment_id: Optional[str] = None
    lead_id: Optional[str] = None
    lead_payment_received_id: Optional[str] = None

    # Transaction-level attribution of a payment
    profit_amount: Decimal = ZERO
    return_to_capital: Decimal = ZERO

    def __post_init__(self):
        self.amount = quantize_money(self.amount)
        self.profit_amount = quantize_money(self.profit_amount)
        self.return_to_capital = quantize_money(self.return_to_capital)

    def validate(self) -> None:
        """Check amount sign and the account required by the type"""
        if self.amount < ZERO:
            raise InvalidTransactionError("Transaction amount cannot be negative")

        if self.transaction_type in DEBITS_SOURCE and not self.source_account_id:
            raise InvalidTransactionError(
                f"{self.transaction_type.value} transaction requires a source account"
            )
        if self.transaction_type in CREDITS_DESTINATION and not self.destination_account_id:
            raise InvalidTransactionError(
                f"{self.transaction_type.value} transaction requires a destination account"
            )
        if (self.transaction_type == TransactionType.TRANSFER
                and self.source_account_id == self.destination_account_id):
            raise InvalidTransactionError("Transfer source and destination must differ")

    @property
    def debits_source(self) -> bool:
        return self.transaction_type in DEBITS_SOURCE and self.source_account_id is not None

    @property
    def credits_destination(self) -> bool:
        return self.transaction_type in CREDITS_DESTINATION and self.destination_account_id is not None

    def balance_effects(self) -> Dict[str, Decimal]:
        """Signed change this transaction makes to each account it touches"""
        effects: Dict[str, Decimal] = {}
        if self.debits_source:
            effects[self.source_account_id] = effects.get(self.source_account_id, ZERO) - self.amount
        if self.credits_destination:
            effects[self.destination_account_id] = (
                effects.get(self.destination_account_id, ZERO) + self.amount
            )
        return effects


_UPDATABLE_FIELDS = {
    'amount', 'date', 'transaction_type', 'income_source', 'expense_source',
    'source_account_id', 'destination_account_id', 'description',
    'profit_amount', 'return_to_capital'
}


class TransactionProcessor:
    """
    Creates, updates and deletes transactions and keeps account balances in step
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.audit_trail = audit_trail
        self.transactions_table = "transactions"
        self.logger = get_logger("lending.transactions")

    def create_transaction(
        self,
        amount: Decimal,
        transaction_type: TransactionType,
        date: Optional[datetime] = None,
        income_source: Optional[IncomeSource] = None,
        expense_source: Optional[ExpenseSource] = None,
        source_account_id: Optional[str] = None,
        destination_account_id: Optional[str] = None,
        description: str = "",
        loan_id: Optional[str] = None,
        loan_payment_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        lead_payment_received_id: Optional[str] = None,
        profit_amount: Decimal = ZERO,
        return_to_capital: Decimal = ZERO,
        apply_balance: bool = True
    ) -> Transaction:
        """
        Create a transaction and apply it to account balances

        Args:
            amount: Amount moved (>= 0)
            transaction_type: INCOME, EXPENSE, TRANSFER or INVESTMENT
            apply_balance: False records the movement without touching
                balances (the caller settles them in bulk)

        Returns:
            Persisted Transaction

        Raises:
            InvalidTransactionError: Bad amount or account combination
            AccountNotFoundError: Referenced account does not exist
            InsufficientFundsError: Source account would go negative
        """
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            amount=amount,
            date=date or now,
            transaction_type=transaction_type,
            income_source=income_source,
            expense_source=expense_source,
            source_account_id=source_account_id,
            destination_account_id=destination_account_id,
            description=description,
            loan_id=loan_id,
            loan_payment_id=loan_payment_id,
            lead_id=lead_id,
            lead_payment_received_id=lead_payment_received_id,
            profit_amount=profit_amount,
            return_to_capital=return_to_capital
        )
        transaction.validate()

        with self.storage.atomic():
            self._require_accounts(transaction)
            if apply_balance:
                self.apply_effects(transaction.balance_effects(), f"transaction {transaction.id}")
            self._save_transaction(transaction)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_CREATED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata=self._audit_metadata(transaction, apply_balance)
            )

        log_action(
            self.logger, "info",
            f"Transaction created: {transaction_type.value} {format_money(transaction.amount)}",
            action="transaction.created", resource=transaction.id,
            extra={"source": self._source_label(transaction), "apply_balance": apply_balance}
        )
        return transaction

    def update_transaction(
        self,
        transaction_id: str,
        apply_balance: bool = True,
        **changes: Any
    ) -> Transaction:
        """
        Update a transaction in place

        When the type and accounts are unchanged only the amount delta is
        applied to balances; otherwise the old effect is reverted and the
        new one applied.

        Raises:
            RecordNotFoundError: Transaction does not exist
            InsufficientFundsError: Source account would go negative
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidTransactionError(f"Cannot update fields: {sorted(unknown)}")

        with self.storage.atomic():
            previous = self.require_transaction(transaction_id)
            transaction = self.require_transaction(transaction_id)

            for key, value in changes.items():
                setattr(transaction, key, value)
            transaction.__post_init__()
            transaction.validate()
            self._require_accounts(transaction)

            if apply_balance:
                effects = transaction.balance_effects()
                for account_id, amount in previous.balance_effects().items():
                    effects[account_id] = effects.get(account_id, ZERO) - amount
                self.apply_effects(effects, f"transaction {transaction.id} updated")

            transaction.updated_at = datetime.now(timezone.utc)
            self._save_transaction(transaction)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_UPDATED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={
                    **self._audit_metadata(transaction, apply_balance),
                    "previous_amount": previous.amount
                }
            )

        return transaction

    def delete_transaction(self, transaction_id: str, apply_balance: bool = True) -> Transaction:
        """
        Delete a transaction, reversing its balance effect

        Raises:
            RecordNotFoundError: Transaction does not exist
            InsufficientFundsError: Reversing an income would leave the
                destination account negative
        """
        with self.storage.atomic():
            transaction = self.require_transaction(transaction_id)

            if apply_balance:
                reversed_effects = {account_id: -amount
                                    for account_id, amount in transaction.balance_effects().items()}
                self.apply_effects(reversed_effects, f"transaction {transaction.id} deleted")

            self.storage.delete(self.transactions_table, transaction.id)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_DELETED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata=self._audit_metadata(transaction, apply_balance)
            )

        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        return Transaction.from_dict(data) if data else None

    def require_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise RecordNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def find_transactions(self, **filters: Any) -> List[Transaction]:
        """Find transactions by exact field match, oldest first"""
        transactions = [Transaction.from_dict(data)
                        for data in self.storage.find(self.transactions_table, filters)]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def calculate_account_balance(self, account_id: str) -> Decimal:
        """
        Rebuild an account balance from its transaction history

        Independent of the stored running balance; used to verify it.
        """
        balance = ZERO
        for data in self.storage.load_all(self.transactions_table):
            transaction = Transaction.from_dict(data)
            balance += transaction.balance_effects().get(account_id, ZERO)
        return quantize_money(balance)

    def reconcile_account(self, account_id: str) -> Dict[str, Decimal]:
        """Compare the stored balance against the one derived from transactions"""
        account = self.account_manager.require_account(account_id)
        derived = self.calculate_account_balance(account_id)
        return {
            'stored': account.amount,
            'derived': derived,
            'difference': quantize_money(account.amount - derived)
        }

    def adjust_account_balance(
        self,
        account_id: str,
        target_amount: Decimal,
        counter_account_id: Optional[str] = None,
        description: str = "Manual balance adjustment"
    ) -> Optional[Transaction]:
        """
        Bring an account to ``target_amount`` with a recorded movement

        Without a counter account the difference is booked as a
        BALANCE_ADJUSTMENT income or expense. With one, the difference is
        transferred from/to it. Returns None when already on target.
        """
        target_amount = quantize_money(target_amount)
        if target_amount < ZERO:
            raise InvalidTransactionError("Target balance cannot be negative")

        with self.storage.atomic():
            account = self.account_manager.require_account(account_id)
            difference = quantize_money(target_amount - account.amount)
            if difference == ZERO:
                return None

            if counter_account_id:
                if difference > ZERO:
                    source, destination = counter_account_id, account_id
                else:
                    source, destination = account_id, counter_account_id
                transaction = self.create_transaction(
                    amount=abs(difference),
                    transaction_type=TransactionType.TRANSFER,
                    source_account_id=source,
                    destination_account_id=destination,
                    description=description
                )
            elif difference > ZERO:
                transaction = self.create_transaction(
                    amount=difference,
                    transaction_type=TransactionType.INCOME,
                    income_source=IncomeSource.BALANCE_ADJUSTMENT,
                    destination_account_id=account_id,
                    description=description
                )
            else:
                transaction = self.create_transaction(
                    amount=-difference,
                    transaction_type=TransactionType.EXPENSE,
                    expense_source=ExpenseSource.BALANCE_ADJUSTMENT,
                    source_account_id=account_id,
                    description=description
                )

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_ADJUSTED,
                entity_type="account",
                entity_id=account_id,
                metadata={
                    "previous_amount": account.amount,
                    "target_amount": target_amount,
                    "transaction_id": transaction.id,
                    "counter_account_id": counter_account_id
                }
            )

        return transaction

    def apply_effects(self, effects: Dict[str, Decimal], reason: str) -> None:
        """Apply signed balance changes per account, credits before debits"""
        for account_id, delta in sorted(effects.items(), key=lambda item: item[1], reverse=True):
            if delta != ZERO:
                self.account_manager.apply_delta(account_id, delta, reason=reason)

    def _require_accounts(self, transaction: Transaction) -> None:
        for account_id in (transaction.source_account_id, transaction.destination_account_id):
            if account_id:
                self.account_manager.require_account(account_id)

    def _save_transaction(self, transaction: Transaction) -> None:
        self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())

    @staticmethod
    def _source_label(transaction: Transaction) -> Optional[str]:
        source = transaction.income_source or transaction.expense_source
        return source.value if source else None

    def _audit_metadata(self, transaction: Transaction, apply_balance: bool) -> Dict[str, Any]:
        return {
            "amount": transaction.amount,
            "transaction_type": transaction.transaction_type.value,
            "source": self._source_label(transaction),
            "source_account_id": transaction.source_account_id,
            "destination_account_id": transaction.destination_account_id,
            "loan_id": transaction.loan_id,
            "loan_payment_id": transaction.loan_payment_id,
            "apply_balance": apply_balance
        }
