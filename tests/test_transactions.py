"""
Test suite for transaction processing

Every transaction must move account balances by exactly its amount, never
drive a source account below zero, and be reversible.
"""

import pytest
from decimal import Decimal

from lending_core.storage import InMemoryStorage
from lending_core.audit import AuditTrail, AuditEventType
from lending_core.routes import RouteManager
from lending_core.accounts import AccountManager, AccountType
from lending_core.transactions import (
    TransactionProcessor, TransactionType, IncomeSource, ExpenseSource
)
from lending_core.exceptions import (
    AccountNotFoundError, InsufficientFundsError, InvalidTransactionError, RecordNotFoundError
)


class TestTransactionProcessor:
    """Test balance effects of transactions"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.route_manager = RouteManager(self.storage)
        self.account_manager = AccountManager(self.storage, self.route_manager, self.audit_trail)
        self.processor = TransactionProcessor(self.storage, self.account_manager, self.audit_trail)

        self.route = self.route_manager.create_route("Centro")
        self.cash = self.account_manager.create_account(
            "Cash fund", AccountType.EMPLOYEE_CASH_FUND, self.route.id, Decimal('500.00')
        )
        self.bank = self.account_manager.create_account(
            "Bank", AccountType.BANK, self.route.id
        )

    def balance(self, account):
        return self.account_manager.require_account(account.id).amount

    def test_income_increases_destination(self):
        """Test INCOME credits the destination account"""
        transaction = self.processor.create_transaction(
            amount=Decimal('120.50'),
            transaction_type=TransactionType.INCOME,
            income_source=IncomeSource.MONEY_INVESTMENT,
            destination_account_id=self.bank.id
        )

        assert transaction.amount == Decimal('120.50')
        assert self.balance(self.bank) == Decimal('120.50')
        assert self.balance(self.cash) == Decimal('500.00')

    def test_expense_decreases_source(self):
        """Test EXPENSE debits the source account"""
        self.processor.create_transaction(
            amount=Decimal('80'),
            transaction_type=TransactionType.EXPENSE,
            expense_source=ExpenseSource.GASOLINE,
            source_account_id=self.cash.id
        )

        assert self.balance(self.cash) == Decimal('420.00')

    def test_transfer_moves_between_accounts(self):
        """Test TRANSFER debits source and credits destination"""
        self.processor.create_transaction(
            amount=Decimal('200'),
            transaction_type=TransactionType.TRANSFER,
            source_account_id=self.cash.id,
            destination_account_id=self.bank.id
        )

        assert self.balance(self.cash) == Decimal('300.00')
        assert self.balance(self.bank) == Decimal('200.00')

    def test_overdraw_is_rejected(self):
        """Test that a source account can never go negative"""
        with pytest.raises(InsufficientFundsError, match="negative balance"):
            self.processor.create_transaction(
                amount=Decimal('500.01'),
                transaction_type=TransactionType.EXPENSE,
                expense_source=ExpenseSource.VIATIC,
                source_account_id=self.cash.id
            )

        assert self.balance(self.cash) == Decimal('500.00')
        assert self.processor.find_transactions() == []

    def test_spending_exact_balance_is_allowed(self):
        """Test that a balance may reach exactly zero"""
        self.processor.create_transaction(
            amount=Decimal('500'),
            transaction_type=TransactionType.EXPENSE,
            expense_source=ExpenseSource.NOMINA_SALARY,
            source_account_id=self.cash.id
        )

        assert self.balance(self.cash) == Decimal('0.00')

    def test_validation(self):
        """Test invalid amount and account combinations"""
        with pytest.raises(InvalidTransactionError, match="requires a source account"):
            self.processor.create_transaction(amount=Decimal('10'), transaction_type=TransactionType.EXPENSE)

        with pytest.raises(InvalidTransactionError, match="requires a destination account"):
            self.processor.create_transaction(amount=Decimal('10'), transaction_type=TransactionType.INCOME)

        with pytest.raises(InvalidTransactionError, match="cannot be negative"):
            self.processor.create_transaction(
                amount=Decimal('-10'),
                transaction_type=TransactionType.INCOME,
                destination_account_id=self.cash.id
            )

        with pytest.raises(InvalidTransactionError, match="must differ"):
            self.processor.create_transaction(
                amount=Decimal('10'),
                transaction_type=TransactionType.TRANSFER,
                source_account_id=self.cash.id,
                destination_account_id=self.cash.id
            )

    def test_unknown_account(self):
        """Test that referencing a missing account fails"""
        with pytest.raises(AccountNotFoundError):
            self.processor.create_transaction(
                amount=Decimal('10'),
                transaction_type=TransactionType.INCOME,
                destination_account_id="missing"
            )

    def test_apply_balance_false_only_records(self):
        """Test recording a movement without touching balances"""
        transaction = self.processor.create_transaction(
            amount=Decimal('50'),
            transaction_type=TransactionType.EXPENSE,
            expense_source=ExpenseSource.ACCOMMODATION,
            source_account_id=self.cash.id,
            apply_balance=False
        )

        assert self.balance(self.cash) == Decimal('500.00')
        assert self.processor.get_transaction(transaction.id) is not None

    def test_update_applies_only_delta(self):
        """Test that an amount edit moves the balance by the difference"""
        transaction = self.processor.create_transaction(
            amount=Decimal('100'),
            transaction_type=TransactionType.EXPENSE,
            expense_source=ExpenseSource.GASOLINE,
            source_account_id=self.cash.id
        )

        updated = self.processor.update_transaction(transaction.id, amount=Decimal('150'))

        assert updated.amount == Decimal('150.00')
        assert self.balance(self.cash) == Decimal('350.00')

        self.processor.update_transaction(transaction.id, amount=Decimal('40'))
        assert self.balance(self.cash) == Decimal('460.00')

    def test_update_moving_account_reverts_and_reapplies(self):
        """Test that changing the destination moves the amount between accounts"""
        transaction = self.processor.create_transaction(
            amount=Decimal('75'),
            transaction_type=TransactionType.INCOME,
            income_source=IncomeSource.CASH_LOAN_PAYMENT,
            destination_account_id=self.cash.id
        )

        self.processor.update_transaction(
            transaction.id,
            destination_account_id=self.bank.id,
            income_source=IncomeSource.BANK_LOAN_PAYMENT
        )

        assert self.balance(self.cash) == Decimal('500.00')
        assert self.balance(self.bank) == Decimal('75.00')

    def test_update_that_overdraws_is_rejected(self):
        """Test that an edit cannot push the source below zero"""
        transaction = self.processor.create_transaction(
            amount=Decimal('100'),
            transaction_type=TransactionType.EXPENSE,
            expense_source=ExpenseSource.GASOLINE,
            source_account_id=self.cash.id
        )

        with pytest.raises(InsufficientFundsError):
            self.processor.update_transaction(transaction.id, amount=Decimal('600'))

        assert self.processor.get_transaction(transaction.id).amount == Decimal('100.00')
        assert self.balance(self.cash) == Decimal('400.00')

    def test_update_rejects_unknown_fields(self):
        """Test that structural fields cannot be edited"""
        transaction = self.processor.create_transaction(
            amount=Decimal('10'),
            transaction_type=TransactionType.INCOME,
            destination_account_id=self.cash.id
        )

        with pytest.raises(InvalidTransactionError, match="Cannot update"):
            self.processor.update_transaction(transaction.id, loan_id="other")

    def test_delete_reverses_effect(self):
        """Test that deleting an expense gives the money back"""
        transaction = self.processor.create_transaction(
            amount=Decimal('60'),
            transaction_type=TransactionType.EXPENSE,
            expense_source=ExpenseSource.VEHICLE_MAINTENANCE,
            source_account_id=self.cash.id
        )

        self.processor.delete_transaction(transaction.id)

        assert self.balance(self.cash) == Decimal('500.00')
        assert self.processor.get_transaction(transaction.id) is None

    def test_delete_income_already_spent_is_rejected(self):
        """Test that reversing an income may not leave the destination negative"""
        income = self.processor.create_transaction(
            amount=Decimal('100'),
            transaction_type=TransactionType.INCOME,
            destination_account_id=self.bank.id
        )
        self.processor.create_transaction(
            amount=Decimal('80'),
            transaction_type=TransactionType.EXPENSE,
            expense_source=ExpenseSource.EXTERNAL_SALARY,
            source_account_id=self.bank.id
        )

        with pytest.raises(InsufficientFundsError):
            self.processor.delete_transaction(income.id)

        assert self.processor.get_transaction(income.id) is not None
        assert self.balance(self.bank) == Decimal('20.00')

    def test_delete_missing_transaction(self):
        """Test deleting an unknown transaction"""
        with pytest.raises(RecordNotFoundError):
            self.processor.delete_transaction("missing")

    def test_audit_events_recorded(self):
        """Test that every change is audited"""
        transaction = self.processor.create_transaction(
            amount=Decimal('10'),
            transaction_type=TransactionType.INCOME,
            destination_account_id=self.cash.id
        )
        self.processor.update_transaction(transaction.id, amount=Decimal('20'))
        self.processor.delete_transaction(transaction.id)

        events = self.audit_trail.get_events_for_entity("transaction", transaction.id)
        assert [e.event_type for e in events] == [
            AuditEventType.TRANSACTION_CREATED,
            AuditEventType.TRANSACTION_UPDATED,
            AuditEventType.TRANSACTION_DELETED
        ]
        assert events[1].metadata["previous_amount"] == "10.00"


class TestBalanceVerification:
    """Test derived balances, reconciliation and manual adjustment"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.route_manager = RouteManager(self.storage)
        self.account_manager = AccountManager(self.storage, self.route_manager, self.audit_trail)
        self.processor = TransactionProcessor(self.storage, self.account_manager, self.audit_trail)

        route = self.route_manager.create_route("Norte")
        self.cash = self.account_manager.create_account("Cash", AccountType.EMPLOYEE_CASH_FUND, route.id)
        self.office = self.account_manager.create_account("Office", AccountType.OFFICE_CASH_FUND, route.id)

    def test_derived_balance_follows_transactions(self):
        """Test rebuilding a balance from history"""
        self.processor.create_transaction(
            amount=Decimal('1000'), transaction_type=TransactionType.INCOME,
            destination_account_id=self.cash.id
        )
        self.processor.create_transaction(
            amount=Decimal('250'), transaction_type=TransactionType.TRANSFER,
            source_account_id=self.cash.id, destination_account_id=self.office.id
        )
        self.processor.create_transaction(
            amount=Decimal('99.99'), transaction_type=TransactionType.EXPENSE,
            expense_source=ExpenseSource.VIATIC, source_account_id=self.cash.id
        )

        assert self.processor.calculate_account_balance(self.cash.id) == Decimal('650.01')
        assert self.processor.calculate_account_balance(self.office.id) == Decimal('250.00')
        assert self.processor.reconcile_account(self.cash.id)["difference"] == Decimal('0.00')

    def test_reconcile_detects_untracked_balance(self):
        """Test that an opening balance without a transaction shows as a difference"""
        route = self.route_manager.create_route("Sur")
        account = self.account_manager.create_account(
            "Opening", AccountType.BANK, route.id, Decimal('500')
        )

        result = self.processor.reconcile_account(account.id)

        assert result == {
            'stored': Decimal('500.00'),
            'derived': Decimal('0.00'),
            'difference': Decimal('500.00')
        }

    def test_adjust_up_records_income(self):
        """Test raising a balance to a target"""
        transaction = self.processor.adjust_account_balance(self.cash.id, Decimal('750'))

        assert transaction.transaction_type == TransactionType.INCOME
        assert transaction.income_source == IncomeSource.BALANCE_ADJUSTMENT
        assert transaction.amount == Decimal('750.00')
        assert self.account_manager.require_account(self.cash.id).amount == Decimal('750.00')

    def test_adjust_down_records_expense(self):
        """Test lowering a balance to a target"""
        self.processor.adjust_account_balance(self.cash.id, Decimal('750'))
        transaction = self.processor.adjust_account_balance(self.cash.id, Decimal('200'))

        assert transaction.expense_source == ExpenseSource.BALANCE_ADJUSTMENT
        assert transaction.amount == Decimal('550.00')
        assert self.account_manager.require_account(self.cash.id).amount == Decimal('200.00')
        assert self.processor.reconcile_account(self.cash.id)["difference"] == Decimal('0.00')

    def test_adjust_on_target_is_noop(self):
        """Test that no transaction is recorded when already on target"""
        assert self.processor.adjust_account_balance(self.cash.id, Decimal('0')) is None
        assert self.processor.find_transactions() == []

    def test_adjust_with_counter_account_transfers(self):
        """Test funding an adjustment from another account"""
        self.processor.adjust_account_balance(self.office.id, Decimal('1000'))

        transaction = self.processor.adjust_account_balance(
            self.cash.id, Decimal('300'), counter_account_id=self.office.id
        )

        assert transaction.transaction_type == TransactionType.TRANSFER
        assert transaction.source_account_id == self.office.id
        assert self.account_manager.require_account(self.office.id).amount == Decimal('700.00')
        assert self.account_manager.require_account(self.cash.id).amount == Decimal('300.00')

    def test_adjust_to_negative_target(self):
        """Test that a negative target is rejected"""
        with pytest.raises(InvalidTransactionError):
            self.processor.adjust_account_balance(self.cash.id, Decimal('-1'))

    def test_adjust_is_audited(self):
        """Test the adjustment audit event"""
        transaction = self.processor.adjust_account_balance(self.cash.id, Decimal('40'))

        events = self.audit_trail.get_events_by_type(AuditEventType.ACCOUNT_ADJUSTED)
        assert len(events) == 1
        assert events[0].entity_id == self.cash.id
        assert events[0].metadata["transaction_id"] == transaction.id
