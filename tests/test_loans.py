"""
Test suite for loans module

Tests origination against the lead's cash fund, renewal chains, edits,
deletion reversal and the metrics snapshot. All money must reconcile to
the cent.
"""

import logging
import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from lending_core.config import LendingConfig
from lending_core.storage import InMemoryStorage, SQLiteStorage
from lending_core.system import LendingSystem
from lending_core.routes import EmployeeType
from lending_core.accounts import AccountType
from lending_core.transactions import ExpenseSource, TransactionType
from lending_core.loans import LoanStatus, PaymentMethod
from lending_core.audit import AuditEventType
from lending_core.exceptions import AccountNotFoundError, InsufficientFundsError, RecordNotFoundError


SIGN_DATE = datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)


class LoanTestCase:
    """Route with a funded cash fund, a lead and a 14 week product"""

    def setup_method(self):
        self.system = LendingSystem(storage=InMemoryStorage(), config=LendingConfig(database_url="memory://"))
        self.loans = self.system.loan_manager
        self.payments = self.system.payment_manager
        self.accounts = self.system.account_manager
        self.processor = self.system.transaction_processor

        self.route = self.system.route_manager.create_route("Centro")
        self.lead = self.system.route_manager.create_employee("Ana", EmployeeType.LEAD, self.route.id)
        self.cash = self.accounts.create_account("Cash fund", AccountType.EMPLOYEE_CASH_FUND, self.route.id)
        self.bank = self.accounts.create_account("Bank", AccountType.BANK, self.route.id)
        self.processor.adjust_account_balance(self.cash.id, Decimal('10000'))

        self.loan_type = self.loans.create_loan_type("14 weeks", Decimal('0.40'), 14)

    def cash_balance(self):
        return self.accounts.require_account(self.cash.id).amount

    def create_loan(self, **overrides):
        values = dict(
            requested_amount=Decimal('3000'),
            amount_given=Decimal('2800'),
            loan_type_id=self.loan_type.id,
            lead_id=self.lead.id,
            sign_date=SIGN_DATE,
            commission_amount=Decimal('50')
        )
        values.update(overrides)
        return self.loans.create_loan(**values)


class TestLoanOrigination(LoanTestCase):
    """Test loan creation and disbursement"""

    def test_disbursement_from_cash_fund(self):
        """Test that granting a loan books two expenses and debits the cash fund"""
        loan = self.create_loan()

        assert self.cash_balance() == Decimal('7150.00')

        granted = self.processor.find_transactions(loan_id=loan.id)
        assert sorted(t.expense_source.value for t in granted) == [
            "loan_granted", "loan_granted_commission"
        ]
        assert all(t.transaction_type == TransactionType.EXPENSE for t in granted)
        assert all(t.source_account_id == self.cash.id for t in granted)
        assert sum(t.amount for t in granted) == Decimal('2850.00')

    def test_profit_and_metrics(self):
        """Test profit from the loan type rate and the initial snapshot"""
        loan = self.create_loan()

        assert loan.profit_amount == Decimal('1200.00')
        assert loan.total_debt_acquired == Decimal('4200.00')
        assert loan.expected_weekly_payment == Decimal('300.00')
        assert loan.total_paid == Decimal('0.00')
        assert loan.pending_amount_stored == Decimal('4200.00')
        assert loan.status == LoanStatus.ACTIVE
        assert loan.finished_date is None

    def test_missing_cash_fund_aborts(self):
        """Test that a lead without a cash fund cannot originate"""
        other_route = self.system.route_manager.create_route("Sin fondo")
        other_lead = self.system.route_manager.create_employee("Luis", EmployeeType.LEAD, other_route.id)

        with pytest.raises(AccountNotFoundError):
            self.create_loan(lead_id=other_lead.id)

        assert self.loans.list_loans() == []
        assert self.processor.find_transactions(transaction_type=TransactionType.EXPENSE) == []

    def test_insufficient_cash_aborts(self):
        """Test that nothing persists when the cash fund cannot cover the loan"""
        with pytest.raises(InsufficientFundsError):
            self.create_loan(amount_given=Decimal('20000'))

        assert self.loans.list_loans() == []
        assert self.cash_balance() == Decimal('10000.00')

    def test_unknown_loan_type(self):
        """Test that the loan type must exist"""
        with pytest.raises(RecordNotFoundError, match="Loan type"):
            self.create_loan(loan_type_id="missing")

    def test_creation_is_audited(self):
        """Test loan creation audit event"""
        loan = self.create_loan()

        events = self.system.audit_trail.get_events_for_entity("loan", loan.id)
        assert AuditEventType.LOAN_CREATED in [e.event_type for e in events]
        assert self.system.audit_trail.verify_integrity()["valid"]


class TestRenewalChain(LoanTestCase):
    """Test renewals finalize and reactivate the previous loan"""

    def test_renewal_closes_previous_loan(self):
        """Test previous loan becomes RENOVATED on the renewal's sign date"""
        first = self.create_loan()
        renewal_date = SIGN_DATE + timedelta(weeks=10)

        self.create_loan(previous_loan_id=first.id, sign_date=renewal_date)

        previous = self.loans.require_loan(first.id)
        assert previous.status == LoanStatus.RENOVATED
        assert previous.finished_date == renewal_date
        assert previous.renewed_date == renewal_date

    def test_renewal_carries_pending_profit(self):
        """Test that unpaid profit of the previous loan is added to the renewal"""
        first = self.create_loan()
        self.payments.create_payment(first.id, Decimal('2100'), received_at=SIGN_DATE + timedelta(weeks=7))

        assert self.loans.calculate_earned_profit(first.id) == Decimal('600.00')
        assert self.loans.calculate_pending_profit_amount(first.id) == Decimal('600.00')

        renewal = self.create_loan(previous_loan_id=first.id, sign_date=SIGN_DATE + timedelta(weeks=8))

        assert renewal.profit_amount == Decimal('1800.00')

    def test_deleting_renewal_reactivates_previous(self):
        """Test that deleting the renewal restores the previous loan"""
        first = self.create_loan()
        renewal = self.create_loan(previous_loan_id=first.id, sign_date=SIGN_DATE + timedelta(weeks=10))

        self.loans.delete_loan(renewal.id)

        previous = self.loans.require_loan(first.id)
        assert previous.status == LoanStatus.ACTIVE
        assert previous.finished_date is None
        assert self.cash_balance() == Decimal('7150.00')

    def test_unknown_previous_loan(self):
        """Test that the renewed loan must exist"""
        with pytest.raises(RecordNotFoundError):
            self.create_loan(previous_loan_id="missing")


class TestLoanUpdate(LoanTestCase):
    """Test edits propagate as deltas"""

    def test_amount_given_change_moves_difference(self):
        """Test a larger disbursement debits only the difference"""
        loan = self.create_loan()

        self.loans.update_loan(loan.id, amount_given=Decimal('3000'))

        granted = self.processor.find_transactions(loan_id=loan.id, expense_source=ExpenseSource.LOAN_GRANTED)
        assert len(granted) == 1
        assert granted[0].amount == Decimal('3000.00')
        assert self.cash_balance() == Decimal('6950.00')

    def test_commission_change(self):
        """Test dropping the commission returns it to the cash fund"""
        loan = self.create_loan()

        self.loans.update_loan(loan.id, commission_amount=Decimal('0'))

        commission = self.processor.find_transactions(
            loan_id=loan.id, expense_source=ExpenseSource.LOAN_GRANTED_COMMISSION
        )
        assert commission[0].amount == Decimal('0.00')
        assert self.cash_balance() == Decimal('7200.00')

    def test_requested_amount_change_recomputes(self):
        """Test profit and snapshot follow the new principal"""
        loan = self.create_loan()

        updated = self.loans.update_loan(loan.id, requested_amount=Decimal('2000'))

        assert updated.profit_amount == Decimal('800.00')
        assert updated.total_debt_acquired == Decimal('2800.00')
        assert updated.expected_weekly_payment == Decimal('200.00')

    def test_terminal_status_sets_finished_date(self):
        """Test cancelling a loan stamps its finished date"""
        loan = self.create_loan()

        updated = self.loans.update_loan(loan.id, status=LoanStatus.CANCELLED)

        assert updated.status == LoanStatus.CANCELLED
        assert updated.finished_date is not None

    def test_unknown_field(self):
        """Test that derived fields cannot be edited directly"""
        loan = self.create_loan()

        with pytest.raises(ValueError, match="Cannot update loan fields"):
            self.loans.update_loan(loan.id, total_paid=Decimal('1'))

    def test_mark_bad_debt(self):
        """Test writing a loan off"""
        loan = self.create_loan()
        when = SIGN_DATE + timedelta(weeks=30)

        updated = self.loans.mark_bad_debt(loan.id, when)

        assert updated.bad_debt_date == when
        assert self.loans.require_loan(loan.id).bad_debt_date == when


class TestLoanDeletion(LoanTestCase):
    """Test deletion reverses the ledger"""

    def test_delete_restores_cash_fund(self):
        """Test the cash fund returns to its pre-creation balance"""
        loan = self.create_loan()

        self.loans.delete_loan(loan.id)

        assert self.cash_balance() == Decimal('10000.00')
        assert self.loans.get_loan(loan.id) is None
        assert self.processor.find_transactions(loan_id=loan.id) == []
        assert self.processor.reconcile_account(self.cash.id)["difference"] == Decimal('0.00')

    def test_delete_reverses_payments(self):
        """Test payments and their transactions go with the loan"""
        loan = self.create_loan()
        payment = self.payments.create_payment(
            loan.id, Decimal('300'), received_at=SIGN_DATE + timedelta(weeks=1), commission=Decimal('20')
        )
        assert self.cash_balance() == Decimal('7430.00')

        self.loans.delete_loan(loan.id)

        assert self.cash_balance() == Decimal('10000.00')
        assert self.payments.get_payment(payment.id) is None
        assert self.processor.find_transactions(loan_payment_id=payment.id) == []

    def test_delete_without_cash_fund_still_deletes(self, caplog):
        """Test restoration is skipped and logged when the cash fund is gone"""
        loan = self.create_loan()
        self.system.storage.delete(self.accounts.accounts_table, self.cash.id)
        caplog.set_level(logging.ERROR, logger="lending")

        self.loans.delete_loan(loan.id)

        assert self.loans.get_loan(loan.id) is None
        assert "not restored" in caplog.text

    def test_delete_unknown_loan(self):
        """Test deleting a missing loan"""
        with pytest.raises(RecordNotFoundError):
            self.loans.delete_loan("missing")


class TestLoanMetrics(LoanTestCase):
    """Test the metrics snapshot recompute"""

    def test_payments_update_snapshot(self):
        """Test total paid and pending amount after payments"""
        loan = self.create_loan()
        self.payments.create_payment(loan.id, Decimal('300'), received_at=SIGN_DATE + timedelta(weeks=1))
        self.payments.create_payment(loan.id, Decimal('450.50'), received_at=SIGN_DATE + timedelta(weeks=2))

        refreshed = self.loans.require_loan(loan.id)
        assert refreshed.total_paid == Decimal('750.50')
        assert refreshed.pending_amount_stored == Decimal('3449.50')
        assert refreshed.pending_amount_stored == max(
            Decimal('0'), refreshed.total_debt_acquired - refreshed.total_paid
        )

    def test_payoff_finishes_on_last_payment_date(self):
        """Test the finish date is when the debt was retired, not now"""
        loan = self.create_loan()
        paid_on = SIGN_DATE + timedelta(weeks=5)

        self.payments.create_payment(loan.id, Decimal('4200'), received_at=paid_on)

        refreshed = self.loans.require_loan(loan.id)
        assert refreshed.finished_date == paid_on
        assert refreshed.status == LoanStatus.FINISHED
        assert refreshed.pending_amount_stored == Decimal('0.00')

    def test_overpayment_floors_pending_at_zero(self):
        """Test pending amount never goes negative"""
        loan = self.create_loan()

        self.payments.create_payment(loan.id, Decimal('4500'), received_at=SIGN_DATE + timedelta(weeks=5))

        assert self.loans.require_loan(loan.id).pending_amount_stored == Decimal('0.00')

    def test_payment_edit_reopens_loan(self):
        """Test a loan closed by payments reopens when they no longer cover the debt"""
        loan = self.create_loan()
        payment = self.payments.create_payment(loan.id, Decimal('4200'), received_at=SIGN_DATE + timedelta(weeks=5))

        self.payments.update_payment(payment.id, amount=Decimal('4000'))

        refreshed = self.loans.require_loan(loan.id)
        assert refreshed.status == LoanStatus.ACTIVE
        assert refreshed.finished_date is None
        assert refreshed.pending_amount_stored == Decimal('200.00')

    def test_recompute_is_idempotent(self):
        """Test repeated recomputes give the same snapshot"""
        loan = self.create_loan()
        self.payments.create_payment(loan.id, Decimal('300'), received_at=SIGN_DATE + timedelta(weeks=1))

        first = self.loans.recompute_loan_metrics(loan.id)
        second = self.loans.recompute_loan_metrics(loan.id)

        for field in ("total_debt_acquired", "expected_weekly_payment", "total_paid",
                      "pending_amount_stored", "finished_date", "status"):
            assert getattr(first, field) == getattr(second, field)

    def test_recompute_missing_loan_is_noop(self, caplog):
        """Test recompute never raises for an unknown loan"""
        caplog.set_level(logging.WARNING, logger="lending")

        assert self.loans.recompute_loan_metrics("missing") is None
        assert "loan missing not found" in caplog.text

    def test_recompute_failure_is_logged(self, caplog, monkeypatch):
        """Test recompute failures are swallowed and logged"""
        loan = self.create_loan()
        caplog.set_level(logging.ERROR, logger="lending")

        def broken(loan_id):
            raise RuntimeError("storage unavailable")

        monkeypatch.setattr(self.loans, "get_loan_payments", broken)

        assert self.loans.recompute_loan_metrics(loan.id) is None
        assert "Metrics recompute failed" in caplog.text
        assert self.loans.require_loan(loan.id).total_debt_acquired == Decimal('4200.00')

    def test_missing_loan_type_zeroes_rate(self):
        """Test recompute with a deleted loan type"""
        loan = self.create_loan()
        self.system.storage.delete(self.loans.loan_types_table, self.loan_type.id)

        refreshed = self.loans.recompute_loan_metrics(loan.id)

        assert refreshed.total_debt_acquired == Decimal('3000.00')
        assert refreshed.expected_weekly_payment == Decimal('0.00')

    def test_loan_summary(self):
        """Test the detail figures"""
        loan = self.create_loan()
        self.payments.create_payment(loan.id, Decimal('2100'), received_at=SIGN_DATE + timedelta(weeks=7),
                                     payment_method=PaymentMethod.MONEY_TRANSFER)

        summary = self.loans.get_loan_summary(loan.id)

        assert summary["earned_profit"] == Decimal('600.00')
        assert summary["pending_profit"] == Decimal('600.00')
        assert summary["pending_amount"] == Decimal('2100.00')
        assert summary["payment_count"] == 1


class TestLoanOnSQLite:
    """Test origination against the SQLite backend"""

    def test_retry_after_failed_first_loan(self, tmp_path):
        """Test a rolled back first loan leaves the backend usable"""
        storage = SQLiteStorage(tmp_path / "lending.db")
        system = LendingSystem(storage=storage, config=LendingConfig(database_url="memory://"))
        route = system.route_manager.create_route("Centro")
        lead = system.route_manager.create_employee("Ana", EmployeeType.LEAD, route.id)
        cash = system.account_manager.create_account("Cash fund", AccountType.EMPLOYEE_CASH_FUND, route.id)
        system.transaction_processor.adjust_account_balance(cash.id, Decimal('100'))
        loan_type = system.loan_manager.create_loan_type("14 weeks", Decimal('0.40'), 14)

        terms = dict(
            requested_amount=Decimal('3000'),
            amount_given=Decimal('2800'),
            loan_type_id=loan_type.id,
            lead_id=lead.id,
            sign_date=SIGN_DATE,
            commission_amount=Decimal('50')
        )
        with pytest.raises(InsufficientFundsError):
            system.loan_manager.create_loan(**terms)
        assert system.loan_manager.list_loans() == []

        system.transaction_processor.adjust_account_balance(cash.id, Decimal('5000'))
        loan = system.loan_manager.create_loan(**terms)

        assert loan.profit_amount == Decimal('1200.00')
        assert system.account_manager.require_account(cash.id).amount == Decimal('2250.00')
        assert system.audit_trail.verify_integrity()["valid"]
        system.close()
