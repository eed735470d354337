"""
Lending System

Wires storage, the audit trail and the managers together and exposes the
lifecycle entry points the collection and loan-management front ends call
after persisting a record.
"""

from typing import Optional

from .config import LendingConfig, get_config
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .routes import RouteManager
from .accounts import AccountManager
from .transactions import TransactionProcessor
from .loans import Loan, LoanManager, LoanPayment
from .payments import PaymentManager
from .receipts import LeadPaymentManager
from .falco import FalcoCompensatoryPayment, FalcoManager


def _changes_attribution(loan: Loan, previous: Loan) -> bool:
    return (loan.loan_type_id != previous.loan_type_id
            or loan.requested_amount != previous.requested_amount)


class LendingSystem:
    """Lending ledger with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LendingConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.route_manager = RouteManager(self.storage)
        self.account_manager = AccountManager(self.storage, self.route_manager, self.audit_trail)
        self.transaction_processor = TransactionProcessor(
            self.storage, self.account_manager, self.audit_trail
        )
        self.loan_manager = LoanManager(
            self.storage, self.route_manager, self.account_manager,
            self.transaction_processor, self.audit_trail
        )
        self.payment_manager = PaymentManager(
            self.storage, self.route_manager, self.account_manager,
            self.transaction_processor, self.loan_manager, self.audit_trail
        )
        self.lead_payment_manager = LeadPaymentManager(
            self.storage, self.route_manager, self.account_manager,
            self.transaction_processor, self.loan_manager, self.payment_manager,
            self.audit_trail
        )
        self.falco_manager = FalcoManager(
            self.storage, self.account_manager, self.transaction_processor,
            self.lead_payment_manager, self.audit_trail,
            allow_overcompensation=self.config.allow_falco_overcompensation
        )

    # Loan lifecycle

    def on_loan_created(self, loan: Loan) -> None:
        self.loan_manager.on_loan_created(loan)

    def on_loan_updated(self, loan: Loan, previous: Loan) -> None:
        """Propagate a loan edit; new terms re-attribute its payments"""
        with self.storage.atomic():
            self.loan_manager.on_loan_updated(loan, previous)
            if _changes_attribution(loan, previous):
                self.payment_manager.resync_loan_payments(loan.id)

    def on_loan_deleted(self, previous_loan: Loan) -> None:
        self.loan_manager.on_loan_deleted(previous_loan)

    # Payment lifecycle

    def on_payment_created(self, payment: LoanPayment) -> None:
        self.payment_manager.on_payment_created(payment)

    def on_payment_updated(self, payment: LoanPayment, previous: LoanPayment) -> None:
        self.payment_manager.on_payment_updated(payment, previous)

    def on_payment_deleted(self, previous_payment: LoanPayment) -> None:
        self.payment_manager.on_payment_deleted(previous_payment)

    # Falco

    def on_falco_compensation_created(self, compensation: FalcoCompensatoryPayment) -> None:
        self.falco_manager.on_falco_compensation_created(compensation)

    def recompute_loan_metrics(self, loan_id: str) -> Optional[Loan]:
        return self.loan_manager.recompute_loan_metrics(loan_id)

    def update_loan(self, loan_id: str, **changes) -> Loan:
        """Update a loan and re-attribute its payments when its terms change"""
        with self.storage.atomic():
            previous = self.loan_manager.require_loan(loan_id)
            loan = self.loan_manager.update_loan(loan_id, **changes)
            if _changes_attribution(loan, previous):
                self.payment_manager.resync_loan_payments(loan_id)
        return loan

    def close(self) -> None:
        self.storage.close()
