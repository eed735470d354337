"""
Falco Compensation

A falco is the shortfall between what a lead was expected to hand in and
what they did. Later compensatory payments shrink the FALCO_LOSS expense
recorded with the receipt and put the money back in the cash fund.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List
import uuid

from .money import ZERO, quantize_money, sum_money, format_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager, AccountType
from .transactions import TransactionProcessor, ExpenseSource
from .receipts import LeadPaymentManager, PaymentStatus
from .exceptions import FalcoOvercompensationError, LendingError
from .logging_config import get_logger, log_action


@dataclass
class FalcoCompensatoryPayment(StorageRecord):
    amount: Decimal
    lead_payment_received_id: str

    def __post_init__(self):
        self.amount = quantize_money(self.amount)


class FalcoManager:
    """
    Records falco compensations and applies them to the ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        transaction_processor: TransactionProcessor,
        lead_payment_manager: LeadPaymentManager,
        audit_trail: AuditTrail,
        allow_overcompensation: bool = False
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.transaction_processor = transaction_processor
        self.lead_payment_manager = lead_payment_manager
        self.audit_trail = audit_trail
        self.allow_overcompensation = allow_overcompensation

        self.compensations_table = "falco_compensatory_payments"
        self.logger = get_logger("lending.falco")

    def get_compensations(self, lead_payment_received_id: str) -> List[FalcoCompensatoryPayment]:
        compensations = [FalcoCompensatoryPayment.from_dict(data) for data in self.storage.find(
            self.compensations_table, {'lead_payment_received_id': lead_payment_received_id}
        )]
        compensations.sort(key=lambda c: c.created_at)
        return compensations

    def get_remaining_falco(self, lead_payment_received_id: str) -> Decimal:
        """Shortfall still not compensated for a receipt"""
        receipt = self.lead_payment_manager.require_receipt(lead_payment_received_id)
        compensated = sum_money(c.amount for c in self.get_compensations(lead_payment_received_id))
        return max(ZERO, receipt.shortfall - compensated)

    def record_falco_compensation(
        self,
        lead_payment_received_id: str,
        amount: Decimal
    ) -> FalcoCompensatoryPayment:
        """
        Record a compensatory payment against a receipt's falco

        Raises:
            RecordNotFoundError: Receipt not found
            FalcoOvercompensationError: Amount exceeds the remaining falco
                and over-compensation is not allowed
        """
        amount = quantize_money(amount)
        if amount <= ZERO:
            raise LendingError("Compensation amount must be positive")

        with self.storage.atomic():
            remaining = self.get_remaining_falco(lead_payment_received_id)
            if amount > remaining and not self.allow_overcompensation:
                raise FalcoOvercompensationError(
                    f"Compensation {format_money(amount)} exceeds remaining falco {format_money(remaining)}"
                )

            now = datetime.now(timezone.utc)
            compensation = FalcoCompensatoryPayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                amount=amount,
                lead_payment_received_id=lead_payment_received_id
            )
            self.storage.save(self.compensations_table, compensation.id, compensation.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.FALCO_COMPENSATED,
                entity_type="lead_payment_received",
                entity_id=lead_payment_received_id,
                metadata={
                    "compensation_id": compensation.id,
                    "amount": amount,
                    "remaining_before": remaining
                }
            )

            self.on_falco_compensation_created(compensation)

        return compensation

    def on_falco_compensation_created(self, compensation: FalcoCompensatoryPayment) -> None:
        """
        Apply a compensation to the receipt's loss transaction and cash fund

        Never raises: a missing receipt, account or loss transaction is
        logged and the hook stops, leaving the compensation record in place.
        """
        try:
            with self.storage.atomic():
                self._apply_compensation(compensation)
        except Exception:
            self.logger.error(
                f"Falco compensation {compensation.id} could not be applied", exc_info=True
            )

    def _apply_compensation(self, compensation: FalcoCompensatoryPayment) -> None:
        receipt_id = compensation.lead_payment_received_id
        receipt = self.lead_payment_manager.get_receipt(receipt_id)
        if not receipt:
            self.logger.error(f"Lead payment received {receipt_id} not found for compensation {compensation.id}")
            return

        cash_account = (
            self.account_manager.get_lead_account(receipt.agent_id, AccountType.EMPLOYEE_CASH_FUND)
            or self.account_manager.get_lead_account(receipt.lead_id, AccountType.EMPLOYEE_CASH_FUND)
        )
        if not cash_account:
            self.logger.error(f"No cash fund found for receipt {receipt_id}; compensation {compensation.id} not applied")
            return

        total_compensated = sum_money(c.amount for c in self.get_compensations(receipt_id))
        remaining = max(ZERO, receipt.shortfall - total_compensated)

        losses = self.transaction_processor.find_transactions(
            lead_payment_received_id=receipt_id, expense_source=ExpenseSource.FALCO_LOSS
        )
        if not losses:
            self.logger.error(f"No falco loss transaction for receipt {receipt_id}; compensation {compensation.id} not applied")
            return
        loss = losses[0]

        if remaining <= ZERO:
            description = f"Falco loss fully compensated ({format_money(total_compensated)})"
        else:
            description = (f"Falco loss partially compensated: {format_money(total_compensated)} paid, "
                           f"{format_money(remaining)} pending")

        # The cash fund is credited once below with this compensation alone
        self.transaction_processor.update_transaction(
            loss.id, apply_balance=False, amount=remaining, description=description
        )
        self.account_manager.apply_delta(
            cash_account.id, compensation.amount, reason=f"falco compensation {compensation.id}"
        )

        if remaining <= ZERO:
            receipt.payment_status = PaymentStatus.COMPLETE
            receipt.falco_amount = ZERO
        else:
            receipt.payment_status = PaymentStatus.PARTIAL
        receipt.updated_at = datetime.now(timezone.utc)
        self.lead_payment_manager.save_receipt(receipt)

        log_action(
            self.logger, "info",
            f"Falco compensated: {format_money(compensation.amount)}, {format_money(remaining)} remaining",
            action="falco.compensated", resource=receipt_id,
            extra={"compensation_id": compensation.id, "status": receipt.payment_status.value}
        )
