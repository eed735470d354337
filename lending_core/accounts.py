"""
Account Management Module

Manages the cash and bank accounts owned by routes. Each account carries a
persisted running balance (``amount``) that every ledger write path updates
through ``apply_delta``; the transaction history can rebuild it independently
for verification.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import uuid

from .money import ZERO, quantize_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .routes import RouteManager
from .exceptions import AccountNotFoundError, InsufficientFundsError, RecordNotFoundError
from .logging_config import get_logger


class AccountType(Enum):
    """Kinds of ledger accounts a route can own"""
    BANK = "bank"
    OFFICE_CASH_FUND = "office_cash_fund"
    EMPLOYEE_CASH_FUND = "employee_cash_fund"  # Cash in the hands of the route's leads
    PREPAID_GAS = "prepaid_gas"
    TRAVEL_EXPENSES = "travel_expenses"


@dataclass
class Account(StorageRecord):
    """Cash or bank ledger with a stored running balance"""
    name: str
    account_type: AccountType
    route_id: Optional[str] = None
    amount: Decimal = ZERO

    def __post_init__(self):
        self.amount = quantize_money(self.amount)

    @property
    def is_cash_fund(self) -> bool:
        return self.account_type == AccountType.EMPLOYEE_CASH_FUND


class AccountManager:
    """
    Manages account lookup and balance mutation
    """

    def __init__(
        self,
        storage: StorageInterface,
        route_manager: RouteManager,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.route_manager = route_manager
        self.audit_trail = audit_trail
        self.accounts_table = "accounts"
        self.logger = get_logger("lending.accounts")

    def create_account(
        self,
        name: str,
        account_type: AccountType,
        route_id: Optional[str] = None,
        initial_amount: Decimal = ZERO
    ) -> Account:
        """
        Create a new account

        Args:
            name: Display name
            account_type: Kind of account
            route_id: Owning route
            initial_amount: Opening balance

        Returns:
            Created Account object
        """
        if route_id and not self.route_manager.get_route(route_id):
            raise RecordNotFoundError(f"Route {route_id} not found")

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            account_type=account_type,
            route_id=route_id,
            amount=initial_amount
        )

        with self.storage.atomic():
            self._save_account(account)
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_CREATED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "name": name,
                    "account_type": account_type.value,
                    "route_id": route_id,
                    "initial_amount": account.amount
                }
            )

        return account

    def get_account(self, account_id: Optional[str]) -> Optional[Account]:
        """Get account by ID"""
        if not account_id:
            return None
        data = self.storage.load(self.accounts_table, account_id)
        return Account.from_dict(data) if data else None

    def require_account(self, account_id: Optional[str]) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def get_route_accounts(self, route_id: str) -> List[Account]:
        accounts = [Account.from_dict(data)
                    for data in self.storage.find(self.accounts_table, {'route_id': route_id})]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def find_route_account(self, route_id: Optional[str], account_type: AccountType) -> Optional[Account]:
        """First account of the given type owned by the route"""
        if not route_id:
            return None
        for account in self.get_route_accounts(route_id):
            if account.account_type == account_type:
                return account
        return None

    def require_route_account(self, route_id: Optional[str], account_type: AccountType) -> Account:
        account = self.find_route_account(route_id, account_type)
        if not account:
            raise AccountNotFoundError(
                f"No {account_type.value} account for route {route_id}"
            )
        return account

    def get_lead_account(self, lead_id: Optional[str], account_type: AccountType) -> Optional[Account]:
        """Account of the given type on the route the lead works"""
        lead = self.route_manager.get_employee(lead_id)
        if not lead:
            return None
        return self.find_route_account(lead.route_id, account_type)

    def require_lead_account(self, lead_id: Optional[str], account_type: AccountType) -> Account:
        lead = self.route_manager.require_employee(lead_id)
        return self.require_route_account(lead.route_id, account_type)

    def apply_delta(
        self,
        account_id: str,
        delta: Decimal,
        allow_negative: bool = False,
        reason: str = ""
    ) -> Account:
        """
        Add ``delta`` (which may be negative) to the stored balance

        The read-modify-write runs inside an atomic block, so concurrent
        writers on the same storage are serialised.

        Raises:
            AccountNotFoundError: If the account does not exist
            InsufficientFundsError: If the new balance would be negative
        """
        delta = quantize_money(delta)

        with self.storage.atomic():
            account = self.require_account(account_id)
            previous = account.amount
            new_amount = quantize_money(previous + delta)

            if new_amount < ZERO and not allow_negative:
                raise InsufficientFundsError(
                    f"Operation would leave account {account.name} with a negative balance: {new_amount}"
                )

            account.amount = new_amount
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_BALANCE_CHANGED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "previous_amount": previous,
                    "delta": delta,
                    "new_amount": new_amount,
                    "reason": reason
                }
            )

        self.logger.debug(f"Account {account.id} balance {previous} -> {new_amount} ({reason})")
        return account

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, account.to_dict())
