"""
Base adapter interface for bank and mobile-money integrations.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

ZERO = Decimal("0.00")


class BalanceCheck(BaseModel):
    """Marker carried by a synthetic balance-check line."""
    correlation_id: str
    balance: Optional[Decimal] = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NormalizedLine(BaseModel):
    """Canonical statement line produced by every adapter."""
    transaction_date: datetime
    description: str
    debit: Decimal = ZERO  # money out
    credit: Decimal = ZERO  # money in
    reference: str
    balance_check: Optional[BalanceCheck] = None

    @model_validator(mode="after")
    def _check_amounts(self) -> "NormalizedLine":
        if self.debit < 0 or self.credit < 0:
            raise ValueError("debit and credit must be non-negative")
        if self.debit and self.credit:
            raise ValueError("a line is either money out or money in, never both")
        if self.balance_check is not None and (self.debit or self.credit):
            raise ValueError("balance-check lines carry no debit or credit")
        return self

    @property
    def is_balance_check(self) -> bool:
        return self.balance_check is not None


class ProviderSession(BaseModel):
    """State established by authenticate() and passed to every later call."""
    model_config = ConfigDict(frozen=True)

    provider: str
    access_token: str


class CommandAcknowledgement(BaseModel):
    """Synchronous answer to an asynchronous provider command."""
    accepted: bool
    conversation_id: Optional[str] = None
    originator_conversation_id: Optional[str] = None
    response_code: Optional[str] = None
    response_description: Optional[str] = None


class BankAdapter(ABC):
    """
    Abstract base class for bank adapters.

    Implementations hold only configuration (base URL, HTTP client); anything
    obtained from the provider lives in the ProviderSession returned by
    authenticate().
    """

    @abstractmethod
    def authenticate(self, credentials: Dict[str, Any]) -> ProviderSession:
        """Exchange credentials for a session. Raises AuthFailure."""
        pass

    @abstractmethod
    def fetch_transactions(
        self,
        session: ProviderSession,
        account: Any,
        start_date: datetime,
    ) -> List[NormalizedLine]:
        """Fetch lines dated between start_date and now; empty on failure."""
        pass

    @abstractmethod
    def normalize_transaction(self, raw: Dict[str, Any]) -> NormalizedLine:
        """Convert provider-specific transaction format to canonical format."""
        pass


class AsyncCommandAdapter(BankAdapter):
    """
    Adapter whose balance and status queries are answered by a later callback.
    The request methods return only the provider's acknowledgement.
    """

    @abstractmethod
    def request_balance_check(
        self,
        session: ProviderSession,
        account: Any,
    ) -> CommandAcknowledgement:
        pass

    @abstractmethod
    def request_transaction_status(
        self,
        session: ProviderSession,
        account: Any,
        transaction_id: str,
    ) -> CommandAcknowledgement:
        pass
