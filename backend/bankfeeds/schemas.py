from pydantic import BaseModel, ConfigDict
from datetime import datetime
from decimal import Decimal
from typing import Optional, Any
from uuid import UUID


# Sync Schemas
class SyncResponse(BaseModel):
    status: str
    count: int
    message: str


class SyncStatusResponse(BaseModel):
    account_id: UUID
    name: str
    provider: Optional[str] = None
    external_account_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    statement_line_count: int
    unmatched_line_count: int


class TransactionStatusQuery(BaseModel):
    transaction_id: str


# Provider request Schemas
class ProviderRequestResponse(BaseModel):
    conversation_id: str
    account_id: UUID
    provider: str
    kind: str
    subject: Optional[str] = None
    status: str
    result_code: Optional[int] = None
    result_description: Optional[str] = None
    balance: Optional[Decimal] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# Statement line Schemas
class StatementLineResponse(BaseModel):
    id: UUID
    account_id: UUID
    transaction_date: datetime
    description: str
    debit: Decimal
    credit: Decimal
    balance: Optional[Decimal] = None
    reference: str
    is_balance_check: bool
    is_matched: bool

    model_config = ConfigDict(from_attributes=True)


# Callback Schemas
class CallbackAck(BaseModel):
    """Body Daraja expects back from every result URL."""
    ResultCode: int = 0
    ResultDesc: str = "Accepted"


class ErrorDetail(BaseModel):
    status: str = "error"
    message: str
    provider: Optional[str] = None
    diagnostic: Optional[Any] = None
