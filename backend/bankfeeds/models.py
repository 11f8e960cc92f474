"""
SQLAlchemy models for integrated bank accounts, imported statement lines
and pending asynchronous provider requests.

All timestamps are stored as naive UTC.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from bankfeeds.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BankAccount(Base):
    """
    A ledger bank/cash account that can be synced from a provider.
    Note: tenant_id scopes every row; tenants themselves live elsewhere.
    """
    __tablename__ = "bank_accounts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    provider = Column(String(50), nullable=True)  # mpesa, kcb, equity, generic_rest
    base_url = Column(String(512), nullable=True)  # generic_rest only
    credentials_ciphertext = Column(Text, nullable=True)  # enc:v1 envelope of the credential JSON
    external_account_id = Column(String(255), nullable=True)  # bank account number or M-Pesa shortcode
    currency = Column(String(3), default="KES")
    is_active = Column(Boolean, default=True)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    statement_lines = relationship("StatementLine", back_populates="account", cascade="all, delete-orphan")
    provider_requests = relationship("ProviderRequest", back_populates="account", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_bank_accounts_tenant", "tenant_id"),
    )

    def __repr__(self) -> str:
        return f"<BankAccount id={self.id} provider={self.provider}>"


class StatementLine(Base):
    """
    One imported bank statement line awaiting reconciliation.
    Reconciliation fields are written by the matching module, never by sync.
    """
    __tablename__ = "bank_statement_lines"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False)
    transaction_date = Column(DateTime, nullable=False)
    description = Column(String(512), nullable=False)
    debit = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))  # money out
    credit = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))  # money in
    balance = Column(Numeric(15, 2), nullable=True)  # provider-reported balance, balance checks only
    reference = Column(String(255), nullable=False)
    is_balance_check = Column(Boolean, nullable=False, default=False)
    is_matched = Column(Boolean, nullable=False, default=False)
    matched_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    account = relationship("BankAccount", back_populates="statement_lines")

    __table_args__ = (
        Index("idx_statement_lines_account_date", "account_id", "transaction_date"),
        UniqueConstraint("account_id", "reference", name="bank_statement_lines_account_reference"),
    )


class ProviderRequest(Base):
    """
    An asynchronous provider command (balance or transaction status) waiting
    for, or resolved by, the provider's result callback.
    """
    __tablename__ = "provider_requests"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(50), nullable=False)
    kind = Column(String(30), nullable=False)  # balance, transaction_status
    subject = Column(String(255), nullable=True)  # queried transaction id
    conversation_id = Column(String(255), nullable=False, unique=True)
    originator_conversation_id = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="pending")  # pending, completed, failed, timed_out
    result_code = Column(Integer, nullable=True)
    result_description = Column(Text, nullable=True)
    result_payload = Column(JSON, nullable=True)
    balance = Column(Numeric(15, 2), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    account = relationship("BankAccount", back_populates="provider_requests")

    __table_args__ = (
        Index("idx_provider_requests_account", "account_id"),
    )
