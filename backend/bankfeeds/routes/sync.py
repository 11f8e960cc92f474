"""
Sync routes for bank integrations.
"""
import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from bankfeeds.config import is_production_environment
from bankfeeds.database import get_db
from bankfeeds.integrations.errors import (
    AuthFailure,
    BankIntegrationError,
    ConfigurationError,
    CredentialEnvelopeError,
    FetchFailure,
    UnsupportedProviderError,
)
from bankfeeds.models import BankAccount, StatementLine
from bankfeeds.schemas import (
    ErrorDetail,
    ProviderRequestResponse,
    StatementLineResponse,
    SyncResponse,
    SyncStatusResponse,
    TransactionStatusQuery,
)
from bankfeeds.services.callback_service import ProviderCallbackService
from bankfeeds.services.statement_lines import StatementLineRepository
from bankfeeds.services.sync_service import BankSyncService

logger = logging.getLogger(__name__)
router = APIRouter()

_STATUS_CODES = {
    ConfigurationError: 422,
    UnsupportedProviderError: 422,
    AuthFailure: 502,
    FetchFailure: 502,
    CredentialEnvelopeError: 500,
}

_GENERIC_MESSAGES = {
    ConfigurationError: "Bank integration is not configured for this account.",
    UnsupportedProviderError: "This bank provider is not supported.",
    AuthFailure: "Could not authenticate with the bank provider.",
    FetchFailure: "The bank provider did not accept the request.",
    CredentialEnvelopeError: "Bank integration is misconfigured.",
}


def get_tenant_id(x_tenant_id: str = Header(...)) -> str:
    """Tenant is asserted by the upstream gateway; it is not verified here."""
    return x_tenant_id


def integration_http_error(exc: BankIntegrationError) -> HTTPException:
    """Provider diagnostics are only exposed outside production."""
    error_type = next((t for t in _STATUS_CODES if isinstance(exc, t)), BankIntegrationError)
    status_code = _STATUS_CODES.get(error_type, 500)

    if is_production_environment():
        error = ErrorDetail(provider=exc.provider, message=_GENERIC_MESSAGES.get(error_type, "Bank sync failed."))
        detail = error.model_dump(exclude={"diagnostic"})
    else:
        error = ErrorDetail(provider=exc.provider, message=exc.message, diagnostic=exc.diagnostic)
        detail = error.model_dump()
    return HTTPException(status_code=status_code, detail=detail)


def _get_account(db: Session, tenant_id: str, account_id: UUID) -> BankAccount:
    account = db.query(BankAccount).filter(
        BankAccount.id == account_id,
        BankAccount.tenant_id == tenant_id,
    ).first()
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


@router.post("/accounts/{account_id}", response_model=SyncResponse)
def sync_account(
    account_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Pull new statement lines for one account from its provider."""
    account = _get_account(db, tenant_id, account_id)
    try:
        count = BankSyncService(db).sync_account(account)
    except BankIntegrationError as e:
        logger.error(f"Bank API sync failed for account {account_id}: {e.diagnostic}")
        raise integration_http_error(e)

    if count == 0:
        return SyncResponse(status="success", count=0, message="No new transactions found.")
    return SyncResponse(
        status="success",
        count=count,
        message=f"Successfully synced {count} new transactions.",
    )


@router.get("/accounts/{account_id}", response_model=SyncStatusResponse)
def get_sync_status(
    account_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Get sync status for an account."""
    account = _get_account(db, tenant_id, account_id)
    lines = StatementLineRepository(db)
    return SyncStatusResponse(
        account_id=account.id,
        name=account.name,
        provider=account.provider,
        external_account_id=account.external_account_id,
        last_synced_at=account.last_synced_at,
        statement_line_count=lines.count_for_account(account.id),
        unmatched_line_count=lines.count_for_account(account.id, unmatched_only=True),
    )


@router.get("/accounts/{account_id}/lines", response_model=List[StatementLineResponse])
def list_unmatched_lines(
    account_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Unmatched statement lines for an account, oldest first."""
    account = _get_account(db, tenant_id, account_id)
    return db.query(StatementLine).filter(
        StatementLine.tenant_id == tenant_id,
        StatementLine.account_id == account.id,
        StatementLine.is_matched.is_(False),
    ).order_by(StatementLine.transaction_date).all()


@router.post("/accounts/{account_id}/balance-check", response_model=ProviderRequestResponse, status_code=202)
def request_balance_check(
    account_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """
    Ask the provider for the account balance. The result arrives later;
    poll GET /sync/requests/{conversation_id}.
    """
    account = _get_account(db, tenant_id, account_id)
    try:
        return BankSyncService(db).request_balance_check(account)
    except BankIntegrationError as e:
        logger.error(f"Balance check failed for account {account_id}: {e.diagnostic}")
        raise integration_http_error(e)


@router.post("/accounts/{account_id}/transaction-status", response_model=ProviderRequestResponse, status_code=202)
def request_transaction_status(
    account_id: UUID,
    query: TransactionStatusQuery,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    account = _get_account(db, tenant_id, account_id)
    try:
        return BankSyncService(db).request_transaction_status(account, query.transaction_id)
    except BankIntegrationError as e:
        logger.error(f"Transaction status query failed for account {account_id}: {e.diagnostic}")
        raise integration_http_error(e)


@router.get("/requests/{conversation_id}", response_model=ProviderRequestResponse)
def get_provider_request(
    conversation_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    request = ProviderCallbackService(db).get_request(tenant_id, conversation_id)
    if request is None:
        raise HTTPException(status_code=404, detail="Request not found")
    return request
