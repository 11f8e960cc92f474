"""
Resolution of asynchronous M-Pesa results.

Daraja answers AccountBalance and TransactionStatusQuery commands by POSTing
to our result URLs, in no particular order and possibly never. Each result
is matched to the pending ProviderRequest by ConversationID.
"""
import logging
from datetime import timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from bankfeeds.config import Settings, get_settings
from bankfeeds.integrations.base import BalanceCheck, NormalizedLine
from bankfeeds.integrations.mpesa_adapter import BALANCE_CHECK_DESCRIPTION, MpesaAdapter, balance_reference
from bankfeeds.integrations.mpesa_results import (
    MpesaResult,
    parse_result,
    status_result_to_transaction,
    timeout_conversation_id,
    working_account_balance,
)
from bankfeeds.models import BankAccount, ProviderRequest, utcnow
from bankfeeds.security.security_credential import FileCertificateStore
from bankfeeds.services.statement_lines import StatementLineRepository

logger = logging.getLogger(__name__)


class ProviderCallbackService:
    """Applies provider result callbacks to pending requests and statement lines."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.statement_lines = StatementLineRepository(db)

    def get_request(self, tenant_id: str, conversation_id: str) -> Optional[ProviderRequest]:
        return self.db.query(ProviderRequest).filter(
            ProviderRequest.tenant_id == tenant_id,
            ProviderRequest.conversation_id == conversation_id,
        ).first()

    def _pending_request(self, conversation_id: Optional[str], kind: Optional[str] = None) -> Optional[ProviderRequest]:
        if not conversation_id:
            return None
        query = self.db.query(ProviderRequest).filter(ProviderRequest.conversation_id == conversation_id)
        if kind:
            query = query.filter(ProviderRequest.kind == kind)
        request = query.first()
        if request is None:
            logger.warning(f"M-Pesa callback for unknown conversation {conversation_id}, ignoring")
            return None
        if request.status != "pending":
            logger.info(f"M-Pesa callback for conversation {conversation_id} already {request.status}")
            return None
        return request

    def _resolve(self, request: ProviderRequest, result: MpesaResult, payload: Dict[str, Any]) -> None:
        request.result_code = result.result_code
        request.result_description = result.result_description
        request.result_payload = payload
        request.resolved_at = utcnow()
        request.status = "completed" if result.succeeded else "failed"
        if not result.succeeded:
            logger.error(
                f"M-Pesa {request.kind} query {request.conversation_id} failed: "
                f"{result.result_description or 'Unknown Error'}"
            )

    def resolve_balance_result(self, payload: Dict[str, Any]) -> Optional[ProviderRequest]:
        """
        Record the balance reported for a pending balance check and copy it
        onto the matching balance-check statement line.
        """
        result = parse_result(payload)
        if result is None:
            raise ValueError("Balance callback has no Result object.")

        request = self._pending_request(result.conversation_id, kind="balance")
        if request is None:
            return None

        self._resolve(request, result, payload)
        if result.succeeded:
            request.balance = working_account_balance(result.parameters)
            self._record_balance_line(request)

        self.db.commit()
        return request

    def _record_balance_line(self, request: ProviderRequest) -> None:
        reference = balance_reference(request.conversation_id)
        line = self.statement_lines.set_balance(request.account_id, reference, request.balance)
        if line is not None:
            return

        # Requested through the API rather than a sync pass: no line yet.
        checked_at = request.created_at or utcnow()
        self.statement_lines.add(
            request.tenant_id,
            request.account_id,
            NormalizedLine(
                transaction_date=checked_at.replace(tzinfo=timezone.utc),
                description=BALANCE_CHECK_DESCRIPTION,
                reference=reference,
                balance_check=BalanceCheck(
                    correlation_id=request.conversation_id,
                    balance=request.balance,
                    requested_at=checked_at.replace(tzinfo=timezone.utc),
                ),
            ),
        )

    def resolve_status_result(self, payload: Dict[str, Any]) -> Optional[ProviderRequest]:
        """
        Record a transaction status result; on success the queried
        transaction is upserted as a statement line.
        """
        result = parse_result(payload)
        if result is None:
            raise ValueError("Status callback has no Result object.")

        request = self._pending_request(result.conversation_id, kind="transaction_status")
        if request is None:
            return None

        self._resolve(request, result, payload)
        if result.succeeded:
            account = self.db.get(BankAccount, request.account_id)
            shortcode = account.external_account_id if account else None
            raw = status_result_to_transaction(result, shortcode, queried_transaction_id=request.subject)
            line = self._normalizer().normalize_transaction(raw)
            self.statement_lines.upsert(request.tenant_id, request.account_id, line)

        self.db.commit()
        return request

    def record_timeout(self, payload: Dict[str, Any]) -> Optional[ProviderRequest]:
        conversation_id = timeout_conversation_id(payload)
        request = self._pending_request(conversation_id)
        if request is None:
            return None

        logger.warning(f"M-Pesa {request.kind} request {conversation_id} timed out in the provider queue")
        request.status = "timed_out"
        request.result_payload = payload
        request.resolved_at = utcnow()
        self.db.commit()
        return request

    def _normalizer(self) -> MpesaAdapter:
        return MpesaAdapter(
            certificate_store=FileCertificateStore(self.settings.bank_cert_dir),
            callback_base_url=self.settings.app_url,
            provider_timezone=self.settings.provider_timezone,
        )
