"""
Service for syncing bank statement lines from provider APIs.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from bankfeeds.config import Settings, get_settings
from bankfeeds.integrations.base import AsyncCommandAdapter, BankAdapter, CommandAcknowledgement, NormalizedLine
from bankfeeds.integrations.errors import ConfigurationError, FetchFailure, UnsupportedProviderError
from bankfeeds.integrations.registry import create_adapter
from bankfeeds.models import BankAccount, ProviderRequest, utcnow
from bankfeeds.security.data_encryption import decrypt_credentials
from bankfeeds.services.statement_lines import StatementLineRepository

logger = logging.getLogger(__name__)

AdapterResolver = Callable[[BankAccount], BankAdapter]


class BankSyncService:
    """
    Drives one sync pass per account:
    authenticate -> fetch since watermark -> normalize -> persist.

    Callers must not run two passes for the same account concurrently;
    both would derive the same watermark. The Celery task holds a
    per-account Redis lock for this.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        adapter_resolver: Optional[AdapterResolver] = None,
        statement_lines: Optional[StatementLineRepository] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.adapter_resolver = adapter_resolver or (lambda account: create_adapter(account, self.settings))
        self.statement_lines = statement_lines or StatementLineRepository(db)

    def _credentials_for(self, account: BankAccount) -> Dict[str, Any]:
        if not account.provider or not account.credentials_ciphertext:
            raise ConfigurationError(
                f"Account '{account.name}' is not configured for API integration.",
                provider=account.provider,
            )
        credentials = decrypt_credentials(account.credentials_ciphertext)
        if not credentials:
            raise ConfigurationError(
                f"Account '{account.name}' has empty bank credentials.",
                provider=account.provider,
            )
        return credentials

    def compute_start_date(self, account: BankAccount, now: Optional[datetime] = None) -> datetime:
        """Day after the latest stored line, or the lookback window when there is none."""
        latest = self.statement_lines.latest_transaction_date(account.id)
        if latest is not None:
            return latest + timedelta(days=1)
        now = now or datetime.now(timezone.utc)
        return now - timedelta(days=self.settings.sync_lookback_days)

    def _coerce_line(self, adapter: BankAdapter, item: Any) -> Optional[NormalizedLine]:
        if isinstance(item, NormalizedLine):
            return item
        if isinstance(item, dict):
            try:
                return adapter.normalize_transaction(item)
            except (ValidationError, ValueError) as e:
                logger.error(f"Could not normalize {account_provider(adapter)} transaction: {e}")
                return None
        logger.warning(f"Ignoring unexpected item of type {type(item).__name__} from adapter")
        return None

    def sync_account(self, account: BankAccount) -> int:
        """
        Pull new lines for one account.

        Returns:
            Number of statement lines persisted

        Raises:
            ConfigurationError, UnsupportedProviderError, AuthFailure,
            CredentialEnvelopeError
        """
        credentials = self._credentials_for(account)
        adapter = self.adapter_resolver(account)

        logger.info(f"Starting {account.provider} sync for account {account.id}")
        session = adapter.authenticate(credentials)

        start_date = self.compute_start_date(account)
        lines = adapter.fetch_transactions(session, account, start_date)

        persisted = 0
        try:
            for item in lines:
                line = self._coerce_line(adapter, item)
                if line is None:
                    continue
                if not self.statement_lines.add(account.tenant_id, account.id, line):
                    continue
                persisted += 1
                if line.balance_check is not None:
                    self._register_request(
                        account,
                        kind="balance",
                        conversation_id=line.balance_check.correlation_id,
                    )

            account.last_synced_at = utcnow()
            self.statement_lines.commit()
        except Exception:
            self.statement_lines.rollback()
            raise

        logger.info(f"Synced {persisted} statement lines for account {account.id}")
        return persisted

    def _register_request(
        self,
        account: BankAccount,
        kind: str,
        conversation_id: str,
        originator_conversation_id: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> ProviderRequest:
        request = ProviderRequest(
            tenant_id=account.tenant_id,
            account_id=account.id,
            provider=account.provider,
            kind=kind,
            subject=subject,
            conversation_id=conversation_id,
            originator_conversation_id=originator_conversation_id,
            status="pending",
        )
        self.db.add(request)
        return request

    def _async_adapter(self, account: BankAccount) -> tuple[AsyncCommandAdapter, Dict[str, Any]]:
        credentials = self._credentials_for(account)
        adapter = self.adapter_resolver(account)
        if not isinstance(adapter, AsyncCommandAdapter):
            raise UnsupportedProviderError(
                f"Provider {account.provider} does not support asynchronous balance or status queries.",
                provider=account.provider,
            )
        return adapter, credentials

    def _record_acknowledgement(
        self,
        account: BankAccount,
        kind: str,
        ack: CommandAcknowledgement,
        subject: Optional[str] = None,
    ) -> ProviderRequest:
        if not ack.accepted:
            raise FetchFailure(
                f"{account.provider} did not accept the {kind} request: {ack.response_description}",
                provider=account.provider,
            )
        request = self._register_request(
            account,
            kind=kind,
            conversation_id=ack.conversation_id,
            originator_conversation_id=ack.originator_conversation_id,
            subject=subject,
        )
        self.db.commit()
        self.db.refresh(request)
        return request

    def request_balance_check(self, account: BankAccount) -> ProviderRequest:
        """
        Send a balance query. The returned request stays pending until the
        provider's result callback resolves it.
        """
        adapter, credentials = self._async_adapter(account)
        session = adapter.authenticate(credentials)
        ack = adapter.request_balance_check(session, account)
        return self._record_acknowledgement(account, "balance", ack)

    def request_transaction_status(self, account: BankAccount, transaction_id: str) -> ProviderRequest:
        adapter, credentials = self._async_adapter(account)
        session = adapter.authenticate(credentials)
        ack = adapter.request_transaction_status(session, account, transaction_id)
        return self._record_acknowledgement(account, "transaction_status", ack, subject=transaction_id)


def account_provider(adapter: BankAdapter) -> str:
    return getattr(adapter, "provider", type(adapter).__name__)
