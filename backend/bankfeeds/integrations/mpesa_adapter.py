"""
Safaricom M-Pesa (Daraja) adapter.

M-Pesa has no "get full statement" endpoint. What it offers instead:
    - AccountBalance query for the Paybill/Till float
    - TransactionStatusQuery for a single receipt

Both are answered asynchronously: the synchronous response only says the
request was queued (with a ConversationID), and the result is POSTed later
to our ResultURL. See bankfeeds.services.callback_service for that half.

Credentials:
    consumer_key, consumer_secret   - Daraja app keys (basic auth)
    initiator_name, initiator_password
    shortcode                       - Paybill/Till number
    env                             - "sandbox" (default) or "production"
"""
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from bankfeeds.integrations.base import (
    AsyncCommandAdapter,
    BalanceCheck,
    CommandAcknowledgement,
    NormalizedLine,
    ProviderSession,
    ZERO,
)
from bankfeeds.integrations.errors import AuthFailure, ConfigurationError, FetchFailure
from bankfeeds.integrations.normalization import (
    bounded_reference,
    fallback_reference,
    parse_amount,
    parse_provider_datetime,
    provider_zone,
    text_or_placeholder,
)
from bankfeeds.security.security_credential import CertificateStore, generate_security_credential

logger = logging.getLogger(__name__)

PROVIDER = "mpesa"

BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

# Organisation shortcode
IDENTIFIER_TYPE_SHORTCODE = "4"

BALANCE_RESULT_PATH = "/api/mpesa/balance-result"
STATUS_RESULT_PATH = "/api/mpesa/status-result"
TIMEOUT_PATH = "/api/mpesa/timeout"

BALANCE_CHECK_DESCRIPTION = "M-Pesa Closing Balance Check"


def callback_signature(path: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), path.encode("utf-8"), hashlib.sha256).hexdigest()


class MpesaSession(ProviderSession):
    """Token plus the environment and initiator details commands need."""
    environment: str
    base_url: str
    initiator_name: Optional[str] = None
    initiator_password: Optional[str] = None
    shortcode: Optional[str] = None

    def __repr__(self) -> str:
        return f"MpesaSession(environment={self.environment!r}, shortcode={self.shortcode!r})"

    __str__ = __repr__


class MpesaAdapter(AsyncCommandAdapter):
    """Adapter for the M-Pesa Daraja API."""

    DESCRIPTION_PLACEHOLDER = "M-Pesa Transaction"

    def __init__(
        self,
        certificate_store: CertificateStore,
        callback_base_url: str,
        timeout: float = 30.0,
        provider_timezone: str = "Africa/Nairobi",
        callback_signing_secret: Optional[str] = None,
        raise_on_fetch_failure: bool = False,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            certificate_store: Where mpesa_<env>.cer certificates are kept
            callback_base_url: Public URL Daraja can POST results to (APP_URL)
            timeout: Per-request timeout in seconds
            provider_timezone: Zone used for M-Pesa timestamps
            callback_signing_secret: When set, callback URLs carry an HMAC signature
            raise_on_fetch_failure: Propagate FetchFailure instead of returning []
            transport: Optional httpx transport (tests)
        """
        self.certificate_store = certificate_store
        self.callback_base_url = callback_base_url.rstrip("/")
        self.callback_signing_secret = callback_signing_secret
        self.raise_on_fetch_failure = raise_on_fetch_failure
        self.tz = provider_zone(provider_timezone)
        self.timeout = timeout

        # Base URL depends on the environment in the credentials, so requests use absolute URLs.
        self.client = httpx.Client(timeout=timeout, transport=transport)

    def authenticate(self, credentials: Dict[str, Any]) -> MpesaSession:
        environment = credentials.get("env") or "sandbox"
        if environment not in BASE_URLS:
            raise AuthFailure(f"Unknown M-Pesa environment: {environment}", provider=PROVIDER)
        base_url = BASE_URLS[environment]

        consumer_key = credentials.get("consumer_key")
        consumer_secret = credentials.get("consumer_secret")
        if not consumer_key or not consumer_secret:
            raise AuthFailure("M-Pesa credentials must include consumer_key and consumer_secret.", provider=PROVIDER)

        try:
            response = self.client.get(
                f"{base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(consumer_key, consumer_secret),
            )
        except httpx.HTTPError as e:
            logger.error(f"M-Pesa auth request failed: {e}")
            raise AuthFailure(f"Failed to connect to M-Pesa Daraja API: {e}", provider=PROVIDER) from e

        if not response.is_success:
            logger.error(f"M-Pesa auth failed ({response.status_code}): {response.text}")
            raise AuthFailure(
                "Failed to connect to M-Pesa Daraja API.",
                provider=PROVIDER,
                status_code=response.status_code,
                response_body=response.text,
            )

        try:
            token = response.json().get("access_token")
        except ValueError:
            token = None
        if not token:
            raise AuthFailure(
                "M-Pesa returned no access_token.",
                provider=PROVIDER,
                status_code=response.status_code,
                response_body=response.text,
            )

        return MpesaSession(
            provider=PROVIDER,
            access_token=token,
            environment=environment,
            base_url=base_url,
            initiator_name=credentials.get("initiator_name"),
            initiator_password=credentials.get("initiator_password"),
            shortcode=credentials.get("shortcode"),
        )

    def _callback_url(self, path: str) -> str:
        url = f"{self.callback_base_url}{path}"
        if self.callback_signing_secret:
            url = f"{url}?signature={callback_signature(path, self.callback_signing_secret)}"
        return url

    def _command_payload(self, session: MpesaSession, account: Any, remarks: str) -> Dict[str, Any]:
        if not session.initiator_name or not session.initiator_password:
            raise ConfigurationError(
                "M-Pesa credentials must include initiator_name and initiator_password.",
                provider=PROVIDER,
            )
        shortcode = session.shortcode or getattr(account, "external_account_id", None)
        if not shortcode:
            raise ConfigurationError("M-Pesa account has no shortcode.", provider=PROVIDER)

        return {
            "Initiator": session.initiator_name,
            "SecurityCredential": generate_security_credential(
                session.initiator_password,
                session.environment,
                self.certificate_store,
            ),
            "PartyA": shortcode,
            "IdentifierType": IDENTIFIER_TYPE_SHORTCODE,
            "Remarks": remarks,
            "QueueTimeOutURL": self._callback_url(TIMEOUT_PATH),
        }

    def _submit_command(self, session: MpesaSession, path: str, payload: Dict[str, Any]) -> CommandAcknowledgement:
        try:
            response = self.client.post(
                f"{session.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {session.access_token}"},
            )
        except httpx.HTTPError as e:
            raise FetchFailure(f"HTTP error calling M-Pesa {payload.get('CommandID')}: {e}", provider=PROVIDER) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if not response.is_success:
            raise FetchFailure(
                f"M-Pesa {payload.get('CommandID')} returned {response.status_code}: {response.text[:500]}",
                provider=PROVIDER,
                status_code=response.status_code,
            )

        response_code = body.get("ResponseCode")
        ack = CommandAcknowledgement(
            accepted=str(response_code) == "0" and bool(body.get("ConversationID")),
            conversation_id=body.get("ConversationID"),
            originator_conversation_id=body.get("OriginatorConversationID"),
            response_code=None if response_code is None else str(response_code),
            response_description=body.get("ResponseDescription"),
        )
        if ack.accepted:
            logger.info(f"M-Pesa {payload.get('CommandID')} request sent: {ack.conversation_id}")
        else:
            logger.warning(f"M-Pesa {payload.get('CommandID')} not accepted: {ack.response_description}")
        return ack

    def request_balance_check(self, session: MpesaSession, account: Any) -> CommandAcknowledgement:
        """
        Ask for the Paybill/Till float. The balance itself arrives at the
        balance-result callback, keyed by the returned conversation id.
        """
        payload = self._command_payload(session, account, remarks="Balance Check")
        payload["CommandID"] = "AccountBalance"
        payload["ResultURL"] = self._callback_url(BALANCE_RESULT_PATH)
        return self._submit_command(session, "/mpesa/accountbalance/v1/query", payload)

    def request_transaction_status(
        self,
        session: MpesaSession,
        account: Any,
        transaction_id: str,
    ) -> CommandAcknowledgement:
        payload = self._command_payload(session, account, remarks="Reconciliation")
        payload["CommandID"] = "TransactionStatusQuery"
        payload["TransactionID"] = transaction_id
        payload["ResultURL"] = self._callback_url(STATUS_RESULT_PATH)
        return self._submit_command(session, "/mpesa/transactionstatus/v1/query", payload)

    def fetch_transactions(
        self,
        session: MpesaSession,
        account: Any,
        start_date: datetime,
    ) -> List[NormalizedLine]:
        """
        Issue a balance check and surface it as one zero-value line.
        start_date is unused: there is nothing to pull.
        """
        logger.info(f"M-Pesa: requesting balance check for account {account.id}")
        try:
            ack = self.request_balance_check(session, account)
        except FetchFailure as e:
            if self.raise_on_fetch_failure:
                raise
            logger.warning(f"M-Pesa balance check failed for account {account.id}: {e}")
            return []

        if not ack.accepted:
            return []

        now = datetime.now(timezone.utc)
        return [
            NormalizedLine(
                transaction_date=now,
                description=BALANCE_CHECK_DESCRIPTION,
                debit=ZERO,
                credit=ZERO,
                reference=balance_reference(ack.conversation_id),
                balance_check=BalanceCheck(correlation_id=ack.conversation_id, requested_at=now),
            )
        ]

    def normalize_transaction(self, raw: Dict[str, Any]) -> NormalizedLine:
        """Map an M-Pesa callback transaction (PascalCase keys) to a line."""
        amount = parse_amount(raw.get("Amount"))
        transaction_type = raw.get("TransactionType")

        reference = raw.get("TransactionID")
        if reference in (None, ""):
            reference = fallback_reference(PROVIDER, raw)

        return NormalizedLine(
            transaction_date=parse_provider_datetime(raw.get("TransactionDate"), self.tz),
            description=text_or_placeholder(raw.get("TransactionReason"), self.DESCRIPTION_PLACEHOLDER),
            debit=amount if transaction_type == "Debit" else ZERO,
            credit=amount if transaction_type == "Credit" else ZERO,
            reference=bounded_reference(PROVIDER, reference),
        )

    def close(self) -> None:
        self.client.close()

    def __del__(self):
        """Cleanup HTTP client on deletion."""
        if hasattr(self, "client"):
            self.client.close()


def balance_reference(conversation_id: str) -> str:
    return f"BAL-{conversation_id}"
