"""
Generic OAuth2 REST bank adapter.

Works with any bank API that offers:
    - OAuth2 client-credentials grant at {base}/oauth2/token
    - Pull-style statement endpoint at
      {base}/v1/accounts/{account_number}/transactions?from_date=&to_date=

Named banks (KCB, Equity) are this adapter bound to a fixed base URL.

Credentials:
    client_id, client_secret
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from bankfeeds.integrations.base import BankAdapter, NormalizedLine, ProviderSession, ZERO
from bankfeeds.integrations.errors import AuthFailure, FetchFailure
from bankfeeds.integrations.normalization import (
    bounded_reference,
    fallback_reference,
    parse_amount,
    parse_provider_datetime,
    provider_zone,
    text_or_placeholder,
)

logger = logging.getLogger(__name__)


class RestSession(ProviderSession):
    """Bearer token obtained from the bank's identity endpoint."""


class GenericRestAdapter(BankAdapter):
    """Adapter for OAuth2 client-credentials REST bank APIs."""

    DEBIT_TYPE = "DEBIT"
    DESCRIPTION_PLACEHOLDER = "N/A"

    def __init__(
        self,
        base_url: str,
        provider: str = "generic_rest",
        timeout: float = 30.0,
        provider_timezone: str = "Africa/Nairobi",
        raise_on_fetch_failure: bool = False,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            base_url: API root, e.g. https://api.kcbgroup.com/v1
            provider: Provider key, used in logs and errors
            timeout: Per-request timeout in seconds
            provider_timezone: Zone used for dates without an offset
            raise_on_fetch_failure: Propagate FetchFailure instead of returning []
            transport: Optional httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.raise_on_fetch_failure = raise_on_fetch_failure
        self.tz = provider_zone(provider_timezone)

        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def authenticate(self, credentials: Dict[str, Any]) -> RestSession:
        client_id = credentials.get("client_id")
        client_secret = credentials.get("client_secret")
        if not client_id or not client_secret:
            raise AuthFailure(
                f"{self.provider} credentials must include client_id and client_secret.",
                provider=self.provider,
            )

        try:
            response = self.client.post(
                "/oauth2/token",
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "grant_type": "client_credentials",
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"{self.provider} auth request failed: {e}")
            raise AuthFailure(
                f"Could not reach {self.provider} identity endpoint: {e}",
                provider=self.provider,
            ) from e

        if not response.is_success:
            logger.error(f"{self.provider} auth failed ({response.status_code}): {response.text}")
            raise AuthFailure(
                "Bank authentication failed.",
                provider=self.provider,
                status_code=response.status_code,
                response_body=response.text,
            )

        token = self._json(response).get("access_token")
        if not token:
            raise AuthFailure(
                "Bank identity endpoint returned no access_token.",
                provider=self.provider,
                status_code=response.status_code,
                response_body=response.text,
            )

        return RestSession(provider=self.provider, access_token=token)

    def fetch_transactions(
        self,
        session: ProviderSession,
        account: Any,
        start_date: datetime,
    ) -> List[NormalizedLine]:
        try:
            raw_transactions = self._get_statement(session, account.external_account_id, start_date)
        except FetchFailure as e:
            if self.raise_on_fetch_failure:
                raise
            logger.warning(f"{self.provider} fetch failed for account {account.id}: {e}")
            return []

        lines = []
        for raw in raw_transactions:
            if not isinstance(raw, dict):
                logger.warning(f"{self.provider} returned a non-object transaction, skipping")
                continue
            lines.append(self.normalize_transaction(raw))
        return lines

    def _get_statement(
        self,
        session: ProviderSession,
        account_number: str,
        start_date: datetime,
    ) -> List[Any]:
        params = {
            "from_date": start_date.strftime("%Y-%m-%d"),
            "to_date": datetime.now(timezone.utc).strftime("%Y-%m-%d"),
        }
        try:
            response = self.client.get(
                f"/v1/accounts/{account_number}/transactions",
                params=params,
                headers={"Authorization": f"Bearer {session.access_token}"},
            )
        except httpx.HTTPError as e:
            raise FetchFailure(f"HTTP error calling {self.provider}: {e}", provider=self.provider) from e

        if not response.is_success:
            raise FetchFailure(
                f"{self.provider} statement request returned {response.status_code}: {response.text[:500]}",
                provider=self.provider,
                status_code=response.status_code,
            )

        transactions = self._json(response).get("transactions") or []
        if not isinstance(transactions, list):
            raise FetchFailure(f"{self.provider} statement payload is malformed", provider=self.provider)
        return transactions

    def normalize_transaction(self, raw: Dict[str, Any]) -> NormalizedLine:
        amount = parse_amount(raw.get("amount"))
        is_debit = raw.get("transaction_type") == self.DEBIT_TYPE

        reference = raw.get("transaction_id")
        if reference in (None, ""):
            reference = fallback_reference(self.provider, raw)

        return NormalizedLine(
            transaction_date=parse_provider_datetime(raw.get("booking_date"), self.tz),
            description=text_or_placeholder(raw.get("narrative"), self.DESCRIPTION_PLACEHOLDER),
            debit=amount if is_debit else ZERO,
            credit=ZERO if is_debit else amount,
            reference=bounded_reference(self.provider, reference),
        )

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    def close(self) -> None:
        self.client.close()

    def __del__(self):
        """Cleanup HTTP client on deletion."""
        if hasattr(self, "client"):
            self.client.close()
