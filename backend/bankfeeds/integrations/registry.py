"""
Provider key -> adapter factory.

The mapping is closed: every ProviderKey must have exactly one factory, and
validate_registry() is called at API and worker start so a gap fails there
rather than at the first sync.
"""
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

from bankfeeds.config import Settings, get_settings
from bankfeeds.integrations.base import BankAdapter
from bankfeeds.integrations.errors import ConfigurationError, UnsupportedProviderError
from bankfeeds.integrations.generic_rest import GenericRestAdapter
from bankfeeds.integrations.mpesa_adapter import MpesaAdapter
from bankfeeds.security.security_credential import FileCertificateStore

logger = logging.getLogger(__name__)


class ProviderKey(str, Enum):
    GENERIC_REST = "generic_rest"
    MPESA = "mpesa"
    KCB = "kcb"
    EQUITY = "equity"


AdapterFactory = Callable[[Any, Settings], BankAdapter]


def _rest_adapter(provider: str, base_url: Optional[str], settings: Settings) -> GenericRestAdapter:
    if not base_url:
        raise ConfigurationError(f"Provider {provider} requires a base URL.", provider=provider)
    return GenericRestAdapter(
        base_url=base_url,
        provider=provider,
        timeout=settings.http_timeout_seconds,
        provider_timezone=settings.provider_timezone,
        raise_on_fetch_failure=settings.strict_fetch_failures,
    )


def _generic_rest(account: Any, settings: Settings) -> BankAdapter:
    return _rest_adapter(ProviderKey.GENERIC_REST.value, getattr(account, "base_url", None), settings)


def _kcb(account: Any, settings: Settings) -> BankAdapter:
    return _rest_adapter(ProviderKey.KCB.value, settings.kcb_base_url, settings)


def _equity(account: Any, settings: Settings) -> BankAdapter:
    return _rest_adapter(ProviderKey.EQUITY.value, settings.equity_base_url, settings)


def _mpesa(account: Any, settings: Settings) -> BankAdapter:
    return MpesaAdapter(
        certificate_store=FileCertificateStore(settings.bank_cert_dir),
        callback_base_url=settings.app_url,
        timeout=settings.http_timeout_seconds,
        provider_timezone=settings.provider_timezone,
        callback_signing_secret=settings.callback_signing_secret,
        raise_on_fetch_failure=settings.strict_fetch_failures,
    )


ADAPTER_FACTORIES: Dict[ProviderKey, AdapterFactory] = {
    ProviderKey.GENERIC_REST: _generic_rest,
    ProviderKey.MPESA: _mpesa,
    ProviderKey.KCB: _kcb,
    ProviderKey.EQUITY: _equity,
}


def validate_registry(factories: Optional[Dict[ProviderKey, AdapterFactory]] = None) -> None:
    factories = ADAPTER_FACTORIES if factories is None else factories
    missing = [key.value for key in ProviderKey if key not in factories]
    if missing:
        raise RuntimeError(f"No adapter factory registered for provider(s): {', '.join(missing)}")
    logger.debug(f"Adapter registry covers {len(factories)} providers")


def resolve_provider_key(provider: Optional[str]) -> ProviderKey:
    try:
        return ProviderKey((provider or "").strip().lower())
    except ValueError:
        raise UnsupportedProviderError(f"Unsupported provider: {provider}", provider=provider) from None


def create_adapter(
    account: Any,
    settings: Optional[Settings] = None,
    factories: Optional[Dict[ProviderKey, AdapterFactory]] = None,
) -> BankAdapter:
    """Build the adapter for an account's configured provider."""
    key = resolve_provider_key(account.provider)
    factories = ADAPTER_FACTORIES if factories is None else factories
    factory = factories.get(key)
    if factory is None:
        raise UnsupportedProviderError(f"Unsupported provider: {account.provider}", provider=account.provider)
    return factory(account, settings or get_settings())
