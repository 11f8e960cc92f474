"""
Error taxonomy for bank integrations.

ConfigurationError, UnsupportedProviderError, AuthFailure and
CredentialEnvelopeError stop a sync pass. FetchFailure is raised inside
adapters and normally converted into an empty result there.
"""
from typing import Optional


class BankIntegrationError(Exception):
    """Base class for every bank integration failure."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider

    @property
    def diagnostic(self) -> str:
        """Provider-specific detail, only shown outside production."""
        return self.message


class ConfigurationError(BankIntegrationError):
    """Account is missing a provider, credentials or required settings."""


class UnsupportedProviderError(BankIntegrationError):
    """Provider key has no registered adapter, or lacks a capability."""


class AuthFailure(BankIntegrationError):
    """Provider identity endpoint rejected us or could not be reached."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        super().__init__(message, provider=provider)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def diagnostic(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.response_body:
            parts.append(f"body={self.response_body[:500]}")
        return " ".join(parts)


class FetchFailure(BankIntegrationError):
    """Statement or command request failed after authentication."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, provider=provider)
        self.status_code = status_code


class CredentialEnvelopeError(BankIntegrationError):
    """Security credential could not be produced (certificate missing or unusable)."""
