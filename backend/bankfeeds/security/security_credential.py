"""
M-Pesa security credential generation.

Daraja commands (AccountBalance, TransactionStatusQuery) must carry the
initiator password encrypted with the public key from Safaricom's
certificate for the target environment:

    Sandbox:    https://developer.safaricom.co.ke/.../cert_sandbox/cert.cer
    Production: https://developer.safaricom.co.ke/.../cert_prod/cert.cer

Store them as mpesa_sandbox.cer / mpesa_production.cer in BANK_CERT_DIR.
"""
import base64
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from bankfeeds.integrations.errors import CredentialEnvelopeError

logger = logging.getLogger(__name__)


def certificate_name(environment: str, provider: str = "mpesa") -> str:
    return f"{provider}_{environment}.cer"


class CertificateStore(ABC):
    """Read-only store of provider public-key certificates."""

    @abstractmethod
    def get(self, name: str) -> Optional[bytes]:
        """Return certificate bytes, or None when absent."""
        pass


class FileCertificateStore(CertificateStore):
    """Certificates kept as files in a single directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def get(self, name: str) -> Optional[bytes]:
        path = self.directory / name
        if not path.is_file():
            return None
        return path.read_bytes()


def _load_public_key(raw: bytes) -> rsa.RSAPublicKey:
    if b"-----BEGIN CERTIFICATE-----" in raw:
        certificate = x509.load_pem_x509_certificate(raw)
    else:
        certificate = x509.load_der_x509_certificate(raw)

    public_key = certificate.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise CredentialEnvelopeError("Certificate does not carry an RSA public key.", provider="mpesa")
    return public_key


def generate_security_credential(
    plaintext_secret: str,
    environment: str,
    store: CertificateStore,
) -> str:
    """
    Encrypt a secret with the environment's public key (PKCS#1 v1.5) and
    return it base64-encoded. Computed per command and never cached.

    Raises:
        CredentialEnvelopeError: certificate absent, unreadable, or encryption failed
    """
    name = certificate_name(environment)
    raw = store.get(name)
    if not raw:
        raise CredentialEnvelopeError(f"M-Pesa public certificate not found: {name}", provider="mpesa")

    try:
        public_key = _load_public_key(raw)
        encrypted = public_key.encrypt(plaintext_secret.encode("utf-8"), padding.PKCS1v15())
    except CredentialEnvelopeError:
        raise
    except (ValueError, TypeError) as exc:
        logger.error(f"Could not build M-Pesa security credential from {name}: {type(exc).__name__}")
        raise CredentialEnvelopeError(f"M-Pesa certificate {name} is unusable.", provider="mpesa") from exc

    return base64.b64encode(encrypted).decode("ascii")
