"""
Shared helpers for bank feed tests: in-memory database, encryption keys,
throwaway M-Pesa certificates and fake provider transports.
"""
import base64
import json
import os
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bankfeeds.database import Base
from bankfeeds.models import BankAccount
from bankfeeds.security.data_encryption import encrypt_credentials, reset_encryption_config_cache

TENANT_ID = "tenant-1"

REST_CREDENTIALS = {"client_id": "client-123", "client_secret": "secret-456"}

MPESA_CREDENTIALS = {
    "consumer_key": "ck",
    "consumer_secret": "cs",
    "initiator_name": "testapi",
    "initiator_password": "Safaricom999!*!",
    "shortcode": "600000",
    "env": "sandbox",
}


def make_session_factory():
    """
    In-memory SQLite with working SAVEPOINTs (pysqlite needs explicit BEGIN).
    """
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def make_session():
    return make_session_factory()()


def set_encryption_env() -> None:
    key = base64.urlsafe_b64encode(b"b" * 32).decode("utf-8").rstrip("=")
    os.environ["DATA_ENCRYPTION_KEY_CURRENT"] = key
    os.environ["DATA_ENCRYPTION_KEY_ID"] = "k-test"
    os.environ.pop("DATA_ENCRYPTION_KEY_PREVIOUS", None)
    reset_encryption_config_cache()


def create_account(
    db,
    provider: Optional[str] = "generic_rest",
    credentials: Optional[dict] = None,
    external_account_id: str = "0123456789",
    base_url: Optional[str] = "https://bank.example.com",
) -> BankAccount:
    set_encryption_env()
    account = BankAccount(
        tenant_id=TENANT_ID,
        name=f"{provider or 'manual'} account",
        provider=provider,
        base_url=base_url,
        credentials_ciphertext=encrypt_credentials(credentials) if credentials is not None else None,
        external_account_id=external_account_id,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


def write_certificate(directory: Path, environment: str = "sandbox") -> rsa.RSAPrivateKey:
    """Write a self-signed mpesa_<env>.cer and return its private key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, f"{environment}.safaricom.test")])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    (Path(directory) / f"mpesa_{environment}.cer").write_bytes(
        certificate.public_bytes(serialization.Encoding.PEM)
    )
    return key


def decrypt_security_credential(key: rsa.RSAPrivateKey, credential: str) -> str:
    return key.decrypt(base64.b64decode(credential), padding.PKCS1v15()).decode("utf-8")


def json_response(status_code: int, body) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(body).encode("utf-8"),
                          headers={"Content-Type": "application/json"})


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


@contextmanager
def temporary_env(**values: Optional[str]):
    original = {key: os.environ.get(key) for key in values}
    for key, value in values.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    try:
        yield
    finally:
        for key, value in original.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
