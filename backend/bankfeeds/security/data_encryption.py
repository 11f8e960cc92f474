"""
At-rest encryption for bank credential blobs.

Each account's credential mapping is stored as one AES-GCM envelope:

    enc:v1:<keyId>:<base64url(nonce + ciphertext)>

Keys come from the environment:
    DATA_ENCRYPTION_KEY_CURRENT   - 32 bytes, base64url or hex; used to encrypt
    DATA_ENCRYPTION_KEY_PREVIOUS  - optional; still accepted for decryption
    DATA_ENCRYPTION_KEY_ID        - id written into new envelopes (default k1)
"""
from __future__ import annotations

import base64
import json
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from bankfeeds.integrations.errors import ConfigurationError

ENVELOPE_PREFIX = "enc:v1"
NONCE_SIZE = 12
KEY_SIZE = 32


@dataclass(frozen=True)
class KeyRing:
    key_id: str
    current: Optional[bytes]
    previous: Optional[bytes]

    @property
    def enabled(self) -> bool:
        return self.current is not None

    def decryption_keys(self, envelope_key_id: str) -> List[bytes]:
        """Keys to try, the one most likely to match first."""
        keys = [key for key in (self.current, self.previous) if key]
        if envelope_key_id != self.key_id:
            keys.reverse()
        return keys


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _decode_key(name: str, raw: str) -> bytes:
    text = raw.strip()
    if len(text) == KEY_SIZE * 2:
        try:
            return bytes.fromhex(text)
        except ValueError:
            pass
    try:
        key = _b64url_decode(text)
    except ValueError as exc:
        raise ConfigurationError(f"{name} is neither hex nor base64url.") from exc
    if len(key) != KEY_SIZE:
        raise ConfigurationError(f"{name} must decode to exactly {KEY_SIZE} bytes.")
    return key


@lru_cache(maxsize=1)
def _key_ring() -> KeyRing:
    current = os.getenv("DATA_ENCRYPTION_KEY_CURRENT", "").strip()
    previous = os.getenv("DATA_ENCRYPTION_KEY_PREVIOUS", "").strip()
    return KeyRing(
        key_id=os.getenv("DATA_ENCRYPTION_KEY_ID", "").strip() or "k1",
        current=_decode_key("DATA_ENCRYPTION_KEY_CURRENT", current) if current else None,
        previous=_decode_key("DATA_ENCRYPTION_KEY_PREVIOUS", previous) if previous else None,
    )


def reset_encryption_config_cache() -> None:
    _key_ring.cache_clear()


def is_data_encryption_enabled() -> bool:
    return _key_ring().enabled


def current_key_id() -> str:
    return _key_ring().key_id


def is_envelope(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(f"{ENVELOPE_PREFIX}:")


def envelope_key_id(value: Optional[str]) -> Optional[str]:
    """Key id embedded in an envelope, or None for anything else."""
    if not is_envelope(value):
        return None
    parts = value.split(":", 3)
    return parts[2] if len(parts) == 4 else None


def encrypt_value(plaintext: str) -> str:
    ring = _key_ring()
    if not ring.enabled:
        raise ConfigurationError("DATA_ENCRYPTION_KEY_CURRENT is not configured; refusing to store credentials.")

    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(ring.current).encrypt(nonce, plaintext.encode("utf-8"), None)
    return f"{ENVELOPE_PREFIX}:{ring.key_id}:{_b64url_encode(nonce + sealed)}"


def decrypt_value(envelope: str) -> str:
    """
    Open an envelope with the current or previous key.

    Raises:
        ValueError: not an envelope, malformed, or no configured key opens it
    """
    key_id = envelope_key_id(envelope)
    if key_id is None:
        raise ValueError("Value is not an encrypted envelope.")

    blob = _b64url_decode(envelope.split(":", 3)[3])
    if len(blob) <= NONCE_SIZE:
        raise ValueError("Encrypted payload is too short.")

    ring = _key_ring()
    if not ring.enabled:
        raise ValueError("Encrypted data found but DATA_ENCRYPTION_KEY_CURRENT is not configured.")

    for key in ring.decryption_keys(key_id):
        try:
            return AESGCM(key).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None).decode("utf-8")
        except InvalidTag:
            continue
    raise ValueError(f"No configured key opens envelope {key_id}.")


def encrypt_credentials(credentials: Dict[str, Any]) -> str:
    return encrypt_value(json.dumps(credentials, sort_keys=True))


def decrypt_credentials(ciphertext: Optional[str]) -> Dict[str, Any]:
    """
    Decrypt an account's credential blob into a mapping.

    Raises:
        ConfigurationError: blob is missing, not encrypted, undecryptable or not a JSON object
    """
    if not ciphertext:
        raise ConfigurationError("Account has no stored bank credentials.")

    try:
        decoded = json.loads(decrypt_value(ciphertext))
    except ValueError as exc:
        # Never echo the blob itself.
        raise ConfigurationError(f"Stored bank credentials are unreadable: {exc}") from exc

    if not isinstance(decoded, dict):
        raise ConfigurationError("Stored bank credentials must be a JSON object.")
    return decoded
