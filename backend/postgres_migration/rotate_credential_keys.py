"""
Re-encrypt stored bank credentials with the current data encryption key.

Run after rotating keys: set DATA_ENCRYPTION_KEY_CURRENT / DATA_ENCRYPTION_KEY_ID
to the new key and DATA_ENCRYPTION_KEY_PREVIOUS to the old one, run this,
then drop DATA_ENCRYPTION_KEY_PREVIOUS.

Usage:
  cd backend
  python postgres_migration/rotate_credential_keys.py --batch-size 500
"""
from __future__ import annotations

import argparse

from bankfeeds.database import SessionLocal
from bankfeeds.models import BankAccount
from bankfeeds.security.data_encryption import (
    current_key_id,
    decrypt_credentials,
    encrypt_credentials,
    envelope_key_id,
    is_data_encryption_enabled,
)


def accounts_needing_rotation(db) -> list:
    key_id = current_key_id()
    rows = db.query(BankAccount.id, BankAccount.credentials_ciphertext).filter(
        BankAccount.credentials_ciphertext.isnot(None),
    ).all()
    return [account_id for account_id, ciphertext in rows if envelope_key_id(ciphertext) != key_id]


def rotate(batch_size: int, dry_run: bool, session_factory=SessionLocal) -> dict[str, int]:
    if not is_data_encryption_enabled():
        raise RuntimeError(
            "DATA_ENCRYPTION_KEY_CURRENT is required for rotation. "
            "Set DATA_ENCRYPTION_KEY_CURRENT and DATA_ENCRYPTION_KEY_ID first."
        )

    db = session_factory()
    rotated = 0
    try:
        pending = accounts_needing_rotation(db)
        for start in range(0, len(pending), batch_size):
            batch_ids = pending[start:start + batch_size]
            accounts = db.query(BankAccount).filter(BankAccount.id.in_(batch_ids)).all()
            for account in accounts:
                # Raises ConfigurationError when neither key opens the blob.
                credentials = decrypt_credentials(account.credentials_ciphertext)
                account.credentials_ciphertext = encrypt_credentials(credentials)
                rotated += 1

            if dry_run:
                db.rollback()
            else:
                db.commit()

        return {
            "accounts_pending": len(pending),
            "accounts_rotated": 0 if dry_run else rotated,
        }
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--batch-size", type=int, default=500)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    result = rotate(batch_size=args.batch_size, dry_run=args.dry_run)
    print(result)
