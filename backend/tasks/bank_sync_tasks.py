"""
Celery tasks for scheduled bank statement syncs.

Two passes for the same account must never overlap (both would compute the
same watermark), so each account sync runs under a Redis lock.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

import redis
from redis.exceptions import LockError

from celery_app import celery_app
from bankfeeds.config import Settings, get_settings
from bankfeeds.database import SessionLocal
from bankfeeds.integrations.errors import AuthFailure, BankIntegrationError
from bankfeeds.models import BankAccount
from bankfeeds.services.sync_service import BankSyncService

logger = logging.getLogger(__name__)

_redis: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """Lazy-load Redis connection."""
    global _redis
    if _redis is None:
        _redis = redis.from_url(get_settings().redis_url, decode_responses=True)
    return _redis


def sync_lock_key(account_id: str) -> str:
    return f"bank_sync_lock:{account_id}"


def sync_lock_timeout(settings: Settings) -> int:
    """Lock TTL; a running task must never outlive its lock."""
    return max(settings.sync_lock_timeout_seconds, settings.sync_task_time_limit_seconds)


def run_locked_sync(
    account_id: str,
    redis_client: redis.Redis,
    session_factory=SessionLocal,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """
    Sync one account if nobody else holds its lock.

    Returns a summary dict; integration errors are reported in it rather
    than raised so that a bad account does not poison the worker.
    """
    settings = settings or get_settings()
    lock = redis_client.lock(
        sync_lock_key(account_id),
        timeout=sync_lock_timeout(settings),
        blocking=False,
    )
    if not lock.acquire(blocking=False):
        logger.info(f"Bank sync for account {account_id} already running, skipping")
        return {"account_id": account_id, "status": "skipped", "count": 0}

    db = session_factory()
    try:
        account = db.query(BankAccount).filter(BankAccount.id == uuid.UUID(str(account_id))).first()
        if account is None:
            logger.warning(f"Bank sync requested for missing account {account_id}")
            return {"account_id": account_id, "status": "missing", "count": 0}

        try:
            count = BankSyncService(db, settings=settings).sync_account(account)
        except AuthFailure as e:
            # Retried on the next beat tick, never in a tight loop.
            logger.error(f"Bank auth failed for account {account_id}: {e.diagnostic}")
            return {"account_id": account_id, "status": "auth_failed", "count": 0, "error": e.message}
        except BankIntegrationError as e:
            logger.error(f"Bank sync failed for account {account_id}: {e.diagnostic}")
            return {"account_id": account_id, "status": "error", "count": 0, "error": e.message}

        return {"account_id": account_id, "status": "success", "count": count}
    finally:
        db.close()
        try:
            lock.release()
        except LockError:
            logger.warning(f"Bank sync lock for account {account_id} expired before release")


@celery_app.task(name="tasks.bank_sync_tasks.sync_bank_account")
def sync_bank_account(account_id: str) -> Dict[str, Any]:
    return run_locked_sync(account_id, get_redis_client())


def integrated_account_ids(db) -> List[str]:
    rows = db.query(BankAccount.id).filter(
        BankAccount.is_active.is_(True),
        BankAccount.provider.isnot(None),
        BankAccount.credentials_ciphertext.isnot(None),
    ).all()
    return [str(row[0]) for row in rows]


@celery_app.task(name="tasks.bank_sync_tasks.sync_all_bank_accounts")
def sync_all_bank_accounts() -> Dict[str, Any]:
    """Fan out one sync task per active integrated account."""
    db = SessionLocal()
    try:
        account_ids = integrated_account_ids(db)
    finally:
        db.close()

    for account_id in account_ids:
        sync_bank_account.delay(account_id)

    logger.info(f"Queued bank sync for {len(account_ids)} accounts")
    return {"queued": len(account_ids)}
