"""
Celery application for scheduled bank syncs.

Worker:  celery -A celery_app worker
Beat:    celery -A celery_app beat
"""
from datetime import timedelta

from celery import Celery

from bankfeeds.config import get_settings
from bankfeeds.integrations.registry import validate_registry

settings = get_settings()

celery_app = Celery(
    "bankfeed_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["tasks.bank_sync_tasks"],
)


def sync_schedule(interval_minutes: int) -> dict:
    """Beat entry for the full sync fan-out; 0 or less disables it."""
    if interval_minutes <= 0:
        return {}

    # Counted from beat start, not aligned to the wall clock.
    return {
        "bank-sync-all-accounts": {
            "task": "tasks.bank_sync_tasks.sync_all_bank_accounts",
            "schedule": timedelta(minutes=interval_minutes),
        }
    }


# Fail worker start, not the first task, if a provider has no adapter.
validate_registry()

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # One account sync: auth + one statement call, bounded by HTTP timeouts.
    task_time_limit=settings.sync_task_time_limit_seconds,
    task_soft_time_limit=max(1, settings.sync_task_time_limit_seconds - 60),
    worker_prefetch_multiplier=1,
    beat_schedule=sync_schedule(settings.bank_sync_interval_minutes),
)


if __name__ == "__main__":
    celery_app.start()
