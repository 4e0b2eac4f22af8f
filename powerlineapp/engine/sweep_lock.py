# powerlineapp/engine/sweep_lock.py
import logging
from datetime import timedelta

from django.db import transaction
from django.utils import timezone

from powerlineapp.conf import get_setting
from powerlineapp.models import SweepLock

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(minutes=10)


def run_with_lock(run_key, engine_func, cooldown_minutes=None):
    """
    Global sweep lock.

    - Prevents parallel execution using is_running
    - Auto-releases a lock held longer than STALE_AFTER
    - Skips a rerun inside the cooldown after the last finish

    Returns engine_func()'s result, or None when skipped.
    """
    if cooldown_minutes is None:
        cooldown_minutes = get_setting("SWEEP_COOLDOWN_MINUTES")
    now = timezone.now()

    with transaction.atomic():
        lock, _ = SweepLock.objects.select_for_update().get_or_create(run_key=run_key)

        # -----------------------------
        # Already running check
        # -----------------------------
        if lock.is_running:
            if lock.started_at and now - lock.started_at > STALE_AFTER:
                logger.warning("Releasing stale sweep lock %s (started %s)", run_key, lock.started_at)
                lock.is_running = False
                lock.started_at = None
                lock.save(update_fields=["is_running", "started_at"])
            else:
                logger.info("Sweep %s already running, skipped", run_key)
                return None

        # -----------------------------
        # Cooldown
        # -----------------------------
        if lock.finished_at and cooldown_minutes and now - lock.finished_at < timedelta(minutes=cooldown_minutes):
            logger.info("Sweep %s cooldown active (%sm), skipped", run_key, cooldown_minutes)
            return None

        # -----------------------------
        # Acquire
        # -----------------------------
        lock.is_running = True
        lock.started_at = now
        lock.save(update_fields=["is_running", "started_at"])

    try:
        result = engine_func()

        with transaction.atomic():
            fresh_lock = SweepLock.objects.select_for_update().get(run_key=run_key)
            fresh_lock.is_running = False
            fresh_lock.started_at = None
            fresh_lock.finished_at = timezone.now()
            fresh_lock.save(update_fields=["is_running", "started_at", "finished_at"])
        return result

    finally:
        # Always release, even on crash (finished_at untouched)
        with transaction.atomic():
            SweepLock.objects.filter(run_key=run_key, is_running=True).update(
                is_running=False, started_at=None
            )
