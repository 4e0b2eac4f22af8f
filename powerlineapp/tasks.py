# powerlineapp/tasks.py
# ----------------------------------------------------------
# ✅ Celery tasks: volume ingestion, nightly sweep, audit
# ----------------------------------------------------------
import logging

from celery import shared_task

from powerlineapp.audit import audit_tree
from powerlineapp.engine import qualification, volume
from powerlineapp.engine.sweep_lock import run_with_lock
from powerlineapp.exceptions import PositionNotFound

logger = logging.getLogger(__name__)

SWEEP_KEY = "qualification_sweep"


@shared_task
def record_volume_event_task(node_id, amount, source_ref=None):
    """
    Volume ingestion off the request path. Unknown positions are logged
    and dropped; retrying would not make them appear.
    """
    try:
        return volume.apply_volume(node_id, amount, source_ref=source_ref)
    except PositionNotFound:
        logger.error("Volume event %s for unknown position %s dropped", source_ref, node_id)
        return []


@shared_task
def run_qualification_sweep_task():
    result = run_with_lock(SWEEP_KEY, qualification.run_sweep)
    if result is None:
        return {"skipped": True}
    return {
        "skipped": False,
        "positions_evaluated": result["positions_evaluated"],
        "cycles_emitted": result["cycles_emitted"],
        "amount": str(result["amount"]),
    }


@shared_task
def audit_tree_task():
    issues = audit_tree()
    if issues:
        logger.error("PowerLine audit found %s issue(s)", len(issues))
    return issues
