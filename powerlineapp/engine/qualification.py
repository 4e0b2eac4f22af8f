# ==========================================================
# powerlineapp/engine/qualification.py
# BINARY QUALIFICATION / CYCLING ENGINE
# ==========================================================
import logging
from datetime import timedelta
from decimal import Decimal

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from powerlineapp import ledger, store
from powerlineapp.conf import commission_per_cycle, cycle_volume, get_setting, qualification_window
from powerlineapp.exceptions import QualificationReplay
from powerlineapp.models import CommissionEvent, Position
from powerlineapp.signals import commission_emitted

logger = logging.getLogger(__name__)


def window_start(now=None):
    """
    Start of the current evaluation window, or None when the cap applies
    to a single evaluation.
    """
    window = qualification_window()
    if window is None:
        return None
    now = timezone.localtime(now or timezone.now())
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window == "weekly":
        start -= timedelta(days=start.weekday())
    return start


def cycles_in_window(position: Position, now=None) -> int:
    start = window_start(now)
    if start is None:
        return 0
    return CommissionEvent.objects.filter(
        position=position,
        commission_type=CommissionEvent.BINARY_CYCLE,
        created_at__gte=start,
    ).count()


def _cycles_to_grant(position: Position, unit: Decimal) -> int:
    available = int(position.lesser_leg_volume // unit)
    if available <= 0:
        return 0
    cap = get_setting("MAX_CYCLES_PER_WINDOW")
    if cap is None:
        return available
    remaining = max(int(cap) - cycles_in_window(position), 0)
    if remaining < available:
        logger.info(
            "%s: %s cycles available, cap leaves %s this window; rest stays banked",
            position.node_id, available, remaining,
        )
    return min(available, remaining)


# ----------------------------------------------------------
# EVALUATE (read → compute → deduct → emit, one transaction)
# ----------------------------------------------------------
def evaluate(node_id):
    """
    Convert matched leg volume at `node_id` into commission events.

    The position row stays locked for the whole read-compute-deduct-emit
    sequence, so two concurrent evaluations can never both consume the
    same matched volume. Running it again on unchanged state emits nothing.
    """
    unit = cycle_volume()
    rate = commission_per_cycle()

    with transaction.atomic():
        position = store.get_position(node_id, for_update=True)
        if position.is_vacant:
            return []

        grant = _cycles_to_grant(position, unit)
        if grant <= 0:
            return []

        events = []
        left_after = position.left_leg_volume
        right_after = position.right_leg_volume
        for offset in range(1, grant + 1):
            cycle_number = position.cycles_completed + offset
            event_id = ledger.make_event_id(position.node_id, cycle_number)
            left_after -= unit
            right_after -= unit
            try:
                if ledger.has_event(event_id):
                    raise QualificationReplay(event_id)
                event = ledger.record(
                    position=position,
                    recipient_id=position.occupant_id,
                    amount=rate,
                    cycle_number=cycle_number,
                    matched_volume=unit,
                    left_leg_after=left_after,
                    right_leg_after=right_after,
                )
            except QualificationReplay as replay:
                logger.warning("%s: replay of %s ignored", position.node_id, replay.event_id)
                break
            events.append(event)

        if not events:
            return []

        consumed = unit * len(events)
        Position.objects.filter(pk=position.pk).update(
            left_leg_volume=F("left_leg_volume") - consumed,
            right_leg_volume=F("right_leg_volume") - consumed,
            matched_volume_consumed=F("matched_volume_consumed") + consumed,
            cycles_completed=F("cycles_completed") + len(events),
        )

        logger.info(
            "%s: %s cycle(s) completed, %s paid to %s",
            position.node_id, len(events), rate * len(events), position.occupant_id,
        )
        for event in events:
            transaction.on_commit(lambda event=event: commission_emitted.send(sender=CommissionEvent, event=event))
    return events


# ----------------------------------------------------------
# SUMMARY (read-only)
# ----------------------------------------------------------
def qualification_summary(node_id):
    position = store.get_position(node_id)
    unit = cycle_volume()
    lesser = position.lesser_leg_volume
    available = int(lesser // unit)
    return {
        "node_id": position.node_id,
        "lesser_leg_volume": lesser,
        "cycles_available": available,
        "next_cycle_gap_amount": unit - (lesser % unit),
        "projected_commission": commission_per_cycle() * available,
        "cycles_completed": position.cycles_completed,
    }


# ----------------------------------------------------------
# SWEEP (periodic conversion + recovery)
# ----------------------------------------------------------
def qualifying_positions():
    # min(left, right) >= C  <=>  both legs >= C
    unit = cycle_volume()
    return (
        Position.objects.filter(occupant_id__isnull=False)
        .exclude(occupant_id="")
        .filter(left_leg_volume__gte=unit, right_leg_volume__gte=unit)
        .order_by("-level", "position_number")
    )


def run_sweep():
    evaluated = 0
    emitted = 0
    amount = Decimal("0.00")
    for node_id in qualifying_positions().values_list("node_id", flat=True):
        events = evaluate(node_id)
        evaluated += 1
        emitted += len(events)
        amount += sum((e.amount for e in events), Decimal("0.00"))
    logger.info("Qualification sweep: %s positions evaluated, %s cycles, %s paid", evaluated, emitted, amount)
    return {"positions_evaluated": evaluated, "cycles_emitted": emitted, "amount": amount}
