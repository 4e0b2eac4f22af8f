# ==========================================================
# powerlineapp/engine/volume.py
# VOLUME PROPAGATION (leaf → root)
# ==========================================================
import logging
from decimal import Decimal, InvalidOperation

from django.db import IntegrityError, transaction
from django.db.models import F

from powerlineapp import store
from powerlineapp.engine import qualification
from powerlineapp.exceptions import NegativeVolume
from powerlineapp.models import LEFT, Position, VolumeEvent, volume

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _to_delta(amount) -> Decimal:
    try:
        delta = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f"Volume amount {amount!r} is not a number") from None
    if not delta.is_finite():
        raise ValueError(f"Volume amount {amount!r} is not a finite number")
    # sign is checked before any rounding: -0.004 is still negative
    if delta < 0:
        raise NegativeVolume(amount)
    if delta != delta.quantize(CENT):
        raise ValueError(f"Volume amount {amount!r} has more than 2 decimal places")
    return volume(delta)


def apply_volume(node_id, delta, source_ref=None, *, qualify=True):
    """
    Add `delta` to the node's personal volume and to the matching leg of
    every ancestor, then run qualification for each touched ancestor.

    Returns the touched ancestor node ids, parent first, root last.
    A repeated `source_ref` is ignored and returns [].
    """
    delta = _to_delta(delta)

    with transaction.atomic():
        position = store.get_position(node_id)
        if delta == 0:
            return []

        if source_ref is not None:
            try:
                with transaction.atomic():
                    VolumeEvent.objects.create(position=position, amount=delta, source_ref=source_ref)
            except IntegrityError:
                logger.info("Volume event %s already applied, skipped", source_ref)
                return []
        else:
            VolumeEvent.objects.create(position=position, amount=delta)

        Position.objects.filter(pk=position.pk).update(
            personal_volume=F("personal_volume") + delta
        )

        chain = store.ancestor_chain(position)
        left_ids = [ancestor.pk for ancestor, leg in chain if leg == LEFT]
        right_ids = [ancestor.pk for ancestor, leg in chain if leg != LEFT]
        if left_ids:
            Position.objects.filter(pk__in=left_ids).update(left_leg_volume=F("left_leg_volume") + delta)
        if right_ids:
            Position.objects.filter(pk__in=right_ids).update(right_leg_volume=F("right_leg_volume") + delta)

    updated = [ancestor.node_id for ancestor, _ in chain]
    logger.debug("Applied %s volume at %s, %s ancestors updated", delta, node_id, len(updated))

    if qualify:
        for ancestor_id in updated:
            qualification.evaluate(ancestor_id)
    return updated
