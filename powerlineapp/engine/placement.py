# ==========================================================
# powerlineapp/engine/placement.py
# SPILLOVER PLACEMENT ENGINE
# ==========================================================
import logging

from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from powerlineapp import store
from powerlineapp.conf import get_setting
from powerlineapp.engine import qualification
from powerlineapp.exceptions import (
    ConcurrentPlacementConflict,
    NoAvailableSlot,
    PositionOccupied,
    RootAlreadyExists,
)
from powerlineapp.models import LEFT, RIGHT, Position
from powerlineapp.signals import position_placed

logger = logging.getLogger(__name__)

_CHILD_FIELD = {LEFT: "left_child", RIGHT: "right_child"}


# ----------------------------------------------------------
# ROOT
# ----------------------------------------------------------
@transaction.atomic
def create_root(occupant_id=None) -> Position:
    if Position.objects.filter(parent__isnull=True).exists():
        raise RootAlreadyExists("PowerLine already has a root position")

    now = timezone.now()
    try:
        with transaction.atomic():
            root = Position.objects.create(
                node_id=get_setting("ROOT_NODE_ID"),
                path="",
                level=0,
                position_number=store.next_position_number(),
                side=None,
                occupant_id=occupant_id,
                placed_at=now if occupant_id else None,
                placement_method="root",
            )
    except IntegrityError:
        raise RootAlreadyExists("PowerLine already has a root position") from None

    logger.info("Root position %s created", root.node_id)
    transaction.on_commit(lambda: position_placed.send(sender=Position, position=root))
    return root


# ----------------------------------------------------------
# 1️⃣ FIND NEXT OPEN SLOT (earliest created first)
# ----------------------------------------------------------
def _find_open_slot(anchor: Position):
    qs = store.subtree_queryset(anchor).filter(
        Q(left_child__isnull=True) | Q(right_child__isnull=True)
    )
    max_depth = get_setting("MAX_DEPTH")
    if max_depth is not None:
        qs = qs.filter(level__lt=max_depth)
    return qs.order_by("position_number").first()


# ----------------------------------------------------------
# 2️⃣ SIDE CHOICE
# ----------------------------------------------------------
def _choose_side(parent: Position, preferred_side=None) -> str:
    open_sides = parent.open_sides()
    if preferred_side in open_sides:
        return preferred_side
    if len(open_sides) == 1:
        return open_sides[0]

    # both open: fill the weaker leg, left on a tie
    if parent.left_leg_volume > parent.right_leg_volume:
        return RIGHT
    return LEFT


# ----------------------------------------------------------
# 3️⃣ CLAIM (one savepoint: counter + insert + conditional pointer)
# ----------------------------------------------------------
def _claim_slot(parent: Position, side: str, occupant_id=None, prospect_ref=None) -> Position:
    field = _CHILD_FIELD[side]
    try:
        with transaction.atomic():
            # counter row stays locked until this savepoint ends
            number = store.next_position_number()
            max_positions = get_setting("MAX_POSITIONS")
            if max_positions is not None and number > max_positions:
                raise NoAvailableSlot(f"PowerLine is full ({max_positions} positions)")

            child = Position.objects.create(
                node_id=store.child_node_id(parent.node_id, side),
                path=parent.path + side,
                level=parent.level + 1,
                position_number=number,
                side=side,
                parent_id=parent.node_id,
                occupant_id=occupant_id,
                prospect_ref=prospect_ref,
                placed_at=timezone.now() if occupant_id else None,
            )

            claimed = Position.objects.filter(
                pk=parent.pk, **{f"{field}__isnull": True}
            ).update(**{field: child})
            if not claimed:
                raise ConcurrentPlacementConflict(f"{parent.node_id}/{side} taken before pointer update")

            if occupant_id:
                Position.objects.filter(path__in=store.ancestor_paths(child.path)).update(
                    subtree_size=F("subtree_size") + 1
                )
    except IntegrityError:
        raise ConcurrentPlacementConflict(f"{parent.node_id}/{side} already exists") from None
    return child


# ----------------------------------------------------------
# PLACE (spillover with bounded retry)
# ----------------------------------------------------------
def place(anchor_node_id, preferred_side=None, occupant_id=None, prospect_ref=None) -> Position:
    """
    Place a new position under the first node of the anchor's subtree (in
    creation order) that still has an open child slot.

    A slot raced away by another worker is not an error for the caller:
    the scan is repeated up to PLACEMENT_MAX_ATTEMPTS times.
    """
    preferred_side = store.normalize_side(preferred_side)
    anchor = store.get_position(anchor_node_id)

    max_attempts = max(int(get_setting("PLACEMENT_MAX_ATTEMPTS")), 1)

    for attempt in range(1, max_attempts + 1):
        parent = _find_open_slot(anchor)
        if parent is None:
            raise NoAvailableSlot(f"No open slot under {anchor.node_id}")

        side = _choose_side(parent, preferred_side)
        try:
            child = _claim_slot(parent, side, occupant_id=occupant_id, prospect_ref=prospect_ref)
        except ConcurrentPlacementConflict as exc:
            logger.warning(
                "Placement conflict on %s/%s (attempt %s/%s): %s",
                parent.node_id, side, attempt, max_attempts, exc,
            )
            continue

        logger.info(
            "Placed %s under %s on %s (#%s)",
            child.node_id, parent.node_id, side, child.position_number,
        )
        transaction.on_commit(lambda: position_placed.send(sender=Position, position=child))
        return child

    raise ConcurrentPlacementConflict(
        f"Could not claim a slot under {anchor.node_id} after {max_attempts} attempts",
        attempts=max_attempts,
    )


# ----------------------------------------------------------
# FILL A VACANT POSITION
# ----------------------------------------------------------
def fill_vacancy(node_id, occupant_id) -> Position:
    if not occupant_id:
        raise ValueError("occupant_id is required")

    with transaction.atomic():
        position = store.get_position(node_id, for_update=True)
        if not position.is_vacant:
            raise PositionOccupied(f"{node_id} is already occupied by {position.occupant_id}")

        position.occupant_id = occupant_id
        position.occupant_active = True
        position.placed_at = timezone.now()
        position.save(update_fields=["occupant_id", "occupant_active", "placed_at", "updated_at"])

        Position.objects.filter(path__in=store.ancestor_paths(position.path)).update(
            subtree_size=F("subtree_size") + 1
        )

    logger.info("Vacancy %s filled by %s", node_id, occupant_id)
    # volume may have been banked while the seat was empty
    qualification.evaluate(node_id)
    position.refresh_from_db()
    return position
