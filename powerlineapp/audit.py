# ==========================================================
# powerlineapp/audit.py
# Read-only tree audit. Reports problems, never repairs them.
# ==========================================================
import logging
from decimal import Decimal

from django.db.models import Count, Max

from . import store
from .models import LEFT, RIGHT, CommissionEvent, Position, PositionCounter

logger = logging.getLogger(__name__)


def audit_tree():
    """
    Check every stored invariant of the PowerLine tree.
    Returns a list of human readable issues (empty when healthy).
    """
    issues = []
    positions = {p.node_id: p for p in Position.objects.all()}
    if not positions:
        return issues

    by_path = {p.path: p for p in positions.values()}
    roots = [p for p in positions.values() if p.parent_id is None]
    if len(roots) != 1:
        issues.append(f"expected exactly one root, found {len(roots)}")

    # -----------------------------
    # 1️⃣ Shape: path / parent / level / child pointers
    # -----------------------------
    children = {node_id: {} for node_id in positions}
    for p in positions.values():
        if p.level != len(p.path):
            issues.append(f"{p.node_id}: level {p.level} != path length {len(p.path)}")
        if p.parent_id is None:
            if p.path:
                issues.append(f"{p.node_id}: root has non-empty path {p.path!r}")
            continue

        parent = positions.get(p.parent_id)
        if parent is None:
            issues.append(f"{p.node_id}: parent {p.parent_id} missing")
            continue
        if by_path.get(p.path[:-1]) is not parent:
            issues.append(f"{p.node_id}: path {p.path!r} does not extend parent path {parent.path!r}")
        if p.side != p.path[-1:]:
            issues.append(f"{p.node_id}: side {p.side!r} != last path marker")
        if p.node_id != store.child_node_id(parent.node_id, p.side or ""):
            issues.append(f"{p.node_id}: node id not derived from parent {parent.node_id}")
        if p.position_number <= parent.position_number:
            issues.append(f"{p.node_id}: position number not after parent's")
        children[parent.node_id][p.side] = p

    for p in positions.values():
        for side, pointer in ((LEFT, p.left_child_id), (RIGHT, p.right_child_id)):
            actual = children[p.node_id].get(side)
            actual_id = actual.node_id if actual else None
            if pointer != actual_id:
                issues.append(f"{p.node_id}: {side} pointer {pointer!r} but child is {actual_id!r}")

    # -----------------------------
    # 2️⃣ Counter never behind issued numbers
    # -----------------------------
    highest = Position.objects.aggregate(m=Max("position_number"))["m"] or 0
    counter = PositionCounter.objects.filter(name=store.POSITION_COUNTER).first()
    if counter is None or counter.last < highest:
        issues.append(f"position counter behind highest issued number {highest}")

    # -----------------------------
    # 3️⃣ Volumes and subtree sizes (bottom-up)
    # -----------------------------
    group_volume = {}
    occupied_below = {}
    for p in sorted(positions.values(), key=lambda x: x.level, reverse=True):
        legs = {}
        size = 0
        for side in (LEFT, RIGHT):
            child = children[p.node_id].get(side)
            legs[side] = group_volume.get(child.node_id, Decimal("0")) if child else Decimal("0")
            if child:
                size += occupied_below.get(child.node_id, 0) + (0 if child.is_vacant else 1)
        group_volume[p.node_id] = p.personal_volume + legs[LEFT] + legs[RIGHT]
        occupied_below[p.node_id] = size

        consumed = p.matched_volume_consumed
        if p.left_leg_volume + consumed != legs[LEFT]:
            issues.append(
                f"{p.node_id}: left leg {p.left_leg_volume} + consumed {consumed} != descendants {legs[LEFT]}"
            )
        if p.right_leg_volume + consumed != legs[RIGHT]:
            issues.append(
                f"{p.node_id}: right leg {p.right_leg_volume} + consumed {consumed} != descendants {legs[RIGHT]}"
            )
        if p.subtree_size != size:
            issues.append(f"{p.node_id}: subtree size {p.subtree_size} != occupied descendants {size}")
        if min(p.left_leg_volume, p.right_leg_volume, p.personal_volume) < 0:
            issues.append(f"{p.node_id}: negative volume")

    # -----------------------------
    # 4️⃣ Cycles vs ledger
    # -----------------------------
    emitted = dict(
        CommissionEvent.objects.filter(commission_type=CommissionEvent.BINARY_CYCLE)
        .order_by()
        .values_list("position_id")
        .annotate(c=Count("id"))
    )
    for p in positions.values():
        if p.cycles_completed != emitted.get(p.node_id, 0):
            issues.append(
                f"{p.node_id}: cycles_completed {p.cycles_completed} != ledger events {emitted.get(p.node_id, 0)}"
            )

    for issue in issues:
        logger.error("Audit: %s", issue)
    return issues
