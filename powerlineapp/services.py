# ==========================================================
# powerlineapp/services.py
# Entry points used by the surrounding service (HTTP layer,
# reporting). Plain dicts in, plain dicts out.
# ==========================================================
from django.db.models import Count, Q, Sum
from django.utils import timezone

from . import store
from .conf import get_setting
from .engine import placement, qualification, volume
from .exceptions import NoAvailableSlot
from .models import LEFT, RIGHT, Position, ZERO


# -------------------------------------------------------------
#  PLACE PROSPECT (spillover)
# -------------------------------------------------------------
def place_prospect(anchor_node_id=None, preferred_side=None, prospect_ref=None, occupant_id=None):
    if anchor_node_id is None:
        root = store.get_root()
        if root is None:
            raise NoAvailableSlot("PowerLine has no root position yet")
        anchor_node_id = root.node_id

    position = placement.place(
        anchor_node_id,
        preferred_side=preferred_side,
        occupant_id=occupant_id,
        prospect_ref=prospect_ref,
    )
    return {
        "node_id": position.node_id,
        "level": position.level,
        "side": position.side,
        "parent_node_id": position.parent_id,
        "position_number": position.position_number,
    }


# -------------------------------------------------------------
#  TREE FRAGMENT
# -------------------------------------------------------------
def get_subtree(node_id, max_depth=5):
    return store.subtree(node_id, max_depth=max_depth)


# -------------------------------------------------------------
#  VOLUME EVENT
# -------------------------------------------------------------
def record_volume_event(node_id, amount, source_ref=None):
    updated = volume.apply_volume(node_id, amount, source_ref=source_ref)
    rows = {p.node_id: p for p in Position.objects.filter(pk__in=[node_id] + updated)}
    return {
        "node_id": node_id,
        "personal_volume": rows[node_id].personal_volume,
        "updated": [rows[n].leg_summary() for n in updated],
    }


# -------------------------------------------------------------
#  QUALIFICATION
# -------------------------------------------------------------
def get_qualification_summary(node_id):
    return qualification.qualification_summary(node_id)


# -------------------------------------------------------------
#  POSITION OVERVIEW + TEAM STATS
# -------------------------------------------------------------
def team_stats(position: Position, side):
    totals = store.subtree_queryset(position, include_self=False, side=side).aggregate(
        count=Count("node_id"),
        volume=Sum("personal_volume"),
        active_count=Count(
            "node_id",
            filter=Q(occupant_id__isnull=False, occupant_active=True) & ~Q(occupant_id=""),
        ),
    )
    return {
        "count": totals["count"] or 0,
        "volume": totals["volume"] or ZERO,
        "active_count": totals["active_count"] or 0,
    }


def get_position_overview(node_id):
    position = store.get_position(node_id)
    return {
        "position": {
            "node_id": position.node_id,
            "level": position.level,
            "position_number": position.position_number,
            "side": position.side,
            "occupant_id": position.occupant_id,
        },
        "volume": {
            "personal_volume": position.personal_volume,
            "left_leg_volume": position.left_leg_volume,
            "right_leg_volume": position.right_leg_volume,
            "total_group_volume": position.total_group_volume,
            "lesser_leg_volume": position.lesser_leg_volume,
        },
        "performance": {
            "subtree_size": position.subtree_size,
            "cycles_completed": position.cycles_completed,
            "balance_ratio": position.balance_ratio,
        },
        "team_stats": {
            "left_team": team_stats(position, LEFT),
            "right_team": team_stats(position, RIGHT),
        },
        "binary_qualification": qualification.qualification_summary(node_id),
    }


# -------------------------------------------------------------
#  HIERARCHY (upline / downline)
# -------------------------------------------------------------
def _member_row(position: Position):
    return {
        "node_id": position.node_id,
        "level": position.level,
        "side": position.side,
        "occupant_id": position.occupant_id,
        "is_active": bool(position.occupant_id) and position.occupant_active,
        "personal_volume": position.personal_volume,
        "team_size": position.subtree_size,
    }


def get_hierarchy(node_id, levels=5, direction="down"):
    if direction not in ("down", "up", "both"):
        raise ValueError("direction must be 'down', 'up' or 'both'")
    levels = int(levels)
    position = store.get_position(node_id)

    hierarchy = {}
    if direction in ("down", "both"):
        hierarchy["downline"] = [
            _member_row(p) for p in store.downline(node_id, max_depth=levels)
        ]
    if direction in ("up", "both"):
        chain = store.ancestor_chain(position)[:levels]
        hierarchy["upline"] = [_member_row(a) for a, _ in chain if not a.is_vacant]

    return {
        "position": {
            "node_id": position.node_id,
            "level": position.level,
            "position_number": position.position_number,
        },
        "hierarchy": hierarchy,
        "timestamp": timezone.now(),
    }


# -------------------------------------------------------------
#  SPILLOVER OPPORTUNITIES
# -------------------------------------------------------------
def list_spillover_opportunities(limit=20):
    threshold = get_setting("BALANCE_ALERT_THRESHOLD")
    open_positions = (
        Position.objects.filter(Q(left_child__isnull=True) | Q(right_child__isnull=True))
        .order_by("position_number")[: int(limit)]
    )
    return [
        {
            "node_id": p.node_id,
            "level": p.level,
            "side": p.side,
            "total_group_volume": p.total_group_volume,
            "needs_balancing": abs(p.left_leg_volume - p.right_leg_volume) > threshold,
            "open_slots": {"left": not p.has_left(), "right": not p.has_right()},
        }
        for p in open_positions
    ]


# -------------------------------------------------------------
#  VACANCY
# -------------------------------------------------------------
def enroll_occupant(node_id, occupant_id):
    position = placement.fill_vacancy(node_id, occupant_id)
    return {
        "node_id": position.node_id,
        "occupant_id": position.occupant_id,
        "cycles_completed": position.cycles_completed,
    }
