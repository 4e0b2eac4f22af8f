# ==========================================================
# powerlineapp/store.py
# TreeStore: lookups, path range scans, ancestor chain
# ==========================================================
import logging

from django.db import transaction
from django.db.models import Q

from .exceptions import InvalidPath, PositionNotFound, TreeIntegrityError
from .models import LEFT, RIGHT, Position, PositionCounter

logger = logging.getLogger(__name__)

POSITION_COUNTER = "position_number"

# Markers are only "L" and "R", so every descendant path of P sorts inside
# [P + "L", P + "S"). "M" closes the left leg, "S" closes the right leg.
_LEG_BOUNDS = {
    LEFT: (LEFT, "M"),
    RIGHT: (RIGHT, "S"),
}


def validate_path(path: str) -> str:
    if path is None:
        raise InvalidPath("Path must not be None")
    path = str(path).upper()
    if any(marker not in (LEFT, RIGHT) for marker in path):
        raise InvalidPath(f"Path {path!r} may only contain 'L' and 'R' markers")
    return path


def normalize_side(side):
    """
    Accepts L/R or left/right (any case). None stays None.
    """
    if side is None:
        return None
    value = str(side).strip().lower()
    if value in ("l", "left"):
        return LEFT
    if value in ("r", "right"):
        return RIGHT
    raise InvalidPath(f"Side must be 'L' or 'R', got {side!r}")


def child_node_id(parent_node_id: str, side: str) -> str:
    return f"{parent_node_id}{side}"


def ancestor_paths(path: str):
    """
    Paths of every ancestor, root first: "LLR" -> ["", "L", "LL"].
    """
    return [path[:i] for i in range(len(path))]


# ----------------------------------------------------------
# Point lookups
# ----------------------------------------------------------
def get_position(node_id, *, for_update=False) -> Position:
    qs = Position.objects.all()
    if for_update:
        qs = qs.select_for_update()
    try:
        return qs.get(pk=node_id)
    except Position.DoesNotExist:
        raise PositionNotFound(node_id) from None


def get_by_path(path) -> Position:
    path = validate_path(path)
    try:
        return Position.objects.get(path=path)
    except Position.DoesNotExist:
        raise PositionNotFound(path) from None


def get_root():
    return Position.objects.filter(parent__isnull=True).first()


# ----------------------------------------------------------
# Range scans
# ----------------------------------------------------------
def descendant_filter(path: str, side=None) -> Q:
    """
    Q object matching strict descendants of `path` (optionally one leg only)
    with an indexed range on the path column.
    """
    if side is None:
        return Q(path__gte=path + LEFT, path__lt=path + "S")
    lower, upper = _LEG_BOUNDS[side]
    return Q(path__gte=path + lower, path__lt=path + upper)


def subtree_queryset(position: Position, *, include_self=True, side=None, max_depth=None):
    condition = descendant_filter(position.path, side)
    if include_self and side is None:
        condition |= Q(pk=position.pk)
    qs = Position.objects.filter(condition)
    if max_depth is not None:
        qs = qs.filter(level__lte=position.level + max_depth)
    return qs


def downline(node_id, side=None, max_depth=None):
    position = get_position(node_id)
    return list(
        subtree_queryset(position, include_self=False, side=side, max_depth=max_depth)
        .order_by("level", "position_number")
    )


def upline(node_id):
    """Ancestors nearest first (parent ... root)."""
    position = get_position(node_id)
    return [ancestor for ancestor, _ in ancestor_chain(position)]


def ancestor_chain(position: Position):
    """
    Walk from `position` to the root. Returns [(ancestor, leg), ...] nearest
    first, where `leg` is the side of the ancestor through which `position`
    descends. The ancestors are fetched in one query by their paths and then
    checked against the parent pointers; any mismatch is fatal.
    """
    path = position.path
    if not path:
        return []

    by_path = {a.path: a for a in Position.objects.filter(path__in=ancestor_paths(path))}
    if len(by_path) != position.level:
        _integrity_failure(
            f"{position.node_id}: expected {position.level} ancestors on path {path!r}, found {len(by_path)}"
        )

    chain = []
    expected_parent = position.parent_id
    for depth in range(len(path) - 1, -1, -1):
        ancestor = by_path[path[:depth]]
        if ancestor.node_id != expected_parent:
            _integrity_failure(
                f"{position.node_id}: parent pointer {expected_parent!r} does not match "
                f"path ancestor {ancestor.node_id!r}"
            )
        chain.append((ancestor, path[depth]))
        expected_parent = ancestor.parent_id

    if expected_parent is not None:
        _integrity_failure(f"{position.node_id}: chain does not end at the root")
    return chain


def _integrity_failure(message):
    logger.error("Tree integrity failure: %s", message)
    raise TreeIntegrityError(message)


# ----------------------------------------------------------
# Bounded breadth-first fragment
# ----------------------------------------------------------
def subtree(node_id, max_depth=5):
    """
    Returns {"node": {...}, "children": [...]} for `node_id` and at most
    `max_depth` levels below it. Children are listed left before right.
    """
    if max_depth is None or max_depth < 0:
        raise ValueError("max_depth must be >= 0")
    position = get_position(node_id)
    rows = subtree_queryset(position, max_depth=max_depth).order_by("level", "position_number")

    fragments = {}
    for row in rows:
        fragments[row.path] = {"node": node_payload(row), "children": []}
        if row.pk != position.pk:
            parent_fragment = fragments.get(row.path[:-1])
            if parent_fragment is None:
                _integrity_failure(f"{row.node_id}: parent missing from subtree scan")
            parent_fragment["children"].append(fragments[row.path])

    for fragment in fragments.values():
        fragment["children"].sort(key=lambda child: child["node"]["side"])
    return fragments[position.path]


def node_payload(position: Position):
    return {
        "node_id": position.node_id,
        "path": position.path,
        "level": position.level,
        "side": position.side,
        "position_number": position.position_number,
        "parent_node_id": position.parent_id,
        "occupant_id": position.occupant_id,
        "is_vacant": position.is_vacant,
        "personal_volume": position.personal_volume,
        "left_leg_volume": position.left_leg_volume,
        "right_leg_volume": position.right_leg_volume,
        "total_group_volume": position.total_group_volume,
        "lesser_leg_volume": position.lesser_leg_volume,
        "subtree_size": position.subtree_size,
        "cycles_completed": position.cycles_completed,
    }


# ----------------------------------------------------------
# Global position number sequence
# ----------------------------------------------------------
def next_position_number() -> int:
    with transaction.atomic():
        counter, _ = PositionCounter.objects.select_for_update().get_or_create(name=POSITION_COUNTER)
        counter.last += 1
        counter.save(update_fields=["last"])
        return counter.last
