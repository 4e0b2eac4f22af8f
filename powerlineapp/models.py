from decimal import Decimal

from django.db import models
from django.utils import timezone

LEFT = "L"
RIGHT = "R"
SIDE_CHOICES = [(LEFT, "Left"), (RIGHT, "Right")]

ZERO = Decimal("0.00")


def volume(v) -> Decimal:
    return Decimal(str(v if v is not None else 0)).quantize(Decimal("0.01"))


# ==========================================================
# POSITION COUNTER (global, strictly increasing)
# ==========================================================
class PositionCounter(models.Model):
    """
    Atomic counter for position numbers.
    Always incremented under select_for_update inside the placement
    transaction, so a rolled back placement never leaks a number.
    """
    name = models.CharField(max_length=50, unique=True)
    last = models.PositiveBigIntegerField(default=0)

    def __str__(self):
        return f"{self.name}:{self.last}"


# ==========================================================
# POSITION (POWERLINE TREE NODE)
# ==========================================================
class Position(models.Model):
    PLACEMENT_METHODS = [
        ("spillover", "Spillover"),
        ("root", "Root"),
    ]

    node_id = models.CharField(max_length=300, primary_key=True)
    path = models.CharField(max_length=255, unique=True, blank=True)
    level = models.PositiveIntegerField(default=0)
    position_number = models.PositiveBigIntegerField(unique=True)
    side = models.CharField(max_length=1, choices=SIDE_CHOICES, null=True, blank=True)

    # -------------------------
    # TREE SHAPE (placement engine only)
    # -------------------------
    parent = models.ForeignKey(
        "self", null=True, blank=True,
        related_name="children", on_delete=models.PROTECT,
    )
    left_child = models.OneToOneField(
        "self", null=True, blank=True,
        related_name="+", on_delete=models.PROTECT,
    )
    right_child = models.OneToOneField(
        "self", null=True, blank=True,
        related_name="+", on_delete=models.PROTECT,
    )

    # -------------------------
    # OCCUPANT
    # -------------------------
    occupant_id = models.CharField(max_length=100, null=True, blank=True, db_index=True)
    occupant_active = models.BooleanField(default=True)
    prospect_ref = models.CharField(max_length=100, null=True, blank=True)
    placement_method = models.CharField(max_length=20, choices=PLACEMENT_METHODS, default="spillover")
    placed_at = models.DateTimeField(null=True, blank=True)

    # -------------------------
    # VOLUME
    # -------------------------
    personal_volume = models.DecimalField(max_digits=16, decimal_places=2, default=ZERO)
    left_leg_volume = models.DecimalField(max_digits=16, decimal_places=2, default=ZERO)
    right_leg_volume = models.DecimalField(max_digits=16, decimal_places=2, default=ZERO)
    # volume consumed from EACH leg by cycling
    matched_volume_consumed = models.DecimalField(max_digits=16, decimal_places=2, default=ZERO)

    subtree_size = models.PositiveIntegerField(default=0)
    cycles_completed = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["position_number"]
        constraints = [
            models.UniqueConstraint(fields=["parent", "side"], name="uniq_position_parent_side"),
        ]
        indexes = [
            models.Index(fields=["level", "position_number"]),
        ]

    def __str__(self):
        return f"{self.node_id} (#{self.position_number}, level {self.level})"

    # -------------------------
    # DERIVED VOLUME
    # -------------------------
    @property
    def total_group_volume(self) -> Decimal:
        return self.personal_volume + self.left_leg_volume + self.right_leg_volume

    @property
    def lesser_leg_volume(self) -> Decimal:
        return min(self.left_leg_volume, self.right_leg_volume)

    @property
    def greater_leg_volume(self) -> Decimal:
        return max(self.left_leg_volume, self.right_leg_volume)

    @property
    def balance_ratio(self) -> Decimal:
        greater = self.greater_leg_volume
        if greater <= 0:
            return Decimal("0")
        return (self.lesser_leg_volume / greater).quantize(Decimal("0.0001"))

    # -------------------------
    # HELPERS
    # -------------------------
    @property
    def is_root(self):
        return self.parent_id is None

    @property
    def is_vacant(self):
        return not self.occupant_id

    def has_left(self):
        return self.left_child_id is not None

    def has_right(self):
        return self.right_child_id is not None

    def open_sides(self):
        sides = []
        if not self.has_left():
            sides.append(LEFT)
        if not self.has_right():
            sides.append(RIGHT)
        return sides

    def leg_summary(self):
        return {
            "node_id": self.node_id,
            "personal_volume": self.personal_volume,
            "left_leg_volume": self.left_leg_volume,
            "right_leg_volume": self.right_leg_volume,
            "total_group_volume": self.total_group_volume,
            "lesser_leg_volume": self.lesser_leg_volume,
            "cycles_completed": self.cycles_completed,
        }


# ==========================================================
# VOLUME EVENT (append-only, duplicate-safe by source_ref)
# ==========================================================
class VolumeEvent(models.Model):
    position = models.ForeignKey(Position, on_delete=models.PROTECT, related_name="volume_events")
    amount = models.DecimalField(max_digits=16, decimal_places=2)
    source_ref = models.CharField(max_length=100, unique=True, null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"{self.position_id} +{self.amount}"


# ==========================================================
# COMMISSION EVENT (append-only ledger)
# ==========================================================
class CommissionEvent(models.Model):
    BINARY_CYCLE = "binary_cycle"
    COMMISSION_TYPES = [
        (BINARY_CYCLE, "Binary Cycle"),
    ]

    event_id = models.CharField(max_length=320, unique=True)
    position = models.ForeignKey(Position, on_delete=models.PROTECT, related_name="commission_events")
    recipient_id = models.CharField(max_length=100, db_index=True)
    commission_type = models.CharField(max_length=30, choices=COMMISSION_TYPES, default=BINARY_CYCLE)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    cycle_number = models.PositiveIntegerField()
    matched_volume = models.DecimalField(max_digits=16, decimal_places=2)
    left_leg_after = models.DecimalField(max_digits=16, decimal_places=2, default=ZERO)
    right_leg_after = models.DecimalField(max_digits=16, decimal_places=2, default=ZERO)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["recipient_id", "created_at"]),
            models.Index(fields=["position", "created_at"]),
        ]

    def __str__(self):
        return f"{self.event_id} - {self.recipient_id} - {self.amount}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Commission events are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Commission events are append-only")


# ==========================================================
# SWEEP LOCK (one qualification sweep at a time)
# ==========================================================
class SweepLock(models.Model):
    run_key = models.CharField(max_length=100, unique=True)
    is_running = models.BooleanField(default=False)
    started_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    def __str__(self):
        return f"{self.run_key} running={self.is_running}"
