# ==========================================================
# powerlineapp/admin.py
# ==========================================================
from django.contrib import admin

from .models import CommissionEvent, Position, PositionCounter, SweepLock, VolumeEvent


# ==========================================================
# ✅ POSITION ADMIN (engines own every tree/volume field)
# ==========================================================
@admin.register(Position)
class PositionAdmin(admin.ModelAdmin):
    list_display = (
        "node_id",
        "position_number",
        "level",
        "side",
        "occupant_id",
        "personal_volume",
        "left_leg_volume",
        "right_leg_volume",
        "cycles_completed",
    )
    search_fields = ("node_id", "occupant_id", "prospect_ref")
    list_filter = ("level", "side", "occupant_active")
    ordering = ("position_number",)
    readonly_fields = (
        "node_id", "path", "level", "position_number", "side",
        "parent", "left_child", "right_child",
        "personal_volume", "left_leg_volume", "right_leg_volume",
        "matched_volume_consumed", "subtree_size", "cycles_completed",
        "created_at", "updated_at",
    )

    def has_delete_permission(self, request, obj=None):
        return False


# ==========================================================
# ✅ LEDGERS (append-only, read-only in admin)
# ==========================================================
class ReadOnlyAdmin(admin.ModelAdmin):
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(CommissionEvent)
class CommissionEventAdmin(ReadOnlyAdmin):
    list_display = ["event_id", "recipient_id", "commission_type", "amount", "cycle_number", "created_at"]
    list_filter = ["commission_type"]
    search_fields = ["event_id", "recipient_id"]


@admin.register(VolumeEvent)
class VolumeEventAdmin(ReadOnlyAdmin):
    list_display = ["position", "amount", "source_ref", "created_at"]
    search_fields = ["position__node_id", "source_ref"]


@admin.register(PositionCounter)
class PositionCounterAdmin(ReadOnlyAdmin):
    list_display = ["name", "last"]


@admin.register(SweepLock)
class SweepLockAdmin(admin.ModelAdmin):
    list_display = ["run_key", "is_running", "started_at", "finished_at"]
