from django.contrib import admin
from simple_history.admin import SimpleHistoryAdmin

from inventory.models import InventoryUnit, UnitMovement


class UnitMovementInline(admin.TabularInline):
    model = UnitMovement
    extra = 0
    can_delete = False
    readonly_fields = ("kind", "from_state", "to_state", "from_warehouse", "to_warehouse",
                       "document_type", "document_number", "note", "user_id", "created_at")

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(InventoryUnit)
class InventoryUnitAdmin(SimpleHistoryAdmin):
    """Read-only: units only change through the ledger services."""
    inlines = [UnitMovementInline]
    list_display = ("id", "product", "warehouse", "state", "lot", "expires_on", "reserved_for", "sale", "unit_cost_usd")
    list_filter = ("state", "warehouse", "product")
    search_fields = ("product__sku", "product__name", "lot", "reserved_for__number", "sale__number")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(UnitMovement)
class UnitMovementAdmin(admin.ModelAdmin):
    list_display = ("created_at", "unit", "kind", "from_state", "to_state", "document_number", "user_id")
    list_filter = ("kind",)
    search_fields = ("document_number", "unit__product__sku")
