from django.contrib import admin

from ledger.models import TreasuryMovement


@admin.register(TreasuryMovement)
class TreasuryMovementAdmin(admin.ModelAdmin):
    list_display = ("created_at", "kind", "currency", "amount", "exchange_rate", "amount_pen", "method", "related_document")
    list_filter = ("kind", "currency", "method")
    search_fields = ("related_document", "reference")

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
