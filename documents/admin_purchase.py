from django.contrib import admin
from django_object_actions import DjangoObjectActions, action
from simple_history.admin import SimpleHistoryAdmin

from documents.admin import ServiceActionMixin
from documents.models import PurchaseOrder, PurchaseOrderLine
from documents.services import purchasing
from documents.services.receiving import receive_purchase_order


class PurchaseOrderLineInline(admin.TabularInline):
    model = PurchaseOrderLine
    extra = 0


@admin.register(PurchaseOrder)
class PurchaseOrderAdmin(DjangoObjectActions, ServiceActionMixin, SimpleHistoryAdmin):
    inlines = [PurchaseOrderLineInline]
    list_display = ("number", "supplier", "warehouse", "state", "payment_state", "total_usd", "inventory_generated")
    list_filter = ("state", "payment_state", "warehouse")
    search_fields = ("number", "supplier__name", "tracking_number")
    readonly_fields = ("number", "state", "payment_state", "subtotal_usd", "total_usd", "amount_paid_usd",
                       "inventory_generated", "sent_at", "in_transit_at", "received_at", "received_by")

    change_actions = ("send_action", "in_transit_action", "receive_action", "cancel_action")

    def get_change_actions(self, request, object_id, form_url):
        obj = self.get_object(request, object_id)
        if not obj:
            return ()
        if obj.state == PurchaseOrder.State.BORRADOR:
            return ("send_action", "cancel_action")
        if obj.state == PurchaseOrder.State.ENVIADA:
            return ("in_transit_action", "receive_action", "cancel_action")
        if obj.state == PurchaseOrder.State.EN_TRANSITO:
            return ("receive_action", "cancel_action")
        return ()

    def save_related(self, request, form, formsets, change):
        super().save_related(request, form, formsets, change)
        form.instance.recalculate_totals()
        form.instance.save()

    @action(label="Send", description="Send the order to the supplier")
    def send_action(self, request, obj):
        self.run_service(request, purchasing.send_purchase_order, obj, "Order sent.")

    @action(label="In transit", description="Goods left the supplier")
    def in_transit_action(self, request, obj):
        self.run_service(request, purchasing.mark_in_transit, obj, "Order in transit.")

    @action(label="Receive", description="Receive goods and create inventory units")
    def receive_action(self, request, obj):
        result = self.run_service(request, receive_purchase_order, obj, "Goods received.")
        if result is not None:
            self.message_user(
                request, f"{len(result.reserved_units)} units reserved, {len(result.free_units)} free."
            )

    @action(label="Cancel", description="Cancel the order")
    def cancel_action(self, request, obj):
        self.run_service(request, purchasing.cancel_purchase_order, obj, "Order cancelled.")
