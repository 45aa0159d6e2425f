from decimal import Decimal

from django.db import models
from django.utils import timezone
from simple_history.models import HistoricalRecords


class InventoryUnit(models.Model):
    """One physical item, traced from goods receipt to delivery.

    Units are never deleted. The state is only changed through
    ``inventory.services.ledger`` so every change is checked against the
    transition table and leaves a UnitMovement behind.
    """

    class State(models.TextChoices):
        RECEIVED_USA = "received_usa", "Received in USA"
        IN_TRANSIT = "in_transit", "In transit to Peru"
        AVAILABLE_LOCAL = "available_local", "Available"
        RESERVED = "reserved", "Reserved"
        ASSIGNED_TO_SALE = "assigned_to_sale", "Assigned to sale"
        DELIVERED = "delivered", "Delivered"
        CANCELLED_RETURNED_TO_POOL = "cancelled_returned_to_pool", "Cancelled, returning to pool"

    product = models.ForeignKey("masterdata.Product", on_delete=models.PROTECT, related_name="units")
    warehouse = models.ForeignKey("masterdata.Warehouse", on_delete=models.PROTECT, related_name="units")

    lot = models.CharField(max_length=60, blank=True, default="")
    expires_on = models.DateField(null=True, blank=True)

    # Landed cost (line cost + prorated duty/freight/other)
    unit_cost_usd = models.DecimalField(max_digits=14, decimal_places=4, default=Decimal("0.0000"))
    purchase_rate = models.DecimalField(max_digits=12, decimal_places=6, null=True, blank=True)
    payment_rate = models.DecimalField(max_digits=12, decimal_places=6, null=True, blank=True)

    purchase_order = models.ForeignKey("documents.PurchaseOrder", null=True, blank=True, on_delete=models.PROTECT, related_name="units")
    purchase_order_line = models.ForeignKey("documents.PurchaseOrderLine", null=True, blank=True, on_delete=models.PROTECT, related_name="units")

    state = models.CharField(max_length=32, choices=State.choices, default=State.AVAILABLE_LOCAL, db_index=True)

    reserved_for = models.ForeignKey("documents.Quotation", null=True, blank=True, on_delete=models.PROTECT, related_name="reserved_units")
    reserved_at = models.DateTimeField(null=True, blank=True)

    sale = models.ForeignKey("documents.Sale", null=True, blank=True, on_delete=models.PROTECT, related_name="units")
    sale_line = models.ForeignKey("documents.SaleLine", null=True, blank=True, on_delete=models.PROTECT, related_name="units")
    assigned_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)

    arrived_at = models.DateTimeField(default=timezone.now)

    created_by = models.CharField(max_length=150, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    history = HistoricalRecords()

    class Meta:
        ordering = ["product", "id"]
        indexes = [
            models.Index(fields=["product", "state"]),
            models.Index(fields=["product", "state", "expires_on"]),
            models.Index(fields=["reserved_for", "state"]),
        ]

    def __str__(self):
        return f"Unit {self.pk} {self.product_id} ({self.state})"

    @property
    def is_free(self) -> bool:
        return self.state in (self.State.AVAILABLE_LOCAL, self.State.RECEIVED_USA)

    def cost_in(self, currency: str) -> Decimal:
        """Unit cost in ``currency``; local currency uses the payment rate when known."""
        if currency == "USD":
            return self.unit_cost_usd
        rate = self.payment_rate or self.purchase_rate or Decimal("1")
        return (self.unit_cost_usd * rate).quantize(Decimal("0.0001"))


class UnitMovement(models.Model):
    """Audit trail for unit state and location changes."""

    class Kind(models.TextChoices):
        RECEIPT = "receipt", "Receipt"
        RESERVATION = "reservation", "Reservation"
        RELEASE = "release", "Release"
        ASSIGNMENT = "assignment", "Assignment to sale"
        DELIVERY = "delivery", "Delivery"
        RETURN = "return", "Return to pool"
        TRANSFER = "transfer", "Transfer"

    unit = models.ForeignKey(InventoryUnit, on_delete=models.PROTECT, related_name="movements")
    kind = models.CharField(max_length=20, choices=Kind.choices)

    from_state = models.CharField(max_length=32, blank=True, default="")
    to_state = models.CharField(max_length=32, blank=True, default="")

    from_warehouse = models.ForeignKey("masterdata.Warehouse", null=True, blank=True, on_delete=models.PROTECT, related_name="+")
    to_warehouse = models.ForeignKey("masterdata.Warehouse", null=True, blank=True, on_delete=models.PROTECT, related_name="+")

    document_type = models.CharField(max_length=30, blank=True, default="")
    document_id = models.PositiveBigIntegerField(null=True, blank=True)
    document_number = models.CharField(max_length=40, blank=True, default="")

    note = models.CharField(max_length=255, blank=True, default="")
    user_id = models.CharField(max_length=150, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["unit", "created_at", "id"]

    def __str__(self):
        return f"{self.unit_id} {self.kind} {self.from_state}->{self.to_state}"
