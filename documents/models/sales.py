from decimal import Decimal

from django.db import models
from django.utils import timezone
from django_fsm import FSMField, transition
from django_fsm_log.decorators import fsm_log_description
from simple_history.models import HistoricalRecords

from core.models import Currency
from inventory.models import InventoryUnit



class Sale(models.Model):
    """Sale created when a quotation is confirmed.

    The sale waits in ``pendiente_stock`` until every line has its units
    assigned. Delivery and cancellation move the assigned units through the
    unit ledger.
    """

    class State(models.TextChoices):
        PENDIENTE_STOCK = "pendiente_stock", "Pendiente de stock"
        ASIGNADA = "asignada", "Asignada"
        ENTREGADA = "entregada", "Entregada"
        CANCELADA = "cancelada", "Cancelada"

    number = models.CharField(max_length=40, unique=True)
    quotation = models.OneToOneField(
        "documents.Quotation", null=True, blank=True, on_delete=models.PROTECT, related_name="sale"
    )

    customer_name = models.CharField(max_length=255)
    customer_email = models.EmailField(blank=True, default="")
    customer_phone = models.CharField(max_length=40, blank=True, default="")
    customer_document = models.CharField(max_length=20, blank=True, default="")
    delivery_address = models.CharField(max_length=255, blank=True, default="")

    currency = models.CharField(max_length=3, choices=Currency.choices, default=Currency.PEN)
    subtotal = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    discount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    shipping_cost = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    total = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    advance_applied = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    amount_due = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    stock_short = models.BooleanField(default=False)
    cost_total = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    margin = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)

    state = FSMField(default=State.PENDIENTE_STOCK, choices=State.choices, protected=True)

    created_by = models.CharField(max_length=150, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    allocated_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    delivered_by = models.CharField(max_length=150, blank=True, default="")
    cancelled_at = models.DateTimeField(null=True, blank=True)

    history = HistoricalRecords()

    class Meta:
        ordering = ("-created_at", "-id")

    def __str__(self):
        return f"{self.number} {self.customer_name} ({self.get_state_display()})"

    def is_fully_assigned(self) -> bool:
        return all(line.missing_quantity == 0 for line in self.lines.all())

    @fsm_log_description
    @transition(field=state, source=State.PENDIENTE_STOCK, target=State.ASIGNADA,
                conditions=[is_fully_assigned])
    def mark_allocated(self, by_user="", description=None):
        self.allocated_at = timezone.now()

    @fsm_log_description
    @transition(field=state, source=State.ASIGNADA, target=State.ENTREGADA,
                conditions=[is_fully_assigned])
    def deliver(self, by_user="", description=None):
        self.delivered_at = timezone.now()
        self.delivered_by = by_user

    @fsm_log_description
    @transition(field=state, source=[State.PENDIENTE_STOCK, State.ASIGNADA], target=State.CANCELADA)
    def cancel(self, by_user="", description=None):
        self.cancelled_at = timezone.now()


class SaleLine(models.Model):
    sale = models.ForeignKey(Sale, on_delete=models.CASCADE, related_name="lines")
    line_no = models.IntegerField()

    product = models.ForeignKey("masterdata.Product", on_delete=models.PROTECT, related_name="sale_lines")
    description = models.CharField(max_length=255, blank=True, default="")

    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=14, decimal_places=2)
    cost_total = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)

    class Meta:
        unique_together = ("sale", "line_no")
        ordering = ["line_no"]

    def save(self, *args, **kwargs):
        if not self.line_no:
            last = (
                SaleLine.objects
                .filter(sale_id=self.sale_id)
                .order_by("-line_no")
                .values_list("line_no", flat=True)
                .first()
            )
            self.line_no = (last or 0) + 10

        if not self.description and self.product_id:
            self.description = self.product.display_name

        super().save(*args, **kwargs)

    @property
    def subtotal(self) -> Decimal:
        return (self.quantity * self.unit_price).quantize(Decimal("0.01"))

    @property
    def assigned_quantity(self) -> int:
        return self.units.filter(
            state__in=[InventoryUnit.State.ASSIGNED_TO_SALE, InventoryUnit.State.DELIVERED]
        ).count()

    @property
    def missing_quantity(self) -> int:
        return max(0, self.quantity - self.assigned_quantity)
