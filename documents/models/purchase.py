from decimal import Decimal

from django.db import models
from django.utils import timezone
from django_fsm import FSMField, transition
from django_fsm_log.decorators import fsm_log_description
from simple_history.models import HistoricalRecords


class PurchaseOrder(models.Model):
    """Purchase order to a USA supplier, BORRADOR -> ENVIADA -> EN_TRANSITO -> RECIBIDA.

    Lines are priced in USD. Payment is tracked separately from logistics
    (``payment_state``), so an order can be received before it is fully paid.
    Receiving turns the lines into inventory units exactly once.
    """

    class State(models.TextChoices):
        BORRADOR = "borrador", "Borrador"
        ENVIADA = "enviada", "Enviada"
        EN_TRANSITO = "en_transito", "En tránsito"
        RECIBIDA = "recibida", "Recibida"
        CANCELADA = "cancelada", "Cancelada"

    class PaymentState(models.TextChoices):
        PENDIENTE = "pendiente", "Pendiente"
        PAGO_PARCIAL = "pago_parcial", "Pago parcial"
        PAGADA = "pagada", "Pagada"

    number = models.CharField(max_length=40, unique=True)
    supplier = models.ForeignKey("masterdata.Supplier", on_delete=models.PROTECT, related_name="purchase_orders")
    warehouse = models.ForeignKey("masterdata.Warehouse", on_delete=models.PROTECT, related_name="purchase_orders")
    requirement = models.ForeignKey(
        "documents.Requirement", null=True, blank=True, on_delete=models.PROTECT, related_name="purchase_orders"
    )

    state = FSMField(default=State.BORRADOR, choices=State.choices, protected=True)
    payment_state = models.CharField(max_length=20, choices=PaymentState.choices, default=PaymentState.PENDIENTE)

    duty_usd = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    freight_usd = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    other_costs_usd = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    subtotal_usd = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    total_usd = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    amount_paid_usd = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    # PEN per USD when ordered and when actually paid
    purchase_rate = models.DecimalField(max_digits=12, decimal_places=6, null=True, blank=True)
    payment_rate = models.DecimalField(max_digits=12, decimal_places=6, null=True, blank=True)

    courier = models.CharField(max_length=100, blank=True, default="")
    tracking_number = models.CharField(max_length=100, blank=True, default="")

    inventory_generated = models.BooleanField(default=False)
    sent_at = models.DateTimeField(null=True, blank=True)
    in_transit_at = models.DateTimeField(null=True, blank=True)
    received_at = models.DateTimeField(null=True, blank=True)
    received_by = models.CharField(max_length=150, blank=True, default="")
    cancelled_at = models.DateTimeField(null=True, blank=True)

    created_by = models.CharField(max_length=150, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    history = HistoricalRecords()

    class Meta:
        ordering = ("-created_at", "-id")

    def __str__(self):
        return f"{self.number} {self.supplier} ({self.get_state_display()})"

    def has_lines(self) -> bool:
        return self.lines.exists()

    def inventory_not_generated(self) -> bool:
        return not self.inventory_generated

    @property
    def extra_costs_usd(self) -> Decimal:
        return self.duty_usd + self.freight_usd + self.other_costs_usd

    @property
    def total_units(self) -> int:
        return sum(line.quantity for line in self.lines.all())

    def recalculate_totals(self):
        self.subtotal_usd = sum((line.subtotal for line in self.lines.all()), Decimal("0.00"))
        self.total_usd = self.subtotal_usd + self.extra_costs_usd

    def apply_payment(self, amount_usd: Decimal, rate=None):
        """Add a payment and derive ``payment_state`` from the running total."""
        self.amount_paid_usd += amount_usd
        if rate is not None:
            self.payment_rate = rate
        if self.amount_paid_usd <= 0:
            self.payment_state = self.PaymentState.PENDIENTE
        elif self.amount_paid_usd < self.total_usd:
            self.payment_state = self.PaymentState.PAGO_PARCIAL
        else:
            self.payment_state = self.PaymentState.PAGADA

    @fsm_log_description
    @transition(field=state, source=State.BORRADOR, target=State.ENVIADA, conditions=[has_lines])
    def send(self, by_user="", description=None):
        self.sent_at = timezone.now()

    @fsm_log_description
    @transition(field=state, source=State.ENVIADA, target=State.EN_TRANSITO)
    def mark_in_transit(self, by_user="", description=None):
        self.in_transit_at = timezone.now()

    @fsm_log_description
    @transition(field=state, source=[State.ENVIADA, State.EN_TRANSITO], target=State.RECIBIDA,
                conditions=[inventory_not_generated])
    def receive(self, by_user="", description=None):
        self.received_at = timezone.now()
        self.received_by = by_user

    @fsm_log_description
    @transition(field=state, source=[State.BORRADOR, State.ENVIADA, State.EN_TRANSITO], target=State.CANCELADA)
    def cancel(self, by_user="", description=None):
        self.cancelled_at = timezone.now()


class PurchaseOrderLine(models.Model):
    order = models.ForeignKey(PurchaseOrder, on_delete=models.CASCADE, related_name="lines")
    line_no = models.IntegerField()

    product = models.ForeignKey("masterdata.Product", on_delete=models.PROTECT, related_name="purchase_lines")
    description = models.CharField(max_length=255, blank=True, default="")

    quantity = models.PositiveIntegerField()
    unit_cost_usd = models.DecimalField(max_digits=14, decimal_places=4)

    lot = models.CharField(max_length=60, blank=True, default="")
    expires_on = models.DateField(null=True, blank=True)

    class Meta:
        unique_together = ("order", "line_no")
        ordering = ["line_no"]

    def save(self, *args, **kwargs):
        if not self.line_no:
            last = (
                PurchaseOrderLine.objects
                .filter(order_id=self.order_id)
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
        return (self.quantity * self.unit_cost_usd).quantize(Decimal("0.01"))
