from django.db import models
from django.utils import timezone
from django_fsm import FSMField, transition
from django_fsm_log.decorators import fsm_log_description
from simple_history.models import HistoricalRecords


class Requirement(models.Model):
    """A need to buy stock, raised by hand, by low stock or by a quotation shortfall."""

    class Source(models.TextChoices):
        MANUAL = "manual", "Manual"
        STOCK_BAJO = "stock_bajo", "Stock bajo"
        COTIZACION = "cotizacion", "Cotización"

    class State(models.TextChoices):
        PENDIENTE = "pendiente", "Pendiente"
        EN_COMPRA = "en_compra", "En compra"
        COMPLETADO = "completado", "Completado"
        CANCELADO = "cancelado", "Cancelado"

    OPEN_STATES = (State.PENDIENTE, State.EN_COMPRA)

    number = models.CharField(max_length=40, unique=True)
    source = models.CharField(max_length=20, choices=Source.choices, default=Source.MANUAL)
    quotation = models.ForeignKey(
        "documents.Quotation", null=True, blank=True, on_delete=models.PROTECT, related_name="requirements"
    )

    state = FSMField(default=State.PENDIENTE, choices=State.choices, protected=True)
    notes = models.TextField(blank=True, default="")

    created_by = models.CharField(max_length=150, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    history = HistoricalRecords()

    class Meta:
        ordering = ("-created_at", "-id")

    def __str__(self):
        return f"{self.number} ({self.get_state_display()})"

    def requested_quantity(self, product) -> int:
        product_id = getattr(product, "pk", product)
        return sum(line.quantity_requested for line in self.lines.all() if line.product_id == product_id)

    @fsm_log_description
    @transition(field=state, source=State.PENDIENTE, target=State.EN_COMPRA)
    def mark_ordered(self, by_user="", description=None):
        pass

    @fsm_log_description
    @transition(field=state, source=list(OPEN_STATES), target=State.COMPLETADO)
    def complete(self, by_user="", description=None):
        self.completed_at = timezone.now()

    @fsm_log_description
    @transition(field=state, source=list(OPEN_STATES), target=State.CANCELADO)
    def cancel(self, by_user="", description=None):
        pass


class RequirementLine(models.Model):
    requirement = models.ForeignKey(Requirement, on_delete=models.CASCADE, related_name="lines")
    product = models.ForeignKey("masterdata.Product", on_delete=models.PROTECT, related_name="requirement_lines")
    quantity_requested = models.PositiveIntegerField()
    estimated_unit_cost_usd = models.DecimalField(max_digits=14, decimal_places=4, null=True, blank=True)

    class Meta:
        ordering = ["id"]

    def __str__(self):
        return f"{self.requirement.number} {self.product_id} x{self.quantity_requested}"
