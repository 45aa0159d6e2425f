from datetime import timedelta
from decimal import Decimal

from django.db import models
from django.utils import timezone
from django_fsm import transition
from django_fsm_log.decorators import fsm_log_description
from simple_history.models import HistoricalRecords

from core.conf import get_setting
from core.models import Currency

from .fields import CanonicalStateField


class Quotation(models.Model):
    """Customer quotation with its advance-payment state machine.

    The FSM methods only touch the quotation's own fields. Anything that
    moves inventory (reservation, release, allocation) is done by
    ``documents.services.quotations`` around these transitions, inside the
    same transaction.
    """

    class State(models.TextChoices):
        NUEVA = "nueva", "Nueva"
        VALIDADA = "validada", "Validada"
        PENDIENTE_ADELANTO = "pendiente_adelanto", "Pendiente de adelanto"
        ADELANTO_PAGADO = "adelanto_pagado", "Adelanto pagado"
        CONFIRMADA = "confirmada", "Confirmada"
        RECHAZADA = "rechazada", "Rechazada"
        VENCIDA = "vencida", "Vencida"

    ACTIVE_STATES = (State.NUEVA, State.VALIDADA, State.PENDIENTE_ADELANTO, State.ADELANTO_PAGADO)
    EXPIRABLE_STATES = (State.VALIDADA, State.PENDIENTE_ADELANTO, State.ADELANTO_PAGADO)

    class Channel(models.TextChoices):
        DIRECTO = "directo", "Directo"
        WHATSAPP = "whatsapp", "WhatsApp"
        MERCADO_LIBRE = "mercado_libre", "Mercado Libre"
        WEB = "web", "Web"
        REFERIDO = "referido", "Referido"
        OTRO = "otro", "Otro"

    number = models.CharField(max_length=40, unique=True)

    customer_name = models.CharField(max_length=255)
    customer_email = models.EmailField(blank=True, default="")
    customer_phone = models.CharField(max_length=40, blank=True, default="")
    customer_document = models.CharField(max_length=20, blank=True, default="", help_text="DNI or RUC")
    delivery_address = models.CharField(max_length=255, blank=True, default="")
    channel = models.CharField(max_length=20, choices=Channel.choices, default=Channel.DIRECTO)

    currency = models.CharField(max_length=3, choices=Currency.choices, default=Currency.PEN)
    exchange_rate = models.DecimalField(max_digits=12, decimal_places=6, null=True, blank=True)

    subtotal = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    discount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    shipping_cost = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    includes_shipping = models.BooleanField(default=False)
    total = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    # con_abono is the pre-split name of adelanto_pagado
    state = CanonicalStateField(
        default=State.NUEVA, choices=State.choices, protected=True,
        legacy_states={"con_abono": State.ADELANTO_PAGADO},
    )

    validity_days = models.PositiveIntegerField(default=7)
    expires_at = models.DateTimeField(null=True, blank=True)

    # Kept after rejection/expiry for audit
    advance_committed_amount = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    advance_committed_percentage = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    advance_committed_at = models.DateTimeField(null=True, blank=True)
    advance_payment_deadline = models.DateTimeField(null=True, blank=True)
    advance_committed_by = models.CharField(max_length=150, blank=True, default="")

    validated_at = models.DateTimeField(null=True, blank=True)
    validated_by = models.CharField(max_length=150, blank=True, default="")
    paid_at = models.DateTimeField(null=True, blank=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)
    confirmed_by = models.CharField(max_length=150, blank=True, default="")
    rejected_at = models.DateTimeField(null=True, blank=True)
    expired_at = models.DateTimeField(null=True, blank=True)

    notes = models.TextField(blank=True, default="")

    created_by = models.CharField(max_length=150, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    history = HistoricalRecords()

    class Meta:
        ordering = ("-created_at", "-id")
        indexes = [
            models.Index(fields=["state", "expires_at"]),
        ]

    def __str__(self):
        return f"{self.number} {self.customer_name} ({self.get_state_display()})"

    @property
    def is_active(self) -> bool:
        return self.state in self.ACTIVE_STATES

    @property
    def has_committed_advance(self) -> bool:
        return self.advance_committed_amount is not None and self.advance_committed_amount > 0

    def is_overdue(self, now=None) -> bool:
        now = now or timezone.now()
        return self.state in self.EXPIRABLE_STATES and self.expires_at is not None and self.expires_at < now

    def recalculate_totals(self):
        """Recompute subtotal and total from the lines."""
        subtotal = sum((line.subtotal for line in self.lines.all()), Decimal("0.00"))
        self.subtotal = subtotal
        total = subtotal - self.discount
        if self.includes_shipping:
            total += self.shipping_cost
        self.total = total.quantize(Decimal("0.01"))

    def vigency_days(self, state=None) -> int:
        """Length of the validity window for ``state`` (defaults to the current one)."""
        state = state or self.state
        if state == self.State.NUEVA:
            return self.validity_days
        if state == self.State.VALIDADA:
            return get_setting("VALIDATED_VIGENCY_DAYS")
        if state == self.State.ADELANTO_PAGADO:
            return get_setting("ADVANCE_PAID_VIGENCY_DAYS")
        return 0

    def refresh_vigency(self, state=None, now=None):
        """Recompute ``expires_at`` for ``state``.

        While waiting for the advance the quotation lives exactly until the
        payment deadline. Terminal states keep their last value.
        """
        state = state or self.state
        now = now or timezone.now()
        if state == self.State.PENDIENTE_ADELANTO:
            self.expires_at = self.advance_payment_deadline
        elif state in self.ACTIVE_STATES:
            self.expires_at = now + timedelta(days=self.vigency_days(state))

    @fsm_log_description
    @transition(field=state, source=State.NUEVA, target=State.VALIDADA)
    def validate(self, by_user="", description=None):
        self.validated_at = timezone.now()
        self.validated_by = by_user
        self.refresh_vigency(self.State.VALIDADA)

    @fsm_log_description
    @transition(field=state, source=State.VALIDADA, target=State.NUEVA)
    def revert_validation(self, by_user="", description=None):
        self.validated_at = None
        self.validated_by = ""
        self.refresh_vigency(self.State.NUEVA)

    @fsm_log_description
    @transition(field=state, source=[State.NUEVA, State.VALIDADA], target=State.PENDIENTE_ADELANTO)
    def commit_advance(self, amount, percentage, deadline, by_user="", description=None):
        self.advance_committed_amount = amount
        self.advance_committed_percentage = percentage
        self.advance_committed_at = timezone.now()
        self.advance_payment_deadline = deadline
        self.advance_committed_by = by_user
        self.refresh_vigency(self.State.PENDIENTE_ADELANTO)

    @fsm_log_description
    @transition(
        field=state, source=State.PENDIENTE_ADELANTO, target=State.ADELANTO_PAGADO,
        conditions=[lambda q: q.has_committed_advance],
    )
    def mark_advance_paid(self, by_user="", description=None):
        self.paid_at = timezone.now()
        self.refresh_vigency(self.State.ADELANTO_PAGADO)

    @fsm_log_description
    @transition(field=state, source=[State.VALIDADA, State.ADELANTO_PAGADO], target=State.CONFIRMADA)
    def confirm(self, by_user="", description=None):
        self.confirmed_at = timezone.now()
        self.confirmed_by = by_user

    @fsm_log_description
    @transition(field=state, source=list(ACTIVE_STATES), target=State.RECHAZADA)
    def reject(self, by_user="", description=None):
        self.rejected_at = timezone.now()

    @fsm_log_description
    @transition(field=state, source=list(EXPIRABLE_STATES), target=State.VENCIDA)
    def expire(self, by_user="", description=None):
        self.expired_at = timezone.now()


class QuotationLine(models.Model):
    quotation = models.ForeignKey(Quotation, on_delete=models.CASCADE, related_name="lines")
    line_no = models.IntegerField()

    product = models.ForeignKey("masterdata.Product", on_delete=models.PROTECT, related_name="quotation_lines")
    description = models.CharField(max_length=255, blank=True, default="")

    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=14, decimal_places=2)

    # Free stock when the quote was made
    stock_local_at_quote = models.PositiveIntegerField(default=0)
    stock_usa_at_quote = models.PositiveIntegerField(default=0)
    requires_stock = models.BooleanField(default=False)

    class Meta:
        unique_together = ("quotation", "line_no")
        ordering = ["line_no"]

    def save(self, *args, **kwargs):
        if not self.line_no:
            last = (
                QuotationLine.objects
                .filter(quotation_id=self.quotation_id)
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


class PaymentMethod(models.TextChoices):
    EFECTIVO = "efectivo", "Efectivo"
    TRANSFERENCIA = "transferencia", "Transferencia"
    YAPE = "yape", "Yape"
    PLIN = "plin", "Plin"
    TARJETA = "tarjeta", "Tarjeta"
    MERCADO_PAGO = "mercado_pago", "Mercado Pago"
    PAYPAL = "paypal", "PayPal"
    ZELLE = "zelle", "Zelle"
    OTRO = "otro", "Otro"


class AdvancePayment(models.Model):
    """The advance actually received for a quotation."""

    quotation = models.OneToOneField(Quotation, on_delete=models.PROTECT, related_name="advance_payment")

    amount = models.DecimalField(max_digits=14, decimal_places=2)
    currency = models.CharField(max_length=3, choices=Currency.choices)
    exchange_rate = models.DecimalField(max_digits=12, decimal_places=6, null=True, blank=True)
    amount_in_quotation_currency = models.DecimalField(max_digits=14, decimal_places=2)

    method = models.CharField(max_length=20, choices=PaymentMethod.choices)
    reference = models.CharField(max_length=100, blank=True, default="")

    paid_at = models.DateTimeField(default=timezone.now)
    registered_by = models.CharField(max_length=150, blank=True, default="")
    ledger_movement_id = models.CharField(max_length=64, blank=True, default="")

    history = HistoricalRecords()

    def __str__(self):
        return f"{self.quotation.number} {self.amount} {self.currency} ({self.method})"


class Rejection(models.Model):
    class Reason(models.TextChoices):
        PRECIO_ALTO = "precio_alto", "Precio alto"
        ENCONTRO_MEJOR_OPCION = "encontro_mejor_opcion", "Encontró mejor opción"
        SIN_PRESUPUESTO = "sin_presupuesto", "Sin presupuesto"
        PRODUCTO_DIFERENTE = "producto_diferente", "Producto diferente"
        DEMORA_ENTREGA = "demora_entrega", "Demora en la entrega"
        CAMBIO_NECESIDAD = "cambio_necesidad", "Cambió su necesidad"
        SIN_RESPUESTA = "sin_respuesta", "Sin respuesta"
        OTRO = "otro", "Otro"

    quotation = models.OneToOneField(Quotation, on_delete=models.PROTECT, related_name="rejection")
    reason = models.CharField(max_length=30, choices=Reason.choices)
    detail = models.TextField(blank=True, default="")
    expected_price = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    competitor = models.CharField(max_length=255, blank=True, default="")

    rejected_at = models.DateTimeField(default=timezone.now)
    registered_by = models.CharField(max_length=150, blank=True, default="")

    def __str__(self):
        return f"{self.quotation.number}: {self.get_reason_display()}"
