from decimal import Decimal

from django.db import models

from core.models import Currency


class TreasuryMovement(models.Model):
    """Money in or out of the business, in the currency it actually moved in.

    Rows are append-only. ``amount_pen`` is the amount converted at
    ``exchange_rate`` so cash can be summed across currencies.
    """

    class Kind(models.TextChoices):
        INGRESO_ADELANTO = "ingreso_adelanto", "Ingreso por adelanto"
        INGRESO_VENTA = "ingreso_venta", "Ingreso por venta"
        EGRESO_COMPRA = "egreso_compra", "Egreso por compra"
        OTRO = "otro", "Otro"

    kind = models.CharField(max_length=30, choices=Kind.choices)
    currency = models.CharField(max_length=3, choices=Currency.choices)
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    exchange_rate = models.DecimalField(max_digits=12, decimal_places=6, null=True, blank=True)
    amount_pen = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    method = models.CharField(max_length=20, blank=True, default="")
    reference = models.CharField(max_length=100, blank=True, default="")
    related_document = models.CharField(max_length=40, blank=True, default="")

    created_by = models.CharField(max_length=150, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at", "-id")
        indexes = [models.Index(fields=["related_document"])]

    def __str__(self):
        return f"{self.get_kind_display()} {self.amount} {self.currency} {self.related_document}"
