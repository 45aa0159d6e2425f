from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models


class Currency(models.TextChoices):
    PEN = "PEN", "Soles"
    USD = "USD", "US dollars"


class ExchangeRate(models.Model):
    """Daily exchange rate, stored as local currency per 1 USD.

    Example:
        date=2026-10-19, buy=3.7420, sell=3.7560  (PEN per USD)

    ``buy`` is what the exchange house pays for a dollar, ``sell`` what it
    charges; payments received in USD are converted with ``sell``.
    """

    SOURCE_MANUAL = "MANUAL"
    SOURCE_SBS = "SBS"
    SOURCE_CHOICES = (
        (SOURCE_MANUAL, "Manual"),
        (SOURCE_SBS, "SBS daily publication"),
    )

    date = models.DateField(db_index=True)
    currency = models.CharField(max_length=3, default="PEN", help_text="Local currency quoted per 1 USD")

    buy = models.DecimalField(max_digits=12, decimal_places=6, validators=[MinValueValidator(Decimal("0.000001"))])
    sell = models.DecimalField(max_digits=12, decimal_places=6, validators=[MinValueValidator(Decimal("0.000001"))])

    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default=SOURCE_MANUAL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("date", "currency", "source")
        ordering = ["-date", "currency"]

    def __str__(self) -> str:
        return f"{self.date}: 1 USD = {self.buy}/{self.sell} {self.currency}"
