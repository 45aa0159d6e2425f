from decimal import Decimal

from django.db import transaction
from django.db.models import Sum

from core.exceptions import ValidationError
from core.models import Currency
from core.services.fx import convert
from ledger.models import TreasuryMovement


@transaction.atomic
def record_movement(*, kind, currency, amount, rate=None, method="", reference="",
                    related_document="", user_id=""):
    """Write one treasury movement and return its id as a string.

    USD movements need ``rate`` to derive the PEN amount.
    """
    amount = Decimal(amount)
    if amount <= 0:
        raise ValidationError("Movement amount must be positive.")
    if currency == Currency.USD and rate is None:
        raise ValidationError("USD movements need an exchange rate.")

    amount_pen = convert(amount, currency, Currency.PEN, rate) if currency != Currency.PEN else amount

    movement = TreasuryMovement.objects.create(
        kind=kind,
        currency=currency,
        amount=amount,
        exchange_rate=rate,
        amount_pen=amount_pen,
        method=method,
        reference=reference,
        related_document=related_document,
        created_by=user_id,
    )
    return str(movement.pk)


def balance_for_document(related_document: str) -> Decimal:
    """Net PEN received against a document number."""
    total = (TreasuryMovement.objects
             .filter(related_document=related_document)
             .exclude(kind=TreasuryMovement.Kind.EGRESO_COMPRA)
             .aggregate(s=Sum("amount_pen"))["s"])
    return (total or Decimal("0.00")).quantize(Decimal("0.01"))
