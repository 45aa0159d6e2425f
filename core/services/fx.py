from dataclasses import dataclass
from decimal import Decimal

from django.db.models import Case, IntegerField, Value, When
from django.utils import timezone

from core.exceptions import RateUnavailable
from core.models import ExchangeRate

# Lower wins when a day has rates from more than one source
SOURCE_PRIORITY = Case(
    When(source=ExchangeRate.SOURCE_MANUAL, then=Value(0)),
    When(source=ExchangeRate.SOURCE_SBS, then=Value(1)),
    default=Value(9),
    output_field=IntegerField(),
)


@dataclass(frozen=True)
class RateQuote:
    date: object
    buy: Decimal
    sell: Decimal


def get_rate_for_today(currency: str = "PEN") -> RateQuote:
    """Fetch today's USD rate.

    Rule (simple):
    - Exact date match required
    - Manual entries win over published ones for the same day
    """
    today = timezone.localdate()
    r = (ExchangeRate.objects
         .filter(date=today, currency=currency)
         .order_by(SOURCE_PRIORITY, "-created_at")
         .first())
    if not r:
        raise RateUnavailable(f"Missing USD->{currency} rate on {today}")
    return RateQuote(date=r.date, buy=r.buy, sell=r.sell)


def convert(amount: Decimal, from_currency: str, to_currency: str, rate: Decimal) -> Decimal:
    """Convert between USD and the local currency using ``rate`` (local per USD)."""
    if from_currency == to_currency:
        return amount.quantize(Decimal("0.01"))
    if from_currency == "USD":
        return (amount * rate).quantize(Decimal("0.01"))
    if to_currency == "USD":
        return (amount / rate).quantize(Decimal("0.01"))
    raise ValueError(f"Unsupported conversion {from_currency}->{to_currency}")
