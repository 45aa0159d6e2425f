import datetime as dt
from decimal import Decimal, InvalidOperation

from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from django.utils import timezone

from core.models import ExchangeRate


def parse_rate(value: str) -> Decimal:
    try:
        rate = Decimal(value)
    except InvalidOperation as e:
        raise CommandError(f"Invalid rate: {value}") from e
    if rate <= 0:
        raise CommandError(f"Rate must be positive: {value}")
    return rate


class Command(BaseCommand):
    help = "Store the USD buy/sell rate for a day (PEN per USD by default)"

    def add_arguments(self, parser):
        parser.add_argument("--buy", required=True)
        parser.add_argument("--sell", required=True)
        parser.add_argument("--date", default=None, help="YYYY-MM-DD (default today)")
        parser.add_argument("--currency", default="PEN")
        parser.add_argument("--source", default=ExchangeRate.SOURCE_MANUAL,
                            choices=[code for code, _ in ExchangeRate.SOURCE_CHOICES])

    @transaction.atomic
    def handle(self, *args, **opts):
        rate_date = dt.date.fromisoformat(opts["date"]) if opts["date"] else timezone.localdate()
        buy = parse_rate(opts["buy"])
        sell = parse_rate(opts["sell"])
        if sell < buy:
            raise CommandError("Sell rate cannot be lower than buy rate")

        obj, created = ExchangeRate.objects.update_or_create(
            date=rate_date,
            currency=opts["currency"].upper(),
            source=opts["source"],
            defaults={"buy": buy, "sell": sell},
        )
        self.stdout.write(
            self.style.SUCCESS(
                f"{'Created' if created else 'Updated'} {obj}"
            )
        )
