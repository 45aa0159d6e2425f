from django.db import models, transaction
from django.utils import timezone


class NumberSeries(models.Model):
    """Readable, gap-free document numbers (COT-2026-001, VT-2026-014 ...).

    The important part is *concurrency safety*:
    - We lock the NumberSeries row in the database (select_for_update)
    - We read next_number
    - We increment next_number and save
    - We return a formatted string (prefix + zero-padded number)

    ``prefix`` may contain ``{year}``. The counter restarts when the year in
    the rendered prefix changes, matching the yearly numbering of documents.
    """

    code = models.CharField(max_length=50, unique=True)
    prefix = models.CharField(max_length=50, blank=True, default="")
    next_number = models.IntegerField(default=1)
    min_width = models.IntegerField(default=3)
    current_year = models.IntegerField(null=True, blank=True)

    class Meta:
        ordering = ["code"]
        verbose_name_plural = "number series"

    def __str__(self):
        return self.code

    @classmethod
    def next_for(cls, code: str, prefix: str, min_width: int = 3) -> str:
        """Allocate from the series ``code``, creating it on first use."""
        series, _ = cls.objects.get_or_create(code=code, defaults={"prefix": prefix, "min_width": min_width})
        return series.allocate()

    @transaction.atomic
    def allocate(self) -> str:
        """Allocate the next number without duplicates.

        The lock is held until the transaction commits, so no other allocation can read
        the old next_number in parallel.
        """
        series = type(self).objects.select_for_update().get(pk=self.pk)

        year = timezone.localdate().year
        if "{year}" in series.prefix and series.current_year != year:
            series.current_year = year
            series.next_number = 1

        current = series.next_number
        series.next_number = current + 1
        series.save(update_fields=["next_number", "current_year"])

        return f"{series.prefix.format(year=year)}{str(current).zfill(series.min_width)}"
