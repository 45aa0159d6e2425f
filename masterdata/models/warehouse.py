from django.db import models


class Warehouse(models.Model):
    """Physical location holding units, in the USA (origin) or Peru (local)."""

    class Country(models.TextChoices):
        USA = "USA", "United States"
        PERU = "PE", "Peru"

    code = models.CharField(max_length=30, unique=True)
    name = models.CharField(max_length=255)
    country = models.CharField(max_length=3, choices=Country.choices)

    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["country", "code"]

    def __str__(self):
        return f"{self.code} {self.name} ({self.country})"

    @property
    def is_local(self) -> bool:
        return self.country == self.Country.PERU
