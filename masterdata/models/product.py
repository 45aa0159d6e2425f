from django.db import models


class Product(models.Model):
    sku = models.CharField(max_length=50, unique=True)
    brand = models.CharField(max_length=120, blank=True, default="")
    name = models.CharField(max_length=255)
    presentation = models.CharField(max_length=120, blank=True, default="")

    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["sku"]

    def __str__(self):
        return f"{self.sku} {self.display_name}"

    @property
    def display_name(self) -> str:
        return f"{self.brand} {self.name}".strip()
