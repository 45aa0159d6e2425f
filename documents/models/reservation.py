from django.db import models
from django.utils import timezone


class Reservation(models.Model):
    """What was set aside for a quotation when its advance was paid.

    ``fisica`` when every requested unit could be reserved from stock,
    ``virtual`` when part of it is still to be bought.
    """

    class Kind(models.TextChoices):
        FISICA = "fisica", "Física"
        VIRTUAL = "virtual", "Virtual"

    quotation = models.OneToOneField("documents.Quotation", on_delete=models.PROTECT, related_name="reservation")
    kind = models.CharField(max_length=10, choices=Kind.choices)
    active = models.BooleanField(default=True)

    reserved_at = models.DateTimeField(default=timezone.now)
    valid_until = models.DateTimeField(null=True, blank=True)

    requirement = models.ForeignKey(
        "documents.Requirement", null=True, blank=True, on_delete=models.SET_NULL, related_name="reservations"
    )
    estimated_fulfilment = models.DateField(null=True, blank=True)

    # Units that could not be released yet; retried by reconcile_pending_releases
    release_pending = models.BooleanField(default=False)
    pending_unit_ids = models.JSONField(default=list, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["release_pending"]),
        ]

    def __str__(self):
        return f"{self.quotation.number} {self.get_kind_display()}"

    @property
    def virtual_quantity(self) -> int:
        return sum(line.virtual_quantity for line in self.lines.all())


class ReservationLine(models.Model):
    reservation = models.ForeignKey(Reservation, on_delete=models.CASCADE, related_name="lines")
    product = models.ForeignKey("masterdata.Product", on_delete=models.PROTECT, related_name="+")

    requested = models.PositiveIntegerField()
    physically_reserved = models.PositiveIntegerField(default=0)
    virtual_quantity = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["id"]

    def __str__(self):
        return f"{self.product_id}: {self.physically_reserved}/{self.requested}"


class ReservationExtension(models.Model):
    """One extension of a reservation's validity, with who asked and why."""

    reservation = models.ForeignKey(Reservation, on_delete=models.CASCADE, related_name="extensions")
    hours = models.PositiveIntegerField()
    reason = models.CharField(max_length=255)
    previous_valid_until = models.DateTimeField(null=True, blank=True)
    new_valid_until = models.DateTimeField()

    extended_by = models.CharField(max_length=150, blank=True, default="")
    extended_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["extended_at", "id"]

    def __str__(self):
        return f"{self.reservation} +{self.hours}h"
