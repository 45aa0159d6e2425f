"""First-expired-first-out selection over free units.

Undated units go after every dated one. Ties break on arrival time and
then on id, so two runs over the same rows always pick the same units.
"""

from dataclasses import dataclass, field
from datetime import timedelta

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from core.exceptions import InsufficientStockError, ValidationError
from inventory.models import InventoryUnit
from inventory.services.ledger import FREE_STATES, TransitionContext, set_states

FEFO_ORDER = (F("expires_on").asc(nulls_last=True), "arrived_at", "id")


@dataclass
class FefoSelection:
    units: list = field(default_factory=list)
    shortfall: int = 0

    @property
    def unit_ids(self):
        return [u.pk for u in self.units]


def select_fefo(product, quantity: int, *, state=InventoryUnit.State.AVAILABLE_LOCAL,
                warehouse=None, reserved_for=None, lock=False) -> FefoSelection:
    """Pick up to ``quantity`` units of ``product`` in FEFO order.

    Only reads. Pass ``lock=True`` inside a transaction to hold the picked rows.
    """
    if quantity < 0:
        raise ValidationError("Quantity cannot be negative.")
    if quantity == 0:
        return FefoSelection()

    qs = InventoryUnit.objects.filter(product=product, state=state)
    if warehouse is not None:
        qs = qs.filter(warehouse=warehouse)
    if reserved_for is not None:
        qs = qs.filter(reserved_for=reserved_for)
    qs = qs.order_by(*FEFO_ORDER)
    if lock:
        qs = qs.select_for_update()

    units = list(qs[:quantity])
    return FefoSelection(units=units, shortfall=quantity - len(units))


@transaction.atomic
def allocate_fefo(product, quantity: int, new_state: str, context: TransitionContext, *,
                  state=InventoryUnit.State.AVAILABLE_LOCAL, reserved_for=None,
                  strict=False) -> FefoSelection:
    """Select in FEFO order and move the picked units to ``new_state``.

    A partial pick is returned with its shortfall unless ``strict`` is set,
    in which case nothing is moved and InsufficientStockError is raised.
    ConflictError from the ledger propagates; callers retry the whole
    operation through ``with_conflict_retry``.
    """
    selection = select_fefo(product, quantity, state=state, reserved_for=reserved_for, lock=True)
    if strict and selection.shortfall:
        raise InsufficientStockError(
            f"Not enough stock for product {product.pk}. Missing qty={selection.shortfall}",
            product_id=product.pk, shortfall=selection.shortfall,
        )
    results = set_states(selection.unit_ids, new_state, context, expected_state=state)
    return FefoSelection(units=[r.unit for r in results], shortfall=selection.shortfall)


def expiring_units(days: int = 30, *, product=None, today=None):
    """Free units whose expiry falls within the next ``days`` days, soonest first.

    Units already past their date are left out.
    """
    if days <= 0:
        raise ValidationError("Days must be positive.")
    today = today or timezone.localdate()
    qs = InventoryUnit.objects.filter(
        state__in=FREE_STATES,
        expires_on__gt=today,
        expires_on__lte=today + timedelta(days=days),
    )
    if product is not None:
        qs = qs.filter(product=product)
    return qs.select_related("product", "warehouse").order_by(*FEFO_ORDER)
