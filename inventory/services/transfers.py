"""Moving units from the USA warehouses to Peru.

Free units travel through the ledger states (received_usa -> in_transit ->
available_local). Reserved units keep their reservation and only change
location.
"""

import logging

from django.db import transaction

from core.exceptions import ValidationError
from inventory.models import InventoryUnit
from inventory.services.ledger import TransitionContext, move_units, set_state
from inventory.services.reservations import fill_virtual_reservations

logger = logging.getLogger(__name__)

State = InventoryUnit.State


@transaction.atomic
def ship_to_local(unit_ids, *, user_id="", note=""):
    """Dispatch units from the USA. Free units become ``in_transit``."""
    context = TransitionContext(user_id=user_id, note=note or "Envío a Perú")
    shipped = []
    for unit in InventoryUnit.objects.filter(pk__in=list(unit_ids)).select_related("warehouse").order_by("id"):
        if unit.warehouse.is_local:
            raise ValidationError(f"Unit {unit.pk} is already in a local warehouse.")
        if unit.state == State.RESERVED:
            continue
        shipped.append(set_state(unit.pk, State.IN_TRANSIT, context, expected_state=State.RECEIVED_USA).unit)
    logger.info("Shipped %s units to Peru", len(shipped))
    return shipped


@transaction.atomic
def receive_shipment(unit_ids, warehouse, *, user_id="", note=""):
    """Check units in at a local warehouse.

    In-transit units become ``available_local``; reserved units are only
    relocated so their reservation survives the trip. Paid quotations still
    waiting on these products get first pick of the new stock.
    """
    if not warehouse.is_local:
        raise ValidationError(f"Warehouse {warehouse.code} is not a local warehouse.")

    context = TransitionContext(user_id=user_id, warehouse=warehouse, note=note or f"Ingreso a {warehouse.code}")
    received = []
    reserved_ids = []
    for unit in InventoryUnit.objects.filter(pk__in=list(unit_ids)).order_by("id"):
        if unit.state == State.RESERVED:
            reserved_ids.append(unit.pk)
            continue
        received.append(set_state(unit.pk, State.AVAILABLE_LOCAL, context, expected_state=State.IN_TRANSIT).unit)

    received.extend(move_units(reserved_ids, warehouse, TransitionContext(user_id=user_id, note=context.note)))
    fill_virtual_reservations({unit.product_id for unit in received}, user_id=user_id)
    logger.info("Received %s units at %s", len(received), warehouse.code)
    return received
