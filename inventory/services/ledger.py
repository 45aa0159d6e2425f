"""Unit ledger: the single mutation entry point for InventoryUnit rows.

Other services never assign ``unit.state`` themselves. They go through
``create_units`` (goods receipt), ``set_state`` / ``set_states`` (every later
change) and read through ``query_units``.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from django.db import models, transaction
from django.utils import timezone
from simple_history.utils import bulk_create_with_history

from core.exceptions import ConflictError, ValidationError
from inventory.models import InventoryUnit, UnitMovement

logger = logging.getLogger(__name__)

State = InventoryUnit.State

ALLOWED_TRANSITIONS = {
    State.RECEIVED_USA: {State.IN_TRANSIT, State.RESERVED},
    State.IN_TRANSIT: {State.AVAILABLE_LOCAL, State.RESERVED},
    State.AVAILABLE_LOCAL: {State.RESERVED, State.ASSIGNED_TO_SALE},
    State.RESERVED: {State.AVAILABLE_LOCAL, State.RECEIVED_USA, State.ASSIGNED_TO_SALE},
    State.ASSIGNED_TO_SALE: {State.DELIVERED, State.CANCELLED_RETURNED_TO_POOL},
    State.CANCELLED_RETURNED_TO_POOL: {State.AVAILABLE_LOCAL, State.RECEIVED_USA},
    State.DELIVERED: set(),
}

# States a unit may be born in at goods receipt.
CREATION_STATES = {State.RECEIVED_USA, State.IN_TRANSIT, State.AVAILABLE_LOCAL, State.RESERVED}

FREE_STATES = (State.AVAILABLE_LOCAL, State.RECEIVED_USA)


@dataclass
class TransitionContext:
    """Who moves the unit and on behalf of which document."""
    user_id: str = ""
    quotation: object = None
    sale: object = None
    sale_line: object = None
    warehouse: object = None
    note: str = ""


@dataclass
class TransitionResult:
    unit: InventoryUnit
    changed: bool


@dataclass
class UnitBatch:
    product: object
    warehouse: object
    quantity: int
    unit_cost_usd: Decimal
    state: str = State.AVAILABLE_LOCAL
    lot: str = ""
    expires_on: Optional[date] = None
    purchase_rate: Optional[Decimal] = None
    payment_rate: Optional[Decimal] = None
    purchase_order: object = None
    purchase_order_line: object = None
    reserved_for: object = None
    arrived_at: Optional[datetime] = None
    user_id: str = ""


def _movement_kind(from_state, to_state):
    if not from_state:
        return UnitMovement.Kind.RESERVATION if to_state == State.RESERVED else UnitMovement.Kind.RECEIPT
    if to_state == State.RESERVED:
        return UnitMovement.Kind.RESERVATION
    if to_state == State.ASSIGNED_TO_SALE:
        return UnitMovement.Kind.ASSIGNMENT
    if to_state == State.DELIVERED:
        return UnitMovement.Kind.DELIVERY
    if from_state == State.RESERVED:
        return UnitMovement.Kind.RELEASE
    if from_state == State.CANCELLED_RETURNED_TO_POOL or to_state == State.CANCELLED_RETURNED_TO_POOL:
        return UnitMovement.Kind.RETURN
    return UnitMovement.Kind.TRANSFER


def _document_ref(context: TransitionContext, unit=None):
    """(type, id, number) of the document behind a movement."""
    if context.sale is not None:
        return "sale", context.sale.pk, context.sale.number
    if context.quotation is not None:
        return "quotation", context.quotation.pk, context.quotation.number
    if unit is not None and unit.purchase_order_id:
        return "purchase_order", unit.purchase_order_id, unit.purchase_order.number
    return "", None, ""


@transaction.atomic
def create_units(batch: UnitBatch) -> list:
    """Create ``batch.quantity`` units for one product line.

    Returns the created units (with primary keys). Each unit gets an initial
    movement pointing at the purchase order.
    """
    if batch.quantity < 0:
        raise ValidationError("Quantity cannot be negative.")
    if batch.state not in CREATION_STATES:
        raise ValidationError(f"Units cannot be created in state {batch.state}.")
    if batch.state == State.RESERVED and batch.reserved_for is None:
        raise ValidationError("Reserved units need the quotation they are reserved for.")
    if batch.quantity == 0:
        return []

    now = timezone.now()
    reserved = batch.state == State.RESERVED
    units = [
        InventoryUnit(
            product=batch.product,
            warehouse=batch.warehouse,
            lot=batch.lot,
            expires_on=batch.expires_on,
            unit_cost_usd=batch.unit_cost_usd,
            purchase_rate=batch.purchase_rate,
            payment_rate=batch.payment_rate,
            purchase_order=batch.purchase_order,
            purchase_order_line=batch.purchase_order_line,
            state=batch.state,
            reserved_for=batch.reserved_for if reserved else None,
            reserved_at=now if reserved else None,
            arrived_at=batch.arrived_at or now,
            created_by=batch.user_id,
        )
        for _ in range(batch.quantity)
    ]
    units = bulk_create_with_history(units, InventoryUnit, default_change_reason="receipt")

    order = batch.purchase_order
    if reserved:
        note = f"Recepción y reserva automática para cotización {batch.reserved_for.number}"
    else:
        note = "Recepción inicial de lote"
    UnitMovement.objects.bulk_create([
        UnitMovement(
            unit=unit,
            kind=_movement_kind("", batch.state),
            to_state=batch.state,
            to_warehouse=batch.warehouse,
            document_type="purchase_order" if order is not None else "",
            document_id=order.pk if order is not None else None,
            document_number=order.number if order is not None else "",
            note=note,
            user_id=batch.user_id,
        )
        for unit in units
    ])

    logger.info("Created %s units of product %s in %s (%s)",
                len(units), batch.product.pk, batch.warehouse.code, batch.state)
    return units


def _same_event(unit: InventoryUnit, new_state: str, context: TransitionContext) -> bool:
    """True when ``unit`` already reflects this business event."""
    if unit.state != new_state:
        return False
    if new_state == State.RESERVED:
        return context.quotation is not None and unit.reserved_for_id == context.quotation.pk
    if new_state in (State.ASSIGNED_TO_SALE, State.DELIVERED):
        return context.sale is not None and unit.sale_id == context.sale.pk
    return True


def _check_precondition(unit: InventoryUnit, new_state: str, context: TransitionContext, expected_state):
    if expected_state is not None and unit.state != expected_state:
        raise ConflictError(
            f"Unit {unit.pk} is {unit.state}, expected {expected_state}.",
            unit_id=unit.pk, current_state=unit.state,
        )
    if new_state not in ALLOWED_TRANSITIONS[unit.state]:
        raise ConflictError(
            f"Unit {unit.pk} cannot move from {unit.state} to {new_state}.",
            unit_id=unit.pk, current_state=unit.state,
        )
    if unit.state == State.RESERVED:
        # A reservation can only be consumed or released by its own quotation.
        owner = context.quotation.pk if context.quotation is not None else None
        if unit.reserved_for_id != owner:
            raise ConflictError(
                f"Unit {unit.pk} is reserved for quotation {unit.reserved_for_id}.",
                unit_id=unit.pk, current_state=unit.state,
            )
    if new_state == State.RESERVED and context.quotation is None:
        raise ValidationError("Reserving a unit needs a quotation.")
    if new_state == State.ASSIGNED_TO_SALE and context.sale is None:
        raise ValidationError("Assigning a unit needs a sale.")
    if unit.state == State.ASSIGNED_TO_SALE and context.sale is not None and unit.sale_id != context.sale.pk:
        raise ConflictError(
            f"Unit {unit.pk} belongs to sale {unit.sale_id}.",
            unit_id=unit.pk, current_state=unit.state,
        )


def _apply(unit: InventoryUnit, new_state: str, context: TransitionContext, now):
    if new_state == State.RESERVED:
        unit.reserved_for = context.quotation
        unit.reserved_at = now
    elif new_state == State.ASSIGNED_TO_SALE:
        unit.reserved_for = None
        unit.reserved_at = None
        unit.sale = context.sale
        unit.sale_line = context.sale_line
        unit.assigned_at = now
    elif new_state == State.DELIVERED:
        unit.delivered_at = now
    elif new_state == State.CANCELLED_RETURNED_TO_POOL:
        unit.sale = None
        unit.sale_line = None
        unit.assigned_at = None
    elif new_state in FREE_STATES:
        unit.reserved_for = None
        unit.reserved_at = None
    if context.warehouse is not None:
        unit.warehouse = context.warehouse
    unit.state = new_state


@transaction.atomic
def set_state(unit_id, new_state: str, context: TransitionContext, *, expected_state=None) -> TransitionResult:
    """Move one unit to ``new_state``.

    The row is locked first, so the precondition check and the write see the
    same version of the unit. Re-applying the same business event is a no-op
    (``changed=False``); any other mismatch raises ConflictError.
    """
    unit = InventoryUnit.objects.select_for_update().get(pk=unit_id)

    if _same_event(unit, new_state, context):
        return TransitionResult(unit=unit, changed=False)

    _check_precondition(unit, new_state, context, expected_state)

    from_state = unit.state
    from_warehouse_id = unit.warehouse_id
    doc_type, doc_id, doc_number = _document_ref(context, unit)

    _apply(unit, new_state, context, timezone.now())
    unit._change_reason = context.note or f"{from_state} -> {new_state}"
    unit.save()

    UnitMovement.objects.create(
        unit=unit,
        kind=_movement_kind(from_state, new_state),
        from_state=from_state,
        to_state=new_state,
        from_warehouse_id=from_warehouse_id,
        to_warehouse_id=unit.warehouse_id,
        document_type=doc_type,
        document_id=doc_id,
        document_number=doc_number,
        note=context.note[:255],
        user_id=context.user_id,
    )
    return TransitionResult(unit=unit, changed=True)


@transaction.atomic
def set_states(unit_ids, new_state: str, context: TransitionContext, *, expected_state=None) -> list:
    """Move a set of units as one atomic step; any conflict rolls back all of them."""
    return [set_state(pk, new_state, context, expected_state=expected_state) for pk in unit_ids]


@transaction.atomic
def move_units(unit_ids, warehouse, context: TransitionContext) -> list:
    """Change the location of units without touching their state."""
    moved = []
    for unit in InventoryUnit.objects.select_for_update().filter(pk__in=list(unit_ids)).order_by("id"):
        if unit.warehouse_id == warehouse.pk:
            continue
        from_warehouse_id = unit.warehouse_id
        unit.warehouse = warehouse
        unit._change_reason = context.note or "transfer"
        unit.save()
        doc_type, doc_id, doc_number = _document_ref(context)
        UnitMovement.objects.create(
            unit=unit,
            kind=UnitMovement.Kind.TRANSFER,
            from_state=unit.state,
            to_state=unit.state,
            from_warehouse_id=from_warehouse_id,
            to_warehouse=warehouse,
            document_type=doc_type,
            document_id=doc_id,
            document_number=doc_number,
            note=context.note[:255],
            user_id=context.user_id,
        )
        moved.append(unit)
    return moved


def query_units(product=None, state=None, warehouse=None, country=None):
    """Read-only view of the ledger with directory fields joined."""
    qs = InventoryUnit.objects.select_related("product", "warehouse")
    if product is not None:
        qs = qs.filter(product=product)
    if state is not None:
        if isinstance(state, (list, tuple, set)):
            qs = qs.filter(state__in=list(state))
        else:
            qs = qs.filter(state=state)
    if warehouse is not None:
        qs = qs.filter(warehouse=warehouse)
    if country is not None:
        qs = qs.filter(warehouse__country=country)
    return qs


@dataclass
class FreeStock:
    local: int
    usa: int

    @property
    def total(self) -> int:
        return self.local + self.usa


def free_stock(product) -> FreeStock:
    """Unreserved units of ``product``: sellable in Peru, and waiting in the USA."""
    counts = InventoryUnit.objects.filter(product=product, state__in=FREE_STATES).aggregate(
        local=models.Count("id", filter=models.Q(state=State.AVAILABLE_LOCAL)),
        usa=models.Count("id", filter=models.Q(state=State.RECEIVED_USA)),
    )
    return FreeStock(local=counts["local"] or 0, usa=counts["usa"] or 0)


def unit_stats(product=None) -> dict:
    """Unit counts per state, optionally for one product."""
    qs = InventoryUnit.objects.all()
    if product is not None:
        qs = qs.filter(product=product)
    stats = {state: 0 for state in State.values}
    for row in qs.values("state").annotate(n=models.Count("id")):
        stats[row["state"]] = row["n"]
    return stats
