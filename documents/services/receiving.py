"""Goods receipt: turn a purchase order into inventory units.

Each line becomes ``quantity`` units carrying the landed cost (line cost
plus duty, freight and other costs prorated per unit). When the order was
raised for a quotation, the units the quotation asked for are born reserved
for it and the rest go to the free pool.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from django.db import transaction
from django.utils import timezone
from django_fsm import can_proceed

from core.exceptions import IllegalTransitionError, ValidationError
from documents.models import PurchaseOrder, Quotation, Sale
from documents.services.sales import allocate_sale
from inventory.models import InventoryUnit
from inventory.services.ledger import TransitionContext, UnitBatch, create_units
from inventory.services.reservations import fill_virtual_reservations, release_reservation

logger = logging.getLogger(__name__)

COST_PLACES = Decimal("0.0001")

# Quotations that still want the stock they caused to be bought
RESERVING_STATES = Quotation.ACTIVE_STATES + (Quotation.State.CONFIRMADA,)


@dataclass
class ReceiptResult:
    order: PurchaseOrder
    reserved_units: list = field(default_factory=list)
    free_units: list = field(default_factory=list)


def landed_extra_per_unit(order: PurchaseOrder, total_units: int) -> Decimal:
    if total_units <= 0:
        return Decimal("0")
    return order.extra_costs_usd / Decimal(total_units)


def _reserving_quotation(order: PurchaseOrder):
    requirement = order.requirement
    if requirement is None or requirement.quotation_id is None:
        return None
    quotation = requirement.quotation
    waiting_sale = Sale.objects.filter(quotation=quotation, state=Sale.State.PENDIENTE_STOCK).exists()
    if quotation.state == Quotation.State.CONFIRMADA and not waiting_sale:
        logger.info("Sale of %s is not waiting for stock; receipt of %s goes to free stock",
                    quotation.number, order.number)
        return None
    if quotation.state not in RESERVING_STATES:
        logger.info("Quotation %s is %s; receipt of %s goes to free stock",
                    quotation.number, quotation.state, order.number)
        return None
    return quotation


@transaction.atomic
def receive_purchase_order(order, *, user_id="") -> ReceiptResult:
    """Receive ``order`` once. A second call raises IllegalTransitionError."""
    order = PurchaseOrder.objects.select_for_update().get(pk=getattr(order, "pk", order))

    if order.inventory_generated:
        raise IllegalTransitionError(
            f"Inventory for {order.number} was already generated.", obj=order, transition="receive",
        )
    if not can_proceed(order.receive):
        raise IllegalTransitionError(
            f"Purchase order {order.number} cannot be received from state {order.state}.",
            obj=order, transition="receive",
        )

    lines = list(order.lines.select_related("product"))
    if not lines:
        raise ValidationError(f"Purchase order {order.number} has no lines.")

    total_units = sum(line.quantity for line in lines)
    extra = landed_extra_per_unit(order, total_units)

    quotation = _reserving_quotation(order)
    remaining_requested = {}
    if quotation is not None:
        for line in lines:
            remaining_requested.setdefault(line.product_id, order.requirement.requested_quantity(line.product_id))

    warehouse = order.warehouse
    free_state = InventoryUnit.State.AVAILABLE_LOCAL if warehouse.is_local else InventoryUnit.State.RECEIVED_USA
    now = timezone.now()
    result = ReceiptResult(order=order)

    for line in lines:
        unit_cost = (line.unit_cost_usd + extra).quantize(COST_PLACES)
        to_reserve = min(remaining_requested.get(line.product_id, 0), line.quantity)
        if to_reserve:
            remaining_requested[line.product_id] -= to_reserve

        common = dict(
            product=line.product,
            warehouse=warehouse,
            unit_cost_usd=unit_cost,
            lot=line.lot or order.number,
            expires_on=line.expires_on,
            purchase_rate=order.purchase_rate,
            payment_rate=order.payment_rate,
            purchase_order=order,
            purchase_order_line=line,
            arrived_at=now,
            user_id=user_id,
        )
        if to_reserve:
            result.reserved_units += create_units(UnitBatch(
                quantity=to_reserve, state=InventoryUnit.State.RESERVED, reserved_for=quotation, **common,
            ))
        if line.quantity - to_reserve:
            result.free_units += create_units(UnitBatch(
                quantity=line.quantity - to_reserve, state=free_state, **common,
            ))

    order.receive(by_user=user_id)
    order.inventory_generated = True
    order.save()

    requirement = order.requirement
    if requirement is not None and can_proceed(requirement.complete):
        requirement.complete(by_user=user_id)
        requirement.save()

    if quotation is not None and quotation.state == Quotation.State.CONFIRMADA:
        _complete_waiting_sale(quotation, user_id)
    fill_virtual_reservations({line.product_id for line in lines}, user_id=user_id)

    logger.info("Received %s: %s units reserved, %s free (extra %.4f USD/unit)",
                order.number, len(result.reserved_units), len(result.free_units), extra)
    return result


def _complete_waiting_sale(quotation, user_id):
    """Hand the units just reserved for a confirmed quotation to its sale.

    Whatever the sale does not need goes back to the free pool.
    """
    outcome = allocate_sale(quotation.sale, user_id=user_id)
    release_reservation(quotation, TransitionContext(user_id=user_id, note=f"Sobrante de compra {quotation.number}"))
    return outcome
