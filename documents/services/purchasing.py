import logging
from decimal import Decimal

from django.db import transaction
from django_fsm import can_proceed

from core.exceptions import IllegalTransitionError, ValidationError
from core.models import NumberSeries
from documents.models import PurchaseOrder, PurchaseOrderLine

logger = logging.getLogger(__name__)


def _lock(order) -> PurchaseOrder:
    return PurchaseOrder.objects.select_for_update().get(pk=getattr(order, "pk", order))


def _ensure_can(order, method, action):
    if not can_proceed(method):
        raise IllegalTransitionError(
            f"Purchase order {order.number} cannot {action} from state {order.state}.",
            obj=order, transition=method.__name__,
        )


@transaction.atomic
def create_purchase_order(*, supplier, warehouse, lines, requirement=None, duty_usd=Decimal("0.00"),
                          freight_usd=Decimal("0.00"), other_costs_usd=Decimal("0.00"),
                          purchase_rate=None, user_id=""):
    """Create a draft order.

    ``lines`` are dicts with ``product``, ``quantity``, ``unit_cost_usd`` and
    optionally ``lot`` and ``expires_on``.
    """
    if not lines:
        raise ValidationError("A purchase order needs at least one line.")
    for extra in (duty_usd, freight_usd, other_costs_usd):
        if Decimal(extra) < 0:
            raise ValidationError("Extra costs cannot be negative.")
    for line in lines:
        if int(line["quantity"]) <= 0:
            raise ValidationError("Line quantity must be positive.")
        if Decimal(line["unit_cost_usd"]) < 0:
            raise ValidationError("Line cost cannot be negative.")

    order = PurchaseOrder.objects.create(
        number=NumberSeries.next_for("OC", "OC-{year}-"),
        supplier=supplier,
        warehouse=warehouse,
        requirement=requirement,
        duty_usd=Decimal(duty_usd),
        freight_usd=Decimal(freight_usd),
        other_costs_usd=Decimal(other_costs_usd),
        purchase_rate=purchase_rate,
        created_by=user_id,
    )
    for line in lines:
        PurchaseOrderLine.objects.create(
            order=order,
            product=line["product"],
            quantity=int(line["quantity"]),
            unit_cost_usd=Decimal(line["unit_cost_usd"]),
            lot=line.get("lot", ""),
            expires_on=line.get("expires_on"),
        )
    order.recalculate_totals()
    order.save()
    return order


@transaction.atomic
def send_purchase_order(order, *, user_id=""):
    order = _lock(order)
    _ensure_can(order, order.send, "be sent")
    order.send(by_user=user_id)
    order.save()
    requirement = order.requirement
    if requirement is not None and can_proceed(requirement.mark_ordered):
        requirement.mark_ordered(by_user=user_id)
        requirement.save()
    logger.info("Purchase order %s sent", order.number)
    return order


@transaction.atomic
def mark_in_transit(order, *, courier="", tracking_number="", user_id=""):
    order = _lock(order)
    _ensure_can(order, order.mark_in_transit, "go in transit")
    order.mark_in_transit(by_user=user_id)
    order.courier = courier or order.courier
    order.tracking_number = tracking_number or order.tracking_number
    order.save()
    return order


@transaction.atomic
def register_purchase_payment(order, *, amount_usd, rate=None, user_id=""):
    """Record a supplier payment; only ``payment_state`` and ``payment_rate`` change."""
    amount_usd = Decimal(amount_usd)
    if amount_usd <= 0:
        raise ValidationError("Payment amount must be positive.")
    order = _lock(order)
    if order.state == PurchaseOrder.State.CANCELADA:
        raise IllegalTransitionError(f"Purchase order {order.number} is cancelled.", obj=order)
    order.apply_payment(amount_usd, rate)
    order.save()
    logger.info("Purchase order %s payment %s USD (%s)", order.number, amount_usd, order.payment_state)
    return order


@transaction.atomic
def cancel_purchase_order(order, *, user_id=""):
    order = _lock(order)
    _ensure_can(order, order.cancel, "be cancelled")
    order.cancel(by_user=user_id)
    order.save()
    return order
