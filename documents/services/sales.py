import logging
from dataclasses import dataclass, field
from decimal import Decimal

from django.db import transaction
from django_fsm import can_proceed

from core.exceptions import IllegalTransitionError, InsufficientStockError
from core.models import NumberSeries
from documents.models import Sale, SaleLine
from inventory.models import InventoryUnit
from inventory.services.fefo import allocate_fefo
from inventory.services.ledger import TransitionContext, set_state
from inventory.services.reservations import release_reservation
from inventory.services.retry import with_conflict_retry

logger = logging.getLogger(__name__)

State = InventoryUnit.State


@dataclass
class AllocationOutcome:
    sale: Sale
    shortfalls: dict = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.shortfalls


def _lock(sale) -> Sale:
    return Sale.objects.select_for_update().get(pk=getattr(sale, "pk", sale))


@transaction.atomic
def create_sale_from_quotation(quotation, *, user_id="") -> Sale:
    """Copy the quotation into a new sale in ``pendiente_stock``."""
    payment = getattr(quotation, "advance_payment", None)
    advance = payment.amount_in_quotation_currency if payment is not None else Decimal("0.00")

    sale = Sale.objects.create(
        number=NumberSeries.next_for("VT", "VT-{year}-"),
        quotation=quotation,
        customer_name=quotation.customer_name,
        customer_email=quotation.customer_email,
        customer_phone=quotation.customer_phone,
        customer_document=quotation.customer_document,
        delivery_address=quotation.delivery_address,
        currency=quotation.currency,
        subtotal=quotation.subtotal,
        discount=quotation.discount,
        shipping_cost=quotation.shipping_cost if quotation.includes_shipping else Decimal("0.00"),
        total=quotation.total,
        advance_applied=advance,
        amount_due=max(Decimal("0.00"), quotation.total - advance),
        created_by=user_id,
    )
    for line in quotation.lines.select_related("product"):
        SaleLine.objects.create(
            sale=sale,
            product=line.product,
            description=line.description,
            quantity=line.quantity,
            unit_price=line.unit_price,
        )
    return sale


def allocate_sale(sale, *, user_id="") -> AllocationOutcome:
    """Assign units to every line that is still missing some.

    Units reserved for the originating quotation are used first, then free
    local stock in FEFO order. Whatever is left is reported as shortfall
    and the sale is flagged ``stock_short``.
    """
    return with_conflict_retry(_allocate_sale, sale, user_id)


def _allocate_sale(sale, user_id) -> AllocationOutcome:
    sale = _lock(sale)
    quotation = sale.quotation
    shortfalls = {}

    for line in sale.lines.select_related("product"):
        missing = line.missing_quantity
        if not missing:
            continue
        context = TransitionContext(
            user_id=user_id, quotation=quotation, sale=sale, sale_line=line,
            note=f"Asignación a venta {sale.number}",
        )
        if quotation is not None:
            missing -= len(allocate_fefo(
                line.product, missing, State.ASSIGNED_TO_SALE, context,
                state=State.RESERVED, reserved_for=quotation,
            ).units)
        if missing:
            missing = allocate_fefo(line.product, missing, State.ASSIGNED_TO_SALE, context).shortfall
        if missing:
            shortfalls[line.product_id] = shortfalls.get(line.product_id, 0) + missing

    _update_costs(sale, complete=not shortfalls)
    sale.stock_short = bool(shortfalls)
    if not shortfalls and can_proceed(sale.mark_allocated):
        sale.mark_allocated(by_user=user_id)
    sale.save()

    if shortfalls:
        logger.warning("Sale %s is short of stock: %s", sale.number, shortfalls)
    else:
        logger.info("Sale %s fully allocated", sale.number)
    return AllocationOutcome(sale=sale, shortfalls=shortfalls)


def _update_costs(sale, *, complete):
    cost_total = Decimal("0.00")
    for line in sale.lines.all():
        line_cost = sum(
            (unit.cost_in(sale.currency) for unit in line.units.filter(
                state__in=[State.ASSIGNED_TO_SALE, State.DELIVERED])),
            Decimal("0"),
        ).quantize(Decimal("0.01"))
        line.cost_total = line_cost
        line.save(update_fields=["cost_total"])
        cost_total += line_cost
    sale.cost_total = cost_total
    sale.margin = (sale.total - cost_total) if complete else None


@transaction.atomic
def deliver_sale(sale, *, user_id="") -> Sale:
    """Hand the goods over. Every line must be fully assigned."""
    sale = _lock(sale)
    if sale.state != Sale.State.ASIGNADA:
        raise IllegalTransitionError(
            f"Sale {sale.number} cannot be delivered from state {sale.state}.", obj=sale, transition="deliver",
        )
    for line in sale.lines.all():
        if line.missing_quantity:
            raise InsufficientStockError(
                f"Sale {sale.number} line {line.line_no} is missing {line.missing_quantity} units.",
                product_id=line.product_id, shortfall=line.missing_quantity,
            )

    context = TransitionContext(user_id=user_id, sale=sale, note=f"Entrega de venta {sale.number}")
    for unit_id in sale.units.filter(state=State.ASSIGNED_TO_SALE).values_list("pk", flat=True):
        set_state(unit_id, State.DELIVERED, context, expected_state=State.ASSIGNED_TO_SALE)

    sale.deliver(by_user=user_id)
    sale.save()
    logger.info("Sale %s delivered", sale.number)
    return sale


@transaction.atomic
def cancel_sale(sale, *, user_id="") -> Sale:
    """Cancel a sale that has not been delivered and return its units to the pool."""
    sale = _lock(sale)
    if not can_proceed(sale.cancel):
        raise IllegalTransitionError(
            f"Sale {sale.number} cannot be cancelled from state {sale.state}.", obj=sale, transition="cancel",
        )

    context = TransitionContext(user_id=user_id, sale=sale, note=f"Anulación de venta {sale.number}")
    units = list(sale.units.filter(state=State.ASSIGNED_TO_SALE).select_related("warehouse"))
    for unit in units:
        set_state(unit.pk, State.CANCELLED_RETURNED_TO_POOL, context, expected_state=State.ASSIGNED_TO_SALE)
        back = State.AVAILABLE_LOCAL if unit.warehouse.is_local else State.RECEIVED_USA
        set_state(unit.pk, back, TransitionContext(user_id=user_id, note=context.note))

    # Units received for the quotation but not yet assigned
    released = []
    if sale.quotation_id is not None:
        released = release_reservation(sale.quotation, TransitionContext(user_id=user_id, note=context.note)).released

    sale.stock_short = False
    sale.cancel(by_user=user_id)
    sale.save()
    logger.info("Sale %s cancelled, %s units back in stock", sale.number, len(units) + len(released))
    return sale
