"""Reservation manager: sets stock aside for a quotation whose advance is paid.

Physical units are taken in FEFO order. Whatever cannot be covered from
stock becomes a virtual reservation backed by a purchase requirement.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import timedelta

from django.db import transaction
from django.utils import timezone

from core.conf import get_collaborator, get_setting
from core.exceptions import ConflictError
from inventory.models import InventoryUnit
from inventory.services.fefo import allocate_fefo
from inventory.services.ledger import TransitionContext, set_state
from inventory.services.retry import with_conflict_retry

logger = logging.getLogger(__name__)


@dataclass
class ReleaseResult:
    released: list = field(default_factory=list)
    pending: list = field(default_factory=list)


def requested_by_product(quotation) -> "OrderedDict":
    """Total quantity per product, in line order."""
    requested = OrderedDict()
    for line in quotation.lines.select_related("product").order_by("line_no"):
        product, qty = requested.get(line.product_id, (line.product, 0))
        requested[line.product_id] = (product, qty + line.quantity)
    return requested


def reserve_for_quotation(quotation, *, user_id=""):
    """Reserve stock for ``quotation`` and record the outcome as a Reservation.

    Conflicts with concurrent allocations restart the whole reservation.
    """
    return with_conflict_retry(_reserve, quotation, user_id)


def _reserve(quotation, user_id):
    from documents.models import Reservation, ReservationLine

    context = TransitionContext(
        user_id=user_id, quotation=quotation, note=f"Reserva por adelanto {quotation.number}",
    )

    plan = []
    for product, qty in requested_by_product(quotation).values():
        already = InventoryUnit.objects.filter(
            product=product, state=InventoryUnit.State.RESERVED, reserved_for=quotation,
        ).count()
        needed = max(0, qty - already)
        selection = allocate_fefo(product, needed, InventoryUnit.State.RESERVED, context)
        physical = min(qty, already + len(selection.units))
        plan.append((product, qty, physical, qty - physical))

    shortfall = [(product, virtual) for product, _, _, virtual in plan if virtual > 0]

    requirement = None
    estimated = None
    if shortfall:
        requirement = _requirement_for_shortfall(quotation, shortfall, user_id)
        estimated = timezone.localdate() + timedelta(days=get_setting("VIRTUAL_RESERVATION_ETA_DAYS"))

    reservation = Reservation.objects.create(
        quotation=quotation,
        kind=Reservation.Kind.VIRTUAL if shortfall else Reservation.Kind.FISICA,
        valid_until=timezone.now() + timedelta(days=get_setting("ADVANCE_PAID_VIGENCY_DAYS")),
        requirement=requirement,
        estimated_fulfilment=estimated,
    )
    ReservationLine.objects.bulk_create([
        ReservationLine(
            reservation=reservation,
            product=product,
            requested=qty,
            physically_reserved=physical,
            virtual_quantity=virtual,
        )
        for product, qty, physical, virtual in plan
    ])

    logger.info("Reservation %s for %s: %s", reservation.kind, quotation.number,
                ", ".join(f"{p.sku} {ph}/{q}" for p, q, ph, _ in plan))
    return reservation


def fill_virtual_reservation(quotation, *, user_id=""):
    """Cover the virtual part of ``quotation``'s reservation from free stock.

    Units already reserved for the quotation (for example born reserved at
    goods receipt) count first. The reservation turns ``fisica`` once no
    line is missing anything. Returns the reservation, or None when there
    is no active virtual one.
    """
    return with_conflict_retry(_fill_virtual, quotation, user_id)


def _fill_virtual(quotation, user_id):
    from documents.models import Reservation

    reservation = (Reservation.objects.select_for_update()
                   .filter(quotation=quotation, active=True, kind=Reservation.Kind.VIRTUAL)
                   .first())
    if reservation is None:
        return None

    context = TransitionContext(
        user_id=user_id, quotation=quotation, note=f"Reserva virtual cubierta {quotation.number}",
    )
    for line in reservation.lines.select_related("product"):
        if not line.virtual_quantity:
            continue
        already = InventoryUnit.objects.filter(
            product=line.product, state=InventoryUnit.State.RESERVED, reserved_for=quotation,
        ).count()
        picked = allocate_fefo(line.product, max(0, line.requested - already),
                               InventoryUnit.State.RESERVED, context)
        line.physically_reserved = min(line.requested, already + len(picked.units))
        line.virtual_quantity = line.requested - line.physically_reserved
        line.save(update_fields=["physically_reserved", "virtual_quantity"])

    if not reservation.virtual_quantity:
        reservation.kind = Reservation.Kind.FISICA
        reservation.estimated_fulfilment = None
        reservation.save(update_fields=["kind", "estimated_fulfilment"])
        logger.info("Reservation of %s is now fully physical", quotation.number)
    return reservation


def fill_virtual_reservations(products=None, *, user_id=""):
    """Run ``fill_virtual_reservation`` for every paid quotation still waiting on stock.

    Oldest reservations are served first. ``products`` narrows the scan to
    reservations missing one of those products. Returns the reservations
    that became ``fisica``.
    """
    from documents.models import Quotation, Reservation

    waiting = (Reservation.objects
               .filter(active=True, kind=Reservation.Kind.VIRTUAL,
                       quotation__state=Quotation.State.ADELANTO_PAGADO)
               .select_related("quotation")
               .order_by("reserved_at", "id"))
    if products is not None:
        waiting = waiting.filter(lines__virtual_quantity__gt=0,
                                 lines__product__in=list(products)).distinct()

    filled = []
    for reservation in list(waiting):
        result = fill_virtual_reservation(reservation.quotation, user_id=user_id)
        if result is not None and result.kind == Reservation.Kind.FISICA:
            filled.append(result)
    return filled


def _requirement_for_shortfall(quotation, shortfall, user_id):
    """Reuse the quotation's open requirement, or ask the requirement service for one."""
    from documents.models import Requirement

    existing = (quotation.requirements
                .filter(state__in=Requirement.OPEN_STATES)
                .order_by("-created_at", "-id")
                .first())
    if existing is not None:
        return existing

    create_from_shortfall = get_collaborator("REQUIREMENT_SERVICE")
    try:
        with transaction.atomic():
            return create_from_shortfall(quotation, shortfall, user_id=user_id)
    except Exception:
        logger.warning("Requirement service failed for %s; reservation stays virtual without one",
                       quotation.number, exc_info=True)
        return None


def release_reservation(quotation, context: TransitionContext) -> ReleaseResult:
    """Put every unit still reserved for ``quotation`` back into the free pool.

    Units that fail with a conflict are left alone and recorded on the
    reservation so ``reconcile_pending_releases`` can retry them later.
    """
    from documents.models import Reservation

    context.quotation = quotation
    result = ReleaseResult()
    units = (InventoryUnit.objects
             .filter(reserved_for=quotation, state=InventoryUnit.State.RESERVED)
             .select_related("warehouse")
             .order_by("id"))
    for unit in units:
        target = InventoryUnit.State.AVAILABLE_LOCAL if unit.warehouse.is_local else InventoryUnit.State.RECEIVED_USA
        try:
            with transaction.atomic():
                set_state(unit.pk, target, context, expected_state=InventoryUnit.State.RESERVED)
            result.released.append(unit.pk)
        except ConflictError as exc:
            logger.warning("Could not release unit %s of %s: %s", unit.pk, quotation.number, exc)
            result.pending.append(unit.pk)

    reservation = Reservation.objects.filter(quotation=quotation).first()
    if reservation is not None:
        reservation.active = False
        reservation.released_at = timezone.now()
        reservation.release_pending = bool(result.pending)
        reservation.pending_unit_ids = result.pending
        reservation.save()

    if result.released or result.pending:
        logger.info("Released %s units of %s (%s pending)",
                    len(result.released), quotation.number, len(result.pending))
    return result


def reconcile_pending_releases(*, user_id="system") -> int:
    """Retry releases that could not complete. Returns how many are still pending."""
    from documents.models import Reservation

    still_pending = 0
    for reservation in Reservation.objects.filter(release_pending=True).select_related("quotation"):
        context = TransitionContext(user_id=user_id, note=f"Reintento de liberación {reservation.quotation.number}")
        with transaction.atomic():
            result = release_reservation(reservation.quotation, context)
        still_pending += len(result.pending)
    return still_pending
