import logging

from django.db import transaction

from core.exceptions import ValidationError
from core.models import NumberSeries
from documents.models import Requirement, RequirementLine
from inventory.services.ledger import free_stock

logger = logging.getLogger(__name__)


def _normalize_lines(lines):
    """Accept ``[(product, qty), ...]`` and merge repeated products."""
    merged = {}
    for product, qty in lines:
        if qty is None or int(qty) <= 0:
            raise ValidationError(f"Requested quantity for {product} must be positive.")
        prev = merged.get(product.pk, (product, 0))
        merged[product.pk] = (product, prev[1] + int(qty))
    if not merged:
        raise ValidationError("A requirement needs at least one line.")
    return list(merged.values())


@transaction.atomic
def create_requirement(*, lines, source=Requirement.Source.MANUAL, quotation=None, user_id="", notes=""):
    lines = _normalize_lines(lines)
    requirement = Requirement.objects.create(
        number=NumberSeries.next_for("REQ", "REQ-{year}-"),
        source=source,
        quotation=quotation,
        notes=notes,
        created_by=user_id,
    )
    RequirementLine.objects.bulk_create([
        RequirementLine(requirement=requirement, product=product, quantity_requested=qty)
        for product, qty in lines
    ])
    logger.info("Requirement %s created (%s, %s lines)", requirement.number, source, len(lines))
    return requirement


def create_from_shortfall(quotation, lines, user_id=""):
    """Default requirement service: one requirement for what a quotation could not reserve."""
    return create_requirement(
        lines=lines,
        source=Requirement.Source.COTIZACION,
        quotation=quotation,
        user_id=user_id,
        notes=f"Faltante de stock para {quotation.number}",
    )


def create_low_stock_requirement(minimums, *, user_id=""):
    """Raise one requirement for every product whose free local stock is under its minimum.

    ``minimums`` maps products to the stock level to restore. Returns None
    when nothing is short.
    """
    lines = []
    for product, minimum in minimums.items():
        local = free_stock(product).local
        if local < minimum:
            lines.append((product, minimum - local))
    if not lines:
        return None
    return create_requirement(lines=lines, source=Requirement.Source.STOCK_BAJO, user_id=user_id,
                              notes="Reposición por stock bajo")
