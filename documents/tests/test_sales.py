import threading
from decimal import Decimal

import pytest
from django.db import connection

from core.exceptions import IllegalTransitionError
from documents.models import Requirement, Sale
from documents.services import quotations as quotation_service
from documents.services.sales import allocate_sale, cancel_sale, deliver_sale
from inventory.models import InventoryUnit
from inventory.services import fefo

Unit = InventoryUnit.State


def _validated(make_quotation, *lines):
    return quotation_service.validate_quotation(make_quotation(*lines))


@pytest.mark.django_db
def test_confirm_from_validated_allocates_fefo_and_computes_margin(product, add_stock, make_quotation):
    from datetime import date

    late = add_stock(product, 1, expires_on=date(2028, 1, 1), cost="20.0000", payment_rate=Decimal("3.700000"))
    early = add_stock(product, 1, expires_on=date(2027, 1, 1), cost="20.0000", payment_rate=Decimal("3.700000"))
    q = _validated(make_quotation, (product, 1, "150.00"))

    sale = quotation_service.confirm_quotation(q, user_id="ana")

    assert sale.number.startswith("VT-")
    assert sale.state == Sale.State.ASIGNADA
    assert list(sale.units.values_list("pk", flat=True)) == [early[0].pk]
    assert InventoryUnit.objects.get(pk=late[0].pk).state == Unit.AVAILABLE_LOCAL
    assert sale.cost_total == Decimal("74.00")
    assert sale.margin == Decimal("76.00")
    assert sale.amount_due == Decimal("150.00")


@pytest.mark.django_db
def test_two_confirmations_never_share_units(product, add_stock, make_quotation):
    add_stock(product, 2)
    first = _validated(make_quotation, (product, 2, "10.00"))
    second = _validated(make_quotation, (product, 2, "10.00"))

    sale_a = quotation_service.confirm_quotation(first)
    sale_b = quotation_service.confirm_quotation(second)

    assert sale_a.state == Sale.State.ASIGNADA
    assert sale_b.state == Sale.State.PENDIENTE_STOCK
    assert sale_b.stock_short is True
    assert sale_b.margin is None
    units_a = set(sale_a.units.values_list("pk", flat=True))
    units_b = set(sale_b.units.values_list("pk", flat=True))
    assert len(units_a) == 2
    assert units_b == set()
    requirement = Requirement.objects.get(quotation=second)
    assert requirement.requested_quantity(product) == 2


@pytest.mark.django_db
def test_short_sale_is_completed_when_stock_arrives(product, add_stock, make_quotation):
    add_stock(product, 1)
    sale = quotation_service.confirm_quotation(_validated(make_quotation, (product, 3, "10.00")))
    assert sale.lines.get().missing_quantity == 2

    add_stock(product, 2)
    outcome = allocate_sale(sale)

    assert outcome.complete
    assert outcome.sale.state == Sale.State.ASIGNADA
    assert outcome.sale.stock_short is False


@pytest.mark.django_db
def test_deliver_moves_units_to_delivered(product, add_stock, make_quotation):
    add_stock(product, 2)
    sale = quotation_service.confirm_quotation(_validated(make_quotation, (product, 2, "10.00")))

    sale = deliver_sale(sale, user_id="ana")

    assert sale.state == Sale.State.ENTREGADA
    assert sale.delivered_by == "ana"
    assert set(sale.units.values_list("state", flat=True)) == {Unit.DELIVERED}


@pytest.mark.django_db
def test_short_sale_cannot_be_delivered(product, add_stock, make_quotation):
    add_stock(product, 1)
    sale = quotation_service.confirm_quotation(_validated(make_quotation, (product, 2, "10.00")))

    with pytest.raises(IllegalTransitionError):
        deliver_sale(sale)
    assert InventoryUnit.objects.get(sale=sale).state == Unit.ASSIGNED_TO_SALE


@pytest.mark.django_db
def test_cancel_returns_units_to_pool(product, add_stock, make_quotation):
    units = add_stock(product, 2)
    sale = quotation_service.confirm_quotation(_validated(make_quotation, (product, 2, "10.00")))

    sale = cancel_sale(sale)

    assert sale.state == Sale.State.CANCELADA
    for unit in InventoryUnit.objects.filter(pk__in=[u.pk for u in units]):
        assert unit.state == Unit.AVAILABLE_LOCAL
        assert unit.sale is None
    assert InventoryUnit.objects.get(pk=units[0].pk).movements.filter(
        to_state=Unit.CANCELLED_RETURNED_TO_POOL).count() == 1

    with pytest.raises(IllegalTransitionError):
        cancel_sale(sale)


@pytest.mark.django_db
def test_cancel_also_frees_units_reserved_for_the_quotation(product, add_stock, make_quotation):
    q = _validated(make_quotation, (product, 2, "10.00"))
    sale = quotation_service.confirm_quotation(q)
    assert sale.state == Sale.State.PENDIENTE_STOCK
    reserved = add_stock(product, 2, state=Unit.RESERVED, reserved_for=q)

    cancel_sale(sale)

    for unit in InventoryUnit.objects.filter(pk__in=[u.pk for u in reserved]):
        assert unit.state == Unit.AVAILABLE_LOCAL
        assert unit.reserved_for is None


@pytest.mark.django_db
def test_unit_taken_mid_allocation_is_retried_on_fresh_stock(product, add_stock, make_quotation, monkeypatch):
    add_stock(product, 3)
    q = _validated(make_quotation, (product, 2, "10.00"))
    real_select = fefo.select_fefo
    picks = []

    def select_then_lose_one(product, quantity, **kwargs):
        selection = real_select(product, quantity, **kwargs)
        if kwargs.get("state", Unit.AVAILABLE_LOCAL) == Unit.AVAILABLE_LOCAL and selection.units:
            picks.append(selection.unit_ids)
            if len(picks) == 1:
                # Another checkout grabs the first unit after it was picked
                InventoryUnit.objects.filter(pk=selection.unit_ids[0]).update(state=Unit.DELIVERED)
        return selection

    monkeypatch.setattr(fefo, "select_fefo", select_then_lose_one)

    sale = quotation_service.confirm_quotation(q)

    assert len(picks) == 2
    assert sale.state == Sale.State.ASIGNADA
    assert sale.units.count() == 2
    assert InventoryUnit.objects.filter(state=Unit.ASSIGNED_TO_SALE).count() == 2


@pytest.mark.django_db(transaction=True)
def test_simultaneous_confirmations_never_share_units(product, add_stock, make_quotation):
    add_stock(product, 2)
    quotations = [_validated(make_quotation, (product, 2, "10.00")) for _ in range(2)]
    start = threading.Barrier(len(quotations))
    errors = []

    def confirm(quotation):
        try:
            start.wait()
            quotation_service.confirm_quotation(quotation, user_id="ana")
        except Exception as exc:
            errors.append(exc)
        finally:
            connection.close()

    threads = [threading.Thread(target=confirm, args=(q,)) for q in quotations]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    sales = list(Sale.objects.order_by("state"))
    assert [s.state for s in sales] == [Sale.State.ASIGNADA, Sale.State.PENDIENTE_STOCK]
    assert [s.stock_short for s in sales] == [False, True]
    first, second = (set(s.units.values_list("pk", flat=True)) for s in sales)
    assert len(first) == 2
    assert first.isdisjoint(second)
    assert InventoryUnit.objects.filter(state=Unit.ASSIGNED_TO_SALE).count() == 2
