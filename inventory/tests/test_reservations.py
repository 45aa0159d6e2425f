from datetime import timedelta

import pytest
from django.utils import timezone

from core.exceptions import ConflictError
from documents.models import Requirement, Reservation
from inventory.models import InventoryUnit
from inventory.services.ledger import TransitionContext
from inventory.services.reservations import (
    fill_virtual_reservation,
    reconcile_pending_releases,
    release_reservation,
    reserve_for_quotation,
)

State = InventoryUnit.State


def failing_requirement_service(quotation, lines, user_id=""):
    raise RuntimeError("requirement service down")


@pytest.mark.django_db
def test_full_stock_gives_physical_reservation(product, add_stock, make_quotation):
    add_stock(product, 5)
    quotation = make_quotation((product, 3, "50.00"))

    reservation = reserve_for_quotation(quotation, user_id="ana")

    assert reservation.kind == Reservation.Kind.FISICA
    assert reservation.requirement is None
    assert reservation.estimated_fulfilment is None
    line = reservation.lines.get()
    assert (line.requested, line.physically_reserved, line.virtual_quantity) == (3, 3, 0)
    assert InventoryUnit.objects.filter(reserved_for=quotation, state=State.RESERVED).count() == 3


@pytest.mark.django_db
def test_shortfall_gives_virtual_reservation_with_requirement(product, add_stock, make_quotation):
    add_stock(product, 1)
    quotation = make_quotation((product, 4, "50.00"))

    reservation = reserve_for_quotation(quotation, user_id="ana")

    assert reservation.kind == Reservation.Kind.VIRTUAL
    assert reservation.virtual_quantity == 3
    assert reservation.estimated_fulfilment == timezone.localdate() + timedelta(days=30)
    requirement = reservation.requirement
    assert requirement.source == Requirement.Source.COTIZACION
    assert requirement.quotation_id == quotation.pk
    assert requirement.requested_quantity(product) == 3


@pytest.mark.django_db
def test_open_requirement_of_the_quotation_is_reused(product, make_quotation):
    from documents.services.requirements import create_from_shortfall

    quotation = make_quotation((product, 2, "50.00"))
    existing = create_from_shortfall(quotation, [(product, 2)])

    reservation = reserve_for_quotation(quotation)

    assert reservation.requirement_id == existing.pk
    assert Requirement.objects.count() == 1


@pytest.mark.django_db
def test_pre_reserved_units_count_first(product, add_stock, make_quotation):
    quotation = make_quotation((product, 3, "50.00"))
    add_stock(product, 2, state=State.RESERVED, reserved_for=quotation)
    add_stock(product, 5)

    reservation = reserve_for_quotation(quotation)

    assert reservation.kind == Reservation.Kind.FISICA
    assert InventoryUnit.objects.filter(reserved_for=quotation).count() == 3
    assert InventoryUnit.objects.filter(state=State.AVAILABLE_LOCAL).count() == 4


@pytest.mark.django_db
def test_failing_requirement_service_keeps_virtual_reservation(product, make_quotation, settings):
    settings.RETAIL_IMPORT = {**settings.RETAIL_IMPORT, "REQUIREMENT_SERVICE": failing_requirement_service}
    quotation = make_quotation((product, 2, "50.00"))

    reservation = reserve_for_quotation(quotation)

    assert reservation.kind == Reservation.Kind.VIRTUAL
    assert reservation.requirement is None


@pytest.mark.django_db
def test_release_returns_units_to_the_pool_of_their_country(product, add_stock, miami, make_quotation):
    quotation = make_quotation((product, 2, "50.00"))
    local = add_stock(product, 1, state=State.RESERVED, reserved_for=quotation)[0]
    usa = add_stock(product, 1, warehouse=miami, state=State.RESERVED, reserved_for=quotation)[0]

    result = release_reservation(quotation, TransitionContext(user_id="ana"))

    assert sorted(result.released) == sorted([local.pk, usa.pk])
    assert result.pending == []
    assert InventoryUnit.objects.get(pk=local.pk).state == State.AVAILABLE_LOCAL
    assert InventoryUnit.objects.get(pk=usa.pk).state == State.RECEIVED_USA


@pytest.mark.django_db
def test_release_marks_reservation_inactive(product, add_stock, make_quotation):
    add_stock(product, 2)
    quotation = make_quotation((product, 2, "50.00"))
    reserve_for_quotation(quotation)

    release_reservation(quotation, TransitionContext())

    reservation = Reservation.objects.get(quotation=quotation)
    assert reservation.active is False
    assert reservation.released_at is not None
    assert reservation.release_pending is False


@pytest.mark.django_db
def test_reconcile_clears_pending_marker(product, add_stock, make_quotation):
    add_stock(product, 2)
    quotation = make_quotation((product, 2, "50.00"))
    reservation = reserve_for_quotation(quotation)
    unit = InventoryUnit.objects.filter(reserved_for=quotation).first()
    Reservation.objects.filter(pk=reservation.pk).update(release_pending=True, pending_unit_ids=[unit.pk])

    still_pending = reconcile_pending_releases()

    assert still_pending == 0
    assert Reservation.objects.get(pk=reservation.pk).release_pending is False
    assert not InventoryUnit.objects.filter(reserved_for=quotation).exists()


@pytest.mark.django_db
def test_conflicting_unit_is_left_pending_and_retried(product, add_stock, make_quotation, monkeypatch):
    from inventory.services import reservations

    add_stock(product, 2)
    quotation = make_quotation((product, 2, "50.00"))
    reserve_for_quotation(quotation)
    stuck, free = InventoryUnit.objects.filter(reserved_for=quotation).order_by("id").values_list("pk", flat=True)

    real_set_state = reservations.set_state

    def set_state_with_conflict(unit_id, *args, **kwargs):
        if unit_id == stuck:
            raise ConflictError("unit moved", unit_id=unit_id)
        return real_set_state(unit_id, *args, **kwargs)

    monkeypatch.setattr(reservations, "set_state", set_state_with_conflict)
    result = release_reservation(quotation, TransitionContext())

    assert result.released == [free]
    assert result.pending == [stuck]
    reservation = Reservation.objects.get(quotation=quotation)
    assert reservation.release_pending is True
    assert reservation.pending_unit_ids == [stuck]

    monkeypatch.undo()
    assert reconcile_pending_releases() == 0
    assert InventoryUnit.objects.get(pk=stuck).state == State.AVAILABLE_LOCAL


@pytest.mark.django_db
def test_virtual_reservation_turns_physical_as_stock_arrives(product, add_stock, make_quotation):
    add_stock(product, 1)
    quotation = make_quotation((product, 3, "10.00"))
    reservation = reserve_for_quotation(quotation)
    assert reservation.kind == Reservation.Kind.VIRTUAL

    add_stock(product, 1)
    partial = fill_virtual_reservation(quotation)
    line = partial.lines.get()
    assert partial.kind == Reservation.Kind.VIRTUAL
    assert (line.physically_reserved, line.virtual_quantity) == (2, 1)

    add_stock(product, 4)
    filled = fill_virtual_reservation(quotation, user_id="ana")
    line = filled.lines.get()
    assert filled.kind == Reservation.Kind.FISICA
    assert filled.estimated_fulfilment is None
    assert (line.requested, line.physically_reserved, line.virtual_quantity) == (3, 3, 0)
    assert InventoryUnit.objects.filter(reserved_for=quotation, state=State.RESERVED).count() == 3
    assert InventoryUnit.objects.filter(state=State.AVAILABLE_LOCAL).count() == 3


@pytest.mark.django_db
def test_fill_counts_units_already_reserved_for_the_quotation(product, add_stock, make_quotation):
    quotation = make_quotation((product, 2, "10.00"))
    reserve_for_quotation(quotation)
    add_stock(product, 2, state=State.RESERVED, reserved_for=quotation)
    add_stock(product, 5)

    reservation = fill_virtual_reservation(quotation)

    assert reservation.kind == Reservation.Kind.FISICA
    assert InventoryUnit.objects.filter(reserved_for=quotation).count() == 2
    assert InventoryUnit.objects.filter(state=State.AVAILABLE_LOCAL).count() == 5


@pytest.mark.django_db
def test_fill_ignores_physical_and_released_reservations(product, add_stock, make_quotation):
    add_stock(product, 1)
    physical = make_quotation((product, 1, "10.00"))
    reserve_for_quotation(physical)
    assert fill_virtual_reservation(physical) is None

    released = make_quotation((product, 4, "10.00"))
    reserve_for_quotation(released)
    release_reservation(released, TransitionContext(user_id="ana"))
    add_stock(product, 4)
    assert fill_virtual_reservation(released) is None
    assert not InventoryUnit.objects.filter(reserved_for=released).exists()
