from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import connection
from django.utils import timezone

from core.exceptions import IllegalTransitionError, ValidationError
from core.models import ExchangeRate
from documents.models import Quotation, Reservation
from documents.services import quotations as svc
from inventory.models import InventoryUnit
from ledger.models import TreasuryMovement

State = Quotation.State
Unit = InventoryUnit.State


def failing_ledger(**kwargs):
    raise ConnectionError("treasury offline")


def _approx_days_ahead(moment, days):
    expected = timezone.now() + timedelta(days=days)
    return abs((moment - expected).total_seconds()) < 60


@pytest.mark.django_db
def test_create_quotation_snapshots_stock_and_totals(product, add_stock, miami, make_quotation):
    add_stock(product, 2)
    add_stock(product, 5, warehouse=miami, state=Unit.RECEIVED_USA)

    q = make_quotation((product, 3, "120.00"), discount="10.00", shipping_cost="15.00", includes_shipping=True)

    assert q.number.startswith("COT-")
    assert q.state == State.NUEVA
    assert q.subtotal == Decimal("360.00")
    assert q.total == Decimal("365.00")
    line = q.lines.get()
    assert (line.stock_local_at_quote, line.stock_usa_at_quote, line.requires_stock) == (2, 5, True)
    assert _approx_days_ahead(q.expires_at, 7)


@pytest.mark.django_db
def test_create_quotation_validates_input(product, make_quotation):
    with pytest.raises(ValidationError):
        make_quotation()
    with pytest.raises(ValidationError):
        make_quotation((product, 0, "10.00"))
    with pytest.raises(ValidationError):
        make_quotation((product, 1, "10.00"), discount="11.00")
    assert not Quotation.objects.exists()


@pytest.mark.django_db
def test_validate_and_revert(product, make_quotation):
    q = make_quotation((product, 1, "10.00"), validity_days=15)

    q = svc.validate_quotation(q, user_id="ana")
    assert q.state == State.VALIDADA
    assert q.validated_by == "ana"
    assert _approx_days_ahead(q.expires_at, 7)

    q = svc.revert_validation(q, user_id="ana")
    assert q.state == State.NUEVA
    assert q.validated_at is None
    assert _approx_days_ahead(q.expires_at, 15)


@pytest.mark.django_db
def test_commit_advance_rules(product, make_quotation):
    q = make_quotation((product, 1, "100.00"))

    with pytest.raises(ValidationError):
        svc.commit_advance(q, amount="100.01")
    with pytest.raises(ValidationError):
        svc.commit_advance(q, amount="0")
    assert Quotation.objects.get(pk=q.pk).state == State.NUEVA

    q = svc.commit_advance(q, amount="30.00", user_id="ana")
    assert q.state == State.PENDIENTE_ADELANTO
    assert q.advance_committed_percentage == Decimal("30.00")
    assert q.expires_at == q.advance_payment_deadline
    assert _approx_days_ahead(q.advance_payment_deadline, 3)
    assert not InventoryUnit.objects.filter(reserved_for=q).exists()


@pytest.mark.django_db
def test_payment_needs_committed_advance(product, make_quotation):
    q = make_quotation((product, 1, "100.00"))
    with pytest.raises(IllegalTransitionError):
        svc.register_advance_payment(q, amount="30.00", method="yape")


@pytest.mark.django_db
def test_confirm_needs_validation_or_paid_advance(product, make_quotation):
    q = make_quotation((product, 1, "100.00"))
    with pytest.raises(IllegalTransitionError):
        svc.confirm_quotation(q)
    svc.commit_advance(q, amount="30.00")
    with pytest.raises(IllegalTransitionError):
        svc.confirm_quotation(q)


@pytest.mark.django_db
def test_end_to_end_advance_reservation_and_sale(product, add_stock, lima, supplier, make_quotation):
    from documents.services.purchasing import create_purchase_order, send_purchase_order
    from documents.services.receiving import receive_purchase_order

    add_stock(product, 3)
    q = make_quotation((product, 4, "250.00"))
    assert q.total == Decimal("1000.00")

    svc.commit_advance(q, amount="300.00", user_id="ana")
    result = svc.register_advance_payment(q, amount="300.00", method="yape", reference="YP-001", user_id="ana")

    q = result.quotation
    assert q.state == State.ADELANTO_PAGADO
    assert _approx_days_ahead(q.expires_at, 90)
    assert result.created is True
    assert result.warnings == []
    assert result.payment.ledger_movement_id
    assert TreasuryMovement.objects.get(related_document=q.number).amount_pen == Decimal("300.00")

    reservation = result.reservation
    assert reservation.kind == Reservation.Kind.VIRTUAL
    assert reservation.virtual_quantity == 1
    assert reservation.requirement is not None
    assert InventoryUnit.objects.filter(reserved_for=q, state=Unit.RESERVED).count() == 3

    order = create_purchase_order(
        supplier=supplier, warehouse=lima, requirement=reservation.requirement,
        lines=[{"product": product, "quantity": 1, "unit_cost_usd": "20.00"}],
    )
    send_purchase_order(order)
    receive_purchase_order(order)
    assert InventoryUnit.objects.filter(reserved_for=q, state=Unit.RESERVED).count() == 4

    sale = svc.confirm_quotation(q, user_id="ana")

    assert Quotation.objects.get(pk=q.pk).state == State.CONFIRMADA
    assert sale.state == sale.State.ASIGNADA
    assert sale.stock_short is False
    assert sale.advance_applied == Decimal("300.00")
    assert sale.amount_due == Decimal("700.00")
    assert sale.units.filter(state=Unit.ASSIGNED_TO_SALE).count() == 4
    assert not InventoryUnit.objects.filter(state=Unit.RESERVED).exists()


@pytest.mark.django_db
def test_duplicate_payment_is_a_no_op(product, add_stock, make_quotation):
    add_stock(product, 2)
    q = make_quotation((product, 2, "50.00"))
    svc.commit_advance(q, amount="30.00")

    first = svc.register_advance_payment(q, amount="30.00", method="transferencia", reference="OP-77")
    second = svc.register_advance_payment(q, amount="30.00", method="transferencia", reference="OP-77")

    assert second.created is False
    assert second.payment.pk == first.payment.pk
    assert second.reservation.pk == first.reservation.pk
    assert Reservation.objects.count() == 1
    assert TreasuryMovement.objects.count() == 1

    with pytest.raises(IllegalTransitionError):
        svc.register_advance_payment(q, amount="30.00", method="transferencia", reference="OP-78")


@pytest.mark.django_db
def test_usd_payment_on_pen_quotation_is_converted(product, add_stock, rate_today, make_quotation):
    add_stock(product, 1)
    q = make_quotation((product, 1, "375.00"))
    assert q.exchange_rate == Decimal("3.750000")
    svc.commit_advance(q, amount="375.00")

    result = svc.register_advance_payment(q, amount="50.00", currency="USD", method="zelle", reference="Z-1")

    assert result.payment.exchange_rate == Decimal("3.750000")
    assert result.payment.amount_in_quotation_currency == Decimal("187.50")
    movement = TreasuryMovement.objects.get()
    assert (movement.currency, movement.amount_pen) == ("USD", Decimal("187.50"))


@pytest.mark.django_db
def test_ledger_failure_does_not_undo_payment(product, add_stock, make_quotation, settings):
    settings.RETAIL_IMPORT = {**settings.RETAIL_IMPORT, "PAYMENT_LEDGER": failing_ledger}
    add_stock(product, 1)
    q = make_quotation((product, 1, "100.00"))
    svc.commit_advance(q, amount="50.00")

    result = svc.register_advance_payment(q, amount="50.00", method="efectivo")

    assert Quotation.objects.get(pk=q.pk).state == State.ADELANTO_PAGADO
    assert result.warnings and "treasury offline" in result.warnings[0]
    assert result.payment.ledger_movement_id == ""


@pytest.mark.django_db
def test_reject_after_payment_releases_units_and_keeps_commitment(product, add_stock, make_quotation):
    units = add_stock(product, 1)
    q = make_quotation((product, 1, "100.00"))
    svc.commit_advance(q, amount="30.00")
    svc.register_advance_payment(q, amount="30.00", method="plin", reference="PL-1")
    assert InventoryUnit.objects.get(pk=units[0].pk).state == Unit.RESERVED

    q = svc.reject_quotation(q, reason="precio_alto", detail="Encontró más barato", expected_price="80.00",
                             competitor="Farmacia X", user_id="ana")

    assert q.state == State.RECHAZADA
    assert q.advance_committed_amount == Decimal("30.00")
    assert q.advance_committed_percentage == Decimal("30.00")
    assert q.rejection.reason == "precio_alto"
    assert q.rejection.expected_price == Decimal("80.00")
    unit = InventoryUnit.objects.get(pk=units[0].pk)
    assert unit.state == Unit.AVAILABLE_LOCAL
    assert unit.reserved_for is None
    assert Reservation.objects.get(quotation=q).active is False


@pytest.mark.django_db
def test_reject_with_only_a_committed_advance(product, make_quotation):
    q = make_quotation((product, 1, "100.00"))
    svc.commit_advance(q, amount="30.00")

    q = svc.reject_quotation(q, reason="sin_presupuesto")

    assert q.state == State.RECHAZADA
    assert q.advance_committed_amount == Decimal("30.00")
    with pytest.raises(ValidationError):
        svc.reject_quotation(make_quotation((product, 1, "5.00")), reason="no_reason")


@pytest.mark.django_db
def test_terminal_states_refuse_transitions(product, make_quotation):
    q = svc.reject_quotation(make_quotation((product, 1, "100.00")), reason="otro")
    with pytest.raises(IllegalTransitionError):
        svc.validate_quotation(q)
    with pytest.raises(IllegalTransitionError):
        svc.reject_quotation(q, reason="otro")
    with pytest.raises(IllegalTransitionError):
        svc.update_validity_days(q, 10)


@pytest.mark.django_db
def test_legacy_con_abono_reads_as_adelanto_pagado(product, add_stock, make_quotation):
    add_stock(product, 1)
    q = make_quotation((product, 1, "100.00"))
    svc.commit_advance(q, amount="20.00")
    svc.register_advance_payment(q, amount="20.00", method="yape", reference="Y-9")
    table = Quotation._meta.db_table
    with connection.cursor() as cursor:
        cursor.execute(f"UPDATE {table} SET state = %s WHERE id = %s", ["con_abono", q.pk])
        cursor.execute(f"SELECT state FROM {table} WHERE id = %s", [q.pk])
        assert cursor.fetchone()[0] == "con_abono"

    q = Quotation.objects.get(pk=q.pk)
    assert q.state == State.ADELANTO_PAGADO

    sale = svc.confirm_quotation(q)
    assert sale.state == sale.State.ASIGNADA


@pytest.mark.django_db
def test_overdue_quotations_expire_on_list(product, add_stock, make_quotation):
    add_stock(product, 1)
    paid = make_quotation((product, 1, "100.00"))
    svc.commit_advance(paid, amount="10.00")
    svc.register_advance_payment(paid, amount="10.00", method="yape", reference="Y-1")
    fresh = make_quotation((product, 1, "100.00"))
    past = timezone.now() - timedelta(days=1)
    Quotation.objects.filter(pk__in=[paid.pk, fresh.pk]).update(expires_at=past)

    expired = list(svc.list_quotations(state=State.VENCIDA))

    assert [q.pk for q in expired] == [paid.pk]
    assert Quotation.objects.get(pk=fresh.pk).state == State.NUEVA
    assert InventoryUnit.objects.filter(state=Unit.AVAILABLE_LOCAL).count() == 1


@pytest.mark.django_db
def test_expire_management_command(product, make_quotation, capsys):
    from django.core.management import call_command

    q = svc.validate_quotation(make_quotation((product, 1, "100.00")))
    Quotation.objects.filter(pk=q.pk).update(expires_at=timezone.now() - timedelta(hours=1))

    call_command("expire_quotations")

    assert Quotation.objects.get(pk=q.pk).state == State.VENCIDA
    assert q.number in capsys.readouterr().out


@pytest.mark.django_db
def test_update_validity_days(product, make_quotation):
    q = svc.validate_quotation(make_quotation((product, 1, "100.00")))

    q = svc.update_validity_days(q, 20)

    assert q.validity_days == 20
    assert _approx_days_ahead(q.expires_at, 20)
    with pytest.raises(ValidationError):
        svc.update_validity_days(q, 0)


@pytest.mark.django_db
def test_usd_advance_on_usd_quotation_is_booked_in_treasury(product, add_stock, rate_today, make_quotation):
    add_stock(product, 1)
    q = make_quotation((product, 1, "100.00"), currency="USD")
    svc.commit_advance(q, amount="30.00")

    result = svc.register_advance_payment(q, amount="30.00", method="zelle", reference="Z1")

    assert result.warnings == []
    assert result.payment.exchange_rate == Decimal("3.75")
    assert result.payment.amount_in_quotation_currency == Decimal("30.00")
    movement = TreasuryMovement.objects.get()
    assert (movement.currency, movement.amount, movement.amount_pen) == ("USD", Decimal("30.00"), Decimal("112.50"))


@pytest.mark.django_db
def test_usd_advance_falls_back_to_quotation_rate(product, add_stock, rate_today, make_quotation):
    add_stock(product, 1)
    q = make_quotation((product, 1, "100.00"), currency="USD")
    svc.commit_advance(q, amount="40.00")
    ExchangeRate.objects.all().delete()

    result = svc.register_advance_payment(q, amount="40.00", method="zelle", reference="Z2")

    assert result.warnings == []
    assert TreasuryMovement.objects.get().amount_pen == Decimal("150.00")


@pytest.mark.django_db
def test_malformed_numbers_raise_validation_error(product, make_quotation):
    q = make_quotation((product, 1, "100.00"))
    for bad in ("NaN", "Infinity", "-Infinity", "sNaN", "treinta", None):
        with pytest.raises(ValidationError):
            svc.commit_advance(q, amount=bad)
    with pytest.raises(ValidationError):
        svc.register_advance_payment(q, amount="NaN", method="yape")
    with pytest.raises(ValidationError):
        make_quotation((product, "dos", "10.00"))
    with pytest.raises(ValidationError):
        make_quotation((product, 1, "Infinity"))
    assert Quotation.objects.get(pk=q.pk).state == State.NUEVA


def _paid(make_quotation, product, reference="Y-1"):
    q = make_quotation((product, 1, "100.00"))
    svc.commit_advance(q, amount="30.00")
    return svc.register_advance_payment(q, amount="30.00", method="yape", reference=reference).quotation


@pytest.mark.django_db
def test_extend_reservation_keeps_history_and_is_capped(product, add_stock, make_quotation):
    add_stock(product, 1)
    q = _paid(make_quotation, product)
    before = Reservation.objects.get(quotation=q).valid_until

    reservation = svc.extend_reservation(q, hours=48, reason="Cliente de viaje", user_id="ana")

    assert reservation.valid_until == before + timedelta(hours=48)
    assert Quotation.objects.get(pk=q.pk).expires_at == reservation.valid_until
    extension = reservation.extensions.get()
    assert (extension.hours, extension.reason, extension.extended_by) == (48, "Cliente de viaje", "ana")
    assert extension.previous_valid_until == before

    svc.extend_reservation(q, hours=24, reason="Espera transferencia")
    svc.extend_reservation(q, hours=24, reason="Feriado")
    with pytest.raises(ValidationError):
        svc.extend_reservation(q, hours=24, reason="Una más")
    assert reservation.extensions.count() == 3
    assert Reservation.objects.get(pk=reservation.pk).valid_until == before + timedelta(hours=96)


@pytest.mark.django_db
def test_extend_reservation_rules(product, add_stock, make_quotation):
    with pytest.raises(IllegalTransitionError):
        svc.extend_reservation(make_quotation((product, 1, "100.00")), hours=24, reason="Sin adelanto")

    add_stock(product, 1)
    q = _paid(make_quotation, product)
    with pytest.raises(ValidationError):
        svc.extend_reservation(q, hours=24, reason="  ")
    with pytest.raises(ValidationError):
        svc.extend_reservation(q, hours=0, reason="Cero")

    svc.reject_quotation(q, reason="otro")
    with pytest.raises(IllegalTransitionError):
        svc.extend_reservation(q, hours=24, reason="Tarde")
