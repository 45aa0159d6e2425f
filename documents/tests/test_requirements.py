import pytest

from core.exceptions import ValidationError
from documents.models import Requirement
from documents.services.requirements import create_low_stock_requirement, create_requirement


@pytest.mark.django_db
def test_repeated_products_are_merged(product, other_product):
    requirement = create_requirement(lines=[(product, 2), (other_product, 1), (product, 3)], user_id="ana")

    assert requirement.number.startswith("REQ-")
    assert requirement.state == Requirement.State.PENDIENTE
    assert requirement.requested_quantity(product) == 5
    assert requirement.requested_quantity(other_product.pk) == 1


@pytest.mark.django_db
def test_requirement_needs_positive_lines(product):
    with pytest.raises(ValidationError):
        create_requirement(lines=[])
    with pytest.raises(ValidationError):
        create_requirement(lines=[(product, 0)])
    assert not Requirement.objects.exists()


@pytest.mark.django_db
def test_low_stock_requirement_tops_up_local_stock(product, other_product, add_stock, miami):
    add_stock(product, 2)
    add_stock(product, 10, warehouse=miami, state="received_usa")
    add_stock(other_product, 6)

    requirement = create_low_stock_requirement({product: 5, other_product: 6})

    assert requirement.source == Requirement.Source.STOCK_BAJO
    assert requirement.requested_quantity(product) == 3
    assert requirement.requested_quantity(other_product) == 0
    assert create_low_stock_requirement({other_product: 1}) is None


@pytest.mark.django_db
def test_reconcile_command_reports_nothing_pending(capsys):
    from django.core.management import call_command

    call_command("reconcile_releases")

    assert "Units still pending release: 0" in capsys.readouterr().out
