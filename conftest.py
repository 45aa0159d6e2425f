from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from core.models import ExchangeRate
from documents.services.quotations import create_quotation
from inventory.models import InventoryUnit
from inventory.services.ledger import UnitBatch, create_units
from masterdata.models import Product, Supplier, Warehouse


@pytest.fixture
def product(db):
    return Product.objects.create(sku="VIT-C-1000", brand="NatureMade", name="Vitamin C 1000mg", presentation="100 tabs")


@pytest.fixture
def other_product(db):
    return Product.objects.create(sku="OMEGA-3", brand="Kirkland", name="Omega 3", presentation="180 caps")


@pytest.fixture
def lima(db):
    return Warehouse.objects.create(code="LIM", name="Lima", country=Warehouse.Country.PERU)


@pytest.fixture
def miami(db):
    return Warehouse.objects.create(code="MIA", name="Miami", country=Warehouse.Country.USA)


@pytest.fixture
def supplier(db):
    return Supplier.objects.create(code="IHERB", name="iHerb")


@pytest.fixture
def rate_today(db):
    return ExchangeRate.objects.create(
        date=timezone.localdate(), currency="PEN", buy=Decimal("3.7400"), sell=Decimal("3.7500"),
    )


@pytest.fixture
def add_stock(lima):
    """Create ``qty`` units of a product; one batch per call."""
    arrivals = {"n": 0}

    def _add(product, qty, *, warehouse=None, expires_on=None, state=InventoryUnit.State.AVAILABLE_LOCAL,
             cost="10.0000", reserved_for=None, payment_rate=None):
        arrivals["n"] += 1
        return create_units(UnitBatch(
            product=product,
            warehouse=warehouse or lima,
            quantity=qty,
            unit_cost_usd=Decimal(cost),
            state=state,
            expires_on=expires_on,
            reserved_for=reserved_for,
            payment_rate=payment_rate,
            arrived_at=timezone.now() - timedelta(days=100) + timedelta(minutes=arrivals["n"]),
            user_id="tester",
        ))

    return _add


@pytest.fixture
def make_quotation(db):
    def _make(*lines, **kwargs):
        kwargs.setdefault("customer_name", "María Quispe")
        kwargs.setdefault("user_id", "ana")
        return create_quotation(
            lines=[{"product": p, "quantity": q, "unit_price": price} for p, q, price in lines],
            **kwargs,
        )

    return _make
