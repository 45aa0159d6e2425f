"""Quotation lifecycle: the service side of ``Quotation``'s state machine.

Each public function locks the quotation row, checks the transition with
``can_proceed`` and performs any inventory work (reservation, release,
allocation) in the same transaction as the state write. Calls to the
payment ledger happen after the commit and never undo a transition.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from django.db import transaction
from django.utils import timezone
from django_fsm import can_proceed

from core.conf import get_collaborator, get_setting
from core.exceptions import IllegalTransitionError, ValidationError
from core.models import Currency, NumberSeries
from core.services.fx import convert
from documents.models import (
    AdvancePayment,
    PaymentMethod,
    Quotation,
    QuotationLine,
    Rejection,
    Requirement,
    Reservation,
    ReservationExtension,
)
from documents.services.sales import allocate_sale, create_sale_from_quotation
from inventory.services.ledger import TransitionContext, free_stock
from inventory.services.reservations import release_reservation, reserve_for_quotation

logger = logging.getLogger(__name__)

MONEY = Decimal("0.01")

State = Quotation.State


@dataclass
class AdvancePaymentResult:
    quotation: Quotation
    payment: AdvancePayment
    reservation: object
    created: bool = True
    warnings: list = field(default_factory=list)


def _money(value, label) -> Decimal:
    try:
        amount = Decimal(str(value))
        if not amount.is_finite():
            raise InvalidOperation
        return amount.quantize(MONEY)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{label} is not a valid amount: {value!r}")


def _quantity(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Quantity is not a whole number: {value!r}")


def _lock(quotation) -> Quotation:
    return Quotation.objects.select_for_update().get(pk=getattr(quotation, "pk", quotation))


def _ensure_can(quotation, method, action):
    if not can_proceed(method):
        raise IllegalTransitionError(
            f"Quotation {quotation.number} cannot {action} from state {quotation.state}.",
            obj=quotation, transition=method.__name__,
        )


def _current_rate(currency=Currency.PEN):
    """Sell rate from the configured provider, or None when it is unavailable."""
    provider = get_collaborator("EXCHANGE_RATE_PROVIDER")
    try:
        return provider(currency).sell
    except Exception:
        logger.warning("Exchange rate provider unavailable", exc_info=True)
        return None


@transaction.atomic
def create_quotation(*, customer_name, lines, user_id="", currency=Currency.PEN, customer_email="",
                     customer_phone="", customer_document="", delivery_address="",
                     channel=Quotation.Channel.DIRECTO, discount="0.00", shipping_cost="0.00",
                     includes_shipping=False, validity_days=None, notes="") -> Quotation:
    """Create a quotation in ``nueva``.

    ``lines`` are dicts with ``product``, ``quantity`` and ``unit_price``.
    The free stock of each product is copied onto its line.
    """
    if not customer_name:
        raise ValidationError("Customer name is required.")
    if currency not in Currency.values:
        raise ValidationError(f"Unsupported currency {currency}.")
    if not lines:
        raise ValidationError("A quotation needs at least one line.")

    discount = _money(discount, "Discount")
    shipping_cost = _money(shipping_cost, "Shipping cost")
    if discount < 0 or shipping_cost < 0:
        raise ValidationError("Discount and shipping cost cannot be negative.")

    cleaned = []
    for line in lines:
        quantity = _quantity(line.get("quantity"))
        unit_price = _money(line["unit_price"], "Unit price")
        if quantity <= 0:
            raise ValidationError("Line quantity must be positive.")
        if unit_price < 0:
            raise ValidationError("Unit price cannot be negative.")
        cleaned.append((line["product"], quantity, unit_price, line.get("description", "")))

    subtotal = sum((Decimal(q) * p for _, q, p, _ in cleaned), Decimal("0.00"))
    if discount > subtotal:
        raise ValidationError("Discount cannot exceed the subtotal.")

    validity_days = validity_days or get_setting("NEW_QUOTATION_VIGENCY_DAYS")
    if validity_days <= 0:
        raise ValidationError("Validity days must be positive.")

    quotation = Quotation.objects.create(
        number=NumberSeries.next_for("COT", "COT-{year}-"),
        customer_name=customer_name,
        customer_email=customer_email,
        customer_phone=customer_phone,
        customer_document=customer_document,
        delivery_address=delivery_address,
        channel=channel,
        currency=currency,
        exchange_rate=_current_rate(),
        discount=discount,
        shipping_cost=shipping_cost,
        includes_shipping=includes_shipping,
        validity_days=validity_days,
        expires_at=timezone.now() + timedelta(days=validity_days),
        notes=notes,
        created_by=user_id,
    )
    for product, quantity, unit_price, description in cleaned:
        stock = free_stock(product)
        QuotationLine.objects.create(
            quotation=quotation,
            product=product,
            description=description,
            quantity=quantity,
            unit_price=unit_price,
            stock_local_at_quote=stock.local,
            stock_usa_at_quote=stock.usa,
            requires_stock=stock.local < quantity,
        )
    quotation.recalculate_totals()
    quotation.save()
    logger.info("Quotation %s created for %s, total %s %s",
                quotation.number, customer_name, quotation.total, currency)
    return quotation


@transaction.atomic
def validate_quotation(quotation, *, user_id="") -> Quotation:
    quotation = _lock(quotation)
    _ensure_can(quotation, quotation.validate, "be validated")
    quotation.validate(by_user=user_id)
    quotation.save()
    return quotation


@transaction.atomic
def revert_validation(quotation, *, user_id="") -> Quotation:
    quotation = _lock(quotation)
    _ensure_can(quotation, quotation.revert_validation, "be reverted to nueva")
    quotation.revert_validation(by_user=user_id, description="Corrección de validación")
    quotation.save()
    return quotation


@transaction.atomic
def commit_advance(quotation, *, amount, percentage=None, deadline_days=None, user_id="") -> Quotation:
    """Record the advance the customer agreed to pay. Inventory is untouched."""
    amount = _money(amount, "Advance amount")
    quotation = _lock(quotation)
    _ensure_can(quotation, quotation.commit_advance, "commit an advance")

    if amount <= 0:
        raise ValidationError("Advance amount must be positive.")
    if amount > quotation.total:
        raise ValidationError(f"Advance {amount} exceeds quotation total {quotation.total}.")
    if percentage is None:
        percentage = (amount * 100 / quotation.total).quantize(MONEY) if quotation.total else Decimal("100.00")

    days = deadline_days or get_setting("ADVANCE_PAYMENT_DEADLINE_DAYS")
    if days <= 0:
        raise ValidationError("Payment deadline must be at least one day.")
    deadline = timezone.now() + timedelta(days=days)

    quotation.commit_advance(amount, Decimal(percentage), deadline, by_user=user_id)
    quotation.save()
    logger.info("Quotation %s: advance of %s committed, due %s", quotation.number, amount, deadline)
    return quotation


def register_advance_payment(quotation, *, amount, method, user_id="", currency=None, reference="",
                             exchange_rate=None) -> AdvancePaymentResult:
    """Record the paid advance and reserve stock for the quotation.

    Repeating the call with the same reference once the quotation is paid
    returns the existing payment and reservation. The payment ledger is
    written after the commit; its failure only adds a warning.
    """
    amount = _money(amount, "Payment amount")
    if amount <= 0:
        raise ValidationError("Payment amount must be positive.")
    if method not in PaymentMethod.values:
        raise ValidationError(f"Unknown payment method {method}.")

    current = Quotation.objects.get(pk=getattr(quotation, "pk", quotation))
    currency = currency or current.currency
    if currency not in Currency.values:
        raise ValidationError(f"Unsupported currency {currency}.")

    # USD payments always carry a rate
    rate = None
    if currency != current.currency or currency == Currency.USD:
        rate = exchange_rate or _current_rate() or current.exchange_rate
        if rate is None and currency != current.currency:
            raise ValidationError(f"No exchange rate available to convert {currency} to {current.currency}.")
        if rate is not None:
            rate = Decimal(rate)

    with transaction.atomic():
        quotation = _lock(current)
        existing = AdvancePayment.objects.filter(quotation=quotation).first()
        if existing is not None and quotation.state == State.ADELANTO_PAGADO and existing.reference == reference:
            logger.info("Advance payment %r for %s already registered", reference, quotation.number)
            return AdvancePaymentResult(
                quotation=quotation, payment=existing,
                reservation=getattr(quotation, "reservation", None), created=False,
            )
        _ensure_can(quotation, quotation.mark_advance_paid, "register an advance payment")

        if currency != quotation.currency:
            in_quotation_currency = convert(amount, currency, quotation.currency, rate)
        else:
            in_quotation_currency = amount

        reservation = reserve_for_quotation(quotation, user_id=user_id)
        payment = AdvancePayment.objects.create(
            quotation=quotation,
            amount=amount,
            currency=currency,
            exchange_rate=rate,
            amount_in_quotation_currency=in_quotation_currency,
            method=method,
            reference=reference,
            registered_by=user_id,
        )
        quotation.mark_advance_paid(by_user=user_id)
        quotation.save()

    result = AdvancePaymentResult(quotation=quotation, payment=payment, reservation=reservation)
    _record_in_ledger(quotation, payment, user_id, result.warnings)
    logger.info("Quotation %s: advance %s %s paid via %s, reservation %s",
                quotation.number, amount, currency, method, reservation.kind)
    return result


def _record_in_ledger(quotation, payment, user_id, warnings):
    record_movement = get_collaborator("PAYMENT_LEDGER")
    try:
        movement_id = record_movement(
            kind="ingreso_adelanto",
            currency=payment.currency,
            amount=payment.amount,
            rate=payment.exchange_rate,
            method=payment.method,
            reference=payment.reference,
            related_document=quotation.number,
            user_id=user_id,
        )
    except Exception as exc:
        logger.exception("Payment ledger failed for %s", quotation.number)
        warnings.append(f"Payment ledger: {exc}")
        return
    payment.ledger_movement_id = str(movement_id or "")
    payment.save(update_fields=["ledger_movement_id"])


@transaction.atomic
def confirm_quotation(quotation, *, user_id=""):
    """Turn the quotation into a sale and allocate units to it.

    Missing stock never blocks confirmation: the sale is flagged
    ``stock_short`` and a requirement is raised unless one is already open.
    """
    quotation = _lock(quotation)
    _ensure_can(quotation, quotation.confirm, "be confirmed")

    sale = create_sale_from_quotation(quotation, user_id=user_id)
    outcome = allocate_sale(sale, user_id=user_id)

    # Anything still reserved beyond what the sale took goes back to stock
    context = TransitionContext(user_id=user_id, note=f"Sobrante de reserva {quotation.number}")
    release_reservation(quotation, context)

    if outcome.shortfalls:
        _raise_requirement(quotation, outcome, user_id)

    quotation.confirm(by_user=user_id)
    quotation.save()
    logger.info("Quotation %s confirmed as sale %s%s", quotation.number, outcome.sale.number,
                " (stock short)" if outcome.shortfalls else "")
    return outcome.sale


def _raise_requirement(quotation, outcome, user_id):
    if quotation.requirements.filter(state__in=Requirement.OPEN_STATES).exists():
        return
    products = {line.product_id: line.product for line in outcome.sale.lines.select_related("product")}
    lines = [(products[pid], qty) for pid, qty in outcome.shortfalls.items()]
    create_from_shortfall = get_collaborator("REQUIREMENT_SERVICE")
    try:
        with transaction.atomic():
            create_from_shortfall(quotation, lines, user_id=user_id)
    except Exception:
        logger.warning("Requirement service failed for sale %s", outcome.sale.number, exc_info=True)


@transaction.atomic
def reject_quotation(quotation, *, reason, user_id="", detail="", expected_price=None, competitor=""):
    """Reject an active quotation and give its reserved units back."""
    if reason not in Rejection.Reason.values:
        raise ValidationError(f"Unknown rejection reason {reason}.")
    if expected_price is not None:
        expected_price = _money(expected_price, "Expected price")

    quotation = _lock(quotation)
    _ensure_can(quotation, quotation.reject, "be rejected")

    release_reservation(quotation, TransitionContext(user_id=user_id, note=f"Rechazo {quotation.number}"))
    Rejection.objects.create(
        quotation=quotation,
        reason=reason,
        detail=detail,
        expected_price=expected_price,
        competitor=competitor,
        registered_by=user_id,
    )
    quotation.reject(by_user=user_id, description=reason)
    quotation.save()
    logger.info("Quotation %s rejected (%s)", quotation.number, reason)
    return quotation


@transaction.atomic
def expire_quotation(quotation, *, user_id="system"):
    quotation = _lock(quotation)
    _ensure_can(quotation, quotation.expire, "expire")
    release_reservation(quotation, TransitionContext(user_id=user_id, note=f"Vencimiento {quotation.number}"))
    quotation.expire(by_user=user_id)
    quotation.save()
    logger.info("Quotation %s expired", quotation.number)
    return quotation


def expire_overdue_quotations(now=None, *, user_id="system") -> list:
    """Expire every quotation whose validity ran out. Returns the expired numbers."""
    now = now or timezone.now()
    overdue = (Quotation.objects
               .filter(state__in=Quotation.EXPIRABLE_STATES, expires_at__lt=now)
               .values_list("pk", flat=True))
    expired = []
    for pk in list(overdue):
        with transaction.atomic():
            quotation = _lock(pk)
            if not quotation.is_overdue(now):
                continue
            expire_quotation(quotation, user_id=user_id)
        expired.append(quotation.number)
    return expired


def list_quotations(state=None):
    """Quotations with overdue ones expired first."""
    expire_overdue_quotations()
    qs = Quotation.objects.all()
    if state is not None:
        qs = qs.filter(state=state)
    return qs


@transaction.atomic
def update_validity_days(quotation, days, *, user_id=""):
    """Change the validity window of a live quotation and recompute its expiry."""
    days = int(days)
    if days <= 0:
        raise ValidationError("Validity days must be positive.")
    quotation = _lock(quotation)
    if quotation.state not in Quotation.ACTIVE_STATES:
        raise IllegalTransitionError(
            f"Quotation {quotation.number} is {quotation.state}; validity cannot change.",
            obj=quotation, transition="update_validity_days",
        )
    now = timezone.now()
    quotation.validity_days = days
    if quotation.state == State.PENDIENTE_ADELANTO:
        quotation.advance_payment_deadline = now + timedelta(days=days)
    quotation.expires_at = now + timedelta(days=days)
    quotation.save()
    return quotation


@transaction.atomic
def extend_reservation(quotation, *, hours, reason, user_id=""):
    """Give a paid quotation's reservation ``hours`` more, keeping a record of why.

    The quotation expires together with its reservation. Only
    ``MAX_RESERVATION_EXTENSIONS`` extensions are allowed per reservation.
    """
    try:
        hours = int(hours)
    except (TypeError, ValueError):
        raise ValidationError(f"Extension hours must be a whole number: {hours!r}")
    if hours <= 0:
        raise ValidationError("Extension hours must be positive.")
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to extend a reservation.")

    quotation = _lock(quotation)
    reservation = Reservation.objects.select_for_update().filter(quotation=quotation).first()
    if quotation.state != State.ADELANTO_PAGADO or reservation is None or not reservation.active:
        raise IllegalTransitionError(
            f"Quotation {quotation.number} has no active reservation to extend.",
            obj=quotation, transition="extend_reservation",
        )

    limit = get_setting("MAX_RESERVATION_EXTENSIONS")
    if reservation.extensions.count() >= limit:
        raise ValidationError(f"Reservation of {quotation.number} was already extended {limit} times.")

    previous = reservation.valid_until
    base = previous or quotation.expires_at or timezone.now()
    new_valid_until = base + timedelta(hours=hours)

    ReservationExtension.objects.create(
        reservation=reservation,
        hours=hours,
        reason=reason.strip(),
        previous_valid_until=previous,
        new_valid_until=new_valid_until,
        extended_by=user_id,
    )
    reservation.valid_until = new_valid_until
    reservation.save(update_fields=["valid_until"])
    quotation.expires_at = new_valid_until
    quotation.save()
    logger.info("Reservation of %s extended %sh to %s (%s)", quotation.number, hours, new_valid_until, reason)
    return reservation
