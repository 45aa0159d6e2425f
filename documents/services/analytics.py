from decimal import Decimal

from django.db.models import Count, Sum

from documents.models import Quotation, QuotationLine, Rejection

State = Quotation.State


def rejection_summary(limit=10) -> dict:
    """Why quotations are lost and which products are lost most."""
    by_reason = {reason: 0 for reason in Rejection.Reason.values}
    for row in Rejection.objects.values("reason").annotate(n=Count("id")):
        by_reason[row["reason"]] = row["n"]

    products = (QuotationLine.objects
                .filter(quotation__state=State.RECHAZADA)
                .values("product_id", "product__sku", "product__name")
                .annotate(times=Count("quotation", distinct=True), units=Sum("quantity"))
                .order_by("-times", "-units", "product__sku")[:limit])

    return {
        "total": sum(by_reason.values()),
        "by_reason": by_reason,
        "top_products": [
            {"product_id": p["product_id"], "sku": p["product__sku"], "name": p["product__name"],
             "times": p["times"], "units": p["units"]}
            for p in products
        ],
    }


def quotation_stats() -> dict:
    """Counts per state plus conversion and loss rates over closed quotations."""
    by_state = {state: 0 for state in State.values}
    for row in Quotation.objects.values("state").annotate(n=Count("id")):
        by_state[row["state"]] = row["n"]

    closed = by_state[State.CONFIRMADA] + by_state[State.RECHAZADA] + by_state[State.VENCIDA]

    def rate(n):
        if not closed:
            return Decimal("0.00")
        return (Decimal(n) * 100 / closed).quantize(Decimal("0.01"))

    return {
        "total": sum(by_state.values()),
        "by_state": by_state,
        "conversion_rate": rate(by_state[State.CONFIRMADA]),
        "rejection_rate": rate(by_state[State.RECHAZADA]),
        "expiry_rate": rate(by_state[State.VENCIDA]),
    }
