from django.contrib import admin, messages
from django_object_actions import DjangoObjectActions, action
from simple_history.admin import SimpleHistoryAdmin

from core.exceptions import AllocationFailed, IllegalTransitionError, InsufficientStockError, ValidationError
from documents.models import (
    AdvancePayment,
    Quotation,
    QuotationLine,
    Rejection,
    Requirement,
    RequirementLine,
    Reservation,
    ReservationExtension,
    ReservationLine,
    Sale,
    SaleLine,
)
from documents.services import quotations as quotation_service
from documents.services import sales as sale_service

# Errors a button can trigger; shown to the operator instead of a 500
ACTION_ERRORS = (IllegalTransitionError, ValidationError, InsufficientStockError, AllocationFailed)


def _user_id(request) -> str:
    return request.user.get_username() if request.user.is_authenticated else ""


class ServiceActionMixin:
    """Run a service for a change-form button and report the outcome."""

    def run_service(self, request, func, obj, success, **kwargs):
        try:
            result = func(obj, user_id=_user_id(request), **kwargs)
        except ACTION_ERRORS as e:
            self.message_user(request, f"{obj}: {e}", level=messages.ERROR)
            return None
        self.message_user(request, success, level=messages.SUCCESS)
        return result


class QuotationLineInline(admin.TabularInline):
    model = QuotationLine
    extra = 0
    readonly_fields = ("stock_local_at_quote", "stock_usa_at_quote", "requires_stock")


class AdvancePaymentInline(admin.StackedInline):
    model = AdvancePayment
    extra = 0
    can_delete = False
    readonly_fields = ("amount", "currency", "exchange_rate", "amount_in_quotation_currency",
                       "method", "reference", "paid_at", "registered_by", "ledger_movement_id")


class RejectionInline(admin.StackedInline):
    model = Rejection
    extra = 0
    can_delete = False


@admin.register(Quotation)
class QuotationAdmin(DjangoObjectActions, ServiceActionMixin, SimpleHistoryAdmin):
    inlines = [QuotationLineInline, AdvancePaymentInline, RejectionInline]
    list_display = ("number", "customer_name", "state", "currency", "total", "expires_at", "created_at")
    list_filter = ("state", "channel", "currency")
    search_fields = ("number", "customer_name", "customer_email", "customer_document")
    readonly_fields = (
        "number", "state", "subtotal", "total", "exchange_rate", "expires_at",
        "advance_committed_amount", "advance_committed_percentage", "advance_committed_at",
        "advance_payment_deadline", "advance_committed_by",
        "validated_at", "validated_by", "paid_at", "confirmed_at", "confirmed_by",
        "rejected_at", "expired_at", "created_by",
    )

    change_actions = ("validate_action", "revert_action", "confirm_action", "expire_action")

    def get_change_actions(self, request, object_id, form_url):
        obj = self.get_object(request, object_id)
        if not obj:
            return ()
        if obj.state == Quotation.State.NUEVA:
            return ("validate_action",)
        if obj.state == Quotation.State.VALIDADA:
            return ("revert_action", "confirm_action", "expire_action")
        if obj.state == Quotation.State.ADELANTO_PAGADO:
            return ("confirm_action", "expire_action")
        if obj.state == Quotation.State.PENDIENTE_ADELANTO:
            return ("expire_action",)
        return ()

    def get_queryset(self, request):
        quotation_service.expire_overdue_quotations()
        return super().get_queryset(request)

    @action(label="Validate", description="Validate the quotation")
    def validate_action(self, request, obj):
        self.run_service(request, quotation_service.validate_quotation, obj, "Quotation validated.")

    @action(label="Back to new", description="Undo the validation")
    def revert_action(self, request, obj):
        self.run_service(request, quotation_service.revert_validation, obj, "Quotation back to nueva.")

    @action(label="Confirm sale", description="Create the sale and allocate units")
    def confirm_action(self, request, obj):
        sale = self.run_service(request, quotation_service.confirm_quotation, obj, "Quotation confirmed.")
        if sale is not None and sale.stock_short:
            self.message_user(request, f"Sale {sale.number} is waiting for stock.", level=messages.WARNING)

    @action(label="Expire", description="Expire now and release reserved units")
    def expire_action(self, request, obj):
        self.run_service(request, quotation_service.expire_quotation, obj, "Quotation expired.")


class ReservationLineInline(admin.TabularInline):
    model = ReservationLine
    extra = 0
    readonly_fields = ("product", "requested", "physically_reserved", "virtual_quantity")


class ReservationExtensionInline(admin.TabularInline):
    model = ReservationExtension
    extra = 0
    can_delete = False
    readonly_fields = ("hours", "reason", "previous_valid_until", "new_valid_until", "extended_by", "extended_at")


@admin.register(Reservation)
class ReservationAdmin(admin.ModelAdmin):
    inlines = [ReservationLineInline, ReservationExtensionInline]
    list_display = ("quotation", "kind", "active", "requirement", "estimated_fulfilment", "release_pending")
    list_filter = ("kind", "active", "release_pending")
    readonly_fields = ("quotation", "kind", "reserved_at", "released_at", "pending_unit_ids")


class SaleLineInline(admin.TabularInline):
    model = SaleLine
    extra = 0
    readonly_fields = ("cost_total",)


@admin.register(Sale)
class SaleAdmin(DjangoObjectActions, ServiceActionMixin, SimpleHistoryAdmin):
    inlines = [SaleLineInline]
    list_display = ("number", "customer_name", "state", "stock_short", "total", "amount_due", "margin")
    list_filter = ("state", "stock_short")
    search_fields = ("number", "customer_name", "quotation__number")
    readonly_fields = ("number", "quotation", "state", "stock_short", "cost_total", "margin",
                       "advance_applied", "amount_due", "allocated_at", "delivered_at", "cancelled_at")

    change_actions = ("allocate_action", "deliver_action", "cancel_action")

    def get_change_actions(self, request, object_id, form_url):
        obj = self.get_object(request, object_id)
        if not obj:
            return ()
        if obj.state == Sale.State.PENDIENTE_STOCK:
            return ("allocate_action", "cancel_action")
        if obj.state == Sale.State.ASIGNADA:
            return ("deliver_action", "cancel_action")
        return ()

    @action(label="Allocate stock", description="Assign available units to missing lines")
    def allocate_action(self, request, obj):
        outcome = self.run_service(request, sale_service.allocate_sale, obj, "Allocation run.")
        if outcome is not None and outcome.shortfalls:
            self.message_user(request, f"Still short: {outcome.shortfalls}", level=messages.WARNING)

    @action(label="Deliver", description="Mark units as delivered")
    def deliver_action(self, request, obj):
        self.run_service(request, sale_service.deliver_sale, obj, "Sale delivered.")

    @action(label="Cancel", description="Cancel and return units to stock")
    def cancel_action(self, request, obj):
        self.run_service(request, sale_service.cancel_sale, obj, "Sale cancelled.")


class RequirementLineInline(admin.TabularInline):
    model = RequirementLine
    extra = 0


@admin.register(Requirement)
class RequirementAdmin(SimpleHistoryAdmin):
    inlines = [RequirementLineInline]
    list_display = ("number", "source", "quotation", "state", "created_at")
    list_filter = ("source", "state")
    search_fields = ("number", "quotation__number")
    readonly_fields = ("state", "completed_at")


# Purchase order admin lives in its own module
from documents import admin_purchase  # noqa: E402,F401
