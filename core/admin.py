from django.contrib import admin

from .models import ExchangeRate, NumberSeries


@admin.register(NumberSeries)
class NumberSeriesAdmin(admin.ModelAdmin):
    list_display = ("code", "prefix", "next_number", "min_width", "current_year")
    search_fields = ("code",)


@admin.register(ExchangeRate)
class ExchangeRateAdmin(admin.ModelAdmin):
    list_display = ("date", "currency", "buy", "sell", "source")
    list_filter = ("currency", "source")
    date_hierarchy = "date"
