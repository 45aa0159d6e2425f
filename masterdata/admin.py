from django.contrib import admin

from masterdata.models import Product, Supplier, Warehouse


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("sku", "brand", "name", "presentation", "is_active")
    list_filter = ("brand", "is_active")
    search_fields = ("sku", "name", "brand")


@admin.register(Warehouse)
class WarehouseAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "country", "is_active")
    list_filter = ("country", "is_active")


@admin.register(Supplier)
class SupplierAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "country", "is_active")
    search_fields = ("code", "name")
