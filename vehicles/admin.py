from django.contrib import admin
from .models import Vehicle


@admin.register(Vehicle)
class VehicleAdmin(admin.ModelAdmin):
    list_display = ['id', 'make', 'model', 'year', 'price', 'seller', 'status', 'created_at']
    list_filter = ['status', 'year']
    search_fields = ['make', 'model', 'registration_number', 'seller__username']
    ordering = ['-created_at']
