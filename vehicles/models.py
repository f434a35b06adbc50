import uuid
from django.conf import settings
from django.db import models
from utils.constants import Choices


class Vehicle(models.Model):
    """
    Vehicle listed for sale by a seller.

    Listing management lives outside the payment engine; the engine only
    reads the price and moves `status` to `sold` once a sale is settled.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    seller = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="vehicles"
    )
    make = models.CharField(max_length=100)
    model = models.CharField(max_length=100)
    year = models.PositiveIntegerField()
    price = models.DecimalField(max_digits=12, decimal_places=2)
    registration_number = models.CharField(max_length=30, blank=True)
    status = models.CharField(
        max_length=20, choices=Choices.VEHICLE_STATUS_CHOICES, default="pending"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "vehicles"
        ordering = ["-created_at"]

    @property
    def display_name(self):
        return f"{self.year} {self.make} {self.model}"

    @property
    def is_available(self):
        return self.status == "approved"

    def __str__(self):
        return f"{self.display_name} - {self.status}"
