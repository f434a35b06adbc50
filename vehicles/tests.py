from decimal import Decimal
from django.contrib.auth import get_user_model
from django.test import TestCase
from .models import Vehicle

User = get_user_model()


class VehicleModelTest(TestCase):
    """Test cases for Vehicle model."""

    def setUp(self):
        self.seller = User.objects.create_user(
            username="seller_user", email="seller@test.com", password="sellerpass123", role="seller"
        )
        self.vehicle = Vehicle.objects.create(
            seller=self.seller,
            make="Hyundai",
            model="Creta",
            year=2022,
            price=Decimal("1250000.00"),
        )

    def test_default_status_is_pending(self):
        """Test that new listings wait for approval."""
        self.assertEqual(self.vehicle.status, "pending")
        self.assertFalse(self.vehicle.is_available)

    def test_is_available_only_when_approved(self):
        for vehicle_status, available in (("approved", True), ("rejected", False), ("sold", False)):
            self.vehicle.status = vehicle_status
            self.assertEqual(self.vehicle.is_available, available)

    def test_display_name(self):
        self.assertEqual(self.vehicle.display_name, "2022 Hyundai Creta")
        self.assertEqual(str(self.vehicle), "2022 Hyundai Creta - pending")
