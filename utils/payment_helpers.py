import logging
from decimal import Decimal, ROUND_HALF_UP
from urllib.parse import quote
from django.conf import settings
from django.utils import timezone
from exceptions.handlers import GatewayUnavailableException
from utils.constants import PaymentMessage

logger = logging.getLogger("payment")


class PaymentHelpers:
    """
    Reusable helper methods for payment operations.
    Centralizes payment-related utilities to reduce redundancy.
    """

    @staticmethod
    def generate_reference(prefix, vehicle_id, length=8):
        """
        Generates a human-readable reference for payments made outside the
        gateway (UPI transfers, cash receipts).

        Args:
            prefix (str): Reference prefix, e.g. "CASH" or "BK"
            vehicle_id: Vehicle the payment is for
            length (int): Number of vehicle id characters to include

        Returns:
            str: Reference such as CASH-1718000000000-1A2B3C4D
        """
        millis = int(timezone.now().timestamp() * 1000)
        return f"{prefix}-{millis}-{str(vehicle_id)[:length].upper()}"

    @staticmethod
    def calculate_booking_token(price):
        """
        Returns the booking token for a vehicle price, rounded to whole units.

        Args:
            price (Decimal): Vehicle price

        Returns:
            Decimal: Token amount
        """
        token = Decimal(price) * settings.BOOKING_TOKEN_PERCENTAGE
        return token.quantize(Decimal("1"), rounding=ROUND_HALF_UP)

    @staticmethod
    def build_upi_link(amount, note, reference):
        """
        Builds a upi://pay deep link for the configured payee.

        Raises:
            GatewayUnavailableException: If no UPI id is configured
        """
        upi_id = settings.UPI_ID
        if not upi_id:
            logger.error("UPI payment requested but UPI_ID is not configured")
            raise GatewayUnavailableException(PaymentMessage.UPI_NOT_CONFIGURED)
        return (
            f"upi://pay?pa={upi_id}&pn={quote(settings.UPI_NAME)}&am={amount}"
            f"&cu=INR&tn={quote(note)}&tr={reference}"
        )
