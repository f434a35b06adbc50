import logging
from collections import namedtuple
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from django.conf import settings
from django.utils import timezone
from exceptions.handlers import (
    InvalidStatusException,
    InvalidStateTransitionException,
)
from utils.constants import PaymentMessage, TransactionState

logger = logging.getLogger("payment")

# transaction_patch: dict of Transaction fields to write.
# vehicle_status: new Vehicle.status, or None when the vehicle is untouched.
StatusChange = namedtuple("StatusChange", ["transaction_patch", "vehicle_status"])

NO_CHANGE = StatusChange({}, None)


def to_decimal(value):
    """
    Converts a stored amount to Decimal, treating missing values as zero.
    """
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


class TransitionPolicy:
    """
    Decides what a status change does to a transaction and its vehicle.

    The policy is pure: it reads the existing transaction and returns the
    fields to write, leaving persistence and locking to the caller.
    """

    @staticmethod
    def validate_status(status):
        """
        Validates that the status belongs to the transaction status enum.

        Raises:
            InvalidStatusException: If the status is unknown
        """
        if status not in TransactionState.ALL:
            raise InvalidStatusException(PaymentMessage.INVALID_STATUS.format(status=status))
        return status

    @staticmethod
    def is_initial_booking_payment(transaction):
        booking = to_decimal(transaction.booking_amount)
        remaining = to_decimal(transaction.remaining_amount)
        return booking > 0 and remaining > 0

    @staticmethod
    def is_balance_payment(transaction):
        return transaction.payment_shape == "balance_settlement"

    @staticmethod
    def apply_status_change(existing, incoming_status, now=None):
        """
        Computes the effect of moving `existing` to `incoming_status`.

        Money-received statuses (payment_completed/completed) either confirm
        a booking token, leaving the balance owed and the vehicle listed, or
        finalize the sale: remaining balance cleared, vehicle sold, delivery
        started. Repeating a status already applied is a no-op so that
        at-least-once payment notifications are safe.

        Args:
            existing: Transaction (or any object with the same attributes)
            incoming_status (str): Requested transaction status
            now (datetime, optional): Clock override for tests

        Returns:
            StatusChange: Fields to write and the vehicle status side effect

        Raises:
            InvalidStatusException: If incoming_status is not a known status
            InvalidStateTransitionException: If existing is terminal
        """
        TransitionPolicy.validate_status(incoming_status)

        if existing.status in TransactionState.TERMINAL:
            if incoming_status == existing.status:
                return NO_CHANGE
            raise InvalidStateTransitionException(
                PaymentMessage.TERMINAL_TRANSACTION.format(status=existing.status)
            )

        if incoming_status == existing.status:
            return NO_CHANGE

        if incoming_status in TransactionState.MONEY_RECEIVED:
            if existing.status in TransactionState.MONEY_RECEIVED:
                # payment_completed -> completed: side effects already applied
                return StatusChange({"status": incoming_status}, None)

            if (TransitionPolicy.is_initial_booking_payment(existing)
                    and not TransitionPolicy.is_balance_payment(existing)):
                logger.info(
                    f"Booking token confirmed for vehicle {existing.vehicle_id}. "
                    f"Remaining: {existing.remaining_amount}"
                )
                return StatusChange({"status": incoming_status}, None)

            now = now or timezone.now()
            patch = {
                "status": incoming_status,
                "remaining_amount": Decimal("0"),
                "estimated_ready_date": now + timedelta(days=settings.DELIVERY_READY_DAYS),
            }
            if existing.delivery_status is None:
                patch["delivery_status"] = "processing"
            logger.info(
                f"Full/balance payment received for vehicle {existing.vehicle_id}. "
                f"Vehicle will be marked as sold."
            )
            return StatusChange(patch, "sold")

        patch = {"status": incoming_status}
        if existing.delivery_status is not None:
            # Delivery tracking only exists for money-received transactions.
            patch["delivery_status"] = None
        return StatusChange(patch, None)
