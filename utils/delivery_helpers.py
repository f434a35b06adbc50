import logging
from django.utils import timezone
from exceptions.handlers import (
    InvalidStatusException,
    InvalidStateTransitionException,
)
from utils.constants import Choices, DeliveryMessage, TransactionState

logger = logging.getLogger("payment")

DELIVERY_STATES = [value for value, _ in Choices.DELIVERY_STATUS_CHOICES]


class DeliveryHelpers:
    """
    Builds the field updates for the delivery side of a finalized sale.
    Administrators may move between any two states, backwards included,
    to correct mistakes; only the buyer's collection step is gated.
    """

    @staticmethod
    def validate_delivery_status(delivery_status):
        if delivery_status not in DELIVERY_STATES:
            raise InvalidStatusException(
                DeliveryMessage.INVALID_DELIVERY_STATUS.format(status=delivery_status)
            )
        return delivery_status

    @staticmethod
    def admin_delivery_patch(transaction, delivery_status, estimated_ready_date=None, notes=None):
        """
        Returns the patch for an administrator delivery update.

        Args:
            transaction: Transaction being updated
            delivery_status (str): Target delivery state
            estimated_ready_date (datetime, optional): Keeps the current value when None
            notes (str, optional): Keeps the current value when None

        Returns:
            dict: Fields to write

        Raises:
            InvalidStatusException: If the delivery state is unknown
            InvalidStateTransitionException: If the sale is not finalized
        """
        DeliveryHelpers.validate_delivery_status(delivery_status)

        if transaction.status not in TransactionState.MONEY_RECEIVED:
            raise InvalidStateTransitionException(DeliveryMessage.NOT_FINALIZED)
        if transaction.remaining_amount is not None and transaction.remaining_amount > 0:
            raise InvalidStateTransitionException(DeliveryMessage.NOT_FINALIZED)

        patch = {"delivery_status": delivery_status}
        if estimated_ready_date is not None:
            patch["estimated_ready_date"] = estimated_ready_date
        if notes is not None:
            patch["delivery_notes"] = notes
        if delivery_status == "ready_for_collection":
            logger.info(f"Vehicle {transaction.vehicle_id} ready for collection by buyer {transaction.buyer_id}")
        return patch

    @staticmethod
    def collection_patch(transaction, now=None):
        """
        Returns the patch recording that the buyer collected the vehicle.

        Raises:
            InvalidStateTransitionException: Unless the vehicle is ready for collection
        """
        if transaction.delivery_status != "ready_for_collection":
            raise InvalidStateTransitionException(DeliveryMessage.NOT_READY_FOR_COLLECTION)
        return {
            "delivery_status": "collected",
            "collected_at": now or timezone.now(),
        }
