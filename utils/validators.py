import logging
from decimal import Decimal
from django.core.exceptions import ValidationError
from exceptions.handlers import (
    InvalidInputException,
    NotFoundException,
    PermissionDeniedException,
    InvalidStateTransitionException,
)
from utils.constants import (
    Choices,
    PaymentMessage,
    PaymentTypeGroups,
    TransactionState,
    VehicleMessage,
)
from utils.transition_policy import to_decimal

logger = logging.getLogger("payment")

PAYMENT_TYPES = [value for value, _ in Choices.PAYMENT_TYPE_CHOICES]
BOOKING_METHODS = [value for value, _ in Choices.BOOKING_METHOD_CHOICES]


class CheckoutValidators:
    """
    Validation for starting a checkout.
    Eliminates repeated checks between new purchases and balance payments.
    """

    @staticmethod
    def validate_buyer(user):
        """
        Ensures that only buyers can purchase vehicles.

        Raises:
            PermissionDeniedException: If the user is not a buyer
        """
        if not user.is_buyer:
            logger.warning(f"Checkout rejected - user {user.username} is not a buyer")
            raise PermissionDeniedException(PaymentMessage.ONLY_BUYERS_CAN_PURCHASE)
        return user

    @staticmethod
    def get_vehicle(vehicle_id):
        from vehicles.models import Vehicle

        try:
            return Vehicle.objects.select_related("seller").get(pk=vehicle_id)
        except (Vehicle.DoesNotExist, ValidationError, ValueError):
            raise NotFoundException(VehicleMessage.VEHICLE_NOT_FOUND)

    @staticmethod
    def validate_vehicle_purchasable(vehicle, buyer):
        """
        Validates a vehicle for a new purchase (not a balance payment).

        Raises:
            InvalidInputException: If the vehicle is not approved or belongs to the buyer
        """
        if not vehicle.is_available:
            logger.warning(f"Checkout rejected - vehicle {vehicle.id} is {vehicle.status}")
            raise InvalidInputException(VehicleMessage.VEHICLE_NOT_AVAILABLE)
        if vehicle.seller_id == buyer.id:
            logger.warning(f"Checkout rejected - {buyer.username} tried to buy own vehicle {vehicle.id}")
            raise InvalidInputException(VehicleMessage.OWN_VEHICLE)
        return vehicle

    @staticmethod
    def validate_payment_type(payment_type):
        if payment_type not in PAYMENT_TYPES:
            raise InvalidInputException(PaymentMessage.INVALID_PAYMENT_TYPE)
        return payment_type

    @staticmethod
    def validate_booking_method(booking_method):
        if booking_method not in BOOKING_METHODS:
            raise InvalidInputException(PaymentMessage.INVALID_BOOKING_METHOD)
        return booking_method

    @staticmethod
    def validate_booking_token(token, price):
        """
        Rejects booking tokens that round to nothing or cover the whole price.

        Raises:
            InvalidInputException: Unless 0 < token < price
        """
        if token <= 0 or token >= Decimal(price):
            logger.warning(f"Booking rejected - token {token} invalid for price {price}")
            raise InvalidInputException(PaymentMessage.BOOKING_AMOUNT_INVALID)
        return token

    @staticmethod
    def validate_manual_amount(manual_amount, amount_to_pay):
        """
        Validates the part of a split payment settled outside the gateway.

        Returns:
            Decimal: The validated manual amount

        Raises:
            InvalidInputException: Unless 0 < manual_amount < amount_to_pay
        """
        manual_amount = to_decimal(manual_amount)
        if manual_amount <= 0:
            raise InvalidInputException(PaymentMessage.MANUAL_AMOUNT_REQUIRED)
        if manual_amount >= Decimal(amount_to_pay):
            raise InvalidInputException(PaymentMessage.MANUAL_AMOUNT_TOO_LARGE)
        return manual_amount

    @staticmethod
    def validate_balance_source(previous, buyer, vehicle):
        """
        Validates the booking a balance payment settles.

        Args:
            previous: Transaction referenced by previous_transaction_id, or None
            buyer: Requesting buyer
            vehicle: Vehicle being paid for

        Returns:
            Transaction: The booking transaction

        Raises:
            NotFoundException: If the booking does not belong to this buyer and vehicle
            InvalidInputException: If nothing is left to pay on it
        """
        if previous is None or previous.buyer_id != buyer.id or previous.vehicle_id != vehicle.id:
            raise NotFoundException(PaymentMessage.BOOKING_TRANSACTION_NOT_FOUND)
        if previous.status not in TransactionState.MONEY_RECEIVED or to_decimal(previous.remaining_amount) <= 0:
            logger.warning(f"Balance payment rejected - transaction {previous.id} has no balance due")
            raise InvalidInputException(PaymentMessage.NO_REMAINING_BALANCE)
        return previous

    @staticmethod
    def validate_balance_payment_type(payment_type):
        if payment_type not in PaymentTypeGroups.BALANCE:
            raise InvalidInputException(PaymentMessage.BALANCE_PAYMENT_TYPE_INVALID)
        return payment_type


class TransactionValidators:
    """
    Who may act on an existing transaction, and when.
    """

    @staticmethod
    def validate_is_buyer(transaction, user):
        if transaction.buyer_id != user.id:
            logger.warning(f"User {user.username} is not the buyer of transaction {transaction.id}")
            raise PermissionDeniedException(PaymentMessage.ONLY_BUYER)
        return transaction

    @staticmethod
    def validate_is_seller(transaction, user):
        if transaction.seller_id != user.id:
            logger.warning(f"User {user.username} is not the seller of transaction {transaction.id}")
            raise PermissionDeniedException(PaymentMessage.ONLY_SELLER)
        return transaction

    @staticmethod
    def validate_manually_confirmable(transaction):
        if transaction.payment_type not in PaymentTypeGroups.MANUALLY_CONFIRMABLE:
            raise InvalidInputException(PaymentMessage.NOT_MANUALLY_CONFIRMABLE)
        return transaction

    @staticmethod
    def validate_split_payment(transaction):
        if transaction.payment_type not in PaymentTypeGroups.SPLIT:
            raise InvalidInputException(PaymentMessage.NOT_SPLIT_PAYMENT)
        return transaction

    @staticmethod
    def validate_awaiting_payment(transaction):
        if transaction.status not in TransactionState.AWAITING_PAYMENT:
            raise InvalidStateTransitionException(PaymentMessage.NOT_AWAITING_PAYMENT)
        return transaction
