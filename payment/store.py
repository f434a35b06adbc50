import logging
from decimal import Decimal
from django.core.exceptions import ValidationError
from django.utils import timezone
from exceptions.handlers import (
    InvalidInputException,
    InvalidStateTransitionException,
    NotFoundException,
)
from utils.constants import PaymentMessage, TransactionState
from .models import Transaction

logger = logging.getLogger("payment")


class TransactionStore:
    """
    Persistence for transaction rows.

    Rows are only ever created and patched here; history is never deleted
    or pre-aggregated, the representative reducer does that on read.
    """

    @staticmethod
    def create(vehicle, buyer, seller, amount, payment_type, booking_amount=None,
               settles=None, manual_amount=None, **extra):
        """
        Creates a new transaction in payment_initiated.

        Args:
            vehicle: Vehicle being bought
            buyer, seller: Parties to the sale
            amount (Decimal): Sale price
            payment_type (str): How the buyer chose to pay
            booking_amount (Decimal, optional): Booking token paid up front
            settles (Transaction, optional): Booking row this row pays off
            manual_amount (Decimal, optional): Part paid outside the gateway
            **extra: Additional model fields (payment_reference, payment_method...)

        Returns:
            Transaction: The created row

        Raises:
            InvalidInputException: Unless 0 < booking_amount < amount
        """
        amount = Decimal(amount)

        if settles is not None:
            shape = "balance_settlement"
            booking_amount = Decimal("0")
            remaining_amount = Decimal("0")
        elif booking_amount is not None:
            booking_amount = Decimal(booking_amount)
            if booking_amount <= 0 or booking_amount >= amount:
                raise InvalidInputException(PaymentMessage.BOOKING_AMOUNT_INVALID)
            remaining_amount = amount - booking_amount
            shape = "booking_token"
        else:
            remaining_amount = None
            shape = "full_payment"

        transaction = Transaction.objects.create(
            vehicle=vehicle,
            buyer=buyer,
            seller=seller,
            amount=amount,
            booking_amount=booking_amount,
            remaining_amount=remaining_amount,
            manual_amount=manual_amount,
            payment_type=payment_type,
            payment_shape=shape,
            settles=settles,
            status="payment_initiated",
            **extra,
        )
        logger.info(
            f"Transaction {transaction.id} created for vehicle {vehicle.id} "
            f"({payment_type}, {shape}) by buyer {buyer.id}"
        )
        return transaction

    @staticmethod
    def get(transaction_id):
        try:
            return Transaction.objects.select_related("vehicle", "buyer", "seller").get(pk=transaction_id)
        except (Transaction.DoesNotExist, ValidationError, ValueError):
            raise NotFoundException(PaymentMessage.TRANSACTION_NOT_FOUND)

    @staticmethod
    def get_for_update(transaction_id):
        """
        Fetches and row-locks a transaction. Must be called inside
        transaction.atomic().
        """
        try:
            return Transaction.objects.select_for_update().get(pk=transaction_id)
        except (Transaction.DoesNotExist, ValidationError, ValueError):
            raise NotFoundException(PaymentMessage.TRANSACTION_NOT_FOUND)

    @staticmethod
    def get_by_session(session_id, for_update=False):
        qs = Transaction.objects.all()
        if for_update:
            qs = qs.select_for_update()
        transaction = qs.filter(gateway_session_id=session_id).order_by("-created_at").first()
        if transaction is None:
            raise NotFoundException(PaymentMessage.TRANSACTION_NOT_FOUND)
        return transaction

    @staticmethod
    def list_by_buyer(buyer):
        return Transaction.objects.filter(buyer=buyer).select_related("vehicle", "seller").order_by("-created_at")

    @staticmethod
    def list_by_seller(seller):
        return Transaction.objects.filter(seller=seller).select_related("vehicle", "buyer").order_by("-created_at")

    @staticmethod
    def list_by_vehicle(vehicle):
        return Transaction.objects.filter(vehicle=vehicle).order_by("-created_at")

    @staticmethod
    def update(transaction, patch):
        """
        Applies a partial update and bumps updated_at.

        Terminal rows keep their money fields forever. Delivery fields stay
        writable on completed rows but not on cancelled or refunded ones.

        Raises:
            InvalidStateTransitionException: If the patch would alter a terminal row
        """
        if not patch:
            return transaction

        fields = set(patch)
        if transaction.is_terminal:
            money_changes = {
                field for field in fields & TransactionState.MONEY_FIELDS
                if getattr(transaction, field) != patch[field]
            }
            delivery_blocked = (
                transaction.status != "completed"
                and fields & TransactionState.DELIVERY_FIELDS
            )
            if money_changes or delivery_blocked:
                logger.warning(
                    f"Rejected update of {sorted(fields)} on {transaction.status} transaction {transaction.id}"
                )
                raise InvalidStateTransitionException(
                    PaymentMessage.TERMINAL_TRANSACTION.format(status=transaction.status)
                )

        for field, value in patch.items():
            setattr(transaction, field, value)
        transaction.updated_at = timezone.now()
        transaction.save(update_fields=sorted(fields | {"updated_at"}))
        return transaction
