import uuid
from decimal import Decimal
from django.conf import settings
from django.db import models
from utils.constants import Choices, TransactionState


class Transaction(models.Model):
    """
    One payment attempt against a vehicle purchase.

    A vehicle can accumulate several rows (a failed retry, a booking token,
    then a balance settlement). Rows are never deleted; failed and cancelled
    attempts stay for audit and for the representative reducer.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    vehicle = models.ForeignKey(
        "vehicles.Vehicle", on_delete=models.PROTECT, related_name="transactions"
    )
    buyer = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="purchases"
    )
    seller = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="sales"
    )

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    booking_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    remaining_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    manual_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    status = models.CharField(
        max_length=20, choices=Choices.TRANSACTION_STATUS_CHOICES, default="pending"
    )
    payment_type = models.CharField(
        max_length=20, choices=Choices.PAYMENT_TYPE_CHOICES, default="full_card"
    )
    payment_shape = models.CharField(
        max_length=20, choices=Choices.PAYMENT_SHAPE_CHOICES, default="full_payment"
    )
    settles = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="settlements",
    )

    gateway_session_id = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    gateway_payment_id = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    payment_method = models.CharField(max_length=30, blank=True)
    payment_reference = models.CharField(max_length=100, blank=True)
    payment_error_code = models.CharField(max_length=100, blank=True)
    payment_error_description = models.TextField(blank=True)

    delivery_status = models.CharField(
        max_length=30, choices=Choices.DELIVERY_STATUS_CHOICES, null=True, blank=True
    )
    estimated_ready_date = models.DateTimeField(null=True, blank=True)
    delivery_notes = models.TextField(blank=True)
    collected_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "transactions"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["vehicle", "created_at"], name="txn_vehicle_created_idx"),
            models.Index(fields=["buyer", "status"], name="txn_buyer_status_idx"),
            models.Index(fields=["seller", "status"], name="txn_seller_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    models.Q(delivery_status__isnull=True)
                    | models.Q(status__in=sorted(TransactionState.MONEY_RECEIVED))
                ),
                name="delivery_requires_money_received",
            )
        ]

    def __str__(self):
        return f"{self.vehicle_id} - {self.buyer_id} - {self.status}"

    @property
    def is_terminal(self):
        return self.status in TransactionState.TERMINAL

    @property
    def is_money_received(self):
        return self.status in TransactionState.MONEY_RECEIVED

    @property
    def is_fully_settled(self):
        return self.is_money_received and (
            self.remaining_amount is None or self.remaining_amount <= 0
        )

    @property
    def amount_due_now(self):
        """Amount this attempt has to collect from the buyer."""
        if self.payment_shape == "booking_token":
            return self.booking_amount
        if self.payment_shape == "balance_settlement" and self.settles_id:
            return self.settles.remaining_amount
        if self.manual_amount:
            return self.amount - self.manual_amount
        return self.amount

    @property
    def is_amount_balanced(self):
        """
        True unless both booking and remaining amounts are recorded and do
        not add up to the sale price. Balance settlements carry their own
        bookkeeping through `settles` and are not checked here.
        """
        if self.payment_shape == "balance_settlement":
            return True
        if self.booking_amount is None or self.remaining_amount is None:
            return True
        return Decimal(self.booking_amount) + Decimal(self.remaining_amount) == Decimal(self.amount)
