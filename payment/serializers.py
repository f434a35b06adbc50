from rest_framework import serializers
from utils.constants import Choices
from .models import Transaction


class TransactionSerializer(serializers.ModelSerializer):
    """
    Read-only representation of a transaction row.
    Transactions only change through the service layer, never through
    serializer saves.
    """

    vehicle_name = serializers.CharField(source="vehicle.display_name", read_only=True)
    buyer_username = serializers.CharField(source="buyer.username", read_only=True)
    seller_username = serializers.CharField(source="seller.username", read_only=True)
    amount_due_now = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = Transaction
        fields = [
            "id",
            "vehicle",
            "vehicle_name",
            "buyer",
            "buyer_username",
            "seller",
            "seller_username",
            "amount",
            "booking_amount",
            "remaining_amount",
            "manual_amount",
            "amount_due_now",
            "status",
            "payment_type",
            "payment_shape",
            "settles",
            "gateway_session_id",
            "payment_method",
            "payment_reference",
            "payment_error_code",
            "payment_error_description",
            "delivery_status",
            "estimated_ready_date",
            "delivery_notes",
            "collected_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class RepresentativeSerializer(serializers.Serializer):
    classification = serializers.CharField()
    transaction = TransactionSerializer()


class CheckoutSerializer(serializers.Serializer):
    vehicle_id = serializers.UUIDField()
    payment_type = serializers.ChoiceField(choices=Choices.PAYMENT_TYPE_CHOICES)
    booking_method = serializers.ChoiceField(
        choices=Choices.BOOKING_METHOD_CHOICES, required=False, default="card"
    )
    qr_amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, required=False, allow_null=True, min_value=0
    )
    cash_amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, required=False, allow_null=True, min_value=0
    )
    previous_transaction_id = serializers.UUIDField(required=False, allow_null=True)


class VerifySerializer(serializers.Serializer):
    transaction_id = serializers.UUIDField(required=False, allow_null=True)
    session_id = serializers.CharField(required=False, allow_blank=True)


class FailureSerializer(serializers.Serializer):
    error_code = serializers.CharField(required=False, allow_blank=True, default="")
    error_description = serializers.CharField(required=False, allow_blank=True, default="")


class ManualVerifySerializer(serializers.Serializer):
    manual_reference = serializers.CharField(required=False, allow_blank=True)


class ConfirmBookingSerializer(serializers.Serializer):
    reference = serializers.CharField(required=False, allow_blank=True)


class StatusUpdateSerializer(serializers.Serializer):
    # Unknown statuses are rejected by the transition policy with its own error.
    status = serializers.CharField()


class DeliveryUpdateSerializer(serializers.Serializer):
    delivery_status = serializers.CharField()
    estimated_ready_date = serializers.DateTimeField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class CheckoutResultSerializer(serializers.Serializer):
    transaction = TransactionSerializer()
    payment_type = serializers.CharField()
    vehicle_name = serializers.CharField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    remaining_amount = serializers.DecimalField(max_digits=12, decimal_places=2, allow_null=True)
    manual_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    booking_method = serializers.CharField(required=False)
    checkout_url = serializers.CharField(required=False)
    session_id = serializers.CharField(required=False)
    upi_link = serializers.CharField(required=False, allow_null=True)
    reference = serializers.CharField(required=False)
    seller_name = serializers.CharField(required=False)
    seller_phone = serializers.CharField(required=False)
