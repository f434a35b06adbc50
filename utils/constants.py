# ---------- ROLE AND STATUS CHOICES ----------

class Choices:
    ROLE_CHOICES = [
        ("admin", "Admin"),
        ("buyer", "Buyer"),
        ("seller", "Seller"),
    ]

    VEHICLE_STATUS_CHOICES = [
        ("pending", "Pending"),
        ("approved", "Approved"),
        ("rejected", "Rejected"),
        ("sold", "Sold"),
    ]

    TRANSACTION_STATUS_CHOICES = [
        ("pending", "Pending"),
        ("payment_initiated", "Payment Initiated"),
        ("payment_completed", "Payment Completed"),
        ("payment_failed", "Payment Failed"),
        ("completed", "Completed"),
        ("cancelled", "Cancelled"),
        ("refunded", "Refunded"),
    ]

    PAYMENT_TYPE_CHOICES = [
        ("full_card", "Full payment by card"),
        ("advance_upi", "Advance booking"),
        ("cash_booking", "Cash booking"),
        ("split_qr", "UPI/QR + card"),
        ("split_cash", "Cash + card"),
    ]

    PAYMENT_SHAPE_CHOICES = [
        ("full_payment", "Full payment"),
        ("booking_token", "Booking token"),
        ("balance_settlement", "Balance settlement"),
    ]

    BOOKING_METHOD_CHOICES = [
        ("card", "Card"),
        ("upi", "UPI"),
        ("cash", "Cash"),
    ]

    DELIVERY_STATUS_CHOICES = [
        ("processing", "Processing"),
        ("inspection", "Inspection"),
        ("documentation", "Documentation"),
        ("ready_for_collection", "Ready for collection"),
        ("collected", "Collected"),
    ]


class TransactionState:
    """Groupings of transaction statuses shared by the policy and the reducer."""

    ALL = {value for value, _ in Choices.TRANSACTION_STATUS_CHOICES}
    # payment_completed and completed both mean the money was received.
    MONEY_RECEIVED = {"payment_completed", "completed"}
    AWAITING_PAYMENT = {"pending", "payment_initiated"}
    INVALID = {"payment_failed", "cancelled", "refunded"}
    TERMINAL = {"completed", "cancelled", "refunded"}

    MONEY_FIELDS = {
        "status",
        "amount",
        "booking_amount",
        "remaining_amount",
        "manual_amount",
        "payment_shape",
    }
    DELIVERY_FIELDS = {
        "delivery_status",
        "estimated_ready_date",
        "delivery_notes",
        "collected_at",
    }


class PaymentTypeGroups:
    MANUALLY_CONFIRMABLE = {"advance_upi", "cash_booking", "split_qr", "split_cash"}
    SPLIT = {"split_qr", "split_cash"}
    BALANCE = {"full_card", "cash_booking"}


class Classification:
    PURCHASE = "purchase"
    BOOKING = "booking"
    NONE = "none"


# ---------- GENERAL MESSAGES ----------
class GeneralMessage:
    INVALID_INPUT = "Invalid input provided."
    PERMISSION_DENIED = "You do not have permission to perform this action."
    SOMETHING_WENT_WRONG = "Something went wrong. Please try again later."


# ----------- VEHICLE CONSTANTS -------------
class VehicleMessage:
    VEHICLE_NOT_FOUND = "Vehicle not found."
    VEHICLE_NOT_AVAILABLE = "Vehicle is not available for purchase."
    OWN_VEHICLE = "You cannot purchase your own vehicle."


# ----------- PAYMENT CONSTANTS -------------
class PaymentMessage:
    TRANSACTION_NOT_FOUND = "Transaction not found."
    BOOKING_TRANSACTION_NOT_FOUND = "Booking transaction not found."
    INVALID_STATUS = "Invalid transaction status: {status}."
    INVALID_PAYMENT_TYPE = "Invalid payment type."
    INVALID_BOOKING_METHOD = "Invalid booking method."
    TERMINAL_TRANSACTION = "Transaction is {status} and can no longer change."
    ONLY_BUYERS_CAN_PURCHASE = "Only buyers can purchase vehicles."
    ONLY_BUYER = "Only the buyer of this transaction can perform this action."
    ONLY_SELLER = "Only the seller of this transaction can confirm this payment."
    NO_REMAINING_BALANCE = "No remaining balance to pay for this booking."
    BALANCE_PAYMENT_TYPE_INVALID = "Balance can only be paid by card or cash."
    BOOKING_AMOUNT_INVALID = "Booking amount must be positive and below the total amount."
    MANUAL_AMOUNT_REQUIRED = "Manual payment amount must be greater than zero."
    MANUAL_AMOUNT_TOO_LARGE = "Manual payment must be less than the total amount to pay."
    NOT_MANUALLY_CONFIRMABLE = "This transaction type cannot be confirmed manually."
    NOT_SPLIT_PAYMENT = "This transaction is not a split payment."
    NOT_AWAITING_PAYMENT = "This transaction is not awaiting payment."
    TRANSACTION_OR_SESSION_REQUIRED = "Transaction ID or session ID is required."
    SESSION_EXPIRED_NEW_CHECKOUT = "Session expired - new checkout created"
    CHECKOUT_EXPIRED = "Checkout session expired"
    PAYMENT_FAILED = "Payment failed"
    PAYMENT_PENDING = "Payment is still pending."
    PAYMENT_VERIFIED = "Payment verified successfully."
    BOOKING_CONFIRMED = "Booking confirmed successfully."
    MANUAL_PAYMENT_VERIFIED = "Manual payment verified. You can proceed to card payment."
    FAILURE_RECORDED = "Payment failure recorded."
    STATUS_UPDATED = "Transaction status updated."
    GATEWAY_UNAVAILABLE = "Payment gateway is unavailable. Please retry."
    PAID_AFTER_CANCEL = "Payment captured after the transaction was closed. Refund or reinstate manually."
    UPI_NOT_CONFIGURED = "UPI payments are not configured."
    INVALID_WEBHOOK = "Invalid webhook payload or signature."
    INCONSISTENT_STATE = "Transaction and vehicle could not be updated together."


# ----------- DELIVERY CONSTANTS -------------
class DeliveryMessage:
    INVALID_DELIVERY_STATUS = "Invalid delivery status: {status}."
    NOT_FINALIZED = "Cannot update delivery status for unpaid transactions."
    NOT_READY_FOR_COLLECTION = "Vehicle is not ready for collection yet."
    ADMIN_ONLY = "Only administrators can update delivery status."
    DELIVERY_UPDATED = "Delivery status updated successfully."
    READY_FOR_COLLECTION = "Vehicle is ready for collection! Buyer has been notified."
    COLLECTION_CONFIRMED = "Vehicle collection confirmed."
