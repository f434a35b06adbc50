import logging
from collections import namedtuple
from decimal import Decimal, ROUND_HALF_UP
import stripe
from django.conf import settings
from exceptions.handlers import (
    GatewayUnavailableException,
    InvalidInputException,
)
from utils.constants import PaymentMessage

logger = logging.getLogger("payment")

CheckoutSession = namedtuple("CheckoutSession", ["session_id", "checkout_url"])

VerificationResult = namedtuple(
    "VerificationResult", ["success", "expired", "amount", "method", "payment_id"]
)


def to_minor_units(amount):
    """Converts a rupee amount to paise for the gateway."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway:
    """
    Adapter over Stripe Checkout.

    Stripe failures surface as GatewayUnavailableException so callers
    never have to know about the SDK's error hierarchy. Expiring a
    session is best effort and only reports success.
    """

    def __init__(self, api_key=None, webhook_secret=None):
        stripe.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.currency = settings.PAYMENT_CURRENCY

    def create_checkout(self, transaction, amount, description):
        """
        Opens a hosted checkout session for `amount`.

        Args:
            transaction: Transaction the session pays for
            amount (Decimal): Amount to charge now
            description (str): Line item description shown to the buyer

        Returns:
            CheckoutSession: Session id and hosted checkout URL

        Raises:
            GatewayUnavailableException: If Stripe cannot be reached or rejects the request
        """
        vehicle = transaction.vehicle
        frontend_url = settings.FRONTEND_URL
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {
                                "name": vehicle.display_name,
                                "description": description,
                            },
                            "unit_amount": to_minor_units(amount),
                        },
                        "quantity": 1,
                    }
                ],
                customer_email=transaction.buyer.email or None,
                client_reference_id=str(transaction.id),
                success_url=(
                    f"{frontend_url}/buyer/purchases?success=true"
                    f"&session_id={{CHECKOUT_SESSION_ID}}&vehicleId={vehicle.id}"
                ),
                cancel_url=f"{frontend_url}/vehicles/{vehicle.id}?cancelled=true",
                metadata={
                    "transaction_id": str(transaction.id),
                    "vehicle_id": str(vehicle.id),
                    "buyer_id": str(transaction.buyer_id),
                    "seller_id": str(transaction.seller_id),
                    "payment_type": transaction.payment_type,
                    "payment_shape": transaction.payment_shape,
                },
                payment_intent_data={"metadata": {"transaction_id": str(transaction.id)}},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout creation failed for transaction {transaction.id}: {e}")
            raise GatewayUnavailableException()

        logger.info(f"Checkout session {session.id} opened for transaction {transaction.id}")
        return CheckoutSession(session.id, session.url)

    def verify(self, session_id):
        """
        Asks Stripe for the current state of a checkout session.

        Returns:
            VerificationResult: success when paid, expired when the session lapsed

        Raises:
            GatewayUnavailableException: If Stripe cannot be reached
        """
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe session lookup failed for {session_id}: {e}")
            raise GatewayUnavailableException()

        amount_total = session.get("amount_total")
        amount = Decimal(amount_total) / 100 if amount_total is not None else None
        methods = session.get("payment_method_types") or []
        return VerificationResult(
            success=session.get("payment_status") == "paid",
            expired=session.get("status") == "expired",
            amount=amount,
            method=methods[0] if methods else "",
            payment_id=session.get("payment_intent"),
        )

    def expire_checkout(self, session_id):
        """
        Closes a checkout session so the buyer can no longer pay it.

        Returns:
            bool: False when Stripe could not expire the session
        """
        try:
            stripe.checkout.Session.expire(session_id)
        except stripe.StripeError as e:
            logger.error(f"Could not expire checkout session {session_id}: {e}")
            return False
        logger.info(f"Checkout session {session_id} expired")
        return True

    def parse_event(self, payload, signature):
        """
        Validates a webhook payload against its signature header.

        Raises:
            InvalidInputException: If the payload or signature is invalid
        """
        if not signature:
            raise InvalidInputException(PaymentMessage.INVALID_WEBHOOK)
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Rejected webhook: {e}")
            raise InvalidInputException(PaymentMessage.INVALID_WEBHOOK)


def get_payment_gateway():
    return StripeGateway()
